"""
Service-level error taxonomy.

Every business failure raised by the services carries a stable ``code`` and
a human-readable ``message``. The exception handlers in ``main.py`` render
them into the uniform response envelope.
"""

from typing import Any, Dict, Optional

VALIDATION = "validation"
STATE_CONFLICT = "state_conflict"
INTEGRITY = "integrity"
EXTERNAL = "external"
NOT_FOUND = "not_found"
AUTHORIZATION = "authorization"


class ServiceError(Exception):
    code: str = "SERVICE_ERROR"
    status_code: int = 400
    category: str = STATE_CONFLICT
    default_message: str = "Request could not be completed"
    retryable: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        field: Optional[str] = None,
    ):
        self.message = message or self.default_message
        self.data = data
        self.field = field
        super().__init__(self.message)

    def to_error(self) -> Dict[str, Any]:
        error = {"code": self.code}
        if self.field:
            error["field"] = self.field
        if self.retryable:
            error["retryable"] = True
        return error


# --- Validation ---


class InvalidAmount(ServiceError):
    code = "INVALID_AMOUNT"
    category = INTEGRITY
    default_message = "Amount breakdown is invalid or does not reconcile"


class InvalidBillingCycle(ServiceError):
    code = "INVALID_BILLING_CYCLE"
    category = VALIDATION
    default_message = "Invalid billing cycle"


class UnsupportedEnrollmentType(ServiceError):
    code = "UNSUPPORTED_ENROLLMENT_TYPE"
    category = VALIDATION
    default_message = "Course does not support this enrollment type"


class InvalidRefundAmount(ServiceError):
    code = "INVALID_REFUND_AMOUNT"
    category = VALIDATION
    default_message = "Refund amount exceeds the refundable balance"


class NotASubscription(ServiceError):
    code = "NOT_A_SUBSCRIPTION"
    category = VALIDATION
    default_message = "Only subscription enrollments support this operation"


# --- Not found / authorization ---


class CourseNotAvailable(ServiceError):
    code = "COURSE_NOT_AVAILABLE"
    status_code = 404
    category = NOT_FOUND
    default_message = "Course not found or not available for enrollment"


class EnrollmentNotFound(ServiceError):
    code = "ENROLLMENT_NOT_FOUND"
    status_code = 404
    category = NOT_FOUND
    default_message = "Enrollment not found"


class TransactionNotFound(ServiceError):
    code = "TRANSACTION_NOT_FOUND"
    status_code = 404
    category = NOT_FOUND
    default_message = "Payment transaction not found"


class DeviceNotFound(ServiceError):
    code = "DEVICE_NOT_FOUND"
    status_code = 404
    category = NOT_FOUND
    default_message = "Device not found for this enrollment"


class PermissionDenied(ServiceError):
    code = "PERMISSION_DENIED"
    status_code = 403
    category = AUTHORIZATION
    default_message = "Access denied"


# --- State conflicts ---


class AlreadyEnrolled(ServiceError):
    code = "ALREADY_ENROLLED"
    status_code = 409
    default_message = "User is already enrolled in this course"


class InvalidState(ServiceError):
    code = "INVALID_STATE"
    status_code = 409
    default_message = "Operation is not allowed in the current state"


class AlreadyCancelled(ServiceError):
    code = "ALREADY_CANCELLED"
    status_code = 409
    default_message = "Subscription is already cancelled or expired"


class RenewalNotNeeded(ServiceError):
    code = "RENEWAL_NOT_NEEDED"
    status_code = 409
    default_message = "Subscription does not need renewal"


class AlreadyDistributed(ServiceError):
    code = "ALREADY_DISTRIBUTED"
    status_code = 409
    default_message = "Revenue has already been distributed"


class NotSuccessful(ServiceError):
    code = "NOT_SUCCESSFUL"
    status_code = 409
    default_message = "Transaction is not successful"


class DeviceLimitExceeded(ServiceError):
    code = "DEVICE_LIMIT_EXCEEDED"
    status_code = 409
    default_message = "Device limit exceeded"


class CertificateNotEligible(ServiceError):
    code = "CERTIFICATE_NOT_ELIGIBLE"
    status_code = 409
    default_message = "Enrollment is not eligible for a certificate"


class ConcurrentModification(ServiceError):
    code = "CONCURRENT_MODIFICATION"
    status_code = 409
    default_message = "The record was modified concurrently, please retry"
    retryable = True


class NotActive(ServiceError):
    code = "NOT_ACTIVE"
    status_code = 403
    default_message = "Enrollment not active"


class AccessExpired(ServiceError):
    code = "ACCESS_EXPIRED"
    status_code = 403
    default_message = "Access expired"


class DeviceNotRegistered(ServiceError):
    code = "DEVICE_NOT_REGISTERED"
    status_code = 403
    default_message = "Device not registered"


# --- Integrity ---


class PaymentVerificationFailed(ServiceError):
    code = "PAYMENT_VERIFICATION_FAILED"
    category = INTEGRITY
    default_message = "Payment verification failed"


class WebhookSignatureInvalid(ServiceError):
    code = "WEBHOOK_SIGNATURE_INVALID"
    category = INTEGRITY
    default_message = "Invalid webhook signature"


# --- External ---


class GatewayUnavailable(ServiceError):
    code = "GATEWAY_UNAVAILABLE"
    status_code = 502
    category = EXTERNAL
    default_message = "Payment gateway is unavailable, please retry"
    retryable = True


class ConfigurationError(RuntimeError):
    """Raised at startup when a required collaborator is not configured."""
