import enum


class EnrollmentType(str, enum.Enum):
    ONE_TIME = "one_time"
    SUBSCRIPTION = "subscription"


class PricingModel(str, enum.Enum):
    ONE_TIME = "one_time"
    SUBSCRIPTION = "subscription"
    BOTH = "both"


class EnrollmentStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class SubscriptionStatus(str, enum.Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAUSED = "paused"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class BillingCycle(str, enum.Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"

    @property
    def months(self) -> int:
        return {"monthly": 1, "quarterly": 3, "yearly": 12}[self.value]


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    CANCELLED = "cancelled"


class TransactionKind(str, enum.Enum):
    PURCHASE = "purchase"
    RENEWAL = "renewal"


class RiskLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class PaymentEventType(str, enum.Enum):
    TRANSACTION_CREATED = "transaction_created"
    ORDER_CREATED = "order_created"
    PAYMENT_PROCESSING = "payment_processing"
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILED = "payment_failed"
    WEBHOOK_RECEIVED = "webhook_received"
    REFUND_PROCESSED = "refund_processed"
    REVENUE_DISTRIBUTED = "revenue_distributed"
    REVIEW_REQUIRED = "review_required"
    CANCELLED = "cancelled"


class EventSource(str, enum.Enum):
    SYSTEM = "system"
    WEBHOOK = "webhook"
    ADMIN = "admin"
    USER = "user"


class AuditAction(str, enum.Enum):
    CREATED = "created"
    PAYMENT_COMPLETED = "payment_completed"
    ACCESS_GRANTED = "access_granted"
    DEVICE_ADDED = "device_added"
    DEVICE_REMOVED = "device_removed"
    SUBSCRIPTION_PAUSED = "subscription_paused"
    SUBSCRIPTION_RESUMED = "subscription_resumed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_RENEWAL_REQUESTED = "subscription_renewal_requested"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    SUBSCRIPTION_PAST_DUE = "subscription_past_due"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    PREFERENCES_UPDATED = "subscription_preferences_updated"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"
    REACTIVATED = "reactivated"
    REFUNDED = "refunded"
    PROGRESS_UPDATED = "progress_updated"
    CERTIFICATE_ISSUED = "certificate_issued"
