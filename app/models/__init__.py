"""
Models package initialization
Import all models and setup relationships
"""

from .course import Course
from .enrollment import Enrollment
from .enrollment_audit import EnrollmentAuditEvent
from .enrollment_device import EnrollmentDevice
from .lecture_completion import LectureCompletion
from .payment_event import PaymentEvent, WebhookDelivery
from .payment_transaction import PaymentTransaction

# Import and setup relationships
from .relations import setup_relationships
from .subscription import Subscription

# Setup all relationships after models are imported
setup_relationships()

# Make models available at package level
__all__ = [
    "Course",
    "Enrollment",
    "EnrollmentAuditEvent",
    "EnrollmentDevice",
    "LectureCompletion",
    "PaymentEvent",
    "PaymentTransaction",
    "Subscription",
    "WebhookDelivery",
]
