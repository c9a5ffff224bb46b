from .auth import User, SessionToken
from .security import SecurityEvent
from .appointments import Organization, Appointment, DoctorRefundPolicy
from .payments import Payment, PaymentStatusEvent, PaymentVerification
from .disputes import PaymentDispute, PaymentDisputeHistory
from .outbox import OutboxEvent
from .append_only import AppendOnlyViolation

__all__ = [
    'User', 'SessionToken', 'SecurityEvent',
    'Organization', 'Appointment', 'DoctorRefundPolicy',
    'Payment', 'PaymentStatusEvent', 'PaymentVerification',
    'PaymentDispute', 'PaymentDisputeHistory',
    'OutboxEvent',
    'AppendOnlyViolation',
]
