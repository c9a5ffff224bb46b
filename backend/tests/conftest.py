"""
Pytest fixtures for HealthPay backend tests.

Provides an in-memory database, one user per actor kind, appointments,
a recording notifier, and bearer-token headers for API tests.
"""

from datetime import timedelta

import pytest

from healthpay import create_app
from healthpay.extensions import db
from healthpay.models import User, Organization, Appointment, DoctorRefundPolicy, PaymentVerification
from healthpay.models.auth import USER_KIND_PATIENT, USER_KIND_STAFF, USER_KIND_DOCTOR, USER_KIND_ADMIN
from healthpay.models.payments import METHOD_BANK_TRANSFER
from healthpay.services.auth_service import hash_password
from healthpay.services.collaborators import (
    Collaborators,
    Notifier,
    SqlAppointmentConfirmation,
    SignedUrlReceiptStorage,
    install_collaborators,
)
from healthpay.services.permission_service import Actor
from healthpay.services import payment_service, session_service
from healthpay.time_utils import utcnow


TEST_PASSWORD = "TestPass123!"


class RecordingNotifier(Notifier):
    """Keeps every notification instead of sending it."""

    def __init__(self):
        self.sent = []

    def notify(self, user_id, event_type, payload):
        self.sent.append((user_id, event_type, payload))

    def events_for(self, user_id):
        return [event_type for uid, event_type, _ in self.sent if uid == user_id]


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'BCRYPT_LOG_ROUNDS': 4,
        'SECRET_KEY': 'test-secret',
        'RECEIPT_BASE_URL': 'https://files.test/receipts',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()
        db.session.remove()


@pytest.fixture(scope='function')
def notifier(app):
    """Install fresh collaborators with a recording notifier."""
    recorder = RecordingNotifier()
    install_collaborators(app, Collaborators(
        appointments=SqlAppointmentConfirmation(),
        notifier=recorder,
        receipts=SignedUrlReceiptStorage(
            base_url=app.config['RECEIPT_BASE_URL'],
            secret_key=app.config['SECRET_KEY'],
            ttl_seconds=900,
            clock=lambda: 1_000_000,
        ),
    ))
    yield recorder
    install_collaborators(app)


# =============================================================================
# USERS
# =============================================================================

def _make_user(db_session, username, kind):
    user = User(
        username=username,
        email=f"{username}@healthpay.test",
        password_hash=hash_password(TEST_PASSWORD),
        kind=kind,
        is_active=True,
    )
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def patient(db_session):
    return _make_user(db_session, "patient_a", USER_KIND_PATIENT)


@pytest.fixture(scope='function')
def other_patient(db_session):
    return _make_user(db_session, "patient_b", USER_KIND_PATIENT)


@pytest.fixture(scope='function')
def staff(db_session):
    return _make_user(db_session, "staff_a", USER_KIND_STAFF)


@pytest.fixture(scope='function')
def other_staff(db_session):
    return _make_user(db_session, "staff_b", USER_KIND_STAFF)


@pytest.fixture(scope='function')
def doctor(db_session):
    return _make_user(db_session, "doctor_a", USER_KIND_DOCTOR)


@pytest.fixture(scope='function')
def admin(db_session):
    return _make_user(db_session, "admin_a", USER_KIND_ADMIN)


@pytest.fixture(scope='function')
def actors(patient, other_patient, staff, doctor, admin):
    """Actor views of the user fixtures, keyed by role name."""
    return {
        "patient": Actor.from_user(patient),
        "other_patient": Actor.from_user(other_patient),
        "staff": Actor.from_user(staff),
        "doctor": Actor.from_user(doctor),
        "admin": Actor.from_user(admin),
    }


# =============================================================================
# APPOINTMENTS / PAYMENTS
# =============================================================================

@pytest.fixture(scope='function')
def make_appointment(db_session, patient, doctor):
    """Factory: appointment for `patient` with `doctor`, `minutes_ahead` from now."""
    def _make(minutes_ahead=3 * 24 * 60, patient_user=None, doctor_user=None, organization=None):
        appointment = Appointment(
            patient_user_id=(patient_user or patient).id,
            doctor_user_id=(doctor_user or doctor).id,
            organization_id=organization.id if organization else None,
            scheduled_at=utcnow() + timedelta(minutes=minutes_ahead),
        )
        db_session.add(appointment)
        db_session.commit()
        return appointment
    return _make


@pytest.fixture(scope='function')
def appointment(make_appointment):
    return make_appointment()


@pytest.fixture(scope='function')
def make_organization(db_session):
    """Factory: organization with the given payment account mode."""
    def _make(payment_account_mode, name="City Clinic"):
        organization = Organization(name=name, payment_account_mode=payment_account_mode)
        db_session.add(organization)
        db_session.commit()
        return organization
    return _make


@pytest.fixture(scope='function')
def doctor_policy(db_session, doctor):
    """24h cutoff, 20% deduction, no automatic full refund on doctor cancellation."""
    policy = DoctorRefundPolicy(
        doctor_user_id=doctor.id,
        refund_cutoff_minutes=1440,
        refund_deduction_bps=2000,
        allow_full_refund_on_doctor_cancellation=False,
    )
    db_session.add(policy)
    db_session.commit()
    return policy


@pytest.fixture(scope='function')
def submit(patient):
    """Factory: submit a payment as the appointment's patient."""
    def _submit(appointment, amount_cents=1000, method=METHOD_BANK_TRANSFER, **kwargs):
        return payment_service.submit_payment(
            appointment_id=appointment.id,
            submitted_by_user_id=appointment.patient_user_id,
            amount_cents=amount_cents,
            method=method,
            **kwargs,
        )
    return _submit


@pytest.fixture(scope='function')
def verification_for(db_session):
    """Factory: the most recent verification row for a payment."""
    def _latest(payment_id):
        return (
            db_session.query(PaymentVerification)
            .filter_by(payment_id=payment_id)
            .order_by(PaymentVerification.id.desc())
            .first()
        )
    return _latest


@pytest.fixture(scope='function')
def auth_headers(db_session):
    """Factory: bearer headers for a user."""
    def _headers(user):
        _, token = session_service.create_session(user.id, user_agent="pytest", ip_address="127.0.0.1")
        return {"Authorization": f"Bearer {token}"}
    return _headers
