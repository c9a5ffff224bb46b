"""
Payment ledger tests.

Verifies:
- Submission validates input, enforces one active payment per appointment
  and queues the payment for verification
- Only edges in ALLOWED_TRANSITIONS are taken; each one appends a status event
- Refund amounts come from the doctor's policy and are persisted
"""

from datetime import timedelta

import pytest

from healthpay.errors import (
    ValidationError,
    ActorNotPermittedError,
    NotFoundError,
    InvalidStateError,
    IllegalTransitionError,
    AlreadyClaimedError,
)
from healthpay.models import OutboxEvent, Payment, PaymentStatusEvent
from healthpay.models.appointments import (
    APPOINTMENT_STATUS_CANCELLED,
    PAYMENT_ACCOUNT_MODE_DOCTOR_LEVEL,
    PAYMENT_ACCOUNT_MODE_CENTRALIZED_ORG,
)
from healthpay.models.payments import (
    PAYMENT_STATUS_PENDING_VERIFICATION,
    PAYMENT_STATUS_VERIFIED,
    PAYMENT_STATUS_REJECTED,
    PAYMENT_STATUS_AUTHORIZED,
    PAYMENT_STATUS_CAPTURED,
    PAYMENT_STATUS_REFUND_REQUESTED,
    PAYMENT_STATUS_REFUNDED,
    PAYMENT_STATUS_FAILED,
    VERIFICATION_STATUS_PENDING_QUEUE,
    VERIFICATION_STATUS_VERIFIED,
    VERIFICATION_STATUS_REJECTED,
    METHOD_CASH,
    ACCOUNT_HOLDER_DOCTOR,
    ACCOUNT_HOLDER_ORGANIZATION,
)
from healthpay.services import payment_service, verification_service
from healthpay.services.payment_account_service import resolve_for_appointment_id
from healthpay.services.refund_policy import CANCELLED_BY_PATIENT, CANCELLED_BY_DOCTOR


# =============================================================================
# SUBMISSION
# =============================================================================


class TestSubmitPayment:
    def test_creates_pending_payment_and_queue_entry(self, db_session, appointment, submit, verification_for):
        payment = submit(appointment, transaction_reference="TRX-991")

        assert payment.status == PAYMENT_STATUS_PENDING_VERIFICATION
        assert payment.amount_cents == 1000
        assert payment.currency == "PKR"
        assert payment.transaction_reference == "TRX-991"

        verification = verification_for(payment.id)
        assert verification.status == VERIFICATION_STATUS_PENDING_QUEUE
        assert verification.verifier_user_id is None
        assert verification.disputed is False

    def test_records_creation_event_and_outbox_entry(self, db_session, appointment, submit, patient, doctor):
        payment = submit(appointment)

        events = payment_service.get_status_events(payment.id)
        assert [(e.from_status, e.to_status) for e in events] == [(None, PAYMENT_STATUS_PENDING_VERIFICATION)]
        assert events[0].actor_user_id == patient.id

        outbox = db_session.query(OutboxEvent).filter_by(aggregate_id=payment.id).one()
        assert outbox.event_type == "payment.submitted"
        assert outbox.payload["notify_user_ids"] == [patient.id, doctor.id]

    def test_currency_is_normalized(self, db_session, appointment, submit):
        payment = submit(appointment, currency="usd")
        assert payment.currency == "USD"

    def test_second_active_payment_refused(self, db_session, appointment, submit):
        submit(appointment)
        with pytest.raises(InvalidStateError):
            submit(appointment, method=METHOD_CASH)
        assert len(payment_service.list_payments(appointment_id=appointment.id)) == 1

    def test_resubmission_allowed_after_rejection(self, db_session, appointment, submit, actors):
        first = submit(appointment)
        payment_service.apply_verification_status(first.id, actors["staff"], PAYMENT_STATUS_REJECTED)

        second = submit(appointment)
        assert second.id != first.id
        assert second.status == PAYMENT_STATUS_PENDING_VERIFICATION

    def test_only_the_appointments_patient_may_submit(self, db_session, appointment, other_patient):
        with pytest.raises(ActorNotPermittedError):
            payment_service.submit_payment(appointment.id, other_patient.id, 1000, METHOD_CASH)

    def test_unknown_appointment(self, db_session, patient):
        with pytest.raises(NotFoundError):
            payment_service.submit_payment(999999, patient.id, 1000, METHOD_CASH)

    def test_cancelled_appointment(self, db_session, appointment, submit):
        appointment.status = APPOINTMENT_STATUS_CANCELLED
        db_session.commit()
        with pytest.raises(InvalidStateError):
            submit(appointment)

    @pytest.mark.parametrize("amount", [0, -5, "1000", 10.5, True, None])
    def test_invalid_amount(self, db_session, appointment, submit, amount):
        with pytest.raises(ValidationError):
            submit(appointment, amount_cents=amount)

    def test_invalid_method(self, db_session, appointment, submit):
        with pytest.raises(ValidationError):
            submit(appointment, method="CHEQUE")

    def test_invalid_currency(self, db_session, appointment, submit):
        with pytest.raises(ValidationError):
            submit(appointment, currency="RUPEES")

    def test_failed_submission_leaves_no_rows(self, db_session, appointment, submit):
        submit(appointment)
        with pytest.raises(InvalidStateError):
            submit(appointment)
        assert db_session.query(OutboxEvent).count() == 1
        assert db_session.query(PaymentStatusEvent).count() == 1


class TestAttachReceipt:
    def test_attach_while_pending(self, db_session, appointment, submit):
        payment = submit(appointment)
        payment = payment_service.attach_receipt(payment.id, "receipts/abc.jpg")
        assert payment.receipt_url == "receipts/abc.jpg"

    def test_attach_after_verification_refused(self, db_session, appointment, submit, actors):
        payment = submit(appointment)
        payment_service.apply_verification_status(payment.id, actors["staff"], PAYMENT_STATUS_VERIFIED)
        with pytest.raises(InvalidStateError):
            payment_service.attach_receipt(payment.id, "receipts/late.jpg")


# =============================================================================
# STATUS GRAPH
# =============================================================================


class TestStatusGraph:
    @pytest.mark.parametrize(
        "from_status,to_status,allowed",
        [
            (PAYMENT_STATUS_PENDING_VERIFICATION, PAYMENT_STATUS_VERIFIED, True),
            (PAYMENT_STATUS_PENDING_VERIFICATION, PAYMENT_STATUS_AUTHORIZED, False),
            (PAYMENT_STATUS_PENDING_VERIFICATION, PAYMENT_STATUS_REFUND_REQUESTED, False),
            (PAYMENT_STATUS_VERIFIED, PAYMENT_STATUS_CAPTURED, True),
            (PAYMENT_STATUS_AUTHORIZED, PAYMENT_STATUS_CAPTURED, True),
            (PAYMENT_STATUS_CAPTURED, PAYMENT_STATUS_FAILED, False),
            (PAYMENT_STATUS_CAPTURED, PAYMENT_STATUS_REFUND_REQUESTED, True),
            (PAYMENT_STATUS_REJECTED, PAYMENT_STATUS_REFUND_REQUESTED, False),
            (PAYMENT_STATUS_REFUND_REQUESTED, PAYMENT_STATUS_REFUNDED, True),
            (PAYMENT_STATUS_REFUNDED, PAYMENT_STATUS_REFUND_REQUESTED, False),
            (PAYMENT_STATUS_FAILED, PAYMENT_STATUS_VERIFIED, False),
            (None, PAYMENT_STATUS_VERIFIED, False),
        ],
    )
    def test_can_transition(self, from_status, to_status, allowed):
        assert payment_service.can_transition(from_status, to_status) is allowed

    def test_rejected_refund_edge_needs_dispute(self):
        assert payment_service.can_transition(
            PAYMENT_STATUS_REJECTED, PAYMENT_STATUS_REFUND_REQUESTED, via_dispute=True
        ) is True


class TestApplyVerificationStatus:
    def test_verify_closes_queue_entry(self, db_session, appointment, submit, actors, staff, verification_for):
        payment = submit(appointment)
        payment = payment_service.apply_verification_status(
            payment.id, actors["staff"], PAYMENT_STATUS_VERIFIED, "Matched bank statement",
        )

        assert payment.status == PAYMENT_STATUS_VERIFIED
        assert payment.verified_by_user_id == staff.id
        assert payment.verification_notes == "Matched bank statement"
        assert payment.verified_at is not None
        assert payment.attempt_count == 1

        verification = verification_for(payment.id)
        assert verification.status == VERIFICATION_STATUS_VERIFIED
        assert verification.verifier_user_id == staff.id

    def test_reject(self, db_session, appointment, submit, actors, verification_for):
        payment = submit(appointment)
        payment = payment_service.apply_verification_status(payment.id, actors["doctor"], PAYMENT_STATUS_REJECTED)
        assert payment.status == PAYMENT_STATUS_REJECTED
        assert verification_for(payment.id).status == VERIFICATION_STATUS_REJECTED

    def test_verified_then_authorized_then_captured(self, db_session, appointment, submit, actors):
        payment = submit(appointment)
        payment_service.apply_verification_status(payment.id, actors["staff"], PAYMENT_STATUS_VERIFIED)
        payment_service.apply_verification_status(payment.id, actors["staff"], PAYMENT_STATUS_AUTHORIZED)
        payment = payment_service.apply_verification_status(payment.id, actors["admin"], PAYMENT_STATUS_CAPTURED)

        assert payment.status == PAYMENT_STATUS_CAPTURED
        assert payment.captured_at is not None
        events = payment_service.get_status_events(payment.id)
        assert [e.to_status for e in events] == [
            PAYMENT_STATUS_PENDING_VERIFICATION,
            PAYMENT_STATUS_VERIFIED,
            PAYMENT_STATUS_AUTHORIZED,
            PAYMENT_STATUS_CAPTURED,
        ]
        assert [e.from_status for e in events[1:]] == [e.to_status for e in events[:-1]]

    def test_authorize_before_verification_is_illegal(self, db_session, appointment, submit, actors):
        payment = submit(appointment)
        with pytest.raises(IllegalTransitionError):
            payment_service.apply_verification_status(payment.id, actors["staff"], PAYMENT_STATUS_AUTHORIZED)
        assert payment_service.get_payment(payment.id).status == PAYMENT_STATUS_PENDING_VERIFICATION
        assert len(payment_service.get_status_events(payment.id)) == 1

    def test_verify_twice_is_illegal(self, db_session, appointment, submit, actors):
        payment = submit(appointment)
        payment_service.apply_verification_status(payment.id, actors["staff"], PAYMENT_STATUS_VERIFIED)
        with pytest.raises(IllegalTransitionError):
            payment_service.apply_verification_status(payment.id, actors["staff"], PAYMENT_STATUS_VERIFIED)

    def test_unknown_status(self, db_session, appointment, submit, actors):
        payment = submit(appointment)
        with pytest.raises(ValidationError):
            payment_service.apply_verification_status(payment.id, actors["staff"], "PAID")

    def test_patient_cannot_verify(self, db_session, appointment, submit, actors):
        payment = submit(appointment)
        with pytest.raises(ActorNotPermittedError):
            payment_service.apply_verification_status(payment.id, actors["patient"], PAYMENT_STATUS_VERIFIED)

    def test_claimed_by_another_verifier(self, db_session, appointment, submit, actors, staff, verification_for):
        payment = submit(appointment)
        verification_service.claim(verification_for(payment.id).id, staff.id)

        with pytest.raises(AlreadyClaimedError):
            payment_service.apply_verification_status(payment.id, actors["doctor"], PAYMENT_STATUS_VERIFIED)
        assert payment_service.get_payment(payment.id).status == PAYMENT_STATUS_PENDING_VERIFICATION

    def test_claim_holder_can_verify_directly(self, db_session, appointment, submit, actors, staff, verification_for):
        payment = submit(appointment)
        verification_service.claim(verification_for(payment.id).id, staff.id)
        payment = payment_service.apply_verification_status(payment.id, actors["staff"], PAYMENT_STATUS_VERIFIED)
        assert payment.status == PAYMENT_STATUS_VERIFIED

    def test_fail_pending_payment_closes_queue_entry(self, db_session, appointment, submit, actors, verification_for):
        payment = submit(appointment)
        payment = payment_service.apply_verification_status(payment.id, actors["staff"], PAYMENT_STATUS_FAILED)
        assert payment.status == PAYMENT_STATUS_FAILED
        assert verification_for(payment.id).status == VERIFICATION_STATUS_REJECTED

        with pytest.raises(IllegalTransitionError):
            payment_service.apply_verification_status(payment.id, actors["staff"], PAYMENT_STATUS_CAPTURED)


class TestDirectLedgerOperations:
    def test_mark_verified_closes_queue_entry(self, db_session, appointment, submit, staff, verification_for):
        payment = submit(appointment)
        payment = payment_service.mark_verified(payment.id, staff.id, "desk cash")
        assert payment.status == PAYMENT_STATUS_VERIFIED
        assert verification_for(payment.id).status == VERIFICATION_STATUS_VERIFIED

    def test_increment_attempt_keeps_status(self, db_session, appointment, submit):
        payment = submit(appointment)
        payment = payment_service.increment_attempt(payment.id)
        assert payment.attempt_count == 1
        assert payment.last_attempt_at is not None
        assert payment.status == PAYMENT_STATUS_PENDING_VERIFICATION

    def test_get_unknown_payment(self, db_session):
        with pytest.raises(NotFoundError):
            payment_service.get_payment(424242)


# =============================================================================
# REFUNDS
# =============================================================================


class TestRefunds:
    def test_patient_cancellation_inside_cutoff(self, db_session, appointment, submit, actors, patient, doctor_policy):
        payment = submit(appointment)
        payment_service.apply_verification_status(payment.id, actors["staff"], PAYMENT_STATUS_VERIFIED)

        cancel_time = appointment.scheduled_at - timedelta(minutes=700)
        payment = payment_service.request_refund(payment.id, patient.id, CANCELLED_BY_PATIENT, cancel_time)

        assert payment.status == PAYMENT_STATUS_REFUND_REQUESTED
        assert payment.refund_amount_cents == 800
        assert payment.refund_requested_by_user_id == patient.id
        assert payment.refund_requested_at is not None

        last = payment_service.get_status_events(payment.id)[-1]
        assert (last.from_status, last.to_status, last.amount_cents) == (
            PAYMENT_STATUS_VERIFIED, PAYMENT_STATUS_REFUND_REQUESTED, 800,
        )

    def test_patient_cancellation_outside_cutoff(self, db_session, appointment, submit, actors, patient, doctor_policy):
        payment = submit(appointment)
        payment_service.apply_verification_status(payment.id, actors["staff"], PAYMENT_STATUS_VERIFIED)

        cancel_time = appointment.scheduled_at - timedelta(minutes=1440)
        payment = payment_service.request_refund(payment.id, patient.id, CANCELLED_BY_PATIENT, cancel_time)
        assert payment.refund_amount_cents == 1000

    def test_default_policy_without_stored_policy(self, db_session, appointment, submit, actors, staff):
        payment = submit(appointment)
        payment_service.apply_verification_status(payment.id, actors["staff"], PAYMENT_STATUS_VERIFIED)
        payment = payment_service.request_refund(payment.id, staff.id, CANCELLED_BY_DOCTOR)
        assert payment.refund_amount_cents == 1000

    def test_refund_from_captured(self, db_session, appointment, submit, actors, staff, doctor_policy):
        payment = submit(appointment)
        payment_service.apply_verification_status(payment.id, actors["staff"], PAYMENT_STATUS_VERIFIED)
        payment_service.apply_verification_status(payment.id, actors["staff"], PAYMENT_STATUS_CAPTURED)

        cancel_time = appointment.scheduled_at - timedelta(minutes=60)
        payment = payment_service.request_refund(payment.id, staff.id, CANCELLED_BY_DOCTOR, cancel_time)
        assert payment.refund_amount_cents == 800

    def test_complete_refund(self, db_session, appointment, submit, actors, staff, patient):
        payment = submit(appointment)
        payment_service.apply_verification_status(payment.id, actors["staff"], PAYMENT_STATUS_VERIFIED)
        payment_service.request_refund(payment.id, patient.id, CANCELLED_BY_PATIENT)

        payment = payment_service.complete_refund(payment.id, staff.id)
        assert payment.status == PAYMENT_STATUS_REFUNDED
        assert payment.refunded_at is not None

        with pytest.raises(IllegalTransitionError):
            payment_service.complete_refund(payment.id, staff.id)

    def test_refund_pending_payment_is_illegal(self, db_session, appointment, submit, patient):
        payment = submit(appointment)
        with pytest.raises(IllegalTransitionError):
            payment_service.request_refund(payment.id, patient.id, CANCELLED_BY_PATIENT)
        assert payment_service.get_payment(payment.id).refund_amount_cents is None

    def test_refund_rejected_payment_needs_dispute(self, db_session, appointment, submit, actors, patient):
        payment = submit(appointment)
        payment_service.apply_verification_status(payment.id, actors["staff"], PAYMENT_STATUS_REJECTED)
        with pytest.raises(IllegalTransitionError):
            payment_service.request_refund(payment.id, patient.id, CANCELLED_BY_PATIENT)

    def test_unknown_cancelled_by(self, db_session, appointment, submit, actors, patient):
        payment = submit(appointment)
        payment_service.apply_verification_status(payment.id, actors["staff"], PAYMENT_STATUS_VERIFIED)
        with pytest.raises(ValidationError):
            payment_service.request_refund(payment.id, patient.id, "CLINIC")

    def test_pending_refund_holds_the_appointment(self, db_session, appointment, submit, actors, patient):
        payment = submit(appointment)
        payment_service.apply_verification_status(payment.id, actors["staff"], PAYMENT_STATUS_VERIFIED)
        payment_service.request_refund(payment.id, patient.id, CANCELLED_BY_PATIENT)

        with pytest.raises(InvalidStateError):
            submit(appointment)
        assert len(payment_service.list_payments(appointment_id=appointment.id)) == 1

    def test_refunded_payment_frees_the_appointment(self, db_session, appointment, submit, actors, patient, staff):
        payment = submit(appointment)
        payment_service.apply_verification_status(payment.id, actors["staff"], PAYMENT_STATUS_VERIFIED)
        payment_service.request_refund(payment.id, patient.id, CANCELLED_BY_PATIENT)
        payment_service.complete_refund(payment.id, staff.id)

        second = submit(appointment)
        assert second.status == PAYMENT_STATUS_PENDING_VERIFICATION


class TestVerificationGuards:
    def test_illegal_decision_leaves_verification_fields(self, db_session, appointment, submit, actors, staff, other_staff):
        payment = submit(appointment)
        payment = payment_service.apply_verification_status(
            payment.id, actors["staff"], PAYMENT_STATUS_VERIFIED, "first look",
        )
        verified_at = payment.verified_at

        with pytest.raises(IllegalTransitionError):
            payment_service._mark_rejected_locked(payment, other_staff.id, "second look")

        assert payment.verified_by_user_id == staff.id
        assert payment.verification_notes == "first look"
        assert payment.verified_at == verified_at
        assert payment.attempt_count == 1
        db_session.rollback()

    def test_mark_verified_twice_keeps_first_verifier(self, db_session, appointment, submit, staff, other_staff):
        payment = submit(appointment)
        payment_service.mark_verified(payment.id, staff.id, "desk cash")

        with pytest.raises(IllegalTransitionError):
            payment_service.mark_verified(payment.id, other_staff.id, "again")

        payment = payment_service.get_payment(payment.id)
        assert payment.verified_by_user_id == staff.id
        assert payment.verification_notes == "desk cash"


# =============================================================================
# PAYMENT ACCOUNT ROUTING
# =============================================================================


class TestPaymentAccountRouting:
    def test_independent_doctor_is_payee(self, db_session, appointment, submit, doctor):
        payment = submit(appointment)
        assert (payment.account_holder_type, payment.account_holder_id) == (ACCOUNT_HOLDER_DOCTOR, doctor.id)

    def test_doctor_level_organization_pays_the_doctor(self, db_session, make_appointment, make_organization, submit, doctor):
        organization = make_organization(PAYMENT_ACCOUNT_MODE_DOCTOR_LEVEL)
        payment = submit(make_appointment(organization=organization))
        assert (payment.account_holder_type, payment.account_holder_id) == (ACCOUNT_HOLDER_DOCTOR, doctor.id)

    def test_centralized_organization_is_payee(self, db_session, make_appointment, make_organization, submit):
        organization = make_organization(PAYMENT_ACCOUNT_MODE_CENTRALIZED_ORG)
        payment = submit(make_appointment(organization=organization))

        assert (payment.account_holder_type, payment.account_holder_id) == (ACCOUNT_HOLDER_ORGANIZATION, organization.id)
        outbox = db_session.query(OutboxEvent).filter_by(aggregate_id=payment.id).one()
        assert outbox.payload["account_holder_type"] == ACCOUNT_HOLDER_ORGANIZATION
        assert outbox.payload["account_holder_id"] == organization.id

    @pytest.mark.parametrize("legacy_mode", ["CENTRALIZED", "ORGANIZATION_LEVEL"])
    def test_legacy_centralized_modes(self, db_session, make_appointment, make_organization, legacy_mode):
        organization = make_organization(legacy_mode)
        account = resolve_for_appointment_id(make_appointment(organization=organization).id)
        assert account.mode == PAYMENT_ACCOUNT_MODE_CENTRALIZED_ORG
        assert account.account_holder_id == organization.id

    def test_unsupported_mode_refuses_submission(self, db_session, make_appointment, make_organization, submit):
        appointment = make_appointment(organization=make_organization("SPLIT"))
        with pytest.raises(InvalidStateError):
            submit(appointment)
        assert db_session.query(Payment).count() == 0

    def test_unknown_appointment(self, db_session):
        with pytest.raises(NotFoundError):
            resolve_for_appointment_id(31337)


# =============================================================================
# AMOUNTS / LISTING
# =============================================================================


class TestAmountConversion:
    @pytest.mark.parametrize(
        "amount,currency,expected",
        [
            (1000, "PKR", 100000),
            ("1500.50", "PKR", 150050),
            (0.1, "USD", 10),
            (500, "JPY", 500),
            ("1.234", "KWD", 1234),
        ],
    )
    def test_major_to_minor_units(self, amount, currency, expected):
        assert payment_service.amount_to_minor_units(amount, currency) == expected

    @pytest.mark.parametrize("amount", ["12.345", "abc", None, True, "NaN", "Infinity"])
    def test_rejects_unusable_amounts(self, amount):
        with pytest.raises(ValidationError):
            payment_service.amount_to_minor_units(amount, "PKR")


class TestListPayments:
    def test_filters(self, db_session, make_appointment, submit, actors, patient, other_patient, doctor):
        mine = submit(make_appointment())
        theirs = submit(make_appointment(patient_user=other_patient))
        payment_service.apply_verification_status(theirs.id, actors["staff"], PAYMENT_STATUS_VERIFIED)

        assert [p.id for p in payment_service.list_payments(patient_user_id=patient.id)] == [mine.id]
        assert [p.id for p in payment_service.list_payments(doctor_user_id=doctor.id)] == [theirs.id, mine.id]
        assert [p.id for p in payment_service.list_payments(status=PAYMENT_STATUS_VERIFIED)] == [theirs.id]

    def test_unknown_status(self, db_session):
        with pytest.raises(ValidationError):
            payment_service.list_payments(status="PAID")
