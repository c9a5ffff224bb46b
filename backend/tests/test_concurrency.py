# Overview: Threaded races against a file-backed database for queue claims, decisions and dispute creation.

"""
Concurrency tests for the verification queue and dispute engine.

Each test runs real threads, each with its own app context and session,
against a temporary SQLite file so the races go through the database.
"""
import os
import tempfile
import threading
import unittest
from datetime import timedelta

from healthpay import create_app
from healthpay.errors import (
    AlreadyClaimedError,
    AlreadyDecidedError,
    DuplicateDisputeError,
    IllegalTransitionError,
    InvalidStateError,
    NotClaimedError,
)
from healthpay.extensions import db
from healthpay.models import Appointment, Payment, PaymentDispute, PaymentStatusEvent, PaymentVerification, User
from healthpay.models.auth import USER_KIND_PATIENT, USER_KIND_STAFF, USER_KIND_DOCTOR
from healthpay.models.payments import (
    METHOD_CASH,
    PAYMENT_STATUS_PENDING_VERIFICATION,
    PAYMENT_STATUS_REJECTED,
    PAYMENT_STATUS_VERIFIED,
    VERIFICATION_STATUS_VERIFIED,
)
from healthpay.services import dispute_service, payment_service, verification_service
from healthpay.services.permission_service import Actor
from healthpay.time_utils import utcnow


WORKERS = 10

DECISION_RACE_LOSSES = (
    AlreadyClaimedError,
    AlreadyDecidedError,
    IllegalTransitionError,
    InvalidStateError,
    NotClaimedError,
)


class ConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
            "BCRYPT_LOG_ROUNDS": 4,
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            def make_user(username, kind):
                user = User(
                    username=username,
                    email=f"{username}@example.com",
                    password_hash="dummy",
                    kind=kind,
                    is_active=True,
                )
                db.session.add(user)
                db.session.commit()
                return user.id

            self.patient_id = make_user("concurrent_patient", USER_KIND_PATIENT)
            self.doctor_id = make_user("concurrent_doctor", USER_KIND_DOCTOR)
            self.staff_ids = [make_user(f"concurrent_staff_{i}", USER_KIND_STAFF) for i in range(WORKERS)]

            appointment = Appointment(
                patient_user_id=self.patient_id,
                doctor_user_id=self.doctor_id,
                scheduled_at=utcnow() + timedelta(days=2),
            )
            db.session.add(appointment)
            db.session.commit()

            payment = payment_service.submit_payment(
                appointment_id=appointment.id,
                submitted_by_user_id=self.patient_id,
                amount_cents=1000,
                method=METHOD_CASH,
            )
            self.payment_id = payment.id
            self.verification_id = (
                db.session.query(PaymentVerification).filter_by(payment_id=payment.id).one().id
            )

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _run(self, targets):
        threads = [threading.Thread(target=t) for t in targets]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

    def test_claim_next_single_winner(self):
        results = []
        lock = threading.Lock()

        def worker(verifier_id):
            def _claim():
                with self.app.app_context():
                    try:
                        claimed = verification_service.claim_next(verifier_id)
                        with lock:
                            results.append(claimed.id if claimed else None)
                    except Exception as exc:
                        with lock:
                            results.append(exc)
                    finally:
                        db.session.remove()
            return _claim

        self._run([worker(staff_id) for staff_id in self.staff_ids])

        self.assertEqual(len(results), WORKERS)
        self.assertFalse([r for r in results if isinstance(r, Exception)])
        self.assertEqual(results.count(self.verification_id), 1)
        self.assertEqual(results.count(None), WORKERS - 1)

        with self.app.app_context():
            verification = db.session.get(PaymentVerification, self.verification_id)
            self.assertIn(verification.verifier_user_id, self.staff_ids)

    def test_direct_claim_single_winner(self):
        results = []
        lock = threading.Lock()

        def worker(verifier_id):
            def _claim():
                with self.app.app_context():
                    try:
                        verification_service.claim(self.verification_id, verifier_id)
                        with lock:
                            results.append("claimed")
                    except Exception as exc:
                        with lock:
                            results.append(exc)
                    finally:
                        db.session.remove()
            return _claim

        self._run([worker(staff_id) for staff_id in self.staff_ids])

        self.assertEqual(results.count("claimed"), 1)
        losers = [r for r in results if r != "claimed"]
        self.assertTrue(all(isinstance(r, AlreadyClaimedError) for r in losers), losers)

    def _verified_events(self):
        return db.session.query(PaymentStatusEvent).filter_by(
            payment_id=self.payment_id,
            from_status=PAYMENT_STATUS_PENDING_VERIFICATION,
            to_status=PAYMENT_STATUS_VERIFIED,
        ).count()

    def test_verify_decision_single_winner(self):
        results = []
        lock = threading.Lock()
        barrier = threading.Barrier(2)

        def worker(staff_id):
            def _verify():
                with self.app.app_context():
                    try:
                        barrier.wait()
                        payment_service.apply_verification_status(
                            self.payment_id,
                            Actor(kind=USER_KIND_STAFF, id=staff_id),
                            PAYMENT_STATUS_VERIFIED,
                        )
                        with lock:
                            results.append("verified")
                    except Exception as exc:
                        with lock:
                            results.append(exc)
                    finally:
                        db.session.remove()
            return _verify

        self._run([worker(staff_id) for staff_id in self.staff_ids[:2]])

        self.assertEqual(results.count("verified"), 1)
        losers = [r for r in results if r != "verified"]
        # The loser either loses the claim or finds the payment already decided.
        self.assertTrue(all(isinstance(r, DECISION_RACE_LOSSES) for r in losers), losers)

        with self.app.app_context():
            payment = db.session.get(Payment, self.payment_id)
            self.assertEqual(payment.status, PAYMENT_STATUS_VERIFIED)
            self.assertEqual(self._verified_events(), 1)

    def test_decide_by_holder_single_winner(self):
        holder_id = self.staff_ids[0]
        with self.app.app_context():
            verification_service.claim(self.verification_id, holder_id)

        results = []
        lock = threading.Lock()
        barrier = threading.Barrier(2)

        def _decide():
            with self.app.app_context():
                try:
                    barrier.wait()
                    verification_service.decide(self.verification_id, holder_id, VERIFICATION_STATUS_VERIFIED)
                    with lock:
                        results.append("decided")
                except Exception as exc:
                    with lock:
                        results.append(exc)
                finally:
                    db.session.remove()

        self._run([_decide, _decide])

        self.assertEqual(results.count("decided"), 1)
        losers = [r for r in results if r != "decided"]
        self.assertTrue(all(isinstance(r, DECISION_RACE_LOSSES) for r in losers), losers)

        with self.app.app_context():
            self.assertEqual(self._verified_events(), 1)

    def test_raise_dispute_single_winner(self):
        with self.app.app_context():
            payment_service.apply_verification_status(
                self.payment_id,
                Actor(kind=USER_KIND_STAFF, id=self.staff_ids[0]),
                PAYMENT_STATUS_REJECTED,
            )

        actors = [Actor(kind=USER_KIND_PATIENT, id=self.patient_id), Actor(kind=USER_KIND_DOCTOR, id=self.doctor_id)]
        actors += [Actor(kind=USER_KIND_STAFF, id=staff_id) for staff_id in self.staff_ids[:WORKERS - 2]]

        results = []
        lock = threading.Lock()

        def worker(actor):
            def _raise():
                with self.app.app_context():
                    try:
                        dispute_service.raise_dispute(self.verification_id, actor, "contested")
                        with lock:
                            results.append("raised")
                    except Exception as exc:
                        with lock:
                            results.append(exc)
                    finally:
                        db.session.remove()
            return _raise

        self._run([worker(actor) for actor in actors])

        self.assertEqual(results.count("raised"), 1)
        losers = [r for r in results if r != "raised"]
        self.assertTrue(all(isinstance(r, DuplicateDisputeError) for r in losers), losers)

        with self.app.app_context():
            self.assertEqual(
                db.session.query(PaymentDispute).filter_by(verification_id=self.verification_id).count(), 1
            )
            verification = db.session.get(PaymentVerification, self.verification_id)
            self.assertTrue(verification.disputed)


if __name__ == "__main__":
    unittest.main()
