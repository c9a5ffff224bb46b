"""
HealthPay Load Testing with Locust

Run with:
    locust -f tests/stress/locustfile.py --host http://127.0.0.1:5001

Or headless:
    locust -f tests/stress/locustfile.py --host http://127.0.0.1:5001 \
           --users 10 --spawn-rate 2 --run-time 60s --headless

Seed users first with `flask system init`. Patient submissions target the
appointment ids in HEALTHPAY_LOAD_APPOINTMENT_IDS (comma separated).

Pass thresholds:
- p95 response time < 500ms for reads
- p95 response time < 1000ms for writes
- Error rate < 1%
"""

import os
import time
import random
from typing import Optional, Dict, List

from locust import HttpUser, task, between, events


# =============================================================================
# CONFIGURATION
# =============================================================================

# Accounts created by `flask system init`
STAFF_USERS = [
    {"username": "staff", "password": "Password123!"},
    {"username": "doctor", "password": "Password123!"},
    {"username": "admin", "password": "Password123!"},
]
PATIENT_USERS = [
    {"username": "patient", "password": "Password123!"},
]

APPOINTMENT_IDS = [
    int(value) for value in os.environ.get("HEALTHPAY_LOAD_APPOINTMENT_IDS", "1").split(",") if value.strip()
]

# Names whose thresholds are the write budget
WRITE_ENDPOINTS = ("claim", "release", "decide", "submit")


# =============================================================================
# METRICS TRACKING
# =============================================================================

class MetricsCollector:
    """Collect and report metrics."""

    def __init__(self):
        self.request_counts: Dict[str, int] = {}
        self.error_counts: Dict[str, int] = {}
        self.response_times: Dict[str, List[float]] = {}

    def record(self, name: str, response_time: float, success: bool):
        if name not in self.request_counts:
            self.request_counts[name] = 0
            self.error_counts[name] = 0
            self.response_times[name] = []

        self.request_counts[name] += 1
        if not success:
            self.error_counts[name] += 1
        self.response_times[name].append(response_time)

    def get_summary(self) -> Dict:
        summary = {}
        for name in self.request_counts:
            times = sorted(self.response_times[name])
            count = len(times)
            if count == 0:
                continue

            p50_idx = int(count * 0.50)
            p95_idx = int(count * 0.95)

            summary[name] = {
                "count": self.request_counts[name],
                "errors": self.error_counts[name],
                "error_rate": self.error_counts[name] / self.request_counts[name] * 100,
                "avg_ms": sum(times) / count,
                "p50_ms": times[p50_idx] if p50_idx < count else times[-1],
                "p95_ms": times[p95_idx] if p95_idx < count else times[-1],
            }
        return summary


metrics = MetricsCollector()


# =============================================================================
# USER BEHAVIORS
# =============================================================================

class HealthPayUser(HttpUser):
    """Base user that authenticates on start."""
    wait_time = between(0.5, 2)
    abstract = True

    credentials: List[Dict] = []
    token: Optional[str] = None

    def on_start(self):
        creds = random.choice(self.credentials)
        response = self.client.post(
            "/api/auth/login",
            json={"username": creds["username"], "password": creds["password"]},
            name="auth/login"
        )
        if response.status_code == 200:
            self.token = response.json().get("token")

    def get_headers(self) -> Dict:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def timed(self, name: str, method: str, path: str, ok_statuses=(200,), **kwargs):
        start = time.time()
        response = getattr(self.client, method)(path, headers=self.get_headers(), name=name, **kwargs)
        metrics.record(name, (time.time() - start) * 1000, response.status_code in ok_statuses)
        return response


class VerifierUser(HealthPayUser):
    """
    Staff working the verification queue.

    Many verifiers calling claim_next at once is the contention the queue
    must survive: each item goes to exactly one of them.
    """
    weight = 3
    credentials = STAFF_USERS

    @task(5)
    def list_queue(self):
        self.timed("verifications/queue", "get", "/api/verifications/queue", params={"limit": 50})

    @task(3)
    def claim_and_release(self):
        response = self.timed("verifications/claim", "post", "/api/verifications/claim", ok_statuses=(200, 204))
        if response.status_code != 200:
            return
        verification_id = response.json()["verification"]["id"]
        self.timed(
            "verifications/release", "post", f"/api/verifications/{verification_id}/release",
            ok_statuses=(200, 409),
        )

    @task(1)
    def claim_and_decide(self):
        response = self.timed("verifications/claim", "post", "/api/verifications/claim", ok_statuses=(200, 204))
        if response.status_code != 200:
            return
        verification_id = response.json()["verification"]["id"]
        self.timed(
            "verifications/decide", "post", f"/api/verifications/{verification_id}/decide",
            json={"decision": random.choice(["VERIFIED", "REJECTED"]), "notes": "Load test decision"},
            ok_statuses=(200, 409),
        )

    @task(2)
    def list_disputes(self):
        self.timed("disputes/list", "get", "/api/disputes", params={"stage": "STAFF_REVIEW"})

    @task(1)
    def health_check(self):
        self.timed("system/health", "get", "/health")


class PatientUser(HealthPayUser):
    """Patients submitting payments and reading them back."""
    weight = 1
    credentials = PATIENT_USERS

    payment_ids: List[int] = []

    @task(2)
    def submit_payment(self):
        appointment_id = random.choice(APPOINTMENT_IDS)
        response = self.timed(
            "payments/submit", "post", f"/api/payments/{appointment_id}",
            json={
                "amount_cents": random.randint(1000, 10000),
                "method": random.choice(["CASH", "BANK_TRANSFER", "WALLET"]),
                "transaction_reference": f"LOAD-{random.randint(1, 10**6)}",
            },
            ok_statuses=(201, 404, 409),
        )
        if response.status_code == 201:
            self.payment_ids.append(response.json()["payment"]["id"])

    @task(4)
    def get_payment(self):
        if not self.payment_ids:
            return
        payment_id = random.choice(self.payment_ids[-10:])
        self.timed("payments/get", "get", f"/api/payments/{payment_id}")

    @task(2)
    def get_payment_events(self):
        if not self.payment_ids:
            return
        payment_id = random.choice(self.payment_ids[-10:])
        self.timed("payments/events", "get", f"/api/payments/{payment_id}/events")


# =============================================================================
# EVENT HANDLERS
# =============================================================================

@events.test_stop.add_listener
def on_test_stop(environment, **kwargs):
    """Print summary when test stops."""
    print("\n" + "=" * 80)
    print("LOAD TEST SUMMARY")
    print("=" * 80)

    summary = metrics.get_summary()

    print(f"\n{'Endpoint':<30} {'Count':>8} {'Errors':>8} {'Err%':>8} {'Avg(ms)':>10} {'P95(ms)':>10}")
    print("-" * 80)

    total_requests = 0
    total_errors = 0
    all_pass = True

    for name, stats in sorted(summary.items()):
        total_requests += stats["count"]
        total_errors += stats["errors"]

        p95_threshold = 1000 if any(word in name for word in WRITE_ENDPOINTS) else 500
        passed = stats["p95_ms"] < p95_threshold and stats["error_rate"] < 1

        status = "PASS" if passed else "FAIL"
        if not passed:
            all_pass = False

        print(f"{name:<30} {stats['count']:>8} {stats['errors']:>8} {stats['error_rate']:>7.2f}% {stats['avg_ms']:>9.1f} {stats['p95_ms']:>9.1f} [{status}]")

    print("-" * 80)
    print(f"{'TOTAL':<30} {total_requests:>8} {total_errors:>8} {total_errors/max(total_requests,1)*100:>7.2f}%")
    print("=" * 80)

    if all_pass:
        print("\n[PASS] All endpoints within thresholds")
    else:
        print("\n[FAIL] Some endpoints exceeded thresholds")
        print("  - Reads (queue/get/list): P95 < 500ms, Error rate < 1%")
        print("  - Writes (claim/decide/submit): P95 < 1000ms, Error rate < 1%")

    print("=" * 80)
