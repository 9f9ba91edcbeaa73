"""
Locust Load Test Suite

Run scenarios:
  locust -f locustfile.py --tags concurrency  # Test overbooking
  locust -f locustfile.py --tags churn        # Cancel / promote / accept
  locust -f locustfile.py --tags edge         # Test bad input
  locust -f locustfile.py                     # All tests

Members need an entitlement to book. Seed studio 1 with unlimited
subscriptions for the member id range first:

  INSERT INTO member_entitlements (member_id, studio_id, kind, remaining, active)
  SELECT g, 1, 'subscription', NULL, true FROM generate_series(1, 100000) g;
"""

import random
import uuid
from locust import HttpUser, task, between, tag, events
from datetime import datetime, timezone, timedelta

STUDIO_ID = 1
MEMBER_POOL = 100000

# Shared state
CLASS_IDS = []
CONCURRENCY_CLASS_ID = None


def random_member() -> int:
    return random.randint(1, MEMBER_POOL)


def class_payload(max_capacity: int) -> dict:
    starts_at = datetime.now(timezone.utc) + timedelta(days=random.randint(2, 30))
    return {
        "studio_id": STUDIO_ID,
        "title": f"Load Test Flow {random.randint(1, 10000)}",
        "starts_at": starts_at.isoformat(),
        "ends_at": (starts_at + timedelta(hours=1)).isoformat(),
        "max_capacity": max_capacity,
    }


@events.test_start.add_listener
def on_test_start(environment, **kwargs):
    print("\n" + "=" * 60)
    print("SETUP: class instances are created by the first user of each scenario")
    print("=" * 60)


class ConcurrencyUser(HttpUser):
    """
    TEST 1: Concurrency - 100 members -> 10 seats

    Run: locust -f locustfile.py --tags concurrency -u 100 -r 50 --run-time 30s

    After test, verify:
      SELECT COUNT(*) FROM reservations
      WHERE class_instance_id = X AND status IN ('booked', 'confirmed', 'checked_in');
    Should be <= 10, and the waitlist positions 0..n-1 without gaps:
      SELECT waitlist_position FROM reservations
      WHERE class_instance_id = X AND status = 'waitlisted' ORDER BY 1;
    """
    wait_time = between(0, 0.1)

    def on_start(self):
        global CONCURRENCY_CLASS_ID
        self.member_id = random_member()
        if not CONCURRENCY_CLASS_ID:
            resp = self.client.post("/api/v1/classes", json=class_payload(10))
            if resp.status_code == 201:
                CONCURRENCY_CLASS_ID = resp.json()["id"]
                print(f"\n✓ Created class {CONCURRENCY_CLASS_ID} with 10 seats\n")

    @tag("concurrency")
    @task
    def reserve_limited_seats(self):
        """All members fight for the same 10 seats; the rest are waitlisted."""
        if not CONCURRENCY_CLASS_ID:
            return

        with self.client.post(
            "/api/v1/reservations",
            json={"class_instance_id": CONCURRENCY_CLASS_ID, "member_id": self.member_id},
            headers={"Idempotency-Key": f"load-{self.member_id}-{CONCURRENCY_CLASS_ID}"},
            name="/api/v1/reservations [contended]",
            catch_response=True,
        ) as resp:
            if resp.status_code in (200, 201):
                resp.success()
            elif resp.status_code == 409:
                resp.success()  # Expected: duplicate or retries exhausted
            else:
                resp.failure(f"Unexpected: {resp.status_code}")


class ChurnUser(HttpUser):
    """
    TEST 2: Churn - book, cancel, accept promotions

    Run: locust -f locustfile.py --tags churn -u 100 -r 20 --run-time 60s

    Every cancellation frees a seat that must go to exactly one waitlisted
    member. Compare booked_count on GET /classes/{id} with the roster.
    """
    wait_time = between(0.1, 0.5)

    def on_start(self):
        self.member_id = random_member()
        self.reservations = []
        if len(CLASS_IDS) < 5:
            resp = self.client.post("/api/v1/classes", json=class_payload(random.randint(5, 20)))
            if resp.status_code == 201:
                CLASS_IDS.append(resp.json()["id"])

    @tag("churn")
    @task(5)
    def reserve(self):
        if not CLASS_IDS:
            return
        resp = self.client.post(
            "/api/v1/reservations",
            json={"class_instance_id": random.choice(CLASS_IDS), "member_id": self.member_id},
            name="/api/v1/reservations",
        )
        if resp.status_code == 201:
            self.reservations.append(resp.json()["id"])

    @tag("churn")
    @task(3)
    def cancel(self):
        if not self.reservations:
            return
        reservation_id = self.reservations.pop(random.randrange(len(self.reservations)))
        self.client.post(
            f"/api/v1/reservations/{reservation_id}/cancel",
            json={"actor": "member", "actor_id": self.member_id},
            headers={"Idempotency-Key": str(uuid.uuid4())},
            name="/api/v1/reservations/{id}/cancel",
        )

    @tag("churn")
    @task(3)
    def accept_promotion(self):
        for reservation_id in list(self.reservations):
            resp = self.client.get(f"/api/v1/reservations/{reservation_id}", name="/api/v1/reservations/{id}")
            if resp.status_code == 200 and resp.json()["status"] == "promoted":
                self.client.post(
                    f"/api/v1/reservations/{reservation_id}/confirm",
                    json={"member_id": self.member_id},
                    name="/api/v1/reservations/{id}/confirm [accept]",
                )
                return

    @tag("churn", "read")
    @task(2)
    def read_roster(self):
        if CLASS_IDS:
            self.client.get(f"/api/v1/classes/{random.choice(CLASS_IDS)}/roster", name="/api/v1/classes/{id}/roster")

    @tag("churn")
    @task(1)
    def health_check(self):
        self.client.get("/health")


class EdgeCaseUser(HttpUser):
    """
    TEST 3: Edge cases - Bad input handling

    Run: locust -f locustfile.py --tags edge -u 20 -r 5 --run-time 30s

    System should NOT crash, return proper error codes.
    """
    wait_time = between(0.5, 1.5)

    def _expect(self, resp, allowed):
        if resp.status_code in allowed:
            resp.success()
        else:
            resp.failure(f"Expected {allowed}, got {resp.status_code}")

    @tag("edge")
    @task
    def unknown_class(self):
        with self.client.post(
            "/api/v1/reservations",
            json={"class_instance_id": 999999999, "member_id": random_member()},
            catch_response=True,
        ) as resp:
            self._expect(resp, (404,))

    @tag("edge")
    @task
    def negative_capacity(self):
        with self.client.post("/api/v1/classes", json=class_payload(-5), catch_response=True) as resp:
            self._expect(resp, (422,))

    @tag("edge")
    @task
    def inverted_window(self):
        payload = class_payload(10)
        payload["ends_at"], payload["starts_at"] = payload["starts_at"], payload["ends_at"]
        with self.client.post("/api/v1/classes", json=payload, catch_response=True) as resp:
            self._expect(resp, (422,))

    @tag("edge")
    @task
    def malformed_json(self):
        with self.client.post(
            "/api/v1/reservations",
            data="not json at all",
            headers={"Content-Type": "application/json"},
            catch_response=True,
        ) as resp:
            self._expect(resp, (400, 422))

    @tag("edge")
    @task
    def cancel_unknown_reservation(self):
        with self.client.post(
            "/api/v1/reservations/999999999/cancel",
            json={"actor": "staff", "actor_id": 1},
            catch_response=True,
        ) as resp:
            self._expect(resp, (404,))
