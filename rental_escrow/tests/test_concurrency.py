import gc
import threading
import unittest
from datetime import date, datetime, timedelta

from rental_escrow.tests import support
from rental_escrow.services import rental_service
from rental_escrow.services.claim_service import file_claim
from rental_escrow.services.errors import ConflictError, InvalidTransition
from rental_escrow.services.rental_service import Actor, ROLE_RENTER, approve_booking, confirm_return, load_booking


class ConcurrentApprovalTests(unittest.TestCase):
    WORKERS = 6

    def setUp(self):
        self.database = support.TempDatabase()
        self.gateway = support.FakePaymentGateway()
        db = self.database.Session()
        try:
            self.equipment = support.make_equipment(db)
            self.booking_ids = []
            for index in range(self.WORKERS):
                renter = Actor(actor_id=100 + index, role=ROLE_RENTER)
                booking = support.book(db, self.equipment, start=date(2024, 7, 1 + index % 2), end=date(2024, 7, 5), renter=renter)
                self.booking_ids.append(booking.BookingID)
        finally:
            db.close()

    def tearDown(self):
        self.database.close()

    def _approve_all(self, booking_ids):
        barrier = threading.Barrier(len(booking_ids))
        outcomes = {}

        def _worker(booking_id):
            db = self.database.Session()
            try:
                barrier.wait()
                approve_booking(db, support.OWNER, booking_id, self.gateway, now=support.BOOKED_AT)
                outcomes[booking_id] = "approved"
            except (ConflictError, InvalidTransition) as exc:
                outcomes[booking_id] = exc.kind
            finally:
                db.close()

        threads = [threading.Thread(target=_worker, args=(booking_id,)) for booking_id in booking_ids]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)
        return outcomes

    def test_overlapping_approvals_admit_exactly_one(self):
        outcomes = self._approve_all(self.booking_ids)

        self.assertEqual(len(outcomes), self.WORKERS)
        self.assertEqual(list(outcomes.values()).count("approved"), 1)
        self.assertEqual(len(self.gateway.captures), 1)

        db = self.database.Session()
        try:
            statuses = [load_booking(db, booking_id).Status for booking_id in self.booking_ids]
        finally:
            db.close()
        self.assertEqual(statuses.count("awaiting_pickup_inspection"), 1)
        self.assertEqual(statuses.count("pending"), self.WORKERS - 1)

    def test_racing_approvals_of_one_booking_capture_once(self):
        booking_id = self.booking_ids[0]

        outcomes = self._approve_all([booking_id] * 4)

        self.assertEqual(outcomes, {booking_id: "approved"})
        self.assertEqual(len(self.gateway.captures), 1)

    def test_lock_registries_drop_released_locks(self):
        self._approve_all(self.booking_ids[:2])
        gc.collect()

        for booking_id in self.booking_ids:
            self.assertNotIn(booking_id, rental_service._BOOKING_LOCKS)
        self.assertNotIn(self.equipment.EquipmentID, rental_service._EQUIPMENT_LOCKS)

    def test_waiters_share_the_held_lock(self):
        booking_id = self.booking_ids[0]
        with rental_service.booking_lock(booking_id):
            held = rental_service._BOOKING_LOCKS[booking_id]
            self.assertIs(rental_service._lock_for(rental_service._BOOKING_LOCKS, booking_id), held)
            self.assertTrue(held.locked())


class ConfirmOrClaimRaceTests(unittest.TestCase):
    def setUp(self):
        self.database = support.TempDatabase()
        self.gateway = support.FakePaymentGateway()
        db = self.database.Session()
        try:
            equipment = support.make_equipment(db)
            self.returned_at = datetime(2024, 6, 4, 18, 0)
            self.booking_id = support.advance_to_owner_review(db, self.gateway, equipment, self.returned_at).BookingID
        finally:
            db.close()

    def tearDown(self):
        self.database.close()

    def test_confirm_and_claim_on_one_booking_admit_exactly_one(self):
        now = self.returned_at + timedelta(hours=2)
        barrier = threading.Barrier(2)
        outcomes = {}

        def _confirm(db):
            confirm_return(db, support.OWNER, self.booking_id, self.gateway, now=now)

        def _claim(db):
            file_claim(db, support.OWNER, self.booking_id, support.claim_payload(), self.gateway, now=now)

        def _worker(name, operation):
            db = self.database.Session()
            try:
                barrier.wait()
                operation(db)
                outcomes[name] = "ok"
            except InvalidTransition as exc:
                outcomes[name] = exc.kind
            finally:
                db.close()

        threads = [
            threading.Thread(target=_worker, args=("confirm", _confirm)),
            threading.Thread(target=_worker, args=("claim", _claim)),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        self.assertEqual(sorted(outcomes.values()), ["InvalidTransition", "ok"])

        db = self.database.Session()
        try:
            booking = load_booking(db, self.booking_id)
        finally:
            db.close()
        if outcomes["confirm"] == "ok":
            self.assertEqual(booking.Status, "completed")
            self.assertIsNone(booking.Claim)
            self.assertEqual(len(self.gateway.refunds), 1)
        else:
            self.assertEqual(booking.Status, "disputed")
            self.assertIsNotNone(booking.Claim)
            self.assertEqual(self.gateway.refunds, [])


if __name__ == "__main__":
    unittest.main()
