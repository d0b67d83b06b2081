import unittest
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.exc import OperationalError

from rental_escrow.tests import support
from rental_escrow.services.claim_service import file_claim, resolve_claim, respond_to_claim
from rental_escrow.services.errors import ForbiddenError, InvalidTransition, PolicyViolation
from rental_escrow.services.escrow_service import ESCROW_HELD, ESCROW_RELEASED_TO_OWNER, ESCROW_SPLIT
from rental_escrow.services.rental_service import (
    confirm_return,
    get_booking,
    load_booking,
    serialize_booking,
    sweep_expired_claim_windows,
)

RETURNED_AT = datetime(2024, 6, 4, 18, 0)
INSIDE_WINDOW = RETURNED_AT + timedelta(hours=3)
AFTER_WINDOW = RETURNED_AT + timedelta(hours=48, minutes=1)


class ClaimWindowExpiryTests(unittest.TestCase):
    def setUp(self):
        self.database = support.TempDatabase()
        self.db = self.database.Session()
        self.gateway = support.FakePaymentGateway()
        self.equipment = support.make_equipment(self.db, claim_window_hours=48)
        self.booking = support.advance_to_owner_review(self.db, self.gateway, self.equipment, RETURNED_AT)

    def tearDown(self):
        self.db.close()
        self.database.close()

    def test_read_after_deadline_completes_and_releases_deposit(self):
        booking = get_booking(self.db, self.booking.BookingID, self.gateway, now=AFTER_WINDOW)

        self.assertEqual(booking.Status, "completed")
        self.assertEqual(booking.CompletedAt, AFTER_WINDOW)
        self.assertEqual(booking.Payment.EscrowStatus, ESCROW_RELEASED_TO_OWNER)
        self.assertEqual(booking.Payment.DepositReturned, Decimal("100.00"))
        self.assertEqual(self.gateway.refunded_total, Decimal("100.00"))

    def test_read_before_deadline_changes_nothing(self):
        booking = get_booking(self.db, self.booking.BookingID, self.gateway, now=RETURNED_AT + timedelta(hours=47, minutes=59))

        self.assertEqual(booking.Status, "pending_owner_review")
        self.assertTrue(serialize_booking(booking, RETURNED_AT + timedelta(hours=47))["claimWindow"]["open"])
        self.assertEqual(self.gateway.refunds, [])

    def test_sweep_settles_once(self):
        first = sweep_expired_claim_windows(self.db, self.gateway, now=AFTER_WINDOW)
        second = sweep_expired_claim_windows(self.db, self.gateway, now=AFTER_WINDOW + timedelta(minutes=5))
        get_booking(self.db, self.booking.BookingID, self.gateway, now=AFTER_WINDOW + timedelta(minutes=10))

        self.assertEqual(first, {"checked": 1, "completed": [self.booking.BookingID], "failed": []})
        self.assertEqual(second, {"checked": 0, "completed": [], "failed": []})
        self.assertEqual(len(self.gateway.refunds), 1)

    def test_refund_outage_keeps_booking_in_review(self):
        self.gateway.fail_refund = True

        booking = get_booking(self.db, self.booking.BookingID, self.gateway, now=AFTER_WINDOW)
        summary = sweep_expired_claim_windows(self.db, self.gateway, now=AFTER_WINDOW)

        self.assertEqual(booking.Status, "pending_owner_review")
        self.assertEqual(booking.Payment.EscrowStatus, ESCROW_HELD)
        self.assertEqual(summary["failed"], [self.booking.BookingID])

        self.gateway.fail_refund = False
        summary = sweep_expired_claim_windows(self.db, self.gateway, now=AFTER_WINDOW + timedelta(minutes=5))
        self.assertEqual(summary["completed"], [self.booking.BookingID])

    def test_retry_after_failed_commit_does_not_refund_twice(self):
        support.fail_next_commit(self.db)

        with self.assertRaises(OperationalError):
            sweep_expired_claim_windows(self.db, self.gateway, now=AFTER_WINDOW)
        self.assertEqual(load_booking(self.db, self.booking.BookingID).Status, "pending_owner_review")

        summary = sweep_expired_claim_windows(self.db, self.gateway, now=AFTER_WINDOW + timedelta(minutes=5))

        booking = load_booking(self.db, self.booking.BookingID)
        self.assertEqual(summary["completed"], [self.booking.BookingID])
        self.assertEqual(booking.Status, "completed")
        self.assertEqual(self.gateway.refunded_total, Decimal("100.00"))
        self.assertEqual(self.gateway.replayed_refunds, [f"booking-{self.booking.BookingID}-deposit-release"])

    def test_confirm_after_deadline_returns_auto_completed_booking(self):
        booking = confirm_return(self.db, support.OWNER, self.booking.BookingID, self.gateway, now=AFTER_WINDOW)

        self.assertEqual(booking.Status, "completed")
        self.assertEqual(len(self.gateway.refunds), 1)

    def test_claim_after_deadline_is_closed(self):
        with self.assertRaises(PolicyViolation) as ctx:
            file_claim(self.db, support.OWNER, self.booking.BookingID, support.claim_payload(), self.gateway, now=AFTER_WINDOW)

        self.assertEqual(ctx.exception.code, "claim_window_closed")
        booking = load_booking(self.db, self.booking.BookingID)
        self.assertEqual(booking.Status, "completed")
        self.assertIsNone(booking.Claim)

        with self.assertRaises(PolicyViolation) as ctx:
            file_claim(self.db, support.OWNER, self.booking.BookingID, support.claim_payload(), self.gateway, now=AFTER_WINDOW + timedelta(hours=1))
        self.assertEqual(ctx.exception.code, "claim_window_closed")


class DamageClaimTests(unittest.TestCase):
    def setUp(self):
        self.database = support.TempDatabase()
        self.db = self.database.Session()
        self.gateway = support.FakePaymentGateway()
        self.equipment = support.make_equipment(self.db)
        self.booking = support.advance_to_owner_review(
            self.db,
            self.gateway,
            self.equipment,
            RETURNED_AT,
            return_items={"tire": "damaged", "frame": "good"},
        )

    def tearDown(self):
        self.db.close()
        self.database.close()

    def _file(self, cost=40.0):
        return file_claim(self.db, support.OWNER, self.booking.BookingID, support.claim_payload(cost), self.gateway, now=INSIDE_WINDOW)

    def test_filing_holds_funds_and_snapshots_degraded_items(self):
        booking = self._file()

        self.assertEqual(booking.Status, "disputed")
        self.assertEqual(booking.Claim.Status, "pending")
        self.assertEqual(booking.Payment.EscrowStatus, ESCROW_HELD)
        claim = serialize_booking(booking, INSIDE_WINDOW)["claim"]
        self.assertEqual(claim["degradedItems"], [{"name": "tire", "from": "good", "to": "damaged"}])
        self.assertEqual(claim["estimatedCost"], 40.0)

    def test_disputed_booking_does_not_auto_complete(self):
        self._file()

        booking = get_booking(self.db, self.booking.BookingID, self.gateway, now=AFTER_WINDOW + timedelta(days=5))
        summary = sweep_expired_claim_windows(self.db, self.gateway, now=AFTER_WINDOW + timedelta(days=5))

        self.assertEqual(booking.Status, "disputed")
        self.assertEqual(summary["checked"], 0)

    def test_renter_accepting_splits_the_deposit(self):
        self._file(40.0)

        booking = respond_to_claim(self.db, support.RENTER, self.booking.BookingID, "accept", self.gateway, now=INSIDE_WINDOW)

        self.assertEqual(booking.Status, "completed")
        self.assertEqual(booking.Claim.Status, "resolved")
        self.assertEqual(booking.Payment.EscrowStatus, ESCROW_SPLIT)
        self.assertEqual(booking.Payment.ClaimDeduction, Decimal("40.00"))
        self.assertEqual(booking.Payment.DepositReturned, Decimal("60.00"))
        self.assertEqual(booking.Payment.OwnerPayout, Decimal("115.00"))
        self.assertEqual(self.gateway.refunded_total, Decimal("60.00"))

    def test_dispute_then_support_resolution(self):
        self._file(40.0)
        booking = respond_to_claim(self.db, support.RENTER, self.booking.BookingID, "dispute", self.gateway, "it was already worn", now=INSIDE_WINDOW)
        self.assertEqual(booking.Status, "disputed")
        self.assertEqual(booking.Claim.Status, "disputed")
        self.assertEqual(self.gateway.refunds, [])

        with self.assertRaises(InvalidTransition):
            respond_to_claim(self.db, support.RENTER, self.booking.BookingID, "accept", self.gateway, now=INSIDE_WINDOW)

        booking = resolve_claim(self.db, support.SUPPORT, self.booking.BookingID, "resolved", self.gateway, agreed_cost=25, now=INSIDE_WINDOW)

        self.assertEqual(booking.Status, "completed")
        self.assertEqual(booking.Claim.AgreedCost, Decimal("25.00"))
        self.assertEqual(booking.Payment.DepositReturned, Decimal("75.00"))

    def test_support_rejection_returns_full_deposit(self):
        self._file()

        booking = resolve_claim(self.db, support.SUPPORT, self.booking.BookingID, "rejected", self.gateway, notes="no evidence", now=INSIDE_WINDOW)

        self.assertEqual(booking.Claim.Status, "rejected")
        self.assertEqual(booking.Payment.EscrowStatus, ESCROW_RELEASED_TO_OWNER)
        self.assertEqual(booking.Payment.DepositReturned, Decimal("100.00"))

    def test_owner_may_only_withdraw(self):
        self._file()

        with self.assertRaises(PolicyViolation) as ctx:
            resolve_claim(self.db, support.OWNER, self.booking.BookingID, "resolved", self.gateway, agreed_cost=40, now=INSIDE_WINDOW)
        self.assertEqual(ctx.exception.code, "owner_may_only_withdraw")

        booking = resolve_claim(self.db, support.OWNER, self.booking.BookingID, "rejected", self.gateway, now=INSIDE_WINDOW)
        self.assertEqual(booking.Claim.Status, "rejected")
        self.assertEqual(booking.Status, "completed")

    def test_second_claim_is_refused(self):
        self._file()

        with self.assertRaises(PolicyViolation) as ctx:
            self._file(10.0)
        self.assertEqual(ctx.exception.code, "claim_already_filed")

    def test_only_the_owner_files_and_only_the_renter_responds(self):
        with self.assertRaises(ForbiddenError):
            file_claim(self.db, support.RENTER, self.booking.BookingID, support.claim_payload(), self.gateway, now=INSIDE_WINDOW)
        self._file()
        with self.assertRaises(ForbiddenError):
            respond_to_claim(self.db, support.OWNER, self.booking.BookingID, "accept", self.gateway, now=INSIDE_WINDOW)


if __name__ == "__main__":
    unittest.main()
