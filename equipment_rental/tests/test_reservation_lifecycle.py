import random
import unittest
from datetime import date

from sqlalchemy.dialects import mssql, postgresql

from support import add_equipment, add_reservation, add_user, bound_ids, close_session, make_session

from models.rental_models import Asset, AssetHistory, AuditLog, Repair, ReservationItemAsset
from schemas.reservations import CreateReservationDto
from services.errors import InsufficientStockError, InvalidTransitionError, NotFoundError
from services.reservation_service import (
    check_availability,
    create_reservation,
    equipment_calendar,
    equipment_lock_statement,
    generate_reservation_number,
    reservations_for_period,
    set_status,
    update_assignment,
)


class LifecycleTestCase(unittest.TestCase):
    def setUp(self):
        self.db = make_session()
        self.user = add_user(self.db)
        self.camera, self.units = add_equipment(self.db, "Camera X", ("available", "available"))
        self.unit_ids = {asset.AssetID for asset in self.units}

    def tearDown(self):
        close_session(self.db)

    def reserve(self, start, end, lines=None, status="pending"):
        return add_reservation(self.db, self.user, start, end, lines or [(self.camera, 1)], status=status)


class AllocationScenarioTests(LifecycleTestCase):
    def test_overlapping_request_is_refused_once_stock_is_bound(self):
        r1 = self.reserve("2025-03-01", "2025-03-03", [(self.camera, 2)])
        set_status(self.db, r1.ReservationID, "approved", rng=random.Random(1))
        self.assertEqual(set(bound_ids(r1)[0]), self.unit_ids)

        r2 = self.reserve("2025-03-02", "2025-03-04")
        report = check_availability(self.db, r2.ReservationID)
        self.assertFalse(report["isFullyAvailable"])
        self.assertEqual(report["items"][0]["remaining"], 0)
        self.assertEqual(report["items"][0]["rented"], 2)

        with self.assertRaises(InsufficientStockError) as ctx:
            set_status(self.db, r2.ReservationID, "approved")
        self.assertEqual(ctx.exception.requested, 1)
        self.assertEqual(ctx.exception.available, 0)
        self.assertEqual(r2.Status, "pending")
        self.assertEqual(bound_ids(r2), [[]])

    def test_non_overlapping_request_reuses_the_same_units(self):
        r1 = self.reserve("2025-03-01", "2025-03-03", [(self.camera, 2)])
        set_status(self.db, r1.ReservationID, "approved")
        r3 = self.reserve("2025-03-05", "2025-03-07")
        set_status(self.db, r3.ReservationID, "approved")
        self.assertEqual(r3.Status, "approved")
        self.assertEqual(len(bound_ids(r3)[0]), 1)
        self.assertTrue(set(bound_ids(r3)[0]) <= self.unit_ids)

    def test_back_to_back_reservations_do_not_conflict(self):
        r1 = self.reserve("2025-03-01", "2025-03-03", [(self.camera, 2)])
        set_status(self.db, r1.ReservationID, "approved")
        r2 = self.reserve("2025-03-03", "2025-03-05", [(self.camera, 2)])
        set_status(self.db, r2.ReservationID, "approved")
        self.assertEqual(set(bound_ids(r2)[0]), self.unit_ids)

    def test_broken_units_are_never_allocated(self):
        self.units[0].Status = "maintenance"
        self.db.commit()
        r1 = self.reserve("2025-03-01", "2025-03-03")
        set_status(self.db, r1.ReservationID, "approved")
        self.assertEqual(bound_ids(r1), [[self.units[1].AssetID]])

    def test_pending_reservations_do_not_claim_stock(self):
        self.reserve("2025-03-01", "2025-03-03", [(self.camera, 2)])
        r2 = self.reserve("2025-03-01", "2025-03-03", [(self.camera, 2)])
        report = check_availability(self.db, r2.ReservationID)
        self.assertTrue(report["isFullyAvailable"])
        self.assertEqual(report["items"][0]["remaining"], 2)


class ApprovalTests(LifecycleTestCase):
    def test_failed_line_leaves_every_line_unbound(self):
        lens, _ = add_equipment(self.db, "Lens Y", ("available",))
        reservation = self.reserve("2025-03-01", "2025-03-03", [(self.camera, 1), (lens, 2)])
        with self.assertRaises(InsufficientStockError):
            set_status(self.db, reservation.ReservationID, "approved")
        self.db.expire_all()
        self.assertEqual(self.db.query(ReservationItemAsset).count(), 0)
        self.assertEqual(self.db.query(AssetHistory).count(), 0)

    def test_same_type_lines_get_distinct_units(self):
        reservation = self.reserve("2025-03-01", "2025-03-03", [(self.camera, 1), (self.camera, 1)])
        set_status(self.db, reservation.ReservationID, "approved")
        first, second = bound_ids(reservation)
        self.assertEqual(len(first), 1)
        self.assertEqual(len(second), 1)
        self.assertNotEqual(first, second)

    def test_same_type_lines_cannot_exceed_stock_together(self):
        reservation = self.reserve("2025-03-01", "2025-03-03", [(self.camera, 2), (self.camera, 1)])
        with self.assertRaises(InsufficientStockError):
            set_status(self.db, reservation.ReservationID, "approved")

    def test_seeded_approval_is_reproducible(self):
        tripod, _ = add_equipment(self.db, "Tripod", ("available",) * 6)
        picks = []
        for _ in range(2):
            reservation = self.reserve("2025-04-01", "2025-04-02", [(tripod, 2)])
            set_status(self.db, reservation.ReservationID, "approved", rng=random.Random(7))
            picks.append(bound_ids(reservation))
            set_status(self.db, reservation.ReservationID, "cancelled")
        self.assertEqual(picks[0], picks[1])

    def test_active_reservations_never_share_units(self):
        light, _ = add_equipment(self.db, "Light", ("available",) * 4)
        ranges = [
            ("2025-05-01", "2025-05-04"),
            ("2025-05-02", "2025-05-03"),
            ("2025-05-03", "2025-05-06"),
            ("2025-05-04", "2025-05-05"),
            ("2025-05-01", "2025-05-02"),
        ]
        approved = []
        for index, (start, end) in enumerate(ranges):
            reservation = self.reserve(start, end, [(light, 2)])
            try:
                set_status(self.db, reservation.ReservationID, "approved", rng=random.Random(index))
            except InsufficientStockError:
                continue
            approved.append(reservation)

        self.assertGreaterEqual(len(approved), 2)
        for i, left in enumerate(approved):
            for right in approved[i + 1:]:
                if left.StartDate < right.EndDate and left.EndDate > right.StartDate:
                    self.assertFalse(set(bound_ids(left)[0]) & set(bound_ids(right)[0]))

    def test_approval_is_audited(self):
        reservation = self.reserve("2025-03-01", "2025-03-03")
        set_status(self.db, reservation.ReservationID, "approved", operator_user_id=self.user.UserID)
        entry = self.db.query(AuditLog).filter_by(EntityID=reservation.ReservationID, Action="StatusChange").one()
        self.assertEqual(entry.Details, "pending -> approved")
        self.assertEqual(entry.UserID, self.user.UserID)
        history = self.db.query(AssetHistory).filter_by(ReservationID=reservation.ReservationID).all()
        self.assertEqual([row.Action for row in history], ["rented"])

    def test_reapproval_records_units_it_drops(self):
        tripod, _ = add_equipment(self.db, "Tripod", ("available",) * 3)
        reservation = self.reserve("2025-04-01", "2025-04-02", [(tripod, 1)])
        set_status(self.db, reservation.ReservationID, "approved", rng=random.Random(3))
        (dropped_id,) = bound_ids(reservation)[0]
        self.db.get(Asset, dropped_id).Status = "maintenance"
        self.db.commit()

        set_status(self.db, reservation.ReservationID, "approved", rng=random.Random(3))
        (kept_id,) = bound_ids(reservation)[0]
        self.assertNotEqual(kept_id, dropped_id)

        def actions(asset_id):
            rows = self.db.query(AssetHistory).filter_by(AssetID=asset_id).order_by(AssetHistory.HistoryID)
            return [row.Action for row in rows]

        self.assertEqual(actions(dropped_id), ["rented", "unassigned"])
        self.assertEqual(actions(kept_id), ["rented"])

    def test_equipment_lock_renders_for_each_backend(self):
        stmt = equipment_lock_statement([2, 1, 2])
        mssql_sql = str(stmt.compile(dialect=mssql.dialect()))
        self.assertIn("WITH (UPDLOCK, ROWLOCK)", mssql_sql)
        self.assertNotIn("FOR UPDATE", mssql_sql)
        self.assertIn("FOR UPDATE", str(stmt.compile(dialect=postgresql.dialect())))


class StatusTransitionTests(LifecycleTestCase):
    def test_releasing_statuses_clear_bindings(self):
        for target in ("pending", "rejected", "cancelled"):
            reservation = self.reserve("2025-03-01", "2025-03-03")
            set_status(self.db, reservation.ReservationID, "approved")
            set_status(self.db, reservation.ReservationID, target)
            self.assertEqual(reservation.Status, target)
            self.assertEqual(bound_ids(reservation), [[]])
        self.assertEqual(self.db.query(ReservationItemAsset).count(), 0)

    def test_cancelled_stock_is_available_again(self):
        r1 = self.reserve("2025-03-01", "2025-03-03", [(self.camera, 2)])
        set_status(self.db, r1.ReservationID, "approved")
        set_status(self.db, r1.ReservationID, "cancelled")
        r2 = self.reserve("2025-03-01", "2025-03-03", [(self.camera, 2)])
        set_status(self.db, r2.ReservationID, "approved")
        self.assertEqual(set(bound_ids(r2)[0]), self.unit_ids)

    def test_unknown_status_is_rejected(self):
        reservation = self.reserve("2025-03-01", "2025-03-03")
        with self.assertRaises(InvalidTransitionError):
            set_status(self.db, reservation.ReservationID, "archived")
        self.assertEqual(reservation.Status, "pending")

    def test_missing_reservation_raises_not_found(self):
        with self.assertRaises(NotFoundError):
            set_status(self.db, 999, "approved")
        with self.assertRaises(NotFoundError):
            check_availability(self.db, 999)

    def test_check_out_requires_approval(self):
        reservation = self.reserve("2025-03-01", "2025-03-03")
        with self.assertRaises(InvalidTransitionError):
            set_status(self.db, reservation.ReservationID, "rented")

    def test_check_out_marks_units_rented(self):
        reservation = self.reserve("2025-03-01", "2025-03-03")
        set_status(self.db, reservation.ReservationID, "approved")
        set_status(self.db, reservation.ReservationID, "rented")
        asset_id = bound_ids(reservation)[0][0]
        asset = next(unit for unit in self.units if unit.AssetID == asset_id)
        self.assertEqual(asset.Status, "rented")
        self.assertTrue(reservation.ReservationItems[0].CheckedOut)

        set_status(self.db, reservation.ReservationID, "returned")
        self.assertEqual(asset.Status, "available")
        self.assertTrue(reservation.ReservationItems[0].Returned)

    def test_check_out_revalidates_stock(self):
        reservation = self.reserve("2025-03-01", "2025-03-03", [(self.camera, 2)])
        set_status(self.db, reservation.ReservationID, "approved")
        self.units[0].Status = "broken"
        self.db.commit()
        with self.assertRaises(InsufficientStockError):
            set_status(self.db, reservation.ReservationID, "rented")
        self.assertEqual(reservation.Status, "approved")

    def test_cancelling_a_rental_restores_units(self):
        reservation = self.reserve("2025-03-01", "2025-03-03")
        set_status(self.db, reservation.ReservationID, "approved")
        set_status(self.db, reservation.ReservationID, "rented")
        set_status(self.db, reservation.ReservationID, "cancelled")
        self.assertTrue(all(unit.Status == "available" for unit in self.units))

    def test_returned_with_note_opens_a_repair(self):
        reservation = self.reserve("2025-03-01", "2025-03-03")
        set_status(self.db, reservation.ReservationID, "approved")
        set_status(self.db, reservation.ReservationID, "rented")
        set_status(self.db, reservation.ReservationID, "returned", repair_note="Scratched lens mount")
        repair = self.db.query(Repair).one()
        self.assertEqual(repair.Stage, "damage_confirmed")
        self.assertEqual(repair.ReservationID, reservation.ReservationID)
        self.assertEqual(repair.DamageDescription, "Scratched lens mount")

    def test_returned_without_note_opens_nothing(self):
        reservation = self.reserve("2025-03-01", "2025-03-03")
        set_status(self.db, reservation.ReservationID, "approved")
        set_status(self.db, reservation.ReservationID, "returned", repair_note="   ")
        self.assertEqual(self.db.query(Repair).count(), 0)


class AssignmentUpdateTests(LifecycleTestCase):
    def setUp(self):
        super().setUp()
        self.reservation = self.reserve("2025-03-01", "2025-03-03")
        set_status(self.db, self.reservation.ReservationID, "approved", rng=random.Random(0))
        self.item = self.reservation.ReservationItems[0]
        self.current = bound_ids(self.reservation)[0][0]
        self.other = next(asset_id for asset_id in self.unit_ids if asset_id != self.current)

    def test_swap_to_a_free_unit(self):
        update_assignment(self.db, self.reservation.ReservationID, self.item.ReservationItemID, [self.other])
        self.assertEqual(bound_ids(self.reservation), [[self.other]])
        actions = [
            row.Action
            for row in self.db.query(AssetHistory).filter_by(AssetID=self.current).order_by(AssetHistory.HistoryID)
        ]
        self.assertEqual(actions, ["rented", "unassigned"])

    def test_swap_refuses_units_of_another_type(self):
        _, lenses = add_equipment(self.db, "Lens Y", ("available",))
        with self.assertRaises(InvalidTransitionError):
            update_assignment(self.db, self.reservation.ReservationID, self.item.ReservationItemID, [lenses[0].AssetID])

    def test_swap_refuses_units_held_by_overlapping_reservation(self):
        rival = self.reserve("2025-03-02", "2025-03-04")
        set_status(self.db, rival.ReservationID, "approved")
        with self.assertRaises(InvalidTransitionError):
            update_assignment(self.db, self.reservation.ReservationID, self.item.ReservationItemID, [self.other])
        self.assertEqual(bound_ids(self.reservation), [[self.current]])

    def test_swap_refuses_broken_units(self):
        asset = next(unit for unit in self.units if unit.AssetID == self.other)
        asset.Status = "repair"
        self.db.commit()
        with self.assertRaises(InvalidTransitionError):
            update_assignment(self.db, self.reservation.ReservationID, self.item.ReservationItemID, [self.other])

    def test_swap_refuses_more_units_than_requested(self):
        with self.assertRaises(InvalidTransitionError):
            update_assignment(
                self.db, self.reservation.ReservationID, self.item.ReservationItemID, [self.current, self.other]
            )

    def test_swap_requires_an_active_reservation(self):
        set_status(self.db, self.reservation.ReservationID, "cancelled")
        with self.assertRaises(InvalidTransitionError):
            update_assignment(self.db, self.reservation.ReservationID, self.item.ReservationItemID, [self.other])

    def test_swap_on_a_rental_moves_the_rented_condition(self):
        set_status(self.db, self.reservation.ReservationID, "rented")
        update_assignment(self.db, self.reservation.ReservationID, self.item.ReservationItemID, [self.other])
        statuses = {unit.AssetID: unit.Status for unit in self.units}
        self.assertEqual(statuses[self.current], "available")
        self.assertEqual(statuses[self.other], "rented")


class IntakeAndCalendarTests(LifecycleTestCase):
    def test_create_reservation_snapshots_the_leader(self):
        payload = CreateReservationDto(
            userID=self.user.UserID,
            purpose="Music video",
            startDate="2025-06-01T10:00",
            endDate="2025-06-02T18:00",
            items=[{"equipmentID": self.camera.EquipmentID, "quantity": 2}],
        )
        reservation = create_reservation(self.db, payload)
        self.assertEqual(reservation.Status, "pending")
        self.assertEqual(reservation.StartDate, "2025-06-01 10:00")
        self.assertEqual(reservation.LeaderName, self.user.Name)
        self.assertEqual(reservation.ReservationItems[0].Name, "Camera X")
        self.assertRegex(reservation.ReservationNumber, r"^\d{8}-\d{4}$")

    def test_unpadded_dates_cannot_double_book_a_unit(self):
        gimbal, _ = add_equipment(self.db, "Gimbal", ("available",))

        def intake(start, end):
            payload = CreateReservationDto(
                userID=self.user.UserID,
                purpose="Documentary",
                startDate=start,
                endDate=end,
                items=[{"equipmentID": gimbal.EquipmentID, "quantity": 1}],
            )
            return create_reservation(self.db, payload)

        first = intake("2025-03-01", "2025-03-05")
        set_status(self.db, first.ReservationID, "approved")
        second = intake("2025-3-2", "2025-3-4")
        self.assertEqual((second.StartDate, second.EndDate), ("2025-03-02", "2025-03-04"))
        with self.assertRaises(InsufficientStockError):
            set_status(self.db, second.ReservationID, "approved")
        self.assertEqual(bound_ids(second), [[]])

    def test_create_reservation_rejects_unknown_equipment(self):
        payload = CreateReservationDto(
            userID=self.user.UserID,
            purpose="Music video",
            startDate="2025-06-01",
            endDate="2025-06-02",
            items=[{"equipmentID": 999, "quantity": 1}],
        )
        with self.assertRaises(NotFoundError):
            create_reservation(self.db, payload)

    def test_reservation_numbers_count_up_per_day(self):
        day = date(2031, 1, 2)
        self.assertEqual(generate_reservation_number(self.db, day), "20310102-0001")
        add_reservation(self.db, self.user, "2031-01-05", "2031-01-06", [(self.camera, 1)], number="20310102-0007")
        self.assertEqual(generate_reservation_number(self.db, day), "20310102-0008")

    def test_period_listing_is_inclusive_and_skips_cancelled(self):
        kept = self.reserve("2025-07-01", "2025-07-03")
        cancelled = self.reserve("2025-07-01", "2025-07-03", status="cancelled")
        self.reserve("2025-07-10", "2025-07-12")
        found = reservations_for_period(self.db, "2025-07-03", "2025-07-05")
        ids = [reservation.ReservationID for reservation in found]
        self.assertIn(kept.ReservationID, ids)
        self.assertNotIn(cancelled.ReservationID, ids)
        self.assertEqual(len(ids), 1)

    def test_equipment_calendar_sums_quantities(self):
        lens, _ = add_equipment(self.db, "Lens Y", ("available",))
        self.reserve("2025-08-01", "2025-08-02", [(self.camera, 1), (self.camera, 1), (lens, 1)])
        self.reserve("2025-08-01", "2025-08-02", [(lens, 1)])
        calendar = equipment_calendar(self.db, self.camera.EquipmentID, "2025-08-01", "2025-08-31")
        self.assertEqual(len(calendar["reservations"]), 1)
        self.assertEqual(calendar["reservations"][0]["quantity"], 2)


if __name__ == "__main__":
    unittest.main()
