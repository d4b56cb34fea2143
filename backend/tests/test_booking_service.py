import asyncio
import uuid
from datetime import date, time

import pytest
from sqlalchemy import select

from lab_booking.core.exceptions import AppError
from lab_booking.models.booking import Booking, BookingStatus
from lab_booking.models.lab_computer import ComputerStatus, LabComputer
from lab_booking.models.notification import Notification, NotificationType
from lab_booking.models.user import User, UserRole
from lab_booking.schemas.booking import DatasetSize, ProjectMetadata
from lab_booking.services.booking import BookingService, ErrorCode, _transition
from lab_booking.services.booking_validator import ValidationCode

MONDAY = date(2024, 6, 10)


async def _notifications(db, recipient: str) -> list[Notification]:
    result = await db.execute(
        select(Notification)
        .where(Notification.user_id == recipient)
        .order_by(Notification.created_at)
    )
    return list(result.scalars().all())


async def _create(db, user, computer, **overrides):
    fields = dict(
        computer_id=computer.id,
        start_date=MONDAY,
        end_date=MONDAY,
        start_time=time(9, 0),
        end_time=time(10, 0),
        reason="test",
    )
    fields.update(overrides)
    return await BookingService.create(db, user, **fields)


async def _assert_consistent(db, computer):
    """A computer is booked exactly when an approved booking holds it."""
    await db.refresh(computer)
    held = await BookingService.has_other_approved(db, computer.id)
    if computer.status != ComputerStatus.MAINTENANCE:
        assert (computer.status == ComputerStatus.BOOKED) == held


async def _attempt(session_factory, action, actor, booking_id):
    """Run one transition in its own session, as a separate request would."""
    async with session_factory() as session:
        try:
            await action(session, actor, booking_id)
        except AppError as exc:
            return exc.code
    return "ok"


class TestCreate:
    async def test_creates_pending_booking_and_notifies_admins(self, db, admin, student, computer):
        booking = await _create(db, student, computer)

        assert booking.status == BookingStatus.PENDING
        assert booking.user_id == "student-1"
        assert booking.rejection_reason is None
        assert booking.reference == booking.id.hex[-6:].upper()

        notes = await _notifications(db, admin.external_id)
        assert len(notes) == 1
        assert notes[0].type == NotificationType.INFO
        assert notes[0].title == "New Booking Request"
        assert notes[0].details["booking_id"] == str(booking.id)
        assert notes[0].details["computer_name"] == "R"
        assert notes[0].details["user_id"] == "student-1"
        assert await _notifications(db, student.external_id) == []

    async def test_every_admin_is_notified(self, db, admin, student, computer):
        db.add(User(external_id="admin-2", name="Second Admin", role=UserRole.ADMIN))
        await db.commit()

        await _create(db, student, computer)

        assert len(await _notifications(db, "admin-1")) == 1
        assert len(await _notifications(db, "admin-2")) == 1

    async def test_project_metadata_is_stored(self, db, admin, student, computer):
        project = ProjectMetadata(
            requires_gpu=True,
            gpu_memory_required=24,
            problem_statement="Segment satellite images",
            dataset_type="Image",
            dataset_size=DatasetSize(value=120, unit="GB"),
            dataset_link="https://example.org/data",
            bottleneck_explanation="Training does not fit on a laptop GPU",
        )
        booking = await _create(db, student, computer, project=project)

        assert booking.project["dataset_size"] == {"value": 120.0, "unit": "GB"}
        assert booking.project["requires_gpu"] is True

    async def test_sunday_is_rejected(self, db, admin, student, computer):
        with pytest.raises(AppError) as exc_info:
            await _create(db, student, computer, start_date=date(2024, 6, 9), end_date=date(2024, 6, 9))

        assert exc_info.value.code == ValidationCode.CLOSURE_DAY_START
        assert (await db.execute(select(Booking))).scalars().all() == []
        assert await _notifications(db, admin.external_id) == []

    async def test_missing_reason_is_reported_before_date_rules(self, db, admin, student, computer):
        sunday = date(2024, 6, 9)

        with pytest.raises(AppError) as exc_info:
            await _create(db, student, computer, start_date=sunday, end_date=sunday, reason=None)

        assert exc_info.value.code == ValidationCode.MISSING_FIELDS

    @pytest.mark.parametrize("overrides", [{"computer_id": None}, {"reason": "   "}, {"reason": None}])
    async def test_missing_computer_or_reason(self, db, student, computer, overrides):
        with pytest.raises(AppError) as exc_info:
            await _create(db, student, computer, **overrides)
        assert exc_info.value.code == ValidationCode.MISSING_FIELDS

    async def test_unknown_computer(self, db, student, computer):
        with pytest.raises(AppError) as exc_info:
            await _create(db, student, computer, computer_id=uuid.uuid4())
        assert exc_info.value.code == ErrorCode.RESOURCE_NOT_FOUND
        assert exc_info.value.status_code == 404

    async def test_inactive_computer_cannot_be_booked(self, db, student, computer):
        computer.is_active = False
        await db.commit()

        with pytest.raises(AppError) as exc_info:
            await _create(db, student, computer)
        assert exc_info.value.code == ErrorCode.RESOURCE_NOT_FOUND


class TestApprove:
    async def test_approve_books_computer_and_notifies_owner(self, db, admin, student, computer):
        booking = await _create(db, student, computer)

        booking = await BookingService.set_status(db, admin, booking.id, "approved")

        assert booking.status == BookingStatus.APPROVED
        await db.refresh(computer)
        assert computer.status == ComputerStatus.BOOKED
        notes = await _notifications(db, student.external_id)
        assert [n.type for n in notes] == [NotificationType.SUCCESS]
        assert notes[0].title == "Booking Approved"

    async def test_only_admins_can_approve(self, db, student, computer, make_booking):
        booking = await make_booking(student, computer)

        with pytest.raises(AppError) as exc_info:
            await BookingService.set_status(db, student, booking.id, "approved")
        assert exc_info.value.code == ErrorCode.FORBIDDEN
        assert exc_info.value.status_code == 403

    async def test_approving_twice_is_refused(self, db, admin, student, computer, make_booking):
        booking = await make_booking(student, computer)
        booking_id, owner_id = booking.id, student.external_id
        await BookingService.approve(db, admin, booking_id)

        with pytest.raises(AppError) as exc_info:
            await BookingService.approve(db, admin, booking_id)

        assert exc_info.value.code == ErrorCode.INVALID_STATE
        assert len(await _notifications(db, owner_id)) == 1

    async def test_overlapping_approval_is_refused(
        self, db, admin, student, other_student, computer, make_booking
    ):
        await make_booking(student, computer, status=BookingStatus.APPROVED)
        overlapping = await make_booking(
            other_student, computer, start_time=time(9, 30), end_time=time(11, 0)
        )

        with pytest.raises(AppError) as exc_info:
            await BookingService.approve(db, admin, overlapping.id)

        assert exc_info.value.code == ErrorCode.OVERLAPPING_BOOKING
        await db.refresh(overlapping)
        assert overlapping.status == BookingStatus.PENDING

    async def test_back_to_back_bookings_can_both_be_approved(
        self, db, admin, student, other_student, computer, make_booking
    ):
        await make_booking(student, computer, status=BookingStatus.APPROVED)
        later = await make_booking(
            other_student, computer, start_time=time(10, 0), end_time=time(12, 0)
        )

        later = await BookingService.approve(db, admin, later.id)
        assert later.status == BookingStatus.APPROVED

    async def test_overlap_on_another_computer_is_fine(
        self, db, admin, student, computer, second_computer, make_booking
    ):
        await make_booking(student, computer, status=BookingStatus.APPROVED)
        booking = await make_booking(student, second_computer)

        booking = await BookingService.approve(db, admin, booking.id)
        assert booking.status == BookingStatus.APPROVED

    async def test_maintenance_is_not_overwritten(self, db, admin, student, computer, make_booking):
        computer.status = ComputerStatus.MAINTENANCE
        await db.commit()
        booking = await make_booking(student, computer)

        await BookingService.approve(db, admin, booking.id)
        await db.refresh(computer)
        assert computer.status == ComputerStatus.MAINTENANCE

        await BookingService.cancel(db, admin, booking.id)
        await db.refresh(computer)
        assert computer.status == ComputerStatus.MAINTENANCE


class TestReject:
    async def test_reject_requires_reason(self, db, admin, student, computer, make_booking):
        booking = await make_booking(student, computer)

        for reason in (None, "", "  "):
            with pytest.raises(AppError) as exc_info:
                await BookingService.set_status(db, admin, booking.id, "rejected", reason)
            assert exc_info.value.code == ErrorCode.MISSING_REJECTION_REASON

        await db.refresh(booking)
        assert booking.status == BookingStatus.PENDING
        assert booking.rejection_reason is None

    async def test_reject_pending(self, db, admin, student, computer, make_booking):
        booking = await make_booking(student, computer)

        booking = await BookingService.set_status(
            db, admin, booking.id, "rejected", "Lab reserved for exams"
        )

        assert booking.status == BookingStatus.REJECTED
        assert booking.rejection_reason == "Lab reserved for exams"
        notes = await _notifications(db, student.external_id)
        assert notes[0].type == NotificationType.ERROR
        assert "Reason: Lab reserved for exams" in notes[0].message
        await db.refresh(computer)
        assert computer.status == ComputerStatus.AVAILABLE

    async def test_reject_approved_keeps_computer_booked_while_held(
        self, db, admin, student, other_student, computer, make_booking
    ):
        first = await make_booking(student, computer, status=BookingStatus.APPROVED)
        second = await make_booking(
            other_student,
            computer,
            status=BookingStatus.APPROVED,
            start_date=date(2024, 6, 11),
            end_date=date(2024, 6, 11),
        )

        await BookingService.reject(db, admin, first.id, "Machine reassigned")
        await db.refresh(computer)
        assert computer.status == ComputerStatus.BOOKED

        await BookingService.reject(db, admin, second.id, "Machine reassigned")
        await db.refresh(computer)
        assert computer.status == ComputerStatus.AVAILABLE

    async def test_terminal_booking_cannot_be_rejected(self, db, admin, student, computer, make_booking):
        booking = await make_booking(student, computer, status=BookingStatus.COMPLETED)

        with pytest.raises(AppError) as exc_info:
            await BookingService.reject(db, admin, booking.id, "too late")
        assert exc_info.value.code == ErrorCode.INVALID_STATE


class TestCancel:
    async def test_owner_cancels_pending(self, db, student, computer, make_booking):
        booking = await make_booking(student, computer)

        booking = await BookingService.cancel(db, student, booking.id)

        assert booking.status == BookingStatus.CANCELLED
        notes = await _notifications(db, student.external_id)
        assert notes[0].type == NotificationType.INFO
        assert notes[0].title == "Booking Cancelled"

    async def test_owner_cannot_cancel_approved(self, db, student, computer, make_booking):
        booking = await make_booking(student, computer, status=BookingStatus.APPROVED)

        with pytest.raises(AppError) as exc_info:
            await BookingService.cancel(db, student, booking.id)
        assert exc_info.value.code == ErrorCode.INVALID_STATE

    async def test_other_user_cannot_cancel(self, db, student, other_student, computer, make_booking):
        booking = await make_booking(student, computer)

        with pytest.raises(AppError) as exc_info:
            await BookingService.cancel(db, other_student, booking.id)
        assert exc_info.value.code == ErrorCode.FORBIDDEN

    async def test_admin_cancels_approved_and_releases(self, db, admin, student, computer, make_booking):
        booking = await make_booking(student, computer, status=BookingStatus.APPROVED)

        await BookingService.set_status(db, admin, booking.id, "cancelled")

        await db.refresh(computer)
        assert computer.status == ComputerStatus.AVAILABLE

    async def test_cancelled_is_terminal(self, db, admin, student, computer, make_booking):
        booking = await make_booking(student, computer, status=BookingStatus.CANCELLED)

        with pytest.raises(AppError) as exc_info:
            await BookingService.cancel(db, admin, booking.id)
        assert exc_info.value.code == ErrorCode.INVALID_STATE

    async def test_owner_cannot_cancel_finished_booking(self, db, student, computer, make_booking):
        booking = await make_booking(student, computer, status=BookingStatus.COMPLETED)

        with pytest.raises(AppError) as exc_info:
            await BookingService.cancel(db, student, booking.id)
        assert exc_info.value.code == ErrorCode.INVALID_STATE
        assert exc_info.value.message == "Booking is already completed"


class TestSetStatus:
    @pytest.mark.parametrize("target", ["completed", "pending", "done", ""])
    async def test_invalid_target(self, db, admin, student, computer, make_booking, target):
        booking = await make_booking(student, computer)

        with pytest.raises(AppError) as exc_info:
            await BookingService.set_status(db, admin, booking.id, target)
        assert exc_info.value.code == ErrorCode.INVALID_STATUS

    async def test_unknown_booking(self, db, admin):
        with pytest.raises(AppError) as exc_info:
            await BookingService.set_status(db, admin, uuid.uuid4(), "approved")
        assert exc_info.value.code == ErrorCode.BOOKING_NOT_FOUND


class TestReschedule:
    async def test_only_approved_bookings(self, db, admin, student, computer, make_booking):
        booking = await make_booking(student, computer)

        with pytest.raises(AppError) as exc_info:
            await BookingService.reschedule(db, admin, booking.id, end_time=time(12, 0))
        assert exc_info.value.code == ErrorCode.INVALID_STATE

    async def test_admin_only(self, db, student, computer, make_booking):
        booking = await make_booking(student, computer, status=BookingStatus.APPROVED)

        with pytest.raises(AppError) as exc_info:
            await BookingService.reschedule(db, student, booking.id, end_time=time(12, 0))
        assert exc_info.value.code == ErrorCode.FORBIDDEN

    async def test_change_times(self, db, admin, student, computer, make_booking):
        booking = await make_booking(student, computer, status=BookingStatus.APPROVED)

        booking = await BookingService.reschedule(
            db, admin, booking.id, start_time=time(13, 0), end_time=time(15, 0), end_date=date(2024, 6, 11)
        )

        assert (booking.start_time, booking.end_time, booking.end_date) == (
            time(13, 0),
            time(15, 0),
            date(2024, 6, 11),
        )
        assert booking.start_date == MONDAY

    async def test_invalid_new_interval(self, db, admin, student, computer, make_booking):
        booking = await make_booking(student, computer, status=BookingStatus.APPROVED)

        with pytest.raises(AppError) as exc_info:
            await BookingService.reschedule(db, admin, booking.id, end_time=time(9, 30))
        assert exc_info.value.code == ValidationCode.DURATION_TOO_SHORT

    async def test_move_to_another_computer(
        self, db, admin, student, computer, second_computer, make_booking
    ):
        booking = await make_booking(student, computer, status=BookingStatus.APPROVED)

        booking = await BookingService.reschedule(db, admin, booking.id, computer_id=second_computer.id)

        assert booking.computer_id == second_computer.id
        await db.refresh(computer)
        await db.refresh(second_computer)
        assert computer.status == ComputerStatus.AVAILABLE
        assert second_computer.status == ComputerStatus.BOOKED

    async def test_old_computer_stays_booked_while_held(
        self, db, admin, student, other_student, computer, second_computer, make_booking
    ):
        booking = await make_booking(student, computer, status=BookingStatus.APPROVED)
        await make_booking(
            other_student,
            computer,
            status=BookingStatus.APPROVED,
            start_date=date(2024, 6, 12),
            end_date=date(2024, 6, 12),
        )

        await BookingService.reschedule(db, admin, booking.id, computer_id=second_computer.id)

        await db.refresh(computer)
        assert computer.status == ComputerStatus.BOOKED

    async def test_move_to_unknown_computer(self, db, admin, student, computer, make_booking):
        booking = await make_booking(student, computer, status=BookingStatus.APPROVED)

        with pytest.raises(AppError) as exc_info:
            await BookingService.reschedule(db, admin, booking.id, computer_id=uuid.uuid4())
        assert exc_info.value.code == ErrorCode.RESOURCE_NOT_FOUND

    async def test_move_onto_overlapping_booking(
        self, db, admin, student, other_student, computer, second_computer, make_booking
    ):
        booking = await make_booking(student, computer, status=BookingStatus.APPROVED)
        await make_booking(other_student, second_computer, status=BookingStatus.APPROVED)

        with pytest.raises(AppError) as exc_info:
            await BookingService.reschedule(db, admin, booking.id, computer_id=second_computer.id)
        assert exc_info.value.code == ErrorCode.OVERLAPPING_BOOKING


class TestConsistency:
    async def test_overlapping_approvals_race_one_winner(
        self, session_factory, admin, student, other_student, computer, make_booking
    ):
        first = await make_booking(student, computer)
        second = await make_booking(other_student, computer)

        outcomes = await asyncio.gather(
            _attempt(session_factory, BookingService.approve, admin, first.id),
            _attempt(session_factory, BookingService.approve, admin, second.id),
        )

        assert sorted(outcomes) == sorted(["ok", ErrorCode.OVERLAPPING_BOOKING])
        async with session_factory() as fresh:
            statuses = sorted(
                [(await BookingService.get_by_id(fresh, b.id)).status.value for b in (first, second)]
            )
            assert statuses == ["approved", "pending"]
            await _assert_consistent(fresh, await fresh.get(LabComputer, computer.id))

    async def test_cancel_racing_an_approval_keeps_computer_booked(
        self, session_factory, admin, student, other_student, computer, make_booking
    ):
        held = await make_booking(student, computer, status=BookingStatus.APPROVED)
        waiting = await make_booking(
            other_student, computer, start_date=date(2024, 6, 11), end_date=date(2024, 6, 11)
        )

        outcomes = await asyncio.gather(
            _attempt(session_factory, BookingService.cancel, admin, held.id),
            _attempt(session_factory, BookingService.approve, admin, waiting.id),
        )

        assert outcomes == ["ok", "ok"]
        async with session_factory() as fresh:
            stored = await fresh.get(LabComputer, computer.id)
            assert stored.status == ComputerStatus.BOOKED
            await _assert_consistent(fresh, stored)

    async def test_stale_write_is_reported(
        self, db, session_factory, admin, student, computer, make_booking
    ):
        booking = await make_booking(student, computer)
        booking_id = booking.id

        async with session_factory() as other:
            await BookingService.approve(other, admin, booking_id)

        # This session still holds the pre-approval version of the row.
        with pytest.raises(AppError) as exc_info:
            async with _transition(db):
                booking.reason = "edited elsewhere"
        assert exc_info.value.code == ErrorCode.CONCURRENT_MODIFICATION
        assert exc_info.value.status_code == 409

        async with session_factory() as fresh:
            stored = await BookingService.get_by_id(fresh, booking_id)
            assert stored.status == BookingStatus.APPROVED
            assert stored.reason == "test"

    async def test_status_tracks_approved_bookings(
        self, db, admin, student, other_student, computer, make_booking
    ):
        first = await make_booking(student, computer)
        second = await make_booking(
            other_student, computer, start_date=date(2024, 6, 11), end_date=date(2024, 6, 11)
        )
        third = await make_booking(
            other_student, computer, start_date=date(2024, 6, 12), end_date=date(2024, 6, 12)
        )

        await _assert_consistent(db, computer)
        await BookingService.approve(db, admin, first.id)
        await _assert_consistent(db, computer)
        await BookingService.approve(db, admin, second.id)
        await _assert_consistent(db, computer)
        await BookingService.cancel(db, admin, first.id)
        await _assert_consistent(db, computer)
        await BookingService.reject(db, admin, third.id, "duplicate request")
        await _assert_consistent(db, computer)
        await BookingService.reject(db, admin, second.id, "lab closed")
        await _assert_consistent(db, computer)
        await db.refresh(computer)
        assert computer.status == ComputerStatus.AVAILABLE
