import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lab_booking.core.timeutils import to_lab_local
from lab_booking.services.booking import BookingService

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SweepResult:
    processed: int = 0
    failed: int = 0


class BookingExpirationSweeper:
    """
    Periodically complete approved bookings whose interval has elapsed.

    Each booking is expired in its own session and transaction. A failure on
    one booking is logged and counted, and the sweep moves on to the next one;
    nothing raises out of a sweep run.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tz: tzinfo = timezone.utc,
        clock: Callable[[], datetime] = utc_now,
        interval_seconds: float = 60.0,
    ):
        self.session_factory = session_factory
        self.tz = tz
        self.clock = clock
        self.interval_seconds = interval_seconds
        self.last_result: SweepResult | None = None
        self._task: asyncio.Task | None = None
        self._sweep_task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="booking-expiration-sweeper")
        logger.info(
            "Booking expiration sweeper started (every %ss)", self.interval_seconds
        )

    async def stop(self) -> None:
        """Stop the timer without interrupting a sweep already in progress."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        # A sweep the timer already started runs to completion.
        sweep_task, self._sweep_task = self._sweep_task, None
        if sweep_task is not None:
            await sweep_task
        logger.info("Booking expiration sweeper stopped")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            self._sweep_task = asyncio.create_task(self.run_once())
            await asyncio.shield(self._sweep_task)

    async def run_once(self, now: datetime | None = None) -> int:
        """Expire everything elapsed at ``now`` and return how many bookings were completed."""
        result = await self.sweep(now)
        return result.processed

    async def sweep(self, now: datetime | None = None) -> SweepResult:
        local_now = to_lab_local(now or self.clock(), self.tz)
        result = SweepResult()

        try:
            async with self.session_factory() as session:
                booking_ids = await BookingService.list_expired_ids(session, local_now)
        except Exception:
            logger.exception("Error in booking expiration service while listing bookings")
            self.last_result = result
            return result

        for booking_id in booking_ids:
            try:
                async with self.session_factory() as session:
                    if await BookingService.expire(session, booking_id, local_now):
                        result.processed += 1
            except Exception:
                result.failed += 1
                logger.exception("Error handling expired booking %s", booking_id)

        if result.failed:
            logger.warning(
                "Updated %d expired bookings, %d failed", result.processed, result.failed
            )
        else:
            logger.info("Updated %d expired bookings", result.processed)
        self.last_result = result
        return result
