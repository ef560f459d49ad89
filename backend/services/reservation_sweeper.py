"""
Reservation sweeper - releases stock held by abandoned checkouts.

Runs as an asyncio background task during the FastAPI app lifespan and calls
order_service.expire_stale_orders() every reservation_sweep_seconds.
"""
import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from services import order_service
from services.payment_provider import PaymentProvider

logger = logging.getLogger(__name__)


class ReservationSweeper:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        payments: PaymentProvider,
        *,
        ttl_minutes: int,
        interval_seconds: float,
    ):
        self._session_factory = session_factory
        self._payments = payments
        self._ttl_minutes = ttl_minutes
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.expired_total = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name="reservation-sweeper")
        logger.info(
            f"Reservation sweeper started (TTL {self._ttl_minutes}m, every {self._interval}s)"
        )

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def run_once(self) -> int:
        async with self._session_factory() as db:
            try:
                expired = await order_service.expire_stale_orders(
                    db, self._payments, ttl_minutes=self._ttl_minutes
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        if expired:
            self.expired_total += expired
            logger.info(f"Reservation sweep expired {expired} order(s)")
        return expired

    async def _run(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Reservation sweep failed: {e}", exc_info=True)
            await asyncio.sleep(self._interval)
