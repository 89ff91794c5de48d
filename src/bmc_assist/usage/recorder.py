"""Best-effort usage metering decoupled from the response lifecycle."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Set

from ..observability.metrics import record_tokens, record_usage_write_failure
from .store import UsageRecord, UsageStore, UsageTotals

logger = logging.getLogger(__name__)


def current_month(now: Optional[datetime] = None) -> str:
    """Calendar month of *now* (UTC wall clock by default) as ``YYYY-MM``."""
    if now is None:
        now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m")


class UsageRecorder:
    """Writes usage records without ever failing the caller."""

    def __init__(
        self,
        store: UsageStore,
        tool: str = "bmc",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.tool = tool
        self._clock = clock
        self._pending: Set[asyncio.Task] = set()

    async def record(self, user_id: str, tokens_in: int, tokens_out: int) -> None:
        """Persist one usage record. Failures are logged, never raised."""
        now = self._clock()
        record = UsageRecord(
            user_id=user_id,
            tool=self.tool,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            month=current_month(now),
            created_at=now,
        )
        try:
            await self.store.insert(record)
        except Exception as e:
            record_usage_write_failure()
            logger.error(
                "Failed to record usage for user %s (in=%d, out=%d): %s",
                user_id, tokens_in, tokens_out, e,
            )
            return

        record_tokens(tokens_in, tokens_out)
        logger.debug("Recorded usage for user %s: in=%d out=%d", user_id, tokens_in, tokens_out)

    def dispatch(self, user_id: str, tokens_in: int, tokens_out: int) -> asyncio.Task:
        """Schedule ``record`` on its own task; the caller must not await it."""
        task = asyncio.get_running_loop().create_task(
            self.record(user_id, tokens_in, tokens_out)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for every dispatched recording to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def monthly_totals(self, user_id: str, month: Optional[str] = None) -> UsageTotals:
        return await self.store.monthly_totals(user_id, month or current_month(self._clock()), self.tool)
