"""Persistence for usage records."""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncContextManager, Callable, Protocol

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.connection import get_db_context
from ..models.ai_usage import AIUsage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageRecord:
    """One metered request."""
    user_id: str
    tool: str
    tokens_in: int
    tokens_out: int
    month: str
    created_at: datetime


@dataclass(frozen=True)
class UsageTotals:
    """Aggregated usage of one user for one month."""
    month: str
    requests: int = 0
    tokens_in: int = 0
    tokens_out: int = 0

    def to_dict(self) -> dict:
        return {
            "month": self.month,
            "requests": self.requests,
            "tokens_in": self.tokens_in,
            "tokens_out": self.tokens_out,
        }


class UsageStore(Protocol):
    """Row store for usage records."""

    async def insert(self, record: UsageRecord) -> None:
        ...

    async def monthly_totals(self, user_id: str, month: str, tool: str) -> UsageTotals:
        ...


class SQLAlchemyUsageStore:
    """Usage store backed by the ``ai_usage`` table."""

    def __init__(self, session_factory: Callable[[], AsyncContextManager[AsyncSession]] = get_db_context):
        self._session_factory = session_factory

    async def insert(self, record: UsageRecord) -> None:
        async with self._session_factory() as session:
            session.add(AIUsage(
                user_id=uuid.UUID(record.user_id),
                tool=record.tool,
                tokens_in=record.tokens_in,
                tokens_out=record.tokens_out,
                month=record.month,
                created_at=record.created_at,
            ))
            await session.commit()

    async def monthly_totals(self, user_id: str, month: str, tool: str) -> UsageTotals:
        try:
            user_uuid = uuid.UUID(user_id)
        except ValueError:
            # Only UUID ids are ever inserted, so nothing can match
            logger.warning("Usage totals requested for non-UUID user id %r", user_id)
            return UsageTotals(month=month)

        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(
                        func.count(AIUsage.id),
                        func.coalesce(func.sum(AIUsage.tokens_in), 0),
                        func.coalesce(func.sum(AIUsage.tokens_out), 0),
                    ).where(
                        AIUsage.user_id == user_uuid,
                        AIUsage.month == month,
                        AIUsage.tool == tool,
                    )
                )
            ).one()
        return UsageTotals(
            month=month,
            requests=int(row[0] or 0),
            tokens_in=int(row[1] or 0),
            tokens_out=int(row[2] or 0),
        )
