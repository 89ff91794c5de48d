"""AI usage model for token metering."""

import uuid

from sqlalchemy import Index, Integer, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class AIUsage(Base):
    """Token usage of one completed assistant request.

    Rows are append-only: written once per streamed request with non-zero
    usage, never updated or deleted by this service.
    """

    __tablename__ = "ai_usage"

    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    tool: Mapped[str] = mapped_column(String(50), nullable=False, default="bmc")
    tokens_in: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tokens_out: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Calendar month, "YYYY-MM"
    month: Mapped[str] = mapped_column(String(7), nullable=False)

    __table_args__ = (
        Index("idx_ai_usage_user_month", "user_id", "month"),
    )

    def __repr__(self) -> str:
        return (
            f"<AIUsage(user='{self.user_id}', month='{self.month}', "
            f"in={self.tokens_in}, out={self.tokens_out})>"
        )
