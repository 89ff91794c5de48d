"""Database models for BMC Assist."""

from .base import Base
from .ai_usage import AIUsage

__all__ = [
    "Base",
    "AIUsage",
]
