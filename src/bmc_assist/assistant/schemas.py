"""Request models for the assistant endpoint."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ConversationTurn(BaseModel):
    """One message of the conversation, as sent by the editor."""

    role: Literal["user", "assistant"] = "user"
    content: str = ""

    @field_validator("role", mode="before")
    @classmethod
    def normalize_role(cls, v):
        return "assistant" if v == "assistant" else "user"

    @field_validator("content", mode="before")
    @classmethod
    def coerce_content(cls, v):
        if v is None:
            return ""
        return v if isinstance(v, str) else str(v)

    def truncated(self, max_chars: int) -> Dict[str, str]:
        """Provider-ready dict with content capped at *max_chars*."""
        return {"role": self.role, "content": self.content[:max_chars]}


@dataclass
class BlockContext:
    """The caller's in-progress canvas, as seen from the block being edited."""
    block_id: str
    block_title: str
    current_text: str = ""
    all_blocks_data: Dict[str, Any] = field(default_factory=dict)


class ChatRequest(BaseModel):
    """Body of ``POST /api/chat``.

    ``messages``, ``currentBlock`` and ``mode`` are required; an empty
    ``currentBlock`` or ``mode`` counts as missing.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    messages: List[ConversationTurn]
    current_block: str = Field(alias="currentBlock", min_length=1)
    current_block_title: Optional[str] = Field(default=None, alias="currentBlockTitle")
    current_text: Optional[str] = Field(default=None, alias="currentText")
    all_data: Optional[Dict[str, Any]] = Field(default=None, alias="allData")
    mode: str = Field(min_length=1)

    def block_context(self) -> BlockContext:
        return BlockContext(
            block_id=self.current_block,
            block_title=self.current_block_title or self.current_block,
            current_text=self.current_text or "",
            all_blocks_data=self.all_data or {},
        )

    def recent_history(self, max_turns: int, max_chars: int) -> List[Dict[str, str]]:
        """Last *max_turns* turns, each truncated to *max_chars* characters."""
        return [turn.truncated(max_chars) for turn in self.messages[-max_turns:]]
