"""Data models for the Context Memory engine."""

import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_context_id(prefix: str = "ctx") -> str:
    """Generate a unique, never reused item id."""
    return f"{prefix}_{uuid.uuid4().hex}"


class ContextType(str, Enum):
    """Kind of content a context item carries."""

    CLIPBOARD = "clipboard"
    HIGHLIGHT = "highlight"
    MEMORY = "memory"
    CONVERSATION = "conversation"


class MemoryTier(str, Enum):
    """Retention tier of a memory item, shortest first."""

    WORKING = "working"
    SHORT_TERM = "short-term"
    LONG_TERM = "long-term"


TIER_ORDER: List[MemoryTier] = [
    MemoryTier.WORKING,
    MemoryTier.SHORT_TERM,
    MemoryTier.LONG_TERM,
]


class ContextItem(BaseModel):
    """A piece of background text: clipboard copy, highlight or memory.

    ``id`` and ``content`` are frozen once the item exists.
    """

    id: str = Field(default_factory=new_context_id, frozen=True)
    type: ContextType = ContextType.MEMORY
    content: str = Field(frozen=True)
    timestamp: int = Field(default_factory=now_ms)
    application: Optional[str] = None
    tier: Optional[MemoryTier] = None
    relevance_score: Optional[float] = None


class MemoryItem(ContextItem):
    """Context item held by the tier store, with usage bookkeeping."""

    source: str = "memory"
    created_at: int = Field(default_factory=now_ms)
    last_accessed: int = Field(default_factory=now_ms)
    access_count: int = 0
    usefulness: float = 0.0
    expires_at: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ClipboardState(BaseModel):
    """Last known clipboard values.

    ``timestamp`` only moves on a change observed from outside the engine.
    """

    last_system_value: str = ""
    current_value: str = ""
    timestamp: Optional[int] = None
    active_application: str = ""


class ClipboardChangeEvent(BaseModel):
    """Payload delivered to clipboard change observers."""

    content: str
    timestamp: int
    application: str = ""


class ContextEntry(BaseModel):
    """One piece of context handed to the AI orchestrator."""

    type: str
    content: str
    id: Optional[str] = None
    relevance_score: Optional[float] = None
    application: Optional[str] = None


class ApplicationContext(BaseModel):
    name: str


class ContextResult(BaseModel):
    """Context selected for a single command."""

    primary_context: Optional[ContextEntry] = None
    secondary_context: Optional[ContextEntry] = None
    application_context: Optional[ApplicationContext] = None
    history_context: List[ContextEntry] = Field(default_factory=list)
    memory_stats: Optional[Dict[str, Any]] = None


class CacheEntry(BaseModel):
    value: ContextResult
    computed_at: int


class HistorySnapshot(BaseModel):
    """Exported context history, stamped with the export time."""

    history: List[ContextItem]
    timestamp: int = Field(default_factory=now_ms)


class LongTermSnapshot(BaseModel):
    """Persisted long-term tier payload."""

    items: List[MemoryItem] = Field(default_factory=list)
    exported_at: int = Field(default_factory=now_ms)


class AIUsageRecord(BaseModel):
    """Aggregate AI call statistics.

    Counters only grow; ``reset`` on the tracker is the one way back.
    """

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    last_response_time: float = 0.0
    average_response_time: float = 0.0
    last_request_timestamp: int = 0
    total_prompt_tokens: int = 0
    total_completion_tokens: int = 0
    total_tokens: int = 0
    session_prompt_tokens: int = 0
    session_completion_tokens: int = 0
    session_tokens: int = 0
    daily_usage: Dict[str, Dict[str, int]] = Field(default_factory=dict)
    model_usage: Dict[str, Dict[str, int]] = Field(default_factory=dict)
    last_updated: int = Field(default_factory=now_ms)
