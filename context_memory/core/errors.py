"""Error types for the context and memory engine."""

from typing import Any, Dict, Optional


class ContextEngineError(Exception):
    """Base class for all engine errors.

    Extra keyword arguments are kept in ``context`` for logging.
    """

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        **context: Any,
    ):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> Dict[str, Any]:
        cause = self.__cause__
        return {
            "name": type(self).__name__,
            "message": self.message,
            "context": self.context,
            "cause": str(cause) if cause is not None else None,
        }


class MemoryAccessError(ContextEngineError):
    """Reading or searching memory failed."""


class MemoryStorageError(ContextEngineError):
    """Writing or loading persisted memory failed."""


class MemoryTierError(ContextEngineError, ValueError):
    """Invalid use of the tier store (bad tier name, blank content)."""


class MemoryScoringError(ContextEngineError):
    """Relevance scoring failed."""


class ClipboardError(ContextEngineError):
    """The system clipboard could not be read or written."""
