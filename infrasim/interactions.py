"""Bounded in-memory record of model interactions for display and debugging."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)


@dataclass
class Interaction:
    kind: str
    model: str
    prompt: str
    response: str = ""
    duration_ms: float = 0.0
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def success(self) -> bool:
        return self.error is None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            "model": self.model,
            "prompt": self.prompt,
            "response": self.response,
            "duration": round(self.duration_ms, 3),
            "success": self.success,
            "error": self.error,
            "metadata": dict(self.metadata),
            "timestamp": self.timestamp.isoformat(),
        }


class InteractionLog:
    """Keeps the most recent ``maxlen`` interactions, oldest first."""

    def __init__(self, maxlen: int = 200) -> None:
        if maxlen <= 0:
            raise ValueError("maxlen must be positive")
        self._entries: Deque[Interaction] = deque(maxlen=maxlen)

    def record(
        self,
        kind: str,
        *,
        model: str,
        prompt: str,
        response: str = "",
        duration_ms: float = 0.0,
        error: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Interaction:
        entry = Interaction(
            kind=kind,
            model=model,
            prompt=prompt,
            response=response,
            duration_ms=duration_ms,
            error=error,
            metadata=dict(metadata or {}),
        )
        self._entries.append(entry)
        logger.debug("Recorded %s interaction (success=%s)", kind, entry.success)
        return entry

    def recent(self, limit: Optional[int] = None) -> List[Interaction]:
        entries = list(self._entries)
        if limit is None:
            return entries
        return entries[-limit:] if limit > 0 else []

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["Interaction", "InteractionLog"]
