import time
import itertools
from dataclasses import dataclass, field
from typing import Optional

_frame_ids = itertools.count(1)


@dataclass(frozen=True)
class Frame:
    """One submitted image. Immutable once created."""
    image_bytes: bytes = field(repr=False)
    origin_connection: Optional[str] = None
    id: int = field(default_factory=lambda: next(_frame_ids))
    submitted_at: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class Admission:
    """Outcome of FrameDispatcher.submit()."""
    accepted: bool
    queued: bool = False
    reason: Optional[str] = None

    BACKLOG_FULL = "backlog_full"

    @classmethod
    def dispatched(cls) -> "Admission":
        return cls(accepted=True)

    @classmethod
    def enqueued(cls) -> "Admission":
        return cls(accepted=True, queued=True)

    @classmethod
    def rejected(cls, reason: str) -> "Admission":
        return cls(accepted=False, reason=reason)
