"""Data models for segmentation, playback, and batch export."""

from dataclasses import dataclass, field
from enum import Enum


@dataclass(frozen=True)
class SpeakableUnit:
    text: str
    is_structural: bool = False       # heading / TOC entry, never merged
    has_trailing_break: bool = False  # last unit of a paragraph


@dataclass(frozen=True)
class CacheKey:
    voice_id: str
    text: str
    rate: str          # rate descriptor, e.g. "+10%"


class PlaybackStatus(Enum):
    IDLE = "idle"
    PLAYING = "playing"
    PAUSED = "paused"
    STOPPED = "stopped"


@dataclass
class PlaybackSession:
    units: list[SpeakableUnit]
    voice: str
    speed: float = 1.0
    current_index: int = 0
    status: PlaybackStatus = PlaybackStatus.IDLE
    paused_offset: float = 0.0   # seconds into the current unit's remote audio
    generation: int = 0


@dataclass
class BatchJob:
    units: list[SpeakableUnit]
    voice_id: str
    rate: str
    unit_buffers: list[bytes | None] = field(default_factory=list)
    failed_indices: set[int] = field(default_factory=set)
    cancelled: bool = False
    consecutive_failures: int = 0
    next_index: int = 0

    def __post_init__(self):
        if not self.unit_buffers:
            self.unit_buffers = [None] * len(self.units)

    def cancel(self) -> None:
        self.cancelled = True

    @property
    def succeeded(self) -> int:
        return sum(1 for buf in self.unit_buffers if buf)

    def unresolved_failures(self) -> list[int]:
        """Indices that failed at least once and never succeeded."""
        return sorted(i for i in self.failed_indices if not self.unit_buffers[i])


@dataclass
class BatchResult:
    audio: bytes
    total_units: int
    succeeded: int
    failed_indices: list[int] = field(default_factory=list)    # never succeeded
    retried_indices: list[int] = field(default_factory=list)   # failed at least once
    complete: bool = True
    resume_index: int | None = None   # first unattempted index of a partial run


@dataclass(frozen=True)
class Voice:
    name: str
    display_name: str = ""
    language: str = ""
    gender: str = ""
    is_recommended: bool = False


@dataclass(frozen=True)
class VoiceOption:
    value: str           # "online:<name>" for remote voices, plain name for local
    display_name: str
    kind: str            # "online", "local", or "default"
    is_recommended: bool = False
    priority: int = 5


@dataclass(frozen=True)
class Notice:
    level: str           # "info", "success", "warning", or "error"
    message: str

    @property
    def duration(self) -> float:
        """Seconds the notice stays visible before dismissing itself."""
        if self.level == "success":
            return 5.0
        if self.level == "error":
            return 7.0
        if self.level == "info" and len(self.message) > 50:
            return 8.0
        return 3.0
