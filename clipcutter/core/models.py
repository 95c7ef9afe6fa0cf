"""
Data models (plain dataclasses) for ClipCutter.
"""

import enum
import uuid
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Optional

from clipcutter.core.constants import (
    ClipStatus, DEFAULT_PROCESS_TIMEOUT_SEC, DEFAULT_QUALITY,
)
from clipcutter.core.error_codes import NonZeroExit


# ── Process execution ────────────────────────────────────────────────

OutputCallback = Callable[[str], None]


@dataclass(frozen=True)
class ProcessSpec:
    executable: str
    args: tuple = ()
    env: Optional[dict] = None           # None -> security_utils.minimal_env()
    timeout: float = DEFAULT_PROCESS_TIMEOUT_SEC
    on_output: Optional[OutputCallback] = None
    on_error: Optional[OutputCallback] = None
    combined_output: bool = False


@dataclass(frozen=True)
class ProcessResult:
    exit_code: int
    stdout: bytes
    stderr: bytes
    duration: float

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")

    def check(self) -> "ProcessResult":
        """Raise NonZeroExit unless the process succeeded."""
        if not self.ok:
            raise NonZeroExit(self.exit_code, self.stdout, self.stderr)
        return self


# ── Cache entries ────────────────────────────────────────────────────

@dataclass
class CacheEntry:
    key: str
    content_id: str
    quality: str
    file_path: str
    created_at: float
    expires_at: float
    size: int
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "CacheEntry":
        return cls(
            key=str(data["key"]),
            content_id=str(data["content_id"]),
            quality=str(data["quality"]),
            file_path=str(data["file_path"]),
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]),
            size=int(data["size"]),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class MetadataEntry:
    key: str
    content_id: str
    payload: dict
    created_at: float
    expires_at: float
    thumbnail_path: Optional[str] = None
    size: int = 0                        # thumbnail bytes on disk

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "MetadataEntry":
        return cls(
            key=str(data["key"]),
            content_id=str(data["content_id"]),
            payload=dict(data.get("payload") or {}),
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]),
            thumbnail_path=data.get("thumbnail_path"),
            size=int(data.get("size", 0)),
        )


# ── Clip jobs ────────────────────────────────────────────────────────

class AspectRatio(str, enum.Enum):
    ORIGINAL = "Original"
    SIXTEEN_NINE = "16:9"
    ONE_ONE = "1:1"
    NINE_SIXTEEN = "9:16"        # Vertical/Stories
    FOUR_THREE = "4:3"
    TWENTY_ONE_NINE = "21:9"     # Ultrawide
    THREE_FOUR = "3:4"           # Portrait

    @property
    def crop_filter(self) -> Optional[str]:
        """Centered crop to this ratio, or None for the original frame."""
        if self is AspectRatio.ORIGINAL:
            return None
        w, h = self.value.split(":")
        if w == h:
            return "crop=min(iw\\,ih):min(iw\\,ih):(iw-min(iw\\,ih))/2:(ih-min(iw\\,ih))/2"
        cw = f"min(iw\\,ih*{w}/{h})"
        ch = f"min(ih\\,iw*{h}/{w})"
        return f"crop={cw}:{ch}:(iw-{cw})/2:(ih-{ch})/2"

    @property
    def file_suffix(self) -> str:
        return "" if self is AspectRatio.ORIGINAL else self.value.replace(":", "x")


@dataclass
class ClipJob:
    url: str
    start_time: str
    end_time: str
    aspect_ratio: AspectRatio = AspectRatio.ORIGINAL
    quality: str = DEFAULT_QUALITY
    target_height: Optional[int] = None
    status: str = ClipStatus.PENDING
    progress: float = 0.0
    source_path: Optional[str] = None
    output_path: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    video_info: Optional[dict[str, Any]] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def is_finished(self) -> bool:
        return self.status in (ClipStatus.COMPLETE, ClipStatus.FAILED)
