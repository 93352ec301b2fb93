"""Conversion request/response models."""
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional


class TaskStatus(str, Enum):
    PENDING = "pending"
    CONVERTING = "converting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class MediaKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class ConversionMode(str, Enum):
    NATIVE = "native"
    HYBRID = "hybrid"


class JobState(str, Enum):
    SUBMITTED = "submitted"
    COMPLETED = "completed"
    FAILED = "failed"


class SupportedFormats:
    IMAGE = ("webp", "avif")
    VIDEO = ("av1", "webm")


# Target format -> file suffix of the converted artifact
FORMAT_EXTENSIONS = {
    "webp": ".webp",
    "avif": ".avif",
    "av1": ".av1.mp4",
    "webm": ".webm",
}


def kind_for_format(fmt: str) -> Optional[MediaKind]:
    fmt = (fmt or "").lower()
    if fmt in SupportedFormats.IMAGE:
        return MediaKind.IMAGE
    if fmt in SupportedFormats.VIDEO:
        return MediaKind.VIDEO
    return None


def kind_for_mimetype(mimetype: str) -> Optional[MediaKind]:
    mimetype = (mimetype or "").lower()
    if mimetype.startswith("image/"):
        return MediaKind.IMAGE
    if mimetype.startswith("video/"):
        return MediaKind.VIDEO
    return None


def _freeze(mapping: Optional[Mapping]) -> Mapping:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class ConversionRequest:
    """One asset to convert: every rendition into every requested format."""

    asset_id: int
    source_path: str
    mimetype: str
    requested_formats: tuple[str, ...]
    renditions: Mapping[str, str] = field(default_factory=dict)  # size name -> file path
    quality_options: Mapping[str, Mapping] = field(default_factory=dict)  # format -> options
    mode: ConversionMode = ConversionMode.HYBRID

    def __post_init__(self):
        renditions = dict(self.renditions or {})
        renditions.setdefault("full", self.source_path)
        object.__setattr__(self, "renditions", _freeze(renditions))
        object.__setattr__(
            self,
            "quality_options",
            _freeze({k.lower(): _freeze(v) for k, v in (self.quality_options or {}).items()}),
        )
        object.__setattr__(self, "requested_formats", tuple(f.lower() for f in self.requested_formats))
        object.__setattr__(self, "mode", ConversionMode(self.mode))

    @property
    def rendition_sizes(self) -> tuple[str, ...]:
        return tuple(self.renditions.keys())

    @property
    def kind(self) -> Optional[MediaKind]:
        return kind_for_mimetype(self.mimetype)

    def options_for(self, fmt: str) -> dict:
        return dict(self.quality_options.get(fmt.lower(), {}))


@dataclass(frozen=True)
class ConversionResult:
    destination_path: str
    format: str
    original_bytes: int
    converted_bytes: int
    backend: str
    animation_lost: bool = False

    @property
    def success(self) -> bool:
        return True


@dataclass(frozen=True)
class ConversionFailure:
    format: str
    code: str
    error: str
    retryable: bool
    backend: Optional[str] = None

    @property
    def success(self) -> bool:
        return False


@dataclass(frozen=True)
class FormatSupport:
    supported: bool = False
    animation: bool = False


@dataclass(frozen=True)
class ProcessorCapability:
    """One backend row of the capability matrix."""

    backend_name: str
    kind: MediaKind
    available: bool
    version_string: str
    formats: Mapping[str, FormatSupport] = field(default_factory=dict)

    @property
    def supported_formats(self) -> tuple[str, ...]:
        return tuple(f for f, s in self.formats.items() if s.supported)

    @property
    def animated_source_support(self) -> bool:
        return any(s.supported and s.animation for s in self.formats.values())

    def supports(self, fmt: str) -> bool:
        return self.available and self.formats.get(fmt, FormatSupport()).supported

    def preserves_animation(self, fmt: str) -> bool:
        support = self.formats.get(fmt, FormatSupport())
        return self.available and support.supported and support.animation

    def to_dict(self) -> dict:
        return {
            "backend": self.backend_name,
            "kind": self.kind.value,
            "available": self.available,
            "version": self.version_string,
            "formats": {
                fmt: {"supported": s.supported, "animation": s.animation}
                for fmt, s in self.formats.items()
            },
        }


class ConversionTask:
    """In-memory state of one queued (asset, format, rendition) unit of work."""

    def __init__(self, task_id: str, asset_id: int, fmt: str, size_name: str):
        self.task_id = task_id
        self.asset_id = asset_id
        self.format = fmt
        self.size_name = size_name
        self.status = TaskStatus.PENDING
        self.error: Optional[str] = None
        self.retryable = False
        self.output_path: Optional[str] = None
        self.input_size: Optional[int] = None  # bytes
        self.output_size: Optional[int] = None  # bytes
        self.animation_lost = False

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "asset_id": self.asset_id,
            "format": self.format,
            "size_name": self.size_name,
            "status": self.status.value,
            "error": self.error,
            "retryable": self.retryable,
            "output_path": self.output_path,
            "input_size": self.input_size,
            "output_size": self.output_size,
            "animation_lost": self.animation_lost,
        }
