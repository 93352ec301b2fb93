"""Probe installed codec backends and build the format-support matrix."""
import logging
import threading
from dataclasses import dataclass, field
from typing import Iterable, Optional

from mediaopt.conversion.imaging import ImageMagickProcessor, PillowProcessor
from mediaopt.conversion.models import FormatSupport, MediaKind, ProcessorCapability, SupportedFormats
from mediaopt.conversion.video import FFmpegProcessor

logger = logging.getLogger("mediaopt.capabilities")


@dataclass(frozen=True)
class CapabilityMatrix:
    rows: dict[str, ProcessorCapability] = field(default_factory=dict)

    def row(self, backend: str) -> Optional[ProcessorCapability]:
        return self.rows.get(backend)

    def supports(self, fmt: str) -> bool:
        """A format is supported when at least one backend row supports it."""
        return any(row.supports(fmt) for row in self.rows.values())

    def backends_for(self, fmt: str) -> list[str]:
        return [name for name, row in self.rows.items() if row.supports(fmt)]

    def supported_formats(self, kind: MediaKind) -> tuple[str, ...]:
        targets = SupportedFormats.IMAGE if kind == MediaKind.IMAGE else SupportedFormats.VIDEO
        return tuple(f for f in targets if self.supports(f))

    def format_support(self) -> dict:
        """Per target format: global flag plus each backend's answer."""
        info = {}
        for fmt in SupportedFormats.IMAGE + SupportedFormats.VIDEO:
            entry = {"supported": self.supports(fmt)}
            for name, row in self.rows.items():
                if fmt in row.formats:
                    entry[f"{name}_support"] = row.supports(fmt)
            info[fmt] = entry
        return info

    def to_dict(self) -> dict:
        return {
            "backends": {name: row.to_dict() for name, row in self.rows.items()},
            "formats": self.format_support(),
        }


def default_backends() -> list:
    return [ImageMagickProcessor(), PillowProcessor(), FFmpegProcessor()]


def _unavailable(backend) -> ProcessorCapability:
    targets = SupportedFormats.IMAGE if backend.kind == MediaKind.IMAGE else SupportedFormats.VIDEO
    return ProcessorCapability(
        backend_name=backend.name,
        kind=backend.kind,
        available=False,
        version_string="Not available",
        formats={fmt: FormatSupport() for fmt in targets},
    )


class CapabilityDetector:
    """Best-effort, total probing: a failing probe yields an unsupported row, never an exception."""

    def __init__(self, backends: Optional[Iterable] = None):
        self.backends = {b.name: b for b in (backends if backends is not None else default_backends())}
        self._matrix: Optional[CapabilityMatrix] = None
        self._lock = threading.Lock()

    def detect(self) -> CapabilityMatrix:
        rows = {}
        for name, backend in self.backends.items():
            try:
                rows[name] = backend.probe()
            except Exception as e:
                logger.info("Backend %s unavailable: %s", name, e)
                rows[name] = _unavailable(backend)
        matrix = CapabilityMatrix(rows=rows)
        logger.info(
            "Capability matrix: %s",
            ", ".join(f"{fmt}={'yes' if v['supported'] else 'no'}" for fmt, v in matrix.format_support().items()),
        )
        return matrix

    def get_matrix(self) -> CapabilityMatrix:
        """Cached matrix for the process lifetime (until invalidate())."""
        with self._lock:
            if self._matrix is None:
                self._matrix = self.detect()
            return self._matrix

    def invalidate(self) -> None:
        with self._lock:
            self._matrix = None

    def backend(self, name: str):
        return self.backends.get(name)


_detector: Optional[CapabilityDetector] = None


def get_detector() -> CapabilityDetector:
    global _detector
    if _detector is None:
        _detector = CapabilityDetector()
    return _detector
