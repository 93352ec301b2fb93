"""Execute one source -> destination transform, and plan the transforms for a whole request."""
import logging
import os
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional, Union

from mediaopt.conversion.capabilities import CapabilityDetector
from mediaopt.conversion.errors import PermanentEncodeFailure, classify_exception
from mediaopt.conversion.imaging import is_animated
from mediaopt.conversion.models import (
    FORMAT_EXTENSIONS,
    ConversionFailure,
    ConversionRequest,
    ConversionResult,
    MediaKind,
    kind_for_format,
)
from mediaopt.conversion.selector import ProcessorSelector

logger = logging.getLogger("mediaopt.pipeline")

# Inclusive bounds per format and option; anything outside is clamped
OPTION_RANGES = {
    "webp": {"quality": (0, 100)},
    "avif": {"quality": (0, 100), "speed": (0, 10)},
    "av1": {"crf": (0, 63), "cpu_used": (0, 8)},
    "webm": {"crf": (0, 63), "speed": (0, 5)},
}

Outcome = Union[ConversionResult, ConversionFailure]


def clamp_options(fmt: str, options: Optional[Mapping]) -> dict:
    """Clamp numeric options into their valid range; unparsable values are dropped."""
    result = dict(options or {})
    for key, (low, high) in OPTION_RANGES.get(fmt, {}).items():
        if key not in result:
            continue
        try:
            value = int(round(float(result[key])))
        except (TypeError, ValueError):
            logger.warning("Ignoring non-numeric %s=%r for %s", key, result[key], fmt)
            del result[key]
            continue
        clamped = max(low, min(high, value))
        if clamped != value:
            logger.info("Clamped %s %s from %s to %s", fmt, key, value, clamped)
        result[key] = clamped
    return result


def destination_for(source_path: Union[str, Path], fmt: str) -> Path:
    """Converted artifact sits next to its source: photo.jpg -> photo.webp, clip.mov -> clip.av1.mp4."""
    source = Path(source_path)
    return source.with_name(source.stem + FORMAT_EXTENSIONS[fmt])


def _temp_path(destination: Path) -> Path:
    return destination.with_name(f".{destination.name}.{uuid.uuid4().hex[:8]}.tmp")


def _same_file(a: Union[str, Path], b: Union[str, Path]) -> bool:
    return Path(a).resolve() == Path(b).resolve()


class ConversionPipeline:
    """Stateless per call: every convert() resolves a backend, encodes to a temp file and renames it in place."""

    def __init__(self, detector: CapabilityDetector):
        self.detector = detector

    def selector(self) -> ProcessorSelector:
        return ProcessorSelector(self.detector.get_matrix())

    def job(self) -> "ConversionJob":
        return ConversionJob(pipeline=self)

    def convert(
        self,
        source_path: Union[str, Path],
        destination_path: Union[str, Path],
        fmt: str,
        options: Optional[Mapping] = None,
    ) -> Outcome:
        fmt = (fmt or "").lower()
        source = Path(source_path)
        destination = Path(destination_path)
        kind = kind_for_format(fmt)
        if kind is None:
            return ConversionFailure(fmt, "unsupported_format", f"Unknown target format: {fmt}", False)
        if not source.is_file() or not os.access(source, os.R_OK):
            return ConversionFailure(fmt, "source_unreadable", f"Source not readable: {source}", False)
        if _same_file(source, destination):
            return ConversionFailure(fmt, "destination_is_source", f"Refusing to overwrite source {source}", False)
        if not destination.parent.is_dir() or not os.access(destination.parent, os.W_OK):
            return ConversionFailure(fmt, "destination_unwritable", f"Destination not writable: {destination.parent}", False)

        animated = kind == MediaKind.IMAGE and is_animated(source)
        selector = self.selector()
        backend_name = selector.select(fmt, kind, animated=animated)
        if backend_name is None:
            logger.info("Skipping %s for %s: no backend supports it", fmt, source.name)
            return ConversionFailure(fmt, "unsupported_format", f"No backend supports {fmt}", False)
        backend = self.detector.backend(backend_name)
        capability = selector.matrix.row(backend_name)
        preserve = animated and capability.preserves_animation(fmt)
        animation_lost = animated and not preserve
        if animation_lost:
            logger.warning("%s is animated but %s cannot keep animation in %s; output will be static", source.name, backend_name, fmt)

        opts = clamp_options(fmt, options)
        tmp = _temp_path(destination)
        try:
            backend.convert(source, tmp, fmt, opts, animated=preserve)
            if not tmp.is_file() or tmp.stat().st_size == 0:
                raise PermanentEncodeFailure(f"{backend_name} produced no output for {fmt}", "empty_output")
            os.replace(tmp, destination)
        except Exception as e:
            failure = classify_exception(e, fmt, backend_name)
            logger.error("Conversion %s -> %s failed (%s, retryable=%s): %s", source.name, fmt, failure.code, failure.retryable, e)
            return failure
        finally:
            if tmp.exists():
                try:
                    tmp.unlink()
                except OSError as e:
                    logger.warning("Could not remove temp file %s: %s", tmp, e)

        result = ConversionResult(
            destination_path=str(destination),
            format=fmt,
            original_bytes=source.stat().st_size,
            converted_bytes=destination.stat().st_size,
            backend=backend_name,
            animation_lost=animation_lost,
        )
        logger.info("Converted %s -> %s with %s (%s -> %s bytes)", source.name, destination.name, backend_name, result.original_bytes, result.converted_bytes)
        return result


@dataclass(frozen=True)
class ConversionJob:
    """Immutable builder: from_/to/with_options return new jobs; nothing runs until convert()."""

    pipeline: Optional[ConversionPipeline] = None
    source_path: Optional[str] = None
    destination_path: Optional[str] = None
    format: Optional[str] = None
    options: Mapping = field(default_factory=lambda: MappingProxyType({}))

    def from_(self, source_path: Union[str, Path]) -> "ConversionJob":
        return replace(self, source_path=str(source_path))

    def to(self, destination_path: Union[str, Path], fmt: Optional[str] = None) -> "ConversionJob":
        if fmt is None:
            suffix = Path(destination_path).suffix.lstrip(".").lower()
            fmt = "av1" if str(destination_path).lower().endswith(".av1.mp4") else suffix
        return replace(self, destination_path=str(destination_path), format=fmt.lower())

    def with_options(self, options: Optional[Mapping] = None, **kwargs) -> "ConversionJob":
        merged = {**self.options, **(options or {}), **kwargs}
        return replace(self, options=MappingProxyType(merged))

    def convert(self) -> Outcome:
        if self.pipeline is None:
            raise ValueError("ConversionJob has no pipeline")
        if not self.source_path or not self.destination_path or not self.format:
            raise ValueError("ConversionJob needs a source, a destination and a format")
        return self.pipeline.convert(self.source_path, self.destination_path, self.format, dict(self.options))


@dataclass(frozen=True)
class ConversionUnit:
    """One (asset, format, rendition) piece of work planned from a request."""

    asset_id: int
    format: str
    size_name: str
    source_path: str
    destination_path: str
    options: Mapping

    @property
    def key(self) -> tuple[int, str, str]:
        return (self.asset_id, self.format, self.size_name)


def _source_format(mimetype: str) -> str:
    return (mimetype or "").split("/")[-1].lower()


def planned_formats(request: ConversionRequest, selector: ProcessorSelector) -> list[str]:
    """Formats this request will produce locally.

    Every requested format some backend supports, in both modes; the mode only decides how
    artifacts are served later. A source already in the target format is never re-encoded.
    """
    source_format = _source_format(request.mimetype)
    return [
        f
        for f in request.requested_formats
        if kind_for_format(f) == request.kind and f != source_format and selector.select(f) is not None
    ]


def plan_request(request: ConversionRequest, selector: ProcessorSelector) -> list[ConversionUnit]:
    units = []
    for fmt in planned_formats(request, selector):
        for size_name, path in request.renditions.items():
            destination = destination_for(path, fmt)
            if _same_file(path, destination):
                logger.info("Skipping %s for asset %s/%s: source is already %s", fmt, request.asset_id, size_name, destination.name)
                continue
            units.append(
                ConversionUnit(
                    asset_id=request.asset_id,
                    format=fmt,
                    size_name=size_name,
                    source_path=str(path),
                    destination_path=str(destination),
                    options=MappingProxyType(request.options_for(fmt)),
                )
            )
    return units


def convert_request(pipeline: ConversionPipeline, request: ConversionRequest) -> dict[tuple[str, str], Outcome]:
    """Run every planned unit inline. Keyed by (format, size_name)."""
    outcomes = {}
    for unit in plan_request(request, pipeline.selector()):
        outcomes[(unit.format, unit.size_name)] = pipeline.convert(
            unit.source_path, unit.destination_path, unit.format, unit.options
        )
    return outcomes
