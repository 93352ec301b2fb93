"""Pick the backend that should encode a given target format."""
import logging
from typing import Optional

from mediaopt.conversion.capabilities import CapabilityMatrix
from mediaopt.conversion.models import MediaKind, kind_for_format

logger = logging.getLogger("mediaopt.selector")

# Richer backend first, baseline last
PRECEDENCE = {
    MediaKind.IMAGE: ("imagemagick", "pillow"),
    MediaKind.VIDEO: ("ffmpeg",),
}


class ProcessorSelector:
    def __init__(self, matrix: CapabilityMatrix, precedence: Optional[dict] = None):
        self.matrix = matrix
        self.precedence = precedence or PRECEDENCE

    def candidates(self, fmt: str, kind: Optional[MediaKind] = None) -> list[str]:
        """Backends that support `fmt`, in precedence order."""
        fmt = (fmt or "").lower()
        kind = kind or kind_for_format(fmt)
        if kind is None:
            return []
        order = list(self.precedence.get(MediaKind(kind), ()))
        # Backends missing from the precedence table rank after the known ones, by name
        order += sorted(name for name in self.matrix.rows if name not in order)
        result = []
        for name in order:
            row = self.matrix.row(name)
            if row is not None and row.kind == MediaKind(kind) and row.supports(fmt):
                result.append(name)
        return result

    def select(self, fmt: str, kind: Optional[MediaKind] = None, animated: bool = False) -> Optional[str]:
        """Best backend for `fmt`, or None when no backend supports it.

        For animated sources a backend that preserves animation in `fmt` wins over a
        higher-ranked one that would flatten it.
        """
        candidates = self.candidates(fmt, kind)
        if not candidates:
            logger.debug("No backend supports %s", fmt)
            return None
        if animated:
            for name in candidates:
                if self.matrix.row(name).preserves_animation(fmt):
                    return name
        return candidates[0]
