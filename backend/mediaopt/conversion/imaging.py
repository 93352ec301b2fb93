"""Image backends: Pillow (baseline) and ImageMagick through Wand (preferred)."""
import io
import logging
from pathlib import Path
from typing import Union

import PIL
from PIL import Image

from mediaopt.conversion.errors import PermanentEncodeFailure, TransientEncodeFailure
from mediaopt.conversion.models import FormatSupport, MediaKind, ProcessorCapability, SupportedFormats

logger = logging.getLogger("mediaopt.imaging")

PathLike = Union[str, Path]

PILLOW_FORMATS = {"webp": "WEBP", "avif": "AVIF"}


def is_animated(path: PathLike) -> bool:
    """True when the image holds more than one frame (animated GIF/WebP/PNG)."""
    try:
        with Image.open(path) as img:
            return bool(getattr(img, "is_animated", False)) and getattr(img, "n_frames", 1) > 1
    except (OSError, ValueError) as e:
        logger.debug("Could not check animation for %s: %s", path, e)
        return False


def _has_alpha(img: Image.Image) -> bool:
    return img.mode.endswith("A") or "transparency" in img.info


class PillowProcessor:
    """Baseline image backend. Always importable; format support depends on the Pillow build."""

    name = "pillow"
    kind = MediaKind.IMAGE

    def probe(self) -> ProcessorCapability:
        Image.init()
        formats = {}
        for fmt in SupportedFormats.IMAGE:
            supported = PILLOW_FORMATS[fmt] in Image.SAVE and self._trial_encode(fmt, frames=1)
            animation = supported and self._trial_encode(fmt, frames=2)
            formats[fmt] = FormatSupport(supported=supported, animation=animation)
        return ProcessorCapability(
            backend_name=self.name,
            kind=self.kind,
            available=True,
            version_string=f"Pillow {PIL.__version__}",
            formats=formats,
        )

    @staticmethod
    def _trial_encode(fmt: str, frames: int) -> bool:
        try:
            images = [Image.new("RGB", (4, 4), color) for color in ("red", "blue")[:frames]]
            buf = io.BytesIO()
            kwargs = {"format": PILLOW_FORMATS[fmt]}
            if frames > 1:
                kwargs.update(save_all=True, append_images=images[1:], duration=100, loop=0)
            images[0].save(buf, **kwargs)
            buf.seek(0)
            with Image.open(buf) as back:
                return getattr(back, "n_frames", 1) >= frames
        except Exception as e:
            logger.debug("Pillow %s probe (%s frames) failed: %s", fmt, frames, e)
            return False

    @staticmethod
    def _save_kwargs(fmt: str, options: dict) -> dict:
        if fmt == "webp":
            kw = {"format": "WEBP", "quality": options.get("quality", 75), "method": 4}
            if options.get("lossless"):
                kw["lossless"] = True
            return kw
        if fmt == "avif":
            return {"format": "AVIF", "quality": options.get("quality", 70), "speed": options.get("speed", 6)}
        raise PermanentEncodeFailure(f"Pillow cannot encode {fmt}", "unsupported_format")

    def convert(self, source: PathLike, destination: PathLike, fmt: str, options: dict, animated: bool = False) -> None:
        save_kw = self._save_kwargs(fmt, options)
        with Image.open(source) as img:
            if animated and getattr(img, "is_animated", False):
                img.save(destination, save_all=True, **save_kw)
                return
            frame = img
            if img.mode not in ("RGB", "RGBA"):
                frame = img.convert("RGBA" if _has_alpha(img) else "RGB")
            frame.save(destination, **save_kw)


class ImageMagickProcessor:
    """Richer image backend through Wand. Unavailable when ImageMagick is not installed."""

    name = "imagemagick"
    kind = MediaKind.IMAGE

    def probe(self) -> ProcessorCapability:
        from wand.version import MAGICK_VERSION, formats as magick_formats

        formats = {}
        for fmt in SupportedFormats.IMAGE:
            supported = fmt.upper() in magick_formats(fmt.upper()) and self._trial_encode(fmt, frames=1)
            animation = supported and self._trial_encode(fmt, frames=2)
            formats[fmt] = FormatSupport(supported=supported, animation=animation)
        return ProcessorCapability(
            backend_name=self.name,
            kind=self.kind,
            available=True,
            version_string=MAGICK_VERSION,
            formats=formats,
        )

    @staticmethod
    def _trial_encode(fmt: str, frames: int) -> bool:
        from wand.image import Image as WandImage

        try:
            with WandImage() as seq:
                for color in ("red", "blue")[:frames]:
                    with WandImage(width=4, height=4, pseudo=f"xc:{color}") as frame:
                        seq.sequence.append(frame)
                seq.format = fmt.upper()
                blob = seq.make_blob()
            with WandImage(blob=blob) as back:
                return len(back.sequence) >= frames
        except Exception as e:
            logger.debug("ImageMagick %s probe (%s frames) failed: %s", fmt, frames, e)
            return False

    def convert(self, source: PathLike, destination: PathLike, fmt: str, options: dict, animated: bool = False) -> None:
        from wand.exceptions import (
            CacheError,
            CorruptImageError,
            MissingDelegateError,
            ResourceLimitError,
            WandException,
        )
        from wand.image import Image as WandImage

        try:
            with WandImage(filename=str(source)) as original:
                if animated or len(original.sequence) <= 1:
                    self._write(original, destination, fmt, options)
                else:
                    with WandImage(image=original.sequence[0]) as first:
                        self._write(first, destination, fmt, options)
        except (ResourceLimitError, CacheError) as e:
            raise TransientEncodeFailure(str(e), "resource_limit") from e
        except CorruptImageError as e:
            raise PermanentEncodeFailure(str(e), "corrupt_source") from e
        except MissingDelegateError as e:
            raise PermanentEncodeFailure(str(e), "unsupported_format") from e
        except WandException as e:
            raise PermanentEncodeFailure(str(e), "encode_failed") from e

    @staticmethod
    def _write(img, destination: PathLike, fmt: str, options: dict) -> None:
        img.format = fmt.upper()
        img.compression_quality = int(options.get("quality", 75))
        if fmt == "webp":
            img.options["webp:method"] = "4"
            img.options["webp:pass"] = "6"
            if options.get("lossless"):
                img.options["webp:lossless"] = "true"
        elif fmt == "avif":
            speed = str(options.get("speed", 6))
            img.options["avif:speed"] = speed
            img.options["heic:speed"] = speed
        img.strip()
        with open(destination, "wb") as fh:
            img.save(file=fh)
