"""Raster image conversion using Pillow."""

import io
from pathlib import Path

from PIL import Image, ImageOps, UnidentifiedImageError

from ...errors import ConversionCancelled, ConverterError, CorruptInput, ResourceExhausted, UnsupportedConversion
from ..formats import Format, FormatCategory
from ..interfaces import StopCheck
from ..options import ImageOptions

# Target code -> Pillow encoder name
PIL_FORMATS: dict[str, str] = {
    "JPG": "JPEG",
    "PNG": "PNG",
    "WEBP": "WEBP",
    "BMP": "BMP",
    "GIF": "GIF",
    "TIFF": "TIFF",
    "ICO": "ICO",
    "EPS": "EPS",
}

ALPHA_CAPABLE = frozenset({"PNG", "WEBP", "GIF", "TIFF", "ICO"})
EXIF_CAPABLE = frozenset({"JPEG", "PNG", "WEBP", "TIFF"})
ICC_CAPABLE = frozenset({"JPEG", "PNG", "WEBP", "TIFF"})

# Keys that describe pixels rather than provenance
_PIXEL_INFO_KEYS = ("transparency", "duration", "loop", "background")


def _has_alpha(img: Image.Image) -> bool:
    return img.mode in ("RGBA", "LA", "PA", "RGBa", "La") or (img.mode == "P" and "transparency" in img.info)


def _checkpoint(should_stop: StopCheck) -> None:
    if should_stop():
        raise ConversionCancelled()


class ImageBackend:
    supports_cancellation = True

    def __init__(self, *, max_output_pixels: int = 400_000_000) -> None:
        self._max_output_pixels = max_output_pixels

    def convert(
        self,
        input_path: Path,
        source_type: str,
        target: Format,
        options: ImageOptions | None,
        should_stop: StopCheck,
    ) -> bytes:
        if target.category is not FormatCategory.IMAGE:
            raise UnsupportedConversion(f"image backend cannot produce {target.code}")
        if "svg" in source_type.lower():
            raise UnsupportedConversion("vector (SVG) sources cannot be rasterised")
        pil_format = PIL_FORMATS.get(target.code)
        if pil_format is None:
            raise UnsupportedConversion(f"no encoder for {target.code}")
        opts = options or ImageOptions()

        try:
            with Image.open(input_path) as src:
                src.load()
                _checkpoint(should_stop)

                img = ImageOps.exif_transpose(src) if opts.auto_orient else src.copy()
                _checkpoint(should_stop)

                size = opts.target_size(*img.size)
                if size[0] * size[1] > self._max_output_pixels:
                    raise ResourceExhausted(
                        f"output of {size[0]}x{size[1]} exceeds the {self._max_output_pixels} pixel limit"
                    )
                if size != img.size:
                    img = img.resize(size, Image.Resampling.LANCZOS)
                _checkpoint(should_stop)

                img = self._prepare_mode(img, target.code, opts)
                _checkpoint(should_stop)

                return self._encode(img, pil_format, opts)
        except ConverterError:
            raise
        except Image.DecompressionBombError as e:
            raise ResourceExhausted(str(e)) from e
        except MemoryError as e:
            raise ResourceExhausted("out of memory while converting image") from e
        except UnidentifiedImageError as e:
            raise CorruptInput("file is not a readable image") from e
        except (OSError, SyntaxError, ValueError) as e:
            raise CorruptInput(f"image could not be converted: {e}") from e

    def _prepare_mode(self, img: Image.Image, code: str, opts: ImageOptions) -> Image.Image:
        alpha = _has_alpha(img)
        if alpha and code not in ALPHA_CAPABLE:
            return self._flatten(img, opts.background_rgb)
        if code in ("JPG", "EPS"):
            return img if img.mode in ("RGB", "L", "CMYK") else img.convert("RGB")
        if code == "BMP":
            return img if img.mode in ("RGB", "L", "P", "1") else img.convert("RGB")
        if code in ("WEBP", "ICO"):
            if img.mode in ("RGB", "RGBA"):
                return img
            return img.convert("RGBA" if alpha else "RGB")
        if img.mode in ("I", "I;16", "F", "CMYK", "YCbCr", "LAB", "HSV") and code != "TIFF":
            return img.convert("RGB")
        return img

    @staticmethod
    def _flatten(img: Image.Image, background: tuple[int, int, int]) -> Image.Image:
        rgba = img.convert("RGBA")
        canvas = Image.new("RGB", rgba.size, background)
        canvas.paste(rgba, mask=rgba.getchannel("A"))
        return canvas

    def _encode(self, img: Image.Image, pil_format: str, opts: ImageOptions) -> bytes:
        params: dict[str, object] = {}
        if opts.strip_metadata:
            img.info = {k: v for k, v in img.info.items() if k in _PIXEL_INFO_KEYS}
        else:
            exif = img.info.get("exif")
            icc = img.info.get("icc_profile")
            if exif and pil_format in EXIF_CAPABLE:
                params["exif"] = exif
            if icc and pil_format in ICC_CAPABLE:
                params["icc_profile"] = icc

        if pil_format == "JPEG":
            params.update(quality=70 if opts.compress else 92, optimize=True)
        elif pil_format == "WEBP":
            params.update(quality=70 if opts.compress else 90)
        elif pil_format == "PNG":
            params["optimize"] = True
            if opts.compress and img.mode in ("RGB", "RGBA"):
                img = img.quantize(colors=256, method=Image.Quantize.FASTOCTREE)

        buf = io.BytesIO()
        img.save(buf, format=pil_format, **params)
        return buf.getvalue()
