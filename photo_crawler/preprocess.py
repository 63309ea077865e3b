from __future__ import annotations

import io

from PIL import Image, ImageOps, UnidentifiedImageError
from pillow_heif import register_heif_opener

from .errors import ImageDecodeError

# iPhone photos arrive as HEIC; Pillow needs the plugin to open them.
register_heif_opener()

UPLOAD_JPEG_QUALITY = 85
UPLOAD_MEDIA_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}


def detect_media_type(data: bytes) -> str:
    if data[:2] == b"\x89P":
        return "image/png"
    if data[:2] == b"\xff\xd8":
        return "image/jpeg"
    if data[:2] == b"GI":
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[4:12] in (b"ftypheic", b"ftypheix", b"ftypmif1", b"ftypmsf1"):
        return "image/heic"
    if data[:4] in (b"II*\x00", b"MM\x00*"):
        return "image/tiff"
    return "image/jpeg"


def prepare_for_upload(data: bytes, max_dimension: int) -> tuple[bytes, str]:
    """Downscale so the long edge is at most ``max_dimension``.

    Images already small enough and in a media type the API accepts are sent
    as-is. Anything else is re-encoded as JPEG. Bytes Pillow cannot decode
    are passed through only when their media type is one the API accepts;
    otherwise ImageDecodeError is raised.
    """
    media_type = detect_media_type(data)
    try:
        with Image.open(io.BytesIO(data)) as img:
            w, h = img.size
            if max(w, h) <= max_dimension and media_type in UPLOAD_MEDIA_TYPES:
                return data, media_type

            img = ImageOps.exif_transpose(img)
            w, h = img.size
            max_dim = max(w, h)
            if max_dim > max_dimension:
                scale = max_dimension / float(max_dim)
                resized_w = max(1, int(round(w * scale)))
                resized_h = max(1, int(round(h * scale)))
                img = img.resize((resized_w, resized_h), Image.Resampling.LANCZOS)

            if img.mode != "RGB":
                img = img.convert("RGB")

            buffer = io.BytesIO()
            img.save(buffer, format="JPEG", quality=UPLOAD_JPEG_QUALITY, optimize=True)
            return buffer.getvalue(), "image/jpeg"
    except (UnidentifiedImageError, OSError) as exc:
        if media_type not in UPLOAD_MEDIA_TYPES:
            raise ImageDecodeError(f"Could not decode {media_type} image for upload: {exc}") from exc
        return data, media_type
