import io
import os
from typing import List

from PIL import Image
import pillow_heif
from pdf2image import convert_from_bytes

from .exceptions import UnsupportedFileError

pillow_heif.register_heif_opener()

SUPPORTED_IMAGE_EXTS = {".jpg", ".jpeg", ".png", ".heic"}
PDF_EXT = ".pdf"


def _to_jpeg(img: Image.Image) -> bytes:
    buffer = io.BytesIO()
    img.convert("RGB").save(buffer, "JPEG", quality=95)
    return buffer.getvalue()


def convert_to_images(filename: str, content: bytes) -> List[bytes]:
    """
    Converts an uploaded file (image / HEIC / PDF) into JPEG images.
    Returns one JPEG per image or PDF page.
    """
    ext = os.path.splitext(filename or "")[1].lower()

    if not content:
        raise UnsupportedFileError(f"Uploaded file {filename!r} is empty", extension=ext)

    # -------- Case 1: Normal image or HEIC --------
    if ext in SUPPORTED_IMAGE_EXTS:
        try:
            with Image.open(io.BytesIO(content)) as img:
                return [_to_jpeg(img)]
        except (OSError, ValueError) as e:
            raise UnsupportedFileError(f"Could not read image {filename!r}: {e}", extension=ext) from e

    # -------- Case 2: PDF --------
    if ext == PDF_EXT:
        pages = convert_from_bytes(content, dpi=300)
        return [_to_jpeg(page) for page in pages]

    raise UnsupportedFileError(f"Unsupported file type: {ext}", extension=ext)
