import asyncio
import base64
import binascii
import json
import os
import re
from datetime import date, datetime
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import requests

from .exceptions import InfrastructureError, ProviderResponseError
from .models import ImageInput

DATA_URL_REGEX = re.compile(r"^data:(?P<mime>[\w/+.-]+)?;base64,(?P<data>.+)$", re.DOTALL)

DATE_FORMATS = ("%Y-%m-%d", "%d-%m-%Y", "%d/%m/%Y", "%m/%d/%Y", "%d.%m.%Y")


def download_image_from_url(url: str, timeout: float = 30) -> bytes:
    """
    Download an image from URL

    Args:
        url: Image URL to download
        timeout: Seconds to wait for the remote host

    Returns:
        Raw image bytes
    """
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        raise InfrastructureError(f"Failed to download image from {url}: {str(e)}", service="image-download") from e
    return response.content


def is_valid_url(url: str) -> bool:
    """Check if string is a valid http(s) URL"""
    try:
        result = urlparse(url)
        return result.scheme in ("http", "https") and bool(result.netloc)
    except ValueError:
        return False


def decode_data_url(value: str) -> Optional[bytes]:
    """Decode a base64 data URL, or None when the string is not one"""
    match = DATA_URL_REGEX.match(value.strip())
    if not match:
        return None
    try:
        return base64.b64decode(match.group("data"), validate=True)
    except (binascii.Error, ValueError):
        raise ValueError("Malformed base64 data URL")


async def load_image_bytes(image: ImageInput, timeout: float = 30) -> bytes:
    """Resolve any accepted image payload to raw bytes"""
    if isinstance(image, (bytes, bytearray)):
        return bytes(image)

    decoded = decode_data_url(image)
    if decoded is not None:
        return decoded

    if is_valid_url(image):
        return await asyncio.to_thread(download_image_from_url, image, timeout)

    if os.path.exists(image):
        with open(image, "rb") as f:
            return f.read()

    raise ValueError("Image must be bytes, a data URL, an http(s) URL or an existing file path")


def encode_image(image_bytes: bytes, mime: str = "image/jpeg") -> str:
    """Encode image bytes as base64 data URL"""
    return f"data:{mime};base64,{base64.b64encode(image_bytes).decode('utf-8')}"


def safe_json_parse(text: Optional[str]) -> Dict[str, Any]:
    """Safely parse JSON from LLM response"""
    if not text:
        raise ProviderResponseError("Empty model output")
    match = re.search(r"\{.*\}", text, re.DOTALL)
    if not match:
        raise ProviderResponseError("No JSON found in model output", raw_output=text)
    try:
        return json.loads(match.group())
    except json.JSONDecodeError as e:
        raise ProviderResponseError(f"Invalid JSON in model output: {e}", raw_output=text) from e


def to_bool(val: Any) -> Optional[bool]:
    if isinstance(val, bool):
        return val
    if val is None:
        return None
    if isinstance(val, (int, float)):
        return bool(val)
    s = str(val).strip().lower()
    if s in ("true", "yes", "y", "1"):
        return True
    if s in ("false", "no", "n", "0"):
        return False
    return None


def to_confidence(val: Any) -> float:
    """Normalise a model-reported confidence to the 0-100 scale"""
    if val is None:
        return 0.0
    try:
        if isinstance(val, (int, float)):
            v = float(val)
        else:
            v = float(str(val).strip().replace("%", ""))
    except ValueError:
        return 0.0
    # Models answer either 0-1 or 0-100
    if v <= 1:
        v = v * 100.0
    return max(0.0, min(100.0, v))


def parse_date(value: Any) -> Optional[date]:
    """Parse a date in any of the formats documents commonly use"""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def normalize_text(text: Optional[str]) -> str:
    """Normalize text for comparison"""
    if not text:
        return ""
    text = re.sub(r"[^\w\s]", " ", text.lower())
    return re.sub(r"\s+", " ", text).strip()


def elapsed_ms(start: datetime, end: datetime) -> float:
    return round((end - start).total_seconds() * 1000, 3)
