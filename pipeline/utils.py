import base64
import json
import os
import re
import tempfile
from typing import Optional, Tuple
from urllib.parse import urlparse

import requests

from config import settings


def is_valid_url(url: str) -> bool:
    """Check if string is a valid URL"""
    try:
        result = urlparse(url)
    except (TypeError, ValueError):
        return False
    return result.scheme in ("http", "https") and bool(result.netloc)


def resolve_media_path(ref: str) -> str:
    """Map a stored media reference to a local path (relative refs live under MEDIA_ROOT)."""
    if os.path.isabs(ref):
        return ref
    return os.path.join(settings.MEDIA_ROOT, ref)


def read_media_bytes(ref: str) -> bytes:
    """
    Load the raw bytes behind a media reference.

    Args:
        ref: local path (absolute or relative to MEDIA_ROOT) or http(s) URL

    Returns:
        File content
    """
    if not ref:
        raise ValueError("Empty media reference")

    if is_valid_url(ref):
        try:
            response = requests.get(ref, timeout=settings.MEDIA_DOWNLOAD_TIMEOUT_SECONDS)
            response.raise_for_status()
        except requests.RequestException as e:
            raise IOError(f"Failed to download media from {ref}: {e}") from e
        return response.content

    with open(resolve_media_path(ref), "rb") as f:
        return f.read()


def materialize_media(ref: str) -> Tuple[str, bool]:
    """
    Return a local file path for a media reference, downloading URLs to a temp file.
    The boolean tells the caller whether the path is temporary and must be cleaned up.
    """
    if not is_valid_url(ref):
        return resolve_media_path(ref), False

    suffix = get_file_extension(urlparse(ref).path) or ".bin"
    fd, save_path = tempfile.mkstemp(suffix=suffix)
    with os.fdopen(fd, "wb") as f:
        f.write(read_media_bytes(ref))
    return save_path, True


def cleanup_temp_file(file_path: str) -> None:
    """Remove a temporary file if it is still there"""
    try:
        os.remove(file_path)
    except FileNotFoundError:
        pass


def get_file_extension(filename: str) -> str:
    """Get file extension from filename"""
    return os.path.splitext(filename)[1].lower()


def encode_image(image_bytes: bytes) -> str:
    """Encode image bytes as a base64 JPEG data URL"""
    return f"data:image/jpeg;base64,{base64.b64encode(image_bytes).decode('utf-8')}"


def safe_json_parse(text: str) -> dict:
    """Parse the first JSON object in a model response, tolerating code fences and chatter."""
    if not text:
        raise ValueError("Empty model output")
    match = re.search(r"\{.*\}", text, re.DOTALL)
    if not match:
        raise ValueError("No JSON found in model output")
    return json.loads(match.group())


def mask_id_number(id_number: Optional[str]) -> Optional[str]:
    """Mask an id number showing only the last 4 characters"""
    if not id_number:
        return None
    clean = re.sub(r"\s+", "", id_number)
    if len(clean) <= 4:
        return "XXXX"
    return f"{'X' * (len(clean) - 4)}{clean[-4:]}"


def mask_name(name: Optional[str]) -> Optional[str]:
    """Mask name showing only first character and last name"""
    if not name:
        return None
    parts = name.strip().split()
    if not parts:
        return None
    if len(parts) == 1:
        return f"{parts[0][0]}XXXX"
    return f"{parts[0][0]}XXXX {parts[-1]}"
