"""Utility helpers for cookies, media payloads and file names."""

from __future__ import annotations

import base64
import binascii
import hashlib
import io
import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from PIL import Image, UnidentifiedImageError

_DATA_URI_RE = re.compile(r"^data:[\w/+.-]+;base64,", re.IGNORECASE)
_filename_strip_re = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class ParsedCookie:
    cookie_string: str
    expires_at_ms: Optional[int] = None


def parse_cookie(raw: Optional[str]) -> ParsedCookie:
    """Normalise the many shapes a pasted session cookie can take.

    Accepts a raw header value, a ``Cookie:`` prefixed header, a quoted
    string, a browser-extension JSON export (list of ``{name, value}``
    objects), ``{"cookie": ...}`` wrappers, a single ``{name, value}`` object
    or a flat ``{name: value}`` mapping.
    """

    if not raw:
        return ParsedCookie("")

    text = raw.strip()
    cookie_string: Any = raw
    expires_at_ms: Optional[int] = None

    if text.startswith("[") or text.startswith("{"):
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            pairs = [item for item in parsed if isinstance(item, dict) and "name" in item]
            cookie_string = "; ".join(f"{item['name']}={item.get('value', '')}" for item in pairs)
            session = next(
                (
                    item
                    for item in pairs
                    if item["name"] == "__Secure-next-auth.session-token" or "session" in item["name"]
                ),
                None,
            )
            if session and session.get("expirationDate"):
                expires_at_ms = int(float(session["expirationDate"]) * 1000)
        elif isinstance(parsed, dict):
            if "cookie" in parsed:
                return parse_cookie(str(parsed["cookie"]))
            if "name" in parsed and "value" in parsed:
                cookie_string = f"{parsed['name']}={parsed['value']}"
            else:
                cookie_string = "; ".join(f"{key}={value}" for key, value in parsed.items())

    cookie_string = str(cookie_string).strip()
    if cookie_string.lower().startswith("cookie:"):
        cookie_string = cookie_string[len("cookie:"):].strip()
    if len(cookie_string) >= 2 and cookie_string.startswith('"') and cookie_string.endswith('"'):
        cookie_string = cookie_string[1:-1]
    return ParsedCookie(cookie_string, expires_at_ms)


def credential_hash(credential: str) -> str:
    """Stable key for a credential that never exposes the raw value."""

    return hashlib.sha256(credential.encode("utf-8")).hexdigest()[:32]


def strip_data_uri(encoded: str) -> str:
    return _DATA_URI_RE.sub("", encoded.strip())


def to_data_uri(encoded: str, mime_type: str = "image/png") -> str:
    if encoded.startswith("data:"):
        return encoded
    return f"data:{mime_type};base64,{encoded}"


def decode_media(encoded: str) -> bytes:
    """Decode base64 media, with or without a data URI prefix."""

    try:
        return base64.b64decode(strip_data_uri(encoded), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Invalid base64 media payload: {exc}") from exc


def encode_media(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def ensure_png(data: bytes) -> bytes:
    """Return the image re-encoded as PNG, raising ValueError when it is not an image."""

    try:
        with Image.open(io.BytesIO(data)) as image:
            if image.format == "PNG":
                return data
            converted = image.convert("RGBA") if image.mode not in {"RGB", "RGBA"} else image.copy()
    except (UnidentifiedImageError, OSError) as exc:
        raise ValueError("Media payload is not a decodable image") from exc
    buffer = io.BytesIO()
    converted.save(buffer, format="PNG")
    return buffer.getvalue()


def secure_filename(filename: str) -> str:
    """Return a filename safe for storing on disk."""
    name = Path(filename).name
    if not name:
        return "file"
    name = _filename_strip_re.sub("_", name)
    return name or "file"


def preview_text(text: str, limit: int = 50) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."
