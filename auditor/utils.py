import hashlib
import re
import unicodedata
from typing import Any, Optional

_WS_RE = re.compile(r"\s+")
_FILENAME_RE = re.compile(r"[^\w\-.]")
_MMSS_RE = re.compile(r"^\d{2}:\d{2}$")
_HHMMSS_RE = re.compile(r"^\d{1,2}:\d{2}:\d{2}$")


def file_sha256(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(65536), b""):
            digest.update(block)
    return digest.hexdigest()


def normalize_text(s: Optional[str]) -> str:
    """Lowercase, strip diacritics and collapse whitespace."""
    if not s:
        return ""
    decomposed = unicodedata.normalize("NFKD", s)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _WS_RE.sub(" ", stripped.lower()).strip()


def format_mmss(ms: int) -> str:
    s = max(ms, 0) // 1000
    return f"{s//60:02d}:{s%60:02d}"


def format_timestamp(value: str) -> str:
    """
    Normalize scorer timestamps to MM:SS.
    Accepts "MM:SS", "HH:MM:SS" and plain seconds ("90").
    """
    if not value:
        return "00:00"
    value = value.strip()
    if _MMSS_RE.match(value):
        return value
    if _HHMMSS_RE.match(value):
        h, m, s = (int(p) for p in value.split(":"))
        return f"{h * 60 + m:02d}:{s:02d}"
    if value.isdigit():
        secs = int(value)
        return f"{secs // 60:02d}:{secs % 60:02d}"
    return value


def format_duration(duration: Optional[str]) -> str:
    if not duration:
        return "N/A"
    parts = duration.split(":")
    if len(parts) == 3 and all(p.strip().isdigit() for p in parts):
        h, m, s = (int(p) for p in parts)
        return f"{h * 60 + m:02d}:{s:02d}"
    return duration


def sanitize_filename(text: str) -> str:
    cleaned = _WS_RE.sub("_", text or "")
    return _FILENAME_RE.sub("", cleaned)[:100]


def as_bool(value: Any) -> Optional[bool]:
    """Interpret model-emitted booleans ("true", "sí", 1...); None when unknown."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("true", "si", "sí", "cumple", "yes", "1"):
            return True
        if text in ("false", "no", "no cumple", "0"):
            return False
    return None
