"""Text normalization and log redaction helpers."""

import re
import unicodedata
from typing import Iterable

_EMAIL_RE = re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.IGNORECASE)
_LOG_PHONE_RE = re.compile(
    r"(?:\+?1[\s\-.]?)?(?:\(?\d{3}\)?[\s\-.]?)\d{3}[\s\-.]?\d{4}"
)
_PUNCT_RE = re.compile(r"[^\w\s']")


def normalize_text(text: str) -> str:
    """Lowercase, strip accents, straighten apostrophes and collapse whitespace."""
    text = (text or "").strip().lower()
    text = text.replace("’", "'")
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = re.sub(r"\s+", " ", text)
    return text


def strip_punctuation(text: str) -> str:
    """Normalize and drop punctuation (apostrophes are kept)."""
    return re.sub(r"\s+", " ", _PUNCT_RE.sub(" ", normalize_text(text))).strip()


def phrase_pattern(phrases: Iterable[str]) -> re.Pattern[str]:
    """Compile a word-bounded alternation for a phrase set."""
    escaped = sorted((re.escape(normalize_text(p)) for p in phrases if p), key=len, reverse=True)
    if not escaped:
        return re.compile(r"(?!x)x")
    return re.compile(r"(?<![\w'])(" + "|".join(escaped) + r")(?![\w'])")


def redact_for_logs(text: str, limit: int = 80) -> str:
    """
    Best-effort redaction for logs (to reduce accidental PII exposure).

    Masks emails and phone numbers, then truncates.
    """
    if not text:
        return ""

    redacted = _EMAIL_RE.sub("[EMAIL]", text)

    def _mask_phone(match: re.Match[str]) -> str:
        digits = re.sub(r"\D+", "", match.group(0) or "")
        last4 = digits[-4:] if len(digits) >= 4 else digits
        return f"[PHONE-***{last4}]"

    redacted = _LOG_PHONE_RE.sub(_mask_phone, redacted)
    if len(redacted) > limit:
        redacted = redacted[:limit] + "..."
    return redacted
