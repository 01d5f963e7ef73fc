from __future__ import annotations

import re

TRUNCATION_MARKER = "\n\n[TRUNCATED]"

_SPLIT_SUFFIX_RE = re.compile(r"\s*\(split[^)]*\)\s*$", re.IGNORECASE)


def infer_ext(file_name: str | None) -> str:
    name = (file_name or "").strip().lower()
    if "." not in name:
        return ""
    return name.rsplit(".", 1)[-1]


def clamp_text(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_MARKER


def normalize_quote(quote: str) -> str:
    return quote.replace("\r\n", "\n").strip()


def _normalize_text(text: str) -> str:
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    return "".join(ch for ch in normalized if ch in {"\n", "\t"} or ord(ch) >= 32)


def decode_text_best_effort(raw: bytes) -> str:
    """Decode unknown bytes as UTF-8, replacing undecodable sequences instead of failing."""
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        text = raw.decode("utf-8", errors="replace")
    return _normalize_text(text.lstrip("\ufeff"))


def strip_split_suffix(file_name: str) -> str:
    """'report.pdf (split 3 parts)' -> 'report.pdf'."""
    return _SPLIT_SUFFIX_RE.sub("", file_name).strip() or file_name
