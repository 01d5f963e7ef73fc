"""
Mock LLM module for offline end-to-end runs.

Enabled with MOCK_LLM_ENABLED=true. Produces deterministic output that still
passes citation validation: every mocked quote is copied verbatim from the
evidence it cites.
"""

from __future__ import annotations

import os
import re
from collections.abc import Iterable, Mapping
from typing import Any

MOCK_MAX_FACTS = 20

_KEY_RE = re.compile(r"[^a-z0-9]+")
_HAS_DIGIT_RE = re.compile(r"\d")
_KEY_VALUE_RE = re.compile(r"^(?P<key>[^:=,\t]{2,60})[:=,\t]\s*(?P<value>.+)$")


def mock_llm_enabled() -> bool:
    return os.getenv("MOCK_LLM_ENABLED", "false").strip().lower() in {"1", "true", "yes", "on"}


def _fact_key(label: str) -> str:
    key = _KEY_RE.sub("_", label.strip().lower()).strip("_")
    return key[:60] or "value"


def _snippet_items(snippets: Iterable[Any]) -> list[tuple[str, str]]:
    items: list[tuple[str, str]] = []
    for snippet in snippets:
        if isinstance(snippet, Mapping):
            items.append((str(snippet.get("id", "")), str(snippet.get("text", ""))))
        else:
            items.append((str(getattr(snippet, "id", "")), str(getattr(snippet, "text", ""))))
    return items


def mock_extract_facts(snippets: Iterable[Any], *, file_name: str = "") -> dict[str, Any]:
    """
    Mock per-file fact extraction.

    Every non-marker line that contains a digit becomes a fact. ``label: value``
    lines (also ``label,value`` CSV rows) keep the label as the key.
    """
    facts: list[dict[str, Any]] = []
    for snippet_id, text in _snippet_items(snippets):
        for line in text.splitlines():
            stripped = line.strip()
            if not stripped or stripped.startswith("===") or stripped == "[TRUNCATED]":
                continue
            if not _HAS_DIGIT_RE.search(stripped):
                continue
            match = _KEY_VALUE_RE.match(stripped)
            if match:
                key, value = _fact_key(match.group("key")), match.group("value").strip()
            else:
                key, value = f"line_{len(facts) + 1}", stripped
            facts.append(
                {
                    "key": key,
                    "value": value,
                    "citations": [{"snippet_id": snippet_id, "quote": stripped}],
                }
            )
            if len(facts) >= MOCK_MAX_FACTS:
                break
    return {
        "document_type": "unknown",
        "summary": f"[mock] {len(facts)} numeric statements found in {file_name or 'document'}",
        "facts": facts,
        "internal_red_flags": [],
    }


def mock_ocr_text(image_bytes: bytes, mime_type: str) -> str:
    """Mock OCR recognises nothing, so images fall through to the no-evidence path."""
    return ""


def mock_synthesize_report(files: Iterable[Mapping[str, Any]], *, collection_name: str = "") -> dict[str, Any]:
    """
    Mock cross-document synthesis.

    Flags every fact key that carries different values in different files,
    citing the stored quote from each file.
    """
    by_key: dict[str, list[dict[str, Any]]] = {}
    file_count = 0
    for row in files:
        file_count += 1
        facts_json = row.get("facts_json") if isinstance(row.get("facts_json"), Mapping) else {}
        for fact in facts_json.get("facts", []) or []:
            if not isinstance(fact, Mapping) or not fact.get("citations"):
                continue
            citation = fact["citations"][0]
            by_key.setdefault(str(fact.get("key", "")), []).append(
                {
                    "file_name": row.get("file_name", ""),
                    "file_path": row.get("file_path", ""),
                    "value": str(fact.get("value", "")),
                    "snippet_id": citation.get("snippet_id", ""),
                    "quote": citation.get("quote", ""),
                }
            )

    red_flags: list[dict[str, Any]] = []
    for key in sorted(by_key):
        entries = by_key[key]
        values = {entry["value"] for entry in entries}
        paths = {entry["file_path"] for entry in entries}
        if len(values) < 2 or len(paths) < 2:
            continue
        red_flags.append(
            {
                "severity": "medium",
                "title": f"Inconsistent values for {key}",
                "what_it_means": f"{len(values)} different values reported for {key} across {len(paths)} files.",
                "probable_reason": "needs_more_evidence",
                "confidence_score": 50,
                "where_to_check": [
                    {"file_name": entry["file_name"], "file_path": entry["file_path"]} for entry in entries
                ],
                "evidence": [
                    {
                        "file_name": entry["file_name"],
                        "file_path": entry["file_path"],
                        "snippet_id": entry["snippet_id"],
                        "quote": entry["quote"],
                    }
                    for entry in entries
                ],
                "recommended_next_steps": [f"Reconcile {key} against the source ledgers."],
            }
        )

    name = collection_name or "the dataroom"
    return {
        "executive_summary": f"[mock] Cross-checked {file_count} files of {name}; "
        f"{len(red_flags)} inconsistencies found.",
        "red_flags": red_flags,
        "coverage_notes": ["Generated by the deterministic mock model; not an AI review."],
    }
