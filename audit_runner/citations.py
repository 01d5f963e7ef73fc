"""
Citation validation for LLM output.

Every fact, internal red flag and synthesized red flag must quote its evidence
verbatim. A citation survives only when its normalized quote is a literal
substring of the snippet it names; an entry whose citations all fail is
dropped. The same rule runs on per-file extraction output and on the
cross-document report.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from audit_runner.parse_utils import normalize_quote

SEVERITIES = ("high", "medium", "low", "needs_more_evidence")


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def snippet_texts(snippets: Iterable[Any]) -> dict[str, str]:
    """Map snippet id -> text for EvidenceSnippet objects or stored snippet dicts."""
    texts: dict[str, str] = {}
    for snippet in snippets:
        if isinstance(snippet, Mapping):
            snippet_id = _as_str(snippet.get("id"))
            text = _as_str(snippet.get("text"))
        else:
            snippet_id = _as_str(getattr(snippet, "id", ""))
            text = _as_str(getattr(snippet, "text", ""))
        if snippet_id:
            texts[snippet_id] = text
    return texts


def quote_is_supported(quote: Any, text: str | None) -> bool:
    if text is None:
        return False
    normalized = normalize_quote(_as_str(quote))
    if not normalized:
        return False
    return normalized in text


def _valid_citations(raw_citations: Any, texts: Mapping[str, str]) -> list[dict[str, str]]:
    kept: list[dict[str, str]] = []
    for citation in _as_list(raw_citations):
        if not isinstance(citation, Mapping):
            continue
        snippet_id = _as_str(citation.get("snippet_id")).strip()
        quote = normalize_quote(_as_str(citation.get("quote")))
        if quote_is_supported(quote, texts.get(snippet_id)):
            kept.append({"snippet_id": snippet_id, "quote": quote})
    return kept


def validate_cited_facts(raw: Any, snippets: Iterable[Any]) -> dict[str, Any]:
    """Clean one file's extraction output against that file's evidence snippets."""
    texts = snippet_texts(snippets)
    payload = raw if isinstance(raw, Mapping) else {}

    facts: list[dict[str, Any]] = []
    raw_facts = _as_list(payload.get("facts"))
    for item in raw_facts:
        if not isinstance(item, Mapping):
            continue
        citations = _valid_citations(item.get("citations"), texts)
        if not citations:
            continue
        facts.append(
            {
                "key": _as_str(item.get("key")).strip(),
                "value": _as_str(item.get("value")).strip(),
                "citations": citations,
            }
        )

    red_flags: list[dict[str, Any]] = []
    raw_flags = _as_list(payload.get("internal_red_flags"))
    for item in raw_flags:
        if not isinstance(item, Mapping):
            continue
        citations = _valid_citations(item.get("citations"), texts)
        if not citations:
            continue
        red_flags.append(
            {
                "title": _as_str(item.get("title")).strip(),
                "detail": _as_str(item.get("detail")).strip(),
                "citations": citations,
            }
        )

    dropped_facts = len(raw_facts) - len(facts)
    dropped_flags = len(raw_flags) - len(red_flags)
    return {
        "document_type": _as_str(payload.get("document_type")).strip() or "unknown",
        "summary": _as_str(payload.get("summary")).strip(),
        "facts": facts,
        "internal_red_flags": red_flags,
        "validation_notes": [
            f"Kept {len(facts)} facts and {len(red_flags)} internal red flags with verbatim citations; "
            f"dropped {dropped_facts} facts and {dropped_flags} red flags without support."
        ],
    }


def _normalize_severity(value: Any) -> str:
    severity = _as_str(value).strip().lower().replace(" ", "_").replace("-", "_")
    if severity in SEVERITIES:
        return severity
    return "needs_more_evidence"


def _normalize_confidence(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        score = float(value)
    except (TypeError, ValueError):
        return None
    if score != score:  # NaN
        return None
    return int(round(max(0.0, min(100.0, score))))


class _FileIndex:
    """Resolves a cited file by path first, then by name."""

    def __init__(self, files: Iterable[Mapping[str, Any]]) -> None:
        self._by_path: dict[str, Mapping[str, Any]] = {}
        self._by_name: dict[str, Mapping[str, Any]] = {}
        self._texts: dict[str, dict[str, str]] = {}
        for row in files:
            path = _as_str(row.get("file_path"))
            name = _as_str(row.get("file_name"))
            evidence = row.get("evidence_json")
            snippets = evidence.get("snippets") if isinstance(evidence, Mapping) else None
            key = path or name
            self._texts[key] = snippet_texts(_as_list(snippets))
            if path:
                self._by_path[path] = row
            if name:
                self._by_name.setdefault(name, row)

    def resolve(self, ref: Mapping[str, Any]) -> Mapping[str, Any] | None:
        path = _as_str(ref.get("file_path")).strip()
        if path and path in self._by_path:
            return self._by_path[path]
        name = _as_str(ref.get("file_name")).strip()
        if name and name in self._by_name:
            return self._by_name[name]
        return None

    def texts_for(self, row: Mapping[str, Any]) -> dict[str, str]:
        key = _as_str(row.get("file_path")) or _as_str(row.get("file_name"))
        return self._texts.get(key, {})


def validate_cited_report(raw: Any, files: Iterable[Mapping[str, Any]]) -> dict[str, Any]:
    """Clean cross-document synthesis output against each cited file's stored evidence."""
    index = _FileIndex(files)
    payload = raw if isinstance(raw, Mapping) else {}

    red_flags: list[dict[str, Any]] = []
    raw_flags = _as_list(payload.get("red_flags"))
    for item in raw_flags:
        if not isinstance(item, Mapping):
            continue
        evidence: list[dict[str, str]] = []
        for ref in _as_list(item.get("evidence")):
            if not isinstance(ref, Mapping):
                continue
            row = index.resolve(ref)
            if row is None:
                continue
            snippet_id = _as_str(ref.get("snippet_id")).strip()
            quote = normalize_quote(_as_str(ref.get("quote")))
            if not quote_is_supported(quote, index.texts_for(row).get(snippet_id)):
                continue
            evidence.append(
                {
                    "file_name": _as_str(row.get("file_name")),
                    "file_path": _as_str(row.get("file_path")),
                    "snippet_id": snippet_id,
                    "quote": quote,
                }
            )
        if not evidence:
            continue

        where_to_check: list[dict[str, str]] = []
        seen: set[str] = set()
        for ref in _as_list(item.get("where_to_check")):
            if not isinstance(ref, Mapping):
                continue
            row = index.resolve(ref)
            if row is None:
                continue
            path = _as_str(row.get("file_path"))
            if path in seen:
                continue
            seen.add(path)
            where_to_check.append({"file_name": _as_str(row.get("file_name")), "file_path": path})

        red_flags.append(
            {
                "severity": _normalize_severity(item.get("severity")),
                "title": _as_str(item.get("title")).strip(),
                "what_it_means": _as_str(item.get("what_it_means")).strip(),
                "probable_reason": _as_str(item.get("probable_reason")).strip(),
                "confidence_score": _normalize_confidence(item.get("confidence_score")),
                "where_to_check": where_to_check,
                "evidence": evidence,
                "recommended_next_steps": [
                    _as_str(step).strip()
                    for step in _as_list(item.get("recommended_next_steps"))
                    if _as_str(step).strip()
                ],
            }
        )

    coverage_notes = [
        _as_str(note).strip() for note in _as_list(payload.get("coverage_notes")) if _as_str(note).strip()
    ]
    return {
        "executive_summary": _as_str(payload.get("executive_summary")).strip(),
        "red_flags": red_flags,
        "coverage_notes": coverage_notes,
        "validation_notes": [
            f"Kept {len(red_flags)} of {len(raw_flags)} red flags with verbatim cross-document evidence."
        ],
    }
