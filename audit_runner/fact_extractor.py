"""
Per-file fact extraction.

One structured-output LLM call per file, given only that file's evidence
snippets. The raw answer is never trusted: it goes through
``validate_cited_facts`` before anything is stored.
"""

from __future__ import annotations

import logging
from typing import Any

from audit_runner.citations import validate_cited_facts
from audit_runner.document_parser import EvidenceSnippet
from audit_runner.llm_provider import chat_json, is_real_llm_available, vision_json
from audit_runner.mock_llm import mock_extract_facts, mock_llm_enabled, mock_ocr_text
from audit_runner.retry import RetryPolicy
from audit_runner.settings import RunnerSettings
from audit_runner.timeouts import Deadline

logger = logging.getLogger(__name__)

OCR_UNAVAILABLE_TEXT = "[OCR not available: LLM not configured]"
EXTRACTION_SKIPPED_SUMMARY = "LLM not configured; extraction skipped"

FORENSIC_SYSTEM_PROMPT = "\n".join(
    [
        "You are a forensic chartered accountant reviewing a dataroom for financial fraud,",
        "accounting irregularities and due-diligence risks.",
        "",
        "Rules:",
        "- Use only facts that appear in the evidence snippets you are given. Never invent data.",
        "- If the evidence is insufficient, say so; do not fill gaps.",
        "- Every fact and red flag must carry at least one citation quoting the exact supporting text.",
        "- Be conservative: prefer 'unknown' or 'needs_more_evidence' over a guess.",
        "- Be precise about amounts, dates, periods, account numbers and document references.",
        "- Answer with a single JSON object, without markdown or code fences.",
    ]
)

_FILE_TASK = """Task:
1) Identify what this document is (bank statement, tax return, invoice register, balance sheet,
   profit and loss, cap table, credit report, purchase orders, ...).
2) Extract normalized facts useful for cross-document checks: dates and periods, amounts
   (revenue, expenses, taxes, balances), parties, identifiers (mask account and tax numbers
   as ACC-XXXX / TAX-XXXX), tax details, opening and closing balances, document metadata.
   Use stable keys that include the period, e.g. "revenue_2023_q1", "bank_balance_2023_12_31".
3) List internal inconsistencies of this file: totals that do not match line items, missing
   pages ("Page x of y"), broken date sequences, duplicates, unusual round amounts,
   missing mandatory fields.

Output JSON:
{
  "document_type": string,
  "summary": string,
  "facts": [{"key": string, "value": string, "citations": [{"snippet_id": string, "quote": string}]}],
  "internal_red_flags": [{"title": string, "detail": string,
                          "citations": [{"snippet_id": string, "quote": string}]}]
}
Quotes must be copied character for character from the snippet they cite."""

_OCR_PROMPT = "\n".join(
    [
        "Perform OCR on this image and extract key financial identifiers.",
        'Return JSON: {"ocr_text": string, "key_fields": [{"key": string, "value": string, "quote": string}]}',
        "Only transcribe what you can read; do not guess.",
    ]
)


def build_file_prompt(
    *,
    file_name: str,
    file_path: str,
    mime_type: str | None,
    snippets: list[EvidenceSnippet],
) -> str:
    lines = [
        f"File: {file_name}",
        f"Path: {file_path}",
        f"MIME: {mime_type or 'unknown'}",
        "",
        "Evidence snippets (the ONLY permissible source):",
    ]
    for snippet in snippets:
        lines.append(f"--- SNIPPET {snippet.id} ({snippet.location}) ---\n{snippet.text}")
    lines.extend(["", _FILE_TASK])
    return "\n".join(lines)


def skipped_facts(summary: str) -> dict[str, Any]:
    return {
        "document_type": "unknown",
        "summary": summary,
        "facts": [],
        "internal_red_flags": [],
    }


class FactExtractor:
    def __init__(self, *, settings: RunnerSettings, retry_policy: RetryPolicy | None = None) -> None:
        self._settings = settings
        self._retry = retry_policy or RetryPolicy.from_settings(settings)

    def extract(
        self,
        *,
        file_name: str,
        file_path: str,
        mime_type: str | None,
        snippets: list[EvidenceSnippet],
        deadline: Deadline | None = None,
    ) -> dict[str, Any]:
        if mock_llm_enabled():
            return validate_cited_facts(mock_extract_facts(snippets, file_name=file_name), snippets)
        if not is_real_llm_available():
            logger.warning("no LLM configured; skipping fact extraction for %s", file_name)
            return skipped_facts(EXTRACTION_SKIPPED_SUMMARY)

        user_prompt = build_file_prompt(
            file_name=file_name,
            file_path=file_path,
            mime_type=mime_type,
            snippets=snippets,
        )

        def _call() -> dict[str, Any]:
            raw, usage = chat_json(
                system_prompt=FORENSIC_SYSTEM_PROMPT,
                user_prompt=user_prompt,
                max_tokens=self._settings.file_max_tokens,
                deadline=deadline,
            )
            logger.info(
                "facts extracted for %s model=%s tokens=%d latency_ms=%.0f",
                file_name,
                usage.model,
                usage.total_tokens,
                usage.latency_ms,
            )
            return raw

        raw = self._retry.run(_call, deadline=deadline, describe=f"fact extraction for {file_name}")
        return validate_cited_facts(raw, snippets)

    def ocr(self, image_bytes: bytes, mime_type: str, *, deadline: Deadline | None = None) -> str:
        if mock_llm_enabled():
            return mock_ocr_text(image_bytes, mime_type)
        if not is_real_llm_available():
            return OCR_UNAVAILABLE_TEXT

        def _call() -> str:
            raw, _ = vision_json(
                system_prompt=FORENSIC_SYSTEM_PROMPT,
                user_prompt=_OCR_PROMPT,
                image_bytes=image_bytes,
                mime_type=mime_type,
                max_tokens=self._settings.ocr_max_tokens,
                deadline=deadline,
            )
            text = raw.get("ocr_text")
            return text if isinstance(text, str) else ""

        return self._retry.run(_call, deadline=deadline, describe="image OCR")
