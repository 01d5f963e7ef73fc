"""
Cross-document synthesis and report rendering.

Runs once per job after every file is terminal: one LLM call over all
per-file facts, the same citation validation as the per-file stage (now
against each cited file's stored evidence), an optional secondary analysis
backend queried in parallel, and a markdown rendering of the result.
"""

from __future__ import annotations

import concurrent.futures
import copy
import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from audit_runner.citations import validate_cited_report
from audit_runner.errors import ApiError
from audit_runner.fact_extractor import FORENSIC_SYSTEM_PROMPT
from audit_runner.llm_provider import chat_json, is_real_llm_available
from audit_runner.mock_llm import mock_llm_enabled, mock_synthesize_report
from audit_runner.parse_utils import clamp_text
from audit_runner.retry import RetryPolicy
from audit_runner.settings import RunnerSettings
from audit_runner.timeouts import Deadline

logger = logging.getLogger(__name__)

REPORT_TITLE = "## Forensic AI Audit Report"
COMBINED_FINDINGS_TITLE = "## Cross-Document Findings"
MAX_QUOTE_CHARS = 400

NO_DOCUMENTS_MARKDOWN = f"{REPORT_TITLE}\n\nNo documents found in this dataroom.\n"
NO_DOCUMENTS_JSON: dict[str, Any] = {
    "executive_summary": "No documents found",
    "red_flags": [],
    "coverage_notes": ["No files to audit."],
}

_SYNTHESIS_TASK = """Cross-verify the documents against each other:
1) Bank statements vs. sales, tax returns and ledgers: do receipts, balances and periods agree?
2) Revenue, expense and tax figures across returns, financial statements and invoice registers.
3) Parties, identifiers and dates: the same entity, account or invoice described differently.
4) Corroborations worth noting, and gaps where a document expected for the period is missing.

For every finding assign a severity (high | medium | low | needs_more_evidence) and a
confidence_score between 0 and 100. Cite evidence with the snippet_id and an exact quote taken
from the facts of the file you cite; findings without verbatim evidence will be discarded.

Output JSON:
{
  "executive_summary": string,
  "red_flags": [{
    "severity": string, "title": string, "what_it_means": string, "probable_reason": string,
    "confidence_score": number,
    "where_to_check": [{"file_name": string, "file_path": string}],
    "evidence": [{"file_name": string, "file_path": string, "snippet_id": string, "quote": string}],
    "recommended_next_steps": [string]
  }],
  "coverage_notes": [string]
}"""

_EMOJI_RE = re.compile("[\U0001F300-\U0001FAFF\u2600-\u27BF]")
_SEPARATOR_LINE_RE = re.compile(r"^={5,}\s*$", re.MULTILINE)
_BOLD_CAPS_HEADING_RE = re.compile(r"^\*\*\s*([A-Z0-9][A-Z0-9\s:#\-]{6,})\s*\*\*$", re.MULTILINE)


@dataclass
class SynthesisResult:
    report_markdown: str
    report_json: dict[str, Any] = field(default_factory=dict)


def no_documents_result() -> SynthesisResult:
    return SynthesisResult(report_markdown=NO_DOCUMENTS_MARKDOWN, report_json=copy.deepcopy(NO_DOCUMENTS_JSON))


def sanitize_analysis_text(text: str) -> str:
    cleaned = _EMOJI_RE.sub("", text or "")
    cleaned = _SEPARATOR_LINE_RE.sub("", cleaned)
    return _BOLD_CAPS_HEADING_RE.sub(r"\1", cleaned)


def build_synthesis_prompt(
    *,
    collection_id: str,
    collection_name: str,
    job_id: str,
    file_facts: list[dict[str, Any]],
) -> str:
    return "\n".join(
        [
            f"Dataroom: {collection_name}",
            f"Dataroom ID: {collection_id}",
            f"Audit job: {job_id}",
            "",
            f'Prepare a forensic red-flag report for the dataroom "{collection_name}".',
            "Refer to the audited entity only by the dataroom name above.",
            "Use ONLY the extracted facts and citations below; when evidence is insufficient say",
            "'needs_more_evidence' instead of guessing.",
            "",
            "Files whose status is skipped or failed carry no usable facts; list them in coverage_notes.",
            "Per-file extracted facts (with citations):",
            json.dumps(file_facts, ensure_ascii=False, indent=2),
            "",
            _SYNTHESIS_TASK,
        ]
    )


class SecondaryAnalysisClient:
    """Client for the optional external analysis backend (``POST {url}/api/forensic-audit``)."""

    def __init__(self, *, base_url: str, timeout_s: float = 60.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s

    def analyze(self, extracted_data: list[dict[str, str]]) -> dict[str, Any]:
        import requests

        try:
            response = requests.post(
                f"{self._base_url}/api/forensic-audit",
                json={"extractedData": extracted_data},
                timeout=self._timeout_s,
            )
        except requests.exceptions.RequestException as exc:
            raise ApiError(
                code="SECONDARY_ANALYSIS_FAILED",
                message=f"secondary analysis backend unreachable: {exc}",
                error_class="transient",
                retryable=True,
                http_status=503,
            ) from exc
        if response.status_code != 200:
            raise ApiError(
                code="SECONDARY_ANALYSIS_FAILED",
                message=f"secondary analysis backend returned {response.status_code}: {response.text[:200]}",
                error_class="transient",
                retryable=True,
                http_status=503,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ApiError(
                code="SECONDARY_ANALYSIS_FAILED",
                message="secondary analysis backend returned invalid JSON",
                error_class="permanent",
                retryable=False,
                http_status=502,
            ) from exc
        if not isinstance(payload, dict):
            payload = {}
        risk_score = payload.get("riskScore")
        if isinstance(risk_score, bool) or not isinstance(risk_score, (int, float)):
            risk_score = None
        files_analyzed = payload.get("filesAnalyzed")
        if isinstance(files_analyzed, bool) or not isinstance(files_analyzed, int):
            files_analyzed = None
        analysis = payload.get("analysis")
        return {
            "analysis": analysis if isinstance(analysis, str) else "",
            "riskScore": risk_score,
            "filesAnalyzed": files_analyzed,
        }


def condensed_evidence(files: list[Mapping[str, Any]], *, max_chars: int) -> list[dict[str, str]]:
    extracted_data: list[dict[str, str]] = []
    for row in files:
        evidence = row.get("evidence_json")
        snippets = evidence.get("snippets") if isinstance(evidence, Mapping) else None
        texts = [str(s.get("text") or "") for s in snippets or [] if isinstance(s, Mapping)]
        extracted = clamp_text("\n\n".join(texts), max_chars)
        file_name = str(row.get("file_name") or "")
        if not file_name or not extracted.strip():
            continue
        extracted_data.append(
            {"fileName": file_name, "fileType": str(row.get("file_type") or ""), "extracted": extracted}
        )
    return extracted_data


def render_secondary_markdown(*, collection_name: str, analysis: Mapping[str, Any]) -> str:
    risk_score = analysis.get("riskScore")
    files_analyzed = analysis.get("filesAnalyzed")
    body = sanitize_analysis_text(str(analysis.get("analysis") or "")).strip()
    return "\n".join(
        [
            "## Forensic Audit Report",
            "",
            f"**Dataroom:** {collection_name}",
            f"**Files Analyzed:** {files_analyzed if files_analyzed is not None else 'N/A'}",
            "",
            "### Forensic Risk Assessment",
            "",
            f"**Forensic Risk Score:** {f'{risk_score}/100' if risk_score is not None else 'N/A'}",
            "",
            "### Detailed Forensic Analysis",
            "",
            body or "No forensic analysis returned.",
        ]
    )


def _coverage_lines(files: list[Mapping[str, Any]]) -> list[str]:
    by_status: dict[str, list[str]] = {}
    for row in files:
        by_status.setdefault(str(row.get("status")), []).append(str(row.get("file_name") or row.get("file_path")))
    lines = [
        "### Document Coverage",
        f"- Files analysed: {len(by_status.get('done', []))} of {len(files)}",
    ]
    for status, label in (("failed", "Failed"), ("skipped", "Skipped")):
        names = by_status.get(status, [])
        if names:
            lines.append(f"- {label} ({len(names)}): {', '.join(names)}")
    return lines


def render_report_markdown(report: Mapping[str, Any], *, files: list[Mapping[str, Any]]) -> str:
    lines = [REPORT_TITLE, "", "### Executive Summary", str(report.get("executive_summary") or ""), ""]
    lines.append("### Red Flags")
    red_flags = report.get("red_flags") or []
    if not red_flags:
        lines.append("- No red flags produced (or insufficient evidence).")
    for idx, flag in enumerate(red_flags, 1):
        lines.extend([f"#### {idx}. [{flag.get('severity')}] {flag.get('title') or 'Untitled'}", ""])
        if flag.get("what_it_means"):
            lines.extend([flag["what_it_means"], ""])
        lines.extend(["**Probable Reason**", flag.get("probable_reason") or "Not specified", ""])
        if flag.get("confidence_score") is not None:
            lines.extend([f"**Confidence Score:** {flag['confidence_score']}%", ""])
        lines.append("**Where to check**")
        for ref in flag.get("where_to_check") or []:
            lines.append(f"- {ref['file_name']} `{ref['file_path']}`")
        lines.extend(["", "**Evidence (quoted)**"])
        for ev in flag.get("evidence") or []:
            quote = ev["quote"].replace("\n", " ")[:MAX_QUOTE_CHARS]
            lines.append(f"- {ev['file_name']} `{ev['file_path']}` (snippet {ev['snippet_id']}): \"{quote}\"")
        lines.extend(["", "**Recommended next steps**"])
        lines.extend(f"- {step}" for step in flag.get("recommended_next_steps") or [])
        lines.append("")
    lines.extend(["", "### Coverage Notes"])
    lines.extend(f"- {note}" for note in report.get("coverage_notes") or [])
    lines.append("")
    lines.extend(_coverage_lines(files))
    lines.append("")
    return "\n".join(lines)


class ReportSynthesizer:
    def __init__(
        self,
        *,
        settings: RunnerSettings,
        retry_policy: RetryPolicy | None = None,
        secondary_client: SecondaryAnalysisClient | None = None,
    ) -> None:
        self._settings = settings
        self._retry = retry_policy or RetryPolicy.from_settings(settings)
        if secondary_client is None and settings.secondary_analysis_url:
            secondary_client = SecondaryAnalysisClient(
                base_url=settings.secondary_analysis_url,
                timeout_s=settings.secondary_analysis_timeout_s,
            )
        self._secondary = secondary_client

    def synthesize(
        self,
        *,
        job: Mapping[str, Any],
        files: list[dict[str, Any]],
        collection_name: str,
        deadline: Deadline | None = None,
    ) -> SynthesisResult:
        executor: concurrent.futures.ThreadPoolExecutor | None = None
        secondary_future: concurrent.futures.Future | None = None
        extracted_data = condensed_evidence(files, max_chars=self._settings.secondary_snippet_max_chars)
        if self._secondary is not None and extracted_data:
            executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="audit-secondary")
            secondary_future = executor.submit(self._secondary.analyze, extracted_data)
        try:
            raw = self._cross_document_facts(job=job, files=files, collection_name=collection_name, deadline=deadline)
            report = validate_cited_report(raw, files)
            secondary = self._collect_secondary(secondary_future, deadline)
        finally:
            if executor is not None:
                executor.shutdown(wait=False)

        markdown = render_report_markdown(report, files=files)
        if secondary and secondary.get("analysis"):
            secondary_md = render_secondary_markdown(collection_name=collection_name, analysis=secondary)
            # one report title; the synthesis becomes a section under it
            findings_md = COMBINED_FINDINGS_TITLE + markdown[len(REPORT_TITLE) :]
            markdown = f"{secondary_md}\n\n---\n\n{findings_md}"
        report_json = dict(report)
        report_json["secondary_analysis"] = secondary
        report_json["file_counts"] = {
            status: sum(1 for row in files if row.get("status") == status) for status in ("done", "failed", "skipped")
        }
        return SynthesisResult(report_markdown=markdown, report_json=report_json)

    def _cross_document_facts(
        self,
        *,
        job: Mapping[str, Any],
        files: list[dict[str, Any]],
        collection_name: str,
        deadline: Deadline | None,
    ) -> dict[str, Any]:
        if mock_llm_enabled():
            return mock_synthesize_report(files, collection_name=collection_name)
        if not is_real_llm_available():
            logger.warning("no LLM configured; job %s completes without AI synthesis", job.get("id"))
            return {
                "executive_summary": "AI synthesis was not performed because no LLM is configured.",
                "red_flags": [],
                "coverage_notes": ["Per-file facts were not cross-checked."],
            }

        file_facts = [
            {
                "file_name": row.get("file_name"),
                "file_path": row.get("file_path"),
                "status": row.get("status"),
                "facts_json": row.get("facts_json"),
            }
            for row in files
        ]
        user_prompt = build_synthesis_prompt(
            collection_id=str(job.get("collection_id") or ""),
            collection_name=collection_name,
            job_id=str(job.get("id") or ""),
            file_facts=file_facts,
        )

        def _call() -> dict[str, Any]:
            raw, usage = chat_json(
                system_prompt=FORENSIC_SYSTEM_PROMPT,
                user_prompt=user_prompt,
                max_tokens=self._settings.synthesis_max_tokens,
                deadline=deadline,
            )
            logger.info(
                "report synthesized for job %s model=%s tokens=%d",
                job.get("id"),
                usage.model,
                usage.total_tokens,
            )
            return raw

        return self._retry.run(_call, deadline=deadline, describe=f"report synthesis for job {job.get('id')}")

    def _collect_secondary(
        self,
        future: concurrent.futures.Future | None,
        deadline: Deadline | None,
    ) -> dict[str, Any] | None:
        if future is None:
            return None
        timeout = deadline.remaining() if deadline is not None else self._settings.secondary_analysis_timeout_s
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            logger.warning("secondary analysis did not finish in time; report continues without it")
        except Exception as exc:
            logger.warning("secondary analysis failed: %s", exc)
        return None
