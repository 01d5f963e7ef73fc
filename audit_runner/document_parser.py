"""
Evidence extraction from raw document bytes.

Dispatches on declared MIME type and file extension (PDF, DOCX, spreadsheet,
image, anything else) and produces evidence snippets, the only text the
fact extractor is allowed to cite. Parser libraries are imported lazily so a
missing optional dependency surfaces as a per-file error.
"""

from __future__ import annotations

import csv
import io
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from audit_runner.errors import ApiError
from audit_runner.parse_utils import clamp_text, decode_text_best_effort, infer_ext

DEFAULT_SNIPPET_MAX_CHARS = 25000

IMAGE_EXTENSIONS = frozenset({"png", "jpg", "jpeg", "webp", "gif"})
SPREADSHEET_EXTENSIONS = frozenset({"xlsx", "xls"})

OcrCallable = Callable[[bytes, str], str]


@dataclass
class EvidenceSnippet:
    id: str
    location: str
    text: str

    def as_dict(self) -> dict[str, str]:
        return {"id": self.id, "location": self.location, "text": self.text}


def _dependency_missing(library: str, kind: str) -> ApiError:
    return ApiError(
        code="PARSER_DEPENDENCY_MISSING",
        message=f"{library} is required for {kind} parsing",
        error_class="permanent",
        retryable=False,
        http_status=500,
    )


def _corrupt(kind: str, exc: Exception) -> ApiError:
    return ApiError(
        code=f"DOC_PARSE_{kind.upper()}_CORRUPT",
        message=f"Failed to open {kind.upper()}: {exc}",
        error_class="permanent",
        retryable=False,
        http_status=422,
    )


def extract_pdf_text(file_bytes: bytes) -> str:
    """Text layer of every page, pages separated by blank lines."""
    try:
        import pymupdf
    except ImportError:
        raise _dependency_missing("pymupdf", "PDF")

    try:
        doc = pymupdf.open(stream=file_bytes, filetype="pdf")
    except Exception as exc:
        raise _corrupt("pdf", exc)

    pages: list[str] = []
    try:
        for page in doc:
            text = page.get_text("text").strip()
            if text:
                pages.append(text)
    finally:
        doc.close()
    return "\n\n".join(pages)


def extract_docx_text(file_bytes: bytes) -> str:
    try:
        import docx
    except ImportError:
        raise _dependency_missing("python-docx", "DOCX")

    try:
        document = docx.Document(io.BytesIO(file_bytes))
    except Exception as exc:
        raise _corrupt("docx", exc)

    lines = [para.text.strip() for para in document.paragraphs if para.text.strip()]
    for table in document.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells]
            if any(cells):
                lines.append("\t".join(cells))
    return "\n".join(lines)


def _rows_to_csv(rows: list[list[Any]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    for row in rows:
        values = ["" if value is None else str(value) for value in row]
        if not any(value.strip() for value in values):
            continue
        writer.writerow(values)
    return buf.getvalue().rstrip("\n")


def _sheet_block(name: str, rows: list[list[Any]]) -> str:
    return f"=== SHEET: {name} ===\n{_rows_to_csv(rows)}"


def _xlsx_sheets(file_bytes: bytes) -> list[str]:
    try:
        import openpyxl
    except ImportError:
        raise _dependency_missing("openpyxl", "XLSX")

    try:
        workbook = openpyxl.load_workbook(io.BytesIO(file_bytes), read_only=True, data_only=True)
    except Exception as exc:
        raise _corrupt("xlsx", exc)

    try:
        return [
            _sheet_block(sheet.title, [list(row) for row in sheet.iter_rows(values_only=True)])
            for sheet in workbook.worksheets
        ]
    finally:
        workbook.close()


def _xls_sheets(file_bytes: bytes) -> list[str]:
    try:
        import xlrd
    except ImportError:
        raise _dependency_missing("xlrd", "XLS")

    try:
        workbook = xlrd.open_workbook(file_contents=file_bytes)
    except Exception as exc:
        raise _corrupt("xls", exc)

    return [
        _sheet_block(sheet.name, [sheet.row_values(idx) for idx in range(sheet.nrows)])
        for sheet in workbook.sheets()
    ]


def extract_spreadsheet_text(file_bytes: bytes, *, ext: str = "xlsx") -> str:
    """Every sheet as CSV rows (blank rows dropped) under a ``=== SHEET: name ===`` marker."""
    # Legacy .xls is an OLE2 compound file; everything else goes through openpyxl.
    if ext == "xls" or file_bytes[:8] == b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1":
        blocks = _xls_sheets(file_bytes)
    else:
        blocks = _xlsx_sheets(file_bytes)
    return "\n\n".join(blocks)


def select_extractor(mime_type: str | None, file_name: str | None) -> str:
    """Return one of ``pdf``, ``docx``, ``spreadsheet``, ``image``, ``text``."""
    mime = (mime_type or "").strip().lower()
    ext = infer_ext(file_name)
    if mime == "application/pdf" or ext == "pdf":
        return "pdf"
    if ext == "docx":
        return "docx"
    if ext in SPREADSHEET_EXTENSIONS or "spreadsheet" in mime or "ms-excel" in mime:
        return "spreadsheet"
    if mime.startswith("image/") or ext in IMAGE_EXTENSIONS:
        return "image"
    return "text"


def _image_mime(mime_type: str | None, ext: str) -> str:
    mime = (mime_type or "").strip().lower()
    if mime.startswith("image/"):
        return mime
    if ext in {"jpg", "jpeg"}:
        return "image/jpeg"
    if ext in IMAGE_EXTENSIONS:
        return f"image/{ext}"
    return "image/png"


def extract_evidence(
    content: bytes,
    *,
    file_name: str,
    mime_type: str | None = None,
    ocr: OcrCallable | None = None,
    max_chars: int = DEFAULT_SNIPPET_MAX_CHARS,
) -> list[EvidenceSnippet]:
    kind = select_extractor(mime_type, file_name)
    ext = infer_ext(file_name)
    if kind == "pdf":
        text, location = extract_pdf_text(content), "pdf:text"
    elif kind == "docx":
        text, location = extract_docx_text(content), "docx:text"
    elif kind == "spreadsheet":
        text, location = extract_spreadsheet_text(content, ext=ext), "xlsx:csv"
    elif kind == "image":
        text = ocr(content, _image_mime(mime_type, ext)) if ocr is not None else ""
        location = "image:ocr"
    else:
        text, location = decode_text_best_effort(content), "text"
    return [EvidenceSnippet(id="A", location=location, text=clamp_text(text or "", max_chars))]


def has_usable_evidence(snippets: list[EvidenceSnippet]) -> bool:
    return any(snippet.text.strip() for snippet in snippets)
