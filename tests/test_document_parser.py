"""Tests for evidence extraction from raw document bytes."""

from __future__ import annotations

import io

import pytest

from audit_runner.document_parser import (
    EvidenceSnippet,
    extract_docx_text,
    extract_evidence,
    extract_pdf_text,
    extract_spreadsheet_text,
    has_usable_evidence,
    select_extractor,
)
from audit_runner.errors import ApiError
from audit_runner.parse_utils import TRUNCATION_MARKER, decode_text_best_effort, strip_split_suffix


def _pdf_bytes(*pages: str) -> bytes:
    pymupdf = pytest.importorskip("pymupdf")
    doc = pymupdf.open()
    for text in pages:
        page = doc.new_page()
        page.insert_text((72, 72), text)
    data = doc.tobytes()
    doc.close()
    return data


def _docx_bytes() -> bytes:
    docx = pytest.importorskip("docx")
    document = docx.Document()
    document.add_paragraph("Invoice register FY2023")
    document.add_paragraph("")
    table = document.add_table(rows=2, cols=2)
    table.cell(0, 0).text = "Invoice"
    table.cell(0, 1).text = "Amount"
    table.cell(1, 0).text = "INV-001"
    table.cell(1, 1).text = "4500"
    buf = io.BytesIO()
    document.save(buf)
    return buf.getvalue()


def _xlsx_bytes() -> bytes:
    openpyxl = pytest.importorskip("openpyxl")
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = "Ledger"
    sheet.append(["Account", "Balance"])
    sheet.append([None, None])
    sheet.append(["Cash", 12000])
    second = workbook.create_sheet("Notes")
    second.append(["Checked by", "auditor"])
    buf = io.BytesIO()
    workbook.save(buf)
    return buf.getvalue()


class TestSelectExtractor:
    @pytest.mark.parametrize(
        ("mime", "name", "expected"),
        [
            ("application/pdf", "x.bin", "pdf"),
            (None, "Report.PDF", "pdf"),
            ("application/octet-stream", "memo.docx", "docx"),
            ("application/vnd.openxmlformats-officedocument.spreadsheetml.sheet", "ledger", "spreadsheet"),
            (None, "old.xls", "spreadsheet"),
            ("image/jpeg", "scan", "image"),
            (None, "receipt.png", "image"),
            ("text/csv", "bank.csv", "text"),
            (None, "README", "text"),
        ],
    )
    def test_dispatch(self, mime, name, expected):
        assert select_extractor(mime, name) == expected


class TestExtractors:
    def test_pdf_text_layer(self):
        text = extract_pdf_text(_pdf_bytes("Revenue 1000", "Profit 200"))
        assert "Revenue 1000" in text
        assert "Profit 200" in text

    def test_corrupt_pdf_raises(self):
        pytest.importorskip("pymupdf")
        with pytest.raises(ApiError) as exc_info:
            extract_pdf_text(b"not a pdf at all")
        assert exc_info.value.code == "DOC_PARSE_PDF_CORRUPT"

    def test_docx_paragraphs_and_tables(self):
        text = extract_docx_text(_docx_bytes())
        lines = text.splitlines()
        assert lines[0] == "Invoice register FY2023"
        assert "INV-001\t4500" in lines

    def test_corrupt_docx_raises(self):
        pytest.importorskip("docx")
        with pytest.raises(ApiError) as exc_info:
            extract_docx_text(b"PK-not-really")
        assert exc_info.value.code == "DOC_PARSE_DOCX_CORRUPT"

    def test_spreadsheet_sheets_as_csv(self):
        text = extract_spreadsheet_text(_xlsx_bytes(), ext="xlsx")
        assert text == "=== SHEET: Ledger ===\nAccount,Balance\nCash,12000\n\n=== SHEET: Notes ===\nChecked by,auditor"


class TestExtractEvidence:
    def test_text_file_single_snippet(self):
        snippets = extract_evidence(b"\xef\xbb\xbfAmount: 42\r\n", file_name="notes.txt", mime_type="text/plain")
        assert snippets == [EvidenceSnippet(id="A", location="text", text="Amount: 42\n")]

    def test_clamps_long_text(self):
        snippets = extract_evidence(b"x" * 500, file_name="big.txt", max_chars=100)
        assert snippets[0].text == "x" * 100 + TRUNCATION_MARKER

    def test_spreadsheet_location(self):
        snippets = extract_evidence(_xlsx_bytes(), file_name="ledger.xlsx")
        assert snippets[0].location == "xlsx:csv"

    def test_image_goes_through_ocr(self):
        calls = []

        def _ocr(content: bytes, mime: str) -> str:
            calls.append(mime)
            return "Total due 99.00"

        snippets = extract_evidence(b"\x89PNG...", file_name="receipt.jpg", ocr=_ocr)
        assert calls == ["image/jpeg"]
        assert snippets[0].location == "image:ocr"
        assert snippets[0].text == "Total due 99.00"

    def test_image_without_ocr_has_no_evidence(self):
        snippets = extract_evidence(b"\x89PNG...", file_name="receipt.png")
        assert not has_usable_evidence(snippets)


def test_decode_text_replaces_invalid_bytes():
    assert decode_text_best_effort(b"ok \xff\xfe end") == "ok \ufffd\ufffd end"


def test_strip_split_suffix():
    assert strip_split_suffix("statement.pdf (split 3 parts)") == "statement.pdf"
    assert strip_split_suffix("plain.pdf") == "plain.pdf"
