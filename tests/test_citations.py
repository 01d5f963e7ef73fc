from audit_runner.citations import validate_cited_facts, validate_cited_report
from audit_runner.document_parser import EvidenceSnippet


def _snippets():
    return [EvidenceSnippet(id="A", location="pdf:text", text="Revenue: 1,200,000\nNet profit: 80,000\n")]


def test_facts_keep_only_verbatim_citations():
    raw = {
        "document_type": "financial_statement",
        "summary": "FY23 accounts",
        "facts": [
            {"key": "revenue", "value": "1.2m", "citations": [{"snippet_id": "A", "quote": "Revenue: 1,200,000"}]},
            {"key": "ebitda", "value": "300k", "citations": [{"snippet_id": "A", "quote": "EBITDA: 300,000"}]},
            {"key": "profit", "value": "80k", "citations": [{"snippet_id": "B", "quote": "Net profit: 80,000"}]},
        ],
        "internal_red_flags": [
            {"title": "Margin", "detail": "thin", "citations": [{"snippet_id": "A", "quote": "Net profit: 80,000"}]},
        ],
    }

    cleaned = validate_cited_facts(raw, _snippets())

    assert cleaned["document_type"] == "financial_statement"
    assert [fact["key"] for fact in cleaned["facts"]] == ["revenue"]
    assert cleaned["facts"][0]["citations"] == [{"snippet_id": "A", "quote": "Revenue: 1,200,000"}]
    assert len(cleaned["internal_red_flags"]) == 1
    assert "dropped 2 facts" in cleaned["validation_notes"][0]


def test_facts_quote_is_normalized_before_matching():
    citation = {"snippet_id": "A", "quote": "  Revenue: 1,200,000\r\n"}
    raw = {"facts": [{"key": "k", "value": "v", "citations": [citation]}]}

    cleaned = validate_cited_facts(raw, _snippets())

    assert cleaned["facts"][0]["citations"][0]["quote"] == "Revenue: 1,200,000"


def test_facts_tolerate_garbage_payload():
    cleaned = validate_cited_facts(["not", "an", "object"], _snippets())

    assert cleaned["document_type"] == "unknown"
    assert cleaned["facts"] == []
    assert cleaned["internal_red_flags"] == []


def test_empty_quote_never_matches():
    raw = {"facts": [{"key": "k", "value": "v", "citations": [{"snippet_id": "A", "quote": "   "}]}]}

    assert validate_cited_facts(raw, _snippets())["facts"] == []


def _files():
    return [
        {
            "file_name": "bank.pdf",
            "file_path": "c1/bank.pdf",
            "status": "done",
            "evidence_json": {"snippets": [{"id": "A", "location": "pdf:text", "text": "Closing balance 10,000"}]},
        },
        {
            "file_name": "ledger.xlsx",
            "file_path": "c1/ledger.xlsx",
            "status": "done",
            "evidence_json": {"snippets": [{"id": "A", "location": "xlsx:csv", "text": "Cash,12000"}]},
        },
    ]


def test_report_drops_flags_without_supported_evidence():
    raw = {
        "executive_summary": "Two findings",
        "red_flags": [
            {
                "severity": "HIGH",
                "title": "Cash mismatch",
                "confidence_score": 140,
                "where_to_check": [
                    {"file_name": "bank.pdf", "file_path": "c1/bank.pdf"},
                    {"file_name": "bank.pdf", "file_path": "c1/bank.pdf"},
                    {"file_name": "ghost.pdf", "file_path": "c1/ghost.pdf"},
                ],
                "evidence": [
                    {"file_name": "bank.pdf", "file_path": "c1/bank.pdf", "snippet_id": "A", "quote": "balance 10,000"},
                    {"file_name": "ledger.xlsx", "file_path": "wrong/path", "snippet_id": "A", "quote": "Cash,12000"},
                    {"file_name": "ledger.xlsx", "file_path": "c1/ledger.xlsx", "snippet_id": "A", "quote": "Cash 9"},
                ],
                "recommended_next_steps": ["Reconcile", ""],
            },
            {
                "severity": "low",
                "title": "Invented",
                "evidence": [{"file_name": "ghost.pdf", "snippet_id": "A", "quote": "anything"}],
            },
        ],
        "coverage_notes": ["ok", ""],
    }

    report = validate_cited_report(raw, _files())

    assert len(report["red_flags"]) == 1
    flag = report["red_flags"][0]
    assert flag["severity"] == "high"
    assert flag["confidence_score"] == 100
    assert flag["where_to_check"] == [{"file_name": "bank.pdf", "file_path": "c1/bank.pdf"}]
    # second evidence resolves by name and is rewritten with the stored path
    assert [ev["file_path"] for ev in flag["evidence"]] == ["c1/bank.pdf", "c1/ledger.xlsx"]
    assert flag["recommended_next_steps"] == ["Reconcile"]
    assert report["coverage_notes"] == ["ok"]


def test_report_unknown_severity_and_bad_confidence():
    raw = {
        "red_flags": [
            {
                "severity": "critical",
                "confidence_score": "n/a",
                "evidence": [{"file_path": "c1/bank.pdf", "snippet_id": "A", "quote": "Closing balance"}],
            }
        ]
    }

    flag = validate_cited_report(raw, _files())["red_flags"][0]

    assert flag["severity"] == "needs_more_evidence"
    assert flag["confidence_score"] is None
