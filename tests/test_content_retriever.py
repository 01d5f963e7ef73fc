import json

import pytest

from audit_runner.content_retriever import ContentRetriever
from audit_runner.errors import ApiError
from audit_runner.store import store
from audit_runner.timeouts import Deadline, DeadlineExceeded


def _retriever() -> ContentRetriever:
    return ContentRetriever(object_storage=store.object_storage, store=store)


def _split_document(metadata) -> dict:
    document = store.add_document(
        collection_id="c1",
        name="statement.pdf (split 2 parts)",
        file_path="c1/statement.pdf.metadata",
        file_type="application/pdf",
    )
    if metadata is not None:
        store.record_activity(document_id=document["id"], action="upload", metadata=metadata)
    return {
        "id": "ajf_1",
        "document_id": document["id"],
        "file_name": document["name"],
        "file_path": document["file_path"],
        "file_type": document["file_type"],
    }


def test_fetch_plain_file():
    store.object_storage.upload("c1/a.txt", b"hello")
    retrieved = _retriever().fetch({"file_path": "c1/a.txt", "file_name": "a.txt", "file_type": "text/plain"})
    assert retrieved.content == b"hello"
    assert retrieved.file_name == "a.txt"
    assert retrieved.mime_type == "text/plain"
    assert retrieved.chunk_count == 1


def test_missing_blob_is_a_per_file_error():
    with pytest.raises(ApiError) as exc_info:
        _retriever().fetch({"file_path": "c1/missing.pdf", "file_name": "missing.pdf"})
    assert exc_info.value.code == "STORAGE_OBJECT_NOT_FOUND"


def test_split_file_is_reassembled_in_order():
    store.object_storage.upload("c1/part1", b"%PDF-")
    store.object_storage.upload("c1/part0", b"start-")
    job_file = _split_document({"chunkPaths": ["c1/part0", "c1/part1"]})

    retrieved = _retriever().fetch(job_file)

    assert retrieved.content == b"start-%PDF-"
    assert retrieved.file_name == "statement.pdf"
    assert retrieved.chunk_count == 2


def test_chunk_paths_may_be_json_encoded():
    store.object_storage.upload("c1/p0", b"ab")
    store.object_storage.upload("c1/p1", b"cd")
    job_file = _split_document({"chunkPaths": json.dumps(["c1/p0", "c1/p1"])})

    assert _retriever().fetch(job_file).content == b"abcd"


@pytest.mark.parametrize(
    ("metadata", "message"),
    [
        (None, "Split file metadata not found"),
        ({"chunkPaths": []}, "Split file has no chunk paths recorded"),
    ],
)
def test_split_file_without_chunks_fails(metadata, message):
    job_file = _split_document(metadata)
    with pytest.raises(ApiError) as exc_info:
        _retriever().fetch(job_file)
    assert exc_info.value.code == "SPLIT_CHUNKS_MISSING"
    assert message in exc_info.value.message


def test_split_file_without_document_reference():
    with pytest.raises(ApiError, match="no document reference"):
        _retriever().fetch({"file_path": "c1/x.metadata", "file_name": "x"})


def test_expired_deadline_stops_before_download():
    store.object_storage.upload("c1/a.txt", b"hello")
    deadline = Deadline(60)
    deadline.cancel()
    with pytest.raises(DeadlineExceeded):
        _retriever().fetch({"file_path": "c1/a.txt", "file_name": "a.txt"}, deadline=deadline)
