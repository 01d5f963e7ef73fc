"""Tests for blob storage backends (S3 with mocked boto3)."""

import sys
from unittest.mock import MagicMock, patch

import pytest

from audit_runner.errors import ApiError
from audit_runner.object_storage import (
    LocalObjectStorage,
    ObjectStorageConfig,
    S3ObjectStorage,
    create_object_storage_from_env,
)


class MissingKey(Exception):
    def __init__(self):
        super().__init__("missing")
        self.response = {"Error": {"Code": "NoSuchKey"}}


def _config(**overrides) -> ObjectStorageConfig:
    values = {
        "backend": "s3",
        "bucket": "datarooms",
        "root": "/tmp",
        "prefix": "audit",
        "endpoint": "http://localhost:9000",
        "region": "us-east-1",
        "access_key": "key",
        "secret_key": "secret",
        "force_path_style": True,
    }
    values.update(overrides)
    return ObjectStorageConfig(**values)


@pytest.fixture
def mock_boto3():
    mock_boto3_module = MagicMock()
    mock_client = MagicMock()
    mock_boto3_module.session.Session.return_value.client.return_value = mock_client

    with patch.dict(sys.modules, {"boto3": mock_boto3_module}):
        yield mock_boto3_module, mock_client


def test_s3_download_reads_prefixed_key(mock_boto3):
    _, mock_client = mock_boto3
    mock_client.get_object.return_value = {"Body": MagicMock(read=MagicMock(return_value=b"pdf-bytes"))}

    storage = S3ObjectStorage(config=_config())

    assert storage.download("c1/report.pdf") == b"pdf-bytes"
    mock_client.get_object.assert_called_once_with(Bucket="datarooms", Key="audit/c1/report.pdf")


def test_s3_missing_key_is_not_found(mock_boto3):
    _, mock_client = mock_boto3
    mock_client.get_object.side_effect = MissingKey()

    with pytest.raises(ApiError) as exc_info:
        S3ObjectStorage(config=_config()).download("c1/none.pdf")

    assert exc_info.value.code == "STORAGE_OBJECT_NOT_FOUND"
    assert not exc_info.value.retryable


def test_s3_other_failures_are_retryable(mock_boto3):
    _, mock_client = mock_boto3
    mock_client.get_object.side_effect = ConnectionError("reset")

    with pytest.raises(ApiError) as exc_info:
        S3ObjectStorage(config=_config()).download("c1/a.pdf")

    assert exc_info.value.code == "STORAGE_DOWNLOAD_FAILED"
    assert exc_info.value.retryable


def test_s3_upload_sets_content_type(mock_boto3):
    _, mock_client = mock_boto3

    key = S3ObjectStorage(config=_config(prefix="")).upload("c1/a.pdf", b"x", content_type="application/pdf")

    assert key == "c1/a.pdf"
    mock_client.put_object.assert_called_once_with(
        Bucket="datarooms",
        Key="c1/a.pdf",
        Body=b"x",
        ContentType="application/pdf",
    )


def test_local_storage_round_trip_and_path_cleaning(tmp_path):
    storage = LocalObjectStorage(config=_config(backend="local", root=str(tmp_path), prefix=""))

    storage.upload("../c1/./a.txt", b"hello")

    assert storage.exists("c1/a.txt")
    assert storage.download("c1/a.txt") == b"hello"
    assert (tmp_path / "datarooms" / "c1" / "a.txt").is_file()
    storage.reset()
    assert not storage.exists("c1/a.txt")


def test_local_missing_object(tmp_path):
    storage = LocalObjectStorage(config=_config(backend="local", root=str(tmp_path)))
    with pytest.raises(ApiError) as exc_info:
        storage.download("c1/missing.txt")
    assert exc_info.value.code == "STORAGE_OBJECT_NOT_FOUND"


def test_create_from_env_defaults_to_local(tmp_path):
    storage = create_object_storage_from_env({"OBJECT_STORAGE_ROOT": str(tmp_path)})
    assert isinstance(storage, LocalObjectStorage)
