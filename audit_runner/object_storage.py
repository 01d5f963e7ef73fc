from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from audit_runner.errors import ApiError


def _clean_path(path: str) -> str:
    parts = [segment for segment in path.replace("\\", "/").split("/") if segment not in {"", ".", ".."}]
    if not parts:
        raise ValueError(f"invalid object path: {path!r}")
    return "/".join(re.sub(r"[\x00-\x1f]", "_", segment) for segment in parts)


def _not_found(path: str) -> ApiError:
    return ApiError(
        code="STORAGE_OBJECT_NOT_FOUND",
        message=f"object not found: {path}",
        error_class="permanent",
        retryable=False,
        http_status=404,
    )


@dataclass(frozen=True)
class ObjectStorageConfig:
    backend: str
    bucket: str
    root: str
    prefix: str
    endpoint: str
    region: str
    access_key: str
    secret_key: str
    force_path_style: bool


class ObjectStorageBackend:
    """Blob store keyed by the document's storage path inside one bucket."""

    backend_name = "base"

    def download(self, path: str) -> bytes:
        raise NotImplementedError

    def upload(self, path: str, content: bytes, *, content_type: str | None = None) -> str:
        raise NotImplementedError

    def exists(self, path: str) -> bool:
        raise NotImplementedError


class LocalObjectStorage(ObjectStorageBackend):
    backend_name = "local"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        self._bucket = config.bucket
        self._root = Path(config.root)
        self._prefix = config.prefix.strip("/")
        self._root.mkdir(parents=True, exist_ok=True)

    def download(self, path: str) -> bytes:
        target = self._path_for(path)
        if not target.is_file():
            raise _not_found(path)
        return target.read_bytes()

    def upload(self, path: str, content: bytes, *, content_type: str | None = None) -> str:
        target = self._path_for(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        return self._key_for(path)

    def exists(self, path: str) -> bool:
        return self._path_for(path).is_file()

    def reset(self) -> None:
        bucket_root = self._root / self._bucket
        if not bucket_root.exists():
            return
        for item in sorted(bucket_root.rglob("*"), reverse=True):
            if item.is_file():
                item.unlink()
            elif item.is_dir():
                item.rmdir()

    def _key_for(self, path: str) -> str:
        key = _clean_path(path)
        if self._prefix:
            return f"{self._prefix}/{key}"
        return key

    def _path_for(self, path: str) -> Path:
        return self._root / self._bucket / self._key_for(path)


class S3ObjectStorage(ObjectStorageBackend):
    backend_name = "s3"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        try:
            import boto3  # type: ignore
        except Exception as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("boto3 is required for s3 object storage backend") from exc
        self._bucket = config.bucket
        self._prefix = config.prefix.strip("/")
        session = boto3.session.Session(
            aws_access_key_id=config.access_key or None,
            aws_secret_access_key=config.secret_key or None,
            region_name=config.region or None,
        )
        self._client = session.client(
            "s3",
            endpoint_url=config.endpoint or None,
            config=boto3.session.Config(s3={"addressing_style": "path" if config.force_path_style else "auto"}),
        )

    def download(self, path: str) -> bytes:
        key = self._key_for(path)
        try:
            response = self._client.get_object(Bucket=self._bucket, Key=key)
        except Exception as exc:
            if _is_missing_key_error(exc):
                raise _not_found(path) from exc
            raise ApiError(
                code="STORAGE_DOWNLOAD_FAILED",
                message=f"failed to download {path}: {type(exc).__name__}",
                error_class="transient",
                retryable=True,
                http_status=503,
            ) from exc
        return response["Body"].read()

    def upload(self, path: str, content: bytes, *, content_type: str | None = None) -> str:
        key = self._key_for(path)
        self._client.put_object(
            Bucket=self._bucket,
            Key=key,
            Body=content,
            ContentType=content_type or "application/octet-stream",
        )
        return key

    def exists(self, path: str) -> bool:
        try:
            self._client.head_object(Bucket=self._bucket, Key=self._key_for(path))
            return True
        except Exception:
            return False

    def _key_for(self, path: str) -> str:
        key = _clean_path(path)
        if self._prefix:
            return f"{self._prefix}/{key}"
        return key


def _is_missing_key_error(exc: Exception) -> bool:
    response = getattr(exc, "response", None)
    if not isinstance(response, dict):
        return False
    code = str(response.get("Error", {}).get("Code", ""))
    return code in {"NoSuchKey", "404", "NotFound"}


def _env_flag(env: Mapping[str, str], name: str, default: str) -> bool:
    return str(env.get(name, default)).strip().lower() not in {"0", "false", "no", "off"}


def create_object_storage_from_env(environ: Mapping[str, str] | None = None) -> ObjectStorageBackend:
    env = os.environ if environ is None else environ
    backend = env.get("AUDIT_OBJECT_STORAGE_BACKEND", "local").strip().lower() or "local"
    config = ObjectStorageConfig(
        backend=backend,
        bucket=env.get("OBJECT_STORAGE_BUCKET", "documents").strip() or "documents",
        root=env.get("OBJECT_STORAGE_ROOT", "/tmp/audit-object-storage").strip() or "/tmp/audit-object-storage",
        prefix=env.get("OBJECT_STORAGE_PREFIX", "").strip(),
        endpoint=env.get("OBJECT_STORAGE_ENDPOINT", "").strip(),
        region=env.get("OBJECT_STORAGE_REGION", "").strip(),
        access_key=env.get("OBJECT_STORAGE_ACCESS_KEY", "").strip(),
        secret_key=env.get("OBJECT_STORAGE_SECRET_KEY", "").strip(),
        force_path_style=_env_flag(env, "OBJECT_STORAGE_FORCE_PATH_STYLE", "true"),
    )
    if config.backend == "s3":
        return S3ObjectStorage(config=config)
    return LocalObjectStorage(config=config)
