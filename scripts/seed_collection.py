#!/usr/bin/env python3
"""Upload local files into blob storage and register them as collection documents.

Files larger than ``--split-bytes`` are stored as ordered chunks behind a
``.metadata`` placeholder, with the chunk list recorded on the upload activity.

Usage:
    python scripts/seed_collection.py --collection-id dataroom-1 --name "Acme Ltd" data/*.pdf
"""
from __future__ import annotations

import argparse
import json
import mimetypes
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from audit_runner.store import store


def _split(content: bytes, size: int) -> list[bytes]:
    return [content[i : i + size] for i in range(0, len(content), size)] or [b""]


def seed_file(*, collection_id: str, path: Path, split_bytes: int) -> dict[str, object]:
    content = path.read_bytes()
    mime_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    base = f"{collection_id}/{path.name}"

    if split_bytes <= 0 or len(content) <= split_bytes:
        store.object_storage.upload(base, content, content_type=mime_type)
        document = store.add_document(
            collection_id=collection_id,
            name=path.name,
            file_path=base,
            file_type=mime_type,
            file_size=len(content),
        )
        store.record_activity(
            document_id=document["id"],
            collection_id=collection_id,
            action="upload",
            metadata={"fileName": path.name, "fileSize": len(content)},
        )
        return {"document_id": document["id"], "file_path": base, "chunks": 1}

    chunks = _split(content, split_bytes)
    chunk_paths = []
    for index, chunk in enumerate(chunks):
        chunk_path = f"{base}.part{index:04d}"
        store.object_storage.upload(chunk_path, chunk, content_type="application/octet-stream")
        chunk_paths.append(chunk_path)
    placeholder = f"{base}.metadata"
    store.object_storage.upload(
        placeholder,
        json.dumps({"chunkPaths": chunk_paths}).encode("utf-8"),
        content_type="application/json",
    )
    document = store.add_document(
        collection_id=collection_id,
        name=f"{path.name} (split {len(chunks)} parts)",
        file_path=placeholder,
        file_type=mime_type,
        file_size=len(content),
    )
    store.record_activity(
        document_id=document["id"],
        collection_id=collection_id,
        action="upload",
        metadata={"fileName": path.name, "fileSize": len(content), "chunkPaths": chunk_paths},
    )
    return {"document_id": document["id"], "file_path": placeholder, "chunks": len(chunks)}


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed a collection with local documents.")
    parser.add_argument("--collection-id", required=True)
    parser.add_argument("--name", default="", help="Display name used in report titles.")
    parser.add_argument(
        "--split-bytes",
        type=int,
        default=0,
        help="Store files above this size as chunks (0 disables splitting).",
    )
    parser.add_argument("files", nargs="+")
    args = parser.parse_args()

    store.upsert_collection(collection_id=args.collection_id, name=args.name)
    seeded = []
    for raw_path in args.files:
        path = Path(raw_path)
        if not path.is_file():
            print(json.dumps({"success": False, "error": f"not a file: {raw_path}"}, ensure_ascii=True))
            return 1
        seeded.append(seed_file(collection_id=args.collection_id, path=path, split_bytes=args.split_bytes))
    print(json.dumps({"success": True, "collection_id": args.collection_id, "documents": seeded}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
