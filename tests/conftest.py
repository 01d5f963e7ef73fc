import pathlib
import sys

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from audit_runner.job_controller import AuditJobController
from audit_runner.main import create_app
from audit_runner.settings import RunnerSettings
from audit_runner.store import store


@pytest.fixture(autouse=True)
def reset_store(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("AUDIT_OBJECT_STORAGE_BACKEND", "local")
    monkeypatch.setenv("OBJECT_STORAGE_ROOT", str(tmp_path / "object_store"))
    monkeypatch.setenv("MOCK_LLM_ENABLED", "true")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("AUDIT_SECONDARY_ANALYSIS_URL", raising=False)
    store.reset()
    yield


@pytest.fixture
def settings() -> RunnerSettings:
    return RunnerSettings(per_file_timeout_s=5.0, synthesis_timeout_s=5.0, llm_backoff_base_s=0.0)


@pytest.fixture
def controller(settings: RunnerSettings) -> AuditJobController:
    return AuditJobController(store=store, settings=settings)


@pytest.fixture
def client(controller: AuditJobController) -> TestClient:
    return TestClient(create_app(controller=controller))


@pytest.fixture
def seed_document():
    def _seed(
        collection_id: str,
        name: str,
        content: bytes,
        *,
        file_type: str = "text/plain",
        collection_name: str = "",
    ) -> dict:
        if store.get_collection(collection_id) is None:
            store.upsert_collection(collection_id=collection_id, name=collection_name)
        path = f"{collection_id}/{name}"
        store.object_storage.upload(path, content, content_type=file_type)
        return store.add_document(
            collection_id=collection_id,
            name=name,
            file_path=path,
            file_type=file_type,
            file_size=len(content),
        )

    return _seed
