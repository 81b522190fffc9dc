import io
import json
import zipfile

import pytest
from fastapi.testclient import TestClient

from charforge.errors import RateLimitedError
from charforge.main import (
    SessionRegistry,
    app,
    get_gateway_factory,
    get_session_registry,
    get_settings_store,
)
from charforge.models import CharacterRecord, GenerationResult, ProviderConfig
from charforge.storage.charx import build_character_card, serialize_charx
from charforge.storage.settings import SettingsStore

ADA_REPLY = '```json\n{"name": "Ada", "description": "A clockmaker", "first_mes": "Hello."}\n```'
LOREBOOK_REPLY = '{"lorebook": [{"keys": ["Ironhold"], "content": "A walled city.", "name": "Ironhold City"}]}'


class DummyGenerator:
    def __init__(self, *replies) -> None:
        self.replies = list(replies)

    async def generate(self, prompt: str, system_prompt: str | None = None) -> GenerationResult:
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return GenerationResult(text=reply)


@pytest.fixture
def store(tmp_path):
    return SettingsStore(tmp_path / "settings.json")


@pytest.fixture
def make_client(store):
    def _make(*replies) -> TestClient:
        generator = DummyGenerator(*replies)
        registry = SessionRegistry()
        app.dependency_overrides[get_session_registry] = lambda: registry
        app.dependency_overrides[get_settings_store] = lambda: store
        app.dependency_overrides[get_gateway_factory] = lambda: (lambda config: generator)
        return TestClient(app)

    yield _make
    app.dependency_overrides.clear()


def _create_session(client: TestClient) -> str:
    response = client.post(
        "/api/v1/sessions", json={"provider_config": {"provider": "ollama"}}
    )
    assert response.status_code == 200
    return response.json()["session_id"]


def test_session_lifecycle_through_export(make_client):
    client = make_client(ADA_REPLY, LOREBOOK_REPLY)
    session_id = _create_session(client)
    base = f"/api/v1/sessions/{session_id}"

    stage1 = client.post(f"{base}/stage1", json={"brief": "A shy clockmaker", "name": "Ada"})
    assert stage1.status_code == 200
    assert stage1.json()["name"] == "Ada"

    stage2 = client.post(f"{base}/stage2", json={"requirements": "Steampunk"})
    assert stage2.status_code == 200
    assert stage2.json()[0]["insertion_order"] == 40

    stage3 = client.post(
        f"{base}/stage3",
        files=[
            ("files", ("IMG_1.png", b"one", "image/png")),
            ("files", ("bg.jpg", b"two", "image/jpeg")),
        ],
        data={"manual_names": json.dumps({"emotion": {"IMG_1.png": "smile"}})},
    )
    assert stage3.status_code == 200
    assert stage3.json()["renamed_assets"] == 1

    modification = client.post(
        f"{base}/modifications",
        json={
            "request": {"field": "personality", "requestedChange": "Patient"},
            "mode": "manual",
        },
    )
    assert modification.status_code == 200
    assert modification.json()["personality"] == "Patient"

    stage5 = client.post(f"{base}/stage5")
    assert stage5.status_code == 200
    assert stage5.json()["asset_summary"]["totalAssets"] == 2

    session = client.get(base).json()
    assert [stage["status"] for stage in session["stages"]] == [
        "completed",
        "completed",
        "completed",
        "completed",
        "completed",
    ]

    export = client.get(f"{base}/export")
    assert export.status_code == 200
    assert export.headers["x-export-fallback"] == "false"
    assert ".charx" in export.headers["content-disposition"]
    with zipfile.ZipFile(io.BytesIO(export.content)) as archive:
        assert "assets/other/image/smile.png" in archive.namelist()
        manifest = json.loads(archive.read("card.json"))
    assert manifest["data"]["extensions"]["fiveStageWorkflow"]["version"] == "1.0"
    assert manifest["data"]["character_book"]["entries"][0]["keys"] == ["Ironhold"]

    renamed = client.get(f"{base}/assets/renamed")
    with zipfile.ZipFile(io.BytesIO(renamed.content)) as archive:
        assert sorted(archive.namelist()) == ["bg.jpg", "smile.png"]


def test_export_reflects_modifications_made_after_stage5(make_client):
    client = make_client(ADA_REPLY)
    session_id = _create_session(client)
    base = f"/api/v1/sessions/{session_id}"
    client.post(f"{base}/stage1", json={"brief": "A shy clockmaker", "name": "Ada"})
    assert client.post(f"{base}/stage5").json()["character"]["name"] == "Ada"

    modification = client.post(
        f"{base}/modifications",
        json={"request": {"field": "name", "requestedChange": "Grace"}, "mode": "manual"},
    )
    assert modification.json()["name"] == "Grace"

    export = client.get(f"{base}/export")
    assert export.status_code == 200
    with zipfile.ZipFile(io.BytesIO(export.content)) as archive:
        manifest = json.loads(archive.read("card.json"))
    assert manifest["data"]["name"] == "Grace"
    history = manifest["data"]["extensions"]["fiveStageWorkflow"]["modificationHistory"]
    assert [entry["requestedChange"] for entry in history] == ["Grace"]


def test_stage2_before_stage1_returns_409(make_client):
    client = make_client()
    session_id = _create_session(client)

    response = client.post(f"/api/v1/sessions/{session_id}/stage2", json={})

    assert response.status_code == 409
    assert response.json()["detail"]["stage"] == 2


def test_stage1_parse_failure_returns_422(make_client):
    client = make_client("I would rather not.")
    session_id = _create_session(client)

    response = client.post(
        f"/api/v1/sessions/{session_id}/stage1", json={"brief": "A shy clockmaker"}
    )

    assert response.status_code == 422
    session = client.get(f"/api/v1/sessions/{session_id}").json()
    assert session["stages"][0]["status"] == "failed"
    assert session["stages"][0]["errors"][0].startswith("Stage 1 failed:")


def test_rate_limited_gateway_returns_429(make_client):
    client = make_client(RateLimitedError("too many", provider="ollama", status_code=429))
    session_id = _create_session(client)

    response = client.post(
        f"/api/v1/sessions/{session_id}/stage1", json={"brief": "A shy clockmaker"}
    )

    assert response.status_code == 429
    assert response.json()["detail"]["kind"] == "rate_limited"


def test_unknown_modification_field_returns_409(make_client):
    client = make_client(ADA_REPLY)
    session_id = _create_session(client)
    base = f"/api/v1/sessions/{session_id}"
    client.post(f"{base}/stage1", json={"brief": "A shy clockmaker"})

    response = client.post(
        f"{base}/modifications",
        json={"request": {"field": "favorite_color", "requestedChange": "blue"}, "mode": "manual"},
    )

    assert response.status_code == 409
    assert response.json()["detail"]["field"] == "favorite_color"


def test_unknown_session_returns_404(make_client):
    client = make_client()

    response = client.get("/api/v1/sessions/does-not-exist")

    assert response.status_code == 404


def test_stage3_rejects_malformed_manual_names(make_client):
    client = make_client()
    session_id = _create_session(client)

    response = client.post(
        f"/api/v1/sessions/{session_id}/stage3",
        files=[("files", ("a.png", b"a", "image/png"))],
        data={"manual_names": "{oops"},
    )

    assert response.status_code == 422


def test_classify_preview_does_not_change_session(make_client, store):
    store.save_selected_provider(ProviderConfig(provider="ollama"))
    client = make_client(
        '{"category": "emotion", "suggestedFileName": "smile", "confidence": 88}'
    )
    session_id = _create_session(client)

    response = client.post(
        f"/api/v1/sessions/{session_id}/assets/classify",
        files=[("files", ("IMG_9.png", b"a", "image/png"))],
    )

    assert response.status_code == 200
    assert response.json()[0]["suggested_file_name"] == "smile.png"
    session = client.get(f"/api/v1/sessions/{session_id}").json()
    assert session["asset_results"] == []
    assert session["stages"][2]["status"] == "pending"


def test_charx_import_and_validate(make_client):
    client = make_client()
    card = build_character_card(CharacterRecord(name="Ada", description="A clockmaker"))
    data = serialize_charx(card)

    imported = client.post(
        "/api/v1/charx/import", files={"file": ("ada.charx", data, "application/zip")}
    )
    validated = client.post(
        "/api/v1/charx/validate", files={"file": ("ada.charx", data, "application/zip")}
    )

    assert imported.status_code == 200
    assert imported.json()["character"]["name"] == "Ada"
    assert validated.json()["is_valid"] is True
    assert validated.json()["character_name"] == "Ada"


def test_charx_import_rejects_invalid_archive(make_client):
    client = make_client()

    response = client.post(
        "/api/v1/charx/import", files={"file": ("bad.charx", b"nope", "application/zip")}
    )

    assert response.status_code == 422
    assert response.json()["detail"]["errors"] == ["file is not a CHARX archive"]


def test_settings_roundtrip(make_client):
    client = make_client()

    initial = client.get("/api/v1/settings")
    assert initial.status_code == 200
    assert initial.json()["custom_prompt"] == ""

    document = initial.json()
    document["custom_prompt"] = "Be vivid"
    saved = client.put("/api/v1/settings", json=document)

    assert saved.status_code == 200
    assert client.get("/api/v1/settings").json()["custom_prompt"] == "Be vivid"


def test_logs_download(make_client):
    client = make_client()

    response = client.get("/api/v1/logs")

    assert response.status_code == 200
    assert "charforge-session.log" in response.headers["content-disposition"]
