import json

from charforge.models import AppSettingsView, PromptTemplate, ProviderConfig
from charforge.storage.settings import SettingsStore


def test_load_returns_defaults_when_missing(tmp_path):
    store = SettingsStore(tmp_path / "settings.json")

    document = store.load()

    assert document.provider_configs == []
    assert document.selected_provider is None
    assert document.app_settings.language == "en"


def test_load_returns_defaults_for_corrupt_file(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text("{not json", encoding="utf-8")

    assert SettingsStore(path).load().custom_prompt == ""


def test_save_helpers_persist_values(tmp_path):
    store = SettingsStore(tmp_path / "nested" / "settings.json")
    config = ProviderConfig(provider="ollama", model="llama3.2")

    store.save_provider_configs([config])
    store.save_selected_provider(config)
    store.save_custom_prompt("Be vivid")
    store.save_character_input({"brief": "A clockmaker"})
    store.save_app_settings(AppSettingsView(theme="dark", language="ko"))

    document = SettingsStore(tmp_path / "nested" / "settings.json").load()
    assert document.selected_provider.provider == "ollama"
    assert document.provider_configs[0].model == "llama3.2"
    assert document.custom_prompt == "Be vivid"
    assert document.character_input == {"brief": "A clockmaker"}
    assert document.app_settings.theme == "dark"
    assert not (tmp_path / "nested" / "settings.json.tmp").exists()


def test_prompt_templates_upsert_and_delete(tmp_path):
    store = SettingsStore(tmp_path / "settings.json")
    template = PromptTemplate(id="t1", name="Vivid", content="Write {{name}}")

    created = store.save_prompt_template(template)
    updated = store.save_prompt_template(template.model_copy(update={"name": "Very vivid"}))

    templates = store.load().prompt_templates
    assert len(templates) == 1
    assert templates[0].name == "Very vivid"
    assert updated.created_at == created.created_at
    assert updated.updated_at is not None
    assert store.delete_prompt_template("t1") is True
    assert store.delete_prompt_template("t1") is False


def test_export_import_roundtrip(tmp_path):
    source = SettingsStore(tmp_path / "a.json")
    source.save_custom_prompt("Hello")
    target = SettingsStore(tmp_path / "b.json")

    assert target.import_data(source.export_data()) is True
    assert target.load().custom_prompt == "Hello"
    assert target.import_data(json.dumps({"app_settings": {"theme": "neon"}})) is False
    assert target.import_data("not json") is False


def test_clear_removes_file(tmp_path):
    store = SettingsStore(tmp_path / "settings.json")
    store.save_custom_prompt("x")

    store.clear()

    assert not (tmp_path / "settings.json").exists()
    assert store.load().custom_prompt == ""
