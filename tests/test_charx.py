import io
import json
import zipfile
from datetime import date, datetime, timezone

import pytest

from charforge.errors import ManifestValidationError
from charforge.models import (
    AssetRenameResult,
    CharacterRecord,
    LorebookEntry,
    UploadedAsset,
)
from charforge.storage.charx import (
    asset_entry,
    asset_path,
    build_character_card,
    charx_info,
    export_charx,
    extract_charx,
    media_category,
    read_charx,
    record_from_manifest,
    safe_file_stem,
    serialize_charx,
    validate_charx,
)


def _character() -> CharacterRecord:
    stamp = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    return CharacterRecord(
        name="Ada Lovelace",
        description="A clockmaker",
        first_mes="Hello.",
        creation_date=stamp,
        modification_date=stamp,
    )


def _result(original: str, suggested: str, category: str) -> AssetRenameResult:
    return AssetRenameResult(
        original_file_name=original,
        suggested_file_name=suggested,
        category=category,
        confidence=90,
    )


def _zip(members: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in members.items():
            archive.writestr(name, content)
    return buffer.getvalue()


def test_media_category_by_extension():
    assert media_category("smile.PNG") == "image"
    assert media_category("theme.mp3") == "audio"
    assert media_category("clip.webm") == "video"
    assert media_category("font.woff2") == "fonts"
    assert media_category("script.lua") == "code"
    assert media_category("model.safetensors") == "ai"
    assert media_category("notes.txt") == "other"
    assert media_category("README") == "other"


def test_asset_entry_for_icon_and_vendor_assets():
    assert asset_entry("profile-main.png", "profile") == {
        "type": "icon",
        "uri": "embeded://assets/icon/image/profile-main.png",
        "name": "iconx",
        "ext": "png",
    }
    assert asset_entry("smile.png", "emotion") == {
        "type": "x-risu-asset",
        "uri": "embeded://assets/other/image/smile.png",
        "name": "smile",
        "ext": "png",
    }
    assert asset_path("theme.ogg", "etc") == "assets/other/audio/theme.ogg"


def test_build_character_card_shape():
    lorebook = [LorebookEntry(keys=["clock"], content="Ada repairs clocks.", insertion_order=5)]

    card = build_character_card(_character(), lorebook)

    assert card["spec"] == "chara_card_v3"
    assert card["spec_version"] == "3.0"
    data = card["data"]
    assert data["name"] == "Ada Lovelace"
    assert data["creation_date"] == int(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc).timestamp())
    book = data["character_book"]
    assert book["scan_depth"] == 40
    assert book["token_budget"] == 2048
    assert book["recursive_scanning"] is False
    assert book["entries"][0]["id"] == 0
    assert book["entries"][0]["keys"] == ["clock"]


def test_card_without_lorebook_has_no_character_book():
    assert "character_book" not in build_character_card(_character())["data"]


def test_roundtrip_without_assets():
    card = build_character_card(_character())

    result = read_charx(serialize_charx(card))

    assert result.manifest["data"]["name"] == "Ada Lovelace"
    assert result.manifest["data"]["assets"] == []
    assert result.assets == []


def test_roundtrip_places_assets_and_regenerates_manifest():
    assets = [
        UploadedAsset(file_name="IMG_1.png", content=b"png-bytes", media_type="image/png"),
        UploadedAsset(file_name="theme.mp3", content=b"mp3-bytes", media_type="audio/mpeg"),
        UploadedAsset(file_name="portrait.jpg", content=b"jpg-bytes", media_type="image/jpeg"),
    ]
    results = [
        _result("IMG_1.png", "smile.png", "emotion"),
        _result("portrait.jpg", "profile-portrait.jpg", "profile"),
    ]
    card = build_character_card(_character())

    data = serialize_charx(card, assets, results)

    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        names = set(archive.namelist())
        assert names == {
            "card.json",
            "assets/other/image/smile.png",
            "assets/other/audio/theme.mp3",
            "assets/icon/image/profile-portrait.jpg",
        }
        assert all(info.compress_type == zipfile.ZIP_DEFLATED for info in archive.infolist())
        assert archive.read("assets/other/image/smile.png") == b"png-bytes"

    imported = read_charx(data)
    manifest_uris = {entry["uri"] for entry in imported.manifest["data"]["assets"]}
    assert manifest_uris == {f"embeded://{name}" for name in names if name != "card.json"}
    by_name = {asset.file_name: asset for asset in imported.assets}
    assert by_name["smile.png"].content == b"png-bytes"
    assert by_name["smile.png"].media_type == "image/png"


def test_duplicate_final_names_are_disambiguated():
    assets = [
        UploadedAsset(file_name="a.png", content=b"a"),
        UploadedAsset(file_name="b.png", content=b"b"),
    ]
    results = [_result("a.png", "smile.png", "emotion"), _result("b.png", "smile.png", "emotion")]

    data = serialize_charx(build_character_card(_character()), assets, results)

    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        assert archive.read("assets/other/image/smile.png") == b"a"
        assert archive.read("assets/other/image/smile-2.png") == b"b"
        manifest = json.loads(archive.read("card.json"))
    assert [entry["name"] for entry in manifest["data"]["assets"]] == ["smile", "smile-2"]


def test_export_charx_names_file_and_reports_metadata():
    assets = [UploadedAsset(file_name="a.png", content=b"x" * 500)]

    result = export_charx(
        build_character_card(_character()), assets, today=date(2024, 5, 2)
    )

    assert result.file_name == "ada_lovelace_2024-05-02.charx"
    assert result.file_size == len(result.data)
    assert result.metadata["asset_count"] == 1
    assert result.metadata["character_name"] == "Ada Lovelace"
    assert result.metadata["compression_ratio"] > 0


def test_safe_file_stem():
    assert safe_file_stem("Ada: The *Clockmaker*") == "ada_the_clockmaker"
    assert safe_file_stem("???") == "character"


def test_legacy_manifest_name_is_accepted():
    manifest = {"spec": "chara_card_v3", "spec_version": "3.0", "data": {"name": "Old"}}
    data = _zip(
        {
            "character.json": json.dumps(manifest).encode(),
            "assets/other/image/x.png": b"x",
        }
    )

    result = read_charx(data)

    assert result.manifest["data"]["name"] == "Old"
    assert [asset.file_name for asset in result.assets] == ["x.png"]


def test_missing_name_is_rejected():
    manifest = {"spec": "chara_card_v3", "spec_version": "3.0", "data": {"name": "  "}}
    data = _zip({"card.json": json.dumps(manifest).encode()})

    with pytest.raises(ManifestValidationError) as exc_info:
        read_charx(data)

    assert "character name is required" in exc_info.value.errors
    assert extract_charx(data) is None


def test_missing_manifest_is_rejected():
    data = _zip({"assets/other/image/x.png": b"x"})

    with pytest.raises(ManifestValidationError):
        read_charx(data)


def test_not_a_zip():
    assert extract_charx(b"definitely not a zip") is None
    report = validate_charx(b"definitely not a zip")
    assert report.is_valid is False
    assert report.errors == ["Failed to read CHARX file"]
    assert charx_info(b"definitely not a zip") is None


def test_validate_reports_name_and_asset_count():
    assets = [UploadedAsset(file_name="a.png", content=b"a")]
    data = serialize_charx(build_character_card(_character()), assets)

    report = validate_charx(data)

    assert report.is_valid is True
    assert report.character_name == "Ada Lovelace"
    assert report.asset_count == 1
    assert report.errors == []


def test_validate_reports_wrong_spec():
    manifest = {"spec": "chara_card_v2", "spec_version": "2.0", "data": {"name": "Old"}}
    data = _zip({"card.json": json.dumps(manifest).encode()})

    report = validate_charx(data)

    assert report.is_valid is False
    assert report.errors == [
        "unsupported card spec: chara_card_v2",
        "unsupported card spec version: 2.0",
    ]


def test_validate_rejects_other_spec_version():
    manifest = {"spec": "chara_card_v3", "spec_version": "2.0", "data": {"name": "Old"}}
    data = _zip({"card.json": json.dumps(manifest).encode()})

    report = validate_charx(data)

    assert report.is_valid is False
    assert report.errors == ["unsupported card spec version: 2.0"]
    with pytest.raises(ManifestValidationError):
        read_charx(data)


def test_validate_and_info_tolerate_non_object_data():
    manifest = {"spec": "chara_card_v3", "spec_version": "3.0", "data": "oops"}
    data = _zip({"card.json": json.dumps(manifest).encode()})

    report = validate_charx(data)

    assert report.is_valid is False
    assert report.character_name is None
    assert report.errors
    assert charx_info(data)["character_name"] == "Unknown"


def test_charx_info():
    data = serialize_charx(build_character_card(_character()))

    info = charx_info(data)

    assert info == {"character_name": "Ada Lovelace", "asset_count": 0, "file_size": len(data)}


def test_record_from_manifest_restores_character_and_lorebook():
    character = _character()
    character.alternate_greetings = ["Hi again."]
    lorebook = [LorebookEntry(keys=["clock"], content="Ada repairs clocks.", insertion_order=5)]
    card = build_character_card(character, lorebook)

    record, entries = record_from_manifest(read_charx(serialize_charx(card)).manifest)

    assert record.name == "Ada Lovelace"
    assert record.first_mes == "Hello."
    assert record.alternate_greetings == ["Hi again."]
    assert record.creation_date == character.creation_date
    assert entries[0].keys == ["clock"]
    assert entries[0].insertion_order == 5


def test_record_from_manifest_handles_millisecond_timestamps():
    manifest = {
        "spec": "chara_card_v3",
        "spec_version": "3.0",
        "data": {"name": "Ms", "creation_date": 1714564800000},
    }

    record, entries = record_from_manifest(manifest)

    assert record.creation_date == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert entries == []


@pytest.mark.parametrize(
    "data, expected",
    [
        ({"name": "A", "character_book": ["x"]}, "character_book: must be an object"),
        ({"name": "A", "character_book": {"entries": "x"}}, "character_book.entries: must be a list"),
        ({"name": "A", "extensions": {"risuai": "oops"}}, "extensions.risuai"),
    ],
)
def test_record_from_manifest_rejects_malformed_sections(data, expected):
    with pytest.raises(ManifestValidationError) as exc_info:
        record_from_manifest({"spec": "chara_card_v3", "spec_version": "3.0", "data": data})

    assert any(error.startswith(expected) for error in exc_info.value.errors)


def test_record_from_manifest_requires_data_object():
    with pytest.raises(ManifestValidationError):
        record_from_manifest({"spec": "chara_card_v3", "spec_version": "3.0", "data": "oops"})


def test_asset_names_never_leave_their_directory():
    assets = [UploadedAsset(file_name="a.png", content=b"a")]
    results = [_result("a.png", "../../evil.png", "etc")]

    data = serialize_charx(build_character_card(_character()), assets, results)

    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        names = archive.namelist()
        manifest = json.loads(archive.read("card.json"))
    assert "assets/other/image/evil.png" in names
    assert not any(".." in name for name in names)
    assert manifest["data"]["assets"][0]["uri"] == "embeded://assets/other/image/evil.png"
