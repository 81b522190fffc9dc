"""CHARX 归档编解码：card.json 清单 + assets/<icon|other>/<媒体类别>/<文件名> 目录树（zip, DEFLATE）。"""

from __future__ import annotations

import io
import json
import logging
import mimetypes
import re
import zipfile
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import PurePosixPath
from typing import Any, Iterable, Optional, Sequence

from pydantic import BaseModel, Field, ValidationError

from charforge.config import CHARX_COMPRESSION_LEVEL
from charforge.constants import (
    ASSETS_ROOT,
    CARD_SPEC,
    CARD_SPEC_VERSION,
    EMBED_SCHEME,
    ICON_ASSET_NAME,
    ICON_ASSET_TYPE,
    LEGACY_MANIFEST_NAME,
    LOREBOOK_SCAN_DEPTH,
    LOREBOOK_TOKEN_BUDGET,
    MANIFEST_NAME,
    MEDIA_EXTENSIONS,
    VENDOR_ASSET_TYPE,
)
from charforge.errors import ManifestValidationError
from charforge.models import (
    AssetCategory,
    AssetRenameResult,
    CardManifest,
    CharacterExtensions,
    CharacterRecord,
    LorebookEntry,
    UploadedAsset,
    base_name,
    split_extension,
    strip_extension,
)

logger = logging.getLogger(__name__)

DEFAULT_MEDIA_TYPE = "application/octet-stream"
_UNSAFE_NAME_CHARS = re.compile(r"[^\w\s-]")
_WHITESPACE = re.compile(r"\s+")


@dataclass
class CharxExportResult:
    data: bytes
    file_name: str
    file_size: int
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class CharxImportResult:
    manifest: dict[str, Any]
    assets: list[UploadedAsset]


class CharxValidationReport(BaseModel):
    is_valid: bool
    character_name: Optional[str] = None
    asset_count: int = 0
    errors: list[str] = Field(default_factory=list)


def media_category(file_name: str) -> str:
    """按扩展名决定媒体目录；图片使用单数 image。"""
    _, ext = split_extension(file_name)
    ext = ext[1:].lower()
    for category, extensions in MEDIA_EXTENSIONS:
        if ext in extensions:
            return category
    return "other"


def asset_type_for(category: AssetCategory | str) -> str:
    value = category.value if isinstance(category, AssetCategory) else str(category)
    return ICON_ASSET_TYPE if value == AssetCategory.PROFILE.value else VENDOR_ASSET_TYPE


def storage_directory(asset_type: str) -> str:
    return "icon" if asset_type == ICON_ASSET_TYPE else "other"


def asset_path(final_name: str, category: AssetCategory | str) -> str:
    directory = storage_directory(asset_type_for(category))
    return f"{ASSETS_ROOT}/{directory}/{media_category(final_name)}/{final_name}"


def asset_entry(final_name: str, category: AssetCategory | str) -> dict[str, str]:
    asset_type = asset_type_for(category)
    _, ext = split_extension(final_name)
    return {
        "type": asset_type,
        "uri": f"{EMBED_SCHEME}://{asset_path(final_name, category)}",
        "name": ICON_ASSET_NAME if asset_type == ICON_ASSET_TYPE else strip_extension(final_name),
        "ext": ext[1:].lower() or "unknown",
    }


def _timestamp(value: datetime | None) -> int:
    stamp = value or datetime.now(timezone.utc)
    return int(stamp.timestamp())


def _character_book(character: CharacterRecord, lorebook: Sequence[LorebookEntry]) -> dict[str, Any]:
    entries = []
    for index, entry in enumerate(lorebook):
        payload = entry.model_dump(mode="json")
        payload["id"] = index
        entries.append(payload)
    return {
        "name": f"{character.name or 'Character'} Lorebook",
        "description": "Character-specific lorebook generated by the five-stage workflow",
        "scan_depth": LOREBOOK_SCAN_DEPTH,
        "token_budget": LOREBOOK_TOKEN_BUDGET,
        "recursive_scanning": False,
        "extensions": {},
        "entries": entries,
    }


def build_character_card(
    character: CharacterRecord,
    lorebook: Sequence[LorebookEntry] = (),
    asset_results: Sequence[AssetRenameResult] = (),
) -> dict[str, Any]:
    """把角色快照组装为 V3 卡片 JSON。"""
    data: dict[str, Any] = {
        "name": character.name,
        "description": character.description,
        "personality": character.personality,
        "scenario": character.scenario,
        "first_mes": character.first_mes,
        "mes_example": character.mes_example,
        "creator_notes": character.creator_notes,
        "system_prompt": character.system_prompt,
        "post_history_instructions": character.post_history_instructions,
        "alternate_greetings": list(character.alternate_greetings),
        "group_only_greetings": list(character.group_only_greetings),
        "tags": [],
        "creator": "",
        "character_version": "1.0",
        "creation_date": _timestamp(character.creation_date),
        "modification_date": _timestamp(character.modification_date),
        "extensions": character.extensions.to_json(),
        "assets": [
            asset_entry(result.suggested_file_name, result.category) for result in asset_results
        ],
    }
    if lorebook:
        data["character_book"] = _character_book(character, lorebook)
    return {"spec": CARD_SPEC, "spec_version": CARD_SPEC_VERSION, "data": data}


def _unique_name(name: str, used: set[str]) -> str:
    if name not in used:
        return name
    stem, ext = split_extension(name)
    counter = 2
    while f"{stem}-{counter}{ext}" in used:
        counter += 1
    return f"{stem}-{counter}{ext}"


def _placements(
    assets: Sequence[UploadedAsset], asset_results: Sequence[AssetRenameResult]
) -> list[tuple[UploadedAsset, str, AssetCategory]]:
    by_name = {result.original_file_name: result for result in asset_results}
    used: set[str] = set()
    placements = []
    for asset in assets:
        result = by_name.get(asset.file_name)
        final_name = base_name(result.suggested_file_name if result else asset.file_name) or "asset"
        category = result.category if result else AssetCategory.ETC
        unique = _unique_name(final_name, used)
        if unique != final_name:
            logger.warning("duplicate asset name %s stored as %s", final_name, unique)
        used.add(unique)
        placements.append((asset, unique, category))
    return placements


def serialize_charx(
    card: dict[str, Any],
    assets: Sequence[UploadedAsset] = (),
    asset_results: Sequence[AssetRenameResult] = (),
    *,
    compression_level: int = CHARX_COMPRESSION_LEVEL,
) -> bytes:
    """写出 CHARX 字节流；清单中的 assets 数组与归档路径由同一映射生成。"""
    manifest = json.loads(json.dumps(card))
    placements = _placements(assets, asset_results)
    manifest.setdefault("data", {})["assets"] = [
        asset_entry(final_name, category) for _, final_name, category in placements
    ]

    buffer = io.BytesIO()
    with zipfile.ZipFile(
        buffer, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=compression_level
    ) as archive:
        archive.writestr(MANIFEST_NAME, json.dumps(manifest, ensure_ascii=False, indent=2))
        for asset, final_name, category in placements:
            archive.writestr(asset_path(final_name, category), asset.content)
    return buffer.getvalue()


def safe_file_stem(name: str) -> str:
    cleaned = _WHITESPACE.sub("_", _UNSAFE_NAME_CHARS.sub("", name).strip()).lower()
    return cleaned or "character"


def export_charx(
    card: dict[str, Any],
    assets: Sequence[UploadedAsset] = (),
    asset_results: Sequence[AssetRenameResult] = (),
    *,
    compression_level: int = CHARX_COMPRESSION_LEVEL,
    today: date | None = None,
) -> CharxExportResult:
    data = serialize_charx(card, assets, asset_results, compression_level=compression_level)
    name = _manifest_name(card) or ""
    total_asset_size = sum(asset.size for asset in assets)
    stamp = (today or date.today()).isoformat()
    return CharxExportResult(
        data=data,
        file_name=f"{safe_file_stem(name)}_{stamp}.charx",
        file_size=len(data),
        metadata={
            "character_name": name,
            "asset_count": len(assets),
            "compression_ratio": len(data) / total_asset_size if total_asset_size else 1.0,
        },
    )


def _manifest_member(archive: zipfile.ZipFile) -> str | None:
    names = set(archive.namelist())
    for candidate in (MANIFEST_NAME, LEGACY_MANIFEST_NAME):
        if candidate in names:
            return candidate
    return None


def _validation_messages(exc: ValidationError, prefix: str = "") -> list[str]:
    messages = []
    for error in exc.errors():
        parts = [prefix] if prefix else []
        parts.extend(str(part) for part in error["loc"])
        messages.append(f"{'.'.join(parts)}: {error['msg']}")
    return messages


def _validate_manifest(raw: Any) -> list[str]:
    errors: list[str] = []
    try:
        manifest = CardManifest.model_validate(raw)
    except ValidationError as exc:
        return _validation_messages(exc)
    if manifest.spec != CARD_SPEC:
        errors.append(f"unsupported card spec: {manifest.spec}")
    if manifest.spec_version != CARD_SPEC_VERSION:
        errors.append(f"unsupported card spec version: {manifest.spec_version}")
    name = manifest.data.get("name")
    if not isinstance(name, str) or not name.strip():
        errors.append("character name is required")
    return errors


def _asset_members(archive: zipfile.ZipFile) -> Iterable[zipfile.ZipInfo]:
    prefix = f"{ASSETS_ROOT}/"
    for info in archive.infolist():
        if info.is_dir() or not info.filename.startswith(prefix):
            continue
        yield info


def _read_manifest(archive: zipfile.ZipFile) -> dict[str, Any]:
    member = _manifest_member(archive)
    if member is None:
        raise ManifestValidationError([f"{MANIFEST_NAME} or {LEGACY_MANIFEST_NAME} not found"])
    try:
        manifest = json.loads(archive.read(member).decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ManifestValidationError([f"invalid {member} format"]) from exc
    errors = _validate_manifest(manifest)
    if errors:
        raise ManifestValidationError(errors)
    return manifest


def read_charx(data: bytes) -> CharxImportResult:
    """解析 CHARX；清单缺失或不合规时抛出 ManifestValidationError。"""
    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as exc:
        raise ManifestValidationError(["file is not a CHARX archive"]) from exc
    with archive:
        manifest = _read_manifest(archive)
        assets = []
        for info in _asset_members(archive):
            file_name = PurePosixPath(info.filename).name
            media_type = mimetypes.guess_type(file_name)[0] or DEFAULT_MEDIA_TYPE
            assets.append(
                UploadedAsset(file_name=file_name, content=archive.read(info), media_type=media_type)
            )
    return CharxImportResult(manifest=manifest, assets=assets)


def extract_charx(data: bytes) -> CharxImportResult | None:
    """read_charx 的宽松版本：失败返回 None，便于调用方走降级路径。"""
    try:
        return read_charx(data)
    except (ManifestValidationError, zipfile.BadZipFile, OSError) as exc:
        logger.warning("failed to extract CHARX: %s", exc)
        return None


def _manifest_name(manifest: Any) -> str | None:
    data = manifest.get("data") if isinstance(manifest, dict) else None
    name = data.get("name") if isinstance(data, dict) else None
    return name if isinstance(name, str) else None


def validate_charx(data: bytes) -> CharxValidationReport:
    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile:
        return CharxValidationReport(is_valid=False, errors=["Failed to read CHARX file"])
    with archive:
        member = _manifest_member(archive)
        if member is None:
            return CharxValidationReport(
                is_valid=False,
                errors=[f"Required {MANIFEST_NAME} or {LEGACY_MANIFEST_NAME} file not found"],
            )
        try:
            manifest = json.loads(archive.read(member).decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return CharxValidationReport(is_valid=False, errors=[f"Invalid {member} format"])
        errors = _validate_manifest(manifest)
        name = _manifest_name(manifest)
        return CharxValidationReport(
            is_valid=not errors,
            character_name=name if isinstance(name, str) else None,
            asset_count=sum(1 for _ in _asset_members(archive)),
            errors=errors,
        )


def charx_info(data: bytes) -> dict[str, Any] | None:
    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile:
        return None
    with archive:
        member = _manifest_member(archive)
        if member is None:
            return None
        try:
            manifest = json.loads(archive.read(member).decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return None
        name = _manifest_name(manifest)
        return {
            "character_name": name or "Unknown",
            "asset_count": sum(1 for _ in _asset_members(archive)),
            "file_size": len(data),
        }


def _from_timestamp(value: Any) -> datetime | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # 毫秒时间戳
        seconds = value / 1000 if value > 10**11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    return None


def record_from_manifest(manifest: dict[str, Any]) -> tuple[CharacterRecord, list[LorebookEntry]]:
    """把导入的清单还原为角色记录与设定集；结构不合规时抛出 ManifestValidationError。"""
    data = manifest.get("data") if isinstance(manifest, dict) else None
    if not isinstance(data, dict):
        raise ManifestValidationError(["data: must be an object"])

    def _text(key: str) -> str:
        value = data.get(key)
        return value if isinstance(value, str) else ""

    def _texts(key: str) -> list[str]:
        value = data.get(key)
        return [item for item in value if isinstance(item, str)] if isinstance(value, list) else []

    raw_extensions = data.get("extensions") or {}
    try:
        extensions = CharacterExtensions.model_validate(raw_extensions)
    except ValidationError as exc:
        raise ManifestValidationError(_validation_messages(exc, "extensions")) from exc

    record = CharacterRecord(
        name=_text("name"),
        description=_text("description"),
        personality=_text("personality"),
        scenario=_text("scenario"),
        first_mes=_text("first_mes"),
        mes_example=_text("mes_example"),
        creator_notes=_text("creator_notes"),
        system_prompt=_text("system_prompt"),
        post_history_instructions=_text("post_history_instructions"),
        alternate_greetings=_texts("alternate_greetings"),
        group_only_greetings=_texts("group_only_greetings"),
        creation_date=_from_timestamp(data.get("creation_date")),
        modification_date=_from_timestamp(data.get("modification_date")),
        extensions=extensions,
    )
    book = data.get("character_book")
    if book is not None and not isinstance(book, dict):
        raise ManifestValidationError(["character_book: must be an object"])
    entries = (book or {}).get("entries") or []
    if not isinstance(entries, list):
        raise ManifestValidationError(["character_book.entries: must be a list"])
    lorebook: list[LorebookEntry] = []
    for raw in entries:
        if not isinstance(raw, dict):
            continue
        payload = {key: value for key, value in raw.items() if key != "id"}
        try:
            lorebook.append(LorebookEntry.model_validate(payload))
        except ValidationError as exc:
            logger.warning("skipping invalid lorebook entry on import: %s", exc.error_count())
    return record, lorebook
