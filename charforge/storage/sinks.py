"""导出落地：桌面目录保存或内存下载；CHARX 打包失败时退化为纯 JSON 卡片。"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, Sequence

from charforge.models import AssetRenameResult, UploadedAsset
from charforge.storage.charx import export_charx, safe_file_stem

logger = logging.getLogger(__name__)

CHARX_MEDIA_TYPE = "application/zip"
JSON_MEDIA_TYPE = "application/json"


class ArchiveSink(Protocol):
    def save(self, file_name: str, data: bytes, media_type: str) -> str: ...


def default_directories() -> list[Path]:
    home = Path.home()
    return [Path.cwd(), home / "Desktop", home / "Downloads"]


class DirectorySink:
    """写入第一个可写的候选目录。"""

    def __init__(self, directories: Sequence[Path] | None = None) -> None:
        self.directories = list(directories) if directories is not None else default_directories()

    def save(self, file_name: str, data: bytes, media_type: str) -> str:
        for directory in self.directories:
            if not directory.is_dir() or not os.access(directory, os.W_OK):
                continue
            target = directory / file_name
            try:
                target.write_bytes(data)
            except OSError as exc:
                logger.warning("could not write %s: %s", target, exc)
                continue
            logger.info("saved %s (%d bytes)", target, len(data))
            return str(target)
        raise OSError(f"no writable directory for {file_name}")


class DownloadSink:
    """把载荷留在内存中，由 HTTP 层作为附件返回。"""

    def __init__(self) -> None:
        self.file_name: str | None = None
        self.data: bytes = b""
        self.media_type: str = CHARX_MEDIA_TYPE

    def save(self, file_name: str, data: bytes, media_type: str) -> str:
        self.file_name = file_name
        self.data = data
        self.media_type = media_type
        return file_name


@dataclass
class ExportOutcome:
    file_name: str
    location: str
    size: int
    used_fallback: bool = False
    error: str | None = None


def export_card(
    sink: ArchiveSink,
    card: dict[str, Any],
    assets: Sequence[UploadedAsset] = (),
    asset_results: Sequence[AssetRenameResult] = (),
) -> ExportOutcome:
    """优先导出 CHARX；打包或写出失败时通过同一 sink 写出 <name>_fallback.json。"""
    try:
        result = export_charx(card, assets, asset_results)
        location = sink.save(result.file_name, result.data, CHARX_MEDIA_TYPE)
        return ExportOutcome(file_name=result.file_name, location=location, size=result.file_size)
    except Exception as exc:
        logger.warning("CHARX export failed, writing JSON fallback: %s", exc)
        error = str(exc) or type(exc).__name__

    name = str(card.get("data", {}).get("name") or "")
    file_name = f"{safe_file_stem(name)}_fallback.json"
    payload = json.dumps(card, ensure_ascii=False, indent=2).encode("utf-8")
    location = sink.save(file_name, payload, JSON_MEDIA_TYPE)
    return ExportOutcome(
        file_name=file_name,
        location=location,
        size=len(payload),
        used_fallback=True,
        error=error,
    )
