"""原文件名 -> 重命名信息的登记表，供卡片元数据、CHARX 映射和批量下载使用。"""

from __future__ import annotations

import io
import logging
import zipfile
from dataclasses import dataclass
from typing import Literal, Sequence

from charforge.config import HIGH_CONFIDENCE_BAND, LOW_CONFIDENCE_BAND
from charforge.models import AssetRenameResult, RenamedAssetExport, UploadedAsset

logger = logging.getLogger(__name__)

ConfidenceLevel = Literal["high", "medium", "low"]


@dataclass(frozen=True)
class RenamedFileInfo:
    original: UploadedAsset
    new_file_name: str
    category: str
    confidence: float

    @property
    def confidence_level(self) -> ConfidenceLevel:
        if self.confidence >= HIGH_CONFIDENCE_BAND:
            return "high"
        if self.confidence < LOW_CONFIDENCE_BAND:
            return "low"
        return "medium"


class FileRenameRegistry:
    def __init__(self) -> None:
        self._files: dict[str, RenamedFileInfo] = {}

    def register(
        self, assets: Sequence[UploadedAsset], results: Sequence[AssetRenameResult]
    ) -> None:
        """按原文件名配对；没有对应结果的文件不登记。"""
        self._files.clear()
        by_name = {result.original_file_name: result for result in results}
        for asset in assets:
            result = by_name.get(asset.file_name)
            if result is None:
                logger.debug("no rename result for %s", asset.file_name)
                continue
            self._files[asset.file_name] = RenamedFileInfo(
                original=asset,
                new_file_name=result.suggested_file_name,
                category=result.category.value,
                confidence=result.confidence,
            )

    def get(self, original_file_name: str) -> RenamedFileInfo | None:
        return self._files.get(original_file_name)

    def all(self) -> list[RenamedFileInfo]:
        return list(self._files.values())

    def clear(self) -> None:
        self._files.clear()

    def __len__(self) -> int:
        return len(self._files)

    def export_for_character_card(self) -> list[RenamedAssetExport]:
        return [
            RenamedAssetExport(
                original_name=info.original.file_name,
                risu_name=info.new_file_name,
                category=info.category,
                confidence=info.confidence,
            )
            for info in self._files.values()
        ]

    def charx_mapping(self) -> dict[str, str]:
        return {name: info.new_file_name for name, info in self._files.items()}

    def renamed_files(self) -> list[UploadedAsset]:
        return [
            UploadedAsset(
                file_name=info.new_file_name,
                content=info.original.content,
                media_type=info.original.media_type,
            )
            for info in self._files.values()
        ]

    def renamed_zip(self) -> bytes:
        """把重命名后的文件打成一个 zip，供一次性下载。"""
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for asset in self.renamed_files():
                archive.writestr(asset.file_name, asset.content)
        return buffer.getvalue()

    def preview(self) -> list[dict[str, object]]:
        return [
            {
                "original": info.original.file_name,
                "renamed": info.new_file_name,
                "category": info.category,
                "confidence": info.confidence,
                "confidence_level": info.confidence_level,
            }
            for info in self._files.values()
        ]
