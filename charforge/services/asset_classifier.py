"""上传资产的分类与重命名：优先调用 LLM，任何失败都退化为关键词规则。"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from typing import Any, Iterable, Mapping, Sequence

from pydantic import ValidationError

from charforge.config import (
    ASSET_CLASSIFY_CONCURRENCY,
    HIGH_CONFIDENCE_BAND,
    LOW_CONFIDENCE_BAND,
    LOW_CONFIDENCE_THRESHOLD,
)
from charforge.constants import (
    ADULT_KEYWORDS,
    CATEGORY_PREFIXES,
    EMOTION_KEYWORDS,
    FALLBACK_CONFIDENCE,
    PROFILE_KEYWORDS,
)
from charforge.errors import GatewayError, ParseError
from charforge.llm import prompts
from charforge.llm.extraction import extract_json_object
from charforge.llm.gateway import ProviderGateway
from charforge.llm.prompts.stages import build_asset_prompt
from charforge.models import (
    AssetCategory,
    AssetRenameResult,
    RenameSummary,
    UploadedAsset,
    ensure_extension,
    split_extension,
    strip_extension,
)

logger = logging.getLogger(__name__)

AssetLike = UploadedAsset | str


def _file_name(asset: AssetLike) -> str:
    return asset if isinstance(asset, str) else asset.file_name


def _fallback_category(stem: str) -> AssetCategory:
    lowered = stem.lower()
    # 后检查的类别覆盖先前命中：profile > adult > emotion
    category = AssetCategory.ETC
    if any(word in lowered for word in EMOTION_KEYWORDS):
        category = AssetCategory.EMOTION
    if any(word in lowered for word in ADULT_KEYWORDS):
        category = AssetCategory.ADULT
    if any(word in lowered for word in PROFILE_KEYWORDS):
        category = AssetCategory.PROFILE
    return category


def fallback_result(file_name: str, note: str = "") -> AssetRenameResult:
    """确定性的关键词分类，置信度固定为低值。"""
    stem, ext = split_extension(file_name)
    category = _fallback_category(stem)
    suggested = file_name
    if category is not AssetCategory.ETC:
        suggested = f"{CATEGORY_PREFIXES[category.value]}-{stem}{ext}"
    reasoning = "Fallback keyword classification"
    if note:
        reasoning = f"{reasoning} ({note[:100]})"
    return AssetRenameResult(
        original_file_name=file_name,
        suggested_file_name=suggested,
        category=category,
        confidence=FALLBACK_CONFIDENCE,
        reasoning=reasoning,
        extracted_keyword=stem,
    )


def parse_classification(data: Mapping[str, Any], file_name: str) -> AssetRenameResult:
    stem = strip_extension(file_name)
    suggested = str(data.get("suggestedFileName") or "").strip() or stem
    return AssetRenameResult(
        original_file_name=file_name,
        suggested_file_name=ensure_extension(suggested, file_name),
        category=data.get("category") or AssetCategory.ETC,
        confidence=data.get("confidence", 0),
        reasoning=str(data.get("reasoning") or ""),
        extracted_keyword=str(data.get("extractedKeyword") or ""),
    )


class AssetClassifier:
    """单文件分类器；gateway 为 None 时直接走关键词规则。"""

    def __init__(
        self,
        gateway: ProviderGateway | None = None,
        *,
        concurrency: int = ASSET_CLASSIFY_CONCURRENCY,
    ) -> None:
        if concurrency <= 0:
            raise ValueError("concurrency must be > 0")
        self._gateway = gateway
        self._concurrency = concurrency

    async def classify(
        self,
        asset: AssetLike,
        *,
        character_name: str | None = None,
        character_context: str | None = None,
    ) -> AssetRenameResult:
        file_name = _file_name(asset)
        if self._gateway is None:
            return fallback_result(file_name, "AI classification disabled")
        prompt = build_asset_prompt(strip_extension(file_name), character_name, character_context)
        try:
            result = await self._gateway.generate(prompt, prompts.ASSET_SYSTEM_PROMPT)
            return parse_classification(extract_json_object(result.text), file_name)
        except (GatewayError, ParseError, ValidationError) as exc:
            logger.warning(
                "asset classification fell back to keywords",
                extra={"payload": {"file": file_name, "error": type(exc).__name__}},
            )
            return fallback_result(file_name, str(exc))

    async def classify_assets(
        self,
        assets: Sequence[AssetLike],
        *,
        character_name: str | None = None,
        character_context: str | None = None,
    ) -> list[AssetRenameResult]:
        """批量分类；结果顺序与输入一致。"""
        semaphore = asyncio.Semaphore(self._concurrency)

        async def _one(asset: AssetLike) -> AssetRenameResult:
            async with semaphore:
                return await self.classify(
                    asset,
                    character_name=character_name,
                    character_context=character_context,
                )

        return list(await asyncio.gather(*(_one(asset) for asset in assets)))


def summarize_renames(results: Iterable[AssetRenameResult]) -> RenameSummary:
    items = list(results)
    categories = Counter(result.category.value for result in items)
    token_counts = Counter(result.asset_token for result in items)
    duplicates: list[str] = []
    for result in items:
        token = result.asset_token
        if token_counts[token] > 1 and token not in duplicates:
            duplicates.append(token)
    return RenameSummary(
        total_files=len(items),
        renamed_files=sum(1 for result in items if result.renamed),
        categories=dict(categories),
        low_confidence_files=[r for r in items if r.confidence < LOW_CONFIDENCE_THRESHOLD],
        duplicate_names=duplicates,
        high_confidence_count=sum(1 for r in items if r.confidence >= HIGH_CONFIDENCE_BAND),
        low_confidence_count=sum(1 for r in items if r.confidence < LOW_CONFIDENCE_BAND),
    )
