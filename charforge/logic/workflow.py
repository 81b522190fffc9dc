"""五阶段角色卡流程编排：会话独占角色、设定集与资产结果，所有修改都经由这里。"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, List, Literal, Mapping, Protocol, Sequence

from charforge.constants import MANUAL_CONFIDENCE, MANUAL_REASONING
from charforge.errors import ParseError, PreconditionError
from charforge.llm import prompts
from charforge.llm.extraction import extract_json_object, extract_lorebook
from charforge.llm.prompts import render_template
from charforge.llm.prompts.stages import (
    build_character_prompt,
    build_lorebook_prompt,
    build_modification_prompt,
    character_template_variables,
    lorebook_template_variables,
    modification_template_variables,
)
from charforge.logic.stages import StageMachine
from charforge.models import (
    MODIFIABLE_FIELDS,
    AssetCategory,
    AssetRenameResult,
    AssetSummary,
    CharacterBrief,
    CharacterRecord,
    DynamicAssetsDescriptor,
    FinalizedCharacter,
    GenerationResult,
    LorebookEntry,
    ModificationRequest,
    Stage3Summary,
    StageStatus,
    UploadedAsset,
    VendorExtension,
    WorkflowMetadata,
    WorkflowStage,
    ensure_extension,
    strip_extension,
    utc_now,
)
from charforge.services.asset_classifier import AssetClassifier
from charforge.services.rename_registry import FileRenameRegistry

logger = logging.getLogger(__name__)

ManualNames = Mapping[str, Mapping[str, str]]
ModificationMode = Literal["manual", "assisted"]

_CONTEXT_LIMIT = 500
_CATEGORY_ORDER = (
    AssetCategory.EMOTION,
    AssetCategory.ADULT,
    AssetCategory.PROFILE,
    AssetCategory.ETC,
)
_INSTRUCTION_SECTIONS = {
    AssetCategory.EMOTION: ("Emotions", "Available emotions", ""),
    AssetCategory.ADULT: ("Adult content", "Adult images", " (only in appropriate situations)"),
    AssetCategory.PROFILE: ("Profile images", "Profile images", ""),
    AssetCategory.ETC: ("Other situations", "Situational images", ""),
}


class TextGenerator(Protocol):
    async def generate(self, prompt: str, system_prompt: str | None = None) -> GenerationResult: ...


def build_asset_instructions(character_name: str, tokens: Mapping[AssetCategory, List[str]]) -> str:
    """生成 post_history_instructions：按类别列出可用资产名与嵌入示例。"""
    lines = [
        f"# {character_name or 'Character'} dynamic asset system",
        "",
        "## Displaying images",
        'Use <img src="asset-name"> to display an image.',
        "",
    ]
    for category in _CATEGORY_ORDER:
        names = tokens.get(category) or []
        if not names:
            continue
        heading, label, note = _INSTRUCTION_SECTIONS[category]
        lines += [
            f"## {heading}",
            f"{label}: {', '.join(names)}",
            f'Example: <img src="{names[0]}">{note}',
            "",
        ]
    lines += [
        "## Rules",
        "1. Pick the image that fits the current situation in the conversation",
        "2. Switch to the matching emotion image when the mood changes",
        "3. Use adult content only in an appropriate context",
        "4. Use only the asset name; file extensions are resolved automatically",
    ]
    return "\n".join(lines) + "\n"


class FiveStageWorkflow:
    """单个生成会话；阶段调用由调用方驱动，不自动推进。"""

    def __init__(
        self,
        generator: TextGenerator | None = None,
        *,
        classifier: AssetClassifier | None = None,
    ) -> None:
        self._generator = generator
        self._classifier = classifier
        self._machine = StageMachine()
        self._character = CharacterRecord()
        self._lorebook: list[LorebookEntry] = []
        self._asset_results: list[AssetRenameResult] = []
        self._assets: list[UploadedAsset] = []
        self._history: list[ModificationRequest] = []
        self._registry = FileRenameRegistry()
        self._finalized: FinalizedCharacter | None = None

    # ---- accessors: 返回副本，外部只读 ----

    def stages(self) -> list[WorkflowStage]:
        return self._machine.stages()

    def stage(self, stage_id: int) -> WorkflowStage:
        return self._machine.get(stage_id)

    @property
    def character(self) -> CharacterRecord:
        return self._character.model_copy(deep=True)

    @property
    def lorebook(self) -> list[LorebookEntry]:
        return [entry.model_copy(deep=True) for entry in self._lorebook]

    @property
    def asset_results(self) -> list[AssetRenameResult]:
        return list(self._asset_results)

    @property
    def assets(self) -> list[UploadedAsset]:
        return list(self._assets)

    @property
    def modification_history(self) -> list[ModificationRequest]:
        return [request.model_copy(deep=True) for request in self._history]

    @property
    def finalized(self) -> FinalizedCharacter | None:
        """最近一次阶段 5 的快照；此后任何状态修改都会使其失效。"""
        return self._finalized

    def renamed_assets_zip(self) -> bytes:
        return self._registry.renamed_zip()

    # ---- helpers ----

    def _require_generator(self, stage_id: int) -> TextGenerator:
        if self._generator is None:
            raise PreconditionError(
                f"Stage {stage_id} requires a configured text provider",
                stage=stage_id,
                field="provider_config",
            )
        return self._generator

    def _require_identity(self, stage_id: int) -> None:
        for field in ("name", "description"):
            if not getattr(self._character, field).strip():
                raise PreconditionError(
                    f"Stage {stage_id} requires stage 1 to produce a character {field}",
                    stage=stage_id,
                    field=field,
                )

    # ---- stage 1 ----

    async def execute_stage1(
        self, brief: CharacterBrief, custom_prompt: str | None = None
    ) -> CharacterRecord:
        if not brief.brief.strip():
            raise PreconditionError("Stage 1 requires a non-empty brief", stage=1, field="brief")
        generator = self._require_generator(1)
        if custom_prompt:
            prompt = render_template(custom_prompt, character_template_variables(brief))
        else:
            prompt = build_character_prompt(brief)

        token = self._machine.begin(1)
        logger.info(
            "stage 1 started",
            extra={"payload": {"format": brief.output_format, "detail": brief.detail_level}},
        )
        try:
            result = await generator.generate(prompt, prompts.CHARACTER_SYSTEM_PROMPT)
            data = extract_json_object(result.text)
            record = self._character_from_output(data, brief)
            self._machine.ensure_current(1, token)
        except Exception as exc:
            self._machine.fail(1, token, str(exc))
            logger.error("stage 1 failed: %s", exc)
            raise

        self._character = record
        self._finalized = None
        self._machine.complete(1, token, record.model_dump(mode="json", exclude={"extensions"}))
        logger.info("stage 1 completed for %s", record.name)
        return record.model_copy(deep=True)

    def _character_from_output(self, data: Mapping[str, Any], brief: CharacterBrief) -> CharacterRecord:
        def _text(key: str) -> str:
            value = data.get(key)
            return value.strip() if isinstance(value, str) else ""

        name = _text("name") or (brief.name or "").strip()
        description = _text("description")
        if not name or not description:
            missing = "name" if not name else "description"
            raise ParseError(f"stage 1 output is missing {missing}", raw_text=str(data))

        previous = self._character
        now = utc_now()
        if previous.modification_date is not None and now < previous.modification_date:
            now = previous.modification_date
        # 阶段 3 可能先于阶段 1 运行，保留其写入的扩展与说明
        return CharacterRecord(
            name=name,
            description=description,
            first_mes=_text("first_mes"),
            mes_example=_text("mes_example"),
            post_history_instructions=previous.post_history_instructions,
            creation_date=now,
            modification_date=now,
            extensions=previous.extensions.model_copy(deep=True),
        )

    # ---- stage 2 ----

    async def execute_stage2(
        self, requirements: str | None = None, custom_prompt: str | None = None
    ) -> list[LorebookEntry]:
        self._require_identity(2)
        generator = self._require_generator(2)
        if custom_prompt:
            prompt = render_template(
                custom_prompt, lorebook_template_variables(self._character, requirements)
            )
        else:
            prompt = build_lorebook_prompt(self._character, requirements)

        token = self._machine.begin(2)
        logger.info(
            "stage 2 started",
            extra={
                "payload": {
                    "character": self._character.name,
                    "has_requirements": bool(requirements and requirements.strip()),
                    "has_custom_prompt": bool(custom_prompt),
                }
            },
        )
        try:
            result = await generator.generate(prompt, prompts.LOREBOOK_SYSTEM_PROMPT)
            entries = extract_lorebook(result.text)
            self._machine.ensure_current(2, token)
        except Exception as exc:
            self._machine.fail(2, token, str(exc))
            logger.error("stage 2 failed: %s", exc)
            raise

        self._lorebook = entries
        self._finalized = None
        self._machine.complete(2, token, {"lorebook_entries": len(entries)})
        logger.info("stage 2 completed with %d entries", len(entries))
        return self.lorebook

    def update_lorebook_entry(self, index: int, entry: LorebookEntry) -> None:
        if not 0 <= index < len(self._lorebook):
            raise PreconditionError(f"lorebook entry {index} does not exist", stage=2, field="lorebook")
        self._lorebook[index] = entry.model_copy(deep=True)
        self._finalized = None

    def delete_lorebook_entry(self, index: int) -> LorebookEntry:
        if not 0 <= index < len(self._lorebook):
            raise PreconditionError(f"lorebook entry {index} does not exist", stage=2, field="lorebook")
        self._finalized = None
        return self._lorebook.pop(index)

    # ---- stage 3 ----

    async def execute_stage3(
        self,
        assets: Sequence[UploadedAsset],
        manual_names: ManualNames | None = None,
        *,
        use_ai: bool = False,
    ) -> Stage3Summary:
        if use_ai and self._classifier is None:
            raise PreconditionError(
                "AI asset classification requires a classifier", stage=3, field="classifier"
            )
        token = self._machine.begin(3)
        try:
            results = await self._classify(assets, manual_names or {}, use_ai=use_ai)
            self._machine.ensure_current(3, token)
        except Exception as exc:
            self._machine.fail(3, token, str(exc))
            logger.error("stage 3 failed: %s", exc)
            raise

        self._assets = list(assets)
        self._asset_results = results
        self._registry.register(self._assets, results)
        self._integrate_dynamic_assets()
        summary = self._stage3_summary()
        self._machine.complete(3, token, summary.model_dump(mode="json"))
        logger.info(
            "stage 3 completed",
            extra={"payload": {"total": summary.total_assets, "renamed": summary.renamed_assets}},
        )
        return summary

    async def _classify(
        self, assets: Sequence[UploadedAsset], manual_names: ManualNames, *, use_ai: bool
    ) -> list[AssetRenameResult]:
        manual: dict[str, tuple[str, str]] = {}
        for category, mapping in manual_names.items():
            for original, new_name in mapping.items():
                manual[original] = (category, new_name)

        results: list[AssetRenameResult | None] = [None] * len(assets)
        pending: list[tuple[int, UploadedAsset]] = []
        for index, asset in enumerate(assets):
            if asset.file_name in manual:
                category, new_name = manual[asset.file_name]
                results[index] = _manual_result(asset.file_name, new_name, category)
            else:
                pending.append((index, asset))

        if pending and use_ai and self._classifier is not None:
            classified = await self._classifier.classify_assets(
                [asset for _, asset in pending],
                character_name=self._character.name or None,
                character_context=self._character.description[:_CONTEXT_LIMIT] or None,
            )
            for (index, _), result in zip(pending, classified):
                results[index] = result
        else:
            for index, asset in pending:
                results[index] = AssetRenameResult(
                    original_file_name=asset.file_name,
                    suggested_file_name=asset.file_name,
                    category=AssetCategory.ETC,
                    confidence=MANUAL_CONFIDENCE,
                    reasoning="original file name preserved",
                    extracted_keyword=strip_extension(asset.file_name),
                )
        return [result for result in results if result is not None]

    def override_asset(
        self, original_file_name: str, new_name: str, category: AssetCategory | str | None = None
    ) -> AssetRenameResult:
        """手动覆盖单个资产结果，并重新生成动态资产块。"""
        for index, result in enumerate(self._asset_results):
            if result.original_file_name == original_file_name:
                updated = result.manual_override(new_name, category)
                self._asset_results[index] = updated
                self._registry.register(self._assets, self._asset_results)
                self._integrate_dynamic_assets()
                return updated
        raise PreconditionError(
            f"asset {original_file_name} was not processed in stage 3", stage=3, field="assets"
        )

    def _asset_tokens(self) -> dict[AssetCategory, List[str]]:
        tokens: dict[AssetCategory, List[str]] = {category: [] for category in _CATEGORY_ORDER}
        for result in self._asset_results:
            tokens[result.category].append(result.asset_token)
        return tokens

    def _integrate_dynamic_assets(self) -> None:
        tokens = self._asset_tokens()
        descriptor = DynamicAssetsDescriptor(
            enabled=True,
            asset_list=[token for category in _CATEGORY_ORDER for token in tokens[category]],
            emotion_assets=tokens[AssetCategory.EMOTION],
            adult_assets=tokens[AssetCategory.ADULT],
            profile_assets=tokens[AssetCategory.PROFILE],
            etc_assets=tokens[AssetCategory.ETC],
        )
        extensions = self._character.extensions
        if extensions.risuai is None:
            extensions.risuai = VendorExtension(dynamic_assets=descriptor)
        else:
            extensions.risuai = extensions.risuai.model_copy(update={"dynamic_assets": descriptor})
        self._character.post_history_instructions = build_asset_instructions(
            self._character.name, tokens
        )
        self._character.touch()
        self._finalized = None

    def _stage3_summary(self) -> Stage3Summary:
        categories = Counter(result.category.value for result in self._asset_results)
        seen: Counter[str] = Counter(result.asset_token for result in self._asset_results)
        warnings = [f"duplicate asset name: {token}" for token, count in seen.items() if count > 1]
        return Stage3Summary(
            total_assets=len(self._asset_results),
            renamed_assets=sum(1 for result in self._asset_results if result.renamed),
            categories=dict(categories),
            warnings=warnings,
        )

    # ---- stage 4 ----

    async def apply_modification(
        self,
        request: ModificationRequest,
        *,
        mode: ModificationMode = "assisted",
        custom_prompt: str | None = None,
    ) -> CharacterRecord:
        self._require_identity(4)
        if request.field not in MODIFIABLE_FIELDS:
            raise PreconditionError(
                f"Unknown character field: {request.field}", stage=4, field=request.field
            )
        previous_value = getattr(self._character, request.field)
        if not request.current_value:
            request = request.model_copy(update={"current_value": previous_value})
        generator = self._require_generator(4) if mode == "assisted" else None

        token = self._machine.begin(4)
        try:
            if generator is None:
                new_value = request.requested_change
            else:
                new_value = await self._assisted_value(generator, request, custom_prompt)
            self._machine.ensure_current(4, token)
        except Exception as exc:
            self._machine.fail(4, token, str(exc))
            logger.error("modification of %s failed: %s", request.field, exc)
            raise

        setattr(self._character, request.field, new_value)
        self._character.touch()
        self._history.append(request)
        self._finalized = None
        self._machine.complete(
            4,
            token,
            {"modifications_applied": len(self._history), "latest_modification": request.field},
        )
        logger.info("applied %s modification to %s", mode, request.field)
        return self.character

    async def _assisted_value(
        self, generator: TextGenerator, request: ModificationRequest, custom_prompt: str | None
    ) -> str:
        if custom_prompt:
            prompt = render_template(
                custom_prompt, modification_template_variables(request, self._character)
            )
        else:
            prompt = build_modification_prompt(request, self._character)
        result = await generator.generate(prompt, prompts.MODIFICATION_SYSTEM_PROMPT)
        try:
            data = extract_json_object(result.text)
        except ParseError:
            logger.warning("modification response unparsable, using requested change verbatim")
            return request.requested_change
        value = data.get("modifiedValue")
        if isinstance(value, str) and value.strip():
            return value
        logger.warning("modification response has no modifiedValue, using requested change")
        return request.requested_change

    # ---- stage 5 ----

    def finalize(self) -> FinalizedCharacter:
        token = self._machine.begin(5)
        categories = Counter(result.category.value for result in self._asset_results)
        summary = AssetSummary(
            total_assets=len(self._asset_results),
            renamed_assets=sum(1 for result in self._asset_results if result.renamed),
            categories=dict(categories),
        )
        renamed = self._registry.export_for_character_card()
        snapshot = self._character.model_copy(deep=True)
        generated_at = snapshot.touch()
        snapshot.extensions.five_stage_workflow = WorkflowMetadata(
            generated_at=int(generated_at.timestamp()),
            modification_history=self.modification_history,
            lorebook=self.lorebook,
            asset_summary=summary,
            renamed_assets=renamed,
        )
        finalized = FinalizedCharacter(
            character=snapshot,
            lorebook=self.lorebook,
            asset_results=self.asset_results,
            modification_history=self.modification_history,
            asset_summary=summary,
            renamed_assets=renamed,
            generated_at=generated_at,
        )
        self._finalized = finalized
        self._machine.complete(
            5,
            token,
            {"character": snapshot.name, "lorebook_entries": len(self._lorebook), "assets": summary.total_assets},
        )
        return finalized

    # ---- run-all ----

    async def execute_workflow(
        self,
        brief: CharacterBrief,
        assets: Sequence[UploadedAsset] | None = None,
        manual_names: ManualNames | None = None,
        *,
        requirements: str | None = None,
        use_ai: bool = False,
    ) -> FinalizedCharacter:
        await self.execute_stage1(brief)
        await self.execute_stage2(requirements)
        if assets:
            await self.execute_stage3(assets, manual_names, use_ai=use_ai)
        else:
            self._mark_done(3, {"message": "No assets provided - skipped"})
        if self._machine.status(4) is not StageStatus.COMPLETED:
            self._mark_done(4, {"message": "Ready for modification requests"})
        return self.finalize()

    def _mark_done(self, stage_id: int, result: Mapping[str, Any]) -> None:
        token = self._machine.begin(stage_id)
        self._machine.complete(stage_id, token, dict(result))


def _manual_result(original: str, new_name: str, category: str) -> AssetRenameResult:
    chosen = new_name.strip() if new_name and new_name.strip() else original
    suggested = ensure_extension(chosen, original)
    return AssetRenameResult(
        original_file_name=original,
        suggested_file_name=suggested,
        category=category,
        confidence=MANUAL_CONFIDENCE,
        reasoning=MANUAL_REASONING,
        extracted_keyword=strip_extension(suggested) or original,
    )
