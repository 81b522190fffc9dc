"""核心领域模型定义：角色卡、设定集、资产重命名结果与流程阶段。"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from charforge.config import (
    CHARFORGE_API_KEY,
    CHARFORGE_ENDPOINT,
    CHARFORGE_MODEL,
    CHARFORGE_PROVIDER,
    LLM_MAX_TOKENS,
    LLM_TEMPERATURE,
    LLM_TIMEOUT_SECONDS,
)
from charforge.constants import (
    DEFAULT_ENDPOINTS,
    DEFAULT_MODELS,
    LOCAL_PROVIDERS,
    MANUAL_CONFIDENCE,
    MANUAL_REASONING,
    MEDIA_EXTENSIONS,
    WORKFLOW_VERSION,
)
from charforge.logic.banding import determine_insertion_order

ProviderKind = Literal["gemini", "claude", "openai", "custom-openai", "ollama", "lm-studio"]
OutputFormat = Literal["narrative", "sheet", "narrative+sheet"]
DetailLevel = Literal["simple", "normal", "detailed"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def split_extension(file_name: str) -> tuple[str, str]:
    """拆分文件名为 (主干, 扩展名)，扩展名含前导点；无扩展名时返回空串。"""
    suffix = PurePosixPath(file_name).suffix
    if not suffix or suffix == file_name:
        return file_name, ""
    return file_name[: -len(suffix)], suffix


def strip_extension(file_name: str) -> str:
    return split_extension(file_name)[0]


_KNOWN_EXTENSIONS = frozenset(ext for _, exts in MEDIA_EXTENSIONS for ext in exts)


def base_name(file_name: str) -> str:
    """去掉目录部分，只保留最后一段文件名；"." 与 ".." 视为空。"""
    name = PurePosixPath(file_name.replace("\\", "/")).name
    return "" if name in (".", "..") else name


def ensure_extension(file_name: str, original_file_name: str) -> str:
    """保证重命名结果沿用原文件扩展名，且不含目录部分。"""
    _, original_ext = split_extension(original_file_name)
    file_name = base_name(file_name.strip()) or strip_extension(base_name(original_file_name)) or "asset"
    stem, ext = split_extension(file_name)
    if ext.lower() == original_ext.lower():
        return f"{stem}{original_ext}"
    if ext and ext[1:].lower() in _KNOWN_EXTENSIONS:
        return f"{stem}{original_ext}"
    return f"{file_name}{original_ext}"


class ProviderConfig(BaseModel):
    """单个文本生成后端的连接配置。"""

    provider: ProviderKind
    api_key: Optional[str] = None
    endpoint: Optional[str] = None
    model: Optional[str] = None
    max_tokens: int = Field(default=LLM_MAX_TOKENS, ge=1)
    temperature: float = Field(default=LLM_TEMPERATURE, ge=0, le=2)
    timeout: float = Field(default=LLM_TIMEOUT_SECONDS, gt=0)

    @model_validator(mode="after")
    def ensure_credentials(self) -> "ProviderConfig":
        if self.provider not in LOCAL_PROVIDERS and not (self.api_key or "").strip():
            raise ValueError(f"api_key is required for provider {self.provider}")
        if self.provider == "custom-openai" and not (self.endpoint or "").strip():
            raise ValueError("endpoint is required for provider custom-openai")
        return self

    @property
    def is_local(self) -> bool:
        return self.provider in LOCAL_PROVIDERS

    def resolved_model(self) -> str:
        return self.model or DEFAULT_MODELS[self.provider]

    def resolved_endpoint(self) -> str:
        endpoint = self.endpoint or DEFAULT_ENDPOINTS.get(self.provider)
        if not endpoint:
            raise ValueError(f"no endpoint configured for provider {self.provider}")
        return endpoint

    @classmethod
    def from_env(cls) -> "ProviderConfig":
        return cls(
            provider=CHARFORGE_PROVIDER,
            api_key=CHARFORGE_API_KEY,
            endpoint=CHARFORGE_ENDPOINT,
            model=CHARFORGE_MODEL,
        )


class TokenUsage(BaseModel):
    prompt: int = 0
    completion: int = 0
    total: int = 0


class GenerationResult(BaseModel):
    text: str
    token_usage: Optional[TokenUsage] = None


class AssetCategory(str, Enum):
    PROFILE = "profile"
    EMOTION = "emotion"
    ADULT = "adult"
    ETC = "etc"


class StageStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class DynamicAssetsDescriptor(BaseModel):
    """供应商命名空间下的动态资产描述块。"""

    model_config = ConfigDict(populate_by_name=True)

    enabled: bool = True
    asset_list: List[str] = Field(default_factory=list, alias="assetList")
    emotion_assets: List[str] = Field(default_factory=list, alias="emotionAssets")
    adult_assets: List[str] = Field(default_factory=list, alias="adultAssets")
    profile_assets: List[str] = Field(default_factory=list, alias="profileAssets")
    etc_assets: List[str] = Field(default_factory=list, alias="etcAssets")


class VendorExtension(BaseModel):
    """risuai 扩展块：已知字段强类型，其余字段原样透传。"""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    dynamic_assets: Optional[DynamicAssetsDescriptor] = Field(default=None, alias="dynamicAssets")


class RenamedAssetExport(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    original_name: str = Field(alias="originalName")
    risu_name: str = Field(alias="risuName")
    category: AssetCategory
    confidence: float


class AssetSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_assets: int = Field(default=0, alias="totalAssets")
    renamed_assets: int = Field(default=0, alias="renamedAssets")
    categories: Dict[str, int] = Field(default_factory=dict)


class ModificationRequest(BaseModel):
    """对已生成角色字段的一次修改请求；成功应用后进入审计日志。"""

    model_config = ConfigDict(populate_by_name=True)

    stage: int = 4
    field: str = Field(..., min_length=1)
    current_value: str = Field(default="", alias="currentValue")
    requested_change: str = Field(..., alias="requestedChange")
    reason: str = ""


class LorebookEntry(BaseModel):
    """设定集条目。insertion_order 越小越优先。"""

    keys: List[str] = Field(..., min_length=1)
    content: str
    name: str = ""
    comment: str = ""
    enabled: bool = True
    insertion_order: int
    constant: bool = False
    selective: bool = False
    case_sensitive: bool = False
    use_regex: bool = False
    extensions: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def normalize_llm_payload(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        payload = dict(data)
        if "display_name" in payload and "name" not in payload:
            payload["name"] = payload.pop("display_name")
        name = str(payload.get("name") or "").strip()
        content = str(payload.get("content") or "")

        keys = payload.get("keys")
        if isinstance(keys, str):
            keys = [part.strip() for part in keys.split(",")]
        if not isinstance(keys, list):
            keys = []
        unique: list[str] = []
        for key in keys:
            text = str(key).strip()
            if text and text not in unique:
                unique.append(text)
        if not unique and name:
            unique = [name]
        payload["keys"] = unique
        if not name and unique:
            payload["name"] = unique[0]

        order = payload.get("insertion_order")
        if isinstance(order, bool) or not _is_int_like(order):
            payload["insertion_order"] = determine_insertion_order(payload.get("name") or "", content)
        else:
            payload["insertion_order"] = int(float(str(order).strip()))
        if payload.get("extensions") is None:
            payload["extensions"] = {}
        return payload


def _is_int_like(value: Any) -> bool:
    if isinstance(value, int):
        return True
    if isinstance(value, float):
        return value.is_integer()
    if isinstance(value, str):
        try:
            return float(value.strip()).is_integer()
        except ValueError:
            return False
    return False


class WorkflowMetadata(BaseModel):
    """五阶段流程元数据扩展块，随最终导出写入 extensions。"""

    model_config = ConfigDict(populate_by_name=True)

    version: str = WORKFLOW_VERSION
    generated_at: Optional[int] = Field(default=None, alias="generatedAt")
    modification_history: List[ModificationRequest] = Field(
        default_factory=list, alias="modificationHistory"
    )
    lorebook: List[LorebookEntry] = Field(default_factory=list)
    asset_summary: AssetSummary = Field(default_factory=AssetSummary, alias="assetSummary")
    renamed_assets: List[RenamedAssetExport] = Field(default_factory=list, alias="renamedAssets")


class CharacterExtensions(BaseModel):
    """extensions 映射：已知块强类型，未知供应商键原样透传。"""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    risuai: Optional[VendorExtension] = None
    five_stage_workflow: Optional[WorkflowMetadata] = Field(default=None, alias="fiveStageWorkflow")

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class CharacterRecord(BaseModel):
    """流程会话独占的角色累积器。"""

    name: str = ""
    description: str = ""
    personality: str = ""
    scenario: str = ""
    first_mes: str = ""
    mes_example: str = ""
    creator_notes: str = ""
    system_prompt: str = ""
    post_history_instructions: str = ""
    alternate_greetings: List[str] = Field(default_factory=list)
    group_only_greetings: List[str] = Field(default_factory=list)
    creation_date: Optional[datetime] = None
    modification_date: Optional[datetime] = None
    extensions: CharacterExtensions = Field(default_factory=CharacterExtensions)

    def touch(self, now: datetime | None = None) -> datetime:
        """推进 modification_date，保证单调不减。"""
        stamp = now or utc_now()
        if self.modification_date is not None and stamp < self.modification_date:
            stamp = self.modification_date
        self.modification_date = stamp
        return stamp


# 允许修改请求指向的标量字段
MODIFIABLE_FIELDS = frozenset(
    {
        "name",
        "description",
        "personality",
        "scenario",
        "first_mes",
        "mes_example",
        "creator_notes",
        "system_prompt",
        "post_history_instructions",
    }
)


class AssetRenameResult(BaseModel):
    """单个上传文件的分类与重命名结果（不可变）。"""

    model_config = ConfigDict(frozen=True)

    original_file_name: str = Field(..., min_length=1)
    suggested_file_name: str = Field(..., min_length=1)
    category: AssetCategory = AssetCategory.ETC
    confidence: float = 0
    reasoning: str = ""
    extracted_keyword: str = ""

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, value: Any) -> float:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 0.0
        if number != number:  # NaN
            return 0.0
        return min(max(number, 0.0), 100.0)

    @field_validator("category", mode="before")
    @classmethod
    def coerce_category(cls, value: Any) -> Any:
        if isinstance(value, AssetCategory):
            return value
        text = str(value or "").strip().lower()
        if text in {item.value for item in AssetCategory}:
            return text
        return AssetCategory.ETC

    @model_validator(mode="after")
    def ensure_extension_kept(self) -> "AssetRenameResult":
        _, original_ext = split_extension(self.original_file_name)
        _, suggested_ext = split_extension(self.suggested_file_name)
        if original_ext.lower() != suggested_ext.lower():
            raise ValueError(
                f"suggested_file_name {self.suggested_file_name!r} must keep extension "
                f"{original_ext!r}"
            )
        return self

    @property
    def asset_token(self) -> str:
        token = strip_extension(self.suggested_file_name).strip()
        return token or strip_extension(self.original_file_name).strip() or self.original_file_name

    @property
    def renamed(self) -> bool:
        return self.suggested_file_name != self.original_file_name

    def manual_override(
        self, file_name: str, category: AssetCategory | str | None = None
    ) -> "AssetRenameResult":
        suggested = ensure_extension(file_name.strip(), self.original_file_name)
        return AssetRenameResult(
            original_file_name=self.original_file_name,
            suggested_file_name=suggested,
            category=category if category is not None else self.category,
            confidence=MANUAL_CONFIDENCE,
            reasoning=MANUAL_REASONING,
            extracted_keyword=strip_extension(suggested),
        )


class WorkflowStage(BaseModel):
    id: int = Field(..., ge=1, le=5)
    name: str
    description: str
    status: StageStatus = StageStatus.PENDING
    result: Optional[Any] = None
    errors: List[str] = Field(default_factory=list)


class CharacterBrief(BaseModel):
    """阶段 1 输入：自由文本设定 + 输出格式/细节程度（只影响提示词）。"""

    brief: str = Field(..., min_length=1)
    name: Optional[str] = None
    age: Optional[str] = None
    gender: Optional[str] = None
    setting: Optional[str] = None
    character_type: Literal["single", "multi", "professional"] = "single"
    output_format: OutputFormat = "narrative"
    detail_level: DetailLevel = "normal"

    @field_validator("brief")
    @classmethod
    def ensure_brief_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("brief must not be empty")
        return value


@dataclass(frozen=True)
class UploadedAsset:
    """内存中的上传文件。"""

    file_name: str
    content: bytes
    media_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.content)


class Stage3Summary(BaseModel):
    total_assets: int
    renamed_assets: int
    categories: Dict[str, int] = Field(default_factory=dict)
    warnings: List[str] = Field(default_factory=list)


class RenameSummary(BaseModel):
    total_files: int
    renamed_files: int
    categories: Dict[str, int] = Field(default_factory=dict)
    low_confidence_files: List[AssetRenameResult] = Field(default_factory=list)
    duplicate_names: List[str] = Field(default_factory=list)
    high_confidence_count: int = 0
    low_confidence_count: int = 0


class FinalizedCharacter(BaseModel):
    """阶段 5 输出快照。"""

    character: CharacterRecord
    lorebook: List[LorebookEntry] = Field(default_factory=list)
    asset_results: List[AssetRenameResult] = Field(default_factory=list)
    modification_history: List[ModificationRequest] = Field(default_factory=list)
    asset_summary: AssetSummary = Field(default_factory=AssetSummary)
    renamed_assets: List[RenamedAssetExport] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=utc_now)
    workflow: str = "five-stage"
    version: str = WORKFLOW_VERSION


class CardManifest(BaseModel):
    """CHARX 清单文件的最小校验视图。"""

    model_config = ConfigDict(extra="allow")

    spec: str
    spec_version: str
    data: Dict[str, Any]


class PromptTemplate(BaseModel):
    id: str = Field(..., min_length=1)
    name: str
    description: str = ""
    content: str
    category: Literal["system", "character", "asset", "custom"] = "custom"
    tags: List[str] = Field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class AppSettingsView(BaseModel):
    theme: Literal["light", "dark"] = "light"
    language: Literal["ko", "en", "ja"] = "en"
    auto_save: bool = True
    enable_prompt_editing: bool = False


class SettingsDocument(BaseModel):
    provider_configs: List[ProviderConfig] = Field(default_factory=list)
    selected_provider: Optional[ProviderConfig] = None
    prompt_templates: List[PromptTemplate] = Field(default_factory=list)
    custom_prompt: str = ""
    character_input: Optional[Dict[str, Any]] = None
    app_settings: AppSettingsView = Field(default_factory=AppSettingsView)


class SessionCreatePayload(BaseModel):
    provider_config: Optional[ProviderConfig] = None
    classify_with_ai: bool = False


class Stage1Payload(CharacterBrief):
    custom_prompt: Optional[str] = None


class Stage2Payload(BaseModel):
    requirements: str = ""
    custom_prompt: Optional[str] = None


class ModificationPayload(BaseModel):
    request: ModificationRequest
    mode: Literal["manual", "assisted"] = "assisted"
    custom_prompt: Optional[str] = None


class SessionView(BaseModel):
    session_id: str
    stages: List[WorkflowStage]
    character: CharacterRecord
    lorebook: List[LorebookEntry]
    asset_results: List[AssetRenameResult]
    modification_history: List[ModificationRequest]
