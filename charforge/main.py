"""FastAPI 入口，暴露五阶段角色卡流程与 CHARX 导入导出接口。"""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import ValidationError

from charforge.errors import (
    AuthError,
    CharforgeError,
    GatewayError,
    GatewayTimeoutError,
    ManifestValidationError,
    ParseError,
    PreconditionError,
    RateLimitedError,
    StaleResultError,
)
from charforge.llm.gateway import ProviderGateway
from charforge.logging_setup import get_session_buffer, setup_logging
from charforge.logic.workflow import FiveStageWorkflow, TextGenerator
from charforge.models import (
    AssetRenameResult,
    CharacterRecord,
    FinalizedCharacter,
    LorebookEntry,
    ModificationPayload,
    ProviderConfig,
    SessionCreatePayload,
    SessionView,
    SettingsDocument,
    Stage1Payload,
    Stage2Payload,
    Stage3Summary,
    UploadedAsset,
)
from charforge.services.asset_classifier import AssetClassifier
from charforge.storage.charx import (
    CharxValidationReport,
    build_character_card,
    read_charx,
    record_from_manifest,
    validate_charx,
)
from charforge.storage.settings import SettingsStore
from charforge.storage.sinks import DownloadSink, export_card

app = FastAPI(title="Character Forge API", version="0.1.0")

logger = logging.getLogger(__name__)

GatewayFactory = Callable[[ProviderConfig], TextGenerator]


def _status_for_gateway_error(exc: GatewayError) -> int:
    if isinstance(exc, GatewayTimeoutError):
        return 504
    if isinstance(exc, RateLimitedError):
        return 429
    if isinstance(exc, AuthError):
        return 401
    return 502


def _normalize_unhandled_exception(exc: Exception) -> tuple[int, Any]:
    if isinstance(exc, PreconditionError):
        return 409, {"message": str(exc), "stage": exc.stage, "field": exc.field}
    if isinstance(exc, StaleResultError):
        return 409, {"message": str(exc), "stage": exc.stage}
    if isinstance(exc, ManifestValidationError):
        return 422, {"message": str(exc), "errors": exc.errors}
    if isinstance(exc, ParseError):
        return 422, {"message": str(exc)}
    if isinstance(exc, GatewayError):
        return _status_for_gateway_error(exc), {
            "message": str(exc),
            "kind": exc.kind.value,
            "provider": exc.provider,
        }
    if isinstance(exc, (ValueError, TypeError, KeyError, ValidationError, json.JSONDecodeError)):
        return 422, str(exc) or "invalid request payload"
    detail = str(exc) or exc.__class__.__name__
    return 503, f"service unavailable: {detail}"


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    if isinstance(exc, HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})
    status_code, detail = _normalize_unhandled_exception(exc)
    if status_code >= 500:
        logger.exception("Unhandled exception")
    else:
        logger.warning("request failed with %s: %s", status_code, exc)
    return JSONResponse(status_code=status_code, content={"detail": detail})


# 领域错误走 ExceptionMiddleware，避免被 ServerErrorMiddleware 当作 500 重新抛出
app.add_exception_handler(CharforgeError, _unhandled_exception_handler)


@app.on_event("startup")
async def _configure_logging() -> None:  # pragma: no cover
    setup_logging()


class SessionRegistry:
    """进程内会话表；会话之间不共享任何可变状态。"""

    def __init__(self) -> None:
        self._sessions: Dict[str, FiveStageWorkflow] = {}

    def create(self, workflow: FiveStageWorkflow) -> str:
        session_id = uuid4().hex
        self._sessions[session_id] = workflow
        return session_id

    def get(self, session_id: str) -> FiveStageWorkflow:
        workflow = self._sessions.get(session_id)
        if workflow is None:
            raise HTTPException(status_code=404, detail=f"session {session_id} not found")
        return workflow


@lru_cache(maxsize=1)
def get_session_registry() -> SessionRegistry:
    return SessionRegistry()


@lru_cache(maxsize=1)
def get_settings_store() -> SettingsStore:  # pragma: no cover
    return SettingsStore()


def get_gateway_factory() -> GatewayFactory:  # pragma: no cover
    """默认依赖注入，可在测试中 override。"""
    return ProviderGateway


def get_workflow(
    session_id: str, registry: SessionRegistry = Depends(get_session_registry)
) -> FiveStageWorkflow:
    return registry.get(session_id)


def _resolve_provider(
    payload: SessionCreatePayload, store: SettingsStore
) -> Optional[ProviderConfig]:
    if payload.provider_config is not None:
        return payload.provider_config
    selected = store.load().selected_provider
    if selected is not None:
        return selected
    try:
        return ProviderConfig.from_env()
    except ValidationError:
        logger.info("no provider configured; generation stages will be unavailable")
        return None


def _session_view(session_id: str, workflow: FiveStageWorkflow) -> SessionView:
    return SessionView(
        session_id=session_id,
        stages=workflow.stages(),
        character=workflow.character,
        lorebook=workflow.lorebook,
        asset_results=workflow.asset_results,
        modification_history=workflow.modification_history,
    )


async def _read_uploads(files: List[UploadFile]) -> List[UploadedAsset]:
    assets = []
    for upload in files:
        content = await upload.read()
        assets.append(
            UploadedAsset(
                file_name=upload.filename or "upload",
                content=content,
                media_type=upload.content_type or "application/octet-stream",
            )
        )
    return assets


@app.post("/api/v1/sessions", response_model=SessionView)
async def create_session_endpoint(
    payload: SessionCreatePayload,
    registry: SessionRegistry = Depends(get_session_registry),
    store: SettingsStore = Depends(get_settings_store),
    factory: GatewayFactory = Depends(get_gateway_factory),
) -> SessionView:
    config = _resolve_provider(payload, store)
    generator = factory(config) if config is not None else None
    classifier = AssetClassifier(generator)
    workflow = FiveStageWorkflow(generator, classifier=classifier)
    session_id = registry.create(workflow)
    logger.info("created session %s", session_id)
    return _session_view(session_id, workflow)


@app.get("/api/v1/sessions/{session_id}", response_model=SessionView)
async def get_session_endpoint(
    session_id: str, workflow: FiveStageWorkflow = Depends(get_workflow)
) -> SessionView:
    return _session_view(session_id, workflow)


@app.post("/api/v1/sessions/{session_id}/stage1", response_model=CharacterRecord)
async def stage1_endpoint(
    payload: Stage1Payload, workflow: FiveStageWorkflow = Depends(get_workflow)
) -> CharacterRecord:
    return await workflow.execute_stage1(payload, payload.custom_prompt)


@app.post("/api/v1/sessions/{session_id}/stage2", response_model=List[LorebookEntry])
async def stage2_endpoint(
    payload: Stage2Payload, workflow: FiveStageWorkflow = Depends(get_workflow)
) -> List[LorebookEntry]:
    return await workflow.execute_stage2(payload.requirements, payload.custom_prompt)


@app.post("/api/v1/sessions/{session_id}/stage3", response_model=Stage3Summary)
async def stage3_endpoint(
    files: List[UploadFile] = File(default=[]),
    manual_names: str = Form(default="{}"),
    use_ai: bool = Form(default=False),
    workflow: FiveStageWorkflow = Depends(get_workflow),
) -> Stage3Summary:
    try:
        mapping = json.loads(manual_names or "{}")
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=422, detail="manual_names is not valid JSON") from exc
    if not isinstance(mapping, dict) or not all(isinstance(v, dict) for v in mapping.values()):
        raise HTTPException(status_code=422, detail="manual_names must map category -> {original: new}")
    assets = await _read_uploads(files)
    return await workflow.execute_stage3(assets, mapping, use_ai=use_ai)


@app.post(
    "/api/v1/sessions/{session_id}/assets/classify", response_model=List[AssetRenameResult]
)
async def classify_assets_endpoint(
    session_id: str,
    files: List[UploadFile] = File(default=[]),
    registry: SessionRegistry = Depends(get_session_registry),
    factory: GatewayFactory = Depends(get_gateway_factory),
    store: SettingsStore = Depends(get_settings_store),
) -> List[AssetRenameResult]:
    """分类预览：不修改会话状态。"""
    workflow = registry.get(session_id)
    config = _resolve_provider(SessionCreatePayload(), store)
    classifier = AssetClassifier(factory(config)) if config is not None else AssetClassifier()
    character = workflow.character
    return await classifier.classify_assets(
        await _read_uploads(files),
        character_name=character.name or None,
        character_context=character.description or None,
    )


@app.post("/api/v1/sessions/{session_id}/modifications", response_model=CharacterRecord)
async def modification_endpoint(
    payload: ModificationPayload, workflow: FiveStageWorkflow = Depends(get_workflow)
) -> CharacterRecord:
    return await workflow.apply_modification(
        payload.request, mode=payload.mode, custom_prompt=payload.custom_prompt
    )


@app.post("/api/v1/sessions/{session_id}/stage5", response_model=FinalizedCharacter)
async def stage5_endpoint(workflow: FiveStageWorkflow = Depends(get_workflow)) -> FinalizedCharacter:
    return workflow.finalize()


@app.get("/api/v1/sessions/{session_id}/export")
async def export_endpoint(workflow: FiveStageWorkflow = Depends(get_workflow)) -> Response:
    finalized = workflow.finalize()
    card = build_character_card(
        finalized.character, finalized.lorebook, finalized.asset_results
    )
    sink = DownloadSink()
    outcome = export_card(sink, card, workflow.assets, finalized.asset_results)
    headers = {
        "Content-Disposition": f'attachment; filename="{outcome.file_name}"',
        "X-Export-Fallback": "true" if outcome.used_fallback else "false",
    }
    return Response(content=sink.data, media_type=sink.media_type, headers=headers)


@app.get("/api/v1/sessions/{session_id}/assets/renamed")
async def renamed_assets_endpoint(workflow: FiveStageWorkflow = Depends(get_workflow)) -> Response:
    return Response(
        content=workflow.renamed_assets_zip(),
        media_type="application/zip",
        headers={"Content-Disposition": 'attachment; filename="renamed_assets.zip"'},
    )


@app.post("/api/v1/charx/import")
async def import_charx_endpoint(file: UploadFile = File(...)) -> Dict[str, Any]:
    result = read_charx(await file.read())
    character, lorebook = record_from_manifest(result.manifest)
    return {
        "character": character.model_dump(mode="json"),
        "lorebook": [entry.model_dump(mode="json") for entry in lorebook],
        "assets": [asset.file_name for asset in result.assets],
    }


@app.post("/api/v1/charx/validate", response_model=CharxValidationReport)
async def validate_charx_endpoint(file: UploadFile = File(...)) -> CharxValidationReport:
    return validate_charx(await file.read())


@app.get("/api/v1/settings", response_model=SettingsDocument)
async def get_settings_endpoint(
    store: SettingsStore = Depends(get_settings_store),
) -> SettingsDocument:
    return store.load()


@app.put("/api/v1/settings", response_model=SettingsDocument)
async def put_settings_endpoint(
    payload: SettingsDocument, store: SettingsStore = Depends(get_settings_store)
) -> SettingsDocument:
    store.save(payload)
    return payload


@app.get("/api/v1/logs", response_class=PlainTextResponse)
async def download_logs_endpoint() -> PlainTextResponse:
    return PlainTextResponse(
        get_session_buffer().text(),
        headers={"Content-Disposition": 'attachment; filename="charforge-session.log"'},
    )
