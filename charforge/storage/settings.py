"""本地设置持久化：单个 JSON 文件，读取失败时回落到默认值。"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from charforge.config import SETTINGS_PATH
from charforge.models import AppSettingsView, PromptTemplate, ProviderConfig, SettingsDocument

logger = logging.getLogger(__name__)


class SettingsStore:
    def __init__(self, path: Path = SETTINGS_PATH) -> None:
        self.path = Path(path)

    def load(self) -> SettingsDocument:
        if not self.path.exists():
            return SettingsDocument()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            return SettingsDocument.model_validate(raw)
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            logger.warning("settings file %s unreadable, using defaults: %s", self.path, exc)
            return SettingsDocument()

    def save(self, document: SettingsDocument) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(
            json.dumps(document.model_dump(mode="json"), ensure_ascii=False, indent=2),
            encoding="utf-8",
        )
        tmp_path.replace(self.path)

    def _update(self, **changes: Any) -> SettingsDocument:
        document = self.load().model_copy(update=changes)
        self.save(document)
        return document

    def save_provider_configs(self, configs: list[ProviderConfig]) -> None:
        self._update(provider_configs=list(configs))

    def save_selected_provider(self, config: ProviderConfig | None) -> None:
        self._update(selected_provider=config)

    def save_custom_prompt(self, prompt: str) -> None:
        self._update(custom_prompt=prompt)

    def save_character_input(self, payload: dict[str, Any] | None) -> None:
        self._update(character_input=payload)

    def save_app_settings(self, settings: AppSettingsView) -> None:
        self._update(app_settings=settings)

    def save_prompt_template(self, template: PromptTemplate) -> PromptTemplate:
        """按 id 新增或覆盖模板，并维护时间戳。"""
        now = datetime.now(timezone.utc).isoformat()
        document = self.load()
        templates = list(document.prompt_templates)
        for index, existing in enumerate(templates):
            if existing.id == template.id:
                stored = template.model_copy(
                    update={"created_at": existing.created_at or now, "updated_at": now}
                )
                templates[index] = stored
                break
        else:
            stored = template.model_copy(
                update={"created_at": template.created_at or now, "updated_at": now}
            )
            templates.append(stored)
        self.save(document.model_copy(update={"prompt_templates": templates}))
        return stored

    def delete_prompt_template(self, template_id: str) -> bool:
        document = self.load()
        remaining = [t for t in document.prompt_templates if t.id != template_id]
        if len(remaining) == len(document.prompt_templates):
            return False
        self.save(document.model_copy(update={"prompt_templates": remaining}))
        return True

    def export_data(self) -> str:
        return json.dumps(self.load().model_dump(mode="json"), ensure_ascii=False, indent=2)

    def import_data(self, payload: str) -> bool:
        try:
            document = SettingsDocument.model_validate(json.loads(payload))
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.warning("rejected settings import: %s", exc)
            return False
        self.save(document)
        return True

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()
