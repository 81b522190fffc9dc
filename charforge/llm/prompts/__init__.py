"""LLM prompts package."""

from __future__ import annotations

import re
from typing import Mapping

CHARACTER_SYSTEM_PROMPT = (
    "You are a professional character designer. Build an appealing, internally consistent "
    "character from the basic settings you are given. "
    "Respond with a single JSON object only."
)

LOREBOOK_SYSTEM_PROMPT = (
    "You are a worldbuilding specialist. Create a lorebook tailored to the character "
    "that gives rich, reusable background facts. "
    "Respond with a single JSON object only."
)

MODIFICATION_SYSTEM_PROMPT = (
    "You are a character revision specialist. Apply the requested change precisely "
    "while keeping the rest of the character consistent. "
    "Respond with a single JSON object only."
)

ASSET_SYSTEM_PROMPT = (
    "You analyse image file names for a dynamic asset system. "
    "Extract the core meaning of the name, follow the naming convention, "
    "and be conservative: only mark content as adult when you are certain. "
    "Recognise English, Korean and Japanese keywords as well as slang and abbreviations. "
    "Respond with valid JSON only."
)

_VARIABLE = re.compile(r"\{\{\s*(\w+)\s*\}\}")
_CONDITIONAL = re.compile(r"\{\{#if\s+(\w+)\}\}(.*?)\{\{/if\}\}", re.DOTALL)


def render_template(template: str, variables: Mapping[str, str | None]) -> str:
    """渲染自定义提示词模板：{{#if var}}...{{/if}} 按变量是否非空保留，{{var}} 做替换。"""

    def _keep_block(match: re.Match[str]) -> str:
        value = variables.get(match.group(1))
        return match.group(2) if value and value.strip() else ""

    def _substitute(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in variables:
            return match.group(0)
        return variables[name] or ""

    rendered = _CONDITIONAL.sub(_keep_block, template)
    return _VARIABLE.sub(_substitute, rendered)
