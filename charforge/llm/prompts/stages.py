"""各阶段的用户提示词构造；输出格式与细节程度只影响提示词，不影响解析。"""

from __future__ import annotations

import json

from charforge.constants import CATEGORY_PREFIXES
from charforge.models import CharacterBrief, CharacterRecord, ModificationRequest

_FORMAT_GUIDANCE = {
    "narrative": "Write the description as flowing narrative prose.",
    "sheet": "Write the description as a structured character sheet with labelled lines "
    "(Name:, Age:, Appearance:, Personality:, Background:).",
    "narrative+sheet": "Open the description with a short structured sheet, then continue "
    "with narrative prose that expands on it.",
}

_DETAIL_GUIDANCE = {
    "simple": ("around 150 words", "20-50 words"),
    "normal": ("300-400 words", "50-100 words"),
    "detailed": ("600-800 words", "100-150 words"),
}


def build_character_prompt(brief: CharacterBrief) -> str:
    description_size, greeting_size = _DETAIL_GUIDANCE[brief.detail_level]
    name = brief.name or "choose a fitting name"
    lines = [
        "# Stage 1: Character description",
        "",
        "Create the core description of a character from the settings below.",
        "",
        "## Settings",
        f"- Name: {name}",
        f"- Age: {brief.age or 'fitting the concept'}",
        f"- Gender: {brief.gender or 'fitting the concept'}",
        f"- Setting: {brief.setting or 'modern'}",
        f"- Character type: {brief.character_type}",
        "",
        "## Brief",
        brief.brief.strip(),
        "",
        "## Requirements",
        "Put every piece of character information (appearance, personality, background, "
        "current situation) into the description field; do not use separate personality "
        "or scenario fields.",
        _FORMAT_GUIDANCE[brief.output_format],
        "",
        "## Response format",
        "```json",
        "{",
        f'  "name": "{brief.name or "character name"}",',
        f'  "description": "comprehensive description ({description_size})",',
        f'  "first_mes": "natural first message showing the voice ({greeting_size})",',
        '  "mes_example": "example dialogue showing the speaking style"',
        "}",
        "```",
    ]
    return "\n".join(lines)


def build_lorebook_prompt(character: CharacterRecord, requirements: str | None = None) -> str:
    parts = [
        "# Stage 2: Lorebook",
        "",
        "Create a lorebook dedicated to the character generated in stage 1.",
        "",
        "## Character",
        f"- Name: {character.name}",
        f"- Description: {character.description}",
    ]
    if requirements and requirements.strip():
        parts += ["", "## Special requirements", requirements.strip()]
    parts += [
        "",
        "## Categories",
        "1. World setting: the basic rules and features of the character's world",
        "2. Locations: where the character lives and spends time",
        "3. Relationships: family, friends, colleagues",
        "4. Culture and society: customs and social structure",
        "5. Special traits: abilities or settings unique to the character",
        "",
        "## JSON rules",
        "- No raw line breaks inside JSON strings; use \\n instead",
        '- Escape quotes as \\"',
        "- No trailing commas",
        "- insertion_order must be a number",
        "",
        "## insertion_order guide",
        "- 1-10: core character information (highest priority)",
        "- 11-30: world setting",
        "- 31-50: locations",
        "- 51-70: relationships",
        "- 71-90: culture and society",
        "- 91-100: special traits",
        "",
        "```json",
        "{",
        '  "lorebook": [',
        "    {",
        '      "keys": ["keyword1", "keyword2"],',
        '      "content": "detailed content",',
        '      "name": "entry title",',
        '      "comment": "what this entry is for",',
        '      "enabled": true,',
        '      "insertion_order": 20,',
        '      "constant": true,',
        '      "selective": false,',
        '      "case_sensitive": false,',
        '      "use_regex": false,',
        '      "extensions": {}',
        "    }",
        "  ]",
        "}",
        "```",
        "",
        "Create at least 5 lorebook entries.",
    ]
    return "\n".join(parts)


def build_modification_prompt(request: ModificationRequest, character: CharacterRecord) -> str:
    snapshot = character.model_dump(
        mode="json",
        include={"name", "description", "personality", "scenario", "first_mes", "mes_example"},
    )
    return "\n".join(
        [
            "# Character modification request",
            "",
            "## Request",
            f"- Field: {request.field}",
            f"- Current value: {request.current_value}",
            f"- Requested change: {request.requested_change}",
            f"- Reason: {request.reason}",
            "",
            "## Current character",
            json.dumps(snapshot, ensure_ascii=False, indent=2),
            "",
            "## Guidelines",
            "Apply the requested change exactly and keep it consistent with the other fields.",
            "",
            "## Response format",
            "```json",
            "{",
            '  "modifiedValue": "the new value",',
            '  "explanation": "what changed",',
            '  "consistencyCheck": "consistency review"',
            "}",
            "```",
        ]
    )


def build_asset_prompt(
    file_stem: str, character_name: str | None = None, character_context: str | None = None
) -> str:
    lines = [
        "# Asset file name analysis",
        "",
        "Suggest a new file name for the dynamic asset system based on this image file name.",
        "",
        f"File name: {file_stem}",
    ]
    if character_name:
        lines.append(f"Character: {character_name}")
    if character_context:
        lines.append(f"Character background: {character_context}")
    lines += [
        "",
        "## Categories",
        f'1. emotion: facial expressions or moods, named "{CATEGORY_PREFIXES["emotion"]}-<emotion>"',
        f'2. adult: sexual content, named "{CATEGORY_PREFIXES["adult"]}-<pose>"',
        f'3. profile: base or full-body character images, named "{CATEGORY_PREFIXES["profile"]}-<variant>"',
        f'4. etc: situational images, named "{CATEGORY_PREFIXES["etc"]}-<situation>"',
        "",
        "## Response format",
        "```json",
        "{",
        '  "category": "emotion|adult|profile|etc",',
        '  "extractedKeyword": "core keyword from the file name",',
        '  "suggestedFileName": "new file name without extension",',
        '  "confidence": 0,',
        '  "reasoning": "why"',
        "}",
        "```",
    ]
    return "\n".join(lines)


def character_template_variables(brief: CharacterBrief) -> dict[str, str]:
    return {
        "characterInput": brief.brief,
        "additionalDetails": brief.brief,
        "name": brief.name or "",
        "outputFormat": brief.output_format,
        "detailLevel": brief.detail_level,
    }


def lorebook_template_variables(
    character: CharacterRecord, requirements: str | None
) -> dict[str, str]:
    return {
        "characterName": character.name,
        "characterDescription": character.description,
        "characterPersonality": character.personality,
        "characterScenario": character.scenario,
        "requirements": requirements or "",
    }


def modification_template_variables(
    request: ModificationRequest, character: CharacterRecord
) -> dict[str, str]:
    return {
        "field": request.field,
        "currentValue": request.current_value,
        "requestedChange": request.requested_change,
        "reason": request.reason,
        "characterName": character.name,
        "characterDescription": character.description,
        "characterPersonality": character.personality,
    }
