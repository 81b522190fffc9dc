"""LLM 文本 -> JSON：定位代码块/平衡括号片段，修复常见格式问题，设定集阶段可退化为启发式抽取。"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterable

from pydantic import ValidationError

from charforge.errors import ParseError
from charforge.logic.banding import determine_insertion_order
from charforge.models import LorebookEntry

logger = logging.getLogger(__name__)

_FENCE_PATTERNS = (
    re.compile(r"```json\s*([\s\S]*?)\s*```", re.IGNORECASE),
    re.compile(r"```[\w-]*\s*([\s\S]*?)\s*```"),
)
_BLANK_LINE = re.compile(r"\n\s*\n")
_TITLE_MARKS = re.compile(r"[#*-]")
_ESCAPES_IN_STRING = {"\n": "\\n", "\r": "\\r", "\t": "\\t"}
_MIN_SECTION_LENGTH = 50


def _balanced_object_span(text: str) -> str | None:
    """返回第一个顶层 {...} 片段；字符串字面量内的括号不计入深度。"""
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def find_json_span(text: str) -> str | None:
    for pattern in _FENCE_PATTERNS:
        match = pattern.search(text)
        if match is None:
            continue
        body = match.group(1).strip()
        if body.startswith("{") or body.startswith("["):
            return body
        span = _balanced_object_span(body)
        if span is not None:
            return span
    return _balanced_object_span(text)


def repair_json(text: str) -> str:
    """字符串感知的修复：转义字符串内的换行/制表符，去掉串外控制字符和尾随逗号。"""
    out: list[str] = []
    in_string = False
    escaped = False
    length = len(text)
    index = 0
    while index < length:
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
                out.append(char)
            elif char == "\\":
                escaped = True
                out.append(char)
            elif char == '"':
                in_string = False
                out.append(char)
            elif char in _ESCAPES_IN_STRING:
                out.append(_ESCAPES_IN_STRING[char])
            elif ord(char) < 0x20:
                out.append(f"\\u{ord(char):04x}")
            else:
                out.append(char)
            index += 1
            continue

        if char == '"':
            in_string = True
            out.append(char)
        elif char == ",":
            lookahead = index + 1
            while lookahead < length and text[lookahead] in " \t\r\n":
                lookahead += 1
            if lookahead >= length or text[lookahead] not in "}]":
                out.append(char)
        elif (ord(char) < 0x20 and char not in " \t\r\n") or char == "\x7f":
            pass
        else:
            out.append(char)
        index += 1
    return "".join(out)


def extract_json(text: str) -> Any:
    """解析 LLM 输出中的 JSON；所有修复尝试失败时抛出 ParseError（携带原文）。"""
    span = find_json_span(text or "")
    if span is None:
        raise ParseError("no JSON object found in model output", raw_text=text or "")
    try:
        return json.loads(span)
    except json.JSONDecodeError as first_error:
        logger.debug("direct JSON parse failed, repairing: %s", first_error.msg)
    repaired = repair_json(span)
    try:
        return json.loads(repaired)
    except json.JSONDecodeError as exc:
        raise ParseError(f"invalid JSON model output: {exc.msg}", raw_text=text) from exc


def extract_json_object(text: str) -> dict[str, Any]:
    parsed = extract_json(text)
    if not isinstance(parsed, dict):
        raise ParseError("model output is not a JSON object", raw_text=text)
    return parsed


def heuristic_lorebook(text: str) -> list[LorebookEntry]:
    """按空行切分原文，长度超过阈值的段落各成一条设定集条目。"""
    entries: list[LorebookEntry] = []
    sections = [section.strip() for section in _BLANK_LINE.split(text or "")]
    for index, section in enumerate(s for s in sections if len(s) > _MIN_SECTION_LENGTH):
        first_line = section.splitlines()[0].strip()
        title = _TITLE_MARKS.sub("", first_line).strip() or f"Lorebook entry {index + 1}"
        entries.append(
            LorebookEntry(
                keys=[title],
                content=section,
                name=title,
                comment=f"Extracted from unstructured text: {title}",
                enabled=True,
                insertion_order=determine_insertion_order(title, section),
                constant=True,
            )
        )
    return entries


def _coerce_entries(raw_entries: Iterable[Any]) -> list[LorebookEntry]:
    entries: list[LorebookEntry] = []
    for position, raw in enumerate(raw_entries):
        try:
            entries.append(LorebookEntry.model_validate(raw))
        except ValidationError as exc:
            logger.warning(
                "dropping invalid lorebook entry",
                extra={"payload": {"position": position, "errors": exc.error_count()}},
            )
    return entries


def extract_lorebook(text: str) -> list[LorebookEntry]:
    """设定集专用抽取：JSON 失败或无有效条目时退化为启发式切分。"""
    try:
        parsed = extract_json(text)
    except ParseError as exc:
        logger.warning("lorebook JSON extraction failed, using heuristic sections: %s", exc)
        entries = heuristic_lorebook(text)
        if not entries:
            raise
        return entries

    if isinstance(parsed, dict):
        raw_entries = parsed.get("lorebook")
        if raw_entries is None:
            raw_entries = parsed.get("entries", [])
    else:
        raw_entries = parsed
    if not isinstance(raw_entries, list):
        raise ParseError("lorebook field is not a list", raw_text=text)

    entries = _coerce_entries(raw_entries)
    if entries or not raw_entries:
        return entries
    fallback = heuristic_lorebook(text)
    if not fallback:
        raise ParseError("no usable lorebook entries in model output", raw_text=text)
    return fallback
