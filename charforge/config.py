"""基础配置与环境变量加载器，支持 .env 文件与系统环境并存."""
from __future__ import annotations

import os
from pathlib import Path

_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"


def _load_env_file(path: Path = _ENV_PATH) -> None:
    """读取 .env 文件到 os.environ，不覆盖已存在的环境变量."""
    if not path.exists():
        return
    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        cleaned = value.strip().strip('"').strip("'")
        os.environ[key] = cleaned


_load_env_file()


def _get_positive_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if value <= 0:
        raise ValueError(f"{name} must be > 0")
    return value


def _get_int_in_range(name: str, default: int, low: int, high: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if not low <= value <= high:
        raise ValueError(f"{name} must be between {low} and {high}")
    return value


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc


CHARFORGE_PROVIDER: str = os.getenv("CHARFORGE_PROVIDER", "openai")
CHARFORGE_API_KEY: str | None = os.getenv("CHARFORGE_API_KEY")
CHARFORGE_MODEL: str | None = os.getenv("CHARFORGE_MODEL")
CHARFORGE_ENDPOINT: str | None = os.getenv("CHARFORGE_ENDPOINT")

LLM_MAX_TOKENS: int = _get_positive_int("LLM_MAX_TOKENS", 4000)
LLM_TEMPERATURE: float = _get_float("LLM_TEMPERATURE", 0.7)
LLM_TIMEOUT_SECONDS: float = _get_float("LLM_TIMEOUT_SECONDS", 60.0)
if LLM_TIMEOUT_SECONDS <= 0:
    raise ValueError("LLM_TIMEOUT_SECONDS must be > 0")

# 资产分类的并发上限；1 表示逐个调用
ASSET_CLASSIFY_CONCURRENCY: int = _get_positive_int("ASSET_CLASSIFY_CONCURRENCY", 1)

CHARX_COMPRESSION_LEVEL: int = _get_int_in_range("CHARX_COMPRESSION_LEVEL", 9, 0, 9)

SETTINGS_PATH: Path = Path(
    os.getenv("CHARFORGE_SETTINGS_PATH", str(Path.home() / ".charforge" / "settings.json"))
)
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

# 置信度阈值仅用于展示层提示，不参与流程控制
LOW_CONFIDENCE_THRESHOLD: int = _get_int_in_range("LOW_CONFIDENCE_THRESHOLD", 70, 0, 100)
HIGH_CONFIDENCE_BAND: int = _get_int_in_range("HIGH_CONFIDENCE_BAND", 80, 0, 100)
LOW_CONFIDENCE_BAND: int = _get_int_in_range("LOW_CONFIDENCE_BAND", 60, 0, 100)
if LOW_CONFIDENCE_BAND > HIGH_CONFIDENCE_BAND:
    raise ValueError("LOW_CONFIDENCE_BAND must be <= HIGH_CONFIDENCE_BAND")
