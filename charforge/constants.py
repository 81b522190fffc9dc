"""跨模块共享的固定常量（供应商默认值、卡片规格标记、资产目录表）。"""

from __future__ import annotations

LOCAL_PROVIDERS = frozenset({"ollama", "lm-studio"})

DEFAULT_MODELS: dict[str, str] = {
    "gemini": "gemini-1.5-flash",
    "claude": "claude-3-5-sonnet-20241022",
    "openai": "gpt-4o",
    "custom-openai": "gpt-4o",
    "ollama": "llama3.2",
    "lm-studio": "local-model",
}

DEFAULT_ENDPOINTS: dict[str, str] = {
    "gemini": "https://generativelanguage.googleapis.com",
    "claude": "https://api.anthropic.com/v1/messages",
    "openai": "https://api.openai.com/v1/chat/completions",
    "ollama": "http://localhost:11434/api/generate",
    "lm-studio": "http://localhost:1234/v1/chat/completions",
}

CLAUDE_API_VERSION = "2023-06-01"
USER_AGENT = "charforge/0.1"

CARD_SPEC = "chara_card_v3"
CARD_SPEC_VERSION = "3.0"
MANIFEST_NAME = "card.json"
LEGACY_MANIFEST_NAME = "character.json"
ASSETS_ROOT = "assets"
EMBED_SCHEME = "embeded"

WORKFLOW_VERSION = "1.0"

ICON_ASSET_TYPE = "icon"
VENDOR_ASSET_TYPE = "x-risu-asset"
ICON_ASSET_NAME = "iconx"

LOREBOOK_SCAN_DEPTH = 40
LOREBOOK_TOKEN_BUDGET = 2048

MEDIA_EXTENSIONS: tuple[tuple[str, frozenset[str]], ...] = (
    ("image", frozenset({"png", "jpg", "jpeg", "gif", "webp", "svg", "bmp", "avif"})),
    ("audio", frozenset({"mp3", "wav", "ogg", "flac", "aac", "m4a"})),
    ("video", frozenset({"mp4", "webm", "avi", "mov", "mkv"})),
    ("ai", frozenset({"safetensors", "ckpt", "onnx", "pt", "bin"})),
    ("fonts", frozenset({"ttf", "otf", "woff", "woff2"})),
    ("code", frozenset({"js", "lua", "py", "json"})),
)

# 插入顺序分档：数值越小越优先
CORE_IDENTITY_BAND = 5
WORLD_SETTING_BAND = 20
LOCATION_BAND = 40
DEFAULT_BAND = 50
RELATIONSHIP_BAND = 60
CULTURE_BAND = 80
SPECIAL_ABILITY_BAND = 95

# (分档, 标题关键词, 正文关键词)，按顺序匹配，先命中者生效
BAND_KEYWORDS: tuple[tuple[int, tuple[str, ...], tuple[str, ...]], ...] = (
    (
        CORE_IDENTITY_BAND,
        ("character", "profile", "identity", "캐릭터", "프로필"),
        ("name:", "age:", "gender:", "이름:", "나이:", "성별:"),
    ),
    (
        WORLD_SETTING_BAND,
        ("world", "setting", "universe", "세계", "설정"),
        ("worldview", "world setting", "세계관", "배경 설정"),
    ),
    (
        LOCATION_BAND,
        ("region", "location", "place", "city", "지역", "장소", "도시"),
        ("located", "residence", "위치", "거주지"),
    ),
    (
        RELATIONSHIP_BAND,
        ("people", "relationship", "family", "인물", "관계", "가족"),
        ("friend", "colleague", "친구", "동료"),
    ),
    (
        CULTURE_BAND,
        ("culture", "society", "tradition", "문화", "사회", "전통"),
        ("custom", "rules", "관습", "규칙"),
    ),
    (
        SPECIAL_ABILITY_BAND,
        ("ability", "magic", "special", "power", "능력", "마법", "특별"),
        ("unique", "special power", "특수", "독특한"),
    ),
)

FALLBACK_CONFIDENCE = 30
MANUAL_CONFIDENCE = 100
MANUAL_REASONING = "manual override"

EMOTION_KEYWORDS = (
    "happy", "sad", "angry", "smile", "cry", "laugh", "joy", "fear", "surprise",
    "기쁨", "슬픔", "분노", "웃음",
)
ADULT_KEYWORDS = ("adult", "nsfw", "sex", "nude", "성인", "섹스")
PROFILE_KEYWORDS = ("profile", "main", "base", "default", "프로필", "기본")

CATEGORY_PREFIXES: dict[str, str] = {
    "emotion": "emotion",
    "adult": "adult",
    "profile": "profile",
    "etc": "scene",
}
