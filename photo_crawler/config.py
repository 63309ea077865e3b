from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .errors import ConfigError
from .models import ExtractionCategoryRule, ExtractionDefaultRule
from .utils import atomic_write_text

DEFAULT_MODEL = "claude-sonnet-4-20250514"
DEFAULT_API_BASE_URL = "https://api.anthropic.com/v1/messages"
DEFAULT_ALBUM = "PhotoCrawler"

CAPTURES_DIR = "captures"
VAULT_MARKER_DIR = ".obsidian"
STATE_FILENAME = "state.json"
SUPPORTED_EXTS = (".png", ".jpg", ".jpeg", ".webp", ".heic", ".heif", ".gif", ".tiff")

DEFAULT_CONFIG_PATH = Path(
    os.getenv("PHOTO_CRAWLER_CONFIG", str(Path.home() / ".config" / "photo-crawler" / "config.json"))
)


def _default_state_dir() -> Path:
    return Path(os.getenv("PHOTO_CRAWLER_STATE_DIR", str(Path.home() / ".local" / "share" / "photo-crawler")))


@dataclass(frozen=True)
class CrawlerConfig:
    vault_path: Path = Path("")
    api_key: str = ""

    album_name: str = DEFAULT_ALBUM
    library_path: Path | None = None

    scan_interval_seconds: int = 900
    model: str = os.getenv("PHOTO_CRAWLER_MODEL", DEFAULT_MODEL)
    api_base_url: str = os.getenv("PHOTO_CRAWLER_API_URL", DEFAULT_API_BASE_URL)
    request_timeout_seconds: float = 120.0
    max_tokens: int = 4096

    max_concurrent_api_calls: int = 3
    max_image_dimension: int = 1568
    min_text_density: float = 0.10
    min_line_count: int = 5

    categories: tuple[ExtractionCategoryRule, ...] = ()
    default_rule: ExtractionDefaultRule = field(default_factory=ExtractionDefaultRule)
    global_rules: tuple[str, ...] = ()

    state_dir: Path = field(default_factory=_default_state_dir)
    supported_exts: tuple[str, ...] = SUPPORTED_EXTS

    @property
    def captures_root(self) -> Path:
        return Path(self.vault_path) / CAPTURES_DIR

    @property
    def state_path(self) -> Path:
        return Path(self.state_dir) / STATE_FILENAME

    @property
    def library_mode(self) -> bool:
        """True when scanning the whole library rather than a curated album."""
        return not self.album_name.strip()

    @property
    def is_valid(self) -> bool:
        return bool(str(self.vault_path).strip()) and str(self.vault_path) != "." and bool(self.api_key)

    def with_overrides(self, **changes: Any) -> "CrawlerConfig":
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


# General study vocabulary. Order is the order matches are reported in.
LEARNING_KEYWORDS: tuple[str, ...] = (
    "chapter",
    "page",
    "definition",
    "vocabulary",
    "lesson",
    "exercise",
    "example",
    "theorem",
    "proof",
    "equation",
    "hypothesis",
    "conclusion",
    "abstract",
    "introduction",
    "summary",
    "review",
    "quiz",
    "exam",
    "study",
    "lecture",
    "textbook",
    "handbook",
    "reference",
    "glossary",
    "index",
    "bibliography",
    "footnote",
    "paragraph",
    "section",
)

DUOLINGO_KEYWORDS: tuple[str, ...] = (
    "translate",
    "write this in",
    "duolingo",
    "correct solution",
    "you are correct",
    "meaning",
    "new word",
    "tap the pairs",
    "select the correct",
    "listen and choose",
)

CODE_KEYWORDS: tuple[str, ...] = (
    "func ",
    "class ",
    "struct ",
    "import ",
    "def ",
    "return ",
    "var ",
    "let ",
    "const ",
    "function ",
    "public ",
    "private ",
    "if ",
    "for ",
    "while ",
    "switch ",
    "enum ",
    "protocol ",
)

ARTICLE_PATTERNS: tuple[str, ...] = (
    "http://",
    "https://",
    "www.",
    "subscribe",
    "newsletter",
    "published",
    "author",
    "read more",
    "continue reading",
    "share this",
    "comments",
)

NOTE_TRIGGERS: tuple[str, ...] = ("note", "todo", "remember")


def validate_vault(path: str | Path) -> bool:
    marker = Path(path).expanduser() / VAULT_MARKER_DIR
    return marker.is_dir()


def _rules_from_json(raw: Any) -> tuple[ExtractionCategoryRule, ...]:
    if not isinstance(raw, list):
        return ()
    rules: list[ExtractionCategoryRule] = []
    for item in raw:
        if not isinstance(item, dict) or not str(item.get("name", "")).strip():
            continue
        hint = item.get("hint")
        rules.append(
            ExtractionCategoryRule(
                name=str(item["name"]).strip(),
                hint=str(hint).strip() if hint else None,
                extraction_rules=str(item.get("extraction_rules", "")).strip(),
                write_rule=str(item.get("write_rule", "")).strip(),
            )
        )
    return tuple(rules)


def config_from_dict(data: dict[str, Any], base: CrawlerConfig | None = None) -> CrawlerConfig:
    cfg = base or CrawlerConfig()
    changes: dict[str, Any] = {}

    if data.get("vault_path"):
        changes["vault_path"] = Path(str(data["vault_path"])).expanduser()
    if data.get("api_key"):
        changes["api_key"] = str(data["api_key"])
    if "album" in data and data["album"] is not None:
        changes["album_name"] = str(data["album"])
    if data.get("library_path"):
        changes["library_path"] = Path(str(data["library_path"])).expanduser()
    if data.get("model"):
        changes["model"] = str(data["model"])
    if data.get("api_base_url"):
        changes["api_base_url"] = str(data["api_base_url"])
    if data.get("state_dir"):
        changes["state_dir"] = Path(str(data["state_dir"])).expanduser()

    numeric = {
        "scan_interval_seconds": int,
        "request_timeout_seconds": float,
        "max_tokens": int,
        "max_concurrent_api_calls": int,
        "max_image_dimension": int,
        "min_text_density": float,
        "min_line_count": int,
    }
    for key, cast in numeric.items():
        if key in data and data[key] is not None:
            try:
                changes[key] = cast(data[key])
            except (TypeError, ValueError) as exc:
                raise ConfigError(f"Invalid value for {key}: {data[key]!r}") from exc

    if "categories" in data:
        changes["categories"] = _rules_from_json(data["categories"])
    default_raw = data.get("default")
    if isinstance(default_raw, dict):
        changes["default_rule"] = ExtractionDefaultRule(
            extraction_rules=str(default_raw.get("extraction_rules", cfg.default_rule.extraction_rules)),
            write_rule=str(default_raw.get("write_rule", cfg.default_rule.write_rule)),
        )
    if isinstance(data.get("global_rules"), list):
        changes["global_rules"] = tuple(str(r).strip() for r in data["global_rules"] if str(r).strip())

    cfg = replace(cfg, **changes)
    if cfg.max_concurrent_api_calls < 1:
        raise ConfigError("max_concurrent_api_calls must be at least 1")
    if cfg.max_image_dimension < 64:
        raise ConfigError("max_image_dimension must be at least 64")
    return cfg


def load_config(path: Path | None = None) -> CrawlerConfig:
    config_path = Path(path or DEFAULT_CONFIG_PATH).expanduser()
    try:
        raw = config_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigError(f"No config file found at {config_path}. Run 'photo-crawler init' first.") from exc
    except OSError as exc:
        raise ConfigError(f"Cannot read config {config_path}: {exc}") from exc
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Config {config_path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config {config_path} must contain a JSON object")

    cfg = config_from_dict(data)
    if not cfg.api_key:
        cfg = replace(cfg, api_key=os.getenv("ANTHROPIC_API_KEY", ""))
    return cfg


def default_config_dict() -> dict[str, Any]:
    cfg = CrawlerConfig()
    return {
        "vault_path": "",
        "api_key": "",
        "album": DEFAULT_ALBUM,
        "library_path": "",
        "scan_interval_seconds": 30,
        "model": DEFAULT_MODEL,
        "min_text_density": cfg.min_text_density,
        "min_line_count": cfg.min_line_count,
        "max_concurrent_api_calls": cfg.max_concurrent_api_calls,
        "max_image_dimension": cfg.max_image_dimension,
        "categories": [],
        "default": {
            "extraction_rules": cfg.default_rule.extraction_rules,
            "write_rule": cfg.default_rule.write_rule,
        },
        "global_rules": [],
    }


def config_to_dict(cfg: CrawlerConfig, *, mask_secrets: bool = True) -> dict[str, Any]:
    key = cfg.api_key
    if mask_secrets and key:
        key = f"{key[:7]}…{key[-4:]}" if len(key) > 12 else "****"
    return {
        "vault_path": str(cfg.vault_path),
        "api_key": key,
        "album": cfg.album_name,
        "library_path": str(cfg.library_path) if cfg.library_path else "",
        "scan_interval_seconds": cfg.scan_interval_seconds,
        "model": cfg.model,
        "min_text_density": cfg.min_text_density,
        "min_line_count": cfg.min_line_count,
        "max_concurrent_api_calls": cfg.max_concurrent_api_calls,
        "max_image_dimension": cfg.max_image_dimension,
        "categories": [
            {
                "name": r.name,
                "hint": r.hint,
                "extraction_rules": r.extraction_rules,
                "write_rule": r.write_rule,
            }
            for r in cfg.categories
        ],
        "default": {
            "extraction_rules": cfg.default_rule.extraction_rules,
            "write_rule": cfg.default_rule.write_rule,
        },
        "global_rules": list(cfg.global_rules),
        "state_path": str(cfg.state_path),
    }


def save_default_config(path: Path | None = None) -> Path:
    config_path = Path(path or DEFAULT_CONFIG_PATH).expanduser()
    if config_path.exists():
        raise ConfigError(f"Config already exists at {config_path}")
    atomic_write_text(config_path, json.dumps(default_config_dict(), indent=2, sort_keys=True) + "\n")
    return config_path
