"""
Configuration loader for ClearMail.

Behavior:
- Looks for the config path given explicitly, then in env var `CLEARMAIL_CONFIG`.
- Falls back to `clearmail/config.json` next to the package, then
  `config.json.example`.
- User values are deep-merged over DEFAULT_CONFIG and validated against
  `clearmail/json_schema/config.schema.json`.
"""

import copy
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from jsonschema import Draft7Validator

from ..errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = [
    "Auto/News",
    "Auto/Social Updates",
    "Auto/Blog",
    "Auto/Financial",
    "Auto/Marketing",
    "Auto/Other",
    "Auto/Unsubscribe",
]

DEFAULT_CONFIG: Dict[str, Any] = {
    "log_level": "INFO",
    "user": {"name": "", "email": ""},
    "settings": {
        "use_local_llm": False,
        "verify_imap_folders": True,
        "max_email_chars": 2500,
        "max_emails_to_process_at_once": 500,
        "batch_size": 25,
        "batch_delay_ms": 2000,
        "refresh_interval": 15,
        "use_timestamp_filter": False,
        "process_read_emails": True,
        "timestamp_file_path": "lastTimestamp.txt",
        "sort_into_category_folders": True,
        "rejected_folder_name": "AI Rejects",
        "mark_all_rejected_emails_read": True,
        "star_all_kept_emails": False,
        "run_mode": "script",
        "port_number": 3003,
    },
    "imap": {
        "host": "imap.gmail.com",
        "port": 993,
        "user": "",
        "password_env": "IMAP_PASSWORD",
        "inbox": "INBOX",
    },
    "openai": {
        "model": "gpt-4o-mini",
        "base_url": "https://api.openai.com/v1",
        "temperature": 0.7,
        "timeout": 30,
    },
    "local_llm": {
        "post_url": "http://localhost:1234/v1/chat/completions",
        "temperature": 0.7,
        "timeout": 60,
    },
    "concurrency": {"max_concurrent": {"default": 3}},
    "retry": {
        "max_retries": 3,
        "base_backoff": 2.5,
        "max_rate_limit_retries": 10,
        "rate_limit_delay": 61.0,
        "attempt_timeout": 27.5,
    },
    "cache": {"enabled": True, "path": "~/.clearmail/cache/verdicts.jsonl"},
    "category_folder_names": DEFAULT_CATEGORIES,
    "rules": {"keep": "", "reject": ""},
}

_SCHEMA_PATH = os.path.join(os.path.dirname(__file__), "..", "json_schema", "config.schema.json")
_schema_cache: Optional[Dict[str, Any]] = None


def _default_config_path() -> str:
    base_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    return os.path.join(base_dir, "config.json")


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from JSON with sensible fallbacks.

    Candidates that do not exist are skipped; a candidate that exists but is
    unreadable or invalid raises ConfigError, so a typo never silently falls
    back to defaults.
    """
    candidates = []
    if path:
        candidates.append(path)
    env_path = os.environ.get("CLEARMAIL_CONFIG")
    if env_path:
        candidates.append(env_path)
    candidates.append(_default_config_path())
    candidates.append(_default_config_path() + ".example")

    for p in candidates:
        p_abs = os.path.abspath(os.path.expanduser(p))
        if not os.path.exists(p_abs):
            continue
        try:
            with open(p_abs, "r", encoding="utf-8") as f:
                user_cfg = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in config file {p_abs}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Cannot read config file {p_abs}: {e}") from e

        if not isinstance(user_cfg, dict):
            raise ConfigError(f"Configuration in {p_abs} must be a JSON object")

        cfg = _deep_merge(DEFAULT_CONFIG, user_cfg)
        validate_config(cfg)
        logger.info(f"Configuration loaded from {p_abs}")
        return cfg

    logger.warning(
        "No config found; using default configuration. Create 'clearmail/config.json' "
        "or set CLEARMAIL_CONFIG to customize."
    )
    return copy.deepcopy(DEFAULT_CONFIG)


def _load_schema() -> Dict[str, Any]:
    global _schema_cache
    if _schema_cache is None:
        with open(_SCHEMA_PATH, "r", encoding="utf-8") as f:
            _schema_cache = json.load(f)
    return _schema_cache


def validate_config(cfg: Dict[str, Any]) -> None:
    """Validate configuration using the bundled JSON Schema.

    Raises ConfigError listing every violation.
    """
    if not isinstance(cfg, dict):
        raise ConfigError("Configuration must be a JSON object/dict")

    validator = Draft7Validator(_load_schema())
    errors = sorted(validator.iter_errors(cfg), key=lambda e: list(e.path))
    if errors:
        details = "; ".join(
            f"{'/'.join(str(p) for p in err.path) or '<root>'}: {err.message}" for err in errors
        )
        raise ConfigError(f"Invalid configuration: {details}")


@dataclass
class Settings:
    """Typed view over the validated configuration."""
    use_local_llm: bool = False
    verify_imap_folders: bool = True
    max_email_chars: int = 2500
    max_emails_to_process_at_once: int = 500
    batch_size: int = 25
    batch_delay_ms: int = 2000
    refresh_interval: int = 15
    use_timestamp_filter: bool = False
    process_read_emails: bool = True
    timestamp_file_path: str = "lastTimestamp.txt"
    sort_into_category_folders: bool = True
    rejected_folder_name: str = "AI Rejects"
    mark_all_rejected_emails_read: bool = True
    star_all_kept_emails: bool = False
    run_mode: str = "script"
    port_number: int = 3003
    category_folder_names: List[str] = field(default_factory=lambda: list(DEFAULT_CATEGORIES))
    rules_keep: str = ""
    rules_reject: str = ""
    user_name: str = ""
    user_email: str = ""
    max_concurrent: Dict[str, int] = field(default_factory=lambda: {"default": 3})
    retry: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_CONFIG["retry"]))
    cache_enabled: bool = True
    cache_path: str = "~/.clearmail/cache/verdicts.jsonl"
    imap: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_CONFIG["imap"]))
    openai: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_CONFIG["openai"]))
    local_llm: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_CONFIG["local_llm"]))
    log_level: str = "INFO"

    @property
    def backend_kind(self) -> str:
        return "local" if self.use_local_llm else "openai"

    @property
    def batch_delay(self) -> float:
        return self.batch_delay_ms / 1000.0

    @property
    def required_folders(self) -> List[str]:
        if self.sort_into_category_folders:
            return list(self.category_folder_names)
        return [self.rejected_folder_name]


def settings_from_config(cfg: Dict[str, Any]) -> Settings:
    """Build a Settings object from a merged, validated configuration dict."""
    s = cfg.get("settings", {})
    try:
        settings = Settings(
            use_local_llm=bool(s.get("use_local_llm", False)),
            verify_imap_folders=bool(s.get("verify_imap_folders", True)),
            max_email_chars=int(s.get("max_email_chars", 2500)),
            max_emails_to_process_at_once=int(s.get("max_emails_to_process_at_once", 500)),
            batch_size=int(s.get("batch_size", 25)),
            batch_delay_ms=int(s.get("batch_delay_ms", 2000)),
            refresh_interval=int(s.get("refresh_interval", 15)),
            use_timestamp_filter=bool(s.get("use_timestamp_filter", False)),
            process_read_emails=bool(s.get("process_read_emails", True)),
            timestamp_file_path=str(s.get("timestamp_file_path", "lastTimestamp.txt")),
            sort_into_category_folders=bool(s.get("sort_into_category_folders", True)),
            rejected_folder_name=str(s.get("rejected_folder_name", "AI Rejects")),
            mark_all_rejected_emails_read=bool(s.get("mark_all_rejected_emails_read", True)),
            star_all_kept_emails=bool(s.get("star_all_kept_emails", False)),
            run_mode=str(s.get("run_mode", "script")),
            port_number=int(s.get("port_number", 3003)),
            category_folder_names=list(cfg.get("category_folder_names", DEFAULT_CATEGORIES)),
            rules_keep=cfg.get("rules", {}).get("keep", "") or "",
            rules_reject=cfg.get("rules", {}).get("reject", "") or "",
            user_name=cfg.get("user", {}).get("name", "") or "",
            user_email=cfg.get("user", {}).get("email", "") or "",
            max_concurrent=dict(cfg.get("concurrency", {}).get("max_concurrent", {"default": 3})),
            retry=_deep_merge(DEFAULT_CONFIG["retry"], cfg.get("retry", {})),
            cache_enabled=bool(cfg.get("cache", {}).get("enabled", True)),
            cache_path=str(cfg.get("cache", {}).get("path", DEFAULT_CONFIG["cache"]["path"])),
            imap=_deep_merge(DEFAULT_CONFIG["imap"], cfg.get("imap", {})),
            openai=_deep_merge(DEFAULT_CONFIG["openai"], cfg.get("openai", {})),
            local_llm=_deep_merge(DEFAULT_CONFIG["local_llm"], cfg.get("local_llm", {})),
            log_level=str(cfg.get("log_level", "INFO")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}") from e

    if settings.batch_size <= 0:
        raise ConfigError("settings.batch_size must be positive")
    if settings.max_emails_to_process_at_once < 0:
        raise ConfigError("settings.max_emails_to_process_at_once must not be negative")
    if not settings.category_folder_names:
        raise ConfigError("category_folder_names must not be empty")
    if settings.run_mode not in ("script", "server"):
        raise ConfigError(f"settings.run_mode must be 'script' or 'server', got {settings.run_mode!r}")
    return settings


if __name__ == "__main__":
    # Simple CLI for debugging
    print(json.dumps(load_config(), indent=2))
