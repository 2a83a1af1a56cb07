"""
LABBUDDY CONFIG - Settings from labbuddy.toml and the Environment

Resolution order: environment (LABBUDDY_*) -> config/labbuddy.toml -> defaults.

Usage:
    from infrastructure.config import get_settings

    settings = get_settings()
    settings.persistence      # "memory" | "sqlite" | "rest"
    settings.llm_model        # LiteLLM model id

The provider key itself (ANTHROPIC_API_KEY, OPENAI_API_KEY, ...) is never
stored here; LiteLLM reads it from the environment.
"""
import os
import warnings
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import msgspec


DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "labbuddy.toml"

PERSISTENCE_BACKENDS = ("memory", "sqlite", "rest")


class Settings(msgspec.Struct, kw_only=True, frozen=True):
    """Runtime configuration for the server, the CLI and the collaborators."""
    # LLM collaborators
    llm_model: str = "anthropic/claude-sonnet-4-20250514"
    llm_temperature: float = 0.7
    llm_max_tokens: int = 1000
    rate_limit_rpm: int = 50
    rate_limit_tpm: int = 30000

    # Persistence collaborator
    persistence: str = "memory"               # memory | sqlite | rest
    db_path: str = "./data/labbuddy.db"
    rest_url: str = ""
    rest_key: str = ""
    user_id: str = "local"
    sync_attempts: int = 3

    # Attachments
    upload_dir: str = "./uploads"

    # Observability
    log_path: str = ""                        # Empty disables JSONL mutation logs
    log_level: str = "INFO"

    # Server
    host: str = "127.0.0.1"
    port: int = 8000
    cors_origins: Tuple[str, ...] = ("*",)


# (env var, settings field, converter)
_ENV_OVERRIDES = (
    ("LABBUDDY_LLM_MODEL", "llm_model", str),
    ("LABBUDDY_LLM_TEMPERATURE", "llm_temperature", float),
    ("LABBUDDY_LLM_MAX_TOKENS", "llm_max_tokens", int),
    ("LABBUDDY_RATE_LIMIT_RPM", "rate_limit_rpm", int),
    ("LABBUDDY_RATE_LIMIT_TPM", "rate_limit_tpm", int),
    ("LABBUDDY_PERSISTENCE", "persistence", str),
    ("LABBUDDY_DB_PATH", "db_path", str),
    ("LABBUDDY_REST_URL", "rest_url", str),
    ("LABBUDDY_REST_KEY", "rest_key", str),
    ("LABBUDDY_USER_ID", "user_id", str),
    ("LABBUDDY_UPLOAD_DIR", "upload_dir", str),
    ("LABBUDDY_LOG_PATH", "log_path", str),
    ("LABBUDDY_LOG_LEVEL", "log_level", str),
    ("LABBUDDY_HOST", "host", str),
    ("LABBUDDY_PORT", "port", int),
)


def load_toml_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load labbuddy.toml.

    Returns:
        Dict with all configuration sections ({} if the file is unreadable)
    """
    config_path = path or DEFAULT_CONFIG_PATH
    try:
        import tomllib
        with open(config_path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError:
        return {}
    except Exception as e:
        warnings.warn(f"Failed to load config from TOML: {e}")
        return {}


def _flatten(config: Dict[str, Any]) -> Dict[str, Any]:
    """Map the TOML sections onto flat Settings fields."""
    llm = config.get("llm", {})
    persistence = config.get("persistence", {})
    server = config.get("server", {})
    logging_cfg = config.get("logging", {})
    attachments = config.get("attachments", {})

    flat: Dict[str, Any] = {}
    for key, target in (
        ("model", "llm_model"),
        ("temperature", "llm_temperature"),
        ("max_tokens", "llm_max_tokens"),
        ("rate_limit_rpm", "rate_limit_rpm"),
        ("rate_limit_tpm", "rate_limit_tpm"),
    ):
        if key in llm:
            flat[target] = llm[key]
    for key, target in (
        ("backend", "persistence"),
        ("db_path", "db_path"),
        ("rest_url", "rest_url"),
        ("user_id", "user_id"),
        ("sync_attempts", "sync_attempts"),
    ):
        if key in persistence:
            flat[target] = persistence[key]
    for key in ("host", "port"):
        if key in server:
            flat[key] = server[key]
    if "cors_origins" in server:
        flat["cors_origins"] = tuple(server["cors_origins"])
    if "log_path" in logging_cfg:
        flat["log_path"] = logging_cfg["log_path"]
    if "level" in logging_cfg:
        flat["log_level"] = logging_cfg["level"]
    if "upload_dir" in attachments:
        flat["upload_dir"] = attachments["upload_dir"]
    return flat


def load_settings(
    path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """
    Build Settings from TOML plus environment overrides.

    Raises:
        ValueError: On a malformed override or an unknown persistence backend
    """
    environ = os.environ if environ is None else environ
    values = _flatten(load_toml_config(path))

    for env_var, field_name, converter in _ENV_OVERRIDES:
        raw = environ.get(env_var)
        if raw is None or raw == "":
            continue
        try:
            values[field_name] = converter(raw)
        except ValueError as e:
            raise ValueError(f"Invalid value for {env_var}: {raw!r}") from e

    try:
        settings = msgspec.convert(values, type=Settings)
    except msgspec.ValidationError as e:
        raise ValueError(f"Invalid configuration: {e}") from e

    if settings.persistence not in PERSISTENCE_BACKENDS:
        raise ValueError(
            f"Unknown persistence backend {settings.persistence!r}; "
            f"expected one of {', '.join(PERSISTENCE_BACKENDS)}"
        )
    return settings


# =============================================================================
# GLOBAL SINGLETON
# =============================================================================

_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or load the global settings."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def set_settings(settings: Optional[Settings]) -> None:
    """Replace the global settings (tests, CLI flags)."""
    global _settings
    _settings = settings


def reset_settings() -> None:
    """Forget the cached settings; the next get_settings() reloads them."""
    global _settings
    _settings = None
