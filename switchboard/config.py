"""
Config loader for switchboard.
Reads config.yaml once (path from the argument, $SWITCHBOARD_CONFIG, or the
working directory). ${ENV_VAR} references anywhere in the file are resolved
from the environment, after .env has been loaded.

The *_from_config helpers turn the raw dict into the typed settings the
dispatcher and history store take.
"""

import logging
import os
import re
from pathlib import Path

import yaml
from dotenv import load_dotenv

from switchboard.models import (
    DEFAULT_OFFICIAL_BASE_URL,
    DEFAULT_WEB_BASE_URL,
    DocumentProcessingSettings,
    EndpointConfig,
    GrokSettings,
    OfficialSettings,
    OpenAICompatibleSettings,
    ProviderSettings,
    WebClientSettings,
)
from switchboard.storage.policy import StoragePolicy

load_dotenv()

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "SWITCHBOARD_CONFIG"
_DEFAULT_CONFIG_PATH = Path("config.yaml")

PROVIDER_NAMES = ("official", "web", "openai", "grok")

_config: dict | None = None


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with actual environment variable values."""
    def replacer(match):
        return os.environ.get(match.group(1), "")
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _walk_and_resolve(obj):
    """Recursively resolve env vars in all string values."""
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    elif isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def config_path(path: Path | str | None = None) -> Path:
    if path:
        return Path(path)
    env = os.environ.get(CONFIG_ENV_VAR)
    if env:
        return Path(env)
    return _DEFAULT_CONFIG_PATH


def load_config(path: Path | str | None = None, reload: bool = False) -> dict:
    """Load and cache config from YAML file."""
    global _config
    if _config is not None and not reload and path is None:
        return _config

    cfg_path = config_path(path)
    if not cfg_path.exists():
        raise FileNotFoundError(f"Config not found: {cfg_path}")

    with open(cfg_path) as f:
        raw = yaml.safe_load(f) or {}

    _config = _walk_and_resolve(raw)
    logger.debug("Loaded config from %s", cfg_path)
    return _config


def get_config() -> dict:
    """Return cached config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


# ---------------------------------------------------------------------------
# Typed views
# ---------------------------------------------------------------------------

def _parse_indices(value) -> tuple[int, ...]:
    """Account indices as a list or a "0, 1, 2" string; junk entries dropped."""
    if value is None or value == "":
        return (0,)
    items = value.split(",") if isinstance(value, str) else value
    if not isinstance(items, (list, tuple)):
        items = [items]
    indices = []
    for item in items:
        try:
            idx = int(str(item).strip())
        except ValueError:
            logger.warning("Ignoring invalid account index %r", item)
            continue
        if idx >= 0 and idx not in indices:
            indices.append(idx)
    return tuple(indices) or (0,)


def _endpoint_configs(raw_configs) -> tuple[EndpointConfig, ...]:
    configs = []
    for i, raw in enumerate(raw_configs or []):
        if not isinstance(raw, dict):
            continue
        models = raw.get("models") or []
        if isinstance(models, str):
            models = [m.strip() for m in models.split(",") if m.strip()]
        configs.append(EndpointConfig(
            id=str(raw.get("id") or f"cfg_{i}"),
            base_url=raw.get("base_url", ""),
            api_key=raw.get("api_key", ""),
            provider_type=raw.get("provider_type", "openai"),
            models=tuple(models),
            active_model_id=raw.get("active_model_id"),
            max_tokens=int(raw.get("max_tokens", 8192)),
            thinking_enabled=bool(raw.get("thinking_enabled", False)),
            thinking_budget=int(raw.get("thinking_budget", 10000)),
        ))
    return tuple(configs)


def settings_from_config(cfg: dict, provider: str | None = None) -> ProviderSettings:
    """
    Build the settings variant for `provider` (default: cfg["provider"]).
    Unknown provider names fall back to the web client.
    """
    name = provider or cfg.get("provider", "web")
    if name not in PROVIDER_NAMES:
        logger.warning("Unknown provider '%s', falling back to web", name)
        name = "web"

    section = cfg.get(name) or {}
    timeout = float(section.get("timeout", 120))

    if name == "official":
        return OfficialSettings(
            api_key=section.get("api_key", ""),
            base_url=section.get("base_url") or DEFAULT_OFFICIAL_BASE_URL,
            model=section.get("model", ""),
            thinking_level=section.get("thinking_level", "low"),
            timeout=timeout,
        )
    if name == "openai":
        return OpenAICompatibleSettings(
            base_url=section.get("base_url", ""),
            api_key=section.get("api_key", ""),
            model=section.get("model", ""),
            provider_type=section.get("provider_type", "openai"),
            max_tokens=int(section.get("max_tokens", 8192)),
            thinking_enabled=bool(section.get("thinking_enabled", False)),
            thinking_budget=int(section.get("thinking_budget", 10000)),
            configs=_endpoint_configs(section.get("configs")),
            active_config_id=section.get("active_config_id"),
            timeout=timeout,
        )
    if name == "grok":
        return GrokSettings(
            model=section.get("model", "grok-4"),
            cookies=dict(section.get("cookies") or {}),
            timeout=timeout,
        )
    return WebClientSettings(
        account_indices=_parse_indices(section.get("account_indices")),
        models=tuple(section.get("models") or ()),
        active_model_id=section.get("active_model_id"),
        cookies=dict(section.get("cookies") or {}),
        base_url=section.get("base_url") or DEFAULT_WEB_BASE_URL,
        timeout=timeout,
    )


def document_settings_from_config(cfg: dict) -> DocumentProcessingSettings:
    section = cfg.get("document_processing") or {}
    defaults = DocumentProcessingSettings()
    return DocumentProcessingSettings(
        enabled=bool(section.get("enabled", False)),
        base_url=section.get("base_url", defaults.base_url),
        api_key=section.get("api_key", ""),
        model=section.get("model", defaults.model),
        timeout=float(section.get("timeout", defaults.timeout)),
    )


def storage_policy_from_config(cfg: dict) -> StoragePolicy:
    section = cfg.get("storage") or {}
    defaults = StoragePolicy()
    return StoragePolicy(
        max_conversations=int(section.get("max_conversations", defaults.max_conversations)),
        soft_limit_ratio=float(section.get("soft_limit_ratio", defaults.soft_limit_ratio)),
        cleanup_target_ratio=float(section.get("cleanup_target_ratio", defaults.cleanup_target_ratio)),
        storage_threshold_ratio=float(section.get("storage_threshold_ratio", defaults.storage_threshold_ratio)),
        quota_bytes=int(section.get("quota_bytes", defaults.quota_bytes)),
    )
