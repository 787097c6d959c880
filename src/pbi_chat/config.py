"""Persistent provider configurations for pbi-chat.

Settings discovery (first match wins):
  1. ``--settings`` flag / explicit path
  2. ``./pbi_chat.yaml``
  3. ``~/.config/pbi-chat/settings.yaml``

A missing file behaves like an empty document; the first write creates it.
"""

from __future__ import annotations

import logging
import random
import string
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from pbi_chat.types import ModelDescriptor, ProviderConfiguration, ProviderType

_logger = logging.getLogger(__name__)


class ConfigStoreError(Exception):
    """The settings document could not be read, parsed or written."""


# ---------------------------------------------------------------------------
# Client settings
# ---------------------------------------------------------------------------

@dataclass
class ClientSettings:
    """Timeouts (seconds) and token limits used by ``ChatClient``."""

    request_timeout: float = 60.0
    ollama_timeout: float = 120.0
    test_timeout: float = 10.0
    ping_timeout: float = 5.0
    max_output_tokens: int = 4096
    test_max_tokens: int = 5

    def timeout_for(self, provider_type: ProviderType) -> float:
        if provider_type is ProviderType.OLLAMA:
            return self.ollama_timeout
        return self.request_timeout


# ---------------------------------------------------------------------------
# Persisted document
# ---------------------------------------------------------------------------

class StoredModel(BaseModel):
    name: str
    is_default: bool = False


class StoredConfig(BaseModel):
    id: str = ""
    name: str = ""
    provider_type: str = "standard"
    api_url: str = ""
    api_key: str = ""
    models: list[StoredModel] = Field(default_factory=list)
    model_name: str | None = None  # legacy single-model field


class ClientSection(BaseModel):
    request_timeout: float | None = None
    ollama_timeout: float | None = None
    test_timeout: float | None = None
    ping_timeout: float | None = None
    max_output_tokens: int | None = None
    test_max_tokens: int | None = None


class SettingsDocument(BaseModel):
    active_config_id: str | None = None
    selected_model: str | None = None
    configs: list[StoredConfig] = Field(default_factory=list)
    client: ClientSection = Field(default_factory=ClientSection)
    api_config: dict[str, Any] | None = None  # legacy single-config layout


@dataclass
class StoredConfigs:
    """All saved configurations plus the active id."""

    configs: list[ProviderConfiguration] = field(default_factory=list)
    active_id: str | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./pbi_chat.yaml"),
    Path.home() / ".config" / "pbi-chat" / "settings.yaml",
]


def default_settings_path() -> Path:
    """Return the first existing search path, or the user-level default."""
    for candidate in _SEARCH_PATHS:
        if candidate.exists():
            return candidate
    return _SEARCH_PATHS[-1]


def generate_config_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{int(time.time() * 1000)}{suffix}"


def _normalize_defaults(models: list[StoredModel]) -> None:
    """Leave exactly one model flagged default when the list is non-empty."""
    seen = False
    for model in models:
        if model.is_default and not seen:
            seen = True
        else:
            model.is_default = False
    if models and not seen:
        models[0].is_default = True


def _migrate_model_name(cfg: StoredConfig) -> bool:
    """Convert the legacy ``model_name`` field into a one-entry model list."""
    if cfg.model_name and not cfg.models:
        cfg.models = [StoredModel(name=cfg.model_name, is_default=True)]
        cfg.model_name = None
        return True
    if cfg.model_name is not None:
        cfg.model_name = None
        return True
    return False


def _to_runtime(cfg: StoredConfig, model_name: str = "") -> ProviderConfiguration:
    return ProviderConfiguration(
        id=cfg.id,
        name=cfg.name,
        provider_type=ProviderType.resolve(cfg.provider_type, cfg.api_url),
        api_url=cfg.api_url,
        api_key=cfg.api_key,
        models=[ModelDescriptor(m.name, m.is_default) for m in cfg.models],
        model_name=model_name,
    )


def _to_stored(config: ProviderConfiguration) -> StoredConfig:
    return StoredConfig(
        id=config.id,
        name=config.name,
        provider_type=config.provider_type.value,
        api_url=config.api_url,
        api_key=config.api_key,
        models=[StoredModel(name=m.name, is_default=m.is_default) for m in config.models],
        model_name=config.model_name or None,
    )


def _pick_model(cfg: StoredConfig, selected: str | None) -> str:
    if not cfg.models:
        return ""
    if selected:
        for model in cfg.models:
            if model.name == selected:
                return model.name
    else:
        for model in cfg.models:
            if model.is_default:
                return model.name
    return cfg.models[0].name


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class ConfigStore:
    """YAML-backed store of provider configurations.

    Parameters
    ----------
    path:
        Settings file.  If *None*, the default search paths are used.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path is not None else default_settings_path()

    # ------------------------------------------------------------------
    # Document I/O
    # ------------------------------------------------------------------

    def _read(self) -> SettingsDocument:
        if not self.path.exists():
            return SettingsDocument()
        try:
            with open(self.path, encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigStoreError(f"Invalid settings file {self.path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigStoreError(f"Settings file {self.path} must contain a mapping")
        try:
            doc = SettingsDocument.model_validate(raw)
        except ValidationError as e:
            raise ConfigStoreError(f"Invalid settings file {self.path}: {e}") from e

        if self._migrate(doc):
            _logger.info("Migrated legacy settings in %s", self.path)
            self._write(doc)
        return doc

    def _write(self, doc: SettingsDocument) -> None:
        data = doc.model_dump(exclude_none=True)
        data.pop("api_config", None)
        if not data.get("client"):
            data.pop("client", None)
        for cfg in data.get("configs", []):
            cfg.pop("model_name", None)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, sort_keys=False, allow_unicode=True)

    @staticmethod
    def _migrate(doc: SettingsDocument) -> bool:
        changed = False
        if doc.api_config and not doc.configs:
            legacy = StoredConfig.model_validate(doc.api_config)
            legacy.id = f"migrated-{int(time.time() * 1000)}"
            doc.configs = [legacy]
            doc.active_config_id = legacy.id
            changed = True
        if doc.api_config is not None:
            doc.api_config = None
            changed = True
        for cfg in doc.configs:
            if _migrate_model_name(cfg):
                changed = True
        return changed

    # ------------------------------------------------------------------
    # Storage interface
    # ------------------------------------------------------------------

    def load(self) -> ProviderConfiguration | None:
        """Return the active configuration with its model resolved."""
        doc = self._read()
        if not doc.configs:
            return None
        if doc.active_config_id:
            for cfg in doc.configs:
                if cfg.id == doc.active_config_id:
                    return _to_runtime(cfg, _pick_model(cfg, doc.selected_model))
        first = doc.configs[0]
        return _to_runtime(first, _pick_model(first, None))

    def save(self, config: ProviderConfiguration) -> str:
        """Insert or replace *config* and return its id."""
        doc = self._read()
        stored = _to_stored(config)
        if not stored.id:
            stored.id = generate_config_id()
        _migrate_model_name(stored)
        _normalize_defaults(stored.models)

        for i, existing in enumerate(doc.configs):
            if existing.id == stored.id:
                doc.configs[i] = stored
                break
        else:
            doc.configs.append(stored)

        if not doc.active_config_id or len(doc.configs) == 1:
            doc.active_config_id = stored.id
        self._write(doc)
        _logger.info("Saved configuration %s (%s)", stored.id, stored.name)
        return stored.id

    def get_all(self) -> StoredConfigs:
        doc = self._read()
        return StoredConfigs(
            configs=[_to_runtime(cfg) for cfg in doc.configs],
            active_id=doc.active_config_id,
        )

    def set_active(self, config_id: str, model_name: str | None = None) -> None:
        doc = self._read()
        if not any(cfg.id == config_id for cfg in doc.configs):
            raise KeyError(config_id)
        doc.active_config_id = config_id
        doc.selected_model = model_name or None
        self._write(doc)

    def set_selected_model(self, model_name: str) -> None:
        doc = self._read()
        doc.selected_model = model_name or None
        self._write(doc)

    def delete(self, config_id: str) -> None:
        doc = self._read()
        remaining = [cfg for cfg in doc.configs if cfg.id != config_id]
        if len(remaining) == len(doc.configs):
            raise KeyError(config_id)
        doc.configs = remaining
        if doc.active_config_id == config_id:
            doc.active_config_id = remaining[0].id if remaining else None
            doc.selected_model = None
        self._write(doc)

    def client_settings(self) -> ClientSettings:
        """Return ``ClientSettings`` overridden by the ``client:`` section."""
        doc = self._read()
        overrides = doc.client.model_dump(exclude_none=True)
        return ClientSettings(**overrides)
