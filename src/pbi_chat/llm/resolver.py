"""Active-configuration cache for the chat client.

The resolver never subscribes to change notifications itself; whoever
receives them calls :meth:`ConfigurationResolver.reload`.
"""

from __future__ import annotations

import logging
from typing import Protocol

from pbi_chat.types import ModelDescriptor, ProviderConfiguration

_logger = logging.getLogger(__name__)


class ConfigSource(Protocol):
    """Anything that can produce the active configuration (e.g. ``ConfigStore``)."""

    def load(self) -> ProviderConfiguration | None:
        ...


class ConfigurationResolver:
    """Holds the active ``ProviderConfiguration`` snapshot.

    Parameters
    ----------
    source:
        Optional configuration source.  Without one, configurations are
        installed explicitly via :meth:`use`.
    """

    def __init__(self, source: ConfigSource | None = None) -> None:
        self._source = source
        self._active: ProviderConfiguration | None = None

    @property
    def active(self) -> ProviderConfiguration | None:
        """The current snapshot; replaced as a whole on reload."""
        return self._active

    def use(self, config: ProviderConfiguration | None) -> None:
        self._active = config

    def load_active_configuration(self) -> ProviderConfiguration | None:
        """Reload from the source; any failure leaves the client unconfigured."""
        if self._source is None:
            return self._active
        try:
            config = self._source.load()
        except Exception as e:
            _logger.warning("Failed to load API configuration: %s", e)
            config = None
        self._active = config
        if config is not None:
            _logger.debug(
                "Active configuration: %s (%s, model=%s)",
                config.display_name, config.provider_type.value, config.resolved_model,
            )
        return config

    reload = load_active_configuration

    def is_configured(self) -> bool:
        config = self._active
        return bool(config and config.api_url and config.resolved_model)

    def available_models(self) -> list[ModelDescriptor]:
        config = self._active
        return list(config.models) if config else []

    def current_model(self) -> str | None:
        config = self._active
        if config is None:
            return None
        return config.resolved_model or None

    def config_name(self) -> str:
        config = self._active
        return config.display_name if config else "Unnamed Configuration"
