"""Async multi-provider chat client.

Sends a conversation to the active provider configuration and returns a
provider-independent :class:`ChatResult`.  Buffered responses are parsed as
a single JSON document; when a progress callback is supplied the response
is streamed and the callback receives the cumulative text.

Public methods never raise: every failure comes back as a result value
carrying an :class:`ErrorKind`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Mapping, Sequence, TypeVar, Union
from urllib.parse import urlsplit

import httpx

from pbi_chat.config import ClientSettings, ConfigStore, ConfigStoreError, StoredConfigs
from pbi_chat.types import (
    ChatResult,
    ConversationTurn,
    ErrorKind,
    ModelDescriptor,
    OperationResult,
    ProviderConfiguration,
    ProviderType,
    Role,
    WireRequest,
)

from .adapters import ProviderAdapter, adapter_for, rewrite_localhost
from .errors import (
    INVALID_URL_MESSAGE,
    NOT_CONFIGURED_MESSAGE,
    MalformedResponse,
    RequestAborted,
    describe_transport_error,
    error_message_from_body,
)
from .resolver import ConfigurationResolver
from .stream_parser import ProgressCallback, StreamNormalizer

_logger = logging.getLogger(__name__)

_T = TypeVar("_T")

TurnLike = Union[ConversationTurn, Mapping[str, Any]]

_TEST_TURNS = (ConversationTurn(Role.USER.value, "Test"),)
_OLLAMA_TEST_TURNS = (
    ConversationTurn(Role.SYSTEM.value, "You are a helpful assistant."),
    ConversationTurn(Role.USER.value, "Test"),
)


@dataclass(frozen=True)
class _Rejection:
    """A non-2xx response with its best available error message."""

    status_code: int
    message: str


def _coerce_turns(turns: Sequence[TurnLike]) -> list[ConversationTurn]:
    return [
        t if isinstance(t, ConversationTurn) else ConversationTurn.from_dict(dict(t))
        for t in turns
    ]


def _decode_body(body: bytes) -> dict[str, Any]:
    try:
        data = json.loads(body)
    except ValueError as e:
        raise MalformedResponse(f"Invalid JSON in response body: {e}") from e
    if not isinstance(data, dict):
        raise MalformedResponse("Response body is not a JSON object")
    return data


class ChatClient:
    """Chat-completion client for OpenAI, Anthropic, Google, Ollama and
    generic Bearer-token endpoints.

    Parameters
    ----------
    store:
        Configuration store.  The active configuration is loaded from it
        on construction and again on every :meth:`reload`.
    config:
        An explicit configuration to use instead of a store.
    settings:
        Timeouts and token limits.  Defaults to the store's ``client:``
        section, or built-in defaults.
    transport:
        Optional httpx transport (e.g. ``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        store: ConfigStore | None = None,
        *,
        config: ProviderConfiguration | None = None,
        settings: ClientSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._store = store
        self._resolver = ConfigurationResolver(store)
        self.settings = settings or self._load_settings(store)
        self._http = httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(None, connect=30),
            follow_redirects=True,
        )
        if config is not None:
            self._resolver.use(config)
        else:
            self._resolver.reload()

    @staticmethod
    def _load_settings(store: ConfigStore | None) -> ClientSettings:
        loader = getattr(store, "client_settings", None)
        if loader is None:
            return ClientSettings()
        try:
            return loader()
        except Exception as e:
            _logger.warning("Failed to load client settings, using defaults: %s", e)
            return ClientSettings()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def config(self) -> ProviderConfiguration | None:
        return self._resolver.active

    def reload(self) -> ProviderConfiguration | None:
        """Re-read the active configuration (call on settings-changed)."""
        return self._resolver.reload()

    def use_config(self, config: ProviderConfiguration | None) -> None:
        self._resolver.use(config)

    def is_configured(self) -> bool:
        return self._resolver.is_configured()

    def get_available_models(self) -> list[ModelDescriptor]:
        return self._resolver.available_models()

    def get_current_model(self) -> str | None:
        return self._resolver.current_model()

    def get_config_name(self) -> str:
        return self._resolver.config_name()

    def get_all_configs(self) -> StoredConfigs:
        if self._store is None:
            return StoredConfigs()
        try:
            return self._store.get_all()
        except (ConfigStoreError, OSError) as e:
            _logger.warning("Failed to load all configurations: %s", e)
            return StoredConfigs()

    def save_config(self, config: ProviderConfiguration) -> OperationResult:
        """Persist *config*; on success ``message`` holds its id."""
        saved: list[str] = []
        result = self._mutate(lambda store: saved.append(store.save(config)))
        if result.success:
            return OperationResult(success=True, message=saved[0])
        return result

    def set_active_config(self, config_id: str, model_name: str | None = None) -> OperationResult:
        return self._mutate(lambda store: store.set_active(config_id, model_name))

    def set_selected_model(self, model_name: str) -> OperationResult:
        return self._mutate(lambda store: store.set_selected_model(model_name))

    def delete_config(self, config_id: str) -> OperationResult:
        return self._mutate(lambda store: store.delete(config_id))

    def _mutate(self, action) -> OperationResult:
        if self._store is None:
            return OperationResult.failure(ErrorKind.STORAGE, "Settings storage not available")
        try:
            action(self._store)
        except KeyError as e:
            return OperationResult.failure(ErrorKind.STORAGE, f"Unknown configuration: {e.args[0]}")
        except (ConfigStoreError, OSError) as e:
            _logger.warning("Settings update failed: %s", e)
            return OperationResult.failure(ErrorKind.STORAGE, str(e))
        self.reload()
        return OperationResult(success=True)

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    async def send_message(
        self,
        turns: Sequence[TurnLike],
        on_update: ProgressCallback | None = None,
        *,
        timeout: float | None = None,
        abort: asyncio.Event | None = None,
    ) -> ChatResult:
        """Send *turns* to the active provider.

        Supplying *on_update* switches to streaming mode; it is called with
        the cumulative response text after every delta.  *timeout* overrides
        the provider's default deadline; setting *abort* cancels the call.
        """
        config = self._resolver.active
        if config is None or not self._resolver.is_configured():
            return ChatResult.failure(ErrorKind.NOT_CONFIGURED, NOT_CONFIGURED_MESSAGE)

        adapter = adapter_for(config.provider_type)
        streaming = on_update is not None
        request = adapter.build_request(
            config,
            _coerce_turns(turns),
            stream=streaming,
            max_tokens=self.settings.max_output_tokens,
        )
        deadline = timeout if timeout is not None else self.settings.timeout_for(config.provider_type)

        _logger.debug(
            "Chat request: provider=%s model=%s turns=%d stream=%s",
            config.provider_type.value, config.resolved_model, len(turns), streaming,
        )
        try:
            outcome = await self._guarded(
                self._exchange(adapter, request, on_update), deadline, abort,
            )
        except (httpx.TransportError, RequestAborted) as e:
            kind, message = describe_transport_error(e, config.provider_type, request.url, deadline)
            _logger.warning("Chat request failed (%s): %s", kind.value, e)
            return ChatResult.failure(kind, message)
        except httpx.InvalidURL as e:
            return ChatResult.failure(ErrorKind.NOT_CONFIGURED, f"{INVALID_URL_MESSAGE}: {e}")
        except MalformedResponse as e:
            return ChatResult.failure(ErrorKind.MALFORMED_RESPONSE, str(e))
        except Exception as e:
            _logger.exception("Unexpected error during chat request")
            return ChatResult.failure(ErrorKind.NETWORK, f"Unexpected error: {e}")

        if isinstance(outcome, _Rejection):
            _logger.warning("Provider rejected request (%d): %s", outcome.status_code, outcome.message)
            return ChatResult.failure(ErrorKind.PROTOCOL_REJECTED, outcome.message)

        if streaming:
            text, usage = outcome
        else:
            text, usage = adapter.parse_response(outcome)
        return ChatResult.ok(
            text,
            model=config.resolved_model,
            provider=config.display_name,
            usage=usage,
        )

    # ------------------------------------------------------------------
    # Connection test
    # ------------------------------------------------------------------

    async def test_connection(self, config: ProviderConfiguration) -> OperationResult:
        """Minimal round trip against *config*; the active config is untouched."""
        if not config.api_url or not config.resolved_model:
            return OperationResult.failure(
                ErrorKind.NOT_CONFIGURED, "Configuration needs an API URL and a model",
            )

        is_ollama = config.provider_type is ProviderType.OLLAMA
        if is_ollama:
            ping_failure = await self._ping_ollama(config)
            if ping_failure is not None:
                return ping_failure

        adapter = adapter_for(config.provider_type)
        request = adapter.build_request(
            config,
            _OLLAMA_TEST_TURNS if is_ollama else _TEST_TURNS,
            stream=False,
            max_tokens=self.settings.test_max_tokens,
        )
        deadline = self.settings.ollama_timeout if is_ollama else self.settings.test_timeout

        data: dict[str, Any] | None
        try:
            outcome = await self._guarded(self._exchange(adapter, request, None), deadline, None)
        except (httpx.TransportError, RequestAborted) as e:
            kind, message = describe_transport_error(e, config.provider_type, request.url, deadline)
            return OperationResult.failure(kind, message)
        except httpx.InvalidURL as e:
            return OperationResult.failure(ErrorKind.NOT_CONFIGURED, f"{INVALID_URL_MESSAGE}: {e}")
        except MalformedResponse:
            outcome = None
        except Exception as e:
            _logger.exception("Unexpected error during connection test")
            return OperationResult.failure(ErrorKind.NETWORK, f"Unexpected error: {e}")

        if isinstance(outcome, _Rejection):
            return OperationResult.failure(ErrorKind.PROTOCOL_REJECTED, outcome.message)
        data = outcome

        if is_ollama:
            if data is not None and isinstance(data.get("response"), str):
                return OperationResult(success=True, message="Ollama connection successful")
            return OperationResult.failure(ErrorKind.INVALID_RESPONSE, "Invalid Ollama response format")
        if data is not None and any(k in data for k in ("choices", "content", "candidates")):
            return OperationResult(success=True, message="API connection successful")
        return OperationResult(success=True, message="Connection successful (response format may vary)")

    async def _ping_ollama(self, config: ProviderConfiguration) -> OperationResult | None:
        try:
            parts = urlsplit(rewrite_localhost(config.api_url))
            base_url = f"{parts.scheme}://{parts.netloc}"
            resp = await self._http.get(base_url, timeout=self.settings.ping_timeout)
        except (httpx.InvalidURL, ValueError) as e:
            return OperationResult.failure(
                ErrorKind.NOT_CONFIGURED, f"{INVALID_URL_MESSAGE}: {config.api_url} ({e})",
            )
        except httpx.HTTPError as e:
            return OperationResult.failure(
                ErrorKind.CONNECTION_REFUSED,
                "Cannot reach Ollama service. Make sure Ollama is running on "
                f"localhost:11434. Error: {str(e) or e.__class__.__name__}",
            )
        if not resp.is_success:
            return OperationResult.failure(
                ErrorKind.PROTOCOL_REJECTED,
                f"Ollama service not responding on {base_url}. Status: {resp.status_code}",
            )
        return None

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _exchange(
        self,
        adapter: ProviderAdapter,
        request: WireRequest,
        on_update: ProgressCallback | None,
    ) -> Any:
        """Dispatch *request*, retrying once if the adapter offers a
        compatible body for the rejection."""
        outcome = await self._post(adapter, request, on_update)
        if isinstance(outcome, _Rejection):
            retry_body = adapter.compat_retry_body(request.body, outcome.message)
            if retry_body is not None:
                _logger.info("Retrying with max_tokens parameter for older OpenAI model...")
                outcome = await self._post(adapter, replace(request, body=retry_body), on_update)
        return outcome

    async def _post(
        self,
        adapter: ProviderAdapter,
        request: WireRequest,
        on_update: ProgressCallback | None,
    ) -> Any:
        """One attempt.  Returns a ``_Rejection``, the decoded JSON body, or
        ``(text, usage)`` when streaming."""
        async with self._http.stream(
            "POST", request.url, headers=request.headers, json=request.body,
        ) as resp:
            if not resp.is_success:
                body = await resp.aread()
                return _Rejection(
                    resp.status_code,
                    error_message_from_body(body, resp.status_code, resp.reason_phrase),
                )
            if on_update is not None:
                return await StreamNormalizer(adapter, on_update).consume(resp.aiter_lines())
            body = await resp.aread()
        return _decode_body(body)

    @staticmethod
    async def _guarded(
        coro: Awaitable[_T],
        timeout: float | None,
        abort: asyncio.Event | None,
    ) -> _T:
        """Await *coro* under a deadline and an optional abort event."""
        task = asyncio.ensure_future(coro)
        waiters: set[asyncio.Future[Any]] = {task}
        abort_waiter = None
        if abort is not None:
            abort_waiter = asyncio.ensure_future(abort.wait())
            waiters.add(abort_waiter)
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if abort_waiter is not None:
                abort_waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if abort is not None and abort.is_set():
            raise RequestAborted(ErrorKind.CANCELLED)
        raise RequestAborted(ErrorKind.TIMEOUT, timeout)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._http.aclose()

    async def __aenter__(self) -> ChatClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
