"""Chat-completion client and provider adapters for pbi-chat."""

from pbi_chat.llm.adapters import ProviderAdapter, adapter_for, rewrite_localhost
from pbi_chat.llm.client import ChatClient
from pbi_chat.llm.resolver import ConfigurationResolver
from pbi_chat.llm.stream_parser import StreamNormalizer

__all__ = [
    "ChatClient",
    "ConfigurationResolver",
    "ProviderAdapter",
    "StreamNormalizer",
    "adapter_for",
    "rewrite_localhost",
]
