"""
stratum.providers

Unified aggregator import for:
- The Provider interface and ResourceSchema
- ProviderName
- The built-in providers (MemoryProvider, LocalProvider)
- A provider factory map keyed by ProviderName.
"""

from enum import Enum
from typing import Any, Callable, Dict

from stratum.errors import ConfigError
from stratum.providers.base import Provider, ResourceSchema
from stratum.providers.local import LocalProvider
from stratum.providers.memory import MemoryProvider
from stratum.providers.schemas import BUILTIN_SCHEMAS


# --------------------------
# 1) ProviderName
# --------------------------
class ProviderName(str, Enum):
    memory = "memory"
    local = "local"


# --------------------------
# 2) Dictionary-based factory dispatch
# --------------------------
def _memory(options: Dict[str, Any]) -> Provider:
    return MemoryProvider(latency=options.get("latency"))


def _local(options: Dict[str, Any]) -> Provider:
    if "path" not in options:
        raise ConfigError("The 'local' provider requires a 'path' option.")
    return LocalProvider(path=options["path"], latency=options.get("latency"))


PROVIDER_MAP: Dict[ProviderName, Callable[[Dict[str, Any]], Provider]] = {
    ProviderName.memory: _memory,
    ProviderName.local: _local,
}


def get_provider(name: str, options: Dict[str, Any]) -> Provider:
    """Build the provider registered under `name`.

    Raises:
        ConfigError: If no provider has that name.
    """
    try:
        provider_name = ProviderName(name)
    except ValueError as exc:
        raise ConfigError(f"Unsupported provider: {name}") from exc
    return PROVIDER_MAP[provider_name](options)


__all__ = [
    "BUILTIN_SCHEMAS",
    "LocalProvider",
    "MemoryProvider",
    "Provider",
    "ProviderName",
    "ResourceSchema",
    "get_provider",
]
