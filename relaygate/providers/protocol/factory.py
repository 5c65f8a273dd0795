from __future__ import annotations

from importlib import import_module

from relaygate.core.config import get_settings
from relaygate.core.errors import ProviderConfigError
from relaygate.providers.protocol.base import ProtocolClient
from relaygate.providers.protocol.fake import FakeProtocolClient


def get_protocol_client(name: str | None = None) -> ProtocolClient:
    settings = get_settings()
    provider = (name or settings.protocol_client or "").strip()

    if not provider:
        raise ProviderConfigError("PROTOCOL_CLIENT is not configured")
    if provider.lower() == "fake":
        return FakeProtocolClient()
    if ":" not in provider:
        raise ProviderConfigError(f"Unsupported protocol client: {provider}")

    # External clients are loaded from "package.module:factory" and called without arguments.
    module_name, _, attr = provider.partition(":")
    try:
        module = import_module(module_name)
    except ImportError as exc:
        raise ProviderConfigError(f"Cannot import protocol client module {module_name}") from exc
    factory = getattr(module, attr, None)
    if factory is None or not callable(factory):
        raise ProviderConfigError(f"Protocol client factory {provider} is not callable")
    return factory()
