import importlib

from whatsdesk.services.whatsapp.auth_state import AuthStateStore
from whatsdesk.services.whatsapp.backoff import ReconnectBackoff
from whatsdesk.services.whatsapp.base import (
    AuthState,
    ConnectionUpdate,
    DisconnectInfo,
    ProviderClient,
    ProviderEvent,
    ProviderSession,
)
from whatsdesk.services.whatsapp.session import ConnectionState, Session
from whatsdesk.services.whatsapp.supervisor import ConnectionSupervisor, NotConnectedError


def load_provider_client(path: str) -> ProviderClient:
    """Build the provider client from a ``package.module:factory`` path."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Provider path must look like 'module:factory', got {path!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    client = factory()
    if not isinstance(client, ProviderClient):
        raise TypeError(f"{path} did not return a ProviderClient")
    return client


__all__ = [
    "AuthState",
    "AuthStateStore",
    "ConnectionState",
    "ConnectionSupervisor",
    "ConnectionUpdate",
    "DisconnectInfo",
    "NotConnectedError",
    "ProviderClient",
    "ProviderEvent",
    "ProviderSession",
    "ReconnectBackoff",
    "Session",
    "load_provider_client",
]
