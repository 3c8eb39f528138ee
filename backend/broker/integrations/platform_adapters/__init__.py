from broker.integrations.platform_adapters.base_adapter import (
    AdapterAuthError,
    AdapterError,
    AdapterPermanentError,
    AdapterResolutionError,
    AdapterRetryableError,
    BasePlatformAdapter,
    ConnectedIdentity,
)
from broker.integrations.platform_adapters.factory import get_platform_adapter, list_registered_platforms

__all__ = [
    "AdapterResolutionError",
    "AdapterError",
    "AdapterRetryableError",
    "AdapterPermanentError",
    "AdapterAuthError",
    "BasePlatformAdapter",
    "ConnectedIdentity",
    "get_platform_adapter",
    "list_registered_platforms",
]
