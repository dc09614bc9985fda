"""Device Registry - device identity and persona links."""

from veilguard.registry.device_registry import DeviceRegistry
from veilguard.registry.validation import TokenValidator

__all__ = ["DeviceRegistry", "TokenValidator"]
