"""
Configuration for credential hub components.

Defaults are usable as-is; `HubConfig.from_options()` maps plugin-option
style keys (``credential-hub-*``) onto the dataclass fields.
"""

from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

from credential_hub.directory import is_null_address, normalize_address

DEFAULT_REGISTRY_ADDRESS = "0x0000000000000000000000000000000000008004"

OPTION_PREFIX = "credential-hub-"


@dataclass
class HubConfig:
    """Limits and well-known addresses shared by instances and factories."""
    default_registry_address: str = DEFAULT_REGISTRY_ADDRESS
    max_key_length: int = 256
    max_value_bytes: int = 65536
    max_display_name_length: int = 256
    rpc_method_prefix: str = "registry"
    event_history_size: int = 1000

    def __post_init__(self):
        self.default_registry_address = normalize_address(self.default_registry_address)
        if is_null_address(self.default_registry_address):
            raise ValueError("default_registry_address must not be the null address")
        for name in ("max_key_length", "max_value_bytes",
                     "max_display_name_length", "event_history_size"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")
        if not self.rpc_method_prefix or not isinstance(self.rpc_method_prefix, str):
            raise ValueError("rpc_method_prefix must be a non-empty string")

    @classmethod
    def from_options(cls, options: Optional[Dict[str, Any]]) -> "HubConfig":
        """Build a config from ``credential-hub-*`` options, ignoring unknown keys."""
        kwargs: Dict[str, Any] = {}
        known = {f.name: f for f in fields(cls)}
        for key, value in (options or {}).items():
            if not isinstance(key, str) or not key.startswith(OPTION_PREFIX):
                continue
            name = key[len(OPTION_PREFIX):].replace("-", "_")
            if name not in known or value is None:
                continue
            if known[name].type in (int, "int"):
                value = int(value)
            kwargs[name] = value
        return cls(**kwargs)
