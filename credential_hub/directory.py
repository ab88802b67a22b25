"""
Address directory: the deployment substrate instances and registries live in.

Maps 20-byte hex addresses to deployed objects (registries, the template,
credential instances). Deployment is atomic under the directory lock and an
address can hold at most one live object.
"""

import threading
from typing import Any, Dict, List, Optional

from credential_hub.errors import AddressOccupied


NULL_ADDRESS = "0x" + "0" * 40
ADDRESS_HEX_LEN = 40


def normalize_address(value: Any) -> str:
    """Return the canonical lowercase 0x-form of an address.

    None and the empty string map to NULL_ADDRESS. Raises ValueError for
    anything that is not 20 bytes of hex.
    """
    if value is None or value == "":
        return NULL_ADDRESS
    if isinstance(value, (bytes, bytearray)):
        if len(value) != ADDRESS_HEX_LEN // 2:
            raise ValueError(f"address must be 20 bytes, got {len(value)}")
        return "0x" + bytes(value).hex()
    if not isinstance(value, str):
        raise ValueError(f"address must be a hex string, got {type(value).__name__}")
    text = value.strip().lower()
    if text.startswith("0x"):
        text = text[2:]
    if len(text) != ADDRESS_HEX_LEN:
        raise ValueError(f"address must be {ADDRESS_HEX_LEN} hex chars: {value!r}")
    try:
        int(text, 16)
    except ValueError:
        raise ValueError(f"address is not hex: {value!r}") from None
    return "0x" + text


def is_null_address(value: Any) -> bool:
    return normalize_address(value) == NULL_ADDRESS


def address_bytes(value: Any) -> bytes:
    return bytes.fromhex(normalize_address(value)[2:])


class AddressDirectory:
    """In-process view of everything deployed at an address."""

    def __init__(self, plugin=None):
        self.plugin = plugin
        self._objects: Dict[str, Any] = {}
        # Shared by every object deployed here; serializes all state transitions.
        self.lock = threading.RLock()

    def _log(self, msg: str, level: str = "info") -> None:
        if self.plugin:
            try:
                self.plugin.log(f"credential-hub: directory: {msg}", level=level)
            except Exception:
                pass

    def deploy(self, address: Any, obj: Any) -> str:
        """Place obj at address. Raises AddressOccupied if something lives there."""
        address = normalize_address(address)
        if is_null_address(address):
            raise ValueError("cannot deploy to the null address")
        with self.lock:
            if address in self._objects:
                raise AddressOccupied(address)
            self._objects[address] = obj
        self._log(f"deployed {type(obj).__name__} at {address}", "debug")
        return address

    def is_deployed(self, address: Any) -> bool:
        address = normalize_address(address)
        with self.lock:
            return address in self._objects

    def resolve(self, address: Any) -> Optional[Any]:
        """Return the object at address, or None."""
        address = normalize_address(address)
        with self.lock:
            return self._objects.get(address)

    def resolve_registry(self, address: Any):
        """Return the registry at address.

        Raises LookupError when nothing is deployed there; the authorization
        gate treats that like any other failed registry lookup.
        """
        obj = self.resolve(address)
        if obj is None:
            raise LookupError(f"no registry deployed at {normalize_address(address)}")
        return obj

    def addresses(self) -> List[str]:
        with self.lock:
            return list(self._objects)

    def __len__(self) -> int:
        with self.lock:
            return len(self._objects)
