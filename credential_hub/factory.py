"""
Instance factory: stamps out credential instances from one template.

Every instance the factory creates is a clone of the template (same logic,
private storage) and is initialized in the same step it is created, with the
creator as owner. Two addressing modes:

- create(): fresh random address, unknown before the call
- create_deterministic(): address derived from (factory, salt, template
  code hash), computable in advance with predict_address()

Derivation (CREATE2 style):
    code_hash = sha256(b"credential-hub.clone.v1" || template_address)
    address   = sha256(b"\\xff" || factory_address || salt32 || code_hash)[-20:]
"""

import hashlib
import secrets
from typing import Any, Dict, List, Optional

from credential_hub.directory import AddressDirectory, address_bytes, normalize_address
from credential_hub.errors import AddressOccupied
from credential_hub.events import EventBus, InstanceCreated
from credential_hub.instance import CredentialInstance
from credential_hub.registry import deploy_default_registry


CLONE_CODE_DOMAIN = b"credential-hub.clone.v1"
DEPLOY_PREFIX = b"\xff"
SALT_BYTES = 32
MAX_FRESH_ADDRESS_ATTEMPTS = 16


def normalize_salt(salt: Any) -> bytes:
    """Coerce a salt to 32 bytes.

    Accepts 32 raw bytes, an int in [0, 2**256), or a hex string of at most
    32 bytes (left-padded with zeros).
    """
    if isinstance(salt, (bytes, bytearray)):
        if len(salt) != SALT_BYTES:
            raise ValueError(f"salt must be {SALT_BYTES} bytes, got {len(salt)}")
        return bytes(salt)
    if isinstance(salt, bool):
        raise TypeError("salt must not be a bool")
    if isinstance(salt, int):
        if salt < 0 or salt >= 1 << (8 * SALT_BYTES):
            raise ValueError("salt out of range for 32 bytes")
        return salt.to_bytes(SALT_BYTES, "big")
    if isinstance(salt, str):
        text = salt[2:] if salt.lower().startswith("0x") else salt
        if not text or len(text) > 2 * SALT_BYTES:
            raise ValueError(f"salt hex must be 1..{2 * SALT_BYTES} chars")
        try:
            return int(text, 16).to_bytes(SALT_BYTES, "big")
        except ValueError:
            raise ValueError(f"salt is not hex: {salt!r}") from None
    raise TypeError(f"unsupported salt type: {type(salt).__name__}")


def clone_code_hash(template_address: str) -> bytes:
    """Code identity of a clone: depends only on the template it runs."""
    return hashlib.sha256(CLONE_CODE_DOMAIN + address_bytes(template_address)).digest()


def compute_address(factory_address: str, salt: Any, code_hash: bytes) -> str:
    digest = hashlib.sha256(
        DEPLOY_PREFIX + address_bytes(factory_address) + normalize_salt(salt) + code_hash
    ).digest()
    return "0x" + digest[-20:].hex()


class InstanceFactory:
    """Creates and tracks clones of a credential template."""

    def __init__(self, directory: AddressDirectory, template: CredentialInstance,
                 address: str, plugin=None, events: Optional[EventBus] = None):
        """
        Deploy a factory for template at address.

        Args:
            directory: AddressDirectory shared with the template
            template: CredentialInstance in TEMPLATE state
            address: Address of the factory itself
            plugin: Optional plugin used for logging
            events: EventBus for creation notifications (default: template's)

        Installs an InMemorySubjectRegistry at the default registry address
        when nothing is deployed there yet.
        """
        if not isinstance(template, CredentialInstance) or not template.is_template:
            raise ValueError("factory requires a template instance")
        self.directory = directory
        self.plugin = plugin
        self.events = events or template.events
        self._template = template
        self._code_hash = clone_code_hash(template.address)

        self._all: List[str] = []
        self._by_creator: Dict[str, List[str]] = {}
        self._instances: Dict[str, CredentialInstance] = {}

        self.address = directory.deploy(address, self)
        with directory.lock:
            if not directory.is_deployed(template.config.default_registry_address):
                deploy_default_registry(directory, template.config)
                self._log(f"installed default registry at {template.config.default_registry_address}")

    def _log(self, msg: str, level: str = "info") -> None:
        if self.plugin:
            try:
                self.plugin.log(f"credential-hub: factory: {msg}", level=level)
            except Exception:
                pass

    @property
    def template_address(self) -> str:
        return self._template.address

    # --- Creation ---

    def create(self, caller: str, registry_address: Optional[str] = None,
               display_name: str = "") -> str:
        """Create and initialize an instance at a fresh, unpredictable address."""
        with self.directory.lock:
            for _ in range(MAX_FRESH_ADDRESS_ATTEMPTS):
                address = "0x" + secrets.token_bytes(20).hex()
                if not self.directory.is_deployed(address):
                    break
            else:
                raise RuntimeError("could not find a free instance address")
            return self._create_at(address, caller, registry_address, display_name)

    def create_deterministic(self, caller: str, registry_address: Optional[str],
                             display_name: str, salt: Any) -> str:
        """Create and initialize an instance at predict_address(salt).

        Raises AddressOccupied if that salt already produced a live instance.
        """
        address = self.predict_address(salt)
        with self.directory.lock:
            if self.directory.is_deployed(address):
                self._log(f"salt already used: {address} is occupied", "warn")
                raise AddressOccupied(address)
            return self._create_at(address, caller, registry_address, display_name)

    def predict_address(self, salt: Any) -> str:
        return compute_address(self.address, salt, self._code_hash)

    def _create_at(self, address: str, caller: str, registry_address: Optional[str],
                   display_name: str) -> str:
        caller = normalize_address(caller)
        instance = self._template.clone(address)
        # One commit: initialize notifications are held until the clone is
        # deployed and tracked, and dropped if either step raises.
        with instance._transaction():
            instance.initialize(registry_address, caller, display_name)
            self.directory.deploy(address, instance)
            self._all.append(instance.address)
            self._by_creator.setdefault(caller, []).append(instance.address)
            self._instances[instance.address] = instance

        self.events.publish([InstanceCreated(
            factory=self.address,
            instance=instance.address,
            registry=instance.registry_address,
            name=display_name or "",
            creator=caller,
        )])
        self._log(f"created instance {instance.address} for {caller}")
        return instance.address

    # --- Queries ---

    def get(self, address: str) -> Optional[CredentialInstance]:
        with self.directory.lock:
            return self._instances.get(normalize_address(address))

    def is_created_here(self, address: str) -> bool:
        with self.directory.lock:
            return normalize_address(address) in self._instances

    def list_all(self) -> List[str]:
        with self.directory.lock:
            return list(self._all)

    def list_by_creator(self, creator: str) -> List[str]:
        with self.directory.lock:
            return list(self._by_creator.get(normalize_address(creator), []))

    def count(self) -> int:
        with self.directory.lock:
            return len(self._all)

    def count_by_creator(self, creator: str) -> int:
        with self.directory.lock:
            return len(self._by_creator.get(normalize_address(creator), []))
