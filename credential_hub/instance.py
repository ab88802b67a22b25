"""
Credential instance: subject metadata, instance metadata and reviews.

An instance stores third-party-attested records about registry subjects:
- Subject metadata: (subject_id, key) -> bytes, writable by anyone the
  bound registry lets act for the subject
- Instance metadata: key -> bytes, writable by the instance owner only
- Reviews: (reviewer_id, reviewed_id) -> bytes, writable by anyone who may
  act for the reviewer

Lifecycle:
- TEMPLATE: the shared logic body; can be cloned, can never be initialized
- UNINITIALIZED: a fresh clone; no owner, no registry
- INITIALIZED: owner and registry bound; terminal

Direct deployment (`CredentialInstance.deploy`) goes straight to
INITIALIZED. Clones are initialized exactly once through `initialize()`.

Every mutating operation runs under the directory lock and publishes its
notifications only after all of its writes succeeded.
"""

import hashlib
from contextlib import contextmanager
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from credential_hub.authorization import AuthorizationGate, AuthResult
from credential_hub.config import HubConfig
from credential_hub.directory import (
    NULL_ADDRESS,
    AddressDirectory,
    is_null_address,
    normalize_address,
)
from credential_hub.errors import (
    AddressOccupied,
    AgentNotFound,
    AlreadyInitialized,
    InvalidOwner,
    InvalidRegistry,
    NotAuthorized,
    NotOwner,
    ReviewerNotAgent,
)
from credential_hub.events import (
    EventBus,
    HubEvent,
    Initialized,
    MetadataChanged,
    OwnershipTransferred,
    RegistryUpdated,
    ReviewSubmitted,
)
from credential_hub.namespaced_store import (
    INSTANCE_METADATA,
    REVIEWS,
    SUBJECT_METADATA,
    Namespace,
    NamespacedStore,
)


NAME_KEY = "name"
INITIALIZER_VERSION = 1


# --- Capability declaration ---

def _selector(signature: str) -> int:
    return int.from_bytes(hashlib.sha256(signature.encode("utf-8")).digest()[:4], "big")


def interface_id(*signatures: str) -> bytes:
    """XOR of the 4-byte selectors of an interface's operations."""
    value = 0
    for signature in signatures:
        value ^= _selector(signature)
    return value.to_bytes(4, "big")


INTROSPECTION_INTERFACE = interface_id("supports_interface(bytes4)")
SUBJECT_METADATA_INTERFACE = interface_id(
    "set_subject_metadata(uint256,string,bytes)",
    "get_subject_metadata(uint256,string)",
)
INSTANCE_METADATA_INTERFACE = interface_id(
    "set_instance_metadata(string,bytes)",
    "get_instance_metadata(string)",
)
REVIEWS_INTERFACE = interface_id(
    "submit_review(uint256,uint256,bytes)",
    "get_review(uint256,uint256)",
)
CREDENTIAL_INSTANCE_INTERFACE = interface_id(
    "initialize(address,address,string)",
    "set_registry(address)",
    "registry()",
)

SUPPORTED_INTERFACES = frozenset([
    INTROSPECTION_INTERFACE,
    SUBJECT_METADATA_INTERFACE,
    INSTANCE_METADATA_INTERFACE,
    REVIEWS_INTERFACE,
    CREDENTIAL_INSTANCE_INTERFACE,
])

INVALID_INTERFACE = b"\xff\xff\xff\xff"


def _parse_interface_id(value: Any) -> Optional[bytes]:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value) if len(value) == 4 else None
    if isinstance(value, str):
        text = value[2:] if value.lower().startswith("0x") else value
        if len(text) != 8:
            return None
        try:
            return bytes.fromhex(text)
        except ValueError:
            return None
    return None


class InstanceState(Enum):
    """Lifecycle state of a credential instance."""
    TEMPLATE = "template"
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"


class CredentialInstance:
    """Attested records about registry subjects, owned by one address."""

    def __init__(self, directory: AddressDirectory, address: str,
                 state: InstanceState = InstanceState.UNINITIALIZED,
                 implementation: Optional[str] = None,
                 config: Optional[HubConfig] = None, plugin=None,
                 events: Optional[EventBus] = None):
        """
        Build an instance object. Prefer `deploy`, `template` or `clone`.

        Args:
            directory: AddressDirectory the instance is deployed into
            address: Address of this instance
            state: Starting lifecycle state
            implementation: Address of the template a clone runs (clones only)
            config: HubConfig with limits and the default registry address
            plugin: Optional plugin used for logging
            events: EventBus notifications are published on
        """
        self.directory = directory
        self.address = normalize_address(address)
        if is_null_address(self.address):
            raise ValueError("instance address must not be the null address")
        self.config = config or HubConfig()
        self.plugin = plugin
        self.events = events or EventBus(plugin, self.config.event_history_size)
        self.implementation = normalize_address(implementation) if implementation else self.address

        self._state = state
        self._owner = NULL_ADDRESS
        self._registry = NULL_ADDRESS
        self._gate = AuthorizationGate(plugin=plugin, lock=directory.lock)

        self._storage: Dict[Any, bytes] = {}
        self._subject_metadata = NamespacedStore(SUBJECT_METADATA, self._storage, self._on_store_change)
        self._instance_metadata = NamespacedStore(INSTANCE_METADATA, self._storage, self._on_store_change)
        self._reviews = NamespacedStore(REVIEWS, self._storage, self._on_store_change)
        self._pending: Optional[List[HubEvent]] = None

    def _log(self, msg: str, level: str = "info") -> None:
        if self.plugin:
            try:
                self.plugin.log(f"credential-hub: instance {self.address[:10]}: {msg}", level=level)
            except Exception:
                pass

    # --- Construction paths ---

    @classmethod
    def deploy(cls, directory: AddressDirectory, address: str, owner: str,
               registry_address: Optional[str] = None, display_name: str = "",
               config: Optional[HubConfig] = None, plugin=None,
               events: Optional[EventBus] = None) -> "CredentialInstance":
        """Deploy an instance bound to owner and registry at construction."""
        instance = cls(directory, address, InstanceState.INITIALIZED,
                       config=config, plugin=plugin, events=events)
        with instance._transaction():
            if directory.is_deployed(instance.address):
                raise AddressOccupied(instance.address)
            instance._bind(registry_address, owner, display_name)
            directory.deploy(instance.address, instance)
        instance._log(f"deployed for owner {instance._owner}")
        return instance

    @classmethod
    def template(cls, directory: AddressDirectory, address: str,
                 config: Optional[HubConfig] = None, plugin=None,
                 events: Optional[EventBus] = None) -> "CredentialInstance":
        """Deploy the shared template. It can never be initialized."""
        instance = cls(directory, address, InstanceState.TEMPLATE,
                       config=config, plugin=plugin, events=events)
        directory.deploy(instance.address, instance)
        instance._log("deployed as template")
        return instance

    def clone(self, address: str) -> "CredentialInstance":
        """New uninitialized instance running this template, with its own storage.

        The clone is not placed in the directory; the caller deploys it.
        """
        if self._state is not InstanceState.TEMPLATE:
            raise ValueError("only a template can be cloned")
        return type(self)(self.directory, address, InstanceState.UNINITIALIZED,
                          implementation=self.address, config=self.config,
                          plugin=self.plugin, events=self.events)

    # --- Transactions ---

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        with self.directory.lock:
            outer = self._pending is None
            if outer:
                self._pending = []
            try:
                yield
            except BaseException:
                if outer:
                    self._pending = None
                raise
            if outer:
                committed, self._pending = self._pending, None
        if outer:
            self.events.publish(committed)

    def _emit(self, event: HubEvent) -> None:
        if self._pending is None:
            # Writes outside a transaction are a bug in this module.
            raise RuntimeError("notification emitted outside a transaction")
        self._pending.append(event)

    def _on_store_change(self, namespace: Namespace, composite_key: tuple, value: bytes) -> None:
        if namespace == SUBJECT_METADATA:
            subject_id, key = composite_key
            self._emit(MetadataChanged(self.address, subject_id, key, value))
        elif namespace == INSTANCE_METADATA:
            self._emit(MetadataChanged(self.address, None, composite_key[0], value))
        elif namespace == REVIEWS:
            reviewer_id, reviewed_id = composite_key
            self._emit(ReviewSubmitted(self.address, reviewer_id, reviewed_id, value))

    # --- Validation ---

    @staticmethod
    def _check_id(value: Any, label: str) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"{label} must be an int, got {type(value).__name__}")
        if value < 0:
            raise ValueError(f"{label} must be unsigned, got {value}")
        return value

    def _check_key(self, key: Any, writing: bool = True) -> str:
        if not isinstance(key, str):
            raise TypeError(f"metadata key must be a str, got {type(key).__name__}")
        if writing and len(key) > self.config.max_key_length:
            raise ValueError(f"metadata key longer than {self.config.max_key_length} chars")
        return key

    def _check_value(self, value: Any) -> bytes:
        if isinstance(value, (bytearray, memoryview)):
            value = bytes(value)
        if not isinstance(value, bytes):
            raise TypeError(f"value must be bytes, got {type(value).__name__}")
        if len(value) > self.config.max_value_bytes:
            raise ValueError(f"value larger than {self.config.max_value_bytes} bytes")
        return value

    def _check_display_name(self, display_name: Any) -> str:
        if display_name is None:
            return ""
        if not isinstance(display_name, str):
            raise TypeError(f"display name must be a str, got {type(display_name).__name__}")
        if len(display_name) > self.config.max_display_name_length:
            raise ValueError(
                f"display name longer than {self.config.max_display_name_length} chars"
            )
        return display_name

    def _require_owner(self, caller: str) -> None:
        caller = normalize_address(caller)
        if is_null_address(self._owner) or caller != self._owner:
            self._log(f"owner-only call rejected for {caller}", "warn")
            raise NotOwner(caller)

    # --- Authorization ---

    def _authorize(self, caller: str, subject_id: int) -> AuthResult:
        try:
            registry = self.directory.resolve_registry(self._registry)
        except LookupError as e:
            self._log(f"registry lookup failed: {e}", "debug")
            return AuthResult.NOT_FOUND
        return self._gate.authorize(registry, caller, subject_id)

    # --- Subject metadata ---

    def set_subject_metadata(self, caller: str, subject_id: int, key: str, value: bytes) -> None:
        """Store value under (subject_id, key) if caller may act for the subject."""
        subject_id = self._check_id(subject_id, "subject_id")
        key = self._check_key(key)
        value = self._check_value(value)
        caller = normalize_address(caller)

        with self._transaction():
            result = self._authorize(caller, subject_id)
            if result is AuthResult.NOT_FOUND:
                self._log(f"metadata write for unknown subject {subject_id}", "warn")
                raise AgentNotFound(subject_id)
            if result is AuthResult.FORBIDDEN:
                self._log(f"metadata write for subject {subject_id} by {caller} forbidden", "warn")
                raise NotAuthorized(caller, subject_id)
            self._subject_metadata.set((subject_id, key), value)

        self._log(f"set metadata {key!r} for subject {subject_id}")

    def get_subject_metadata(self, subject_id: int, key: str) -> bytes:
        return self._subject_metadata.get((
            self._check_id(subject_id, "subject_id"),
            self._check_key(key, writing=False),
        ))

    # --- Reviews ---

    def submit_review(self, caller: str, reviewer_id: int, reviewed_id: int, data: bytes) -> None:
        """Store the review of reviewed_id by reviewer_id.

        The caller must be able to act for the reviewer; the reviewed subject
        is not checked. Resubmitting overwrites the previous review.
        """
        reviewer_id = self._check_id(reviewer_id, "reviewer_id")
        reviewed_id = self._check_id(reviewed_id, "reviewed_id")
        data = self._check_value(data)
        caller = normalize_address(caller)

        with self._transaction():
            result = self._authorize(caller, reviewer_id)
            if result is AuthResult.NOT_FOUND:
                self._log(f"review by unknown subject {reviewer_id}", "warn")
                raise ReviewerNotAgent(reviewer_id)
            if result is AuthResult.FORBIDDEN:
                self._log(f"review by {reviewer_id} from {caller} forbidden", "warn")
                raise NotAuthorized(caller, reviewer_id)
            self._reviews.set((reviewer_id, reviewed_id), data)

        self._log(f"review {reviewer_id} -> {reviewed_id} stored")

    def get_review(self, reviewer_id: int, reviewed_id: int) -> bytes:
        return self._reviews.get((
            self._check_id(reviewer_id, "reviewer_id"),
            self._check_id(reviewed_id, "reviewed_id"),
        ))

    # --- Instance metadata ---

    def set_instance_metadata(self, caller: str, key: str, value: bytes) -> None:
        key = self._check_key(key)
        value = self._check_value(value)
        with self._transaction():
            self._require_owner(caller)
            self._instance_metadata.set((key,), value)
        self._log(f"set instance metadata {key!r}")

    def get_instance_metadata(self, key: str) -> bytes:
        return self._instance_metadata.get((self._check_key(key, writing=False),))

    @property
    def display_name(self) -> str:
        return self._instance_metadata.get((NAME_KEY,)).decode("utf-8", errors="replace")

    # --- Registry and ownership ---

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def registry_address(self) -> str:
        return self._registry

    @property
    def state(self) -> InstanceState:
        return self._state

    @property
    def is_initialized(self) -> bool:
        return self._state is InstanceState.INITIALIZED

    @property
    def is_template(self) -> bool:
        return self._state is InstanceState.TEMPLATE

    def set_registry(self, caller: str, new_registry: str) -> None:
        """Rebind the registry. Owner only; the null address is rejected."""
        new_registry = normalize_address(new_registry)
        with self._transaction():
            self._require_owner(caller)
            if is_null_address(new_registry):
                self._log("rejected null registry", "warn")
                raise InvalidRegistry(new_registry)
            self._set_registry(new_registry)
        self._log(f"registry set to {new_registry}")

    def transfer_ownership(self, caller: str, new_owner: str) -> None:
        new_owner = normalize_address(new_owner)
        with self._transaction():
            self._require_owner(caller)
            if is_null_address(new_owner):
                raise InvalidOwner(new_owner)
            self._set_owner(new_owner)
        self._log(f"ownership transferred to {new_owner}")

    def renounce_ownership(self, caller: str) -> None:
        """Give up ownership for good. Owner-only operations become unusable."""
        with self._transaction():
            self._require_owner(caller)
            self._set_owner(NULL_ADDRESS)
        self._log("ownership renounced", "warn")

    def _set_owner(self, new_owner: str) -> None:
        previous, self._owner = self._owner, new_owner
        self._emit(OwnershipTransferred(self.address, previous, new_owner))

    def _set_registry(self, new_registry: str) -> None:
        previous, self._registry = self._registry, new_registry
        self._emit(RegistryUpdated(self.address, previous, new_registry))

    # --- Initialization ---

    def _bind(self, registry_address: Optional[str], owner: str, display_name: Any) -> None:
        """Bind registry, owner and name. Validates everything before writing."""
        registry_address = normalize_address(registry_address)
        if is_null_address(registry_address):
            registry_address = self.config.default_registry_address
        owner = normalize_address(owner)
        if is_null_address(owner):
            raise InvalidOwner(owner)
        display_name = self._check_display_name(display_name)

        self._set_owner(owner)
        self._set_registry(registry_address)
        if display_name:
            self._instance_metadata.set((NAME_KEY,), display_name.encode("utf-8"))

    def initialize(self, registry_address: Optional[str], owner: str, display_name: str = "") -> None:
        """Initialize a clone. Succeeds once; always fails on the template.

        A null registry binds the default registry. An empty display name
        leaves the "name" metadata unset.
        """
        with self._transaction():
            if self._state is not InstanceState.UNINITIALIZED:
                self._log(f"initialize rejected in state {self._state.value}", "warn")
                raise AlreadyInitialized(self.address)
            self._bind(registry_address, owner, display_name)
            self._state = InstanceState.INITIALIZED
            self._emit(Initialized(self.address, INITIALIZER_VERSION))
        self._log(f"initialized for owner {self._owner} with registry {self._registry}")

    # --- Introspection ---

    def supports_interface(self, interface: Any) -> bool:
        """True if this instance implements the given 4-byte interface id."""
        parsed = _parse_interface_id(interface)
        if parsed is None or parsed == INVALID_INTERFACE:
            return False
        return parsed in SUPPORTED_INTERFACES

    def get_status(self) -> Dict[str, Any]:
        """Instance summary for diagnostics."""
        with self.directory.lock:
            return {
                "address": self.address,
                "state": self._state.value,
                "implementation": self.implementation,
                "owner": self._owner,
                "registry": self._registry,
                "name": self.display_name,
                "subject_metadata_entries": len(self._subject_metadata),
                "instance_metadata_entries": len(self._instance_metadata),
                "review_entries": len(self._reviews),
            }
