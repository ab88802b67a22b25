"""
Namespaced key/value regions over an instance's private storage.

Every credential instance owns one flat storage dict. Record kinds are kept
apart by prefixing each slot with a namespace id, a SHA-256 of a fixed
domain string. The id depends on the domain string only, so every instance
running the same logic finds its own region at the same place.

Three namespaces are in use:
- credential.metadata.v1           (subject_id, key) -> bytes
- credential.contract-metadata.v1  (key,) -> bytes
- credential.reviews.v1            (reviewer_id, reviewed_id) -> bytes

Reads never fail (absent == b""), writes overwrite, there is no delete.
"""

import hashlib
import threading
from typing import Any, Callable, Dict, Iterator, MutableMapping, Optional, Tuple

from credential_hub.errors import NamespaceCollision


SUBJECT_METADATA_DOMAIN = "credential.metadata.v1"
INSTANCE_METADATA_DOMAIN = "credential.contract-metadata.v1"
REVIEWS_DOMAIN = "credential.reviews.v1"

# namespace id -> domain string that claimed it
_claimed_ids: Dict[bytes, str] = {}
_claim_lock = threading.Lock()


def namespace_id(domain: str) -> bytes:
    """Derive the 32-byte namespace id for a domain string."""
    if not isinstance(domain, str) or not domain:
        raise ValueError("namespace domain must be a non-empty string")
    return hashlib.sha256(domain.encode("utf-8")).digest()


class Namespace:
    """A storage domain, identified once by its domain string."""

    __slots__ = ("domain", "id")

    def __init__(self, domain: str):
        ns_id = namespace_id(domain)
        with _claim_lock:
            existing = _claimed_ids.get(ns_id)
            if existing is not None and existing != domain:
                raise NamespaceCollision(domain, existing)
            _claimed_ids[ns_id] = domain
        self.domain = domain
        self.id = ns_id

    def __eq__(self, other):
        return isinstance(other, Namespace) and other.id == self.id

    def __hash__(self):
        return hash(self.id)

    def __repr__(self):
        return f"Namespace({self.domain!r}, id={self.id.hex()[:16]}...)"


SUBJECT_METADATA = Namespace(SUBJECT_METADATA_DOMAIN)
INSTANCE_METADATA = Namespace(INSTANCE_METADATA_DOMAIN)
REVIEWS = Namespace(REVIEWS_DOMAIN)


CompositeKey = Tuple[Any, ...]
ChangeCallback = Callable[[Namespace, CompositeKey, bytes], None]


def _coerce_value(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    raise TypeError(f"value must be bytes-like, got {type(value).__name__}")


class NamespacedStore:
    """View of one namespace over one storage dict."""

    def __init__(self, namespace: Namespace,
                 storage: MutableMapping[Tuple[bytes, CompositeKey], bytes],
                 on_change: Optional[ChangeCallback] = None):
        self.namespace = namespace
        self._storage = storage
        self._on_change = on_change

    def _slot(self, composite_key: CompositeKey) -> Tuple[bytes, CompositeKey]:
        if not isinstance(composite_key, tuple):
            raise TypeError("composite key must be a tuple")
        return (self.namespace.id, composite_key)

    def get(self, composite_key: CompositeKey) -> bytes:
        return self._storage.get(self._slot(composite_key), b"")

    def set(self, composite_key: CompositeKey, value: Any) -> None:
        value = _coerce_value(value)
        self._storage[self._slot(composite_key)] = value
        if self._on_change is not None:
            self._on_change(self.namespace, composite_key, value)

    def keys(self) -> Iterator[CompositeKey]:
        ns_id = self.namespace.id
        for slot_ns, composite_key in list(self._storage):
            if slot_ns == ns_id:
                yield composite_key

    def __len__(self) -> int:
        return sum(1 for _ in self.keys())
