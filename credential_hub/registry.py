"""
Subject registry collaborators.

The hub never owns a registry; it only asks three questions of it (owner,
operator flag, one-time approval) and writes one thing back (clearing a
consumed approval). Two backends:

1. InMemorySubjectRegistry: local registry, also used as the default registry
2. RpcSubjectRegistry: delegates lookups to a registry service over plugin RPC
"""

import threading
from typing import Any, Dict, Optional, Tuple

from pyln.client import RpcError

from credential_hub.config import HubConfig
from credential_hub.directory import AddressDirectory, is_null_address, normalize_address


def _check_subject_id(subject_id: Any) -> int:
    if isinstance(subject_id, bool) or not isinstance(subject_id, int) or subject_id < 0:
        raise ValueError(f"subject id must be an unsigned integer, got {subject_id!r}")
    return subject_id


class SubjectRegistry:
    """Abstract base class for the registry capability the hub consumes."""

    def owner_of(self, subject_id: int) -> str:
        """Return the owner address. Raises if the subject is unknown."""
        raise NotImplementedError

    def is_operator(self, owner: str, actor: str) -> bool:
        """True if actor holds a standing operator grant from owner."""
        raise NotImplementedError

    def allowance(self, owner: str, actor: str, subject_id: int) -> int:
        """One-time approval amount; nonzero means approved."""
        raise NotImplementedError

    def clear_allowance(self, owner: str, actor: str, subject_id: int) -> None:
        """Reset a one-time approval to zero."""
        raise NotImplementedError


class InMemorySubjectRegistry(SubjectRegistry):
    """Dict-backed registry of subject ownership and delegation."""

    def __init__(self):
        self._owners: Dict[int, str] = {}
        self._operators: Dict[Tuple[str, str], bool] = {}
        self._allowances: Dict[Tuple[str, str, int], int] = {}
        self._lock = threading.RLock()

    def register(self, subject_id: int, owner: str) -> int:
        subject_id = _check_subject_id(subject_id)
        owner = normalize_address(owner)
        if is_null_address(owner):
            raise ValueError("subject owner must not be the null address")
        with self._lock:
            if subject_id in self._owners:
                raise ValueError(f"subject {subject_id} already registered")
            self._owners[subject_id] = owner
        return subject_id

    def transfer(self, subject_id: int, new_owner: str) -> None:
        new_owner = normalize_address(new_owner)
        if is_null_address(new_owner):
            raise ValueError("subject owner must not be the null address")
        with self._lock:
            previous = self.owner_of(subject_id)
            self._owners[subject_id] = new_owner
            # Approvals are granted by an owner; they do not survive transfer.
            for key in [k for k in self._allowances if k[0] == previous and k[2] == subject_id]:
                del self._allowances[key]

    def set_operator(self, owner: str, actor: str, approved: bool = True) -> None:
        key = (normalize_address(owner), normalize_address(actor))
        with self._lock:
            if approved:
                self._operators[key] = True
            else:
                self._operators.pop(key, None)

    def approve(self, owner: str, actor: str, subject_id: int, amount: int = 1) -> None:
        subject_id = _check_subject_id(subject_id)
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise ValueError("approval amount must be a non-negative integer")
        key = (normalize_address(owner), normalize_address(actor), subject_id)
        with self._lock:
            if amount:
                self._allowances[key] = amount
            else:
                self._allowances.pop(key, None)

    def owner_of(self, subject_id: int) -> str:
        with self._lock:
            try:
                return self._owners[subject_id]
            except KeyError:
                raise KeyError(f"subject {subject_id} not registered") from None

    def is_operator(self, owner: str, actor: str) -> bool:
        key = (normalize_address(owner), normalize_address(actor))
        with self._lock:
            return self._operators.get(key, False)

    def allowance(self, owner: str, actor: str, subject_id: int) -> int:
        key = (normalize_address(owner), normalize_address(actor), subject_id)
        with self._lock:
            return self._allowances.get(key, 0)

    def clear_allowance(self, owner: str, actor: str, subject_id: int) -> None:
        key = (normalize_address(owner), normalize_address(actor), subject_id)
        with self._lock:
            self._allowances.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._owners)


class RpcSubjectRegistry(SubjectRegistry):
    """Consults a registry service through plugin JSON-RPC.

    An RpcError from the owner lookup is propagated untouched; the
    authorization gate turns any lookup failure into "subject not found".
    """

    def __init__(self, rpc, plugin=None, method_prefix: str = "registry"):
        self.rpc = rpc
        self.plugin = plugin
        self.method_prefix = method_prefix

    @classmethod
    def from_config(cls, rpc, config: HubConfig, plugin=None) -> "RpcSubjectRegistry":
        """Build a client using the method prefix from config."""
        return cls(rpc, plugin=plugin, method_prefix=config.rpc_method_prefix)

    def _log(self, msg: str, level: str = "info") -> None:
        if self.plugin:
            try:
                self.plugin.log(f"credential-hub: rpc-registry: {msg}", level=level)
            except Exception:
                pass

    def _call(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        result = self.rpc.call(f"{self.method_prefix}-{method}", params)
        if not isinstance(result, dict):
            raise RpcError(f"{self.method_prefix}-{method}", params,
                           {"message": "unexpected response type"})
        return result

    def owner_of(self, subject_id: int) -> str:
        result = self._call("ownerof", {"subject_id": subject_id})
        return normalize_address(result.get("owner"))

    def is_operator(self, owner: str, actor: str) -> bool:
        result = self._call("isoperator", {"owner": owner, "operator": actor})
        return bool(result.get("approved", False))

    def allowance(self, owner: str, actor: str, subject_id: int) -> int:
        result = self._call("allowance", {
            "owner": owner,
            "spender": actor,
            "subject_id": subject_id,
        })
        try:
            return int(result.get("amount", 0))
        except (TypeError, ValueError):
            self._log(f"non-integer allowance for subject {subject_id}", "warn")
            return 0

    def clear_allowance(self, owner: str, actor: str, subject_id: int) -> None:
        self._call("clearallowance", {
            "owner": owner,
            "spender": actor,
            "subject_id": subject_id,
        })


def deploy_default_registry(directory: AddressDirectory, config: Optional[HubConfig] = None,
                            registry: Optional[SubjectRegistry] = None) -> SubjectRegistry:
    """Deploy the registry instances fall back to when bound to the null address.

    Places `registry` (a fresh InMemorySubjectRegistry if omitted) at
    `config.default_registry_address`. If a registry already lives there it
    is returned untouched. Raises AddressOccupied if something else does.
    """
    config = config or HubConfig()
    address = config.default_registry_address
    with directory.lock:
        existing = directory.resolve(address)
        if isinstance(existing, SubjectRegistry) and registry is None:
            return existing
        if registry is None:
            registry = InMemorySubjectRegistry()
        directory.deploy(address, registry)
    return registry
