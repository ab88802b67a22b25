"""
Delegated authorization against a subject registry.

An actor may act for a subject when the bound registry says it is:
1. the subject's owner, or
2. a standing operator of that owner, or
3. holding a one-time approval from that owner for exactly this subject.

One-time approvals are consumed by the check that honours them: the gate
clears the allowance in the registry before reporting AUTHORIZED, under the
gate lock, so an approval can authorize at most one call.

Registry failures never escape. A failed owner lookup means NOT_FOUND; a
failed operator or approval lookup means that route grants nothing.
"""

import threading
from enum import Enum

from credential_hub.directory import is_null_address, normalize_address


class AuthResult(Enum):
    """Outcome of an authorization check."""
    AUTHORIZED = "authorized"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"


class AuthorizationGate:
    """Resolves "may actor X act for subject S" through a SubjectRegistry."""

    def __init__(self, plugin=None, lock=None):
        """
        Args:
            plugin: Optional plugin used for logging
            lock: Lock to serialize checks on; pass the directory lock so
                  approvals shared across instances are consumed once
        """
        self.plugin = plugin
        self._lock = lock if lock is not None else threading.RLock()

    def _log(self, msg: str, level: str = "info") -> None:
        if self.plugin:
            try:
                self.plugin.log(f"credential-hub: auth: {msg}", level=level)
            except Exception:
                pass

    def authorize(self, registry, acting_address: str, subject_id: int) -> AuthResult:
        actor = normalize_address(acting_address)

        with self._lock:
            try:
                owner = normalize_address(registry.owner_of(subject_id))
            except Exception as e:
                self._log(f"subject {subject_id} unresolved: {e}", "debug")
                return AuthResult.NOT_FOUND
            if is_null_address(owner):
                self._log(f"subject {subject_id} has no owner", "debug")
                return AuthResult.NOT_FOUND

            if actor == owner:
                return AuthResult.AUTHORIZED

            try:
                if registry.is_operator(owner, actor):
                    self._log(f"{actor} acts as operator of {owner} for subject {subject_id}", "debug")
                    return AuthResult.AUTHORIZED
            except Exception as e:
                self._log(f"operator lookup failed for subject {subject_id}: {e}", "warn")

            try:
                approved = registry.allowance(owner, actor, subject_id)
            except Exception as e:
                self._log(f"allowance lookup failed for subject {subject_id}: {e}", "warn")
                approved = 0

            if approved:
                try:
                    registry.clear_allowance(owner, actor, subject_id)
                except Exception as e:
                    self._log(f"could not consume approval of {actor} for subject {subject_id}: {e}", "warn")
                    return AuthResult.FORBIDDEN
                self._log(f"consumed one-time approval of {actor} for subject {subject_id}")
                return AuthResult.AUTHORIZED

            self._log(f"{actor} forbidden for subject {subject_id}", "debug")
            return AuthResult.FORBIDDEN
