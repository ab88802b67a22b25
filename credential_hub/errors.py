"""
Error kinds raised by the credential hub.

Callers branch on the exception type; the message is for humans only.
Programming errors (wrong argument types, malformed addresses, oversized
input) are plain TypeError / ValueError and are not part of this hierarchy.
"""

from typing import Optional


class CredentialHubError(Exception):
    """Root of all domain errors."""


# --- Authorization ---

class NotAuthorized(CredentialHubError):
    """Caller has no standing to act for the subject."""

    def __init__(self, caller: str, subject_id: Optional[int] = None):
        self.caller = caller
        self.subject_id = subject_id
        if subject_id is None:
            super().__init__(f"{caller} is not authorized")
        else:
            super().__init__(f"{caller} is not authorized for subject {subject_id}")


class NotOwner(NotAuthorized):
    """Owner-only operation invoked by someone other than the instance owner."""

    def __init__(self, caller: str):
        self.caller = caller
        self.subject_id = None
        CredentialHubError.__init__(self, f"{caller} is not the instance owner")


class AgentNotFound(CredentialHubError):
    """Subject id does not resolve in the bound registry."""

    def __init__(self, subject_id: int):
        self.subject_id = subject_id
        super().__init__(f"subject {subject_id} not found in registry")


class ReviewerNotAgent(CredentialHubError):
    """Reviewer id does not resolve in the bound registry."""

    def __init__(self, reviewer_id: int):
        self.reviewer_id = reviewer_id
        super().__init__(f"reviewer {reviewer_id} is not a known subject")


# --- Configuration ---

class InvalidRegistry(CredentialHubError):
    """The null address was supplied where a registry is required."""

    def __init__(self, registry_address: str):
        self.registry_address = registry_address
        super().__init__(f"invalid registry address: {registry_address}")


class InvalidOwner(CredentialHubError):
    """The null address was supplied as a new owner."""

    def __init__(self, owner: str):
        self.owner = owner
        super().__init__(f"invalid owner: {owner}")


# --- Lifecycle ---

class AlreadyInitialized(CredentialHubError):
    """Instance was initialized before, or is the non-initializable template."""

    def __init__(self, address: str):
        self.address = address
        super().__init__(f"instance {address} cannot be initialized")


class AddressOccupied(CredentialHubError):
    """Deployment target already holds a live object."""

    def __init__(self, address: str):
        self.address = address
        super().__init__(f"address {address} is already occupied")


class NamespaceCollision(CredentialHubError):
    """Two distinct storage domains computed the same namespace id."""

    def __init__(self, domain: str, existing_domain: str):
        self.domain = domain
        self.existing_domain = existing_domain
        super().__init__(
            f"namespace {domain!r} collides with existing namespace {existing_domain!r}"
        )
