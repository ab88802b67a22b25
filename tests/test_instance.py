"""
Tests for credential_hub/instance.py: credential instances.

Tests cover:
- Subject metadata writes through delegated authorization
- Reviews (directional, self-review, overwrite)
- Owner-only instance metadata, registry swaps and ownership transfer
- Lifecycle: template, clone, single initialization
- Isolation between instances
- Notification buffering (nothing published on failure)
- Capability introspection
"""

import os
import sys
from unittest.mock import MagicMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from credential_hub.config import DEFAULT_REGISTRY_ADDRESS, HubConfig
from credential_hub.directory import NULL_ADDRESS, AddressDirectory
from credential_hub.errors import (
    AddressOccupied,
    AgentNotFound,
    AlreadyInitialized,
    CredentialHubError,
    InvalidOwner,
    InvalidRegistry,
    NotAuthorized,
    NotOwner,
    ReviewerNotAgent,
)
from credential_hub.events import (
    Initialized,
    MetadataChanged,
    OwnershipTransferred,
    RegistryUpdated,
    ReviewSubmitted,
)
from credential_hub.instance import (
    CREDENTIAL_INSTANCE_INTERFACE,
    INSTANCE_METADATA_INTERFACE,
    INTROSPECTION_INTERFACE,
    REVIEWS_INTERFACE,
    SUBJECT_METADATA_INTERFACE,
    CredentialInstance,
    InstanceState,
    interface_id,
)
from credential_hub.registry import InMemorySubjectRegistry, deploy_default_registry


# =============================================================================
# Test helpers
# =============================================================================

ALICE = "0x" + "a1" * 20     # owns subject 1
BOB = "0x" + "b2" * 20       # owns subject 2
CAROL = "0x" + "c3" * 20     # no subjects
OWNER = "0x" + "0e" * 20     # instance owner
REGISTRY = "0x" + "e1" * 20
REGISTRY2 = "0x" + "e2" * 20
INSTANCE_A = "0x" + "1a" * 20
INSTANCE_B = "0x" + "1b" * 20
TEMPLATE = "0x" + "7e" * 20


class _Env:
    """Directory with two registries and a subscriber recording events."""

    def __init__(self):
        self.plugin = MagicMock()
        self.directory = AddressDirectory(self.plugin)
        self.registry = InMemorySubjectRegistry()
        self.registry.register(1, ALICE)
        self.registry.register(2, BOB)
        self.registry2 = InMemorySubjectRegistry()
        self.registry2.register(2, BOB)
        self.directory.deploy(REGISTRY, self.registry)
        self.directory.deploy(REGISTRY2, self.registry2)
        self.seen = []

    def deploy(self, address=INSTANCE_A, owner=OWNER, registry=REGISTRY, name=""):
        instance = CredentialInstance.deploy(
            self.directory, address, owner, registry, name, plugin=self.plugin,
        )
        instance.events.subscribe(self.seen.append)
        return instance

    def kinds(self):
        return [type(e) for e in self.seen]


@pytest.fixture
def env():
    return _Env()


@pytest.fixture
def inst(env):
    return env.deploy()


# =============================================================================
# Subject metadata
# =============================================================================

class TestSubjectMetadata:
    def test_owner_of_subject_can_write(self, inst):
        inst.set_subject_metadata(ALICE, 1, "k", b"v1")
        assert inst.get_subject_metadata(1, "k") == b"v1"

    def test_absent_is_empty(self, inst):
        assert inst.get_subject_metadata(1, "nothing") == b""

    def test_explicit_empty_indistinguishable_from_absent(self, inst):
        inst.set_subject_metadata(ALICE, 1, "k", b"")
        assert inst.get_subject_metadata(1, "k") == inst.get_subject_metadata(1, "other") == b""

    def test_last_write_wins(self, inst):
        for i in range(5):
            inst.set_subject_metadata(ALICE, 1, "k", f"v{i}".encode())
        assert inst.get_subject_metadata(1, "k") == b"v4"

    def test_unauthorized_write_rejected_and_value_kept(self, inst):
        inst.set_subject_metadata(ALICE, 1, "k", b"v1")
        with pytest.raises(NotAuthorized) as exc:
            inst.set_subject_metadata(CAROL, 1, "k", b"v2")
        assert exc.value.subject_id == 1
        assert exc.value.caller == CAROL
        assert inst.get_subject_metadata(1, "k") == b"v1"

    def test_unknown_subject_is_agent_not_found(self, inst):
        with pytest.raises(AgentNotFound) as exc:
            inst.set_subject_metadata(ALICE, 99, "k", b"v")
        assert exc.value.subject_id == 99

    def test_not_found_and_not_authorized_are_distinct(self):
        assert not issubclass(AgentNotFound, NotAuthorized)
        assert not issubclass(NotAuthorized, AgentNotFound)
        assert issubclass(AgentNotFound, CredentialHubError)

    def test_operator_can_write_repeatedly(self, env, inst):
        env.registry.set_operator(ALICE, CAROL)
        inst.set_subject_metadata(CAROL, 1, "a", b"1")
        inst.set_subject_metadata(CAROL, 1, "b", b"2")
        assert inst.get_subject_metadata(1, "b") == b"2"

    def test_one_time_approval_single_use(self, env, inst):
        env.registry.approve(ALICE, CAROL, 1)
        inst.set_subject_metadata(CAROL, 1, "k", b"first")
        with pytest.raises(NotAuthorized):
            inst.set_subject_metadata(CAROL, 1, "k", b"second")
        assert inst.get_subject_metadata(1, "k") == b"first"

    def test_emits_metadata_changed(self, env, inst):
        env.seen.clear()
        inst.set_subject_metadata(ALICE, 1, "k", b"v")
        assert env.seen == [MetadataChanged(INSTANCE_A, 1, "k", b"v")]

    def test_rejected_write_emits_nothing(self, env, inst):
        env.seen.clear()
        with pytest.raises(NotAuthorized):
            inst.set_subject_metadata(CAROL, 1, "k", b"v")
        assert env.seen == []

    def test_failing_log_sink_does_not_break_approved_write(self, env, inst):
        env.plugin.log.side_effect = RuntimeError("log sink down")
        env.registry.approve(ALICE, CAROL, 1)
        env.seen.clear()
        inst.set_subject_metadata(CAROL, 1, "k", b"v")
        assert inst.get_subject_metadata(1, "k") == b"v"
        assert env.registry.allowance(ALICE, CAROL, 1) == 0
        assert env.seen == [MetadataChanged(INSTANCE_A, 1, "k", b"v")]

    def test_failing_log_sink_does_not_break_owner_operations(self, env, inst):
        env.plugin.log.side_effect = RuntimeError("log sink down")
        inst.set_instance_metadata(OWNER, "url", b"https://example.org")
        inst.set_registry(OWNER, REGISTRY2)
        inst.transfer_ownership(OWNER, CAROL)
        assert inst.get_instance_metadata("url") == b"https://example.org"
        assert inst.registry_address == REGISTRY2
        assert inst.owner == CAROL
        with pytest.raises(NotOwner):
            inst.set_instance_metadata(OWNER, "url", b"x")

    def test_type_and_size_validation(self, env):
        small = CredentialInstance.deploy(
            env.directory, INSTANCE_B, OWNER, REGISTRY,
            config=HubConfig(max_value_bytes=4, max_key_length=3),
        )
        with pytest.raises(TypeError):
            small.set_subject_metadata(ALICE, 1, "k", "not-bytes")
        with pytest.raises(ValueError):
            small.set_subject_metadata(ALICE, 1, "k", b"12345")
        with pytest.raises(ValueError):
            small.set_subject_metadata(ALICE, 1, "long", b"1")
        with pytest.raises(ValueError):
            small.set_subject_metadata(ALICE, -1, "k", b"1")


# =============================================================================
# Reviews
# =============================================================================

class TestReviews:
    def test_reviewer_owner_can_submit(self, inst):
        inst.submit_review(ALICE, 1, 2, b"great")
        assert inst.get_review(1, 2) == b"great"

    def test_reviews_are_directional(self, inst):
        inst.submit_review(ALICE, 1, 2, b"great")
        assert inst.get_review(2, 1) == b""

    def test_self_review_permitted(self, inst):
        inst.submit_review(ALICE, 1, 1, b"me")
        assert inst.get_review(1, 1) == b"me"

    def test_overwrite_is_update(self, inst):
        inst.submit_review(ALICE, 1, 2, b"ok")
        inst.submit_review(ALICE, 1, 2, b"better")
        assert inst.get_review(1, 2) == b"better"

    def test_reviewed_party_cannot_write_review(self, inst):
        with pytest.raises(NotAuthorized):
            inst.submit_review(BOB, 1, 2, b"forged")

    def test_reviewed_subject_need_not_exist(self, inst):
        inst.submit_review(ALICE, 1, 12345, b"about a stranger")
        assert inst.get_review(1, 12345) == b"about a stranger"

    def test_unknown_reviewer_is_reviewer_not_agent(self, inst):
        with pytest.raises(ReviewerNotAgent) as exc:
            inst.submit_review(ALICE, 77, 1, b"x")
        assert exc.value.reviewer_id == 77

    def test_emits_review_submitted(self, env, inst):
        env.seen.clear()
        inst.submit_review(ALICE, 1, 2, b"great")
        assert env.seen == [ReviewSubmitted(INSTANCE_A, 1, 2, b"great")]


# =============================================================================
# Owner-only operations
# =============================================================================

class TestOwnerOperations:
    def test_owner_sets_instance_metadata(self, env, inst):
        env.seen.clear()
        inst.set_instance_metadata(OWNER, "website", b"https://example.org")
        assert inst.get_instance_metadata("website") == b"https://example.org"
        assert env.seen == [MetadataChanged(INSTANCE_A, None, "website", b"https://example.org")]

    def test_instance_metadata_ignores_registry(self, env, inst):
        env.registry.set_operator(OWNER, CAROL)
        with pytest.raises(NotOwner):
            inst.set_instance_metadata(CAROL, "k", b"v")

    def test_not_owner_is_not_authorized_kind(self, inst):
        with pytest.raises(NotAuthorized):
            inst.set_instance_metadata(ALICE, "k", b"v")

    def test_set_registry_rejects_null(self, env, inst):
        env.seen.clear()
        with pytest.raises(InvalidRegistry):
            inst.set_registry(OWNER, NULL_ADDRESS)
        assert inst.registry_address == REGISTRY
        assert env.seen == []

    def test_set_registry_owner_only(self, inst):
        with pytest.raises(NotOwner):
            inst.set_registry(ALICE, REGISTRY2)

    def test_registry_swap_changes_known_subjects(self, env, inst):
        inst.set_subject_metadata(ALICE, 1, "k", b"v1")
        env.seen.clear()
        inst.set_registry(OWNER, REGISTRY2)
        assert env.seen == [RegistryUpdated(INSTANCE_A, REGISTRY, REGISTRY2)]
        with pytest.raises(AgentNotFound):
            inst.set_subject_metadata(ALICE, 1, "k", b"v2")
        assert inst.get_subject_metadata(1, "k") == b"v1"

    def test_registry_swap_can_revoke_standing(self, env, inst):
        env.registry.set_operator(BOB, CAROL)
        inst.set_subject_metadata(CAROL, 2, "k", b"v")
        inst.set_registry(OWNER, REGISTRY2)
        with pytest.raises(NotAuthorized):
            inst.set_subject_metadata(CAROL, 2, "k", b"v2")

    def test_undeployed_registry_is_not_found(self, inst):
        inst.set_registry(OWNER, "0x" + "99" * 20)
        with pytest.raises(AgentNotFound):
            inst.set_subject_metadata(ALICE, 1, "k", b"v")

    def test_transfer_ownership(self, env, inst):
        env.seen.clear()
        inst.transfer_ownership(OWNER, CAROL)
        assert inst.owner == CAROL
        assert env.seen == [OwnershipTransferred(INSTANCE_A, OWNER, CAROL)]
        with pytest.raises(NotOwner):
            inst.set_instance_metadata(OWNER, "k", b"v")
        inst.set_instance_metadata(CAROL, "k", b"v")

    def test_transfer_to_null_rejected(self, inst):
        with pytest.raises(InvalidOwner):
            inst.transfer_ownership(OWNER, NULL_ADDRESS)
        assert inst.owner == OWNER

    def test_renounce_is_permanent(self, inst):
        inst.renounce_ownership(OWNER)
        assert inst.owner == NULL_ADDRESS
        for caller in (OWNER, NULL_ADDRESS):
            with pytest.raises(NotOwner):
                inst.transfer_ownership(caller, OWNER)
            with pytest.raises(NotOwner):
                inst.set_registry(caller, REGISTRY2)

    def test_subject_writes_survive_renounce(self, inst):
        inst.renounce_ownership(OWNER)
        inst.set_subject_metadata(ALICE, 1, "k", b"still works")
        assert inst.get_subject_metadata(1, "k") == b"still works"


# =============================================================================
# Lifecycle
# =============================================================================

class TestDirectDeploy:
    def test_deploy_is_initialized(self, inst):
        assert inst.state is InstanceState.INITIALIZED
        assert inst.owner == OWNER
        assert inst.registry_address == REGISTRY

    def test_deploy_null_registry_uses_default(self, env):
        inst = CredentialInstance.deploy(env.directory, INSTANCE_B, OWNER, None)
        assert inst.registry_address == DEFAULT_REGISTRY_ADDRESS

    def test_default_bound_instance_writes_through_default_registry(self, env):
        default = deploy_default_registry(env.directory)
        default.register(5, CAROL)
        inst = CredentialInstance.deploy(env.directory, INSTANCE_B, OWNER, None)
        inst.set_subject_metadata(CAROL, 5, "k", b"v")
        inst.submit_review(CAROL, 5, 1, b"ok")
        assert inst.get_subject_metadata(5, "k") == b"v"
        assert inst.get_review(5, 1) == b"ok"
        with pytest.raises(AgentNotFound):
            inst.set_subject_metadata(ALICE, 1, "k", b"v")

    def test_deploy_null_owner_rejected(self, env):
        with pytest.raises(InvalidOwner):
            CredentialInstance.deploy(env.directory, INSTANCE_B, NULL_ADDRESS, REGISTRY)
        assert not env.directory.is_deployed(INSTANCE_B)

    def test_deploy_to_occupied_address_rejected(self, env, inst):
        with pytest.raises(AddressOccupied):
            CredentialInstance.deploy(env.directory, INSTANCE_A, CAROL, REGISTRY)
        assert env.directory.resolve(INSTANCE_A) is inst

    def test_direct_instance_cannot_be_initialized(self, inst):
        with pytest.raises(AlreadyInitialized):
            inst.initialize(REGISTRY2, CAROL, "takeover")
        assert inst.owner == OWNER


class TestTemplateAndClone:
    def test_template_cannot_be_initialized(self, env):
        template = CredentialInstance.template(env.directory, TEMPLATE)
        for caller_owner in (OWNER, ALICE, CAROL):
            with pytest.raises(AlreadyInitialized):
                template.initialize(REGISTRY, caller_owner, "mine")
        assert template.state is InstanceState.TEMPLATE
        assert template.owner == NULL_ADDRESS

    def test_template_has_no_owner_capability(self, env):
        template = CredentialInstance.template(env.directory, TEMPLATE)
        with pytest.raises(NotOwner):
            template.set_registry(NULL_ADDRESS, REGISTRY)

    def test_clone_starts_uninitialized(self, env):
        template = CredentialInstance.template(env.directory, TEMPLATE)
        clone = template.clone(INSTANCE_B)
        assert clone.state is InstanceState.UNINITIALIZED
        assert clone.implementation == TEMPLATE
        assert clone.owner == NULL_ADDRESS
        with pytest.raises(NotOwner):
            clone.set_instance_metadata(OWNER, "k", b"v")

    def test_only_templates_clone(self, inst):
        with pytest.raises(ValueError):
            inst.clone(INSTANCE_B)

    def test_initialize_once(self, env):
        template = CredentialInstance.template(env.directory, TEMPLATE)
        clone = template.clone(INSTANCE_B)
        clone.events.subscribe(env.seen.append)
        clone.initialize(REGISTRY, OWNER, "Widget")
        assert clone.is_initialized
        assert clone.get_instance_metadata("name") == b"Widget"
        assert clone.display_name == "Widget"
        assert env.kinds() == [OwnershipTransferred, RegistryUpdated, MetadataChanged, Initialized]

        env.seen.clear()
        with pytest.raises(AlreadyInitialized):
            clone.initialize(REGISTRY2, CAROL, "again")
        assert clone.owner == OWNER
        assert clone.registry_address == REGISTRY
        assert env.seen == []

    def test_initialize_empty_name_writes_nothing(self, env):
        clone = CredentialInstance.template(env.directory, TEMPLATE).clone(INSTANCE_B)
        clone.initialize(REGISTRY, OWNER, "")
        assert clone.get_instance_metadata("name") == b""
        assert clone.get_status()["instance_metadata_entries"] == 0

    def test_initialize_null_registry_uses_default(self, env):
        clone = CredentialInstance.template(env.directory, TEMPLATE).clone(INSTANCE_B)
        clone.initialize(NULL_ADDRESS, OWNER)
        assert clone.registry_address == DEFAULT_REGISTRY_ADDRESS

    def test_failed_initialize_leaves_clone_uninitialized(self, env):
        clone = CredentialInstance.template(env.directory, TEMPLATE).clone(INSTANCE_B)
        with pytest.raises(TypeError):
            clone.initialize(REGISTRY, OWNER, 42)
        assert clone.state is InstanceState.UNINITIALIZED
        assert clone.owner == NULL_ADDRESS
        clone.initialize(REGISTRY, OWNER, "ok")
        assert clone.is_initialized


# =============================================================================
# Isolation
# =============================================================================

class TestIsolation:
    def test_instances_do_not_share_records(self, env):
        a = env.deploy(INSTANCE_A)
        b = env.deploy(INSTANCE_B)
        a.set_subject_metadata(ALICE, 1, "k", b"a-value")
        a.set_instance_metadata(OWNER, "k", b"a-inst")
        a.submit_review(ALICE, 1, 2, b"a-review")
        assert b.get_subject_metadata(1, "k") == b""
        assert b.get_instance_metadata("k") == b""
        assert b.get_review(1, 2) == b""

    def test_clones_of_one_template_are_isolated(self, env):
        template = CredentialInstance.template(env.directory, TEMPLATE)
        a = template.clone(INSTANCE_A)
        b = template.clone(INSTANCE_B)
        a.initialize(REGISTRY, OWNER, "A")
        b.initialize(REGISTRY, OWNER, "B")
        a.set_subject_metadata(ALICE, 1, "k", b"only-a")
        assert b.get_subject_metadata(1, "k") == b""
        assert a.display_name == "A"
        assert b.display_name == "B"
        assert template.get_subject_metadata(1, "k") == b""


# =============================================================================
# Introspection
# =============================================================================

class TestSupportsInterface:
    @pytest.mark.parametrize("iface", [
        INTROSPECTION_INTERFACE,
        SUBJECT_METADATA_INTERFACE,
        INSTANCE_METADATA_INTERFACE,
        REVIEWS_INTERFACE,
        CREDENTIAL_INSTANCE_INTERFACE,
    ])
    def test_declared_interfaces(self, inst, iface):
        assert inst.supports_interface(iface) is True
        assert inst.supports_interface("0x" + iface.hex()) is True

    def test_interface_ids_are_distinct(self):
        ids = {INTROSPECTION_INTERFACE, SUBJECT_METADATA_INTERFACE,
               INSTANCE_METADATA_INTERFACE, REVIEWS_INTERFACE,
               CREDENTIAL_INSTANCE_INTERFACE}
        assert len(ids) == 5

    @pytest.mark.parametrize("query", [
        b"\xff\xff\xff\xff", "0xffffffff", b"\x00\x00\x00\x00", "nothex!!",
        b"\x01\x02", None, 1234, interface_id("unknown()"),
    ])
    def test_unrecognized_is_false(self, inst, query):
        assert inst.supports_interface(query) is False


# =============================================================================
# Scenarios
# =============================================================================

class TestScenarios:
    def test_widget_scenario(self, env):
        template = CredentialInstance.template(env.directory, TEMPLATE)
        inst = template.clone(INSTANCE_B)
        inst.initialize(REGISTRY, OWNER, "Widget")
        assert inst.get_instance_metadata("name") == b"Widget"

        inst.set_subject_metadata(ALICE, 1, "k", b"v1")
        with pytest.raises(NotAuthorized):
            inst.set_subject_metadata(CAROL, 1, "k", b"v2")
        assert inst.get_subject_metadata(1, "k") == b"v1"

        inst.submit_review(ALICE, 1, 2, b"great")
        assert inst.get_review(1, 2) == b"great"
        assert inst.get_review(2, 1) == b""

    def test_status_summary(self, inst):
        inst.set_subject_metadata(ALICE, 1, "k", b"v")
        inst.submit_review(ALICE, 1, 2, b"r")
        status = inst.get_status()
        assert status["state"] == "initialized"
        assert status["owner"] == OWNER
        assert status["subject_metadata_entries"] == 1
        assert status["review_entries"] == 1
