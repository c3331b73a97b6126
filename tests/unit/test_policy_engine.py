"""
Unit tests for RiskPolicyEngine and policy resolution.

Tests:
- Max-based aggregation over triggered checks
- Fixed contributions (integrity not met, SIM absent)
- Disabled policies
- determine_action table and fail-closed behavior
- Tenant policy resolution and atomic snapshot replacement

Run tests:
    pytest tests/unit/test_policy_engine.py -v
"""

import itertools
import threading

import pytest

from sfe_backend.core.config import MultiTenantConfig, Settings, TenantConfig
from sfe_backend.models.attestation import (
    AttestationEvidence,
    AttestationResult,
    BindingInfo,
    DeviceInfo,
    IntegrityVerdict,
)
from sfe_backend.models.policy import PolicyTable, SecurityPolicy
from sfe_backend.models.risk import PolicyAction, RiskLevel
from sfe_backend.modules.policy.engine import RiskPolicyEngine, determine_action
from sfe_backend.modules.policy.store import PolicySnapshot, PolicyStore, resolve_policy_table


# Test fixtures

@pytest.fixture
def engine():
    return RiskPolicyEngine()


@pytest.fixture
def passing_attestation():
    return AttestationResult.success(
        IntegrityVerdict(meets_device_integrity=True, meets_basic_integrity=True),
        RiskLevel.LOW,
    )


def make_evidence(rooted=False, debugger=False, tampered=False, sim_present=True):
    return AttestationEvidence(
        device_info=DeviceInfo(rooted=rooted, debugger_attached=debugger, tampered=tampered),
        binding_info=BindingInfo(sim_present=sim_present),
        attestation_token="a.b.c",
    )


def policy(check_name, action, risk_level, enabled=True):
    return SecurityPolicy(check_name=check_name, action=action, risk_level=risk_level, enabled=enabled)


def make_store(tenants=None, enabled=True, default=None):
    return PolicyStore(PolicySnapshot(
        version="1.0.0",
        default_policies=default or PolicyTable(),
        tenants=tenants or {},
        multi_tenant_enabled=enabled,
    ))


# Test aggregation

class TestAssessRisk:
    """Test assess_risk / evaluate aggregation."""

    def test_no_checks_triggered_is_low(self, engine, passing_attestation):
        assessment = engine.evaluate(make_evidence(), passing_attestation, PolicyTable())

        assert assessment.risk_level == RiskLevel.LOW
        assert not assessment.has_violations

    def test_rooted_with_critical_policy_is_critical(self, engine, passing_attestation):
        """rooted + root_detection BLOCK/CRITICAL -> CRITICAL -> BLOCK."""
        table = PolicyTable(root_detection=policy("root_detection", "BLOCK", "CRITICAL"))

        risk = engine.assess_risk(make_evidence(rooted=True), passing_attestation, table)

        assert risk == RiskLevel.CRITICAL
        assert engine.determine_action(risk) == PolicyAction.BLOCK

    def test_sim_absent_only_is_medium_monitor(self, engine, passing_attestation):
        """Only SIM absence triggered with a clean device -> MEDIUM -> MONITOR."""
        assessment = engine.evaluate(make_evidence(sim_present=False), passing_attestation, PolicyTable())

        assert assessment.risk_level == RiskLevel.MEDIUM
        assert engine.determine_action(assessment.risk_level) == PolicyAction.MONITOR
        assert assessment.violations["device_binding"]["issue"] == "sim_not_present"

    def test_integrity_not_met_is_high(self, engine):
        attestation = AttestationResult.success(
            IntegrityVerdict(meets_device_integrity=False, meets_basic_integrity=True),
            RiskLevel.HIGH,
        )

        assessment = engine.evaluate(make_evidence(), attestation, PolicyTable())

        assert assessment.risk_level == RiskLevel.HIGH
        assert "attestation_failure" in assessment.violations

    def test_invalid_token_counts_as_integrity_not_met(self, engine):
        attestation = AttestationResult.invalid_token("Attestation token is required")
        assert engine.assess_risk(make_evidence(), attestation, PolicyTable()) == RiskLevel.HIGH

    def test_no_attestation_result_skips_integrity_check(self, engine):
        assert engine.assess_risk(make_evidence(), None, PolicyTable()) == RiskLevel.LOW

    def test_missing_device_and_binding_info_is_low(self, engine, passing_attestation):
        evidence = AttestationEvidence(attestation_token="a.b.c")
        assert engine.assess_risk(evidence, passing_attestation, PolicyTable()) == RiskLevel.LOW

    def test_multiple_violations_take_max_not_sum(self, engine, passing_attestation):
        """Two MEDIUM contributions stay MEDIUM."""
        table = PolicyTable(debugger_detection=policy("debugger_detection", "MONITOR", "MEDIUM"))
        evidence = make_evidence(debugger=True, sim_present=False)

        assessment = engine.evaluate(evidence, passing_attestation, table)

        assert assessment.risk_level == RiskLevel.MEDIUM
        assert set(assessment.violations) == {"debugger_detection", "device_binding"}

    @pytest.mark.parametrize("rooted,debugger,tampered,sim_absent", list(itertools.product([False, True], repeat=4)))
    def test_aggregate_is_max_of_triggered(self, engine, passing_attestation, rooted, debugger, tampered, sim_absent):
        """For every subset of triggered checks the result is the max configured level."""
        table = PolicyTable(
            root_detection=policy("root_detection", "BLOCK", "HIGH"),
            debugger_detection=policy("debugger_detection", "ALLOW", "LOW"),
            app_tampering=policy("app_tampering", "BLOCK", "CRITICAL"),
        )
        expected = [RiskLevel.LOW]
        if rooted:
            expected.append(RiskLevel.HIGH)
        if debugger:
            expected.append(RiskLevel.LOW)
        if tampered:
            expected.append(RiskLevel.CRITICAL)
        if sim_absent:
            expected.append(RiskLevel.MEDIUM)

        evidence = make_evidence(rooted=rooted, debugger=debugger, tampered=tampered, sim_present=not sim_absent)

        assert engine.assess_risk(evidence, passing_attestation, table) == max(expected)

    def test_disabled_policy_never_triggers(self, engine, passing_attestation):
        table = PolicyTable(app_tampering=policy("app_tampering", "BLOCK", "CRITICAL", enabled=False))

        assessment = engine.evaluate(make_evidence(tampered=True), passing_attestation, table)

        assert assessment.risk_level == RiskLevel.LOW
        assert "app_tampering" not in assessment.violations

    def test_violation_details_carry_configured_action(self, engine, passing_attestation):
        assessment = engine.evaluate(make_evidence(tampered=True), passing_attestation, PolicyTable())

        assert assessment.violations["app_tampering"] == {"action": "BLOCK", "riskLevel": "CRITICAL"}


# Test determine_action

class TestDetermineAction:
    """Test the risk -> action table."""

    @pytest.mark.parametrize("level,action", [
        (RiskLevel.LOW, PolicyAction.ALLOW),
        (RiskLevel.MEDIUM, PolicyAction.MONITOR),
        (RiskLevel.HIGH, PolicyAction.REQUIRE_ADDITIONAL_AUTH),
        (RiskLevel.CRITICAL, PolicyAction.BLOCK),
    ])
    def test_table(self, level, action):
        assert determine_action(level) == action

    def test_monotonic(self):
        levels = sorted(RiskLevel)
        actions = [determine_action(level) for level in levels]
        assert actions == sorted(actions)

    def test_accepts_level_names(self):
        assert determine_action("medium") == PolicyAction.MONITOR

    @pytest.mark.parametrize("value", ["SEVERE", "", None, 3])
    def test_unknown_level_fails_closed(self, value):
        assert determine_action(value) == PolicyAction.BLOCK


# Test single-policy evaluation

class TestEvaluatePolicy:
    """Test evaluate_policy and is_high_risk_device."""

    def test_violated_policy(self, engine):
        result = engine.evaluate_policy("root_detection", make_evidence(rooted=True), PolicyTable())

        assert result.violated is True
        assert result.action == PolicyAction.BLOCK
        assert result.risk_level == RiskLevel.HIGH
        assert result.message == "Root access detected"

    def test_not_violated_policy(self, engine):
        result = engine.evaluate_policy("debugger_detection", make_evidence(), PolicyTable())

        assert result.violated is False
        assert result.action == PolicyAction.ALLOW

    def test_unknown_policy_type(self, engine):
        result = engine.evaluate_policy("quantum_detection", make_evidence(rooted=True), PolicyTable())

        assert result.violated is False
        assert result.action == PolicyAction.ALLOW
        assert result.risk_level == RiskLevel.LOW
        assert result.message == "Unknown policy type"

    @pytest.mark.parametrize("flags,expected", [
        ({}, False),
        ({"rooted": True}, True),
        ({"debugger": True}, True),
        ({"tampered": True}, True),
    ])
    def test_is_high_risk_device(self, engine, flags, expected):
        assert engine.is_high_risk_device(make_evidence(**flags)) is expected


# Test policy resolution

class TestResolvePolicyTable:
    """Test tenant policy resolution."""

    @pytest.fixture
    def tenant_table(self):
        return PolicyTable(root_detection=policy("root_detection", "BLOCK", "CRITICAL"))

    def test_known_tenant_gets_override(self, tenant_table):
        store = make_store({"bank-a": TenantConfig(tenant_id="bank-a", policies=tenant_table)})
        assert resolve_policy_table("bank-a", store) is tenant_table

    def test_unknown_tenant_falls_back_to_default(self, tenant_table):
        """Unknown tenant id -> default table, no error."""
        default = PolicyTable()
        store = make_store({"bank-a": TenantConfig(tenant_id="bank-a", policies=tenant_table)}, default=default)

        assert resolve_policy_table("bank-z", store) is default

    def test_tenant_without_override_uses_default(self):
        default = PolicyTable()
        store = make_store({"bank-a": TenantConfig(tenant_id="bank-a")}, default=default)

        assert resolve_policy_table("bank-a", store) is default

    def test_inactive_tenant_uses_default(self, tenant_table):
        default = PolicyTable()
        store = make_store(
            {"bank-a": TenantConfig(tenant_id="bank-a", policies=tenant_table, active=False)},
            default=default,
        )

        assert resolve_policy_table("bank-a", store) is default

    def test_multi_tenant_disabled_uses_default(self, tenant_table):
        default = PolicyTable()
        store = make_store(
            {"bank-a": TenantConfig(tenant_id="bank-a", policies=tenant_table)},
            enabled=False,
            default=default,
        )

        assert resolve_policy_table("bank-a", store) is default

    def test_no_tenant_id_uses_default(self):
        default = PolicyTable()
        assert resolve_policy_table(None, make_store(default=default)) is default

    def test_tenant_config_accepts_camel_case_id(self):
        tenant = TenantConfig.model_validate({"tenantId": "bank-a", "policies": {"rootDetection": {"action": "WARN"}}})

        assert tenant.tenant_id == "bank-a"
        assert tenant.policies.root_detection.action == PolicyAction.MONITOR


class TestPolicyStore:
    """Test atomic snapshot replacement."""

    def test_replace_swaps_default_table(self):
        store = make_store()
        new_table = PolicyTable(root_detection=policy("root_detection", "MONITOR", "MEDIUM"))

        snapshot = store.replace(version="1.1.0", default_policies=new_table)

        assert store.snapshot() is snapshot
        assert snapshot.version == "1.1.0"
        assert resolve_policy_table(None, store) is new_table

    def test_replace_carries_over_unspecified_sections(self):
        tenants = {"bank-a": TenantConfig(tenant_id="bank-a")}
        store = make_store(tenants)

        snapshot = store.replace(version="2.0.0")

        assert snapshot.tenants == tenants
        assert snapshot.multi_tenant_enabled is True

    def test_replace_multi_tenant_section(self):
        store = make_store()

        snapshot = store.replace(version="2.0.0", multi_tenant=MultiTenantConfig(enabled=False))

        assert snapshot.multi_tenant_enabled is False

    def test_readers_keep_their_snapshot(self):
        store = make_store()
        before = store.snapshot()

        store.replace(version="9.9.9", default_policies=PolicyTable())

        assert before.version == "1.0.0"
        assert store.snapshot().version == "9.9.9"

    def test_concurrent_readers_see_whole_snapshots(self):
        """Readers never observe a table that belongs to neither version."""
        table_a = PolicyTable(root_detection=policy("root_detection", "BLOCK", "HIGH"))
        table_b = PolicyTable(root_detection=policy("root_detection", "MONITOR", "MEDIUM"))
        store = PolicyStore(PolicySnapshot(version="a", default_policies=table_a))
        seen = []
        stop = threading.Event()

        def reader():
            while not stop.is_set():
                snapshot = store.snapshot()
                seen.append((snapshot.version, snapshot.default_policies))

        thread = threading.Thread(target=reader)
        thread.start()
        for i in range(200):
            if i % 2:
                store.replace(version="a", default_policies=table_a)
            else:
                store.replace(version="b", default_policies=table_b)
        stop.set()
        thread.join()

        for version, table in seen:
            assert table is (table_a if version == "a" else table_b)

    def test_from_settings(self):
        settings = Settings(POLICY_VERSION="3.1.0")
        store = PolicyStore.from_settings(settings)

        assert store.snapshot().version == "3.1.0"
        assert store.snapshot().multi_tenant_enabled is False
