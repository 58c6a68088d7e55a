"""Tests for declared role records."""

import dataclasses
from datetime import datetime, timezone

from iam_role_manager.controller.declaration import (
    FINALIZER,
    IRSA_ANNOTATION,
    TAGS_ANNOTATION,
    LifecycleState,
    RoleDeclaration,
    RoleStatus,
    parse_tags_annotation,
)

from conftest import make_body


class TestRoleStatus:
    """Test RoleStatus serialization."""

    def test_empty_status_is_new(self):
        """Test a missing status parses as a new record."""
        status = RoleStatus.from_dict(None)
        assert status.state is LifecycleState.NEW
        assert status.retry_count == 0

    def test_camel_case_keys(self):
        """Test status fields use the resource field names."""
        status = RoleStatus(
            role_name="k8s-team-a",
            role_arn="arn:aws:iam::123456789012:role/k8s-team-a",
            state=LifecycleState.READY,
            retry_count=2,
            observed_generation=3,
        )

        data = status.to_dict()

        assert data["roleName"] == "k8s-team-a"
        assert data["roleARN"].endswith("role/k8s-team-a")
        assert data["state"] == "Ready"
        assert data["retryCount"] == 2
        assert data["observedGeneration"] == 3
        assert RoleStatus.from_dict(data) == status

    def test_unknown_state(self):
        """Test an unknown state string is treated as new."""
        assert RoleStatus.from_dict({"state": "Bogus"}).state is LifecycleState.NEW


class TestParseTagsAnnotation:
    """Test parse_tags_annotation function."""

    def test_pairs(self):
        """Test comma separated pairs are parsed and trimmed."""
        assert parse_tags_annotation("team=payments, env = prod") == {"team": "payments", "env": "prod"}

    def test_malformed_pairs_skipped(self):
        """Test pairs without a separator or key are ignored."""
        assert parse_tags_annotation("novalue,=x,ok=1") == {"ok": "1"}

    def test_missing(self):
        """Test a missing annotation yields no tags."""
        assert parse_tags_annotation(None) == {}


class TestRoleDeclaration:
    """Test RoleDeclaration parsing and derived values."""

    def test_from_body(self):
        """Test a body is parsed into a declaration."""
        body = make_body(finalizers=[FINALIZER], generation=4)
        body["metadata"]["resourceVersion"] = "17"

        declaration = RoleDeclaration.from_body(body)

        assert declaration.key == "team-a/app-role"
        assert declaration.generation == 4
        assert declaration.resource_version == "17"
        assert declaration.has_finalizer
        assert not declaration.is_deleting
        assert declaration.policy.statement[0].action == ["s3:GetObject"]
        assert declaration.trust_override is None

    def test_deleting(self):
        """Test the deletion marker is exposed."""
        declaration = RoleDeclaration.from_body(make_body(deletion_timestamp="2024-01-01T00:00:00Z"))
        assert declaration.is_deleting

    def test_spec_changed(self):
        """Test spec changes are detected from the generation."""
        declaration = RoleDeclaration.from_body(make_body(generation=2, status={"observedGeneration": 1}))
        assert declaration.spec_changed

        declaration.status.observed_generation = 2
        assert not declaration.spec_changed

    def test_role_name_from_pattern(self, validation_config):
        """Test the role name is computed from the namespace."""
        declaration = RoleDeclaration.from_body(make_body())
        assert declaration.role_name(validation_config) == "k8s-team-a"

    def test_role_name_pattern_with_name(self, validation_config):
        """Test patterns may reference the record name."""
        config = dataclasses.replace(validation_config, iam_role_pattern="k8s-{namespace}-{name}")
        declaration = RoleDeclaration.from_body(make_body())
        assert declaration.role_name(config) == "k8s-team-a-app-role"

    def test_role_name_is_sticky(self, validation_config):
        """Test an assigned role name survives pattern changes."""
        declaration = RoleDeclaration.from_body(make_body(status={"roleName": "legacy-role"}))
        assert declaration.role_name(validation_config) == "legacy-role"

    def test_tags(self, validation_config):
        """Test ownership tags override annotation tags."""
        declaration = RoleDeclaration.from_body(make_body(
            annotations={TAGS_ANNOTATION: "team=payments,Namespace=spoofed"},
        ))

        assert declaration.tags(validation_config) == {
            "team": "payments",
            "Namespace": "team-a",
            "Cluster": "test-cluster",
        }

    def test_tags_without_cluster(self, validation_config):
        """Test the cluster tag is omitted when no cluster is configured."""
        config = dataclasses.replace(validation_config, cluster_name="")
        declaration = RoleDeclaration.from_body(make_body())
        assert declaration.tags(config) == {"Namespace": "team-a"}

    def test_irsa_service_accounts(self):
        """Test the comma separated service account annotation is split."""
        declaration = RoleDeclaration.from_body(make_body(annotations={IRSA_ANNOTATION: " app , worker,,"}))
        assert declaration.irsa_service_accounts == ["app", "worker"]
        assert RoleDeclaration.from_body(make_body()).irsa_service_accounts == []

    def test_requested_role_name(self, validation_config):
        """Test spec.RoleName applies only to privileged namespaces."""
        declaration = RoleDeclaration.from_body(make_body(role_name=" shared-deployer "))

        assert declaration.requested_role_name == "shared-deployer"
        assert declaration.role_name(validation_config) == "k8s-team-a"
        assert declaration.role_name(validation_config, privileged=True) == "shared-deployer"

    def test_assigned_role_name_wins(self, validation_config):
        """Test a name already in status is never replaced."""
        declaration = RoleDeclaration.from_body(make_body(
            role_name="shared-deployer", status={"roleName": "k8s-team-a"}
        ))
        assert declaration.role_name(validation_config, privileged=True) == "k8s-team-a"

    def test_retry_due(self):
        """Test the persisted retry time decides when a retry is due."""
        status = RoleStatus.from_dict({"nextRetryTimestamp": "2024-01-01T00:00:30Z"})

        assert not status.retry_due(datetime(2024, 1, 1, 0, 0, 29, tzinfo=timezone.utc))
        assert status.retry_due(datetime(2024, 1, 1, 0, 0, 30, tzinfo=timezone.utc))
        assert not RoleStatus().retry_due(datetime(2024, 1, 1, tzinfo=timezone.utc))
