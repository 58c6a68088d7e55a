"""Unit tests for Configuration Management."""

import os
import tempfile

import pytest
import yaml
from unittest.mock import Mock, patch

from iam_role_manager.core.config import (
    DEFAULT_DESIRED_FREQUENCY,
    DEFAULT_ROLE_PATTERN,
    MINIMUM_DESIRED_FREQUENCY,
    ConfigStore,
    Configuration,
    ConfigurationError,
    ValidationConfig,
    load_properties,
)


PROPERTIES = {
    "iam.policy.action.prefix.whitelist": "s3:,sts:, ",
    "iam.policy.resource.blacklist": "policy-resource",
    "iam.policy.s3.restricted.resource": "arn:aws:s3:::restricted-bucket",
    "aws.accountId": "123456789012",
    "iam.default.trust.policy.role.arn.list": "arn:aws:iam::123456789012:role/trusted",
    "iam.managed.policies": "shared,arn:aws:iam::aws:policy/ReadOnlyAccess",
    "iam.role.max.limit.per.namespace": "3",
    "controller.desired.frequency": "600",
    "k8s.cluster.name": "prod",
    "webhook.enabled": "true",
}


class TestLoadProperties:
    """Test cases for load_properties function."""

    def test_full_bundle(self):
        """Test a complete property bundle is parsed."""
        config = load_properties(PROPERTIES)

        assert config.allowed_policy_actions == ("s3:", "sts:")
        assert config.restricted_policy_resources == ("policy-resource",)
        assert config.restricted_s3_resources == ("arn:aws:s3:::restricted-bucket",)
        assert config.default_trust_policy_role_arns == ("arn:aws:iam::123456789012:role/trusted",)
        assert config.managed_policies == (
            "arn:aws:iam::123456789012:policy/shared",
            "arn:aws:iam::aws:policy/ReadOnlyAccess",
        )
        assert config.max_roles_allowed == 3
        assert config.controller_desired_frequency == 600
        assert config.cluster_name == "prod"
        assert config.webhook_enabled is True
        assert config.irsa_enabled is False

    def test_defaults(self):
        """Test missing properties fall back to defaults."""
        config = load_properties({"aws.accountId": "123456789012"})

        assert config.allowed_policy_actions == ()
        assert config.max_roles_allowed == 1
        assert config.controller_desired_frequency == DEFAULT_DESIRED_FREQUENCY
        assert config.iam_role_pattern == DEFAULT_ROLE_PATTERN
        assert config.managed_permission_boundary_policy == (
            "arn:aws:iam::123456789012:policy/k8s-iam-manager-cluster-permission-boundary"
        )

    def test_boundary_arn_kept(self):
        """Test a boundary given as an ARN is used unchanged."""
        arn = "arn:aws:iam::999999999999:policy/custom"
        config = load_properties({
            "aws.accountId": "123456789012",
            "iam.managed.permission.boundary.policy": arn,
        })
        assert config.managed_permission_boundary_policy == arn

    def test_account_id_resolver(self):
        """Test the account id is resolved when not configured."""
        resolver = Mock(return_value="210987654321")

        config = load_properties({}, account_id_resolver=resolver)

        assert config.aws_account_id == "210987654321"
        resolver.assert_called_once()

    def test_account_id_resolver_failure(self):
        """Test resolver failures become configuration errors."""
        resolver = Mock(side_effect=RuntimeError("no credentials"))

        with pytest.raises(ConfigurationError, match="Unable to resolve AWS account id"):
            load_properties({}, account_id_resolver=resolver)

    def test_invalid_integer(self):
        """Test non-numeric limits are rejected."""
        with pytest.raises(ConfigurationError, match="must be an integer"):
            load_properties({"iam.role.max.limit.per.namespace": "many"})

    def test_irsa_requires_issuer(self):
        """Test IRSA needs the cluster OIDC issuer."""
        with pytest.raises(ConfigurationError, match="required when IRSA is enabled"):
            load_properties({"iam.irsa.enabled": "true"})

    def test_empty_data(self):
        """Test missing data is rejected."""
        with pytest.raises(ConfigurationError):
            load_properties(None)

    def test_desired_frequency_floor(self):
        """Test the drift interval never drops below the minimum."""
        config = ValidationConfig(controller_desired_frequency=10)
        assert config.effective_desired_frequency == MINIMUM_DESIRED_FREQUENCY


class TestConfigStore:
    """Test cases for ConfigStore class."""

    def test_reload_swaps_snapshot(self):
        """Test a reload publishes a new snapshot."""
        store = ConfigStore()
        before = store.current

        after = store.reload(PROPERTIES)

        assert store.current is after
        assert before.allowed_policy_actions == ()
        assert after.allowed_policy_actions == ("s3:", "sts:")

    def test_failed_reload_keeps_snapshot(self):
        """Test an invalid bundle leaves the previous snapshot in effect."""
        store = ConfigStore()
        current = store.reload(PROPERTIES)

        with pytest.raises(ConfigurationError):
            store.reload({"iam.role.max.limit.per.namespace": "x"})

        assert store.current is current


class TestConfiguration:
    """Test cases for Configuration class."""

    def test_load_valid_config(self):
        """Test loading valid configuration."""
        with tempfile.NamedTemporaryFile(
            mode="w", suffix=".yaml", delete=False
        ) as f:
            yaml.dump(PROPERTIES, f)
            config_path = f.name

        try:
            with patch.dict(os.environ, {}, clear=True):
                config = Configuration(config_path)
            assert config.get("k8s.cluster.name") == "prod"
            assert load_properties(config.to_dict()).max_roles_allowed == 3
        finally:
            os.unlink(config_path)

    def test_environment_overrides(self):
        """Test AWS environment variables override the file."""
        with tempfile.NamedTemporaryFile(
            mode="w", suffix=".yaml", delete=False
        ) as f:
            yaml.dump(PROPERTIES, f)
            config_path = f.name

        try:
            with patch.dict(os.environ, {"AWS_REGION": "eu-west-1", "AWS_ACCOUNT_ID": "111111111111"}):
                config = Configuration(config_path)
            assert config.get("aws.region") == "eu-west-1"
            assert config.get("aws.accountId") == "111111111111"
        finally:
            os.unlink(config_path)

    def test_missing_config_file(self):
        """Test handling of missing configuration file."""
        with pytest.raises(ConfigurationError) as exc_info:
            Configuration("/nonexistent/config.yaml")

        assert "Configuration file not found" in str(exc_info.value)

    def test_invalid_yaml(self):
        """Test handling of invalid YAML."""
        with tempfile.NamedTemporaryFile(
            mode="w", suffix=".yaml", delete=False
        ) as f:
            f.write("invalid: yaml: content: [")
            config_path = f.name

        try:
            with pytest.raises(ConfigurationError) as exc_info:
                Configuration(config_path)

            assert "Invalid YAML" in str(exc_info.value)
        finally:
            os.unlink(config_path)

    def test_not_a_mapping(self):
        """Test a YAML list is rejected."""
        with tempfile.NamedTemporaryFile(
            mode="w", suffix=".yaml", delete=False
        ) as f:
            yaml.dump(["a", "b"], f)
            config_path = f.name

        try:
            with pytest.raises(ConfigurationError, match="must contain a mapping"):
                Configuration(config_path)
        finally:
            os.unlink(config_path)
