"""Configuration management for IAM Role Manager.

This module turns a flat key/value bundle (a ConfigMap's data or a YAML
file with the same dotted keys) into an immutable ValidationConfig
snapshot, and holds the current snapshot so it can be swapped atomically
when the configuration source changes.
"""

import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple
import yaml


logger = logging.getLogger(__name__)

# ConfigMap holding the operator properties
CONFIG_MAP_NAMESPACE = "iam-manager-system"
CONFIG_MAP_NAME = "iam-manager-iamroles-v1alpha1-configmap"

POLICY_ARN_FORMAT = "arn:aws:iam::{account_id}:policy/{name}"
DEFAULT_PERMISSION_BOUNDARY_NAME = "k8s-iam-manager-cluster-permission-boundary"

# Property keys
PROPERTY_ALLOWED_POLICY_ACTION = "iam.policy.action.prefix.whitelist"
PROPERTY_RESTRICTED_POLICY_RESOURCES = "iam.policy.resource.blacklist"
PROPERTY_RESTRICTED_S3_RESOURCES = "iam.policy.s3.restricted.resource"
PROPERTY_AWS_REGION = "aws.region"
PROPERTY_AWS_ACCOUNT_ID = "aws.accountId"
PROPERTY_DEFAULT_TRUST_POLICY_ARNS = "iam.default.trust.policy.role.arn.list"
PROPERTY_MANAGED_POLICIES = "iam.managed.policies"
PROPERTY_PERMISSION_BOUNDARY = "iam.managed.permission.boundary.policy"
PROPERTY_WEBHOOK_ENABLED = "webhook.enabled"
PROPERTY_MAX_ROLES = "iam.role.max.limit.per.namespace"
PROPERTY_DESIRED_FREQUENCY = "controller.desired.frequency"
PROPERTY_CLUSTER_NAME = "k8s.cluster.name"
PROPERTY_OIDC_ISSUER_URL = "k8s.cluster.oidc.issuer.url"
PROPERTY_IRSA_ENABLED = "iam.irsa.enabled"
PROPERTY_ROLE_PATTERN = "iam.role.pattern"

SEPARATOR = ","

DEFAULT_REGION = "us-west-2"
DEFAULT_MAX_ROLES = 1
DEFAULT_DESIRED_FREQUENCY = 1800
MINIMUM_DESIRED_FREQUENCY = 300
DEFAULT_ROLE_PATTERN = "k8s-{namespace}"
DEFAULT_SESSION_DURATION = 43200
DEFAULT_ROLE_DESCRIPTION = "#DO NOT DELETE#. Managed by iam-manager"


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


@dataclass(frozen=True)
class ValidationConfig:
    """Read-only configuration snapshot consulted during one pass."""

    allowed_policy_actions: Tuple[str, ...] = ()
    restricted_policy_resources: Tuple[str, ...] = ()
    restricted_s3_resources: Tuple[str, ...] = ()
    aws_account_id: str = ""
    aws_region: str = DEFAULT_REGION
    managed_policies: Tuple[str, ...] = ()
    managed_permission_boundary_policy: str = ""
    default_trust_policy_role_arns: Tuple[str, ...] = ()
    max_roles_allowed: int = DEFAULT_MAX_ROLES
    controller_desired_frequency: int = DEFAULT_DESIRED_FREQUENCY
    cluster_name: str = ""
    cluster_oidc_issuer_url: str = ""
    iam_role_pattern: str = DEFAULT_ROLE_PATTERN
    webhook_enabled: bool = False
    irsa_enabled: bool = False
    session_duration: int = DEFAULT_SESSION_DURATION
    role_description: str = DEFAULT_ROLE_DESCRIPTION

    @property
    def effective_desired_frequency(self) -> int:
        """Drift pass interval with the minimum floor applied."""
        return max(self.controller_desired_frequency, MINIMUM_DESIRED_FREQUENCY)


def _split(value: Any) -> Tuple[str, ...]:
    """Split a comma separated property, dropping blank entries."""
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        items = str(value).split(SEPARATOR)
    return tuple(item.strip() for item in items if item and item.strip())


def _to_bool(value: Any) -> bool:
    return str(value).strip().lower() == "true"


def _to_int(data: Mapping[str, Any], key: str, default: int) -> int:
    value = data.get(key)
    if value is None or str(value).strip() == "":
        return default
    try:
        return int(str(value).strip())
    except ValueError:
        raise ConfigurationError(f"Property '{key}' must be an integer, got {value!r}")


def policy_arn(account_id: str, name: str) -> str:
    """Expand a policy name to an ARN unless it already is one."""
    if name.startswith("arn:aws:iam::"):
        return name
    return POLICY_ARN_FORMAT.format(account_id=account_id, name=name)


def load_properties(
    data: Mapping[str, Any],
    account_id_resolver: Optional[Callable[[], str]] = None,
) -> ValidationConfig:
    """Build a ValidationConfig snapshot from a flat property bundle.

    Args:
        data: Mapping of dotted property keys to values
        account_id_resolver: Called when no account id is configured,
            typically AWSClientManager.get_account_id

    Returns:
        Immutable configuration snapshot

    Raises:
        ConfigurationError: When a property has an invalid value
    """
    if data is None:
        raise ConfigurationError("Configuration data cannot be empty")

    account_id = str(data.get(PROPERTY_AWS_ACCOUNT_ID) or "").strip()
    if not account_id and account_id_resolver is not None:
        try:
            account_id = account_id_resolver()
        except Exception as e:
            raise ConfigurationError(f"Unable to resolve AWS account id: {e}")

    boundary = str(data.get(PROPERTY_PERMISSION_BOUNDARY) or "").strip()
    if not boundary:
        boundary = DEFAULT_PERMISSION_BOUNDARY_NAME
    boundary = policy_arn(account_id, boundary)

    managed_policies = tuple(
        policy_arn(account_id, name) for name in _split(data.get(PROPERTY_MANAGED_POLICIES))
    )

    irsa_enabled = _to_bool(data.get(PROPERTY_IRSA_ENABLED, ""))
    oidc_url = str(data.get(PROPERTY_OIDC_ISSUER_URL) or "").strip()
    if irsa_enabled and not oidc_url:
        raise ConfigurationError(
            f"Property '{PROPERTY_OIDC_ISSUER_URL}' is required when IRSA is enabled"
        )

    return ValidationConfig(
        allowed_policy_actions=_split(data.get(PROPERTY_ALLOWED_POLICY_ACTION)),
        restricted_policy_resources=_split(data.get(PROPERTY_RESTRICTED_POLICY_RESOURCES)),
        restricted_s3_resources=_split(data.get(PROPERTY_RESTRICTED_S3_RESOURCES)),
        aws_account_id=account_id,
        aws_region=str(data.get(PROPERTY_AWS_REGION) or DEFAULT_REGION).strip(),
        managed_policies=managed_policies,
        managed_permission_boundary_policy=boundary,
        default_trust_policy_role_arns=_split(data.get(PROPERTY_DEFAULT_TRUST_POLICY_ARNS)),
        max_roles_allowed=_to_int(data, PROPERTY_MAX_ROLES, DEFAULT_MAX_ROLES),
        controller_desired_frequency=_to_int(
            data, PROPERTY_DESIRED_FREQUENCY, DEFAULT_DESIRED_FREQUENCY
        ),
        cluster_name=str(data.get(PROPERTY_CLUSTER_NAME) or "").strip(),
        cluster_oidc_issuer_url=oidc_url,
        iam_role_pattern=str(data.get(PROPERTY_ROLE_PATTERN) or DEFAULT_ROLE_PATTERN).strip(),
        webhook_enabled=_to_bool(data.get(PROPERTY_WEBHOOK_ENABLED, "")),
        irsa_enabled=irsa_enabled,
    )


class Configuration:
    """YAML file configuration with environment variable overrides.

    Used for local runs where no ConfigMap is available. The file holds the
    same dotted property keys as the ConfigMap.
    """

    def __init__(self, config_path: Optional[str] = None) -> None:
        """Initialize configuration manager.

        Args:
            config_path: Optional path to configuration file.
                        If None, auto-detects config.yaml in current directory.

        Raises:
            ConfigurationError: When configuration file is invalid
        """
        self._config: Dict[str, Any] = {}
        self._config_path = self._resolve_config_path(config_path)
        self._load_configuration()
        self._apply_environment_overrides()

    def _resolve_config_path(self, config_path: Optional[str]) -> Path:
        """Resolve configuration file path.

        Raises:
            ConfigurationError: When configuration file not found
        """
        if config_path:
            path = Path(config_path)
        else:
            path = Path("config.yaml")
            if not path.exists():
                path = Path("config/settings.yaml")

        if not path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {path}. "
                "Please create a configuration file or specify a valid path."
            )

        return path

    def _load_configuration(self) -> None:
        """Load configuration from YAML file.

        Raises:
            ConfigurationError: When YAML file is invalid
        """
        try:
            with open(self._config_path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in configuration file {self._config_path}: {e}"
            )
        except IOError as e:
            raise ConfigurationError(
                f"Unable to read configuration file {self._config_path}: {e}"
            )

        if not isinstance(loaded, dict):
            raise ConfigurationError(
                f"Configuration file {self._config_path} must contain a mapping"
            )
        self._config = loaded

    def _apply_environment_overrides(self) -> None:
        """Apply environment variable overrides to configuration."""
        if "AWS_REGION" in os.environ:
            self._config[PROPERTY_AWS_REGION] = os.environ["AWS_REGION"]

        if "AWS_ACCOUNT_ID" in os.environ:
            self._config[PROPERTY_AWS_ACCOUNT_ID] = os.environ["AWS_ACCOUNT_ID"]

    def get(self, key: str, default: Any = None) -> Any:
        """Get a property value by its dotted key."""
        return self._config.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        """Get complete configuration as dictionary."""
        return self._config.copy()


class ConfigStore:
    """Holds the current ValidationConfig and swaps it on reload.

    Readers take ``current`` once per pass and keep using that snapshot;
    a reload replaces the reference and never mutates a published snapshot.
    """

    def __init__(
        self,
        initial: Optional[ValidationConfig] = None,
        account_id_resolver: Optional[Callable[[], str]] = None,
    ) -> None:
        self._current = initial or ValidationConfig()
        self._account_id_resolver = account_id_resolver
        self._lock = threading.Lock()

    @property
    def current(self) -> ValidationConfig:
        return self._current

    def reload(self, data: Mapping[str, Any]) -> ValidationConfig:
        """Build a new snapshot from ``data`` and publish it.

        Raises:
            ConfigurationError: When the new data is invalid; the previous
                snapshot stays in effect
        """
        snapshot = load_properties(data, self._account_id_resolver)
        with self._lock:
            self._current = snapshot
        logger.info(
            f"Loaded configuration: {len(snapshot.allowed_policy_actions)} allowed action prefixes, "
            f"max {snapshot.max_roles_allowed} roles per namespace"
        )
        return snapshot
