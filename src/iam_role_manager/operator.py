"""Event framework bindings.

Importing this module registers the kopf handlers: Iamrole notifications,
configuration reloads, admission validation and defaulting, and the
startup and cleanup hooks that own the long-lived components.
"""

import logging
from typing import Any, Dict, Optional

import kopf
from kubernetes import client, config as kube_config
from kubernetes.client.exceptions import ApiException

from .core.aws_client import AWSClientManager
from .core.config import (
    CONFIG_MAP_NAME,
    CONFIG_MAP_NAMESPACE,
    ConfigStore,
    Configuration,
    ConfigurationError,
)
from .controller.cluster import ClusterResources
from .controller.drift import PeriodicDriftReconciler
from .controller.reconciler import IAMRoleReconciler
from .controller.scheduler import RetrySweeper
from .controller.state_machine import Trigger
from .controller.store import GROUP, PLURAL, VERSION, KubernetesResourceStore
from .iam.roles import IAMRolesManager
from .policy.validation import format_field_errors
from .webhook import admission


logger = logging.getLogger(__name__)

OIDC_AUDIENCE = "sts.amazonaws.com"
DEFAULT_WEBHOOK_PORT = 9443


class OperatorRuntime:
    """Owns the components shared by all handlers of one process."""

    def __init__(self) -> None:
        self.config_path: Optional[str] = None
        self.profile_name: Optional[str] = None
        self.region_name: Optional[str] = None
        self.oidc_thumbprint: Optional[str] = None
        self.webhook_port = DEFAULT_WEBHOOK_PORT
        self.webhook_certfile: Optional[str] = None
        self.webhook_keyfile: Optional[str] = None

        self.aws_client: Optional[AWSClientManager] = None
        self.config_store: Optional[ConfigStore] = None
        self.store: Optional[KubernetesResourceStore] = None
        self.roles: Optional[IAMRolesManager] = None
        self.cluster: Optional[ClusterResources] = None
        self.reconciler: Optional[IAMRoleReconciler] = None
        self.drift: Optional[PeriodicDriftReconciler] = None
        self.retries: Optional[RetrySweeper] = None

    def configure(
        self,
        config_path: Optional[str] = None,
        profile_name: Optional[str] = None,
        region_name: Optional[str] = None,
        oidc_thumbprint: Optional[str] = None,
        webhook_port: int = DEFAULT_WEBHOOK_PORT,
        webhook_certfile: Optional[str] = None,
        webhook_keyfile: Optional[str] = None,
    ) -> None:
        """Record process options before the operator starts."""
        self.config_path = config_path
        self.profile_name = profile_name
        self.region_name = region_name
        self.oidc_thumbprint = oidc_thumbprint
        self.webhook_port = webhook_port
        self.webhook_certfile = webhook_certfile
        self.webhook_keyfile = webhook_keyfile

    def start(self) -> None:
        """Build the components and start the background loops.

        Raises:
            ConfigurationError: When the initial configuration is invalid
        """
        _load_kube_config()

        self.aws_client = AWSClientManager(
            profile_name=self.profile_name,
            region_name=self.region_name,
        )
        self.aws_client.validate_credentials()
        self.config_store = ConfigStore(account_id_resolver=self.aws_client.get_account_id)
        self.config_store.reload(self._initial_properties())

        self.store = KubernetesResourceStore()
        self.roles = IAMRolesManager(self.aws_client)
        self.cluster = ClusterResources()
        self.reconciler = IAMRoleReconciler(
            self.store, self.roles, self.config_store, self.cluster
        )
        self.drift = PeriodicDriftReconciler(self.store, self.reconciler, self.config_store)
        self.retries = RetrySweeper(self.store, self._retry)

        self._register_oidc_provider()
        self.drift.start()
        self.retries.start()
        logger.info("IAM role manager started")

    def stop(self) -> None:
        """Stop the background loops; pending retries stay recorded in status."""
        if self.drift is not None:
            self.drift.stop()
        if self.retries is not None:
            self.retries.stop()
        logger.info("IAM role manager stopped")

    def _retry(self, namespace: str, name: str, trigger: Trigger) -> None:
        if self.reconciler is not None:
            self.reconciler.reconcile(namespace, name, trigger)

    def _initial_properties(self) -> Dict[str, Any]:
        if self.config_path:
            logger.info(f"Loading configuration from {self.config_path}")
            return Configuration(self.config_path).to_dict()

        try:
            config_map = client.CoreV1Api().read_namespaced_config_map(
                CONFIG_MAP_NAME, CONFIG_MAP_NAMESPACE
            )
        except ApiException as e:
            raise ConfigurationError(
                f"Unable to read config map {CONFIG_MAP_NAMESPACE}/{CONFIG_MAP_NAME}: "
                f"{e.status} {e.reason}"
            )
        return dict(config_map.data or {})

    def _register_oidc_provider(self) -> None:
        snapshot = self.config_store.current
        if not snapshot.irsa_enabled:
            return
        if not self.oidc_thumbprint:
            logger.warning("IRSA is enabled but no OIDC thumbprint was given, skipping provider registration")
            return
        self.roles.create_oidc_provider(
            snapshot.cluster_oidc_issuer_url, OIDC_AUDIENCE, self.oidc_thumbprint
        )


runtime = OperatorRuntime()


def _load_kube_config() -> None:
    try:
        kube_config.load_incluster_config()
    except kube_config.ConfigException:
        kube_config.load_kube_config()


def _is_operator_config_map(name: str, namespace: str, **_: Any) -> bool:
    return name == CONFIG_MAP_NAME and namespace == CONFIG_MAP_NAMESPACE


@kopf.on.startup()
def startup(settings: kopf.OperatorSettings, **_: Any) -> None:
    """Start the shared components and configure the framework."""
    settings.posting.level = logging.WARNING
    settings.execution.max_workers = 4
    settings.networking.request_timeout = 30.0

    runtime.start()

    if runtime.config_store.current.webhook_enabled:
        settings.admission.server = kopf.WebhookServer(
            port=runtime.webhook_port,
            certfile=runtime.webhook_certfile,
            pkeyfile=runtime.webhook_keyfile,
        )
        settings.admission.managed = f"{PLURAL}.{GROUP}"
        logger.info(f"Admission webhook listening on port {runtime.webhook_port}")


@kopf.on.cleanup()
def cleanup(**_: Any) -> None:
    runtime.stop()


@kopf.on.event(GROUP, VERSION, PLURAL)
def iamrole_event(type: Optional[str], namespace: str, name: str, **_: Any) -> None:
    """Reconcile an Iamrole on every change notification."""
    if type == "DELETED":
        return
    runtime.reconciler.reconcile(namespace, name, Trigger.NOTIFICATION)


@kopf.on.event("v1", "configmaps", when=_is_operator_config_map)
def config_map_event(type: Optional[str], body: kopf.Body, **_: Any) -> None:
    """Reload the configuration when the operator config map changes."""
    if type == "DELETED":
        logger.warning("Operator config map deleted, keeping the current configuration")
        return
    try:
        runtime.config_store.reload(dict(body.get("data") or {}))
    except ConfigurationError as e:
        logger.error(f"Configuration reload rejected, keeping the previous configuration: {e}")


@kopf.on.validate(GROUP, VERSION, PLURAL)
def validate_iamrole(body: kopf.Body, operation: Optional[str], **kwargs: Any) -> None:
    """Reject Iamroles that violate policy restrictions."""
    snapshot = runtime.config_store.current
    if operation == "DELETE":
        errors = admission.on_delete(body)
    elif operation == "UPDATE":
        errors = admission.on_update(kwargs.get("old"), body, runtime.store, snapshot)
    else:
        errors = admission.on_create(body, runtime.store, snapshot)

    if errors:
        raise kopf.AdmissionError(format_field_errors(errors), code=422)


@kopf.on.mutate(GROUP, VERSION, PLURAL)
def default_iamrole(body: kopf.Body, patch: kopf.Patch, **_: Any) -> None:
    """Fill defaults missing from the submitted Iamrole."""
    patch.update(admission.default(body))
