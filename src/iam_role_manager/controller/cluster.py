"""Cluster objects the controller reads or writes besides Iamroles.

Namespaces are read to find privileged ones. Service accounts named by the
IRSA annotation are created, or patched, to carry the role ARN so pods
running under them receive the role's credentials.
"""

import logging
from typing import Any, Dict, Optional

from kubernetes import client
from kubernetes.client.exceptions import ApiException

from ..core.errors import IAMRoleManagerError
from .declaration import PRIVILEGED_NAMESPACE_ANNOTATION


logger = logging.getLogger(__name__)

SERVICE_ACCOUNT_ROLE_ANNOTATION = "eks.amazonaws.com/role-arn"


class ClusterError(IAMRoleManagerError):
    """Raised when a namespace or service account call fails."""
    pass


def _annotations(obj: Any) -> Dict[str, str]:
    metadata = getattr(obj, "metadata", None)
    return dict(getattr(metadata, "annotations", None) or {})


class ClusterResources:
    """Namespace and service account access over the core API."""

    def __init__(self, api: Optional[client.CoreV1Api] = None) -> None:
        """Initialize cluster access.

        Args:
            api: Core API client; a default client is created from the
                loaded kube configuration when omitted
        """
        self.api = api or client.CoreV1Api()

    def is_privileged_namespace(self, namespace: str) -> bool:
        """True when the namespace carries the privileged annotation.

        Raises:
            ClusterError: When the namespace cannot be read
        """
        try:
            obj = self.api.read_namespace(namespace)
        except ApiException as e:
            raise ClusterError(f"read namespace {namespace} failed with status {e.status}: {e.reason}")
        return _annotations(obj).get(PRIVILEGED_NAMESPACE_ANNOTATION, "").lower() == "true"

    def ensure_service_account(self, namespace: str, name: str, role_arn: str) -> None:
        """Create the service account, or point its annotation at ``role_arn``.

        Raises:
            ClusterError: When the service account cannot be read or written
        """
        key = f"{namespace}/{name}"
        annotations = {SERVICE_ACCOUNT_ROLE_ANNOTATION: role_arn}
        try:
            existing = self.api.read_namespaced_service_account(name, namespace)
        except ApiException as e:
            if e.status != 404:
                raise ClusterError(f"read service account {key} failed with status {e.status}: {e.reason}")
            existing = None

        try:
            if existing is None:
                body = client.V1ServiceAccount(
                    metadata=client.V1ObjectMeta(name=name, namespace=namespace, annotations=annotations)
                )
                self.api.create_namespaced_service_account(namespace, body)
                logger.info(f"Created service account {key} for IAM role {role_arn}")
            elif _annotations(existing).get(SERVICE_ACCOUNT_ROLE_ANNOTATION) != role_arn:
                self.api.patch_namespaced_service_account(
                    name, namespace, {"metadata": {"annotations": annotations}}
                )
                logger.info(f"Annotated service account {key} with IAM role {role_arn}")
        except ApiException as e:
            raise ClusterError(f"write service account {key} failed with status {e.status}: {e.reason}")
