"""Resource store access for declared roles.

The controller talks to the store through the ResourceStore interface.
KubernetesResourceStore implements it over the custom objects API. Every
write carries the resourceVersion the caller last read, so a write based
on a stale read fails with ConflictError instead of overwriting.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from kubernetes import client
from kubernetes.client.exceptions import ApiException

from ..core.errors import IAMRoleManagerError
from ..policy.documents import PolicyDocumentError
from .declaration import RoleDeclaration, RoleStatus


logger = logging.getLogger(__name__)

GROUP = "iammanager.io"
VERSION = "v1alpha1"
PLURAL = "iamroles"


class StoreError(IAMRoleManagerError):
    """Raised when the resource store rejects a call."""
    pass


class ConflictError(StoreError):
    """Raised when a write targets a stale resource version."""
    pass


class NotFoundError(StoreError):
    """Raised when the record no longer exists."""
    pass


class ResourceStore(ABC):
    """Persistence for declared roles."""

    @abstractmethod
    def get(self, namespace: str, name: str) -> RoleDeclaration:
        """Read one record.

        Raises:
            NotFoundError: When the record does not exist
        """
        pass

    @abstractmethod
    def list(self, namespace: Optional[str] = None) -> List[RoleDeclaration]:
        """List records in one namespace, or in all namespaces.

        Records with a malformed policy document are logged and skipped.
        """
        pass

    def count(self, namespace: str) -> int:
        """Number of records in a namespace."""
        return len(self.list(namespace))

    @abstractmethod
    def update_finalizers(self, declaration: RoleDeclaration, finalizers: List[str]) -> RoleDeclaration:
        """Replace the finalizers of a record.

        Returns:
            The record as stored after the write

        Raises:
            ConflictError: When the record changed since it was read
            NotFoundError: When the record does not exist
        """
        pass

    @abstractmethod
    def update_status(self, declaration: RoleDeclaration, status: RoleStatus) -> RoleDeclaration:
        """Replace the status subresource of a record.

        Returns:
            The record as stored after the write

        Raises:
            ConflictError: When the record changed since it was read
            NotFoundError: When the record does not exist
        """
        pass


def _translate(error: ApiException, operation: str) -> StoreError:
    if error.status == 409:
        return ConflictError(f"{operation}: conflict: {error.reason}")
    if error.status == 404:
        return NotFoundError(f"{operation}: not found")
    return StoreError(f"{operation} failed with status {error.status}: {error.reason}")


def parse_items(items: List[Dict[str, Any]]) -> List[RoleDeclaration]:
    """Parse listed bodies, skipping records with a malformed policy document."""
    declarations = []
    for item in items:
        try:
            declarations.append(RoleDeclaration.from_body(item))
        except PolicyDocumentError as e:
            metadata = item.get("metadata") or {}
            logger.error(
                f"Skipping Iamrole {metadata.get('namespace')}/{metadata.get('name')} "
                f"with a malformed policy document: {e}"
            )
    return declarations


class KubernetesResourceStore(ResourceStore):
    """ResourceStore over the Kubernetes custom objects API."""

    def __init__(self, api: Optional[client.CustomObjectsApi] = None) -> None:
        """Initialize store.

        Args:
            api: Custom objects API client; a default client is created
                from the loaded kube configuration when omitted
        """
        self.api = api or client.CustomObjectsApi()

    def get(self, namespace: str, name: str) -> RoleDeclaration:
        try:
            body = self.api.get_namespaced_custom_object(GROUP, VERSION, namespace, PLURAL, name)
        except ApiException as e:
            raise _translate(e, f"get {namespace}/{name}")
        return RoleDeclaration.from_body(body)

    def _list_items(self, namespace: Optional[str]) -> List[Dict[str, Any]]:
        try:
            if namespace:
                response = self.api.list_namespaced_custom_object(GROUP, VERSION, namespace, PLURAL)
            else:
                response = self.api.list_cluster_custom_object(GROUP, VERSION, PLURAL)
        except ApiException as e:
            raise _translate(e, f"list {namespace or 'all namespaces'}")
        return response.get("items", [])

    def list(self, namespace: Optional[str] = None) -> List[RoleDeclaration]:
        return parse_items(self._list_items(namespace))

    def count(self, namespace: str) -> int:
        # Malformed records still hold a slot of the quota
        return len(self._list_items(namespace))

    def update_finalizers(self, declaration: RoleDeclaration, finalizers: List[str]) -> RoleDeclaration:
        body: Dict[str, Any] = {
            "metadata": {
                "finalizers": finalizers,
                "resourceVersion": declaration.resource_version,
            }
        }
        try:
            updated = self.api.patch_namespaced_custom_object(
                GROUP, VERSION, declaration.namespace, PLURAL, declaration.name, body
            )
        except ApiException as e:
            raise _translate(e, f"update finalizers of {declaration.key}")
        logger.debug(f"Updated finalizers of {declaration.key} to {finalizers}")
        return RoleDeclaration.from_body(updated)

    def update_status(self, declaration: RoleDeclaration, status: RoleStatus) -> RoleDeclaration:
        body: Dict[str, Any] = {
            "metadata": {"resourceVersion": declaration.resource_version},
            "status": status.to_dict(),
        }
        try:
            updated = self.api.patch_namespaced_custom_object_status(
                GROUP, VERSION, declaration.namespace, PLURAL, declaration.name, body
            )
        except ApiException as e:
            raise _translate(e, f"update status of {declaration.key}")
        logger.debug(f"Updated status of {declaration.key} to {status.state.value}")
        return RoleDeclaration.from_body(updated)
