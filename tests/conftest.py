"""Shared fixtures: configuration snapshots, an in-memory resource store and mocked AWS clients."""

import copy
from datetime import timedelta
from typing import Any, Dict, List, Optional

import pytest
from unittest.mock import Mock

from iam_role_manager.controller.declaration import (
    FINALIZER,
    RoleDeclaration,
    RoleStatus,
    format_timestamp,
    parse_timestamp,
)
from iam_role_manager.controller.store import ConflictError, NotFoundError, ResourceStore, parse_items
from iam_role_manager.core.aws_client import AWSClientManager
from iam_role_manager.core.config import ConfigStore, ValidationConfig


ACCOUNT_ID = "123456789012"
BOUNDARY_ARN = f"arn:aws:iam::{ACCOUNT_ID}:policy/k8s-iam-manager-cluster-permission-boundary"
TRUSTED_ARN = f"arn:aws:iam::{ACCOUNT_ID}:role/trusted"


def make_body(
    namespace: str = "team-a",
    name: str = "app-role",
    statements: Optional[List[Dict[str, Any]]] = None,
    status: Optional[Dict[str, Any]] = None,
    finalizers: Optional[List[str]] = None,
    generation: int = 1,
    deletion_timestamp: Optional[str] = None,
    annotations: Optional[Dict[str, str]] = None,
    trust: Optional[Dict[str, Any]] = None,
    role_name: Optional[str] = None,
) -> Dict[str, Any]:
    """Build an Iamrole body as delivered by the resource store."""
    if statements is None:
        statements = [{"Effect": "Allow", "Action": ["s3:GetObject"], "Resource": ["*"]}]
    spec: Dict[str, Any] = {
        "PolicyDocument": {"Version": "2012-10-17", "Statement": statements},
    }
    if trust is not None:
        spec["AssumeRolePolicyDocument"] = trust
    if role_name is not None:
        spec["RoleName"] = role_name
    metadata: Dict[str, Any] = {
        "namespace": namespace,
        "name": name,
        "generation": generation,
        "finalizers": list(finalizers or []),
        "annotations": dict(annotations or {}),
    }
    if deletion_timestamp:
        metadata["deletionTimestamp"] = deletion_timestamp
    return {"metadata": metadata, "spec": spec, "status": dict(status or {})}


class FakeResourceStore(ResourceStore):
    """In-memory store with resource versions and finalizer semantics.

    A record whose deletion marker is set disappears once its last
    finalizer is removed.
    """

    def __init__(self) -> None:
        self.records: Dict[tuple, Dict[str, Any]] = {}
        self.status_writes: List[RoleStatus] = []
        self.conflicts_remaining = 0
        self._version = 0

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def add(self, body: Dict[str, Any]) -> None:
        body = copy.deepcopy(body)
        body["metadata"]["resourceVersion"] = self._next_version()
        key = (body["metadata"]["namespace"], body["metadata"]["name"])
        self.records[key] = body

    def body(self, namespace: str, name: str) -> Dict[str, Any]:
        return self.records[(namespace, name)]

    def mark_deleted(self, namespace: str, name: str, timestamp: str = "2024-01-01T00:00:00Z") -> None:
        body = self.records[(namespace, name)]
        body["metadata"]["deletionTimestamp"] = timestamp
        body["metadata"]["resourceVersion"] = self._next_version()

    def edit_spec(self, namespace: str, name: str, statements: List[Dict[str, Any]]) -> None:
        body = self.records[(namespace, name)]
        body["spec"]["PolicyDocument"]["Statement"] = statements
        body["metadata"]["generation"] += 1
        body["metadata"]["resourceVersion"] = self._next_version()

    def get(self, namespace: str, name: str) -> RoleDeclaration:
        body = self.records.get((namespace, name))
        if body is None:
            raise NotFoundError(f"get {namespace}/{name}: not found")
        return RoleDeclaration.from_body(copy.deepcopy(body))

    def _items(self, namespace: Optional[str]) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(body)
            for (record_namespace, _), body in sorted(self.records.items())
            if namespace is None or record_namespace == namespace
        ]

    def list(self, namespace: Optional[str] = None) -> List[RoleDeclaration]:
        return parse_items(self._items(namespace))

    def count(self, namespace: str) -> int:
        return len(self._items(namespace))

    def _checked(self, declaration: RoleDeclaration) -> Dict[str, Any]:
        body = self.records.get((declaration.namespace, declaration.name))
        if body is None:
            raise NotFoundError(f"{declaration.key}: not found")
        if self.conflicts_remaining > 0:
            self.conflicts_remaining -= 1
            body["metadata"]["resourceVersion"] = self._next_version()
            raise ConflictError(f"{declaration.key}: conflict")
        if body["metadata"]["resourceVersion"] != declaration.resource_version:
            raise ConflictError(f"{declaration.key}: conflict")
        return body

    def update_finalizers(self, declaration: RoleDeclaration, finalizers: List[str]) -> RoleDeclaration:
        body = self._checked(declaration)
        body["metadata"]["finalizers"] = list(finalizers)
        body["metadata"]["resourceVersion"] = self._next_version()
        result = RoleDeclaration.from_body(copy.deepcopy(body))
        if not finalizers and body["metadata"].get("deletionTimestamp"):
            del self.records[(declaration.namespace, declaration.name)]
        return result

    def update_status(self, declaration: RoleDeclaration, status: RoleStatus) -> RoleDeclaration:
        body = self._checked(declaration)
        body["status"] = status.to_dict()
        body["metadata"]["resourceVersion"] = self._next_version()
        self.status_writes.append(status)
        return RoleDeclaration.from_body(copy.deepcopy(body))


@pytest.fixture
def validation_config():
    """Configuration snapshot allowing S3 actions only."""
    return ValidationConfig(
        allowed_policy_actions=("s3:", "sts:"),
        restricted_policy_resources=("policy-resource",),
        restricted_s3_resources=("arn:aws:s3:::restricted-bucket",),
        aws_account_id=ACCOUNT_ID,
        managed_policies=(f"arn:aws:iam::{ACCOUNT_ID}:policy/shared",),
        managed_permission_boundary_policy=BOUNDARY_ARN,
        default_trust_policy_role_arns=(TRUSTED_ARN,),
        max_roles_allowed=1,
        cluster_name="test-cluster",
    )


@pytest.fixture
def config_store(validation_config):
    """Config store holding the test snapshot."""
    return ConfigStore(initial=validation_config)


@pytest.fixture
def fake_store():
    """Empty in-memory resource store."""
    return FakeResourceStore()


@pytest.fixture
def mock_aws_client():
    """Mock AWS client manager."""
    client = Mock(spec=AWSClientManager)
    client.get_current_region.return_value = 'us-west-2'
    return client


@pytest.fixture
def mock_iam_client():
    """Mock IAM client."""
    return Mock()


@pytest.fixture
def finalized_body():
    """New Iamrole body that already carries the finalizer."""
    return make_body(finalizers=[FINALIZER])


class FakeClock:
    """Status timestamp source that only moves when told to."""

    def __init__(self, start: str = "2024-01-01T00:00:00Z") -> None:
        self.now = parse_timestamp(start)

    def __call__(self) -> str:
        return format_timestamp(self.now)

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    """Clock fixed at 2024-01-01T00:00:00Z until advanced."""
    return FakeClock()
