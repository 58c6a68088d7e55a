"""Declared IAM role records and their observed status.

A RoleDeclaration is parsed from the resource body delivered by the
resource store. Its status is the only part the controller writes.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from ..core.config import ValidationConfig
from ..policy.documents import PermissionPolicyDocument, TrustPolicyOverride


FINALIZER = "iamrole.finalizers.iammanager.io"

IRSA_ANNOTATION = "iam.amazonaws.com/irsa-service-account"
TAGS_ANNOTATION = "iammanager.io/tags"
# Set to "true" on a Namespace to honour spec.RoleName of its declarations
PRIVILEGED_NAMESPACE_ANNOTATION = "iammanager.io/privileged"

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a status timestamp; None when empty or malformed."""
    if not value:
        return None
    try:
        return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


class LifecycleState(str, Enum):
    """Lifecycle of a declared role; the empty string is a new record."""

    NEW = ""
    CREATE_IN_PROGRESS = "CreateInProgress"
    CREATE_ERROR = "CreateError"
    READY = "Ready"
    UPDATE_IN_PROGRESS = "UpdateInProgress"
    UPDATE_ERROR = "UpdateError"
    DELETE_IN_PROGRESS = "DeleteInProgress"

    @classmethod
    def parse(cls, value: Optional[str]) -> "LifecycleState":
        """Unknown or missing states are treated as a new record."""
        for state in cls:
            if state.value == (value or ""):
                return state
        return cls.NEW


@dataclass
class RoleStatus:
    """Status subresource of a declaration."""

    role_name: str = ""
    role_arn: str = ""
    role_id: str = ""
    state: LifecycleState = LifecycleState.NEW
    retry_count: int = 0
    error_description: str = ""
    last_updated_timestamp: str = ""
    next_retry_timestamp: str = ""
    observed_generation: int = 0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RoleStatus":
        data = data or {}
        return cls(
            role_name=data.get("roleName") or "",
            role_arn=data.get("roleARN") or "",
            role_id=data.get("roleID") or "",
            state=LifecycleState.parse(data.get("state")),
            retry_count=int(data.get("retryCount") or 0),
            error_description=data.get("errorDescription") or "",
            last_updated_timestamp=data.get("lastUpdatedTimestamp") or "",
            next_retry_timestamp=data.get("nextRetryTimestamp") or "",
            observed_generation=int(data.get("observedGeneration") or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "roleName": self.role_name,
            "roleARN": self.role_arn,
            "roleID": self.role_id,
            "state": self.state.value,
            "retryCount": self.retry_count,
            "errorDescription": self.error_description,
            "lastUpdatedTimestamp": self.last_updated_timestamp,
            "nextRetryTimestamp": self.next_retry_timestamp,
            "observedGeneration": self.observed_generation,
        }

    def retry_due(self, now: datetime) -> bool:
        """True when a retry is scheduled and its time has come.

        An unreadable deadline counts as due so the record is not stranded.
        """
        if not self.next_retry_timestamp:
            return False
        deadline = parse_timestamp(self.next_retry_timestamp)
        return deadline is None or now >= deadline


def parse_tags_annotation(value: Optional[str]) -> Dict[str, str]:
    """Parse ``k1=v1,k2=v2`` into a dictionary, skipping malformed pairs."""
    tags: Dict[str, str] = {}
    for pair in (value or "").split(","):
        key, sep, tag_value = pair.partition("=")
        if sep and key.strip():
            tags[key.strip()] = tag_value.strip()
    return tags


@dataclass
class RoleDeclaration:
    """Tenant supplied desired state for one IAM role."""

    namespace: str
    name: str
    policy: PermissionPolicyDocument = field(default_factory=PermissionPolicyDocument)
    trust_override: Optional[TrustPolicyOverride] = None
    status: RoleStatus = field(default_factory=RoleStatus)
    generation: int = 0
    resource_version: str = ""
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[str] = None
    annotations: Dict[str, str] = field(default_factory=dict)
    requested_role_name: str = ""

    @classmethod
    def from_body(cls, body: Dict[str, Any]) -> "RoleDeclaration":
        """Build a declaration from a resource body.

        Args:
            body: Resource as a plain dictionary (metadata, spec, status)

        Raises:
            PolicyDocumentError: When the policy document is malformed
        """
        metadata = body.get("metadata") or {}
        spec = body.get("spec") or {}
        return cls(
            namespace=metadata.get("namespace") or "",
            name=metadata.get("name") or "",
            policy=PermissionPolicyDocument.from_dict(spec.get("PolicyDocument")),
            trust_override=TrustPolicyOverride.from_dict(spec.get("AssumeRolePolicyDocument")),
            status=RoleStatus.from_dict(body.get("status")),
            generation=int(metadata.get("generation") or 0),
            resource_version=str(metadata.get("resourceVersion") or ""),
            finalizers=list(metadata.get("finalizers") or []),
            deletion_timestamp=metadata.get("deletionTimestamp"),
            annotations=dict(metadata.get("annotations") or {}),
            requested_role_name=str(spec.get("RoleName") or "").strip(),
        )

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def is_deleting(self) -> bool:
        return bool(self.deletion_timestamp)

    @property
    def has_finalizer(self) -> bool:
        return FINALIZER in self.finalizers

    @property
    def spec_changed(self) -> bool:
        """True when the spec generation has not been acted upon yet."""
        return self.generation != self.status.observed_generation

    @property
    def irsa_service_accounts(self) -> List[str]:
        """Service accounts named by the comma separated IRSA annotation."""
        value = self.annotations.get(IRSA_ANNOTATION, "")
        return [item.strip() for item in value.split(",") if item.strip()]

    def role_name(self, config: ValidationConfig, privileged: bool = False) -> str:
        """Computed IAM role name; an already assigned name is kept.

        spec.RoleName is honoured only for new roles in a privileged
        namespace; everywhere else the configured pattern applies.
        """
        if self.status.role_name:
            return self.status.role_name
        if privileged and self.requested_role_name:
            return self.requested_role_name
        return config.iam_role_pattern.format(namespace=self.namespace, name=self.name)

    def tags(self, config: ValidationConfig) -> Dict[str, str]:
        """Tags the IAM role should carry, ownership tags included."""
        tags = parse_tags_annotation(self.annotations.get(TAGS_ANNOTATION))
        tags["Namespace"] = self.namespace
        if config.cluster_name:
            tags["Cluster"] = config.cluster_name
        return tags
