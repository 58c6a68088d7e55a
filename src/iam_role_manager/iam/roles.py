"""IAM role orchestration.

This module converges a single IAM role onto a declared state through
idempotent verbs. Each verb tolerates "already exists" on create paths and
"not found" on delete paths; every other AWS error is mapped onto the local
error taxonomy and propagated. Nothing here retries; retry cadence belongs
to the reconciliation controller.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from ..core.aws_client import AWSClientManager
from ..core.config import DEFAULT_ROLE_DESCRIPTION, DEFAULT_SESSION_DURATION
from ..core.errors import (
    ErrorCategory,
    OwnershipConflictError,
    ProviderError,
    categorize,
    classify_client_error,
)
from ..policy.compare import RoleSnapshot, find_drift


logger = logging.getLogger(__name__)

INLINE_POLICY_NAME = "custom"

TAG_MANAGED_BY = "managedBy"
TAG_MANAGED_BY_VALUE = "iam-manager"
TAG_NAMESPACE = "Namespace"
TAG_CLUSTER = "Cluster"

# Tags identifying which namespace and cluster own a role
OWNERSHIP_TAGS = (TAG_NAMESPACE, TAG_CLUSTER)


@dataclass
class IAMRoleRequest:
    """Desired state of one IAM role, rebuilt on every reconcile pass."""

    name: str
    trust_policy: str
    permission_policy: str
    policy_name: str = INLINE_POLICY_NAME
    description: str = DEFAULT_ROLE_DESCRIPTION
    session_duration: int = DEFAULT_SESSION_DURATION
    managed_permission_boundary_policy: str = ""
    managed_policies: List[str] = field(default_factory=list)
    tags: Dict[str, str] = field(default_factory=dict)

    def snapshot(self) -> RoleSnapshot:
        """Desired state in the shape used for drift comparison."""
        return RoleSnapshot(
            permission_policy=self.permission_policy,
            trust_policy=self.trust_policy,
            permission_boundary_arn=self.managed_permission_boundary_policy,
            tags=dict(self.tags),
        )


@dataclass
class IAMRoleResponse:
    """Identity of a converged role."""

    role_arn: str = ""
    role_id: str = ""


class IAMRolesManager:
    """Idempotent create, update, delete and drift checks for IAM roles."""

    def __init__(self, aws_client: AWSClientManager) -> None:
        """Initialize IAM roles manager.

        Args:
            aws_client: Configured AWS client manager
        """
        self.aws_client = aws_client
        self._iam_client = None

    def _get_client(self):
        """Get IAM client with caching.

        Returns:
            Configured IAM client
        """
        if self._iam_client is None:
            self._iam_client = self.aws_client.get_client(
                'iam',
                self.aws_client.get_current_region()
            )
        return self._iam_client

    def ensure_role(self, request: IAMRoleRequest) -> IAMRoleResponse:
        """Converge the role onto the requested state.

        Creates the role when missing, verifies ownership, then tags it,
        applies the permission boundary, attaches managed policies, updates
        role settings and the trust policy and replaces the inline policy.
        A failing step aborts the sequence; the next pass starts over.

        Args:
            request: Desired role state

        Returns:
            ARN and id of the role

        Raises:
            OwnershipConflictError: When the role belongs to another namespace
            ProviderError: When an AWS call fails
        """
        logger.info(f"Ensuring IAM role {request.name}")
        response = self.get_or_create_role(request)

        self.verify_ownership(request)
        self.tag_role(request)
        self.add_permission_boundary(request)
        for policy_arn in request.managed_policies:
            if policy_arn:
                self.attach_managed_policy(request.name, policy_arn)
        self.update_role(request)
        self.attach_inline_policy(request)

        logger.info(f"IAM role {request.name} is up to date")
        return response

    def get_or_create_role(self, request: IAMRoleRequest) -> IAMRoleResponse:
        """Return the role identity, creating the role when it is missing.

        Raises:
            ProviderError: When an AWS call fails
        """
        role = self.get_role(request.name)
        if role is not None:
            return IAMRoleResponse(role_arn=role['Arn'], role_id=role['RoleId'])
        return self._create_role(request)

    def _create_role(self, request: IAMRoleRequest) -> IAMRoleResponse:
        params: Dict[str, Any] = {
            'RoleName': request.name,
            'AssumeRolePolicyDocument': request.trust_policy,
            'Description': request.description,
            'MaxSessionDuration': request.session_duration,
        }
        if request.managed_permission_boundary_policy:
            params['PermissionsBoundary'] = request.managed_permission_boundary_policy

        try:
            client = self._get_client()
            response = client.create_role(**params)
        except ClientError as e:
            if categorize(e) != ErrorCategory.ALREADY_EXISTS:
                raise classify_client_error(e, f"CreateRole {request.name}")
            logger.warning(f"IAM role {request.name} already exists, continuing")
            role = self.get_role(request.name)
            if role is None:
                return IAMRoleResponse()
            return IAMRoleResponse(role_arn=role['Arn'], role_id=role['RoleId'])

        logger.info(f"Created IAM role {request.name}")
        role = response['Role']
        return IAMRoleResponse(role_arn=role['Arn'], role_id=role['RoleId'])

    def verify_ownership(self, request: IAMRoleRequest) -> None:
        """Check the role is not owned by another namespace or cluster.

        A role without ownership tags is adopted.

        Raises:
            OwnershipConflictError: When an ownership tag differs
            ProviderError: When the tags cannot be listed
        """
        self._check_owner(request.name, request.tags, self.list_role_tags(request.name))

    def _check_owner(self, role_name: str, owner_tags: Dict[str, str], existing: Dict[str, str]) -> None:
        for key in OWNERSHIP_TAGS:
            if key in existing and existing[key] != owner_tags.get(key, ""):
                raise OwnershipConflictError(
                    f"role name {role_name} in AWS is not available. "
                    f"It is owned by {key} {existing[key]}"
                )

    def get_role(self, role_name: str) -> Optional[Dict[str, Any]]:
        """Get IAM role details.

        Args:
            role_name: Name of the role

        Returns:
            Role details dictionary or None if not found
        """
        try:
            client = self._get_client()
            response = client.get_role(RoleName=role_name)
            return response['Role']
        except ClientError as e:
            if categorize(e) == ErrorCategory.NOT_FOUND:
                return None
            raise classify_client_error(e, f"GetRole {role_name}")

    def get_role_policy(self, role_name: str, policy_name: str = INLINE_POLICY_NAME) -> Optional[Any]:
        """Get an inline policy document of a role.

        Returns:
            Policy document as returned by IAM, or None if not found
        """
        try:
            client = self._get_client()
            response = client.get_role_policy(RoleName=role_name, PolicyName=policy_name)
            return response['PolicyDocument']
        except ClientError as e:
            if categorize(e) == ErrorCategory.NOT_FOUND:
                return None
            raise classify_client_error(e, f"GetRolePolicy {role_name}")

    def list_role_tags(self, role_name: str) -> Dict[str, str]:
        """List the tags of a role as a dictionary."""
        try:
            client = self._get_client()
            response = client.list_role_tags(RoleName=role_name)
        except ClientError as e:
            raise classify_client_error(e, f"ListRoleTags {role_name}")
        return {tag['Key']: tag['Value'] for tag in response.get('Tags', [])}

    def tag_role(self, request: IAMRoleRequest) -> None:
        """Upsert the requested tags and remove keys no longer requested.

        Raises:
            ProviderError: When tagging fails
        """
        tags = dict(request.tags)
        tags[TAG_MANAGED_BY] = TAG_MANAGED_BY_VALUE
        client = self._get_client()

        try:
            client.tag_role(
                RoleName=request.name,
                Tags=[{'Key': key, 'Value': value} for key, value in sorted(tags.items())],
            )
        except ClientError as e:
            raise classify_client_error(e, f"TagRole {request.name}")

        stale = [key for key in self.list_role_tags(request.name) if key and key not in tags]
        if not stale:
            return
        try:
            client.untag_role(RoleName=request.name, TagKeys=stale)
        except ClientError as e:
            raise classify_client_error(e, f"UntagRole {request.name}")
        logger.info(f"Removed stale tags {stale} from IAM role {request.name}")

    def add_permission_boundary(self, request: IAMRoleRequest) -> None:
        """Attach or refresh the permission boundary of a role."""
        if not request.managed_permission_boundary_policy:
            return
        try:
            client = self._get_client()
            client.put_role_permissions_boundary(
                RoleName=request.name,
                PermissionsBoundary=request.managed_permission_boundary_policy,
            )
        except ClientError as e:
            raise classify_client_error(e, f"PutRolePermissionsBoundary {request.name}")

    def attach_managed_policy(self, role_name: str, policy_arn: str) -> None:
        """Attach a managed policy to a role."""
        try:
            client = self._get_client()
            client.attach_role_policy(RoleName=role_name, PolicyArn=policy_arn)
        except ClientError as e:
            raise classify_client_error(e, f"AttachRolePolicy {policy_arn} to {role_name}")

    def update_role(self, request: IAMRoleRequest) -> None:
        """Update session duration, description and trust policy."""
        client = self._get_client()
        try:
            client.update_role(
                RoleName=request.name,
                MaxSessionDuration=request.session_duration,
                Description=request.description,
            )
        except ClientError as e:
            raise classify_client_error(e, f"UpdateRole {request.name}")

        try:
            client.update_assume_role_policy(
                RoleName=request.name,
                PolicyDocument=request.trust_policy,
            )
        except ClientError as e:
            raise classify_client_error(e, f"UpdateAssumeRolePolicy {request.name}")

    def attach_inline_policy(self, request: IAMRoleRequest) -> None:
        """Replace the inline permission policy of a role."""
        try:
            client = self._get_client()
            client.put_role_policy(
                RoleName=request.name,
                PolicyName=request.policy_name,
                PolicyDocument=request.permission_policy,
            )
        except ClientError as e:
            raise classify_client_error(e, f"PutRolePolicy {request.name}")

    def delete_role(self, role_name: str, owner_tags: Optional[Dict[str, str]] = None) -> None:
        """Detach managed policies, delete inline policies and the role.

        A role or policy that is already gone counts as deleted.

        Args:
            role_name: Name of the role
            owner_tags: Ownership tags of the requester; when given, a role
                tagged for another namespace or cluster is left alone

        Raises:
            OwnershipConflictError: When the role belongs to someone else
            ProviderError: When any other AWS error occurs
        """
        client = self._get_client()

        if owner_tags is not None:
            try:
                existing = self.list_role_tags(role_name)
            except ProviderError as e:
                if e.category == ErrorCategory.NOT_FOUND:
                    logger.info(f"IAM role {role_name} does not exist, nothing to delete")
                    return
                raise
            self._check_owner(role_name, owner_tags, existing)

        try:
            attached = client.list_attached_role_policies(RoleName=role_name)
        except ClientError as e:
            if categorize(e) == ErrorCategory.NOT_FOUND:
                logger.info(f"IAM role {role_name} does not exist, nothing to delete")
                return
            raise classify_client_error(e, f"ListAttachedRolePolicies {role_name}")

        for policy in attached.get('AttachedPolicies', []):
            self._ignore_not_found(
                client.detach_role_policy,
                f"DetachRolePolicy {policy['PolicyArn']}",
                RoleName=role_name,
                PolicyArn=policy['PolicyArn'],
            )

        try:
            inline = client.list_role_policies(RoleName=role_name)
        except ClientError as e:
            if categorize(e) == ErrorCategory.NOT_FOUND:
                return
            raise classify_client_error(e, f"ListRolePolicies {role_name}")

        for policy_name in inline.get('PolicyNames', []):
            self._ignore_not_found(
                client.delete_role_policy,
                f"DeleteRolePolicy {policy_name}",
                RoleName=role_name,
                PolicyName=policy_name,
            )

        self._ignore_not_found(client.delete_role, f"DeleteRole {role_name}", RoleName=role_name)
        logger.info(f"Deleted IAM role {role_name}")

    def _ignore_not_found(self, call, operation: str, **kwargs) -> None:
        try:
            call(**kwargs)
        except ClientError as e:
            if categorize(e) == ErrorCategory.NOT_FOUND:
                logger.warning(f"{operation}: already gone")
                return
            raise classify_client_error(e, operation)

    def describe_role(self, request: IAMRoleRequest) -> Optional[RoleSnapshot]:
        """Read the live state of a role for drift comparison.

        Returns:
            Live snapshot, or None when the role does not exist
        """
        role = self.get_role(request.name)
        if role is None:
            return None
        boundary = role.get('PermissionsBoundary') or {}
        return RoleSnapshot(
            permission_policy=self.get_role_policy(request.name, request.policy_name),
            trust_policy=role.get('AssumeRolePolicyDocument'),
            permission_boundary_arn=boundary.get('PermissionsBoundaryArn', ''),
            tags=self.list_role_tags(request.name),
        )

    def role_in_sync(self, request: IAMRoleRequest) -> bool:
        """Tell whether the live role matches the request.

        Managed-by bookkeeping tags are compared as part of the tag set, the
        same way ensure_role writes them.
        """
        live = self.describe_role(request)
        if live is None:
            logger.info(f"IAM role {request.name} does not exist")
            return False

        desired = request.snapshot()
        desired.tags[TAG_MANAGED_BY] = TAG_MANAGED_BY_VALUE
        drift = find_drift(desired, live)
        if drift:
            logger.info(f"IAM role {request.name} drifted in {drift}")
            return False
        return True

    def create_oidc_provider(self, url: str, audience: str, thumbprint: str) -> Optional[str]:
        """Register an OIDC identity provider with IAM.

        Args:
            url: Issuer url of the provider
            audience: Client id accepted by the provider
            thumbprint: Certificate thumbprint of the issuer

        Returns:
            ARN of the new provider, or None when it already existed
        """
        try:
            client = self._get_client()
            response = client.create_open_id_connect_provider(
                Url=url,
                ClientIDList=[audience],
                ThumbprintList=[thumbprint],
            )
        except ClientError as e:
            if categorize(e) == ErrorCategory.ALREADY_EXISTS:
                logger.info(f"OIDC provider for {url} already exists")
                return None
            raise classify_client_error(e, f"CreateOpenIDConnectProvider {url}")

        arn = response['OpenIDConnectProviderArn']
        logger.info(f"Created OIDC provider {arn}")
        return arn
