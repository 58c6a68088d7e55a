"""Policy validation engine.

Stateless checks applied to a declaration both at admission time and at
reconcile time. Each check returns a list of FieldError; an empty list
means the check passed. Checks are independent and their results are
concatenated by validate_declaration.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from ..core.config import ValidationConfig
from .documents import Effect, PermissionPolicyDocument


S3_ACTION_PREFIX = "s3:"

# Downstream consumers append an 11 character suffix to the name and the
# total must stay within 63 characters.
MAX_NAME_BUDGET = 63
NAME_SUFFIX_LENGTH = 11
MAX_NAME_LENGTH = MAX_NAME_BUDGET - NAME_SUFFIX_LENGTH

POLICY_FIELD_PATH = "spec.PolicyDocument.Statement"


class FieldErrorReason(Enum):
    """Why a field was rejected."""

    FORBIDDEN_ACTION = "ForbiddenAction"
    FORBIDDEN_RESOURCE = "ForbiddenResource"
    QUOTA_EXCEEDED = "QuotaExceeded"
    NAME_TOO_LONG = "NameTooLong"
    INVALID = "Invalid"


@dataclass
class FieldError:
    """One rejected field of a declaration."""

    path: str
    reason: FieldErrorReason
    value: str
    detail: str

    def __str__(self) -> str:
        return f"{self.path}: {self.reason.value}: {self.detail}"


def _statement_path(index: int, field_name: str) -> str:
    return f"{POLICY_FIELD_PATH}[{index}].{field_name}"


def validate_policy_actions(
    policy: PermissionPolicyDocument,
    config: ValidationConfig,
) -> List[FieldError]:
    """Check actions of Allow statements against the prefix whitelist.

    Statements granting S3 actions additionally have each of their
    resources checked for an exact match against the restricted S3
    resources.

    Args:
        policy: Requested permission policy
        config: Configuration snapshot

    Returns:
        Field errors, empty when every granted action is allowed
    """
    errors: List[FieldError] = []
    allowed = config.allowed_policy_actions
    restricted_s3 = set(config.restricted_s3_resources)

    for index, statement in enumerate(policy.statement):
        if statement.effect == Effect.DENY:
            continue

        for action in statement.action:
            if not any(action.startswith(prefix) for prefix in allowed):
                errors.append(FieldError(
                    path=_statement_path(index, "Action"),
                    reason=FieldErrorReason.FORBIDDEN_ACTION,
                    value=action,
                    detail=f"action {action} is not allowed; allowed prefixes are {list(allowed)}",
                ))
                continue

            if not action.startswith(S3_ACTION_PREFIX):
                continue
            for resource in statement.resource:
                if resource in restricted_s3:
                    errors.append(FieldError(
                        path=_statement_path(index, "Resource"),
                        reason=FieldErrorReason.FORBIDDEN_RESOURCE,
                        value=resource,
                        detail=f"resource {resource} is restricted for action {action}",
                    ))

    return errors


def validate_policy_resources(
    policy: PermissionPolicyDocument,
    config: ValidationConfig,
) -> List[FieldError]:
    """Check resources of Allow statements against the resource blacklist.

    A resource is rejected when it contains any blacklist entry as a
    substring.
    """
    errors: List[FieldError] = []
    blacklist = config.restricted_policy_resources

    for index, statement in enumerate(policy.statement):
        if statement.effect == Effect.DENY:
            continue
        for resource in statement.resource:
            for entry in blacklist:
                if entry in resource:
                    errors.append(FieldError(
                        path=_statement_path(index, "Resource"),
                        reason=FieldErrorReason.FORBIDDEN_RESOURCE,
                        value=resource,
                        detail=f"resource {resource} matches restricted resource {entry}",
                    ))
                    break

    return errors


def validate_role_quota(
    existing_count: int,
    config: ValidationConfig,
    is_update: bool = False,
) -> List[FieldError]:
    """Check the per-namespace role quota.

    Creating fails once the namespace already holds the maximum. Updating
    only fails when the namespace is over the maximum, so an existing
    declaration at the limit can still be edited.

    Args:
        existing_count: Declarations already present in the namespace
        config: Configuration snapshot
        is_update: Whether the declaration already exists

    Returns:
        Field errors, empty when within quota
    """
    limit = config.max_roles_allowed
    exceeded = existing_count > limit if is_update else existing_count >= limit
    if not exceeded:
        return []
    return [FieldError(
        path="metadata.namespace",
        reason=FieldErrorReason.QUOTA_EXCEEDED,
        value=str(existing_count),
        detail=f"only {limit} role(s) allowed per namespace",
    )]


def validate_name_length(name: str) -> List[FieldError]:
    """Check the declaration name leaves room for the downstream suffix."""
    if len(name) <= MAX_NAME_LENGTH:
        return []
    return [FieldError(
        path="metadata.name",
        reason=FieldErrorReason.NAME_TOO_LONG,
        value=name,
        detail=f"name must be no more than {MAX_NAME_LENGTH} characters",
    )]


def validate_declaration(
    name: str,
    policy: PermissionPolicyDocument,
    config: ValidationConfig,
    existing_count: Optional[int] = None,
    is_update: bool = False,
) -> List[FieldError]:
    """Run every check and collect all field errors.

    Args:
        name: Declaration name
        policy: Requested permission policy
        config: Configuration snapshot
        existing_count: Declarations in the namespace; the quota check is
            skipped when None
        is_update: Whether the declaration already exists

    Returns:
        Concatenated field errors of all checks
    """
    errors: List[FieldError] = []
    errors.extend(validate_policy_actions(policy, config))
    errors.extend(validate_policy_resources(policy, config))
    if existing_count is not None:
        errors.extend(validate_role_quota(existing_count, config, is_update))
    errors.extend(validate_name_length(name))
    return errors


def format_field_errors(errors: List[FieldError]) -> str:
    """Join field errors into one human readable message."""
    return "; ".join(str(error) for error in errors)
