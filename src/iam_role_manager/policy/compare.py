"""Drift comparison between declared and live role state.

Documents are compared as parsed, normalized structures so that
whitespace, key order and string-versus-list encodings of single values
never register as drift.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from .documents import PermissionPolicyDocument, TrustPolicyDocument, canonical_json


logger = logging.getLogger(__name__)

Document = Union[str, Dict[str, Any], None]


@dataclass
class RoleSnapshot:
    """The four aspects of a role that drift comparison looks at."""

    permission_policy: Document = None
    trust_policy: Document = None
    permission_boundary_arn: str = ""
    tags: Dict[str, str] = field(default_factory=dict)


def _permission_key(document: Document) -> str:
    return canonical_json(PermissionPolicyDocument.from_json(document).to_dict())


def _trust_key(document: Document) -> str:
    parsed = TrustPolicyDocument.from_json(document)
    for statement in parsed.statement:
        statement.principal.aws = sorted(statement.principal.aws)
        statement.principal.service = sorted(statement.principal.service)
    return canonical_json(parsed.to_dict())


def _tag_key(tags: Optional[Dict[str, str]]) -> Dict[str, str]:
    return {key: value for key, value in (tags or {}).items() if key}


def find_drift(desired: RoleSnapshot, live: RoleSnapshot) -> Optional[str]:
    """Return the first aspect that differs, or None when in sync.

    Aspects are checked in order: permission policy, trust policy,
    permission boundary, tags.
    """
    if _permission_key(desired.permission_policy) != _permission_key(live.permission_policy):
        return "permission policy"
    if _trust_key(desired.trust_policy) != _trust_key(live.trust_policy):
        return "trust policy"
    if desired.permission_boundary_arn != live.permission_boundary_arn:
        return "permission boundary"
    if _tag_key(desired.tags) != _tag_key(live.tags):
        return "tags"
    return None


def compare_role(desired: RoleSnapshot, live: RoleSnapshot) -> bool:
    """Tell whether the live role matches the declared state."""
    drift = find_drift(desired, live)
    if drift:
        logger.debug(f"Role drift detected in {drift}")
        return False
    return True
