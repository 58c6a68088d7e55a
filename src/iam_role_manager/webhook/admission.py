"""Admission validation and defaulting for Iamrole records.

These functions run before a record is persisted. They only inspect the
record body and return field errors or a defaulting patch; the transport
(HTTP, TLS, review serialization) is handled by the event framework.
"""

import logging
from typing import Any, Dict, List, Optional

from ..core.config import ValidationConfig
from ..controller.store import ResourceStore
from ..policy.documents import POLICY_VERSION, PermissionPolicyDocument, PolicyDocumentError
from ..policy.validation import FieldError, FieldErrorReason, validate_declaration


logger = logging.getLogger(__name__)


def _metadata(body: Dict[str, Any]) -> Dict[str, Any]:
    return body.get("metadata") or {}


def _validate(
    body: Dict[str, Any],
    store: ResourceStore,
    config: ValidationConfig,
    is_update: bool,
) -> List[FieldError]:
    metadata = _metadata(body)
    name = metadata.get("name") or ""
    namespace = metadata.get("namespace") or ""
    spec = body.get("spec") or {}

    try:
        policy = PermissionPolicyDocument.from_dict(spec.get("PolicyDocument"))
    except PolicyDocumentError as e:
        return [FieldError(
            path="spec.PolicyDocument",
            reason=FieldErrorReason.INVALID,
            value="",
            detail=str(e),
        )]

    errors = validate_declaration(
        name,
        policy,
        config,
        existing_count=store.count(namespace),
        is_update=is_update,
    )
    if errors:
        logger.info(f"Rejected Iamrole {namespace}/{name}: {len(errors)} field error(s)")
    return errors


def on_create(body: Dict[str, Any], store: ResourceStore, config: ValidationConfig) -> List[FieldError]:
    """Validate a record about to be created.

    Args:
        body: Record body as submitted
        store: Resource store used to count records in the namespace
        config: Configuration snapshot

    Returns:
        Field errors; empty when the record is admitted
    """
    logger.debug(f"Validating create of Iamrole {_metadata(body).get('name')}")
    return _validate(body, store, config, is_update=False)


def on_update(
    old: Optional[Dict[str, Any]],
    new: Dict[str, Any],
    store: ResourceStore,
    config: ValidationConfig,
) -> List[FieldError]:
    """Validate an update; only the new body is checked."""
    logger.debug(f"Validating update of Iamrole {_metadata(new).get('name')}")
    return _validate(new, store, config, is_update=True)


def on_delete(body: Dict[str, Any]) -> List[FieldError]:
    """Deletes are always admitted."""
    return []


def default(body: Dict[str, Any]) -> Dict[str, Any]:
    """Return a merge patch filling defaults missing from the body.

    The policy language version is the only defaulted field.
    """
    spec = body.get("spec") or {}
    document = spec.get("PolicyDocument") or {}
    if document.get("Version"):
        return {}
    logger.debug(f"Defaulting policy version of Iamrole {_metadata(body).get('name')}")
    return {"spec": {"PolicyDocument": {"Version": POLICY_VERSION}}}
