"""Reconciliation controller for declared IAM roles.

One reconcile pass reads the record, asks the state machine what to do,
persists the in-progress status, calls the role orchestrator and persists
the outcome. Status writes use optimistic concurrency; a conflicting write
restarts the pass from a fresh read.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple

from botocore.exceptions import BotoCoreError

from ..core.config import ConfigStore, ConfigurationError, ValidationConfig
from ..core.errors import (
    IAMRoleManagerError,
    OwnershipConflictError,
    ProviderPermanentError,
    ValidationError,
    is_retryable,
)
from ..iam.roles import IAMRoleRequest, IAMRolesManager
from ..policy.documents import PolicyDocumentError
from ..policy.trust import TrustPolicyBuilder
from ..policy.validation import format_field_errors, validate_declaration, validate_role_quota
from .cluster import ClusterResources
from .declaration import FINALIZER, LifecycleState, RoleDeclaration, parse_timestamp
from .state_machine import Action, Outcome, Trigger, next_status, plan
from .store import ConflictError, NotFoundError, ResourceStore


logger = logging.getLogger(__name__)

MAX_CONFLICT_ATTEMPTS = 3

# Failures that end a pass with an error status instead of propagating
RECONCILE_ERRORS = (IAMRoleManagerError, ConfigurationError, PolicyDocumentError, BotoCoreError)


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def build_role_request(
    declaration: RoleDeclaration,
    config: ValidationConfig,
    role_name: str,
) -> IAMRoleRequest:
    """Translate a declaration into the orchestrator's request.

    Raises:
        ValidationError: When the trust principal is not acceptable
        ConfigurationError: When no trust principal can be determined
    """
    trust_policy = TrustPolicyBuilder(config).build_json(
        declaration.trust_override,
        namespace=declaration.namespace,
        service_accounts=declaration.irsa_service_accounts,
    )
    return IAMRoleRequest(
        name=role_name,
        trust_policy=trust_policy,
        permission_policy=declaration.policy.to_json(),
        description=config.role_description,
        session_duration=config.session_duration,
        managed_permission_boundary_policy=config.managed_permission_boundary_policy,
        managed_policies=list(config.managed_policies),
        tags=declaration.tags(config),
    )


class IAMRoleReconciler:
    """Drives declared roles through their lifecycle."""

    def __init__(
        self,
        store: ResourceStore,
        roles: IAMRolesManager,
        config_store: ConfigStore,
        cluster: Optional[ClusterResources] = None,
        clock: Callable[[], str] = utc_timestamp,
    ) -> None:
        """Initialize reconciler.

        Args:
            store: Resource store holding the declarations
            roles: IAM role orchestrator
            config_store: Holder of the current configuration snapshot
            cluster: Namespace and service account access; when omitted
                spec.RoleName is ignored and no service account is touched
            clock: Returns the timestamp written to status
        """
        self.store = store
        self.roles = roles
        self.config_store = config_store
        self.cluster = cluster
        self.clock = clock

    def reconcile(self, namespace: str, name: str, trigger: Trigger = Trigger.NOTIFICATION) -> Optional[int]:
        """Run one reconcile pass for a record.

        Args:
            namespace: Namespace of the record
            name: Name of the record
            trigger: Why the pass runs

        Returns:
            Retry delay in seconds, or None when no retry is needed
        """
        for attempt in range(1, MAX_CONFLICT_ATTEMPTS + 1):
            try:
                declaration = self.store.get(namespace, name)
            except NotFoundError:
                logger.debug(f"Iamrole {namespace}/{name} no longer exists")
                return None
            except PolicyDocumentError as e:
                logger.error(f"Iamrole {namespace}/{name} has a malformed policy document: {e}")
                return None

            try:
                return self._reconcile_once(declaration, trigger)
            except ConflictError as e:
                logger.warning(
                    f"Iamrole {namespace}/{name} changed during reconcile "
                    f"(attempt {attempt}/{MAX_CONFLICT_ATTEMPTS}): {e}"
                )
            except NotFoundError:
                logger.debug(f"Iamrole {namespace}/{name} was removed during reconcile")
                return None

        logger.error(f"Giving up on Iamrole {namespace}/{name} after {MAX_CONFLICT_ATTEMPTS} conflicts")
        return None

    def _reconcile_once(self, declaration: RoleDeclaration, trigger: Trigger) -> Optional[int]:
        config = self.config_store.current
        now = parse_timestamp(self.clock())
        action = plan(declaration, trigger, now)
        logger.debug(
            f"Iamrole {declaration.key} in state '{declaration.status.state.value}' "
            f"on {trigger.value}: {action.value}"
        )

        if action == Action.NONE:
            return None

        if action == Action.ADD_FINALIZER:
            logger.info(f"New Iamrole {declaration.key}, adding finalizer {FINALIZER}")
            declaration = self.store.update_finalizers(
                declaration, declaration.finalizers + [FINALIZER]
            )
            action = plan(declaration, trigger, now)
            if action == Action.NONE:
                return None

        if action == Action.DELETE:
            return self._delete(declaration, config)

        try:
            role_name = self._role_name(declaration, config)
        except RECONCILE_ERRORS as e:
            return self._fail(declaration, action, declaration.status.role_name, e)

        if action == Action.CHECK_DRIFT:
            in_sync, delay = self._check_drift(declaration, config, role_name)
            if in_sync:
                return delay
            action = Action.UPDATE

        return self._converge(declaration, action, config, role_name)

    def _role_name(self, declaration: RoleDeclaration, config: ValidationConfig) -> str:
        privileged = False
        if (
            not declaration.status.role_name
            and declaration.requested_role_name
            and self.cluster is not None
        ):
            privileged = self.cluster.is_privileged_namespace(declaration.namespace)
            if not privileged:
                logger.warning(
                    f"Ignoring RoleName {declaration.requested_role_name} of {declaration.key}, "
                    f"namespace {declaration.namespace} is not privileged"
                )
        return declaration.role_name(config, privileged)

    def _check_drift(
        self,
        declaration: RoleDeclaration,
        config: ValidationConfig,
        role_name: str,
    ) -> Tuple[bool, Optional[int]]:
        """Return whether the role is in sync, and the retry delay when the check failed."""
        try:
            request = build_role_request(declaration, config, role_name)
            if self.roles.role_in_sync(request):
                logger.debug(f"IAM role {role_name} of {declaration.key} is in sync")
                return True, None
        except RECONCILE_ERRORS as e:
            return True, self._fail(declaration, Action.CHECK_DRIFT, role_name, e)

        logger.info(f"IAM role {role_name} of {declaration.key} drifted, updating")
        return False, None

    def _converge(
        self,
        declaration: RoleDeclaration,
        action: Action,
        config: ValidationConfig,
        role_name: str,
    ) -> Optional[int]:
        status, _ = next_status(declaration, action, Outcome.STARTED, role_name, self.clock())
        declaration = self.store.update_status(declaration, status)
        logger.info(f"Iamrole {declaration.key} is {status.state.value}")

        try:
            self._validate(declaration, action, config)
            request = build_role_request(declaration, config, role_name)
            response = self.roles.ensure_role(request)
            self._ensure_service_accounts(declaration, config, response.role_arn)
        except RECONCILE_ERRORS as e:
            return self._fail(declaration, action, role_name, e)

        status, _ = next_status(
            declaration,
            action,
            Outcome.SUCCEEDED,
            role_name,
            self.clock(),
            role_arn=response.role_arn,
            role_id=response.role_id,
        )
        self.store.update_status(declaration, status)
        logger.info(f"Iamrole {declaration.key} is {status.state.value} with IAM role {role_name}")
        return None

    def _validate(self, declaration: RoleDeclaration, action: Action, config: ValidationConfig) -> None:
        errors = validate_declaration(declaration.name, declaration.policy, config)
        if action == Action.CREATE:
            # The record being created is already counted here
            errors.extend(validate_role_quota(
                self.store.count(declaration.namespace), config, is_update=True
            ))
        if errors:
            raise ValidationError(format_field_errors(errors), errors)

    def _ensure_service_accounts(
        self,
        declaration: RoleDeclaration,
        config: ValidationConfig,
        role_arn: str,
    ) -> None:
        if not config.irsa_enabled or self.cluster is None:
            return
        for name in declaration.irsa_service_accounts:
            self.cluster.ensure_service_account(declaration.namespace, name, role_arn)

    def _delete(self, declaration: RoleDeclaration, config: ValidationConfig) -> Optional[int]:
        # Only a name recorded in status was ever created for this record
        role_name = declaration.status.role_name
        if declaration.status.state != LifecycleState.DELETE_IN_PROGRESS:
            status, _ = next_status(declaration, Action.DELETE, Outcome.STARTED, role_name, self.clock())
            declaration = self.store.update_status(declaration, status)
            logger.info(f"Iamrole {declaration.key} is {status.state.value}")

        if not role_name:
            logger.info(f"Iamrole {declaration.key} has no IAM role, nothing to delete")
        else:
            try:
                self.roles.delete_role(role_name, owner_tags=declaration.tags(config))
            except OwnershipConflictError as e:
                logger.warning(f"Leaving IAM role {role_name} in place for {declaration.key}: {e}")
            except RECONCILE_ERRORS as e:
                return self._fail(declaration, Action.DELETE, role_name, e)

        finalizers = [item for item in declaration.finalizers if item != FINALIZER]
        self.store.update_finalizers(declaration, finalizers)
        logger.info(f"Removed finalizer from {declaration.key}")
        return None

    def _fail(
        self,
        declaration: RoleDeclaration,
        action: Action,
        role_name: str,
        error: Exception,
    ) -> Optional[int]:
        status, delay = next_status(
            declaration, action, Outcome.FAILED, role_name, self.clock(), error=error
        )
        self.store.update_status(declaration, status)

        if isinstance(error, ProviderPermanentError):
            logger.error(
                f"Iamrole {declaration.key} {action.value} rejected by AWS "
                f"(retry {status.retry_count}): {error}"
            )
        elif is_retryable(error):
            logger.error(
                f"Iamrole {declaration.key} {action.value} failed "
                f"(retry {status.retry_count}, next attempt at {status.next_retry_timestamp}): {error}"
            )
        else:
            logger.error(f"Iamrole {declaration.key} {action.value} rejected: {error}")
        return delay
