"""Trust policy construction.

Builds the single assume-role statement for a declared role, either from
the tenant supplied principal, from the configured default principals, or
for IRSA roles from the cluster OIDC provider.
"""

import logging
from typing import Any, Dict, List, Optional

from ..core.config import ConfigurationError, ValidationConfig
from ..core.errors import ValidationError
from .documents import (
    ASSUME_ROLE_ACTION,
    ASSUME_ROLE_WITH_WEB_IDENTITY_ACTION,
    Effect,
    Principal,
    TrustPolicyDocument,
    TrustPolicyOverride,
    TrustStatement,
    serialize,
)


logger = logging.getLogger(__name__)

SERVICE_PRINCIPAL_SUFFIX = ".amazonaws.com"
OIDC_PROVIDER_ARN_FORMAT = "arn:aws:iam::{account_id}:oidc-provider/{host_path}"


class TrustPolicyBuilder:
    """Materializes trust documents from a configuration snapshot."""

    def __init__(self, config: ValidationConfig) -> None:
        """Initialize builder.

        Args:
            config: Configuration snapshot for the current pass
        """
        self.config = config

    def build(
        self,
        override: Optional[TrustPolicyOverride] = None,
        namespace: str = "",
        service_accounts: Optional[List[str]] = None,
    ) -> TrustPolicyDocument:
        """Build the trust document for one declaration.

        Args:
            override: Tenant supplied principal, if any
            namespace: Namespace of the declaration, used for IRSA subjects
            service_accounts: IRSA service account names, if annotated

        Returns:
            Trust document holding exactly one Allow statement

        Raises:
            ValidationError: When a service principal is outside AWS
            ConfigurationError: When no principal can be determined
        """
        if service_accounts and self.config.irsa_enabled:
            statement = self._web_identity_statement(namespace, service_accounts)
        else:
            statement = self._assume_role_statement(override)
        return TrustPolicyDocument(statement=[statement])

    def build_json(
        self,
        override: Optional[TrustPolicyOverride] = None,
        namespace: str = "",
        service_accounts: Optional[List[str]] = None,
    ) -> str:
        """Build the trust document as canonical JSON."""
        document = self.build(override, namespace, service_accounts)
        return document.to_json()

    def _assume_role_statement(self, override: Optional[TrustPolicyOverride]) -> TrustStatement:
        principal = override.principal if override else Principal()
        condition = override.condition if override else None

        for service in principal.service:
            if not service.endswith(SERVICE_PRINCIPAL_SUFFIX):
                raise ValidationError(
                    f"service principal {service} must end with {SERVICE_PRINCIPAL_SUFFIX}"
                )

        if not principal.aws and not principal.service:
            defaults = list(self.config.default_trust_policy_role_arns)
            if not defaults:
                raise ConfigurationError(
                    "default trust policy principals are not configured. "
                    "Request must provide a trust policy principal"
                )
            logger.debug(f"Using default trust principals {defaults}")
            principal = Principal(aws=defaults)
        else:
            principal = Principal(aws=list(principal.aws), service=list(principal.service))

        return TrustStatement(
            principal=principal,
            action=ASSUME_ROLE_ACTION,
            effect=Effect.ALLOW,
            condition=condition,
        )

    def _web_identity_statement(self, namespace: str, service_accounts: List[str]) -> TrustStatement:
        issuer = self.config.cluster_oidc_issuer_url
        if not issuer:
            raise ConfigurationError("cluster OIDC issuer url is not configured")
        host_path = issuer[len("https://"):] if issuer.startswith("https://") else issuer
        # A list value matches any of the subjects
        subjects = [f"system:serviceaccount:{namespace}:{name}" for name in service_accounts]
        condition: Dict[str, Dict[str, Any]] = {
            "StringEquals": {
                f"{host_path}:sub": serialize(subjects),
            }
        }
        return TrustStatement(
            principal=Principal(
                federated=OIDC_PROVIDER_ARN_FORMAT.format(
                    account_id=self.config.aws_account_id, host_path=host_path
                )
            ),
            action=ASSUME_ROLE_WITH_WEB_IDENTITY_ACTION,
            effect=Effect.ALLOW,
            condition=condition,
        )
