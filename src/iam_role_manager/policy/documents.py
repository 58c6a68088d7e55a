"""IAM policy document model.

Value types for permission policies, trust policies and their statements.
Action, Resource and the AWS principal accept either a bare string or a
list of strings on the wire. Internally they are always lists; on output a
single element is written back as a bare string, matching what AWS IAM
returns, and an empty list is written as null.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from urllib.parse import unquote


POLICY_VERSION = "2012-10-17"

ASSUME_ROLE_ACTION = "sts:AssumeRole"
ASSUME_ROLE_WITH_WEB_IDENTITY_ACTION = "sts:AssumeRoleWithWebIdentity"


class PolicyDocumentError(ValueError):
    """Raised when a policy document cannot be parsed."""
    pass


class Effect(str, Enum):
    """Whether a statement allows or denies its actions."""

    ALLOW = "Allow"
    DENY = "Deny"

    @classmethod
    def parse(cls, value: Any) -> "Effect":
        if isinstance(value, Effect):
            return value
        for effect in cls:
            if effect.value == value:
                return effect
        raise PolicyDocumentError(f"Effect must be 'Allow' or 'Deny', got {value!r}")


def normalize(raw: Any) -> List[str]:
    """Normalize a string-or-list field to a list of strings.

    Args:
        raw: A bare string, a list of strings, or None

    Returns:
        Ordered list of strings

    Raises:
        PolicyDocumentError: When the value is neither a string nor a list
    """
    if raw is None:
        return []
    if isinstance(raw, str):
        return [raw]
    if isinstance(raw, (list, tuple)):
        for item in raw:
            if not isinstance(item, str):
                raise PolicyDocumentError(f"Expected a list of strings, got item {item!r}")
        return list(raw)
    raise PolicyDocumentError(f"Expected a string or a list of strings, got {raw!r}")


def serialize(values: List[str]) -> Union[None, str, List[str]]:
    """Inverse of normalize: one element becomes a bare string.

    An empty list serializes as None (JSON null).
    """
    if not values:
        return None
    if len(values) == 1:
        return values[0]
    return list(values)


def canonical_json(document: Dict[str, Any]) -> str:
    """Serialize with a stable key order and no insignificant whitespace."""
    return json.dumps(document, sort_keys=True, separators=(",", ":"))


def load_document(raw: Union[str, Dict[str, Any], None]) -> Dict[str, Any]:
    """Decode a policy document as returned by IAM.

    IAM returns documents URL-encoded; boto3 usually decodes them into a
    dict already. Both forms are accepted.

    Raises:
        PolicyDocumentError: When the document is not valid JSON
    """
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        document = json.loads(raw)
    except ValueError:
        try:
            document = json.loads(unquote(raw))
        except ValueError as e:
            raise PolicyDocumentError(f"Policy document is not valid JSON: {e}")
    if not isinstance(document, dict):
        raise PolicyDocumentError("Policy document must be a JSON object")
    return document


@dataclass
class Statement:
    """One permission policy statement."""

    effect: Effect
    action: List[str] = field(default_factory=list)
    resource: List[str] = field(default_factory=list)
    sid: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Statement":
        if not isinstance(data, dict):
            raise PolicyDocumentError(f"Statement must be an object, got {data!r}")
        return cls(
            effect=Effect.parse(data.get("Effect")),
            action=normalize(data.get("Action")),
            resource=normalize(data.get("Resource")),
            sid=data.get("Sid") or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "Effect": self.effect.value,
            "Action": serialize(self.action),
            "Resource": serialize(self.resource),
        }
        if self.sid:
            result["Sid"] = self.sid
        return result


@dataclass
class PermissionPolicyDocument:
    """Inline permission policy attached to a role."""

    statement: List[Statement] = field(default_factory=list)
    version: str = POLICY_VERSION

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PermissionPolicyDocument":
        data = data or {}
        if not isinstance(data, dict):
            raise PolicyDocumentError(f"Policy document must be an object, got {type(data).__name__}")
        raw_statements = data.get("Statement") or []
        if isinstance(raw_statements, dict):
            raw_statements = [raw_statements]
        return cls(
            statement=[Statement.from_dict(item) for item in raw_statements],
            version=data.get("Version") or POLICY_VERSION,
        )

    @classmethod
    def from_json(cls, raw: Union[str, Dict[str, Any], None]) -> "PermissionPolicyDocument":
        return cls.from_dict(load_document(raw))

    def to_dict(self) -> Dict[str, Any]:
        statements = [statement.to_dict() for statement in self.statement]
        return {
            "Version": self.version,
            "Statement": statements or None,
        }

    def to_json(self) -> str:
        return canonical_json(self.to_dict())


@dataclass
class Principal:
    """Who may assume a role.

    Only one kind is meaningful per statement: a federated OIDC provider,
    or AWS principals and/or service principals.
    """

    aws: List[str] = field(default_factory=list)
    service: List[str] = field(default_factory=list)
    federated: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "Principal":
        if data is None:
            return cls()
        if isinstance(data, str):
            # "Principal": "*" is shorthand for every AWS principal
            return cls(aws=[data])
        if not isinstance(data, dict):
            raise PolicyDocumentError(f"Principal must be an object, got {data!r}")
        return cls(
            aws=normalize(data.get("AWS")),
            service=normalize(data.get("Service")),
            federated=data.get("Federated") or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.aws:
            result["AWS"] = serialize(self.aws)
        if self.service:
            result["Service"] = serialize(self.service)
        if self.federated:
            result["Federated"] = self.federated
        return result

    def is_empty(self) -> bool:
        return not (self.aws or self.service or self.federated)


@dataclass
class TrustStatement:
    """One trust policy statement."""

    principal: Principal
    action: str = ASSUME_ROLE_ACTION
    effect: Effect = Effect.ALLOW
    condition: Optional[Dict[str, Dict[str, Any]]] = None
    sid: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrustStatement":
        if not isinstance(data, dict):
            raise PolicyDocumentError(f"Statement must be an object, got {data!r}")
        actions = normalize(data.get("Action"))
        return cls(
            principal=Principal.from_dict(data.get("Principal")),
            action=actions[0] if len(actions) == 1 else ",".join(actions),
            effect=Effect.parse(data.get("Effect", Effect.ALLOW.value)),
            condition=data.get("Condition") or None,
            sid=data.get("Sid") or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "Effect": self.effect.value,
            "Action": self.action,
            "Principal": self.principal.to_dict(),
        }
        if self.condition:
            result["Condition"] = self.condition
        if self.sid:
            result["Sid"] = self.sid
        return result


@dataclass
class TrustPolicyDocument:
    """Assume-role policy document of a role."""

    statement: List[TrustStatement] = field(default_factory=list)
    version: str = POLICY_VERSION

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TrustPolicyDocument":
        data = data or {}
        if not isinstance(data, dict):
            raise PolicyDocumentError(f"Policy document must be an object, got {type(data).__name__}")
        raw_statements = data.get("Statement") or []
        if isinstance(raw_statements, dict):
            raw_statements = [raw_statements]
        return cls(
            statement=[TrustStatement.from_dict(item) for item in raw_statements],
            version=data.get("Version") or POLICY_VERSION,
        )

    @classmethod
    def from_json(cls, raw: Union[str, Dict[str, Any], None]) -> "TrustPolicyDocument":
        return cls.from_dict(load_document(raw))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "Version": self.version,
            "Statement": [statement.to_dict() for statement in self.statement],
        }

    def to_json(self) -> str:
        return canonical_json(self.to_dict())


@dataclass
class TrustPolicyOverride:
    """Tenant supplied trust principal, taken from the declaration spec."""

    principal: Principal = field(default_factory=Principal)
    condition: Optional[Dict[str, Dict[str, Any]]] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["TrustPolicyOverride"]:
        """Read an override from a bare statement or a full trust document.

        For a full document the first statement supplies the principal.
        """
        if not data:
            return None
        if not isinstance(data, dict):
            raise PolicyDocumentError(f"Trust policy must be an object, got {type(data).__name__}")
        if "Statement" in data:
            statements = data.get("Statement") or []
            if isinstance(statements, dict):
                statements = [statements]
            if not statements:
                return None
            data = statements[0]
            if not isinstance(data, dict):
                raise PolicyDocumentError(f"Statement must be an object, got {data!r}")
        return cls(
            principal=Principal.from_dict(data.get("Principal")),
            condition=data.get("Condition") or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"Principal": self.principal.to_dict()}
        if self.condition:
            result["Condition"] = self.condition
        return result
