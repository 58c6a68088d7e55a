"""boto3 session and client cache shared by the operator.

One session is opened per process, on first use. The role orchestrator asks
for IAM clients and the configuration loader resolves the account id over
STS; both go through the same AWSClientManager.
"""

from typing import Any, Dict, Optional, Tuple
import boto3
from botocore.exceptions import (
    NoCredentialsError,
    ClientError,
    ProfileNotFound,
)


DEFAULT_REGION = "us-west-2"

# STS answers these when the access key is unknown or revoked
INVALID_TOKEN_CODES = ("InvalidClientTokenId", "UnrecognizedClientException")


class AWSClientManager:
    """Lazily opened boto3 session with per service and region clients.

    IAM is global; the region only picks the STS and IAM endpoint.
    """

    def __init__(
        self,
        profile_name: Optional[str] = None,
        region_name: Optional[str] = None,
    ) -> None:
        """Initialize AWS client manager.

        Args:
            profile_name: Named profile from the shared credentials file
            region_name: Region used when a caller does not pass one
        """
        self._profile_name = profile_name
        self._region_name = region_name
        self._session: Optional[boto3.Session] = None
        self._clients: Dict[Tuple[str, str], Any] = {}

    @property
    def session(self) -> boto3.Session:
        if self._session is None:
            kwargs = {"profile_name": self._profile_name} if self._profile_name else {}
            self._session = boto3.Session(**kwargs)
        return self._session

    def get_client(self, service_name: str, region_name: Optional[str] = None) -> Any:
        """Return the cached client for a service, creating it on first use."""
        key = (service_name, region_name or self.get_current_region())
        if key not in self._clients:
            self._clients[key] = self.session.client(key[0], region_name=key[1])
        return self._clients[key]

    def get_current_region(self) -> str:
        return self._region_name or self.session.region_name or DEFAULT_REGION

    def _caller_identity(self) -> Dict[str, Any]:
        return self.get_client("sts").get_caller_identity()

    def validate_credentials(self) -> None:
        """Fail fast at startup when the operator cannot call AWS.

        Raises:
            NoCredentialsError: No credentials, or STS rejected the key
            ProfileNotFound: The configured profile does not exist
        """
        try:
            self._caller_identity()
        except ProfileNotFound:
            raise ProfileNotFound(profile=self._profile_name)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in INVALID_TOKEN_CODES:
                raise NoCredentialsError()
            raise

    def get_account_id(self) -> str:
        """Account the credentials belong to.

        Raises:
            ClientError: When STS refuses the call
        """
        return self._caller_identity()["Account"]
