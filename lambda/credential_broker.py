from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable

import boto3
from botocore.exceptions import ClientError

from broker_errors import AccessDeniedError, RoleAssumptionError
from input_validation import validate_role_reference

VERIFY_DURATION_SECONDS = 900
EXECUTION_DURATION_SECONDS = 3600

ACCESS_DENIED_GUIDANCE = (
    "Access denied. Please check that:\n"
    "1. Role ARN is correct\n"
    "2. External ID matches\n"
    "3. Trust relationship is configured correctly"
)

ClientFactory = Callable[..., Any]


@dataclass(frozen=True)
class TemporaryCredentials:
    access_key_id: str
    secret_access_key: str = field(repr=False)
    session_token: str = field(repr=False)
    expiration: str = ""

    def client_kwargs(self) -> dict[str, str]:
        return {
            "aws_access_key_id": self.access_key_id,
            "aws_secret_access_key": self.secret_access_key,
            "aws_session_token": self.session_token,
        }

    def environment(self) -> dict[str, str]:
        return {
            "AWS_ACCESS_KEY_ID": self.access_key_id,
            "AWS_SECRET_ACCESS_KEY": self.secret_access_key,
            "AWS_SESSION_TOKEN": self.session_token,
        }


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code") or "")


def _error_message(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Message") or exc)


def _expiration_iso(raw: Any) -> str:
    if hasattr(raw, "isoformat"):
        return raw.isoformat()
    return str(raw or "")


class CredentialBroker:
    """Exchanges a (role ARN, external id) pair for short-lived scoped credentials.

    The broker's own STS client runs on the ambient execution-role credentials. Each
    successful assumption yields credentials that live only for the caller's stack frame.
    """

    def __init__(
        self,
        *,
        region: str | None = None,
        client_factory: ClientFactory | None = None,
        verify_duration_seconds: int = VERIFY_DURATION_SECONDS,
        execution_duration_seconds: int = EXECUTION_DURATION_SECONDS,
    ) -> None:
        self.region = region
        self._client_factory = client_factory or boto3.client
        self.verify_duration_seconds = verify_duration_seconds
        self.execution_duration_seconds = execution_duration_seconds
        self._sts_client = None

    def _sts(self):
        if self._sts_client is None:
            self._sts_client = self._client_factory("sts", region_name=self.region)
        return self._sts_client

    def session_client(self, credentials: TemporaryCredentials, service: str, *, region: str | None = None):
        return self._client_factory(
            service,
            region_name=region or self.region,
            **credentials.client_kwargs(),
        )

    def _assume(self, role_arn: str, external_id: str, *, duration: int, session_prefix: str) -> TemporaryCredentials:
        assumed = self._sts().assume_role(
            RoleArn=role_arn,
            RoleSessionName=f"{session_prefix}-{int(time.time() * 1000)}",
            ExternalId=external_id,
            DurationSeconds=duration,
        )
        creds = assumed.get("Credentials") or {}
        return TemporaryCredentials(
            access_key_id=str(creds.get("AccessKeyId") or ""),
            secret_access_key=str(creds.get("SecretAccessKey") or ""),
            session_token=str(creds.get("SessionToken") or ""),
            expiration=_expiration_iso(creds.get("Expiration")),
        )

    def verify(self, role_arn: str, external_id: str) -> dict[str, str]:
        role_arn, external_id = validate_role_reference(role_arn, external_id)
        try:
            credentials = self._assume(
                role_arn,
                external_id,
                duration=self.verify_duration_seconds,
                session_prefix="verification",
            )
            identity = self.session_client(credentials, "sts").get_caller_identity()
        except ClientError as e:
            if _error_code(e) == "AccessDenied":
                raise AccessDeniedError(
                    "Failed to assume role",
                    remediation=ACCESS_DENIED_GUIDANCE,
                ) from e
            raise RoleAssumptionError(f"Failed to assume role: {_error_message(e)}") from e
        # Verification credentials are never handed back to callers.
        del credentials
        return {"accountId": str(identity.get("Account") or "")}

    def assume(
        self,
        role_arn: str,
        external_id: str,
        duration: int | None = None,
    ) -> TemporaryCredentials:
        role_arn, external_id = validate_role_reference(role_arn, external_id)
        try:
            return self._assume(
                role_arn,
                external_id,
                duration=duration or self.execution_duration_seconds,
                session_prefix="change-broker",
            )
        except ClientError as e:
            remediation = ACCESS_DENIED_GUIDANCE if _error_code(e) == "AccessDenied" else ""
            raise RoleAssumptionError(
                f"Failed to assume role: {_error_message(e)}",
                remediation=remediation,
            ) from e
