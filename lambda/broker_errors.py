from __future__ import annotations

from typing import Any


class BrokerError(Exception):
    status_code = 500
    error_code = "BROKER_ERROR"

    def __init__(self, message: str, *, remediation: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.remediation = remediation

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"errorCode": self.error_code, "error": self.message}
        if self.remediation:
            body["remediation"] = self.remediation
        return body


class ValidationError(BrokerError):
    """Malformed caller input, rejected before any external call."""

    status_code = 400
    error_code = "VALIDATION_FAILED"


class AuthorizationError(BrokerError):
    status_code = 401
    error_code = "AUTHORIZATION_FAILED"


class AccessDeniedError(AuthorizationError):
    error_code = "ACCESS_DENIED"


class RoleAssumptionError(AuthorizationError):
    error_code = "ROLE_ASSUMPTION_FAILED"


class NotFoundError(BrokerError):
    """Unknown, consumed, or expired action. The three cases share one message."""

    status_code = 404
    error_code = "NOT_FOUND"

    def __init__(self, message: str = "Action not found or expired", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class ProvisioningError(BrokerError):
    status_code = 502
    error_code = "PROVISIONING_FAILED"

    def __init__(
        self,
        message: str,
        *,
        remediation: str = "",
        output: str = "",
        completed_steps: list[str] | None = None,
    ) -> None:
        super().__init__(message, remediation=remediation)
        self.output = output
        self.completed_steps = list(completed_steps or [])

    def to_body(self) -> dict[str, Any]:
        body = super().to_body()
        if self.completed_steps:
            body["completedSteps"] = list(self.completed_steps)
        if self.output:
            # Tool output can be long; keep the tail where the failure is reported.
            body["output"] = self.output[-4000:]
        return body


class InternalError(BrokerError):
    status_code = 500
    error_code = "INTERNAL_ERROR"
