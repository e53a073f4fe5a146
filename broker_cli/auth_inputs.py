from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from typing import Any

ROLE_ARN_PATTERN = re.compile(r"^arn:aws:iam::([0-9]{12}):role/[A-Za-z0-9_+=,.@-]+$")
EXTERNAL_ID_PATTERN = re.compile(r"^[a-f0-9]{64}$")


class AuthInputError(ValueError):
    """Raised when role reference inputs are missing or malformed."""


class MissingRoleReferenceError(AuthInputError):
    """Raised when neither flags nor a saved connection supply a role reference."""


class PreflightValidationError(AuthInputError):
    """Raised when strict client-side preflight validation fails."""


@dataclass(frozen=True)
class RoleReference:
    role_arn: str
    external_id: str
    account_id: str = ""

    def request_fields(self) -> dict[str, str]:
        return {"roleArn": self.role_arn, "externalId": self.external_id}


def new_external_id() -> str:
    """256 bits of randomness, hex encoded to 64 characters."""
    return secrets.token_hex(32)


def preflight_role_reference(*, role_arn: str | None, external_id: str | None) -> RoleReference:
    arn = (role_arn or "").strip()
    ext = (external_id or "").strip()
    m = ROLE_ARN_PATTERN.fullmatch(arn)
    if not m:
        raise PreflightValidationError(
            f"role ARN must look like arn:aws:iam::123456789012:role/RoleName; got {arn!r}"
        )
    if not EXTERNAL_ID_PATTERN.fullmatch(ext):
        raise PreflightValidationError("external id must be 64 lowercase hex characters")
    return RoleReference(role_arn=arn, external_id=ext, account_id=m.group(1))


def resolve_role_reference(
    *,
    role_arn: str | None,
    external_id: str | None,
    saved: dict[str, Any] | None,
    required: bool,
) -> RoleReference | None:
    """Flags win over the saved connection; both values must come from one source."""

    if (role_arn or "").strip() or (external_id or "").strip():
        return preflight_role_reference(role_arn=role_arn, external_id=external_id)
    if isinstance(saved, dict) and saved.get("roleArn") and saved.get("externalId"):
        ref = preflight_role_reference(
            role_arn=str(saved.get("roleArn")),
            external_id=str(saved.get("externalId")),
        )
        return RoleReference(
            role_arn=ref.role_arn,
            external_id=ref.external_id,
            account_id=str(saved.get("accountId") or ref.account_id),
        )
    if required:
        raise MissingRoleReferenceError(
            "missing role reference (pass --role-arn/--external-id or run verify-role --save)"
        )
    return None
