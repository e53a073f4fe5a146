from __future__ import annotations

import re

from broker_errors import ValidationError

ROLE_ARN_PATTERN = re.compile(r"^arn:aws:iam::([0-9]{12}):role/[A-Za-z0-9_+=,.@-]+$")
EXTERNAL_ID_PATTERN = re.compile(r"^[a-f0-9]{64}$")
MAX_MESSAGE_LENGTH = 4000

_SCRIPT_BLOCK = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_JS_SCHEME = re.compile(r"javascript:", re.IGNORECASE)
_INLINE_HANDLER = re.compile(r"on\w+\s*=", re.IGNORECASE)


def validate_role_arn(value: str | None) -> str:
    arn = value if isinstance(value, str) else ""
    if not ROLE_ARN_PATTERN.fullmatch(arn):
        raise ValidationError(
            "Invalid Role ARN format",
            remediation="Role ARN must match pattern: arn:aws:iam::123456789012:role/RoleName",
        )
    return arn


def validate_external_id(value: str | None) -> str:
    external_id = value if isinstance(value, str) else ""
    if not EXTERNAL_ID_PATTERN.fullmatch(external_id):
        raise ValidationError(
            "Invalid External ID format",
            remediation="External ID must be 64 lowercase hexadecimal characters",
        )
    return external_id


def validate_role_reference(role_arn: str | None, external_id: str | None) -> tuple[str, str]:
    if not role_arn or not external_id:
        raise ValidationError("Role ARN and External ID are required")
    return validate_role_arn(role_arn), validate_external_id(external_id)


def account_id_from_role_arn(role_arn: str) -> str:
    m = ROLE_ARN_PATTERN.fullmatch(role_arn or "")
    return m.group(1) if m else ""


def sanitize_message(value: str | None) -> str:
    text = str(value or "")
    text = _SCRIPT_BLOCK.sub("", text)
    text = _JS_SCHEME.sub("", text)
    text = _INLINE_HANDLER.sub("", text)
    text = text.strip()
    if not text:
        raise ValidationError("Message is required")
    if len(text) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message exceeds {MAX_MESSAGE_LENGTH} characters")
    return text
