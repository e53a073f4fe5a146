import base64
import json
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from action_ledger import ActionLedger
from broker_errors import (
    AuthorizationError,
    BrokerError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from credential_broker import CredentialBroker
from execution_engine import ExecutionEngine
from input_validation import sanitize_message, validate_role_reference
import plan_generator
from workspace_janitor import WorkspaceJanitor

SERVICE_NAME = "change-broker"
SERVICE_VERSION = "1.0.0"

SCHEMA_VERSION = os.environ.get("SCHEMA_VERSION", "2026-10-01")
BROKER_ENV = os.environ.get("BROKER_ENV", "production")
TARGET_REGION = os.environ.get("TARGET_REGION", "us-east-1")
WORKSPACE_ROOT = os.environ.get("WORKSPACE_ROOT", "/tmp/change-broker-workspaces")
ACTION_TTL_SECONDS = int(os.environ.get("ACTION_TTL_SECONDS", "600"))
WORKSPACE_MAX_AGE_MINUTES = int(os.environ.get("WORKSPACE_MAX_AGE_MINUTES", "60"))
JANITOR_INTERVAL_SECONDS = int(os.environ.get("JANITOR_INTERVAL_SECONDS", "3600"))
EXECUTION_MODE = os.environ.get("EXECUTION_MODE", "driver")
TERRAFORM_BIN = os.environ.get("TERRAFORM_BIN", "terraform")
TERRAFORM_TIMEOUT_SECONDS = int(os.environ.get("TERRAFORM_TIMEOUT_SECONDS", "300"))
EXECUTION_BUDGET_SECONDS = int(os.environ.get("EXECUTION_BUDGET_SECONDS", "780"))
RESPONSE_MARGIN_SECONDS = int(os.environ.get("RESPONSE_MARGIN_SECONDS", "15"))
VERIFY_DURATION_SECONDS = int(os.environ.get("VERIFY_DURATION_SECONDS", "900"))
EXECUTION_DURATION_SECONDS = int(os.environ.get("EXECUTION_DURATION_SECONDS", "3600"))

VERIFY_ROLE_PATH = os.environ.get("VERIFY_ROLE_PATH", "/api/auth/verify-role")
CHAT_PATH = os.environ.get("CHAT_PATH", "/api/chat")
APPLY_PATH = os.environ.get("APPLY_PATH", "/api/apply")
HEALTH_PATH = os.environ.get("HEALTH_PATH", "/health")

_service_instance = None


@dataclass
class BrokerService:
    """Owns the process-lifetime state shared by every request."""

    broker: CredentialBroker
    ledger: ActionLedger
    engine: ExecutionEngine
    janitor: WorkspaceJanitor
    region: str = "us-east-1"
    environment: str = "production"

    def start(self, janitor_interval_seconds: int) -> None:
        if janitor_interval_seconds > 0:
            self.janitor.start(janitor_interval_seconds)

    def stop(self) -> None:
        self.janitor.stop()


def _aws_region() -> str | None:
    return os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION")


def build_service() -> BrokerService:
    broker = CredentialBroker(
        region=_aws_region(),
        verify_duration_seconds=VERIFY_DURATION_SECONDS,
        execution_duration_seconds=EXECUTION_DURATION_SECONDS,
    )
    ledger = ActionLedger(ttl_seconds=ACTION_TTL_SECONDS)
    engine = ExecutionEngine(
        WORKSPACE_ROOT,
        session_client=broker.session_client,
        mode=EXECUTION_MODE,
        terraform_bin=TERRAFORM_BIN,
        timeout_seconds=TERRAFORM_TIMEOUT_SECONDS,
        budget_seconds=EXECUTION_BUDGET_SECONDS,
        region=TARGET_REGION,
    )
    janitor = WorkspaceJanitor(
        WORKSPACE_ROOT,
        ledger=ledger,
        max_age_minutes=WORKSPACE_MAX_AGE_MINUTES,
    )
    return BrokerService(
        broker=broker,
        ledger=ledger,
        engine=engine,
        janitor=janitor,
        region=TARGET_REGION,
        environment=BROKER_ENV,
    )


def _service() -> BrokerService:
    global _service_instance
    if _service_instance is None:
        _service_instance = build_service()
        _service_instance.start(JANITOR_INTERVAL_SECONDS)
    return _service_instance


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _response(status_code: int, body: dict[str, Any]) -> dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": {"content-type": "application/json", "cache-control": "no-store"},
        "body": json.dumps(body),
    }


def _get_request_id(event: dict[str, Any]) -> str:
    rc = event.get("requestContext") or {}
    if not isinstance(rc, dict):
        return ""
    return str(rc.get("requestId") or "")


def _request_method(event: dict[str, Any]) -> str:
    method = event.get("httpMethod")
    if not method:
        rc = event.get("requestContext") or {}
        http = rc.get("http") if isinstance(rc, dict) else None
        method = (http or {}).get("method") if isinstance(http, dict) else ""
    return str(method or "").upper()


def _request_path_values(event: dict[str, Any]) -> list[str]:
    out: list[str] = []
    rc = event.get("requestContext") or {}
    candidates = [
        event.get("rawPath"),
        event.get("path"),
        event.get("resource"),
        rc.get("path") if isinstance(rc, dict) else None,
        rc.get("resourcePath") if isinstance(rc, dict) else None,
    ]
    for raw in candidates:
        val = str(raw or "").strip()
        if val:
            out.append(val)
    return out


def _request_matches_path(event: dict[str, Any], expected_path: str) -> bool:
    expected = str(expected_path or "").strip().rstrip("/")
    if not expected:
        return False
    for raw in _request_path_values(event):
        candidate = raw.rstrip("/")
        if candidate == expected or candidate.endswith(expected):
            return True
    return False


def _is_root_request(event: dict[str, Any]) -> bool:
    values = _request_path_values(event)
    return bool(values) and all(v.rstrip("/") == "" for v in values)


def _is_scheduled_event(event: dict[str, Any]) -> bool:
    return event.get("source") == "aws.events" and "httpMethod" not in event


def _time_remaining_seconds(context: Any) -> float | None:
    get_remaining = getattr(context, "get_remaining_time_in_millis", None)
    if not callable(get_remaining):
        return None
    # Margin for recording the failure and returning a response.
    return max(get_remaining() / 1000.0 - RESPONSE_MARGIN_SECONDS, 0.0)


def _parse_json_body(event: dict[str, Any]) -> dict[str, Any]:
    raw = event.get("body")
    if raw is None:
        return {}
    if event.get("isBase64Encoded"):
        try:
            raw = base64.b64decode(raw).decode("utf-8")
        except Exception as e:
            raise ValidationError("Request body is not valid base64") from e
    text = str(raw)
    if not text.strip():
        return {}
    try:
        parsed = json.loads(text)
    except Exception as e:
        raise ValidationError("Request body must be a JSON object") from e
    if not isinstance(parsed, dict):
        raise ValidationError("Request body must be a JSON object")
    return parsed


def _error_body(err: BrokerError, request_id: str) -> dict[str, Any]:
    body = err.to_body()
    body["message"] = err.remediation or err.message
    body["requestId"] = request_id
    return body


def _internal_error(exc: Exception, service: BrokerService) -> InternalError:
    if service.environment == "development":
        return InternalError(f"{type(exc).__name__}: {exc}")
    return InternalError("Something went wrong")


def _health(service: BrokerService) -> dict[str, Any]:
    return _response(
        200,
        {
            "status": "ok",
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "schemaVersion": SCHEMA_VERSION,
            "pendingActions": len(service.ledger),
            "timestamp": _now_iso(),
        },
    )


def _verify_role(
    event: dict[str, Any],
    service: BrokerService,
    request_id: str,
    log: dict[str, Any],
    _context: Any = None,
) -> dict[str, Any]:
    payload = _parse_json_body(event)
    try:
        role_arn, external_id = validate_role_reference(payload.get("roleArn"), payload.get("externalId"))
    except ValidationError as e:
        body = _error_body(e, request_id)
        body["valid"] = False
        return _response(400, body)

    try:
        verified = service.broker.verify(role_arn, external_id)
    except AuthorizationError as e:
        log["auth_error"] = e.error_code
        body = _error_body(e, request_id)
        body["valid"] = False
        body["error"] = e.remediation or e.message
        return _response(200, body)

    log["account_id"] = verified["accountId"]
    return _response(
        200,
        {
            "valid": True,
            "accountId": verified["accountId"],
            "message": "Successfully verified IAM Role",
            "requestId": request_id,
        },
    )


def _chat(
    event: dict[str, Any],
    service: BrokerService,
    request_id: str,
    log: dict[str, Any],
    _context: Any = None,
) -> dict[str, Any]:
    payload = _parse_json_body(event)
    message = sanitize_message(payload.get("message"))

    if not plan_generator.classify(message):
        log["intent"] = "informational"
        return _response(
            200,
            {
                "message": plan_generator.answer(message),
                "requiresConfirmation": False,
                "requestId": request_id,
            },
        )

    log["intent"] = "change"
    role_arn = payload.get("roleArn")
    external_id = payload.get("externalId")
    if not role_arn or not external_id:
        return _response(
            401,
            {
                "errorCode": "AUTHORIZATION_REQUIRED",
                "error": "AWS connection required",
                "message": "Please setup AWS connection to create resources",
                "requestId": request_id,
            },
        )

    role_arn, external_id = validate_role_reference(role_arn, external_id)
    service.broker.verify(role_arn, external_id)

    plan = plan_generator.generate(message, region=service.region)
    log["resource_type"] = plan.resource_type
    if not plan.actionable:
        return _response(
            200,
            {
                "message": plan.summary,
                "requiresConfirmation": False,
                "warnings": list(plan.warnings),
                "requestId": request_id,
            },
        )

    action_id = service.ledger.stage(message, plan)
    log["action_id"] = action_id
    return _response(
        200,
        {
            "requiresConfirmation": True,
            "actionId": action_id,
            "expiresAt": service.ledger.expires_at(action_id),
            "message": plan.summary,
            "resourceType": plan.resource_type,
            "renderedArtifact": plan.rendered_artifact,
            "plan": plan.human_plan,
            "resourceList": list(plan.resource_list),
            "costEstimate": plan.cost_estimate,
            "warnings": list(plan.warnings),
            "requestId": request_id,
        },
    )


def _apply(
    event: dict[str, Any],
    service: BrokerService,
    request_id: str,
    log: dict[str, Any],
    context: Any = None,
) -> dict[str, Any]:
    payload = _parse_json_body(event)
    action_id = str(payload.get("actionId") or "").strip()
    if not action_id or not payload.get("roleArn") or not payload.get("externalId"):
        raise ValidationError("Missing required parameters (actionId, roleArn, externalId)")
    role_arn, external_id = validate_role_reference(payload.get("roleArn"), payload.get("externalId"))

    # Consumed before any network call: an unknown id costs no role assumption, and a
    # consumed id can never be executed twice.
    action = service.ledger.consume(action_id)
    log["action_id"] = action.action_id
    log["resource_type"] = action.resource_type

    credentials = service.broker.assume(role_arn, external_id)
    time_remaining = _time_remaining_seconds(context)
    if time_remaining is not None:
        log["time_remaining_s"] = int(time_remaining)
    result = service.engine.apply(action, credentials, time_remaining=time_remaining)
    log["resource_id"] = result.resource_id
    log["workspace_id"] = result.workspace_id
    return _response(
        200,
        {
            "success": True,
            "message": result.message,
            "resourceId": result.resource_id,
            "outputs": result.outputs,
            "requestId": request_id,
        },
    )


_ROUTES = (
    ("POST", VERIFY_ROLE_PATH, "verify_role", _verify_role),
    ("POST", CHAT_PATH, "chat", _chat),
    ("POST", APPLY_PATH, "apply", _apply),
)


def route(event: dict[str, Any], service: BrokerService, context: Any = None) -> dict[str, Any]:
    start = time.time()
    request_id = _get_request_id(event)
    log: dict[str, Any] = {
        "event": "change_broker_request",
        "schema_version": SCHEMA_VERSION,
        "request_id": request_id,
        "ts": _now_iso(),
    }
    status_code = 500
    try:
        if _is_scheduled_event(event):
            log["route"] = "janitor"
            result = service.janitor.run_once()
            log["outcome"] = "skipped" if result["skipped"] else "success"
            log["actions_removed"] = result["actionsRemoved"]
            log["workspaces_removed"] = len(result["workspacesRemoved"])
            status_code = 200
            return {"ok": True, **result}

        method = _request_method(event)
        if method == "GET" and (_is_root_request(event) or _request_matches_path(event, HEALTH_PATH)):
            log["route"] = "health"
            out = _health(service)
        else:
            for route_method, path, name, fn in _ROUTES:
                if method == route_method and _request_matches_path(event, path):
                    log["route"] = name
                    out = fn(event, service, request_id, log, context)
                    break
            else:
                log["route"] = "unknown"
                out = _response(
                    404,
                    {"errorCode": "ROUTE_NOT_FOUND", "error": "Route not found", "requestId": request_id},
                )
        status_code = out["statusCode"]
        log["outcome"] = "success" if status_code < 400 else "rejected"
        return out
    except BrokerError as e:
        status_code = e.status_code
        log["outcome"] = "error" if status_code >= 500 else "rejected"
        log["error"] = {"type": type(e).__name__, "code": e.error_code}
        body = _error_body(e, request_id)
        if log.get("route") == "apply":
            body["success"] = False
        if isinstance(e, NotFoundError):
            body["message"] = e.message
        return _response(status_code, body)
    except Exception as exc:
        err = _internal_error(exc, service)
        status_code = err.status_code
        log["outcome"] = "error"
        log["error"] = {"type": type(exc).__name__, "message": str(exc)}
        return _response(status_code, _error_body(err, request_id))
    finally:
        log["status_code"] = status_code
        log["duration_ms"] = int((time.time() - start) * 1000)
        # Never log credential material.
        print(json.dumps(log, separators=(",", ":"), sort_keys=True))


def handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    return route(event, _service(), context)
