from __future__ import annotations

import json
import os
import secrets
import subprocess
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping

from botocore.exceptions import BotoCoreError, ClientError

from action_ledger import PendingAction
from broker_errors import ProvisioningError
from credential_broker import TemporaryCredentials
from plan_generator import DEFAULT_REGION, resource_tags

TERRAFORM_TIMEOUT_SECONDS = 300
EXECUTION_BUDGET_SECONDS = 780
WAITER_DELAY_SECONDS = 5
EXECUTION_MODES = ("driver", "terraform")

WORKSPACE_STATES = ("initialized", "executing", "completed", "failed", "reaped")
WORKSPACE_STATUS_FILE = "workspace.json"

PARTIAL_APPLY_NOTE = (
    "Steps that already succeeded were not rolled back; the resource may exist in a "
    "partially configured state."
)

SessionClient = Callable[..., Any]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _log(payload: dict[str, Any]) -> None:
    # Never pass credential material here.
    print(json.dumps(payload, separators=(",", ":"), sort_keys=True))


@dataclass
class Workspace:
    id: str
    directory: Path
    rendered_files: list[str] = field(default_factory=list)
    state: str = "initialized"

    def write_file(self, name: str, text: str) -> Path:
        path = self.directory / name
        path.write_text(text, encoding="utf-8")
        if name not in self.rendered_files:
            self.rendered_files.append(name)
        return path

    def transition(self, state: str, **detail: Any) -> None:
        if state not in WORKSPACE_STATES:
            raise ValueError(f"unknown workspace state: {state}")
        self.state = state
        doc = {
            "workspaceId": self.id,
            "state": state,
            "renderedFiles": list(self.rendered_files),
            "updatedAt": _now_iso(),
        }
        doc.update(detail)
        (self.directory / WORKSPACE_STATUS_FILE).write_text(
            json.dumps(doc, indent=2, sort_keys=True) + "\n", encoding="utf-8"
        )


@dataclass(frozen=True)
class ApplyResult:
    resource_id: str
    message: str
    outputs: dict[str, Any]
    workspace_id: str = ""


class Deadline:
    """Time budget shared by every step of one apply."""

    def __init__(self, seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.expires_at = clock() + max(float(seconds), 0.0)

    def remaining(self) -> float:
        return max(self.expires_at - self._clock(), 0.0)


def render_provider(region: str) -> str:
    # Credentials reach the provider through the process environment only.
    return f"""terraform {{
  required_version = ">= 1.0"

  required_providers {{
    aws = {{
      source  = "hashicorp/aws"
      version = "~> 5.0"
    }}
  }}
}}

provider "aws" {{
  region = "{region}"
}}
"""


def _client_error_code(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Code") or "")
    return ""


def _client_error_message(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Message") or exc)
    return str(exc)


def _tag_list(config: Mapping[str, Any]) -> list[dict[str, str]]:
    return [{"Key": k, "Value": v} for k, v in resource_tags(dict(config)).items()]


def _waiter_config(deadline: Deadline) -> dict[str, int]:
    return {
        "Delay": WAITER_DELAY_SECONDS,
        "MaxAttempts": max(int(deadline.remaining() // WAITER_DELAY_SECONDS), 1),
    }


class _StepRunner:
    """Runs a driver's steps in order; the first failure or an exhausted deadline ends the run."""

    def __init__(
        self,
        *,
        resource_type: str,
        resource_name: str,
        explain: Callable[[str], str],
        deadline: Deadline,
    ) -> None:
        self.resource_type = resource_type
        self.resource_name = resource_name
        self.explain = explain
        self.deadline = deadline
        self.completed: list[str] = []

    def _failed(self, step: str, reason: str, error: dict[str, str], remediation: str) -> ProvisioningError:
        _log(
            {
                "event": "change_broker_driver_step",
                "resource_type": self.resource_type,
                "resource_name": self.resource_name,
                "step": step,
                "outcome": "error",
                "error": error,
            }
        )
        message = f"Failed to {step} for {self.resource_type} {self.resource_name!r}: {reason}"
        if self.completed:
            message += f". Completed steps: {', '.join(self.completed)}. {PARTIAL_APPLY_NOTE}"
        return ProvisioningError(message, remediation=remediation, completed_steps=self.completed)

    def run(self, step: str, call: Callable[[], Any]) -> Any:
        if self.deadline.remaining() <= 0:
            raise self._failed(
                step,
                "execution deadline reached",
                {"type": "DeadlineExceeded", "code": ""},
                "Inspect the account for partially created resources before retrying.",
            )
        try:
            out = call()
        except (ClientError, BotoCoreError) as e:
            code = _client_error_code(e)
            raise self._failed(
                step,
                _client_error_message(e),
                {"type": type(e).__name__, "code": code},
                self.explain(code),
            ) from e
        self.completed.append(step)
        _log(
            {
                "event": "change_broker_driver_step",
                "resource_type": self.resource_type,
                "resource_name": self.resource_name,
                "step": step,
                "outcome": "success",
            }
        )
        return out


def _explain_s3(code: str) -> str:
    if code in ("BucketAlreadyExists", "BucketAlreadyOwnedByYou"):
        return (
            "S3 bucket names must be unique across all AWS accounts. "
            "Request a new plan to get a freshly generated name."
        )
    if code == "InvalidBucketName":
        return (
            "Bucket names must be 3-63 characters, lowercase, and contain only letters, "
            "numbers, and hyphens."
        )
    if code == "AccessDenied":
        return "The assumed role lacks S3 permissions; grant s3:CreateBucket and s3:PutBucket* to it."
    return ""


def _explain_sqs(code: str) -> str:
    if code in ("QueueAlreadyExists", "QueueNameExists"):
        return "A queue with this name already exists with different attributes; request a new plan."
    if code in ("AccessDenied", "AccessDeniedException"):
        return "The assumed role lacks SQS permissions; grant sqs:CreateQueue and sqs:TagQueue to it."
    return ""


def _explain_dynamodb(code: str) -> str:
    if code == "ResourceInUseException":
        return "A table with this name already exists in the account and region; request a new plan."
    if code == "LimitExceededException":
        return "The account has too many tables in CREATING state; wait and request a new plan."
    if code in ("AccessDenied", "AccessDeniedException"):
        return "The assumed role lacks DynamoDB permissions; grant dynamodb:CreateTable and dynamodb:TagResource to it."
    return ""


def _drive_s3_bucket(
    client_for: Callable[[str], Any], config: Mapping[str, Any], deadline: Deadline
) -> ApplyResult:
    bucket = str(config["bucketName"])
    region = str(config.get("region") or DEFAULT_REGION)
    s3 = client_for("s3")
    steps = _StepRunner(resource_type="s3-bucket", resource_name=bucket, explain=_explain_s3, deadline=deadline)

    create_kwargs: dict[str, Any] = {"Bucket": bucket, "ObjectOwnership": "BucketOwnerEnforced"}
    if region != "us-east-1":
        create_kwargs["CreateBucketConfiguration"] = {"LocationConstraint": region}
    steps.run("create bucket", lambda: s3.create_bucket(**create_kwargs))
    steps.run(
        "enable versioning",
        lambda: s3.put_bucket_versioning(
            Bucket=bucket,
            VersioningConfiguration={"Status": "Enabled"},
        ),
    )
    steps.run(
        "enable encryption",
        lambda: s3.put_bucket_encryption(
            Bucket=bucket,
            ServerSideEncryptionConfiguration={
                "Rules": [{"ApplyServerSideEncryptionByDefault": {"SSEAlgorithm": "AES256"}}]
            },
        ),
    )
    steps.run(
        "apply tags",
        lambda: s3.put_bucket_tagging(Bucket=bucket, Tagging={"TagSet": _tag_list(config)}),
    )

    console_url = f"https://s3.console.aws.amazon.com/s3/buckets/{bucket}"
    return ApplyResult(
        resource_id=bucket,
        message=(
            "Successfully created S3 bucket!\n\n"
            f"Bucket Name: {bucket}\n"
            f"View in Console: {console_url}\n\n"
            "Features enabled:\n"
            "- Versioning\n"
            "- Server-side encryption (AES256)\n"
            "- Management tags"
        ),
        outputs={
            "bucket_name": bucket,
            "bucket_region": region,
            "bucket_arn": f"arn:aws:s3:::{bucket}",
            "console_url": console_url,
            "created_at": str(config.get("createdAt") or ""),
        },
    )


def _drive_sqs_queue(
    client_for: Callable[[str], Any], config: Mapping[str, Any], deadline: Deadline
) -> ApplyResult:
    name = str(config["queueName"])
    region = str(config.get("region") or DEFAULT_REGION)
    sqs = client_for("sqs")
    steps = _StepRunner(resource_type="sqs-queue", resource_name=name, explain=_explain_sqs, deadline=deadline)

    created = steps.run(
        "create queue",
        lambda: sqs.create_queue(
            QueueName=name,
            Attributes={
                "MessageRetentionPeriod": str(config.get("messageRetentionSeconds") or 345600),
                "SqsManagedSseEnabled": "true",
            },
        ),
    )
    queue_url = str(created.get("QueueUrl") or "")
    steps.run(
        "apply tags",
        lambda: sqs.tag_queue(QueueUrl=queue_url, Tags=resource_tags(dict(config))),
    )
    attrs = steps.run(
        "read queue attributes",
        lambda: sqs.get_queue_attributes(QueueUrl=queue_url, AttributeNames=["QueueArn"]),
    )
    queue_arn = str((attrs.get("Attributes") or {}).get("QueueArn") or "")
    return ApplyResult(
        resource_id=name,
        message=(
            "Successfully created SQS queue!\n\n"
            f"Queue Name: {name}\n"
            f"Queue URL: {queue_url}\n\n"
            "Features enabled:\n"
            "- SQS-managed server-side encryption\n"
            "- Management tags"
        ),
        outputs={
            "queue_name": name,
            "queue_url": queue_url,
            "queue_arn": queue_arn,
            "queue_region": region,
            "created_at": str(config.get("createdAt") or ""),
        },
    )


def _drive_dynamodb_table(
    client_for: Callable[[str], Any], config: Mapping[str, Any], deadline: Deadline
) -> ApplyResult:
    name = str(config["tableName"])
    region = str(config.get("region") or DEFAULT_REGION)
    hash_key = str(config.get("hashKey") or "id")
    ddb = client_for("dynamodb")
    steps = _StepRunner(
        resource_type="dynamodb-table", resource_name=name, explain=_explain_dynamodb, deadline=deadline
    )

    created = steps.run(
        "create table",
        lambda: ddb.create_table(
            TableName=name,
            BillingMode="PAY_PER_REQUEST",
            AttributeDefinitions=[{"AttributeName": hash_key, "AttributeType": "S"}],
            KeySchema=[{"AttributeName": hash_key, "KeyType": "HASH"}],
        ),
    )
    table_arn = str((created.get("TableDescription") or {}).get("TableArn") or "")
    steps.run(
        "wait for table",
        lambda: ddb.get_waiter("table_exists").wait(TableName=name, WaiterConfig=_waiter_config(deadline)),
    )
    steps.run(
        "apply tags",
        lambda: ddb.tag_resource(ResourceArn=table_arn, Tags=_tag_list(config)),
    )
    return ApplyResult(
        resource_id=name,
        message=(
            "Successfully created DynamoDB table!\n\n"
            f"Table Name: {name}\n"
            f"Partition key: {hash_key} (string)\n\n"
            "Features enabled:\n"
            "- On-demand capacity\n"
            "- Management tags"
        ),
        outputs={
            "table_name": name,
            "table_arn": table_arn,
            "table_region": region,
            "created_at": str(config.get("createdAt") or ""),
        },
    )


DRIVERS: dict[str, Callable[[Callable[[str], Any], Mapping[str, Any], Deadline], ApplyResult]] = {
    "s3-bucket": _drive_s3_bucket,
    "sqs-queue": _drive_sqs_queue,
    "dynamodb-table": _drive_dynamodb_table,
}

_RESOURCE_ID_OUTPUTS = ("bucket_name", "queue_name", "table_name")


def _text(raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return str(raw)


class ExecutionEngine:
    def __init__(
        self,
        workspace_root: str | Path,
        *,
        session_client: SessionClient,
        mode: str = "driver",
        terraform_bin: str = "terraform",
        timeout_seconds: int = TERRAFORM_TIMEOUT_SECONDS,
        budget_seconds: float = EXECUTION_BUDGET_SECONDS,
        region: str = DEFAULT_REGION,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if mode not in EXECUTION_MODES:
            raise ValueError(f"unknown execution mode: {mode!r}")
        self.workspace_root = Path(workspace_root)
        self._session_client = session_client
        self.mode = mode
        self.terraform_bin = terraform_bin
        self.timeout_seconds = timeout_seconds
        self.budget_seconds = budget_seconds
        self.region = region
        self._clock = clock

    def create_workspace(self, action: PendingAction) -> Workspace:
        self.workspace_root.mkdir(parents=True, exist_ok=True)
        workspace_id = f"{action.action_id}-{secrets.token_hex(4)}"
        directory = self.workspace_root / workspace_id
        directory.mkdir(mode=0o700)
        return Workspace(id=workspace_id, directory=directory)

    def apply(
        self,
        action: PendingAction,
        credentials: TemporaryCredentials,
        *,
        time_remaining: float | None = None,
    ) -> ApplyResult:
        """Execute a consumed action within one overall deadline.

        ``time_remaining`` is the caller's own budget (for example what is left of a
        Lambda invocation); the tighter of it and ``budget_seconds`` bounds every step.
        """
        if action.resource_type not in DRIVERS:
            raise ProvisioningError(
                f"Unsupported resource type: {action.resource_type}",
                remediation="Request a new plan naming a supported resource (s3 bucket, sqs queue, dynamodb table).",
            )
        budget = self.budget_seconds if time_remaining is None else min(self.budget_seconds, time_remaining)
        deadline = Deadline(budget, clock=self._clock)
        region = str(action.resource_config.get("region") or self.region)
        workspace = self.create_workspace(action)
        try:
            workspace.write_file("main.tf", action.rendered_artifact)
            workspace.write_file("provider.tf", render_provider(region))
            workspace.transition("initialized", actionId=action.action_id, resourceType=action.resource_type)
            workspace.transition("executing", mode=self.mode, budgetSeconds=budget)
            if self.mode == "terraform":
                result = self._apply_terraform(workspace, credentials, region, deadline)
            else:
                result = self._apply_driver(action, credentials, region, deadline)
        except ProvisioningError as e:
            workspace.transition("failed", error=e.message, completedSteps=e.completed_steps)
            raise
        except Exception as e:
            workspace.transition("failed", error=f"{type(e).__name__}: {e}")
            raise
        workspace.transition("completed", resourceId=result.resource_id)
        return ApplyResult(
            resource_id=result.resource_id,
            message=result.message,
            outputs=result.outputs,
            workspace_id=workspace.id,
        )

    def _apply_driver(
        self,
        action: PendingAction,
        credentials: TemporaryCredentials,
        region: str,
        deadline: Deadline,
    ) -> ApplyResult:
        driver = DRIVERS[action.resource_type]

        def client_for(service: str) -> Any:
            return self._session_client(credentials, service, region=region)

        return driver(client_for, action.resource_config, deadline)

    def _terraform_env(self, credentials: TemporaryCredentials, region: str) -> dict[str, str]:
        # Drop inherited AWS_* so the tool cannot fall back to the broker's own identity.
        env = {k: v for k, v in os.environ.items() if not k.startswith("AWS_")}
        env.update(credentials.environment())
        env["AWS_REGION"] = region
        env["TF_IN_AUTOMATION"] = "1"
        env["TF_INPUT"] = "0"
        return env

    def _terraform(self, workspace: Workspace, args: list[str], env: dict[str, str], deadline: Deadline) -> str:
        label = f"terraform {args[0]}"
        timeout = min(float(self.timeout_seconds), deadline.remaining())
        if timeout <= 0:
            raise ProvisioningError(
                f"{label} not started: execution deadline reached. {PARTIAL_APPLY_NOTE}",
                remediation="Inspect the account for partially created resources before retrying.",
            )
        try:
            proc = subprocess.run(
                [self.terraform_bin, *args],
                cwd=str(workspace.directory),
                env=env,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            partial = _text(e.stdout) + _text(e.stderr)
            raise ProvisioningError(
                f"{label} timed out after {timeout:g}s. {PARTIAL_APPLY_NOTE}",
                remediation="Inspect the account for partially created resources before retrying.",
                output=partial,
            ) from e
        except FileNotFoundError as e:
            raise ProvisioningError(
                f"{label} failed: executable {self.terraform_bin!r} not found",
                remediation="Install terraform or set TERRAFORM_BIN.",
            ) from e
        if proc.returncode != 0:
            raise ProvisioningError(
                f"{label} failed with exit code {proc.returncode}: {(proc.stderr or '').strip()[-1000:]}",
                output=(proc.stdout or "") + (proc.stderr or ""),
            )
        return proc.stdout or ""

    def _apply_terraform(
        self,
        workspace: Workspace,
        credentials: TemporaryCredentials,
        region: str,
        deadline: Deadline,
    ) -> ApplyResult:
        env = self._terraform_env(credentials, region)
        self._terraform(workspace, ["init", "-input=false", "-no-color"], env, deadline)
        self._terraform(workspace, ["apply", "-auto-approve", "-input=false", "-no-color"], env, deadline)
        raw = self._terraform(workspace, ["output", "-json"], env, deadline)
        try:
            parsed = json.loads(raw or "{}")
        except json.JSONDecodeError as e:
            raise ProvisioningError(
                f"terraform output returned invalid JSON: {e}",
                output=raw,
            ) from e
        outputs = {k: (v.get("value") if isinstance(v, dict) else v) for k, v in parsed.items()}
        resource_id = next((str(outputs[k]) for k in _RESOURCE_ID_OUTPUTS if outputs.get(k)), workspace.id)
        return ApplyResult(
            resource_id=resource_id,
            message=f"Successfully applied plan with terraform.\n\nResource: {resource_id}",
            outputs=outputs,
        )
