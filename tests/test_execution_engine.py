import json
import subprocess
from datetime import datetime, timezone

import pytest

from action_ledger import PendingAction
from broker_errors import ProvisioningError
from credential_broker import TemporaryCredentials
import execution_engine
from execution_engine import ExecutionEngine
from fakes import SECRET, FakeS3, client_error
import plan_generator

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
CREDS = TemporaryCredentials(
    access_key_id="ASIATEMP",
    secret_access_key=SECRET,
    session_token="session-token",
)


def _action(message: str = "create an s3 bucket", region: str = "us-east-1") -> PendingAction:
    plan = plan_generator.generate(message, region=region, now=NOW)
    return PendingAction(
        action_id="act_test",
        request=message,
        resource_type=plan.resource_type,
        resource_config=dict(plan.resource_config),
        rendered_artifact=plan.rendered_artifact,
        created_at=NOW.timestamp(),
    )


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class SessionClients:
    def __init__(self, **services):
        self.services = services
        self.calls: list[tuple[TemporaryCredentials, str, str]] = []

    def __call__(self, credentials, service, *, region=None):
        self.calls.append((credentials, service, region))
        return self.services[service]


def _workspace_text(tmp_path) -> str:
    return "\n".join(p.read_text(encoding="utf-8") for p in tmp_path.rglob("*") if p.is_file())


def _status(engine: ExecutionEngine) -> dict:
    (status_file,) = engine.workspace_root.glob("*/workspace.json")
    return json.loads(status_file.read_text(encoding="utf-8"))


def test_s3_driver_runs_steps_in_order(tmp_path):
    s3 = FakeS3()
    clients = SessionClients(s3=s3)
    engine = ExecutionEngine(tmp_path, session_client=clients)
    action = _action()
    bucket = action.resource_config["bucketName"]

    result = engine.apply(action, CREDS)

    assert [name for name, _ in s3.calls] == [
        "create_bucket",
        "put_bucket_versioning",
        "put_bucket_encryption",
        "put_bucket_tagging",
    ]
    assert "CreateBucketConfiguration" not in s3.calls[0][1]
    tags = {t["Key"]: t["Value"] for t in s3.calls[3][1]["Tagging"]["TagSet"]}
    assert tags["ManagedBy"] == "ChangeBroker"
    assert tags["CreatedAt"] == NOW.isoformat()
    assert result.resource_id == bucket
    assert result.outputs["bucket_name"] == bucket
    assert result.outputs["bucket_arn"] == f"arn:aws:s3:::{bucket}"
    assert result.workspace_id.startswith("act_test-")
    assert clients.calls == [(CREDS, "s3", "us-east-1")]

    status = _status(engine)
    assert status["state"] == "completed"
    assert sorted(status["renderedFiles"]) == ["main.tf", "provider.tf"]
    assert SECRET not in _workspace_text(tmp_path)


def test_s3_driver_outside_us_east_1_sets_location(tmp_path):
    s3 = FakeS3()
    engine = ExecutionEngine(tmp_path, session_client=SessionClients(s3=s3))

    engine.apply(_action(region="eu-west-1"), CREDS)

    assert s3.calls[0][1]["CreateBucketConfiguration"] == {"LocationConstraint": "eu-west-1"}


def test_failed_step_stops_and_names_completed_steps(tmp_path):
    s3 = FakeS3(fail_on="put_bucket_encryption")
    engine = ExecutionEngine(tmp_path, session_client=SessionClients(s3=s3))

    with pytest.raises(ProvisioningError) as exc:
        engine.apply(_action(), CREDS)

    assert "put_bucket_tagging" not in [name for name, _ in s3.calls]
    assert exc.value.completed_steps == ["create bucket", "enable versioning"]
    assert "Completed steps: create bucket, enable versioning" in exc.value.message
    assert "not rolled back" in exc.value.message
    assert exc.value.to_body()["completedSteps"] == ["create bucket", "enable versioning"]
    status = _status(engine)
    assert status["state"] == "failed"
    assert status["completedSteps"] == ["create bucket", "enable versioning"]


def test_bucket_name_collision_explains_global_uniqueness(tmp_path):
    s3 = FakeS3(fail_on="create_bucket", error=client_error("BucketAlreadyExists", "taken", "CreateBucket"))
    engine = ExecutionEngine(tmp_path, session_client=SessionClients(s3=s3))

    with pytest.raises(ProvisioningError) as exc:
        engine.apply(_action(), CREDS)

    assert "unique across all AWS accounts" in exc.value.remediation
    assert exc.value.completed_steps == []
    assert len(s3.calls) == 1


def test_unsupported_resource_type_fails_before_workspace(tmp_path):
    engine = ExecutionEngine(tmp_path / "ws", session_client=SessionClients())
    action = PendingAction(
        action_id="act_x",
        request="create a vpc",
        resource_type="vpc",
        resource_config={},
        rendered_artifact="",
        created_at=NOW.timestamp(),
    )

    with pytest.raises(ProvisioningError, match="Unsupported resource type: vpc"):
        engine.apply(action, CREDS)
    assert not (tmp_path / "ws").exists()


def test_sqs_driver(tmp_path):
    calls = []

    class FakeSqs:
        def create_queue(self, **kwargs):
            calls.append(("create_queue", kwargs))
            return {"QueueUrl": "https://sqs.us-east-1.amazonaws.com/123456789012/q"}

        def tag_queue(self, **kwargs):
            calls.append(("tag_queue", kwargs))
            return {}

        def get_queue_attributes(self, **kwargs):
            calls.append(("get_queue_attributes", kwargs))
            return {"Attributes": {"QueueArn": "arn:aws:sqs:us-east-1:123456789012:q"}}

    engine = ExecutionEngine(tmp_path, session_client=SessionClients(sqs=FakeSqs()))
    action = _action("create an sqs queue")

    result = engine.apply(action, CREDS)

    assert [name for name, _ in calls] == ["create_queue", "tag_queue", "get_queue_attributes"]
    assert calls[0][1]["Attributes"]["MessageRetentionPeriod"] == "345600"
    assert calls[1][1]["Tags"]["ManagedBy"] == "ChangeBroker"
    assert result.resource_id == action.resource_config["queueName"]
    assert result.outputs["queue_arn"] == "arn:aws:sqs:us-east-1:123456789012:q"


def test_dynamodb_driver_waits_before_tagging(tmp_path):
    calls = []

    class FakeWaiter:
        def wait(self, **kwargs):
            calls.append(("wait", kwargs))

    class FakeDynamo:
        def create_table(self, **kwargs):
            calls.append(("create_table", kwargs))
            return {"TableDescription": {"TableArn": "arn:aws:dynamodb:us-east-1:123456789012:table/t"}}

        def get_waiter(self, name):
            assert name == "table_exists"
            return FakeWaiter()

        def tag_resource(self, **kwargs):
            calls.append(("tag_resource", kwargs))
            return {}

    engine = ExecutionEngine(
        tmp_path,
        session_client=SessionClients(dynamodb=FakeDynamo()),
        budget_seconds=100,
        clock=FakeClock(),
    )
    action = _action("create a dynamodb table")

    result = engine.apply(action, CREDS)

    assert [name for name, _ in calls] == ["create_table", "wait", "tag_resource"]
    assert calls[1][1]["WaiterConfig"] == {"Delay": 5, "MaxAttempts": 20}
    assert calls[0][1]["KeySchema"] == [{"AttributeName": "id", "KeyType": "HASH"}]
    assert calls[2][1]["ResourceArn"] == "arn:aws:dynamodb:us-east-1:123456789012:table/t"
    assert result.outputs["table_name"] == action.resource_config["tableName"]


def test_terraform_mode_passes_credentials_through_environment_only(tmp_path, monkeypatch):
    monkeypatch.setenv("AWS_PROFILE", "broker-admin")
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "AKIABROKER")
    runs = []
    action = _action()
    bucket = action.resource_config["bucketName"]

    def fake_run(cmd, **kwargs):
        runs.append((cmd, kwargs))
        stdout = ""
        if cmd[1] == "output":
            stdout = json.dumps({"bucket_name": {"value": bucket}, "bucket_arn": {"value": f"arn:aws:s3:::{bucket}"}})
        return subprocess.CompletedProcess(cmd, 0, stdout=stdout, stderr="")

    monkeypatch.setattr(execution_engine.subprocess, "run", fake_run)
    engine = ExecutionEngine(tmp_path, session_client=SessionClients(), mode="terraform", timeout_seconds=300)

    result = engine.apply(action, CREDS)

    assert [cmd[1] for cmd, _ in runs] == ["init", "apply", "output"]
    for cmd, kwargs in runs:
        assert cmd[0] == "terraform"
        assert kwargs["timeout"] == 300
        env = kwargs["env"]
        assert env["AWS_ACCESS_KEY_ID"] == "ASIATEMP"
        assert env["AWS_SECRET_ACCESS_KEY"] == SECRET
        assert env["AWS_SESSION_TOKEN"] == "session-token"
        assert env["AWS_REGION"] == "us-east-1"
        assert "AWS_PROFILE" not in env
    assert result.resource_id == bucket
    assert result.outputs == {"bucket_name": bucket, "bucket_arn": f"arn:aws:s3:::{bucket}"}
    assert SECRET not in _workspace_text(tmp_path)
    assert 'region = "us-east-1"' in _workspace_text(tmp_path)


def test_terraform_timeout_reports_partial_output(tmp_path, monkeypatch):
    def fake_run(cmd, **kwargs):
        if cmd[1] == "apply":
            raise subprocess.TimeoutExpired(cmd, kwargs["timeout"], output=b"aws_s3_bucket.main: Creating...")
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    monkeypatch.setattr(execution_engine.subprocess, "run", fake_run)
    engine = ExecutionEngine(tmp_path, session_client=SessionClients(), mode="terraform", timeout_seconds=5)

    with pytest.raises(ProvisioningError) as exc:
        engine.apply(_action(), CREDS)

    assert "timed out after 5s" in exc.value.message
    assert "aws_s3_bucket.main: Creating..." in exc.value.output
    assert _status(engine)["state"] == "failed"


def test_terraform_nonzero_exit_is_provisioning_error(tmp_path, monkeypatch):
    def fake_run(cmd, **kwargs):
        return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="Error: invalid provider")

    monkeypatch.setattr(execution_engine.subprocess, "run", fake_run)
    engine = ExecutionEngine(tmp_path, session_client=SessionClients(), mode="terraform")

    with pytest.raises(ProvisioningError, match="terraform init failed with exit code 1"):
        engine.apply(_action(), CREDS)


def test_unknown_mode_is_rejected(tmp_path):
    with pytest.raises(ValueError):
        ExecutionEngine(tmp_path, session_client=SessionClients(), mode="cloudformation")


def test_terraform_steps_share_one_deadline(tmp_path, monkeypatch):
    clock = FakeClock()
    timeouts = []

    def fake_run(cmd, **kwargs):
        timeouts.append(kwargs["timeout"])
        if kwargs["timeout"] < 200:
            clock.now += kwargs["timeout"]
            raise subprocess.TimeoutExpired(cmd, kwargs["timeout"], output="aws_s3_bucket.main: Still creating...")
        clock.now += 200
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    monkeypatch.setattr(execution_engine.subprocess, "run", fake_run)
    engine = ExecutionEngine(
        tmp_path,
        session_client=SessionClients(),
        mode="terraform",
        timeout_seconds=300,
        budget_seconds=360,
        clock=clock,
    )

    with pytest.raises(ProvisioningError) as exc:
        engine.apply(_action(), CREDS)

    # init used 200s of the 360s budget, so apply only gets what is left.
    assert timeouts == [300, 160]
    assert "terraform apply timed out after 160s" in exc.value.message
    assert "Still creating" in exc.value.output
    assert _status(engine)["state"] == "failed"


def test_caller_time_remaining_caps_budget(tmp_path, monkeypatch):
    timeouts = []

    def fake_run(cmd, **kwargs):
        timeouts.append(kwargs["timeout"])
        return subprocess.CompletedProcess(cmd, 0, stdout="{}", stderr="")

    monkeypatch.setattr(execution_engine.subprocess, "run", fake_run)
    engine = ExecutionEngine(
        tmp_path,
        session_client=SessionClients(),
        mode="terraform",
        budget_seconds=780,
        clock=FakeClock(),
    )

    engine.apply(_action(), CREDS, time_remaining=50)

    assert timeouts == [50, 50, 50]


def test_exhausted_budget_is_not_started(tmp_path, monkeypatch):
    def fake_run(cmd, **kwargs):
        raise AssertionError("terraform must not start without budget")

    monkeypatch.setattr(execution_engine.subprocess, "run", fake_run)
    engine = ExecutionEngine(tmp_path, session_client=SessionClients(), mode="terraform", clock=FakeClock())

    with pytest.raises(ProvisioningError, match="terraform init not started: execution deadline reached"):
        engine.apply(_action(), CREDS, time_remaining=0)
    assert _status(engine)["state"] == "failed"


def test_driver_stops_when_deadline_passes(tmp_path):
    clock = FakeClock()

    class SlowS3(FakeS3):
        def _record(self, name, kwargs):
            clock.now += 10
            return super()._record(name, kwargs)

    s3 = SlowS3()
    engine = ExecutionEngine(tmp_path, session_client=SessionClients(s3=s3), budget_seconds=20, clock=clock)

    with pytest.raises(ProvisioningError) as exc:
        engine.apply(_action(), CREDS)

    assert [name for name, _ in s3.calls] == ["create_bucket", "put_bucket_versioning"]
    assert exc.value.completed_steps == ["create bucket", "enable versioning"]
    assert "execution deadline reached" in exc.value.message
    status = _status(engine)
    assert status["state"] == "failed"
    assert status["completedSteps"] == ["create bucket", "enable versioning"]


def test_unexpected_error_marks_workspace_failed(tmp_path):
    class BrokenS3(FakeS3):
        def put_bucket_versioning(self, **kwargs):
            raise RuntimeError("connection pool exhausted")

    engine = ExecutionEngine(tmp_path, session_client=SessionClients(s3=BrokenS3()))

    with pytest.raises(RuntimeError):
        engine.apply(_action(), CREDS)

    status = _status(engine)
    assert status["state"] == "failed"
    assert status["error"] == "RuntimeError: connection pool exhausted"
