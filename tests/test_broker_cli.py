import json
import os
import stat

import pytest
from typer.testing import CliRunner

import broker_cli.main as cli_main
from broker_cli.auth_inputs import (
    MissingRoleReferenceError,
    PreflightValidationError,
    new_external_id,
    resolve_role_reference,
)

ROLE_ARN = "arn:aws:iam::123456789012:role/ChangeBrokerAccess"
EXTERNAL_ID = "ab" * 32
ENDPOINT = "https://api.example.com/prod/api"


class FakeHttp:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[tuple[str, dict]] = []

    def __call__(self, *, url, headers, body, timeout_seconds):
        self.requests.append((url, json.loads(body.decode("utf-8"))))
        status, obj = self.responses.pop(0)
        return status, {}, json.dumps(obj).encode("utf-8")


def _invoke(args, connection_file):
    runner = CliRunner()
    return runner.invoke(
        cli_main.app,
        ["--endpoint", ENDPOINT, "--connection-file", str(connection_file), "--plain-json", *args],
    )


def test_new_external_id_is_64_hex():
    value = new_external_id()
    assert len(value) == 64
    assert int(value, 16) >= 0
    assert value != new_external_id()


def test_resolve_role_reference_prefers_flags_over_saved():
    saved = {"roleArn": "arn:aws:iam::210987654321:role/Saved", "externalId": "cd" * 32}
    ref = resolve_role_reference(role_arn=ROLE_ARN, external_id=EXTERNAL_ID, saved=saved, required=True)
    assert ref.role_arn == ROLE_ARN
    assert ref.account_id == "123456789012"

    ref = resolve_role_reference(role_arn=None, external_id=None, saved=saved, required=True)
    assert ref.role_arn == saved["roleArn"]


def test_resolve_role_reference_errors():
    assert resolve_role_reference(role_arn=None, external_id=None, saved=None, required=False) is None
    with pytest.raises(MissingRoleReferenceError):
        resolve_role_reference(role_arn=None, external_id=None, saved=None, required=True)
    with pytest.raises(PreflightValidationError, match="64 lowercase hex"):
        resolve_role_reference(role_arn=ROLE_ARN, external_id="short", saved=None, required=True)


@pytest.mark.parametrize(
    "role_arn",
    [
        "arn:aws:iam::١٢٣٤٥٦٧٨٩٠١٢:role/X",
        "arn:aws:iam::123456789012:role/Rölé",
    ],
)
def test_preflight_rejects_non_ascii_role_arn(role_arn):
    with pytest.raises(PreflightValidationError, match="role ARN must look like"):
        resolve_role_reference(role_arn=role_arn, external_id=EXTERNAL_ID, saved=None, required=True)


def test_verify_role_save_writes_private_connection_file(monkeypatch, tmp_path):
    fake = FakeHttp((200, {"valid": True, "accountId": "123456789012"}))
    monkeypatch.setattr(cli_main, "_http_post_json", fake)
    conn = tmp_path / "conn" / "connection.json"

    result = _invoke(["verify-role", "--role-arn", ROLE_ARN, "--external-id", EXTERNAL_ID, "--save"], conn)

    assert result.exit_code == 0, result.output
    out = json.loads(result.stdout)
    assert out["valid"] is True
    assert out["accountId"] == "123456789012"
    assert fake.requests == [(f"{ENDPOINT}/auth/verify-role", {"roleArn": ROLE_ARN, "externalId": EXTERNAL_ID})]
    saved = json.loads(conn.read_text(encoding="utf-8"))
    assert saved["roleArn"] == ROLE_ARN
    assert saved["externalId"] == EXTERNAL_ID
    assert stat.S_IMODE(os.stat(conn).st_mode) == 0o600


def test_verify_role_rejects_bad_input_before_request(monkeypatch, tmp_path):
    fake = FakeHttp()
    monkeypatch.setattr(cli_main, "_http_post_json", fake)

    code = cli_main.main(
        [
            "--endpoint",
            ENDPOINT,
            "--connection-file",
            str(tmp_path / "c.json"),
            "verify-role",
            "--role-arn",
            "arn:aws:iam::123:role/x",
            "--external-id",
            EXTERNAL_ID,
        ]
    )

    assert code == 2
    assert fake.requests == []


def test_chat_uses_saved_connection(monkeypatch, tmp_path):
    conn = tmp_path / "connection.json"
    conn.write_text(json.dumps({"roleArn": ROLE_ARN, "externalId": EXTERNAL_ID}), encoding="utf-8")
    fake = FakeHttp((200, {"requiresConfirmation": True, "actionId": "act_1"}))
    monkeypatch.setattr(cli_main, "_http_post_json", fake)

    result = _invoke(["chat", "create an s3 bucket"], conn)

    assert result.exit_code == 0, result.output
    url, body = fake.requests[0]
    assert url == f"{ENDPOINT}/chat"
    assert body == {"message": "create an s3 bucket", "roleArn": ROLE_ARN, "externalId": EXTERNAL_ID}
    assert json.loads(result.stdout)["response"]["actionId"] == "act_1"


def test_apply_not_found_exits_1(monkeypatch, tmp_path, capsys):
    fake = FakeHttp((404, {"success": False, "error": "Action not found or expired"}))
    monkeypatch.setattr(cli_main, "_http_post_json", fake)

    code = cli_main.main(
        [
            "--endpoint",
            ENDPOINT,
            "--connection-file",
            str(tmp_path / "c.json"),
            "apply",
            "--action-id",
            "act_gone",
            "--role-arn",
            ROLE_ARN,
            "--external-id",
            EXTERNAL_ID,
        ]
    )

    assert code == 1
    assert fake.requests[0][1]["actionId"] == "act_gone"
    err = " ".join(capsys.readouterr().err.split())
    assert "run chat again" in err


def test_apply_without_role_reference_exits_2(monkeypatch, tmp_path):
    fake = FakeHttp()
    monkeypatch.setattr(cli_main, "_http_post_json", fake)

    code = cli_main.main(
        ["--endpoint", ENDPOINT, "--connection-file", str(tmp_path / "none.json"), "apply", "--action-id", "act_1"]
    )

    assert code == 2
    assert fake.requests == []


def test_missing_endpoint_is_usage_error(monkeypatch, tmp_path):
    monkeypatch.delenv("CHANGE_BROKER_ENDPOINT", raising=False)

    code = cli_main.main(["--connection-file", str(tmp_path / "c.json"), "chat", "What is S3?"])

    assert code == 2


def test_connection_forget_removes_file(tmp_path):
    conn = tmp_path / "connection.json"
    conn.write_text(json.dumps({"roleArn": ROLE_ARN, "externalId": EXTERNAL_ID}), encoding="utf-8")

    result = _invoke(["connection", "forget"], conn)

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)["removed"] is True
    assert not conn.exists()
