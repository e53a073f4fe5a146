from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import click
import typer

from . import __version__
from .auth_inputs import (
    AuthInputError,
    RoleReference,
    new_external_id,
    preflight_role_reference,
    resolve_role_reference,
)
from .cli_shared import (
    CHANGE_BROKER_ENDPOINT,
    CONNECTION_KIND,
    GlobalOpts,
    OpError,
    UsageError,
    _default_connection_file,
    _env_or_none,
    _http_post_json,
    _load_json_object,
    _print_json,
    _require_endpoint,
    _rich_error,
    _write_secure_json,
)

app = typer.Typer(
    name="change-broker",
    help="Verify cross-account roles, stage infrastructure changes, and apply them.",
    no_args_is_help=True,
    add_completion=False,
)

connection_app = typer.Typer(
    help="Locally saved role reference (the server keeps no copy).",
    no_args_is_help=True,
)
app.add_typer(connection_app, name="connection")


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"change-broker {__version__}")
        raise typer.Exit(code=0)


@app.callback()
def app_callback(
    ctx: typer.Context,
    endpoint: str | None = typer.Option(
        None,
        "--endpoint",
        help=f"API base URL ending in /api (env override: {CHANGE_BROKER_ENDPOINT})",
    ),
    connection_file: Path | None = typer.Option(
        None,
        "--connection-file",
        help="Path of the saved role reference JSON",
    ),
    plain_json: bool = typer.Option(False, "--plain-json", help="Emit compact JSON output"),
    version: bool = typer.Option(False, "--version", callback=_version_callback, is_eager=True),
) -> None:
    del version
    ctx.obj = {
        "g": GlobalOpts(
            endpoint=(endpoint or _env_or_none(CHANGE_BROKER_ENDPOINT) or "").strip(),
            pretty=not plain_json,
            connection_file=connection_file or _default_connection_file(),
        )
    }


def _ctx_global(ctx: typer.Context) -> GlobalOpts:
    if isinstance(ctx.obj, dict) and isinstance(ctx.obj.get("g"), GlobalOpts):
        return ctx.obj["g"]
    return GlobalOpts(
        endpoint=(_env_or_none(CHANGE_BROKER_ENDPOINT) or "").strip(),
        pretty=True,
        connection_file=_default_connection_file(),
    )


def _load_connection(g: GlobalOpts) -> dict[str, Any] | None:
    path = g.connection_file
    if not path.exists():
        return None
    return _load_json_object(raw=path.read_text(encoding="utf-8"), label=f"connection file {path}")


def _post(g: GlobalOpts, *, path: str, body_obj: dict[str, Any], label: str) -> tuple[int, dict[str, Any]]:
    url = f"{_require_endpoint(g)}/{path.lstrip('/')}"
    body = json.dumps(body_obj, separators=(",", ":")).encode("utf-8")
    status, _hdrs, raw = _http_post_json(
        url=url,
        headers={"content-type": "application/json"},
        body=body,
        timeout_seconds=360,
    )
    text = raw.decode("utf-8", errors="replace")
    try:
        parsed = json.loads(text) if text.strip() else {}
    except Exception as e:
        raise OpError(f"invalid JSON from {label}: {e}; status={status} body={text}") from e
    if not isinstance(parsed, dict):
        raise OpError(f"invalid JSON from {label}: expected object")
    return status, parsed


def _raise_for_status(status: int, parsed: dict[str, Any], *, label: str) -> None:
    if 200 <= status < 300:
        return
    detail = str(parsed.get("error") or "").strip()
    hint = str(parsed.get("remediation") or parsed.get("message") or "").strip()
    msg = f"{label} failed: status={status}"
    if detail:
        msg += f" error={detail}"
    if hint and hint != detail:
        msg += f"\n{hint}"
    raise OpError(msg)


@app.command("external-id", help="Generate a new 64-character external id for a trust policy.")
def external_id(ctx: typer.Context) -> None:
    g = _ctx_global(ctx)
    _print_json(
        {"kind": "change-broker.external-id.v1", "externalId": new_external_id()},
        pretty=g.pretty,
    )


@app.command("verify-role", help="Prove the cross-account trust relationship works.")
def verify_role(
    ctx: typer.Context,
    role_arn: str = typer.Option(..., "--role-arn", help="Role ARN in the target account"),
    external_id_value: str = typer.Option(..., "--external-id", help="External id from the trust policy"),
    save: bool = typer.Option(False, "--save", help="Save the verified role reference locally"),
) -> None:
    g = _ctx_global(ctx)
    ref = preflight_role_reference(role_arn=role_arn, external_id=external_id_value)
    status, parsed = _post(g, path="auth/verify-role", body_obj=ref.request_fields(), label="verify-role")
    _raise_for_status(status, parsed, label="verify-role")
    if not parsed.get("valid"):
        raise OpError(f"role verification failed: {parsed.get('error') or 'unknown error'}")

    payload: dict[str, Any] = {
        "kind": "change-broker.verify-role.v1",
        "valid": True,
        "accountId": parsed.get("accountId"),
    }
    if save:
        _write_secure_json(
            path=g.connection_file,
            obj={
                "kind": CONNECTION_KIND,
                "roleArn": ref.role_arn,
                "externalId": ref.external_id,
                "accountId": str(parsed.get("accountId") or ref.account_id),
                "verifiedAt": datetime.now(timezone.utc).isoformat(),
            },
        )
        payload["connectionFile"] = str(g.connection_file)
    _print_json(payload, pretty=g.pretty)


@connection_app.command("show", help="Print the saved role reference (external id masked).")
def connection_show(ctx: typer.Context) -> None:
    g = _ctx_global(ctx)
    saved = _load_connection(g)
    if saved is None:
        raise UsageError(f"no saved connection at {g.connection_file} (run verify-role --save)")
    ext = str(saved.get("externalId") or "")
    _print_json(
        {
            "kind": CONNECTION_KIND,
            "roleArn": saved.get("roleArn"),
            "accountId": saved.get("accountId"),
            "externalId": f"{ext[:6]}...{ext[-4:]}" if len(ext) > 10 else "",
            "verifiedAt": saved.get("verifiedAt"),
            "connectionFile": str(g.connection_file),
        },
        pretty=g.pretty,
    )


@connection_app.command("forget", help="Delete the saved role reference (revokes this client's access).")
def connection_forget(ctx: typer.Context) -> None:
    g = _ctx_global(ctx)
    removed = False
    if g.connection_file.exists():
        g.connection_file.unlink()
        removed = True
    _print_json(
        {
            "kind": "change-broker.connection.forget.v1",
            "connectionFile": str(g.connection_file),
            "removed": removed,
        },
        pretty=g.pretty,
    )


@app.command("chat", help="Ask a question or request an infrastructure change.")
def chat(
    ctx: typer.Context,
    message: str = typer.Argument(..., help="Natural-language message"),
    role_arn: str | None = typer.Option(None, "--role-arn", help="Role ARN (defaults to saved connection)"),
    external_id_value: str | None = typer.Option(None, "--external-id", help="External id (defaults to saved connection)"),
) -> None:
    g = _ctx_global(ctx)
    ref: RoleReference | None = resolve_role_reference(
        role_arn=role_arn,
        external_id=external_id_value,
        saved=_load_connection(g),
        required=False,
    )
    body_obj: dict[str, Any] = {"message": message}
    if ref is not None:
        body_obj.update(ref.request_fields())
    status, parsed = _post(g, path="chat", body_obj=body_obj, label="chat")
    _raise_for_status(status, parsed, label="chat")
    _print_json({"kind": "change-broker.chat.v1", "response": parsed}, pretty=g.pretty)


@app.command("apply", help="Confirm and execute a staged action.")
def apply(
    ctx: typer.Context,
    action_id: str = typer.Option(..., "--action-id", help="Action id returned by chat"),
    role_arn: str | None = typer.Option(None, "--role-arn", help="Role ARN (defaults to saved connection)"),
    external_id_value: str | None = typer.Option(None, "--external-id", help="External id (defaults to saved connection)"),
) -> None:
    g = _ctx_global(ctx)
    ref = resolve_role_reference(
        role_arn=role_arn,
        external_id=external_id_value,
        saved=_load_connection(g),
        required=True,
    )
    body_obj: dict[str, Any] = {"actionId": action_id.strip()}
    body_obj.update(ref.request_fields())
    status, parsed = _post(g, path="apply", body_obj=body_obj, label="apply")
    if status == 404:
        raise OpError(
            f"action {action_id!r} not found, already applied, or expired; run chat again to stage a new plan"
        )
    _raise_for_status(status, parsed, label="apply")
    _print_json({"kind": "change-broker.apply.v1", "result": parsed}, pretty=g.pretty)


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    try:
        result = app(args=argv, prog_name="change-broker", standalone_mode=False)
        if result is None:
            return 0
        return int(result)
    except typer.Exit as e:
        return int(e.exit_code)
    except click.ClickException as e:
        _rich_error(e.format_message())
        return int(e.exit_code)
    except (UsageError, AuthInputError) as e:
        _rich_error(str(e))
        return 2
    except OpError as e:
        _rich_error(str(e))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
