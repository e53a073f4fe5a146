from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from rich.console import Console


class BrokerCliError(Exception):
    pass


class UsageError(BrokerCliError):
    pass


class OpError(BrokerCliError):
    pass


CHANGE_BROKER_ENDPOINT = "CHANGE_BROKER_ENDPOINT"
CHANGE_BROKER_CONNECTION_FILE = "CHANGE_BROKER_CONNECTION_FILE"
CONNECTION_KIND = "change-broker.connection.v1"

_ERROR_CONSOLE = Console(stderr=True)


def _rich_error(msg: str) -> None:
    _ERROR_CONSOLE.print(f"[bold red]error:[/bold red] {msg}")


@dataclass(frozen=True)
class GlobalOpts:
    endpoint: str
    pretty: bool
    connection_file: Path


def _env_or_none(*names: str) -> str | None:
    for n in names:
        v = (os.environ.get(n) or "").strip()
        if v:
            return v
    return None


def _default_connection_file() -> Path:
    raw = _env_or_none(CHANGE_BROKER_CONNECTION_FILE)
    if raw:
        return Path(raw).expanduser()
    return Path.home() / ".change-broker" / "connection.json"


def _require_endpoint(g: GlobalOpts) -> str:
    endpoint = (g.endpoint or "").strip().rstrip("/")
    if not endpoint:
        raise UsageError(f"missing endpoint (pass --endpoint or set {CHANGE_BROKER_ENDPOINT})")
    return endpoint


def _print_json(obj: Any, *, pretty: bool) -> None:
    if pretty:
        sys.stdout.write(json.dumps(obj, indent=2, sort_keys=True) + "\n")
    else:
        sys.stdout.write(json.dumps(obj, separators=(",", ":"), sort_keys=True) + "\n")


def _load_json_object(*, raw: str, label: str) -> dict[str, Any]:
    try:
        val = json.loads(raw)
    except Exception as e:
        raise UsageError(f"invalid {label}: {e}") from e
    if not isinstance(val, dict):
        raise UsageError(f"invalid {label}: expected JSON object")
    return val


def _write_secure_json(*, path: Path, obj: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(obj, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    try:
        os.chmod(path, 0o600)
    except Exception as e:
        raise OpError(f"failed to apply 0600 permissions to {path}: {e}") from e


def _http_request(
    *,
    method: str,
    url: str,
    headers: dict[str, str],
    body: bytes | None = None,
    timeout_seconds: int = 30,
) -> tuple[int, dict[str, str], bytes]:
    req = Request(url, data=body, method=str(method).upper())
    for k, v in headers.items():
        req.add_header(k, v)
    try:
        with urlopen(req, timeout=timeout_seconds) as resp:
            status = getattr(resp, "status", 200)
            hdrs = {k.lower(): v for k, v in dict(resp.headers).items()}
            data = resp.read()
            return int(status), hdrs, data
    except HTTPError as e:
        hdrs = {k.lower(): v for k, v in dict(e.headers).items()}
        data = e.read() if hasattr(e, "read") else b""
        return int(getattr(e, "code", 0) or 0), hdrs, data
    except URLError as e:
        raise OpError(f"http request failed: {e}") from e


def _http_post_json(
    *,
    url: str,
    headers: dict[str, str],
    body: bytes = b"",
    timeout_seconds: int = 30,
) -> tuple[int, dict[str, str], bytes]:
    return _http_request(
        method="POST",
        url=url,
        headers=headers,
        body=body,
        timeout_seconds=timeout_seconds,
    )
