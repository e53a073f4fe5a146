from __future__ import annotations

import json
import os
import shutil
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from action_ledger import ActionLedger

WORKSPACE_MAX_AGE_MINUTES = 60
JANITOR_INTERVAL_SECONDS = 3600


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _log(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, separators=(",", ":"), sort_keys=True))


class WorkspaceJanitor:
    """Reclaims stale ledger entries and workspace directories.

    Best effort: a directory that cannot be removed is logged and left for the next run.
    Runs never overlap; a run requested while one is in progress is skipped.
    """

    def __init__(
        self,
        workspace_root: str | Path,
        *,
        ledger: ActionLedger | None = None,
        max_age_minutes: float = WORKSPACE_MAX_AGE_MINUTES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.workspace_root = Path(workspace_root)
        self.ledger = ledger
        self.max_age_minutes = max_age_minutes
        self._clock = clock
        self._running = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def sweep(self, max_age_minutes: float | None = None) -> list[str]:
        max_age_seconds = float(self.max_age_minutes if max_age_minutes is None else max_age_minutes) * 60
        if not self.workspace_root.is_dir():
            return []
        now = self._clock()
        removed: list[str] = []
        for entry in sorted(os.scandir(self.workspace_root), key=lambda e: e.name):
            try:
                if not entry.is_dir(follow_symlinks=False):
                    continue
                age_seconds = now - entry.stat(follow_symlinks=False).st_mtime
                if age_seconds <= max_age_seconds:
                    continue
                shutil.rmtree(entry.path)
            except OSError as e:
                _log(
                    {
                        "event": "change_broker_janitor_remove",
                        "ts": _now_iso(),
                        "workspace": entry.name,
                        "outcome": "error",
                        "error": {"type": type(e).__name__, "message": str(e)},
                    }
                )
                continue
            removed.append(entry.name)
            _log(
                {
                    "event": "change_broker_janitor_remove",
                    "ts": _now_iso(),
                    "workspace": entry.name,
                    "age_minutes": int(age_seconds // 60),
                    "outcome": "success",
                }
            )
        return removed

    def run_once(self) -> dict[str, Any]:
        if not self._running.acquire(blocking=False):
            return {"skipped": True, "actionsRemoved": 0, "workspacesRemoved": []}
        try:
            actions_removed = self.ledger.sweep() if self.ledger is not None else 0
            workspaces_removed = self.sweep()
        finally:
            self._running.release()
        return {
            "skipped": False,
            "actionsRemoved": actions_removed,
            "workspacesRemoved": workspaces_removed,
        }

    def _loop(self, interval_seconds: float) -> None:
        while not self._stop.wait(interval_seconds):
            try:
                self.run_once()
            except Exception as e:
                # A failed run must not end the timer thread.
                _log(
                    {
                        "event": "change_broker_janitor_run",
                        "ts": _now_iso(),
                        "outcome": "error",
                        "error": {"type": type(e).__name__, "message": str(e)},
                    }
                )

    def start(self, interval_seconds: float = JANITOR_INTERVAL_SECONDS) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop,
            args=(interval_seconds,),
            name="workspace-janitor",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
