from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, Mapping

from broker_errors import NotFoundError
from id58 import uuid7_base58_22

if TYPE_CHECKING:
    from plan_generator import Plan

ACTION_TTL_SECONDS = 600
ACTION_ID_PREFIX = "act_"


@dataclass(frozen=True)
class PendingAction:
    action_id: str
    request: str
    resource_type: str
    resource_config: Mapping[str, Any]
    rendered_artifact: str
    created_at: float

    def created_at_iso(self) -> str:
        return datetime.fromtimestamp(self.created_at, tz=timezone.utc).isoformat()


class ActionLedger:
    """Process-lifetime store of staged actions.

    Entries are immutable and leave the ledger exactly once: through ``consume`` or
    through ``sweep`` once older than the TTL. Holds no credential material.
    """

    def __init__(
        self,
        *,
        ttl_seconds: int = ACTION_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, PendingAction] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _new_action_id(self, now: float) -> str:
        return f"{ACTION_ID_PREFIX}{uuid7_base58_22(int(now * 1000))}"

    def stage(self, request: str, plan: "Plan") -> str:
        now = self._clock()
        action = PendingAction(
            action_id=self._new_action_id(now),
            request=request,
            resource_type=plan.resource_type,
            resource_config=MappingProxyType(dict(plan.resource_config)),
            rendered_artifact=plan.rendered_artifact,
            created_at=now,
        )
        with self._lock:
            self._entries[action.action_id] = action
        self.sweep()
        return action.action_id

    def _expired(self, action: PendingAction, now: float, max_age_seconds: float) -> bool:
        return now - action.created_at > max_age_seconds

    def consume(self, action_id: str) -> PendingAction:
        # Check-and-remove in one critical section; a separate get then delete
        # would let two concurrent applies both observe the entry.
        with self._lock:
            action = self._entries.pop(str(action_id or ""), None)
        if action is None or self._expired(action, self._clock(), self.ttl_seconds):
            raise NotFoundError()
        return action

    def sweep(self, max_age_seconds: float | None = None) -> int:
        max_age = self.ttl_seconds if max_age_seconds is None else max_age_seconds
        now = self._clock()
        with self._lock:
            stale = [
                action_id
                for action_id, action in self._entries.items()
                if self._expired(action, now, max_age)
            ]
            for action_id in stale:
                del self._entries[action_id]
        return len(stale)

    def expires_at(self, action_id: str) -> str:
        with self._lock:
            action = self._entries.get(action_id)
        if action is None:
            return ""
        return datetime.fromtimestamp(action.created_at + self.ttl_seconds, tz=timezone.utc).isoformat()
