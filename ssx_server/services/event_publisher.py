from __future__ import annotations

import inspect
import logging
import uuid
from collections import defaultdict
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field

from ..telemetry.metrics import audit_events_total

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    LOGIN = "ssx-login"
    LOGOUT = "ssx-logout"


class AuditEvent(BaseModel):
    """
    Audit record of a sign-in attempt.

    Wire form (POST {metrics_url}/events):

    {
        "eventId": "<uuid>",
        "ts": "ISO8601 UTC",
        "userId": "did:pkh:eip155:<chainId>:<address>",
        "type": "ssx-login" | "ssx-logout",
        "content": {"signature": ..., "rawMessage": ..., "isContractFallback": bool}
    }
    """

    user_id: str
    type: EventType
    content: dict[str, Any] = Field(default_factory=dict)
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    ts: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def to_wire(self) -> dict[str, Any]:
        return {
            "eventId": self.event_id,
            "ts": self.ts.isoformat(),
            "userId": self.user_id,
            "type": self.type.value,
            "content": self.content,
        }


class EventSink(Protocol):
    name: str

    async def record(self, event: AuditEvent) -> None: ...


class HttpEventSink:
    """Posts audit events to the SSX events API with a bearer API key."""

    name = "http"

    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
        )

    @property
    def enabled(self) -> bool:
        # events API is only reachable with a key
        return bool(self.api_key)

    async def close(self) -> None:
        await self._client.aclose()

    async def record(self, event: AuditEvent) -> None:
        if not self.enabled:
            return
        resp = await self._client.post("/events", json=event.to_wire())
        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise RuntimeError(f"POST /events failed: {exc}") from exc


Listener = Callable[[AuditEvent], Awaitable[None] | None]


class ListenerSink:
    """In-process subscribers keyed by event type."""

    name = "listeners"

    def __init__(self) -> None:
        self._listeners: dict[EventType, list[Listener]] = defaultdict(list)

    def on(self, event_type: EventType, listener: Listener) -> None:
        self._listeners[event_type].append(listener)

    def off(self, event_type: EventType, listener: Listener) -> None:
        try:
            self._listeners[event_type].remove(listener)
        except ValueError:
            pass

    async def record(self, event: AuditEvent) -> None:
        for listener in list(self._listeners.get(event.type, ())):
            try:
                res = listener(event)
                if inspect.isawaitable(res):
                    await res
            except Exception as e:
                logger.warning("listener for %s failed: %s", event.type.value, e)


async def deliver(sink: EventSink, event: AuditEvent) -> bool:
    """Hand one event to one sink; failures are logged and reported as False.

    A sink that is switched off (`enabled` false) is counted as skipped.
    """
    if not getattr(sink, "enabled", True):
        audit_events_total.labels(sink=sink.name, result="skipped").inc()
        return False
    try:
        await sink.record(event)
    except Exception as e:
        logger.warning("EventSink %s: failed to record event %s: %s", sink.name, event.event_id, e)
        audit_events_total.labels(sink=sink.name, result="error").inc()
        return False
    audit_events_total.labels(sink=sink.name, result="ok").inc()
    return True
