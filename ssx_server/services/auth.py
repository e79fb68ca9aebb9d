"""Sign-in orchestration: verification, ENS, audit event and session record."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import ValidationError
from web3 import AsyncWeb3

from ..blockchain.eip1271 import EIP1271Verifier, make_web3
from ..config import Settings
from ..schemas.auth import SessionRecord
from ..siwe.errors import ErrorKind, SiweError
from ..siwe.message import SiweMessage
from ..siwe.nonce import generate_nonce
from ..siwe.verifier import SignatureVerifier, await_cancellable
from ..telemetry.logging import hash_address
from ..telemetry.metrics import (
    pending_audit_events,
    ssx_contract_fallback_logins_total,
    ssx_login_attempts_total,
    ssx_login_duration_seconds,
)
from .ens import EnsData, EnsResolveOptions, EnsResolver, Web3NameService
from .event_publisher import (
    AuditEvent,
    EventSink,
    EventType,
    HttpEventSink,
    Listener,
    ListenerSink,
    deliver,
)

logger = logging.getLogger(__name__)

DestroySession = Callable[[], Awaitable[Any] | Any]


@dataclass(frozen=True)
class LoginResult:
    success: bool
    error: SiweError | None = None
    session: SessionRecord | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error.to_dict() if self.error else None,
            "session": self.session.to_dict() if self.session else None,
        }


class SSXServer:
    """
    Server side of SSX sign-in.

    Wiring (all optional, built from Settings when omitted):
      - verifier: SignatureVerifier, with an EIP-1271 fallback when an RPC URL is configured;
      - ens: EnsResolver over web3.py's AsyncENS;
      - sinks: where audit events go (HTTP events API when configured, plus in-process listeners).

    Session storage stays with the caller: login() only returns the record to persist.
    """

    generate_nonce = staticmethod(generate_nonce)

    def __init__(
        self,
        settings: Settings,
        *,
        provider: AsyncWeb3 | None = None,
        verifier: SignatureVerifier | None = None,
        ens: EnsResolver | None = None,
        http_sink: EventSink | None = None,
    ) -> None:
        self.settings = settings
        if provider is None and settings.rpc_url:
            provider = make_web3(settings.rpc_url)
        self.provider = provider

        self.verifier = verifier or SignatureVerifier(EIP1271Verifier(provider) if provider is not None else None)
        self.ens = ens or EnsResolver(Web3NameService(provider) if provider is not None else None)

        if http_sink is None and settings.metrics_url and settings.metrics_api_key:
            http_sink = HttpEventSink(
                settings.metrics_url,
                settings.metrics_api_key,
                timeout=settings.metrics_timeout_sec,
            )
        self.http_sink = http_sink
        self.listeners = ListenerSink()
        self._pending: set[asyncio.Task[bool]] = set()

    # ------------------------------ events ------------------------------

    def on(self, event_type: EventType, listener: Listener) -> None:
        self.listeners.on(event_type, listener)

    async def log(self, event: AuditEvent) -> bool:
        """Send one event to the events API; False when it is not configured or fails."""
        if self.http_sink is None:
            return False
        return await deliver(self.http_sink, event)

    def emit(self, event: AuditEvent) -> None:
        """Fire-and-forget delivery to every sink; never blocks the caller."""
        sinks: list[EventSink] = [self.listeners]
        if self.http_sink is not None:
            sinks.append(self.http_sink)
        for sink in sinks:
            task = asyncio.create_task(deliver(sink, event))
            self._pending.add(task)
            pending_audit_events.inc()
            task.add_done_callback(self._forget)

    def _forget(self, task: asyncio.Task[bool]) -> None:
        self._pending.discard(task)
        pending_audit_events.dec()

    async def drain(self) -> None:
        """Wait for in-flight event deliveries."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        close = getattr(self.http_sink, "close", None)
        if close is not None:
            await close()

    # ------------------------------ ENS ------------------------------

    def _ens_options(self, resolve_ens: bool | EnsResolveOptions | Mapping[str, Any] | None) -> EnsResolveOptions | None:
        if isinstance(resolve_ens, EnsResolveOptions):
            return resolve_ens
        if isinstance(resolve_ens, Mapping):
            try:
                return EnsResolveOptions.model_validate(dict(resolve_ens))
            except ValidationError as e:
                # ENS is best effort: bad options skip the lookup, not the login
                logger.warning("ignoring invalid ENS options (%d errors)", e.error_count())
                return None
        if resolve_ens is None:
            return self.settings.ens_options
        if resolve_ens:
            return self.settings.ens_options or EnsResolveOptions()
        return None

    async def resolve_ens(self, address: str, options: EnsResolveOptions | None = None) -> EnsData:
        return await self.ens.resolve(address, options)

    # ------------------------------ login / logout ------------------------------

    async def login(
        self,
        siwe: str | Mapping[str, Any] | SiweMessage,
        signature: str,
        dao_login: bool,
        resolve_ens: bool | EnsResolveOptions | Mapping[str, Any] | None,
        nonce: str,
        *,
        cancel: asyncio.Event | None = None,
        now: datetime | None = None,
    ) -> LoginResult:
        """
        Verify a signed SIWE message against the nonce issued for this session.

        Verification and ENS lookup run concurrently. Verification errors come back in
        LoginResult.error; ENS and audit-sink failures never affect the outcome.
        `resolve_ens=None` falls back to the configured default.
        """
        t0 = time.perf_counter()
        try:
            message = SiweMessage.parse(siwe)
        except SiweError as e:
            return self._failed(e, t0)

        ens_opts = self._ens_options(resolve_ens)
        allow_fallback = bool(dao_login or self.settings.allow_contract_fallback)
        verify_task = asyncio.create_task(
            self.verifier.verify(
                message,
                signature,
                nonce,
                allow_fallback,
                domain=self.settings.expected_domain,
                now=now,
                cancel=cancel,
            )
        )
        ens_task: asyncio.Task[EnsData] | None = None
        if ens_opts is not None:
            ens_task = asyncio.create_task(self.ens.resolve(message.address, ens_opts))

        try:
            result = await verify_task
        except BaseException:
            if ens_task is not None:
                ens_task.cancel()
            raise

        if not result.success:
            if ens_task is not None:
                ens_task.cancel()
            return self._failed(result.error or SiweError(ErrorKind.INVALID_SIGNATURE), t0)

        ens = EnsData()
        if ens_task is not None:
            try:
                ens = await await_cancellable(ens_task, cancel, "resolve_ens")
            except SiweError:
                logger.info("ENS lookup for %s abandoned", hash_address(message.address))

        contract_fallback = result.contract_fallback_used
        if contract_fallback:
            ssx_contract_fallback_logins_total.inc()

        self.emit(
            AuditEvent(
                user_id=message.did_pkh,
                type=EventType.LOGIN,
                content={
                    "signature": signature,
                    "rawMessage": _raw_message(siwe),
                    "isContractFallback": contract_fallback,
                },
            )
        )

        ssx_login_attempts_total.labels(result="success").inc()
        ssx_login_duration_seconds.observe(time.perf_counter() - t0)
        logger.info("siwe login ok for %s (contract_fallback=%s)", hash_address(message.address), contract_fallback)
        return LoginResult(
            success=True,
            session=SessionRecord(siwe=message, signature=signature, dao_login=dao_login, ens=ens),
        )

    def _failed(self, error: SiweError, t0: float) -> LoginResult:
        ssx_login_attempts_total.labels(result=error.type.value).inc()
        ssx_login_duration_seconds.observe(time.perf_counter() - t0)
        return LoginResult(success=False, error=error)

    async def logout(self, destroy: DestroySession | None = None) -> bool:
        """Session teardown belongs to the caller's store; without a destroy hook this is a no-op."""
        if destroy is None:
            return True
        res = destroy()
        if inspect.isawaitable(res):
            res = await res
        return bool(res)


def _raw_message(siwe: str | Mapping[str, Any] | SiweMessage) -> str | dict[str, Any]:
    if isinstance(siwe, SiweMessage):
        return siwe.to_dict()
    if isinstance(siwe, Mapping):
        return dict(siwe)
    return siwe
