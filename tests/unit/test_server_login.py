import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from ssx_server.services.auth import SSXServer
from ssx_server.services.ens import EnsData, EnsResolveOptions, EnsResolver
from ssx_server.services.event_publisher import AuditEvent, EventType
from ssx_server.siwe.errors import ErrorKind
from ssx_server.siwe.verifier import SignatureVerifier


def _contract(result=True):
    contract = MagicMock()
    contract.verify_on_chain = AsyncMock(return_value=result)
    return contract


def _ens(name="alice.eth", avatar="https://img.example/alice.png"):
    provider = MagicMock()
    provider.name = AsyncMock(return_value=name)
    provider.avatar = AsyncMock(return_value=avatar)
    return provider


def _server(settings, *, contract=None, ens_provider=None, http_sink=None) -> SSXServer:
    return SSXServer(
        settings,
        verifier=SignatureVerifier(contract),
        ens=EnsResolver(ens_provider),
        http_sink=http_sink,
    )


async def _login(ssx, signer, msg, *, sig=None, dao_login=False, resolve_ens=False, nonce="abc123xyz", **kw):
    return await ssx.login(
        msg.prepare_message(), sig or signer.sign(msg), dao_login, resolve_ens, nonce, **kw
    )


@pytest.mark.asyncio
async def test_login_ok(settings, signer):
    ssx = _server(settings)
    msg = signer.message("abc123xyz")
    res = await _login(ssx, signer, msg)
    assert res.success
    assert res.error is None
    assert res.session is not None
    assert res.session.siwe == msg
    assert res.session.dao_login is False
    record = res.session.to_dict()
    assert record["ens"] == {}
    assert record["daoLogin"] is False
    assert record["siwe"]["address"] == signer.address
    await ssx.aclose()


@pytest.mark.asyncio
async def test_login_accepts_field_mapping(settings, signer):
    ssx = _server(settings)
    msg = signer.message("abc123xyz")
    res = await ssx.login(msg.to_dict(), signer.sign(msg), False, False, "abc123xyz")
    assert res.success
    await ssx.aclose()


@pytest.mark.asyncio
async def test_login_wrong_nonce(settings, signer):
    ssx = _server(settings)
    res = await _login(ssx, signer, signer.message("abc123xyz"), nonce="wrong")
    assert not res.success
    assert res.session is None
    assert res.error is not None
    assert res.error.type == ErrorKind.NONCE_MISMATCH
    assert res.to_dict()["error"] == {"type": "NonceMismatch", "expected": "wrong", "received": "abc123xyz"}


@pytest.mark.asyncio
async def test_login_expired(settings, signer):
    ssx = _server(settings)
    past = (datetime.now(UTC) - timedelta(hours=1)).strftime("%Y-%m-%dT%H:%M:%SZ")
    res = await _login(ssx, signer, signer.message("abc123xyz", expiration_time=past))
    assert res.error is not None
    assert res.error.type == ErrorKind.EXPIRED


@pytest.mark.asyncio
async def test_login_malformed(settings, signer):
    ssx = _server(settings)
    res = await ssx.login("not a siwe message", "0x00", False, False, "abc123xyz")
    assert not res.success
    assert res.error is not None
    assert res.error.type == ErrorKind.MALFORMED_MESSAGE


@pytest.mark.asyncio
async def test_login_domain_pinned(settings_factory, signer):
    ssx = _server(settings_factory(expected_domain="login.example"))
    res = await _login(ssx, signer, signer.message("abc123xyz"))
    assert res.error is not None
    assert res.error.type == ErrorKind.DOMAIN_MISMATCH


@pytest.mark.asyncio
async def test_contract_wallet_rejected_without_dao_login(settings, signer, other_signer):
    contract = _contract(True)
    ssx = _server(settings, contract=contract)
    msg = signer.message("abc123xyz")
    res = await _login(ssx, signer, msg, sig=other_signer.sign(msg), dao_login=False)
    assert res.error is not None
    assert res.error.type == ErrorKind.INVALID_SIGNATURE
    contract.verify_on_chain.assert_not_awaited()


@pytest.mark.asyncio
async def test_contract_wallet_accepted_with_dao_login(settings, signer, other_signer):
    ssx = _server(settings, contract=_contract(True))
    events: list[AuditEvent] = []
    ssx.on(EventType.LOGIN, events.append)
    msg = signer.message("abc123xyz")
    res = await _login(ssx, signer, msg, sig=other_signer.sign(msg), dao_login=True)
    assert res.success
    assert res.session is not None and res.session.dao_login is True
    await ssx.drain()
    assert len(events) == 1
    assert events[0].content["isContractFallback"] is True


@pytest.mark.asyncio
async def test_contract_fallback_enabled_in_settings(settings_factory, signer, other_signer):
    ssx = _server(settings_factory(allow_contract_fallback=True), contract=_contract(True))
    events: list[AuditEvent] = []
    ssx.on(EventType.LOGIN, events.append)
    msg = signer.message("abc123xyz")
    res = await _login(ssx, signer, msg, sig=other_signer.sign(msg), dao_login=False)
    assert res.success
    await ssx.drain()
    # reported as a fallback login even though the client did not ask for one
    assert events[0].content["isContractFallback"] is True


@pytest.mark.asyncio
async def test_audit_event_content(settings, signer):
    ssx = _server(settings)
    events: list[AuditEvent] = []
    ssx.on(EventType.LOGIN, events.append)
    msg = signer.message("abc123xyz", chain_id=5)
    sig = signer.sign(msg)
    res = await _login(ssx, signer, msg, sig=sig)
    assert res.success
    await ssx.drain()

    (event,) = events
    assert event.type == EventType.LOGIN
    assert event.user_id == f"did:pkh:eip155:5:{signer.address}"
    assert event.content == {
        "signature": sig,
        "rawMessage": msg.prepare_message(),
        "isContractFallback": False,
    }


@pytest.mark.asyncio
async def test_no_audit_event_on_failure(settings, signer):
    ssx = _server(settings)
    events: list[AuditEvent] = []
    ssx.on(EventType.LOGIN, events.append)
    await _login(ssx, signer, signer.message("abc123xyz"), nonce="wrong")
    await ssx.drain()
    assert events == []


@pytest.mark.asyncio
async def test_sink_failure_does_not_change_outcome(settings, signer):
    sink = MagicMock()
    sink.name = "http"
    sink.record = AsyncMock(side_effect=RuntimeError("events api down"))
    sink.close = AsyncMock()
    ssx = _server(settings, http_sink=sink)
    res = await _login(ssx, signer, signer.message("abc123xyz"))
    assert res.success
    await ssx.aclose()
    sink.record.assert_awaited_once()
    sink.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_log_without_events_api(settings):
    ssx = _server(settings)
    event = AuditEvent(user_id="did:pkh:eip155:1:0x0", type=EventType.LOGOUT)
    assert await ssx.log(event) is False


@pytest.mark.asyncio
async def test_log_with_events_api(settings):
    sink = MagicMock()
    sink.name = "http"
    sink.record = AsyncMock()
    ssx = _server(settings, http_sink=sink)
    event = AuditEvent(user_id="did:pkh:eip155:1:0x0", type=EventType.LOGOUT)
    assert await ssx.log(event) is True
    sink.record.assert_awaited_once_with(event)


@pytest.mark.asyncio
async def test_login_with_ens(settings, signer):
    ssx = _server(settings, ens_provider=_ens())
    res = await _login(ssx, signer, signer.message("abc123xyz"), resolve_ens=True)
    assert res.success
    assert res.session is not None
    assert res.session.ens == EnsData(domain="alice.eth", avatar_url="https://img.example/alice.png")
    assert res.session.to_dict()["ens"] == {"domain": "alice.eth", "avatarUrl": "https://img.example/alice.png"}


@pytest.mark.asyncio
async def test_login_with_ens_options(settings, signer):
    provider = _ens()
    ssx = _server(settings, ens_provider=provider)
    res = await _login(
        ssx, signer, signer.message("abc123xyz"), resolve_ens=EnsResolveOptions(domain=True, avatar=False)
    )
    assert res.session is not None
    assert res.session.ens == EnsData(domain="alice.eth")
    provider.avatar.assert_not_awaited()


@pytest.mark.asyncio
async def test_ens_failure_does_not_change_outcome(settings, signer):
    provider = _ens()
    provider.name.side_effect = ConnectionError("rpc down")
    ssx = _server(settings, ens_provider=provider)
    res = await _login(ssx, signer, signer.message("abc123xyz"), resolve_ens=True)
    assert res.success
    assert res.session is not None
    assert res.session.ens.is_empty()


@pytest.mark.asyncio
async def test_ens_skipped_when_not_requested(settings, signer):
    provider = _ens()
    ssx = _server(settings, ens_provider=provider)
    res = await _login(ssx, signer, signer.message("abc123xyz"), resolve_ens=False)
    assert res.success
    provider.name.assert_not_awaited()


@pytest.mark.asyncio
async def test_ens_default_comes_from_settings(settings_factory, signer):
    provider = _ens()
    ssx = _server(settings_factory(resolve_ens=True, resolve_ens_avatar=False), ens_provider=provider)
    res = await _login(ssx, signer, signer.message("abc123xyz"), resolve_ens=None)
    assert res.session is not None
    assert res.session.ens == EnsData(domain="alice.eth")


@pytest.mark.asyncio
async def test_ens_cancelled_when_verification_fails(settings, signer):
    state = {"cancelled": False}

    async def slow_name(address):
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            state["cancelled"] = True
            raise

    provider = _ens()
    provider.name = slow_name
    ssx = _server(settings, ens_provider=provider)
    res = await asyncio.wait_for(
        _login(ssx, signer, signer.message("abc123xyz"), resolve_ens=True, nonce="wrong"), 5
    )
    assert res.error is not None
    assert res.error.type == ErrorKind.NONCE_MISMATCH
    await asyncio.sleep(0.01)
    assert state["cancelled"]


@pytest.mark.asyncio
async def test_cancel_event_aborts_contract_fallback(settings, signer, other_signer):
    started = asyncio.Event()
    cancel = asyncio.Event()

    class SlowContract:
        async def verify_on_chain(self, address, digest, signature):
            started.set()
            await asyncio.sleep(30)
            return True

    ssx = _server(settings, contract=SlowContract())
    msg = signer.message("abc123xyz")
    task = asyncio.create_task(
        _login(ssx, signer, msg, sig=other_signer.sign(msg), dao_login=True, cancel=cancel)
    )
    await started.wait()
    cancel.set()
    res = await asyncio.wait_for(task, 5)
    assert res.error is not None
    assert res.error.type == ErrorKind.TIMEOUT


@pytest.mark.asyncio
async def test_resolve_ens_helper(settings):
    ssx = _server(settings, ens_provider=_ens())
    data = await ssx.resolve_ens("0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2")
    assert data.domain == "alice.eth"


def test_generate_nonce_is_exposed():
    assert len(SSXServer.generate_nonce()) >= 8


@pytest.mark.asyncio
async def test_logout_without_store_is_noop(settings):
    assert await _server(settings).logout() is True


@pytest.mark.asyncio
async def test_logout_calls_destroy(settings):
    destroy = MagicMock(return_value=True)
    assert await _server(settings).logout(destroy) is True
    destroy.assert_called_once_with()

    async_destroy = AsyncMock(return_value=False)
    assert await _server(settings).logout(async_destroy) is False
    async_destroy.assert_awaited_once()


@pytest.mark.asyncio
async def test_wiring_from_settings(settings_factory):
    from ssx_server.blockchain.eip1271 import EIP1271Verifier
    from ssx_server.services.ens import Web3NameService
    from ssx_server.services.event_publisher import HttpEventSink

    ssx = SSXServer(
        settings_factory(rpc_url="http://localhost:8545", metrics_service="ssx", metrics_api_key="k")
    )
    assert isinstance(ssx.verifier.fallback, EIP1271Verifier)
    assert isinstance(ssx.ens.provider, Web3NameService)
    assert isinstance(ssx.http_sink, HttpEventSink)
    await ssx.aclose()

    bare = SSXServer(settings_factory())
    assert bare.verifier.fallback is None
    assert bare.ens.provider is None
    assert bare.http_sink is None

    keyless = SSXServer(settings_factory(metrics_service="ssx"))
    assert keyless.http_sink is None


@pytest.mark.asyncio
async def test_invalid_ens_options_skip_lookup(settings, signer):
    provider = _ens()
    ssx = _server(settings, ens_provider=provider)
    res = await _login(ssx, signer, signer.message("abc123xyz"), resolve_ens={"domain": "nope"})
    assert res.success
    assert res.session is not None
    assert res.session.ens.is_empty()
    provider.name.assert_not_awaited()


@pytest.mark.asyncio
async def test_login_logs_hash_not_address(settings, signer, caplog):
    from ssx_server.telemetry.logging import hash_address

    ssx = _server(settings)
    with caplog.at_level("INFO", logger="ssx_server"):
        res = await _login(ssx, signer, signer.message("abc123xyz"))
    assert res.success
    assert signer.address not in caplog.text
    assert hash_address(signer.address) in caplog.text
