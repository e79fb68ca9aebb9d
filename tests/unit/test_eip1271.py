from unittest.mock import AsyncMock, MagicMock

import pytest
from web3.exceptions import ContractLogicError

from ssx_server.blockchain.eip1271 import EIP1271_MAGIC_VALUE, EIP1271Verifier

WALLET = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"
DIGEST = b"\x11" * 32
SIGNATURE = "0x" + "ab" * 65


def _w3(code=b"\x60\x80", returns=EIP1271_MAGIC_VALUE):
    w3 = MagicMock()
    w3.eth.get_code = AsyncMock(return_value=code)
    call = AsyncMock(return_value=returns)
    contract = MagicMock()
    contract.functions.isValidSignature.return_value.call = call
    w3.eth.contract.return_value = contract
    return w3, contract, call


@pytest.mark.asyncio
async def test_magic_value_accepts():
    w3, contract, call = _w3()
    assert await EIP1271Verifier(w3).verify_on_chain(WALLET.lower(), DIGEST, SIGNATURE) is True
    w3.eth.get_code.assert_awaited_once_with(WALLET)
    contract.functions.isValidSignature.assert_called_once_with(DIGEST, bytes.fromhex("ab" * 65))
    call.assert_awaited_once()


@pytest.mark.asyncio
async def test_other_return_value_rejects():
    w3, _, _ = _w3(returns=b"\xff\xff\xff\xff")
    assert await EIP1271Verifier(w3).verify_on_chain(WALLET, DIGEST, SIGNATURE) is False


@pytest.mark.asyncio
async def test_no_code_rejects_without_call():
    w3, _, call = _w3(code=b"")
    assert await EIP1271Verifier(w3).verify_on_chain(WALLET, DIGEST, SIGNATURE) is False
    call.assert_not_awaited()


@pytest.mark.asyncio
async def test_revert_rejects():
    w3, _, call = _w3()
    call.side_effect = ContractLogicError("execution reverted")
    assert await EIP1271Verifier(w3).verify_on_chain(WALLET, DIGEST, SIGNATURE) is False


@pytest.mark.asyncio
async def test_non_hex_signature_rejects():
    w3, _, _ = _w3()
    assert await EIP1271Verifier(w3).verify_on_chain(WALLET, DIGEST, "0xzz") is False
    w3.eth.get_code.assert_not_awaited()


@pytest.mark.asyncio
async def test_transport_errors_propagate():
    w3, _, _ = _w3()
    w3.eth.get_code.side_effect = TimeoutError()
    with pytest.raises(TimeoutError):
        await EIP1271Verifier(w3).verify_on_chain(WALLET, DIGEST, SIGNATURE)
