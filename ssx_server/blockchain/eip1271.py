from __future__ import annotations

import logging
from typing import Any

from eth_utils.address import to_checksum_address
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError

from ..telemetry.logging import hash_address

log = logging.getLogger(__name__)

# bytes4(keccak256("isValidSignature(bytes32,bytes)"))
EIP1271_MAGIC_VALUE = bytes.fromhex("1626ba7e")

EIP1271_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "isValidSignature",
        "stateMutability": "view",
        "inputs": [
            {"name": "_hash", "type": "bytes32"},
            {"name": "_signature", "type": "bytes"},
        ],
        "outputs": [{"name": "magicValue", "type": "bytes4"}],
    }
]


def _sig_bytes(signature: str) -> bytes:
    clean = signature[2:] if signature.startswith(("0x", "0X")) else signature
    return bytes.fromhex(clean)


def make_web3(rpc_url: str) -> AsyncWeb3:
    # retries and timeouts belong to the caller
    return AsyncWeb3(AsyncHTTPProvider(rpc_url, exception_retry_configuration=None))


class EIP1271Verifier:
    """Asks the account contract itself whether it accepts the signature (EIP-1271).

    Smart-contract wallets (Safe and friends) have no private key, so plain
    ecrecover never matches their address.
    """

    def __init__(self, w3: AsyncWeb3) -> None:
        self.w3 = w3

    async def verify_on_chain(self, address: str, digest: bytes, signature: str) -> bool:
        checksum = to_checksum_address(address)
        try:
            sig = _sig_bytes(signature)
        except ValueError:
            log.warning("EIP-1271: signature for %s is not hex", hash_address(checksum))
            return False

        code = await self.w3.eth.get_code(checksum)
        if not code:
            # EOA or undeployed wallet
            log.info("EIP-1271: no contract code at %s", hash_address(checksum))
            return False

        contract = self.w3.eth.contract(address=checksum, abi=EIP1271_ABI)
        try:
            result = await contract.functions.isValidSignature(digest, sig).call()
        except (ContractLogicError, BadFunctionCallOutput) as e:
            log.info("EIP-1271: isValidSignature reverted for %s: %s", hash_address(checksum), e)
            return False
        ok = bytes(result)[:4] == EIP1271_MAGIC_VALUE
        log.debug("EIP-1271: %s returned %s (ok=%s)", hash_address(checksum), bytes(result).hex(), ok)
        return ok
