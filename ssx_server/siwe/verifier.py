from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol, TypeVar

import httpx
from eth_account import Account
from eth_account.messages import encode_defunct

from ..telemetry.logging import hash_address
from .errors import ErrorKind, SiweError
from .message import SiweMessage

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ContractSignatureVerifier(Protocol):
    """Signature check for accounts that are not plain key pairs."""

    async def verify_on_chain(self, address: str, digest: bytes, signature: str) -> bool: ...


@dataclass(frozen=True)
class VerificationResult:
    success: bool
    data: SiweMessage
    error: SiweError | None = None
    contract_fallback_used: bool = False


async def await_cancellable(aw: Awaitable[T], cancel: asyncio.Event | None, what: str) -> T:
    """Await `aw`; a fired `cancel` event or a transport timeout becomes SiweError(Timeout)."""
    task = asyncio.ensure_future(aw)
    if cancel is None:
        try:
            return await task
        except (TimeoutError, httpx.TimeoutException) as e:
            raise SiweError(ErrorKind.TIMEOUT, what, str(e) or type(e).__name__) from e

    waiter = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()
    if task not in done:
        task.cancel()
        raise SiweError(ErrorKind.TIMEOUT, what, "cancelled")
    try:
        return task.result()
    except (TimeoutError, httpx.TimeoutException) as e:
        raise SiweError(ErrorKind.TIMEOUT, what, str(e) or type(e).__name__) from e


def recover_address(message: SiweMessage, signature: str) -> str | None:
    """EIP-191 recovery of the signer; None when the signature cannot be decoded."""
    try:
        return Account.recover_message(encode_defunct(text=message.prepare_message()), signature=signature)
    except Exception as e:
        logger.debug("recover_address failed for %s: %s", hash_address(message.address), e)
        return None


class SignatureVerifier:
    def __init__(self, fallback: ContractSignatureVerifier | None = None) -> None:
        self.fallback = fallback

    async def verify(
        self,
        message: SiweMessage,
        signature: str,
        expected_nonce: str,
        allow_contract_fallback: bool = False,
        *,
        domain: str | None = None,
        now: datetime | None = None,
        cancel: asyncio.Event | None = None,
    ) -> VerificationResult:
        def fail(err: SiweError) -> VerificationResult:
            logger.info("siwe verification failed: %s", err.type.value)
            return VerificationResult(success=False, data=message, error=err)

        if message.nonce != expected_nonce:
            return fail(SiweError(ErrorKind.NONCE_MISMATCH, expected_nonce, message.nonce))

        if domain is not None and message.domain != domain:
            return fail(SiweError(ErrorKind.DOMAIN_MISMATCH, domain, message.domain))

        now = now or datetime.now(UTC)
        if now.tzinfo is None:
            # naive clocks are taken as UTC
            now = now.replace(tzinfo=UTC)
        exp = message.expiration_datetime
        if exp is not None and now >= exp:
            return fail(SiweError(ErrorKind.EXPIRED, exp.isoformat(), now.isoformat()))
        nbf = message.not_before_datetime
        if nbf is not None and now < nbf:
            return fail(SiweError(ErrorKind.NOT_YET_VALID, nbf.isoformat(), now.isoformat()))

        if not signature:
            return fail(SiweError(ErrorKind.INVALID_SIGNATURE, "signature", signature))

        recovered = recover_address(message, signature)
        if recovered is not None and recovered == message.address:
            return VerificationResult(success=True, data=message)

        if allow_contract_fallback and self.fallback is not None:
            try:
                ok = await await_cancellable(
                    self.fallback.verify_on_chain(message.address, message.digest(), signature),
                    cancel,
                    "verify_on_chain",
                )
            except SiweError as e:
                return fail(e)
            except Exception as e:
                logger.warning("contract fallback failed for %s: %s", hash_address(message.address), e)
                ok = False
            if ok:
                logger.info("siwe signature accepted by contract fallback for %s", hash_address(message.address))
                return VerificationResult(success=True, data=message, contract_fallback_used=True)

        return fail(
            SiweError(
                ErrorKind.INVALID_SIGNATURE,
                message.address,
                f"Resolved address to be {recovered}",
            )
        )
