from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Request

from ..deps import get_ssx
from ..schemas.auth import LoginIn, LogoutOut, NonceOut
from ..services.auth import SSXServer
from ..services.event_publisher import AuditEvent, EventType
from ..siwe.errors import ErrorKind

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ssx"])

# request.session keys (Starlette signed-cookie session is the caller-owned store here)
SESSION_NONCE = "nonce"
SESSION_SIWE = "siwe"
SESSION_SIGNATURE = "signature"
SESSION_DAO_LOGIN = "daoLogin"
SESSION_ENS = "ens"


@router.get("/ssx-nonce", response_model=NonceOut)
def nonce(request: Request, ssx: Annotated[SSXServer, Depends(get_ssx)]) -> NonceOut:
    value = ssx.generate_nonce()
    request.session[SESSION_NONCE] = value
    return NonceOut(nonce=value)


@router.post("/ssx-login")
async def login(
    body: LoginIn,
    request: Request,
    ssx: Annotated[SSXServer, Depends(get_ssx)],
) -> dict[str, Any]:
    expected = request.session.get(SESSION_NONCE)
    if not expected:
        logger.warning("ssx-login without an issued nonce")
        raise HTTPException(422, "missing_nonce")

    result = await ssx.login(
        body.siwe,
        body.signature,
        body.dao_login,
        body.resolve_ens,
        expected,
    )
    # nonce is single-use whatever the outcome
    request.session.pop(SESSION_NONCE, None)

    if not result.success or result.session is None:
        err = result.error
        status = 400 if err is not None and err.type == ErrorKind.MALFORMED_MESSAGE else 401
        raise HTTPException(status, err.to_dict() if err else "login_failed")

    record = result.session.to_dict()
    request.session[SESSION_SIWE] = record["siwe"]
    request.session[SESSION_SIGNATURE] = record["signature"]
    request.session[SESSION_DAO_LOGIN] = record["daoLogin"]
    request.session[SESSION_ENS] = record["ens"]
    return record


@router.post("/ssx-logout", response_model=LogoutOut)
async def logout(request: Request, ssx: Annotated[SSXServer, Depends(get_ssx)]) -> LogoutOut:
    siwe = request.session.get(SESSION_SIWE)

    def destroy() -> bool:
        request.session.clear()
        return True

    ok = await ssx.logout(destroy)
    if ok and isinstance(siwe, dict) and siwe.get("address"):
        ssx.emit(
            AuditEvent(
                user_id=f"did:pkh:eip155:{siwe.get('chainId')}:{siwe['address']}",
                type=EventType.LOGOUT,
            )
        )
    return LogoutOut(success=ok)
