from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..services.ens import EnsData, EnsResolveOptions
from ..siwe.message import SiweMessage


class SessionRecord(BaseModel):
    """What the caller's session store keeps after a successful login."""

    model_config = ConfigDict(frozen=True)

    siwe: SiweMessage
    signature: str
    dao_login: bool = False
    ens: EnsData = Field(default_factory=EnsData)

    def to_dict(self) -> dict[str, Any]:
        return {
            "siwe": self.siwe.to_dict(),
            "signature": self.signature,
            "daoLogin": self.dao_login,
            "ens": self.ens.to_dict(),
        }


class NonceOut(BaseModel):
    nonce: str


class LoginIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    siwe: str | dict[str, Any]
    signature: str
    dao_login: bool = Field(default=False, alias="daoLogin")
    resolve_ens: bool | EnsResolveOptions | None = Field(default=None, alias="resolveEns")

    @field_validator("siwe", mode="before")
    @classmethod
    def _parse_siwe(cls, v: Any) -> Any:
        # Either the EIP-4361 text or a JSON object of fields (axios sometimes stringifies it)
        if isinstance(v, str) and v.lstrip().startswith("{"):
            try:
                parsed = json.loads(v)
            except json.JSONDecodeError as e:
                raise ValueError(f"siwe_invalid: {e}") from e
            if isinstance(parsed, dict):
                return parsed
            raise ValueError("siwe JSON must be an object")
        return v

    @field_validator("signature")
    @classmethod
    def _v_signature(cls, v: str) -> str:
        if not v:
            raise ValueError("missing_signature")
        return v


class LogoutOut(BaseModel):
    success: bool
