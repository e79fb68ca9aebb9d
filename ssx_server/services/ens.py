"""Best-effort ENS lookup of display attributes for a wallet address."""

from __future__ import annotations

import logging
from typing import Protocol

from pydantic import BaseModel, ConfigDict
from web3 import AsyncWeb3

from ..telemetry.logging import hash_address
from ..telemetry.metrics import ens_resolutions_total

logger = logging.getLogger(__name__)


class EnsResolveOptions(BaseModel):
    domain: bool = True
    avatar: bool = True


class EnsData(BaseModel):
    model_config = ConfigDict(frozen=True)

    domain: str | None = None
    avatar_url: str | None = None

    def is_empty(self) -> bool:
        return self.domain is None and self.avatar_url is None

    def to_dict(self) -> dict[str, str]:
        out: dict[str, str] = {}
        if self.domain is not None:
            out["domain"] = self.domain
        if self.avatar_url is not None:
            out["avatarUrl"] = self.avatar_url
        return out


class NameServiceProvider(Protocol):
    async def name(self, address: str) -> str | None: ...

    async def avatar(self, name: str) -> str | None: ...


class Web3NameService:
    """NameServiceProvider over web3.py's AsyncENS (reverse record, then `avatar` text record)."""

    def __init__(self, w3: AsyncWeb3) -> None:
        self.w3 = w3

    async def name(self, address: str) -> str | None:
        return await self.w3.ens.name(address)  # type: ignore[union-attr]

    async def avatar(self, name: str) -> str | None:
        value = await self.w3.ens.get_text(name, "avatar")  # type: ignore[union-attr]
        return value or None


class EnsResolver:
    def __init__(self, provider: NameServiceProvider | None) -> None:
        self.provider = provider

    async def resolve(self, address: str, options: EnsResolveOptions | None = None) -> EnsData:
        """
        Look up the ENS name and/or avatar of `address`.

        Never raises: failures and misses give an empty EnsData.
        """
        opts = options or EnsResolveOptions()
        if self.provider is None or not (opts.domain or opts.avatar):
            return EnsData()

        try:
            name = await self.provider.name(address)
            avatar_url = None
            if opts.avatar and name:
                avatar_url = await self.provider.avatar(name)
        except Exception as e:
            logger.warning("ENS resolution failed for %s: %s", hash_address(address), e)
            ens_resolutions_total.labels(result="error").inc()
            return EnsData()

        data = EnsData(domain=name if opts.domain else None, avatar_url=avatar_url)
        ens_resolutions_total.labels(result="miss" if data.is_empty() else "hit").inc()
        return data
