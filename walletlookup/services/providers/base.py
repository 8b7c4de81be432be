from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Union

import httpx

from walletlookup.core.errors import ProviderError, ProviderRateLimitedError, ProviderUnauthorizedError
from walletlookup.core.wallets import farcaster_url, twitter_url
from walletlookup.services.identity import IdentityRecord


@dataclass(slots=True)
class NeynarResult:
    wallet: str
    username: str
    fid: int | None = None
    follower_count: int | None = None
    verified_twitter: str | None = None

    def to_identity(self) -> IdentityRecord:
        return IdentityRecord(
            farcaster=self.username,
            farcaster_url=farcaster_url(self.username),
            farcaster_verified=True,
            fc_followers=self.follower_count,
            fc_fid=self.fid,
            twitter_handle=self.verified_twitter,
            twitter_url=twitter_url(self.verified_twitter) if self.verified_twitter else None,
            twitter_verified=self.verified_twitter is not None,
            sources=["neynar"],
        )


@dataclass(slots=True)
class ENSResult:
    wallet: str
    ens_name: str | None = None
    twitter: str | None = None
    github: str | None = None
    url: str | None = None

    def to_identity(self) -> IdentityRecord:
        # Text records are written on-chain by the name owner.
        return IdentityRecord(
            ens_name=self.ens_name,
            twitter_handle=self.twitter,
            twitter_url=twitter_url(self.twitter) if self.twitter else None,
            twitter_verified=self.twitter is not None,
            github=self.github,
            sources=["ens"],
        )


@dataclass(slots=True)
class Web3BioResult:
    wallet: str
    ens_name: str | None = None
    twitter_handle: str | None = None
    twitter_url: str | None = None
    farcaster: str | None = None
    farcaster_url: str | None = None
    lens: str | None = None
    github: str | None = None

    def to_identity(self) -> IdentityRecord:
        return IdentityRecord(
            ens_name=self.ens_name,
            twitter_handle=self.twitter_handle,
            twitter_url=self.twitter_url,
            farcaster=self.farcaster,
            farcaster_url=self.farcaster_url,
            lens=self.lens,
            github=self.github,
            sources=["web3bio"],
        )


ProviderResult = Union[NeynarResult, ENSResult, Web3BioResult]


class IdentityProvider(Protocol):
    name: str
    max_batch_size: int

    async def resolve_batch(self, addresses: list[str]) -> dict[str, ProviderResult]: ...


def raise_for_provider_status(provider: str, response: httpx.Response) -> None:
    if response.is_success:
        return
    status_code = int(response.status_code)
    if status_code in {401, 403}:
        raise ProviderUnauthorizedError(provider, "invalid or missing API key", status_code=status_code)
    if status_code == 429:
        raise ProviderRateLimitedError(provider, "rate limited", status_code=status_code)
    raise ProviderError(provider, f"upstream error {status_code}", status_code=status_code)


def as_text(value: object) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def as_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
