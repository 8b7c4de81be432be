from __future__ import annotations

import asyncio
from typing import Any

import httpx

from walletlookup.core.errors import ProviderError
from walletlookup.core.wallets import clean_twitter_handle, farcaster_url, twitter_url
from walletlookup.services.providers.base import (
    ProviderResult,
    Web3BioResult,
    as_text,
    raise_for_provider_status,
)

WEB3BIO_BASE_URL = "https://api.web3.bio"
# Web3.bio only has a per-address endpoint, so a "batch" is a set of concurrent requests.
WEB3BIO_BATCH_SIZE = 50


class Web3BioProvider:
    name = "web3bio"
    max_batch_size = WEB3BIO_BATCH_SIZE

    def __init__(
        self,
        api_key: str | None = None,
        *,
        base_url: str = WEB3BIO_BASE_URL,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 15.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"Accept": "application/json"}
        if api_key:
            self.headers["X-API-Key"] = api_key
        self._client = client
        self._timeout_seconds = timeout_seconds

    async def resolve_batch(self, addresses: list[str]) -> dict[str, ProviderResult]:
        if not addresses:
            return {}
        if self._client is not None:
            profiles = await self._fetch_all(self._client, addresses)
        else:
            async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                profiles = await self._fetch_all(client, addresses)

        results: dict[str, ProviderResult] = {}
        for address, payload in zip(addresses, profiles):
            parsed = parse_web3bio_profiles(payload, address)
            if parsed is not None:
                results[address] = parsed
        return results

    async def _fetch_all(self, client: httpx.AsyncClient, addresses: list[str]) -> list[list[dict[str, Any]] | None]:
        return list(await asyncio.gather(*(self._fetch_profile(client, address) for address in addresses)))

    async def _fetch_profile(self, client: httpx.AsyncClient, address: str) -> list[dict[str, Any]] | None:
        try:
            response = await client.get(f"{self.base_url}/profile/{address}", headers=self.headers)
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, f"request failed for {address}: {exc}") from exc

        if response.status_code == 404:
            return None
        raise_for_provider_status(self.name, response)
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(self.name, "invalid JSON payload", status_code=response.status_code) from exc
        if isinstance(payload, list):
            return [item for item in payload if isinstance(item, dict)]
        if isinstance(payload, dict):
            return [payload]
        return None


def parse_web3bio_profiles(profiles: list[dict[str, Any]] | None, wallet: str) -> Web3BioResult | None:
    if not profiles:
        return None

    result = Web3BioResult(wallet=wallet.lower())
    for profile in profiles:
        if profile.get("platform") == "ens" and as_text(profile.get("identity")):
            result.ens_name = as_text(profile.get("identity"))

        links = profile.get("links")
        if not isinstance(links, dict):
            continue

        handle, link = _link(links, "twitter")
        cleaned = clean_twitter_handle(handle)
        if cleaned:
            result.twitter_handle = cleaned
            result.twitter_url = link or twitter_url(cleaned)

        handle, link = _link(links, "farcaster")
        if handle:
            result.farcaster = handle
            result.farcaster_url = link or farcaster_url(handle)

        handle, _ = _link(links, "lens")
        if handle:
            result.lens = handle

        handle, _ = _link(links, "github")
        if handle:
            result.github = handle

    if not (result.ens_name or result.twitter_handle or result.farcaster or result.lens or result.github):
        return None
    return result


def _link(links: dict[str, Any], platform: str) -> tuple[str | None, str | None]:
    entry = links.get(platform)
    if not isinstance(entry, dict):
        return None, None
    return as_text(entry.get("handle")), as_text(entry.get("link"))
