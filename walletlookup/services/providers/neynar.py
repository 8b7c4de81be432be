from __future__ import annotations

from typing import Any

import httpx

from walletlookup.core.errors import ProviderError
from walletlookup.core.wallets import clean_twitter_handle
from walletlookup.services.providers.base import (
    NeynarResult,
    ProviderResult,
    as_int,
    as_text,
    raise_for_provider_status,
)

NEYNAR_BASE_URL = "https://api.neynar.com"
# The bulk endpoint accepts up to 350 addresses; 200 keeps URLs comfortably short.
NEYNAR_BATCH_SIZE = 200


class NeynarProvider:
    name = "neynar"
    max_batch_size = NEYNAR_BATCH_SIZE

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = NEYNAR_BASE_URL,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 15.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"accept": "application/json", "x-api-key": api_key}
        self._client = client
        self._timeout_seconds = timeout_seconds

    async def resolve_batch(self, addresses: list[str]) -> dict[str, ProviderResult]:
        if not addresses:
            return {}
        if self._client is not None:
            payload = await self._fetch(self._client, addresses)
        else:
            async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                payload = await self._fetch(client, addresses)

        results: dict[str, ProviderResult] = {}
        for address in addresses:
            parsed = parse_neynar_users(payload.get(address), address)
            if parsed is not None:
                results[address] = parsed
        return results

    async def _fetch(self, client: httpx.AsyncClient, addresses: list[str]) -> dict[str, Any]:
        try:
            response = await client.get(
                f"{self.base_url}/v2/farcaster/user/bulk-by-address",
                params={"addresses": ",".join(addresses)},
                headers=self.headers,
            )
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, f"request failed: {exc}") from exc

        raise_for_provider_status(self.name, response)
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(self.name, "invalid JSON payload", status_code=response.status_code) from exc
        if not isinstance(payload, dict):
            return {}
        # Response keys are addresses as Neynar echoes them back; normalize for lookup.
        return {str(key).lower(): value for key, value in payload.items()}


def parse_neynar_users(users: Any, wallet: str) -> NeynarResult | None:
    if not isinstance(users, list) or not users:
        return None
    primary = users[0]
    if not isinstance(primary, dict):
        return None
    username = as_text(primary.get("username"))
    if username is None:
        return None

    verified_twitter: str | None = None
    for account in primary.get("verified_accounts") or []:
        if not isinstance(account, dict):
            continue
        if account.get("platform") in {"twitter", "x"}:
            verified_twitter = clean_twitter_handle(account.get("username"))
            if verified_twitter:
                break

    return NeynarResult(
        wallet=wallet.lower(),
        username=username,
        fid=as_int(primary.get("fid")),
        follower_count=as_int(primary.get("follower_count")),
        verified_twitter=verified_twitter,
    )
