from __future__ import annotations

import asyncio

import httpx
import pytest

from walletlookup.core.errors import ProviderError, ProviderRateLimitedError, ProviderUnauthorizedError
from walletlookup.services.providers.base import ENSResult, NeynarResult, Web3BioResult
from walletlookup.services.providers.ens import ENSProvider
from walletlookup.services.providers.neynar import NeynarProvider
from walletlookup.services.providers.web3bio import Web3BioProvider

ALICE = "0x" + "a" * 40
BOB = "0x" + "b" * 40


def _resolve(provider_factory, handler, addresses: list[str]):
    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await provider_factory(client).resolve_batch(addresses)

    return asyncio.run(run())


def test_neynar_bulk_lookup_parses_users_and_verified_twitter() -> None:
    seen: dict[str, str] = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["addresses"] = request.url.params["addresses"]
        seen["api_key"] = request.headers["x-api-key"]
        return httpx.Response(
            200,
            json={
                ALICE.upper().replace("0X", "0x"): [
                    {
                        "username": "alice",
                        "fid": 42,
                        "follower_count": 1200,
                        "verified_accounts": [{"platform": "x", "username": "@Alice_X"}],
                    }
                ]
            },
            request=request,
        )

    results = _resolve(lambda client: NeynarProvider("secret", client=client), handler, [ALICE, BOB])

    assert seen == {"path": "/v2/farcaster/user/bulk-by-address", "addresses": f"{ALICE},{BOB}", "api_key": "secret"}
    assert set(results) == {ALICE}
    result = results[ALICE]
    assert isinstance(result, NeynarResult)
    assert (result.username, result.fid, result.follower_count, result.verified_twitter) == ("alice", 42, 1200, "alice_x")


@pytest.mark.parametrize(
    ("status_code", "error_type"),
    [(401, ProviderUnauthorizedError), (429, ProviderRateLimitedError), (503, ProviderError)],
)
def test_neynar_maps_error_statuses(status_code: int, error_type: type[ProviderError]) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json={"message": "nope"}, request=request)

    with pytest.raises(error_type) as exc_info:
        _resolve(lambda client: NeynarProvider("secret", client=client), handler, [ALICE])
    assert exc_info.value.status_code == status_code
    assert exc_info.value.provider == "neynar"


def test_web3bio_reads_profiles_and_treats_404_as_no_result() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == f"/profile/{ALICE}":
            return httpx.Response(
                200,
                json=[
                    {"platform": "ens", "identity": "alice.eth", "links": {"twitter": {"handle": "Alice"}}},
                    {
                        "platform": "farcaster",
                        "identity": "alice",
                        "links": {
                            "farcaster": {"handle": "alice", "link": "https://warpcast.com/alice"},
                            "github": {"handle": "alice-gh"},
                        },
                    },
                ],
                request=request,
            )
        return httpx.Response(404, json={"error": "not found"}, request=request)

    results = _resolve(lambda client: Web3BioProvider(client=client), handler, [ALICE, BOB])

    assert set(results) == {ALICE}
    result = results[ALICE]
    assert isinstance(result, Web3BioResult)
    assert result.ens_name == "alice.eth"
    assert result.twitter_handle == "alice"
    assert result.twitter_url == "https://x.com/alice"
    assert result.farcaster == "alice"
    assert result.github == "alice-gh"


def test_web3bio_server_error_fails_the_batch() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, request=request)

    with pytest.raises(ProviderError) as exc_info:
        _resolve(lambda client: Web3BioProvider(client=client), handler, [ALICE])
    assert exc_info.value.status_code == 500


def test_ens_gateway_reads_primary_name_and_text_records() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == f"/{ALICE}":
            return httpx.Response(
                200,
                json={"ens_primary": "alice.eth", "twitter": "@AliceOnChain", "github": "alice", "url": "https://alice.xyz"},
                request=request,
            )
        return httpx.Response(404, request=request)

    results = _resolve(
        lambda client: ENSProvider(gateway_url="https://ens.example", client=client),
        handler,
        [ALICE, BOB],
    )

    assert set(results) == {ALICE}
    result = results[ALICE]
    assert isinstance(result, ENSResult)
    assert (result.ens_name, result.twitter, result.github, result.url) == (
        "alice.eth",
        "aliceonchain",
        "alice",
        "https://alice.xyz",
    )
    identity = result.to_identity()
    assert identity.twitter_verified is True
    assert identity.sources == ["ens"]


def test_transport_errors_become_provider_errors() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderError) as exc_info:
        _resolve(lambda client: ENSProvider(client=client), handler, [ALICE])
    assert exc_info.value.status_code is None
