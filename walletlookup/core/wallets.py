from __future__ import annotations

import math
import re
from collections.abc import Iterable, Mapping
from typing import Any

_WALLET_RE = re.compile(r"^0x[0-9a-f]{40}$")
_TWITTER_URL_RE = re.compile(r"^https?://(www\.)?(twitter|x)\.com/")
_TWITTER_INVALID_RE = re.compile(r"[^a-z0-9_]")

HOLDINGS_COLUMN_PATTERNS = (
    "peak index dtf value",
    "dtf value",
    "value",
    "balance",
    "holdings",
    "amount",
    "usd",
    "usd_value",
    "usd value",
    "total",
    "total_value",
    "portfolio",
)


def normalize_wallet(raw: Any) -> str | None:
    if not isinstance(raw, str):
        return None
    candidate = raw.strip().lower()
    if not _WALLET_RE.match(candidate):
        return None
    return candidate


def dedupe_wallets(raw_wallets: Iterable[Any]) -> list[str]:
    """Normalize addresses, drop invalid ones and keep first-seen order."""
    seen: set[str] = set()
    ordered: list[str] = []
    for raw in raw_wallets:
        wallet = normalize_wallet(raw)
        if wallet is None or wallet in seen:
            continue
        seen.add(wallet)
        ordered.append(wallet)
    return ordered


def clean_twitter_handle(handle: Any) -> str | None:
    if not isinstance(handle, str) or not handle:
        return None
    clean = handle.strip().lower()
    clean = clean.removeprefix("@")
    clean = _TWITTER_URL_RE.sub("", clean)
    clean = clean.split("/")[0].split("?")[0]
    clean = _TWITTER_INVALID_RE.sub("", clean)
    if not 1 <= len(clean) <= 15:
        return None
    return clean


def twitter_url(handle: str) -> str:
    return f"https://x.com/{handle}"


def farcaster_url(username: str) -> str:
    return f"https://warpcast.com/{username}"


def find_holdings_column(headers: Iterable[str]) -> str | None:
    header_list = list(headers)
    lowered = [header.strip().lower() for header in header_list]
    for pattern in HOLDINGS_COLUMN_PATTERNS:
        for index, header in enumerate(lowered):
            if header == pattern or pattern in header:
                return header_list[index]
    return None


def parse_holdings_value(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if not isinstance(value, str):
        return None
    cleaned = re.sub(r"[$,\s]", "", value)
    try:
        parsed = float(cleaned)
    except ValueError:
        return None
    if math.isnan(parsed):
        return None
    return parsed


def calculate_priority_score(holdings: float | None, fc_followers: int | None) -> float:
    h = holdings or 1
    f = fc_followers or 1
    return h * math.log10(f + 1)


def wallet_side_data(original_data: Mapping[str, Any], wallet: str) -> dict[str, Any]:
    raw = original_data.get(wallet)
    return dict(raw) if isinstance(raw, Mapping) else {}
