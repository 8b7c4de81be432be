import math

from walletlookup.core.wallets import (
    calculate_priority_score,
    clean_twitter_handle,
    dedupe_wallets,
    find_holdings_column,
    normalize_wallet,
    parse_holdings_value,
)

WALLET_A = "0x" + "a" * 40
WALLET_B = "0x" + "b" * 40


def test_dedupe_wallets_normalizes_and_keeps_first_seen_order() -> None:
    raw = [WALLET_A, "0x" + "A" * 40, f"  {WALLET_B} ", "not-a-wallet", "0x1234", None]
    assert dedupe_wallets(raw) == [WALLET_A, WALLET_B]


def test_normalize_wallet_rejects_wrong_length_and_prefix() -> None:
    assert normalize_wallet("0x" + "g" * 40) is None
    assert normalize_wallet("a" * 42) is None
    assert normalize_wallet(42) is None
    assert normalize_wallet("0X" + "F" * 40) == "0x" + "f" * 40


def test_clean_twitter_handle_strips_prefixes_and_urls() -> None:
    assert clean_twitter_handle("@VitalikButerin") == "vitalikbuterin"
    assert clean_twitter_handle("https://x.com/jack/status/1") == "jack"
    assert clean_twitter_handle("https://twitter.com/dwr?ref=bio") == "dwr"
    assert clean_twitter_handle("a" * 16) is None
    assert clean_twitter_handle("") is None
    assert clean_twitter_handle(None) is None


def test_find_holdings_column_prefers_known_patterns() -> None:
    assert find_holdings_column(["Wallet", "USD Value"]) == "USD Value"
    assert find_holdings_column(["address", "Balance"]) == "Balance"
    assert find_holdings_column(["wallet", "name"]) is None


def test_parse_holdings_value_handles_currency_strings() -> None:
    assert parse_holdings_value("$1,234.50") == 1234.5
    assert parse_holdings_value(12) == 12.0
    assert parse_holdings_value("n/a") is None
    assert parse_holdings_value(True) is None


def test_priority_score_weights_holdings_by_follower_reach() -> None:
    assert calculate_priority_score(1000, 99) == 2000.0
    assert math.isclose(calculate_priority_score(None, None), math.log10(2))
