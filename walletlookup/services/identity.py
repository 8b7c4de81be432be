"""Normalized identity shape, provider merge rules and cache staleness policy.

Every provider payload is converted into an ``IdentityRecord`` before it is
merged. Two merges happen in the system:

* ``merge_identities`` combines the records returned by several providers for
  one wallet during a single fan-out. Providers are passed in priority order.
  A verified claim beats an unverified one for the same field; between claims
  of equal standing the first provider wins, so results stay reproducible
  across retries.
* ``merge_cache_entry`` folds a fresh (or cache-hit) resolution into the
  durable cache row. It never overwrites a populated field with ``None``,
  and a verified handle is only replaced by another verified one.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta
from typing import Any

from walletlookup.services.records import CacheChange, CacheEntry

# Pseudo-sources that describe where a result was read from, not who asserted it.
TRANSIENT_SOURCES = frozenset({"cache"})

SOURCE_QUALITY_WEIGHTS = {
    "ens": 30,
    "neynar": 25,
    "web3bio": 15,
}
UNKNOWN_SOURCE_WEIGHT = 5

# Fields whose value changes are written to the cache change history.
AUDITED_FIELDS = ("ens_name", "twitter_handle", "farcaster", "lens", "github")

_VERIFIED_FIELDS = {
    "twitter_handle": "twitter_verified",
    "twitter_url": "twitter_verified",
    "farcaster": "farcaster_verified",
    "farcaster_url": "farcaster_verified",
}


@dataclass(slots=True)
class IdentityRecord:
    ens_name: str | None = None
    twitter_handle: str | None = None
    twitter_url: str | None = None
    twitter_verified: bool = False
    farcaster: str | None = None
    farcaster_url: str | None = None
    farcaster_verified: bool = False
    fc_followers: int | None = None
    fc_fid: int | None = None
    lens: str | None = None
    github: str | None = None
    sources: list[str] = field(default_factory=list)

    def has_any_social(self) -> bool:
        return bool(self.twitter_handle or self.farcaster or self.lens or self.github or self.ens_name)

    def as_result_fields(self) -> dict[str, Any]:
        return {
            "ens_name": self.ens_name,
            "twitter_handle": self.twitter_handle,
            "twitter_url": self.twitter_url,
            "twitter_verified": self.twitter_verified,
            "farcaster": self.farcaster,
            "farcaster_url": self.farcaster_url,
            "farcaster_verified": self.farcaster_verified,
            "fc_followers": self.fc_followers,
            "fc_fid": self.fc_fid,
            "lens": self.lens,
            "github": self.github,
        }


VALUE_FIELDS = tuple(
    item.name for item in fields(IdentityRecord) if item.name not in {"sources", "twitter_verified", "farcaster_verified"}
)


def merge_sources(*groups: list[str] | None) -> list[str]:
    merged: list[str] = []
    for group in groups:
        for source in group or []:
            if source in TRANSIENT_SOURCES or source in merged:
                continue
            merged.append(source)
    return merged


def merge_identities(records: list[IdentityRecord]) -> IdentityRecord:
    """Merge provider records for one wallet, given in provider priority order."""
    merged = IdentityRecord()
    claimed_verified: set[str] = set()

    for record in records:
        for name in VALUE_FIELDS:
            value = getattr(record, name)
            if value is None:
                continue
            flag = _VERIFIED_FIELDS.get(name)
            verified = bool(flag and getattr(record, flag))
            current = getattr(merged, name)
            if current is None or (verified and name not in claimed_verified):
                setattr(merged, name, value)
                if verified:
                    claimed_verified.add(name)
        merged.sources = merge_sources(merged.sources, record.sources)

    merged.twitter_verified = "twitter_handle" in claimed_verified
    merged.farcaster_verified = "farcaster" in claimed_verified
    return merged


def calculate_quality_score(sources: list[str], *, has_twitter: bool, has_farcaster: bool) -> int:
    score = 0
    if has_twitter:
        score += 20
    if has_farcaster:
        score += 20
    for source in sources:
        score += SOURCE_QUALITY_WEIGHTS.get(source, UNKNOWN_SOURCE_WEIGHT)
    return min(100, score)


def compute_stale_at(now: datetime, stale_after_days: int) -> datetime:
    return now + timedelta(days=stale_after_days)


def is_fresh(entry: CacheEntry, now: datetime) -> bool:
    """A cache hit is an entry that has been fetched at least once and is not stale yet."""
    return entry.stale_at is not None and entry.stale_at > now and not entry.last_attempt_failed


def entry_to_identity(entry: CacheEntry) -> IdentityRecord:
    return IdentityRecord(
        ens_name=entry.ens_name,
        twitter_handle=entry.twitter_handle,
        twitter_url=entry.twitter_url,
        twitter_verified=entry.twitter_verified,
        farcaster=entry.farcaster,
        farcaster_url=entry.farcaster_url,
        farcaster_verified=entry.farcaster_verified,
        fc_followers=entry.fc_followers,
        fc_fid=entry.fc_fid,
        lens=entry.lens,
        github=entry.github,
        sources=list(entry.sources),
    )


def build_cache_update(
    wallet: str,
    identity: IdentityRecord,
    *,
    now: datetime,
    stale_after_days: int,
) -> CacheEntry:
    """Cache row produced by a successful fresh fetch."""
    sources = merge_sources(identity.sources)
    return CacheEntry(
        wallet=wallet,
        ens_name=identity.ens_name,
        twitter_handle=identity.twitter_handle,
        twitter_url=identity.twitter_url,
        twitter_verified=identity.twitter_verified,
        farcaster=identity.farcaster,
        farcaster_url=identity.farcaster_url,
        farcaster_verified=identity.farcaster_verified,
        fc_followers=identity.fc_followers,
        fc_fid=identity.fc_fid,
        lens=identity.lens,
        github=identity.github,
        sources=sources,
        data_quality_score=calculate_quality_score(
            sources,
            has_twitter=identity.twitter_handle is not None,
            has_farcaster=identity.farcaster is not None,
        ),
        first_seen_at=now,
        last_verification_at=now,
        last_updated_at=now,
        stale_at=compute_stale_at(now, stale_after_days),
        lookup_count=1,
        last_attempt_at=now,
        last_attempt_failed=False,
    )


def build_failed_attempt(wallet: str, identity: IdentityRecord | None, *, now: datetime) -> CacheEntry:
    """Cache row for a wallet whose provider batch failed.

    ``stale_at`` is left unset so an existing deadline is kept; brand-new rows
    become stale immediately, which makes them eligible for the next refresh.
    """
    identity = identity or IdentityRecord()
    sources = merge_sources(identity.sources)
    return CacheEntry(
        wallet=wallet,
        ens_name=identity.ens_name,
        twitter_handle=identity.twitter_handle,
        twitter_url=identity.twitter_url,
        twitter_verified=identity.twitter_verified,
        farcaster=identity.farcaster,
        farcaster_url=identity.farcaster_url,
        farcaster_verified=identity.farcaster_verified,
        fc_followers=identity.fc_followers,
        fc_fid=identity.fc_fid,
        lens=identity.lens,
        github=identity.github,
        sources=sources,
        data_quality_score=0,
        first_seen_at=now,
        last_updated_at=now if identity.has_any_social() else None,
        stale_at=None,
        lookup_count=1,
        last_attempt_at=now,
        last_attempt_failed=True,
    )


def merge_cache_entry(existing: CacheEntry | None, incoming: CacheEntry) -> CacheEntry:
    """Fold ``incoming`` into ``existing`` without clearing any populated field.

    Mirrors the ``coalesce`` upsert used by the Postgres repository.
    """
    if existing is None:
        return replace(
            incoming,
            sources=merge_sources(incoming.sources),
            stale_at=incoming.stale_at or incoming.last_attempt_at,
        )

    values = {}
    for name in VALUE_FIELDS:
        value = getattr(incoming, name)
        flag = _VERIFIED_FIELDS.get(name)
        if value is None or (flag and getattr(existing, flag) and not getattr(incoming, flag)):
            value = getattr(existing, name)
        values[name] = value
    return replace(
        existing,
        **values,
        twitter_verified=existing.twitter_verified or incoming.twitter_verified,
        farcaster_verified=existing.farcaster_verified or incoming.farcaster_verified,
        sources=merge_sources(existing.sources, incoming.sources),
        data_quality_score=max(existing.data_quality_score, incoming.data_quality_score),
        first_seen_at=existing.first_seen_at or incoming.first_seen_at,
        last_verification_at=incoming.last_verification_at or existing.last_verification_at,
        last_updated_at=incoming.last_updated_at or existing.last_updated_at,
        stale_at=incoming.stale_at or existing.stale_at,
        lookup_count=existing.lookup_count + 1,
        last_attempt_at=incoming.last_attempt_at or existing.last_attempt_at,
        last_attempt_failed=incoming.last_attempt_failed,
    )


def diff_cache_entries(existing: CacheEntry | None, merged: CacheEntry, incoming: CacheEntry) -> list[CacheChange]:
    """Audited fields whose value differs between ``existing`` and ``merged``.

    The change source is the first provider named by ``incoming``.
    """
    change_source = next(iter(merge_sources(incoming.sources)), None)
    changes: list[CacheChange] = []
    for name in AUDITED_FIELDS:
        old_value = getattr(existing, name) if existing is not None else None
        new_value = getattr(merged, name)
        if old_value == new_value:
            continue
        changes.append(
            CacheChange(
                wallet=merged.wallet,
                field=name,
                old_value=old_value,
                new_value=new_value,
                change_source=change_source,
                changed_at=incoming.last_attempt_at,
            )
        )
    return changes
