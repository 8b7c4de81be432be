from __future__ import annotations

from datetime import datetime, timezone

from walletlookup.services.records import JobRecord


def lease_expired(job: JobRecord, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    lease = job.lease_expires_at
    if lease is None:
        return False
    return lease <= now


def can_claim(job: JobRecord, now: datetime | None = None) -> bool:
    """Pending jobs, and processing jobs whose holder let the lease lapse or released it."""
    if job.status == "pending":
        return True
    if job.status != "processing":
        return False
    return job.lease_expires_at is None or lease_expired(job, now=now)
