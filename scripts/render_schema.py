#!/usr/bin/env python3
"""Emit the Postgres schema for walletlookup, optionally with a plan and API key seed."""

from __future__ import annotations

import argparse
import hashlib

SCHEMA_SQL = """-- walletlookup schema
create extension if not exists pgcrypto;

create table if not exists lookup_jobs (
  id uuid primary key default gen_random_uuid(),
  wallets text[] not null,
  original_data jsonb not null default '{}'::jsonb,
  options jsonb not null default '{}'::jsonb,
  status text not null default 'pending'
    check (status in ('pending', 'processing', 'completed', 'failed')),
  processed_count integer not null default 0 check (processed_count >= 0),
  current_stage text,
  twitter_found integer not null default 0,
  farcaster_found integer not null default 0,
  any_social_found integer not null default 0,
  cache_hits integer not null default 0,
  partial_results jsonb not null default '[]'::jsonb,
  error_message text,
  user_id text,
  attempt integer not null default 0,
  lease_owner text,
  lease_expires_at timestamptz,
  created_at timestamptz not null default now(),
  started_at timestamptz,
  updated_at timestamptz not null default now(),
  completed_at timestamptz,
  check (processed_count <= cardinality(wallets)),
  check (status <> 'completed' or processed_count = cardinality(wallets))
);

create index if not exists lookup_jobs_claim_idx
  on lookup_jobs (created_at)
  where status in ('pending', 'processing');

create table if not exists identity_cache (
  wallet text primary key,
  ens_name text,
  twitter_handle text,
  twitter_url text,
  twitter_verified boolean not null default false,
  farcaster text,
  farcaster_url text,
  fc_followers integer,
  fc_fid bigint,
  farcaster_verified boolean not null default false,
  lens text,
  github text,
  sources text[] not null default '{}',
  data_quality_score integer not null default 0,
  first_seen_at timestamptz not null default now(),
  last_verification_at timestamptz,
  last_updated_at timestamptz,
  stale_at timestamptz,
  lookup_count integer not null default 0,
  last_attempt_at timestamptz,
  last_attempt_failed boolean not null default false
);

create index if not exists identity_cache_stale_idx
  on identity_cache (last_attempt_failed desc, stale_at asc)
  where stale_at is not null;

create table if not exists identity_cache_history (
  id bigserial primary key,
  wallet text not null,
  field_changed text not null,
  old_value text,
  new_value text,
  change_source text,
  changed_at timestamptz not null default now()
);

create index if not exists identity_cache_history_wallet_idx
  on identity_cache_history (wallet, changed_at);

create table if not exists api_plans (
  id text primary key,
  requests_per_minute integer not null,
  requests_per_day integer not null,
  requests_per_month integer not null,
  max_batch_size integer not null default 100
);

create table if not exists api_keys (
  id uuid primary key default gen_random_uuid(),
  key_hash text not null unique,
  plan_id text not null references api_plans (id),
  user_id text,
  rate_limit integer,
  daily_limit integer,
  monthly_limit integer,
  is_active boolean not null default true,
  revoked_at timestamptz,
  created_at timestamptz not null default now()
);

create table if not exists rate_limit_counters (
  api_key_id text not null,
  window_kind text not null check (window_kind in ('minute', 'day', 'month')),
  window_start timestamptz not null,
  count integer not null default 0 check (count >= 0),
  updated_at timestamptz not null default now(),
  primary key (api_key_id, window_kind, window_start)
);

create table if not exists lookup_history (
  id uuid primary key default gen_random_uuid(),
  name text,
  user_id text,
  job_id uuid references lookup_jobs (id) on delete set null,
  wallet_count integer not null,
  twitter_found integer not null default 0,
  farcaster_found integer not null default 0,
  results jsonb not null default '[]'::jsonb,
  created_at timestamptz not null default now()
);

create table if not exists provider_metrics (
  id bigserial primary key,
  provider text not null,
  latency_ms integer not null,
  status_code integer not null,
  wallet_count integer not null,
  batch_count integer not null default 0,
  error_count integer not null default 0,
  error_message text,
  job_id uuid,
  created_at timestamptz not null default now()
);
"""


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def render_plan_sql(*, plan_id: str, per_minute: int, per_day: int, per_month: int, max_batch_size: int) -> str:
    return f"""
insert into api_plans (id, requests_per_minute, requests_per_day, requests_per_month, max_batch_size)
values ({_quote_sql(plan_id)}, {per_minute}, {per_day}, {per_month}, {max_batch_size})
on conflict (id) do update
set
  requests_per_minute = excluded.requests_per_minute,
  requests_per_day = excluded.requests_per_day,
  requests_per_month = excluded.requests_per_month,
  max_batch_size = excluded.max_batch_size;
"""


def render_api_key_sql(*, raw_key: str, plan_id: str, user_id: str | None) -> str:
    key_hash = hashlib.sha256(raw_key.encode("utf-8")).hexdigest()
    user_value = _quote_sql(user_id) if user_id else "null"
    return f"""
insert into api_keys (key_hash, plan_id, user_id)
values ({_quote_sql(key_hash)}, {_quote_sql(plan_id)}, {user_value})
on conflict (key_hash) do nothing;
"""


def render_sql(
    *,
    plan_id: str | None = None,
    per_minute: int = 60,
    per_day: int = 10000,
    per_month: int = -1,
    max_batch_size: int = 100,
    api_key: str | None = None,
    user_id: str | None = None,
) -> str:
    parts = [SCHEMA_SQL]
    if plan_id:
        parts.append(
            render_plan_sql(
                plan_id=plan_id,
                per_minute=per_minute,
                per_day=per_day,
                per_month=per_month,
                max_batch_size=max_batch_size,
            )
        )
        if api_key:
            parts.append(render_api_key_sql(raw_key=api_key, plan_id=plan_id, user_id=user_id))
    return "".join(parts)


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit walletlookup DDL and optional plan/API key seed SQL.")
    parser.add_argument("--plan-id", help="Seed (or update) an API plan with this id")
    parser.add_argument("--per-minute", type=int, default=60, help="Requests per minute; -1 for unlimited")
    parser.add_argument("--per-day", type=int, default=10000, help="Requests per day; -1 for unlimited")
    parser.add_argument("--per-month", type=int, default=-1, help="Requests per month; -1 for unlimited")
    parser.add_argument("--max-batch-size", type=int, default=100, help="Maximum wallets per job for the plan")
    parser.add_argument("--api-key", help="Raw API key to register on the plan (stored as sha256)")
    parser.add_argument("--user-id", help="Owner recorded on the API key")
    args = parser.parse_args()

    if args.api_key and not args.plan_id:
        parser.error("--api-key requires --plan-id")

    print(
        render_sql(
            plan_id=args.plan_id,
            per_minute=args.per_minute,
            per_day=args.per_day,
            per_month=args.per_month,
            max_batch_size=args.max_batch_size,
            api_key=args.api_key,
            user_id=args.user_id,
        )
    )


if __name__ == "__main__":
    main()
