#!/usr/bin/env python3
"""
Business Central record gateway (items, customers, vendors, orders, ...)

Features:
- OAuth2 bearer token, renewed once on 401
- Config-driven collections per company (bcsync.config.json)
- Paginated reads following @odata.nextLink
- Idempotent upserts: create when absent, PATCH only what changed
- Optimistic concurrency via If-Match, stale etags refreshed and resubmitted
- Linear-backoff retries for 409/503, dry-run, limit
- Structured logging

Usage:
  export $(grep -v '^#' .env | xargs)  # or rely on python-dotenv
  python bcsync.py verify
  python bcsync.py fetch CRONUS items --output items.json
  python bcsync.py upsert CRONUS items payloads.json --preload
  python bcsync.py upsert CRONUS customers customers.json --dry-run
  python bcsync.py action CRONUS salesOrders SO-1001 release
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import click
import httpx
import structlog
from pydantic import ValidationError

from bcsync_auth import build_token_cache
from bcsync_config import ConfigError, company_config, entity_config, load_config
from bcsync_http import BcClient, resolve_url
from bcsync_models import BatchSummary, Err, UpsertStatus
from bcsync_settings import SettingsStrict, get_settings, missing_required_keys, require_settings
from bcsync_upsert import EntityUpsert

# Configure structured logging
logging.basicConfig(level=logging.INFO, format="%(message)s", handlers=[logging.StreamHandler()])
logger = structlog.get_logger()


def print_msg(msg):
    print(msg)


def print_error(msg):
    print(f"ERROR: {msg}")


def print_success(msg):
    print(f"SUCCESS: {msg}")


# ---------- CLI helpers ----------
def ensure_env() -> SettingsStrict:
    """Validate required environment variables"""
    missing = missing_required_keys()
    if missing:
        print_error(f"Missing environment variables: {', '.join(missing)}")
        print_msg("Copy env.example to .env and fill in the values")
        raise click.ClickException("Missing required environment variables")
    # Type validation via Pydantic
    try:
        return require_settings()
    except (ValidationError, ValueError) as e:
        print_error(f"Invalid environment configuration: {e}")
        raise click.ClickException("Invalid environment configuration") from e


def _set_verbose(verbose: bool) -> None:
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


@asynccontextmanager
async def open_client(obj: dict, settings: SettingsStrict, company: str) -> AsyncIterator[BcClient]:
    """Shared AsyncClient + token cache for one command run.

    ``obj`` may carry a "transport" and "credentials" override.
    """
    credentials = obj.get("credentials") or build_token_cache(settings)
    async with httpx.AsyncClient(
        timeout=settings.HTTP_TIMEOUT,
        headers={"Accept": "application/json"},
        transport=obj.get("transport"),
    ) as http:
        yield BcClient(http, credentials, settings.retry_policy(), company=company)


def _entity(settings: SettingsStrict, config_path: str | None, company: str, entity: str):
    try:
        cfg = load_config(config_path or settings.CONFIG_PATH)
        return company_config(cfg, company), entity_config(cfg, company, entity)
    except (FileNotFoundError, ConfigError, ValidationError, ValueError) as e:
        print_error(f"Configuration error: {e}")
        raise click.ClickException(str(e)) from e


def _read_payloads(path: str) -> list[Any]:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict):
        return [data]
    if not isinstance(data, list):
        raise click.ClickException(f"{path}: expected a JSON array of payloads")
    return data


def _print_summary(summary: BatchSummary, dry_run: bool) -> None:
    print_msg("\nSync Summary:")
    print_msg(f"  Processed: {summary.processed}")
    print_msg(f"  Created: {summary.count(UpsertStatus.CREATED)}")
    print_msg(f"  Patched: {summary.count(UpsertStatus.PATCHED)}")
    print_msg(f"  Unchanged: {summary.count(UpsertStatus.UNCHANGED)}")
    print_msg(f"  Skipped: {summary.count(UpsertStatus.SKIPPED)}")
    print_msg(f"  Errors: {summary.count(UpsertStatus.FAILED)}")
    for outcome in summary.failures:
        print_msg(f"    {outcome.key or '?'}: {outcome.reason}")

    if dry_run:
        print_msg("DRY RUN - No records were actually written")
    elif not summary.failures:
        print_success("Sync completed!")


@click.group()
@click.option("--config", "config_path", default=None, help="config file (default: $BCSYNC_CONFIG)")
@click.pass_context
def cli(ctx, config_path):
    """Business Central record gateway"""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path or get_settings().CONFIG_PATH


@cli.command()
@click.pass_obj
def verify(obj):
    """Check env, config, and authenticate against the API."""
    print_msg("Verifying setup...")

    try:
        settings = ensure_env()
        print_success("Environment variables OK")
    except click.ClickException:
        return

    try:
        load_config(obj.get("config_path") or settings.CONFIG_PATH)
        print_success("Configuration file OK")
    except Exception as e:
        print_error(f"Configuration error: {e}")
        return

    async def _check() -> None:
        async with open_client(obj, settings, "") as client:
            try:
                await client.authorize()
            except Exception as e:
                print_error(f"Authentication failed: {e}")
                return
            print_success("Authentication OK")

            result = await client.request(
                "GET", resolve_url(settings.API_BASE, "companies"), source="verify"
            )
            if isinstance(result, Err):
                print_error(f"API test failed: {result.reason}")
                return
            print_success("API connection OK")
            print_success("All checks passed! Ready to sync.")

    asyncio.run(_check())


@cli.command()
@click.argument("company")
@click.argument("entity")
@click.option("--filter", "filter_expr", help="OData $filter expression")
@click.option("--output", type=click.Path(dir_okay=False), help="write records to a JSON file")
@click.option("--verbose", is_flag=True, help="verbose logging")
@click.pass_obj
def fetch(obj, company, entity, filter_expr, output, verbose):
    """Read a whole collection, keyed by its natural key."""
    _set_verbose(verbose)
    settings = ensure_env()
    company_cfg, ent = _entity(settings, obj.get("config_path"), company, entity)

    async def _run():
        async with open_client(obj, settings, company) as client:
            upserter = EntityUpsert(client, entity, ent, settings.API_BASE, company_cfg.company_id)
            return await upserter.preload(filter_expr)

    records = asyncio.run(_run())
    data = {key: record.to_dict() for key, record in records.items()}
    text = json.dumps(data, indent=2, ensure_ascii=False)
    if output:
        Path(output).write_text(text, encoding="utf-8")
        print_success(f"Wrote {len(data)} {entity} to {output}")
    else:
        print(text)
    if not records.complete:
        raise click.ClickException("Read stopped early; output is partial")


@cli.command()
@click.argument("company")
@click.argument("entity")
@click.argument("payload_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--preload", is_flag=True, help="fetch the collection once and look records up locally")
@click.option("--limit", type=int, default=0, help="max records; 0 = unlimited")
@click.option("--dry-run", is_flag=True, help="decide create/update but don't write")
@click.option("--verbose", is_flag=True, help="verbose logging")
@click.pass_obj
def upsert(obj, company, entity, payload_file, preload, limit, dry_run, verbose):
    """Create or update ENTITY records from a JSON file of payloads."""
    _set_verbose(verbose)
    settings = ensure_env()
    company_cfg, ent = _entity(settings, obj.get("config_path"), company, entity)
    payloads = _read_payloads(payload_file)

    async def _run() -> BatchSummary:
        async with open_client(obj, settings, company) as client:
            upserter = EntityUpsert(
                client, entity, ent, settings.API_BASE, company_cfg.company_id, dry_run=dry_run
            )
            cache = await upserter.preload() if preload else None
            if cache is not None and not cache.complete:
                logger.warning("Preload incomplete, missing records are looked up one by one")
            return await upserter.upsert_many(payloads, cache, limit)

    summary = asyncio.run(_run())
    _print_summary(summary, dry_run)
    if summary.failures:
        raise click.exceptions.Exit(1)


@cli.command()
@click.argument("company")
@click.argument("entity")
@click.argument("key")
@click.option("--dry-run", is_flag=True, help="look the record up but don't delete")
@click.pass_obj
def delete(obj, company, entity, key, dry_run):
    """Delete the ENTITY record with natural key KEY."""
    settings = ensure_env()
    company_cfg, ent = _entity(settings, obj.get("config_path"), company, entity)

    async def _run():
        async with open_client(obj, settings, company) as client:
            upserter = EntityUpsert(
                client, entity, ent, settings.API_BASE, company_cfg.company_id, dry_run=dry_run
            )
            return await upserter.delete(key)

    outcome = asyncio.run(_run())
    if outcome.failed:
        raise click.ClickException(outcome.reason)
    print_msg(f"{entity} {key}: {outcome.status.value} ({outcome.reason or 'ok'})")


@cli.command()
@click.argument("company")
@click.argument("entity")
@click.argument("key")
@click.argument("action_name")
@click.option("--dry-run", is_flag=True, help="look the record up but don't run the action")
@click.pass_obj
def action(obj, company, entity, key, action_name, dry_run):
    """Run a configured bound action (e.g. release) on the record KEY."""
    settings = ensure_env()
    company_cfg, ent = _entity(settings, obj.get("config_path"), company, entity)

    async def _run():
        async with open_client(obj, settings, company) as client:
            upserter = EntityUpsert(
                client, entity, ent, settings.API_BASE, company_cfg.company_id, dry_run=dry_run
            )
            return await upserter.run_action(key, action_name)

    outcome = asyncio.run(_run())
    if outcome.failed:
        raise click.ClickException(outcome.reason)
    print_success(f"{entity} {key}: {action_name} done")


if __name__ == "__main__":
    cli(obj={})
