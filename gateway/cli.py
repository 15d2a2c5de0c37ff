"""Admin CLI for the Flixor gateway."""

from __future__ import annotations

import asyncio
import json

import click

from flixor.config import get_settings
from flixor.logging_setup import configure_logging


def run_async(coro):
    """Run an async function in a new event loop."""
    return asyncio.run(coro)


@click.group()
def cli():
    """Flixor gateway administration CLI."""
    settings = get_settings()
    configure_logging(settings.log_level, json=settings.log_json)


@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", default=3001, show_default=True, type=int)
@click.option("--reload", is_flag=True, help="Restart on code changes (development)")
def serve(host, port, reload):
    """Run the gateway under uvicorn."""
    import uvicorn

    uvicorn.run("gateway.main:app", host=host, port=port, reload=reload)


@cli.command("init-secret")
def init_secret():
    """Bootstrap the process secret and report where it came from."""
    from flixor.secret_store import SecretStore

    settings = get_settings()
    store = SecretStore(settings.secret_path, override=settings.session_secret)
    store.get_secret()
    status = store.status()
    click.echo(f"Source: {status['source']}")
    click.echo(f"Path:   {status['path']}")
    if status["degraded"]:
        click.echo("Warning: the secret could not be persisted and will change on restart.")
        raise SystemExit(1)


@cli.command("migrate-credentials")
def migrate_credentials():
    """Encrypt every legacy plaintext credential blob."""
    count = run_async(_migrate_credentials())
    click.echo(f"Migrated {count} credential(s).")


async def _migrate_credentials() -> int:
    from flixor.credentials import migrate_legacy_credentials
    from gateway.state import build_gateway, start, stop

    gateway = build_gateway(get_settings())
    await start(gateway)
    try:
        return await migrate_legacy_credentials(gateway.session_factory, gateway.cipher)
    finally:
        await stop(gateway)


@cli.command("purge-sessions")
def purge_sessions():
    """Delete expired login sessions."""
    removed = run_async(_purge_sessions())
    click.echo(f"Removed {removed} expired session(s).")


async def _purge_sessions() -> int:
    from gateway.state import build_gateway, start, stop

    gateway = build_gateway(get_settings())
    await start(gateway)
    try:
        return await gateway.sessions.purge_expired()
    finally:
        await stop(gateway)


@cli.command("cache-stats")
def cache_stats():
    """Print statistics for the on-disk response cache."""
    from flixor.cache import ResponseCache

    settings = get_settings()
    cache = ResponseCache(settings.cache_path, max_entries=settings.cache_max_entries)
    try:
        cache.load()
    finally:
        cache.close()
    click.echo(json.dumps(cache.stats(), indent=2))


if __name__ == "__main__":
    cli()
