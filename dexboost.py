import asyncio
import logging
import sys

import click
import uvicorn

from api import Services, create_app
from config import ConfigError, Settings, load_settings
from database import get_engine, init_db
from token_store import HOUR_MS


def get_settings(config_path) -> Settings:
    try:
        settings = load_settings(config_path)
    except ConfigError as e:
        click.echo(f"Error: invalid configuration: {e}. Exiting...", err=True)
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return settings


@click.group()
def cli():
    pass


@click.command()
@click.option('--config', 'config_path', default=None, help='Path to a JSON config file (default: $DEXBOOST_CONFIG or ./config.json)')
@click.option('--host', default='0.0.0.0', help='Interface to bind')
@click.option('--port', default=3000, type=int, help='Port to listen on')
def serve(config_path, host, port):
    settings = get_settings(config_path)
    uvicorn.run(create_app(settings), host=host, port=port)


@click.command()
@click.option('--config', 'config_path', default=None, help='Path to a JSON config file')
def init_db_command(config_path):
    settings = get_settings(config_path)
    init_db(get_engine(settings.database_url))
    click.echo("All database tables initialized successfully")


async def _run_once(settings: Settings, job: str):
    services = Services(settings)
    try:
        if job == "hunt":
            # a single tick is always the first one; nothing to compare against
            await services.hunter.tick()
        elif job == "payments":
            await services.pin_orders.poll_once()
    finally:
        await services.stop()


@click.command()
@click.option('--config', 'config_path', default=None, help='Path to a JSON config file')
def hunt_once(config_path):
    settings = get_settings(config_path)
    asyncio.run(_run_once(settings, "hunt"))


@click.command()
@click.option('--config', 'config_path', default=None, help='Path to a JSON config file')
def poll_payments_once(config_path):
    settings = get_settings(config_path)
    asyncio.run(_run_once(settings, "payments"))


@click.command()
@click.option('--config', 'config_path', default=None, help='Path to a JSON config file')
@click.option('--hours', default=None, type=float, help='Delete tokens not boosted in this many hours (default: retention_hours)')
def purge(config_path, hours):
    settings = get_settings(config_path)
    if hours is None:
        hours = settings.retention_hours

    services = Services(settings)
    deleted = services.token_store.purge_stale(int(hours * HOUR_MS))
    if deleted is None:
        click.echo("Cleanup failed", err=True)
        sys.exit(1)
    click.echo(f"Deleted {len(deleted)} tokens not boosted in the last {hours} hours")


cli.add_command(serve)
cli.add_command(init_db_command, name="init-db")
cli.add_command(hunt_once)
cli.add_command(poll_payments_once)
cli.add_command(purge)

if __name__ == "__main__":
    cli()
