# Simple CLI for Trade Sync
import asyncio

import click

from app.main import ApplicationOrchestrator
from core.utils.exceptions import ConfigurationError


@click.group()
def cli():
    """Trade Sync CLI"""
    pass


@cli.command()
@click.argument("symbols", nargs=-1, required=True)
@click.option("--resolution", "-r", default="1", show_default=True,
              help="Bar resolution (1, 5, 15, 60, 240, 1D, 1W, 1M)")
def stream(symbols, resolution):
    """Print live bars for SYMBOLS until interrupted"""
    click.echo(f"📈 Streaming {', '.join(symbols)} @ {resolution}...")

    def print_bar(bar):
        click.echo(f"{bar.time} O={bar.open} H={bar.high} L={bar.low} C={bar.close} V={bar.volume}")

    app = ApplicationOrchestrator(enable_sync=False, stream_symbols=symbols,
                                  resolution=resolution, on_bar=print_bar)
    asyncio.run(app.run())


@cli.command()
@click.option("--account-id", default=None, help="Override METAAPI__ACCOUNT_ID")
def sync(account_id):
    """Reconcile account positions and orders until interrupted"""
    from core.config.settings import Settings

    settings = Settings()
    if account_id:
        settings.metaapi.account_id = account_id
    click.echo(f"🔄 Syncing account {settings.metaapi.account_id or '<unset>'}...")
    try:
        app = ApplicationOrchestrator(settings=settings, enable_sync=True)
    except ConfigurationError as e:
        raise click.ClickException(f"{e.message} (set {e.config_field} or pass --account-id)")
    asyncio.run(app.run())


if __name__ == "__main__":
    cli()
