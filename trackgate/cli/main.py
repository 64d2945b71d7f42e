"""Command line interface for trackgate.

Runs the gated tracker and administers address and account bans.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

import click
from rich.console import Console
from rich.table import Table

from trackgate.config.config import init_config
from trackgate.models import Config, LogLevel
from trackgate.security.address import InvalidAddress, int_to_address, to_integer
from trackgate.security.gatekeeper import Gatekeeper
from trackgate.tracker_server_http import TrackerGate
from trackgate.utils.exceptions import TrackgateError

T = TypeVar("T")


def _load_config(ctx: click.Context) -> Config:
    try:
        manager = init_config(ctx.obj.get("config"), setup_logs=False)
    except TrackgateError as e:
        raise click.ClickException(str(e)) from e
    if ctx.obj.get("verbose"):
        manager.config.observability.log_level = LogLevel.DEBUG
    manager.configure_logging()
    ctx.obj["config_manager"] = manager
    return manager.config


@contextlib.asynccontextmanager
async def _gatekeeper(config: Config) -> AsyncIterator[Gatekeeper]:
    gatekeeper = Gatekeeper.from_config(config)
    for store in (gatekeeper.ban_store, gatekeeper.identity_store):
        await store.load()
    try:
        yield gatekeeper
    finally:
        await gatekeeper.kv_store.close()


def _run(ctx: click.Context, action: Callable[[Gatekeeper], Awaitable[T]]) -> T:
    """Run ``action`` against a gatekeeper built from the CLI configuration."""
    config = _load_config(ctx)
    if config.store.ban_store_path is None:
        Console(stderr=True).print(
            "[yellow]store.ban_store_path is not set; changes will not persist[/yellow]"
        )

    async def _main() -> T:
        async with _gatekeeper(config) as gatekeeper:
            return await action(gatekeeper)

    try:
        return asyncio.run(_main())
    except TrackgateError as e:
        raise click.ClickException(e.message) from e


def _format_time(value: float) -> str:
    return datetime.fromtimestamp(value).isoformat(timespec="seconds")


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    help="Configuration file path",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, config, verbose):
    """Trackgate - admission control for a private tracker."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["verbose"] = verbose


# ----------------------------------------------------------------------
# serve
# ----------------------------------------------------------------------


@cli.command("serve")
@click.option("--host", default=None, help="Override tracker.host")
@click.option("--port", type=int, default=None, help="Override tracker.port")
@click.pass_context
def serve(ctx, host: str | None, port: int | None) -> None:
    """Run the gated HTTP tracker until interrupted."""
    config = _load_config(ctx)
    if host is not None:
        config.tracker.host = host
    if port is not None:
        config.tracker.port = port
    console = Console()

    async def _serve() -> None:
        gatekeeper = Gatekeeper.from_config(config)
        gate = TrackerGate(gatekeeper)
        await gatekeeper.start()
        await gate.start()
        console.print(
            f"[green]Tracker gate listening on {config.tracker.host}:{config.tracker.port}[/green]"
        )
        try:
            await asyncio.Event().wait()
        finally:
            await gate.stop()
            await gatekeeper.stop()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        console.print("[yellow]Stopped[/yellow]")
    except TrackgateError as e:
        raise click.ClickException(e.message) from e


# ----------------------------------------------------------------------
# address bans
# ----------------------------------------------------------------------


@cli.group("address")
def address_group() -> None:
    """Manage banned address ranges."""


@address_group.command("ban")
@click.argument("from_address")
@click.argument("to_address", required=False)
@click.option("--reason", default=None, help="Why the range is banned")
@click.pass_context
def address_ban(ctx, from_address: str, to_address: str | None, reason: str | None) -> None:
    """Ban an address range.

    Examples:
        trackgate address ban 192.168.1.1 192.168.1.255
        trackgate address ban 10.0.0.0/8 --reason "abuse"
        trackgate address ban 2001:db8::1

    """
    ban = _run(ctx, lambda g: g.ban_address_range(from_address, to_address, reason))
    Console().print(
        f"[green]✓[/green] Banned {int_to_address(ban.from_address)} - "
        f"{int_to_address(ban.to_address)} (id {ban.id})"
    )


@address_group.command("unban")
@click.argument("ban_id", type=int)
@click.pass_context
def address_unban(ctx, ban_id: int) -> None:
    """Remove an address ban by id."""
    ban = _run(ctx, lambda g: g.unban_address_range(ban_id))
    Console().print(
        f"[green]✓[/green] Removed ban {ban.id} "
        f"({int_to_address(ban.from_address)} - {int_to_address(ban.to_address)})"
    )


@address_group.command("list")
@click.option(
    "--format",
    "fmt",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format",
)
@click.pass_context
def address_list(ctx, fmt: str) -> None:
    """List banned address ranges."""
    bans = _run(ctx, lambda g: g.bans.list_address_bans())
    console = Console()

    if fmt == "json":
        rows: list[dict[str, Any]] = [
            {
                "id": b.id,
                "from": int_to_address(b.from_address),
                "to": int_to_address(b.to_address),
                "reason": b.reason,
            }
            for b in bans
        ]
        click.echo(json.dumps(rows, indent=2))
        return

    if not bans:
        console.print("[yellow]No address bans[/yellow]")
        return

    table = Table(title="Address bans")
    table.add_column("ID", justify="right")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Reason")
    for b in bans:
        table.add_row(
            str(b.id),
            int_to_address(b.from_address),
            int_to_address(b.to_address),
            b.reason or "",
        )
    console.print(table)


@address_group.command("check")
@click.argument("address")
@click.pass_context
def address_check(ctx, address: str) -> None:
    """Show whether ADDRESS is inside a banned range."""
    if isinstance(to_integer(address), InvalidAddress):
        msg = f"Invalid address: {address}"
        raise click.ClickException(msg)
    banned = _run(ctx, lambda g: g.bans.is_address_banned(address))
    if banned:
        Console().print(f"[red]{address} is banned[/red]")
    else:
        Console().print(f"[green]{address} is not banned[/green]")


# ----------------------------------------------------------------------
# account bans
# ----------------------------------------------------------------------


@cli.group("account")
def account_group() -> None:
    """Manage account bans."""


@account_group.command("ban")
@click.argument("account_id", type=int)
@click.argument("reason")
@click.option("--by", "issued_by", default="cli", help="Who issues the ban")
@click.option(
    "--days",
    type=click.IntRange(min=1),
    default=None,
    help="Ban length in days (omit for a permanent ban)",
)
@click.pass_context
def account_ban(ctx, account_id: int, reason: str, issued_by: str, days: int | None) -> None:
    """Ban an account."""
    ban = _run(
        ctx, lambda g: g.bans.ban_account_for_days(account_id, reason, issued_by, days)
    )
    until = "permanently" if ban.expires_at is None else f"until {_format_time(ban.expires_at)}"
    Console().print(f"[green]✓[/green] Account {account_id} banned {until} (ban {ban.id})")


@account_group.command("unban")
@click.argument("ban_id", type=int)
@click.option("--by", "actor", default="cli", help="Who lifts the ban")
@click.pass_context
def account_unban(ctx, ban_id: int, actor: str) -> None:
    """Deactivate an account ban by id."""
    ban = _run(ctx, lambda g: g.unban_account(ban_id, actor))
    Console().print(f"[green]✓[/green] Ban {ban.id} on account {ban.account_id} lifted")


@account_group.command("list")
@click.option("--account-id", type=int, default=None, help="Only this account")
@click.option("--active", "active_only", is_flag=True, help="Only active bans")
@click.pass_context
def account_list(ctx, account_id: int | None, active_only: bool) -> None:
    """List account bans."""
    bans = _run(ctx, lambda g: g.bans.list_account_bans(account_id, active_only))
    console = Console()
    if not bans:
        console.print("[yellow]No account bans[/yellow]")
        return

    table = Table(title="Account bans")
    table.add_column("ID", justify="right")
    table.add_column("Account", justify="right")
    table.add_column("Reason")
    table.add_column("Issued by")
    table.add_column("Expires")
    table.add_column("Active")
    for b in bans:
        table.add_row(
            str(b.id),
            str(b.account_id),
            b.reason,
            b.issued_by,
            "never" if b.expires_at is None else _format_time(b.expires_at),
            "yes" if b.active else "no",
        )
    console.print(table)


@cli.command("sweep")
@click.pass_context
def sweep(ctx) -> None:
    """Deactivate expired account bans now."""
    count = _run(ctx, lambda g: g.bans.sweep_expired())
    Console().print(f"[green]✓[/green] Deactivated {count} expired bans")


# ----------------------------------------------------------------------
# config
# ----------------------------------------------------------------------


@cli.group("config")
def config_group() -> None:
    """Inspect configuration."""


@config_group.command("show")
@click.pass_context
def config_show(ctx) -> None:
    """Print the effective configuration as TOML (secret masked)."""
    _load_config(ctx)
    click.echo(ctx.obj["config_manager"].export())


def main():
    """Main CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
