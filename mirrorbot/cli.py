"""CLI entry point for the Polymarket mirror bot.

Commands:
  mirrorbot resolve <id>      Resolve a profile, slug or address to its trading wallet
  mirrorbot positions <id>    Show the target's open positions
  mirrorbot orders <id>       Show the target's resting orders
  mirrorbot history <id>      Show the target's recent trades
  mirrorbot insight <id>      LLM summary of the target's trading style
  mirrorbot wallet            Show balances of the operator's wallet
  mirrorbot check-rpc         Validate the configured RPC endpoint
  mirrorbot cancel-all        Cancel the operator's resting CLOB orders
  mirrorbot run               Start the mirroring engine (Ctrl-C to stop)
"""

from __future__ import annotations

import asyncio
from typing import Any

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from mirrorbot.config import BotConfig, ConfigWatcher, load_config
from mirrorbot.models import MonitoringMode
from mirrorbot.observability.event_log import EngineEvent, EventKind
from mirrorbot.observability.logger import configure_logging, get_logger

load_dotenv()

console = Console()
log = get_logger(__name__)

_KIND_STYLES = {
    EventKind.INFO: "dim",
    EventKind.PENDING: "yellow",
    EventKind.FRONTRUN: "magenta",
    EventKind.SUCCESS: "green",
    EventKind.ERROR: "bold red",
    EventKind.RETRY: "cyan",
}


def _run(coro: Any) -> Any:
    """Run an async coroutine from sync CLI."""
    return asyncio.run(coro)


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config.yaml")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """Polymarket copy-trading bot."""
    ctx.ensure_object(dict)
    cfg = load_config(config_path)
    ctx.obj["config"] = cfg
    ctx.obj["config_path"] = config_path
    configure_logging(
        level=cfg.observability.log_level,
        fmt="console",  # CLI always uses console format
        log_file=cfg.observability.log_file,
    )


async def _resolve(services: Any, identifier: str) -> str | None:
    address = await services.resolver.resolve(identifier)
    if address is None:
        console.print(f"[red]Could not resolve {identifier!r} to a wallet address.[/red]")
    return address


# ─── RESOLVE ─────────────────────────────────────────────────────────

@cli.command()
@click.argument("identifier")
@click.pass_context
def resolve(ctx: click.Context, identifier: str) -> None:
    """Resolve a profile URL, @handle or address to its trading wallet."""
    cfg: BotConfig = ctx.obj["config"]

    async def _go() -> str | None:
        from mirrorbot.engine.loop import Services

        services = Services(cfg)
        try:
            return await _resolve(services, identifier)
        finally:
            await services.close()

    address = _run(_go())
    if address:
        console.print(f"[bold]{identifier}[/bold] → [green]{address}[/green]")


# ─── POSITIONS ───────────────────────────────────────────────────────

@cli.command()
@click.argument("identifier")
@click.pass_context
def positions(ctx: click.Context, identifier: str) -> None:
    """Show open positions for a target."""
    cfg: BotConfig = ctx.obj["config"]

    async def _go() -> tuple[str | None, Any]:
        from mirrorbot.engine.loop import Services

        services = Services(cfg)
        try:
            address = await _resolve(services, identifier)
            if address is None:
                return None, None
            return address, await services.aggregator.fetch_positions(address, identifier)
        finally:
            await services.close()

    address, rows = _run(_go())
    if address is None:
        return
    if rows is None:
        console.print("[red]Could not reach any position backend. Try again shortly.[/red]")
        return
    if not rows:
        console.print(f"[yellow]No open positions for {address}.[/yellow]")
        return

    table = Table(title=f"📈 Open Positions ({len(rows)})")
    table.add_column("Market", max_width=50)
    table.add_column("Outcome", style="cyan")
    table.add_column("Entry", justify="right")
    table.add_column("Price", justify="right", style="yellow")
    table.add_column("Shares", justify="right")
    table.add_column("PnL", justify="right")
    for p in rows:
        pnl_style = "green" if p.pnl >= 0 else "red"
        table.add_row(
            p.market_label[:50],
            p.outcome.value,
            f"{p.entry_price:.1f}¢",
            f"{p.current_price:.1f}¢",
            f"{p.size_shares:,.2f}",
            f"[{pnl_style}]${p.pnl:,.2f}[/{pnl_style}]",
        )
    console.print(table)


# ─── ORDERS ──────────────────────────────────────────────────────────

@cli.command()
@click.argument("identifier")
@click.pass_context
def orders(ctx: click.Context, identifier: str) -> None:
    """Show resting orders for a target."""
    cfg: BotConfig = ctx.obj["config"]

    async def _go() -> list[Any]:
        from mirrorbot.engine.loop import Services

        services = Services(cfg)
        try:
            address = await _resolve(services, identifier)
            if address is None:
                return []
            return await services.aggregator.fetch_open_orders(address, identifier)
        finally:
            await services.close()

    rows = _run(_go())
    table = Table(title=f"📋 Open Orders ({len(rows)})")
    table.add_column("ID", style="dim", max_width=14)
    table.add_column("Token", max_width=16)
    table.add_column("Side", style="cyan")
    table.add_column("Price", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Filled", justify="right")
    for o in rows:
        table.add_row(
            o.id[:14], o.market_ref[:16], o.side.value,
            f"{o.price:.3f}", f"{o.size:,.2f}", f"{o.filled:,.2f}",
        )
    console.print(table)


# ─── HISTORY / INSIGHT ───────────────────────────────────────────────

async def _history(cfg: BotConfig, identifier: str) -> tuple[str | None, list[Any]]:
    from mirrorbot.engine.loop import Services

    services = Services(cfg)
    try:
        address = await _resolve(services, identifier)
        if address is None:
            return None, []
        return address, await services.aggregator.fetch_trade_history(address)
    finally:
        await services.close()


@cli.command()
@click.argument("identifier")
@click.pass_context
def history(ctx: click.Context, identifier: str) -> None:
    """Show the target's recent settled trades."""
    cfg: BotConfig = ctx.obj["config"]
    _, rows = _run(_history(cfg, identifier))

    table = Table(title=f"🕘 Trade History ({len(rows)})")
    table.add_column("Date", style="dim")
    table.add_column("Market", max_width=50)
    table.add_column("Outcome", style="cyan")
    table.add_column("Amount", justify="right", style="green")
    for h in rows:
        table.add_row(h.date, h.market_label[:50], h.outcome.value, f"${h.amount:,.2f}")
    console.print(table)


@cli.command()
@click.argument("identifier")
@click.pass_context
def insight(ctx: click.Context, identifier: str) -> None:
    """Summarize the target's trading style with an LLM."""
    cfg: BotConfig = ctx.obj["config"]

    async def _go() -> Any:
        from mirrorbot.analytics.insight import InsightClient

        address, rows = await _history(cfg, identifier)
        return await InsightClient(cfg.insight).analyze(rows, address or identifier)

    result = _run(_go())
    risk_style = {"LOW": "green", "MEDIUM": "yellow", "HIGH": "red"}.get(result.risk_level, "white")
    console.print(f"[bold]Strategy:[/bold] {result.strategy_guess}")
    console.print(f"[bold]Risk:[/bold] [{risk_style}]{result.risk_level}[/{risk_style}]")
    console.print(result.summary)


# ─── WALLET / RPC ────────────────────────────────────────────────────

@cli.command()
@click.option("--address", default=None, help="Wallet address (defaults to the configured key's address)")
@click.pass_context
def wallet(ctx: click.Context, address: str | None) -> None:
    """Show native and stablecoin balances for the operator's wallet."""
    cfg: BotConfig = ctx.obj["config"]

    if address is None:
        from mirrorbot.execution.order_signer import InvalidPrivateKey, OrderSigner

        try:
            address = OrderSigner(cfg.trade.private_key).address
        except InvalidPrivateKey:
            console.print("[red]No address given and no valid private key configured.[/red]")
            raise SystemExit(1)

    async def _go() -> Any:
        from mirrorbot.connectors.rpc import RpcClient
        from mirrorbot.engine.wallet_info import fetch_wallet_info

        rpc = RpcClient(cfg.trade.rpc_url)
        try:
            return await fetch_wallet_info(rpc, address)
        finally:
            await rpc.close()

    info = _run(_go())
    if info is None:
        console.print("[red]Wallet info unavailable (RPC unreachable or invalid address).[/red]")
        return

    table = Table(title=f"👛 {info.address} (chain {info.chain_id})")
    table.add_column("Asset", style="cyan")
    table.add_column("Balance", justify="right", style="green")
    table.add_row(info.native_symbol, info.native_balance)
    for t in info.tokens:
        table.add_row(t.symbol, t.balance)
    console.print(table)


@cli.command("check-rpc")
@click.pass_context
def check_rpc(ctx: click.Context) -> None:
    """Validate the configured RPC endpoint."""
    cfg: BotConfig = ctx.obj["config"]

    async def _go() -> dict[str, Any]:
        from mirrorbot.connectors.rpc import RpcClient
        from mirrorbot.engine.wallet_info import validate_rpc_connection

        rpc = RpcClient(cfg.trade.rpc_url)
        try:
            return await validate_rpc_connection(rpc)
        finally:
            await rpc.close()

    result = _run(_go())
    if result["success"]:
        console.print(f"[green]✓ Connected[/green] chain id {result['chain_id']}")
    else:
        console.print(f"[red]✗ {result['error']}[/red]")
        raise SystemExit(1)


@cli.command("cancel-all")
@click.confirmation_option(prompt="Cancel every resting order for the configured key?")
@click.pass_context
def cancel_all(ctx: click.Context) -> None:
    """Cancel all resting orders placed with the configured API key."""
    cfg: BotConfig = ctx.obj["config"]
    from mirrorbot.execution.order_signer import (
        ApiCredentials, ClobOrderClient, InvalidPrivateKey, OrderRejected, OrderSigner,
    )

    trade = cfg.trade
    if not trade.has_api_credentials:
        console.print("[red]API credentials required (POLYMARKET_API_KEY/SECRET/PASSPHRASE).[/red]")
        raise SystemExit(1)
    try:
        address = OrderSigner(trade.private_key).address
    except InvalidPrivateKey:
        console.print("[red]A valid private key is required to identify the wallet.[/red]")
        raise SystemExit(1)
    creds = ApiCredentials(trade.api_key, trade.api_secret, trade.api_passphrase)

    async def _go() -> list[str]:
        client = ClobOrderClient(address, creds, cfg.network.clob_api_url)
        try:
            return await client.cancel_all()
        finally:
            await client.close()

    try:
        cancelled = _run(_go())
    except OrderRejected as e:
        console.print(f"[red]Exchange rejected the cancel request: {e}[/red]")
        raise SystemExit(1)
    console.print(f"[green]✓ Cancelled {len(cancelled)} order(s)[/green]")


# ─── RUN ─────────────────────────────────────────────────────────────

def _print_event(event: EngineEvent) -> None:
    style = _KIND_STYLES.get(event.kind, "white")
    console.print(f"[{style}]{event.kind.value:<8}[/{style}] {event.message}")


@cli.command()
@click.option("--simulate/--live", default=None, help="Override simulation_mode from config")
@click.option(
    "--mode",
    type=click.Choice([m.value for m in MonitoringMode], case_sensitive=False),
    default=None,
    help="Override monitoring mode",
)
@click.option("--target", default=None, help="Override the target wallet")
@click.pass_context
def run(ctx: click.Context, simulate: bool | None, mode: str | None, target: str | None) -> None:
    """Start the mirroring engine."""
    cfg: BotConfig = ctx.obj["config"]
    if simulate is not None:
        cfg.trade.simulation_mode = simulate
    if mode:
        cfg.trade.monitoring_mode = MonitoringMode(mode.upper())
    if target:
        cfg.trade.target_wallet = target

    label = "SIMULATION" if cfg.trade.simulation_mode else "LIVE"
    console.print(f"[bold cyan]🪞 Starting Mirror Engine ({label})[/bold cyan]")
    console.print(f"  Target: {cfg.trade.target_wallet or '-'}")
    console.print(f"  Mode: {cfg.trade.monitoring_mode.value}")
    console.print(f"  Tick interval: {cfg.engine.tick_interval_secs}s")
    console.print(f"  Copy multiplier: {cfg.trade.copy_multiplier}x, min order ${cfg.trade.min_order_amount}")

    async def _run_engine() -> None:
        from mirrorbot.engine.loop import EngineConfigError, EngineLoop

        eng = EngineLoop(cfg, watcher=ConfigWatcher(ctx.obj["config_path"], cfg.trade))
        eng.events.subscribe(_print_event)
        try:
            await eng.start()
        except EngineConfigError as e:
            console.print(f"[red]Configuration Error: {e}[/red]")
            await eng.services.close()
            raise SystemExit(1)
        try:
            await eng.wait()
        finally:
            await eng.aclose()

    try:
        _run(_run_engine())
    except KeyboardInterrupt:
        console.print("\n[yellow]Engine stopped by user.[/yellow]")


if __name__ == "__main__":
    cli()
