#!/usr/bin/env python3
"""
GhostVault operator CLI.

Thin client over the daemon's internal RPC.
"""

import asyncio
import json
import time
from typing import Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from .api.client import GVClient
from .core.config import settings
from .core.exceptions import GhostVaultException


console = Console()
app = typer.Typer(help="Control a running GhostVault daemon")


def _call(method: str, **params: Any) -> Any:
    async def _run():
        async with GVClient() as client:
            return await client.call(method, **params)

    try:
        return asyncio.run(_run())
    except GhostVaultException as e:
        console.print(f"❌ {e.message}")
        raise typer.Exit(1)
    except OSError as e:
        console.print(f"❌ GhostVault is not reachable at {settings.cli_address}: {e}")
        raise typer.Exit(1)


def _table(title: str, data: dict) -> Table:
    table = Table(title=title)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    for key, value in data.items():
        if isinstance(value, dict):
            value = ", ".join(f"{k}: {v}" for k, v in value.items())
        table.add_row(key, str(value))
    return table


@app.command()
def status():
    """Show daemon and staking status."""
    console.print(_table("GhostVault Status", _call("get_daemon_state")))


@app.command()
def overview():
    """Show staking totals per period."""
    data = _call("get_overview")
    table = Table(title="Staking Overview")
    table.add_column("Period", style="cyan")
    table.add_column("Stakes", justify="right")
    table.add_column("Rewards", justify="right")
    table.add_column("AGVR", justify="right")
    table.add_column("Total", justify="right", style="green")

    console.print(f"Staking: {data['total_staking']}  Cold staking: {data['total_coldstaking']}")
    for key, totals in data.items():
        if not key.startswith("stakes_"):
            continue
        table.add_row(
            key.removeprefix("stakes_"),
            str(totals["stakes"]),
            f"{totals['rewards']:.8f}",
            f"{totals['agvr']:.8f}",
            f"{totals['total']:.8f}",
        )
    console.print(table)


@app.command()
def pending():
    """Show rewards waiting for anonymisation or payout."""
    console.print(_table("Pending Rewards", _call("get_pending_rewards")))


@app.command()
def version():
    """Show GhostVault and ghostd versions."""
    console.print(_table("Versions", _call("get_version_info")))


@app.command()
def rewards():
    """Show the reward payout options."""
    console.print(_table("Reward Options", _call("get_reward_options")))


@app.command("set-reward-mode")
def set_reward_mode(
    mode: str = typer.Argument(..., help="ANON, STANDARD or DEFAULT"),
    address: Optional[str] = typer.Argument(None, help="Payout address"),
):
    """Change where rewards are paid."""
    console.print(_call("set_reward_mode", mode=mode, address=address))


@app.command("set-interval")
def set_interval(interval: str = typer.Argument(..., help="e.g. 15m, 6h, 1d, 1w")):
    """Set the reward payout interval."""
    console.print(_call("set_reward_interval", interval=interval))


@app.command("set-min")
def set_min(min_payout: float = typer.Argument(..., help="Minimum payout in GHOST")):
    """Set the minimum reward payout."""
    console.print(_call("set_payout_min", min_payout=min_payout))


@app.command("set-timezone")
def set_timezone(tz: str):
    """Set the timezone used for stats and charts."""
    console.print(_call("set_timezone", timezone=tz))


@app.command("enable-bot")
def enable_bot(token: str, user: str):
    """Enable Telegram notifications."""
    console.print(_call("enable_telegram_bot", token=token, user=user))


@app.command("disable-bot")
def disable_bot():
    """Disable Telegram notifications."""
    console.print(_call("disable_telegram_bot"))


@app.command("announce")
def announce(
    msg_type: str = typer.Argument(..., help="STAKE, ZAP, REWARD or ALL"),
    enabled: bool = typer.Option(True, "--on/--off"),
):
    """Toggle bot announcements."""
    console.print(_call("set_bot_announce", msg_type=msg_type, enabled=enabled))


@app.command("validate-address")
def validate_address(address: str):
    """Check an address against the wallet."""
    console.print(_table("Address", _call("validate_address", address=address)))


@app.command("ext-pub-key")
def ext_pub_key():
    """Print the extended public key for cold staking."""
    console.print(_call("get_ext_pub_key"))


@app.command()
def mnemonic():
    """Print the wallet mnemonic."""
    if not typer.confirm("This prints your wallet seed. Continue?"):
        console.print("❌ Operation cancelled")
        return
    result = _call("get_mnemonic")
    console.print(result if result else "No mnemonic stored")


@app.command("import-wallet")
def import_wallet(name: str):
    """Import a wallet from a mnemonic and switch staking to it."""
    words = typer.prompt("Mnemonic", hide_input=True)
    console.print(_call("import_wallet", mnemonic=words, name=name))


@app.command("check-chain")
def check_chain():
    """Report whether the node is on the same chain as the reference nodes."""
    console.print("✅ Good chain" if _call("check_chain") else "❌ Chain mismatch")


@app.command()
def update():
    """Check for and install a new ghostd release."""
    result = _call("process_daemon_update")
    if result is False:
        console.print("Ghost daemon is up to date")
    else:
        console.print(result)


@app.command()
def resync():
    """Wipe the node's chain data and resync."""
    if not typer.confirm("Delete blocks and chainstate and resync?"):
        console.print("❌ Operation cancelled")
        return
    console.print(_call("force_resync"))


@app.command()
def payout():
    """Run a reward payout now."""
    _call("process_payouts")
    console.print("Payout started")


@app.command()
def chart(
    days: int = typer.Option(30, help="Days back, 0 for everything"),
    division: str = typer.Option("day", help="day, week or month"),
):
    """Print stake counts per day, week or month."""
    now = int(time.time())
    start = now - days * 86400 if days else 0
    data = _call("get_stake_barchart_data", start=start, end=now, division=division)

    table = Table(title=f"Stakes per {division} ({data['start']} - {data['end']})")
    table.add_column("Period", style="cyan")
    table.add_column("Stakes", justify="right", style="green")
    for bucket, count in data["data"]:
        table.add_row(time.strftime("%Y-%m-%d", time.gmtime(bucket)), str(count))
    console.print(table)


@app.command()
def earnings(days: int = typer.Option(0, help="Days back, 0 for everything")):
    """Dump the cumulative earnings series as JSON."""
    now = int(time.time())
    start = now - days * 86400 if days else 0
    console.print_json(json.dumps(_call("get_earnings_chart_data", start=start, end=now)))


@app.command()
def shutdown():
    """Stop GhostVault."""
    console.print(_call("shutdown"))


if __name__ == "__main__":
    app()
