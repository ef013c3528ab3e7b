"""CLI for Agent Wallet - manage per-agent multi-chain wallets from the terminal."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from agent_wallet.config import AgentWalletConfig, backup_dir, load_config
from agent_wallet.errors import AgentWalletError
from agent_wallet.wallet.chains import get_chain, list_chain_names
from agent_wallet.wallet.manager import WalletManager

app = typer.Typer(
    name="agent-wallet",
    help="Create, import, back up and operate blockchain wallets for your agents.",
    no_args_is_help=True,
)
console = Console()

_selected_agent: str = "default"
_config_path: Optional[Path] = None


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        console.print(f"agent-wallet {version('agent-wallet')}")
        raise typer.Exit()


@app.callback()
def main(
    agent: str = typer.Option(
        "default",
        "--agent",
        "-A",
        help="Agent whose wallets to operate on",
        envvar="AGENT_WALLET_AGENT",
    ),
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        help="Path to config.yaml (default: ~/.agent-wallet/config.yaml)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    ),
):
    """Create, import, back up and operate blockchain wallets for your agents."""
    global _selected_agent, _config_path
    _selected_agent = agent
    _config_path = config
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _config() -> AgentWalletConfig:
    return load_config(_config_path)


def _manager() -> WalletManager:
    return WalletManager.from_config(_config())


def _fail(exc: Exception) -> None:
    console.print(f"[red]{exc}[/red]")
    raise typer.Exit(1)


@app.command()
def chains():
    """List supported chains."""
    table = Table(title="Supported Chains")
    table.add_column("Chain", style="cyan")
    table.add_column("Symbol")
    table.add_column("Default path", style="dim")
    for name in list_chain_names():
        spec = get_chain(name)
        table.add_row(name, spec.native_symbol, spec.default_derivation_path)
    console.print(table)


@app.command()
def create(
    chain: str = typer.Option("ethereum", "--chain", "-c", help="Chain for the new wallet"),
    wallet_id: Optional[str] = typer.Option(None, "--id", help="Wallet ID (default: random)"),
    words: int = typer.Option(12, "--words", help="Mnemonic length: 12 or 24"),
):
    """Generate a new wallet from a fresh mnemonic."""
    strength = 256 if words == 24 else 128
    try:
        wallet = _manager().generate_wallet(_selected_agent, chain, strength, wallet_id)
    except AgentWalletError as e:
        _fail(e)

    console.print(Panel(
        f"[bold green]Wallet created![/bold green]\n\n"
        f"ID: [cyan]{wallet.id}[/cyan]\n"
        f"Chain: {wallet.chain.value}\n"
        f"Address: [cyan]{wallet.address}[/cyan]\n\n"
        f"[dim]The mnemonic is stored in the wallet record. Export an encrypted\n"
        f"backup with 'agent-wallet export --encrypted'.[/dim]",
        title=f"Agent {_selected_agent}",
    ))


@app.command("import-key")
def import_key(
    chain: str = typer.Option(..., "--chain", "-c", help="Chain of the key"),
    wallet_id: Optional[str] = typer.Option(None, "--id", help="Wallet ID (default: random)"),
):
    """Import a wallet from a raw hex private key (prompted, not echoed)."""
    private_key = typer.prompt("Private key (hex)", hide_input=True)
    try:
        wallet = _manager().import_wallet_from_private_key(
            _selected_agent, chain, private_key, wallet_id
        )
    except AgentWalletError as e:
        _fail(e)
    console.print(f"[green]Imported[/green] {wallet.id}: [cyan]{wallet.address}[/cyan]")


@app.command("import-seed")
def import_seed(
    chain: str = typer.Option(..., "--chain", "-c", help="Chain to derive for"),
    path: Optional[str] = typer.Option(None, "--path", help="Derivation path override"),
    wallet_id: Optional[str] = typer.Option(None, "--id", help="Wallet ID (default: random)"),
):
    """Import a wallet from a 12- or 24-word mnemonic (prompted, not echoed)."""
    phrase = typer.prompt("Mnemonic", hide_input=True)
    try:
        wallet = _manager().import_wallet_from_mnemonic(
            _selected_agent, chain, phrase, path, wallet_id
        )
    except AgentWalletError as e:
        _fail(e)
    console.print(
        f"[green]Imported[/green] {wallet.id}: [cyan]{wallet.address}[/cyan] "
        f"[dim]({wallet.derivation_path})[/dim]"
    )


@app.command("list")
def list_wallets():
    """List the agent's wallets (no secrets are shown)."""
    try:
        wallets = _manager().load_agent_wallets(_selected_agent)
    except AgentWalletError as e:
        _fail(e)

    if not wallets:
        console.print(f"[yellow]No wallets for agent {_selected_agent}.[/yellow]")
        return

    table = Table(title=f"Wallets of {_selected_agent}")
    table.add_column("ID", style="cyan")
    table.add_column("Chain")
    table.add_column("Address")
    table.add_column("Method", style="dim")
    for wallet in wallets:
        table.add_row(wallet.id, wallet.chain.value, wallet.address, wallet.creation_method.value)
    console.print(table)


@app.command()
def show(wallet_id: str = typer.Argument(help="Wallet ID")):
    """Show one wallet's public details."""
    try:
        wallet = _manager().require_wallet(_selected_agent, wallet_id)
    except AgentWalletError as e:
        _fail(e)

    spec = get_chain(wallet.chain)
    lines = [f"{key}: {value}" for key, value in wallet.public_view().items()]
    if wallet.chain_metadata:
        lines.append(f"chainMetadata: {wallet.chain_metadata}")
    lines.append(f"explorer: {spec.explorer_url}")
    console.print(Panel("\n".join(lines), title=wallet.id))


@app.command()
def remove(
    wallet_id: str = typer.Argument(help="Wallet ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete a wallet record."""
    if not yes:
        typer.confirm(f"Delete wallet {wallet_id} of {_selected_agent}?", abort=True)
    try:
        removed = _manager().remove_wallet(_selected_agent, wallet_id)
    except AgentWalletError as e:
        _fail(e)
    if not removed:
        console.print(f"[red]Wallet {wallet_id} not found.[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Removed[/green] {wallet_id}")


@app.command()
def balance(wallet_id: str = typer.Argument(help="Wallet ID")):
    """Show one wallet's native balance."""
    from agent_wallet.wallet.dispatcher import CrossChainDispatcher, DispatchConfig

    config = _config()
    manager = WalletManager.from_config(config)

    async def _balance():
        wallet = manager.require_wallet(_selected_agent, wallet_id)
        async with CrossChainDispatcher(
            manager,
            _selected_agent,
            DispatchConfig.from_settings(config.dispatcher),
            config.provider_configs(),
        ) as dispatcher:
            return await dispatcher.get_balance(wallet)

    try:
        result = asyncio.run(_balance())
    except AgentWalletError as e:
        _fail(e)
    console.print(f"[bold]{wallet_id}:[/bold] {result.amount} {result.denomination}")


@app.command("multi-balance")
def multi_balance():
    """Check balances of all the agent's wallets concurrently."""
    from agent_wallet.wallet.dispatcher import CrossChainDispatcher, DispatchConfig

    config = _config()
    manager = WalletManager.from_config(config)

    async def _balances():
        async with CrossChainDispatcher(
            manager,
            _selected_agent,
            DispatchConfig.from_settings(config.dispatcher),
            config.provider_configs(),
        ) as dispatcher:
            return await dispatcher.check_balances()

    try:
        entries = asyncio.run(_balances())
    except AgentWalletError as e:
        _fail(e)

    table = Table(title=f"Balances of {_selected_agent}")
    table.add_column("Wallet", style="cyan")
    table.add_column("Chain")
    table.add_column("Balance", justify="right")
    table.add_column("Status", style="dim")
    for entry in entries:
        amount = f"{entry.balance.amount} {entry.balance.denomination}" if entry.balance else "-"
        table.add_row(
            entry.wallet.id,
            entry.wallet.chain.value,
            amount,
            f"[red]{entry.error}[/red]" if entry.error else "[green]OK[/green]",
        )
    console.print(table)


@app.command("multi-send")
def multi_send(
    actions_file: Path = typer.Argument(help="JSON list of {walletId, chain, to, amount}"),
    continue_on_error: bool = typer.Option(
        False, "--continue-on-error", help="Keep dispatching after a failed action"
    ),
    max_concurrency: Optional[int] = typer.Option(
        None, "--max-concurrency", help="Override the configured concurrency limit"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Send a batch of transfers from the agent's wallets."""
    from agent_wallet.wallet.dispatcher import (
        CrossChainDispatcher,
        DispatchConfig,
        MultiChainAction,
    )

    try:
        raw = json.loads(actions_file.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]Cannot read actions from {actions_file}: {e}[/red]")
        raise typer.Exit(1)
    if not isinstance(raw, list) or not raw:
        console.print("[red]Actions file must contain a non-empty JSON list.[/red]")
        raise typer.Exit(1)

    config = _config()
    settings = config.dispatcher
    try:
        actions = [MultiChainAction.from_dict(item) for item in raw]
        dispatch_config = DispatchConfig(
            max_concurrency=max_concurrency or settings.max_concurrency,
            continue_on_error=continue_on_error or settings.continue_on_error,
            call_timeout=settings.call_timeout,
        )
    except AgentWalletError as e:
        _fail(e)

    if not yes:
        typer.confirm(
            f"Dispatch {len(actions)} transfer(s) from agent {_selected_agent}?", abort=True
        )

    manager = WalletManager.from_config(config)

    async def _send():
        async with CrossChainDispatcher(
            manager, _selected_agent, dispatch_config, config.provider_configs()
        ) as dispatcher:
            return await dispatcher.execute(actions)

    summary = asyncio.run(_send())

    table = Table(title=f"Transfers from {_selected_agent}")
    table.add_column("Wallet", style="cyan")
    table.add_column("Chain")
    table.add_column("Amount", justify="right")
    table.add_column("Result")
    for result in summary.results:
        action = result.action
        outcome = (
            f"[green]{result.tx_hash}[/green]" if result.success else f"[red]{result.error}[/red]"
        )
        table.add_row(action.wallet_id, action.chain.value, action.request.amount, outcome)
    console.print(table)
    console.print(
        f"  Total: {summary.total}   Succeeded: {summary.succeeded}   Failed: {summary.failed}"
    )
    if summary.failed:
        raise typer.Exit(1)


@app.command()
def export(
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="File or directory"),
    encrypted: bool = typer.Option(False, "--encrypted", "-e", help="Password-protect the backup"),
):
    """Export the agent's wallets to a backup file."""
    from agent_wallet.wallet.backup import BackupFormat, export_to_file

    config = _config()
    password = None
    if encrypted:
        password = typer.prompt("Backup password", hide_input=True, confirmation_prompt=True)
    else:
        console.print("[yellow]Plain backups contain unencrypted private keys.[/yellow]")

    destination = output
    if destination is None:
        destination = backup_dir(config)
        destination.mkdir(parents=True, exist_ok=True)
    try:
        path = export_to_file(
            WalletManager.from_config(config),
            _selected_agent,
            destination,
            BackupFormat.ENCRYPTED if encrypted else BackupFormat.PLAIN,
            password,
        )
    except AgentWalletError as e:
        _fail(e)
    console.print(f"[green]Backup written to[/green] {path}")


@app.command("import")
def import_(
    backup_file: Path = typer.Argument(help="Backup file to import"),
    resolution: str = typer.Option(
        "skip", "--on-conflict", help="skip, overwrite or rename existing wallet IDs"
    ),
    into: Optional[str] = typer.Option(
        None, "--into", help="Target agent (default: the backup's agent)"
    ),
):
    """Restore wallets from a backup file."""
    from agent_wallet.wallet.backup import ConflictResolution, import_backup

    try:
        strategy = ConflictResolution(resolution)
    except ValueError:
        console.print(f"[red]Unknown conflict strategy '{resolution}'.[/red]")
        raise typer.Exit(1)

    def _prompt() -> str:
        return typer.prompt("Backup password", hide_input=True)

    try:
        summary = import_backup(_manager(), backup_file, _prompt, strategy, into)
    except AgentWalletError as e:
        _fail(e)

    table = Table(title=f"Import into {summary.agent_id}")
    table.add_column("Wallet", style="cyan")
    table.add_column("Result")
    table.add_column("Stored as")
    table.add_column("Reason", style="dim")
    for outcome in summary.outcomes:
        table.add_row(
            outcome.source_id, outcome.bucket.value, outcome.wallet_id or "-", outcome.reason or ""
        )
    console.print(table)
    console.print(
        f"  Imported: {summary.imported}   Skipped: {summary.skipped}   Failed: {summary.failed}"
    )
    if summary.failed:
        raise typer.Exit(1)
