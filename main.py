"""
Prism Wallet v1.0 - Multi-Chain Send Engine
Command line: address checks, live fees, balances, send recommendations and signed sends
"""

import os, sys, secrets
from pathlib import Path
from typing import Optional

import typer
from loguru import logger

from chains import validate_address
from errors import WalletError
from send_service import SendService
from wallet_core import (
    FEE_TIERS, SUPPORTED_CHAINS, SendRequest, WalletStorage, chain_for_token, format_amount, get_token,
    new_wallet,
)

app = typer.Typer(
    name="prism-wallet",
    help="Prism Wallet - multi-chain send engine",
    add_completion=False,
)

_state = {"data_dir": None}


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


# ── Helpers ───────────────────────────────────────────────────

def _storage():
    return WalletStorage(_state["data_dir"])

def _service(storage=None):
    return SendService(storage=storage or _storage())

def _secret(confirm=False):
    s = os.environ.get("PRISM_WALLET_SECRET")
    if s: return s
    return typer.prompt("Wallet secret", hide_input=True, confirmation_prompt=confirm)

def _fail(msg):
    typer.echo(f"Error: {msg}", err=True)
    raise typer.Exit(1)

def _fmt(value, chain):
    cfg = SUPPORTED_CHAINS[chain]
    return f"{format_amount(value, min(cfg['decimals'], 12))} {cfg['symbol']}"


@app.callback()
def _root(
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", envvar="PRISM_WALLET_DIR",
                                            help="Wallet directory (default ~/.prism_wallet)"),
    log_level: str = typer.Option("WARNING", "--log-level", "-l"),
) -> None:
    setup_logging(log_level)
    _state["data_dir"] = data_dir


# ── Commands ──────────────────────────────────────────────────

@app.command()
def validate(chain: str = typer.Argument(..., help="Chain name, e.g. bitcoin"),
             address: str = typer.Argument(...)) -> None:
    """Check an address against a chain's format."""
    ok, reason = validate_address(address, chain)
    if not ok: _fail(reason)
    typer.echo(f"Valid {SUPPORTED_CHAINS[chain.lower()]['name']} address")


@app.command()
def fees(chain: str = typer.Argument(..., help="Chain name or token symbol")) -> None:
    """Show economy / standard / priority fee quotes (for a token transfer when given an ERC-20 symbol)."""
    try:
        token = get_token(chain)
        chain = chain_for_token(chain)
        quotes = _service().fee_oracle.get_fee_quotes(chain, token)
    except WalletError as e:
        _fail(e)
    for t in FEE_TIERS:
        q = quotes[t]
        typer.echo(f"{t:<9} {format_amount(q.per_unit_rate, 4):>12} {q.unit:<18} ~{_fmt(q.estimated_cost, chain)}")
    if not quotes["standard"].live:
        typer.echo("(fallback estimates - live fee source unavailable)")


@app.command()
def balances(refresh: bool = typer.Option(False, "--refresh", "-r", help="Re-query stale balances")) -> None:
    """List stored wallets with their cached balances."""
    svc = _service()
    wallets = svc.wallets_for()
    if not wallets:
        typer.echo("No wallets stored. Use add-wallet first.")
        return
    if refresh:
        wallets = svc.refresh_balances(wallets)
    for w in wallets:
        state = "" if svc.balance_cache.is_fresh(w) else " (stale)"
        if w.refresh_error: state = f" (refresh failed: {w.refresh_error})"
        typer.echo(f"{w.id:<16} {w.chain:<10} {_fmt(w.cached_balance, w.chain):>24}  {w.display_name()}{state}")


@app.command("add-wallet")
def add_wallet(
    chain: str = typer.Argument(...),
    address: str = typer.Argument(...),
    label: str = typer.Option("", "--label"),
    wallet_id: Optional[str] = typer.Option(None, "--id", help="Wallet id (random if omitted)"),
) -> None:
    """Store a wallet with its private key encrypted under the wallet secret."""
    chain = chain.lower()
    ok, reason = validate_address(address, chain)
    if not ok: _fail(reason)
    key = typer.prompt("Private key", hide_input=True)
    try:
        w = new_wallet(wallet_id or f"{chain}-{secrets.token_hex(4)}", chain, address, key, _secret(confirm=True), label)
    except WalletError as e:
        _fail(e)
    _storage().add_wallet(w)
    typer.echo(f"Added {w.id}: {w.display_name()}")


@app.command()
def recommend(token: str = typer.Argument(..., help="Token symbol, e.g. BTC"),
              amount: str = typer.Argument(...),
              recipient: str = typer.Argument(...)) -> None:
    """Pick the source wallet for a send and explain the choice."""
    svc = _service()
    try:
        rec = svc.recommend(SendRequest(svc.wallets_for(), token, amount, recipient))
    except WalletError as e:
        _fail(e)
    typer.echo(rec.narrative)


@app.command()
def send(
    wallet_id: str = typer.Argument(...),
    amount: str = typer.Argument(...),
    recipient: str = typer.Argument(...),
    tier: str = typer.Option("standard", "--tier", "-t", help="economy, standard or priority"),
    token: Optional[str] = typer.Option(None, "--token", help="ERC-20 symbol, e.g. USDT (default: native asset)"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Build, sign and broadcast a transfer of the native asset or an ERC-20 token."""
    if tier not in FEE_TIERS: _fail(f"Unknown fee tier: {tier}")
    svc = _service()
    wallet = next((w for w in svc.wallets_for() if w.id == wallet_id), None)
    if wallet is None: _fail(f"No wallet with id {wallet_id}")

    request = SendRequest([wallet], token or wallet.chain, amount, recipient)
    try:
        rec = svc.recommend(request)
        typer.echo(rec.narrative)
        if not rec.sufficient: _fail("Wallet balance does not cover amount plus fee")
        if not yes: typer.confirm(f"Broadcast at {tier} fee?", abort=True)
        result = svc.execute(wallet, request, tier, _secret())
    except WalletError as e:
        _fail(e)
    typer.echo(f"Sent. Transaction: {result.tx_hash}")
    typer.echo(f"Fee: {_fmt(result.fee, result.chain)}")
    if result.explorer_url: typer.echo(result.explorer_url)


@app.command()
def status(chain: str = typer.Argument(..., help="Chain name or token symbol"),
           tx_id: str = typer.Argument(..., help="Transaction hash or signature")) -> None:
    """Look up a broadcast transaction: pending, confirmed, failed or unknown."""
    try:
        typer.echo(_service().transaction_status(chain, tx_id))
    except WalletError as e:
        _fail(e)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
