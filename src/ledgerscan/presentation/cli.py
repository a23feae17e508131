import asyncio, json
from datetime import datetime, timezone
from typing import Awaitable, Callable

import click
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..adapters.manifest_jsonl import JSONLManifest
from ..adapters.parquet_sink import ParquetRecordSink
from ..adapters.rpc_httpx import HttpxLedger
from ..application.use_cases import ScanEngine
from ..config import Settings
from ..domain.errors import InvalidRequestError, LedgerScanError
from ..domain.models import ScanRequest, ScanResult
from ..logging_setup import setup_logging

console = Console()


def _make_ledger(settings: Settings) -> HttpxLedger:
    if not settings.rpc_url:
        raise click.UsageError("No RPC endpoint: pass --rpc or set LEDGERSCAN_RPC_URL")
    if not settings.token_address:
        raise click.UsageError("No token contract: pass --token or set LEDGERSCAN_TOKEN_ADDRESS")
    return HttpxLedger(
        settings.rpc_url,
        settings.token_address,
        timeout_s=settings.rpc_timeout_s,
        max_conn=settings.rpc_max_connections,
        max_retries=settings.rpc_max_retries,
    )


async def _with_engine(settings: Settings, fn: Callable[[ScanEngine], Awaitable[ScanResult]]) -> ScanResult:
    async with _make_ledger(settings) as ledger:
        decimals = settings.token_decimals
        if decimals is None:
            decimals = await ledger.token_decimals()
        engine = ScanEngine(
            ledger,
            known_first_block=settings.deployment_block,
            decimals=decimals,
            contract_address=settings.token_address,
            tuning=settings.tuning(),
        )
        return await fn(engine)


def _render(result: ScanResult) -> None:
    table = Table(expand=True)
    for col in ("block", "time (UTC)", "dir", "from", "to", "value", "tx"):
        table.add_column(col, no_wrap=col in ("block", "dir"))
    for r in result.records:
        ts = datetime.fromtimestamp(r.timestamp, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        direction = "[red]sent[/]" if r.direction == "sent" else "[green]received[/]"
        table.add_row(f"{r.block_number:,}", ts, direction, r.counterparty_from, r.counterparty_to,
                      r.value_formatted, r.tx_hash)
    console.print(table)

    d = result.diagnostics
    failed = ", ".join(f"{s:,}-{e:,}" for s, e in d.failed_ranges) or "none"
    console.print(Panel(
        f"[bold]strategy[/]: {d.strategy}  •  [bold]stop[/]: {d.stop_reason}\n"
        f"[bold]range[/]: {d.scanned_range or '-'} (floor {d.effective_floor:,}, tip {d.tip:,})\n"
        f"[bold]chunks[/]: size={d.chunking.chunk_size:,} "
        f"[green]ok[/]={d.chunking.chunks_succeeded} [red]failed[/]={d.chunking.chunks_failed} "
        f"[yellow]splits[/]={d.chunking.splits}\n"
        f"[bold]unread ranges[/]: {failed}",
        title=f"{result.total} transfer(s) for {result.address}",
    ))


def _emit(result: ScanResult, as_json: bool, parquet_out: str, manifest_path: str) -> None:
    async def persist() -> None:
        if parquet_out:
            await ParquetRecordSink(parquet_out).write_records(result.records)
        if manifest_path:
            await JSONLManifest(manifest_path).append_result(result)

    if parquet_out or manifest_path:
        asyncio.run(persist())
    if as_json:
        click.echo(json.dumps(result.as_dict(), indent=2))
    else:
        _render(result)
        if parquet_out:
            console.print(f"[bold]parquet[/]: {parquet_out}")


def _run(settings: Settings, fn: Callable[[ScanEngine], Awaitable[ScanResult]]) -> ScanResult:
    try:
        return asyncio.run(_with_engine(settings, fn))
    except InvalidRequestError as e:
        raise click.UsageError(str(e))
    except LedgerScanError as e:
        raise click.ClickException(f"{type(e).__name__}: {e}")


@click.group()
@click.option("--rpc", default=None, help="RPC endpoint URL (LEDGERSCAN_RPC_URL)")
@click.option("--token", default=None, help="ERC-20 contract address (LEDGERSCAN_TOKEN_ADDRESS)")
@click.option("--deployment-block", type=int, default=None, help="First block the contract exists at")
@click.option("--decimals", type=int, default=None, help="Token decimals; read from the contract if omitted")
@click.option("--log-level", default=None, help="TRACE/DEBUG/INFO/WARNING/ERROR")
@click.pass_context
def cli(ctx, rpc, token, deployment_block, decimals, log_level):
    """ledgerscan: rebuild an address's token-transfer history from Transfer logs."""
    overrides = {k: v for k, v in {
        "rpc_url": rpc, "token_address": token, "deployment_block": deployment_block,
        "token_decimals": decimals, "log_level": log_level,
    }.items() if v is not None}
    try:
        settings = Settings(**overrides)
    except ValidationError as e:
        raise click.UsageError(str(e))
    setup_logging(settings.log_level)
    ctx.obj = settings


_range_options = [
    click.option("--from-block", default=None, help="Block number, 'earliest' or 'latest' (default: earliest)"),
    click.option("--to-block", default=None, help="Block number or 'latest' (default: latest)"),
    click.option("--json", "as_json", is_flag=True, help="Print the result as JSON"),
    click.option("--parquet-out", default="", help="Also write the records to this Parquet file"),
    click.option("--manifest", "manifest_path", default="", help="Append failed ranges and a summary to this JSONL file"),
]

def range_options(fn):
    for opt in reversed(_range_options):
        fn = opt(fn)
    return fn


@cli.command("recent")
@click.argument("address")
@range_options
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Max records (default from settings)")
@click.pass_obj
def recent_cmd(settings: Settings, address, from_block, to_block, as_json, parquet_out, manifest_path, limit):
    """Most recent transfers first; stops as soon as LIMIT records are found."""
    try:
        request = ScanRequest(address=address, from_block=from_block, to_block=to_block,
                              limit=limit or settings.default_limit)
    except InvalidRequestError as e:
        raise click.UsageError(str(e))
    result = _run(settings, lambda engine: engine.scan_bounded(request))
    _emit(result, as_json, parquet_out, manifest_path)


@cli.command("history")
@click.argument("address")
@range_options
@click.pass_obj
def history_cmd(settings: Settings, address, from_block, to_block, as_json, parquet_out, manifest_path):
    """Complete transfer history, scanned forward from the deployment block."""
    result = _run(settings, lambda engine: engine.scan_exhaustive(address, from_block, to_block))
    _emit(result, as_json, parquet_out, manifest_path)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
