#!/usr/bin/env python3
"""
TCP Throughput Harness CLI

Command-line interface for the chunked TCP transfer harness.

Usage:
    tcpbench receive                 # Run the receiver until Ctrl+C
    tcpbench send --size 82178160    # Send a synthetic payload
    tcpbench send --file FILE        # Send the contents of a file
    tcpbench bench                   # Receiver + sender over loopback
    tcpbench check-buffers           # Show default socket buffer sizes
    tcpbench show-config             # Show the effective configuration
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.logging import RichHandler

from .config import Config, load_config
from .errors import TransferError
from .node import ReceiverNode, SenderNode, check_buffers, run_loopback
from .stats import StatsReport
from .transfer import load_payload, synthetic_payload
from .transfer.writer import SendResult

console = Console()


def setup_logging(verbose: bool = False, level: str = 'INFO'):
    """Configure logging with rich output."""
    level = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


def render_report(report: StatsReport, title: str = "Transfer Statistics") -> Panel:
    """Build a rich panel for a StatsReport."""
    return Panel.fit(
        f"[bold green]{report.mb_per_sec:.2f} MB/s[/bold green] "
        f"([yellow]{report.mbit_per_sec:.2f} Mbps[/yellow])\n\n"
        f"Total bytes: [cyan]{report.total_bytes:,}[/cyan]\n"
        f"Units processed: [cyan]{report.unit_count}[/cyan]\n"
        f"Average bytes per unit: [cyan]{report.avg_bytes_per_unit:.2f}[/cyan]\n"
        f"Elapsed: [cyan]{report.duration_nanos / 1_000_000:.1f} ms[/cyan]\n"
        f"Completed by: [blue]{report.completed_by.value}[/blue]",
        title=title
    )


def print_send_result(result: SendResult, as_json: bool):
    if as_json:
        payload = {
            'role': 'sender',
            'units_sent': result.units_sent,
            'bytes_written': result.bytes_written,
            'report': result.report.to_dict() if result.report else None,
        }
        click.echo(json.dumps(payload, indent=2))
    elif result.report:
        console.print(render_report(result.report, title="Sender"))
    else:
        console.print("[yellow]Nothing was sent (empty payload)[/yellow]")


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False),
              help='JSON config file')
@click.option('--host', default=None, help='Receiver host')
@click.option('--port', default=None, type=int, help='Receiver TCP port')
@click.pass_context
def cli(ctx, verbose, config_path, host, port):
    """TCP Throughput Harness - chunked transfer benchmark."""
    try:
        config = load_config(Path(config_path) if config_path else None)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint='--config')

    if host:
        config.host = host
    if port is not None:
        config.port = port

    setup_logging(verbose, config.log_level)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command()
@click.option('--expected', type=int, default=None, help='Expected bytes per transfer')
@click.option('--framing', type=click.Choice(['raw', 'text']), default=None)
@click.option('--eof-heuristic/--no-eof-heuristic', default=None,
              help='Treat an empty read as end of transfer')
@click.option('--json', 'as_json', is_flag=True, help='Print reports as JSON')
@click.pass_context
def receive(ctx, expected, framing, eof_heuristic, as_json):
    """Run the receiver until interrupted."""
    config: Config = ctx.obj['config']
    if expected is not None:
        config.expected_total_bytes = expected
    if framing:
        config.framing = framing
    if eof_heuristic is not None:
        config.eof_heuristic = eof_heuristic
    config.validate()

    def show(report: StatsReport):
        if as_json:
            click.echo(json.dumps({'role': 'receiver', **report.to_dict()}, indent=2))
        else:
            console.print(render_report(report, title="Receiver"))

    async def run():
        node = ReceiverNode(config, on_report=show)
        await node.start()

        console.print(Panel.fit(
            f"[bold green]Receiver Started[/bold green]\n\n"
            f"Listening: [yellow]{config.host}:{node.address[1]}[/yellow]\n"
            f"Expected bytes: [cyan]{config.expected_total_bytes:,}[/cyan]\n"
            f"Framing: [cyan]{config.framing}[/cyan]\n"
            f"Concurrency limit: [cyan]{config.concurrency_limit}[/cyan]",
            title="Receiver Info"
        ))
        console.print("\n[dim]Press Ctrl+C to stop[/dim]\n")

        try:
            await node.server.serve_forever()
        finally:
            await node.stop()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Receiver stopped[/yellow]")


@cli.command()
@click.option('--size', type=int, default=None, help='Synthetic payload size in bytes')
@click.option('--file', 'file_path', type=click.Path(exists=True, dir_okay=False),
              help='Send the contents of a file')
@click.option('--unit-size', type=int, default=None, help='Bytes per write unit')
@click.option('--mode', type=click.Choice(['sequential', 'callback']), default=None)
@click.option('--framing', type=click.Choice(['raw', 'text']), default=None)
@click.option('--json', 'as_json', is_flag=True, help='Print the result as JSON')
@click.pass_context
def send(ctx, size, file_path, unit_size, mode, framing, as_json):
    """Connect to a receiver and send a payload."""
    config: Config = ctx.obj['config']
    if unit_size is not None:
        config.unit_size = unit_size
    if mode:
        config.write_mode = mode
    if framing:
        config.framing = framing
    config.validate()

    async def run() -> SendResult:
        if file_path:
            payload = await load_payload(Path(file_path))
        else:
            payload = synthetic_payload(size if size is not None else config.expected_total_bytes)
        return await SenderNode(config).send(payload)

    try:
        result = asyncio.run(run())
    except (TransferError, ValueError) as e:
        console.print(f"[red]✗ Send failed: {e}[/red]")
        sys.exit(1)

    print_send_result(result, as_json)


@cli.command()
@click.option('--size', type=int, default=16 * 1024 * 1024, help='Payload size in bytes')
@click.option('--unit-size', type=int, default=None, help='Bytes per write unit')
@click.option('--mode', type=click.Choice(['sequential', 'callback']), default=None)
@click.option('--framing', type=click.Choice(['raw', 'text']), default=None)
@click.option('--json', 'as_json', is_flag=True, help='Print results as JSON')
@click.pass_context
def bench(ctx, size, unit_size, mode, framing, as_json):
    """Run receiver and sender over loopback in one process."""
    config: Config = ctx.obj['config']
    if unit_size is not None:
        config.unit_size = unit_size
    if mode:
        config.write_mode = mode
    if framing:
        config.framing = framing
    config.validate()

    if size <= 0:
        raise click.BadParameter("size must be positive", param_hint='--size')

    try:
        result, report = asyncio.run(run_loopback(config, synthetic_payload(size)))
    except (TransferError, ValueError, asyncio.TimeoutError) as e:
        console.print(f"[red]✗ Benchmark failed: {e}[/red]")
        sys.exit(1)

    if as_json:
        click.echo(json.dumps({
            'role': 'bench',
            'sender': result.report.to_dict() if result.report else None,
            'receiver': report.to_dict(),
        }, indent=2))
        return

    table = Table(title=f"Loopback Benchmark ({size:,} bytes)")
    table.add_column("Side", style="cyan")
    table.add_column("MB/s", justify="right", style="green")
    table.add_column("Mbps", justify="right", style="yellow")
    table.add_column("Units", justify="right")
    table.add_column("Avg bytes/unit", justify="right")
    table.add_column("Elapsed", justify="right")

    for side, r in (("sender", result.report), ("receiver", report)):
        if r is None:
            continue
        table.add_row(
            side,
            f"{r.mb_per_sec:.2f}",
            f"{r.mbit_per_sec:.2f}",
            str(r.unit_count),
            f"{r.avg_bytes_per_unit:.2f}",
            format_duration(r.duration_nanos),
        )

    console.print(table)


@cli.command('check-buffers')
@click.pass_context
def check_buffers_cmd(ctx):
    """Connect to a running receiver and show default socket buffers."""
    config: Config = ctx.obj['config']
    console.print(f"[dim]Connecting to {config.host}:{config.port}...[/dim]")

    try:
        info = asyncio.run(check_buffers(config.host, config.port,
                                         timeout=config.connect_timeout))
    except (TransferError, OSError) as e:
        console.print(f"[red]✗ Error checking buffers: {e}[/red]")
        sys.exit(1)

    console.print(Panel.fit(
        f"Send Buffer (SO_SNDBUF): [yellow]{info.send_buffer} bytes[/yellow] "
        f"({info.send_buffer // 1024} KB)\n"
        f"Receive Buffer (SO_RCVBUF): [yellow]{info.receive_buffer} bytes[/yellow] "
        f"({info.receive_buffer // 1024} KB)",
        title="TCP Buffer Values"
    ))


@cli.command('show-config')
@click.option('--example', is_flag=True, help='Print an example config file instead')
@click.pass_context
def show_config(ctx, example):
    """Show the effective configuration."""
    if example:
        from .config import EXAMPLE_CONFIG
        click.echo(EXAMPLE_CONFIG.strip())
        return

    config: Config = ctx.obj['config']
    table = Table(title="Effective Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="yellow")
    for key, value in config.to_dict().items():
        table.add_row(key, str(value))
    console.print(table)


def format_duration(nanos: int) -> str:
    """Format nanoseconds as a human-readable duration."""
    seconds = nanos / 1_000_000_000
    if seconds < 1:
        return f"{seconds * 1000:.1f} ms"
    return f"{seconds:.2f} s"


def main(argv: Optional[list] = None):
    cli(args=argv)


if __name__ == '__main__':
    main()
