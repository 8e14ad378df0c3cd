"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import typer

from probectl.api import Client
from probectl.core.config_loader import LoadedConfig, load_config
from probectl.core.errors import ProbectlError
from probectl.core.model import (
    BatteryLevel,
    DecodeFailed,
    Event,
    LinkState,
    LinkStateChanged,
    Reading,
)
from probectl.transports.ble_gatt import BLEGATTTransport

app = typer.Typer(help="Live temperature telemetry from a wireless BLE meat probe")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log link activity to stderr"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load(config_path: Path | None, **overrides: object) -> LoadedConfig:
    return load_config(config_path, overrides)


def _build_client(loaded: LoadedConfig) -> Client:
    return Client(config=loaded.config, transport=BLEGATTTransport())


def _percent(fraction: float | None) -> str:
    if fraction is None:
        return "--"
    return f"{round(fraction * 100)}%"


def format_event(event: Event) -> str:
    if isinstance(event, Reading):
        return (
            f"{event.timestamp:%H:%M:%S} tip={event.tip_c:.1f}°C "
            f"ambient={event.ambient_c:.1f}°C battery={_percent(event.battery)}"
        )
    if isinstance(event, BatteryLevel):
        return f"{event.timestamp:%H:%M:%S} battery={event.percent}%"
    if isinstance(event, DecodeFailed):
        return f"decode failed on {event.characteristic}: {event.reason}"
    line = f"[{event.state.value}]"
    if event.reason:
        line += f" {event.reason}"
    if event.retry_in_s is not None:
        line += f", retrying in {event.retry_in_s:.1f}s"
    return line


@app.command("scan")
def scan(
    timeout: float = typer.Option(5.0, "--timeout", help="Scan window in seconds"),
    config: Path | None = typer.Option(None, "--config", help="Path to config.yaml"),
) -> None:
    """List nearby BLE devices, marking the ones that match the configured probe."""
    try:
        client = _build_client(_load(config))
        results = asyncio.run(client.scan(timeout_s=timeout))
        if not results:
            typer.echo("No BLE devices found")
            return
        for result in results:
            marker = "*" if result.is_probe else " "
            name = result.device.name or "<unknown-device>"
            rssi = f" rssi={result.device.rssi}" if result.device.rssi is not None else ""
            typer.echo(f"{marker} {result.device.address} {name}{rssi}")
    except ProbectlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


async def _watch(client: Client, count: int | None) -> LinkStateChanged | None:
    last_state: LinkStateChanged | None = None
    async for event in client.events(readings=count):
        if isinstance(event, LinkStateChanged):
            last_state = event
        typer.echo(format_event(event), err=isinstance(event, DecodeFailed))
    return last_state


@app.command("watch")
def watch(
    address: str | None = typer.Option(None, "--address", help="Probe MAC address (or platform UUID)"),
    name: str | None = typer.Option(None, "--name", help="Advertised probe name"),
    count: int | None = typer.Option(None, "--count", min=1, help="Stop after N readings"),
    config: Path | None = typer.Option(None, "--config", help="Path to config.yaml"),
) -> None:
    """Connect to the probe and print readings as they arrive."""
    try:
        client = _build_client(_load(config, address=address, name=name))
        final = asyncio.run(_watch(client, count))
    except ProbectlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    except KeyboardInterrupt:
        typer.echo("Interrupted", err=True)
        return

    if final is not None and final.state is LinkState.FAILED and final.reason != "stopped":
        raise typer.Exit(code=1)


@app.command("config")
def show_config(
    config: Path | None = typer.Option(None, "--config", help="Path to config.yaml"),
) -> None:
    """Print the effective configuration and where it came from."""
    try:
        loaded = _load(config)
    except ProbectlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None

    typer.echo(f"Source: {loaded.source or '<defaults>'}")
    for key, value in vars(loaded.config).items():
        if hasattr(value, "value"):
            value = value.value
        typer.echo(f"  {key}: {value}")


def run() -> None:
    app()


if __name__ == "__main__":
    run()
