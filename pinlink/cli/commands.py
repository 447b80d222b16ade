"""CLI commands for pinlink."""

import asyncio
import json
import math
import os
import signal
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from pinlink import __logo__, __version__

app = typer.Typer(
    name="pinlink",
    help=f"{__logo__} pinlink - GPIO command gateway",
    no_args_is_help=True,
)

console = Console()

_SECRET_KEYS = {"password", "authToken"}


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} pinlink v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """pinlink - GPIO command gateway."""
    pass


# ============================================================================
# Config Commands
# ============================================================================

config_app = typer.Typer(help="Manage pinlink config")
app.add_typer(config_app, name="config")


def _redact(data):
    if isinstance(data, dict):
        return {
            key: ("***" if key in _SECRET_KEYS and value else _redact(value))
            for key, value in data.items()
        }
    return data


@config_app.command("show")
def config_show(
    config: Path | None = typer.Option(None, "--config", help="Config path to read"),
):
    """Print the effective configuration (secrets redacted)."""
    from pinlink.config.loader import convert_to_camel, get_config_path, load_config

    config_path = (config or get_config_path()).expanduser()
    cfg = load_config(config_path)
    console.print(f"path={config_path} exists={'yes' if config_path.exists() else 'no'}")
    console.print_json(json.dumps(_redact(convert_to_camel(cfg.model_dump()))))


@config_app.command("init")
def config_init(
    config: Path | None = typer.Option(None, "--config", help="Config path to write"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file"),
):
    """Write a default config file."""
    from pinlink.config.loader import get_config_path, save_config
    from pinlink.config.schema import Config

    config_path = (config or get_config_path()).expanduser()
    if config_path.exists() and not force:
        console.print(f"[yellow]Config already exists:[/yellow] {config_path}")
        raise typer.Exit(1)
    save_config(Config(), config_path)
    console.print(f"[green]✓[/green] Wrote {config_path}")


# ============================================================================
# Pin Commands
# ============================================================================


@app.command("pins")
def pins(
    analog: bool = typer.Option(False, "--analog", help="Only analog-capable pins"),
):
    """Show the pin capability table."""
    from pinlink.hardware.capabilities import all_capabilities

    table = Table(title="GPIO Pins")
    table.add_column("Pin", style="cyan", justify="right")
    table.add_column("Digital")
    table.add_column("Analog")
    table.add_column("PWM")
    table.add_column("Touch")
    table.add_column("DAC")
    table.add_column("Note", style="yellow")

    for cap in all_capabilities():
        if analog and not cap.analog:
            continue
        flags = cap.flags()
        table.add_row(
            str(cap.pin),
            *("✓" if flags[name] else "✗" for name in ("digital", "analog", "pwm", "touch", "dac")),
            cap.note or "",
        )

    console.print(table)


@app.command("convert")
def convert_raw(
    raw: float = typer.Argument(..., help="Raw ADC sample (0-4095)"),
    pin: int | None = typer.Option(None, "--pin", help="Pin the sample came from"),
    formula: str | None = typer.Option(None, "--formula", "-f", help="Custom formula over val/pin/voltage/..."),
):
    """Convert a raw ADC sample into physical units."""
    from pinlink.gpio.conversion import convert

    result = convert(raw, pin=pin, formula=formula)
    table = Table(title=f"Conversion of {result.raw}")
    table.add_column("Quantity", style="cyan")
    table.add_column("Value", style="green", justify="right")

    rows = [
        ("voltage (V)", result.voltage),
        ("percentage (%)", result.percentage),
        ("light (%)", result.light_percent),
        ("temperature (°C)", result.temperature_c),
        ("battery (V)", result.battery_voltage),
        ("distance (cm)", result.distance),
    ]
    for label, value in rows:
        table.add_row(label, "inf" if math.isinf(value) else f"{value:.3f}")
    if result.has_custom:
        table.add_row("custom", str(result.custom))

    console.print(table)


# ============================================================================
# Gateway Commands
# ============================================================================


@app.command("serve")
def serve(
    adapter: str | None = typer.Option(None, "--adapter", help="Adapter override: mqtt/mock"),
    mqtt_host: str | None = typer.Option(None, "--mqtt-host", help="MQTT broker host override"),
    mqtt_port: int | None = typer.Option(None, "--mqtt-port", help="MQTT broker port override"),
    control_port: int | None = typer.Option(None, "--control-port", help="Control API port override"),
    logs: bool = typer.Option(False, "--logs/--no-logs", help="Show runtime logs"),
):
    """Start the device transport and the GPIO control API."""
    from loguru import logger

    from pinlink.api.gpio_server import GpioControlServer, create_transport_from_config
    from pinlink.config.loader import load_config
    from pinlink.gpio.service import GpioService

    config = load_config()
    if logs:
        logger.enable("pinlink")
    else:
        logger.disable("pinlink")

    if adapter:
        config.adapter = adapter
    if mqtt_host:
        config.mqtt.host = mqtt_host
    if mqtt_port:
        config.mqtt.port = mqtt_port
    if control_port:
        config.control.port = control_port

    try:
        transport = create_transport_from_config(config)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(2) from e

    console.print(f"{__logo__} Starting GPIO gateway...")
    if config.adapter.lower() == "mqtt":
        console.print(
            f"adapter=mqtt broker={config.mqtt.host}:{config.mqtt.port} "
            f"keepalive={config.mqtt.keepalive_seconds}s "
            f"reconnect={config.mqtt.reconnect_min_seconds}-{config.mqtt.reconnect_max_seconds}s"
        )
    else:
        console.print(f"adapter={config.adapter}")
    console.print(
        f"control-api=http://{config.control.host}:{config.control.port}{config.control.base_path}"
    )

    async def run() -> None:
        control: GpioControlServer | None = None
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        service = GpioService.from_config(config, transport=transport)

        def _request_stop() -> None:
            loop.call_soon_threadsafe(stop_event.set)

        if os.name != "nt":
            signal.signal(signal.SIGINT, lambda *_: _request_stop())
            signal.signal(signal.SIGTERM, lambda *_: _request_stop())

        try:
            await transport.start()
            control = GpioControlServer.from_config(config, service=service, loop=loop)
            control.start()
            await stop_event.wait()
        except KeyboardInterrupt:
            pass
        finally:
            if control:
                control.stop()
            await service.shutdown()
            await transport.stop()

    asyncio.run(run())


if __name__ == "__main__":
    app()
