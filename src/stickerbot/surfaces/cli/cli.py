import asyncio
import contextlib
import logging
from pathlib import Path
from typing import NoReturn, Optional

import typer
import uvicorn
import yaml

from ... import __version__
from ...core.config import BotConfig, load_config
from ...core.exceptions import ConfigError
from ...core.logging_utils import log_event, setup_rotating_logger
from ...integrations.whatsapp.errors import CredentialLoadError
from ...integrations.whatsapp.service import StickerBotService
from ...media import MediaTransformError, StickerOptions, make_sticker
from ..web.app import create_app

app = typer.Typer(add_completion=False, help="WhatsApp sticker bot.")

logger = logging.getLogger("stickerbot.cli")


def raise_exit(message: str, *, cause: Optional[BaseException] = None) -> NoReturn:
    typer.echo(message, err=True)
    if cause is not None:
        raise typer.Exit(code=1) from cause
    raise typer.Exit(code=1)


def require_config(path: Optional[Path]) -> BotConfig:
    try:
        return load_config(path)
    except ConfigError as exc:
        raise_exit(f"Invalid configuration: {exc}", cause=exc)


def _version_callback(value: bool) -> None:
    if not value:
        return
    typer.echo(f"stickerbot {__version__}")
    raise typer.Exit(code=0)


@app.callback()
def _root(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    return


async def serve_bot(
    config: BotConfig,
    *,
    host: str,
    port: int,
    service: Optional[StickerBotService] = None,
) -> None:
    """Run the session and, when enabled, the control surface in one loop."""

    service = service or StickerBotService(config)
    server: Optional[uvicorn.Server] = None
    server_task: Optional[asyncio.Task[None]] = None
    if config.server.enabled:
        server = uvicorn.Server(
            uvicorn.Config(
                create_app(service),
                host=host,
                port=port,
                access_log=config.server.access_log,
                log_level=config.log.level.lower(),
            )
        )
        server_task = asyncio.create_task(server.serve())
        log_event(logger, logging.INFO, "cli.server.started", host=host, port=port)
    try:
        await service.start()
        if server_task is not None:
            await server_task
        else:
            await asyncio.Event().wait()
    finally:
        if server is not None:
            server.should_exit = True
        if server_task is not None and not server_task.done():
            with contextlib.suppress(asyncio.CancelledError):
                await server_task
        await service.stop()


@app.command("run")
def run(
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to stickerbot.yml"
    ),
    host: Optional[str] = typer.Option(None, "--host", help="Host to bind"),
    port: Optional[int] = typer.Option(None, "--port", help="Port to bind"),
) -> None:
    """Connect to WhatsApp and serve the control surface."""

    config = require_config(config_path)
    setup_rotating_logger("stickerbot", config.log)
    bind_host = host or config.server.host
    bind_port = port or config.server.port
    typer.echo(f"Starting WhatsApp Sticker Bot (auth: {config.whatsapp.auth_path})")
    if config.server.enabled:
        typer.echo(f"Control surface on http://{bind_host}:{bind_port}")
    try:
        asyncio.run(serve_bot(config, host=bind_host, port=bind_port))
    except CredentialLoadError as exc:
        raise_exit(f"Cannot load WhatsApp credentials: {exc}", cause=exc)
    except KeyboardInterrupt:
        typer.echo("Shutting down")


@app.command("config")
def show_config(
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to stickerbot.yml"
    ),
) -> None:
    """Print the effective configuration as YAML."""

    config = require_config(config_path)
    typer.echo(yaml.safe_dump(config.raw, sort_keys=True).rstrip())


@app.command("sticker")
def sticker(
    input_path: Path = typer.Argument(..., help="Source image"),
    output_path: Path = typer.Argument(..., help="Destination .webp file"),
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to stickerbot.yml"
    ),
) -> None:
    """Convert a local image into a sticker."""

    config = require_config(config_path)
    try:
        data = input_path.read_bytes()
    except OSError as exc:
        raise_exit(f"Cannot read {input_path}: {exc}", cause=exc)
    try:
        result = make_sticker(data, StickerOptions.from_media_config(config.media))
    except MediaTransformError as exc:
        raise_exit(f"Cannot convert {input_path}: {exc}", cause=exc)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(result)
    typer.echo(f"Wrote {output_path} ({len(result)} bytes)")


def main() -> None:
    """Entrypoint for CLI execution."""
    app()
