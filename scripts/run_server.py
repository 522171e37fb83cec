"""Launcher for the Scene Export API using uvicorn."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
import uvicorn
from rich.console import Console
from rich.logging import RichHandler

from scene_export.settings import get_settings

app = typer.Typer(help="Run the Scene Export FastAPI app with uvicorn.", add_completion=False)
console = Console(stderr=True)

_FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str, log_file: Path | None = None) -> None:
    """Console logging through rich, plus an optional plain-text file."""

    handlers: list[logging.Handler] = [RichHandler(console=console, rich_tracebacks=True, show_path=False)]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
        handlers.append(file_handler)
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=handlers,
        force=True,
    )


@app.callback(invoke_without_command=True)
def serve(  # type: ignore[no-untyped-def]
    host: Optional[str] = typer.Option(None, "--host", help="Bind host."),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port."),
    app_path: str = typer.Option("scene_export.main:app", "--app", help="ASGI import path."),
    reload: bool = typer.Option(False, "--reload/--no-reload", help="Enable auto-reload."),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Log level."),
) -> None:
    """Launch the FastAPI app.

    Exports are tracked in process memory, so the server always runs a
    single worker.
    """

    settings = get_settings()
    host = host or settings.server.host
    port = port or settings.server.port
    log_level = (log_level or settings.server.log_level).lower()

    configure_logging(log_level, settings.server.log_file)
    logging.getLogger(__name__).info("Server running on port %s", port)
    uvicorn.run(
        app_path,
        host=host,
        port=port,
        reload=reload,
        workers=1,
        log_level=log_level,
        log_config=None,
    )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
