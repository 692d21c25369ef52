"""Command line interface for voicejournal."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict
from pathlib import Path
from typing import Dict, Optional

import typer
import uvicorn
from dotenv import find_dotenv, load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.prompt import Prompt
from rich.text import Text

from . import __version__
from . import config as config_mod
from .capture import MicrophoneRecorder
from .client import RelayClient, RelayError
from .config import ConfigError
from .models import EXTENSIONS, AudioBlob, Config
from .session import RecordingSession, SessionState, State
from .storage import PersistenceError, Storage

app = typer.Typer(add_completion=False, help="Record, transcribe and keep voice notes.")
console = Console()

_SUFFIX_TYPES = {ext: content_type for content_type, ext in EXTENSIONS.items()}
_SUFFIX_TYPES["m4a"] = "audio/mp4"


def _configure_logging() -> None:
    level = os.getenv("VOICEJOURNAL_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )


def _load_config() -> Config:
    try:
        return config_mod.load_config()
    except ConfigError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc


def _storage(cfg: Config) -> Storage:
    directory = Path(cfg.transcriptions_dir) if cfg.transcriptions_dir else None
    try:
        return Storage(directory)
    except PersistenceError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc


def _masked(cfg: Config) -> Dict[str, object]:
    data = asdict(cfg)
    if data.get("openai_api_key"):
        data["openai_api_key"] = "********"
    return data


def _render(state: SessionState) -> None:
    if state.status:
        style = "red" if state.status.startswith(("Error", "Recording error")) else "cyan"
        console.print(Text(state.status, style=style))
    if state.state is State.REVIEW:
        title = "Transcription (editing)" if state.editing else "Transcription"
        if state.dirty:
            title += " *"
        console.print(Panel(Text(state.text) if state.text else Text("(empty)", style="dim"), title=title))


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", "-v", help="Show version and exit"),
) -> None:
    load_dotenv(find_dotenv(usecwd=True))
    _configure_logging()
    if version:
        typer.echo(f"voicejournal v{__version__}")
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command()
def serve() -> None:  # pragma: no cover - runs a server
    """Run the relay server; settings come from the environment and config file."""

    cfg = _load_config()
    uvicorn.run(
        "voicejournal.api:create_app",
        factory=True,
        host=cfg.host,
        port=cfg.port,
        log_config=None,
    )


@app.command()
def record() -> None:  # pragma: no cover - interactive
    """Record from the microphone, transcribe through the relay, then review and save."""

    cfg = _load_config()
    with RelayClient.from_config(cfg) as relay:
        session = RecordingSession(MicrophoneRecorder(), relay)
        while True:
            current = session.state
            if current.state is State.IDLE:
                answer = Prompt.ask("Press Enter to start recording or [bold]q[/bold] to quit", default="")
                if answer.strip().lower() == "q":
                    break
                _render(session.start())
            elif current.state is State.RECORDING:
                console.input("[bold red]● Recording[/bold red] press Enter to stop ")
                blob = session.stop()
                _render(session.state)
                if blob is not None:
                    with console.status("Transcribing..."):
                        session.submit(blob)
                    _render(session.state)
            elif current.state is State.REVIEW and current.editing:
                choice = Prompt.ask("[t]ype new text, [s]ave or [c]ancel", choices=["t", "s", "c"], default="t")
                if choice == "t":
                    session.edit(Prompt.ask("Text", default=current.text))
                    _render(session.state)
                elif choice == "s":
                    with console.status("Saving..."):
                        _render(session.save())
                else:
                    _render(session.cancel_edit())
            else:
                choice = Prompt.ask("[e]dit, [r]ecord again or [q]uit", choices=["e", "r", "q"], default="r")
                if choice == "q":
                    break
                if choice == "e":
                    _render(session.begin_edit())
                else:
                    _render(session.start())


@app.command()
def transcribe(
    audio: Path = typer.Argument(..., exists=True, readable=True, help="Path to the audio file."),
    save: bool = typer.Option(False, "--save/--no-save", help="Save the transcript through the relay."),
) -> None:
    """Upload an existing audio file through the relay and print the transcript."""

    content_type = _SUFFIX_TYPES.get(audio.suffix.lstrip(".").lower())
    if content_type is None:
        supported = ", ".join(sorted(_SUFFIX_TYPES))
        typer.secho(f"Unsupported audio file type. Use one of: {supported}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    cfg = _load_config()
    blob = AudioBlob(data=audio.read_bytes(), content_type=content_type)
    try:
        with RelayClient.from_config(cfg) as relay:
            result = relay.transcribe(blob)
            typer.echo(result.text)
            if save and result.ok:
                payload = relay.save_transcription(result.text)
                typer.secho(f"\nSaved transcript with id {payload.get('id')}.", fg=typer.colors.BLUE)
    except RelayError as exc:
        typer.secho(f"Request to relay failed: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc


@app.command("list")
def list_command() -> None:
    """List transcriptions saved on this machine."""

    rows = list(_storage(_load_config()).list())
    if not rows:
        typer.echo("No transcriptions found. Use `voicejournal record` to create one.")
        return
    header = f"{'ID':<30}  {'Created':<17}  {'Text':<40}"
    typer.echo(header)
    typer.echo("-" * len(header))
    for record in rows:
        created = record.created_at.strftime("%Y-%m-%d %H:%M")
        preview = " ".join(record.text.split())[:40]
        typer.echo(f"{record.id:<30}  {created:<17}  {preview:<40}")


@app.command()
def show(record_id: str = typer.Argument(..., help="Identifier of the saved transcription.")) -> None:
    """Show a saved transcription."""

    try:
        record = _storage(_load_config()).get(record_id)
    except PersistenceError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    typer.secho(f"Created: {record.created_at:%Y-%m-%d %H:%M:%S} UTC", fg=typer.colors.BLUE)
    typer.echo(record.text)


@app.command()
def health() -> None:
    """Check connectivity to the configured relay server."""

    cfg = _load_config()
    try:
        with RelayClient.from_config(cfg) as relay:
            payload = relay.health()
    except RelayError as exc:
        typer.secho(f"Request to relay failed: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc

    typer.echo(f"Status: {payload.get('status', 'unknown')}")
    typer.echo(f"Model: {payload.get('model', 'unknown')}")


@app.command()
def config(
    server_url: Optional[str] = typer.Option(None, help="Base URL of the relay server."),
    verify_ssl: Optional[bool] = typer.Option(
        None,
        "--verify-ssl/--no-verify-ssl",
        help="Toggle TLS certificate verification for relay calls.",
    ),
    api_timeout: Optional[float] = typer.Option(None, help="HTTP client timeout (seconds) for relay calls."),
    show: bool = typer.Option(False, "--show", help="Display the active configuration."),
) -> None:
    """Update or inspect the client settings."""

    updates: Dict[str, object] = {
        key: value
        for key, value in {
            "server_url": server_url,
            "verify_ssl": verify_ssl,
            "api_timeout": api_timeout,
        }.items()
        if value is not None
    }

    if show or not updates:
        typer.echo(json.dumps(_masked(_load_config()), indent=2, default=str))
        return

    try:
        config_mod.update_config(**updates)
    except ConfigError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    typer.secho("Configuration updated.", fg=typer.colors.BLUE)


if __name__ == "__main__":  # pragma: no cover
    app()
