"""Main application entry point for VaultScribe."""

import sys
import asyncio
import logging
from pathlib import Path
from typing import Optional

import click
from rich.console import Console

from .config import VaultScribeConfig
from .exceptions import ConfigError, VaultScribeError
from .models.session import SegmentStatus
from .services.context import PipelineContext
from .services.session_manager import SessionManager
from .services.transcription_service import TranscriptionService
from .ui.session_view import (
    SegmentStatusPrinter,
    segments_table,
    session_panel,
    sessions_table,
    stats_table,
)

logger = logging.getLogger(__name__)
console = Console()


def ask_local_consent() -> bool:
    """Interactive one-time permission prompt for on-device recognition."""
    if not sys.stdin.isatty():
        return False
    return click.confirm(
        "Remote transcription is unavailable. Allow on-device speech recognition?",
        default=False,
    )


class Server:
    """Owns the pipeline context for one CLI invocation."""

    def __init__(self, config: VaultScribeConfig):
        self.config = config
        self._context: Optional[PipelineContext] = None
        self._service: Optional[TranscriptionService] = None

    @property
    def context(self) -> PipelineContext:
        if self._context is None:
            logger.info("Initializing pipeline context...")
            self._context = PipelineContext.from_config(self.config, consent_prompt=ask_local_consent)
        return self._context

    def init(self) -> TranscriptionService:
        """Build the transcription service and run startup recovery."""
        if self._service is None:
            self._service = TranscriptionService(self.context)
            recovered = self._service.startup()
            if recovered:
                console.print(f"[yellow]Recovered {recovered} interrupted segment(s) for retry[/yellow]")
        return self._service

    def cleanup(self) -> None:
        if self._context is not None:
            self._context.close()
            self._context = None
        self._service = None


def setup_logging(config, level: str = "INFO") -> None:

    """Set up logging configuration from YAML config."""
    # Get log file path from config
    log_file_path = config.get('logging.file_path', 'data/logs/vaultscribe.log')
    console_output = config.get('logging.console_output', True)

    Path(log_file_path).parent.mkdir(parents=True, exist_ok=True)

    handlers = []

    # File handler - always write to file
    file_handler = logging.FileHandler(log_file_path)
    file_handler.setLevel(logging.DEBUG)
    file_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
    )
    file_handler.setFormatter(file_formatter)
    handlers.append(file_handler)

    # Console handler - only if enabled in config
    if console_output:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.WARNING)  # Only show warnings and above on console
        console_formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        console_handler.setFormatter(console_formatter)
        handlers.append(console_handler)

    # Configure root logger
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(getattr(logging, level.upper()))
    for handler in handlers:
        root_logger.addHandler(handler)

    logger.info("=" * 50)
    logger.info("VaultScribe starting up")
    logger.info(f"Log file: {log_file_path}")
    logger.info(f"Log level set to: {level}")
    logger.info("=" * 50)


def _run_pipeline(server: Server, coro_factory):
    """Run a pipeline coroutine, cancelling leftover segment work on exit."""
    async def runner():
        service = server.init()
        printer = SegmentStatusPrinter(console)
        printer.start()
        try:
            return await coro_factory(service)
        finally:
            printer.stop()
            await service.shutdown()

    try:
        return asyncio.run(runner())
    except VaultScribeError as e:
        raise click.ClickException(str(e))


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False),
              help="Path to configuration YAML file (default: looks for vaultscribe.yaml)")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
              help="Set logging level (overrides config)")
@click.version_option("0.1.0", prog_name="VaultScribe")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], log_level: Optional[str]) -> None:
    """VaultScribe - encrypted voice recordings with resilient transcription."""
    try:
        config = VaultScribeConfig(config_path)
    except ConfigError as e:
        raise click.ClickException(str(e))

    setup_logging(config, log_level or config.get('logging.level', 'INFO'))
    server = Server(config)
    ctx.obj = server
    ctx.call_on_close(server.cleanup)


@cli.command()
@click.argument("audio", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--duration", type=float, help="Recording length in seconds (probed with ffprobe if omitted)")
@click.option("--title", help="Session title (default: 'Recording at HH:MM')")
@click.option("--segment-seconds", type=float, help="Split into windows of this length (overrides config)")
@click.pass_obj
def ingest(server: Server, audio: Path, duration: Optional[float], title: Optional[str],
           segment_seconds: Optional[float]) -> None:
    """Encrypt a finished recording, delete the plaintext, and transcribe it."""
    async def work(service: TranscriptionService):
        session, segments = await service.ingest_recording(
            audio, duration=duration, title=title, segment_seconds=segment_seconds
        )
        console.print(f"[bold]Session[/bold] {session.id} ({session.title}): {len(segments)} segment(s)")
        await service.wait_until_idle()
        return session

    session = _run_pipeline(server, work)
    segments = server.context.database.get_segments(session.id)
    console.print(session_panel(session, segments))


@cli.command()
@click.pass_obj
def retry(server: Server) -> None:
    """Dispatch every offline retry record."""
    async def work(service: TranscriptionService):
        dispatched = await service.retry_queued_segments()
        await service.wait_until_idle()
        return dispatched

    dispatched = _run_pipeline(server, work)
    if not dispatched:
        console.print("No segments waiting for retry")
        return
    refreshed = [server.context.database.get_segment(s.id) or s for s in dispatched]
    console.print(segments_table(refreshed))


@cli.command("retry-segment")
@click.argument("segment_id")
@click.pass_obj
def retry_segment(server: Server, segment_id: str) -> None:
    """Retry one failed segment in place."""
    async def work(service: TranscriptionService):
        return await service.retry_segment(segment_id)

    segment = _run_pipeline(server, work)
    if segment is None:
        console.print(f"[yellow]Segment {segment_id} was not processed[/yellow]")
        return
    console.print(segments_table([segment]))


@cli.command()
@click.pass_obj
def recover(server: Server) -> None:
    """Fail segments an interrupted run left transcribing or queued so they can be retried."""
    service = TranscriptionService(server.context)
    count = service.recover_stale_segments()
    console.print(f"Recovered {count} segment(s)")


@cli.command("list")
@click.option("--search", help="Only sessions whose title contains this text")
@click.pass_obj
def list_sessions(server: Server, search: Optional[str]) -> None:
    """List sessions, newest first."""
    database = server.context.database
    sessions = database.find_sessions(search) if search else database.list_sessions()
    if not sessions:
        console.print("No sessions")
        return

    counts = {}
    for session in sessions:
        per_status = {
            status.value: database.count_segments(session_id=session.id, status=status)
            for status in SegmentStatus
        }
        per_status["total"] = database.count_segments(session_id=session.id)
        counts[session.id] = per_status
    console.print(sessions_table(sessions, counts))


@cli.command()
@click.argument("session_id")
@click.pass_obj
def show(server: Server, session_id: str) -> None:
    """Show a session's transcript and segments."""
    database = server.context.database
    session = database.get_session(session_id)
    if session is None:
        raise click.ClickException(f"Session not found: {session_id}")
    segments = database.get_segments(session_id)
    console.print(session_panel(session, segments))
    console.print(segments_table(segments))


@cli.command()
@click.argument("session_id")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_obj
def delete(server: Server, session_id: str, yes: bool) -> None:
    """Delete a session, its segments and its encrypted audio."""
    context = server.context
    session = context.database.get_session(session_id)
    if session is None:
        raise click.ClickException(f"Session not found: {session_id}")
    if not yes:
        click.confirm(f"Delete '{session.title}' and its audio?", abort=True)

    manager = SessionManager(context.database, context.file_manager, context.crypto)
    manager.delete_session(session_id)
    console.print(f"Deleted {session_id}")


@cli.command("set-key")
@click.option("--api-key", prompt="Deepgram API key", hide_input=True,
              help="Deepgram API key (prompted if omitted)")
@click.pass_obj
def set_key(server: Server, api_key: str) -> None:
    """Store the Deepgram API key in the secret store."""
    api_key = api_key.strip()
    if not api_key:
        raise click.ClickException("API key must not be empty")
    name = server.config.get('deepgram.api_key_secret', 'deepgram_api_key')
    try:
        server.context.secret_store.set(name, api_key)
    except VaultScribeError as e:
        raise click.ClickException(str(e))
    console.print("API key stored")


@cli.command()
@click.pass_obj
def stats(server: Server) -> None:
    """Show storage and pipeline statistics."""
    context = server.context
    data = context.file_manager.get_storage_stats()
    data["sessions"] = context.database.count_sessions()
    for status in SegmentStatus:
        data[f"segments_{status.value}"] = context.database.count_segments(status=status)
    data["offline_retry_records"] = context.database.count_queued_segments()
    console.print(stats_table(data))


def main() -> None:
    """Main entry point for VaultScribe."""
    cli()


if __name__ == "__main__":
    main()
