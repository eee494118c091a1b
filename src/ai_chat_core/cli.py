"""Typer CLI interface for AI Chat Core."""

import asyncio
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .backends import AnthropicSDKBackend, ScriptedBackend
from .backends.base import ChatBackend
from .config import Settings
from .exceptions import ChatCoreError
from .history_store import HistoryRecorder, HistoryStore
from .instance import ChatInstance
from .logging_config import get_logger, setup_logging
from .message_store import StoredResponse
from .models.events import BusEvent, BusEventType
from .models.messages import MessageResponseTypes
from .models.session import ResponseState

app = typer.Typer(
    name="ai-chat",
    help="AI Chat Core - stream, stop and store assistant responses",
    add_completion=False,
)
console = Console()
err_console = Console(stderr=True)
logger = get_logger(__name__)


def _summarize(entry: StoredResponse, width: int = 60) -> str:
    texts = [item.text for item in entry.message.output.generic if item.text]
    summary = " ".join(texts).replace("\n", " ")
    return summary[:width] + ("..." if len(summary) > width else "")


def _render_entries(entries: List[StoredResponse], title: str) -> None:
    table = Table(title=title)
    table.add_column("Message ID", style="cyan", no_wrap=True)
    table.add_column("State")
    table.add_column("Items", justify="right")
    table.add_column("Text")

    for entry in entries:
        state_style = "green" if entry.state == ResponseState.COMPLETE else "yellow"
        has_error = any(
            item.response_type == MessageResponseTypes.INLINE_ERROR.value
            for item in entry.message.output.generic
        )
        table.add_row(
            entry.message_id,
            f"[{state_style}]{entry.state.value}[/{state_style}]" + (" [red](error)[/red]" if has_error else ""),
            str(len(entry.message.output.generic)),
            _summarize(entry),
        )

    console.print(table)


async def _run_turn(
    backend: ChatBackend,
    settings: Settings,
    text: str,
    stop_after: Optional[int],
    save: bool,
    echo_text: bool,
) -> List[StoredResponse]:
    chat = ChatInstance(backend=backend, settings=settings)
    received = 0

    def on_chunk(event: BusEvent) -> None:
        nonlocal received
        received += 1
        if echo_text:
            partial = event.data.get("chunk", {}).get("partial_item") or {}
            if partial.get("text"):
                console.print(partial["text"], end="", markup=False, highlight=False)
        if stop_after is not None and received >= stop_after:
            chat.stop_streaming(event.response_id)

    def on_cancelled(event: BusEvent) -> None:
        console.print(f"\n[yellow]Stopped[/yellow] response {event.response_id}")

    chat.subscribe(BusEventType.CHUNK_RECEIVED, on_chunk)
    chat.subscribe(BusEventType.RESPONSE_CANCELLED, on_cancelled)

    recorder = None
    if save:
        recorder = HistoryRecorder(HistoryStore(settings.HISTORY_DB_PATH))
        recorder.attach(chat.subscribe)

    try:
        response_id = await chat.send(text)
        logger.debug(f"Turn produced response {response_id}")
        if echo_text:
            console.print()
        if recorder is not None:
            await recorder.flush()
    finally:
        await chat.shutdown()

    return [chat.get_entry(message.id) for message in chat.get_all_messages()]


@app.command()
def replay(
    file: Path = typer.Argument(..., help="JSON-lines file of chunks or responses"),
    stop_after: Optional[int] = typer.Option(
        None, "--stop-after", "-s", help="Stop the response after N chunks"
    ),
    delay: Optional[float] = typer.Option(
        None, "--delay", help="Seconds to wait between chunks"
    ),
    save: bool = typer.Option(False, "--save", help="Persist the result to the history database"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
):
    """Replay a recorded chunk stream through the engine."""
    settings = Settings()
    setup_logging(settings.LOG_LEVEL, debug=debug or settings.DEBUG, console=err_console)

    if not file.exists():
        console.print(f"[red]Error:[/red] File not found: {file}")
        raise typer.Exit(1)

    try:
        backend = ScriptedBackend.from_jsonl(
            file, delay_seconds=delay if delay is not None else settings.REPLAY_DELAY_SECONDS
        )
    except ChatCoreError as e:
        console.print(f"[red]Error:[/red] {e.message} {e.detail}")
        raise typer.Exit(1)

    console.print(
        Panel.fit(
            f"[bold]Replaying[/bold] {file}\n\n"
            f"⏹  Stop after: {stop_after if stop_after is not None else 'never'}\n"
            f"💾 Save: {'yes' if save else 'no'}",
            border_style="green",
        )
    )

    entries = asyncio.run(
        _run_turn(backend, settings, "replay", stop_after, save, echo_text=False)
    )
    _render_entries(entries, "Stored responses")


@app.command()
def ask(
    text: str = typer.Argument(..., help="Prompt to send"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Claude model"),
    stop_after: Optional[int] = typer.Option(
        None, "--stop-after", "-s", help="Stop the response after N chunks"
    ),
    save: bool = typer.Option(True, "--save/--no-save", help="Persist the result"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
):
    """Ask Claude through the Anthropic SDK backend (needs ANTHROPIC_API_KEY)."""
    settings = Settings()
    setup_logging(settings.LOG_LEVEL, debug=debug or settings.DEBUG, console=err_console)

    backend = AnthropicSDKBackend(
        model=model or settings.ANTHROPIC_MODEL,
        max_tokens=settings.ANTHROPIC_MAX_TOKENS,
    )
    entries = asyncio.run(_run_turn(backend, settings, text, stop_after, save, echo_text=True))
    _render_entries(entries, "Stored responses")


@app.command()
def history(
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Show only the last N"),
    clear: bool = typer.Option(False, "--clear", help="Delete all persisted responses"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
):
    """Show persisted responses."""
    settings = Settings()
    setup_logging(settings.LOG_LEVEL, debug=debug or settings.DEBUG, console=err_console)
    store = HistoryStore(settings.HISTORY_DB_PATH)

    if clear:
        deleted = asyncio.run(store.delete_all())
        console.print(f"[green]✓[/green] Deleted {deleted} responses")
        return

    entries = asyncio.run(store.load_entries(limit=limit))
    if not entries:
        console.print("[yellow]No persisted responses[/yellow]")
        return
    _render_entries(entries, f"History ({settings.HISTORY_DB_PATH})")


if __name__ == "__main__":
    app()
