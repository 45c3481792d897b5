"""graphchat CLI.

Usage:
    graphchat ask "What time is it?"      # One-shot question, prints the transcript
    graphchat chat                        # Interactive multi-session chat
    graphchat sessions list               # List saved sessions
    graphchat sessions delete <id>        # Delete a session and its remote thread
    graphchat smoke                       # Check a run service end to end

Connection settings come from options or the environment
(GRAPHCHAT_API_URL, GRAPHCHAT_GRAPH_ID, GRAPHCHAT_API_KEY, ...).
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

import click

from .config import ChatClientConfig
from .errors import GraphChatError, NetworkOrStreamError
from .protocol.events import StreamPart
from .protocol.messages import Message, Role
from .sdk.http_client import HTTPRunClient
from .sdk.ports import RunClient, RunRequest
from .session import Session, SessionRegistry
from .session_store import SessionIndex, open_store

# Output format options
FORMAT_TABLE = "table"
FORMAT_JSON = "json"

ClientFactory = Callable[[ChatClientConfig], RunClient]


def format_datetime(dt: datetime | None) -> str:
    """Format datetime for display."""
    if dt is None:
        return "N/A"
    return dt.astimezone().strftime("%Y-%m-%d %H:%M")


def truncate(text: str | None, max_len: int = 50) -> str:
    """Truncate text for display."""
    if not text:
        return ""
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def render_message(message: Message) -> str:
    """One-line-per-part text rendering of a transcript entry."""
    if message.role == Role.HUMAN:
        return f"you: {message.content}"
    if message.role == Role.TOOL:
        return f"  [{message.name or 'tool'}] {message.content}"
    if message.has_tool_calls:
        calls = ", ".join(
            f"{call.name}({json.dumps(call.args, ensure_ascii=False)})" for call in message.tool_calls
        )
        text = f"assistant: {message.content}\n" if message.content.strip() else ""
        return f"{text}assistant -> {calls}"
    return f"assistant: {message.content}"


def _echo_transcript(messages: list[Message]) -> None:
    for message in messages:
        click.echo(render_message(message))


@asynccontextmanager
async def _open_client(ctx: click.Context) -> AsyncIterator[RunClient]:
    config: ChatClientConfig = ctx.obj["config"]
    factory: ClientFactory = ctx.obj.get("client_factory") or HTTPRunClient
    client = factory(config)
    try:
        yield client
    finally:
        aclose = getattr(client, "aclose", None)
        if aclose is not None:
            await aclose()


@click.group()
@click.option("--url", "api_url", help="Run service base URL")
@click.option("--graph", "graph_id", help="Graph id to create assistants for")
@click.option("--api-key", help="API key sent as X-Api-Key")
@click.option(
    "--storage-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory for saved session metadata",
)
@click.option("--no-persist", is_flag=True, help="Do not save session metadata")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(
    ctx: click.Context,
    api_url: str | None,
    graph_id: str | None,
    api_key: str | None,
    storage_dir: Path | None,
    no_persist: bool,
    verbose: bool,
) -> None:
    """graphchat - chat with agents on a LangGraph-compatible run service."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    ctx.ensure_object(dict)
    ctx.obj["config"] = ChatClientConfig.from_env(
        api_url=api_url,
        graph_id=graph_id,
        api_key=api_key,
        storage_dir=storage_dir,
        persist=False if no_persist else None,
    )


# =============================================================================
# ask
# =============================================================================


@main.command()
@click.argument("text")
@click.option("--json", "output_json", is_flag=True, help="Output the transcript as JSON")
@click.pass_context
def ask(ctx: click.Context, text: str, output_json: bool) -> None:
    """Ask a single question in a new session.

    Examples:

        graphchat ask "What time is it?"

        graphchat --graph research ask "Summarize today's news" --json
    """

    async def run() -> Session:
        async with _open_client(ctx) as client:
            registry = SessionRegistry(client, ctx.obj["config"])
            registry.load()
            session_id = await registry.create_session()
            await registry.send_message(session_id, text)
            return registry.get(session_id)

    session = asyncio.run(run())

    if output_json:
        payload = {
            "session": session.snapshot(),
            "transcript": [m.model_dump(mode="json", exclude_none=True) for m in session.transcript],
        }
        click.echo(json.dumps(payload, indent=2, ensure_ascii=False))
    else:
        _echo_transcript(session.transcript)

    if session.last_error is not None:
        click.echo(f"Error: {session.last_error}", err=True)
        sys.exit(1)


# =============================================================================
# chat
# =============================================================================

CHAT_HELP = """Commands:
  /new            start a new session
  /list           list sessions
  /switch N       switch to session N (from /list)
  /delete N       delete session N
  /edit K TEXT    replace message K and continue from there
  /history        show the active transcript with message numbers
  /quit           exit"""


@main.command()
@click.pass_context
def chat(ctx: click.Context) -> None:
    """Interactive chat with multiple sessions.

    Type a message to send it to the active session, or /help for commands.
    """

    async def run() -> None:
        async with _open_client(ctx) as client:
            registry = SessionRegistry(client, ctx.obj["config"])
            registry.load()
            if registry.active_session is None:
                await registry.create_session()

            click.echo(f"Active session: {registry.active_session.title}. /help for commands.")
            while True:
                try:
                    line = await asyncio.to_thread(click.prompt, "", prompt_suffix="> ")
                except (EOFError, click.Abort):
                    return
                if not await _handle_chat_line(registry, line.strip()):
                    return

    asyncio.run(run())


async def _handle_chat_line(registry: SessionRegistry, line: str) -> bool:
    """Process one line of chat input.

    Returns:
        False when the chat loop should end
    """
    if not line:
        return True

    if not line.startswith("/"):
        session = registry.active_session
        before = session.message_count
        await registry.send_message(session.id, line)
        # The human message was already echoed by the terminal
        _echo_transcript(session.transcript[before + 1 :])
        if session.last_error is not None:
            click.echo(f"Error: {session.last_error}", err=True)
        return True

    command, _, rest = line.partition(" ")
    try:
        if command == "/quit":
            return False
        if command == "/help":
            click.echo(CHAT_HELP)
        elif command == "/new":
            await registry.create_session()
            click.echo("Started a new session.")
        elif command == "/list":
            _echo_session_table(registry)
        elif command == "/switch":
            session = _session_by_number(registry, rest)
            await registry.switch_active(session.id)
            click.echo(f"Switched to: {session.title}")
            _echo_transcript(session.transcript)
        elif command == "/delete":
            session = _session_by_number(registry, rest)
            await registry.delete_session(session.id)
            click.echo(f"Deleted: {session.title}")
        elif command == "/history":
            for number, message in enumerate(registry.active_session.transcript):
                click.echo(f"{number:>3} {render_message(message)}")
        elif command == "/edit":
            number, _, text = rest.partition(" ")
            if not number.isdigit() or not text.strip():
                raise click.UsageError("usage: /edit K TEXT")
            session = registry.active_session
            await registry.edit_and_fork(session.id, int(number), text.strip())
            _echo_transcript(session.transcript)
        else:
            click.echo(f"Unknown command: {command}", err=True)
    except (click.UsageError, GraphChatError, IndexError) as e:
        click.echo(f"Error: {e}", err=True)
    return True


def _session_by_number(registry: SessionRegistry, text: str) -> Session:
    sessions = registry.sessions
    if not text.strip().isdigit() or not 1 <= int(text) <= len(sessions):
        raise click.UsageError(f"expected a session number between 1 and {len(sessions)}")
    return sessions[int(text) - 1]


def _echo_session_table(registry: SessionRegistry) -> None:
    active_id = registry.active_session_id
    for number, session in enumerate(registry.sessions, start=1):
        marker = "*" if session.id == active_id else " "
        click.echo(
            f"{marker}{number:>3} {truncate(session.title, 34):<34} "
            f"{session.message_count:>4} msgs  {format_datetime(session.created_at)}"
        )


# =============================================================================
# sessions
# =============================================================================


@main.group()
def sessions() -> None:
    """Manage saved sessions."""


@sessions.command("list")
@click.option(
    "--format",
    "-f",
    "output_format",
    type=click.Choice([FORMAT_TABLE, FORMAT_JSON]),
    default=FORMAT_TABLE,
    help="Output format",
)
@click.pass_context
def sessions_list(ctx: click.Context, output_format: str) -> None:
    """List saved sessions.

    Examples:

        graphchat sessions list

        graphchat sessions list --format json
    """
    config: ChatClientConfig = ctx.obj["config"]
    saved = [Session.from_record(record) for record in SessionIndex(open_store(config)).load()]

    if not saved:
        click.echo("No sessions found.")
        return

    if output_format == FORMAT_JSON:
        click.echo(json.dumps([s.to_record() for s in saved], indent=2, ensure_ascii=False))
        return

    click.echo(f"{'ID':<36} {'Title':<34} {'Created':<17} {'Thread':<12}")
    click.echo("-" * 102)
    for s in saved:
        thread_id = s.run_handle.thread_id if s.run_handle else "-"
        click.echo(
            f"{s.id:<36} {truncate(s.title, 34):<34} "
            f"{format_datetime(s.created_at):<17} {truncate(thread_id, 12):<12}"
        )
    click.echo(f"\nTotal: {len(saved)} session(s)")


@sessions.command("delete")
@click.argument("session_id")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_context
def sessions_delete(ctx: click.Context, session_id: str, yes: bool) -> None:
    """Delete a saved session and release its remote assistant and thread.

    Examples:

        graphchat sessions delete chat_1700000000000_abc123def --yes
    """

    async def run() -> bool:
        async with _open_client(ctx) as client:
            registry = SessionRegistry(client, ctx.obj["config"])
            registry.load()
            if registry.get(session_id) is None:
                return False
            if not yes and not click.confirm(f"Delete session {session_id}?"):
                click.echo("Cancelled.")
                return True
            await registry.delete_session(session_id)
            click.echo(f"Deleted session {session_id}")
            return True

    if not asyncio.run(run()):
        click.echo(f"Session not found: {session_id}", err=True)
        sys.exit(1)


# =============================================================================
# smoke
# =============================================================================


@main.command()
@click.option("--message", "-m", default="Hello! Can you help me?", help="Message to send")
@click.pass_context
def smoke(ctx: click.Context, message: str) -> None:
    """Check a run service end to end.

    Creates an assistant and thread, streams one run printing every part,
    then deletes both.
    """
    config: ChatClientConfig = ctx.obj["config"]

    async def run() -> None:
        async with _open_client(ctx) as client:
            click.echo(f"Connecting to {config.api_url} (graph {config.graph_id})")
            assistant_id = await client.create_assistant(config.graph_id, config.assistant_config)
            click.echo(f"Assistant: {assistant_id}")
            try:
                thread_id = await client.create_thread()
                click.echo(f"Thread: {thread_id}")
                try:
                    request = RunRequest(
                        messages=[Message.human(message)],
                        stream_mode=list(config.stream_mode),
                        config=config.run_config,
                    )
                    count = 0
                    async for part in client.start_run(thread_id, assistant_id, request):
                        count += 1
                        click.echo(_format_part(part))
                    click.echo(f"Stream finished: {count} part(s)")
                finally:
                    await client.delete_thread(thread_id)
            finally:
                await client.delete_assistant(assistant_id)
                click.echo("Cleaned up")

    try:
        asyncio.run(run())
    except NetworkOrStreamError as e:
        click.echo(f"Smoke test failed: {e}", err=True)
        sys.exit(1)


def _format_part(part: StreamPart) -> str:
    return f"[{part.event}] {truncate(json.dumps(part.data, ensure_ascii=False, default=str), 200)}"


if __name__ == "__main__":
    main()
