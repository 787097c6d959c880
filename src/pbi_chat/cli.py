"""Command-line interface for pbi-chat."""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import shutil
from pathlib import Path

import click
from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.history import FileHistory
from rich.console import Console
from rich.live import Live
from rich.markup import escape
from rich.markdown import Markdown
from rich.table import Table

from pbi_chat.config import ConfigStore, ConfigStoreError
from pbi_chat.llm.client import ChatClient
from pbi_chat.types import (
    ChatResult,
    ConversationTurn,
    ModelDescriptor,
    ProviderConfiguration,
    ProviderType,
    Role,
)

console = Console()

# Repository root: <repo>/src/pbi_chat/cli.py -> <repo>
_REPO_ROOT = Path(__file__).resolve().parent.parent.parent

_PROVIDER_CHOICES = [p.value for p in ProviderType]


def get_version() -> str:
    """Read version from pyproject.toml."""
    toml = _REPO_ROOT / "pyproject.toml"
    if toml.exists():
        for line in toml.read_text().splitlines():
            if line.strip().startswith("version"):
                return line.split("=", 1)[1].strip().strip('"').strip("'")
    return "unknown"


def _store(ctx: click.Context) -> ConfigStore:
    return ctx.obj["store"]


def _print_failure(message: str) -> None:
    console.print(f"[red]Error: {escape(message)}[/red]")


def _handle_storage_errors(func):
    """Report an unreadable or unwritable settings file instead of a traceback."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except ConfigStoreError as e:
            _print_failure(str(e))
            click.get_current_context().exit(1)

    return wrapper


async def _send(
    client: ChatClient,
    turns: list[ConversationTurn],
    stream: bool,
) -> ChatResult:
    """Send *turns*, rendering streamed text live."""
    if not stream:
        result = await client.send_message(turns)
        if result.success:
            console.print(Markdown(result.text))
        return result

    with Live(console=console, refresh_per_second=12, vertical_overflow="visible") as live:
        result = await client.send_message(
            turns, lambda text: live.update(Markdown(text)),
        )
        if result.success:
            live.update(Markdown(result.text))
    return result


def _usage_line(result: ChatResult) -> str:
    usage = result.usage or {}
    total = usage.get("total_tokens") or usage.get("totalTokenCount")
    if total is None and "input_tokens" in usage:
        total = usage.get("input_tokens", 0) + usage.get("output_tokens", 0)
    tokens = f", {total} tokens" if total else ""
    return f"[dim]{result.provider} / {result.model}{tokens}[/dim]"


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@click.group()
@click.option("--settings", "-s", "settings_path", default=None,
              help="Path to settings YAML (default: ./pbi_chat.yaml or ~/.config/pbi-chat/settings.yaml)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.version_option(get_version(), prog_name="pbi-chat")
@click.pass_context
def main(ctx: click.Context, settings_path: str | None, verbose: bool):
    """pbi-chat - chat with LLM providers about your Power BI models."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)
    ctx.ensure_object(dict)
    ctx.obj["store"] = ConfigStore(settings_path)


@main.command()
@click.argument("message", required=False)
@click.option("--system", "system_prompt", default=None, help="System prompt for the conversation")
@click.option("--no-stream", is_flag=True, help="Wait for the full response instead of streaming")
@click.pass_context
def chat(ctx: click.Context, message: str | None, system_prompt: str | None, no_stream: bool):
    """Send MESSAGE, or start an interactive session when omitted."""
    client = ChatClient(_store(ctx))
    if not client.is_configured():
        _print_failure("No API configuration. Add one with `pbi-chat add`.")
        ctx.exit(1)

    turns: list[ConversationTurn] = []
    if system_prompt:
        turns.append(ConversationTurn(Role.SYSTEM.value, system_prompt))

    if message is not None:
        turns.append(ConversationTurn(Role.USER.value, message))
        result = asyncio.run(_one_shot(client, turns, not no_stream))
        if not result.success:
            _print_failure(result.error)
            ctx.exit(1)
        console.print(_usage_line(result))
        return

    _repl(client, turns, not no_stream)


async def _one_shot(client: ChatClient, turns: list[ConversationTurn], stream: bool) -> ChatResult:
    try:
        return await _send(client, turns, stream)
    finally:
        await client.close()


def _repl(client: ChatClient, turns: list[ConversationTurn], stream: bool) -> None:
    console.print(
        f"[bold cyan]pbi-chat[/bold cyan] [dim]v{get_version()}[/dim]  "
        f"[dim]{client.get_config_name()} / {client.get_current_model()}[/dim]"
    )
    console.print("[dim]Commands: /models, /model <name>, /clear, /quit[/dim]\n")

    history_path = Path(os.path.expanduser("~/.config/pbi-chat/history"))
    history_path.parent.mkdir(parents=True, exist_ok=True)
    session = PromptSession(history=FileHistory(str(history_path)))
    base_turns = list(turns)
    loop = asyncio.new_event_loop()

    def _prompt():
        line = "─" * shutil.get_terminal_size().columns
        return HTML(f"<dim>{line}</dim>\n<ansigreen><b>❯ </b></ansigreen>")

    try:
        while True:
            try:
                user_input = session.prompt(_prompt).strip()
            except (EOFError, KeyboardInterrupt):
                console.print("\n[dim]Goodbye![/dim]")
                break
            if not user_input:
                continue

            if user_input.startswith("/"):
                cmd, _, arg = user_input.partition(" ")
                if cmd in ("/quit", "/exit"):
                    console.print("[dim]Goodbye![/dim]")
                    break
                if cmd == "/clear":
                    turns[:] = base_turns
                    console.print("[dim]Conversation cleared.[/dim]")
                elif cmd == "/models":
                    _print_models(client)
                elif cmd == "/model" and arg.strip():
                    result = client.set_selected_model(arg.strip())
                    if result.success:
                        console.print(f"[green]Model: {client.get_current_model()}[/green]")
                    else:
                        _print_failure(result.error)
                else:
                    console.print(f"[yellow]Unknown command: {user_input}[/yellow]")
                continue

            turns.append(ConversationTurn(Role.USER.value, user_input))
            result = loop.run_until_complete(_send(client, turns, stream))
            if result.success:
                turns.append(ConversationTurn(Role.ASSISTANT.value, result.text))
                console.print(_usage_line(result))
            else:
                turns.pop()
                _print_failure(result.error)
    finally:
        loop.run_until_complete(client.close())
        loop.close()


@main.command()
@click.argument("config_id", required=False)
@click.pass_context
@_handle_storage_errors
def test(ctx: click.Context, config_id: str | None):
    """Test the connection of CONFIG_ID (default: the active configuration)."""
    store = _store(ctx)
    if config_id:
        config = next((c for c in store.get_all().configs if c.id == config_id), None)
        if config is None:
            _print_failure(f"Unknown configuration: {config_id}")
            ctx.exit(1)
    else:
        config = store.load()
        if config is None:
            _print_failure("No API configuration. Add one with `pbi-chat add`.")
            ctx.exit(1)

    async def _run():
        async with ChatClient(store, config=config) as client:
            return await client.test_connection(config)

    console.print(f"[dim]Testing {config.display_name} ({config.provider_type.value})...[/dim]")
    result = asyncio.run(_run())
    if result.success:
        console.print(f"[green]{result.message}[/green]")
    else:
        _print_failure(result.error)
        ctx.exit(1)


@main.command()
@click.pass_context
@_handle_storage_errors
def configs(ctx: click.Context):
    """List saved configurations."""
    stored = _store(ctx).get_all()
    if not stored.configs:
        console.print("[dim]No configurations saved.[/dim]")
        return
    table = Table(title="API configurations")
    table.add_column("", width=1)
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Provider")
    table.add_column("URL")
    table.add_column("Models")
    for cfg in stored.configs:
        marker = "[green]*[/green]" if cfg.id == stored.active_id else ""
        models = ", ".join(
            f"{m.name} (default)" if m.is_default else m.name for m in cfg.models
        )
        table.add_row(marker, cfg.id, cfg.display_name, cfg.provider_type.value, cfg.api_url, models)
    console.print(table)


@main.command()
@click.option("--name", required=True, help="Display name")
@click.option("--type", "provider_type", type=click.Choice(_PROVIDER_CHOICES), default=None,
              help="Provider type (inferred from the URL when omitted)")
@click.option("--url", "api_url", required=True, help="Chat endpoint URL")
@click.option("--key", "api_key", default="", help="API key (optional for local APIs)")
@click.option("--model", "models", multiple=True, required=True, help="Model name (repeatable)")
@click.option("--default-model", default=None, help="Which --model is the default")
@click.pass_context
@_handle_storage_errors
def add(ctx: click.Context, name: str, provider_type: str | None, api_url: str,
        api_key: str, models: tuple[str, ...], default_model: str | None):
    """Save a new API configuration."""
    config = ProviderConfiguration(
        name=name,
        provider_type=ProviderType.resolve(provider_type, api_url),
        api_url=api_url,
        api_key=api_key,
        models=[ModelDescriptor(m, is_default=(m == default_model)) for m in models],
    )
    config_id = _store(ctx).save(config)
    console.print(f"[green]Saved configuration {config_id}[/green]")


@main.command()
@click.argument("config_id")
@click.option("--model", "model_name", default=None, help="Model to select")
@click.pass_context
@_handle_storage_errors
def use(ctx: click.Context, config_id: str, model_name: str | None):
    """Make CONFIG_ID the active configuration."""
    try:
        _store(ctx).set_active(config_id, model_name)
    except KeyError:
        _print_failure(f"Unknown configuration: {config_id}")
        ctx.exit(1)
    console.print(f"[green]Active configuration: {config_id}[/green]")


@main.command()
@click.argument("model_name")
@click.pass_context
@_handle_storage_errors
def model(ctx: click.Context, model_name: str):
    """Select MODEL_NAME for the active configuration."""
    _store(ctx).set_selected_model(model_name)
    console.print(f"[green]Selected model: {model_name}[/green]")


@main.command()
@click.pass_context
def models(ctx: click.Context):
    """List the models of the active configuration."""
    client = ChatClient(_store(ctx))
    try:
        _print_models(client)
    finally:
        asyncio.run(client.close())


@main.command()
@click.argument("config_id")
@click.pass_context
@_handle_storage_errors
def remove(ctx: click.Context, config_id: str):
    """Delete CONFIG_ID."""
    try:
        _store(ctx).delete(config_id)
    except KeyError:
        _print_failure(f"Unknown configuration: {config_id}")
        ctx.exit(1)
    console.print(f"[green]Removed configuration {config_id}[/green]")


def _print_models(client: ChatClient) -> None:
    available = client.get_available_models()
    if not available:
        console.print("[dim]No models configured.[/dim]")
        return
    current = client.get_current_model()
    for m in available:
        tags = []
        if m.is_default:
            tags.append("default")
        if m.name == current:
            tags.append("current")
        suffix = f" [dim]({', '.join(tags)})[/dim]" if tags else ""
        console.print(f"  {m.name}{suffix}")


if __name__ == "__main__":
    main()
