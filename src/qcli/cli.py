"""CLI for q, the terminal assistant."""

import logging
import sys
from datetime import datetime, timezone

import pyperclip
import typer
from rich.console import Console
from rich.markup import escape
from typer.core import TyperGroup

from qcli.config import SettingsProvider, get_config_path, is_cache_configured, save_user_config
from qcli.errors import format_error
from qcli.format import cache_table, format_bytes, format_date, format_log_full, format_log_short, truncate

# Initialize logging
logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

console = Console(highlight=False)
err_console = Console(stderr=True, highlight=False)

ANSWER_INDENT = "    "


class _QueryGroup(TyperGroup):
    """Treats ``q <words...>`` as ``q ask <words...>``."""

    def parse_args(self, ctx, args: list[str]) -> list[str]:
        if args and args[0] not in self.commands and args[0] not in ctx.help_option_names:
            args = ["ask", *args]
        return super().parse_args(ctx, args)


# Create Typer app
app = typer.Typer(
    name="q",
    cls=_QueryGroup,
    help="Terminal AI assistant with a semantic answer cache",
    add_completion=False,
)
cache_app = typer.Typer(help="Manage the answer cache", add_completion=False)
app.add_typer(cache_app, name="cache")


def _set_verbose(verbose: bool) -> None:
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _prompt_cache_preference(provider: SettingsProvider) -> None:
    """Ask once whether answers should be cached, and remember the choice."""
    console.print(
        "[cyan]\nWould you like to enable query caching?\n"
        "Caching reduces API calls by reusing responses for similar queries.[/cyan]"
    )
    enabled = typer.confirm("Enable caching?", default=True)
    save_user_config(cache_enabled=enabled)
    provider.reload()
    console.print("[green]Cache enabled![/green]" if enabled else "[yellow]Cache disabled.[/yellow]")


class _AnswerPrinter:
    """Streams answer text under a spinner, indenting continuation lines."""

    def __init__(self):
        self.status = console.status("Generating response...", spinner="dots")
        self.started = False

    def __enter__(self) -> "_AnswerPrinter":
        self.status.start()
        return self

    def __exit__(self, *args) -> None:
        self.status.stop()

    def __call__(self, text: str) -> None:
        if not self.started:
            self.status.stop()
            console.print("\n" + ANSWER_INDENT, end="")
            self.started = True
        console.print(text.replace("\n", "\n" + ANSWER_INDENT), end="", markup=False, soft_wrap=True)


def _print_answer(text: str) -> None:
    console.print("\n" + ANSWER_INDENT + text.replace("\n", "\n" + ANSWER_INDENT), markup=False, soft_wrap=True)


def _read_key() -> str:
    """One keypress; Ctrl+C and end of input come back as ``"\\x03"``."""
    try:
        return typer.getchar() or "\x03"
    except (KeyboardInterrupt, EOFError):
        return "\x03"


def _copy(assistant, text: str, log_id: int | None) -> None:
    try:
        pyperclip.copy(text)
    except pyperclip.PyperclipException as e:
        err_console.print(f"[red]Failed to copy to clipboard: {e}[/red]")
        sys.exit(1)
    assistant.mark_copied(log_id)
    console.print("Copied to clipboard ✅")


def _wait_for_action(assistant, outcome, verbose: bool) -> None:
    """Enter copies, r regenerates a cached answer, Ctrl+C exits."""
    while True:
        if outcome.cached:
            hint = "[bold]Enter[/bold] to copy | [bold]r[/bold] to regenerate | [bold]Ctrl+C[/bold] to exit"
            console.print(f"\n\n[dim]{hint}[/dim] [cyan](cached)[/cyan]")
        else:
            console.print("\n\n[dim][bold]Enter[/bold] to copy to clipboard, [bold]Ctrl+C[/bold] to exit[/dim]")

        while True:
            key = _read_key()
            if key in ("\r", "\n"):
                _copy(assistant, outcome.response, outcome.log_id)
                return
            if key == "\x03":
                console.print("\nExited without copying ❌")
                return
            if key in ("r", "R") and outcome.cached:
                break

        with _AnswerPrinter() as printer:
            outcome = assistant.regenerate(outcome, on_text=printer)
        for warning in outcome.warnings:
            err_console.print(f"\n[yellow]Warning: {warning}[/yellow]")
        if verbose:
            console.print("\n[dim]Cache entry refreshed[/dim]")


@app.command()
def ask(
    query: list[str] = typer.Argument(..., help="Natural language query"),
    context: int | None = typer.Option(
        None,
        "--context",
        "-c",
        help="Include N previous interactions for context (default: auto-detect)",
    ),
    no_cache: bool = typer.Option(
        False, "--no-cache", help="Skip cache lookup, force API call, don't update cache"
    ),
    refresh: bool = typer.Option(
        False, "--refresh", help="Skip cache lookup, force API call, update cache"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show cache details and debug logs"),
) -> None:
    """
    Turn a natural language request into a terminal command.

    Example:
        q ask list all files larger than 10MB
    """
    from qcli.sdk import ShellAssistant

    text = " ".join(query).strip()
    if not text:
        err_console.print("[red]No query provided[/red]")
        sys.exit(1)

    provider = SettingsProvider()
    verbose = verbose or provider.get().verbose
    _set_verbose(verbose)

    try:
        if provider.get().cache_enabled and not no_cache and not is_cache_configured():
            _prompt_cache_preference(provider)

        with ShellAssistant(settings=provider) as assistant:
            with _AnswerPrinter() as printer:
                outcome = assistant.ask(
                    text,
                    no_cache=no_cache,
                    refresh=refresh,
                    context_limit=context,
                    on_text=printer,
                )

            if outcome.cached:
                _print_answer(outcome.response)
                if verbose:
                    entry = outcome.match.entry
                    age = (datetime.now(timezone.utc) - entry.created_at).days
                    console.print(
                        f'\n[dim]{ANSWER_INDENT}\\[CACHED] Original query: "{escape(truncate(entry.query, 50))}"\n'
                        f"{ANSWER_INDENT}Similarity: {outcome.match.similarity:.1%} | Age: {age} days[/dim]",
                    )

            for warning in outcome.warnings:
                err_console.print(f"\n[yellow]Warning: {warning}[/yellow]")

            _wait_for_action(assistant, outcome, verbose)
    except Exception as e:
        logger.debug("Query failed", exc_info=True)
        err_console.print(format_error(e))
        sys.exit(1)


@app.command()
def logs(
    log_id: int | None = typer.Argument(None, help="View a specific log by ID"),
    limit: int = typer.Option(10, "--limit", "-n", help="Number of logs to show"),
) -> None:
    """View recent interactions."""
    from qcli.store.log_store import RedisLogStore

    settings = SettingsProvider().get()
    try:
        store = RedisLogStore(redis_url=settings.redis_url, key_prefix=settings.key_prefix)

        if log_id is not None:
            record = store.get_log_by_id(log_id)
            if record is None:
                err_console.print(f"[red]Log #{log_id} not found[/red]")
                sys.exit(1)
            console.print(format_log_full(record))
        else:
            records = store.get_logs(limit)
            if not records:
                console.print("[yellow]No logs found.[/yellow]")
            for record in records:
                console.print(format_log_short(record))
                console.print()

        store.close()
    except Exception as e:
        logger.debug("Reading logs failed", exc_info=True)
        err_console.print(format_error(e))
        sys.exit(1)


def _open_engine(provider: SettingsProvider):
    from qcli.sdk import ShellAssistant

    return ShellAssistant(settings=provider)


@cache_app.command("list")
def cache_list(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of entries to show"),
) -> None:
    """List cached entries, newest first."""
    provider = SettingsProvider()
    try:
        with _open_engine(provider) as assistant:
            entries = assistant.engine.list_entries(limit)

        if not entries:
            console.print("[yellow]No cache entries found.[/yellow]")
            return

        console.print("[bold]\nCached Entries:\n[/bold]")
        console.print(cache_table(entries, datetime.now(timezone.utc)))
    except Exception as e:
        err_console.print(format_error(e))
        sys.exit(1)


@cache_app.command("stats")
def cache_stats() -> None:
    """Show cache statistics and the effective cache configuration."""
    provider = SettingsProvider()
    settings = provider.get()
    try:
        with _open_engine(provider) as assistant:
            stats = assistant.engine.stats()
    except Exception as e:
        err_console.print(format_error(e))
        sys.exit(1)

    console.print("[bold]\nCache Statistics:\n[/bold]")
    console.print(f"  [cyan]Total entries:[/cyan]     {stats['count']}")
    console.print(f"  [cyan]Total hits:[/cyan]        {stats['total_hits']}")
    console.print(f"  [cyan]Storage size:[/cyan]      {format_bytes(stats['storage_bytes'])}")
    console.print(f"  [cyan]Expired entries:[/cyan]   {stats['expired_count']}")
    console.print(f"  [cyan]Oldest entry:[/cyan]      {format_date(stats['oldest'])}")
    console.print(f"  [cyan]Newest entry:[/cyan]      {format_date(stats['newest'])}")
    if stats["count"] > 0:
        console.print(f"  [cyan]Avg hits/entry:[/cyan]    {stats['total_hits'] / stats['count']:.1f}")

    console.print("[bold]\nConfiguration:\n[/bold]")
    console.print(f"  [cyan]Cache enabled:[/cyan]     {'Yes' if settings.cache_enabled else 'No'}")
    console.print(f"  [cyan]Similarity:[/cyan]        {settings.similarity_threshold:.0%}")
    console.print(f"  [cyan]TTL:[/cyan]               {settings.expiry_days:g} days")
    console.print(f"  [cyan]Config path:[/cyan]       {get_config_path()}")


@cache_app.command("clear")
def cache_clear(
    entry_id: int | None = typer.Argument(None, help="Clear a specific entry by ID"),
    expired: bool = typer.Option(False, "--expired", help="Only clear expired entries"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
) -> None:
    """Clear one entry, expired entries, or the whole cache."""
    provider = SettingsProvider()
    try:
        with _open_engine(provider) as assistant:
            engine = assistant.engine

            if entry_id is not None:
                if engine.clear_by_id(entry_id):
                    console.print(f"[green]Cleared cache entry #{entry_id}[/green]")
                else:
                    err_console.print(f"[red]Cache entry #{entry_id} not found[/red]")
                    sys.exit(1)
                return

            if expired:
                count = engine.prune_expired()
                console.print(f"[green]Cleared {count} expired cache entries[/green]")
                return

            if not yes:
                typer.confirm("Clear every cache entry? This cannot be undone.", abort=True)

            count = engine.clear_all()
            console.print(f"[green]Cleared all {count} cache entries[/green]")
    except typer.Abort:
        console.print("Clear cancelled")
        sys.exit(0)
    except Exception as e:
        err_console.print(format_error(e))
        sys.exit(1)


@app.command()
def info() -> None:
    """Display configuration information."""
    settings = SettingsProvider().get()
    console.print(f"Config path: {get_config_path()}")
    console.print(f"Redis URL: {settings.redis_url}")
    console.print(f"Key prefix: {settings.key_prefix}")
    console.print(f"Cache enabled: {settings.cache_enabled}")
    console.print(f"Similarity threshold: {settings.similarity_threshold}")
    console.print(f"Expiry days: {settings.expiry_days:g}")
    console.print(f"Context limit: {settings.context_limit}")
    console.print(f"Embed provider: {settings.embed_provider}")
    console.print(f"Embed model: {settings.embed_model_name}")
    console.print(f"Vector dimension: {settings.vector_dim}")
    console.print(f"Completion model: {settings.completion_model}")
    console.print(f"AWS region: {settings.aws_region}")


if __name__ == "__main__":
    app()
