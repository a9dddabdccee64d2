"""Rendering helpers for log records and cache entries."""

from collections.abc import Sequence
from datetime import datetime

from rich.markup import escape
from rich.table import Table

from qcli.types import CacheEntry, LogRecord

MAX_PROMPT_DISPLAY = 50
MAX_RESPONSE_DISPLAY = 60
MAX_QUERY_DISPLAY = 38


def format_bytes(size: int) -> str:
    """Human readable byte count (B, KB, MB)."""
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def format_date(value: datetime | None) -> str:
    if value is None:
        return "N/A"
    return value.astimezone().strftime("%b %d, %Y")


def truncate(text: str, max_len: int) -> str:
    """Shorten ``text`` to ``max_len`` characters, ending in "..." when cut."""
    if len(text) <= max_len:
        return text
    return f"{text[: max(max_len - 3, 0)]}..."


def _format_datetime(value: datetime) -> str:
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def format_log_short(log: LogRecord) -> str:
    """Two-line summary of an interaction as rich markup."""
    tags = []
    if log["copied"]:
        tags.append("[green]\\[copied][/green]")
    if log["cached"]:
        tags.append("[blue]\\[cached][/blue]")

    prompt = truncate((log["prompt"] or "").replace("\n", " "), MAX_PROMPT_DISPLAY)
    response = truncate((log["response"] or "").replace("\n", " "), MAX_RESPONSE_DISPLAY)

    header = f"[dim]#{log['id']}[/dim] [cyan]{_format_datetime(log['datetime_utc'])}[/cyan]"
    if tags:
        header += " " + " ".join(tags)
    return f"{header}\n  [yellow]>[/yellow] {escape(prompt)}\n  [green]$[/green] {escape(response)}"


def format_log_full(log: LogRecord) -> str:
    """Every field of an interaction as rich markup."""
    if log["total_tokens"] is not None:
        tokens = (
            f"{log['input_tokens'] if log['input_tokens'] is not None else '?'}/"
            f"{log['output_tokens'] if log['output_tokens'] is not None else '?'} "
            f"({log['total_tokens']} total)"
        )
    else:
        tokens = "N/A"
    duration = f"{log['duration_ms']}ms" if log["duration_ms"] is not None else "N/A"
    copied = "[green]yes[/green]" if log["copied"] else "[dim]no[/dim]"

    lines = [
        f"[bold cyan]Log #{log['id']}[/bold cyan]",
        f"[dim]Date:[/dim]     {_format_datetime(log['datetime_utc'])}",
        f"[dim]Model:[/dim]    {escape(log['model'] or 'N/A')}",
        f"[dim]Duration:[/dim] {duration}",
        f"[dim]Tokens:[/dim]   {tokens}",
        f"[dim]Copied:[/dim]   {copied}",
    ]
    if log["cached"]:
        similarity = log["similarity_score"]
        score = f"{similarity:.0%}" if similarity is not None else "N/A"
        lines.append(f"[dim]Cached:[/dim]   entry #{log['cache_source_id']} ({score} similar)")

    lines += [
        "",
        "[yellow]Prompt:[/yellow]",
        escape(log["prompt"] or "N/A"),
        "",
        "[green]Response:[/green]",
        escape(log["response"] or "N/A"),
    ]
    return "\n".join(lines)


def cache_table(entries: Sequence[CacheEntry], now: datetime) -> Table:
    """Table of cache entries; expired rows are dimmed."""
    table = Table(show_header=True, header_style="bold blue")
    table.add_column("ID", justify="right", style="cyan", width=6)
    table.add_column("Query", width=40)
    table.add_column("Created", width=12)
    table.add_column("Expires", width=12)
    table.add_column("Hits", justify="right", width=6)

    for entry in entries:
        table.add_row(
            str(entry.id),
            escape(truncate(entry.query.replace("\n", " "), MAX_QUERY_DISPLAY)),
            format_date(entry.created_at),
            format_date(entry.expires_at),
            str(entry.hit_count),
            style="dim" if entry.is_expired(now) else None,
        )
    return table
