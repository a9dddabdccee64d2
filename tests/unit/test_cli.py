"""Unit tests for the CLI (assistant mocked)."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from qcli.cli import _read_key, app
from qcli.config import load_user_config, save_user_config
from qcli.embeddings.codec import to_bytes
from qcli.errors import StoreUnavailable
from qcli.session import CacheMode, QueryOutcome
from qcli.types import CacheEntry, CacheMatch

runner = CliRunner()


def _entry(entry_id=3, **overrides):
    now = datetime.now(timezone.utc)
    values = {
        "id": entry_id,
        "query": "list all files",
        "query_embedding": to_bytes([1.0]),
        "context_hash": None,
        "response": "ls -la",
        "response_id": 1,
        "created_at": now - timedelta(days=2),
        "expires_at": now + timedelta(days=28),
        "hit_count": 1,
    }
    values.update(overrides)
    return CacheEntry(**values)


def _fresh(response="ls -la", log_id=5):
    return QueryOutcome(query="list files", response=response, mode=CacheMode.NORMAL, log_id=log_id)


def _hit():
    entry = _entry()
    return QueryOutcome(
        query="list files",
        response=entry.response,
        mode=CacheMode.NORMAL,
        log_id=6,
        match=CacheMatch(entry=entry, similarity=0.92),
        cache_entry_id=entry.id,
    )


@pytest.fixture
def configured():
    save_user_config(cache_enabled=True)


@pytest.fixture
def assistant():
    with patch("qcli.sdk.ShellAssistant") as assistant_class:
        instance = assistant_class.return_value
        instance.__enter__.return_value = instance
        yield instance


@pytest.fixture
def clipboard():
    with patch("qcli.cli.pyperclip.copy") as copy:
        yield copy


def _streaming(outcome):
    def _ask(query, **kwargs):
        kwargs["on_text"](outcome.response)
        return outcome

    return _ask


class TestAsk:
    """Test the ask command."""

    def test_fresh_answer_enter_copies(self, configured, assistant, clipboard):
        assistant.ask.side_effect = _streaming(_fresh())

        result = runner.invoke(app, ["ask", "list", "files"], input="\n")

        assert result.exit_code == 0, result.output
        assert "ls -la" in result.output
        assert "Copied to clipboard" in result.output
        clipboard.assert_called_once_with("ls -la")
        assistant.mark_copied.assert_called_once_with(5)
        assert assistant.ask.call_args.args == ("list files",)

    def test_ctrl_c_exits_without_copying(self, configured, assistant, clipboard):
        assistant.ask.side_effect = _streaming(_fresh())

        result = runner.invoke(app, ["ask", "list", "files"], input="\x03")

        assert result.exit_code == 0
        assert "Exited without copying" in result.output
        clipboard.assert_not_called()
        assistant.mark_copied.assert_not_called()

    def test_end_of_input_exits(self, configured, assistant, clipboard):
        assistant.ask.return_value = _fresh()

        result = runner.invoke(app, ["ask", "list", "files"])

        assert result.exit_code == 0
        assert "Exited without copying" in result.output

    def test_query_without_subcommand(self, configured, assistant, clipboard):
        assistant.ask.side_effect = _streaming(_fresh())

        result = runner.invoke(app, ["list", "files"], input="\n")

        assert result.exit_code == 0, result.output
        assert assistant.ask.call_args.args == ("list files",)
        clipboard.assert_called_once_with("ls -la")

    def test_leading_option_routes_to_ask(self, configured, assistant, clipboard):
        assistant.ask.return_value = _fresh()

        result = runner.invoke(app, ["--no-cache", "list", "files"], input="\x03")

        assert result.exit_code == 0, result.output
        assert assistant.ask.call_args.kwargs["no_cache"] is True

    def test_key_read_through_typer(self, configured, assistant, clipboard):
        assistant.ask.return_value = _fresh()

        with patch("qcli.cli.typer.getchar", return_value="\r") as getchar:
            result = runner.invoke(app, ["list", "files"])

        assert result.exit_code == 0, result.output
        getchar.assert_called_once()
        clipboard.assert_called_once_with("ls -la")

    @pytest.mark.parametrize("error", [EOFError, KeyboardInterrupt])
    def test_read_key_interrupted(self, error):
        with patch("qcli.cli.typer.getchar", side_effect=error):
            assert _read_key() == "\x03"

    def test_read_key_empty_input(self):
        with patch("qcli.cli.typer.getchar", return_value=""):
            assert _read_key() == "\x03"

    def test_other_keys_ignored(self, configured, assistant, clipboard):
        assistant.ask.return_value = _fresh()

        result = runner.invoke(app, ["ask", "list", "files"], input="xr\n")

        assert result.exit_code == 0
        assistant.regenerate.assert_not_called()
        clipboard.assert_called_once_with("ls -la")

    def test_flags_passed_through(self, configured, assistant, clipboard):
        assistant.ask.return_value = _fresh()

        runner.invoke(app, ["ask", "list", "files", "--refresh", "-c", "2"], input="\x03")

        kwargs = assistant.ask.call_args.kwargs
        assert kwargs["refresh"] is True
        assert kwargs["no_cache"] is False
        assert kwargs["context_limit"] == 2

    def test_cached_answer_verbose(self, configured, assistant, clipboard):
        assistant.ask.return_value = _hit()

        result = runner.invoke(app, ["ask", "list", "files", "-v"], input="\n")

        assert result.exit_code == 0, result.output
        assert "ls -la" in result.output
        assert "[CACHED] Original query" in result.output
        assert "Similarity: 92.0% | Age: 2 days" in result.output
        assert "(cached)" in result.output
        assistant.mark_copied.assert_called_once_with(6)

    def test_cached_answer_regenerate(self, configured, assistant, clipboard):
        hit = _hit()
        assistant.ask.return_value = hit
        assistant.regenerate.side_effect = lambda outcome, on_text: _streaming(_fresh("ls -lah", 9))(
            outcome.query, on_text=on_text
        )

        result = runner.invoke(app, ["ask", "list", "files"], input="r\n")

        assert result.exit_code == 0, result.output
        assistant.regenerate.assert_called_once()
        assert assistant.regenerate.call_args.args[0] is hit
        assert "ls -lah" in result.output
        clipboard.assert_called_once_with("ls -lah")
        assistant.mark_copied.assert_called_once_with(9)

    def test_warnings_shown(self, configured, assistant, clipboard):
        outcome = _fresh()
        outcome.warnings.append("Failed to cache response")
        assistant.ask.return_value = outcome

        result = runner.invoke(app, ["ask", "list", "files"], input="\x03")

        assert "Warning: Failed to cache response" in result.output

    def test_first_run_prompt_saves_choice(self, assistant, clipboard):
        assistant.ask.return_value = _fresh()

        result = runner.invoke(app, ["ask", "list", "files"], input="n\n\x03")

        assert result.exit_code == 0, result.output
        assert "Would you like to enable query caching?" in result.output
        assert "Cache disabled." in result.output
        assert load_user_config() == {"cache_enabled": False}

    def test_no_prompt_once_configured(self, configured, assistant, clipboard):
        assistant.ask.return_value = _fresh()

        result = runner.invoke(app, ["ask", "list", "files"], input="\x03")

        assert "Would you like to enable query caching?" not in result.output

    def test_error_reported(self, configured, assistant, clipboard):
        assistant.ask.side_effect = StoreUnavailable("connection refused")

        result = runner.invoke(app, ["ask", "list", "files"])

        assert result.exit_code == 1
        assert "Storage backend unavailable" in result.output

    def test_clipboard_failure(self, configured, assistant):
        import pyperclip

        assistant.ask.return_value = _fresh()
        with patch("qcli.cli.pyperclip.copy", side_effect=pyperclip.PyperclipException("no clipboard")):
            result = runner.invoke(app, ["ask", "list", "files"], input="\n")

        assert result.exit_code == 1
        assert "Failed to copy to clipboard" in result.output


class TestLogs:
    """Test the logs command."""

    @pytest.fixture
    def log_store(self, log_store):
        with patch("qcli.store.log_store.RedisLogStore", return_value=log_store):
            yield log_store

    def test_recent(self, log_store):
        log_store.insert_log({"prompt": "list files", "response": "ls -la"})
        log_store.insert_log({"prompt": "show disk usage", "response": "df -h"})

        result = runner.invoke(app, ["logs", "-n", "1"])

        assert result.exit_code == 0, result.output
        assert "df -h" in result.output
        assert "ls -la" not in result.output

    def test_empty(self, log_store):
        result = runner.invoke(app, ["logs"])

        assert "No logs found." in result.output

    def test_single(self, log_store):
        log_store.insert_log({"prompt": "list files", "response": "ls -la", "model": "haiku"})

        result = runner.invoke(app, ["logs", "1"])

        assert result.exit_code == 0
        assert "Log #1" in result.output
        assert "haiku" in result.output

    def test_single_missing(self, log_store):
        result = runner.invoke(app, ["logs", "42"])

        assert result.exit_code == 1
        assert "Log #42 not found" in result.output


class TestCacheCommands:
    """Test cache management commands."""

    def test_list(self, assistant):
        assistant.engine.list_entries.return_value = [_entry(1), _entry(2, query="show disk usage")]

        result = runner.invoke(app, ["cache", "list", "-n", "5"])

        assert result.exit_code == 0, result.output
        assistant.engine.list_entries.assert_called_once_with(5)
        assert "list all files" in result.output
        assert "show disk usage" in result.output

    def test_list_empty(self, assistant):
        assistant.engine.list_entries.return_value = []

        result = runner.invoke(app, ["cache", "list"])

        assert "No cache entries found." in result.output

    def test_stats(self, assistant):
        assistant.engine.stats.return_value = {
            "count": 4,
            "total_hits": 10,
            "storage_bytes": 2048,
            "oldest": datetime(2024, 1, 2, tzinfo=timezone.utc),
            "newest": datetime(2024, 3, 4, tzinfo=timezone.utc),
            "expired_count": 1,
        }

        result = runner.invoke(app, ["cache", "stats"])

        assert result.exit_code == 0, result.output
        assert "Total entries:     4" in result.output
        assert "Storage size:      2.0 KB" in result.output
        assert "Avg hits/entry:    2.5" in result.output
        assert "Similarity:        85%" in result.output
        assert "TTL:               30 days" in result.output

    def test_clear_by_id(self, assistant):
        assistant.engine.clear_by_id.return_value = True

        result = runner.invoke(app, ["cache", "clear", "3"])

        assert result.exit_code == 0
        assert "Cleared cache entry #3" in result.output
        assistant.engine.clear_by_id.assert_called_once_with(3)

    def test_clear_by_id_missing(self, assistant):
        assistant.engine.clear_by_id.return_value = False

        result = runner.invoke(app, ["cache", "clear", "3"])

        assert result.exit_code == 1
        assert "Cache entry #3 not found" in result.output

    def test_clear_expired(self, assistant):
        assistant.engine.prune_expired.return_value = 2

        result = runner.invoke(app, ["cache", "clear", "--expired"])

        assert "Cleared 2 expired cache entries" in result.output
        assistant.engine.clear_all.assert_not_called()

    def test_clear_all_confirmed(self, assistant):
        assistant.engine.clear_all.return_value = 7

        result = runner.invoke(app, ["cache", "clear"], input="y\n")

        assert result.exit_code == 0
        assert "Cleared all 7 cache entries" in result.output

    def test_clear_all_cancelled(self, assistant):
        result = runner.invoke(app, ["cache", "clear"], input="n\n")

        assert result.exit_code == 0
        assert "Clear cancelled" in result.output
        assistant.engine.clear_all.assert_not_called()

    def test_clear_all_yes(self, assistant):
        assistant.engine.clear_all.return_value = 0

        result = runner.invoke(app, ["cache", "clear", "--yes"])

        assert "Cleared all 0 cache entries" in result.output

    def test_store_error(self, assistant):
        assistant.engine.list_entries.side_effect = StoreUnavailable("down")

        result = runner.invoke(app, ["cache", "list"])

        assert result.exit_code == 1
        assert "Storage backend unavailable" in result.output


def test_info(monkeypatch):
    monkeypatch.setenv("Q_SIMILARITY_THRESHOLD", "0.9")

    result = runner.invoke(app, ["info"])

    assert result.exit_code == 0
    assert "Redis URL: redis://localhost:6379/0" in result.output
    assert "Similarity threshold: 0.9" in result.output
    assert "Embed provider: titan" in result.output
