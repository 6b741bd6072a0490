from typer.testing import CliRunner

from memoria import __version__
from memoria.cli.commands import app
from memoria.config.loader import get_config_path
from memoria.providers.usage import UsageLedger
from memoria.queue.store import SqliteJobStore

runner = CliRunner()


def test_version() -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_onboard_writes_config(memoria_home) -> None:
    result = runner.invoke(app, ["onboard"])
    assert result.exit_code == 0
    assert get_config_path().exists()


def test_classify_enqueues_job(memoria_home) -> None:
    result = runner.invoke(app, ["classify", "ws1", "sounds good", "--stream", "c1"])
    assert result.exit_code == 0
    assert "Queued classify job" in result.stdout

    store = SqliteJobStore(memoria_home / "data" / "queue.db")
    try:
        assert store.counts() == {("classify", "queued"): 1}
    finally:
        store.close()

    stats = runner.invoke(app, ["queue", "stats"])
    assert "classify" in stats.stdout


def test_usage_commands(memoria_home) -> None:
    assert runner.invoke(app, ["usage", "budget", "ws1", "250"]).exit_code == 0
    assert runner.invoke(app, ["usage", "ai", "ws1", "--disable"]).exit_code == 0

    ledger = UsageLedger(memoria_home / "data" / "usage.db")
    try:
        assert ledger.get_workspace_budget("ws1") == 250
        assert not ledger.is_ai_enabled("ws1")
    finally:
        ledger.close()

    shown = runner.invoke(app, ["usage", "show", "ws1"])
    assert shown.exit_code == 0
    assert "AI disabled" in shown.stdout


def test_unknown_session(memoria_home) -> None:
    result = runner.invoke(app, ["sessions", "show", "nope"])
    assert result.exit_code == 1
    assert runner.invoke(app, ["sessions", "sweep"]).exit_code == 0
