import json

import yaml
from typer.testing import CliRunner

from looper import __version__
from looper.cli import app
from looper.history import HistoryStore
from looper.state import Attempt, AttemptOutcome

runner = CliRunner()


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"LOOPER v{__version__}" in result.stdout


def test_init_bootstraps_the_repo(tmp_path):
    (tmp_path / ".gitignore").write_text("node_modules/\n")

    result = runner.invoke(app, ["init", str(tmp_path)])

    assert result.exit_code == 0
    assert (tmp_path / ".looper" / "config.yaml").exists()
    assert (tmp_path / ".looper" / "logs").is_dir()
    gitignore = (tmp_path / ".gitignore").read_text()
    assert ".looper/logs/" in gitignore
    assert ".looper-history.json" in gitignore

    # idempotent
    assert runner.invoke(app, ["init", str(tmp_path)]).exit_code == 0
    assert (tmp_path / ".gitignore").read_text().count(".looper/logs/") == 1


def test_history_empty(tmp_path):
    result = runner.invoke(app, ["history", "--repo", str(tmp_path)])

    assert result.exit_code == 0
    assert "No history for main" in result.stdout


def test_history_summary_and_clear(tmp_path):
    store = HistoryStore(tmp_path / ".looper-history.json")
    store.record(Attempt(unit="src/a.ts", branch="main", outcome=AttemptOutcome.FAILURE))
    store.record(Attempt(unit="src/a.ts", branch="main", outcome=AttemptOutcome.SUCCESS))

    result = runner.invoke(app, ["history", "--repo", str(tmp_path)])
    assert result.exit_code == 0
    assert "src/a.ts" in result.stdout
    assert "1/2 attempts failed" in result.stdout

    result = runner.invoke(app, ["history", "--repo", str(tmp_path), "--clear"])
    assert result.exit_code == 0
    assert store.summarize("main")["totalAttempts"] == 0


def test_run_needs_units(tmp_path):
    result = runner.invoke(app, ["run", "--repo", str(tmp_path)])
    assert result.exit_code == 1
    assert "Specify --file, --units or --discover" in result.stdout


def test_run_rejects_unknown_fix_type(tmp_path):
    result = runner.invoke(app, ["run", "--repo", str(tmp_path), "--file", "a.ts", "--fix-type", "perf"])
    assert result.exit_code == 1
    assert "Unknown fix type" in result.stdout


def test_discover_json(tmp_path):
    command = "printf 'src/a.ts:1:1: one [r]\\nsrc/a.ts:2:1: two [r]\\nsrc/b.ts:1:1: three [r]\\n'; exit 1"
    (tmp_path / ".looper").mkdir()
    (tmp_path / ".looper" / "config.yaml").write_text(yaml.safe_dump({
        "validation": {"lint": {"command": "lint {file}", "discover_command": command, "parser": "unix"}},
    }))

    result = runner.invoke(app, ["discover", "--repo", str(tmp_path), "--json"])

    assert result.exit_code == 0
    assert json.loads(result.stdout) == [
        {"identifier": "src/a.ts", "fix_type": "lint", "diagnostics": 2},
        {"identifier": "src/b.ts", "fix_type": "lint", "diagnostics": 1},
    ]
