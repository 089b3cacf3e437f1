import json
import threading

import pytest

from fakes import CountingValidator, FakeWorkspaceManager, ScriptedOracle, fake_diagnostics, write
from looper.config_loader import LooperConfig
from looper.controller import (
    Controller,
    UnitOutcome,
    commit_message,
    commit_scope,
    component_name,
    remove_suppression,
    result_branch,
)
from looper.router import MissingCredentialsError
from looper.state import JobStatus, UnitOfWork

CART = "apps/checkout/src/Cart.ts"


@pytest.fixture
def source(tmp_path):
    repo = tmp_path / "repo"
    (repo / "apps" / "checkout" / "src").mkdir(parents=True)
    (repo / CART).write_text("errors=1")
    return repo


def _controller(source, tmp_path, oracle=None, manager=None, **kwargs):
    scratch = tmp_path / "scratch"
    scratch.mkdir(exist_ok=True)
    manager = manager or FakeWorkspaceManager(source, scratch)
    controller = Controller(
        kwargs.pop("config", LooperConfig()),
        workspaces=manager,
        oracle_factory=lambda: oracle or ScriptedOracle(write(CART, "errors=0")),
        validator_factory=kwargs.pop("validator_factory", lambda unit: CountingValidator()),
        **kwargs,
    )
    return controller, manager


def _unit(baseline=()):
    return UnitOfWork(identifier=CART, validation_command="true", baseline=tuple(baseline))


def test_success_commits_to_a_result_branch(source, tmp_path):
    controller, manager = _controller(source, tmp_path)

    report = controller.run_unit(_unit())

    assert report.outcome == UnitOutcome.SUCCEEDED
    assert report.commit == "sha1"
    assert report.branch == "looper/checkout/lint-Cart"
    ws = manager.acquired[0]
    assert ws.commits == ["fix(checkout): resolve lint errors in Cart"]
    assert ws.saved == ["looper/checkout/lint-Cart"]
    assert manager.released == [ws]
    assert not ws.path.exists()


def test_commit_can_be_disabled(source, tmp_path):
    config = LooperConfig()
    config.workspace.commit_on_success = False
    controller, manager = _controller(source, tmp_path, config=config)

    report = controller.run_unit(_unit())

    assert report.succeeded
    assert report.commit is None
    assert manager.acquired[0].commits == []


def test_workspace_failure_is_an_environment_failure(source, tmp_path):
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    controller, manager = _controller(
        source, tmp_path, manager=FakeWorkspaceManager(source, scratch, fail=True),
    )

    report = controller.run_unit(_unit())

    assert report.outcome == UnitOutcome.ENVIRONMENT_FAILED
    assert report.outcome.job_status == JobStatus.FAILED
    assert "isolated worktree" in report.reason
    assert manager.released == []


def test_missing_credentials_is_an_environment_failure(source, tmp_path):
    oracle = ScriptedOracle(MissingCredentialsError("openai/gpt-4o: no key"))
    controller, manager = _controller(source, tmp_path, oracle=oracle)

    report = controller.run_unit(_unit())

    assert report.outcome == UnitOutcome.ENVIRONMENT_FAILED
    assert "no key" in report.reason
    assert len(manager.released) == 1


def test_unexpected_error_is_contained(source, tmp_path):
    # no validation command is configured for "lint" on a bare config
    controller, manager = _controller(source, tmp_path, validator_factory=None)

    report = controller.run_unit(_unit())

    assert report.outcome == UnitOutcome.ERROR
    assert report.reason.startswith("KeyError")
    assert len(manager.released) == 1


def test_cancelled_run_is_never_committed(source, tmp_path):
    controller, manager = _controller(source, tmp_path)
    cancel = threading.Event()
    cancel.set()

    report = controller.run_unit(_unit(), cancel=cancel)

    assert report.outcome == UnitOutcome.CANCELLED
    assert report.commit is None
    assert manager.acquired[0].commits == []


def test_all_preexisting_diagnostics_skip_the_unit(source, tmp_path):
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    manager = FakeWorkspaceManager(source, scratch, changed=set())
    controller, _ = _controller(source, tmp_path, manager=manager)

    report = controller.run_unit(_unit(fake_diagnostics(CART, 2)), skip_preexisting=True)

    assert report.outcome == UnitOutcome.SKIPPED
    assert report.preexisting == 2
    assert report.outcome.job_status == JobStatus.SKIPPED


def test_unit_without_baseline_is_probed_before_attribution(source, tmp_path):
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    validator = CountingValidator()
    manager = FakeWorkspaceManager(source, scratch, changed=set())
    controller, _ = _controller(source, tmp_path, manager=manager, validator_factory=lambda unit: validator)

    report = controller.run_unit(_unit(), skip_preexisting=True)

    assert report.outcome == UnitOutcome.SKIPPED
    assert report.preexisting == 1
    assert report.diagnostics == fake_diagnostics(CART, 1)
    assert validator.calls == 1


def test_probed_baseline_in_a_changed_file_is_repaired(source, tmp_path):
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    validator = CountingValidator()
    manager = FakeWorkspaceManager(source, scratch, changed={CART})
    controller, _ = _controller(source, tmp_path, manager=manager, validator_factory=lambda unit: validator)

    report = controller.run_unit(_unit(), skip_preexisting=True)

    assert report.outcome == UnitOutcome.SUCCEEDED
    assert report.preexisting == 0
    # baseline probe, failing probe, clean probe after the write
    assert validator.calls == 3


def test_changed_file_is_still_repaired(source, tmp_path):
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    manager = FakeWorkspaceManager(source, scratch, changed={CART})
    controller, _ = _controller(source, tmp_path, manager=manager)

    report = controller.run_unit(_unit(fake_diagnostics(CART, 1)), skip_preexisting=True)

    assert report.outcome == UnitOutcome.SUCCEEDED
    assert report.preexisting == 0


def test_unit_finished_event(source, tmp_path):
    controller, _ = _controller(source, tmp_path)
    events = []
    controller.bus.subscribe(lambda e: events.append(e))

    controller.run_unit(_unit())

    finished = [e for e in events if e.event_type == "unit.finished"]
    assert len(finished) == 1
    assert finished[0].source == "controller"
    assert finished[0].unit == CART
    assert finished[0].payload["outcome"] == "succeeded"


@pytest.mark.parametrize("identifier, scope", [
    ("apps/checkout/src/Cart.ts", "checkout"),
    ("libs/ui/Button.tsx", "ui"),
    ("packages/core/index.ts", "core"),
    ("src/main.ts", "core"),
])
def test_commit_scope(identifier, scope):
    assert commit_scope(identifier) == scope


def test_component_name_strips_test_suffixes():
    assert component_name("libs/ui/Button.test.tsx") == "Button"
    assert component_name("apps/web/page.spec.ts") == "page"
    assert component_name("src/util.ts") == "util"


def test_commit_message_and_branch():
    unit = UnitOfWork(identifier="libs/ui/Button.test.tsx", validation_command="true", fix_type="test")
    assert commit_message(unit) == "fix(ui): resolve test errors in Button"
    assert result_branch(unit) == "looper/ui/test-Button"


def test_remove_suppression(tmp_path):
    path = tmp_path / "eslint-suppressions.json"
    path.write_text(json.dumps({"src/a.ts": {"no-unused-vars": {"count": 2}}, "src/b.ts": {}}))

    assert remove_suppression(tmp_path, "eslint-suppressions.json", "src/a.ts")
    assert json.loads(path.read_text()) == {"src/b.ts": {}}
    assert not remove_suppression(tmp_path, "eslint-suppressions.json", "src/a.ts")
    assert not remove_suppression(tmp_path, "missing.json", "src/a.ts")
