from looper.attribution import FailureAttribution
from looper.state import Diagnostic, UnitOfWork
from looper.workspace import WorkspaceError


class Changes:
    def __init__(self, paths=None, error=None):
        self.paths = set(paths or ())
        self.error = error
        self.calls = 0

    def changed_files(self, base_ref=None):
        self.calls += 1
        if self.error:
            raise self.error
        return self.paths


UNIT = UnitOfWork(identifier="src/cart/Cart.ts", validation_command="true")


def _diag(file, line=1):
    return Diagnostic(file=file, line=line, message="boom")


def test_changed_file_is_attributable():
    attribution = FailureAttribution("main")
    assert not attribution.is_preexisting(UNIT, _diag("src/cart/Cart.ts"), Changes({"src/cart/Cart.ts"}))


def test_untouched_directory_is_preexisting():
    attribution = FailureAttribution("main")
    assert attribution.is_preexisting(UNIT, _diag("src/legacy/Old.ts"), Changes({"src/cart/Cart.ts"}))


def test_changed_sibling_source_makes_it_attributable():
    attribution = FailureAttribution("main")
    changes = Changes({"src/cart/price.ts"})
    assert not attribution.is_preexisting(UNIT, _diag("src/cart/Cart.ts"), changes)


def test_changed_non_source_sibling_does_not_count():
    attribution = FailureAttribution("main")
    changes = Changes({"src/cart/README.md"})
    assert attribution.is_preexisting(UNIT, _diag("src/cart/Cart.ts"), changes)


def test_diagnostic_without_file_uses_the_unit():
    attribution = FailureAttribution("main")
    assert not attribution.is_preexisting(UNIT, _diag(""), Changes({"src/cart/Cart.ts"}))


def test_unknown_baseline_never_ignores_anything():
    attribution = FailureAttribution("gone")
    changes = Changes(error=WorkspaceError("unknown revision"))
    assert not attribution.is_preexisting(UNIT, _diag("src/legacy/Old.ts"), changes)


def test_partition_diffs_once_per_workspace():
    attribution = FailureAttribution("main")
    changes = Changes({"src/cart/Cart.ts"})
    diags = [_diag("src/cart/Cart.ts"), _diag("src/legacy/Old.ts"), _diag("src/cart/Cart.ts", 9)]

    attributable, preexisting = attribution.partition(UNIT, diags, changes)

    assert [d.line for d in attributable] == [1, 9]
    assert [d.file for d in preexisting] == ["src/legacy/Old.ts"]
    assert changes.calls == 1
