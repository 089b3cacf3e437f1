import pytest

from looper.workspace.tools import (
    Formatter,
    ListFiles,
    ReadFile,
    RunCommand,
    SearchFiles,
    ToolExecutor,
    ToolViolationError,
    WriteFile,
    parse_tool_call,
    tool_schema,
)


@pytest.fixture
def root(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "a.ts").write_text("const a = 1;\nconst b = 2;\nexport { a, b };\n")
    (tmp_path / "package.json").write_text("{}")
    return tmp_path


def test_read_whole_file_and_range(root):
    ex = ToolExecutor(root)

    assert ex.execute(ReadFile(path="src/a.ts")).output.startswith("const a = 1;")
    ranged = ex.execute(ReadFile(path="src/a.ts", start_line=2, end_line=3)).output
    assert ranged == "2: const b = 2;\n3: export { a, b };"


def test_paths_cannot_escape_the_workspace(root):
    ex = ToolExecutor(root)

    for call in (
        ReadFile(path="../outside.txt"),
        ReadFile(path="/etc/hostname"),
        WriteFile(path="src/../../evil.ts", content="x"),
        ListFiles(path=".."),
    ):
        result = ex.execute(call)
        assert not result.ok
        assert "escapes the workspace" in result.output
    assert not (root.parent / "evil.ts").exists()


def test_write_runs_the_formatter(root):
    formatter = Formatter("printf formatted > {file}.fmt")
    ex = ToolExecutor(root, formatter=formatter)

    result = ex.execute(WriteFile(path="src/new/b.ts", content="export const b = 2;\n"))

    assert result.ok
    assert result.written == "src/new/b.ts"
    assert result.output == "SUCCESS: wrote src/new/b.ts"
    assert (root / "src/new/b.ts").read_text() == "export const b = 2;\n"
    assert (root / "src/new/b.ts.fmt").read_text() == "formatted"


def test_formatter_failure_keeps_the_write(root):
    ex = ToolExecutor(root, formatter=Formatter("exit 3"))

    result = ex.execute(WriteFile(path="src/a.ts", content="fixed"))

    assert result.ok
    assert (root / "src/a.ts").read_text() == "fixed"


def test_protected_files_are_refused(root):
    ex = ToolExecutor(root, protected_files=["package.json"])

    result = ex.execute(WriteFile(path="package.json", content='{"evil": true}'))

    assert not result.ok
    assert result.written is None
    assert "not allowed" in result.output
    assert (root / "package.json").read_text() == "{}"


def test_run_command(root):
    ex = ToolExecutor(root, blocked_patterns=["git push"])

    assert ex.execute(RunCommand(command="ls src")).output.strip() == "a.ts"

    failed = ex.execute(RunCommand(command="echo nope; exit 4"))
    assert failed.output.startswith("FAILURE: Command failed (exit 4).")
    assert "nope" in failed.output

    blocked = ex.execute(RunCommand(command="git push origin main"))
    assert not blocked.ok
    assert "Blocked command pattern" in blocked.output


def test_run_command_binary_output(root):
    (root / "logo.bin").write_bytes(b"\x89PNG\xff\xfe")

    result = ToolExecutor(root).execute(RunCommand(command="cat logo.bin"))

    assert result.ok
    assert result.output.startswith("\ufffdPNG")


def test_run_command_timeout(root):
    ex = ToolExecutor(root, command_timeout=0.2)

    result = ex.execute(RunCommand(command="sleep 5"))

    assert result.timed_out
    assert result.output.startswith("TIMEOUT: Command timed out")


def test_run_command_output_is_capped(root):
    ex = ToolExecutor(root, max_output_chars=100)

    output = ex.execute(RunCommand(command="head -c 500 /dev/zero | tr '\\0' x")).output

    assert output.endswith("...(output truncated)")
    assert len(output) < 150


def test_search(root):
    ex = ToolExecutor(root, max_search_results=2)

    assert ex.execute(SearchFiles(pattern="const b")).output == "src/a.ts:2: const b = 2;"
    capped = ex.execute(SearchFiles(pattern="const")).output
    assert capped.endswith("...(results truncated)")
    assert ex.execute(SearchFiles(pattern="nothing-here")).output == "No matches."
    assert ex.execute(SearchFiles(pattern="([")).output.startswith("Error: invalid pattern")


def test_list_is_capped(root):
    for i in range(5):
        (root / f"f{i}.txt").write_text("")
    ex = ToolExecutor(root, max_list_entries=3)

    lines = ex.execute(ListFiles()).output.splitlines()

    assert lines[:3] == ["f0.txt", "f1.txt", "f2.txt"]
    assert lines[-1] == "... (4 more)"


def test_parse_tool_call():
    call = parse_tool_call("write_file", {"path": "a.ts", "content": "x"})
    assert isinstance(call, WriteFile)

    with pytest.raises(ToolViolationError):
        parse_tool_call("write_file", {"path": "a.ts"})
    with pytest.raises(ToolViolationError):
        parse_tool_call("delete_repo", {})


def test_tool_schema():
    defs = {d["function"]["name"]: d["function"] for d in tool_schema()}

    assert set(defs) == {"read_file", "write_file", "run_command", "search_files", "list_files", "cannot_fix"}
    write = defs["write_file"]["parameters"]
    assert write["required"] == ["path", "content"]
    assert "name" not in write["properties"]
    assert defs["read_file"]["parameters"]["properties"]["start_line"]["type"] == "integer"
