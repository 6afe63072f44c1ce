"""Tests for the pipeline executor.

These run real processes.  Stages are wired with OS pipes, every stage
is launched before any is awaited, and every descriptor the executor
creates must be closed by the time ``run`` returns.
"""

import io
import os
import shutil
from pathlib import Path

import pytest

from pipesh import executor as executor_module
from pipesh.env import Environment
from pipesh.errors import ResourceExhaustionError, ShellExit
from pipesh.executor import PipelineExecutor, PipelineResult
from pipesh.lexer import tokenize
from pipesh.parser import parse
from pipesh.session import Session, VirtualWorkingDirectory

_TOOLS = ("seq", "cat", "tr", "wc", "head", "sh")

pytestmark = [
    pytest.mark.skipif(not hasattr(os, "fork"), reason="needs fork"),
    pytest.mark.skipif(any(shutil.which(t) is None for t in _TOOLS), reason="needs coreutils"),
]

_HAS_PROC_FD = os.path.isdir("/proc/self/fd")


def _session(tmp_path: Path) -> Session:
    """Create a session rooted at *tmp_path* with captured streams."""
    env = Environment({"PATH": os.environ.get("PATH", os.defpath), "HOME": str(tmp_path)})
    return Session(
        env=env,
        cwd=VirtualWorkingDirectory(str(tmp_path)),
        stdout=io.StringIO(),
        stderr=io.StringIO(),
    )


def _run(session: Session, line: str) -> PipelineResult:
    return PipelineExecutor(session).run(parse(tokenize(line)))


def _open_fds() -> int:
    return len(os.listdir("/proc/self/fd"))


def _stderr(session: Session) -> str:
    return session.stderr.getvalue()  # type: ignore[attr-defined]


def _stdout(session: Session) -> str:
    return session.stdout.getvalue()  # type: ignore[attr-defined]


class TestSingleStage:
    """Verify one-stage pipelines."""

    def test_empty_chain_is_noop(self, tmp_path: Path) -> None:
        """A blank line runs nothing and uses no pipes."""
        session = _session(tmp_path)
        result = _run(session, "   ")
        assert result.connections == 0
        assert [s.status for s in result.stages] == [0]
        assert _stdout(session) == ""
        assert _stderr(session) == ""

    def test_external_with_output_redirect(self, tmp_path: Path) -> None:
        """An external program's output lands in the redirect file."""
        session = _session(tmp_path)
        result = _run(session, "seq 1 5 > out.txt")
        assert result.status == 0
        assert result.stages[0].pid is not None
        assert (tmp_path / "out.txt").read_text() == "1\n2\n3\n4\n5\n"

    def test_external_inherits_terminal_stdout(self, tmp_path: Path, capfd: pytest.CaptureFixture[str]) -> None:
        """Without a redirect the last stage writes to the interpreter's stdout."""
        _run(_session(tmp_path), "seq 1 3")
        assert capfd.readouterr().out == "1\n2\n3\n"

    def test_input_redirect(self, tmp_path: Path) -> None:
        """``<`` feeds a file to the program."""
        (tmp_path / "in.txt").write_text("banana\n")
        _run(_session(tmp_path), "tr a o < in.txt > out.txt")
        assert (tmp_path / "out.txt").read_text() == "bonono\n"

    def test_exit_status_is_collected(self, tmp_path: Path) -> None:
        """A failing program's status is reported, not raised."""
        result = _run(_session(tmp_path), "sh -c exit")
        assert result.status == 0
        result = _run(_session(tmp_path), "head -n 1 missing-file")
        assert result.status != 0


class TestPipelines:
    """Verify multi-stage pipelines."""

    def test_two_stages(self, tmp_path: Path) -> None:
        """Output of the first stage is the input of the second."""
        result = _run(_session(tmp_path), "seq 1 10 | wc -l > count.txt")
        assert result.connections == 1
        assert (tmp_path / "count.txt").read_text().strip() == "10"

    @pytest.mark.parametrize("stages", [1, 2, 3, 5])
    def test_n_stages_use_n_minus_one_pipes(self, tmp_path: Path, stages: int) -> None:
        """A chain of N stages allocates exactly N-1 connections."""
        line = " | ".join(["seq 1 3", *["cat"] * (stages - 1)]) + " > out.txt"
        result = _run(_session(tmp_path), line)
        assert result.connections == stages - 1
        assert len(result.stages) == stages
        assert (tmp_path / "out.txt").read_text() == "1\n2\n3\n"

    @pytest.mark.parametrize("stages", [1, 2, 4])
    def test_pipes_opened_match_connections(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, stages: int
    ) -> None:
        """The reported connection count is the number of pipes really opened."""
        real_pipe = os.pipe
        opened: list[tuple[int, int]] = []

        def _counting_pipe() -> tuple[int, int]:
            fds = real_pipe()
            opened.append(fds)
            return fds

        monkeypatch.setattr(os, "pipe", _counting_pipe)
        line = " | ".join(["seq 1 3", *["cat"] * (stages - 1)]) + " > out.txt"
        result = _run(_session(tmp_path), line)
        assert len(opened) == stages - 1
        assert result.connections == len(opened)

    def test_three_stage_large_stream(self, tmp_path: Path) -> None:
        """Large data streams through produce | transform | consume intact."""
        count = 200_000
        _run(_session(tmp_path), f"seq 1 {count} | tr 0123456789 abcdefghij | cat > out.txt")
        table = str.maketrans("0123456789", "abcdefghij")
        expected = "".join(f"{i}\n" for i in range(1, count + 1)).translate(table)
        assert (tmp_path / "out.txt").read_text() == expected

    def test_early_exiting_reader_does_not_hang(self, tmp_path: Path) -> None:
        """A reader that exits early ends the writer instead of deadlocking."""
        result = _run(_session(tmp_path), "seq 1 5000000 | head -n 1 > out.txt")
        assert (tmp_path / "out.txt").read_text() == "1\n"
        assert result.stages[1].status == 0

    def test_redirect_overrides_pipe(self, tmp_path: Path) -> None:
        """An output redirect wins over the pipe; the next stage reads EOF."""
        result = _run(_session(tmp_path), "seq 1 3 > a.txt | wc -l > b.txt")
        assert (tmp_path / "a.txt").read_text() == "1\n2\n3\n"
        assert (tmp_path / "b.txt").read_text().strip() == "0"
        assert result.connections == 1

    def test_input_redirect_overrides_pipe(self, tmp_path: Path) -> None:
        """An input redirect wins over the pipe from the previous stage."""
        (tmp_path / "in.txt").write_text("x\n")
        _run(_session(tmp_path), "seq 1 3 | cat < in.txt > out.txt")
        assert (tmp_path / "out.txt").read_text() == "x\n"

    def test_empty_middle_stage(self, tmp_path: Path) -> None:
        """An empty stage is a no-op; its successor reads EOF."""
        result = _run(_session(tmp_path), "seq 1 3 | | wc -l > out.txt")
        assert [s.status for s in result.stages][1:] == [0, 0]
        assert (tmp_path / "out.txt").read_text().strip() == "0"


class TestRedirectAppend:
    """Verify ``>`` followed by ``>>``."""

    def test_append_after_truncate(self, tmp_path: Path) -> None:
        """The second write follows the first without truncating it."""
        session = _session(tmp_path)
        _run(session, "seq 1 2 > out.txt")
        _run(session, "seq 3 4 >> out.txt")
        assert (tmp_path / "out.txt").read_text() == "1\n2\n3\n4\n"

    def test_truncate_replaces(self, tmp_path: Path) -> None:
        """A second ``>`` replaces the file."""
        session = _session(tmp_path)
        _run(session, "seq 1 2 > out.txt")
        _run(session, "seq 9 9 > out.txt")
        assert (tmp_path / "out.txt").read_text() == "9\n"


class TestBuiltinsInPipelines:
    """Verify in-process builtins and how their output is routed."""

    def test_builtin_alone_writes_session_stdout(self, tmp_path: Path) -> None:
        """``echo a b c`` prints to the session's stdout."""
        session = _session(tmp_path)
        result = _run(session, "echo a b c")
        assert _stdout(session) == "a b c\n"
        assert result.stages[0].builtin
        assert result.stages[0].pid is None

    def test_builtin_output_redirect(self, tmp_path: Path) -> None:
        """A builtin's output honours ``>``."""
        session = _session(tmp_path)
        _run(session, "echo hello > out.txt")
        _run(session, "echo again >> out.txt")
        assert (tmp_path / "out.txt").read_text() == "hello\nagain\n"
        assert _stdout(session) == ""

    def test_builtin_feeds_next_stage(self, tmp_path: Path) -> None:
        """A builtin's output is written into the pipe to the next stage."""
        _run(_session(tmp_path), "echo hello world | tr a-z A-Z > out.txt")
        assert (tmp_path / "out.txt").read_text() == "HELLO WORLD\n"

    def test_large_builtin_output_does_not_deadlock(self, tmp_path: Path) -> None:
        """Builtin output bigger than a pipe buffer still flows."""
        words = " ".join(["word"] * 50_000)
        _run(_session(tmp_path), f"echo {words} | wc -c > out.txt")
        assert int((tmp_path / "out.txt").read_text()) == len(words) + 1

    def test_builtin_last_stage(self, tmp_path: Path) -> None:
        """A builtin at the end ignores its input and prints to stdout."""
        session = _session(tmp_path)
        result = _run(session, "seq 1 3 | echo done")
        assert _stdout(session) == "done\n"
        assert result.stages[1].builtin

    def test_builtin_to_builtin(self, tmp_path: Path) -> None:
        """A builtin reading from a builtin drops the upstream output quietly."""
        session = _session(tmp_path)
        result = _run(session, "echo a | echo b")
        assert _stdout(session) == "b\n"
        assert _stderr(session) == ""
        assert [s.status for s in result.stages] == [0, 0]

    def test_cd_changes_where_children_run(self, tmp_path: Path) -> None:
        """After ``cd``, children start (and redirects resolve) in the new directory."""
        sub = tmp_path / "sub"
        sub.mkdir()
        session = _session(tmp_path)
        _run(session, "cd sub")
        _run(session, "sh -c pwd > where.txt")
        assert (sub / "where.txt").read_text().strip() == str(sub.resolve())

    def test_pwd_after_cd(self, tmp_path: Path) -> None:
        """``pwd`` after ``cd /tmp`` reports ``/tmp``."""
        session = _session(tmp_path)
        _run(session, "cd /tmp")
        _run(session, "pwd")
        assert _stdout(session) == "/tmp\n"

    def test_failed_cd_keeps_directory(self, tmp_path: Path) -> None:
        """A failed cd reports and the session carries on."""
        session = _session(tmp_path)
        result = _run(session, "cd /definitely/not/here")
        assert result.status == 1
        assert session.cwd.path == str(tmp_path)
        assert "cd:" in _stderr(session)

    def test_builtin_with_missing_input_file(self, tmp_path: Path) -> None:
        """A builtin with an unreadable ``<`` target does not run."""
        session = _session(tmp_path)
        result = _run(session, "echo hi < missing.txt")
        assert result.status == 1
        assert _stdout(session) == ""
        assert "missing.txt" in _stderr(session)

    def test_exit_propagates(self, tmp_path: Path) -> None:
        """``exit`` ends the session via ShellExit."""
        with pytest.raises(ShellExit):
            _run(_session(tmp_path), "exit")


class TestStageFailures:
    """Verify failures stay local to their stage."""

    def test_unknown_command(self, tmp_path: Path) -> None:
        """An unknown program is reported with status 127."""
        session = _session(tmp_path)
        result = _run(session, "no-such-program-xyz arg")
        assert result.status == 127
        assert result.stages[0].pid is None
        assert "no-such-program-xyz: command not found" in _stderr(session)

    def test_unknown_command_does_not_stop_pipeline(self, tmp_path: Path) -> None:
        """Later stages still run and see EOF."""
        result = _run(_session(tmp_path), "no-such-program-xyz | wc -l > n.txt")
        assert [s.status for s in result.stages] == [127, 0]
        assert (tmp_path / "n.txt").read_text().strip() == "0"

    def test_missing_input_redirect(self, tmp_path: Path) -> None:
        """An unreadable ``<`` target fails the stage before anything runs."""
        session = _session(tmp_path)
        result = _run(session, "cat < missing.txt > out.txt")
        assert result.status == 1
        assert not (tmp_path / "out.txt").exists()
        assert "missing.txt" in _stderr(session)

    def test_unwritable_output_redirect(self, tmp_path: Path) -> None:
        """An output target in a missing directory is reported."""
        session = _session(tmp_path)
        result = _run(session, "seq 1 3 > nodir/out.txt")
        assert result.status == 1
        assert "nodir/out.txt" in _stderr(session)

    def test_failures_are_logged(self, tmp_path: Path) -> None:
        """Stage failures leave WARNING entries in the session log."""
        session = _session(tmp_path)
        _run(session, "no-such-program-xyz")
        messages = [e.message for e in session.log.filter(source="executor")]
        assert any("launch failed" in m for m in messages)

    def test_launches_are_logged(self, tmp_path: Path) -> None:
        """Each started child and its exit are logged."""
        session = _session(tmp_path)
        result = _run(session, "seq 1 2 > out.txt")
        messages = [e.message for e in session.log.filter(source="executor")]
        assert any(f"started pid {result.stages[0].pid}" in m for m in messages)
        assert any(f"pid {result.stages[0].pid} exited with status 0" in m for m in messages)


@pytest.mark.skipif(not _HAS_PROC_FD, reason="needs /proc/self/fd")
class TestDescriptorHygiene:
    """Verify no descriptor outlives a pipeline run."""

    @pytest.mark.parametrize(
        "line",
        [
            "seq 1 1000 | tr 1 x | wc -l > out.txt",
            "echo hi | cat > out.txt",
            "seq 1 3 | echo done",
            "no-such-program-xyz | cat < missing.txt | wc -l > out.txt",
            "cat < in.txt > out.txt",
            "seq 1 5000000 | head -n 1 > out.txt",
        ],
    )
    def test_no_descriptor_leak(self, tmp_path: Path, line: str) -> None:
        """The open-descriptor count is the same before and after a run."""
        (tmp_path / "in.txt").write_text("x\n")
        session = _session(tmp_path)
        before = _open_fds()
        _run(session, line)
        assert _open_fds() == before

    def test_no_leak_on_exit(self, tmp_path: Path) -> None:
        """``exit`` in a pipeline still closes every descriptor."""
        session = _session(tmp_path)
        before = _open_fds()
        with pytest.raises(ShellExit):
            _run(session, "seq 1 100000 | exit | cat")
        assert _open_fds() == before

    def test_fork_failure_reaps_and_closes(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """If a later fork fails, earlier children are reaped and pipes closed."""
        real_fork = os.fork
        calls = {"n": 0}

        def _flaky_fork() -> int:
            calls["n"] += 1
            if calls["n"] > 1:
                raise OSError(11, "Resource temporarily unavailable")
            return real_fork()

        session = _session(tmp_path)
        before = _open_fds()
        monkeypatch.setattr(os, "fork", _flaky_fork)
        with pytest.raises(ResourceExhaustionError):
            _run(session, "seq 1 1000000 | cat > out.txt")
        monkeypatch.undo()
        assert _open_fds() == before
        with pytest.raises(ChildProcessError):
            os.waitpid(-1, os.WNOHANG)
        assert any("pipeline aborted" in e.message for e in session.log.entries)

    def test_interrupt_while_waiting_reaps_every_child(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Ctrl+C during the wait still reaps every stage before re-raising."""
        real_wait_for = executor_module.wait_for
        calls = {"n": 0}

        def _interrupted_once(pid: int) -> int:
            calls["n"] += 1
            if calls["n"] == 1:
                raise KeyboardInterrupt
            return real_wait_for(pid)

        monkeypatch.setattr(executor_module, "wait_for", _interrupted_once)
        session = _session(tmp_path)
        before = _open_fds()
        with pytest.raises(KeyboardInterrupt):
            _run(session, "seq 1 100000 | cat > out.txt")
        assert _open_fds() == before
        with pytest.raises(ChildProcessError):
            os.waitpid(-1, os.WNOHANG)
        reaped = [e for e in session.log.entries if "exited with status" in e.message]
        assert len(reaped) == 2
        assert (tmp_path / "out.txt").read_text().count("\n") == 100_000
