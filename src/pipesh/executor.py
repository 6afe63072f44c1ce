"""Pipeline executor — turn a stage chain into running processes.

For a chain of N stages the executor allocates exactly N-1 pipes, one
between each pair of neighbours, then walks the stages left to right:

- an **empty** stage is a no-op;
- a **builtin** runs in the interpreter process (``cd`` and ``exit``
  would be useless anywhere else) and its output is routed to the
  stage's redirect file, the next pipe, or the session's stdout;
- any other stage is an **external** program, started with ``fork`` and
  ``exec`` with its stdin/stdout wired to the neighbouring pipes or to
  its redirect files.

Every stage is launched before any is waited on.  Waiting on each child
before starting the next would deadlock as soon as a writer fills a
pipe whose reader has not been started yet.

Descriptor ownership:
    - The parent closes its copy of each pipe end as soon as the child
      that needs it has been forked, so readers see EOF when writers
      exit.  ``PipeChannel`` makes every close idempotent and the
      surrounding ``ExitStack`` closes anything left over on any exit
      path.
    - Redirect files are opened in the parent so failures surface as
      ``RedirectionError`` before anything runs; the parent's copy is
      closed right after the fork.
    - All pipes are closed *before* the children are reaped, even when
      the run is aborted, so no child can block forever on a pipe the
      parent still holds.

Failure policy: a bad program or redirect only fails its own stage (the
stage's output pipe is closed, so the next stage reads EOF).  Running
out of pipes or processes aborts the run with ``ResourceExhaustionError``
after every launched child has been reaped.  A Ctrl+C while waiting is
held until the last child has been reaped, then re-raised.
"""

from __future__ import annotations

import contextlib
import io
from dataclasses import dataclass
from typing import TYPE_CHECKING

from pipesh.builtins import BuiltinDispatcher
from pipesh.channels import PipeChannel, open_input_redirect, open_output_redirect, write_all
from pipesh.errors import LaunchError, RedirectionError, ResourceExhaustionError
from pipesh.launcher import resolve_program, spawn, wait_for

if TYPE_CHECKING:
    from pipesh.parser import CommandDescriptor
    from pipesh.session import Session

_SOURCE = "executor"

# Status of a stage whose redirect could not be opened.
_REDIRECT_FAILURE_STATUS = 1


@dataclass(frozen=True)
class StageResult:
    """How one stage of a pipeline finished.

    Attributes:
        arguments: The stage's argument vector.
        status: Exit status (0 = success, 128+N = killed by signal N).
        builtin: True if the stage ran inside the interpreter.
        pid: The child's pid, for external stages that were started.

    """

    arguments: tuple[str, ...]
    status: int
    builtin: bool = False
    pid: int | None = None


@dataclass(frozen=True)
class PipelineResult:
    """The outcome of running one chain.

    Attributes:
        stages: One result per stage, in pipeline order.
        connections: Number of pipes allocated between stages.

    """

    stages: list[StageResult]
    connections: int

    @property
    def status(self) -> int:
        """Return the last stage's status, the pipeline's overall status."""
        return self.stages[-1].status


@dataclass
class _Launch:
    """Executor bookkeeping for one stage between launch and reap."""

    stage: CommandDescriptor
    pid: int | None = None
    status: int | None = None
    builtin: bool = False
    pending: bytes | None = None
    channel: PipeChannel | None = None

    def result(self) -> StageResult:
        """Freeze into the public per-stage result."""
        assert self.status is not None, f"stage {self.stage.name} read before reap"  # noqa: S101
        return StageResult(tuple(self.stage.arguments), self.status, builtin=self.builtin, pid=self.pid)


class PipelineExecutor:
    """Run stage chains for a session."""

    def __init__(self, session: Session, dispatcher: BuiltinDispatcher | None = None) -> None:
        """Create an executor.

        Args:
            session: Supplies the environment, working directory, streams
                and logger.
            dispatcher: Builtin dispatcher; one bound to *session* is
                created if omitted.

        """
        self._session = session
        self._dispatcher = dispatcher or BuiltinDispatcher(session)

    def run(self, chain: CommandDescriptor) -> PipelineResult:
        """Launch every stage of *chain*, then wait for all of them.

        Args:
            chain: The first stage, as returned by ``parse``.

        Returns:
            Per-stage exit statuses and the number of pipes used.

        Raises:
            ResourceExhaustionError: If a pipe or process cannot be created.
            ShellExit: If a stage ran the ``exit`` builtin.

        """
        stages = list(chain.stages())
        log = self._session.log
        launches: list[_Launch] = []
        try:
            with contextlib.ExitStack() as stack:
                channels = [stack.enter_context(PipeChannel.open()) for _ in stages[1:]]
                connections = len(channels)
                log.debug(
                    f"pipeline: {len(stages)} stage(s), {connections} connection(s)",
                    source=_SOURCE,
                )
                for index, stage in enumerate(stages):
                    feed_in = channels[index - 1] if index > 0 else None
                    feed_out = channels[index] if index < len(channels) else None
                    launch = self._launch(stage, feed_in, feed_out)
                    launches.append(launch)
                    if feed_in is not None:
                        feed_in.close_read()
                    if feed_out is not None and launch.pending is None:
                        feed_out.close_write()
                self._deliver(launches)
        except ResourceExhaustionError as e:
            log.error(f"pipeline aborted: {e}", source=_SOURCE)
            raise
        finally:
            self._reap(launches)
        return PipelineResult([launch.result() for launch in launches], connections=connections)

    # -- Launching ----------------------------------------------------------

    def _launch(
        self,
        stage: CommandDescriptor,
        feed_in: PipeChannel | None,
        feed_out: PipeChannel | None,
    ) -> _Launch:
        """Start one stage; stage-local failures are reported, not raised."""
        if not stage.arguments:
            return _Launch(stage, status=0)
        try:
            if self._dispatcher.is_builtin(stage):
                return self._run_builtin(stage, feed_out)
            return self._start_external(stage, feed_in, feed_out)
        except LaunchError as e:
            self._session.report(str(e))
            self._session.log.warning(f"launch failed: {e}", source=_SOURCE)
            return _Launch(stage, status=e.status)
        except RedirectionError as e:
            self._session.report(str(e))
            self._session.log.warning(f"redirect failed: {e}", source=_SOURCE)
            builtin = self._dispatcher.is_builtin(stage)
            return _Launch(stage, status=_REDIRECT_FAILURE_STATUS, builtin=builtin)

    def _run_builtin(self, stage: CommandDescriptor, feed_out: PipeChannel | None) -> _Launch:
        """Run a builtin in process and route its output."""
        cwd = self._session.cwd.path
        buffer = io.StringIO()
        with contextlib.ExitStack() as stack:
            # Builtins never read stdin, but a missing input file is still an error.
            if stage.input_redirect is not None:
                stack.enter_context(open_input_redirect(stage.input_redirect, cwd=cwd))
            out_fd = None
            if stage.output_redirect is not None:
                redirect = stage.output_redirect
                out_fd = stack.enter_context(open_output_redirect(redirect.path, redirect.mode, cwd=cwd))
            self._dispatcher.try_builtin(stage, out=buffer)
            data = buffer.getvalue()
            if out_fd is not None:
                write_all(out_fd, data.encode())
                return _Launch(stage, status=self._dispatcher.last_status, builtin=True)
        launch = _Launch(stage, status=self._dispatcher.last_status, builtin=True)
        if feed_out is not None:
            launch.pending = data.encode()
            launch.channel = feed_out
        elif data:
            self._session.stdout.write(data)
            self._session.stdout.flush()
        return launch

    def _start_external(
        self,
        stage: CommandDescriptor,
        feed_in: PipeChannel | None,
        feed_out: PipeChannel | None,
    ) -> _Launch:
        """Open redirects, resolve the program, and fork it."""
        session = self._session
        cwd = session.cwd.path
        stdin_fd = feed_in.read_fd if feed_in is not None else None
        stdout_fd = feed_out.write_fd if feed_out is not None else None
        with contextlib.ExitStack() as stack:
            if stage.input_redirect is not None:
                stdin_fd = stack.enter_context(open_input_redirect(stage.input_redirect, cwd=cwd))
            if stage.output_redirect is not None:
                redirect = stage.output_redirect
                stdout_fd = stack.enter_context(open_output_redirect(redirect.path, redirect.mode, cwd=cwd))
            program = resolve_program(stage.arguments[0], path=session.env.get("PATH"), cwd=cwd)
            session.stdout.flush()
            session.stderr.flush()
            pid = spawn(
                program,
                stage.arguments,
                stdin_fd=stdin_fd,
                stdout_fd=stdout_fd,
                cwd=cwd,
                env=session.env.as_dict(),
            )
        session.log.info(f"started pid {pid}: {program}", source=_SOURCE)
        return _Launch(stage, pid=pid)

    # -- Completion ---------------------------------------------------------

    def _deliver(self, launches: list[_Launch]) -> None:
        """Write buffered builtin output into pipes now that readers run."""
        for launch in launches:
            if launch.channel is None or launch.pending is None:
                continue
            if not launch.channel.feed(launch.pending):
                self._session.log.debug(
                    f"reader of {launch.stage.name} exited early; output dropped",
                    source=_SOURCE,
                )
            launch.pending = None

    def _reap(self, launches: list[_Launch]) -> None:
        """Wait for every started child that has not been waited on yet.

        A Ctrl+C while waiting does not cut the reaping short: the wait is
        retried until every child has exited, then the interrupt is
        re-raised.
        """
        interrupted = False
        for launch in launches:
            if launch.pid is None:
                continue
            while launch.status is None:
                try:
                    launch.status = wait_for(launch.pid)
                except KeyboardInterrupt:
                    interrupted = True
            self._session.log.info(f"pid {launch.pid} exited with status {launch.status}", source=_SOURCE)
        if interrupted:
            self._session.log.warning("pipeline interrupted", source=_SOURCE)
            raise KeyboardInterrupt
