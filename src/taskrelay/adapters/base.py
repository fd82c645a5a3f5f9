"""Agent backend interfaces and subprocess implementation."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, Literal, Protocol

from taskrelay import classifier
from taskrelay.errors import AgentProcessError, AgentTimeoutError, NoFinalMessageError
from taskrelay.protocol.models import FailureReport, Verdict

logger = logging.getLogger(__name__)

DEFAULT_INITIAL_TIMEOUT_S = 120.0
DEFAULT_INACTIVITY_TIMEOUT_S = 30 * 60.0
STREAM_LIMIT_BYTES = 16 * 1024 * 1024
STDERR_TAIL_CHARS = 4000

# Nested agent CLIs refuse to start when they see their own session markers.
STRIP_ENV_VARS = frozenset({
    "CLAUDECODE",
    "CLAUDE_CODE_ENTRYPOINT",
    "CLAUDE_REPL",
    "CLAUDE_CODE_PACKAGE_DIR",
})

_FAILED_MARKER = re.compile(r"^\W*FAILED:", re.MULTILINE)

EventKind = Literal["task_started", "agent_message", "tool_invocation", "result"]


@dataclass(slots=True, frozen=True)
class StreamEvent:
    kind: EventKind
    text: str = ""
    paths: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class StreamState:
    """Accumulated view of an agent's output stream."""

    work_dir: str
    final_message: str | None = None
    failure_message: str | None = None
    touched_paths: frozenset[str] = frozenset()
    seen_result: bool = False
    task_started: bool = False
    lines: int = 0


def _absolute(path: str, work_dir: str) -> str:
    if not os.path.isabs(path):
        path = os.path.join(work_dir, path)
    return os.path.normpath(path)


def apply_event(state: StreamState, event: StreamEvent) -> StreamState:
    if event.kind == "task_started":
        return replace(state, task_started=True)
    if event.kind == "agent_message":
        if not event.text:
            return state
        failure = event.text if _FAILED_MARKER.search(event.text) else state.failure_message
        return replace(state, final_message=event.text, failure_message=failure)
    if event.kind == "tool_invocation":
        if not event.paths:
            return state
        paths = {_absolute(p, state.work_dir) for p in event.paths if p}
        return replace(state, touched_paths=state.touched_paths | paths)
    if event.kind == "result":
        final = event.text or state.final_message
        failure = state.failure_message
        if event.text and _FAILED_MARKER.search(event.text):
            failure = event.text
        return replace(state, seen_result=True, final_message=final, failure_message=failure)
    return state


def fold_line(
    state: StreamState,
    line: str,
    parse_line: Callable[[str], Iterable[StreamEvent]],
) -> StreamState:
    """Fold one line of agent output into *state*."""
    state = replace(state, lines=state.lines + 1)
    for event in parse_line(line):
        state = apply_event(state, event)
    return state


@dataclass(slots=True)
class InvokeOptions:
    role: str = "implementer"
    model: str | None = None
    initial_timeout: float = DEFAULT_INITIAL_TIMEOUT_S
    inactivity_timeout: float = DEFAULT_INACTIVITY_TIMEOUT_S
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    allow_all_tools: bool = False
    mcp_config_path: str | None = None
    output_schema: dict[str, Any] | None = None
    reasoning_level: str | None = None
    search: bool = False
    env: dict[str, str] = field(default_factory=dict)
    # Run-owned set; touched paths are added as soon as they are reported.
    tracked_files: set[str] | None = None


@dataclass(slots=True, frozen=True)
class InvocationResult:
    raw_final_message: str
    failure_message: str | None = None
    touched_paths: frozenset[str] = frozenset()
    exit_code: int | None = None
    timed_out: bool = False


class AgentBackend(Protocol):
    name: str
    supports_permission_gateway: bool

    async def invoke(self, prompt: str, work_dir: str, options: InvokeOptions) -> InvocationResult: ...

    def parse_line(self, line: str) -> list[StreamEvent]: ...

    def parse_verdict(self, text: str) -> Verdict: ...

    def parse_failure(self, text: str) -> FailureReport: ...


class SubprocessBackend:
    """Base backend: prompt on stdin, line-delimited events on stdout.

    Subclasses supply ``build_command`` and ``parse_line``. The invocation
    is bounded by two timeouts: ``initial_timeout`` until the first line of
    output and ``inactivity_timeout`` between subsequent lines. Either one
    kills the process; the outcome is still a success if a terminal result
    event was already seen.
    """

    name = "subprocess"
    display_name = "Agent"
    supports_permission_gateway = False

    def build_command(
        self,
        options: InvokeOptions,
        work_dir: str,
        stack: contextlib.ExitStack,
    ) -> list[str]:
        raise NotImplementedError

    def parse_line(self, line: str) -> list[StreamEvent]:
        return []

    def parse_verdict(self, text: str) -> Verdict:
        return classifier.parse_verdict(text)

    def parse_failure(self, text: str) -> FailureReport:
        return classifier.parse_failure(text)

    def build_env(self, options: InvokeOptions) -> dict[str, str]:
        env = {k: v for k, v in os.environ.items() if k not in STRIP_ENV_VARS}
        env.update(options.env)
        return env

    async def invoke(self, prompt: str, work_dir: str, options: InvokeOptions) -> InvocationResult:
        with contextlib.ExitStack() as stack:
            argv = self.build_command(options, work_dir, stack)
            logger.debug("Spawning %s %s: %s", self.name, options.role, " ".join(argv[:4]))
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=work_dir,
                env=self.build_env(options),
                limit=STREAM_LIMIT_BYTES,
            )
            writer = asyncio.create_task(self._write_prompt(process, prompt))
            stderr_task = asyncio.create_task(self._read_stderr(process.stderr))
            try:
                state, timed_out = await self._consume(process, work_dir, options)
                if timed_out:
                    await self.terminate(process)
                exit_code = await process.wait()
            finally:
                if process.returncode is None:
                    await self.terminate(process)
                writer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await writer
                stderr_tail = await stderr_task

        return self._finish(state, exit_code, timed_out, stderr_tail, options)

    def _finish(
        self,
        state: StreamState,
        exit_code: int | None,
        timed_out: bool,
        stderr_tail: str,
        options: InvokeOptions,
    ) -> InvocationResult:
        if timed_out:
            initial = state.lines == 0
            limit = options.initial_timeout if initial else options.inactivity_timeout
            if not state.seen_result:
                raise AgentTimeoutError(self.name, limit, initial=initial)
            logger.warning(
                "%s %s timed out after %.0fs but a result was already received; treating as completed",
                self.display_name, options.role, limit,
            )
        elif exit_code != 0:
            if not state.seen_result:
                raise AgentProcessError(self.name, exit_code, stderr_tail)
            logger.warning(
                "%s %s exited with code %s after producing a result; continuing",
                self.display_name, options.role, exit_code,
            )

        final = state.final_message or state.failure_message
        if final is None:
            raise NoFinalMessageError(self.name)
        return InvocationResult(
            raw_final_message=final,
            failure_message=state.failure_message,
            touched_paths=state.touched_paths,
            exit_code=exit_code,
            timed_out=timed_out,
        )

    async def _consume(
        self,
        process: asyncio.subprocess.Process,
        work_dir: str,
        options: InvokeOptions,
    ) -> tuple[StreamState, bool]:
        state = StreamState(work_dir=work_dir)
        if process.stdout is None:
            return state, False
        timeout = options.initial_timeout
        while True:
            try:
                raw = await asyncio.wait_for(process.stdout.readline(), timeout=timeout)
            except TimeoutError:
                return state, True
            except ValueError as exc:
                # readline() discards an over-limit line; any result event so far still counts.
                logger.warning("Skipping %s output line longer than %d bytes: %s", self.name, STREAM_LIMIT_BYTES, exc)
                timeout = options.inactivity_timeout
                state = replace(state, lines=state.lines + 1)
                continue
            if not raw:
                return state, False
            timeout = options.inactivity_timeout
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if not line.strip():
                continue
            previous = state.touched_paths
            state = fold_line(state, line, self.parse_line)
            if options.tracked_files is not None and state.touched_paths is not previous:
                options.tracked_files.update(state.touched_paths)

    async def _write_prompt(self, process: asyncio.subprocess.Process, prompt: str) -> None:
        if process.stdin is None:
            return
        try:
            process.stdin.write(prompt.encode("utf-8"))
            await process.stdin.drain()
            process.stdin.close()
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.debug("Agent closed stdin before the prompt was written: %s", exc)

    async def _read_stderr(self, stream: asyncio.StreamReader | None) -> str:
        if stream is None:
            return ""
        tail = ""
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                tail = (tail + "\n[stderr line truncated]").strip()[-STDERR_TAIL_CHARS:]
                continue
            if not raw:
                return tail
            line = raw.decode("utf-8", errors="replace").rstrip("\n")
            if line:
                logger.debug("[%s stderr] %s", self.name, line)
                tail = (tail + "\n" + line).strip()[-STDERR_TAIL_CHARS:]

    async def terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
