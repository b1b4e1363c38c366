"""Supervise agent engine processes: one cooperative task per session."""

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping

from .agents import (
    ADAPTERS,
    EngineAdapter,
    Frame,
    LaunchedProcess,
    ProcessLauncher,
    ProcessSpawnError,
    StreamCorruption,
    resolve_executable,
)
from .config import AgentzSettings
from .models import (
    CLIENT_MESSAGE_ID_KEY,
    AgentType,
    ConversationMessage,
    ErrorChunk,
    Session,
    SessionStatus,
    SpawnRequest,
    TokenUsage,
    UserMessageChunk,
)
from .sessions import (
    InvalidTransitionError,
    SessionStore,
    SessionTerminalError,
    conversation_from_chunks,
)
from .sessions.status import WAITING_STATUSES
from .storage import OutputStream
from .worktree import WorktreeError, WorktreeManager

logger = logging.getLogger(__name__)

_STOP = ("stop", "", b"")


class SessionBusyError(RuntimeError):
    """Raised when a prompt cannot be delivered to a running session."""


class ConcurrencyLimitError(RuntimeError):
    """Raised when starting another process would exceed the configured limit."""


@dataclass(slots=True)
class _Run:
    session_id: str
    adapter: EngineAdapter
    launched: LaunchedProcess
    tokens: TokenUsage
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    task: asyncio.Task | None = None
    kill_task: asyncio.Task | None = None
    produced_output: bool = False
    stopping: bool = False
    reported_error: str | None = None
    failure: str | None = None
    cli_session_id: str | None = None


def format_conversation_context(messages: list[ConversationMessage], prompt: str) -> str:
    """Prefix ``prompt`` with the earlier conversation for engines without native resume."""

    if not messages:
        return prompt
    lines = ["Previous conversation:", ""]
    for message in messages:
        speaker = "User" if message.role == "user" else "Assistant"
        lines.append(f"{speaker}: {message.content}")
        lines.append("")
    lines.extend(["---", "", f"Continue with: {prompt}"])
    return "\n".join(lines)


class AgentProcessSupervisor:
    """Start, observe and stop agent engine processes.

    Each live session owns one task that is the only writer of its output
    stream. The task suspends only on the next output fragment and on process
    exit; cancellation arrives as a stop message on the same queue.
    """

    def __init__(
        self,
        store: SessionStore,
        output: OutputStream,
        settings: AgentzSettings,
        *,
        worktrees: WorktreeManager | None = None,
        launcher: ProcessLauncher | None = None,
        adapters: Mapping[AgentType, Callable[[], EngineAdapter]] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._store = store
        self._output = output
        self._settings = settings
        self._worktrees = worktrees
        self._launcher = launcher or ProcessLauncher(spawn_timeout=settings.spawn_timeout_seconds)
        self._adapters: Mapping[AgentType, Callable[[], EngineAdapter]] = adapters or ADAPTERS
        self._id_factory = id_factory or (lambda: secrets.token_hex(6))
        self._runs: dict[str, _Run] = {}
        self._reserved = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def is_running(self, session_id: str) -> bool:
        run = self._runs.get(session_id)
        return run is not None and run.launched.running

    @property
    def active_count(self) -> int:
        return len(self._runs)

    async def spawn(self, request: SpawnRequest) -> Session:
        """Start a new session, or deliver a prompt to an existing one."""

        if request.session_id and self._store.exists(request.session_id):
            return await self._continue(request.session_id, request)

        self._reserve()
        try:
            session = await self._allocate(request)
            return await self._launch(session, request.prompt, resume_id=None)
        finally:
            self._reserved -= 1

    async def cancel(self, session_id: str) -> Session:
        """Cancel a session; cancelling a terminal session returns it unchanged."""

        session = self._store.get(session_id)
        if session.is_terminal:
            return session
        try:
            session = self._store.transition(session_id, SessionStatus.CANCELLED)
        except SessionTerminalError:
            return self._store.get(session_id)

        run = self._runs.get(session_id)
        if run is not None:
            run.queue.put_nowait(_STOP)
        else:
            await self._release_worktree(session)
        logger.info("Session cancelled", extra={"session_id": session_id, "live": run is not None})
        return session

    async def wait(self, session_id: str, timeout: float | None = None) -> Session:
        """Wait for the session's process task to finish, then return its state."""

        run = self._runs.get(session_id)
        if run is not None and run.task is not None:
            await asyncio.wait_for(asyncio.shield(run.task), timeout=timeout)
        return self._store.get(session_id)

    async def shutdown(self) -> None:
        """Cancel every live session and wait for its process to exit."""

        session_ids = list(self._runs)
        for session_id in session_ids:
            await self.cancel(session_id)
        tasks = [run.task for run in self._runs.values() if run.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Spawning
    # ------------------------------------------------------------------

    def _reserve(self) -> None:
        limit = self._settings.max_concurrent_sessions
        if len(self._runs) + self._reserved >= limit:
            raise ConcurrencyLimitError(f"Maximum of {limit} concurrent sessions reached")
        self._reserved += 1

    def _new_id(self) -> str:
        while True:
            candidate = self._id_factory()
            if not self._store.exists(candidate):
                return candidate

    async def _allocate(self, request: SpawnRequest) -> Session:
        session_id = request.session_id or self._new_id()
        agent_type = request.agent_type or AgentType(self._settings.default_agent_type)
        base = request.working_dir or self._settings.default_working_dir or Path.cwd()
        repo_root = Path(base).expanduser().resolve()

        working_dir = repo_root
        worktree_path: str | None = None
        worktree_branch: str | None = None
        if request.isolate is not None:
            isolate = request.isolate
        else:
            isolate = bool(request.task_path) and self._settings.worktree_isolation
        if isolate and self._worktrees is not None:
            try:
                info = await self._worktrees.ensure(session_id, repo_root)
            except WorktreeError as exc:
                logger.warning(
                    "Worktree unavailable; using repository root",
                    extra={"session_id": session_id, "repo_root": str(repo_root), "error": str(exc)},
                )
            else:
                working_dir = info.path
                worktree_path = str(info.path)
                worktree_branch = info.branch

        session = self._store.create(
            Session(
                id=session_id,
                prompt=request.prompt,
                agent_type=agent_type,
                model=request.model,
                working_dir=str(working_dir),
                worktree_path=worktree_path,
                worktree_branch=worktree_branch,
                task_path=request.task_path,
                retain_worktree=request.retain_worktree,
            )
        )
        self._append_prompt(session_id, request)
        return session

    def _append_prompt(self, session_id: str, request: SpawnRequest) -> None:
        metadata = {CLIENT_MESSAGE_ID_KEY: request.client_message_id} if request.client_message_id else {}
        self._output.append(session_id, UserMessageChunk(content=request.prompt, metadata=metadata))

    async def _continue(self, session_id: str, request: SpawnRequest) -> Session:
        session = self._store.get(session_id)
        if session.is_terminal:
            return session

        run = self._runs.get(session_id)
        if run is not None and run.launched.running:
            stdin = run.launched.process.stdin
            if stdin is None or not run.launched.stdin_writable:
                raise SessionBusyError(f"Session '{session_id}' is still running and not accepting input")
            self._append_prompt(session_id, request)
            try:
                stdin.write(run.adapter.format_followup(request.prompt))
                await stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                raise SessionBusyError(f"Session '{session_id}' closed its input: {exc}") from exc
            if session.status in WAITING_STATUSES:
                self._move(session_id, SessionStatus.WORKING)
            return self._store.get(session_id)

        if run is not None:
            raise SessionBusyError(f"Session '{session_id}' is finishing")
        if session.status == SessionStatus.PENDING:
            raise SessionBusyError(f"Session '{session_id}' is still starting")

        self._reserve()
        try:
            history = conversation_from_chunks(self._output.tail(session_id))
            self._append_prompt(session_id, request)
            adapter_factory = self._adapters[session.agent_type]
            resume_id = session.cli_session_id if adapter_factory().native_resume else None
            prompt = request.prompt if resume_id else format_conversation_context(history, request.prompt)
            self._move(session_id, SessionStatus.WORKING)
            return await self._launch(self._store.get(session_id), prompt, resume_id=resume_id)
        finally:
            self._reserved -= 1

    async def _launch(self, session: Session, prompt: str, *, resume_id: str | None) -> Session:
        adapter = self._adapters[session.agent_type]()
        invocation = adapter.build_invocation(prompt, model=session.model, resume_id=resume_id)
        try:
            executable = resolve_executable(
                adapter.executable_name, self._settings.executable_for(session.agent_type.value)
            )
            launched = await self._launcher.launch(
                executable,
                invocation.args,
                cwd=Path(session.working_dir),
                env=invocation.env,
            )
        except ProcessSpawnError as exc:
            logger.warning(
                "Agent process failed to start",
                extra={"session_id": session.id, "agent_type": session.agent_type.value, "error": str(exc)},
            )
            try:
                failed = self._store.transition(session.id, SessionStatus.FAILED, error=str(exc))
            except SessionTerminalError:
                failed = self._store.get(session.id)
            await self._release_worktree(failed)
            return failed

        stdin = launched.process.stdin
        if stdin is not None:
            try:
                if invocation.stdin_prompt is not None:
                    stdin.write(adapter.format_followup(invocation.stdin_prompt))
                    await stdin.drain()
                if invocation.close_stdin:
                    stdin.close()
            except (BrokenPipeError, ConnectionResetError):
                logger.debug("Agent closed stdin before the prompt was written", extra={"session_id": session.id})

        run = _Run(
            session_id=session.id,
            adapter=adapter,
            launched=launched,
            tokens=session.tokens_used.model_copy(),
            cli_session_id=session.cli_session_id,
        )
        self._runs[session.id] = run
        run.task = asyncio.create_task(self._supervise(run), name=f"agentz-session-{session.id}")
        try:
            updated = self._store.update(session.id, pid=launched.pid)
        except SessionTerminalError:
            # Cancelled while the process was starting.
            run.queue.put_nowait(_STOP)
            updated = self._store.get(session.id)
        logger.info(
            "Agent process started",
            extra={
                "session_id": session.id,
                "pid": launched.pid,
                "agent_type": session.agent_type.value,
                "cwd": session.working_dir,
            },
        )
        return updated

    # ------------------------------------------------------------------
    # Per-session task
    # ------------------------------------------------------------------

    @staticmethod
    async def _pump(reader: asyncio.StreamReader | None, stream: str, queue: asyncio.Queue) -> None:
        if reader is not None:
            while True:
                try:
                    line = await reader.readline()
                except ValueError:
                    await queue.put(("overflow", stream, b""))
                    continue
                if not line:
                    break
                await queue.put(("line", stream, line))
        await queue.put(("eof", stream, b""))

    def _next_timeout(self, run: _Run, started: float, now: float) -> float | None:
        if run.stopping:
            return None
        remaining = started + self._settings.max_runtime_seconds - now
        if not run.produced_output:
            remaining = min(remaining, started + self._settings.startup_output_timeout_seconds - now)
        return max(remaining, 0.0)

    async def _supervise(self, run: _Run) -> None:
        process = run.launched.process
        loop = asyncio.get_running_loop()
        started = loop.time()
        pumps = [
            asyncio.create_task(self._pump(process.stdout, "stdout", run.queue)),
            asyncio.create_task(self._pump(process.stderr, "stderr", run.queue)),
        ]
        try:
            try:
                await self._drain(run, started)
                try:
                    await asyncio.wait_for(process.wait(), timeout=self._settings.cancel_grace_seconds)
                except asyncio.TimeoutError:
                    self._begin_stop(run)
                    await process.wait()
            except Exception as exc:
                logger.error(
                    "Supervisor error; stopping agent",
                    extra={"session_id": run.session_id, "error": f"{type(exc).__name__}: {exc}"},
                    exc_info=True,
                )
                run.failure = f"Supervisor error: {exc}"
                self._begin_stop(run)
                await process.wait()

            await self._finish(run, process.returncode)
        finally:
            for pump in pumps:
                if not pump.done():
                    pump.cancel()
            if run.kill_task is not None and not run.kill_task.done():
                run.kill_task.cancel()
            self._runs.pop(run.session_id, None)

    async def _drain(self, run: _Run, started: float) -> None:
        loop = asyncio.get_running_loop()
        open_streams = 2
        while open_streams:
            try:
                kind, stream, payload = await asyncio.wait_for(
                    run.queue.get(), timeout=self._next_timeout(run, started, loop.time())
                )
            except asyncio.TimeoutError:
                if run.produced_output:
                    run.failure = f"Agent exceeded maximum runtime of {self._settings.max_runtime_seconds:g}s"
                else:
                    run.failure = (
                        f"Agent produced no output within {self._settings.startup_output_timeout_seconds:g}s"
                    )
                logger.warning("Stopping agent after timeout", extra={"session_id": run.session_id, "reason": run.failure})
                self._begin_stop(run)
                continue

            if kind == "stop":
                self._begin_stop(run)
            elif kind == "eof":
                open_streams -= 1
            else:
                self._handle(run, kind, stream, payload)

    def _begin_stop(self, run: _Run) -> None:
        if run.stopping:
            return
        run.stopping = True
        run.launched.terminate()
        run.kill_task = asyncio.create_task(self._escalate(run))

    async def _escalate(self, run: _Run) -> None:
        grace = self._settings.cancel_grace_seconds
        try:
            await asyncio.wait_for(run.launched.process.wait(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning(
                "Agent ignored termination; killing",
                extra={"session_id": run.session_id, "pid": run.launched.pid, "grace_seconds": grace},
            )
            run.launched.kill()

    def _handle(self, run: _Run, kind: str, stream: str, payload: bytes) -> None:
        if kind == "overflow":
            self._corrupt(run, stream, "output line exceeded the buffer limit")
            return

        if stream == "stderr":
            frame = run.adapter.parse_stderr(payload.decode("utf-8", errors="replace"))
        else:
            try:
                frame = run.adapter.parse_line(payload.decode("utf-8"))
            except UnicodeDecodeError as exc:
                self._corrupt(run, stream, f"undecodable bytes ({exc.reason})")
                return
            except StreamCorruption as exc:
                self._corrupt(run, stream, str(exc))
                return
        self._apply(run, frame)

    def _corrupt(self, run: _Run, stream: str, reason: str) -> None:
        logger.warning("Discarding malformed agent output", extra={"session_id": run.session_id, "reason": reason})
        self._apply(
            run,
            Frame(
                chunks=[
                    ErrorChunk(
                        content=f"Discarded malformed output: {reason}",
                        metadata={"corrupted": True, "stream": stream},
                    )
                ]
            ),
        )

    def _apply(self, run: _Run, frame: Frame) -> None:
        session_id = run.session_id
        if frame.cli_session_id and frame.cli_session_id != run.cli_session_id:
            run.cli_session_id = frame.cli_session_id
            self._update(session_id, cli_session_id=frame.cli_session_id)
        if frame.token_usage is not None:
            run.tokens = TokenUsage(
                input=run.tokens.input + frame.token_usage.input,
                output=run.tokens.output + frame.token_usage.output,
            )
            self._update(session_id, tokens_used=run.tokens)
        if frame.error and run.reported_error is None:
            run.reported_error = frame.error

        for chunk in frame.chunks:
            self._output.append(session_id, chunk)

        if frame.chunks:
            run.produced_output = True
            self._move(session_id, SessionStatus.WORKING)
        for signal in frame.signals:
            self._move(session_id, SessionStatus.WORKING)
            self._move(session_id, SessionStatus(signal.value))

    def _update(self, session_id: str, **fields) -> None:
        try:
            self._store.update(session_id, **fields)
        except SessionTerminalError:
            logger.debug("Ignoring update for finished session", extra={"session_id": session_id})

    def _move(self, session_id: str, status: SessionStatus) -> None:
        try:
            self._store.transition(session_id, status)
        except SessionTerminalError:
            logger.debug("Ignoring status change for finished session", extra={"session_id": session_id})
        except InvalidTransitionError as exc:
            logger.debug("Ignoring status change", extra={"session_id": session_id, "error": str(exc)})

    async def _finish(self, run: _Run, returncode: int | None) -> None:
        session_id = run.session_id
        session = self._store.get(session_id)

        if session.is_terminal:
            session = self._store.finalize_metadata(session_id, tokens_used=run.tokens)
        else:
            if run.failure is not None:
                target, error = SessionStatus.FAILED, run.failure
            elif not run.produced_output:
                target = SessionStatus.FAILED
                error = f"Agent exited with code {returncode} before producing any output"
            elif returncode == 0 and run.reported_error is None:
                target, error = SessionStatus.COMPLETED, None
            else:
                target = SessionStatus.FAILED
                error = run.reported_error or f"Agent exited with code {returncode}"

            if session.status in {SessionStatus.WAITING_APPROVAL, SessionStatus.WAITING_INPUT}:
                self._move(session_id, SessionStatus.WORKING)
            try:
                session = self._store.transition(
                    session_id,
                    target,
                    error=error,
                    exit_code=returncode,
                    tokens_used=run.tokens,
                )
            except SessionTerminalError:
                session = self._store.finalize_metadata(session_id, tokens_used=run.tokens)

        logger.info(
            "Agent process exited",
            extra={"session_id": session_id, "returncode": returncode, "status": session.status.value},
        )
        await self._release_worktree(session)

    async def _release_worktree(self, session: Session) -> None:
        if self._worktrees is None or not session.is_terminal:
            return
        if self._worktrees.get(session.id) is None:
            return
        retain = session.retain_worktree or self._settings.retain_worktrees
        try:
            await self._worktrees.release(session.id, delete=not retain)
        except WorktreeError as exc:
            logger.warning("Failed to release worktree", extra={"session_id": session.id, "error": str(exc)})


__all__ = [
    "AgentProcessSupervisor",
    "ConcurrencyLimitError",
    "SessionBusyError",
    "format_conversation_context",
]
