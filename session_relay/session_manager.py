"""Interactive session registry and lifecycle management."""

import asyncio
import logging
import shlex
import time
import uuid
from typing import Optional

from .callbacks import ANSWER, encode_callback
from .models import (
    ActiveSession,
    AnalysisContext,
    AskUserChunk,
    ParsedChunk,
    PendingQuestion,
    ResultChunk,
    SessionState,
    SpawnResult,
)
from .stream_parser import OutputChannel, wrap_stream_json_input
from .transport import quote_remote_path

logger = logging.getLogger(__name__)

SPAWN_FAILED_MESSAGE = "Failed to start SSH session. Check SSH target configuration."
ALREADY_ACTIVE_MESSAGE = "A session is already active in this topic."

SPAWNING_TIMEOUT_SECONDS = 60
RECENTLY_CLOSED_SECONDS = 30


def new_session_ref() -> str:
    return f"session-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


def build_session_command(repo_path: str, engine_command: str, prompt: Optional[str] = None) -> str:
    """``cd <repo> && <engine> [--ds] '<prompt>'``; adds --ds when no mode flag is given."""
    flags = engine_command.split()
    if "--ds" not in flags and "--cds" not in flags:
        engine_command = f"{engine_command} --ds"
    command = f"cd {quote_remote_path(repo_path)} && {engine_command}"
    if prompt:
        command += f" {shlex.quote(prompt)}"
    return command


def format_chunk(chunk: ParsedChunk) -> str:
    """Render a chunk as chat text."""
    if isinstance(chunk, ResultChunk):
        parts = [f"Session {chunk.subtype}"]
        if chunk.cost_label:
            parts.append(chunk.cost_label)
        if chunk.duration_label:
            parts.append(chunk.duration_label)
        return " | ".join(parts)
    if isinstance(chunk, AskUserChunk):
        options = "\n".join(f"{i}. {option}" for i, option in enumerate(chunk.options, 1))
        return f"{chunk.question}\n{options}" if options else chunk.question
    return chunk.content


class SessionManager:
    """
    Owns the one-session-per-thread registry.

    Spawns remote processes through the transport, runs each output stream
    through its own OutputChannel, relays chunks to the chat topic, keeps the
    transcript, and tears everything down exactly once when the process exits.

    The registry is only mutated under the thread's lock; transport and relay
    I/O happen outside it.
    """

    def __init__(self, transport, relay, analyzer=None, config: Optional[dict] = None):
        self.transport = transport
        self.relay = relay
        self.analyzer = analyzer
        self.config = config or {}

        sessions_config = self.config.get("sessions", {})
        self.idle_timeout = sessions_config.get("idle_timeout_seconds", 600)
        self.stderr_prefix = sessions_config.get("stderr_prefix", "[stderr] ")

        self._sessions: dict[str, ActiveSession] = {}  # thread_key -> session
        self._locks: dict[str, asyncio.Lock] = {}
        self._spawning: dict[str, float] = {}          # thread_key -> monotonic start
        self._recently_closed: dict[str, float] = {}   # thread_key -> monotonic close
        self._pending_questions: dict[str, PendingQuestion] = {}
        self._analysis_tasks: set[asyncio.Task] = set()

    def _lock_for(self, thread_key: str) -> asyncio.Lock:
        return self._locks.setdefault(thread_key, asyncio.Lock())

    def _prune(self):
        """Drop close marks past the grace window and locks of idle threads."""
        now = time.monotonic()
        for thread_key, closed in list(self._recently_closed.items()):
            if now - closed > RECENTLY_CLOSED_SECONDS:
                del self._recently_closed[thread_key]
        for thread_key, lock in list(self._locks.items()):
            if lock.locked() or thread_key in self._sessions or thread_key in self._spawning:
                continue
            del self._locks[thread_key]

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, thread_key: str) -> Optional[ActiveSession]:
        return self._sessions.get(thread_key)

    def has(self, thread_key: str) -> bool:
        return thread_key in self._sessions

    def list_sessions(self) -> list[ActiveSession]:
        return list(self._sessions.values())

    def is_spawning(self, thread_key: str) -> bool:
        started = self._spawning.get(thread_key)
        if started is None:
            return False
        if time.monotonic() - started > SPAWNING_TIMEOUT_SECONDS:
            self._spawning.pop(thread_key, None)
            return False
        return True

    def is_session_topic(self, thread_key: str) -> bool:
        """True for threads with a live, starting, or just-closed session."""
        if thread_key in self._sessions or self.is_spawning(thread_key):
            return True
        self._prune()
        return thread_key in self._recently_closed

    def get_pending_question(self, thread_key: str) -> Optional[PendingQuestion]:
        return self._pending_questions.get(thread_key)

    # =========================================================================
    # Spawn
    # =========================================================================

    async def spawn(
        self,
        thread_key: str,
        target: str,
        command: str,
        project_label: str = "",
        prompt: str = "",
        stream_json: Optional[bool] = None,
    ) -> SpawnResult:
        """
        Start a remote interactive process bound to ``thread_key``.

        Rejected (not raised) when the thread already has a session or one is
        starting. A failed spawn leaves nothing registered.
        """
        self._prune()
        async with self._lock_for(thread_key):
            if thread_key in self._sessions or self.is_spawning(thread_key):
                logger.warning(f"Refusing second session on thread {thread_key}")
                return SpawnResult(ok=False, reason=ALREADY_ACTIVE_MESSAGE)
            self._spawning[thread_key] = time.monotonic()

        session = ActiveSession(
            session_ref=new_session_ref(),
            thread_key=thread_key,
            target=target,
            project_label=project_label,
            command=command,
            prompt=prompt,
            stream_json="stream-json" in command if stream_json is None else stream_json,
        )
        stdout = OutputChannel("stdout")
        stderr = OutputChannel("stderr")

        async def on_stdout(fragment):
            for chunk in stdout.feed(fragment):
                await self._relay_chunk(session, chunk)

        async def on_stderr(fragment):
            for chunk in stderr.feed(fragment):
                await self._relay_chunk(session, chunk, is_stderr=True)

        async def on_exit(code: int):
            await self._finalize(session, code, (stdout, stderr))

        await self._notify(
            thread_key,
            f"Interactive session on {target}\n"
            f"Project: {project_label or '-'}\n"
            f"Prompt: {prompt or '-'}\n"
            f"Command: {command}\n\n"
            f"Starting...",
        )

        try:
            handle = await self.transport.spawn_interactive_session(
                target, command, on_stdout, on_stderr, on_exit, self.idle_timeout
            )
        except Exception as e:
            logger.error(f"Transport error spawning session on {target}: {e}", exc_info=True)
            handle = None

        async with self._lock_for(thread_key):
            self._spawning.pop(thread_key, None)
            if handle is None:
                session.state = SessionState.SPAWN_FAILED
                logger.error(f"Failed to spawn session on {target} for thread {thread_key}")
            else:
                session.process_handle = handle
                if session.state == SessionState.SPAWNING:
                    session.state = SessionState.RUNNING
                    self._sessions[thread_key] = session

        if handle is None:
            await self._notify(thread_key, SPAWN_FAILED_MESSAGE)
            return SpawnResult(ok=False, reason=SPAWN_FAILED_MESSAGE)

        logger.info(f"Session {session.session_ref} spawned on {target} for thread {thread_key}")
        return SpawnResult(ok=True, session=session)

    # =========================================================================
    # Output relay
    # =========================================================================

    async def _relay_chunk(self, session: ActiveSession, chunk: ParsedChunk, is_stderr: bool = False):
        text = format_chunk(chunk)
        if not text:
            return
        if is_stderr:
            text = f"{self.stderr_prefix}{text}"
        session.append("stderr" if is_stderr else chunk.kind, text)

        try:
            if isinstance(chunk, AskUserChunk) and chunk.options:
                self._pending_questions[session.thread_key] = PendingQuestion(
                    tool_ref=chunk.tool_ref,
                    question=chunk.question,
                    options=list(chunk.options),
                )
                await self.relay.flush(session.session_ref)
                await self.relay.send_to_topic(
                    session.thread_key, text, buttons=self._answer_buttons(session.thread_key, chunk)
                )
            else:
                await self.relay.receive_chunk(session.session_ref, session.thread_key, text)
        except Exception as e:
            logger.warning(f"Relay failed for session {session.session_ref} (non-fatal): {e}")

    def _answer_buttons(self, thread_key: str, chunk: AskUserChunk) -> list:
        return [
            [(option[:40], encode_callback(ANSWER, thread_key, str(i)))]
            for i, option in enumerate(chunk.options)
        ]

    async def _notify(self, thread_key: str, text: str):
        try:
            await self.relay.send_to_topic(thread_key, text)
        except Exception as e:
            logger.warning(f"Could not post to thread {thread_key} (non-fatal): {e}")

    # =========================================================================
    # Input
    # =========================================================================

    async def send_input(self, thread_key: str, text: str) -> bool:
        """Write operator input to the thread's process and record it."""
        session = self._sessions.get(thread_key)
        if not session or not session.process_handle:
            return False
        payload = wrap_stream_json_input(text) if session.stream_json else f"{text}\n"
        ok = await session.process_handle.write(payload)
        if ok:
            session.append("user_input", text)
        else:
            logger.warning(f"Input to session {session.session_ref} was not delivered")
        return ok

    async def answer_question(self, thread_key: str, option_index: int) -> Optional[str]:
        """Answer the pending ask_user prompt. Returns the chosen option, or None."""
        session = self._sessions.get(thread_key)
        pending = self._pending_questions.get(thread_key)
        if not session or not pending or not 0 <= option_index < len(pending.options):
            return None

        answer = pending.options[option_index]
        if not await session.process_handle.write(wrap_stream_json_input(answer)):
            return None
        self._pending_questions.pop(thread_key, None)
        session.append("user_input", answer)
        logger.info(f"Answered question in session {session.session_ref}: {answer}")
        return answer

    async def cancel(self, thread_key: str) -> bool:
        """Kill the thread's process. Teardown still runs from the exit callback."""
        session = self._sessions.get(thread_key)
        if not session or not session.process_handle:
            return False
        killed = session.process_handle.kill()
        logger.info(f"Cancel requested for session {session.session_ref} (killed={killed})")
        return killed

    # =========================================================================
    # Exit
    # =========================================================================

    async def _finalize(self, session: ActiveSession, code: int, channels: tuple):
        if session.state in (SessionState.EXITED, SessionState.SPAWN_FAILED):
            return
        session.state = SessionState.EXITED
        session.exit_code = code
        thread_key = session.thread_key

        try:
            for channel in channels:
                for chunk in channel.flush():
                    await self._relay_chunk(session, chunk, is_stderr=channel.name == "stderr")
            await self.relay.final_flush(session.session_ref)
            await self.relay.send_to_topic(thread_key, f"\n--- Session ended (exit code: {code}) ---")
        except Exception as e:
            logger.warning(f"Exit notice for session {session.session_ref} failed (non-fatal): {e}")
        finally:
            self._launch_analysis(session, code)
            async with self._lock_for(thread_key):
                if self._sessions.get(thread_key) is session:
                    del self._sessions[thread_key]
                self._pending_questions.pop(thread_key, None)
                self._recently_closed[thread_key] = time.monotonic()

        logger.info(f"Session {session.session_ref} on {session.target} exited with code {code}")

    def _launch_analysis(self, session: ActiveSession, code: int):
        if not self.analyzer:
            return
        context = AnalysisContext(
            source="session",
            project=session.project_label,
            session_ref=session.session_ref,
            target=session.target,
            description=session.prompt,
            outcome="completed" if code == 0 else f"exited with code {code}",
            duration_ms=session.duration_ms(),
        )
        task = asyncio.create_task(self._analyze(list(session.transcript), context))
        self._analysis_tasks.add(task)
        task.add_done_callback(self._analysis_tasks.discard)

    async def _analyze(self, entries: list, context: AnalysisContext):
        try:
            await self.analyzer.analyze(entries, context)
        except Exception as e:
            logger.error(f"Transcript analysis failed for session {context.session_ref} (non-fatal): {e}")
