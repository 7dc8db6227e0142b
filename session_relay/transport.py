"""SSH transport: one-shot remote commands and long-running interactive sessions."""

import asyncio
import logging
import posixpath
import shlex
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from .models import ExecResult

logger = logging.getLogger(__name__)

OutputCallback = Callable[[bytes], Awaitable[None]]
ExitCallback = Callable[[int], Awaitable[None]]

READ_CHUNK_SIZE = 4096
TIMEOUT_EXIT_CODE = 124
MAX_LISTED_DIRS = 30


@dataclass
class SshTarget:
    """A machine reachable over SSH."""
    name: str
    host: str
    user: Optional[str] = None
    key_path: Optional[str] = None
    port: Optional[int] = None
    start_dir: str = "~"
    engine_priority: list[str] = field(default_factory=list)
    projects: list[str] = field(default_factory=list)  # Known repos, offered when listing fails

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.host}" if self.user else self.host

    @classmethod
    def from_dict(cls, name: str, data: dict) -> "SshTarget":
        return cls(
            name=name,
            host=data.get("host", name),
            user=data.get("user"),
            key_path=data.get("key_path"),
            port=data.get("port"),
            start_dir=data.get("start_dir", "~"),
            engine_priority=list(data.get("engine_priority") or []),
            projects=list(data.get("projects") or []),
        )


def quote_remote_path(path: str) -> str:
    """Shell-quote a remote path while keeping a leading ~ expandable."""
    if path == "~":
        return '"$HOME"'
    if path.startswith("~/"):
        return '"$HOME"/' + shlex.quote(path[2:])
    return shlex.quote(path)


class InteractiveHandle:
    """Owned handle to a running interactive SSH process."""

    def __init__(self, process: asyncio.subprocess.Process, target: str, command: str):
        self.process = process
        self.target = target
        self.command = command
        self.last_output = time.monotonic()
        self.supervisor: Optional[asyncio.Task] = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    @property
    def running(self) -> bool:
        return self.process.returncode is None

    async def write(self, data: str) -> bool:
        """Write to the process stdin. Returns False if the process is gone."""
        if not self.running or not self.process.stdin:
            return False
        try:
            self.process.stdin.write(data.encode("utf-8"))
            await self.process.stdin.drain()
            return True
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning(f"Write to {self.target} session failed: {e}")
            return False

    def kill(self) -> bool:
        if not self.running:
            return False
        try:
            self.process.kill()
            return True
        except ProcessLookupError:
            return False


class SshTransport:
    """Runs the system ``ssh`` binary against configured targets."""

    def __init__(self, targets: Optional[dict[str, SshTarget]] = None, connect_timeout: int = 10):
        self.targets = targets or {}
        self.connect_timeout = connect_timeout

    @classmethod
    def from_config(cls, config: Optional[dict] = None) -> "SshTransport":
        ssh_config = (config or {}).get("ssh", {})
        targets = {
            name: SshTarget.from_dict(name, data or {})
            for name, data in (ssh_config.get("targets") or {}).items()
        }
        return cls(targets=targets, connect_timeout=ssh_config.get("connect_timeout_seconds", 10))

    def get_target(self, name: str) -> Optional[SshTarget]:
        return self.targets.get(name)

    def list_targets(self) -> list[str]:
        return list(self.targets)

    def get_starting_dir(self, name: str) -> str:
        target = self.targets.get(name)
        return target.start_dir if target else "~"

    def known_projects(self, name: str) -> list[str]:
        target = self.targets.get(name)
        return list(target.projects) if target else []

    def _ssh_args(self, target: SshTarget, command: str, tty: bool = False) -> list[str]:
        args = [
            "ssh",
            "-o", "StrictHostKeyChecking=no",
            "-o", f"ConnectTimeout={self.connect_timeout}",
            "-o", "BatchMode=yes",
        ]
        if tty:
            args.append("-tt")
        if target.key_path:
            args.extend(["-i", target.key_path])
        if target.port:
            args.extend(["-p", str(target.port)])
        args.extend([target.destination, command])
        return args

    async def exec(self, target: str, command: str, timeout: float = 30.0) -> ExecResult:
        """Run a command remotely and collect its output."""
        ssh_target = self.targets.get(target)
        if not ssh_target:
            return ExecResult(exit_code=1, stderr=f"Unknown SSH target: {target}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *self._ssh_args(ssh_target, command),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"Failed to run ssh for {target}: {e}")
            return ExecResult(exit_code=1, stderr=str(e))

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning(f"Command on {target} timed out after {timeout}s: {command[:80]}")
            return ExecResult(exit_code=TIMEOUT_EXIT_CODE, stderr=f"Timed out after {timeout}s")

        return ExecResult(
            exit_code=proc.returncode if proc.returncode is not None else 1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    async def spawn_interactive_session(
        self,
        target: str,
        command: str,
        on_stdout: OutputCallback,
        on_stderr: OutputCallback,
        on_exit: ExitCallback,
        idle_timeout: float = 600.0,
    ) -> Optional[InteractiveHandle]:
        """
        Start a long-running remote process.

        Output is delivered in order per stream. ``on_exit`` is awaited exactly
        once, after both streams are drained. The process is killed after
        ``idle_timeout`` seconds without output.

        Returns:
            Handle for writing input / killing, or None if nothing was started
        """
        ssh_target = self.targets.get(target)
        if not ssh_target:
            logger.error(f"Unknown SSH target: {target}")
            return None

        try:
            proc = await asyncio.create_subprocess_exec(
                *self._ssh_args(ssh_target, command, tty=True),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"Failed to start interactive ssh session on {target}: {e}")
            return None

        handle = InteractiveHandle(proc, target, command)
        handle.supervisor = asyncio.create_task(self._supervise(handle, on_stdout, on_stderr, on_exit, idle_timeout))
        logger.info(f"Interactive session started on {target} (pid={proc.pid})")
        return handle

    async def _supervise(
        self,
        handle: InteractiveHandle,
        on_stdout: OutputCallback,
        on_stderr: OutputCallback,
        on_exit: ExitCallback,
        idle_timeout: float,
    ):
        proc = handle.process
        watchdog = asyncio.create_task(self._watch_idle(handle, idle_timeout))
        try:
            await asyncio.gather(
                self._pump(handle, proc.stdout, on_stdout),
                self._pump(handle, proc.stderr, on_stderr),
            )
        except Exception as e:
            logger.error(f"Output pump failed for session on {handle.target}: {e}", exc_info=True)
            handle.kill()
        finally:
            watchdog.cancel()
        code = await proc.wait()

        logger.info(f"Interactive session on {handle.target} exited with code {code}")
        try:
            await on_exit(code)
        except Exception as e:
            logger.error(f"Exit handler failed for session on {handle.target}: {e}", exc_info=True)

    async def _pump(self, handle: InteractiveHandle, stream: Optional[asyncio.StreamReader], callback: OutputCallback):
        if stream is None:
            return
        while True:
            data = await stream.read(READ_CHUNK_SIZE)
            if not data:
                break
            handle.last_output = time.monotonic()
            try:
                await callback(data)
            except Exception as e:
                logger.error(f"Output handler failed for session on {handle.target}: {e}", exc_info=True)

    async def _watch_idle(self, handle: InteractiveHandle, idle_timeout: float):
        while handle.running:
            remaining = idle_timeout - (time.monotonic() - handle.last_output)
            if remaining <= 0:
                logger.warning(f"Session on {handle.target} idle for {idle_timeout:.0f}s, killing")
                handle.kill()
                return
            await asyncio.sleep(remaining)


async def list_remote_directory(
    transport: SshTransport,
    target: str,
    path: str,
    timeout: float = 15.0,
) -> tuple[list[str], Optional[str]]:
    """
    List subdirectories of ``path`` on ``target``.

    Returns:
        (directory names without trailing slash, error message or None)
    """
    command = f"ls -1 -p {quote_remote_path(path)} 2>/dev/null | grep '/$' | head -{MAX_LISTED_DIRS}"
    result = await transport.exec(target, command, timeout=timeout)
    dirs = [line.strip().rstrip("/") for line in result.stdout.splitlines() if line.strip().rstrip("/")]
    if not result.success and not dirs:
        return [], result.stderr.strip() or f"exit code {result.exit_code}"
    return dirs, None


def join_remote_path(base: str, name: str) -> str:
    return posixpath.join(base, name)
