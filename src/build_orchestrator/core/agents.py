"""Agent process spawning, output watching and termination."""

import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from build_orchestrator.core.messages import AgentExit, AgentOutput
from build_orchestrator.core.sessions import Heartbeat, write_heartbeat

logger = logging.getLogger(__name__)

# Module-level registry of active Popen objects (keyed by PID)
_active_processes: dict[int, subprocess.Popen] = {}

TERM_GRACE = 2.0


@dataclass
class AgentConfig:
    command: str
    model: str

    def to_dict(self) -> dict:
        return {"command": self.command, "model": self.model}


@dataclass
class AgentProcess:
    pid: int
    output_path: Path
    popen: subprocess.Popen | None = None
    started_at: float = field(default_factory=time.time)


def is_pid_alive(pid: int | None) -> bool:
    """Check if a process is still running."""
    if not pid:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # Process exists but we can't signal it


def terminate_pid(pid: int, grace: float = TERM_GRACE):
    """SIGTERM the process group, then SIGKILL whatever survives the grace period."""
    if not is_pid_alive(pid):
        return
    try:
        os.killpg(os.getpgid(pid), signal.SIGTERM)
    except (ProcessLookupError, PermissionError):
        try:
            os.kill(pid, signal.SIGTERM)
        except OSError:
            return
    deadline = time.monotonic() + grace
    while time.monotonic() < deadline:
        proc = _active_processes.get(pid)
        if proc is not None and proc.poll() is not None:
            return
        if proc is None and not is_pid_alive(pid):
            return
        time.sleep(0.1)
    try:
        os.killpg(os.getpgid(pid), signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        try:
            os.kill(pid, signal.SIGKILL)
        except OSError:
            pass


def build_command(config: AgentConfig, prompt_path: Path) -> list[str]:
    """Expand the configured command line.

    ``{model}`` and ``{prompt_path}`` are substituted; when the command has no
    ``{prompt_path}`` placeholder the prompt text is appended as the final
    argument.
    """
    args = [
        part.replace("{model}", config.model).replace("{prompt_path}", str(prompt_path))
        for part in shlex.split(config.command)
    ]
    if "{prompt_path}" not in config.command:
        args.append(Path(prompt_path).read_text(encoding="utf-8"))
    return args


def _read_new(path: Path, offset: int) -> tuple[str, int]:
    try:
        with path.open("rb") as f:
            f.seek(offset)
            data = f.read()
    except FileNotFoundError:
        return "", offset
    return data.decode("utf-8", errors="replace"), offset + len(data)


class AgentSpawner:
    """Starts agent processes and turns their output and exit into queue messages."""

    def __init__(self, heartbeat_interval: float = 10.0, poll_interval: float = 0.5):
        self.heartbeat_interval = heartbeat_interval
        self.poll_interval = poll_interval

    def spawn(
        self,
        task_id: str,
        phase: str,
        attempt: int,
        config: AgentConfig,
        prompt_path: Path,
        cwd: str | Path,
        output_path: Path,
        post: Callable[[object], None],
    ) -> AgentProcess:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        cmd = build_command(config, prompt_path)
        with open(output_path, "w") as f:
            proc = subprocess.Popen(
                cmd,
                cwd=cwd,
                stdout=f,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                start_new_session=True,
            )
        _active_processes[proc.pid] = proc
        handle = AgentProcess(pid=proc.pid, output_path=output_path, popen=proc)
        logger.info("Spawned %s agent for %s (attempt %d, PID %d)", phase, task_id, attempt, proc.pid)
        self._watch(handle, task_id, phase, attempt, Path(cwd), post)
        return handle

    def reattach(
        self,
        task_id: str,
        phase: str,
        attempt: int,
        pid: int,
        cwd: str | Path,
        output_path: Path,
        post: Callable[[object], None],
    ) -> AgentProcess:
        """Watch an agent that survived a restart of this process."""
        handle = AgentProcess(pid=pid, output_path=output_path)
        logger.info("Reattached to %s agent for %s (PID %d)", phase, task_id, pid)
        self._watch(handle, task_id, phase, attempt, Path(cwd), post)
        return handle

    def kill(self, handle: AgentProcess | None):
        """Best-effort termination; never raises."""
        if handle is None:
            return
        try:
            terminate_pid(handle.pid)
        except Exception:
            logger.exception("Failed to kill agent PID %s", handle.pid)

    def run_merger_agent_and_wait(
        self,
        config: AgentConfig,
        prompt: str,
        cwd: str | Path,
        work_dir: Path,
        timeout: float,
    ) -> bool:
        """Run the conflict-resolution agent to completion. True when it exits cleanly."""
        work_dir.mkdir(parents=True, exist_ok=True)
        prompt_path = work_dir / "merge-prompt.md"
        prompt_path.write_text(prompt, encoding="utf-8")
        with open(work_dir / "merge-output.log", "w") as f:
            try:
                proc = subprocess.Popen(
                    build_command(config, prompt_path),
                    cwd=cwd,
                    stdout=f,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    start_new_session=True,
                )
            except OSError as e:
                logger.warning("Could not start merger agent: %s", e)
                return False
        try:
            code = proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning("Merger agent timed out after %.0fs", timeout)
            terminate_pid(proc.pid)
            proc.wait()
            return False
        return code == 0

    # ── Watching ────────────────────────────────────────────────────────────

    def _watch(self, handle, task_id, phase, attempt, cwd: Path, post):
        thread = threading.Thread(
            target=self._watch_loop,
            args=(handle, task_id, phase, attempt, cwd, post),
            name=f"agent-watch-{task_id}",
            daemon=True,
        )
        thread.start()

    def _watch_loop(self, handle: AgentProcess, task_id, phase, attempt, cwd: Path, post):
        offset = 0
        last_output = time.time()
        last_heartbeat = 0.0
        while True:
            chunk, offset = _read_new(handle.output_path, offset)
            if chunk:
                last_output = time.time()
                post(AgentOutput(task_id=task_id, attempt=attempt, text=chunk))

            finished, exit_code = self._poll(handle)
            if finished:
                chunk, offset = _read_new(handle.output_path, offset)
                if chunk:
                    post(AgentOutput(task_id=task_id, attempt=attempt, text=chunk))
                _active_processes.pop(handle.pid, None)
                logger.info("%s agent for %s exited (code=%s)", phase, task_id, exit_code)
                post(AgentExit(task_id=task_id, phase=phase, attempt=attempt, exit_code=exit_code))
                return

            now = time.time()
            if now - last_heartbeat >= self.heartbeat_interval:
                try:
                    write_heartbeat(cwd, task_id, Heartbeat(handle.pid, last_output, now))
                except OSError as e:
                    logger.warning("Could not write heartbeat for %s: %s", task_id, e)
                last_heartbeat = now
            time.sleep(self.poll_interval)

    def _poll(self, handle: AgentProcess) -> tuple[bool, int | None]:
        if handle.popen is not None:
            code = handle.popen.poll()
            return code is not None, code
        # Not our child; the exit status is unknowable
        return not is_pid_alive(handle.pid), None
