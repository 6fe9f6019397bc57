"""Tests for agent processes: command expansion, watching, heartbeats and termination."""

import queue
import subprocess
import sys
import tempfile
from pathlib import Path

import pytest

from build_orchestrator.core import agents as agents_mod
from build_orchestrator.core.agents import AgentConfig, AgentSpawner, build_command, is_pid_alive, terminate_pid
from build_orchestrator.core.messages import AgentExit, AgentOutput
from build_orchestrator.core.sessions import read_heartbeat


@pytest.fixture
def workdir():
    with tempfile.TemporaryDirectory() as tmp:
        prompt = Path(tmp) / "prompt.md"
        prompt.write_text("Do the thing")
        yield Path(tmp), prompt


@pytest.fixture
def spawner():
    return AgentSpawner(heartbeat_interval=0.05, poll_interval=0.05)


def _script(code: str) -> AgentConfig:
    return AgentConfig(command=f"{sys.executable} -c {code!r} {{prompt_path}}", model="sonnet")


def _drain(messages: queue.Queue, timeout: float = 10.0) -> list:
    """Collect messages up to and including the agent's exit."""
    seen = []
    while True:
        msg = messages.get(timeout=timeout)
        seen.append(msg)
        if isinstance(msg, AgentExit):
            return seen


class TestBuildCommand:
    def test_placeholders_expanded(self, workdir):
        _, prompt = workdir
        config = AgentConfig(command="agent --model {model} --prompt-file {prompt_path}", model="opus")
        assert build_command(config, prompt) == ["agent", "--model", "opus", "--prompt-file", str(prompt)]

    def test_prompt_text_appended_without_placeholder(self, workdir):
        _, prompt = workdir
        config = AgentConfig(command="claude -p --model {model}", model="sonnet")
        assert build_command(config, prompt) == ["claude", "-p", "--model", "sonnet", "Do the thing"]


class TestSpawn:
    def test_output_and_exit_are_posted(self, spawner, workdir):
        tmp, prompt = workdir
        messages = queue.Queue()
        config = _script("import sys; print(open(sys.argv[1]).read()); sys.exit(3)")

        handle = spawner.spawn("login", "coding", 2, config, prompt, tmp, tmp / "out.log", messages.put)
        seen = _drain(messages)

        output = "".join(m.text for m in seen if isinstance(m, AgentOutput))
        assert "Do the thing" in output
        assert all(m.attempt == 2 for m in seen)
        assert seen[-1] == AgentExit(task_id="login", phase="coding", attempt=2, exit_code=3)
        assert handle.pid not in agents_mod._active_processes

    def test_heartbeat_written_while_running(self, spawner, workdir):
        tmp, prompt = workdir
        messages = queue.Queue()
        config = _script("import time; time.sleep(0.5)")

        handle = spawner.spawn("login", "coding", 1, config, prompt, tmp, tmp / "out.log", messages.put)
        _drain(messages)

        heartbeat = read_heartbeat(tmp, "login")
        assert heartbeat is not None
        assert heartbeat.pid == handle.pid

    def test_kill_ends_agent(self, spawner, workdir):
        tmp, prompt = workdir
        messages = queue.Queue()
        config = _script("import time; time.sleep(30)")

        handle = spawner.spawn("login", "coding", 1, config, prompt, tmp, tmp / "out.log", messages.put)
        spawner.kill(handle)

        exit_msg = _drain(messages)[-1]
        assert exit_msg.exit_code != 0
        assert not is_pid_alive(handle.pid)

    def test_kill_none_is_noop(self, spawner):
        spawner.kill(None)

    def test_reattached_agent_exit_code_is_unknown(self, spawner, workdir):
        tmp, _ = workdir
        messages = queue.Queue()
        proc = subprocess.Popen(["sleep", "0.3"])

        spawner.reattach("login", "coding", 1, proc.pid, tmp, tmp / "out.log", messages.put)
        proc.wait()

        assert _drain(messages)[-1].exit_code is None


class TestMergerAgent:
    def test_clean_exit_is_success(self, spawner, workdir):
        tmp, _ = workdir
        assert spawner.run_merger_agent_and_wait(_script("pass"), "merge it", tmp, tmp / "merge", 10) is True
        assert (tmp / "merge" / "merge-prompt.md").read_text() == "merge it"

    def test_nonzero_exit_is_failure(self, spawner, workdir):
        tmp, _ = workdir
        config = _script("import sys; sys.exit(1)")
        assert spawner.run_merger_agent_and_wait(config, "merge it", tmp, tmp / "merge", 10) is False

    def test_timeout_is_failure(self, spawner, workdir):
        tmp, _ = workdir
        config = _script("import time; time.sleep(30)")
        assert spawner.run_merger_agent_and_wait(config, "merge it", tmp, tmp / "merge", 0.2) is False

    def test_missing_binary_is_failure(self, spawner, workdir):
        tmp, _ = workdir
        config = AgentConfig(command="/nonexistent/agent {prompt_path}", model="sonnet")
        assert spawner.run_merger_agent_and_wait(config, "merge it", tmp, tmp / "merge", 10) is False


class TestTerminate:
    def test_terminate_dead_pid_is_noop(self):
        proc = subprocess.Popen(["true"])
        proc.wait()
        terminate_pid(proc.pid)
        assert not is_pid_alive(proc.pid)

    def test_terminate_process_group(self):
        proc = subprocess.Popen(["sleep", "30"], start_new_session=True)
        try:
            terminate_pid(proc.pid)
            assert proc.wait(timeout=5) != 0
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()

    def test_is_pid_alive_for_empty_pid(self):
        assert is_pid_alive(None) is False
        assert is_pid_alive(0) is False
