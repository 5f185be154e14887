"""Lifecycle controller and control channel tests."""
from __future__ import annotations

import os
import signal
import time
from collections.abc import Iterator
from pathlib import Path

import pytest
from conftest import write_blueprint

from gsmctl.blueprints import load_blueprint
from gsmctl.config import AppConfig
from gsmctl.control import write_command
from gsmctl.errors import (
    ConfigurationError,
    NotFoundError,
    NotRunningError,
    ValidationError,
)
from gsmctl.instances import Instance, InstanceManager
from gsmctl.lifecycle import LifecycleController, process_alive
from gsmctl.materializer import MaterializeResult, Materializer
from gsmctl.templates import TemplateEngine

FAKE_PID = 424242


@pytest.fixture
def instance(app_config: AppConfig, tmp_path: Path) -> Instance:
    """A standalone instance with save and stop commands."""
    blueprint = load_blueprint(
        write_blueprint(tmp_path / "bp", "demo", save_command="save", stop_command="quit")
    )
    created = InstanceManager(app_config).create(blueprint, name="demo")
    Materializer(TemplateEngine.with_overrides(None)).create_directories(
        created, MaterializeResult()
    )
    return created


@pytest.fixture
def reader(instance: Instance) -> Iterator[int]:
    """Create the control FIFO and hold a non-blocking read end open."""
    os.mkfifo(instance.control_file, 0o600)
    fd = os.open(instance.control_file, os.O_RDONLY | os.O_NONBLOCK)
    try:
        yield fd
    finally:
        os.close(fd)


def _drain(fd: int) -> list[str]:
    try:
        data = os.read(fd, 4096)
    except BlockingIOError:
        return []
    return data.decode("utf-8").splitlines()


class FakeServer:
    """Stands in for a running process that exits on a chosen trigger."""

    def __init__(self, fd: int | None = None, exit_on: str | None = "quit") -> None:
        """Track lines read from *fd* and the timeline of sleeps."""
        self.fd = fd
        self.exit_on = exit_on
        self.running = True
        self.timeline: list[str] = []

    def _pump(self) -> None:
        if self.fd is None:
            return
        for line in _drain(self.fd):
            self.timeline.append(f"read:{line}")
            if line == self.exit_on:
                self.running = False

    def alive(self, pid: int) -> bool:
        self._pump()
        return pid == FAKE_PID and self.running

    def sleep(self, seconds: float) -> None:
        self._pump()
        self.timeline.append(f"sleep:{seconds:g}")


def test_stop_saves_waits_then_sends_stop_command(instance: Instance, reader: int) -> None:
    """The save command goes first, then the save timeout, then the stop command."""
    instance.save_command_timeout = 5.0
    instance.pid_file.write_text(f"{FAKE_PID}\n", encoding="utf-8")
    server = FakeServer(reader)
    controller = LifecycleController(sleep=server.sleep, alive=server.alive)

    assert controller.is_active(instance) is True

    result = controller.stop(instance)

    assert server.timeline == ["read:save", "sleep:5", "read:quit"]
    assert result.changed is True
    assert result.active is False
    assert [item.command for item in result.writes] == ["save", "quit"]
    assert all(item.effect_observed is False for item in result.writes)
    assert controller.is_active(instance) is False
    assert not instance.pid_file.exists()


def test_stop_escalates_to_sigterm_then_sigkill(
    instance: Instance, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A process ignoring its stop command and SIGTERM is killed."""
    instance.save_command = ""
    instance.stop_command = ""
    instance.stop_command_timeout = 2.0
    instance.pid_file.write_text(str(FAKE_PID), encoding="utf-8")
    server = FakeServer()
    sent: list[int] = []

    def fake_signal(pid: int, signum: int) -> None:
        sent.append(signum)
        if signum == signal.SIGKILL:
            server.running = False

    monkeypatch.setattr(LifecycleController, "_signal", staticmethod(fake_signal))
    controller = LifecycleController(sleep=server.sleep, alive=server.alive)

    result = controller.stop(instance)

    assert sent == [signal.SIGTERM, signal.SIGKILL]
    assert result.notes == ["sent SIGTERM", "sent SIGKILL"]
    assert server.timeline == ["sleep:1", "sleep:1"]
    assert result.active is False


def test_stop_when_not_running_is_a_no_op(instance: Instance) -> None:
    """Stopping a stopped instance changes nothing."""
    server = FakeServer()
    controller = LifecycleController(sleep=server.sleep, alive=server.alive)

    result = controller.stop(instance)

    assert (result.changed, result.active, result.notes) == (False, False, ["not running"])
    assert server.timeline == []


def test_start_without_management_script_raises(instance: Instance) -> None:
    """Start refuses when the management script is missing."""
    controller = LifecycleController(sleep=lambda _: None, alive=lambda _: True)

    with pytest.raises(NotFoundError, match="manage.sh"):
        controller.start(instance)

    assert controller.is_active(instance) is False


def test_container_runtime_is_not_executed(instance: Instance) -> None:
    """Only native runtimes are driven."""
    instance.runtime = "container"

    with pytest.raises(ConfigurationError, match="container"):
        LifecycleController().start(instance)


def test_systemd_instances_delegate_to_the_unit(instance: Instance) -> None:
    """Systemd managed instances start and stop through systemctl only."""

    class FakeSystemd:
        def __init__(self) -> None:
            self.active = False
            self.calls: list[str] = []

        def is_active(self, name: str) -> bool:
            return self.active

        def start(self, name: str) -> None:
            self.calls.append(f"start {name}")
            self.active = True

        def stop(self, name: str) -> None:
            self.calls.append(f"stop {name}")
            self.active = False

    instance.lifecycle_manager = "systemd"
    instance.management_file.write_text("#!/bin/sh\n", encoding="utf-8")
    systemd = FakeSystemd()
    controller = LifecycleController(systemd, sleep=lambda _: None)  # type: ignore[arg-type]

    started = controller.start(instance)
    stopped = controller.stop(instance)

    assert started.active is True
    assert stopped.active is False
    assert stopped.writes == []
    assert systemd.calls == ["start demo", "stop demo"]


def test_systemd_instance_without_systemd_support(instance: Instance) -> None:
    """A systemd record on a host with systemd disabled is a configuration error."""
    instance.lifecycle_manager = "systemd"

    with pytest.raises(ConfigurationError, match="systemd"):
        LifecycleController().is_active(instance)


def test_save_and_input_write_to_the_channel(instance: Instance, reader: int) -> None:
    """Save and input are single line writes to the FIFO."""
    controller = LifecycleController()

    save = controller.save(instance)
    sent = controller.send_input(instance, "say hello")

    assert _drain(reader) == ["save", "say hello"]
    assert save.to_dict()["written"] is True
    assert sent.effect_observed is False


def test_input_without_fifo_is_not_running(instance: Instance) -> None:
    """Without a control FIFO the server is not running."""
    with pytest.raises(NotRunningError):
        LifecycleController().send_input(instance, "say hello")


def test_input_without_reader_is_not_running(instance: Instance) -> None:
    """A FIFO nobody reads from reports NotRunningError instead of blocking."""
    os.mkfifo(instance.control_file, 0o600)

    with pytest.raises(NotRunningError, match="No process is reading"):
        write_command(instance.control_file, "status")


def test_control_channel_rejects_multi_line_commands(instance: Instance, reader: int) -> None:
    """A command must be exactly one line."""
    with pytest.raises(ValidationError):
        write_command(instance.control_file, "save\nquit")
    with pytest.raises(ValidationError):
        write_command(instance.control_file, "")


def test_regular_file_is_not_a_channel(instance: Instance) -> None:
    """A stale regular file in place of the FIFO is treated as not running."""
    instance.control_file.write_text("", encoding="utf-8")

    with pytest.raises(NotRunningError, match="not a control FIFO"):
        write_command(instance.control_file, "save")


def test_save_without_save_command(instance: Instance) -> None:
    """Blueprints without a save command cannot be saved."""
    instance.save_command = ""

    with pytest.raises(ValidationError, match="no save command"):
        LifecycleController().save(instance)


def test_logs_returns_tail_of_log_file(instance: Instance) -> None:
    """Standalone logs come from the management script's log file."""
    controller = LifecycleController()
    log_file = controller.log_file(instance)
    log_file.write_text("".join(f"line {index}\n" for index in range(5)), encoding="utf-8")

    assert controller.logs(instance, lines=2) == "line 3\nline 4\n"


def test_logs_missing_file_raises(instance: Instance) -> None:
    """No log file means the server never ran."""
    with pytest.raises(NotFoundError):
        LifecycleController().logs(instance)


def test_process_alive_for_current_and_missing_processes() -> None:
    """The current process is alive; an unused pid is not."""
    assert process_alive(os.getpid()) is True
    assert process_alive(2**22 + 12345) is False


SERVER_SCRIPT = """#!/bin/sh
while read -r line; do
  echo "got $line"
  if [ "$line" = "quit" ]; then
    exit 0
  fi
done
"""


@pytest.mark.mutation_timeout
def test_real_start_input_and_stop(instance: Instance) -> None:
    """The generated management script runs a server that obeys its FIFO."""
    instance.executable_file = "server.sh"
    instance.executable_arguments = ""
    instance.save_command = ""
    instance.stop_command_timeout = 10.0
    Materializer(TemplateEngine.with_overrides(None)).render_management_script(instance)
    server = instance.install_dir / "server.sh"
    server.write_text(SERVER_SCRIPT, encoding="utf-8")
    server.chmod(0o755)
    controller = LifecycleController(poll_interval=0.1, start_timeout=5.0)

    started = controller.start(instance)
    try:
        assert started.changed is True
        assert started.active is True
        assert controller.is_active(instance) is True
        assert controller.start(instance).changed is False

        controller.send_input(instance, "hello")
        stopped = controller.stop(instance)
    finally:
        pid_text = instance.pid_file.read_text() if instance.pid_file.exists() else ""
        if pid_text.strip() and process_alive(int(pid_text)):
            os.kill(int(pid_text), signal.SIGKILL)

    assert stopped.active is False
    assert controller.is_active(instance) is False
    deadline = time.monotonic() + 5
    log_file = controller.log_file(instance)
    while "got quit" not in log_file.read_text(encoding="utf-8") and time.monotonic() < deadline:
        time.sleep(0.05)
    assert log_file.read_text(encoding="utf-8").splitlines() == ["got hello", "got quit"]
