"""
Tests for the lifecycle controller: start / stop / restart, port reuse,
bounded waits, the action lock and signal forwarding.

Most tests run against FakeWorld, an in-memory process table that also
tracks which ports its processes hold. The last section drives real child
processes on POSIX.

Run: pytest tests/test_lifecycle.py -v
"""
import logging
import os
import signal
import socket
import sys

import portalocker
import pytest

from servectl.config import SupervisorConfig
from servectl.errors import (
    ExhaustedRangeError, InvalidAction, SpawnError, SupervisorBusy,
)
from servectl.lifecycle import Action, LifecycleController, State, parse_action
from servectl.pids import ProcessTable


class FakeWorld(ProcessTable):
    """Process table plus port table; spawned servers bind the port they are given."""

    def __init__(self):
        self.alive = set()
        self.bound = set()
        self.stubborn = set()
        self.port_of = {}
        self.spawned = []
        self.signals = []
        self.bind_attempts = []
        self.next_pid = 5000
        self.spawn_result = "ok"  # "ok" | "no-pid" | "oserror" | "dies" | "no-bind"

    def is_alive(self, pid):
        return pid in self.alive

    def send_signal(self, pid, sig):
        self.signals.append((pid, sig))
        if pid not in self.alive:
            return False
        if pid not in self.stubborn:
            self.alive.discard(pid)
            self.bound.discard(self.port_of.pop(pid, None))
        return True

    def spawn(self, argv, env=None, cwd=None, log_path=None):
        if self.spawn_result == "oserror":
            raise FileNotFoundError(argv[0])
        if self.spawn_result == "no-pid":
            return None
        pid = self.next_pid
        self.next_pid += 1
        self.spawned.append((list(argv), dict(env or {})))
        if self.spawn_result == "dies":
            return pid
        self.alive.add(pid)
        if self.spawn_result != "no-bind":
            port = int(env["SERVECTL_SERVER_PORT"])
            self.bound.add(port)
            self.port_of[pid] = port
        return pid

    def exit_code(self, pid):
        return 3 if self.spawn_result == "dies" else None

    def probe(self, port):
        self.bind_attempts.append((port, len(self.spawned)))
        return port not in self.bound

    def listening(self, port):
        return port in self.bound


def make_config(tmp_path, **overrides):
    values = dict(
        root=tmp_path,
        range_start=41000,
        range_end=41002,
        exit_timeout=0.2,
        port_release_timeout=0.2,
        startup_timeout=0.2,
        poll_interval=0.01,
        restart_delay=0.0,
        lock_timeout=0.1,
        server_command=("fake-server", "--serve"),
    )
    values.update(overrides)
    return SupervisorConfig(**values)


@pytest.fixture
def world():
    return FakeWorld()


@pytest.fixture
def make_controller(tmp_path, world):
    def _make(**overrides):
        return LifecycleController(
            make_config(tmp_path, **overrides),
            processes=world,
            probe=world.probe,
            listening=world.listening,
            forward_signals=False,
        )
    return _make


@pytest.fixture
def controller(make_controller):
    return make_controller()


# ── Actions ──────────────────────────────────────────────────────

def test_parse_action_accepts_known_actions_case_insensitively():
    assert parse_action("start") is Action.START
    assert parse_action(" STOP ") is Action.STOP
    assert parse_action("Restart") is Action.RESTART


@pytest.mark.parametrize("value", ["", None, "status", "kill"])
def test_parse_action_rejects_everything_else(value):
    with pytest.raises(InvalidAction):
        parse_action(value)


def test_run_rejects_invalid_action(controller, world):
    with pytest.raises(InvalidAction):
        controller.run("reload")
    assert world.spawned == []


# ── start ────────────────────────────────────────────────────────

def test_start_spawns_and_records_pid_and_port(controller, world, tmp_path):
    pid = controller.start()

    assert pid == 5000
    assert controller.state is State.RUNNING
    assert controller.pids.read() == pid
    assert controller.ports.read() == 41000
    argv, env = world.spawned[0]
    assert argv == ["fake-server", "--serve"]
    assert env["SERVECTL_SERVER_PORT"] == "41000"
    assert env["SERVECTL_HOME"] == str(tmp_path)


def test_start_is_idempotent(controller, world, caplog):
    first = controller.start()
    with caplog.at_level(logging.INFO, logger="servectl.lifecycle"):
        second = controller.start()

    assert first == second
    assert len(world.spawned) == 1
    assert sum("already running" in r.message for r in caplog.records) == 1


def test_fresh_controller_derives_running_state(controller, make_controller):
    controller.start()
    assert make_controller().current_state() is State.RUNNING


def test_start_replaces_stale_pid(controller, world):
    controller.pids.write(4242)  # not alive in the fake table
    pid = controller.start()
    assert pid != 4242
    assert controller.pids.read() == pid


def test_start_reuses_persisted_port(controller, world):
    controller.ports.write(41001)
    controller.start()
    assert world.spawned[0][1]["SERVECTL_SERVER_PORT"] == "41001"


def test_out_of_range_persisted_port_triggers_fresh_allocation(make_controller, world):
    controller = make_controller(range_end=41999)
    controller.config.port_file.parent.mkdir(parents=True)
    controller.config.port_file.write_text("99999")
    calls = []
    allocate = controller.allocator.allocate
    controller.allocator.allocate = lambda: calls.append(1) or allocate()

    controller.start()

    assert calls == [1]
    assert controller.ports.read() == 41000


def test_persisted_port_held_elsewhere_falls_back_to_allocation(controller, world, caplog):
    controller.ports.write(41000)
    world.bound.add(41000)  # some unrelated process
    with caplog.at_level(logging.WARNING, logger="servectl.lifecycle"):
        controller.start()

    assert controller.ports.read() == 41001
    assert any("still bound" in r.message for r in caplog.records)


def test_exhausted_range_is_fatal_and_spawns_nothing(controller, world):
    world.bound.update({41000, 41001, 41002})
    with pytest.raises(ExhaustedRangeError):
        controller.start()
    assert world.spawned == []
    assert controller.pids.read() is None
    assert controller.state is State.STOPPED


@pytest.mark.parametrize("result", ["no-pid", "oserror"])
def test_spawn_failure_writes_no_pid(controller, world, result):
    world.spawn_result = result
    with pytest.raises(SpawnError):
        controller.start()
    assert not controller.config.pid_file.exists()
    assert controller.state is State.STOPPED


def test_child_dying_during_startup_is_a_spawn_error(controller, world):
    world.spawn_result = "dies"
    with pytest.raises(SpawnError, match="code 3"):
        controller.start()
    assert not controller.config.pid_file.exists()


def test_startup_wait_never_binds_the_child_port(controller, world):
    controller.start()
    # every bind attempt happened while choosing the port, before the spawn
    assert world.bind_attempts
    assert all(spawned == 0 for _, spawned in world.bind_attempts)


def test_startup_timeout_is_soft(controller, world, caplog):
    world.spawn_result = "no-bind"
    with caplog.at_level(logging.WARNING, logger="servectl.lifecycle"):
        pid = controller.start()
    assert controller.pids.read() == pid
    assert controller.state is State.RUNNING
    assert any("has not bound port" in r.message for r in caplog.records)


# ── stop ─────────────────────────────────────────────────────────

def test_stop_when_stopped_clears_stale_pid(controller, world):
    controller.pids.write(4242)
    assert controller.stop() is False
    assert not controller.config.pid_file.exists()
    assert world.signals == []


def test_stop_when_never_started(controller):
    assert controller.stop() is False
    assert not controller.config.pid_file.exists()


def test_stop_clears_pid_too_large_for_the_os(tmp_path):
    controller = LifecycleController(make_config(tmp_path), forward_signals=False)
    controller.pids.write(99999999999999999999)

    assert controller.stop() is False
    assert not controller.config.pid_file.exists()


def test_pid_too_large_for_the_os_derives_stopped_state(tmp_path):
    LifecycleController(make_config(tmp_path), forward_signals=False).pids.write(99999999999999999999)
    controller = LifecycleController(make_config(tmp_path), forward_signals=False)
    assert controller.state is State.STOPPED


def test_stop_terminates_and_releases_port(controller, world):
    pid = controller.start()
    assert controller.stop() is True

    assert world.signals == [(pid, signal.SIGTERM)]
    assert pid not in world.alive
    assert world.probe(41000)
    assert not controller.config.pid_file.exists()
    assert controller.state is State.STOPPED


def test_stop_with_stubborn_child_warns_and_still_clears(controller, world, caplog):
    pid = controller.start()
    world.stubborn.add(pid)

    with caplog.at_level(logging.WARNING, logger="servectl.lifecycle"):
        controller.run("stop")

    warnings = [r.message for r in caplog.records if r.levelno == logging.WARNING]
    assert any(f"PID {pid} still alive" in m for m in warnings)
    assert any("Port 41000 still bound" in m for m in warnings)
    assert not controller.config.pid_file.exists()


def test_bounded_wait_terminates_without_a_moving_clock(make_controller, world):
    sleeps = []
    controller = make_controller()
    controller.clock = lambda: 0.0
    controller.sleep = sleeps.append
    pid = controller.start()
    world.stubborn.add(pid)
    sleeps.clear()

    controller.stop()

    # exit wait and port-release wait, each capped at timeout / interval polls
    assert 0 < len(sleeps) <= 2 * 21


# ── restart ──────────────────────────────────────────────────────

def test_restart_on_stopped_instance_just_starts(controller, world):
    pid = controller.run("restart")
    assert world.signals == []
    assert len(world.spawned) == 1
    assert controller.pids.read() == pid


def test_restart_replaces_process_and_reuses_port(make_controller, world):
    sleeps = []
    controller = make_controller(restart_delay=0.5)
    controller.sleep = lambda s: sleeps.append(s)
    old = controller.start()

    new = controller.restart()

    assert new != old
    assert (old, signal.SIGTERM) in world.signals
    assert world.alive == {new}
    assert [env["SERVECTL_SERVER_PORT"] for _, env in world.spawned] == ["41000", "41000"]
    assert 0.5 in sleeps


# ── Action lock ──────────────────────────────────────────────────

def test_run_fails_when_lock_is_held(controller, world):
    lock_file = controller.config.lock_file
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    with portalocker.Lock(str(lock_file), mode="a", timeout=0):
        with pytest.raises(SupervisorBusy):
            controller.run("start")
    assert world.spawned == []


def test_run_releases_lock_after_action(controller, world):
    controller.run("start")
    controller.run("stop")
    assert world.alive == set()


# ── Signal forwarding ────────────────────────────────────────────

def test_forwarded_signal_terminates_child_and_exits(make_controller, world):
    controller = make_controller()
    controller.forward_signals = True
    original = signal.getsignal(signal.SIGTERM)
    try:
        pid = controller.start()
        assert signal.getsignal(signal.SIGTERM) == controller._forward_signal

        with pytest.raises(SystemExit) as exc:
            controller._forward_signal(signal.SIGTERM, None)

        assert exc.value.code == 128 + signal.SIGTERM
        assert (pid, signal.SIGTERM) in world.signals
        assert not controller.config.pid_file.exists()
    finally:
        controller.restore_signal_handlers()
    assert signal.getsignal(signal.SIGTERM) == original


def test_signal_forwarding_disabled(controller):
    original = signal.getsignal(signal.SIGINT)
    controller.start()
    assert signal.getsignal(signal.SIGINT) == original


# ── Real processes ───────────────────────────────────────────────

_LISTEN_AND_WAIT = (
    "import os, socket, time\n"
    "s = socket.socket()\n"
    "s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)\n"
    "s.bind(('0.0.0.0', int(os.environ['SERVECTL_SERVER_PORT'])))\n"
    "s.listen(5)\n"
    "time.sleep(60)\n"
)


def _free_port():
    with socket.socket() as s:
        s.bind(("0.0.0.0", 0))
        return s.getsockname()[1]


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
def test_real_child_start_stop(tmp_path):
    port = _free_port()
    config = SupervisorConfig(
        root=tmp_path,
        range_start=port,
        range_end=min(port + 20, 65535),
        exit_timeout=5.0,
        port_release_timeout=5.0,
        startup_timeout=10.0,
        poll_interval=0.05,
        restart_delay=0.0,
        lock_timeout=1.0,
        server_command=(sys.executable, "-c", _LISTEN_AND_WAIT),
    )
    controller = LifecycleController(config, forward_signals=False)
    pid = None
    try:
        pid = controller.run("start")
        chosen = controller.ports.read()
        assert controller.pids.is_alive(pid)
        assert chosen is not None

        controller.run("stop")
        assert not controller.pids.is_alive(pid)
        assert not config.pid_file.exists()
        assert (config.log_dir / "server_stdout.log").exists()
    finally:
        if pid and controller.pids.is_alive(pid):
            os.kill(pid, signal.SIGKILL)
