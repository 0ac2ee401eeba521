"""
servectl: Lifecycle controller.

Drives start / stop / restart of the one supervised server process:
  - PID registry check before spawning (single instance)
  - Port reuse across restarts, fresh allocation as fallback
  - Bounded polling waits for process exit, port release and startup bind
  - Forwarding of SIGINT/SIGTERM to the child while the supervisor runs

Each invocation re-derives the current state from the PID registry; no
state machine object survives between invocations.
"""

from __future__ import annotations

import contextlib
import enum
import functools
import logging
import math
import os
import signal
import time
from typing import Callable, Iterator, Optional, Union

import portalocker

from servectl.config import HOME_ENV, SERVER_PORT_ENV, SupervisorConfig
from servectl.errors import (
    ExhaustedRangeError, ExitTimeout, InvalidAction, PortReleaseTimeout, SpawnError,
    StartupTimeout, SupervisorBusy,
)
from servectl.pids import OsProcessTable, PidRegistry, ProcessTable
from servectl.ports import PortAllocator, PortRegistry, is_port_available, is_port_listening

log = logging.getLogger(__name__)

SERVER_STDOUT_LOG = "server_stdout.log"

FORWARDED_SIGNALS = [signal.SIGINT, signal.SIGTERM]
if hasattr(signal, "SIGHUP"):
    FORWARDED_SIGNALS.append(signal.SIGHUP)


class State(str, enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class Action(str, enum.Enum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"


def parse_action(value: Optional[str]) -> Action:
    try:
        return Action((value or "").strip().lower())
    except ValueError:
        raise InvalidAction(value or "") from None


class LifecycleController:
    def __init__(
        self,
        config: SupervisorConfig,
        processes: Optional[ProcessTable] = None,
        probe: Optional[Callable[[int], bool]] = None,
        listening: Optional[Callable[[int], bool]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        forward_signals: bool = True,
    ) -> None:
        self.config = config
        self.processes = processes if processes is not None else OsProcessTable()
        self.probe = probe if probe is not None else functools.partial(is_port_available, host=config.host)
        self.listening = listening if listening is not None else functools.partial(
            is_port_listening, host=config.host, timeout=config.poll_interval,
        )
        self.sleep = sleep
        self.clock = clock
        self.forward_signals = forward_signals

        self.pids = PidRegistry(config.pid_file, self.processes)
        self.ports = PortRegistry(config.port_file, config.range_start, config.range_end)
        self.allocator = PortAllocator(config.range_start, config.range_end, probe=self.probe)

        self.state = self.current_state()
        self._child_pid: Optional[int] = None
        self._previous_handlers: dict = {}

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    def current_state(self) -> State:
        return State.RUNNING if self.pids.is_alive(self.pids.read()) else State.STOPPED

    def _set_state(self, state: State) -> None:
        if state is not self.state:
            log.debug("State %s -> %s", self.state.value, state.value)
        self.state = state

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def run(self, action: Union[Action, str]) -> Optional[int]:
        """Run one action under the cross-invocation lock."""
        if not isinstance(action, Action):
            action = parse_action(action)
        with self._action_lock():
            if action is Action.START:
                return self.start()
            if action is Action.STOP:
                self.stop()
                return None
            return self.restart()

    @contextlib.contextmanager
    def _action_lock(self) -> Iterator[None]:
        path = self.config.lock_file
        path.parent.mkdir(parents=True, exist_ok=True)
        lock = portalocker.Lock(
            str(path),
            mode="a",
            timeout=self.config.lock_timeout,
            check_interval=self.config.poll_interval,
            flags=portalocker.LOCK_EX | portalocker.LOCK_NB,
        )
        try:
            lock.acquire()
        except portalocker.LockException as e:
            raise SupervisorBusy(
                f"Another servectl invocation holds {path} (waited {self.config.lock_timeout:.1f}s)"
            ) from e
        try:
            yield
        finally:
            lock.release()

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------
    def start(self) -> int:
        existing = self.pids.read()
        if self.pids.is_alive(existing):
            self._set_state(State.RUNNING)
            log.info("Server already running with PID %d", existing)
            return existing

        self._set_state(State.STARTING)
        try:
            port = self._choose_port()
        except ExhaustedRangeError:
            self._set_state(State.STOPPED)
            raise
        self.ports.write(port)

        env = os.environ.copy()
        env[SERVER_PORT_ENV] = str(port)
        env[HOME_ENV] = str(self.config.root)
        command = list(self.config.server_command)
        log.info("Starting server: %s (port=%d)", " ".join(command), port)
        try:
            pid = self.processes.spawn(
                command, env=env, log_path=self.config.log_dir / SERVER_STDOUT_LOG,
            )
        except OSError as e:
            self._set_state(State.STOPPED)
            raise SpawnError(f"Failed to start server process: {e}") from e
        if not pid:
            self._set_state(State.STOPPED)
            raise SpawnError("Failed to start server process: no PID obtained")

        self.pids.write(pid)
        self._child_pid = pid
        self.install_signal_forwarding()

        try:
            self._wait_for_bind(pid, port)
        except StartupTimeout as e:
            log.warning("%s; leaving it running", e)
        except SpawnError:
            self.pids.clear()
            self._child_pid = None
            self._set_state(State.STOPPED)
            raise

        self._set_state(State.RUNNING)
        log.info("Started server on PID %d (port %d)", pid, port)
        return pid

    def stop(self) -> bool:
        """Terminate the server. Returns False if it was not running."""
        pid = self.pids.read()
        if not self.pids.is_alive(pid):
            self.pids.clear()
            self._set_state(State.STOPPED)
            log.info("Server is not running")
            return False

        self._set_state(State.STOPPING)
        if self.processes.send_signal(pid, signal.SIGTERM):
            log.info("Sent SIGTERM to PID %d", pid)
        else:
            log.info("PID %d exited before SIGTERM was delivered", pid)

        try:
            self._wait_for_exit(pid)
        except ExitTimeout as e:
            log.warning("%s; continuing", e)
        else:
            log.info("Server PID %d exited", pid)

        port = self.ports.read()
        if port is not None:
            try:
                self._wait_for_port_release(port)
            except PortReleaseTimeout as e:
                log.warning("%s; continuing", e)

        self.pids.clear()
        self._child_pid = None
        self._set_state(State.STOPPED)
        return True

    def restart(self) -> int:
        self.stop()
        if self.config.restart_delay:
            log.info("Waiting %.1fs before starting again", self.config.restart_delay)
            self.sleep(self.config.restart_delay)
        return self.start()

    # ------------------------------------------------------------------
    # Port choice
    # ------------------------------------------------------------------
    def _choose_port(self) -> int:
        persisted = self.ports.read()
        if persisted is not None:
            try:
                self._wait_for_port_release(persisted)
            except PortReleaseTimeout as e:
                log.warning("%s; allocating a fresh port", e)
            else:
                log.info("Reusing port %d", persisted)
                return persisted
        port = self.allocator.allocate()
        log.info("Allocated port %d from %d-%d", port, self.config.range_start, self.config.range_end)
        return port

    # ------------------------------------------------------------------
    # Bounded waits
    # ------------------------------------------------------------------
    def _poll(self, done: Callable[[], bool], timeout: float) -> bool:
        """Check *done* every poll interval until it holds or *timeout* passes.

        The iteration count is capped as well as the wall clock, so the loop
        terminates even if the clock does not advance.
        """
        interval = self.config.poll_interval
        max_polls = int(math.ceil(timeout / interval)) + 1
        deadline = self.clock() + timeout
        for attempt in range(max_polls):
            if done():
                return True
            if attempt == max_polls - 1 or self.clock() >= deadline:
                break
            self.sleep(interval)
        return False

    def _wait_for_exit(self, pid: int) -> None:
        timeout = self.config.exit_timeout
        if not self._poll(lambda: not self.pids.is_alive(pid), timeout):
            raise ExitTimeout(f"PID {pid} still alive after {timeout:.1f}s", timeout)

    def _wait_for_port_release(self, port: int) -> None:
        timeout = self.config.port_release_timeout
        if not self._poll(lambda: self.probe(port), timeout):
            raise PortReleaseTimeout(f"Port {port} still bound after {timeout:.1f}s", timeout)

    def _wait_for_bind(self, pid: int, port: int) -> None:
        """Wait until the child holds its port; SpawnError if it dies first."""
        exited = []

        def bound() -> bool:
            if not self.pids.is_alive(pid):
                exited.append(pid)
                return True
            return self.listening(port)

        timeout = self.config.startup_timeout
        ok = self._poll(bound, timeout)
        if exited:
            code = self.processes.exit_code(pid)
            detail = f" with code {code}" if code is not None else ""
            raise SpawnError(f"Server process {pid} exited during startup{detail}")
        if not ok:
            raise StartupTimeout(f"Server PID {pid} has not bound port {port} after {timeout:.1f}s", timeout)

    # ------------------------------------------------------------------
    # Signal forwarding
    # ------------------------------------------------------------------
    def install_signal_forwarding(self) -> None:
        if not self.forward_signals or self._previous_handlers:
            return
        for sig in FORWARDED_SIGNALS:
            try:
                self._previous_handlers[sig] = signal.signal(sig, self._forward_signal)
            except ValueError:
                # signal.signal only works in the main thread
                log.debug("Signal forwarding not installed (not main thread)")
                break

    def restore_signal_handlers(self) -> None:
        for sig, handler in self._previous_handlers.items():
            signal.signal(sig, handler)
        self._previous_handlers.clear()

    def _forward_signal(self, signum: int, frame) -> None:
        pid = self._child_pid
        log.info("Received %s", signal.Signals(signum).name)
        if self.pids.is_alive(pid):
            log.info("Forwarding SIGTERM to PID %d", pid)
            self.processes.send_signal(pid, signal.SIGTERM)
            try:
                self._wait_for_exit(pid)
            except ExitTimeout as e:
                log.warning("%s; exiting anyway", e)
        self.pids.clear()
        self._child_pid = None
        self._set_state(State.STOPPED)
        raise SystemExit(128 + signum)
