"""
servectl: PID registry and host process table.

The process table is the only place that touches OS processes directly.
The lifecycle controller receives one by injection, so tests can hand it a
fake table instead of real processes.
"""

from __future__ import annotations

import logging
import os
import pathlib
import subprocess
import sys
from typing import Mapping, Optional, Sequence

from servectl.errors import SignalError

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Process table
# ---------------------------------------------------------------------------
class ProcessTable:
    """Observe, signal and spawn processes."""

    def is_alive(self, pid: int) -> bool:
        raise NotImplementedError

    def send_signal(self, pid: int, sig: int) -> bool:
        """Deliver *sig*; False if the process is already gone."""
        raise NotImplementedError

    def spawn(
        self,
        argv: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[pathlib.Path] = None,
        log_path: Optional[pathlib.Path] = None,
    ) -> Optional[int]:
        raise NotImplementedError

    def exit_code(self, pid: int) -> Optional[int]:
        """Exit status of a child spawned by this table, if known."""
        return None


class OsProcessTable(ProcessTable):
    def __init__(self) -> None:
        self._children: dict[int, subprocess.Popen] = {}

    def is_alive(self, pid: int) -> bool:
        if not pid or pid <= 0:
            return False
        proc = self._children.get(pid)
        if proc is not None:
            # poll() reaps our own child, so it never lingers as a zombie
            return proc.poll() is None
        if sys.platform == "win32":
            return _windows_pid_exists(pid)
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        except (OSError, OverflowError):
            return False
        return True

    def send_signal(self, pid: int, sig: int) -> bool:
        proc = self._children.get(pid)
        if proc is not None and proc.poll() is not None:
            return False
        if sys.platform == "win32":
            result = subprocess.run(
                ["taskkill", "/PID", str(pid), "/T"], check=False, capture_output=True,
            )
            return result.returncode == 0
        try:
            os.kill(pid, sig)
        except (ProcessLookupError, OverflowError):
            return False
        except PermissionError as e:
            raise SignalError(f"Not permitted to signal PID {pid}") from e
        return True

    def spawn(self, argv, env=None, cwd=None, log_path=None):
        kwargs: dict = {}
        if sys.platform == "win32":
            kwargs["creationflags"] = getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)
        else:
            kwargs["start_new_session"] = True

        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(log_path, "ab") as out:
                proc = subprocess.Popen(
                    list(argv), cwd=cwd, env=dict(env) if env is not None else None,
                    stdin=subprocess.DEVNULL, stdout=out, stderr=subprocess.STDOUT, **kwargs,
                )
        else:
            proc = subprocess.Popen(
                list(argv), cwd=cwd, env=dict(env) if env is not None else None,
                stdin=subprocess.DEVNULL, **kwargs,
            )
        if proc.pid:
            self._children[proc.pid] = proc
        return proc.pid

    def exit_code(self, pid: int) -> Optional[int]:
        proc = self._children.get(pid)
        return None if proc is None else proc.poll()


def _windows_pid_exists(pid: int) -> bool:
    try:
        result = subprocess.run(
            ["tasklist", "/FI", f"PID eq {pid}", "/NH", "/FO", "CSV"],
            capture_output=True, text=True, timeout=5,
        )
    except (OSError, subprocess.SubprocessError):
        return False
    return f'"{pid}"' in result.stdout


# ---------------------------------------------------------------------------
# PID registry
# ---------------------------------------------------------------------------
class PidRegistry:
    """The supervised server's PID, persisted as plain decimal text.

    Absence semantics: a missing file and unparsable content both read as
    None.  The registry records intent, so a PID read back here may belong
    to a process that has since exited; callers check is_alive().
    """

    def __init__(self, path: pathlib.Path, processes: Optional[ProcessTable] = None) -> None:
        self.path = path
        self.processes = processes if processes is not None else OsProcessTable()

    def write(self, pid: int) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(str(pid), encoding="utf-8")

    def read(self) -> Optional[int]:
        try:
            return int(self.path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None

    def is_alive(self, pid: Optional[int]) -> bool:
        if pid is None or pid <= 0:
            return False
        return self.processes.is_alive(pid)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
