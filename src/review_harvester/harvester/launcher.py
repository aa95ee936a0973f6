"""Start, probe and stop the external scraping worker.

The worker is an opaque command line program.  It is invoked as::

    <worker_command...> <target_url> <drop_dir> <prefix>

and communicates only by writing batch artifacts into ``drop_dir``.  Its
stdout and stderr are appended to ``drop_dir/worker.log``.

Each worker is started in its own session so that SIGTERM / SIGKILL reach the
whole process group (the worker typically drives a headless browser that
would otherwise be orphaned).
"""

from __future__ import annotations

import logging
import os
import shlex
import signal
import socket
import subprocess
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from review_harvester.core.exceptions import WorkerLaunchError
from review_harvester.harvester.config import (
    META_ARTIFACT_NAME,
    PAGE_ARTIFACT_GLOB,
    WORKER_LOG_NAME,
)

logger = logging.getLogger(__name__)

_PID_POLL_INTERVAL = 0.1


@dataclass
class WorkerHandle:
    """A launched worker.

    Attributes:
        pid: Process id (also the process group id).
        work_dir: Drop directory the worker writes artifacts into.
        log_path: File receiving the worker's output.
        command: Full argv the worker was started with.
        host: Host name of the machine the worker runs on.
        process: The ``Popen`` object when this process launched the worker.
    """

    pid: int
    work_dir: Path
    log_path: Path
    command: list[str] = field(default_factory=list)
    host: str = field(default_factory=socket.gethostname)
    process: Optional[subprocess.Popen] = field(default=None, repr=False, compare=False)


def pid_is_alive(pid: int) -> bool:
    """Return True when a process with *pid* exists (signal 0 probe)."""
    try:
        os.kill(int(pid), 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else.
        return True
    return True


def _signal_group(pid: int, signum: int) -> None:
    """Deliver *signum* to the worker's process group, falling back to the pid."""
    try:
        os.killpg(int(pid), signum)
    except ProcessLookupError:
        return
    except PermissionError:
        try:
            os.kill(int(pid), signum)
        except ProcessLookupError:
            return


class WorkerLauncher:
    """Launch and control scraping worker processes.

    Args:
        command: Worker command line (string or argv).  Defaults to
            ``settings.worker_command``.
        prefix: Artifact prefix passed to the worker.  Defaults to
            ``settings.batch_prefix``.
        drop_root: Parent of the per-target drop directories.
        terminate_grace: Seconds between SIGTERM and SIGKILL.

    Attributes:
        hostname: This machine's host name, stamped on every launched worker.
    """

    def __init__(
        self,
        command: str | Sequence[str] | None = None,
        prefix: str | None = None,
        drop_root: str | Path | None = None,
        terminate_grace: float | None = None,
    ) -> None:
        if command is None or prefix is None or drop_root is None or terminate_grace is None:
            from review_harvester.config.settings import get_settings  # noqa: PLC0415

            settings = get_settings()
            command = command if command is not None else settings.worker_command
            prefix = prefix if prefix is not None else settings.batch_prefix
            drop_root = drop_root if drop_root is not None else settings.drop_root
            if terminate_grace is None:
                terminate_grace = settings.terminate_grace_seconds

        self.command: list[str] = shlex.split(command) if isinstance(command, str) else list(command)
        self.prefix = prefix
        self.drop_root = Path(drop_root)
        self.terminate_grace = float(terminate_grace)
        self.hostname = socket.gethostname()

    # ------------------------------------------------------------------
    # Drop directories
    # ------------------------------------------------------------------

    def drop_dir_for(self, target_id: str) -> Path:
        """Return the drop directory of *target_id* (not created)."""
        return self.drop_root / target_id

    def clear_artifacts(self, work_dir: Path) -> int:
        """Delete page and meta artifacts left by a previous run.

        Stored reviews are untouched; only files the next worker would
        overwrite are removed, so a fresh scan cannot pick up stale batches.
        """
        removed = 0
        stale = list(work_dir.glob(PAGE_ARTIFACT_GLOB.format(prefix=self.prefix)))
        stale.append(work_dir / META_ARTIFACT_NAME.format(prefix=self.prefix))
        for path in stale:
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                continue
        if removed:
            logger.info("launcher: removed %d stale artifacts from %s", removed, work_dir)
        return removed

    # ------------------------------------------------------------------
    # Launch
    # ------------------------------------------------------------------

    def launch(self, target_url: str, work_dir: str | Path) -> WorkerHandle:
        """Start a worker for *target_url* writing into *work_dir*.

        Raises:
            WorkerLaunchError: If the drop directory cannot be prepared or the
                process cannot be spawned.
        """
        work_dir = Path(work_dir)
        cmd = [*self.command, target_url, str(work_dir), self.prefix]
        if not self.command:
            raise WorkerLaunchError("No worker command configured", command=cmd)

        try:
            work_dir.mkdir(parents=True, exist_ok=True)
            self.clear_artifacts(work_dir)
        except OSError as exc:
            raise WorkerLaunchError(f"Cannot prepare drop directory {work_dir}: {exc}", command=cmd) from exc

        log_path = work_dir / WORKER_LOG_NAME
        try:
            with open(log_path, "a", encoding="utf-8") as log_file:
                log_file.write(f"# started {time.strftime('%Y-%m-%d %H:%M:%S')}\n")
                log_file.write(f"# cmd: {shlex.join(cmd)}\n")
                log_file.flush()
                proc = subprocess.Popen(
                    cmd,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    start_new_session=True,
                )
        except OSError as exc:
            raise WorkerLaunchError(f"Cannot start worker: {exc}", command=cmd) from exc

        logger.info("launcher: started worker pid=%d for %s", proc.pid, target_url)
        return WorkerHandle(
            pid=proc.pid,
            work_dir=work_dir,
            log_path=log_path,
            command=cmd,
            host=self.hostname,
            process=proc,
        )

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    def is_alive(self, handle: WorkerHandle) -> bool:
        """Non-blocking liveness check."""
        if handle.process is not None:
            return handle.process.poll() is None
        return pid_is_alive(handle.pid)

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def terminate(self, handle: WorkerHandle) -> None:
        """Stop the worker: SIGTERM, wait the grace interval, then SIGKILL.

        Safe to call on a worker that already exited, and safe to call twice.
        """
        proc = handle.process
        if proc is None:
            self.terminate_pid(handle.pid)
            return
        if proc.poll() is not None:
            return

        logger.info("launcher: terminating worker pid=%d", handle.pid)
        _signal_group(handle.pid, signal.SIGTERM)
        try:
            proc.wait(timeout=self.terminate_grace)
            return
        except subprocess.TimeoutExpired:
            pass

        logger.warning("launcher: worker pid=%d ignored SIGTERM; killing", handle.pid)
        _signal_group(handle.pid, signal.SIGKILL)
        try:
            proc.wait(timeout=self.terminate_grace)
        except subprocess.TimeoutExpired:
            logger.error("launcher: worker pid=%d survived SIGKILL", handle.pid)

    def terminate_pid(self, pid: int | None) -> None:
        """Stop a worker known only by pid (started by another process)."""
        if not pid or not pid_is_alive(pid):
            return

        logger.info("launcher: terminating worker pid=%d", pid)
        _signal_group(pid, signal.SIGTERM)
        deadline = time.monotonic() + self.terminate_grace
        while time.monotonic() < deadline:
            if not pid_is_alive(pid):
                return
            time.sleep(_PID_POLL_INTERVAL)

        if pid_is_alive(pid):
            logger.warning("launcher: worker pid=%d ignored SIGTERM; killing", pid)
            _signal_group(pid, signal.SIGKILL)

    def terminate_worker(self, pid: int | None, host: str | None) -> bool:
        """Stop a worker recorded as running on *host*.

        Pids are only meaningful on the machine that started the worker, so
        nothing is signalled when *host* is unknown or names another machine;
        that worker's own supervisor stops it on its next poll.

        Returns:
            True when the worker was signalled from here.
        """
        if not pid:
            return False
        if host != self.hostname:
            logger.info(
                "launcher: worker pid=%d runs on %s, not %s; leaving it to its supervisor",
                pid,
                host or "an unknown host",
                self.hostname,
            )
            return False
        self.terminate_pid(pid)
        return True
