"""Tests for worker process control.

These start real child processes through ``sys.executable`` so that process
groups, signals and exit detection behave as they do in production.
"""

from __future__ import annotations

import os
import sys
import time
from pathlib import Path

import pytest

from review_harvester.core.exceptions import WorkerLaunchError
from review_harvester.harvester.launcher import WorkerLauncher, pid_is_alive
from tests.factories import WorkerReviewFactory, write_meta, write_page

_SLEEPER = [sys.executable, "-c", "import time; time.sleep(60)"]

# Writes one page artifact into the drop directory it is given, then exits.
_WRITER = [
    sys.executable,
    "-c",
    (
        "import json, pathlib, sys; "
        "d = pathlib.Path(sys.argv[2]); "
        "(d / (sys.argv[3] + '_page_1.json')).write_text(json.dumps([{'id': '1', 'text': sys.argv[1]}])); "
        "print('done')"
    ),
]


def _wait_until(predicate, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


@pytest.fixture
def launcher(drop_root: Path) -> WorkerLauncher:
    return WorkerLauncher(command=_SLEEPER, prefix="batch", drop_root=drop_root, terminate_grace=2.0)


class TestLaunch:
    def test_worker_receives_url_dir_and_prefix(self, drop_root: Path) -> None:
        launcher = WorkerLauncher(command=_WRITER, prefix="batch", drop_root=drop_root, terminate_grace=1.0)
        work_dir = launcher.drop_dir_for("42")

        handle = launcher.launch("https://yandex.ru/maps/org/x/42/", work_dir)

        assert _wait_until(lambda: not launcher.is_alive(handle))
        assert (work_dir / "batch_page_1.json").exists()
        assert handle.command[-3:] == ["https://yandex.ru/maps/org/x/42/", str(work_dir), "batch"]
        log = handle.log_path.read_text(encoding="utf-8")
        assert "# cmd:" in log
        assert "done" in log

    def test_stale_artifacts_are_cleared_before_launch(self, launcher: WorkerLauncher) -> None:
        work_dir = launcher.drop_dir_for("42")
        write_page(work_dir, 1, WorkerReviewFactory.build_batch(2))
        write_meta(work_dir, is_complete=True)
        (work_dir / "notes.txt").write_text("keep me", encoding="utf-8")

        handle = launcher.launch("https://yandex.ru/maps/org/x/42/", work_dir)
        try:
            assert not (work_dir / "batch_page_1.json").exists()
            assert not (work_dir / "batch_meta.json").exists()
            assert (work_dir / "notes.txt").exists()
        finally:
            launcher.terminate(handle)

    def test_missing_executable_raises_launch_error(self, drop_root: Path) -> None:
        launcher = WorkerLauncher(
            command="/nonexistent/worker-binary",
            prefix="batch",
            drop_root=drop_root,
            terminate_grace=1.0,
        )

        with pytest.raises(WorkerLaunchError) as exc_info:
            launcher.launch("https://yandex.ru/maps/org/x/42/", launcher.drop_dir_for("42"))

        assert exc_info.value.command[0] == "/nonexistent/worker-binary"

    def test_empty_command_raises_launch_error(self, drop_root: Path) -> None:
        launcher = WorkerLauncher(command="", prefix="batch", drop_root=drop_root, terminate_grace=1.0)

        with pytest.raises(WorkerLaunchError):
            launcher.launch("https://yandex.ru/maps/org/x/42/", launcher.drop_dir_for("42"))


class TestTerminate:
    def test_terminate_stops_running_worker(self, launcher: WorkerLauncher) -> None:
        handle = launcher.launch("https://yandex.ru/maps/org/x/42/", launcher.drop_dir_for("42"))
        assert launcher.is_alive(handle)

        launcher.terminate(handle)

        assert not launcher.is_alive(handle)

    def test_terminate_is_idempotent(self, launcher: WorkerLauncher) -> None:
        handle = launcher.launch("https://yandex.ru/maps/org/x/42/", launcher.drop_dir_for("42"))

        launcher.terminate(handle)
        launcher.terminate(handle)

        assert handle.process.returncode is not None

    def test_terminate_pid_stops_foreign_worker(self, launcher: WorkerLauncher) -> None:
        handle = launcher.launch("https://yandex.ru/maps/org/x/42/", launcher.drop_dir_for("42"))

        launcher.terminate_pid(handle.pid)
        handle.process.wait(timeout=5)

        assert not launcher.is_alive(handle)

    def test_worker_recorded_on_another_host_is_not_signalled(self, launcher: WorkerLauncher) -> None:
        handle = launcher.launch("https://yandex.ru/maps/org/x/42/", launcher.drop_dir_for("42"))
        try:
            assert handle.host == launcher.hostname

            assert launcher.terminate_worker(handle.pid, "other-host") is False
            assert launcher.terminate_worker(handle.pid, None) is False

            assert launcher.is_alive(handle)
        finally:
            launcher.terminate(handle)

    def test_worker_recorded_on_this_host_is_signalled(self, launcher: WorkerLauncher) -> None:
        handle = launcher.launch("https://yandex.ru/maps/org/x/42/", launcher.drop_dir_for("42"))

        assert launcher.terminate_worker(handle.pid, handle.host) is True
        handle.process.wait(timeout=5)

        assert not launcher.is_alive(handle)

    def test_terminate_pid_ignores_missing_process(self, launcher: WorkerLauncher) -> None:
        launcher.terminate_pid(None)
        launcher.terminate_pid(2**22 + 12345)


class TestPidIsAlive:
    def test_own_process_is_alive(self) -> None:
        assert pid_is_alive(os.getpid())
