import os
import shutil
import subprocess
import threading
import time
from typing import Callable, IO, Optional

from k2_errors import CommandLaunchError, CommandTimeoutError, ProvisioningCancelledError
from k2_platform import (
    PlatformStrategy,
    dedupe_preserve_order,
    normalize_path_for_compare,
    split_path,
    subprocess_creationflags_kwargs,
)


READER_POLL_SECONDS = 0.2
TERMINATE_GRACE_SECONDS = 5.0
CAPTURE_TIMEOUT_SECONDS = 30.0


class CancelToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ProvisioningCancelledError("Provisioning was cancelled.")

    def sleep(self, seconds: float) -> None:
        if self._event.wait(seconds):
            raise ProvisioningCancelledError("Provisioning was cancelled.")


class SearchPath:
    """Directories made visible to child processes during one session.

    Probes and installers record where they found or placed a tool here instead
    of editing ``os.environ``; every command the session launches resolves its
    executable and inherits PATH through this object.
    """

    def __init__(self, platform: PlatformStrategy) -> None:
        self.platform = platform
        self.resolved: dict[str, str] = {}
        self._extra: list[str] = []

    def record(self, dependency_key: str, directory: str) -> None:
        self.resolved[dependency_key] = directory
        self.add(directory)

    def add(self, directory: str) -> bool:
        norm = normalize_path_for_compare(directory)
        if any(normalize_path_for_compare(d) == norm for d in self._extra):
            return False
        self._extra.insert(0, directory)
        return True

    def directories(self) -> list[str]:
        return list(self._extra)

    def path_string(self) -> str:
        return os.pathsep.join(self._extra + split_path(os.environ.get("PATH", "")))

    def environ(self, base: Optional[dict[str, str]] = None) -> dict[str, str]:
        return self.platform.environ_for_child(self.directories(), base)

    def which(self, command: str) -> Optional[str]:
        path = self.path_string()
        for name in self.platform.executable_names(command):
            found = shutil.which(name, path=path)
            if found:
                return found
        return None


def _drain_stream(stream: Optional[IO[str]], log: Callable[[str], None]) -> None:
    if stream is None:
        return
    for line in stream:
        text = line.strip()
        if text:
            log(text)


def _terminate(process: subprocess.Popen) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        process.kill()


def run_command(
    args: list[str],
    log: Callable[[str], None],
    env: Optional[dict[str, str]] = None,
    cwd: Optional[str] = None,
    cancel: Optional[CancelToken] = None,
    timeout: Optional[float] = None,
) -> int:
    log("> " + " ".join(args))
    try:
        process = subprocess.Popen(
            args,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            encoding="utf-8",
            errors="replace",
            env=env,
            cwd=cwd,
            **subprocess_creationflags_kwargs(),
        )
    except OSError as exc:
        raise CommandLaunchError(f"Unable to start {args[0]}: {exc}") from exc

    readers = [
        threading.Thread(target=_drain_stream, args=(process.stdout, log), daemon=True),
        threading.Thread(target=_drain_stream, args=(process.stderr, log), daemon=True),
    ]
    for reader in readers:
        reader.start()

    deadline = None if timeout is None else time.monotonic() + timeout
    stop_reason: Optional[str] = None
    while any(reader.is_alive() for reader in readers):
        for reader in readers:
            reader.join(READER_POLL_SECONDS)
        if cancel is not None and cancel.is_set():
            stop_reason = "cancelled"
        elif deadline is not None and time.monotonic() > deadline:
            stop_reason = "timeout"
        if stop_reason is not None:
            _terminate(process)
            for reader in readers:
                reader.join(TERMINATE_GRACE_SECONDS)
            break

    code = process.wait()
    if stop_reason == "cancelled":
        raise ProvisioningCancelledError(f"Cancelled while running {args[0]}.")
    if stop_reason == "timeout":
        raise CommandTimeoutError(f"{args[0]} did not finish within {timeout:.0f}s.")
    return code


def capture_output(
    args: list[str],
    env: Optional[dict[str, str]] = None,
    timeout: float = CAPTURE_TIMEOUT_SECONDS,
) -> Optional[str]:
    try:
        completed = subprocess.run(
            args,
            capture_output=True,
            stdin=subprocess.DEVNULL,
            text=True,
            encoding="utf-8",
            errors="replace",
            env=env,
            timeout=timeout,
            **subprocess_creationflags_kwargs(),
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if completed.returncode != 0:
        return None
    text = (completed.stdout or "").strip()
    if not text:
        text = (completed.stderr or "").strip()
    return text


def where_all(
    name: str,
    platform: PlatformStrategy,
    env: Optional[dict[str, str]] = None,
    capturer: Callable[..., Optional[str]] = capture_output,
) -> list[str]:
    output = capturer(platform.where_all_command(name), env=env)
    if not output:
        return []
    return dedupe_preserve_order([line.strip() for line in output.splitlines() if line.strip()])


def is_probably_windows_errno_exit_code(code: int) -> bool:
    # npm on Windows sometimes returns negative errno values reinterpreted as unsigned exit codes.
    return code >= 0xFFFF0000


def format_exit_code(code: int) -> str:
    if not is_probably_windows_errno_exit_code(code):
        return str(code)
    signed = code - (1 << 32)
    return f"{code} (Windows errno {signed})"
