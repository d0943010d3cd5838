import ctypes
import os
import platform
import shlex
import shutil
import sys
import tempfile
import time
from typing import Callable, Optional

from k2_errors import ConfigWriteFailedError, UnsupportedPlatformError

try:  # Windows-only
    import winreg
except ImportError:  # pragma: no cover - exercised on non-Windows only
    winreg = None  # type: ignore[assignment]


CREATE_NO_WINDOW = 0x08000000
WM_SETTINGCHANGE = 0x001A
SMTO_ABORTIFHUNG = 0x0002
APP_DIR_NAME = "ClaudeK2Installer"
GUI_LAST_RUN_LOG_FILE = "gui_last_run.log"
LAUNCH_SCRIPT_BASENAME = "claude_k2_setup"
USER_ENVIRONMENT_SUBKEY = r"Environment"
LINUX_TERMINALS = ("x-terminal-emulator", "gnome-terminal", "konsole", "xfce4-terminal", "xterm")


def is_windows() -> bool:
    return os.name == "nt"


def is_macos() -> bool:
    return sys.platform == "darwin"


def is_linux() -> bool:
    return sys.platform.startswith("linux")


def is_admin() -> bool:
    if not is_windows():
        geteuid = getattr(os, "geteuid", None)
        if callable(geteuid):
            try:
                return geteuid() == 0
            except OSError:
                return False
        return False
    try:
        return bool(ctypes.windll.shell32.IsUserAnAdmin())
    except Exception:
        return False


def broadcast_environment_change() -> None:
    if not is_windows():
        return
    try:
        result = ctypes.c_ulong()
        ctypes.windll.user32.SendMessageTimeoutW(
            0xFFFF,
            WM_SETTINGCHANGE,
            0,
            "Environment",
            SMTO_ABORTIFHUNG,
            5000,
            ctypes.byref(result),
        )
    except Exception:
        pass


def subprocess_creationflags_kwargs() -> dict[str, int]:
    if is_windows():
        return {"creationflags": CREATE_NO_WINDOW}
    return {}


def split_path(value: str, separator: str = os.pathsep) -> list[str]:
    if not value:
        return []
    return [part for part in value.split(separator) if part]


def normalize_path_for_compare(path: str) -> str:
    expanded = os.path.expandvars(path.strip())
    normalized = os.path.normpath(expanded)
    return os.path.normcase(normalized)


def dedupe_preserve_order(values: list[str]) -> list[str]:
    unique: list[str] = []
    seen: set[str] = set()
    for value in values:
        if value not in seen:
            unique.append(value)
            seen.add(value)
    return unique


def get_app_support_directory() -> str:
    if is_windows():
        local_app = os.environ.get("LocalAppData")
        if local_app:
            return os.path.join(local_app, APP_DIR_NAME)
        return os.path.join(os.path.expanduser("~"), "AppData", "Local", APP_DIR_NAME)
    if is_macos():
        return os.path.join(os.path.expanduser("~"), "Library", "Application Support", APP_DIR_NAME)
    xdg_state = os.environ.get("XDG_STATE_HOME")
    if xdg_state:
        return os.path.join(xdg_state, APP_DIR_NAME)
    return os.path.join(os.path.expanduser("~"), ".local", "state", APP_DIR_NAME)


def get_gui_last_run_log_path() -> str:
    return os.path.join(get_app_support_directory(), GUI_LAST_RUN_LOG_FILE)


def reset_gui_last_run_log() -> Optional[str]:
    path = get_gui_last_run_log_path()
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8", newline="\n") as f:
            started = time.strftime("%Y-%m-%d %H:%M:%S")
            f.write(f"Claude K2 installer log started: {started}\n")
        return path
    except OSError:
        return None


def append_persistent_log_line(path: Optional[str], message: str) -> Optional[str]:
    if not path:
        return None
    try:
        with open(path, "a", encoding="utf-8", newline="\n") as f:
            f.write(message + "\n")
        return None
    except OSError as exc:
        return str(exc)


def write_text_file(path: str, content: str, mode: Optional[int] = None) -> None:
    with open(path, "w", encoding="utf-8", newline="\n") as f:
        f.write(content)
    if mode is not None:
        os.chmod(path, mode)


def posix_quote(value: str) -> str:
    return shlex.quote(value)


def fish_quote(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def batch_escape(value: str) -> str:
    return value.replace("%", "%%")


def applescript_quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


class PlatformStrategy:
    key = ""
    label = ""
    launch_script_extension = ".sh"

    def where_all_command(self, name: str) -> list[str]:
        return ["which", "-a", name]

    def executable_names(self, command: str) -> tuple[str, ...]:
        return (command,)

    def well_known_dirs(self, dependency_key: str) -> list[str]:
        return []

    def rc_files_for_write(self, home: str, shell: str) -> list[str]:
        return []

    def rc_files_for_restore(self, home: str, shell: str) -> list[str]:
        return []

    def uses_registry_environment(self) -> bool:
        return False

    def elevated_command(self, args: list[str]) -> list[str]:
        return list(args)

    def launch_script_path(self, temp_dir: Optional[str] = None) -> str:
        directory = temp_dir or tempfile.gettempdir()
        return os.path.join(directory, LAUNCH_SCRIPT_BASENAME + self.launch_script_extension)

    def render_launch_script(self, values: dict[str, str], unset: list[str], summary: list[str]) -> str:
        raise NotImplementedError

    def terminal_launch_command(self, script_path: Optional[str], command: str = "claude") -> list[str]:
        raise NotImplementedError

    def environ_for_child(self, extra_dirs: list[str], base: Optional[dict[str, str]] = None) -> dict[str, str]:
        env = dict(os.environ if base is None else base)
        if extra_dirs:
            env["PATH"] = os.pathsep.join(extra_dirs + split_path(env.get("PATH", "")))
        return env


class PosixPlatform(PlatformStrategy):
    bash_profile_name = ".bashrc"

    def rc_files_for_write(self, home: str, shell: str) -> list[str]:
        if "zsh" in shell:
            return [os.path.join(home, ".zshrc")]
        if "bash" in shell:
            return [os.path.join(home, self.bash_profile_name)]
        if "fish" in shell:
            return [os.path.join(home, ".config", "fish", "config.fish")]
        return [os.path.join(home, ".profile")]

    def rc_files_for_restore(self, home: str, shell: str) -> list[str]:
        files: list[str] = []
        if "zsh" in shell:
            files.append(os.path.join(home, ".zshrc"))
        elif "bash" in shell:
            files.append(os.path.join(home, ".bashrc"))
            files.append(os.path.join(home, ".bash_profile"))
        elif "fish" in shell:
            files.append(os.path.join(home, ".config", "fish", "config.fish"))
        files.append(os.path.join(home, ".profile"))
        return dedupe_preserve_order(files)

    def render_launch_script(self, values: dict[str, str], unset: list[str], summary: list[str]) -> str:
        lines = ["#!/bin/bash", "# Claude Code K2 temporary environment setup"]
        for name, value in values.items():
            lines.append(f"export {name}={posix_quote(value)}")
        for name in unset:
            lines.append(f"unset {name}")
        lines.append("")
        for text in summary:
            lines.append(f"echo {posix_quote(text)}" if text else 'echo ""')
        return "\n".join(lines) + "\n"


class WindowsPlatform(PlatformStrategy):
    key = "windows"
    label = "Windows"
    launch_script_extension = ".bat"

    def where_all_command(self, name: str) -> list[str]:
        return ["where", name]

    def executable_names(self, command: str) -> tuple[str, ...]:
        return (command + ".exe", command + ".cmd", command + ".bat", command)

    def _program_files_roots(self) -> list[str]:
        return dedupe_preserve_order(
            [
                os.environ.get("ProgramFiles", r"C:\Program Files"),
                os.environ.get("ProgramFiles(x86)", r"C:\Program Files (x86)"),
                r"C:\Program Files",
                r"C:\Program Files (x86)",
            ]
        )

    def well_known_dirs(self, dependency_key: str) -> list[str]:
        path_dirs = [d.strip() for d in split_path(os.environ.get("PATH", ""), ";")]
        roots = self._program_files_roots()
        dirs: list[str] = []
        if dependency_key == "node":
            dirs.extend(d for d in path_dirs if "nodejs" in d.lower())
            dirs.extend(os.path.join(root, "nodejs") for root in roots)
            local_app = os.environ.get("LocalAppData")
            if local_app:
                dirs.append(os.path.join(local_app, "Programs", "nodejs"))
        elif dependency_key == "git":
            dirs.extend(d for d in path_dirs if "git" in d.lower())
            for root in roots:
                dirs.append(os.path.join(root, "Git", "cmd"))
                dirs.append(os.path.join(root, "Git", "bin"))
        elif dependency_key == "claude":
            appdata = os.environ.get("AppData")
            if appdata:
                dirs.append(os.path.join(appdata, "npm"))
        return dedupe_preserve_order(dirs)

    def uses_registry_environment(self) -> bool:
        return True

    def set_user_environment(self, values: dict[str, str], remove: list[str]) -> None:
        if winreg is None:
            raise ConfigWriteFailedError("Windows registry is not available on this system.")
        try:
            with winreg.OpenKey(
                winreg.HKEY_CURRENT_USER,
                USER_ENVIRONMENT_SUBKEY,
                0,
                winreg.KEY_READ | winreg.KEY_WRITE,
            ) as key:
                for name, value in values.items():
                    winreg.SetValueEx(key, name, 0, winreg.REG_SZ, value)
                for name in remove:
                    try:
                        winreg.DeleteValue(key, name)
                    except FileNotFoundError:
                        pass
        except OSError as exc:
            raise ConfigWriteFailedError(f"Unable to write user environment: {exc}") from exc
        broadcast_environment_change()

    def clear_user_environment(self, names: list[str]) -> list[str]:
        if winreg is None:
            raise ConfigWriteFailedError("Windows registry is not available on this system.")
        removed: list[str] = []
        try:
            with winreg.OpenKey(
                winreg.HKEY_CURRENT_USER,
                USER_ENVIRONMENT_SUBKEY,
                0,
                winreg.KEY_READ | winreg.KEY_WRITE,
            ) as key:
                for name in names:
                    try:
                        winreg.DeleteValue(key, name)
                        removed.append(name)
                    except FileNotFoundError:
                        continue
        except OSError as exc:
            raise ConfigWriteFailedError(f"Unable to clear user environment: {exc}") from exc
        if removed:
            broadcast_environment_change()
        return removed

    def render_launch_script(self, values: dict[str, str], unset: list[str], summary: list[str]) -> str:
        lines = ["@echo off", "REM Claude Code K2 temporary environment setup"]
        for name, value in values.items():
            lines.append(f'set "{name}={batch_escape(value)}"')
        for name in unset:
            lines.append(f'set "{name}="')
        lines.append("")
        for text in summary:
            lines.append(f"echo {batch_escape(text)}" if text else "echo.")
        return "\r\n".join(lines) + "\r\n"

    def terminal_launch_command(self, script_path: Optional[str], command: str = "claude") -> list[str]:
        if script_path:
            return ["cmd", "/c", "start", "cmd", "/k", f'"{script_path}" && {command}']
        return ["cmd", "/c", "start", "cmd", "/k", command]


class MacPlatform(PosixPlatform):
    key = "darwin"
    label = "macOS"
    bash_profile_name = ".bash_profile"

    def well_known_dirs(self, dependency_key: str) -> list[str]:
        dirs = ["/opt/homebrew/bin", "/usr/local/bin", "/usr/bin"]
        if dependency_key == "claude":
            dirs.insert(0, os.path.join(os.path.expanduser("~"), ".npm-global", "bin"))
        return dirs

    def elevated_command(self, args: list[str]) -> list[str]:
        script = f"do shell script {applescript_quote(shlex.join(args))} with administrator privileges"
        return ["osascript", "-e", script]

    def terminal_launch_command(self, script_path: Optional[str], command: str = "claude") -> list[str]:
        shell_cmd = f"source {posix_quote(script_path)} && {command}" if script_path else command
        script = "\n".join(
            [
                'tell application "Terminal"',
                f"    do script {applescript_quote(shell_cmd)}",
                "    activate",
                "end tell",
            ]
        )
        return ["osascript", "-e", script]


class LinuxPlatform(PosixPlatform):
    key = "linux"
    label = "Linux"

    def well_known_dirs(self, dependency_key: str) -> list[str]:
        dirs = ["/usr/local/bin", "/usr/bin", "/snap/bin"]
        if dependency_key == "claude":
            home = os.path.expanduser("~")
            dirs = [os.path.join(home, ".npm-global", "bin"), os.path.join(home, ".local", "bin")] + dirs
        return dirs

    def elevated_command(self, args: list[str]) -> list[str]:
        if is_admin():
            return list(args)
        if shutil.which("pkexec"):
            return ["pkexec", *args]
        if shutil.which("sudo"):
            return ["sudo", "-n", *args]
        return list(args)

    def terminal_launch_command(self, script_path: Optional[str], command: str = "claude") -> list[str]:
        shell_cmd = f"source {posix_quote(script_path)}; {command}; exec bash" if script_path else f"{command}; exec bash"
        for terminal in LINUX_TERMINALS:
            if not shutil.which(terminal):
                continue
            if terminal == "gnome-terminal":
                return [terminal, "--", "bash", "-c", shell_cmd]
            return [terminal, "-e", "bash", "-c", shell_cmd]
        raise UnsupportedPlatformError(
            "No terminal emulator was found. Open a terminal and run: " + shell_cmd
        )


def detect_platform() -> PlatformStrategy:
    if is_windows():
        return WindowsPlatform()
    if is_macos():
        return MacPlatform()
    if is_linux():
        return LinuxPlatform()
    raise UnsupportedPlatformError(f"Unsupported operating system: {sys.platform}")


def describe_system(log: Callable[[str], None]) -> None:
    log(f"Operating system: {platform.system() or sys.platform}")
    log(f"Architecture: {platform.machine() or 'unknown'}")
    log(f"Administrator mode: {'Yes' if is_admin() else 'No'}")
