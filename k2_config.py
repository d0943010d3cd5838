import json
import os
import stat
import tempfile
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from k2_errors import ConfigWriteFailedError, InvalidConfigurationError
from k2_platform import PlatformStrategy, fish_quote, posix_quote, write_text_file
from k2_process import CancelToken


K2_BASE_URL = "https://api.moonshot.cn/anthropic/"
BASE_URL_VAR = "ANTHROPIC_BASE_URL"
API_KEY_VAR = "ANTHROPIC_API_KEY"
REQUEST_DELAY_VAR = "CLAUDE_REQUEST_DELAY_MS"
MAX_CONCURRENT_VAR = "CLAUDE_MAX_CONCURRENT_REQUESTS"
AUTH_TOKEN_VAR = "ANTHROPIC_AUTH_TOKEN"
MANAGED_ENV_VARS = (BASE_URL_VAR, API_KEY_VAR, REQUEST_DELAY_VAR, MAX_CONCURRENT_VAR)
SECTION_START_MARKER = "# Claude Code K2 Configuration"
SECTION_END_MARKER = "# End of Claude Code K2 Configuration"
CLAUDE_JSON_NAME = ".claude.json"
CLAUDE_JSON_BACKUP_NAME = ".claude.json.backup"
CLAUDE_SETTINGS_PATH = (".claude", "settings.json")
DEFAULT_RPM = 3
MAX_CONCURRENT_REQUESTS = 1
KEY_PREVIEW_LENGTH = 10
ENV_PROPAGATION_DELAY_SECONDS = 2.0


def parse_rpm(value: Union[str, int, None]) -> int:
    if value is None:
        return DEFAULT_RPM
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return DEFAULT_RPM
        try:
            value = int(text)
        except ValueError as exc:
            raise InvalidConfigurationError(f"Rate limit must be a whole number, got {text!r}") from exc
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidConfigurationError(f"Rate limit must be a whole number, got {value!r}")
    if value <= 0:
        raise InvalidConfigurationError("Rate limit must be greater than zero requests per minute")
    return value


@dataclass(frozen=True)
class APIConfiguration:
    api_key: str
    requests_per_minute: int = DEFAULT_RPM
    persist_system_wide: bool = False

    def __post_init__(self) -> None:
        parse_rpm(self.requests_per_minute)

    @property
    def request_delay_ms(self) -> int:
        return 60000 // self.requests_per_minute

    @property
    def key_preview(self) -> str:
        return self.api_key[:KEY_PREVIEW_LENGTH] + "..."

    def env_values(self) -> dict[str, str]:
        return {
            BASE_URL_VAR: K2_BASE_URL,
            API_KEY_VAR: self.api_key,
            REQUEST_DELAY_VAR: str(self.request_delay_ms),
            MAX_CONCURRENT_VAR: str(MAX_CONCURRENT_REQUESTS),
        }


def render_shell_section(config: APIConfiguration, fish: bool = False) -> str:
    lines = [SECTION_START_MARKER]
    for name, value in config.env_values().items():
        if fish:
            lines.append(f"set -gx {name} {fish_quote(value)}")
        else:
            lines.append(f"export {name}={posix_quote(value)}")
    lines.append(f"set -e {AUTH_TOKEN_VAR}" if fish else f"unset {AUTH_TOKEN_VAR}")
    lines.append(SECTION_END_MARKER)
    return "\n".join(lines) + "\n"


def has_marked_section(content: str) -> bool:
    return any(line.strip() == SECTION_START_MARKER for line in content.splitlines())


def insert_marked_section(content: str, section: str) -> str:
    if not content:
        return section
    if not content.endswith("\n"):
        content += "\n"
    return content + "\n" + section


def _legacy_section_end(lines: list[str], start: int) -> int:
    # Blocks written before the end marker existed run until a blank line or a
    # comment that is not an export; that line stays.
    index = start + 1
    while index < len(lines):
        stripped = lines[index].strip()
        if not stripped:
            break
        if stripped.startswith("#") and not stripped.startswith("export"):
            break
        index += 1
    return index


def strip_marked_section(content: str) -> tuple[str, bool]:
    lines = content.splitlines(keepends=True)
    changed = False
    while True:
        start = next((i for i, line in enumerate(lines) if line.strip() == SECTION_START_MARKER), None)
        if start is None:
            break
        end = next(
            (i for i in range(start + 1, len(lines)) if lines[i].strip() == SECTION_END_MARKER),
            None,
        )
        if end is not None:
            first = start - 1 if start > 0 and not lines[start - 1].strip() else start
            lines = lines[:first] + lines[end + 1:]
        else:
            lines = lines[:start] + lines[_legacy_section_end(lines, start):]
        changed = True
    return "".join(lines), changed


def _read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8", newline="") as f:
        return f.read()


def _write_preserving_newlines(path: str, content: str) -> None:
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(content)


def _write_json_text(path: str, content: str, create_mode: int) -> None:
    # create_mode only applies when the file is created; an existing file keeps its mode.
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, create_mode)
    with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
        f.write(content)


class ConfigurationWriter:
    def __init__(
        self,
        platform: PlatformStrategy,
        home: str,
        log: Callable[[str], None],
        cancel: Optional[CancelToken] = None,
        shell: Optional[str] = None,
        temp_dir: Optional[str] = None,
    ) -> None:
        self.platform = platform
        self.home = home
        self.log = log
        self.cancel = cancel
        self.shell = shell if shell is not None else os.environ.get("SHELL", "")
        self.temp_dir = temp_dir or tempfile.gettempdir()

    @property
    def claude_json_path(self) -> str:
        return os.path.join(self.home, CLAUDE_JSON_NAME)

    @property
    def claude_json_backup_path(self) -> str:
        return os.path.join(self.home, CLAUDE_JSON_BACKUP_NAME)

    @property
    def settings_path(self) -> str:
        return os.path.join(self.home, *CLAUDE_SETTINGS_PATH)

    def launch_script_path(self) -> str:
        return self.platform.launch_script_path(self.temp_dir)

    def _sleep(self, seconds: float) -> None:
        if self.cancel is not None:
            self.cancel.sleep(seconds)
        else:
            time.sleep(seconds)

    def persist_environment(self, config: APIConfiguration) -> list[str]:
        if self.platform.uses_registry_environment():
            self.log("Writing user environment variables...")
            self.platform.set_user_environment(config.env_values(), [AUTH_TOKEN_VAR])
            for name in config.env_values():
                self.log(f"Set {name}")
            self.log(f"Removed {AUTH_TOKEN_VAR}")
            self.log("Waiting for environment changes to take effect...")
            self._sleep(ENV_PROPAGATION_DELAY_SECONDS)
            return []

        updated: list[str] = []
        for path in self.platform.rc_files_for_write(self.home, self.shell):
            if not os.path.isfile(path):
                self.log(f"Skipping {path}: file does not exist")
                continue
            try:
                content = _read_text(path)
                if has_marked_section(content):
                    self.log(f"{path} already contains the K2 configuration, skipping")
                    continue
                section = render_shell_section(config, fish=path.endswith(".fish"))
                _write_preserving_newlines(path, insert_marked_section(content, section))
            except OSError as exc:
                raise ConfigWriteFailedError(f"Unable to update {path}: {exc}") from exc
            updated.append(path)
            self.log(f"Updated {path}")

        if updated:
            self.log("Open a new terminal for the environment variables to take effect")
        else:
            self.log("No shell profile was updated")
        return updated

    def write_launch_script(self, config: APIConfiguration) -> str:
        summary = [
            "Claude Code K2 environment configured",
            f"API Key: {config.key_preview}",
            f"Base URL: {K2_BASE_URL}",
            f"Request delay: {config.request_delay_ms}ms",
            "",
        ]
        script = self.platform.render_launch_script(config.env_values(), [AUTH_TOKEN_VAR], summary)
        path = self.launch_script_path()
        try:
            write_text_file(path, script, mode=0o755)
        except OSError as exc:
            raise ConfigWriteFailedError(f"Unable to write {path}: {exc}") from exc
        self.log(f"Temporary environment script created: {path}")
        return path

    def _load_json_config(self) -> dict[str, Any]:
        path = self.claude_json_path
        if not os.path.isfile(path):
            if not os.path.isfile(self.claude_json_backup_path):
                return {}
            path = self.claude_json_backup_path
            self.log(f"Using {path} as the starting configuration")
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except OSError as exc:
            self.log(f"Unable to read {path}: {exc}")
            return {}
        except ValueError:
            self.log(f"{path} is not valid JSON, starting from an empty configuration")
            return {}
        if not isinstance(data, dict):
            self.log(f"{path} does not contain a JSON object, starting from an empty configuration")
            return {}
        return data

    def _write_with_fallback(self, path: str, content: str) -> None:
        try:
            _write_json_text(path, content, 0o644)
            return
        except OSError as exc:
            self.log(f"Write failed ({exc}), retrying with relaxed permissions...")

        try:
            _write_json_text(path, content, 0o666)
            return
        except OSError as exc:
            self.log(f"Write failed ({exc}), retrying through a temporary file...")

        try:
            fd, tmp_path = tempfile.mkstemp(dir=os.path.dirname(path), prefix=CLAUDE_JSON_NAME + ".")
            try:
                with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
                    f.write(content)
                # The replacement keeps the permissions of the file it replaces.
                if os.path.exists(path):
                    os.chmod(tmp_path, stat.S_IMODE(os.stat(path).st_mode))
                else:
                    os.chmod(tmp_path, 0o644)
                os.replace(tmp_path, path)
            except OSError:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise
        except OSError as exc:
            self.log(f"All attempts to write {path} failed: {exc}")
            raise ConfigWriteFailedError(f"Unable to write {path}: {exc}") from exc

    def write_json_config(self, config: APIConfiguration) -> str:
        data = self._load_json_config()
        data.update(
            {
                "hasCompletedOnboarding": True,
                "apiKey": config.api_key,
                "apiBaseUrl": K2_BASE_URL,
                "requestDelayMs": config.request_delay_ms,
                "maxConcurrentRequests": MAX_CONCURRENT_REQUESTS,
            }
        )
        path = self.claude_json_path
        self._write_with_fallback(path, json.dumps(data, indent=2, ensure_ascii=False) + "\n")
        self.log(f"Claude configuration written: {path}")
        return path

    def _remove_file(self, path: str, failures: list[str]) -> None:
        try:
            os.remove(path)
            self.log(f"Removed {path}")
        except FileNotFoundError:
            self.log(f"{path} not found, skipping")
        except OSError as exc:
            self.log(f"Unable to remove {path}: {exc}")
            failures.append(f"{path}: {exc}")

    def restore(self) -> None:
        self.log("Restoring default configuration...")
        failures: list[str] = []
        self._remove_file(self.claude_json_path, failures)
        self._remove_file(self.settings_path, failures)
        self._remove_file(self.launch_script_path(), failures)

        if self.platform.uses_registry_environment():
            try:
                removed = self.platform.clear_user_environment([*MANAGED_ENV_VARS, AUTH_TOKEN_VAR])
                if removed:
                    self.log("Cleared environment variables: " + ", ".join(removed))
                else:
                    self.log("No K2 environment variables were set")
            except ConfigWriteFailedError as exc:
                self.log(str(exc))
                failures.append(str(exc))
        else:
            for path in self.platform.rc_files_for_restore(self.home, self.shell):
                if not os.path.isfile(path):
                    continue
                try:
                    content, changed = strip_marked_section(_read_text(path))
                    if changed:
                        _write_preserving_newlines(path, content)
                        self.log(f"Removed K2 configuration from {path}")
                except OSError as exc:
                    self.log(f"Unable to clean {path}: {exc}")
                    failures.append(f"{path}: {exc}")

        if failures:
            raise ConfigWriteFailedError("Restore finished with errors: " + "; ".join(failures))
        self.log("Default configuration restored")
