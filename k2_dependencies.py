import os
import re
import tempfile
from dataclasses import dataclass, field
from typing import Callable, Optional

from k2_errors import (
    CommandTimeoutError,
    DownloadFailedError,
    InstallFailedError,
    NotFoundError,
    PrivilegeEscalationCancelledError,
    ProvisioningCancelledError,
    ProvisioningError,
    VersionTooLowError,
)
from k2_fetch import MirrorFetcher
from k2_platform import PlatformStrategy, is_windows, write_text_file
from k2_process import (
    CancelToken,
    SearchPath,
    capture_output,
    format_exit_code,
    is_probably_windows_errno_exit_code,
    run_command,
    where_all,
)


NODE_MIN_MAJOR = 16
NODE_VERSION = "20.10.0"
NODE_MSI_MIRRORS = (
    f"https://mirrors.aliyun.com/nodejs-release/v{NODE_VERSION}/node-v{NODE_VERSION}-x64.msi",
    f"https://cdn.npmmirror.com/binaries/node/v{NODE_VERSION}/node-v{NODE_VERSION}-x64.msi",
    f"https://nodejs.org/dist/v{NODE_VERSION}/node-v{NODE_VERSION}-x64.msi",
)
NODE_PKG_MIRRORS = (
    f"https://cdn.npmmirror.com/binaries/node/v{NODE_VERSION}/node-v{NODE_VERSION}.pkg",
    f"https://nodejs.org/dist/v{NODE_VERSION}/node-v{NODE_VERSION}.pkg",
)
GIT_WINDOWS_VERSION = "2.50.1"
GIT_EXE_MIRRORS = (
    f"https://cdn.npmmirror.com/binaries/git-for-windows/v{GIT_WINDOWS_VERSION}.windows.1/Git-{GIT_WINDOWS_VERSION}-64-bit.exe",
    f"https://github.com/git-for-windows/git/releases/download/v{GIT_WINDOWS_VERSION}.windows.1/Git-{GIT_WINDOWS_VERSION}-64-bit.exe",
    f"https://mirrors.tuna.tsinghua.edu.cn/github-release/git-for-windows/git/v{GIT_WINDOWS_VERSION}.windows.1/Git-{GIT_WINDOWS_VERSION}-64-bit.exe",
)
MSI_SILENT_FLAGS = ["/qn", "/norestart", "ADDLOCAL=ALL", "ALLUSERS=1"]
GIT_SILENT_FLAGS = ["/VERYSILENT", "/NORESTART", "/NOCANCEL", "/SP-", "/CLOSEAPPLICATIONS", "/RESTARTAPPLICATIONS"]
MSI_EXIT_REASONS = {
    1602: "the installation was cancelled by the user",
    1603: "fatal error during installation; administrator rights or a restart may be required",
    1618: "another installation is already in progress; wait for it to finish and retry",
    1638: "another version is already installed; uninstall it first",
}
REBOOT_REQUIRED_EXIT_CODES = (1641, 3010)
MIN_PKG_BYTES = 1_000_000
HOMEBREW_BOOTSTRAP_URL = "https://gitee.com/cunkai/HomebrewCN/raw/master/Homebrew.sh"
HOMEBREW_PREFIX_BIN_DIRS = ("/opt/homebrew/bin", "/usr/local/bin")
HOMEBREW_MIRROR_ENV = {
    "HOMEBREW_BREW_GIT_REMOTE": "https://mirrors.ustc.edu.cn/brew.git",
    "HOMEBREW_CORE_GIT_REMOTE": "https://mirrors.ustc.edu.cn/homebrew-core.git",
    "HOMEBREW_BOTTLE_DOMAIN": "https://mirrors.ustc.edu.cn/homebrew-bottles",
}
XCODE_TOOLS_PROCESS_NAME = "Install Command Line Developer Tools"
XCODE_TOOLS_TIMEOUT_SECONDS = 30 * 60
XCODE_TOOLS_POLL_SECONDS = 10.0
CLAUDE_PACKAGE = "@anthropic-ai/claude-code"
NPM_REGISTRY_MIRROR = "https://registry.npmmirror.com"
NPM_QUIET_FLAGS = ["--no-fund", "--no-audit", "--no-update-notifier", "--loglevel", "error"]
NPM_INSTALL_MAX_ATTEMPTS = 3
NPM_INSTALL_RETRY_DELAY_SECONDS = 2.0
PKEXEC_CANCEL_EXIT_CODES = (126, 127)

VERSION_PATTERN = re.compile(r"v?(\d+)(?:\.\d+)+")


@dataclass(frozen=True)
class DependencySpec:
    key: str
    label: str
    command: str
    version_args: tuple[str, ...] = ("--version",)
    min_major: Optional[int] = None


NODE_SPEC = DependencySpec("node", "Node.js", "node", min_major=NODE_MIN_MAJOR)
GIT_SPEC = DependencySpec("git", "Git", "git")
CLAUDE_SPEC = DependencySpec("claude", "Claude Code", "claude")


@dataclass(frozen=True)
class DependencyProbeResult:
    found: bool
    path: Optional[str] = None
    version: Optional[str] = None
    error: Optional[ProvisioningError] = None

    @property
    def accepted(self) -> bool:
        return self.found and self.error is None


@dataclass(frozen=True)
class PackageManager:
    name: str
    install_args: tuple[str, ...]
    refresh_args: Optional[tuple[str, ...]] = None


LINUX_PACKAGE_MANAGERS = (
    PackageManager("apt-get", ("apt-get", "install", "-y"), ("apt-get", "update")),
    PackageManager("dnf", ("dnf", "install", "-y")),
    PackageManager("yum", ("yum", "install", "-y")),
    PackageManager("pacman", ("pacman", "-Sy", "--noconfirm", "--needed")),
    PackageManager("zypper", ("zypper", "--non-interactive", "install")),
)


@dataclass
class StepContext:
    platform: PlatformStrategy
    log: Callable[[str], None]
    search_path: SearchPath
    fetcher: MirrorFetcher
    cancel: CancelToken = field(default_factory=CancelToken)
    temp_dir: str = field(default_factory=tempfile.gettempdir)
    runner: Callable[..., int] = run_command
    capturer: Callable[..., Optional[str]] = capture_output

    def which(self, command: str) -> Optional[str]:
        return self.search_path.which(command)

    def run_command(
        self,
        args: list[str],
        env: Optional[dict[str, str]] = None,
        cwd: Optional[str] = None,
        timeout: Optional[float] = None,
        log: Optional[Callable[[str], None]] = None,
    ) -> int:
        return self.runner(
            args,
            log or self.log,
            env=env if env is not None else self.search_path.environ(),
            cwd=cwd,
            cancel=self.cancel,
            timeout=timeout,
        )

    def capture_output(self, args: list[str]) -> Optional[str]:
        return self.capturer(args, env=self.search_path.environ())

    def where_all(self, command: str) -> list[str]:
        return where_all(command, self.platform, self.search_path.environ(), self.capturer)


def first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return ""


def parse_major_version(text: str) -> Optional[int]:
    match = VERSION_PATTERN.search(text or "")
    if not match:
        return None
    return int(match.group(1))


def validate_version(spec: DependencySpec, version: str, log: Callable[[str], None]) -> int:
    major = parse_major_version(version)
    if major is None:
        raise VersionTooLowError(f"Unrecognized {spec.label} version output: {version!r}")
    if spec.min_major is not None:
        if major < spec.min_major:
            raise VersionTooLowError(
                f"{spec.label} version is too old (v{major}); v{spec.min_major} or newer is required"
            )
        log(f"{spec.label} version satisfies the requirement (v{major} >= v{spec.min_major})")
    return major


def probe(spec: DependencySpec, ctx: StepContext) -> DependencyProbeResult:
    hits = ctx.where_all(spec.command)
    if hits:
        ctx.log(f"Found {spec.label} via {ctx.platform.where_all_command(spec.command)[0]}: {hits[0]}")
        for extra in hits[1:]:
            ctx.log(f"Also on PATH: {extra}")

    executable = ctx.which(spec.command)
    output = ctx.capture_output([executable or spec.command, *spec.version_args])
    if output is not None:
        version = first_line(output)
        ctx.log(f"Detected {spec.label}: {version}")
        try:
            validate_version(spec, version, ctx.log)
        except VersionTooLowError as exc:
            ctx.log(str(exc))
            return DependencyProbeResult(True, executable, version, exc)
        return DependencyProbeResult(True, executable, version)

    ctx.log(f"Running '{spec.command} {' '.join(spec.version_args)}' failed")
    ctx.log(f"Checking common {spec.label} install locations...")
    for directory in ctx.platform.well_known_dirs(spec.key):
        for name in ctx.platform.executable_names(spec.command):
            candidate = os.path.join(directory, name)
            if not os.path.isfile(candidate):
                continue
            ctx.log(f"Found {spec.label} at: {candidate}")
            output = ctx.capture_output([candidate, *spec.version_args])
            if output is None:
                ctx.log(f"Unable to run {candidate}")
                continue
            version = first_line(output)
            ctx.log(f"Version: {version}")
            try:
                validate_version(spec, version, ctx.log)
            except VersionTooLowError as exc:
                ctx.log(str(exc))
                continue
            ctx.search_path.record(spec.key, directory)
            ctx.log(f"Added {directory} to the search path")
            return DependencyProbeResult(True, candidate, version)

    ctx.log(f"{spec.label} was not detected")
    return DependencyProbeResult(False)


def require(spec: DependencySpec, ctx: StepContext) -> DependencyProbeResult:
    result = probe(spec, ctx)
    if result.error is not None:
        raise result.error
    if not result.found:
        raise NotFoundError(f"{spec.label} is not installed")
    return result


def check_exit_code(label: str, code: int, reasons: Optional[dict[int, str]], log: Callable[[str], None]) -> None:
    if code == 0:
        return
    if code in REBOOT_REQUIRED_EXIT_CODES:
        log(f"Warning: {label} installed, but a restart is required to finish ({code})")
        return
    reason = (reasons or {}).get(code)
    if reason:
        raise InstallFailedError(f"{label} installation failed ({code}): {reason}", code, reason)
    raise InstallFailedError(
        f"{label} installation failed with exit code {format_exit_code(code)}",
        code,
    )


def is_privilege_prompt_cancelled(args: list[str], code: int, output: list[str]) -> bool:
    if args and args[0] == "pkexec" and code in PKEXEC_CANCEL_EXIT_CODES:
        return True
    return any("User canceled" in line or "(-128)" in line for line in output)


def remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except OSError:
        pass


class DependencyInstaller:
    spec: DependencySpec = NODE_SPEC

    def __init__(self, ctx: StepContext) -> None:
        self.ctx = ctx

    def log(self, message: str) -> None:
        self.ctx.log(message)

    def install(self) -> None:
        before = probe(self.spec, self.ctx)
        if before.accepted:
            self.log(f"{self.spec.label} is already installed, skipping")
            return

        self.log(f"Starting {self.spec.label} installation...")
        self.run_install()

        after = probe(self.spec, self.ctx)
        if after.accepted:
            self.log(f"{self.spec.label} installed and verified")
            return
        if after.error is not None:
            raise after.error

        self.log(
            f"Warning: {self.spec.label} was installed but is not visible yet; "
            "a new terminal session or a restart may be needed"
        )
        self._extend_search_path()

    def run_install(self) -> None:
        raise NotImplementedError

    def _extend_search_path(self) -> None:
        for directory in self.ctx.platform.well_known_dirs(self.spec.key):
            for name in self.ctx.platform.executable_names(self.spec.command):
                if os.path.isfile(os.path.join(directory, name)):
                    self.ctx.search_path.record(self.spec.key, directory)
                    self.log(f"Added {directory} to the search path")
                    return

    def run_checked(
        self,
        args: list[str],
        reasons: Optional[dict[int, str]] = None,
        env: Optional[dict[str, str]] = None,
    ) -> None:
        code = self.ctx.run_command(args, env=env, cwd=self.ctx.temp_dir)
        check_exit_code(self.spec.label, code, reasons, self.log)

    def run_privileged(self, args: list[str], reasons: Optional[dict[int, str]] = None) -> None:
        command = self.ctx.platform.elevated_command(args)
        output: list[str] = []

        def tee(line: str) -> None:
            output.append(line)
            self.log(line)

        code = self.ctx.run_command(command, cwd=self.ctx.temp_dir, log=tee)
        if code != 0 and is_privilege_prompt_cancelled(command, code, output):
            raise PrivilegeEscalationCancelledError("The administrator password prompt was cancelled")
        check_exit_code(self.spec.label, code, reasons, self.log)


class WindowsDownloadInstaller(DependencyInstaller):
    mirrors: tuple[str, ...] = ()
    artifact_name = ""
    exit_reasons: Optional[dict[int, str]] = None

    def build_command(self, artifact: str) -> list[str]:
        raise NotImplementedError

    def run_install(self) -> None:
        artifact = os.path.join(self.ctx.temp_dir, self.artifact_name)
        try:
            self.ctx.fetcher.fetch(list(self.mirrors), artifact)
            self.log(f"Running {self.spec.label} installer silently...")
            self.run_checked(self.build_command(artifact), self.exit_reasons)
        finally:
            remove_quietly(artifact)


class WindowsNodeInstaller(WindowsDownloadInstaller):
    spec = NODE_SPEC
    mirrors = NODE_MSI_MIRRORS
    artifact_name = "node-installer.msi"
    exit_reasons = MSI_EXIT_REASONS

    def build_command(self, artifact: str) -> list[str]:
        return ["msiexec", "/i", artifact, *MSI_SILENT_FLAGS]


class WindowsGitInstaller(WindowsDownloadInstaller):
    spec = GIT_SPEC
    mirrors = GIT_EXE_MIRRORS
    artifact_name = "git-installer.exe"

    def build_command(self, artifact: str) -> list[str]:
        return [artifact, *GIT_SILENT_FLAGS]


def build_homebrew_bootstrap_script() -> str:
    lines = [
        "#!/bin/bash",
        "if command -v brew >/dev/null 2>&1; then",
        "    brew --version",
        "    exit 0",
        "fi",
        f'/bin/zsh -c "$(curl -fsSL {HOMEBREW_BOOTSTRAP_URL})"',
        "for prefix in /opt/homebrew /usr/local; do",
        '    if [ -x "$prefix/bin/brew" ]; then',
        '        "$prefix/bin/brew" --version',
        "        exit 0",
        "    fi",
        "done",
        'echo "Homebrew installation failed or requires a new terminal"',
        "exit 1",
    ]
    return "\n".join(lines) + "\n"


class MacInstallerBase(DependencyInstaller):
    def find_brew(self) -> Optional[str]:
        brew = self.ctx.which("brew")
        if brew and self.ctx.capture_output([brew, "--version"]) is not None:
            return brew
        for directory in HOMEBREW_PREFIX_BIN_DIRS:
            candidate = os.path.join(directory, "brew")
            if os.path.isfile(candidate) and self.ctx.capture_output([candidate, "--version"]) is not None:
                self.ctx.search_path.add(directory)
                return candidate
        return None

    def brew_env(self) -> dict[str, str]:
        env = self.ctx.search_path.environ()
        if env.get("HOMEBREW_BOTTLE_DOMAIN"):
            self.log(f"Using existing Homebrew mirror: {env['HOMEBREW_BOTTLE_DOMAIN']}")
        else:
            self.log("Configuring Homebrew to use the USTC mirror")
            env.update(HOMEBREW_MIRROR_ENV)
        return env

    def brew_install(self, brew: str, formula: str) -> None:
        env = self.brew_env()
        code = self.ctx.run_command([brew, "update"], env=env)
        if code != 0:
            self.log(f"brew update failed ({format_exit_code(code)}), continuing with install...")
        self.run_checked([brew, "install", formula], env=env)

    def bootstrap_homebrew(self) -> None:
        self.log("Homebrew installation needs administrator rights; a password prompt will appear")
        script = os.path.join(self.ctx.temp_dir, "install_homebrew.sh")
        write_text_file(script, build_homebrew_bootstrap_script(), mode=0o755)
        try:
            self.run_privileged(["bash", script])
        finally:
            remove_quietly(script)
        for directory in HOMEBREW_PREFIX_BIN_DIRS:
            if os.path.isfile(os.path.join(directory, "brew")):
                self.ctx.search_path.add(directory)
                self.log(f"Added {directory} to the search path")
                break


class MacNodeInstaller(MacInstallerBase):
    spec = NODE_SPEC

    def run_install(self) -> None:
        brew = self.find_brew()
        if brew is None:
            self.log("Homebrew was not found, installing it first...")
            try:
                self.bootstrap_homebrew()
            except ProvisioningCancelledError:
                raise
            except ProvisioningError as exc:
                self.log(f"Homebrew installation failed: {exc}")
                self.log("Falling back to the Node.js installer package")
                self.install_pkg()
                return
            brew = self.find_brew()
            if brew is None:
                self.log("Homebrew is still unavailable after installation, using the installer package")
                self.install_pkg()
                return
            self.log("Homebrew installed")

        try:
            self.brew_install(brew, "node")
        except ProvisioningCancelledError:
            raise
        except ProvisioningError as exc:
            self.log(f"Homebrew could not install Node.js ({exc}), downloading the installer package...")
            self.install_pkg()

    def install_pkg(self) -> None:
        pkg = os.path.join(self.ctx.temp_dir, "node-installer.pkg")
        try:
            self.ctx.fetcher.fetch(list(NODE_PKG_MIRRORS), pkg)
            size = os.path.getsize(pkg)
            if size < MIN_PKG_BYTES:
                raise DownloadFailedError(f"Downloaded file is too small ({size} bytes), possibly corrupted")
            self.log("Installing Node.js; enter your password when the system prompt appears")
            self.run_privileged(["installer", "-pkg", pkg, "-target", "/"])
        finally:
            remove_quietly(pkg)


class MacGitInstaller(MacInstallerBase):
    spec = GIT_SPEC

    def run_install(self) -> None:
        brew = self.find_brew()
        if brew is not None:
            try:
                self.brew_install(brew, "git")
                return
            except ProvisioningCancelledError:
                raise
            except ProvisioningError as exc:
                self.log(f"Homebrew could not install Git ({exc}), trying Xcode Command Line Tools...")
        self.install_command_line_tools()

    def install_command_line_tools(self) -> None:
        self.log("Installing Xcode Command Line Tools (includes Git)")
        self.log("A system dialog will open; click 'Install' when prompted. This can take 10-15 minutes.")
        code = self.ctx.run_command(["xcode-select", "--install"])
        if code != 0:
            self.log(f"xcode-select --install returned {code}, checking for an existing installation...")

        waited = 0.0
        polled = False
        while waited <= XCODE_TOOLS_TIMEOUT_SECONDS:
            if self.ctx.capture_output(["/usr/bin/git", "--version"]) is not None:
                self.log("Git is available through Xcode Command Line Tools")
                return
            # The installer process appears a moment after the dialog is accepted.
            if polled and self.ctx.capture_output(["pgrep", "-x", XCODE_TOOLS_PROCESS_NAME]) is None:
                raise InstallFailedError(
                    "Xcode Command Line Tools installation was cancelled or failed. "
                    "Run 'xcode-select --install' manually."
                )
            polled = True
            self.ctx.cancel.sleep(XCODE_TOOLS_POLL_SECONDS)
            waited += XCODE_TOOLS_POLL_SECONDS
        raise CommandTimeoutError("Timed out waiting for Xcode Command Line Tools to install")


def find_linux_package_manager(ctx: StepContext) -> Optional[PackageManager]:
    for manager in LINUX_PACKAGE_MANAGERS:
        if ctx.which(manager.name):
            return manager
    return None


class LinuxPackageInstaller(DependencyInstaller):
    packages: tuple[str, ...] = ()

    def run_install(self) -> None:
        manager = find_linux_package_manager(self.ctx)
        if manager is None:
            names = ", ".join(m.name for m in LINUX_PACKAGE_MANAGERS)
            raise InstallFailedError(
                f"No supported package manager was found ({names}). Install {self.spec.label} manually."
            )
        self.log(f"Installing {self.spec.label} with {manager.name}: {', '.join(self.packages)}")
        if manager.refresh_args:
            try:
                self.run_privileged(list(manager.refresh_args))
            except PrivilegeEscalationCancelledError:
                raise
            except InstallFailedError as exc:
                self.log(f"Package index refresh failed, continuing: {exc}")
        self.run_privileged([*manager.install_args, *self.packages])


class LinuxNodeInstaller(LinuxPackageInstaller):
    spec = NODE_SPEC
    packages = ("nodejs", "npm")


class LinuxGitInstaller(LinuxPackageInstaller):
    spec = GIT_SPEC
    packages = ("git",)


def npm_global_bin_dir(npm: str, ctx: StepContext) -> Optional[str]:
    for args in ([npm, "prefix", "-g"], [npm, "config", "get", "prefix"]):
        output = ctx.capture_output(args)
        if not output:
            continue
        prefix = first_line(output)
        if not prefix or not os.path.isdir(prefix):
            continue
        if is_windows():
            return prefix
        bin_dir = os.path.join(prefix, "bin")
        return bin_dir if os.path.isdir(bin_dir) else prefix
    return None


class ClaudeCodeInstaller(DependencyInstaller):
    spec = CLAUDE_SPEC

    def run_install(self) -> None:
        npm = self.ctx.which("npm")
        if not npm:
            raise NotFoundError("npm was not found. Install Node.js first, or reopen the installer.")
        self.log(f"Using npm executable: {npm}")

        env = self.ctx.search_path.environ()
        env["npm_config_update_notifier"] = "false"
        args = [npm, *NPM_QUIET_FLAGS, "install", "-g", CLAUDE_PACKAGE, f"--registry={NPM_REGISTRY_MIRROR}"]
        bin_dir = npm_global_bin_dir(npm, self.ctx)
        if bin_dir and not is_windows() and not os.access(bin_dir, os.W_OK):
            self.log(f"{bin_dir} is not writable, requesting administrator rights for npm")
            args = self.ctx.platform.elevated_command(args)

        for attempt in range(1, NPM_INSTALL_MAX_ATTEMPTS + 1):
            suffix = "" if attempt == 1 else f" (attempt {attempt}/{NPM_INSTALL_MAX_ATTEMPTS})"
            self.log(f"Installing {CLAUDE_PACKAGE} from {NPM_REGISTRY_MIRROR}{suffix}")
            code = self.ctx.run_command(args, env=env)
            if code == 0:
                break
            if attempt < NPM_INSTALL_MAX_ATTEMPTS and is_probably_windows_errno_exit_code(code):
                self.log(
                    "Transient npm install failure detected (possible Windows file lock). "
                    + f"Retrying in {NPM_INSTALL_RETRY_DELAY_SECONDS:.0f}s..."
                )
                self.ctx.cancel.sleep(NPM_INSTALL_RETRY_DELAY_SECONDS)
                continue
            raise InstallFailedError(
                f"npm install of {CLAUDE_PACKAGE} failed with exit code {format_exit_code(code)}",
                code,
            )

        bin_dir = npm_global_bin_dir(npm, self.ctx)
        if bin_dir:
            self.ctx.search_path.record(self.spec.key, bin_dir)
            self.log(f"npm global bin directory: {bin_dir}")


INSTALLER_STRATEGIES: dict[tuple[str, str], type[DependencyInstaller]] = {
    ("windows", "node"): WindowsNodeInstaller,
    ("windows", "git"): WindowsGitInstaller,
    ("darwin", "node"): MacNodeInstaller,
    ("darwin", "git"): MacGitInstaller,
    ("linux", "node"): LinuxNodeInstaller,
    ("linux", "git"): LinuxGitInstaller,
}


def installer_for(spec: DependencySpec, ctx: StepContext) -> DependencyInstaller:
    if spec.key == CLAUDE_SPEC.key:
        return ClaudeCodeInstaller(ctx)
    strategy = INSTALLER_STRATEGIES.get((ctx.platform.key, spec.key))
    if strategy is None:
        raise InstallFailedError(f"Automatic {spec.label} installation is not supported on {ctx.platform.label}")
    return strategy(ctx)


def verify_installation(ctx: StepContext) -> None:
    ctx.log("Verifying installation...")
    for spec in (NODE_SPEC, GIT_SPEC, CLAUDE_SPEC):
        executable = ctx.which(spec.command) or spec.command
        output = ctx.capture_output([executable, *spec.version_args])
        if output is None:
            raise NotFoundError(f"{spec.label} verification failed")
        ctx.log(f"{spec.label}: {first_line(output)}")
    ctx.log("All components verified")
