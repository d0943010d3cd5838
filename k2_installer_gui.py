import json
import os
import subprocess
import threading
import traceback
from typing import Callable, Optional

import wx

from k2_config import DEFAULT_RPM
from k2_errors import ProvisioningError, UnsupportedPlatformError
from k2_pipeline import (
    INSTALL_PHASE,
    EventChannel,
    PipelineOutcome,
    ProgressEvent,
    ProvisioningSession,
)
from k2_platform import PlatformStrategy, detect_platform, is_admin, reset_gui_last_run_log, write_text_file
from k2_process import CancelToken


SAVED_INPUTS_FILE = ".claude-k2-installer-config.json"
INSTALL_GAUGE_SHARE = 80


def saved_inputs_path(home: Optional[str] = None) -> str:
    return os.path.join(home or os.path.expanduser("~"), SAVED_INPUTS_FILE)


def load_saved_inputs(home: Optional[str] = None) -> dict[str, str]:
    defaults = {"api_key": "", "rpm": str(DEFAULT_RPM)}
    path = saved_inputs_path(home)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError):
        return defaults
    if not isinstance(data, dict):
        return defaults
    api_key = data.get("api_key")
    rpm = data.get("rpm")
    if isinstance(api_key, str):
        defaults["api_key"] = api_key
    if isinstance(rpm, (str, int)) and not isinstance(rpm, bool) and str(rpm).strip():
        defaults["rpm"] = str(rpm).strip()
    return defaults


def save_inputs(api_key: str, rpm: str, home: Optional[str] = None) -> Optional[str]:
    path = saved_inputs_path(home)
    try:
        write_text_file(path, json.dumps({"api_key": api_key, "rpm": rpm}, indent=2) + "\n", mode=0o600)
    except OSError as exc:
        return str(exc)
    return None


def launch_claude_terminal(
    platform: PlatformStrategy,
    script_path: Optional[str],
    log: Callable[[str], None],
) -> None:
    if script_path and not os.path.isfile(script_path):
        script_path = None
    args = platform.terminal_launch_command(script_path)
    log("Opening a terminal for Claude Code...")
    try:
        subprocess.Popen(args, stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    except OSError as exc:
        raise ProvisioningError(f"Unable to open a terminal: {exc}") from exc


def gauge_value_for(event: ProgressEvent) -> int:
    if event.is_log:
        return -1
    if event.phase == INSTALL_PHASE:
        return int(round(event.fraction * INSTALL_GAUGE_SHARE))
    return INSTALL_GAUGE_SHARE + int(round(event.fraction * (100 - INSTALL_GAUGE_SHARE)))


class InstallerFrame(wx.Frame):
    def __init__(self, session: Optional[ProvisioningSession] = None) -> None:  # pragma: no cover
        session = session or ProvisioningSession()
        super().__init__(None, title=f"Claude Code K2 Installer ({session.platform.label})", size=(880, 700))
        self.session = session
        self.worker_thread: Optional[threading.Thread] = None
        self.cancel_token: Optional[CancelToken] = None
        self._build_ui()
        self.Centre()

    def _build_ui(self) -> None:  # pragma: no cover
        panel = wx.Panel(self)
        root = wx.BoxSizer(wx.VERTICAL)

        title = wx.StaticText(panel, label="Install Claude Code with the Kimi K2 API")
        title_font = title.GetFont()
        title_font.MakeBold()
        title_font.PointSize += 2
        title.SetFont(title_font)
        title.SetName("Installer Title")
        root.Add(title, 0, wx.ALL, 12)

        note_lines = [
            "This installer checks for Node.js and Git, installs anything missing, installs Claude Code with npm, "
            "and points it at the Moonshot K2 endpoint.",
            "Leave the API key empty to only install the tools.",
        ]
        note = wx.StaticText(panel, label="\n".join(note_lines))
        note.Wrap(820)
        note.SetName("Instructions")
        root.Add(note, 0, wx.LEFT | wx.RIGHT | wx.BOTTOM, 12)

        admin_text = "Administrator: Yes" if is_admin() else "Administrator: No (a password prompt may appear)"
        self.admin_label = wx.StaticText(panel, label=admin_text)
        self.admin_label.SetName("Admin Status")
        root.Add(self.admin_label, 0, wx.LEFT | wx.RIGHT | wx.BOTTOM, 12)

        saved = load_saved_inputs(self.session.home)
        box = wx.StaticBox(panel, label="API settings")
        box_sizer = wx.StaticBoxSizer(box, wx.VERTICAL)
        grid = wx.FlexGridSizer(cols=2, vgap=6, hgap=8)
        grid.AddGrowableCol(1, 1)

        grid.Add(wx.StaticText(box, label="&API key:"), 0, wx.ALIGN_CENTER_VERTICAL)
        self.api_key_ctrl = wx.TextCtrl(box, value=saved["api_key"], style=wx.TE_PASSWORD)
        self.api_key_ctrl.SetName("API Key")
        grid.Add(self.api_key_ctrl, 1, wx.EXPAND)

        grid.Add(wx.StaticText(box, label="&Requests per minute:"), 0, wx.ALIGN_CENTER_VERTICAL)
        self.rpm_ctrl = wx.TextCtrl(box, value=saved["rpm"])
        self.rpm_ctrl.SetName("Requests Per Minute")
        grid.Add(self.rpm_ctrl, 0)
        box_sizer.Add(grid, 0, wx.ALL | wx.EXPAND, 6)

        self.persist_checkbox = wx.CheckBox(box, label="&Persist settings system-wide")
        self.persist_checkbox.SetName("Persist Settings")
        self.persist_checkbox.SetValue(False)
        self.persist_checkbox.SetToolTip(
            "When enabled, the settings are written to your user environment or shell profile. "
            "Otherwise a temporary launch script is created."
        )
        box_sizer.Add(self.persist_checkbox, 0, wx.ALL, 6)
        root.Add(box_sizer, 0, wx.LEFT | wx.RIGHT | wx.EXPAND | wx.BOTTOM, 12)

        btn_row = wx.BoxSizer(wx.HORIZONTAL)
        self.install_btn = wx.Button(panel, label="&Install")
        self.open_btn = wx.Button(panel, label="&Open Claude Code")
        self.restore_btn = wx.Button(panel, label="Re&store Defaults")
        self.close_btn = wx.Button(panel, label="&Close")

        self.install_btn.Bind(wx.EVT_BUTTON, self.on_install)
        self.open_btn.Bind(wx.EVT_BUTTON, self.on_open_claude)
        self.restore_btn.Bind(wx.EVT_BUTTON, self.on_restore)
        self.close_btn.Bind(wx.EVT_BUTTON, self.on_close)

        btn_row.Add(self.install_btn, 0, wx.RIGHT, 8)
        btn_row.Add(self.open_btn, 0, wx.RIGHT, 8)
        btn_row.Add(self.restore_btn, 0, wx.RIGHT, 8)
        btn_row.AddStretchSpacer(1)
        btn_row.Add(self.close_btn, 0)
        root.Add(btn_row, 0, wx.LEFT | wx.RIGHT | wx.EXPAND | wx.BOTTOM, 12)

        self.status_label = wx.StaticText(panel, label="Status: Ready")
        self.status_label.SetName("Current Status")
        root.Add(self.status_label, 0, wx.LEFT | wx.RIGHT | wx.BOTTOM, 8)

        self.gauge = wx.Gauge(panel, range=100, style=wx.GA_HORIZONTAL)
        self.gauge.SetValue(0)
        root.Add(self.gauge, 0, wx.LEFT | wx.RIGHT | wx.EXPAND | wx.BOTTOM, 12)

        log_label = wx.StaticText(panel, label="Installation Log")
        log_label.SetName("Log Label")
        root.Add(log_label, 0, wx.LEFT | wx.RIGHT | wx.BOTTOM, 4)

        self.log_ctrl = wx.TextCtrl(
            panel,
            style=wx.TE_MULTILINE | wx.TE_READONLY | wx.TE_DONTWRAP | wx.HSCROLL | wx.TE_RICH2,
        )
        self.log_ctrl.SetName("Installation Log")
        self.log_ctrl.SetMinSize((-1, 260))
        root.Add(self.log_ctrl, 1, wx.LEFT | wx.RIGHT | wx.BOTTOM | wx.EXPAND, 12)

        panel.SetSizer(root)
        self.install_btn.SetDefault()

    def log(self, message: str) -> None:
        wx.CallAfter(self._append_log, message)

    def _append_log(self, message: str) -> None:
        self.log_ctrl.AppendText(message + "\n")
        self.log_ctrl.ShowPosition(self.log_ctrl.GetLastPosition())

    def set_status(self, text: str) -> None:
        wx.CallAfter(self.status_label.SetLabel, f"Status: {text}")

    def set_gauge(self, value: int) -> None:
        value = max(0, min(100, value))
        wx.CallAfter(self.gauge.SetValue, value)

    def set_busy(self, busy: bool) -> None:
        def _apply() -> None:
            self.install_btn.Enable(not busy)
            self.open_btn.Enable(not busy)
            self.restore_btn.Enable(not busy)
        wx.CallAfter(_apply)

    def show_failure(self, step: Optional[str], error: Optional[BaseException]) -> None:
        where = f" during '{step}'" if step else ""
        wx.CallAfter(
            wx.MessageBox,
            f"Installation failed{where}:\n\n{error}\n\nSee the log for details.",
            "Installation Failed",
            wx.OK | wx.ICON_ERROR,
            self,
        )

    def is_running(self) -> bool:
        return bool(self.worker_thread and self.worker_thread.is_alive())

    def on_close(self, _event: wx.CommandEvent) -> None:
        if self.is_running():
            wx.MessageBox(
                "Installation is still running. Wait for it to finish before closing.",
                "Install In Progress",
                wx.OK | wx.ICON_INFORMATION,
                self,
            )
            return
        self.Close()

    def on_install(self, _event: wx.CommandEvent) -> None:
        if self.is_running():
            return

        api_key = self.api_key_ctrl.GetValue().strip()
        rpm = self.rpm_ctrl.GetValue().strip() or str(DEFAULT_RPM)
        persist = bool(self.persist_checkbox.GetValue())

        self.log_ctrl.Clear()
        self.session.logs.attach_file(reset_gui_last_run_log())
        self.set_status("Starting...")
        self.set_gauge(0)
        self.set_busy(True)
        self.cancel_token = CancelToken()

        self.worker_thread = threading.Thread(
            target=self._install_worker,
            args=(api_key, rpm, persist),
            daemon=True,
        )
        self.worker_thread.start()

    def _consume_events(self, channel: EventChannel) -> None:
        for event in channel:
            if event.is_log:
                self.log(event.message)
                continue
            self.set_status(event.message)
            self.set_gauge(gauge_value_for(event))

    def _run_phase(self, start: Callable[[EventChannel], PipelineOutcome]) -> PipelineOutcome:
        channel = self.session.new_channel()
        consumer = threading.Thread(target=self._consume_events, args=(channel,), daemon=True)
        consumer.start()
        try:
            return start(channel)
        finally:
            channel.close()
            consumer.join()
            if channel.dropped:
                self.log(f"{channel.dropped} log lines were not shown here; the log file has every line.")

    def _install_worker(self, api_key: str, rpm: str, persist: bool) -> None:
        try:
            outcome = self._run_phase(lambda channel: self.session.install(channel, self.cancel_token))
            if not outcome.succeeded:
                self.set_status("Failed")
                self.show_failure(outcome.failed_step, outcome.error)
                return

            self._run_phase(
                lambda channel: self.session.configure_api(api_key, rpm, persist, channel, self.cancel_token)
            )
            if api_key:
                err = save_inputs(api_key, rpm, self.session.home)
                if err:
                    self.log(f"Unable to remember the API settings: {err}")
            self.log("Installation complete. Click 'Open Claude Code' to start.")
            self.set_status("Complete")
            self.set_gauge(100)
        except ProvisioningError as exc:
            self.log(f"ERROR: {exc}")
            self.set_status("Failed")
            self.show_failure("Configure API", exc)
        except Exception as exc:
            self.log(f"ERROR: {exc}")
            self.log(traceback.format_exc().rstrip())
            self.set_status("Failed")
        finally:
            self.set_busy(False)

    def _show_new_session_logs(self, start: int) -> None:
        for line in self.session.get_logs()[start:]:
            self._append_log(line)

    def on_open_claude(self, _event: wx.CommandEvent) -> None:
        start = len(self.session.get_logs())
        try:
            launch_claude_terminal(self.session.platform, self.session.launch_script_path(), self.session.log)
        except ProvisioningError as exc:
            wx.MessageBox(str(exc), "Unable to Open Claude Code", wx.OK | wx.ICON_ERROR, self)
        finally:
            self._show_new_session_logs(start)

    def on_restore(self, _event: wx.CommandEvent) -> None:
        if self.is_running():
            return
        answer = wx.MessageBox(
            "Remove the K2 API settings (Claude config files and environment variables)?",
            "Restore Defaults",
            wx.YES_NO | wx.ICON_QUESTION,
            self,
        )
        if answer != wx.YES:
            return
        start = len(self.session.get_logs())
        try:
            self.session.restore_configuration()
            self.set_status("Default configuration restored")
        except ProvisioningError as exc:
            self.set_status("Restore finished with errors")
            wx.MessageBox(str(exc), "Restore Defaults", wx.OK | wx.ICON_WARNING, self)
        finally:
            self._show_new_session_logs(start)


class InstallerApp(wx.App):
    def OnInit(self) -> bool:
        try:
            platform = detect_platform()
        except UnsupportedPlatformError as exc:
            wx.MessageBox(
                f"{exc}\n\nThis installer supports Windows, macOS and Linux.",
                "Unsupported OS",
                wx.OK | wx.ICON_ERROR,
            )
            return False
        frame = InstallerFrame(ProvisioningSession(platform))
        frame.Show()
        return True


def main() -> int:
    app = InstallerApp(False)
    app.MainLoop()
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
