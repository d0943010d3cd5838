import os
import stat
import sys
import tempfile
import unittest
from unittest.mock import patch

import k2_process as m
from k2_errors import CommandLaunchError, CommandTimeoutError, ProvisioningCancelledError
from k2_platform import LinuxPlatform


def python_command(code: str) -> list[str]:
    return [sys.executable, "-c", code]


class RunCommandTests(unittest.TestCase):
    def test_run_command_streams_stdout_and_stderr_and_returns_exit_code(self) -> None:
        logs: list[str] = []
        code = m.run_command(
            python_command(
                "import sys; print('out line'); print('', flush=True); "
                "sys.stderr.write('err line\\n'); sys.exit(3)"
            ),
            logs.append,
        )
        self.assertEqual(code, 3)
        self.assertTrue(logs[0].startswith("> "))
        self.assertIn("out line", logs)
        self.assertIn("err line", logs)
        self.assertNotIn("", logs)

    def test_run_command_passes_env_and_cwd(self) -> None:
        logs: list[str] = []
        with tempfile.TemporaryDirectory(dir=".") as tmp_dir:
            env = dict(os.environ, K2_TEST_VALUE="hello")
            code = m.run_command(
                python_command("import os; print(os.environ['K2_TEST_VALUE']); print(os.getcwd())"),
                logs.append,
                env=env,
                cwd=tmp_dir,
            )
            self.assertEqual(code, 0)
            self.assertIn("hello", logs)
            self.assertIn(os.path.realpath(tmp_dir), [os.path.realpath(line) for line in logs[1:]])

    def test_run_command_raises_launch_error_for_missing_executable(self) -> None:
        logs: list[str] = []
        with self.assertRaises(CommandLaunchError):
            m.run_command(["definitely-not-a-real-command-k2"], logs.append)

    def test_run_command_stops_child_when_cancelled(self) -> None:
        token = m.CancelToken()
        token.cancel()
        with self.assertRaises(ProvisioningCancelledError):
            m.run_command(python_command("import time; time.sleep(30)"), lambda _line: None, cancel=token)

    def test_run_command_enforces_timeout(self) -> None:
        with self.assertRaises(CommandTimeoutError):
            m.run_command(python_command("import time; time.sleep(30)"), lambda _line: None, timeout=0.5)


class CaptureOutputTests(unittest.TestCase):
    def test_capture_output_returns_stdout(self) -> None:
        self.assertEqual(m.capture_output(python_command("print('v20.10.0')")), "v20.10.0")

    def test_capture_output_falls_back_to_stderr(self) -> None:
        out = m.capture_output(python_command("import sys; sys.stderr.write('git version 2.50.1\\n')"))
        self.assertEqual(out, "git version 2.50.1")

    def test_capture_output_returns_none_on_failure(self) -> None:
        self.assertIsNone(m.capture_output(python_command("import sys; sys.exit(1)")))
        self.assertIsNone(m.capture_output(["definitely-not-a-real-command-k2"]))

    def test_where_all_returns_empty_on_launch_failure(self) -> None:
        with patch.object(m.subprocess, "run", side_effect=OSError("missing")):
            self.assertEqual(m.where_all("node", LinuxPlatform()), [])

    def test_where_all_lists_every_hit_once(self) -> None:
        calls = []

        def capturer(args, env=None):
            calls.append((args, env))
            return "/opt/node/bin/node\n\n/usr/bin/node\n/opt/node/bin/node\n"

        hits = m.where_all("node", LinuxPlatform(), {"PATH": "/opt/node/bin"}, capturer)
        self.assertEqual(hits, ["/opt/node/bin/node", "/usr/bin/node"])
        self.assertEqual(calls, [(["which", "-a", "node"], {"PATH": "/opt/node/bin"})])
        self.assertEqual(m.where_all("node", LinuxPlatform(), capturer=lambda args, env=None: None), [])


class CancelTokenTests(unittest.TestCase):
    def test_cancel_token_sleep_and_check(self) -> None:
        token = m.CancelToken()
        token.sleep(0)
        token.raise_if_cancelled()
        token.cancel()
        self.assertTrue(token.is_set())
        with self.assertRaises(ProvisioningCancelledError):
            token.raise_if_cancelled()
        with self.assertRaises(ProvisioningCancelledError):
            token.sleep(5)


@unittest.skipIf(os.name == "nt", "POSIX executable bits")
class SearchPathTests(unittest.TestCase):
    def test_add_prepends_and_dedupes(self) -> None:
        search_path = m.SearchPath(LinuxPlatform())
        self.assertTrue(search_path.add("/opt/a"))
        self.assertTrue(search_path.add("/opt/b"))
        self.assertFalse(search_path.add("/opt/a/"))
        self.assertEqual(search_path.directories(), ["/opt/b", "/opt/a"])

    def test_record_tracks_dependency_and_environ_extends_path(self) -> None:
        search_path = m.SearchPath(LinuxPlatform())
        search_path.record("node", "/opt/node/bin")
        self.assertEqual(search_path.resolved, {"node": "/opt/node/bin"})
        env = search_path.environ({"PATH": "/usr/bin"})
        self.assertEqual(env["PATH"], os.pathsep.join(["/opt/node/bin", "/usr/bin"]))

    def test_which_finds_executables_in_added_directories(self) -> None:
        with tempfile.TemporaryDirectory(dir=".") as tmp_dir:
            tool = os.path.join(tmp_dir, "k2-fake-tool")
            with open(tool, "w", encoding="utf-8") as f:
                f.write("#!/bin/sh\necho ok\n")
            os.chmod(tool, os.stat(tool).st_mode | stat.S_IXUSR)

            search_path = m.SearchPath(LinuxPlatform())
            self.assertIsNone(search_path.which("k2-fake-tool"))
            search_path.add(os.path.abspath(tmp_dir))
            self.assertEqual(search_path.which("k2-fake-tool"), os.path.join(os.path.abspath(tmp_dir), "k2-fake-tool"))


class ExitCodeTests(unittest.TestCase):
    def test_format_exit_code_renders_windows_errno(self) -> None:
        self.assertEqual(m.format_exit_code(1), "1")
        self.assertTrue(m.is_probably_windows_errno_exit_code(4294963214))
        self.assertEqual(m.format_exit_code(4294963214), "4294963214 (Windows errno -4082)")


if __name__ == "__main__":
    unittest.main()
