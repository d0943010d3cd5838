import json
import os
import tempfile
import unittest
from unittest.mock import MagicMock, patch

import k2_pipeline as m
from k2_dependencies import CLAUDE_SPEC, GIT_SPEC, NODE_SPEC
from k2_errors import (
    ConfigWriteFailedError,
    InstallFailedError,
    InvalidConfigurationError,
    NotFoundError,
    ProvisioningCancelledError,
)
from k2_platform import LinuxPlatform
from k2_process import CancelToken


class PipelineTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory(dir=".")
        self.home = os.path.abspath(os.path.join(self._tmp.name, "home"))
        self.temp_dir = os.path.abspath(os.path.join(self._tmp.name, "tmp"))
        os.makedirs(self.home)
        os.makedirs(self.temp_dir)
        self.session = m.ProvisioningSession(
            platform=LinuxPlatform(),
            home=self.home,
            temp_dir=self.temp_dir,
            shell="/bin/bash",
        )

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def run_steps(self, steps, cancel=None):
        channel = m.EventChannel()
        pipeline = m.ProvisioningPipeline(
            m.INSTALL_PHASE, steps, channel, self.session.logs, self.session.context(cancel)
        )
        outcome = pipeline.run()
        return outcome, list(channel), channel

    @staticmethod
    def state_events(events):
        return [event for event in events if not event.is_log]


class ProgressEventTests(unittest.TestCase):
    def test_percent_complete(self) -> None:
        self.assertEqual(m.ProgressEvent("install", "x", "msg", 0.254).percent_complete, 25)
        self.assertEqual(m.ProgressEvent("install", "x", "msg", m.LOG_ONLY).percent_complete, -1)
        self.assertTrue(m.ProgressEvent("install", "x", "msg", m.LOG_ONLY).is_log)


class EventChannelTests(unittest.TestCase):
    def test_log_events_are_dropped_at_capacity_but_state_events_are_kept(self) -> None:
        channel = m.EventChannel(log_capacity=2, headroom=4)
        accepted = [channel.publish(m.ProgressEvent("install", "", f"line {i}", m.LOG_ONLY)) for i in range(5)]
        self.assertEqual(accepted, [True, True, False, False, False])
        self.assertEqual(channel.dropped, 3)

        self.assertTrue(channel.publish(m.ProgressEvent("install", "step", "Running step...", 0.5)))
        self.assertTrue(channel.publish(m.ProgressEvent("install", "step", "done", 1.0, final=True)))
        channel.close()

        events = list(channel)
        self.assertEqual([event.message for event in events], ["line 0", "line 1", "Running step...", "done"])
        self.assertTrue(events[-1].final)

    def test_close_is_idempotent_and_rejects_later_events(self) -> None:
        channel = m.EventChannel()
        self.assertTrue(channel.close())
        self.assertFalse(channel.close())
        self.assertTrue(channel.closed)
        self.assertFalse(channel.publish(m.ProgressEvent("install", "", "late", 1.0)))
        self.assertEqual(list(channel), [])


class LogSinkTests(unittest.TestCase):
    def test_append_writes_persistent_file(self) -> None:
        with tempfile.TemporaryDirectory(dir=".") as tmp_dir:
            path = os.path.join(tmp_dir, "last-run.log")
            sink = m.LogSink(path)
            sink.append("first")
            sink.append("second")
            with open(path, "r", encoding="utf-8") as f:
                self.assertEqual(f.read(), "first\nsecond\n")
            self.assertEqual(sink.snapshot(), ["first", "second"])

    def test_write_warning_is_shown_once(self) -> None:
        with tempfile.TemporaryDirectory(dir=".") as tmp_dir:
            sink = m.LogSink(os.path.join(tmp_dir, "missing", "last-run.log"))
            sink.append("first")
            sink.append("second")
            lines = sink.snapshot()
            warnings = [line for line in lines if line.startswith("Persistent log write warning:")]
            self.assertEqual(len(warnings), 1)
            self.assertEqual(lines[0], "first")
            self.assertIn("second", lines)


class ProvisioningPipelineTests(PipelineTestCase):
    def test_rejects_empty_steps_and_non_positive_weights(self) -> None:
        ctx = self.session.context()
        with self.assertRaises(ValueError):
            m.ProvisioningPipeline(m.INSTALL_PHASE, [], m.EventChannel(), self.session.logs, ctx)
        with self.assertRaises(ValueError):
            m.ProvisioningPipeline(
                m.INSTALL_PHASE,
                [m.ProvisioningStep("Broken", lambda _ctx: None, 0)],
                m.EventChannel(),
                self.session.logs,
                ctx,
            )

    def test_successful_run_reports_monotonic_progress_to_one(self) -> None:
        calls = []
        steps = [
            m.ProvisioningStep("First", lambda ctx: calls.append("first"), 1),
            m.ProvisioningStep("Second", lambda ctx: calls.append("second"), 2),
            m.ProvisioningStep("Third", lambda ctx: calls.append("third"), 7),
        ]
        outcome, events, channel = self.run_steps(steps)

        self.assertTrue(outcome.succeeded)
        self.assertEqual(calls, ["first", "second", "third"])
        self.assertAlmostEqual(sum(outcome.increments), 1.0)
        self.assertEqual(outcome.increments, [0.1, 0.2, 0.7])

        states = self.state_events(events)
        fractions = [event.fraction for event in states]
        self.assertEqual(fractions, sorted(fractions))
        self.assertEqual(states[-1].fraction, 1.0)
        self.assertTrue(states[-1].final)
        self.assertEqual(states[-1].message, "Install phase complete")
        self.assertEqual(sum(1 for event in states if event.final), 1)
        self.assertTrue(channel.closed)
        self.assertFalse(channel.close())

    def test_fractional_weights(self) -> None:
        steps = [
            m.ProvisioningStep("Small", lambda ctx: None, 0.5),
            m.ProvisioningStep("Large", lambda ctx: None, 1.5),
        ]
        outcome, events, _channel = self.run_steps(steps)
        self.assertTrue(outcome.succeeded)
        self.assertEqual(outcome.increments, [0.25, 0.75])
        self.assertEqual([event.fraction for event in self.state_events(events)], [0.0, 0.25, 0.25, 1.0, 1.0])

    def test_tolerant_failure_continues(self) -> None:
        def detect(ctx):
            raise NotFoundError("Node.js is not installed")

        after = MagicMock()
        steps = [
            m.ProvisioningStep("Detect Node.js", detect, 1, tolerant=True),
            m.ProvisioningStep("Install Node.js", after, 1),
        ]
        outcome, events, _channel = self.run_steps(steps)

        self.assertTrue(outcome.succeeded)
        after.assert_called_once()
        self.assertEqual(outcome.warnings, ["Detect Node.js: Node.js is not installed"])
        self.assertIn("Detect Node.js failed, continuing: Node.js is not installed", self.session.get_logs())
        self.assertIn("Detect Node.js did not pass, continuing", [event.message for event in events])
        self.assertAlmostEqual(sum(outcome.increments), 1.0)

    def test_fatal_failure_stops_later_steps(self) -> None:
        error = InstallFailedError("Git installation failed", exit_code=1)

        def install(ctx):
            raise error

        later = MagicMock()
        steps = [
            m.ProvisioningStep("Check system", lambda ctx: None, 1),
            m.ProvisioningStep("Install Git", install, 1),
            m.ProvisioningStep("Install Claude Code", later, 1),
        ]
        outcome, events, channel = self.run_steps(steps)

        self.assertEqual(outcome.state, m.PipelineState.FAILED)
        self.assertEqual(outcome.failed_step, "Install Git")
        self.assertIs(outcome.error, error)
        later.assert_not_called()

        last = self.state_events(events)[-1]
        self.assertTrue(last.final)
        self.assertIs(last.error, error)
        self.assertEqual(last.step, "Install Git")
        self.assertAlmostEqual(last.fraction, 1 / 3)
        self.assertTrue(channel.closed)

    def test_unexpected_exception_in_tolerant_step_continues(self) -> None:
        def detect(ctx):
            raise ValueError("unexpected version output")

        after = MagicMock()
        outcome, _events, _channel = self.run_steps(
            [
                m.ProvisioningStep("Detect Node.js", detect, 1, tolerant=True),
                m.ProvisioningStep("Install Node.js", after, 1),
            ]
        )
        self.assertTrue(outcome.succeeded)
        self.assertIsNone(outcome.failed_step)
        after.assert_called_once()
        self.assertEqual(outcome.warnings, ["Detect Node.js: unexpected version output"])
        logs = self.session.get_logs()
        self.assertTrue(any("Traceback" in line for line in logs))
        self.assertIn("Detect Node.js failed, continuing: unexpected version output", logs)

    def test_unexpected_exception_in_fatal_step_stops_pipeline(self) -> None:
        def broken(ctx):
            raise KeyError("node")

        later = MagicMock()
        outcome, _events, _channel = self.run_steps(
            [
                m.ProvisioningStep("Broken", broken, 1),
                m.ProvisioningStep("Later", later, 1),
            ]
        )
        self.assertEqual(outcome.state, m.PipelineState.FAILED)
        self.assertIsInstance(outcome.error, KeyError)
        later.assert_not_called()
        self.assertTrue(any("Traceback" in line for line in self.session.get_logs()))

    def test_cancellation_is_fatal_even_for_tolerant_steps(self) -> None:
        def cancelled(ctx):
            raise ProvisioningCancelledError("Operation cancelled")

        later = MagicMock()
        outcome, _events, _channel = self.run_steps(
            [
                m.ProvisioningStep("Detect Git", cancelled, 1, tolerant=True),
                m.ProvisioningStep("Install Git", later, 1),
            ]
        )
        self.assertEqual(outcome.failed_step, "Detect Git")
        self.assertIsInstance(outcome.error, ProvisioningCancelledError)
        later.assert_not_called()

    def test_cancel_token_stops_before_first_step(self) -> None:
        token = CancelToken()
        token.cancel()
        first = MagicMock()
        outcome, _events, _channel = self.run_steps([m.ProvisioningStep("First", first, 1)], cancel=token)
        first.assert_not_called()
        self.assertIsInstance(outcome.error, ProvisioningCancelledError)

    def test_step_logs_flow_to_channel_and_sink(self) -> None:
        def step(ctx):
            ctx.log("hello from step")

        _outcome, events, _channel = self.run_steps([m.ProvisioningStep("Talk", step, 1)])
        log_events = [event for event in events if event.is_log]
        self.assertEqual([event.message for event in log_events], ["hello from step"])
        self.assertEqual(log_events[0].step, "Talk")
        self.assertIn("hello from step", self.session.get_logs())


class SessionInstallTests(PipelineTestCase):
    def test_install_runs_steps_in_order(self) -> None:
        with (
            patch.object(m, "require", side_effect=[NotFoundError("Node.js is not installed"), MagicMock()]) as require,
            patch.object(m, "install_dependency") as install_dependency,
            patch.object(m, "verify_installation") as verify,
        ):
            channel = self.session.new_channel()
            outcome = self.session.install(channel)

        self.assertTrue(outcome.succeeded)
        self.assertEqual([c.args[0] for c in require.call_args_list], [NODE_SPEC, GIT_SPEC])
        self.assertEqual(
            [c.args[0] for c in install_dependency.call_args_list],
            [NODE_SPEC, GIT_SPEC, CLAUDE_SPEC],
        )
        verify.assert_called_once()
        self.assertEqual(len(outcome.warnings), 1)
        self.assertAlmostEqual(sum(outcome.increments), 1.0)
        self.assertTrue(channel.closed)
        self.assertIn("Platform: Linux", self.session.get_logs())

    def test_install_failure_is_reported_in_outcome(self) -> None:
        def install(spec, ctx):
            if spec is GIT_SPEC:
                raise InstallFailedError("Git installation failed")

        with (
            patch.object(m, "require"),
            patch.object(m, "install_dependency", side_effect=install) as install_dependency,
            patch.object(m, "verify_installation") as verify,
        ):
            outcome = self.session.install()

        self.assertEqual(outcome.failed_step, "Install Git")
        self.assertEqual(install_dependency.call_count, 2)
        verify.assert_not_called()

    def test_install_steps_weights(self) -> None:
        steps = self.session.install_steps()
        self.assertEqual([step.weight for step in steps], [5, 10, 20, 10, 20, 20, 5])
        self.assertEqual([step.name for step in steps if step.tolerant], ["Detect Node.js", "Detect Git"])


class SessionConfigureTests(PipelineTestCase):
    def test_empty_api_key_skips_configuration(self) -> None:
        channel = self.session.new_channel()
        outcome = self.session.configure_api("   ", "3", False, channel)

        self.assertTrue(outcome.succeeded)
        events = list(channel)
        self.assertEqual(len(events), 2)
        self.assertTrue(events[-1].final)
        self.assertEqual(events[-1].fraction, 1.0)
        self.assertIn("No API key entered, skipping API configuration", self.session.get_logs())
        self.assertFalse(os.path.exists(os.path.join(self.home, ".claude.json")))

    def test_invalid_rate_limit_raises(self) -> None:
        with self.assertRaises(InvalidConfigurationError):
            self.session.configure_api("sk-test", "0", False)
        self.assertFalse(os.path.exists(os.path.join(self.home, ".claude.json")))

    def test_configure_writes_launch_script_and_json(self) -> None:
        channel = self.session.new_channel()
        outcome = self.session.configure_api("sk-1234567890abcdef", "30", False, channel)

        self.assertTrue(outcome.succeeded)
        self.assertEqual(self.state_events(list(channel))[-1].fraction, 1.0)
        with open(os.path.join(self.home, ".claude.json"), "r", encoding="utf-8") as f:
            self.assertEqual(json.load(f)["requestDelayMs"], 2000)
        self.assertTrue(os.path.isfile(self.session.launch_script_path()))
        logs = self.session.get_logs()
        self.assertIn("API key: sk-1234567...", logs)
        self.assertFalse(any("sk-1234567890abcdef" in line for line in logs))

    def test_write_failures_are_tolerated(self) -> None:
        with patch.object(
            m.ConfigurationWriter, "write_json_config", side_effect=ConfigWriteFailedError("disk full")
        ):
            outcome = self.session.configure_api("sk-test", 3, False)
        self.assertTrue(outcome.succeeded)
        self.assertEqual(outcome.warnings, ["Write Claude config: disk full"])

    def test_persist_then_restore_round_trip(self) -> None:
        bashrc = os.path.join(self.home, ".bashrc")
        original = "# bashrc\nexport EDITOR=vim\n"
        with open(bashrc, "w", encoding="utf-8") as f:
            f.write(original)

        self.session.restore_configuration()
        self.session.configure_api("sk-test", 3, True)
        with open(bashrc, "r", encoding="utf-8") as f:
            self.assertIn("export ANTHROPIC_API_KEY=sk-test", f.read())

        self.session.restore_configuration()
        with open(bashrc, "r", encoding="utf-8") as f:
            self.assertEqual(f.read(), original)
        self.assertFalse(os.path.exists(os.path.join(self.home, ".claude.json")))
        self.assertIn("Default configuration restored", self.session.get_logs())


if __name__ == "__main__":
    unittest.main()
