import enum
import functools
import os
import queue
import threading
import traceback
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional, Union

import httpx

from k2_config import APIConfiguration, ConfigurationWriter, parse_rpm
from k2_dependencies import (
    CLAUDE_SPEC,
    GIT_SPEC,
    NODE_SPEC,
    DependencySpec,
    StepContext,
    installer_for,
    require,
    verify_installation,
)
from k2_errors import ProvisioningCancelledError, ProvisioningError
from k2_fetch import MirrorFetcher
from k2_platform import (
    PlatformStrategy,
    append_persistent_log_line,
    describe_system,
    detect_platform,
    is_admin,
)
from k2_process import CancelToken, SearchPath, capture_output, run_command


LOG_ONLY = -1.0
DEFAULT_LOG_CAPACITY = 100
STATE_EVENT_HEADROOM = 64
INSTALL_PHASE = "install"
CONFIGURE_PHASE = "configure"
_CLOSED = object()


@dataclass(frozen=True)
class ProgressEvent:
    phase: str
    step: str
    message: str
    fraction: float
    error: Optional[BaseException] = None
    final: bool = False

    @property
    def is_log(self) -> bool:
        return self.fraction == LOG_ONLY

    @property
    def percent_complete(self) -> int:
        if self.is_log:
            return -1
        return int(round(self.fraction * 100))


class LogSink:
    def __init__(self, persistent_path: Optional[str] = None) -> None:
        self._lines: list[str] = []
        self._lock = threading.Lock()
        self.persistent_path = persistent_path
        self._write_warning_shown = False

    def attach_file(self, path: Optional[str]) -> None:
        with self._lock:
            self.persistent_path = path
            self._write_warning_shown = False

    def append(self, message: str) -> None:
        with self._lock:
            self._lines.append(message)
            err = append_persistent_log_line(self.persistent_path, message)
            if err and not self._write_warning_shown:
                self._write_warning_shown = True
                self._lines.append(f"Persistent log write warning: {err}")

    def snapshot(self) -> list[str]:
        with self._lock:
            return list(self._lines)


class EventChannel:
    """Bounded event queue between one pipeline and one consumer.

    Log-only events are dropped once ``log_capacity`` events are queued; state
    events block instead, using the extra headroom, so progress and the final
    event always arrive. Iterating yields events until ``close()``.
    """

    def __init__(self, log_capacity: int = DEFAULT_LOG_CAPACITY, headroom: int = STATE_EVENT_HEADROOM) -> None:
        self.log_capacity = log_capacity
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=log_capacity + headroom)
        self._lock = threading.Lock()
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: ProgressEvent) -> bool:
        if self._closed:
            return False
        if event.is_log:
            if self._queue.qsize() >= self.log_capacity:
                self._count_drop()
                return False
            try:
                self._queue.put_nowait(event)
            except queue.Full:
                self._count_drop()
                return False
            return True
        self._queue.put(event)
        return True

    def _count_drop(self) -> None:
        with self._lock:
            self.dropped += 1

    def close(self) -> bool:
        with self._lock:
            if self._closed:
                return False
            self._closed = True
        self._queue.put(_CLOSED)
        return True

    def __iter__(self) -> Iterator[ProgressEvent]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                return
            yield item  # type: ignore[misc]


@dataclass(frozen=True)
class ProvisioningStep:
    name: str
    action: Callable[[StepContext], object]
    weight: float
    tolerant: bool = False


class PipelineState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class PipelineOutcome:
    phase: str
    state: PipelineState = PipelineState.IDLE
    failed_step: Optional[str] = None
    error: Optional[BaseException] = None
    increments: list[float] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == PipelineState.COMPLETED


class ProvisioningPipeline:
    def __init__(
        self,
        phase: str,
        steps: list[ProvisioningStep],
        channel: EventChannel,
        logs: LogSink,
        context: StepContext,
    ) -> None:
        if not steps:
            raise ValueError("A pipeline needs at least one step")
        for step in steps:
            if step.weight <= 0:
                raise ValueError(f"Step weight must be positive: {step.name}")
        self.phase = phase
        self.steps = list(steps)
        self.channel = channel
        self.logs = logs
        self.context = context
        self.total_weight = sum(step.weight for step in steps)
        self.state = PipelineState.IDLE
        self.current_index: Optional[int] = None
        self.fraction = 0.0
        self._completed_weight = 0.0

    @property
    def current_step(self) -> str:
        if self.current_index is None:
            return ""
        return self.steps[self.current_index].name

    def log(self, message: str) -> None:
        self.logs.append(message)
        self.channel.publish(ProgressEvent(self.phase, self.current_step, message, LOG_ONLY))

    def _emit(self, message: str, error: Optional[BaseException] = None, final: bool = False) -> None:
        self.channel.publish(ProgressEvent(self.phase, self.current_step, message, self.fraction, error, final))

    def _advance(self, step: ProvisioningStep, outcome: PipelineOutcome) -> None:
        outcome.increments.append(step.weight / self.total_weight)
        self._completed_weight += step.weight
        self.fraction = self._completed_weight / self.total_weight

    def _fail(self, outcome: PipelineOutcome, step: ProvisioningStep, exc: BaseException) -> PipelineOutcome:
        self.state = PipelineState.FAILED
        outcome.state = PipelineState.FAILED
        outcome.failed_step = step.name
        outcome.error = exc
        self.log(f"{step.name} failed: {exc}")
        self._emit(f"{step.name} failed: {exc}", error=exc, final=True)
        return outcome

    def run(self) -> PipelineOutcome:
        outcome = PipelineOutcome(self.phase, PipelineState.RUNNING)
        self.state = PipelineState.RUNNING
        try:
            for index, step in enumerate(self.steps):
                self.current_index = index
                try:
                    self.context.cancel.raise_if_cancelled()
                    self._emit(f"Running {step.name}...")
                    step.action(self.context)
                except ProvisioningCancelledError as exc:
                    return self._fail(outcome, step, exc)
                except Exception as exc:
                    if not isinstance(exc, (ProvisioningError, OSError)):
                        self.log(traceback.format_exc().rstrip())
                    if not step.tolerant:
                        return self._fail(outcome, step, exc)
                    self.log(f"{step.name} failed, continuing: {exc}")
                    outcome.warnings.append(f"{step.name}: {exc}")
                    self._advance(step, outcome)
                    self._emit(f"{step.name} did not pass, continuing")
                    continue
                self._advance(step, outcome)
                self._emit(f"{step.name} complete")

            self.fraction = 1.0
            self.state = PipelineState.COMPLETED
            outcome.state = PipelineState.COMPLETED
            self._emit(f"{self.phase.capitalize()} phase complete", final=True)
            return outcome
        finally:
            self.channel.close()


def install_dependency(spec: DependencySpec, ctx: StepContext) -> None:
    installer_for(spec, ctx).install()


class ProvisioningSession:
    def __init__(
        self,
        platform: Optional[PlatformStrategy] = None,
        home: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
        runner: Callable[..., int] = run_command,
        capturer: Callable[..., Optional[str]] = capture_output,
        temp_dir: Optional[str] = None,
        shell: Optional[str] = None,
        log_capacity: int = DEFAULT_LOG_CAPACITY,
        persistent_log_path: Optional[str] = None,
    ) -> None:
        self.platform = platform or detect_platform()
        self.home = home or os.path.expanduser("~")
        self.http_client = http_client
        self.runner = runner
        self.capturer = capturer
        self.temp_dir = temp_dir
        self.shell = shell
        self.log_capacity = log_capacity
        self.logs = LogSink(persistent_log_path)
        self.search_path = SearchPath(self.platform)
        self._active: Optional[ProvisioningPipeline] = None

    def log(self, message: str) -> None:
        active = self._active
        if active is not None:
            active.log(message)
        else:
            self.logs.append(message)

    def get_logs(self) -> list[str]:
        return self.logs.snapshot()

    def new_channel(self) -> EventChannel:
        return EventChannel(self.log_capacity)

    def writer(self, cancel: Optional[CancelToken] = None) -> ConfigurationWriter:
        return ConfigurationWriter(self.platform, self.home, self.log, cancel, self.shell, self.temp_dir)

    def launch_script_path(self) -> str:
        return self.writer().launch_script_path()

    def context(self, cancel: Optional[CancelToken] = None) -> StepContext:
        cancel = cancel or CancelToken()
        fetcher = MirrorFetcher(self.log, client=self.http_client, cancel=cancel)
        ctx = StepContext(self.platform, self.log, self.search_path, fetcher, cancel, runner=self.runner, capturer=self.capturer)
        if self.temp_dir:
            ctx.temp_dir = self.temp_dir
        return ctx

    def _check_system(self, ctx: StepContext) -> None:
        describe_system(ctx.log)
        ctx.log(f"Platform: {self.platform.label}")
        if self.logs.persistent_path:
            ctx.log(f"Persistent log file: {self.logs.persistent_path}")
        if not is_admin():
            ctx.log("Not running as administrator; system installs will ask for a password or may fail")

    def install_steps(self) -> list[ProvisioningStep]:
        return [
            ProvisioningStep("Check system", self._check_system, 5),
            ProvisioningStep("Detect Node.js", functools.partial(require, NODE_SPEC), 10, tolerant=True),
            ProvisioningStep("Install Node.js", functools.partial(install_dependency, NODE_SPEC), 20),
            ProvisioningStep("Detect Git", functools.partial(require, GIT_SPEC), 10, tolerant=True),
            ProvisioningStep("Install Git", functools.partial(install_dependency, GIT_SPEC), 20),
            ProvisioningStep("Install Claude Code", functools.partial(install_dependency, CLAUDE_SPEC), 20),
            ProvisioningStep("Verify installation", verify_installation, 5),
        ]

    def run_pipeline(
        self,
        phase: str,
        steps: list[ProvisioningStep],
        channel: Optional[EventChannel] = None,
        cancel: Optional[CancelToken] = None,
    ) -> PipelineOutcome:
        channel = channel or self.new_channel()
        pipeline = ProvisioningPipeline(phase, steps, channel, self.logs, self.context(cancel))
        self._active = pipeline
        try:
            return pipeline.run()
        finally:
            self._active = None

    def install(self, channel: Optional[EventChannel] = None, cancel: Optional[CancelToken] = None) -> PipelineOutcome:
        return self.run_pipeline(INSTALL_PHASE, self.install_steps(), channel, cancel)

    def configure_steps(
        self,
        api_key: str,
        rpm: Union[str, int, None],
        persist_system_wide: bool,
        cancel: Optional[CancelToken] = None,
    ) -> list[ProvisioningStep]:
        writer = self.writer(cancel)
        parsed: list[APIConfiguration] = []

        def validate(ctx: StepContext) -> None:
            config = APIConfiguration(api_key.strip(), parse_rpm(rpm), persist_system_wide)
            parsed.append(config)
            ctx.log(f"API key: {config.key_preview}")
            ctx.log(
                f"Rate limit: {config.requests_per_minute} requests/minute "
                f"(request delay {config.request_delay_ms}ms)"
            )

        def write_environment(ctx: StepContext) -> None:
            config = parsed[0]
            if config.persist_system_wide:
                writer.persist_environment(config)
            else:
                writer.write_launch_script(config)

        def write_claude_config(ctx: StepContext) -> None:
            writer.write_json_config(parsed[0])

        return [
            ProvisioningStep("Validate API settings", validate, 5),
            ProvisioningStep("Write environment", write_environment, 45, tolerant=True),
            ProvisioningStep("Write Claude config", write_claude_config, 50, tolerant=True),
        ]

    def configure_api(
        self,
        api_key: str,
        rpm: Union[str, int, None],
        persist_system_wide: bool,
        channel: Optional[EventChannel] = None,
        cancel: Optional[CancelToken] = None,
    ) -> PipelineOutcome:
        if not (api_key or "").strip():
            channel = channel or self.new_channel()
            message = "No API key entered, skipping API configuration"
            self.logs.append(message)
            channel.publish(ProgressEvent(CONFIGURE_PHASE, "", message, LOG_ONLY))
            channel.publish(ProgressEvent(CONFIGURE_PHASE, "", message, 1.0, final=True))
            channel.close()
            return PipelineOutcome(CONFIGURE_PHASE, PipelineState.COMPLETED)

        steps = self.configure_steps(api_key, rpm, persist_system_wide, cancel)
        outcome = self.run_pipeline(CONFIGURE_PHASE, steps, channel, cancel)
        if outcome.error is not None:
            raise outcome.error
        return outcome

    def restore_configuration(self) -> None:
        self.writer().restore()
