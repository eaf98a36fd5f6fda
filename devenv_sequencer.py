"""Idempotent provisioning sequencer.

A :class:`Sequencer` owns an ordered catalog of :class:`Step` objects.  Each
step carries a mandatory ``is_satisfied`` predicate that is evaluated before
its ``apply`` action so that re-running a catalog against a partially
provisioned host only performs the work that is still missing.

Steps are executed strictly one after another.  They mutate shared host
state (files, daemons, application-server domains) and none of the external
tools being driven offers a locking primitive, so no parallelism is offered.

Failures raised by a step never escape :meth:`Sequencer.run`; they are turned
into :class:`StepRecord` entries of the returned :class:`RunReport`.  Only
usage errors (unknown or duplicate step names, dependency cycles) propagate.
"""
from __future__ import annotations

import dataclasses
import enum
import logging
import os
import pathlib
import shlex
import shutil
import subprocess
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

LOG = logging.getLogger(__name__)

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

MIN_CHECK_SECONDS = 0.05


def log_success(logger: logging.Logger, msg: str, *args: Any) -> None:
    logger.log(SUCCESS, msg, *args)


class StepError(Exception):
    """Base class for failures raised while applying a step."""


class PrerequisiteMissing(StepError):
    """A required tool, file or directory is not available."""


class ExternalCommandFailed(StepError):
    """An external command returned a nonzero status."""

    def __init__(
        self,
        cmd: Sequence[str],
        returncode: int,
        output: str = "",
        message: Optional[str] = None,
    ) -> None:
        self.cmd = list(cmd)
        self.returncode = returncode
        self.output = output
        if message is None:
            message = f"Command {' '.join(self.cmd)!r} exited with status {returncode}"
            if output.strip():
                message += f": {output.strip()}"
        super().__init__(message)


class TimeoutExceeded(ExternalCommandFailed):
    """A readiness wait did not observe the expected state in time."""

    def __init__(self, description: str, timeout: float) -> None:
        self.description = description
        self.timeout = timeout
        super().__init__([], -1, message=f"Timed out after {timeout:g}s waiting for {description}")


class UserAbort(Exception):
    """The user declined a confirmation; a normal negative outcome."""


class SequencerError(Exception):
    """Catalog definition or selection errors.  Always fatal."""


class UnknownStepError(SequencerError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown step: {name!r}")


class DuplicateStepError(SequencerError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Step {name!r} is already registered")


class DependencyCycleError(SequencerError):
    def __init__(self, names: Iterable[str]) -> None:
        self.names = tuple(names)
        super().__init__("Dependency cycle between steps: " + ", ".join(self.names))


@dataclasses.dataclass(frozen=True)
class CommandResult:
    args: Tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


class CommandRunner:
    """Executes external commands and captures their status and output.

    ``probe`` is for read-only queries and always runs, even in dry-run mode,
    because idempotence predicates depend on it.  ``run`` is for commands with
    side effects; in dry-run mode those are only logged.
    """

    MISSING_EXECUTABLE = 127
    TIMED_OUT = 124

    def __init__(self, dry_run: bool = False, env: Optional[Mapping[str, str]] = None) -> None:
        self.dry_run = dry_run
        self.env = dict(env) if env is not None else None

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)

    def probe(
        self,
        cmd: Sequence[str],
        cwd: Optional[pathlib.Path] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        return self._execute(cmd, cwd=cwd, timeout=timeout)

    def run(
        self,
        cmd: Sequence[str],
        cwd: Optional[pathlib.Path] = None,
        check: bool = True,
        input: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        if self.dry_run:
            LOG.info("[dry-run] Would execute: %s", " ".join(cmd))
            return CommandResult(tuple(cmd), 0)
        result = self._execute(cmd, cwd=cwd, input=input, timeout=timeout)
        if check and not result.ok:
            raise ExternalCommandFailed(cmd, result.returncode, result.output)
        return result

    def run_shell(
        self,
        script: str,
        cwd: Optional[pathlib.Path] = None,
        check: bool = True,
        input: Optional[str] = None,
    ) -> CommandResult:
        return self.run(["bash", "-c", script], cwd=cwd, check=check, input=input)

    def spawn(self, cmd: Sequence[str]) -> None:
        """Start a long-running program in the background without waiting."""

        if self.dry_run:
            LOG.info("[dry-run] Would start in background: %s", " ".join(cmd))
            return
        LOG.debug("Starting in background: %s", " ".join(cmd))
        try:
            subprocess.Popen(
                list(cmd),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as exc:
            raise ExternalCommandFailed(cmd, self.MISSING_EXECUTABLE, str(exc)) from exc

    def _execute(
        self,
        cmd: Sequence[str],
        cwd: Optional[pathlib.Path] = None,
        input: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        LOG.debug("Executing command: %s", " ".join(cmd))
        env = None
        if self.env is not None:
            env = dict(os.environ)
            env.update(self.env)
        try:
            proc = subprocess.run(
                list(cmd),
                cwd=str(cwd) if cwd is not None else None,
                input=input,
                capture_output=True,
                text=True,
                check=False,
                env=env,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            LOG.debug("Executable not found: %s", exc)
            return CommandResult(tuple(cmd), self.MISSING_EXECUTABLE, "", str(exc))
        except subprocess.TimeoutExpired:
            LOG.debug("Command timed out after %ss: %s", timeout, " ".join(cmd))
            return CommandResult(tuple(cmd), self.TIMED_OUT, "", f"timed out after {timeout:g}s")
        if proc.stdout:
            LOG.debug("stdout: %s", proc.stdout.strip())
        if proc.stderr:
            LOG.debug("stderr: %s", proc.stderr.strip())
        return CommandResult(tuple(cmd), proc.returncode, proc.stdout or "", proc.stderr or "")


def shell_join(args: Iterable[str]) -> str:
    return " ".join(shlex.quote(str(arg)) for arg in args)


def _evaluate_within(predicate: Callable[[], bool], limit: float) -> Optional[bool]:
    """Evaluate ``predicate`` on a worker thread, giving up after ``limit`` seconds.

    Returns ``None`` when the predicate has not answered in time.  Exceptions
    raised by the predicate are re-raised in the caller.
    """

    outcome: Dict[str, Any] = {}

    def target() -> None:
        try:
            outcome["value"] = bool(predicate())
        except Exception as exc:
            outcome["error"] = exc

    worker = threading.Thread(target=target, name="wait-until", daemon=True)
    worker.start()
    worker.join(limit)
    if worker.is_alive():
        return None
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]


def time_left(deadline: float, cap: float, clock: Callable[[], float] = time.monotonic) -> float:
    """Seconds until ``deadline``, at most ``cap`` and never below the minimum check time."""

    return max(min(cap, deadline - clock()), MIN_CHECK_SECONDS)


def wait_until(
    predicate: Callable[[], bool],
    timeout: float,
    interval: float,
    description: str,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """Poll ``predicate`` until it holds or raise :class:`TimeoutExceeded`.

    The wait never outlasts ``timeout`` (plus a short grace for the first
    check), even when a single evaluation of ``predicate`` blocks.
    """

    deadline = clock() + timeout
    while True:
        if _evaluate_within(predicate, time_left(deadline, timeout, clock)):
            return
        remaining = deadline - clock()
        if remaining <= 0:
            raise TimeoutExceeded(description, timeout)
        LOG.info("Waiting for %s...", description)
        sleep(min(interval, remaining))


Confirmer = Callable[[str], bool]
Prompter = Callable[[str], str]

_YES = {"y", "yes"}


def read_line(question: str) -> str:
    try:
        return input(f"{question} ")
    except EOFError:
        return ""


def confirm_from_input(question: str, reader: Prompter = read_line) -> bool:
    """Ask a yes/no question.  Anything but an explicit yes means no."""

    answer = reader(f"{question} (y/n):")
    return answer.strip().lower() in _YES


def never_confirm(question: str) -> bool:
    LOG.debug("Declining non-interactive confirmation: %s", question)
    return False


def no_prompt(question: str) -> str:
    LOG.debug("Non-interactive session, leaving prompt unanswered: %s", question)
    return ""


@dataclasses.dataclass(frozen=True)
class PlatformProfile:
    """Platform-specific command variants looked up once at startup."""

    name: str
    package_managers: Tuple[str, ...] = ()
    docker_strategy: str = "manual"
    docker_desktop: Optional[pathlib.Path] = None
    rc_candidates: Tuple[str, ...] = (".bashrc",)

    def shell_rc(self, home: pathlib.Path, shell: str = "") -> pathlib.Path:
        if shell.endswith("zsh") and ".zshrc" in self.rc_candidates:
            return home / ".zshrc"
        names = [name for name in self.rc_candidates if name != ".zshrc"]
        return home / (names[0] if names else ".bashrc")


class ExecutionContext:
    """Run-scoped state shared by the steps of a single :meth:`Sequencer.run`.

    A value that has been set once is never silently replaced: setting a
    different value for an existing key asks ``confirm`` first and keeps the
    original when the user declines.
    """

    def __init__(
        self,
        platform: PlatformProfile,
        runner: Optional[CommandRunner] = None,
        confirm: Confirmer = never_confirm,
        prompt: Prompter = no_prompt,
        config: Any = None,
        cwd: Optional[pathlib.Path] = None,
        home: Optional[pathlib.Path] = None,
        values: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.platform = platform
        self.runner = runner or CommandRunner()
        self.confirm = confirm
        self.prompt = prompt
        self.config = config
        self.cwd = cwd or pathlib.Path.cwd()
        self.home = home or pathlib.Path.home()
        self._values: Dict[str, Any] = dict(values or {})

    @property
    def dry_run(self) -> bool:
        return self.runner.dry_run

    def __contains__(self, key: str) -> bool:
        return key in self._values

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: str, value: Any, overwrite: bool = False) -> bool:
        if key in self._values and self._values[key] != value and not overwrite:
            current = self._values[key]
            if not self.confirm(f"Replace {key} ({current}) with {value}?"):
                LOG.warning("Keeping existing %s: %s", key, current)
                return False
        self._values[key] = value
        LOG.debug("Context %s = %s", key, value)
        return True

    def update(self, values: Mapping[str, Any]) -> None:
        for key, value in values.items():
            self.set(key, value)

    def as_dict(self) -> Dict[str, Any]:
        return dict(self._values)


class FailurePolicy(enum.Enum):
    ABORT = "abort"
    CONTINUE_WITH_WARNING = "continueWithWarning"


class StepOutcome(enum.Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


class RunStatus(enum.Enum):
    COMPLETED = "completed"
    COMPLETED_WITH_WARNINGS = "completedWithWarnings"
    ABORTED = "aborted"


@dataclasses.dataclass(frozen=True)
class Step:
    """One named, idempotent unit of provisioning work."""

    name: str
    apply: Callable[[ExecutionContext], Optional[Mapping[str, Any]]]
    is_satisfied: Callable[[ExecutionContext], bool]
    depends_on: Tuple[str, ...] = ()
    on_failure: FailurePolicy = FailurePolicy.ABORT
    description: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Step name must not be empty")
        if not callable(self.is_satisfied):
            raise TypeError(f"Step {self.name!r} requires an is_satisfied predicate")
        object.__setattr__(self, "depends_on", tuple(self.depends_on))


@dataclasses.dataclass(frozen=True)
class StepRecord:
    name: str
    outcome: StepOutcome
    message: str = ""
    seconds: float = 0.0


@dataclasses.dataclass
class RunReport:
    records: List[StepRecord] = dataclasses.field(default_factory=list)
    status: RunStatus = RunStatus.COMPLETED

    @property
    def exit_code(self) -> int:
        return 1 if self.status is RunStatus.ABORTED else 0

    def outcome_of(self, name: str) -> Optional[StepOutcome]:
        for record in self.records:
            if record.name == name:
                return record.outcome
        return None

    def by_outcome(self, outcome: StepOutcome) -> List[str]:
        return [record.name for record in self.records if record.outcome is outcome]

    def summary_lines(self) -> List[str]:
        lines = [f"Run status: {self.status.value}"]
        for record in self.records:
            label = record.outcome.value.upper()
            line = f"  {label:<9} {record.name}"
            if record.message:
                line += f" - {record.message}"
            lines.append(line)
        return lines

    def to_dict(self) -> Dict[str, object]:
        return {
            "status": self.status.value,
            "steps": [
                {
                    "name": record.name,
                    "outcome": record.outcome.value,
                    "message": record.message,
                    "seconds": round(record.seconds, 3),
                }
                for record in self.records
            ],
        }


class _AllSteps:
    def __repr__(self) -> str:
        return "ALL"


ALL = _AllSteps()


class Sequencer:
    """Ordered catalog of steps with dependency-aware selective execution."""

    def __init__(self, steps: Iterable[Step] = ()) -> None:
        self._steps: Dict[str, Step] = {}
        for step in steps:
            self.register(step)

    def register(self, step: Step) -> None:
        if step.name in self._steps:
            raise DuplicateStepError(step.name)
        self._steps[step.name] = step

    @property
    def steps(self) -> Tuple[Step, ...]:
        return tuple(self._steps.values())

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(self._steps)

    def get(self, name: str) -> Step:
        try:
            return self._steps[name]
        except KeyError:
            raise UnknownStepError(name) from None

    def resolve(self, selection: Any = ALL) -> List[Step]:
        """Return the selected steps plus their dependency closure, in order.

        Dependencies always precede their dependents; otherwise registration
        order is kept.
        """

        if selection is ALL:
            wanted = set(self._steps)
        else:
            if isinstance(selection, str):
                selection = [selection]
            wanted = set()
            pending = list(selection)
            while pending:
                name = pending.pop()
                if name in wanted:
                    continue
                step = self.get(name)
                wanted.add(name)
                pending.extend(step.depends_on)

        for name in wanted:
            for dep in self._steps[name].depends_on:
                if dep not in self._steps:
                    raise UnknownStepError(dep)

        index = {name: position for position, name in enumerate(self._steps)}
        ordered: List[Step] = []
        placed: set = set()
        remaining = sorted(wanted, key=index.__getitem__)
        while remaining:
            for name in remaining:
                if all(dep in placed for dep in self._steps[name].depends_on):
                    ordered.append(self._steps[name])
                    placed.add(name)
                    remaining.remove(name)
                    break
            else:
                raise DependencyCycleError(remaining)
        return ordered

    def run(self, ctx: ExecutionContext, selection: Any = ALL) -> RunReport:
        plan = self.resolve(selection)
        LOG.info("Execution plan: %s", ", ".join(step.name for step in plan) or "(empty)")

        report = RunReport()
        warnings = False
        for step in plan:
            record = self._run_step(step, ctx)
            report.records.append(record)
            if record.outcome is not StepOutcome.FAILED:
                continue
            if step.on_failure is FailurePolicy.ABORT:
                LOG.error("Step %s failed; aborting run: %s", step.name, record.message)
                report.status = RunStatus.ABORTED
                return report
            LOG.warning("Step %s failed; continuing: %s", step.name, record.message)
            warnings = True

        report.status = RunStatus.COMPLETED_WITH_WARNINGS if warnings else RunStatus.COMPLETED
        return report

    def _run_step(self, step: Step, ctx: ExecutionContext) -> StepRecord:
        LOG.info("-- START: %s", step.name)
        start = time.monotonic()
        try:
            if step.is_satisfied(ctx):
                LOG.info("-- SKIP:  %s (already satisfied)", step.name)
                return StepRecord(step.name, StepOutcome.SKIPPED, "already satisfied", time.monotonic() - start)
            produced = step.apply(ctx)
            if produced:
                ctx.update(produced)
        except UserAbort as exc:
            message = str(exc) or "declined by user"
            LOG.info("-- SKIP:  %s (%s)", step.name, message)
            return StepRecord(step.name, StepOutcome.SKIPPED, message, time.monotonic() - start)
        except Exception as exc:
            LOG.debug("Step %s raised", step.name, exc_info=True)
            return StepRecord(step.name, StepOutcome.FAILED, str(exc) or type(exc).__name__, time.monotonic() - start)
        log_success(LOG, "-- DONE:  %s", step.name)
        return StepRecord(step.name, StepOutcome.SUCCEEDED, "", time.monotonic() - start)
