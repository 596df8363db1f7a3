"""
Provisioning plan model: steps, their outcomes, and the context they run in.
"""

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ops_provision.exceptions import ExecutionFailure, PlanDefinitionError, StepTimeout
from ops_provision.executor import ExecutionResult, StepExecutor

if TYPE_CHECKING:
    from ops_provision.config import ProvisionConfig
    from ops_provision.credentials import SecretGenerator
    from ops_provision.util.templates import TemplateRenderer


class Criticality(Enum):
    """Whether a step failure aborts the run."""

    FATAL = "fatal"
    SOFT = "soft"


class StepStatus(Enum):
    """Terminal state of a step within one run."""

    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"


StepAction = Callable[["StepContext"], None]
StepCheck = Callable[["StepContext"], bool]


@dataclass(frozen=True)
class Step:
    """
    One unit of provisioning work.

    ``check`` returns True when the step's end state already holds, in which
    case ``action`` is not run. ``rollback`` compensates a completed action
    when a later fatal step fails.
    """

    name: str
    action: StepAction
    check: StepCheck | None = None
    rollback: StepAction | None = None
    criticality: Criticality = Criticality.FATAL
    timeout: float | None = None
    description: str = ""
    ordinal: int = 0

    @property
    def fatal(self) -> bool:
        return self.criticality is Criticality.FATAL


@dataclass
class StepResult:
    """Per-step outcome, consumed by the summary report."""

    step: str
    ordinal: int
    status: StepStatus
    criticality: Criticality
    outputs: list[ExecutionResult] = field(default_factory=list)
    error: Exception | None = None
    elapsed: float = 0.0

    @property
    def soft_failure(self) -> bool:
        return self.status is StepStatus.FAILED and self.criticality is Criticality.SOFT


class ProvisioningPlan:
    """
    An ordered list of uniquely named steps.

    ``summarize`` runs after a completed pass to publish outputs (URLs, ports,
    paths) for the summary. It must not touch the host.

    ``requires_root`` and ``supported_os`` are checked by the CLI before the
    first step: a real run as a non-root user is refused, and a distribution
    whose os-release ``ID``/``ID_LIKE`` matches none of ``supported_os`` only
    gets a warning.
    """

    def __init__(
        self,
        name: str,
        description: str = "",
        steps: list[Step] | None = None,
        summarize: StepAction | None = None,
        requires_root: bool = False,
        supported_os: tuple[str, ...] = (),
    ):
        self.name = name
        self.description = description
        self.summarize = summarize
        self.requires_root = requires_root
        self.supported_os = supported_os
        self._steps: list[Step] = []
        for step in steps or []:
            self.add(step)

    def add(self, step: Step) -> "ProvisioningPlan":
        """Append ``step``, assigning its ordinal position (1-based)."""
        if any(existing.name == step.name for existing in self._steps):
            raise PlanDefinitionError(f"Plan '{self.name}' already has a step named '{step.name}'")
        self._steps.append(replace(step, ordinal=len(self._steps) + 1))
        return self

    def steps(self) -> tuple[Step, ...]:
        return tuple(self._steps)

    def __len__(self) -> int:
        return len(self._steps)

    def __iter__(self):
        return iter(self._steps)


class StepContext:
    """
    What a step's action, check and rollback can use.

    Wraps the executor so command failures become ``ExecutionFailure`` or
    ``StepTimeout`` attributed to the current step, and keeps the values steps
    share during a run (``values``) and the non-secret values destined for the
    summary (``outputs``).
    """

    def __init__(
        self,
        config: "ProvisionConfig",
        executor: StepExecutor,
        secrets: "SecretGenerator",
        renderer: "TemplateRenderer",
        default_timeout: float | None = None,
    ):
        self.config = config
        self.executor = executor
        self.secrets = secrets
        self.renderer = renderer
        self.default_timeout = default_timeout
        self.values: dict[str, Any] = {}
        self.outputs: dict[str, str] = {}
        self.step: Step | None = None
        self.captured: list[ExecutionResult] = []

    @property
    def dry_run(self) -> bool:
        return self.executor.dry_run

    def begin(self, step: Step | None) -> None:
        self.step = step
        self.captured = []

    @property
    def _step_name(self) -> str:
        return self.step.name if self.step else "<none>"

    def _timeout(self, timeout: float | None) -> float | None:
        if timeout is not None:
            return timeout
        if self.step is not None and self.step.timeout is not None:
            return self.step.timeout
        return self.default_timeout

    def run(
        self,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        input: str | None = None,
        timeout: float | None = None,
    ) -> ExecutionResult:
        """Run a mutating command; raise if it fails or times out."""
        effective_timeout = self._timeout(timeout)
        result = self.executor.run(command, args, env=env, timeout=effective_timeout, input=input)
        self.captured.append(result)
        if result.timed_out:
            raise StepTimeout(self._step_name, result.command, effective_timeout)
        if result.exit_code != 0:
            raise ExecutionFailure(self._step_name, result.command, result.exit_code, result.stderr)
        return result

    def probe(self, command: str, args: list[str] | None = None) -> ExecutionResult:
        """Run a read-only command. Failures are returned, not raised."""
        return self.executor.run(
            command, args, timeout=self._timeout(None), mutating=False
        )

    def write_file(self, path: str | Path, content: str, mode: int | None = None) -> None:
        result = self.executor.write_file(path, content, mode=mode)
        self.captured.append(result)
        if not result.ok:
            raise ExecutionFailure(self._step_name, result.command, result.exit_code, result.stderr)

    def make_dirs(self, path: str | Path) -> None:
        result = self.executor.make_dirs(path)
        self.captured.append(result)
        if not result.ok:
            raise ExecutionFailure(self._step_name, result.command, result.exit_code, result.stderr)

    def remove(self, path: str | Path) -> None:
        result = self.executor.remove_path(path)
        self.captured.append(result)
        if not result.ok:
            raise ExecutionFailure(self._step_name, result.command, result.exit_code, result.stderr)

    def move(self, src: str | Path, dst: str | Path) -> None:
        result = self.executor.move_path(src, dst)
        self.captured.append(result)
        if not result.ok:
            raise ExecutionFailure(self._step_name, result.command, result.exit_code, result.stderr)

    def render(self, template_name: str, variables: dict[str, str]) -> str:
        return self.renderer.render_named(template_name, variables)

    def set_output(self, key: str, value) -> None:
        self.outputs[key] = str(value)

    def fail(self, reason: str, result: ExecutionResult) -> None:
        """Raise ExecutionFailure for a command that exited 0 but produced unusable output."""
        raise ExecutionFailure(
            self._step_name,
            result.command,
            result.exit_code,
            (result.stdout + result.stderr).strip(),
            reason=reason,
        )
