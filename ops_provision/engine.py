"""Provisioning execution engine.

The ProvisioningEngine walks a plan strictly in order. For each step it
evaluates the idempotency check, skips satisfied steps, runs the rest, and on
the first fatal failure rolls back completed steps in reverse order.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum

from ops_provision.config import ProvisionConfig
from ops_provision.credentials import SecretGenerator
from ops_provision.exceptions import OperationCancelled, PreconditionCheckFailed
from ops_provision.executor import StepExecutor
from ops_provision.plan import (
    ProvisioningPlan,
    Step,
    StepContext,
    StepResult,
    StepStatus,
)
from ops_provision.util.redact import redact_values
from ops_provision.util.templates import TemplateRenderer

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_STEP_FAILED = 2
EXIT_CANCELLED = 3


class EngineState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class RollbackResult:
    """Outcome of one compensating action."""

    step: str
    ok: bool
    error: str | None = None


@dataclass
class RunOutcome:
    """Everything a finished run produced."""

    plan: str
    state: EngineState
    results: list[StepResult] = field(default_factory=list)
    failure: Exception | None = None
    failed_step: str | None = None
    rollbacks: list[RollbackResult] = field(default_factory=list)
    cancelled: bool = False
    outputs: dict[str, str] = field(default_factory=dict)
    dry_run: bool = False
    elapsed: float = 0.0

    @property
    def exit_code(self) -> int:
        if self.state is EngineState.COMPLETED:
            return EXIT_OK
        if self.cancelled:
            return EXIT_CANCELLED
        return EXIT_STEP_FAILED

    def by_status(self, status: StepStatus) -> list[StepResult]:
        return [r for r in self.results if r.status is status]


class EngineObserver:
    """Receives progress callbacks. The default implementation ignores them."""

    def on_step_start(self, step: Step, total: int) -> None:
        pass

    def on_step_finish(self, step: Step, result: StepResult) -> None:
        pass

    def on_rollback(self, step: Step, result: RollbackResult) -> None:
        pass


class ProvisioningEngine:
    """Executes provisioning plans against the local host.

    The engine handles:
    - Ordered step execution with idempotency checks
    - Abort-on-fatal-failure and continue-on-soft-failure
    - Best-effort reverse-order rollback
    - Cancellation via KeyboardInterrupt or OperationCancelled
    """

    def __init__(
        self,
        config: ProvisionConfig,
        executor: StepExecutor | None = None,
        secrets: SecretGenerator | None = None,
        renderer: TemplateRenderer | None = None,
        observer: EngineObserver | None = None,
    ):
        """Initialize the engine.

        Args:
            config: Run configuration (domain, paths, ports, timeout)
            executor: Host effects; defaults to a real executor honoring config.dry_run
            secrets: Secret generator/registry for this run
            renderer: Template renderer; defaults to packaged templates
            observer: Progress callbacks
        """
        self.config = config
        self.executor = executor or StepExecutor(dry_run=config.dry_run)
        self.secrets = secrets or SecretGenerator()
        self.renderer = renderer or TemplateRenderer(config.templates_dir)
        self.observer = observer or EngineObserver()
        self.state = EngineState.PENDING

    def _redact(self, text: str) -> str:
        return redact_values(text, [s.value for s in self.secrets.secrets])

    def run(self, plan: ProvisioningPlan) -> RunOutcome:
        """Execute ``plan`` once.

        Returns:
            RunOutcome with per-step results, the first fatal failure and
            rollback results
        """
        if self.state is EngineState.RUNNING:
            raise RuntimeError("engine is already running a plan")

        self.state = EngineState.RUNNING
        start_time = time.monotonic()
        ctx = StepContext(
            config=self.config,
            executor=self.executor,
            secrets=self.secrets,
            renderer=self.renderer,
            default_timeout=self.config.timeout,
        )
        outcome = RunOutcome(plan=plan.name, state=self.state, dry_run=self.executor.dry_run)
        completed: list[Step] = []
        steps = plan.steps()

        logger.info(f"Starting plan {plan.name} ({len(steps)} steps)")

        for step in steps:
            self.observer.on_step_start(step, len(steps))
            result = self._run_step(step, ctx)
            outcome.results.append(result)
            self.observer.on_step_finish(step, result)

            if result.status is StepStatus.DONE:
                completed.append(step)
                continue
            if result.status is StepStatus.SKIPPED:
                continue

            cancelled = isinstance(result.error, OperationCancelled)
            check_failed = isinstance(result.error, PreconditionCheckFailed)
            if step.fatal or cancelled or check_failed:
                outcome.failure = result.error
                outcome.failed_step = step.name
                outcome.cancelled = cancelled
                break

            logger.warning(
                f"Soft step {step.name} failed, continuing: {self._redact(str(result.error))}"
            )

        if outcome.failure is not None:
            self.state = EngineState.ABORTED
            logger.error(
                f"Plan {plan.name} aborted at step {outcome.failed_step}: "
                f"{self._redact(str(outcome.failure))}"
            )
            outcome.rollbacks = self._rollback(completed, ctx)
        else:
            self.state = EngineState.COMPLETED
            logger.info(f"Plan {plan.name} completed")
            if plan.summarize is not None:
                ctx.begin(None)
                try:
                    plan.summarize(ctx)
                except Exception as e:
                    logger.warning(f"Could not collect summary outputs: {self._redact(str(e))}")

        outcome.state = self.state
        outcome.outputs = dict(ctx.outputs)
        outcome.elapsed = time.monotonic() - start_time
        return outcome

    def _run_step(self, step: Step, ctx: StepContext) -> StepResult:
        """Evaluate the check and, if needed, the action of one step."""
        ctx.begin(step)
        start_time = time.monotonic()

        def finish(status: StepStatus, error: Exception | None = None) -> StepResult:
            return StepResult(
                step=step.name,
                ordinal=step.ordinal,
                status=status,
                criticality=step.criticality,
                outputs=list(ctx.captured),
                error=error,
                elapsed=time.monotonic() - start_time,
            )

        try:
            try:
                satisfied = bool(step.check(ctx)) if step.check is not None else False
            except (OperationCancelled, KeyboardInterrupt):
                raise
            except Exception as e:
                return finish(StepStatus.FAILED, PreconditionCheckFailed(step.name, e))

            if satisfied:
                logger.info(f"Step {step.name}: already satisfied, skipping")
                return finish(StepStatus.SKIPPED)

            logger.info(f"Step {step.name}: running")
            step.action(ctx)
            return finish(StepStatus.DONE)
        except KeyboardInterrupt:
            return finish(StepStatus.FAILED, OperationCancelled("SIGINT"))
        except Exception as e:
            return finish(StepStatus.FAILED, e)

    def _rollback(self, completed: list[Step], ctx: StepContext) -> list[RollbackResult]:
        """Run rollback actions of completed steps, most recent first."""
        results = []
        for step in reversed(completed):
            if step.rollback is None:
                continue

            ctx.begin(step)
            logger.info(f"Rolling back step {step.name}")
            try:
                step.rollback(ctx)
                result = RollbackResult(step=step.name, ok=True)
            except Exception as e:
                message = self._redact(str(e))
                logger.warning(f"Rollback of {step.name} failed: {message}")
                result = RollbackResult(step=step.name, ok=False, error=message)

            results.append(result)
            self.observer.on_rollback(step, result)
        return results
