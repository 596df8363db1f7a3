"""
Tests for the provisioning engine.
"""

import logging

import pytest

from ops_provision.config import ProvisionConfig
from ops_provision.credentials import ALPHANUMERIC, SecretGenerator
from ops_provision.engine import (
    EXIT_CANCELLED,
    EXIT_OK,
    EXIT_STEP_FAILED,
    EngineObserver,
    EngineState,
    ProvisioningEngine,
)
from ops_provision.exceptions import (
    ExecutionFailure,
    OperationCancelled,
    PlanDefinitionError,
    PreconditionCheckFailed,
    StepTimeout,
)
from ops_provision.executor import StepExecutor
from ops_provision.plan import Criticality, ProvisioningPlan, Step, StepStatus


class Recorder:
    """Builds steps that log what ran into a shared list."""

    def __init__(self):
        self.calls = []

    def action(self, name):
        def _action(ctx):
            self.calls.append(f"run {name}")

        return _action

    def failing(self, name, exc=None):
        def _action(ctx):
            self.calls.append(f"run {name}")
            raise exc or ExecutionFailure(name, "false", 1)

        return _action

    def rollback(self, name):
        def _rollback(ctx):
            self.calls.append(f"rollback {name}")

        return _rollback

    def step(self, name, rollback=True, **kwargs):
        return Step(
            name,
            self.action(name),
            rollback=self.rollback(name) if rollback else None,
            **kwargs,
        )


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def engine():
    return ProvisioningEngine(ProvisionConfig(), executor=StepExecutor())


class TestPlanDefinition:
    """Tests for plan construction."""

    def test_ordinals_assigned(self, recorder):
        """Test steps are numbered from 1 in the order given."""
        plan = ProvisioningPlan("p", steps=[recorder.step("a"), recorder.step("b")])

        assert [(s.ordinal, s.name) for s in plan.steps()] == [(1, "a"), (2, "b")]
        assert len(plan) == 2

    def test_duplicate_step_names_rejected(self, recorder):
        """Test step names are unique within a plan."""
        with pytest.raises(PlanDefinitionError, match="already has a step named 'a'"):
            ProvisioningPlan("p", steps=[recorder.step("a"), recorder.step("a")])


class TestSuccessfulRuns:
    """Tests for runs that complete."""

    def test_all_steps_done(self, engine, recorder):
        """Test steps run once each, in order."""
        plan = ProvisioningPlan("p", steps=[recorder.step("a"), recorder.step("b")])

        outcome = engine.run(plan)

        assert outcome.state is EngineState.COMPLETED
        assert outcome.exit_code == EXIT_OK
        assert recorder.calls == ["run a", "run b"]
        assert [r.status for r in outcome.results] == [StepStatus.DONE, StepStatus.DONE]
        assert outcome.rollbacks == []

    def test_satisfied_check_skips_action(self, engine, recorder):
        """Test a step whose check holds is skipped."""
        plan = ProvisioningPlan(
            "p",
            steps=[
                Step("a", recorder.action("a"), check=lambda ctx: True),
                recorder.step("b"),
            ],
        )

        outcome = engine.run(plan)

        assert recorder.calls == ["run b"]
        assert outcome.results[0].status is StepStatus.SKIPPED
        assert outcome.exit_code == EXIT_OK

    def test_soft_failure_continues(self, engine, recorder):
        """Test a soft step failing does not stop the run."""
        plan = ProvisioningPlan(
            "p",
            steps=[
                recorder.step("a"),
                Step("b", recorder.failing("b"), criticality=Criticality.SOFT),
                recorder.step("c"),
            ],
        )

        outcome = engine.run(plan)

        assert outcome.state is EngineState.COMPLETED
        assert outcome.exit_code == EXIT_OK
        assert recorder.calls == ["run a", "run b", "run c"]
        assert outcome.results[1].status is StepStatus.FAILED
        assert outcome.results[1].soft_failure
        assert outcome.failure is None
        assert outcome.rollbacks == []

    def test_summarize_collects_outputs(self, engine, recorder):
        """Test the plan's summarize hook fills the outcome outputs."""

        def summarize(ctx):
            ctx.set_output("URL", "https://panel.example.com:54321/")
            ctx.set_output("Port", 54321)

        plan = ProvisioningPlan("p", steps=[recorder.step("a")], summarize=summarize)

        outcome = engine.run(plan)

        assert outcome.outputs == {"URL": "https://panel.example.com:54321/", "Port": "54321"}

    def test_summarize_error_does_not_fail_run(self, engine, recorder):
        """Test a broken summarize hook only loses outputs."""

        def summarize(ctx):
            raise RuntimeError("no outputs")

        plan = ProvisioningPlan("p", steps=[recorder.step("a")], summarize=summarize)

        outcome = engine.run(plan)

        assert outcome.exit_code == EXIT_OK
        assert outcome.outputs == {}

    def test_values_shared_between_steps(self, engine):
        """Test a later step sees values an earlier one stored."""
        seen = []

        def produce(ctx):
            ctx.values["port"] = 54321

        def consume(ctx):
            seen.append(ctx.values["port"])

        plan = ProvisioningPlan("p", steps=[Step("produce", produce), Step("consume", consume)])

        engine.run(plan)

        assert seen == [54321]


class TestIdempotency:
    """Tests for re-running a plan against a satisfied host."""

    def test_second_run_skips_everything(self, tmp_path):
        """Test a completed plan changes nothing the second time."""

        def make_step(name):
            path = tmp_path / name

            def action(ctx):
                ctx.write_file(path, name)

            return Step(name, action, check=lambda ctx: ctx.executor.path_exists(path))

        plan = ProvisioningPlan("p", steps=[make_step("a"), make_step("b"), make_step("c")])

        first = ProvisioningEngine(ProvisionConfig(), executor=StepExecutor()).run(plan)
        executor = StepExecutor()
        second = ProvisioningEngine(ProvisionConfig(), executor=executor).run(plan)

        assert [r.status for r in first.results] == [StepStatus.DONE] * 3
        assert [r.status for r in second.results] == [StepStatus.SKIPPED] * 3
        assert second.exit_code == EXIT_OK
        assert executor.history == []


class TestFatalFailure:
    """Tests for aborting and rolling back."""

    def test_fatal_failure_aborts_and_rolls_back(self, engine, recorder):
        """Test later steps never run and earlier ones are compensated."""
        plan = ProvisioningPlan(
            "p",
            steps=[
                recorder.step("a"),
                Step("b", recorder.failing("b")),
                recorder.step("c"),
            ],
        )

        outcome = engine.run(plan)

        assert outcome.state is EngineState.ABORTED
        assert outcome.exit_code == EXIT_STEP_FAILED
        assert outcome.failed_step == "b"
        assert isinstance(outcome.failure, ExecutionFailure)
        assert recorder.calls == ["run a", "run b", "rollback a"]
        assert len(outcome.results) == 2
        assert [r.step for r in outcome.rollbacks] == ["a"]

    def test_rollback_in_reverse_order(self, engine, recorder):
        """Test completed steps are compensated most recent first."""
        plan = ProvisioningPlan(
            "p",
            steps=[
                recorder.step("a"),
                recorder.step("b"),
                recorder.step("c"),
                Step("d", recorder.failing("d")),
            ],
        )

        engine.run(plan)

        assert recorder.calls[-3:] == ["rollback c", "rollback b", "rollback a"]

    def test_only_completed_steps_rolled_back(self, engine, recorder):
        """Test skipped steps and steps without rollback are left alone."""
        plan = ProvisioningPlan(
            "p",
            steps=[
                Step(
                    "a",
                    recorder.action("a"),
                    check=lambda ctx: True,
                    rollback=recorder.rollback("a"),
                ),
                recorder.step("b", rollback=False),
                recorder.step("c"),
                Step("d", recorder.failing("d"), rollback=recorder.rollback("d")),
            ],
        )

        outcome = engine.run(plan)

        assert [c for c in recorder.calls if c.startswith("rollback")] == ["rollback c"]
        assert [r.step for r in outcome.rollbacks] == ["c"]

    def test_rollback_failure_does_not_mask_primary(self, engine, recorder):
        """Test a failing rollback is recorded and the others still run."""

        def broken_rollback(ctx):
            raise RuntimeError("cannot undo b")

        plan = ProvisioningPlan(
            "p",
            steps=[
                recorder.step("a"),
                Step("b", recorder.action("b"), rollback=broken_rollback),
                Step("c", recorder.failing("c")),
            ],
        )

        outcome = engine.run(plan)

        assert isinstance(outcome.failure, ExecutionFailure)
        assert outcome.failed_step == "c"
        assert [(r.step, r.ok) for r in outcome.rollbacks] == [("b", False), ("a", True)]
        assert "cannot undo b" in outcome.rollbacks[0].error
        assert recorder.calls[-1] == "rollback a"

    def test_check_error_aborts_even_soft_step(self, engine, recorder):
        """Test a check that raises stops the run without running the action."""

        def broken_check(ctx):
            raise PermissionError("cannot read /etc/caddy")

        plan = ProvisioningPlan(
            "p",
            steps=[
                recorder.step("a"),
                Step(
                    "b",
                    recorder.action("b"),
                    check=broken_check,
                    criticality=Criticality.SOFT,
                ),
                recorder.step("c"),
            ],
        )

        outcome = engine.run(plan)

        assert isinstance(outcome.failure, PreconditionCheckFailed)
        assert isinstance(outcome.failure.cause, PermissionError)
        assert outcome.exit_code == EXIT_STEP_FAILED
        assert "run b" not in recorder.calls
        assert recorder.calls[-1] == "rollback a"

    def test_summarize_not_called_on_abort(self, engine, recorder):
        """Test outputs are not collected for a failed run."""
        called = []
        plan = ProvisioningPlan(
            "p", steps=[Step("a", recorder.failing("a"))], summarize=lambda ctx: called.append(1)
        )

        outcome = engine.run(plan)

        assert called == []
        assert outcome.outputs == {}

    def test_nested_run_rejected(self, engine):
        """Test an engine cannot run two plans at once."""
        inner = ProvisioningPlan("inner", steps=[Step("x", lambda ctx: None)])

        def nested(ctx):
            engine.run(inner)

        outcome = engine.run(ProvisioningPlan("outer", steps=[Step("nested", nested)]))

        assert isinstance(outcome.failure, RuntimeError)
        assert "already running" in str(outcome.failure)


class TestTimeouts:
    """Tests for per-command timeouts."""

    def test_step_timeout(self, recorder):
        """Test a command past the step timeout fails the step."""

        def slow(ctx):
            ctx.run("sleep", ["30"])

        plan = ProvisioningPlan(
            "p", steps=[recorder.step("a"), Step("slow", slow, timeout=0.5)]
        )

        outcome = ProvisioningEngine(ProvisionConfig(), executor=StepExecutor()).run(plan)

        assert isinstance(outcome.failure, StepTimeout)
        assert outcome.failure.timeout == 0.5
        assert outcome.exit_code == EXIT_STEP_FAILED
        assert outcome.results[1].elapsed < 10
        assert recorder.calls[-1] == "rollback a"

    def test_default_timeout_from_config(self):
        """Test the run-wide timeout applies when a step sets none."""

        def slow(ctx):
            ctx.run("sleep", ["30"])

        engine = ProvisioningEngine(ProvisionConfig(timeout=0.5), executor=StepExecutor())

        outcome = engine.run(ProvisioningPlan("p", steps=[Step("slow", slow)]))

        assert isinstance(outcome.failure, StepTimeout)


class TestCancellation:
    """Tests for operator interrupts."""

    def test_keyboard_interrupt(self, engine, recorder):
        """Test Ctrl-C during a step cancels and rolls back."""
        plan = ProvisioningPlan(
            "p",
            steps=[
                recorder.step("a"),
                Step("b", recorder.failing("b", KeyboardInterrupt())),
                recorder.step("c"),
            ],
        )

        outcome = engine.run(plan)

        assert outcome.cancelled
        assert outcome.exit_code == EXIT_CANCELLED
        assert isinstance(outcome.failure, OperationCancelled)
        assert outcome.failure.signal_name == "SIGINT"
        assert recorder.calls == ["run a", "run b", "rollback a"]

    def test_sigterm_cancellation(self, engine, recorder):
        """Test OperationCancelled raised from a signal handler."""
        plan = ProvisioningPlan(
            "p",
            steps=[
                recorder.step("a"),
                Step(
                    "b",
                    recorder.failing("b", OperationCancelled("SIGTERM")),
                    criticality=Criticality.SOFT,
                ),
            ],
        )

        outcome = engine.run(plan)

        assert outcome.exit_code == EXIT_CANCELLED
        assert outcome.failure.signal_name == "SIGTERM"
        assert recorder.calls[-1] == "rollback a"

    def test_interrupt_during_check(self, engine, recorder):
        """Test Ctrl-C while a check runs is a cancellation, not a check failure."""

        def interrupted(ctx):
            raise KeyboardInterrupt

        plan = ProvisioningPlan(
            "p", steps=[recorder.step("a"), Step("b", recorder.action("b"), check=interrupted)]
        )

        outcome = engine.run(plan)

        assert outcome.exit_code == EXIT_CANCELLED
        assert not isinstance(outcome.failure, PreconditionCheckFailed)


class TestObserverAndLogging:
    """Tests for progress callbacks and log redaction."""

    def test_observer_callbacks(self, recorder):
        """Test the observer sees starts, finishes and rollbacks in order."""
        events = []

        class Observer(EngineObserver):
            def on_step_start(self, step, total):
                events.append(("start", step.name, total))

            def on_step_finish(self, step, result):
                events.append(("finish", step.name, result.status))

            def on_rollback(self, step, result):
                events.append(("rollback", step.name, result.ok))

        plan = ProvisioningPlan("p", steps=[recorder.step("a"), Step("b", recorder.failing("b"))])
        engine = ProvisioningEngine(ProvisionConfig(), executor=StepExecutor(), observer=Observer())

        engine.run(plan)

        assert events == [
            ("start", "a", 2),
            ("finish", "a", StepStatus.DONE),
            ("start", "b", 2),
            ("finish", "b", StepStatus.FAILED),
            ("rollback", "a", True),
        ]

    def test_secrets_redacted_from_logs(self, caplog):
        """Test generated secrets never reach the log."""
        generator = SecretGenerator()

        def leaky(ctx):
            password = ctx.secrets.issue("admin-password", ALPHANUMERIC, 16).value
            raise ExecutionFailure("leaky", "chpasswd", 1, stderr=f"bad password {password}")

        engine = ProvisioningEngine(ProvisionConfig(), executor=StepExecutor(), secrets=generator)

        with caplog.at_level(logging.DEBUG, logger="ops_provision"):
            outcome = engine.run(ProvisioningPlan("p", steps=[Step("leaky", leaky)]))

        password = generator.get("admin-password").value
        assert outcome.exit_code == EXIT_STEP_FAILED
        assert "Plan p aborted" in caplog.text
        assert password not in caplog.text
        assert "REDACTED" in caplog.text
