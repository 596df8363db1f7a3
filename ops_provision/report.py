"""
Human-readable summary of a provisioning run.

Generated credentials appear here, and only here, at the end of a completed
run. Everything else in the tool redacts them.
"""

from collections.abc import Iterable

from ops_provision.credentials import Secret
from ops_provision.engine import EngineState, RunOutcome
from ops_provision.plan import StepStatus
from ops_provision.util.redact import redact_values


class SummaryReporter:
    """Formats a RunOutcome as plain text."""

    def __init__(self, indent: str = "  "):
        self.indent = indent

    def report(self, outcome: RunOutcome, secrets: Iterable[Secret] = ()) -> str:
        """
        Render ``outcome`` and, for completed runs, ``secrets``.

        Args:
            outcome: Result of ``ProvisioningEngine.run``
            secrets: Secrets issued during the run

        Returns:
            Multi-line report text
        """
        secrets = list(secrets)
        completed = outcome.state is EngineState.COMPLETED

        def clean(text) -> str:
            return redact_values(str(text), [s.value for s in secrets])

        lines = [self._headline(outcome), ""]
        lines.extend(self._steps_section(outcome))

        soft_failures = [r for r in outcome.by_status(StepStatus.FAILED) if r.soft_failure]
        if soft_failures:
            lines.append("")
            lines.append("Warnings:")
            for result in soft_failures:
                lines.append(f"{self.indent}{result.step}: {clean(result.error)}")

        if outcome.failure is not None:
            lines.append("")
            lines.append(f"Failed at step: {outcome.failed_step}")
            for line in clean(outcome.failure).splitlines():
                lines.append(f"{self.indent}{line}")

        if outcome.rollbacks:
            lines.append("")
            lines.append("Rollback:")
            width = max(len(r.step) for r in outcome.rollbacks)
            for rollback in outcome.rollbacks:
                status = "ok" if rollback.ok else f"failed: {rollback.error}"
                lines.append(f"{self.indent}{rollback.step:<{width}}  {status}")

        if outcome.outputs and completed:
            lines.append("")
            lines.extend(self._key_values("Details:", outcome.outputs.items()))

        if secrets and completed:
            lines.append("")
            lines.extend(self._key_values("Credentials:", ((s.purpose, s.value) for s in secrets)))

        return "\n".join(lines) + "\n"

    def _headline(self, outcome: RunOutcome) -> str:
        if outcome.state is EngineState.COMPLETED:
            state = "completed"
        elif outcome.cancelled:
            state = "cancelled"
        else:
            state = outcome.state.value
        headline = f"Plan {outcome.plan}: {state} in {outcome.elapsed:.1f}s"
        if outcome.dry_run:
            headline += " (dry run, no changes made)"
        return headline

    def _steps_section(self, outcome: RunOutcome) -> list[str]:
        lines = ["Steps:"]
        if not outcome.results:
            lines.append(f"{self.indent}(none run)")
            return lines

        width = max(len(r.step) for r in outcome.results)
        for result in outcome.results:
            status = result.status.value
            if result.status is StepStatus.FAILED:
                status = f"FAILED ({result.criticality.value})"
            lines.append(f"{self.indent}{result.ordinal:>2}. {result.step:<{width}}  {status}")
        return lines

    def _key_values(self, title: str, items: Iterable[tuple[str, str]]) -> list[str]:
        items = list(items)
        width = max(len(key) for key, _ in items)
        lines = [title]
        for key, value in items:
            lines.append(f"{self.indent}{key:<{width}} : {value}")
        return lines
