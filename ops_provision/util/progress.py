"""
Progress tracking and reporting utilities using rich.
"""

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.text import Text

from ops_provision.engine import EngineObserver, RollbackResult
from ops_provision.plan import Step, StepResult, StepStatus

console = Console()

STATUS_STYLES = {
    StepStatus.DONE: ("green", "✓", "done"),
    StepStatus.SKIPPED: ("dim", "-", "already satisfied"),
    StepStatus.FAILED: ("red", "✗", "failed"),
}


class ProgressTracker(EngineObserver):
    """
    Prints step-by-step progress of a provisioning run.

    Tracks how many steps finished and reports each one with its position,
    status and timing.
    """

    def __init__(self, operation_name: str, out: Console | None = None):
        """
        Initialize progress tracker.

        Args:
            operation_name: Name of the operation being tracked
            out: Console to print to (default: module console)
        """
        self.operation_name = operation_name
        self.console = out or console
        self.steps_completed = 0
        self.steps_total = 0
        self._started = False

    def on_step_start(self, step: Step, total: int) -> None:
        if not self._started:
            self._started = True
            self.steps_total = total
            self.console.print(
                f"[bold blue]Starting {escape(self.operation_name)}[/bold blue] ({total} steps)"
            )
        label = step.description or step.name
        self.console.print(
            f"  [{step.ordinal}/{self.steps_total}] {escape(step.name)} "
            f"[dim]{escape(label)}[/dim]"
        )

    def on_step_finish(self, step: Step, result: StepResult) -> None:
        self.steps_completed += 1
        color, mark, text = STATUS_STYLES[result.status]
        if result.soft_failure:
            color, text = "yellow", "failed (continuing)"
        self.console.print(
            f"      [{color}]{mark} {text}[/{color}] [dim]({result.elapsed:.1f}s)[/dim]"
        )

    def on_rollback(self, step: Step, result: RollbackResult) -> None:
        if result.ok:
            self.console.print(f"  [yellow]↺ rolled back {escape(step.name)}[/yellow]")
        else:
            self.console.print(
                f"  [red]✗ rollback of {escape(step.name)} failed: {escape(result.error or '')}[/red]"
            )


def show_report(title: str, text: str, success: bool = True) -> None:
    """
    Show a formatted report box.

    Args:
        title: Report title
        text: Plain report text (printed verbatim, no markup)
        success: Green border when True, red otherwise
    """
    panel = Panel(
        Text(text.rstrip("\n")),
        title=f"[bold]{escape(title)}[/bold]",
        border_style="green" if success else "red",
    )
    console.print(panel)
