"""
CLI entry point for ops-provision.
"""

import logging
import signal
from contextlib import contextmanager, nullcontext
from functools import wraps
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from ops_provision.config import (
    DEFAULT_CONFIG_FILE,
    ProvisionConfig,
    load_config,
    write_default_config,
)
from ops_provision.credentials import SecretGenerator
from ops_provision.engine import ProvisioningEngine
from ops_provision.exceptions import (
    OperationCancelled,
    ProvisionError,
    ValidationError,
    format_error_for_cli,
)
from ops_provision.executor import StepExecutor
from ops_provision.plans import available_plans, describe_plan, get_plan
from ops_provision.report import SummaryReporter
from ops_provision.util.lock import file_lock, lock_path_for
from ops_provision.util.progress import ProgressTracker, show_report
from ops_provision.validation import is_supported_os, require_root

app = typer.Typer(
    name="ops-provision",
    help="Declarative host provisioning: ordered, idempotent, rolled back on failure",
    add_completion=False,
)
console = Console()
logger = logging.getLogger(__name__)

EXIT_VALIDATION = 1

# Domain used only to build plans for listing
EXAMPLE_DOMAIN = "panel.example.com"


def handle_errors(func):
    """Decorator to handle exceptions in CLI commands with nice formatting."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except typer.Exit:
            raise
        except ProvisionError as e:
            console.print(format_error_for_cli(e))
            raise typer.Exit(EXIT_VALIDATION)
        except Exception as e:
            console.print(f"[red]Unexpected error:[/red] {escape(str(e))}")
            console.print("\n[yellow]This may be a bug. Re-run with --verbose for details.[/yellow]")
            logger.debug("Unexpected error", exc_info=True)
            raise typer.Exit(EXIT_VALIDATION)

    return wrapper


def configure_logging(verbose: bool) -> None:
    """Send log records to stderr through rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@contextmanager
def cancel_on_sigterm():
    """Turn SIGTERM into OperationCancelled so the engine rolls back."""

    def _handler(signum, frame):
        raise OperationCancelled("SIGTERM")

    previous = signal.signal(signal.SIGTERM, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


def preflight(plan, config: ProvisionConfig) -> None:
    """Host checks made before taking the lock; a dry run needs no privileges."""
    if plan.requires_root and not config.dry_run:
        require_root(plan.name)

    if plan.supported_os and not is_supported_os(plan.supported_os):
        names = "/".join(name.capitalize() for name in plan.supported_os)
        console.print(
            f"[yellow]Warning: plan {plan.name} is designed for {names}. "
            "Proceeding anyway.[/yellow]"
        )


@app.command()
@handle_errors
def run(
    plan_name: str = typer.Argument(..., help="Plan to run (see: ops-provision plans)"),
    domain: str = typer.Option(None, "--domain", help="Domain name, e.g. panel.example.com"),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Show what would change without changing anything"
    ),
    timeout: float = typer.Option(
        None, "--timeout", help="Per-command timeout in seconds (default: none)"
    ),
    config_file: Path = typer.Option(
        None, "--config", help="YAML configuration file (see: ops-provision init-config)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log every command"),
):
    """Run a provisioning plan against this host."""
    configure_logging(verbose)

    # Unknown plan names fail before prompting
    describe_plan(plan_name)

    if timeout is not None and timeout <= 0:
        raise ValidationError(f"Timeout must be positive, got {timeout:g}")

    config = load_config(config_file) if config_file else ProvisionConfig()

    if domain is None:
        console.print("[yellow]No domain was passed with --domain.[/yellow]")
        domain = typer.prompt("Enter the domain (e.g. panel.example.com)")

    config = config.with_overrides(domain=domain.strip(), dry_run=dry_run, timeout=timeout)
    plan = get_plan(plan_name, config)
    preflight(plan, config)

    generator = SecretGenerator()
    engine = ProvisioningEngine(
        config,
        executor=StepExecutor(dry_run=config.dry_run),
        secrets=generator,
        observer=ProgressTracker(f"plan {plan.name}", out=console),
    )

    if config.dry_run:
        console.print("[bold yellow]Dry run: no changes will be made[/bold yellow]")
        lock = nullcontext()
    else:
        lock = file_lock(lock_path_for(config.lock_dir, plan.name))

    with lock, cancel_on_sigterm():
        outcome = engine.run(plan)

    report = SummaryReporter().report(outcome, generator.secrets)
    success = outcome.exit_code == 0
    show_report(f"{plan.name}: {'complete' if success else 'failed'}", report, success=success)

    if not success:
        raise typer.Exit(outcome.exit_code)


@app.command()
@handle_errors
def plans():
    """List available plans and their steps."""
    config = ProvisionConfig(domain=EXAMPLE_DOMAIN)

    for name in available_plans():
        plan = get_plan(name, config)

        table = Table(title=f"{name}: {plan.description}", title_justify="left")
        table.add_column("#", justify="right")
        table.add_column("Step", style="cyan")
        table.add_column("On failure")
        table.add_column("Rollback")
        table.add_column("Description", style="dim")

        for step in plan.steps():
            table.add_row(
                str(step.ordinal),
                step.name,
                "abort" if step.fatal else "continue",
                "yes" if step.rollback else "-",
                step.description,
            )

        console.print(table)
        console.print()


@app.command(name="init-config")
@handle_errors
def init_config(
    path: Path = typer.Argument(Path(DEFAULT_CONFIG_FILE), help="Where to write the file"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file"),
):
    """Write the default configuration to a YAML file for editing."""
    if path.exists() and not force:
        raise ValidationError(
            f"Configuration file already exists: {path}",
            "Use --force to overwrite it.",
        )

    write_default_config(path)
    console.print(f"[green]✓ Wrote default configuration to {path}[/green]")
    console.print("\n[dim]Next steps:[/dim]")
    console.print(f"  ops-provision run marzban --domain <domain> --config {path}")


if __name__ == "__main__":
    app()
