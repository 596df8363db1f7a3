"""
Custom exceptions for ops-provision with helpful error messages.
"""

from rich.markup import escape


class ProvisionError(Exception):
    """Base exception for ops-provision errors."""

    def __init__(self, message: str, suggestion: str = None):
        self.message = message
        self.suggestion = suggestion
        super().__init__(self.message)

    def __str__(self):
        if self.suggestion:
            return f"{self.message}\n\nSuggestion: {self.suggestion}"
        return self.message


class ValidationError(ProvisionError):
    """Bad operator input. Raised before any step runs."""

    pass


class InvalidDomainError(ValidationError):
    """Domain name is empty or malformed."""

    def __init__(self, domain: str):
        if not domain:
            message = "Domain cannot be empty."
        else:
            message = f"'{domain}' does not look like a valid domain name."

        suggestion = (
            "Pass a fully qualified domain name made of letters, digits and hyphens,\n"
            "with at least one dot:\n"
            "  ops-provision run marzban --domain panel.example.com"
        )
        super().__init__(message, suggestion)


class InvalidPortRangeError(ValidationError):
    """Port range is out of bounds or inverted."""

    def __init__(self, low: int, high: int):
        message = f"Invalid port range: {low}-{high}"
        suggestion = "Ports must satisfy 1 <= low <= high <= 65535."
        super().__init__(message, suggestion)


class PlanNotFoundError(ValidationError):
    """Requested plan is not registered."""

    def __init__(self, plan_name: str, available_plans: list[str] = None):
        message = f"Plan '{plan_name}' not found."

        if available_plans:
            plans_list = "\n  - ".join(available_plans)
            suggestion = (
                f"Available plans:\n  - {plans_list}\n\n"
                "List plans and their steps with:\n"
                "  ops-provision plans"
            )
        else:
            suggestion = "List plans with:\n  ops-provision plans"
        super().__init__(message, suggestion)


class InvalidConfigError(ValidationError):
    """Configuration file is invalid."""

    def __init__(self, error_details: str):
        message = f"Invalid configuration file: {error_details}"

        suggestion = (
            "Fix the configuration file or regenerate the defaults:\n"
            "  ops-provision init-config ops-provision.yaml\n\n"
            "Then merge your settings back in."
        )
        super().__init__(message, suggestion)


class LockHeldError(ValidationError):
    """Another run holds the advisory lock for this plan."""

    def __init__(self, lock_path: str):
        message = f"Another provisioning run is in progress (lock held: {lock_path})"
        suggestion = (
            "Wait for the other run to finish. If no run is active, the lock is\n"
            "released automatically when its process exits."
        )
        super().__init__(message, suggestion)


class NotRootError(ValidationError):
    """A plan that changes system state was started without root privileges."""

    def __init__(self, plan: str):
        message = f"Plan '{plan}' must be run as root"
        suggestion = (
            "Re-run with sudo, or preview the changes first:\n"
            f"  ops-provision run {plan} --dry-run"
        )
        super().__init__(message, suggestion)


class PlanDefinitionError(ProvisionError):
    """A plan was built with inconsistent steps."""

    pass


class StepError(ProvisionError):
    """Base class for failures attributed to a single step."""

    def __init__(self, step: str, message: str, suggestion: str = None):
        self.step = step
        super().__init__(message, suggestion)


class PreconditionCheckFailed(StepError):
    """The idempotency probe itself errored."""

    def __init__(self, step: str, cause: Exception):
        self.cause = cause
        message = f"Step '{step}': idempotency check failed: {cause}"
        suggestion = (
            "The check could not determine the host state. Common causes:\n"
            "  - Missing privileges (run as root)\n"
            "  - Unreadable configuration files"
        )
        super().__init__(step, message, suggestion)


class ExecutionFailure(StepError):
    """An external command exited non-zero or produced unusable output."""

    def __init__(
        self, step: str, command: str, exit_code: int, stderr: str = "", reason: str = None
    ):
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr

        if reason:
            message = f"Step '{step}': {reason}: {command}"
        else:
            message = f"Step '{step}': command failed with exit code {exit_code}: {command}"
        if stderr.strip():
            message += f"\n  {stderr.strip()}"
        super().__init__(step, message)


class StepTimeout(StepError):
    """A command exceeded its timeout and was terminated."""

    def __init__(self, step: str, command: str, timeout: float):
        self.command = command
        self.timeout = timeout

        message = f"Step '{step}': command timed out after {timeout:g}s: {command}"
        suggestion = (
            "Raise the timeout if the host is slow:\n"
            "  ops-provision run <plan> --timeout 1800"
        )
        super().__init__(step, message, suggestion)


class OperationCancelled(ProvisionError):
    """Run interrupted by the operator (SIGINT or SIGTERM)."""

    def __init__(self, signal_name: str = "SIGINT"):
        self.signal_name = signal_name
        super().__init__(f"Provisioning cancelled by {signal_name}")


class EntropySourceUnavailable(ProvisionError):
    """The operating system random source could not be read."""

    def __init__(self, cause: Exception):
        self.cause = cause
        message = f"Cryptographically secure random source unavailable: {cause}"
        suggestion = "Check that /dev/urandom is readable on this host."
        super().__init__(message, suggestion)


class TemplateError(ProvisionError):
    """Errors related to template loading and rendering."""

    pass


class MissingVariable(TemplateError):
    """A template placeholder has no value."""

    def __init__(self, name: str, template_name: str = None):
        self.name = name
        self.template_name = template_name

        if template_name:
            message = f"Template '{template_name}' requires variable '{name}'"
        else:
            message = f"Missing template variable '{name}'"
        super().__init__(message)


class TemplateNotFoundError(TemplateError):
    """Template not found in the override or default directories."""

    def __init__(self, template_name: str):
        message = f"Template '{template_name}' not found"
        suggestion = (
            "Check templates_dir in your configuration file, or remove it to use\n"
            "the templates shipped with ops-provision."
        )
        super().__init__(message, suggestion)


def format_error_for_cli(error: Exception) -> str:
    """
    Format an exception for CLI display with helpful information.

    Args:
        error: The exception to format

    Returns:
        Formatted error message string
    """
    if isinstance(error, ProvisionError):
        # Command output can contain square brackets
        output = f"[red]Error:[/red] {escape(error.message)}"
        if error.suggestion:
            output += f"\n\n[yellow]{escape(error.suggestion)}[/yellow]"
        return output
    else:
        return f"[red]Error:[/red] {escape(str(error))}"
