"""
Step executor: the only place that touches the host.

Commands run through ``subprocess.Popen`` in their own session so a timeout or
an operator interrupt can kill the whole process group. Non-zero exits are
returned as data, never raised.
Output is decoded as UTF-8; undecodable bytes become U+FFFD.
"""

import logging
import os
import shlex
import shutil
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

from ops_provision.util.files import read_text, write_text

logger = logging.getLogger(__name__)

# Exit code reported when the executable cannot be started (shell convention)
EXIT_NOT_FOUND = 127


@dataclass
class ExecutionResult:
    """Outcome of one command or file effect."""

    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class StepExecutor:
    """
    Runs external commands and performs file writes.

    Args:
        dry_run: Record mutating calls without performing them. Read-only
            probes still run so idempotency checks report real host state.
    """

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run
        self.history: list[str] = []
        self.probes: list[str] = []

    def run(
        self,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        input: str | None = None,
        mutating: bool = True,
    ) -> ExecutionResult:
        """
        Run ``command`` with ``args`` and capture its output.

        Args:
            command: Executable name or path
            args: Arguments
            env: Extra environment variables, layered over the current ones
            timeout: Seconds before the process group is killed
            input: Text written to the child's stdin
            mutating: False for read-only probes

        Returns:
            ExecutionResult; inspect ``exit_code`` and ``timed_out``
        """
        argv = [command, *(args or [])]
        display = shlex.join(argv)

        if mutating:
            self.history.append(display)
            if self.dry_run:
                logger.info(f"[dry-run] would run: {display}")
                return ExecutionResult(command=display, exit_code=0)
        else:
            self.probes.append(display)

        full_env = os.environ.copy()
        if env:
            full_env.update(env)

        logger.debug(f"Running: {display}")
        start = time.monotonic()
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE if input is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                env=full_env,
                start_new_session=True,
            )
        except OSError as e:
            return ExecutionResult(
                command=display,
                exit_code=EXIT_NOT_FOUND,
                stderr=str(e),
                elapsed=time.monotonic() - start,
            )

        timed_out = False
        try:
            stdout, stderr = proc.communicate(input=input, timeout=timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            logger.warning(f"Timed out after {timeout}s, killing: {display}")
            self._kill(proc)
            # A second communicate() returns everything read before the kill
            stdout, stderr = proc.communicate()
        except BaseException:
            # KeyboardInterrupt / OperationCancelled: never leave the child running
            logger.warning(f"Interrupted, killing: {display}")
            self._kill(proc)
            proc.wait()
            raise

        return ExecutionResult(
            command=display,
            exit_code=proc.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            timed_out=timed_out,
            elapsed=time.monotonic() - start,
        )

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            proc.kill()

    def write_file(self, path: str | Path, content: str, mode: int | None = None) -> ExecutionResult:
        """Write ``content`` to ``path``, creating parent directories."""
        display = f"write {path}"
        self.history.append(display)
        if self.dry_run:
            logger.info(f"[dry-run] would write: {path}")
            return ExecutionResult(command=display, exit_code=0)

        try:
            write_text(path, content, mode=mode)
        except OSError as e:
            return ExecutionResult(command=display, exit_code=1, stderr=str(e))
        return ExecutionResult(command=display, exit_code=0)

    def make_dirs(self, path: str | Path) -> ExecutionResult:
        display = f"mkdir {path}"
        self.history.append(display)
        if self.dry_run:
            return ExecutionResult(command=display, exit_code=0)

        try:
            Path(path).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return ExecutionResult(command=display, exit_code=1, stderr=str(e))
        return ExecutionResult(command=display, exit_code=0)

    def remove_path(self, path: str | Path) -> ExecutionResult:
        """Remove a file or directory tree. A missing path is not an error."""
        display = f"remove {path}"
        self.history.append(display)
        if self.dry_run:
            logger.info(f"[dry-run] would remove: {path}")
            return ExecutionResult(command=display, exit_code=0)

        p = Path(path)
        try:
            if p.is_dir() and not p.is_symlink():
                shutil.rmtree(p)
            else:
                p.unlink(missing_ok=True)
        except OSError as e:
            return ExecutionResult(command=display, exit_code=1, stderr=str(e))
        return ExecutionResult(command=display, exit_code=0)

    def move_path(self, src: str | Path, dst: str | Path) -> ExecutionResult:
        """Replace ``dst`` with ``src`` in one rename; both must be on the same filesystem."""
        display = f"move {src} {dst}"
        self.history.append(display)
        if self.dry_run:
            logger.info(f"[dry-run] would move: {src} -> {dst}")
            return ExecutionResult(command=display, exit_code=0)

        try:
            os.replace(src, dst)
        except OSError as e:
            return ExecutionResult(command=display, exit_code=1, stderr=str(e))
        return ExecutionResult(command=display, exit_code=0)

    def read_file(self, path: str | Path) -> str | None:
        """Return file content, or None if the file does not exist."""
        try:
            return read_text(path)
        except FileNotFoundError:
            return None

    def path_exists(self, path: str | Path) -> bool:
        return Path(path).exists()

    def command_exists(self, name: str) -> bool:
        return shutil.which(name) is not None
