"""
Pytest configuration and shared fixtures.
"""

import shlex
import tempfile
from dataclasses import replace

import pytest

from ops_provision.config import ProvisionConfig
from ops_provision.executor import ExecutionResult, StepExecutor


class ScriptedExecutor(StepExecutor):
    """
    StepExecutor whose commands are answered by handlers instead of a shell.

    Handlers are registered against a command-line prefix and called as
    ``handler(argv, input)``. They may return None (exit 0, no output), a
    string (stdout) or an ExecutionResult. Handlers registered later take
    precedence. File effects still go to the real filesystem, so configs
    used with it should point at tmp_path.
    """

    def __init__(self, installed=(), dry_run=False):
        super().__init__(dry_run=dry_run)
        self.installed = set(installed)
        self.handlers = []

    def on(self, prefix, handler):
        self.handlers.insert(0, (prefix, handler))
        return self

    def run(self, command, args=None, env=None, timeout=None, input=None, mutating=True):
        argv = [command, *(args or [])]
        display = shlex.join(argv)

        if mutating:
            self.history.append(display)
            if self.dry_run:
                return ExecutionResult(command=display, exit_code=0)
        else:
            self.probes.append(display)

        for prefix, handler in self.handlers:
            if display.startswith(prefix):
                response = handler(argv, input)
                if response is None:
                    return ExecutionResult(command=display, exit_code=0)
                if isinstance(response, str):
                    return ExecutionResult(command=display, exit_code=0, stdout=response)
                return replace(response, command=display)

        return ExecutionResult(command=display, exit_code=0)

    def command_exists(self, name):
        return name in self.installed


def fail_with(exit_code=1, stderr="", stdout=""):
    """Handler that makes a command exit non-zero."""

    def handler(argv, input):
        return ExecutionResult(command="", exit_code=exit_code, stdout=stdout, stderr=stderr)

    return handler


@pytest.fixture
def host_config(tmp_path):
    """ProvisionConfig with every host path under tmp_path."""
    return ProvisionConfig(
        domain="panel.example.com",
        lock_dir=tmp_path / "lock",
        install_dir=tmp_path / "opt",
        data_root=tmp_path / "var-lib",
        cli_path=tmp_path / "bin" / "marzban",
        caddyfile_path=tmp_path / "etc" / "caddy" / "Caddyfile",
        reality_output=tmp_path / "reality.json",
    )


@pytest.fixture
def scripted_executor():
    return ScriptedExecutor()


@pytest.fixture(autouse=True)
def isolated_tempdir(tmp_path, monkeypatch):
    """Keep downloads that go to the system temp dir inside tmp_path."""
    temp_dir = tmp_path / "tmp"
    temp_dir.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(temp_dir))
    return temp_dir
