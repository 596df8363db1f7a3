"""
Plan ``marzban``: install the Marzban panel behind a Caddy reverse proxy.

Stages, in order: disable the firewall, install Docker, install the panel
management CLI, download the compose file and xray config, write the panel
``.env``, install Caddy, write the Caddyfile, and start the containers.
"""

import logging
import tempfile
from pathlib import Path
from urllib.parse import urlparse

from ops_provision.config import ProvisionConfig
from ops_provision.credentials import ALPHANUMERIC, LOWER_ALPHANUMERIC
from ops_provision.exceptions import ExecutionFailure
from ops_provision.plan import Criticality, ProvisioningPlan, Step, StepContext
from ops_provision.util.files import SECRET_FILE_MODE, parse_env_file
from ops_provision.validation import validate_domain, validate_port_range

logger = logging.getLogger(__name__)

PLAN_NAME = "marzban"
DESCRIPTION = "Install the Marzban panel with a Caddy reverse proxy"

# First line of every file this plan renders; lets checks tell our files from
# package defaults
MANAGED_MARKER = "# Managed by ops-provision"

EXECUTABLE_MODE = 0o755
PUBLIC_FILE_MODE = 0o644

# os-release ids the installer is written for; others run with a warning
SUPPORTED_OS = ("ubuntu", "debian")


def _compose_args(config: ProvisionConfig, *args: str) -> list[str]:
    return ["compose", "-f", str(config.compose_file), "-p", config.app_name, *args]


def resolve_https_port(ctx: StepContext) -> int:
    """
    Port the proxy listens on.

    Reuses the port recorded in an existing ``.env`` so a re-run keeps the
    panel and the proxy consistent; otherwise picks a random one.
    """
    if "https_port" in ctx.values:
        return ctx.values["https_port"]

    port = None
    content = ctx.executor.read_file(ctx.config.env_file)
    if content is not None:
        prefix = parse_env_file(content).get("XRAY_SUBSCRIPTION_URL_PREFIX", "")
        try:
            port = urlparse(prefix).port
        except ValueError:
            port = None
        if port is None:
            logger.warning(f"No HTTPS port found in {ctx.config.env_file}, generating a new one")

    if port is None:
        port = ctx.secrets.random_port(*ctx.config.https_port_range)

    ctx.values["https_port"] = port
    return port


# 1. firewall


def firewall_inactive(ctx: StepContext) -> bool:
    if not ctx.executor.command_exists("ufw"):
        logger.info("ufw not found")
        return True
    result = ctx.probe("ufw", ["status"])
    return result.ok and "status: inactive" in result.stdout.lower()


def disable_firewall(ctx: StepContext) -> None:
    ctx.run("ufw", ["disable"])


# 2. container runtime


def runtime_installed(ctx: StepContext) -> bool:
    return ctx.executor.command_exists("docker")


def install_runtime(ctx: StepContext) -> None:
    script = ctx.run("curl", ["-fsSL", ctx.config.docker_install_url]).stdout
    ctx.run("sh", ["-s"], input=script)
    ctx.run("systemctl", ["enable", "--now", "docker"])


# 3. panel management CLI


def panel_cli_installed(ctx: StepContext) -> bool:
    return ctx.executor.path_exists(ctx.config.cli_path)


def install_panel_cli(ctx: StepContext) -> None:
    script = ctx.run("curl", ["-fsSL", ctx.config.cli_script_url]).stdout
    ctx.write_file(ctx.config.cli_path, script, mode=EXECUTABLE_MODE)


def remove_panel_cli(ctx: StepContext) -> None:
    ctx.remove(ctx.config.cli_path)


# 4. panel files


def _panel_files(config: ProvisionConfig) -> list[tuple[str, Path]]:
    return [
        (f"{config.files_url_prefix}/docker-compose.yml", config.compose_file),
        (f"{config.files_url_prefix}/xray_config.json", config.xray_config_path),
    ]


def panel_files_present(ctx: StepContext) -> bool:
    return all(ctx.executor.path_exists(path) for _, path in _panel_files(ctx.config))


def download_panel_files(ctx: StepContext) -> None:
    ctx.make_dirs(ctx.config.app_dir)
    ctx.make_dirs(ctx.config.data_dir)

    downloaded = ctx.values.setdefault("downloaded_files", [])
    for url, path in _panel_files(ctx.config):
        if ctx.executor.path_exists(path):
            continue
        # Existence is the skip check, so only complete downloads may land on path
        partial = path.with_name(f"{path.name}.part")
        try:
            ctx.run("curl", ["-fsSL", url, "-o", str(partial)])
            ctx.move(partial, path)
        except BaseException:
            ctx.executor.remove_path(partial)
            raise
        downloaded.append(path)


def remove_panel_files(ctx: StepContext) -> None:
    for path in ctx.values.get("downloaded_files", []):
        ctx.remove(path)


# 5. panel environment


def env_present(ctx: StepContext) -> bool:
    return ctx.executor.path_exists(ctx.config.env_file)


def write_env(ctx: StepContext) -> None:
    config = ctx.config
    password = ctx.secrets.issue("admin-password", ALPHANUMERIC, config.admin_password_length)
    port = resolve_https_port(ctx)

    content = ctx.render(
        "marzban.env.j2",
        {
            "panel_port": str(config.panel_port),
            "admin_username": config.admin_username,
            "admin_password": password.value,
            "xray_config_path": str(config.xray_config_path),
            "database_url": f"sqlite:///{config.data_dir}/db.sqlite3",
            "subscription_url_prefix": f"https://{config.domain}:{port}",
        },
    )
    ctx.write_file(config.env_file, content, mode=SECRET_FILE_MODE)


def remove_env(ctx: StepContext) -> None:
    ctx.remove(ctx.config.env_file)


# 6. reverse proxy package


def proxy_installed(ctx: StepContext) -> bool:
    return ctx.executor.command_exists("caddy")


def install_proxy(ctx: StepContext) -> None:
    config = ctx.config
    package = Path(tempfile.gettempdir()) / f"caddy_{config.caddy_version}.deb"

    try:
        ctx.run("curl", ["-fsSL", config.caddy_package_url, "-o", str(package)])
        ctx.run("dpkg", ["-i", str(package)])
    finally:
        ctx.executor.remove_path(package)


def uninstall_proxy(ctx: StepContext) -> None:
    ctx.run("dpkg", ["-r", "caddy"])


# 7. reverse proxy configuration


def proxy_configured(ctx: StepContext) -> bool:
    content = ctx.executor.read_file(ctx.config.caddyfile_path)
    if content is None or not content.startswith(MANAGED_MARKER):
        return False
    # The proxy must listen on the port the panel advertises in .env
    return f"https_port {resolve_https_port(ctx)}\n" in content


def configure_proxy(ctx: StepContext) -> None:
    config = ctx.config
    acme_id = ctx.secrets.issue("acme-contact-id", LOWER_ALPHANUMERIC, config.acme_id_length)

    content = ctx.render(
        "Caddyfile.j2",
        {
            "https_port": str(resolve_https_port(ctx)),
            "panel_port": str(config.panel_port),
            "tls_ask_port": str(config.tls_ask_port),
            "acme_email": f"{acme_id.value}@noreply.local",
        },
    )

    ctx.values["caddyfile_backup"] = ctx.executor.read_file(config.caddyfile_path)
    ctx.write_file(config.caddyfile_path, content, mode=PUBLIC_FILE_MODE)
    try:
        ctx.run("systemctl", ["restart", "caddy"])
    except BaseException:
        # A failed step is not rolled back by the engine; undo the write here
        try:
            restore_proxy_config(ctx)
        except ExecutionFailure as e:
            logger.warning(f"Could not restore {config.caddyfile_path}: {e}")
        raise


def restore_proxy_config(ctx: StepContext) -> None:
    backup = ctx.values.get("caddyfile_backup")
    if backup is None:
        ctx.remove(ctx.config.caddyfile_path)
    else:
        ctx.write_file(ctx.config.caddyfile_path, backup, mode=PUBLIC_FILE_MODE)


# 8. services


def services_running(ctx: StepContext) -> bool:
    if not ctx.executor.path_exists(ctx.config.compose_file):
        return False
    result = ctx.probe("docker", _compose_args(ctx.config, "ps", "--status", "running", "-q"))
    return result.ok and bool(result.stdout.strip())


def start_services(ctx: StepContext) -> None:
    ctx.run("docker", _compose_args(ctx.config, "up", "-d", "--remove-orphans"))


def stop_services(ctx: StepContext) -> None:
    ctx.run("docker", _compose_args(ctx.config, "down"))


def summarize(ctx: StepContext) -> None:
    config = ctx.config
    port = resolve_https_port(ctx)
    ctx.set_output("Dashboard URL", f"https://{config.domain}:{port}/dashboard/")
    ctx.set_output("Username", config.admin_username)
    ctx.set_output("HTTPS port", port)
    ctx.set_output(
        "Config files",
        ", ".join(
            str(p)
            for p in (
                config.env_file,
                config.compose_file,
                config.xray_config_path,
                config.caddyfile_path,
            )
        ),
    )
    cli = config.cli_path.name
    ctx.set_output(
        "Useful commands",
        f"{cli} logs, {cli} restart, {cli} update, {cli} cli admin create --sudo",
    )


def build_plan(config: ProvisionConfig) -> ProvisioningPlan:
    """
    Build the ``marzban`` plan.

    Raises:
        InvalidDomainError: If ``config.domain`` is not a valid domain
    """
    validate_domain(config.domain)
    validate_port_range(*config.https_port_range)

    return ProvisioningPlan(
        PLAN_NAME,
        DESCRIPTION,
        steps=[
            Step(
                "disable-firewall",
                disable_firewall,
                check=firewall_inactive,
                criticality=Criticality.SOFT,
                description="Disable ufw so the panel ports are reachable",
            ),
            Step(
                "install-runtime",
                install_runtime,
                check=runtime_installed,
                description="Install Docker",
            ),
            Step(
                "install-panel-cli",
                install_panel_cli,
                check=panel_cli_installed,
                rollback=remove_panel_cli,
                description="Install the Marzban management script",
            ),
            Step(
                "download-files",
                download_panel_files,
                check=panel_files_present,
                rollback=remove_panel_files,
                description="Download docker-compose.yml and xray_config.json",
            ),
            Step(
                "write-env",
                write_env,
                check=env_present,
                rollback=remove_env,
                description="Write the panel .env with generated credentials",
            ),
            Step(
                "install-proxy",
                install_proxy,
                check=proxy_installed,
                rollback=uninstall_proxy,
                description="Install the Caddy package",
            ),
            Step(
                "configure-proxy",
                configure_proxy,
                check=proxy_configured,
                rollback=restore_proxy_config,
                description="Write the Caddyfile and restart Caddy",
            ),
            Step(
                "start-services",
                start_services,
                check=services_running,
                rollback=stop_services,
                description="Start the panel containers",
            ),
        ],
        summarize=summarize,
        requires_root=True,
        supported_os=SUPPORTED_OS,
    )
