"""
Run configuration for ops-provision.

``ProvisionConfig`` is the single explicit configuration object handed to the
engine and plan builders. Every host-specific constant (paths, ports, URLs,
container names, versions) lives here and can be overridden from a YAML file.
"""

import json
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validate

from ops_provision.exceptions import InvalidConfigError
from ops_provision.util.files import ensure_dir
from ops_provision.validation import validate_port_range

SCHEMA_FILE = Path(__file__).parent / "schema" / "config.schema.json"

DEFAULT_CONFIG_FILE = "ops-provision.yaml"

# YAML section -> ProvisionConfig fields stored in it
SECTIONS = {
    "run": ["timeout", "lock_dir", "templates_dir"],
    "marzban": [
        "app_name",
        "install_dir",
        "data_root",
        "admin_username",
        "admin_password_length",
        "https_port_range",
        "panel_port",
        "files_url_prefix",
        "cli_script_url",
        "cli_path",
        "docker_install_url",
    ],
    "caddy": ["caddy_version", "caddy_deb_url", "caddyfile_path", "tls_ask_port", "acme_id_length"],
    "reality": [
        "container_name",
        "reality_output",
        "reality_port",
        "reality_dest_port",
        "short_id_length",
    ],
}

PATH_FIELDS = {
    "lock_dir",
    "templates_dir",
    "install_dir",
    "data_root",
    "cli_path",
    "caddyfile_path",
    "reality_output",
}


@dataclass(frozen=True)
class ProvisionConfig:
    """Parameters of one provisioning run."""

    domain: str = ""
    dry_run: bool = False
    timeout: float | None = None
    lock_dir: Path = Path("/var/lock")
    templates_dir: Path | None = None

    # Panel
    app_name: str = "marzban"
    install_dir: Path = Path("/opt")
    data_root: Path = Path("/var/lib")
    admin_username: str = "admin"
    admin_password_length: int = 16
    https_port_range: tuple[int, int] = (50000, 65535)
    panel_port: int = 8000
    files_url_prefix: str = "https://raw.githubusercontent.com/Gozargah/Marzban/master"
    cli_script_url: str = "https://github.com/Gozargah/Marzban-scripts/raw/master/marzban.sh"
    cli_path: Path = Path("/usr/local/bin/marzban")
    docker_install_url: str = "https://get.docker.com"

    # Reverse proxy
    caddy_version: str = "2.9.1"
    caddy_deb_url: str = (
        "https://github.com/caddyserver/caddy/releases/download/"
        "v{version}/caddy_{version}_linux_amd64.deb"
    )
    caddyfile_path: Path = Path("/etc/caddy/Caddyfile")
    tls_ask_port: int = 10087
    acme_id_length: int = 12

    # REALITY inbound
    container_name: str = "marzban-marzban-1"
    reality_output: Path = Path("config.json")
    reality_port: int = 443
    reality_dest_port: int = 443
    short_id_length: int = 16

    @property
    def app_dir(self) -> Path:
        return self.install_dir / self.app_name

    @property
    def data_dir(self) -> Path:
        return self.data_root / self.app_name

    @property
    def compose_file(self) -> Path:
        return self.app_dir / "docker-compose.yml"

    @property
    def env_file(self) -> Path:
        return self.app_dir / ".env"

    @property
    def xray_config_path(self) -> Path:
        return self.data_dir / "xray_config.json"

    @property
    def caddy_package_url(self) -> str:
        return self.caddy_deb_url.format(version=self.caddy_version)

    def with_overrides(self, **overrides: Any) -> "ProvisionConfig":
        """Return a copy with the non-None ``overrides`` applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProvisionConfig":
        """
        Build a config from the sectioned mapping used in YAML files.

        Missing keys keep their defaults.
        """
        kwargs: dict[str, Any] = {}
        for section, names in SECTIONS.items():
            values = data.get(section) or {}
            for name in names:
                if name not in values or values[name] is None:
                    continue
                value = values[name]
                if name in PATH_FIELDS:
                    value = Path(value)
                elif name == "https_port_range":
                    value = validate_port_range(int(value[0]), int(value[1]))
                kwargs[name] = value
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Sectioned mapping suitable for writing a YAML config file."""
        data: dict[str, Any] = {}
        for section, names in SECTIONS.items():
            data[section] = {}
            for name in names:
                value = getattr(self, name)
                if isinstance(value, Path):
                    value = str(value)
                elif isinstance(value, tuple):
                    value = list(value)
                data[section][name] = value
        return data


def _validate_config_schema(config: dict) -> None:
    """Validate config against the packaged JSON schema."""
    schema = json.loads(SCHEMA_FILE.read_text())
    try:
        validate(instance=config, schema=schema)
    except ValidationError as e:
        location = ".".join(str(p) for p in e.path) or "<root>"
        raise InvalidConfigError(f"{e.message} (at {location})") from e


def load_config(path: str | Path) -> ProvisionConfig:
    """
    Load and validate a YAML configuration file.

    Raises:
        InvalidConfigError: If the file is missing, unparsable or fails the schema
    """
    config_file = Path(path)
    if not config_file.exists():
        raise InvalidConfigError(f"file not found: {config_file}")

    try:
        with open(config_file) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise InvalidConfigError(f"{config_file}: {e}") from e

    if data is None:
        data = {}

    if not isinstance(data, dict):
        raise InvalidConfigError(f"expected a mapping, got {type(data).__name__}")

    _validate_config_schema(data)
    return ProvisionConfig.from_dict(data)


def write_default_config(path: str | Path) -> Path:
    """Write the default configuration as YAML to ``path``."""
    config_file = Path(path)
    ensure_dir(config_file.parent)
    defaults = ProvisionConfig().to_dict()
    # templates_dir defaults to None; keep the key so it is discoverable
    with open(config_file, "w") as f:
        yaml.dump(defaults, f, default_flow_style=False, sort_keys=False)
    return config_file
