"""
Plan ``reality-config``: emit a VLESS/TCP/REALITY inbound for the panel.

The x25519 key pair comes from ``xray x25519`` run inside the panel
container; the short id is generated locally.
"""

import json
import re

from ops_provision.config import ProvisionConfig
from ops_provision.credentials import HEX_LOWER
from ops_provision.plan import ProvisioningPlan, Step, StepContext
from ops_provision.util.files import SECRET_FILE_MODE
from ops_provision.validation import validate_domain

PLAN_NAME = "reality-config"
DESCRIPTION = "Generate REALITY keys in the panel container and write an xray inbound config"

# Older xray prints "Private key:" / "Public key:", newer prints
# "PrivateKey:" / "Password:" (the public key)
PRIVATE_KEY_PATTERN = re.compile(r"^\s*Private\s*key:\s*(\S+)", re.IGNORECASE | re.MULTILINE)
PUBLIC_KEY_PATTERN = re.compile(
    r"^\s*(?:Public\s*key|Password):\s*(\S+)", re.IGNORECASE | re.MULTILINE
)

DRY_RUN_PLACEHOLDER = "dry-run-placeholder"


def parse_x25519_output(output: str) -> tuple[str, str] | None:
    """
    Extract ``(private_key, public_key)`` from ``xray x25519`` output.

    Returns:
        The key pair, or None if either key is missing
    """
    private = PRIVATE_KEY_PATTERN.search(output)
    public = PUBLIC_KEY_PATTERN.search(output)
    if not private or not public:
        return None
    return private.group(1), public.group(1)


def config_written(ctx: StepContext) -> bool:
    return ctx.executor.path_exists(ctx.config.reality_output)


def generate_keys(ctx: StepContext) -> None:
    result = ctx.run("docker", ["exec", ctx.config.container_name, "xray", "x25519"])
    if ctx.dry_run:
        ctx.values["private_key"] = DRY_RUN_PLACEHOLDER
        ctx.values["public_key"] = DRY_RUN_PLACEHOLDER
        return

    keys = parse_x25519_output(result.stdout)
    if keys is None:
        ctx.fail("could not parse x25519 keys from output", result)

    private_key, public_key = keys
    ctx.secrets.register("reality-private-key", private_key)
    ctx.values["private_key"] = private_key
    ctx.values["public_key"] = public_key


def generate_short_id(ctx: StepContext) -> None:
    short_id = ctx.secrets.issue("reality-short-id", HEX_LOWER, ctx.config.short_id_length)
    ctx.values["short_id"] = short_id.value


def write_reality_config(ctx: StepContext) -> None:
    config = ctx.config
    content = ctx.render(
        "xray_reality.json.j2",
        {
            "port": str(config.reality_port),
            "dest": f"{config.domain}:{config.reality_dest_port}",
            "server_name": config.domain,
            "private_key": ctx.values["private_key"],
            "short_id": ctx.values["short_id"],
        },
    )
    # The template is static JSON; a parse failure means a broken override
    json.loads(content)
    ctx.write_file(config.reality_output, content, mode=SECRET_FILE_MODE)


def remove_reality_config(ctx: StepContext) -> None:
    ctx.remove(ctx.config.reality_output)


def summarize(ctx: StepContext) -> None:
    config = ctx.config
    ctx.set_output("Config file", config.reality_output)
    # The inbound carries the private key, so point at the file instead
    ctx.set_output("Copy the inbound with", f"cat {config.reality_output}")
    ctx.set_output("Server name (SNI)", config.domain)
    ctx.set_output("Destination", f"{config.domain}:{config.reality_dest_port}")
    if "public_key" in ctx.values:
        ctx.set_output("Public key", ctx.values["public_key"])
    if "short_id" in ctx.values:
        ctx.set_output("Short id", ctx.values["short_id"])


def build_plan(config: ProvisionConfig) -> ProvisioningPlan:
    """
    Build the ``reality-config`` plan.

    Raises:
        InvalidDomainError: If ``config.domain`` is not a valid domain
    """
    validate_domain(config.domain)

    return ProvisioningPlan(
        PLAN_NAME,
        DESCRIPTION,
        steps=[
            Step(
                "generate-keys",
                generate_keys,
                check=config_written,
                description="Run xray x25519 inside the panel container",
            ),
            Step(
                "generate-short-id",
                generate_short_id,
                check=config_written,
                description="Generate the REALITY short id",
            ),
            Step(
                "write-reality-config",
                write_reality_config,
                check=config_written,
                rollback=remove_reality_config,
                description="Write the inbound config JSON",
            ),
        ],
        summarize=summarize,
    )
