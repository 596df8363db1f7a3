"""
Input validation. Everything here runs before the first step.
"""

import os
import re
from pathlib import Path

from ops_provision.exceptions import InvalidDomainError, InvalidPortRangeError, NotRootError
from ops_provision.util.files import parse_env_file, read_text

# Labels of letters, digits and inner hyphens; at least two labels
DOMAIN_PATTERN = re.compile(
    r"^[a-zA-Z0-9]([a-zA-Z0-9\-]*[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9\-]*[a-zA-Z0-9])?)+$"
)

MAX_DOMAIN_LENGTH = 253
MAX_LABEL_LENGTH = 63

OS_RELEASE = Path("/etc/os-release")


def is_valid_domain(domain: str) -> bool:
    """Check whether ``domain`` is a dotted hostname such as ``panel.example.com``."""
    if not domain or len(domain) > MAX_DOMAIN_LENGTH:
        return False
    if not DOMAIN_PATTERN.fullmatch(domain):
        return False
    return all(len(label) <= MAX_LABEL_LENGTH for label in domain.split("."))


def validate_domain(domain: str | None) -> str:
    """
    Validate and normalize a domain name.

    Returns:
        The domain with surrounding whitespace removed

    Raises:
        InvalidDomainError: If the domain is empty or malformed
    """
    domain = (domain or "").strip()
    if not is_valid_domain(domain):
        raise InvalidDomainError(domain)
    return domain


def validate_port_range(low: int, high: int) -> tuple[int, int]:
    """Ensure ``1 <= low <= high <= 65535``."""
    if not (1 <= low <= high <= 65535):
        raise InvalidPortRangeError(low, high)
    return low, high


def require_root(plan: str) -> None:
    """
    Refuse to continue unless running as root.

    Raises:
        NotRootError: If the effective user id is not 0
    """
    if os.geteuid() != 0:
        raise NotRootError(plan)


def os_release_ids(path: Path = OS_RELEASE) -> set[str]:
    """Lowercased ``ID`` and ``ID_LIKE`` entries of an os-release file, empty if unreadable."""
    try:
        values = parse_env_file(read_text(path))
    except OSError:
        return set()
    ids = {values.get("ID", "").lower(), *values.get("ID_LIKE", "").lower().split()}
    ids.discard("")
    return ids


def is_supported_os(supported: tuple[str, ...], path: Path = OS_RELEASE) -> bool:
    """Check whether this host's distribution is, or derives from, one of ``supported``."""
    return bool(os_release_ids(path) & set(supported))
