"""
Random credential and identifier generation.

All randomness comes from the ``secrets`` module (the OS CSPRNG). A
``SecretGenerator`` also acts as the per-run registry of generated values:
each purpose is issued once and the resulting ``Secret`` is immutable.
"""

import logging
import secrets
import string
from collections.abc import Callable
from dataclasses import dataclass

from ops_provision.exceptions import EntropySourceUnavailable

logger = logging.getLogger(__name__)

ALPHANUMERIC = string.ascii_letters + string.digits
LOWER_ALPHANUMERIC = string.ascii_lowercase + string.digits
HEX_LOWER = "0123456789abcdef"


@dataclass(frozen=True)
class Secret:
    """A generated value tagged with the purpose it serves."""

    purpose: str
    value: str
    charset: str | None = None
    length: int = 0
    external: bool = False

    def __str__(self) -> str:
        return self.value

    def __repr__(self) -> str:
        return f"Secret(purpose={self.purpose!r}, length={len(self.value)})"


class SecretGenerator:
    """
    Generates credentials and keeps the ones issued during a run.

    Args:
        randbelow: Source of uniform integers in ``[0, n)``. Defaults to
            ``secrets.randbelow``; tests inject failing sources here.
    """

    def __init__(self, randbelow: Callable[[int], int] | None = None):
        self._randbelow = randbelow or secrets.randbelow
        self._issued: dict[str, Secret] = {}

    def _draw(self, n: int) -> int:
        try:
            return self._randbelow(n)
        except (OSError, NotImplementedError) as e:
            raise EntropySourceUnavailable(e) from e

    def generate(self, charset: str, length: int) -> str:
        """
        Generate a string of exactly ``length`` characters from ``charset``.

        Raises:
            ValueError: If charset is empty or length is not positive
            EntropySourceUnavailable: If the random source cannot be read
        """
        if not charset:
            raise ValueError("charset must not be empty")
        if length <= 0:
            raise ValueError(f"length must be positive, got {length}")

        return "".join(charset[self._draw(len(charset))] for _ in range(length))

    def random_port(self, low: int, high: int) -> int:
        """Pick a port uniformly from the inclusive range ``[low, high]``."""
        if low > high:
            raise ValueError(f"empty port range {low}-{high}")
        return low + self._draw(high - low + 1)

    def issue(self, purpose: str, charset: str, length: int) -> Secret:
        """
        Generate the secret for ``purpose``, or return the one already issued.
        """
        existing = self._issued.get(purpose)
        if existing is not None:
            return existing

        secret = Secret(
            purpose=purpose,
            value=self.generate(charset, length),
            charset=charset,
            length=length,
        )
        self._issued[purpose] = secret
        logger.debug(f"Issued secret for {purpose} ({length} chars)")
        return secret

    def register(self, purpose: str, value: str) -> Secret:
        """Record a secret produced by an external tool (e.g. a private key)."""
        existing = self._issued.get(purpose)
        if existing is not None:
            if existing.value != value:
                raise ValueError(f"secret for {purpose!r} already issued with a different value")
            return existing

        secret = Secret(purpose=purpose, value=value, length=len(value), external=True)
        self._issued[purpose] = secret
        return secret

    def get(self, purpose: str) -> Secret | None:
        return self._issued.get(purpose)

    @property
    def secrets(self) -> list[Secret]:
        """Secrets issued so far, in issue order."""
        return list(self._issued.values())
