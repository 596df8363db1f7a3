"""
File utility functions.
"""

import os
from pathlib import Path

# Mode for files that hold credentials or private keys
SECRET_FILE_MODE = 0o600


def ensure_dir(path: str | Path) -> Path:
    """Ensure directory exists, creating if necessary."""
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def read_text(path: str | Path) -> str:
    """Read text file content."""
    return Path(path).read_text()


def write_text(path: str | Path, content: str, mode: int | None = None) -> None:
    """
    Write text to file, creating parent directories if needed.

    When ``mode`` is given the file is created with that mode, so secret
    content is never readable by others, even briefly.
    """
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)

    if mode is None:
        p.write_text(content)
        return

    fd = os.open(p, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "w") as f:
        f.write(content)
    # O_CREAT ignores mode for existing files and is subject to the umask
    os.chmod(p, mode)


def parse_env_file(content: str) -> dict[str, str]:
    """
    Parse ``KEY = "value"`` lines as written by the panel env template.

    Comments and blank lines are skipped; surrounding quotes are removed.
    """
    values = {}
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        values[key.strip()] = value
    return values
