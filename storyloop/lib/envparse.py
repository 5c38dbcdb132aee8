"""
Safe .env file parser and writer.

Parses KEY=value files without shell execution and rejects dangerous
patterns that could enable injection. Writes go through a temp file and
os.replace so a reader never sees a half-written file.
"""

import os
import re
import tempfile
from pathlib import Path
from typing import Callable

FORBIDDEN_PATTERNS = [
    r'`',           # backticks
    r'\$\(',        # command substitution
    r'\$\{',        # variable expansion
    r';',           # command chaining
    r'&&',          # AND chaining
    r'\|\|',        # OR chaining
    r'\|',          # pipe
]

KEY_PATTERN = re.compile(r'^[A-Z][A-Z0-9_]*$')


def load_env(filepath: str) -> dict:
    """
    Parse env file safely, return dict.

    Raises:
        FileNotFoundError: if file doesn't exist
        ValueError: if syntax invalid or forbidden pattern found
    """
    result = {}
    path = Path(filepath)

    if not path.exists():
        raise FileNotFoundError(f"Env file not found: {filepath}")

    for lineno, line in enumerate(path.read_text().splitlines(), 1):
        line = line.strip()

        # Skip empty and comments
        if not line or line.startswith('#'):
            continue

        if '=' not in line:
            raise ValueError(f"Line {lineno}: Invalid syntax (no '=')")

        key, _, value = line.partition('=')
        key = key.strip()
        value = value.strip()

        if not KEY_PATTERN.match(key):
            raise ValueError(f"Line {lineno}: Invalid key '{key}'")

        # Strip quotes if present
        if len(value) >= 2:
            if (value.startswith('"') and value.endswith('"')) or \
               (value.startswith("'") and value.endswith("'")):
                value = value[1:-1]

        _check_value(value, f"Line {lineno}")

        result[key] = value

    return result


def _check_value(value: str, where: str) -> None:
    for pattern in FORBIDDEN_PATTERNS:
        if re.search(pattern, value):
            raise ValueError(f"{where}: Forbidden pattern in value")
    if '"' in value or '\n' in value:
        raise ValueError(f"{where}: Quotes and newlines are not allowed in values")


def write_env(filepath: Path, values: dict) -> None:
    """Write values as KEY="value" lines, replacing the file atomically.

    Keys keep their insertion order. Values of None are skipped.
    """
    lines = []
    for key, value in values.items():
        if value is None:
            continue
        if not KEY_PATTERN.match(key):
            raise ValueError(f"Invalid key '{key}'")
        value = str(value)
        _check_value(value, f"Key {key}")
        lines.append(f'{key}="{value}"')

    atomic_write_text(Path(filepath), "\n".join(lines) + "\n")


def update_env(filepath: Path, updates: dict, check: Callable[[dict], None] | None = None) -> dict:
    """Apply updates to an env file and return the merged values.

    A value of None removes the key. Existing key order is preserved and new
    keys are appended. check, if given, sees the merged values before they
    are written and raises to refuse them.
    """
    values = load_env(str(filepath))
    for key, value in updates.items():
        if value is None:
            values.pop(key, None)
        else:
            values[key] = str(value)
    if check is not None:
        check(values)
    write_env(filepath, values)
    return values


def atomic_write_text(path: Path, content: str) -> None:
    """Write content to path via fsync'd temp file + os.replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise
    _fsync_dir(path.parent)


def _fsync_dir(directory: Path) -> None:
    try:
        dir_fd = os.open(str(directory), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        pass
    finally:
        os.close(dir_fd)
