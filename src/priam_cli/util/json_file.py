from __future__ import annotations

import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import json5

# The config file carries access tokens and client secrets.
PRIVATE_FILE_MODE = 0o600


def read_json5_object(
    path: str,
    *,
    invalid_json_prefix: str,
    expected_object_message: str,
    read_error_prefix: str,
) -> dict[str, Any] | None:
    """Read a JSON/JSON5 object from ``path``; ``None`` when the file is missing."""

    file_path = Path(path)
    try:
        raw = file_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise ValueError(f"{read_error_prefix}: {exc}") from None

    if not raw.strip():
        return None

    try:
        parsed = json5.loads(raw)
    except Exception as exc:
        raise ValueError(f"{invalid_json_prefix}: {exc}") from None

    if not isinstance(parsed, dict):
        raise ValueError(expected_object_message)
    return parsed


def write_json_object_locked(
    path: str,
    payload: dict[str, Any],
    *,
    busy_message: str,
) -> None:
    """Replace ``path`` with ``payload`` as owner-only JSON, under a sibling lock file."""

    serialized = json.dumps(payload, indent=2, ensure_ascii=False, sort_keys=True) + "\n"
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    try:
        with exclusive_lock(target.with_name(f"{target.name}.lock")):
            _replace_private(target, serialized)
    except BlockingIOError:
        raise ValueError(busy_message) from None


@contextmanager
def exclusive_lock(lock_path: Path) -> Iterator[None]:
    import fcntl

    fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, PRIVATE_FILE_MODE)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        yield
    finally:
        # closing the descriptor drops the lock
        os.close(fd)


def _replace_private(target: Path, text: str) -> None:
    tmp = tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=target.parent,
        prefix=f".{target.name}.",
        suffix=".tmp",
        delete=False,
    )
    try:
        with tmp:
            tmp.write(text)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.chmod(tmp.name, PRIVATE_FILE_MODE)
        os.replace(tmp.name, target)
    except BaseException:
        Path(tmp.name).unlink(missing_ok=True)
        raise
