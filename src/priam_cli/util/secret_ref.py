from __future__ import annotations

import os
from pathlib import Path

from dotenv import dotenv_values


class SecretRefNotFoundError(ValueError):
    pass


def resolve_secret(value: str) -> str:
    """Return the secret named by ``value``.

    ``env://NAME`` reads an environment variable, ``.env://path:NAME`` reads a
    variable from a dotenv file, and anything else is taken literally.
    """

    if value.startswith("env://"):
        name = value[len("env://") :].strip()
        if not name:
            raise ValueError("invalid secret reference: missing env var name")
        secret = os.environ.get(name)
        if secret is None:
            raise SecretRefNotFoundError(f"environment variable not set: {name}")
        return secret

    if value.startswith(".env://"):
        rest = value[len(".env://") :]
        if ":" not in rest:
            raise ValueError("invalid secret reference: expected .env://path:VAR")
        path, name = rest.rsplit(":", 1)
        if not path.strip() or not name.strip():
            raise ValueError("invalid secret reference: expected .env://path:VAR")
        file_path = Path(path.strip())
        if not file_path.exists():
            raise SecretRefNotFoundError(f".env file not found: {path.strip()}")
        values = dotenv_values(dotenv_path=file_path, encoding="utf-8")
        secret = values.get(name.strip())
        if secret is None:
            raise SecretRefNotFoundError(
                f"variable not found in .env file: {name.strip()}"
            )
        return secret

    return value
