"""Target resolution and tenant addressing-mode detection.

A target is one identity-service endpoint the user can select. Targets are
keyed by name; each carries a flat option bag (host URL, addressing mode,
TLS policy, stored tokens). The helpers here are pure so the config store and
the CLI can share them.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping
from urllib import parse as urlparse

from .util.common import as_bool, as_optional_str, ensure_full_url

TENANT_IN_PATH_MARKER = "/SAAS/t/"

HOST_OPTION = "host"
MODE_OPTION = "mode"
INSECURE_OPTION = "insecure"
TOKEN_TYPE_OPTION = "token_type"
ACCESS_TOKEN_OPTION = "access_token"
REFRESH_TOKEN_OPTION = "refresh_token"
ID_TOKEN_OPTION = "id_token"
CLI_CLIENT_ID_OPTION = "cli_client_id"
CLI_CLIENT_SECRET_OPTION = "cli_client_secret"

TOKEN_OPTIONS = (
    TOKEN_TYPE_OPTION,
    ACCESS_TOKEN_OPTION,
    REFRESH_TOKEN_OPTION,
    ID_TOKEN_OPTION,
)


class AddressingMode(str, Enum):
    TENANT_IN_HOST = "tenant-in-host"
    TENANT_IN_PATH = "tenant-in-path"


@dataclass(frozen=True, slots=True)
class Target:
    name: str
    host: str
    mode: AddressingMode
    insecure: bool = False
    token_type: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    id_token: str | None = None
    options: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_options(cls, name: str, options: Mapping[str, Any]) -> Target:
        host = as_optional_str(options.get(HOST_OPTION))
        if not host:
            raise ValueError(f"target {name} has no host")
        return cls(
            name=name,
            host=host,
            mode=parse_addressing_mode(options.get(MODE_OPTION)),
            insecure=as_bool(options.get(INSECURE_OPTION)),
            token_type=as_optional_str(options.get(TOKEN_TYPE_OPTION)),
            access_token=as_optional_str(options.get(ACCESS_TOKEN_OPTION)),
            refresh_token=as_optional_str(options.get(REFRESH_TOKEN_OPTION)),
            id_token=as_optional_str(options.get(ID_TOKEN_OPTION)),
            options=dict(options),
        )

    def authorization_header(self) -> str | None:
        if not self.access_token:
            return None
        if not self.token_type:
            return self.access_token
        return f"{self.token_type} {self.access_token}"


def classify_addressing_mode(url: str) -> AddressingMode:
    path = urlparse.urlsplit(ensure_full_url(url)).path
    if TENANT_IN_PATH_MARKER in path:
        return AddressingMode.TENANT_IN_PATH
    return AddressingMode.TENANT_IN_HOST


def parse_addressing_mode(value: Any) -> AddressingMode:
    # Unknown or missing modes are treated as the historical default.
    if value == AddressingMode.TENANT_IN_PATH.value:
        return AddressingMode.TENANT_IN_PATH
    return AddressingMode.TENANT_IN_HOST


def resolve_target(
    url: str, name: str | None, targets: Mapping[str, Mapping[str, Any]]
) -> str | None:
    """Find an existing target for user input ``(url, name)``.

    Without a name, ``url`` may itself be a target name; otherwise the first
    target (in name order) whose host matches the normalized URL wins. With a
    name, only that target is considered. Returns ``None`` when nothing
    matches; callers decide whether to create a new target.
    """

    full_url = ensure_full_url(url)
    if not name:
        if url in targets:
            return url
        for key in sorted(targets):
            if targets[key].get(HOST_OPTION) == full_url:
                return key
        return None

    options = targets.get(name)
    if options is not None and options.get(HOST_OPTION) == full_url:
        return name
    return None


def next_target_name(existing: Iterable[str]) -> str:
    used = set(existing)
    for i in itertools.count():
        candidate = str(i)
        if candidate not in used:
            return candidate
    raise AssertionError("unreachable")
