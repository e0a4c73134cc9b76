from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, cast

from dataclasses_json import Undefined, dataclass_json

from .targets import (
    HOST_OPTION,
    INSECURE_OPTION,
    MODE_OPTION,
    TOKEN_OPTIONS,
    TOKEN_TYPE_OPTION,
    ACCESS_TOKEN_OPTION,
    REFRESH_TOKEN_OPTION,
    ID_TOKEN_OPTION,
    Target,
    classify_addressing_mode,
    next_target_name,
    resolve_target,
)
from .util.common import ensure_full_url
from .util.json_file import read_json5_object, write_json_object_locked

if TYPE_CHECKING:
    from .auth import TokenBundle

LOGGER = logging.getLogger("priam.config")

NO_TARGET = ""
CONFIG_ENV_VAR = "PRIAM_CONFIG"


def default_config_file() -> str:
    return os.environ.get(CONFIG_ENV_VAR) or str(Path.home() / ".priam.json")


@dataclass_json(undefined=Undefined.EXCLUDE)
@dataclass(slots=True)
class AppConfig:
    current_target: str = NO_TARGET
    targets: dict[str, dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> AppConfig:
        app_config = cast(AppConfig, cast(Any, cls).from_dict(doc))
        app_config.validate()
        return app_config

    def to_doc(self) -> dict[str, Any]:
        return cast(dict[str, Any], cast(Any, self).to_dict())

    def validate(self) -> None:
        if not isinstance(self.current_target, str):
            raise ValueError("invalid config file: current_target must be a string")
        if not isinstance(self.targets, dict):
            raise ValueError("invalid config file: targets must be an object")
        for name, options in self.targets.items():
            if not isinstance(options, dict):
                raise ValueError(f"invalid config file: target {name} must be an object")


class Config:
    """The persisted set of named targets and which of them is current."""

    def __init__(self, path: str, model: AppConfig | None = None) -> None:
        self.path = path
        self.model = model or AppConfig()
        if self.model.current_target not in self.model.targets:
            self.model.current_target = NO_TARGET

    @classmethod
    def load(cls, path: str) -> Config:
        doc = read_json5_object(
            path,
            invalid_json_prefix=f"could not read config file {path}",
            expected_object_message=f"could not read config file {path}: expected object",
            read_error_prefix=f"could not read config file {path}",
        )
        LOGGER.debug("config.load path=%s exists=%s", path, doc is not None)
        return cls(path, AppConfig.from_doc(doc) if doc is not None else None)

    def save(self) -> None:
        write_json_object_locked(
            self.path,
            self.model.to_doc(),
            busy_message=f"config file is busy: {self.path}",
        )
        LOGGER.debug("config.save path=%s", self.path)

    def current(self) -> Target | None:
        if self.model.current_target == NO_TARGET:
            return None
        return Target.from_options(
            self.model.current_target,
            self.model.targets[self.model.current_target],
        )

    def require_current(self) -> Target:
        target = self.current()
        if target is None:
            raise ValueError("no target set")
        return target

    def with_options(self, options: dict[str, Any]) -> Config:
        current = self._current_options()
        for key, value in options.items():
            if value is None or value == "":
                current.pop(key, None)
            else:
                current[key] = value
        return self

    def without_options(self, *keys: str) -> Config:
        current = self._current_options()
        for key in keys:
            current.pop(key, None)
        return self

    def with_tokens(self, bundle: TokenBundle) -> Config:
        self.without_tokens()
        return self.with_options(
            {
                TOKEN_TYPE_OPTION: bundle.token_type,
                ACCESS_TOKEN_OPTION: bundle.access_token,
                REFRESH_TOKEN_OPTION: bundle.refresh_token,
                ID_TOKEN_OPTION: bundle.id_token,
            }
        )

    def without_tokens(self) -> Config:
        return self.without_options(*TOKEN_OPTIONS)

    def find_target(self, url: str, name: str | None = None) -> str | None:
        return resolve_target(url, name, self.model.targets)

    def set_target(
        self,
        url: str,
        name: str | None = None,
        *,
        insecure: bool = False,
        check: Callable[[Config], None] | None = None,
    ) -> dict[str, Any]:
        existing = self.find_target(url, name)
        if existing is not None:
            self.model.current_target = existing
            self.save()
            LOGGER.info("config.target selected name=%s", existing)
            return self.describe_current()

        if not name:
            name = next_target_name(self.model.targets)

        host = ensure_full_url(url)
        mode = classify_addressing_mode(host)
        LOGGER.info("config.target mode detected: %s host=%s", mode.value, host)

        previous = copy.deepcopy(self.model)
        options: dict[str, Any] = {HOST_OPTION: host, MODE_OPTION: mode.value}
        if insecure:
            options[INSECURE_OPTION] = True
        self.model.targets[name] = options
        self.model.current_target = name
        if check is not None:
            try:
                check(self)
            except Exception:
                self.model = previous
                raise
        self.save()
        return self.describe_current()

    def delete_target(self, url: str | None, name: str | None = None) -> dict[str, Any]:
        if not url:
            if self.model.current_target == NO_TARGET:
                return {"deleted": None, "message": "nothing deleted, no target set"}
            return self._clear_target(self.model.current_target)

        found = self.find_target(url, name)
        if found is None:
            return {"deleted": None, "message": "nothing deleted, no such target found"}
        return self._clear_target(found)

    def clear(self) -> dict[str, Any]:
        self.model = AppConfig()
        self.save()
        LOGGER.info("config.clear all targets deleted")
        return {"deleted": "all", "message": "all targets deleted"}

    def list_targets(self) -> dict[str, Any]:
        targets = [
            {
                "name": key,
                "host": self.model.targets[key].get(HOST_OPTION),
                "mode": self.model.targets[key].get(MODE_OPTION),
            }
            for key in sorted(self.model.targets)
        ]
        return {"targets": targets, "current": self.model.current_target or None}

    def describe_current(self) -> dict[str, Any]:
        target = self.current()
        if target is None:
            return {"current": None, "message": "no target set"}
        result: dict[str, Any] = {
            "current": target.name,
            "host": target.host,
            "mode": target.mode.value,
        }
        if target.insecure:
            result["insecure"] = True
        if target.access_token:
            result["logged_in"] = True
        return result

    def _clear_target(self, name: str) -> dict[str, Any]:
        if self.model.current_target == name:
            self.model.current_target = NO_TARGET
        self.model.targets.pop(name, None)
        self.save()
        LOGGER.info("config.target deleted name=%s", name)
        return {"deleted": name, "message": f"deleted target {name}"}

    def _current_options(self) -> dict[str, Any]:
        if self.model.current_target == NO_TARGET:
            raise ValueError("no target set")
        return self.model.targets[self.model.current_target]
