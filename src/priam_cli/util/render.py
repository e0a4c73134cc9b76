from __future__ import annotations

import json
from typing import Any, Literal

import yaml

Style = Literal["json", "yaml"]


def to_string_with_style(style: Style, value: Any) -> str:
    """Render ``value`` for people: indented JSON or block-style YAML."""

    try:
        if style == "yaml":
            return yaml.safe_dump(
                value, default_flow_style=False, sort_keys=False, allow_unicode=True
            )
        return json.dumps(value, indent=2, ensure_ascii=False) + "\n"
    except (TypeError, ValueError, yaml.YAMLError):
        return f"{value}"


def is_json_content_type(content_type: str | None) -> bool:
    if not content_type:
        return False
    return content_type.startswith("application/") and "json" in content_type


def format_reply(style: Style, content_type: str | None, body: bytes) -> str:
    text = body.decode("utf-8", errors="replace")
    if not is_json_content_type(content_type):
        return text
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return text
    return to_string_with_style(style, parsed)
