"""HTTP session context for the identity service REST API.

A ``SessionContext`` is an immutable value: every header helper returns a new
context, so headers set for one call never leak into the next. Requests return
an ``HttpResponse`` whatever the status; callers decide what a failure means.
"""

from __future__ import annotations

import base64
import json
import logging
import secrets
import ssl
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping
from urllib import error as urlerror
from urllib import request as urlrequest

from .util.common import escape_quotes
from .util.render import Style, format_reply, is_json_content_type
from .util.sniff import SNIFF_LEN, sniff_content_type

LOGGER = logging.getLogger("priam.http")

MEDIA_TYPE_PREFIX = "application/vnd.vmware.horizon.manager."
SUCCESS_STATUSES = frozenset({200, 201, 204})
USER_AGENT = "priam-cli/0.1"
REQUEST_TIMEOUT_S = 60.0


def full_media_type(short: str, prefix: str = MEDIA_TYPE_PREFIX) -> str:
    if not short or "/" in short:
        return short
    if short == "json":
        return "application/json"
    return f"{prefix}{short}+json"


class HttpStatusError(RuntimeError):
    def __init__(self, *, status: int, reason: str, rendered: str) -> None:
        super().__init__(f"{status} {reason}\n{rendered}\n")
        self.status = status
        self.reason = reason
        self.rendered = rendered


@dataclass(frozen=True, slots=True)
class HttpResponse:
    status: int
    reason: str
    content_type: str | None
    headers: Mapping[str, str]
    body: bytes
    style: Style = "json"

    @property
    def ok(self) -> bool:
        return self.status in SUCCESS_STATUSES

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        if not self.body.strip():
            return None
        return json.loads(self.text)

    def rendered(self) -> str:
        return format_reply(self.style, self.content_type, self.body)

    @property
    def error(self) -> HttpStatusError | None:
        if self.ok:
            return None
        return HttpStatusError(
            status=self.status, reason=self.reason, rendered=self.rendered()
        )

    def raise_for_status(self) -> HttpResponse:
        err = self.error
        if err is not None:
            raise err
        return self


@dataclass(frozen=True, slots=True)
class SessionContext:
    host_url: str
    base_path: str
    base_media_type: str = MEDIA_TYPE_PREFIX
    insecure: bool = False
    headers: Mapping[str, str] = field(default_factory=dict)
    style: Style = "json"

    def full_media_type(self, short: str) -> str:
        return full_media_type(short, self.base_media_type)

    def header(self, name: str, value: str | None) -> SessionContext:
        headers = dict(self.headers)
        if value:
            headers[name] = value
        else:
            headers.pop(name, None)
        return replace(self, headers=headers)

    def accept(self, short: str) -> SessionContext:
        return self.header("Accept", self.full_media_type(short))

    def content_type(self, short: str) -> SessionContext:
        return self.header("Content-Type", self.full_media_type(short))

    def authorization(self, value: str | None) -> SessionContext:
        return self.header("Authorization", value)

    def basic_auth(self, user: str, password: str) -> SessionContext:
        creds = base64.b64encode(f"{user}:{password}".encode("utf-8")).decode("ascii")
        return self.authorization(f"Basic {creds}")

    def url_for(self, path: str) -> str:
        if path.startswith("/"):
            return f"{self.host_url}{path}"
        return f"{self.host_url}{self.base_path}{path}"

    def request(self, method: str, path: str, input: Any = None) -> HttpResponse:
        ctx = self
        data: bytes | None
        if input is None:
            data = None
        elif isinstance(input, bytes):
            data = input
        elif isinstance(input, str):
            data = input.encode("utf-8")
        else:
            data = json.dumps(input, separators=(",", ":")).encode("utf-8")
            if not _has_header(self.headers, "Content-Type"):
                ctx = self.content_type("json")
        return ctx._send(method, self.url_for(path), data)

    def file_upload_request(
        self,
        method: str,
        path: str,
        field_name: str,
        media_type: str,
        content: str | bytes,
        file_path: str,
    ) -> HttpResponse:
        """Send ``file_path`` plus a typed ``content`` part as multipart/form-data."""

        source = Path(file_path)
        with source.open("rb") as fh:
            file_bytes = fh.read()
        if isinstance(content, str):
            content = content.encode("utf-8")

        full_type = self.full_media_type(media_type)
        boundary = secrets.token_hex(16)
        body = _multipart_body(
            boundary,
            [
                ("file", source.name, sniff_content_type(file_bytes[:SNIFF_LEN]), file_bytes),
                (field_name, "blob", full_type, content),
            ],
        )
        ctx = self.header("Content-Type", f"multipart/form-data; boundary={boundary}")
        return ctx._send(method, self.url_for(path), body)

    def _send(self, method: str, url: str, data: bytes | None) -> HttpResponse:
        headers = {"User-Agent": USER_AGENT, **self.headers}
        req = urlrequest.Request(url=url, method=method, data=data, headers=headers)
        _trace_request(method, url, headers, data, self.style)

        opener = urlrequest.build_opener(
            urlrequest.HTTPSHandler(context=_ssl_context(self.insecure))
        )
        try:
            with opener.open(req, timeout=REQUEST_TIMEOUT_S) as resp:
                response = HttpResponse(
                    status=int(getattr(resp, "status", 200)),
                    reason=str(getattr(resp, "reason", "") or ""),
                    content_type=resp.headers.get("Content-Type"),
                    headers=dict(resp.headers.items()),
                    body=resp.read(),
                    style=self.style,
                )
        except urlerror.HTTPError as exc:
            # Non-success statuses are returned as data.
            try:
                body = exc.read() or b""
            finally:
                exc.close()
            response = HttpResponse(
                status=int(exc.code),
                reason=str(exc.reason or ""),
                content_type=exc.headers.get("Content-Type") if exc.headers else None,
                headers=dict(exc.headers.items()) if exc.headers else {},
                body=body,
                style=self.style,
            )
        _trace_response(method, url, response)
        return response


def _has_header(headers: Mapping[str, str], name: str) -> bool:
    return any(key.lower() == name.lower() for key in headers)


def _ssl_context(insecure: bool) -> ssl.SSLContext:
    if not insecure:
        return ssl.create_default_context()
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


def _multipart_body(
    boundary: str, parts: list[tuple[str, str, str, bytes]]
) -> bytes:
    chunks: list[bytes] = []
    for name, filename, content_type, payload in parts:
        chunks.append(f"--{boundary}\r\n".encode("ascii"))
        chunks.append(
            (
                f'Content-Disposition: form-data; name="{escape_quotes(name)}"; '
                f'filename="{escape_quotes(filename)}"\r\n'
                f"Content-Type: {content_type}\r\n\r\n"
            ).encode("utf-8")
        )
        chunks.append(payload)
        chunks.append(b"\r\n")
    chunks.append(f"--{boundary}--\r\n".encode("ascii"))
    return b"".join(chunks)


def _trace_request(
    method: str,
    url: str,
    headers: Mapping[str, str],
    data: bytes | None,
    style: Style,
) -> None:
    if not LOGGER.isEnabledFor(logging.DEBUG):
        return
    LOGGER.debug("http.request %s %s", method, url)
    for name, value in headers.items():
        LOGGER.debug("http.request header %s: %s", name, value)
    if data:
        LOGGER.debug(
            "http.request body\n%s",
            format_reply(style, headers.get("Content-Type"), data),
        )


def _trace_response(method: str, url: str, response: HttpResponse) -> None:
    LOGGER.info("http %s %s -> %s", method, url, response.status)
    if not LOGGER.isEnabledFor(logging.DEBUG):
        return
    LOGGER.debug("http.response %s %s", response.status, response.reason)
    for name, value in response.headers.items():
        LOGGER.debug("http.response header %s: %s", name, value)
    if response.body:
        if is_json_content_type(response.content_type):
            LOGGER.debug("http.response body\n%s", response.rendered())
        else:
            LOGGER.debug("http.response body\n%s", response.text)
