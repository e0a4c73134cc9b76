from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass, field
from typing import Any, Callable
from urllib import error as urlerror
from urllib import parse as urlparse

import click
import typer
from typer.core import TyperGroup

from .auth import (
    DEFAULT_CLI_CLIENT_ID,
    AuthorizationCode,
    ClientCredentials,
    Grant,
    SystemUserLogin,
    api_base_path,
    get_token_service,
)
from .catcher import RedirectCatcher
from .config import CONFIG_ENV_VAR, Config, default_config_file
from .session import HttpResponse, HttpStatusError, SessionContext
from .targets import CLI_CLIENT_ID_OPTION, CLI_CLIENT_SECRET_OPTION
from .util.common import as_optional_str
from .util.logging import configure_logging, parse_log_specs
from .util.render import Style, is_json_content_type, to_string_with_style
from .util.secret_ref import resolve_secret

APP_LOGGER = logging.getLogger("priam.app")

GLOBAL_BOOL_FLAGS = {"--log-stderr", "--yaml", "--trace", "--debug"}
GLOBAL_OPTS_WITH_VALUE = {"--log", "--log-file", "--config"}
KNOWN_OPTS_WITH_VALUE = {
    "--log",
    "--log-file",
    "--config",
    "--cli-client-id",
    "--cli-client-secret",
    "--timeout",
}

ROOT_COMMAND_ORDER = {
    "target": 0,
    "targets": 1,
    "login": 2,
    "logout": 3,
    "health": 4,
    "policies": 5,
    "tenant": 6,
    "localuserstore": 7,
    "token": 8,
}

TENANT_CONFIG_MEDIA_TYPE = "tenants.tenant.config.list"
LOCAL_USER_STORE_MEDIA_TYPE = "local.userstore"

NOT_LOGGED_IN_MESSAGE = "no access token saved for current target, please log in"


@dataclass(slots=True)
class Runtime:
    enabled_logs: dict[str, int]
    log_stderr: bool
    log_file: str | None
    config_file: str
    style: Style = "json"
    catcher: RedirectCatcher = field(default_factory=RedirectCatcher)

    def load_config(self) -> Config:
        return Config.load(self.config_file)


class RootHelpOrderGroup(TyperGroup):
    def list_commands(self, ctx: click.Context) -> list[str]:
        names = list(super().list_commands(ctx))
        return sorted(
            names, key=lambda name: (ROOT_COMMAND_ORDER.get(name, 1000), name)
        )


def _json_dump(value: dict[str, Any]) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _echo_envelope(payload: dict[str, Any], style: Style) -> None:
    if style == "yaml":
        typer.echo(to_string_with_style("yaml", payload), nl=False)
        return
    typer.echo(_json_dump(payload))


def emit_success(result: Any | None = None, *, style: Style = "json") -> None:
    payload: dict[str, Any] = {"ok": True}
    if result is not None:
        payload["result"] = result
    _echo_envelope(payload, style)


def emit_error(message: str, *, exit_code: int = 1, style: Style = "json") -> None:
    _echo_envelope({"ok": False, "error": str(message)}, style)
    raise typer.Exit(code=exit_code)


def _run_json_command(fn: Callable[[], Any], *, style: Style = "json") -> None:
    try:
        result = fn()
    except (typer.Exit, typer.Abort):
        raise
    except HttpStatusError as exc:
        emit_error(str(exc), style=style)
    except ValueError as exc:
        emit_error(str(exc) or "invalid input", style=style)
    except urlerror.URLError as exc:
        emit_error(str(exc.reason), style=style)
    except OSError as exc:
        emit_error(str(exc), style=style)
    except Exception:
        APP_LOGGER.exception("Unhandled exception")
        emit_error("internal error", style=style)
    emit_success(result, style=style)


def _runtime(ctx: typer.Context) -> Runtime:
    runtime = ctx.find_root().obj
    if not isinstance(runtime, Runtime):
        raise RuntimeError("runtime not initialized")
    return runtime


def normalize_cli_argv(argv: list[str]) -> list[str]:
    """Allow global options to appear anywhere before `--`.

    Click/Typer root options normally need to appear before the first subcommand.
    We pre-scan argv and hoist the known global options while preserving
    relative order of both the hoisted tokens and the remaining tokens.
    """

    if not argv:
        return argv

    hoisted: list[str] = []
    rest: list[str] = []
    i = 0
    while i < len(argv):
        token = argv[i]
        if token == "--":
            rest.extend(argv[i:])
            break

        name, sep, _value = token.partition("=")

        if name in GLOBAL_BOOL_FLAGS and sep == "":
            hoisted.append(token)
            i += 1
            continue

        if name in GLOBAL_OPTS_WITH_VALUE and sep == "=":
            hoisted.append(token)
            i += 1
            continue

        if token in GLOBAL_OPTS_WITH_VALUE:
            if i + 1 < len(argv):
                hoisted.extend([token, argv[i + 1]])
                i += 2
                continue
            # Let Click/Typer produce the usage error if the value is missing.
            rest.append(token)
            i += 1
            continue

        if name in KNOWN_OPTS_WITH_VALUE and sep == "=":
            rest.append(token)
            i += 1
            continue

        if token in KNOWN_OPTS_WITH_VALUE:
            rest.append(token)
            if i + 1 < len(argv):
                rest.append(argv[i + 1])
                i += 2
            else:
                i += 1
            continue

        rest.append(token)
        i += 1

    if not hoisted:
        return argv
    return [*hoisted, *rest]


def init_ctx(config: Config, *, authn: bool, style: Style = "json") -> SessionContext:
    """Build a session context for the current target's REST API."""

    target = config.require_current()
    ctx = SessionContext(
        host_url=target.host,
        base_path=api_base_path(target.mode),
        insecure=target.insecure,
        style=style,
    )
    if not authn:
        return ctx
    header = target.authorization_header()
    if not header:
        raise ValueError(NOT_LOGGED_IN_MESSAGE)
    return ctx.authorization(header)


def _reply_value(resp: HttpResponse) -> Any:
    resp.raise_for_status()
    if is_json_content_type(resp.content_type):
        return resp.json()
    return resp.text


def _health_check(style: Style) -> Callable[[Config], None]:
    def check(config: Config) -> None:
        target = config.require_current()
        resp = init_ctx(config, authn=False, style=style).request("GET", "health")
        resp.raise_for_status()
        if "allOk" not in resp.text:
            raise ValueError(
                f"health check failed for {target.host}, use --force to set it anyway"
            )

    return check


app = typer.Typer(
    cls=RootHelpOrderGroup,
    no_args_is_help=True,
    add_completion=False,
    pretty_exceptions_enable=False,
    help="Command-line client for the identity manager REST API.",
)
token_app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    pretty_exceptions_enable=False,
    help="Token commands.",
)
app.add_typer(token_app, name="token")


@app.callback()
def main_callback(
    ctx: typer.Context,
    config_file: str | None = typer.Option(
        None,
        "--config",
        envvar=CONFIG_ENV_VAR,
        help="Target store file (default ~/.priam.json).",
        metavar="PATH",
    ),
    yaml_style: bool = typer.Option(
        False, "--yaml", help="Display output as YAML instead of JSON."
    ),
    trace: bool = typer.Option(
        False, "--trace", help="Trace HTTP requests and responses to stderr."
    ),
    debug: bool = typer.Option(False, "--debug", help="Enable all logs at DEBUG."),
    log_specs: list[str] | None = typer.Option(
        None,
        "--log",
        help="Enable logs by domain (`app`, `auth`, `config`, `http`) optionally with `:LEVEL`.",
    ),
    log_stderr: bool = typer.Option(
        False,
        "--log-stderr",
        help="Emit enabled logs to stderr.",
    ),
    log_file: str | None = typer.Option(
        None,
        "--log-file",
        help="Write enabled logs to this file.",
        metavar="PATH",
    ),
) -> None:
    specs = log_specs or []
    try:
        enabled_logs = parse_log_specs(specs, trace=trace, debug=debug)
        configure_logging(
            enabled=enabled_logs, log_stderr=log_stderr, log_file=log_file
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc))
    ctx.obj = Runtime(
        enabled_logs=enabled_logs,
        log_stderr=log_stderr,
        log_file=log_file,
        config_file=config_file or default_config_file(),
        style="yaml" if yaml_style else "json",
    )
    APP_LOGGER.debug("runtime initialized config=%s", ctx.obj.config_file)


@app.command("target", help="Show, set or delete the current target.")
def target_command(
    ctx: typer.Context,
    url: str | None = typer.Argument(None, metavar="URL"),
    name: str | None = typer.Argument(None, metavar="NAME"),
    force: bool = typer.Option(False, "--force", help="Skip the health check."),
    insecure: bool = typer.Option(
        False, "--insecure", help="Disable TLS certificate verification for this target."
    ),
    delete: bool = typer.Option(False, "--delete", help="Delete the target."),
    delete_all: bool = typer.Option(False, "--delete-all", help="Delete all targets."),
) -> None:
    runtime = _runtime(ctx)

    def run() -> dict[str, Any]:
        config = runtime.load_config()
        if delete_all:
            return config.clear()
        if delete:
            return config.delete_target(url, name)
        if not url:
            return config.describe_current()
        return config.set_target(
            url,
            name,
            insecure=insecure,
            check=None if force else _health_check(runtime.style),
        )

    _run_json_command(run, style=runtime.style)


@app.command("targets", help="List all targets.")
def targets_command(ctx: typer.Context) -> None:
    runtime = _runtime(ctx)
    _run_json_command(lambda: runtime.load_config().list_targets(), style=runtime.style)


@app.command("login", help="Get an access token for the current target.")
def login_command(
    ctx: typer.Context,
    name: str | None = typer.Argument(
        None, metavar="NAME", help="User name, client id (--client) or login hint (--authcode)."
    ),
    secret: str | None = typer.Argument(
        None, metavar="SECRET", help="Password or client secret; env://VAR and .env://path:VAR allowed."
    ),
    client: bool = typer.Option(False, "--client", "-c", help="Use client credentials."),
    authcode: bool = typer.Option(
        False, "--authcode", "-a", help="Use the browser authorization code flow."
    ),
    cli_client_id: str | None = typer.Option(
        None, "--cli-client-id", help="OAuth client id used by the authorization code flow."
    ),
    cli_client_secret: str | None = typer.Option(
        None, "--cli-client-secret", help="OAuth client secret used by the authorization code flow."
    ),
    timeout: float | None = typer.Option(
        None, "--timeout", help="Seconds to wait for the browser redirect.", metavar="SECONDS"
    ),
) -> None:
    runtime = _runtime(ctx)
    if client and authcode:
        raise typer.BadParameter("use either --client or --authcode, not both")

    def run() -> dict[str, Any]:
        config = runtime.load_config()
        target = config.require_current()
        grant = _prompt_grant(
            name=name, secret=secret, client=client, authcode=authcode, timeout=timeout
        )
        client_id = (
            as_optional_str(cli_client_id)
            or as_optional_str(target.options.get(CLI_CLIENT_ID_OPTION))
            or DEFAULT_CLI_CLIENT_ID
        )
        client_secret = (
            as_optional_str(cli_client_secret)
            or as_optional_str(target.options.get(CLI_CLIENT_SECRET_OPTION))
            or ""
        )
        service = get_token_service(
            target.mode, client_id, resolve_secret(client_secret), runtime.catcher
        )
        bundle = service.grant(
            init_ctx(config, authn=False, style=runtime.style),
            _resolve_grant_secret(grant),
        )
        config.with_tokens(bundle).save()
        APP_LOGGER.info("login complete target=%s", target.name)
        return {
            "target": target.name,
            "grant": _grant_kind(grant),
            "token_type": bundle.token_type,
            "id_token": bool(bundle.id_token),
            "refresh_token": bool(bundle.refresh_token),
        }

    _run_json_command(run, style=runtime.style)


def _prompt_grant(
    *,
    name: str | None,
    secret: str | None,
    client: bool,
    authcode: bool,
    timeout: float | None,
) -> Grant:
    if authcode:
        return AuthorizationCode(login_hint=as_optional_str(name), timeout_s=timeout)
    if client:
        client_id = name or typer.prompt("Client ID", err=True)
        client_secret = secret or typer.prompt("Secret", hide_input=True, err=True)
        return ClientCredentials(client_id=client_id, client_secret=client_secret)
    username = name or typer.prompt("Username", err=True)
    password = secret or typer.prompt("Password", hide_input=True, err=True)
    return SystemUserLogin(username=username, password=password)


def _resolve_grant_secret(grant: Grant) -> Grant:
    if isinstance(grant, ClientCredentials):
        return ClientCredentials(grant.client_id, resolve_secret(grant.client_secret))
    if isinstance(grant, SystemUserLogin):
        return SystemUserLogin(grant.username, resolve_secret(grant.password))
    return grant


def _grant_kind(grant: Grant) -> str:
    if isinstance(grant, ClientCredentials):
        return "client_credentials"
    if isinstance(grant, SystemUserLogin):
        return "system_login"
    return "authorization_code"


@app.command("logout", help="Remove stored tokens from the current target.")
def logout_command(ctx: typer.Context) -> None:
    runtime = _runtime(ctx)

    def run() -> dict[str, Any]:
        config = runtime.load_config()
        target = config.require_current()
        config.without_tokens().save()
        return {"target": target.name, "logged_out": True}

    _run_json_command(run, style=runtime.style)


@app.command("health", help="Check the health of the current target.")
def health_command(ctx: typer.Context) -> None:
    runtime = _runtime(ctx)

    def run() -> Any:
        config = runtime.load_config()
        return _reply_value(
            init_ctx(config, authn=False, style=runtime.style).request("GET", "health")
        )

    _run_json_command(run, style=runtime.style)


@app.command("policies", help="List access policies.")
def policies_command(ctx: typer.Context) -> None:
    runtime = _runtime(ctx)

    def run() -> Any:
        config = runtime.load_config()
        session = init_ctx(config, authn=True, style=runtime.style)
        return _reply_value(
            session.accept("accesspolicyset.list").request("GET", "accessPolicies")
        )

    _run_json_command(run, style=runtime.style)


def parse_key_values(pairs: list[str]) -> list[tuple[str, str]]:
    """Split ``key=value`` arguments at the first ``=``."""

    parsed: list[tuple[str, str]] = []
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"invalid key=value pair: {pair}")
        parsed.append((key, value))
    return parsed


def _get_or_put(
    runtime: Runtime, path: str, media_type: str, body: Any | None
) -> Any:
    config = runtime.load_config()
    session = init_ctx(config, authn=True, style=runtime.style).accept(media_type)
    if body is None:
        return _reply_value(session.request("GET", path))
    return _reply_value(session.content_type(media_type).request("PUT", path, body))


@app.command("tenant", help="Get or set tenant configuration.")
def tenant_command(
    ctx: typer.Context,
    tenant_name: str = typer.Argument(..., metavar="TENANT"),
    pairs: list[str] | None = typer.Argument(None, metavar="[KEY=VALUE]..."),
) -> None:
    runtime = _runtime(ctx)

    def run() -> Any:
        body = None
        if pairs:
            body = [
                {"name": key, "value": value, "_links": {}}
                for key, value in parse_key_values(pairs)
            ]
        return _get_or_put(
            runtime,
            f"tenants/tenant/{urlparse.quote(tenant_name, safe='')}/config",
            TENANT_CONFIG_MEDIA_TYPE,
            body,
        )

    _run_json_command(run, style=runtime.style)


@app.command("localuserstore", help="Get or set local user store configuration.")
def local_user_store_command(
    ctx: typer.Context,
    pairs: list[str] | None = typer.Argument(None, metavar="[KEY=VALUE]..."),
) -> None:
    runtime = _runtime(ctx)

    def run() -> Any:
        body = dict(parse_key_values(pairs)) if pairs else None
        return _get_or_put(
            runtime, "localuserstore", LOCAL_USER_STORE_MEDIA_TYPE, body
        )

    _run_json_command(run, style=runtime.style)


@token_app.command("validate", help="Validate an ID token against the current target.")
def token_validate_command(
    ctx: typer.Context,
    id_token: str | None = typer.Argument(
        None, metavar="ID_TOKEN", help="Token to validate (defaults to the stored ID token)."
    ),
) -> None:
    runtime = _runtime(ctx)

    def run() -> dict[str, Any]:
        config = runtime.load_config()
        target = config.require_current()
        token = as_optional_str(id_token) or target.id_token or ""
        service = get_token_service(
            target.mode, DEFAULT_CLI_CLIENT_ID, "", runtime.catcher
        )
        claims = service.validate_id_token(
            init_ctx(config, authn=False, style=runtime.style), token
        )
        return {"valid": True, "claims": claims}

    _run_json_command(run, style=runtime.style)


def main() -> None:
    normalized = normalize_cli_argv(sys.argv[1:])
    if normalized != sys.argv[1:]:
        sys.argv = [sys.argv[0], *normalized]
    app()
