from __future__ import annotations

import json
import logging
import secrets
import sys
import webbrowser
from dataclasses import dataclass
from typing import Any, Callable, cast
from urllib import parse as urlparse

import jwt
from dataclasses_json import Undefined, dataclass_json

from .catcher import AuthorizationCodeError, RedirectCatcher
from .session import HttpResponse, SessionContext
from .targets import AddressingMode
from .util.common import as_optional_str

LOGGER = logging.getLogger("priam.auth")

DEFAULT_CLI_CLIENT_ID = "priam-cli"
SYSTEM_LOGIN_TOKEN_TYPE = "HZN"

TENANT_IN_HOST_TOKEN_BASE_PATH = "/SAAS"
TENANT_IN_PATH_TOKEN_BASE_PATH = ""
TENANT_IN_HOST_API_BASE_PATH = "/SAAS/jersey/manager/api/"
TENANT_IN_PATH_API_BASE_PATH = "/jersey/manager/api/"

AUTHORIZE_PATH = "/auth/oauth2/authorize"
TOKEN_PATH = "/auth/oauthtoken"
LOGIN_PATH = "/API/1.0/REST/auth/system/login"
PUBLIC_KEY_PATH = "/API/1.0/REST/auth/token?attribute=publicKey&format=pem"

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"

BrowserOpener = Callable[[str], bool]


class InvalidResponseError(ValueError):
    pass


class TokenValidationError(ValueError):
    pass


@dataclass_json(undefined=Undefined.EXCLUDE)
@dataclass(frozen=True, slots=True)
class TokenBundle:
    token_type: str
    access_token: str
    refresh_token: str | None = None
    id_token: str | None = None
    scope: str | None = None
    expires_in: int | None = None

    @classmethod
    def from_doc(cls, doc: Any) -> TokenBundle:
        if not isinstance(doc, dict):
            raise InvalidResponseError("Invalid response: expected a JSON object")
        normalized_doc = dict(doc)
        for key in ("token_type", "access_token"):
            normalized_doc.setdefault(key, "")
        bundle = cast(TokenBundle, cast(Any, cls).from_dict(normalized_doc))
        bundle.validate()
        return bundle

    def to_doc(self) -> dict[str, Any]:
        doc = cast(dict[str, Any], cast(Any, self).to_dict())
        return {key: value for key, value in doc.items() if value is not None}

    def validate(self) -> None:
        if not as_optional_str(self.access_token):
            raise InvalidResponseError("Invalid response: no access_token in reply from server")
        if not as_optional_str(self.token_type):
            raise InvalidResponseError("Invalid response: no token_type in reply from server")

    def authorization_header(self) -> str:
        return f"{self.token_type} {self.access_token}"


@dataclass(frozen=True, slots=True)
class ClientCredentials:
    client_id: str
    client_secret: str


@dataclass(frozen=True, slots=True)
class SystemUserLogin:
    username: str
    password: str


@dataclass(frozen=True, slots=True)
class AuthorizationCode:
    login_hint: str | None = None
    timeout_s: float | None = None


Grant = ClientCredentials | SystemUserLogin | AuthorizationCode


def _open_browser(url: str) -> bool:
    try:
        return webbrowser.open(url)
    except webbrowser.Error:
        return False


@dataclass(slots=True)
class TokenService:
    """Acquires tokens from the identity service's OAuth2 endpoints."""

    base_path: str
    authorize_path: str
    token_path: str
    login_path: str
    cli_client_id: str
    cli_client_secret: str
    catcher: RedirectCatcher
    open_browser: BrowserOpener = _open_browser

    def grant(self, ctx: SessionContext, grant: Grant) -> TokenBundle:
        if isinstance(grant, ClientCredentials):
            return self.client_credentials_grant(
                ctx, grant.client_id, grant.client_secret
            )
        if isinstance(grant, SystemUserLogin):
            return self.login_system_user(ctx, grant.username, grant.password)
        if isinstance(grant, AuthorizationCode):
            return self.authorization_code_grant(
                ctx, grant.login_hint, timeout_s=grant.timeout_s
            )
        raise TypeError(f"unsupported grant: {grant!r}")

    def client_credentials_grant(
        self, ctx: SessionContext, client_id: str, client_secret: str
    ) -> TokenBundle:
        LOGGER.info("auth.grant client_credentials client_id=%s", client_id)
        form = urlparse.urlencode({"grant_type": "client_credentials"})
        resp = (
            ctx.basic_auth(client_id, client_secret)
            .content_type(FORM_CONTENT_TYPE)
            .request("POST", self.base_path + self.token_path, form)
        )
        return TokenBundle.from_doc(_json_body(resp))

    def login_system_user(
        self, ctx: SessionContext, username: str, password: str
    ) -> TokenBundle:
        LOGGER.info("auth.grant system_login username=%s", username)
        body = {"username": username, "password": password, "issueToken": True}
        resp = (
            ctx.content_type("json")
            .accept("json")
            .request("POST", self.base_path + self.login_path, body)
        )
        payload = _json_body(resp)
        token = as_optional_str(payload.get("sessionToken")) if isinstance(payload, dict) else None
        if not token:
            raise InvalidResponseError("Invalid response: no token in reply from server")
        return TokenBundle(token_type=SYSTEM_LOGIN_TOKEN_TYPE, access_token=token)

    def authorization_url(self, ctx: SessionContext, state: str, login_hint: str | None) -> str:
        params = {
            "response_type": "code",
            "client_id": self.cli_client_id,
            "state": state,
            "redirect_uri": self.catcher.redirect_uri,
        }
        if login_hint:
            params["login_hint"] = login_hint
        return (
            f"{ctx.host_url}{self.base_path}{self.authorize_path}"
            f"?{urlparse.urlencode(params)}"
        )

    def authorization_code_grant(
        self,
        ctx: SessionContext,
        login_hint: str | None = None,
        *,
        timeout_s: float | None = None,
    ) -> TokenBundle:
        redirect_uri = self.catcher.ensure_started()
        state = secrets.token_urlsafe(32)
        self.catcher.begin(state)

        try:
            auth_url = self.authorization_url(ctx, state, login_hint)
            LOGGER.info("auth.grant authorization_code launching browser")
            LOGGER.debug("auth.grant authorize url=%s", auth_url)
            if not self.open_browser(auth_url):
                # Human-only guidance on stderr; stdout remains JSON result.
                print(f"Please open\n\t{auth_url}\n\t\tin your browser", file=sys.stderr)
            code = self.catcher.wait(state, timeout_s=timeout_s)
        except BaseException:
            self.catcher.cancel(state)
            raise
        if not code:
            raise AuthorizationCodeError(
                "failed to get authorization code from server. See browser for error message."
            )
        LOGGER.info("auth.grant authorization_code exchanging code")
        form = urlparse.urlencode(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "client_id": self.cli_client_id,
            }
        )
        resp = (
            ctx.basic_auth(self.cli_client_id, self.cli_client_secret)
            .content_type(FORM_CONTENT_TYPE)
            .request("POST", self.base_path + self.token_path, form)
        )
        return TokenBundle.from_doc(_json_body(resp))

    def public_key_pem(self, ctx: SessionContext) -> str:
        resp = ctx.request("GET", self.base_path + PUBLIC_KEY_PATH).raise_for_status()
        pem = resp.text.strip()
        if not pem:
            raise InvalidResponseError("Invalid response: no public key in reply from server")
        return pem

    def validate_id_token(self, ctx: SessionContext, id_token: str) -> dict[str, Any]:
        if not id_token:
            raise TokenValidationError("No ID token provided.")
        pem = self.public_key_pem(ctx)
        issuer = f"{ctx.host_url}{self.base_path}/auth"
        try:
            claims = jwt.decode(
                id_token,
                key=pem,
                algorithms=["RS256"],
                issuer=issuer,
                options={"verify_aud": False},
            )
        except jwt.ExpiredSignatureError:
            raise TokenValidationError("Token is expired") from None
        except jwt.ImmatureSignatureError:
            raise TokenValidationError("Token is not active yet") from None
        except jwt.InvalidIssuerError:
            raise TokenValidationError(
                f"Invalid issuer, expected '{issuer}'"
            ) from None
        except jwt.InvalidKeyError as exc:
            raise TokenValidationError(f"Could not fetch public key: {exc}") from None
        except jwt.InvalidTokenError as exc:
            raise TokenValidationError(f"Could not validate the token: {exc}") from None
        LOGGER.info("auth.id_token valid sub=%s", claims.get("sub"))
        return claims


def _json_body(resp: HttpResponse) -> Any:
    resp.raise_for_status()
    try:
        return resp.json()
    except json.JSONDecodeError:
        raise InvalidResponseError(
            "Invalid response: could not parse reply from server"
        ) from None


def token_base_path(mode: AddressingMode) -> str:
    if mode is AddressingMode.TENANT_IN_PATH:
        return TENANT_IN_PATH_TOKEN_BASE_PATH
    return TENANT_IN_HOST_TOKEN_BASE_PATH


def api_base_path(mode: AddressingMode) -> str:
    if mode is AddressingMode.TENANT_IN_PATH:
        return TENANT_IN_PATH_API_BASE_PATH
    return TENANT_IN_HOST_API_BASE_PATH


def get_token_service(
    mode: AddressingMode,
    cli_client_id: str,
    cli_client_secret: str,
    catcher: RedirectCatcher,
    *,
    open_browser: BrowserOpener | None = None,
) -> TokenService:
    return TokenService(
        base_path=token_base_path(mode),
        authorize_path=AUTHORIZE_PATH,
        token_path=TOKEN_PATH,
        login_path=LOGIN_PATH,
        cli_client_id=cli_client_id,
        cli_client_secret=cli_client_secret,
        catcher=catcher,
        open_browser=open_browser or _open_browser,
    )
