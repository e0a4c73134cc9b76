from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path
from typing import Any

import yaml
from typer.testing import CliRunner

from priam_cli import app as app_mod
from priam_cli.config import Config

from stub_server import StubReply, StubServer

TOKEN_REPLY = {"token_type": "Bearer", "access_token": "at-1"}


class NormalizeArgvTest(unittest.TestCase):
    def test_global_options_are_hoisted(self) -> None:
        self.assertEqual(
            app_mod.normalize_cli_argv(
                ["login", "--client", "--yaml", "john", "--config", "c.json", "--trace"]
            ),
            ["--yaml", "--config", "c.json", "--trace", "login", "--client", "john"],
        )

    def test_option_values_and_double_dash_are_left_alone(self) -> None:
        argv = ["login", "--cli-client-id", "--yaml", "--", "--debug"]
        self.assertEqual(app_mod.normalize_cli_argv(argv), argv)
        self.assertEqual(
            app_mod.normalize_cli_argv(["targets", "--log=http:debug"]),
            ["--log=http:debug", "targets"],
        )


class CliTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_dir = tempfile.TemporaryDirectory()
        self.config_path = str(Path(self._temp_dir.name) / "priam.json")
        self.runner = CliRunner()

    def tearDown(self) -> None:
        self._temp_dir.cleanup()

    def _invoke(self, *args: str, exit_code: int = 0) -> dict[str, Any]:
        result = self.runner.invoke(app_mod.app, ["--config", self.config_path, *args])
        self.assertEqual(result.exit_code, exit_code, msg=result.stdout)
        return json.loads(result.stdout)

    def test_target_lifecycle(self) -> None:
        self.assertEqual(
            self._invoke("target"),
            {"ok": True, "result": {"current": None, "message": "no target set"}},
        )
        created = self._invoke("target", "vidm.example.com/SAAS/t/acme", "--force")
        self.assertEqual(created["result"]["current"], "0")
        self.assertEqual(created["result"]["mode"], "tenant-in-path")

        listed = self._invoke("targets")
        self.assertEqual(listed["result"]["current"], "0")
        self.assertEqual(
            listed["result"]["targets"][0]["host"], "https://vidm.example.com/SAAS/t/acme"
        )

        deleted = self._invoke("target", "--delete-all")
        self.assertEqual(deleted["result"]["deleted"], "all")

    def test_target_health_check(self) -> None:
        routes = {("GET", "/SAAS/jersey/manager/api/health"): StubReply.json({"allOk": True})}
        with StubServer(routes) as server:
            created = self._invoke("target", server.url, "dev")
        self.assertEqual(created["result"]["current"], "dev")

    def test_failed_health_check_does_not_save(self) -> None:
        routes = {("GET", "/SAAS/jersey/manager/api/health"): StubReply.json({"status": "down"})}
        with StubServer(routes) as server:
            result = self._invoke("target", server.url, "dev", exit_code=1)
        self.assertFalse(result["ok"])
        self.assertIn("health check failed", result["error"])
        self.assertIsNone(Config.load(self.config_path).current())

    def test_client_login_stores_tokens_and_policies_use_them(self) -> None:
        routes = {
            ("POST", "/SAAS/auth/oauthtoken"): StubReply.json(TOKEN_REPLY),
            ("GET", "/SAAS/jersey/manager/api/accessPolicies"): StubReply(
                body=b'{"items":[]}',
                content_type="application/vnd.vmware.horizon.manager.accesspolicyset.list+json",
            ),
        }
        with StubServer(routes) as server:
            self._invoke("target", server.url, "--force")
            login = self._invoke("login", "--client", "john", "travolta")
            policies = self._invoke("policies")

        self.assertEqual(
            login["result"],
            {
                "target": "0",
                "grant": "client_credentials",
                "token_type": "Bearer",
                "id_token": False,
                "refresh_token": False,
            },
        )
        self.assertEqual(policies, {"ok": True, "result": {"items": []}})
        policy_request = server.requests[-1]
        self.assertEqual(policy_request.headers["Authorization"], "Bearer at-1")
        self.assertEqual(
            policy_request.headers["Accept"],
            "application/vnd.vmware.horizon.manager.accesspolicyset.list+json",
        )

        self._invoke("logout")
        result = self._invoke("policies", exit_code=1)
        self.assertEqual(result["error"], app_mod.NOT_LOGGED_IN_MESSAGE)

    def test_http_error_is_reported_in_envelope(self) -> None:
        routes = {
            ("POST", "/SAAS/API/1.0/REST/auth/system/login"): StubReply.json(
                {"errors": [{"code": "auth.failed"}]}, status=401
            )
        }
        with StubServer(routes) as server:
            self._invoke("target", server.url, "--force")
            result = self._invoke("login", "admin", "wrong", exit_code=1)

        self.assertTrue(result["error"].startswith("401 Unauthorized\n"))
        self.assertIn("auth.failed", result["error"])

    def test_transport_error_is_reported_in_envelope(self) -> None:
        self._invoke("target", "http://127.0.0.1:9", "--force")
        result = self._invoke("health", exit_code=1)
        self.assertFalse(result["ok"])
        self.assertTrue(result["error"])

    def test_commands_need_a_target(self) -> None:
        result = self._invoke("health", exit_code=1)
        self.assertEqual(result, {"ok": False, "error": "no target set"})

    def test_login_checks_target_before_prompting(self) -> None:
        result = self.runner.invoke(app_mod.app, ["--config", self.config_path, "login"])
        self.assertEqual(result.exit_code, 1)
        self.assertNotIn("Username", result.output)
        self.assertEqual(
            json.loads(result.stdout), {"ok": False, "error": "no target set"}
        )

    def _login(self, server: StubServer) -> None:
        self._invoke("target", server.url, "--force")
        self._invoke("login", "--client", "john", "travolta")

    def test_tenant_config_get_and_put(self) -> None:
        media_type = "application/vnd.vmware.horizon.manager.tenants.tenant.config.list+json"
        path = "/SAAS/jersey/manager/api/tenants/tenant/acme/config"
        current = [{"name": "a", "value": "1", "_links": {}}]
        routes = {
            ("POST", "/SAAS/auth/oauthtoken"): StubReply.json(TOKEN_REPLY),
            ("GET", path): StubReply(
                body=json.dumps(current).encode("utf-8"), content_type=media_type
            ),
            ("PUT", path): StubReply(status=204, content_type=None),
        }
        with StubServer(routes) as server:
            self._login(server)
            shown = self._invoke("tenant", "acme")
            self._invoke("tenant", "acme", "a=2", "b=x=y")

        self.assertEqual(shown["result"], current)
        get_request, put_request = server.requests[-2], server.requests[-1]
        self.assertEqual(get_request.headers["Accept"], media_type)
        self.assertEqual(put_request.method, "PUT")
        self.assertEqual(put_request.headers["Accept"], media_type)
        self.assertEqual(put_request.headers["Content-Type"], media_type)
        self.assertEqual(put_request.headers["Authorization"], "Bearer at-1")
        self.assertEqual(
            json.loads(put_request.text),
            [
                {"name": "a", "value": "2", "_links": {}},
                {"name": "b", "value": "x=y", "_links": {}},
            ],
        )

    def test_local_user_store_put(self) -> None:
        media_type = "application/vnd.vmware.horizon.manager.local.userstore+json"
        path = "/SAAS/jersey/manager/api/localuserstore"
        routes = {
            ("POST", "/SAAS/auth/oauthtoken"): StubReply.json(TOKEN_REPLY),
            ("PUT", path): StubReply(
                body=b'{"name":"local","showLocalUserStore":"true"}',
                content_type=media_type,
            ),
        }
        with StubServer(routes) as server:
            self._login(server)
            result = self._invoke("localuserstore", "showLocalUserStore=true")

        self.assertEqual(
            result["result"], {"name": "local", "showLocalUserStore": "true"}
        )
        put_request = server.requests[-1]
        self.assertEqual(put_request.headers["Accept"], media_type)
        self.assertEqual(put_request.headers["Content-Type"], media_type)
        self.assertEqual(json.loads(put_request.text), {"showLocalUserStore": "true"})

    def test_malformed_pair_is_rejected(self) -> None:
        self._invoke("target", "example.com", "--force")
        result = self._invoke("localuserstore", "novalue", exit_code=1)
        self.assertEqual(result["error"], "invalid key=value pair: novalue")

    def test_yaml_style(self) -> None:
        result = self.runner.invoke(
            app_mod.app, ["--config", self.config_path, "--yaml", "targets"]
        )
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(
            yaml.safe_load(result.stdout),
            {"ok": True, "result": {"targets": [], "current": None}},
        )

    def test_invalid_log_domain_is_a_usage_error(self) -> None:
        result = self.runner.invoke(
            app_mod.app, ["--config", self.config_path, "--log", "nope", "targets"]
        )
        self.assertEqual(result.exit_code, 2)


if __name__ == "__main__":
    unittest.main()
