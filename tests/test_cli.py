"""Tests for the toolport command line."""

import json

import pytest
from click.testing import CliRunner

from toolport.cli.main import cli
from toolport.runtime import Runtime
from toolport.validation.config import Config


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def invoke(runner, make_runtime):
    """Run the CLI as a fresh process would, against the shared fakes."""

    def _invoke(*args, input=None, **sessions_config):
        return runner.invoke(cli, list(args), obj=make_runtime(**sessions_config), input=input)

    return _invoke


class TestDiscover:
    def test_servers(self, invoke):
        result = invoke("discover")
        assert result.exit_code == 0
        assert result.stdout.splitlines() == ["atlassian  (2 tools)", "chrome-devtools  (3 tools)"]

    def test_servers_json(self, invoke):
        result = invoke("discover", "--json")
        assert json.loads(result.stdout) == [
            {"name": "atlassian", "tool_count": 2},
            {"name": "chrome-devtools", "tool_count": 3},
        ]

    def test_empty_catalogue(self, runner, temp_dir):
        (temp_dir / "empty").mkdir()
        runtime = Runtime(Config(local_dir=temp_dir / ".toolport"), catalogue_root=temp_dir / "empty")
        result = runner.invoke(cli, ["discover"], obj=runtime)
        assert result.exit_code != 0
        assert result.stderr.startswith("CatalogueMissing:")

    def test_list(self, invoke):
        result = invoke("discover", "list", "atlassian")
        assert result.exit_code == 0
        lines = result.stdout.splitlines()
        assert lines[0].startswith("getJiraIssue")
        assert lines[1] == "createJiraIssue  Create a Jira issue"

    def test_list_unknown_server(self, invoke):
        result = invoke("discover", "list", "github")
        assert result.exit_code == 1
        assert "UnknownServer: Unknown server: github" in result.stderr

    def test_info(self, invoke):
        result = invoke("discover", "info", "atlassian", "getJiraIssue")
        assert result.exit_code == 0
        assert "cloudId: string (required): Site URL" in result.stdout

    def test_info_json(self, invoke):
        result = invoke("discover", "info", "atlassian", "getJiraIssue", "--json")
        descriptor = json.loads(result.stdout)
        assert descriptor["server"] == "atlassian"
        assert descriptor["input_schema"]["required"] == ["cloudId", "issueIdOrKey"]

    def test_info_unknown_tool(self, invoke):
        result = invoke("discover", "info", "atlassian", "deleteEverything")
        assert result.exit_code == 1
        assert result.stderr.startswith("UnknownTool:")

    def test_refresh(self, invoke, factory):
        result = invoke("discover", "refresh", "chrome-devtools")
        assert result.exit_code == 0
        assert "chrome-devtools: 3 tools written" in result.stderr
        assert all(not t.is_running for t in factory.created)

    def test_refresh_unknown_server(self, invoke):
        result = invoke("discover", "refresh", "github")
        assert result.exit_code == 1
        assert result.stderr.startswith("UnknownServer:")


class TestCall:
    def test_inline_json(self, invoke):
        result = invoke(
            "call",
            "atlassian",
            "getJiraIssue",
            '{"cloudId": "https://site.atlassian.net", "issueIdOrKey": "API-86"}',
        )
        assert result.exit_code == 0
        assert json.loads(result.stdout) == {"key": "API-86", "summary": "..."}

    def test_key_value_pairs(self, invoke):
        result = invoke("call", "atlassian", "getJiraIssue", "cloudId=x", "issueIdOrKey=API-1")
        assert json.loads(result.stdout)["key"] == "API-1"

    def test_piped_stdin(self, invoke):
        result = invoke("call", "atlassian", "getJiraIssue", input='{"issueIdOrKey": "API-7"}')
        assert json.loads(result.stdout)["key"] == "API-7"

    def test_param_file(self, invoke, temp_dir):
        path = temp_dir / "params.yaml"
        path.write_text("issueIdOrKey: API-9\n")
        result = invoke("call", "atlassian", "getJiraIssue", f"@{path}")
        assert json.loads(result.stdout)["key"] == "API-9"

    def test_remote_error(self, invoke):
        result = invoke("call", "atlassian", "createJiraIssue", "{}")
        assert result.exit_code == 1
        assert result.stdout == ""
        assert result.stderr.startswith("RemoteToolError: Project not found")
        assert '"isError": true' in result.stderr

    def test_malformed_params(self, invoke):
        result = invoke("call", "atlassian", "getJiraIssue", '{"broken": ')
        assert result.exit_code == 1
        assert result.stderr.startswith("MalformedParameters:")

    def test_transport_unavailable(self, invoke, factory):
        factory.refuse = True
        result = invoke("call", "atlassian", "getJiraIssue", "{}")
        assert result.exit_code == 1
        assert result.stderr.startswith("TransportUnavailable:")


class TestSession:
    def test_lifecycle(self, invoke, temp_dir):
        started = invoke("session", "start", "chrome-devtools")
        assert started.exit_code == 0
        session_id = json.loads(started.stdout)["session_id"]
        assert (temp_dir / "sessions" / "chrome-devtools.yaml").exists()

        again = invoke("session", "start", "chrome-devtools")
        assert json.loads(again.stdout)["session_id"] == session_id

        navigated = invoke("session", "call", "chrome-devtools", "navigate_page", "url=https://example.com")
        assert navigated.exit_code == 0
        current = invoke("session", "call", "chrome-devtools", "current_url", "{}")
        assert json.loads(current.stdout) == {"url": "https://example.com"}

        listed = invoke("session", "list")
        records = [json.loads(line) for line in listed.stdout.splitlines()]
        assert [(r["server"], r["session_id"], r["call_count"]) for r in records] == [
            ("chrome-devtools", session_id, 2)
        ]

        stopped = invoke("session", "stop", "chrome-devtools")
        assert json.loads(stopped.stdout) == {"server": "chrome-devtools", "stopped": True}
        assert not (temp_dir / "sessions" / "chrome-devtools.yaml").exists()

        again = invoke("session", "stop", "chrome-devtools")
        assert again.exit_code == 0
        assert json.loads(again.stdout)["stopped"] is False

    def test_call_without_session(self, invoke):
        result = invoke("session", "call", "chrome-devtools", "current_url", "{}")
        assert result.exit_code == 1
        assert result.stderr.startswith("NoActiveSession:")

    def test_start_failure(self, invoke, launcher):
        launcher.fail_next = True
        result = invoke("session", "start", "chrome-devtools")
        assert result.exit_code == 1
        assert result.stderr.startswith("SessionStartFailed:")
        assert invoke("session", "list").stdout == ""

    def test_session_group_reconciles(self, invoke, factory, temp_dir):
        invoke("session", "start", "chrome-devtools")
        factory.created[-1].kill()
        listed = invoke("session", "list")
        assert listed.stdout == ""
        assert not (temp_dir / "sessions" / "chrome-devtools.yaml").exists()


class TestConfigErrors:
    def test_invalid_config(self, runner, temp_dir, monkeypatch):
        (temp_dir / "config.yaml").write_text("sessions:\n  busy_policy: drop\n")
        monkeypatch.setenv("TOOLPORT_HOME", str(temp_dir))
        monkeypatch.chdir(temp_dir)
        result = runner.invoke(cli, ["discover"])
        assert result.exit_code == 2
        assert result.stderr.startswith("ConfigError:")
