"""
Tests for the command line interface.
"""

import json
import logging
import sys

import pytest

from session_client import main as cli
from session_client.config import ENV_MAPPINGS
from conftest import make_token


@pytest.fixture
def run_cli(tmp_path, monkeypatch, capsys):
    """Run the CLI against an isolated encrypted session file."""
    for env_var in ENV_MAPPINGS:
        monkeypatch.delenv(env_var, raising=False)
    monkeypatch.setenv("SESSION_SYNC_STORAGE_PATH", str(tmp_path / "sessions.enc"))
    monkeypatch.setenv("SESSION_SYNC_USE_KEYRING", "false")
    monkeypatch.setattr(sys, 'excepthook', sys.excepthook)
    monkeypatch.setattr(cli, 'configure_logging', lambda args, config: None)

    config_file = str(tmp_path / "client.conf")

    def run(*argv):
        code = cli.main(list(argv) + ["--config", config_file])
        return code, capsys.readouterr()

    return run


class TestArguments:
    """Test argument parsing."""

    def test_defaults(self):
        args = cli.parse_arguments([])

        assert not args.login
        assert not args.watch
        assert args.interval_ms is None

    def test_operations_are_exclusive(self):
        with pytest.raises(SystemExit):
            cli.parse_arguments(["--login", "--logout"])

    def test_overrides_are_applied(self, tmp_path):
        args = cli.parse_arguments([
            "--config", str(tmp_path / "client.conf"),
            "--domain", "https://example.kinde.com",
            "--interval-ms", "5000",
            "--token", "abc",
            "--debug"
        ])

        config = cli.load_configuration(args)

        assert config.get_domain() == "https://example.kinde.com"
        assert config.get_interval_ms() == 5000
        assert config.get_access_token() == "abc"
        assert config.get_log_level() == "DEBUG"


class TestCommands:
    """Test commands end to end against file storage."""

    def test_status_when_not_authenticated(self, run_cli):
        code, output = run_cli("--status", "--json")

        assert code == cli.EXIT_NOT_AUTHENTICATED
        status = json.loads(output.out)
        assert status['authenticated'] is False
        assert status['auth_state'] == 'unauthenticated'

    def test_login_then_status(self, run_cli):
        token = make_token(expires_in=3600)

        code, output = run_cli("--login", "--token", token)
        assert code == cli.EXIT_SUCCESS
        assert token[-30:] in output.out

        code, output = run_cli("--status", "--json")
        assert code == cli.EXIT_SUCCESS
        status = json.loads(output.out)
        assert status['authenticated'] is True
        assert status['subject'] == 'kp_1234567890'
        assert status['near_expiry'] is False

    def test_claim(self, run_cli):
        run_cli("--login", "--token", make_token(org_code="org_123"))

        code, output = run_cli("--claim", "org_code", "--json")
        assert code == cli.EXIT_SUCCESS
        assert json.loads(output.out) == {'org_code': 'org_123'}

        code, output = run_cli("--claim", "given_name")
        assert code == cli.EXIT_FAILURE
        assert "given_name" in output.err

    def test_login_without_token(self, run_cli):
        code, output = run_cli("--login")

        assert code == cli.EXIT_FAILURE
        assert "No access token configured" in output.err

    def test_login_with_expired_token(self, run_cli):
        code, _ = run_cli("--login", "--token", make_token(expires_in=-60))
        assert code == cli.EXIT_FAILURE

        code, _ = run_cli("--status")
        assert code == cli.EXIT_NOT_AUTHENTICATED

    def test_logout(self, run_cli):
        run_cli("--login", "--token", make_token())

        code, output = run_cli("--logout")
        assert code == cli.EXIT_SUCCESS
        assert "Logged out" in output.out

        code, _ = run_cli("--status")
        assert code == cli.EXIT_NOT_AUTHENTICATED

        code, output = run_cli("--logout")
        assert code == cli.EXIT_SUCCESS
        assert "Not authenticated" in output.out

    def test_login_uses_configured_grant_type(self, run_cli, tmp_path, caplog):
        (tmp_path / "client.conf").write_text("[auth]\ngrant_type = none\n")
        caplog.set_level(logging.INFO, logger="session_client.auth.auth_flow")

        code, _ = run_cli("--login", "--token", make_token())

        assert code == cli.EXIT_SUCCESS
        assert "grant type: none" in caplog.text

    def test_unknown_grant_type(self, run_cli, tmp_path):
        (tmp_path / "client.conf").write_text("[auth]\ngrant_type = implicit\n")

        code, output = run_cli("--login", "--token", make_token())

        assert code == cli.EXIT_FAILURE
        assert "auth.grant_type" in output.err

    def test_watch_requires_authentication(self, run_cli):
        code, output = run_cli("--watch")

        assert code == cli.EXIT_NOT_AUTHENTICATED
        assert "please login" in output.err

    def test_invalid_configuration(self, run_cli):
        code, output = run_cli("--status", "--interval-ms", "0")

        assert code == cli.EXIT_FAILURE
        assert "interval_ms" in output.err


class TestOutput:
    """Test event rendering and logging setup."""

    def test_describe_event(self):
        from session_shared.models import CountdownTick, RevalidationSucceeded, TokenInfo

        assert cli.describe_event(CountdownTick(owner_id="cli", remaining_seconds=42)) == \
            "Next revalidation in: 42s"
        line = cli.describe_event(RevalidationSucceeded(
            owner_id="cli", token_tail="abc", display_name="Ada Lovelace",
            email="ada@example.com"))
        assert "Ada Lovelace" in line and "ada@example.com" in line
        assert cli.describe_event(TokenInfo(owner_id="cli", report="Expires At: x")) == \
            "Token info:\nExpires At: x"

    def test_configure_logging_to_file(self, tmp_path, monkeypatch):
        for env_var in ENV_MAPPINGS:
            monkeypatch.delenv(env_var, raising=False)
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        log_file = tmp_path / "logs" / "client.log"
        args = cli.parse_arguments(["--config", str(tmp_path / "client.conf"),
                                    "--log-file", str(log_file), "--debug"])

        try:
            cli.configure_logging(args, cli.load_configuration(args))
            logging.getLogger("session_client.test").debug("written to file")
            for handler in root.handlers:
                handler.flush()

            assert root.level == logging.DEBUG
            assert "written to file" in log_file.read_text()
        finally:
            for handler in root.handlers[:]:
                root.removeHandler(handler)
                handler.close()
            for handler in saved_handlers:
                root.addHandler(handler)
            root.setLevel(saved_level)
