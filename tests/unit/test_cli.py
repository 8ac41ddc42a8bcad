"""Tests for the command-line entry point."""

import json

import pytest

from chatload import cli
from chatload.config import Settings


class TestParser:
    def test_run_defaults(self):
        args = cli.build_parser().parse_args(["run"])
        assert args.command == "run"
        assert args.profile == "default"
        assert args.profile_file is None
        assert args.total_users is None

    def test_profile_and_file_are_exclusive(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["run", "--profile", "smoke", "--profile-file", "x.yaml"])

    def test_unknown_profile_rejected(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["run", "--profile", "nope"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])

    def test_provision_options(self):
        args = cli.build_parser().parse_args(
            ["provision", "--total-users", "10", "--max-chat-peers", "3"]
        )
        assert args.command == "provision"
        assert args.total_users == 10
        assert args.max_chat_peers == 3


class TestResolve:
    def test_overrides_applied(self):
        args = cli.build_parser().parse_args(
            ["provision", "--total-users", "7", "--max-chat-peers", "2"]
        )
        settings = cli.resolve_settings(args, Settings(total_users=100))
        assert settings.total_users == 7
        assert settings.max_chat_peers == 2

    def test_no_overrides_keeps_base(self):
        base = Settings(total_users=100)
        args = cli.build_parser().parse_args(["run"])
        assert cli.resolve_settings(args, base) is base

    def test_builtin_profile_sized_by_total_users(self):
        args = cli.build_parser().parse_args(["run", "--profile", "default"])
        profile = cli.resolve_profile(args, Settings(total_users=30))
        assert profile.name == "default"
        assert profile.peak == 30

    def test_profile_file(self, tmp_path):
        path = tmp_path / "steps.yaml"
        path.write_text("stages:\n  - duration: 10s\n    target: 4\n")
        args = cli.build_parser().parse_args(["run", "--profile-file", str(path)])
        profile = cli.resolve_profile(args, Settings())
        assert profile.name == "steps"
        assert profile.peak == 4


class TestMain:
    def test_missing_api_key_exits(self, monkeypatch):
        monkeypatch.setenv("API_KEY", "")
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["run", "--profile", "smoke"])
        assert exc_info.value.code == 2

    def test_provision_writes_output(self, monkeypatch, tmp_path):
        monkeypatch.setenv("API_KEY", "k")

        async def fake_provision(args, settings):
            return {"registered": settings.total_users}

        monkeypatch.setattr(cli, "provision_command", fake_provision)
        output = tmp_path / "out" / "report.json"

        cli.main(["provision", "--total-users", "5", "--output", str(output)])

        assert json.loads(output.read_text()) == {"registered": 5}

    def test_run_prints_to_stdout(self, monkeypatch, capsys):
        monkeypatch.setenv("API_KEY", "k")

        async def fake_run(args, settings):
            return {"summary": {"sessions": 0}}

        monkeypatch.setattr(cli, "run_command", fake_run)
        cli.main(["run", "--profile", "smoke"])

        assert json.loads(capsys.readouterr().out) == {"summary": {"sessions": 0}}
