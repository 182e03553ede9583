"""Tests for the apigate-server command line."""

import os

import pytest

from apigate import server_cli


@pytest.fixture(autouse=True)
def restore_env(monkeypatch):
    # setenv first so teardown restores the original state
    monkeypatch.setenv("APIGATE_LOCAL_MODE", "0")
    monkeypatch.delenv("APIGATE_LOCAL_MODE", raising=False)


def test_defaults_to_serve(monkeypatch):
    calls = []
    monkeypatch.setattr(server_cli, "_serve", lambda args: calls.append(args))

    server_cli.main([])

    assert calls[0].command == "serve"
    assert calls[0].port == 8080


def test_local_flag_sets_env(monkeypatch):
    calls = []
    monkeypatch.setattr(server_cli, "_serve", lambda args: calls.append(args))

    server_cli.main(["--local", "serve", "--port", "9000"])

    assert os.environ["APIGATE_LOCAL_MODE"] == "1"
    assert calls[0].port == 9000


def test_create_client_prints_key_once(monkeypatch, capsys):
    captured = {}

    async def fake_create(args):
        captured["args"] = args
        return "cli_abc", "agk_secret"

    monkeypatch.setattr(server_cli, "_create_client", fake_create)

    server_cli.main(
        ["create-client", "acme", "--rate-limit", "50", "--scope", "task.created", "--scope", "task.deleted"]
    )

    out = capsys.readouterr().out
    assert "cli_abc" in out
    assert "agk_secret" in out
    assert captured["args"].rate_limit == 50
    assert captured["args"].scope == ["task.created", "task.deleted"]


def test_serve_defaults_come_from_settings(monkeypatch):
    from apigate.config import settings

    calls = []
    monkeypatch.setattr(server_cli, "_serve", lambda args: calls.append(args))
    monkeypatch.setattr(settings, "host", "127.0.0.1")
    monkeypatch.setattr(settings, "port", 9123)

    server_cli.main(["serve"])

    assert (calls[0].host, calls[0].port) == ("127.0.0.1", 9123)
