"""Tests for the operator CLI."""

import json

import pytest

import cli
import detection
import invoker


class _FakeResp:
    def __init__(self, status_code=200, body=None, text=""):
        self.status_code = status_code
        self._body = body
        self.text = text

    def json(self):
        return self._body


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    monkeypatch.setenv("MERIDIAN_DB_PATH", str(tmp_path / "cli.db"))
    yield


def _add_host(host_id="rig-1"):
    cli.main([
        "host-add", "--id", host_id, "--name", "Rig", "--endpoint", "http://rig:9000",
        "--compat", "mcp", "--caps", "gpu,cuda", "--location", "eu-west",
    ])


class TestHostCommands:
    def test_host_add_and_list(self, capsys):
        _add_host()
        out = capsys.readouterr().out
        assert "Host registered: rig-1" in out

        cli.main(["hosts"])
        out = capsys.readouterr().out
        assert "rig-1" in out
        assert "online" in out

    def test_no_hosts(self, capsys):
        cli.main(["hosts"])
        assert "No hosts." in capsys.readouterr().out

    def test_host_status_and_share(self, capsys):
        _add_host()
        cli.main(["host-status", "rig-1", "maintenance"])
        cli.main(["host-share", "rig-1", "60"])
        out = capsys.readouterr().out
        assert "is now maintenance" in out
        assert "60%" in out

    def test_unknown_host_exits(self):
        with pytest.raises(SystemExit) as info:
            cli.main(["host-status", "ghost", "offline"])
        assert info.value.code == 1

    def test_bad_share_exits(self):
        _add_host()
        with pytest.raises(SystemExit) as info:
            cli.main(["host-share", "rig-1", "150"])
        assert info.value.code == 2


class TestServerCommands:
    def test_server_add_and_list(self, capsys):
        cli.main(["server-add", "--name", "search", "--endpoint", "http://s", "--type", "mcp", "--public"])
        cli.main(["servers", "--public"])
        out = capsys.readouterr().out
        assert "Server registered" in out
        assert "search" in out

    def test_server_add_without_detection(self, capsys, monkeypatch):
        def no_network(*a, **kw):
            raise AssertionError("/info must not be fetched")

        monkeypatch.setattr(detection.requests, "get", no_network)
        cli.main(["server-add", "--name", "offline", "--endpoint", "http://s", "--no-detect"])
        out = capsys.readouterr().out
        assert "| offline | misc |" in out


class TestExecuteCommand:
    def test_execute_success(self, capsys, monkeypatch):
        _add_host()
        monkeypatch.setattr(
            invoker.requests, "post",
            lambda url, json=None, timeout=None, **kw: _FakeResp(200, {"result": "ok"}),
        )
        capsys.readouterr()
        cli.main([
            "execute", "--requester", "u1", "--server", "X", "--function", "run",
            "--params", '{"a": 1}', "--type", "mcp", "--caps", "gpu",
        ])
        summary = json.loads(capsys.readouterr().out)
        assert summary["success"] is True
        assert summary["host_earnings"] == 7.0

        cli.main(["executions", "--requester", "u1"])
        assert "completed" in capsys.readouterr().out

        cli.main(["payments"])
        out = capsys.readouterr().out
        assert "pending" in out
        payment_id = out.split("]")[1].split("|")[0].strip()

        cli.main(["pay", payment_id])
        assert "paid" in capsys.readouterr().out

    def test_execute_no_host(self, capsys):
        with pytest.raises(SystemExit) as info:
            cli.main(["execute", "--requester", "u1", "--server", "X", "--function", "run", "--type", "a2a"])
        assert info.value.code == 1
        assert "No available compute hosts found" in capsys.readouterr().err

    def test_execute_bad_params(self):
        with pytest.raises(SystemExit) as info:
            cli.main(["execute", "--requester", "u1", "--server", "X", "--function", "run", "--params", "{nope"])
        assert info.value.code == 2
