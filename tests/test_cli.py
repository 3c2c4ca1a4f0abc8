import json

import pytest

from pdp_core.cli import build_parser, main


@pytest.fixture
def hsm_env(monkeypatch, tmp_path):
    monkeypatch.setenv("HSM_MODE", "simulator")
    monkeypatch.setenv("HSM_SIMULATOR_KEY_STORAGE", str(tmp_path / "keys"))
    monkeypatch.setenv("HSM_SIMULATOR_ENCRYPTION_KEY", "cli-secret")
    return tmp_path / "keys"


def _json_out(capsys):
    out = capsys.readouterr().out
    # log lines share stdout; the command result is the indented JSON block
    return json.loads(out[out.index("{\n"):])


def test_hsm_test_roundtrip(hsm_env, capsys):
    assert main(["hsm-test"]) == 0
    report = _json_out(capsys)
    assert report["ok"] is True
    assert report["verified"] is True
    assert report["tamper_detected"] is True
    assert report["deleted"] is True
    assert list(hsm_env.iterdir()) == []


def test_hsm_status(hsm_env, capsys):
    assert main(["hsm-status"]) == 0
    status = _json_out(capsys)
    assert status["mode"] == "simulator"
    assert status["key_count"] == 0


def test_worker_once(monkeypatch, tmp_path, capsys):
    monkeypatch.setenv("PDP_DB_PATH", str(tmp_path / "db" / "state.db"))
    monkeypatch.setenv("PDP_MODE", "simulation")
    assert main(["worker", "--once"]) == 0
    assert _json_out(capsys) == {"tasks_run": 0}
    assert (tmp_path / "db" / "state.db").exists()


def test_worker_flags_exclusive():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["worker", "--once", "--forever"])
