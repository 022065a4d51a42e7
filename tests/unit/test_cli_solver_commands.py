import json
from pathlib import Path

from shadowswap.adapters.chain.ledger import FakeLedger
from shadowswap.cli.commands import (
    cmd_balance,
    cmd_config_dump,
    cmd_metrics_export,
    cmd_preflight,
    cmd_verify_auth,
)
from shadowswap.observability.metrics import inc


TOKEN = "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238"
ROUTER = "0x" + "22" * 20


def _write(tmp_path: Path, body: str) -> str:
    p = tmp_path / "solver.toml"
    p.write_text(body, encoding="utf-8")
    return str(p)


def test_preflight_ok_with_fake_ledger(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("PRIVATE_KEY", raising=False)
    path = _write(
        tmp_path,
        f"""
        [chain]
        ledger = "fake"

        [contracts]
        secondary_token = "{TOKEN}"
        """,
    )
    assert cmd_preflight(path).startswith("OK:")
    assert json.loads(cmd_preflight(path, as_json=True)) == {"ok": True}


def test_preflight_invalid_private_key_for_web3(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("PRIVATE_KEY", raising=False)
    path = _write(
        tmp_path,
        f"""
        [chain]
        ledger = "web3"
        private_key = "bad"

        [contracts]
        router = "{ROUTER}"
        secondary_token = "{TOKEN}"

        [settlement]
        audit_enabled = false
        """,
    )
    out = cmd_preflight(path)
    assert out.startswith("INVALID:") and "private_key" in out
    data = json.loads(cmd_preflight(path, as_json=True))
    assert data["ok"] is False and len(data["issues"]) == 1


def test_preflight_unparseable(tmp_path: Path):
    path = _write(tmp_path, "[chain\nledger=")
    assert cmd_preflight(path).startswith("INVALID: failed to parse config")


def test_config_dump_redacts_key(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("PRIVATE_KEY", raising=False)
    path = _write(tmp_path, '[chain]\nprivate_key = "0x' + "11" * 32 + '"\n')
    out = cmd_config_dump(path)
    data = json.loads(out)
    assert data["chain_private_key"] == "***"
    assert "11" * 32 not in out


def test_verify_auth_and_balance_with_injected_ledger(tmp_path: Path):
    path = _write(tmp_path, '[chain]\nledger = "fake"\n')
    assert cmd_verify_auth(path, ledger=FakeLedger()).startswith("OK:")
    out = cmd_verify_auth(path, ledger=FakeLedger(router_solver="0x" + "99" * 20))
    assert out.startswith("UNAUTHORIZED:")
    bal = cmd_balance(path, ledger=FakeLedger(balance_wei=15 * 10**17))
    assert "1500000000000000000 wei" in bal and "(1.5 ETH)" in bal


def test_metrics_export_has_prefix():
    inc("intents_submitted", 1)
    text = cmd_metrics_export()
    assert "# TYPE shadowswap_intents_submitted counter" in text
