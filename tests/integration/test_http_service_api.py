import asyncio
import threading
from pathlib import Path

import httpx

from shadowswap.client import SolverClient
from shadowswap.config import load_config
from shadowswap.core.models import NATIVE_TOKEN
from shadowswap.service.runner import ServiceRunner


TOKEN = "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238"
ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
ONE = 10**18


def _config(tmp_path: Path):
    p = tmp_path / "solver.toml"
    p.write_text(
        f"""
        [chain]
        ledger = "fake"

        [contracts]
        secondary_token = "{TOKEN}"

        [settlement]
        inter_settlement_delay_ms = 0

        [server]
        host = "127.0.0.1"
        port = 0
        """,
        encoding="utf-8",
    )
    return load_config(p, env={})


class _Running:
    """Runs the service on its own event loop thread, like ``shadowswap run``."""

    def __init__(self, tmp_path: Path):
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self.loop.run_forever, daemon=True)
        self.thread.start()
        self.runner = ServiceRunner(_config(tmp_path))
        asyncio.run_coroutine_threadsafe(self.runner.start(), self.loop).result(10)
        self.base = f"http://127.0.0.1:{self.runner.port}"

    def close(self) -> None:
        asyncio.run_coroutine_threadsafe(self.runner.stop(), self.loop).result(10)
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=5)
        self.loop.close()


def _payload(iid: str, user: str, token_in: str, token_out: str, amount_in: int) -> dict:
    return {
        "id": iid,
        "userAddress": user,
        "tokenIn": token_in,
        "tokenOut": token_out,
        "amountIn": str(amount_in),
        "minAmountOut": "0",
    }


def test_submit_query_and_errors(tmp_path: Path):
    svc = _Running(tmp_path)
    try:
        with httpx.Client(trust_env=False, timeout=5.0) as client:
            r = client.post(f"{svc.base}/submit-intent", json=_payload("a", ALICE, NATIVE_TOKEN, TOKEN, ONE))
            assert r.status_code == 200
            assert r.headers["Access-Control-Allow-Origin"] == "*"
            body = r.json()
            assert body["success"] is True and body["matched"] is False and body["status"] == "PENDING"

            r = client.post(f"{svc.base}/submit-intent", json=_payload("a", ALICE, NATIVE_TOKEN, TOKEN, ONE))
            assert r.status_code == 409

            bad = _payload("x", "0xnot-an-address", NATIVE_TOKEN, TOKEN, ONE)
            r = client.post(f"{svc.base}/submit-intent", json=bad)
            assert r.status_code == 400 and "address" in r.json()["error"]

            r = client.post(f"{svc.base}/submit-intent", content=b"not json", headers={"Content-Type": "application/json"})
            assert r.status_code == 400

            r = client.get(f"{svc.base}/intents")
            assert [it["id"] for it in r.json()["intents"]] == ["a"]

            r = client.get(f"{svc.base}/intents/a")
            assert r.status_code == 200 and r.json()["amountIn"] == str(ONE)
            assert client.get(f"{svc.base}/intents/missing").status_code == 404

            h = client.get(f"{svc.base}/health").json()
            assert h["status"] == "ok" and h["solverAuthorized"] is True and h["pending"] == 1

            m = client.get(f"{svc.base}/metrics")
            assert m.status_code == 200 and "shadowswap_pending_intents 1" in m.text

            assert client.options(f"{svc.base}/submit-intent").status_code == 204
            assert client.get(f"{svc.base}/nope").status_code == 404
    finally:
        svc.close()


def test_match_settles_and_streams_events(tmp_path: Path):
    svc = _Running(tmp_path)
    try:
        with SolverClient(svc.base) as client:
            assert client.submit_intent("a", ALICE, NATIVE_TOKEN, TOKEN, ONE, 0)["matched"] is False
            stream = client.iter_events("a")
            first = next(stream)
            assert first["type"] == "CONNECTED"

            resp = client.submit_intent("b", BOB, TOKEN, NATIVE_TOKEN, 1000 * ONE, 0)
            assert resp["matched"] is True and resp["matchedWith"] == "a"
            hashes = {s["intentId"]: s["txHash"] for s in resp["settlements"]}
            assert hashes["a"] != hashes["b"]

            types = [ev["type"] for ev in stream]
            assert types[0] == "MATCHED" and types[-1] == "SETTLEMENT_COMPLETE"
            assert "TX_SUBMITTED" in types and "TX_CONFIRMED" in types

            a = client.get_intent("a")
            assert a["status"] == "SETTLED" and a["txnHash"] == hashes["a"] and a["matchId"] == "b"
            assert client.get_intent("missing") is None
            assert client.list_pending() == []
    finally:
        svc.close()


def test_late_subscriber_gets_replay(tmp_path: Path):
    svc = _Running(tmp_path)
    try:
        with SolverClient(svc.base) as client:
            client.submit_intent("a", ALICE, NATIVE_TOKEN, TOKEN, ONE, 0)
            client.submit_intent("b", BOB, TOKEN, NATIVE_TOKEN, 1000 * ONE, 0)
            events = list(client.iter_events("b"))
        types = [e["type"] for e in events]
        assert types[:3] == ["CONNECTED", "MATCHED", "SETTLING_STARTED"]
        assert types[-1] == "SETTLEMENT_COMPLETE"
        assert all(e["intentId"] == "b" for e in events)
    finally:
        svc.close()
