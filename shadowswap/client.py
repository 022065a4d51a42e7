from __future__ import annotations

import json
from typing import Any, Dict, Iterable, Iterator, List, Optional

import httpx


class SolverAPIError(RuntimeError):
    def __init__(self, status_code: int, message: str):
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
        self.message = message


def parse_sse_lines(lines: Iterable[str]) -> Iterator[Dict[str, Any]]:
    """Yield decoded JSON payloads from Server-Sent Events lines.

    Comment lines (keepalives) are skipped; multi-line ``data:`` fields are
    joined per the SSE framing rules.
    """
    buf: List[str] = []
    for line in lines:
        line = line.rstrip("\r\n")
        if not line:
            if buf:
                yield json.loads("\n".join(buf))
                buf = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if field == "data":
            buf.append(value[1:] if value.startswith(" ") else value)
    if buf:
        yield json.loads("\n".join(buf))


class SolverClient:
    """Thin httpx client for the solver HTTP API."""

    def __init__(self, base_url: str, timeout_s: float = 10.0, client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(base_url=self.base_url, timeout=timeout_s, trust_env=False)
        self._owns_client = client is None

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "SolverClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @staticmethod
    def _json_or_raise(r: httpx.Response) -> Dict[str, Any]:
        if r.status_code >= 400:
            try:
                msg = str(r.json().get("error") or r.text)
            except ValueError:
                msg = r.text
            raise SolverAPIError(r.status_code, msg)
        return r.json()

    def submit_intent(
        self,
        intent_id: str,
        user_address: str,
        token_in: str,
        token_out: str,
        amount_in: int,
        min_amount_out: int,
    ) -> Dict[str, Any]:
        payload = {
            "id": intent_id,
            "userAddress": user_address,
            "tokenIn": token_in,
            "tokenOut": token_out,
            "amountIn": str(amount_in),
            "minAmountOut": str(min_amount_out),
        }
        # submission blocks through both settlement legs
        r = self._client.post("/submit-intent", json=payload, timeout=None)
        return self._json_or_raise(r)

    def get_intent(self, intent_id: str) -> Optional[Dict[str, Any]]:
        r = self._client.get(f"/intents/{intent_id}")
        if r.status_code == 404:
            return None
        return self._json_or_raise(r)

    def list_pending(self) -> List[Dict[str, Any]]:
        return list(self._json_or_raise(self._client.get("/intents")).get("intents", []))

    def health(self) -> Dict[str, Any]:
        return self._json_or_raise(self._client.get("/health"))

    def iter_events(self, intent_id: str, stop_on_terminal: bool = True) -> Iterator[Dict[str, Any]]:
        """Stream settlement events for ``intent_id``.

        With ``stop_on_terminal`` the iterator ends after SETTLEMENT_COMPLETE
        or SETTLEMENT_FAILED.
        """
        with self._client.stream("GET", f"/events/{intent_id}", timeout=httpx.Timeout(10.0, read=60.0)) as r:
            if r.status_code >= 400:
                r.read()
                raise SolverAPIError(r.status_code, r.text)
            for ev in parse_sse_lines(r.iter_lines()):
                yield ev
                if stop_on_terminal and ev.get("type") in ("SETTLEMENT_COMPLETE", "SETTLEMENT_FAILED"):
                    return
