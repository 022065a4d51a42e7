from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Set, Tuple

from shadowswap.core.models import NATIVE_TOKEN
from shadowswap.core.ratelimit import AsyncSleeper
from shadowswap.observability.metrics import inc


@dataclass(frozen=True)
class PoolKey:
    currency0: str
    currency1: str
    fee: int = 3000
    tick_spacing: int = 60
    hooks: str = NATIVE_TOKEN


@dataclass(frozen=True)
class ExecuteMatchCall:
    user: str
    pool_key: PoolKey
    zero_for_one: bool
    amount_in: int
    value: int = 0


@dataclass
class TxReceipt:
    tx_hash: str
    success: bool
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    amount_out: Optional[int] = None


class LedgerError(RuntimeError):
    """Chain interaction failed; ``str(err)`` is the operator-facing reason."""


class SimulationError(LedgerError):
    pass


class SubmissionError(LedgerError):
    pass


class LedgerClient(Protocol):
    solver_address: str

    async def simulate_execute_match(self, call: ExecuteMatchCall) -> Optional[int]: ...

    async def send_execute_match(self, call: ExecuteMatchCall) -> str: ...

    async def wait_for_receipt(self, tx_hash: str, confirmations: int = 1) -> TxReceipt: ...

    async def read_solver(self) -> str: ...

    async def get_balance(self, address: Optional[str] = None) -> int: ...

    async def set_text(self, node: str, key: str, value: str) -> str: ...


def is_rate_limit_error(err: BaseException) -> bool:
    code = getattr(err, "code", None) or getattr(err, "status_code", None)
    msg = str(err).lower()
    return code == 429 or "rate limit" in msg or "429" in msg or "in-flight" in msg


class FakeLedger:
    """Deterministic in-memory ledger for tests and dry runs.

    Rules:
    - simulation succeeds unless the user is in ``fail_simulation_for``
    - submitted transactions revert if the user is in ``revert_for``
    - ``amount_out`` follows ``price_ratio`` (native in -> ratio x out)
    - audit writes fail when ``audit_fails`` is set
    """

    def __init__(
        self,
        solver_address: str = "0x00000000000000000000000000000000000050f0",
        router_solver: Optional[str] = None,
        balance_wei: int = 10**18,
        price_ratio: int = 1000,
        fail_simulation_for: Optional[Set[str]] = None,
        fail_submit_for: Optional[Set[str]] = None,
        revert_for: Optional[Set[str]] = None,
        audit_fails: bool = False,
        latency_ms: int = 0,
    ):
        self.solver_address = solver_address
        self.router_solver = router_solver if router_solver is not None else solver_address
        self.balance_wei = balance_wei
        self.price_ratio = price_ratio
        self.fail_simulation_for = {a.lower() for a in (fail_simulation_for or set())}
        self.fail_submit_for = {a.lower() for a in (fail_submit_for or set())}
        self.revert_for = {a.lower() for a in (revert_for or set())}
        self.audit_fails = audit_fails
        self.latency_ms = max(0, int(latency_ms))
        self._seq = 0
        self._pending: Dict[str, TxReceipt] = {}
        self.sent: List[ExecuteMatchCall] = []
        self.text_records: Dict[Tuple[str, str], str] = {}
        self.in_flight = 0
        self.max_in_flight = 0

    def _next_hash(self, tag: str) -> str:
        self._seq += 1
        return "0x" + hashlib.sha256(f"{self._seq}:{tag}".encode("utf-8")).hexdigest()

    def _quote(self, call: ExecuteMatchCall) -> int:
        if call.zero_for_one:
            return call.amount_in * self.price_ratio
        return call.amount_in // self.price_ratio if self.price_ratio else 0

    async def _tick(self) -> None:
        if self.latency_ms:
            await asyncio.sleep(self.latency_ms / 1000.0)

    async def simulate_execute_match(self, call: ExecuteMatchCall) -> Optional[int]:
        await self._tick()
        if call.user.lower() in self.fail_simulation_for:
            raise SimulationError("execution reverted: simulation failed")
        return self._quote(call)

    async def send_execute_match(self, call: ExecuteMatchCall) -> str:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await self._tick()
            if call.user.lower() in self.fail_submit_for:
                raise SubmissionError("failed to submit transaction: nonce too low")
            tx_hash = self._next_hash(call.user)
            ok = call.user.lower() not in self.revert_for
            self._pending[tx_hash] = TxReceipt(
                tx_hash=tx_hash,
                success=ok,
                block_number=self._seq,
                gas_used=150_000,
                amount_out=self._quote(call) if ok else None,
            )
            self.sent.append(call)
            return tx_hash
        finally:
            self.in_flight -= 1

    async def wait_for_receipt(self, tx_hash: str, confirmations: int = 1) -> TxReceipt:
        await self._tick()
        receipt = self._pending.get(tx_hash)
        if receipt is None:
            raise LedgerError(f"transaction {tx_hash} not found")
        return receipt

    async def read_solver(self) -> str:
        return self.router_solver

    async def get_balance(self, address: Optional[str] = None) -> int:
        return self.balance_wei

    async def set_text(self, node: str, key: str, value: str) -> str:
        await self._tick()
        if self.audit_fails:
            raise SubmissionError("registry write rejected")
        self.text_records[(node, key)] = value
        tx_hash = self._next_hash(f"text:{key}")
        self._pending[tx_hash] = TxReceipt(tx_hash=tx_hash, success=True, block_number=self._seq)
        return tx_hash


class RetryLedger:
    """Retry read-only and receipt calls when the RPC provider rate-limits us.

    Transaction submissions are never retried: a timed-out send may still have
    reached the mempool, and resending risks a double settlement.
    """

    def __init__(self, inner: LedgerClient, max_retries: int = 0, retry_sleep_ms: int = 0, sleeper: Optional[AsyncSleeper] = None):
        self._inner = inner
        self._max_retries = max(0, int(max_retries))
        self._retry_sleep_ms = max(0, int(retry_sleep_ms))
        self._sleeper = sleeper

    @property
    def solver_address(self) -> str:
        return self._inner.solver_address

    async def _call(self, fn, *args, **kwargs):
        attempt = 0
        while True:
            try:
                return await fn(*args, **kwargs)
            except Exception as e:
                if not is_rate_limit_error(e):
                    raise
                attempt += 1
                inc("rpc_rate_limited_total", 1)
                if attempt > self._max_retries:
                    raise
                inc("rpc_retries_total", 1)
                # linear backoff
                delay = self._retry_sleep_ms * attempt
                if self._sleeper:
                    await self._sleeper(delay)
                else:
                    await asyncio.sleep(delay / 1000.0)

    async def simulate_execute_match(self, call: ExecuteMatchCall) -> Optional[int]:
        return await self._call(self._inner.simulate_execute_match, call)

    async def send_execute_match(self, call: ExecuteMatchCall) -> str:
        return await self._inner.send_execute_match(call)

    async def wait_for_receipt(self, tx_hash: str, confirmations: int = 1) -> TxReceipt:
        return await self._call(self._inner.wait_for_receipt, tx_hash, confirmations)

    async def read_solver(self) -> str:
        return await self._call(self._inner.read_solver)

    async def get_balance(self, address: Optional[str] = None) -> int:
        return await self._call(self._inner.get_balance, address)

    async def set_text(self, node: str, key: str, value: str) -> str:
        return await self._inner.set_text(node, key, value)

    def __getattr__(self, name):
        return getattr(self._inner, name)


def build_ledger(kind: str, **kwargs) -> LedgerClient:
    kind = (kind or "fake").lower()
    max_retries = int(kwargs.pop("max_retries", 0))
    retry_sleep_ms = int(kwargs.pop("retry_sleep_ms", 0))
    if kind == "fake":
        fake_keys = {"solver_address", "router_solver", "balance_wei", "price_ratio", "latency_ms"}
        ledger: LedgerClient = FakeLedger(**{k: v for k, v in kwargs.items() if k in fake_keys})
    elif kind == "web3":
        from .web3_ledger import Web3Ledger

        ledger = Web3Ledger(**kwargs)
    else:
        raise ValueError(f"Unknown ledger kind: {kind}")
    if max_retries > 0:
        return RetryLedger(ledger, max_retries=max_retries, retry_sleep_ms=retry_sleep_ms)
    return ledger
