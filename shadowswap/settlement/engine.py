from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Tuple

from shadowswap.adapters.chain.ledger import (
    ExecuteMatchCall,
    LedgerClient,
    PoolKey,
    SimulationError,
    is_rate_limit_error,
)
from shadowswap.core.models import (
    NATIVE_TOKEN,
    Intent,
    IntentStatus,
    SettlementEventType,
    SettlementResult,
    same_address,
)
from shadowswap.core.ratelimit import FixedDelayPacer
from shadowswap.events.broadcaster import EventBroadcaster
from shadowswap.observability.metrics import Timer, inc, inc_labelled


logger = logging.getLogger(__name__)

# The book moves both legs to SETTLING before handing them over; a bare
# MATCHED intent is accepted too so the engine can be driven directly.
SETTLEABLE_STATUSES = frozenset({IntentStatus.MATCHED, IntentStatus.SETTLING})

ResultCallback = Callable[[Intent, SettlementResult], None]


class SettlementEngine:
    """Executes matched intents against the router contract, one transaction at a time."""

    def __init__(
        self,
        ledger: LedgerClient,
        pool_key: PoolKey,
        native_token: str = NATIVE_TOKEN,
        events: Optional[EventBroadcaster] = None,
        pacer: Optional[FixedDelayPacer] = None,
        confirmations: int = 1,
        audit_enabled: bool = True,
        audit_node: str = "shadowswap.eth",
        audit_key: str = "latest_settlement",
    ):
        self.ledger = ledger
        self.pool_key = pool_key
        self.native_token = native_token
        self.events = events
        self.pacer = pacer or FixedDelayPacer()
        self.confirmations = max(1, int(confirmations))
        self.audit_enabled = audit_enabled
        self.audit_node = audit_node
        self.audit_key = audit_key
        # one signing account: never let two submissions race for a nonce
        self._submit_lock = asyncio.Lock()

    @property
    def solver_address(self) -> str:
        return self.ledger.solver_address

    def _emit(self, typ: SettlementEventType, intent_id: str, **data: Any) -> None:
        if self.events is None:
            return
        self.events.publish(typ, intent_id, {k: v for k, v in data.items() if v is not None} or None)

    def _fail(self, intent: Intent, stage: str, error: str, tx_hash: Optional[str] = None) -> SettlementResult:
        inc_labelled("settlement_failures", {"stage": stage}, 1)
        inc_labelled("settlements", {"outcome": "failed"}, 1)
        logger.error("settlement failed at %s: %s", stage, error, extra={"intent_id": intent.id, "tx_hash": tx_hash})
        return SettlementResult(success=False, tx_hash=tx_hash, error=error)

    def build_call(self, intent: Intent) -> ExecuteMatchCall:
        zero_for_one = same_address(intent.token_in, self.native_token)
        return ExecuteMatchCall(
            user=intent.user_address,
            pool_key=self.pool_key,
            zero_for_one=zero_for_one,
            amount_in=intent.amount_in,
            value=intent.amount_in if zero_for_one else 0,
        )

    async def execute_one(self, intent: Intent) -> SettlementResult:
        if intent.status not in SETTLEABLE_STATUSES:
            logger.error("refusing to settle intent in status %s", intent.status.value, extra={"intent_id": intent.id})
            return SettlementResult(success=False, error=f"Invalid intent status: {intent.status.value}")

        call = self.build_call(intent)
        logger.info(
            "settling %s amount_in=%d user=%s",
            "native->token" if call.zero_for_one else "token->native",
            call.amount_in,
            call.user,
            extra={"intent_id": intent.id},
        )
        async with self._submit_lock:
            with Timer("engine_execute_one"):
                return await self._execute_locked(intent, call)

    async def _execute_locked(self, intent: Intent, call: ExecuteMatchCall) -> SettlementResult:
        stage = "simulation"
        tx_hash: Optional[str] = None
        try:
            await self.ledger.simulate_execute_match(call)
            stage = "submission"
            tx_hash = await self.ledger.send_execute_match(call)
            self._emit(SettlementEventType.TX_SUBMITTED, intent.id, txHash=tx_hash, message="Transaction submitted")
            stage = "confirmation"
            self._emit(
                SettlementEventType.TX_CONFIRMING,
                intent.id,
                txHash=tx_hash,
                confirmations=self.confirmations,
                message="Waiting for confirmation",
            )
            receipt = await self.ledger.wait_for_receipt(tx_hash, self.confirmations)
        except Exception as e:
            if is_rate_limit_error(e):
                inc("rpc_rate_limited_total", 1)
            if isinstance(e, SimulationError):
                stage = "simulation"
            return self._fail(intent, stage, str(e) or e.__class__.__name__, tx_hash)

        if not receipt.success:
            return self._fail(intent, "reverted", "Transaction reverted", tx_hash)

        logger.info(
            "settlement confirmed in block %s gas_used=%s",
            receipt.block_number,
            receipt.gas_used,
            extra={"intent_id": intent.id, "tx_hash": tx_hash},
        )
        self._emit(SettlementEventType.TX_CONFIRMED, intent.id, txHash=tx_hash, message="Transaction confirmed")
        if self.audit_enabled:
            await self._record_audit(intent, tx_hash)
        inc_labelled("settlements", {"outcome": "settled"}, 1)
        return SettlementResult(success=True, tx_hash=tx_hash, amount_out=receipt.amount_out)

    async def _record_audit(self, intent: Intent, tx_hash: str) -> None:
        """Write the settlement hash to the registry; failures are logged only."""
        self._emit(SettlementEventType.ENS_UPDATING, intent.id, txHash=tx_hash, message="Recording settlement")
        try:
            audit_tx = await self.ledger.set_text(self.audit_node, self.audit_key, tx_hash)
            receipt = await self.ledger.wait_for_receipt(audit_tx, 1)
            if not receipt.success:
                raise RuntimeError(f"audit transaction {audit_tx} reverted")
        except Exception as e:
            inc("audit_write_failures", 1)
            logger.warning("audit write failed (non-critical): %s", e, extra={"intent_id": intent.id, "tx_hash": tx_hash})
            return
        self._emit(SettlementEventType.ENS_CONFIRMED, intent.id, txHash=audit_tx, message="Settlement recorded")

    async def execute_pair(
        self,
        first: Intent,
        second: Intent,
        on_result: Optional[ResultCallback] = None,
    ) -> Tuple[SettlementResult, SettlementResult]:
        """Settle two legs one after the other with the configured pause between them.

        ``on_result`` is called as soon as each leg resolves, so the first leg's
        outcome is visible before the pause ends. A failed first leg does not
        skip the second.
        """
        logger.info("executing matched pair", extra={"intent_id": first.id, "match_id": second.id})
        r1 = await self.execute_one(first)
        self._notify(on_result, first, r1)

        if self.pacer.delay_ms > 0:
            for it in (first, second):
                self._emit(
                    SettlementEventType.WAITING_RATE_LIMIT,
                    it.id,
                    waitTimeMs=self.pacer.delay_ms,
                    message="Pausing between settlements (RPC rate limit)",
                )
        await self.pacer.wait()

        r2 = await self.execute_one(second)
        self._notify(on_result, second, r2)
        logger.info(
            "pair complete first=%s second=%s",
            "ok" if r1.success else "failed",
            "ok" if r2.success else "failed",
            extra={"intent_id": first.id, "match_id": second.id},
        )
        return r1, r2

    @staticmethod
    def _notify(cb: Optional[ResultCallback], intent: Intent, result: SettlementResult) -> None:
        if cb is None:
            return
        try:
            cb(intent, result)
        except Exception:
            logger.exception("settlement result callback failed", extra={"intent_id": intent.id})

    async def verify_authorization(self) -> bool:
        try:
            authorized = await self.ledger.read_solver()
        except Exception as e:
            logger.error("could not read router solver: %s", e)
            return False
        ok = same_address(authorized, self.solver_address)
        if ok:
            logger.info("solver authorization verified", extra={"solver": self.solver_address})
        else:
            logger.error(
                "solver not authorized: router has %s, we sign as %s",
                authorized,
                self.solver_address,
                extra={"solver": self.solver_address},
            )
        return ok

    async def get_balance(self) -> int:
        return await self.ledger.get_balance(self.solver_address)

    def describe(self) -> Dict[str, Any]:
        return {
            "solver": self.solver_address,
            "confirmations": self.confirmations,
            "interSettlementDelayMs": self.pacer.delay_ms,
            "auditEnabled": self.audit_enabled,
        }
