from __future__ import annotations

import asyncio
import logging
import threading
from typing import Dict, List, Optional

from shadowswap.core.errors import DuplicateIntentError, IntentValidationError
from shadowswap.core.models import (
    Intent,
    IntentStatus,
    MatchOutcome,
    SettlementEventType,
    SettlementResult,
    now_ms,
)
from shadowswap.core.pricing import PriceRule, is_inverse_pair, is_price_compatible
from shadowswap.events.broadcaster import EventBroadcaster
from shadowswap.observability.metrics import inc, set_gauge
from shadowswap.settlement.engine import SettlementEngine


logger = logging.getLogger(__name__)


class OrderBook:
    """Working set of unmatched intents plus the record of matched ones.

    Matching picks the first resting intent, in insertion order, that is the
    inverse pair and within the price tolerance. This is neither a
    best-price nor a guaranteed time-priority policy; callers should not rely
    on which of several compatible counterparties is chosen.
    """

    def __init__(self, engine: SettlementEngine, price_rule: PriceRule, events: Optional[EventBroadcaster] = None):
        self.engine = engine
        self.price_rule = price_rule
        self.events = events
        # guards the scan-then-remove step and every store mutation
        self._lock = threading.Lock()
        self._pending: Dict[str, Intent] = {}
        self._settled: Dict[str, Intent] = {}

    def _emit(self, typ: SettlementEventType, intent_id: str, **data) -> None:
        if self.events is None:
            return
        self.events.publish(typ, intent_id, {k: v for k, v in data.items() if v is not None} or None)

    def _find_counterparty(self, intent: Intent) -> Optional[Intent]:
        for resting in self._pending.values():
            if is_inverse_pair(intent, resting) and is_price_compatible(self.price_rule, intent, resting):
                return resting
        return None

    def _claim(self, intent: Intent) -> Optional[Intent]:
        """Queue ``intent`` or pair it with a resting counterparty, atomically."""
        with self._lock:
            if intent.id in self._pending or intent.id in self._settled:
                raise DuplicateIntentError(intent.id)
            counterparty = self._find_counterparty(intent)
            if counterparty is None:
                self._pending[intent.id] = intent
            else:
                del self._pending[counterparty.id]
                intent.advance(IntentStatus.MATCHED)
                counterparty.advance(IntentStatus.MATCHED)
                intent.bind_counterparty(counterparty)
                counterparty.bind_counterparty(intent)
                self._settled[intent.id] = intent
                self._settled[counterparty.id] = counterparty
            set_gauge("pending_intents", len(self._pending))
            return counterparty

    async def submit(self, intent: Intent) -> MatchOutcome:
        if intent.status is not IntentStatus.PENDING:
            raise IntentValidationError(f"intent {intent.id} must be PENDING, got {intent.status.value}")
        counterparty = self._claim(intent)
        inc("intents_submitted", 1)
        if counterparty is None:
            inc("intents_queued", 1)
            logger.info(
                "no match; queued %d %s -> %s",
                intent.amount_in,
                intent.token_in,
                intent.token_out,
                extra={"intent_id": intent.id},
            )
            return MatchOutcome(matched=False)

        inc("intents_matched", 2)
        logger.info("match found", extra={"intent_id": intent.id, "match_id": counterparty.id})
        for a, b in ((intent, counterparty), (counterparty, intent)):
            self._emit(SettlementEventType.MATCHED, a.id, counterpartyIntentId=b.id, message="Matched with counterparty")

        with self._lock:
            intent.advance(IntentStatus.SETTLING)
            counterparty.advance(IntentStatus.SETTLING)
        for it in (intent, counterparty):
            self._emit(SettlementEventType.SETTLING_STARTED, it.id, message="Settlement started")

        try:
            r1, r2 = await self.engine.execute_pair(intent, counterparty, on_result=self._apply_result)
        except asyncio.CancelledError:
            self._fail_unresolved([intent, counterparty], "settlement interrupted")
            raise
        except Exception as e:
            logger.exception("settlement engine raised", extra={"intent_id": intent.id, "match_id": counterparty.id})
            r1, r2 = self._fail_unresolved([intent, counterparty], f"settlement aborted: {e}")
        # execute_pair reports through on_result; this only catches a leg it never reported
        for it, res in ((intent, r1), (counterparty, r2)):
            if not it.is_terminal():
                self._apply_result(it, res)
        return MatchOutcome(matched=True, intents=[intent.snapshot(), counterparty.snapshot()], settlements=[r1, r2])

    def _fail_unresolved(self, intents: List[Intent], error: str) -> List[SettlementResult]:
        """Fail the legs still open; report already-finished legs as they ended."""
        results = []
        for it in intents:
            with self._lock:
                if it.is_terminal():
                    res = SettlementResult(
                        success=it.status is IntentStatus.SETTLED,
                        tx_hash=it.txn_hash,
                        amount_out=it.amount_out,
                        error=it.settlement_error,
                    )
                else:
                    res = None
            if res is None:
                res = SettlementResult(success=False, error=error)
                self._apply_result(it, res)
            results.append(res)
        return results

    def _apply_result(self, intent: Intent, result: SettlementResult) -> None:
        with self._lock:
            if intent.is_terminal():
                return
            intent.txn_hash = result.tx_hash
            intent.settled_at = now_ms()
            if result.success:
                intent.amount_out = result.amount_out
                intent.advance(IntentStatus.SETTLED)
            else:
                intent.settlement_error = result.error or "settlement failed"
                intent.advance(IntentStatus.FAILED)
        if result.success:
            self._emit(
                SettlementEventType.SETTLEMENT_COMPLETE,
                intent.id,
                txHash=result.tx_hash,
                amountOut=str(result.amount_out) if result.amount_out is not None else None,
                message="Settlement complete",
            )
        else:
            self._emit(
                SettlementEventType.SETTLEMENT_FAILED,
                intent.id,
                txHash=result.tx_hash,
                error=intent.settlement_error,
            )

    def get_intent(self, intent_id: str) -> Optional[Intent]:
        with self._lock:
            it = self._pending.get(intent_id) or self._settled.get(intent_id)
            return it.snapshot() if it is not None else None

    def get_pending_intents(self) -> List[Intent]:
        with self._lock:
            return [it.snapshot() for it in self._pending.values()]

    def counts(self) -> Dict[str, int]:
        with self._lock:
            out = {status.value.lower(): 0 for status in IntentStatus}
            for it in list(self._pending.values()) + list(self._settled.values()):
                out[it.status.value.lower()] += 1
            out["total"] = len(self._pending) + len(self._settled)
            return out
