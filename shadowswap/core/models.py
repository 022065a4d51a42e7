from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional

from shadowswap.core.errors import InvalidStatusTransition


NATIVE_TOKEN = "0x0000000000000000000000000000000000000000"


class IntentStatus(str, Enum):
    PENDING = "PENDING"
    MATCHED = "MATCHED"
    SETTLING = "SETTLING"
    SETTLED = "SETTLED"
    FAILED = "FAILED"


# Position in the lifecycle; SETTLED and FAILED share the terminal rank.
_STATUS_RANK: Dict[IntentStatus, int] = {
    IntentStatus.PENDING: 0,
    IntentStatus.MATCHED: 1,
    IntentStatus.SETTLING: 2,
    IntentStatus.SETTLED: 3,
    IntentStatus.FAILED: 3,
}

TERMINAL_STATUSES = frozenset({IntentStatus.SETTLED, IntentStatus.FAILED})


class SettlementEventType(str, Enum):
    CONNECTED = "CONNECTED"
    MATCHED = "MATCHED"
    SETTLING_STARTED = "SETTLING_STARTED"
    TX_SUBMITTED = "TX_SUBMITTED"
    TX_CONFIRMING = "TX_CONFIRMING"
    TX_CONFIRMED = "TX_CONFIRMED"
    ENS_UPDATING = "ENS_UPDATING"
    ENS_CONFIRMED = "ENS_CONFIRMED"
    SETTLEMENT_COMPLETE = "SETTLEMENT_COMPLETE"
    SETTLEMENT_FAILED = "SETTLEMENT_FAILED"
    WAITING_RATE_LIMIT = "WAITING_RATE_LIMIT"


def now_ms() -> int:
    return int(time.time() * 1000)


def same_address(a: str, b: str) -> bool:
    return a.lower() == b.lower()


@dataclass
class Intent:
    id: str
    user_address: str
    token_in: str
    token_out: str
    amount_in: int
    min_amount_out: int
    status: IntentStatus = IntentStatus.PENDING
    created_at: int = field(default_factory=now_ms)
    match_id: Optional[str] = None
    counterparty: Optional[str] = None
    txn_hash: Optional[str] = None
    amount_out: Optional[int] = None
    settlement_error: Optional[str] = None
    settled_at: Optional[int] = None

    def advance(self, new_status: IntentStatus) -> None:
        """Move to ``new_status``; only the next lifecycle step is allowed."""
        cur = _STATUS_RANK[self.status]
        nxt = _STATUS_RANK[new_status]
        if self.status in TERMINAL_STATUSES or nxt != cur + 1:
            raise InvalidStatusTransition(self.id, self.status.value, new_status.value)
        self.status = new_status

    def bind_counterparty(self, other: "Intent") -> None:
        if self.match_id is not None or self.counterparty is not None:
            raise InvalidStatusTransition(self.id, self.status.value, "rebind counterparty")
        self.match_id = other.id
        self.counterparty = other.user_address

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def snapshot(self) -> "Intent":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        # Amounts travel as decimal strings so large integers survive JSON clients.
        out: Dict[str, Any] = {
            "id": self.id,
            "userAddress": self.user_address,
            "tokenIn": self.token_in,
            "tokenOut": self.token_out,
            "amountIn": str(self.amount_in),
            "minAmountOut": str(self.min_amount_out),
            "status": self.status.value,
            "createdAt": self.created_at,
        }
        if self.match_id is not None:
            out["matchId"] = self.match_id
            out["counterparty"] = self.counterparty
        if self.txn_hash is not None:
            out["txnHash"] = self.txn_hash
        if self.amount_out is not None:
            out["amountOut"] = str(self.amount_out)
        if self.settlement_error is not None:
            out["settlementError"] = self.settlement_error
        if self.settled_at is not None:
            out["settledAt"] = self.settled_at
        return out


@dataclass(frozen=True)
class SettlementEvent:
    type: SettlementEventType
    intent_id: str
    timestamp: int
    data: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "type": self.type.value,
            "intentId": self.intent_id,
            "timestamp": self.timestamp,
        }
        if self.data:
            out["data"] = dict(self.data)
        return out


@dataclass
class SettlementResult:
    success: bool
    tx_hash: Optional[str] = None
    amount_out: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success}
        if self.tx_hash is not None:
            out["txHash"] = self.tx_hash
        if self.amount_out is not None:
            out["amountOut"] = str(self.amount_out)
        if self.error is not None:
            out["error"] = self.error
        return out


@dataclass
class MatchOutcome:
    """Result of ``OrderBook.submit``.

    ``intents`` and ``settlements`` are index-aligned: the newly submitted
    intent first, then the resting counterparty.
    """

    matched: bool
    intents: List[Intent] = field(default_factory=list)
    settlements: List[SettlementResult] = field(default_factory=list)
