from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from shadowswap.core.models import Intent, MatchOutcome


_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_AMOUNT_RE = re.compile(r"^[0-9]+$")


class IntentSubmission(BaseModel):
    """Wire shape of ``POST /submit-intent``; amounts are decimal strings."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    id: str = Field(min_length=1)
    user_address: str = Field(alias="userAddress", min_length=1)
    token_in: str = Field(alias="tokenIn", min_length=1)
    token_out: str = Field(alias="tokenOut", min_length=1)
    amount_in: int = Field(alias="amountIn", ge=0)
    min_amount_out: int = Field(alias="minAmountOut", ge=0)

    @field_validator("user_address")
    @classmethod
    def _check_address(cls, v: str) -> str:
        if not _ADDRESS_RE.match(v):
            raise ValueError("Invalid user address")
        return v

    @field_validator("amount_in", "min_amount_out", mode="before")
    @classmethod
    def _parse_amount(cls, v: Any) -> Any:
        # floats lose precision above 2**53; only exact forms are accepted
        if isinstance(v, bool) or isinstance(v, float):
            raise ValueError("amount must be an integer or a decimal string")
        if isinstance(v, str):
            if not _AMOUNT_RE.match(v.strip()):
                raise ValueError("amount must be a non-negative decimal string")
            return int(v.strip())
        return v

    @model_validator(mode="after")
    def _distinct_tokens(self) -> "IntentSubmission":
        if self.token_in.lower() == self.token_out.lower():
            raise ValueError("tokenIn and tokenOut must differ")
        return self

    def to_intent(self) -> Intent:
        return Intent(
            id=self.id,
            user_address=self.user_address,
            token_in=self.token_in,
            token_out=self.token_out,
            amount_in=self.amount_in,
            min_amount_out=self.min_amount_out,
        )


class SettlementSummary(BaseModel):
    intent_id: str = Field(serialization_alias="intentId")
    success: bool
    tx_hash: Optional[str] = Field(default=None, serialization_alias="txHash")
    error: Optional[str] = None


class SubmissionResponse(BaseModel):
    success: bool
    intent_id: str = Field(serialization_alias="intentId")
    status: str
    matched: bool
    matched_with: Optional[str] = Field(default=None, serialization_alias="matchedWith")
    message: str
    settlements: Optional[List[SettlementSummary]] = None

    @classmethod
    def from_outcome(cls, intent: Intent, outcome: MatchOutcome) -> "SubmissionResponse":
        if not outcome.matched:
            return cls(
                success=True,
                intent_id=intent.id,
                status=intent.status.value,
                matched=False,
                message="Intent queued, waiting for a counterparty",
            )
        mine, other = outcome.intents[0], outcome.intents[1]
        summaries = [
            SettlementSummary(intent_id=it.id, success=res.success, tx_hash=res.tx_hash, error=res.error)
            for it, res in zip(outcome.intents, outcome.settlements)
        ]
        ok = all(s.success for s in summaries)
        return cls(
            success=True,
            intent_id=mine.id,
            status=mine.status.value,
            matched=True,
            matched_with=other.id,
            message="Intent matched and settled" if ok else "Intent matched; settlement failed for at least one leg",
            settlements=summaries,
        )

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def format_validation_error(err: Exception) -> str:
    """Flatten a pydantic ValidationError into one operator-readable line."""
    errors = getattr(err, "errors", None)
    if not callable(errors):
        return str(err)
    parts = []
    for e in errors():
        loc = ".".join(str(p) for p in e.get("loc", ()) if p != "__root__")
        msg = str(e.get("msg", "invalid value"))
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts) or str(err)
