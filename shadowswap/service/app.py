from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import ValidationError

from shadowswap.core.errors import DuplicateIntentError, IntentValidationError
from shadowswap.core.models import Intent, now_ms
from shadowswap.events.broadcaster import EventBroadcaster, EventStream
from shadowswap.matching.orderbook import OrderBook
from shadowswap.observability.metrics import inc_labelled
from shadowswap.settlement.engine import SettlementEngine

from .schemas import IntentSubmission, SubmissionResponse, format_validation_error


logger = logging.getLogger(__name__)


class SwapService:
    """Inbound operations shared by the HTTP surface, the client tests and the CLI."""

    def __init__(
        self,
        book: OrderBook,
        events: EventBroadcaster,
        engine: SettlementEngine,
        allowed_tokens: Optional[Iterable[str]] = None,
    ):
        self.book = book
        self.events = events
        self.engine = engine
        self.allowed_tokens = {t.lower() for t in allowed_tokens} if allowed_tokens else None
        # set once at startup; health reports it without another RPC read
        self.solver_authorized: Optional[bool] = None

    def parse_submission(self, payload: Mapping[str, Any]) -> Intent:
        try:
            sub = IntentSubmission.model_validate(dict(payload))
        except ValidationError as e:
            raise IntentValidationError(format_validation_error(e)) from e
        if self.allowed_tokens is not None:
            for tok in (sub.token_in, sub.token_out):
                if tok.lower() not in self.allowed_tokens:
                    raise IntentValidationError(f"unsupported token {tok}")
        return sub.to_intent()

    async def submit_intent(self, payload: Mapping[str, Any]) -> SubmissionResponse:
        try:
            intent = self.parse_submission(payload)
            outcome = await self.book.submit(intent)
        except IntentValidationError as e:
            inc_labelled("intents_rejected", {"reason": e.reason}, 1)
            level = logging.INFO if isinstance(e, DuplicateIntentError) else logging.WARNING
            logger.log(level, "intent rejected: %s", e, extra={"intent_id": payload.get("id")})
            raise
        return SubmissionResponse.from_outcome(intent, outcome)

    def get_intent(self, intent_id: str) -> Optional[Intent]:
        return self.book.get_intent(intent_id)

    def list_pending(self) -> List[Intent]:
        return self.book.get_pending_intents()

    def stream_events(self, intent_id: str) -> EventStream:
        return self.events.open_stream(intent_id)

    async def health(self) -> Dict[str, Any]:
        if self.solver_authorized is None:
            self.solver_authorized = await self.engine.verify_authorization()
        return {
            "status": "ok",
            "timestamp": now_ms(),
            "solverAuthorized": self.solver_authorized,
            "pending": len(self.book.get_pending_intents()),
        }
