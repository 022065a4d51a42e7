from __future__ import annotations


class IntentValidationError(ValueError):
    """Malformed submission; raised before any state is touched."""

    reason = "invalid"


class DuplicateIntentError(IntentValidationError):
    reason = "duplicate"

    def __init__(self, intent_id: str):
        super().__init__(f"intent {intent_id} already exists")
        self.intent_id = intent_id


class InvalidStatusTransition(RuntimeError):
    def __init__(self, intent_id: str, current: str, requested: str):
        super().__init__(f"intent {intent_id}: cannot move from {current} to {requested}")
        self.intent_id = intent_id
        self.current = current
        self.requested = requested
