import asyncio
import threading
from typing import Dict, List

import pytest

from shadowswap.adapters.chain.ledger import FakeLedger, PoolKey
from shadowswap.core.errors import DuplicateIntentError, IntentValidationError
from shadowswap.core.models import NATIVE_TOKEN, Intent, IntentStatus, SettlementResult
from shadowswap.core.models import SettlementEventType as T
from shadowswap.core.pricing import PriceRule
from shadowswap.core.ratelimit import FixedDelayPacer
from shadowswap.events.broadcaster import EventBroadcaster
from shadowswap.matching.orderbook import OrderBook
from shadowswap.observability.metrics import get_counter, get_gauge
from shadowswap.settlement.engine import SettlementEngine


TOKEN = "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238"
ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
CAROL = "0x" + "c3" * 20
ONE = 10**18


def _book(ledger=None, delay_ms: int = 0):
    events = EventBroadcaster()
    engine = SettlementEngine(
        ledger or FakeLedger(),
        PoolKey(currency0=NATIVE_TOKEN, currency1=TOKEN),
        events=events,
        pacer=FixedDelayPacer(delay_ms),
    )
    return OrderBook(engine, PriceRule(native_token=NATIVE_TOKEN), events=events), events


def _buy(iid: str, amount: int = ONE, user: str = ALICE) -> Intent:
    return Intent(id=iid, user_address=user, token_in=NATIVE_TOKEN, token_out=TOKEN, amount_in=amount, min_amount_out=0)


def _sell(iid: str, amount: int = 1000 * ONE, user: str = BOB) -> Intent:
    return Intent(id=iid, user_address=user, token_in=TOKEN, token_out=NATIVE_TOKEN, amount_in=amount, min_amount_out=0)


def test_unmatched_intent_is_queued():
    book, _ = _book()
    out = asyncio.run(book.submit(_buy("a")))
    assert out.matched is False
    assert [it.id for it in book.get_pending_intents()] == ["a"]
    assert book.get_intent("a").status is IntentStatus.PENDING
    assert get_gauge("pending_intents") == 1


def test_duplicate_id_rejected_before_and_after_match():
    book, _ = _book()

    async def _run():
        await book.submit(_buy("a"))
        with pytest.raises(DuplicateIntentError):
            await book.submit(_buy("a"))
        await book.submit(_sell("b"))
        with pytest.raises(DuplicateIntentError):
            await book.submit(_sell("b"))

    asyncio.run(_run())
    assert book.counts()["total"] == 2


def test_only_pending_intents_accepted():
    book, _ = _book()
    it = _buy("a")
    it.advance(IntentStatus.MATCHED)
    with pytest.raises(IntentValidationError):
        asyncio.run(book.submit(it))
    assert book.get_intent("a") is None


def test_same_direction_never_matches():
    book, _ = _book()

    async def _run():
        await book.submit(_buy("a"))
        return await book.submit(_buy("b", user=CAROL))

    out = asyncio.run(_run())
    assert out.matched is False
    assert len(book.get_pending_intents()) == 2


def test_price_outside_tolerance_stays_pending():
    book, _ = _book()

    async def _run():
        await book.submit(_buy("a"))
        return await book.submit(_sell("b", amount=1050 * ONE + 1))

    out = asyncio.run(_run())
    assert out.matched is False
    assert {it.id for it in book.get_pending_intents()} == {"a", "b"}


def test_end_to_end_settles_both_legs():
    led = FakeLedger()
    book, events = _book(led)

    async def _run():
        await book.submit(_buy("a"))
        return await book.submit(_sell("b"))

    out = asyncio.run(_run())
    assert out.matched is True
    new, resting = out.intents
    assert (new.id, resting.id) == ("b", "a")
    assert new.status is IntentStatus.SETTLED and resting.status is IntentStatus.SETTLED
    assert new.txn_hash and resting.txn_hash and new.txn_hash != resting.txn_hash
    assert new.match_id == "a" and resting.match_id == "b"
    assert new.counterparty == ALICE and resting.counterparty == BOB
    assert resting.amount_out == 1000 * ONE and new.amount_out == ONE
    assert new.settled_at is not None
    assert book.get_pending_intents() == []
    assert get_gauge("pending_intents") == 0
    # the newly submitted intent settles first
    assert [c.user for c in led.sent] == [BOB, ALICE]
    types_a = [e.type for e in events.get_history("a")]
    assert types_a[0] is T.MATCHED and types_a[1] is T.SETTLING_STARTED
    assert types_a[-1] is T.SETTLEMENT_COMPLETE
    assert events.get_history("a")[0].data["counterpartyIntentId"] == "b"


def test_partial_failure_is_independent():
    led = FakeLedger(revert_for={BOB})
    book, events = _book(led)

    async def _run():
        await book.submit(_buy("a"))
        return await book.submit(_sell("b"))

    out = asyncio.run(_run())
    b, a = out.intents
    assert b.status is IntentStatus.FAILED and b.settlement_error == "Transaction reverted"
    assert a.status is IntentStatus.SETTLED
    assert out.settlements[0].success is False and out.settlements[1].success is True
    assert events.get_history("b")[-1].type is T.SETTLEMENT_FAILED
    assert book.get_intent("b").txn_hash is not None


def test_first_compatible_resting_intent_wins():
    book, _ = _book()

    async def _run():
        await book.submit(_buy("early"))
        await book.submit(_buy("late", user=CAROL))
        return await book.submit(_sell("s"))

    out = asyncio.run(_run())
    assert out.intents[1].id == "early"
    assert [it.id for it in book.get_pending_intents()] == ["late"]


def test_status_never_goes_backwards():
    book, events = _book()
    rank = {"PENDING": 0, "MATCHED": 1, "SETTLING": 2, "SETTLED": 3, "FAILED": 3}
    seen: Dict[str, List[int]] = {"a": [], "b": []}

    def _record(ev):
        it = book.get_intent(ev.intent_id)
        if it is not None:
            seen[ev.intent_id].append(rank[it.status.value])

    events.subscribe(None, _record)

    async def _run():
        await book.submit(_buy("a"))
        await book.submit(_sell("b"))

    asyncio.run(_run())
    for ranks in seen.values():
        assert ranks and ranks == sorted(ranks)
        assert ranks[-1] == 3


def test_concurrent_submissions_match_exactly_once():
    book, _ = _book()

    async def _run():
        await book.submit(_buy("a"))
        return await asyncio.gather(book.submit(_sell("b")), book.submit(_sell("c", user=CAROL)))

    outs = asyncio.run(_run())
    assert sorted(o.matched for o in outs) == [False, True]
    assert len(book.get_pending_intents()) == 1


def test_threaded_submissions_match_exactly_once():
    book, _ = _book()
    asyncio.run(book.submit(_buy("a")))
    results = []
    lock = threading.Lock()

    def _worker(n: int) -> None:
        out = asyncio.run(book.submit(_sell(f"s{n}", user="0x" + f"{n:02d}" * 20)))
        with lock:
            results.append(out.matched)

    threads = [threading.Thread(target=_worker, args=(n,)) for n in range(8)]
    for th in threads:
        th.start()
    for th in threads:
        th.join(timeout=10.0)
    assert results.count(True) == 1 and results.count(False) == 7
    counts = book.counts()
    assert counts["settled"] == 2 and counts["pending"] == 7


def test_engine_crash_marks_both_failed():
    class _Crashing:
        async def execute_pair(self, first, second, on_result=None):
            raise RuntimeError("rpc exploded")

    events = EventBroadcaster()
    book = OrderBook(_Crashing(), PriceRule(native_token=NATIVE_TOKEN), events=events)

    async def _run():
        await book.submit(_buy("a"))
        return await book.submit(_sell("b"))

    out = asyncio.run(_run())
    assert all(it.status is IntentStatus.FAILED for it in out.intents)
    assert "rpc exploded" in book.get_intent("a").settlement_error
    assert events.get_history("a")[-1].type is T.SETTLEMENT_FAILED


def test_engine_crash_after_first_leg_keeps_its_settlement():
    tx = "0x" + "ab" * 32

    class _CrashAfterFirst:
        async def execute_pair(self, first, second, on_result=None):
            on_result(first, SettlementResult(success=True, tx_hash=tx, amount_out=ONE))
            raise RuntimeError("pacer exploded")

    book = OrderBook(_CrashAfterFirst(), PriceRule(native_token=NATIVE_TOKEN), events=EventBroadcaster())

    async def _run():
        await book.submit(_buy("a"))
        return await book.submit(_sell("b"))

    out = asyncio.run(_run())
    first, second = out.intents
    assert first.id == "b" and first.status is IntentStatus.SETTLED
    assert out.settlements[0].success is True
    assert out.settlements[0].tx_hash == tx
    assert out.settlements[0].amount_out == ONE
    assert out.settlements[0].error is None
    assert second.status is IntentStatus.FAILED
    assert out.settlements[1].success is False
    assert "pacer exploded" in out.settlements[1].error


def test_duplicate_submission_not_counted_as_submitted():
    book, _ = _book()

    async def _run():
        await book.submit(_buy("a"))
        before = get_counter("intents_submitted")
        with pytest.raises(DuplicateIntentError):
            await book.submit(_buy("a"))
        return before

    before = asyncio.run(_run())
    assert get_counter("intents_submitted") == before
