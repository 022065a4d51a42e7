import asyncio

from shadowswap.core.ratelimit import FixedDelayPacer


def test_pacer_sleeps_configured_delay():
    slept = []

    async def _sleeper(ms: int) -> None:
        slept.append(ms)

    pacer = FixedDelayPacer(5000, sleeper=_sleeper)
    waited = asyncio.run(pacer.wait())
    assert waited == 5000
    assert slept == [5000]


def test_pacer_zero_delay_does_not_sleep():
    slept = []

    async def _sleeper(ms: int) -> None:
        slept.append(ms)

    pacer = FixedDelayPacer(0, sleeper=_sleeper)
    assert asyncio.run(pacer.wait()) == 0
    assert slept == []


def test_negative_delay_clamped():
    assert FixedDelayPacer(-10).delay_ms == 0
    assert FixedDelayPacer().delay_ms == 5000
