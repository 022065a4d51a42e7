from shadowswap.core.models import NATIVE_TOKEN, Intent
from shadowswap.core.pricing import PriceRule, is_inverse_pair, is_price_compatible


TOKEN = "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238"
ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
ONE = 10**18


def _eth_to_token(iid: str, amount: int) -> Intent:
    return Intent(id=iid, user_address=ALICE, token_in=NATIVE_TOKEN, token_out=TOKEN, amount_in=amount, min_amount_out=0)


def _token_to_eth(iid: str, amount: int) -> Intent:
    return Intent(id=iid, user_address=BOB, token_in=TOKEN, token_out=NATIVE_TOKEN, amount_in=amount, min_amount_out=0)


def test_tolerance_is_five_percent_truncated():
    rule = PriceRule(native_token=NATIVE_TOKEN)
    assert rule.expected_secondary(ONE) == 1000 * ONE
    assert rule.tolerance(1000 * ONE) == 50 * ONE
    # truncation toward zero
    assert rule.tolerance(39) == 1


def test_exact_tolerance_edges_accept_and_one_unit_beyond_rejects():
    rule = PriceRule(native_token=NATIVE_TOKEN)
    a = _eth_to_token("a", ONE)
    assert is_price_compatible(rule, a, _token_to_eth("b", 1050 * ONE))
    assert is_price_compatible(rule, a, _token_to_eth("b", 950 * ONE))
    assert not is_price_compatible(rule, a, _token_to_eth("b", 1050 * ONE + 1))
    assert not is_price_compatible(rule, a, _token_to_eth("b", 950 * ONE - 1))


def test_price_check_is_symmetric_in_argument_order():
    rule = PriceRule(native_token=NATIVE_TOKEN)
    a = _eth_to_token("a", ONE)
    b = _token_to_eth("b", 1000 * ONE)
    assert is_price_compatible(rule, a, b) and is_price_compatible(rule, b, a)


def test_inverse_pair_ignores_address_case():
    a = _eth_to_token("a", ONE)
    b = Intent(id="b", user_address=BOB, token_in=TOKEN.lower(), token_out=NATIVE_TOKEN, amount_in=1, min_amount_out=0)
    assert is_inverse_pair(a, b)
    assert not is_inverse_pair(a, _eth_to_token("c", ONE))


def test_pair_without_native_leg_never_compatible():
    other = "0x" + "cd" * 20
    rule = PriceRule(native_token=NATIVE_TOKEN)
    a = Intent(id="a", user_address=ALICE, token_in=TOKEN, token_out=other, amount_in=1000, min_amount_out=0)
    b = Intent(id="b", user_address=BOB, token_in=other, token_out=TOKEN, amount_in=1000, min_amount_out=0)
    assert is_inverse_pair(a, b)
    assert not is_price_compatible(rule, a, b)


def test_custom_ratio_and_tolerance():
    rule = PriceRule(native_token=NATIVE_TOKEN, price_ratio=2000, tolerance_bps=100)
    a = _eth_to_token("a", ONE)
    assert is_price_compatible(rule, a, _token_to_eth("b", 2020 * ONE))
    assert not is_price_compatible(rule, a, _token_to_eth("b", 2021 * ONE))
