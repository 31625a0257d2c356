"""
Unit tests for the promotion evaluation engine (no database involved).
"""

import random
from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from pos_promos.exceptions import InvalidCartError
from pos_promos.services.promotion_engine import (
    Cart, LineItem, Promotion, PromotionType, DiscountType, evaluate, validate_promotion
)
from pos_promos.exceptions import InvalidPromotionError

TODAY = date(2024, 6, 15)


def make_cart(*lines):
    return Cart(items=tuple(LineItem(pid, qty, Decimal(price)) for pid, qty, price in lines))


def simple(promotion_id, products, value='10', discount_type=DiscountType.PERCENTAGE, **kwargs):
    return Promotion(
        id=promotion_id,
        kind=PromotionType.SIMPLE,
        discount_type=discount_type,
        discount_value=Decimal(value),
        applies_to=frozenset(products),
        **kwargs
    )


def pack(promotion_id, required, value='10', discount_type=DiscountType.PERCENTAGE, **kwargs):
    return Promotion(
        id=promotion_id,
        kind=PromotionType.PACK,
        discount_type=discount_type,
        discount_value=Decimal(value),
        required_items=required,
        **kwargs
    )


def combo(promotion_id, required, price, **kwargs):
    return Promotion(
        id=promotion_id,
        kind=PromotionType.COMBO,
        discount_type=DiscountType.FIXED_PRICE,
        required_items=required,
        combo_price=Decimal(price),
        **kwargs
    )


class TestSimplePromotions:
    """SIMPLE promotions on unclaimed units."""

    def test_percentage_discount(self):
        """10% over A x3 at 5.00 gives 1.50 off and 13.50 to pay."""
        result = evaluate(make_cart(('A', 3, '5')), [simple(1, {'A'})], TODAY)

        assert len(result.applicable_promotions) == 1
        applied = result.applicable_promotions[0]
        assert applied.promotion_id == 1
        assert applied.discount_amount == Decimal('1.5')
        assert applied.claimed == {'A': 3}
        assert result.subtotal == Decimal('15')
        assert result.total_discount == Decimal('1.5')
        assert result.final_total == Decimal('13.50')

    def test_fixed_amount_is_capped_at_qualifying_subtotal(self):
        cart = make_cart(('A', 2, '3'), ('B', 1, '100'))
        result = evaluate(cart, [simple(1, {'A'}, value='50', discount_type=DiscountType.FIXED_AMOUNT)], TODAY)

        assert result.applicable_promotions[0].discount_amount == Decimal('6')
        assert result.final_total == Decimal('100.00')

    def test_minimum_quantity_not_reached(self):
        promotion = simple(1, {'A'}, min_quantity_per_product=3)
        result = evaluate(make_cart(('A', 2, '5')), [promotion], TODAY)

        assert result.applicable_promotions == ()
        assert result.total_discount == Decimal('0')
        assert result.final_total == Decimal('10.00')

    def test_only_products_reaching_their_minimum_qualify(self):
        promotion = simple(1, {'A', 'B'}, min_quantity_per_product=2)
        cart = make_cart(('A', 2, '10'), ('B', 1, '10'))
        result = evaluate(cart, [promotion], TODAY)

        applied = result.applicable_promotions[0]
        assert applied.claimed == {'A': 2}
        assert applied.discount_amount == Decimal('2')

    def test_per_product_minimum_overrides_default(self):
        promotion = simple(1, {'A', 'B'}, min_quantities={'B': 3})
        cart = make_cart(('A', 1, '10'), ('B', 2, '10'))
        result = evaluate(cart, [promotion], TODAY)

        assert result.applicable_promotions[0].claimed == {'A': 1}

    def test_second_simple_on_same_product_gets_nothing(self):
        first = simple(1, {'A'}, value='10')
        second = simple(2, {'A'}, value='50')
        result = evaluate(make_cart(('A', 2, '10')), [first, second], TODAY)

        assert [a.promotion_id for a in result.applicable_promotions] == [1]
        assert result.total_discount == Decimal('2')

    def test_simple_promotions_on_different_products_both_apply(self):
        cart = make_cart(('A', 1, '10'), ('B', 1, '20'))
        result = evaluate(cart, [simple(1, {'A'}), simple(2, {'B'}, value='50')], TODAY)

        assert [a.promotion_id for a in result.applicable_promotions] == [1, 2]
        assert result.total_discount == Decimal('11')
        assert result.final_total == Decimal('19.00')


class TestPackPromotions:
    """PACK promotions: whole instances only."""

    def test_pack_all_or_nothing(self):
        """A pack requiring {A:2, B:1} does nothing for {A:1, B:1}."""
        promotion = pack(1, {'A': 2, 'B': 1}, bonus_points=50)
        result = evaluate(make_cart(('A', 1, '10'), ('B', 1, '10')), [promotion], TODAY)

        assert result.applicable_promotions == ()
        assert result.total_discount == Decimal('0')
        assert result.total_bonus_points == 0

    def test_pack_missing_product(self):
        result = evaluate(make_cart(('A', 4, '10')), [pack(1, {'A': 2, 'B': 1})], TODAY)

        assert result.applicable_promotions == ()

    def test_multiple_instances_multiply_the_discount(self):
        """{A:2} at 50% with A x5 at 10.00: two packs, 20.00 off, one unit left."""
        result = evaluate(make_cart(('A', 5, '10')), [pack(1, {'A': 2}, value='50')], TODAY)

        applied = result.applicable_promotions[0]
        assert applied.instances == 2
        assert applied.claimed == {'A': 4}
        assert applied.discount_amount == Decimal('20')
        assert result.final_total == Decimal('30.00')

    def test_fixed_amount_per_instance_is_capped_at_instance_price(self):
        promotion = pack(1, {'A': 2}, value='100', discount_type=DiscountType.FIXED_AMOUNT)
        result = evaluate(make_cart(('A', 4, '10')), [promotion], TODAY)

        assert result.applicable_promotions[0].discount_amount == Decimal('40')
        assert result.final_total == Decimal('0.00')

    def test_fixed_price_pack(self):
        """3 x A at 10.00 sold as a pack for 25.00."""
        promotion = pack(1, {'A': 3}, value='25', discount_type=DiscountType.FIXED_PRICE)
        result = evaluate(make_cart(('A', 3, '10')), [promotion], TODAY)

        assert result.applicable_promotions[0].discount_amount == Decimal('5')
        assert result.final_total == Decimal('25.00')

    def test_fixed_price_pack_above_regular_price_gives_no_discount(self):
        promotion = pack(1, {'A': 1}, value='99', discount_type=DiscountType.FIXED_PRICE)
        result = evaluate(make_cart(('A', 1, '10')), [promotion], TODAY)

        assert result.applicable_promotions[0].discount_amount == Decimal('0')
        assert result.final_total == Decimal('10.00')

    def test_leftover_units_remain_available_for_simple(self):
        promotions = [simple(2, {'A'}, value='10'), pack(1, {'A': 2}, value='50')]
        result = evaluate(make_cart(('A', 3, '10')), promotions, TODAY)

        assert [a.promotion_id for a in result.applicable_promotions] == [1, 2]
        pack_applied, simple_applied = result.applicable_promotions
        assert pack_applied.claimed == {'A': 2}
        assert simple_applied.claimed == {'A': 1}
        assert result.total_discount == Decimal('11')


class TestComboPromotions:
    """COMBO promotions priced as a unit."""

    def test_combo_arithmetic(self):
        """{A:1, B:1} for 10.00 with A x2 at 6.00 and B x2 at 7.00: 2 combos, 6.00 off."""
        promotion = combo(1, {'A': 1, 'B': 1}, '10')
        cart = make_cart(('A', 2, '6'), ('B', 2, '7'))
        result = evaluate(cart, [promotion], TODAY)

        applied = result.applicable_promotions[0]
        assert applied.instances == 2
        assert applied.discount_amount == Decimal('6')
        assert applied.claimed == {'A': 2, 'B': 2}
        assert result.final_total == Decimal('20.00')

    def test_combo_price_above_regular_price_is_floored_at_zero(self):
        promotion = combo(1, {'A': 1, 'B': 1}, '50')
        result = evaluate(make_cart(('A', 1, '6'), ('B', 1, '7')), [promotion], TODAY)

        assert result.applicable_promotions[0].discount_amount == Decimal('0')
        assert result.final_total == Decimal('13.00')

    def test_claimed_units_are_not_discounted_again(self):
        promotions = [combo(1, {'A': 1, 'B': 1}, '10'), simple(2, {'A'}, value='50')]
        result = evaluate(make_cart(('A', 1, '6'), ('B', 1, '7')), promotions, TODAY)

        assert [a.promotion_id for a in result.applicable_promotions] == [1]
        assert result.total_discount == Decimal('3')

    def test_bundles_run_before_simple_promotions(self):
        """The SIMPLE promotion is listed first but the combo still claims the units."""
        promotions = [simple(1, {'A'}, value='50'), combo(2, {'A': 1, 'B': 1}, '10')]
        result = evaluate(make_cart(('A', 1, '6'), ('B', 1, '7')), promotions, TODAY)

        assert [a.promotion_id for a in result.applicable_promotions] == [2]

    def test_input_order_breaks_ties_between_bundles(self):
        first = combo(1, {'A': 1, 'B': 1}, '12')
        second = combo(2, {'A': 1, 'C': 1}, '1')
        cart = make_cart(('A', 1, '6'), ('B', 1, '7'), ('C', 1, '7'))

        result = evaluate(cart, [first, second], TODAY)
        assert [a.promotion_id for a in result.applicable_promotions] == [1]

        result = evaluate(cart, [second, first], TODAY)
        assert [a.promotion_id for a in result.applicable_promotions] == [2]


class TestEligibility:
    """Active flag, date window and usage cap."""

    def test_usage_cap_reached_is_excluded(self):
        promotion = simple(1, {'A'}, max_uses=5, uses_so_far=5)
        result = evaluate(make_cart(('A', 10, '10')), [promotion], TODAY)

        assert result.applicable_promotions == ()

    def test_usage_below_cap_applies(self):
        promotion = simple(1, {'A'}, max_uses=5, uses_so_far=4)
        result = evaluate(make_cart(('A', 1, '10')), [promotion], TODAY)

        assert len(result.applicable_promotions) == 1

    def test_missing_cap_is_unlimited(self):
        promotion = simple(1, {'A'}, max_uses=None, uses_so_far=10000)
        result = evaluate(make_cart(('A', 1, '10')), [promotion], TODAY)

        assert len(result.applicable_promotions) == 1

    def test_expired_promotion_is_excluded(self):
        promotion = simple(1, {'A'}, valid_from=TODAY - timedelta(days=30), valid_to=TODAY - timedelta(days=1))
        result = evaluate(make_cart(('A', 1, '10')), [promotion], TODAY)

        assert result.applicable_promotions == ()

    def test_future_promotion_is_excluded(self):
        promotion = simple(1, {'A'}, valid_from=TODAY + timedelta(days=1))
        result = evaluate(make_cart(('A', 1, '10')), [promotion], TODAY)

        assert result.applicable_promotions == ()

    def test_window_bounds_are_inclusive(self):
        promotion = simple(1, {'A'}, valid_from=TODAY, valid_to=TODAY)
        result = evaluate(make_cart(('A', 1, '10')), [promotion], TODAY)

        assert len(result.applicable_promotions) == 1

    def test_datetime_as_of_uses_its_date(self):
        promotion = simple(1, {'A'}, valid_to=TODAY)
        result = evaluate(make_cart(('A', 1, '10')), [promotion], datetime(2024, 6, 15, 23, 59))

        assert len(result.applicable_promotions) == 1

    def test_datetime_bounds_use_their_date(self):
        promotions = [
            simple(1, {'A'}, valid_to=datetime(2024, 6, 30, 12, 0)),
            simple(2, {'B'}, valid_from=datetime(2024, 6, 15, 18, 30)),
        ]
        result = evaluate(make_cart(('A', 1, '10'), ('B', 1, '10')), promotions, TODAY)

        assert [a.promotion_id for a in result.applicable_promotions] == [1, 2]
        assert promotions[0].valid_to == date(2024, 6, 30)

    def test_datetime_bound_on_the_last_day_is_inclusive(self):
        promotion = simple(1, {'A'}, valid_to=datetime(2024, 6, 15, 0, 0))
        result = evaluate(make_cart(('A', 1, '10')), [promotion], datetime(2024, 6, 15, 20, 0))

        assert len(result.applicable_promotions) == 1

    def test_inactive_promotion_is_excluded(self):
        promotion = simple(1, {'A'}, active=False)
        result = evaluate(make_cart(('A', 1, '10')), [promotion], TODAY)

        assert result.applicable_promotions == ()


class TestTotals:
    """Clamping, rounding, bonus points and usage proposals."""

    def test_rounding_only_on_final_total(self):
        result = evaluate(make_cart(('A', 1, '0.05')), [simple(1, {'A'})], TODAY)

        assert result.total_discount == Decimal('0.005')
        assert result.final_total == Decimal('0.05')

    def test_full_discount_never_goes_negative(self):
        promotions = [
            simple(1, {'A'}, value='100'),
            simple(2, {'B'}, value='1000', discount_type=DiscountType.FIXED_AMOUNT),
        ]
        result = evaluate(make_cart(('A', 1, '10'), ('B', 1, '5')), promotions, TODAY)

        assert result.total_discount == Decimal('15')
        assert result.final_total == Decimal('0.00')

    def test_bonus_points_are_summed_over_applied_promotions(self):
        promotions = [
            simple(1, {'A'}, bonus_points=10),
            simple(2, {'B'}, bonus_points=5),
            simple(3, {'C'}, bonus_points=100),
        ]
        result = evaluate(make_cart(('A', 1, '10'), ('B', 1, '10')), promotions, TODAY)

        assert result.total_bonus_points == 15
        assert [a.bonus_points for a in result.applicable_promotions] == [10, 5]

    def test_zero_discount_promotion_still_awards_points(self):
        promotion = simple(1, {'A'}, value='0', bonus_points=20)
        result = evaluate(make_cart(('A', 1, '10')), [promotion], TODAY)

        assert result.total_discount == Decimal('0')
        assert result.total_bonus_points == 20

    def test_usage_proposals_follow_application_order(self):
        promotions = [simple(1, {'A'}, uses_so_far=3, max_uses=10), combo(2, {'B': 1}, '1', uses_so_far=0)]
        result = evaluate(make_cart(('A', 1, '10'), ('B', 1, '10')), promotions, TODAY)

        proposals = [(p.promotion_id, p.expected_uses, p.proposed_uses) for p in result.usage_proposals]
        assert proposals == [(2, 0, 1), (1, 3, 4)]

    def test_empty_cart(self):
        result = evaluate(Cart(), [simple(1, {'A'}), combo(2, {'A': 1}, '1')], TODAY)

        assert result.applicable_promotions == ()
        assert result.subtotal == Decimal('0')
        assert result.final_total == Decimal('0.00')

    def test_inputs_are_not_mutated(self):
        promotion = simple(1, {'A'}, uses_so_far=2, max_uses=3)
        cart = make_cart(('A', 2, '10'))
        evaluate(cart, [promotion], TODAY)

        assert promotion.uses_so_far == 2
        assert cart.items[0].quantity == 2


class TestInvalidInput:
    """Cart errors are fatal, promotion errors only skip the promotion."""

    @pytest.mark.parametrize('lines', [
        [('A', 0, '10')],
        [('A', -1, '10')],
        [('A', 1, '-0.01')],
        [('A', 1, '10'), ('A', 2, '10')],
    ])
    def test_invalid_cart_is_rejected(self, lines):
        with pytest.raises(InvalidCartError):
            evaluate(make_cart(*lines), [simple(1, {'A'})], TODAY)

    def test_fractional_quantity_is_rejected(self):
        cart = Cart(items=(LineItem('A', Decimal('1.5'), Decimal('10')),))
        with pytest.raises(InvalidCartError):
            evaluate(cart, [], TODAY)

    @pytest.mark.parametrize('lines', [
        [('A', 1, '1e30')],
        [('A', 10 ** 12, '10')],
    ])
    def test_amounts_beyond_currency_range_are_rejected(self, lines):
        with pytest.raises(InvalidCartError, match='máximo'):
            evaluate(make_cart(*lines), [simple(1, {'A'})], TODAY)

    def test_non_date_bound_is_skipped(self):
        bad = simple(1, {'A'}, valid_to='2024-06-30')
        result = evaluate(make_cart(('A', 1, '10'), ('B', 1, '10')), [bad, simple(2, {'B'})], TODAY)

        assert [a.promotion_id for a in result.applicable_promotions] == [2]
        assert [s.promotion_id for s in result.skipped_promotions] == [1]

    def test_non_numeric_price_is_rejected(self):
        with pytest.raises(InvalidCartError):
            LineItem('A', 1, 'gratis')

    def test_invalid_promotion_is_skipped_and_reported(self):
        bad_combo = Promotion(
            id=1,
            kind=PromotionType.COMBO,
            discount_type=DiscountType.PERCENTAGE,
            discount_value=Decimal('10'),
            required_items={'A': 1},
            combo_price=Decimal('5')
        )
        result = evaluate(make_cart(('A', 1, '10')), [bad_combo, simple(2, {'A'})], TODAY)

        assert [a.promotion_id for a in result.applicable_promotions] == [2]
        assert len(result.skipped_promotions) == 1
        assert result.skipped_promotions[0].promotion_id == 1
        assert 'COMBO' in result.skipped_promotions[0].reason

    def test_skipped_promotion_is_logged(self, caplog):
        bad = simple(7, {'A'}, value='-5')
        with caplog.at_level('WARNING', logger='pos_promos.services.promotion_engine'):
            result = evaluate(make_cart(('A', 1, '10')), [bad], TODAY)

        assert result.skipped_promotions[0].promotion_id == 7
        assert 'Promoción 7 omitida' in caplog.text

    @pytest.mark.parametrize('promotion', [
        simple(1, {'A'}, value='101'),
        simple(1, {'A'}, value='-1', discount_type=DiscountType.FIXED_AMOUNT),
        simple(1, {'A'}, discount_type=DiscountType.FIXED_PRICE),
        simple(1, set()),
        simple(1, {'A'}, min_quantity_per_product=0),
        pack(1, {}),
        pack(1, {'A': 0}),
        combo(1, {'A': 1}, '-1'),
        Promotion(id=1, kind='BOGO', discount_type=DiscountType.PERCENTAGE, applies_to={'A'}),
        Promotion(id=1, kind=PromotionType.SIMPLE, discount_type='OTRO', applies_to={'A'}),
        simple(1, {'A'}, valid_from=TODAY, valid_to=TODAY - timedelta(days=1)),
        simple(1, {'A'}, bonus_points=-1),
    ])
    def test_validate_promotion_rejects(self, promotion):
        with pytest.raises(InvalidPromotionError):
            validate_promotion(promotion)

    def test_wire_values_are_accepted_for_enums(self):
        promotion = Promotion(
            id=1, kind='PACK', discount_type='MONTO_FIJO', discount_value='3', required_items={'A': 1}
        )
        validate_promotion(promotion)

        assert promotion.kind is PromotionType.PACK
        assert promotion.discount_type is DiscountType.FIXED_AMOUNT
        assert promotion.discount_value == Decimal('3')


def _random_scenario(seed):
    rng = random.Random(seed)
    products = ['A', 'B', 'C', 'D', 'E']
    lines = [
        (pid, rng.randint(1, 6), str(Decimal(rng.randint(0, 5000)) / 100))
        for pid in rng.sample(products, rng.randint(1, len(products)))
    ]

    promotions = []
    for promotion_id in range(1, rng.randint(1, 8) + 1):
        kind = rng.choice(list(PromotionType))
        if kind is PromotionType.SIMPLE:
            discount_type = rng.choice([DiscountType.PERCENTAGE, DiscountType.FIXED_AMOUNT])
            promotions.append(simple(
                promotion_id,
                set(rng.sample(products, rng.randint(1, 3))),
                value=str(rng.randint(0, 100)),
                discount_type=discount_type,
                min_quantity_per_product=rng.randint(1, 3)
            ))
        else:
            required = {pid: rng.randint(1, 3) for pid in rng.sample(products, rng.randint(1, 2))}
            if kind is PromotionType.PACK:
                promotions.append(pack(
                    promotion_id, required,
                    value=str(rng.randint(0, 100)),
                    discount_type=rng.choice(list(DiscountType))
                ))
            else:
                promotions.append(combo(promotion_id, required, str(rng.randint(0, 30))))
    return make_cart(*lines), promotions


class TestProperties:
    """Invariants that must hold for any cart and promotion set."""

    @pytest.mark.parametrize('seed', range(40))
    def test_no_double_discount_and_non_negative_totals(self, seed):
        cart, promotions = _random_scenario(seed)
        result = evaluate(cart, promotions, TODAY)

        claimed = {}
        for applied in result.applicable_promotions:
            for product_id, units in applied.claimed.items():
                claimed[product_id] = claimed.get(product_id, 0) + units
        quantities = {item.product_id: item.quantity for item in cart.items}
        for product_id, units in claimed.items():
            assert units <= quantities[product_id]

        assert Decimal('0') <= result.total_discount <= cart.subtotal
        assert result.final_total >= 0
        assert result.skipped_promotions == ()

    @pytest.mark.parametrize('seed', range(10))
    def test_evaluation_is_deterministic(self, seed):
        cart, promotions = _random_scenario(seed)

        assert evaluate(cart, promotions, TODAY) == evaluate(cart, promotions, TODAY)
