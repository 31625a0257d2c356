"""
Unit tests for the promotion models and the active promotions suppliers.
"""

from datetime import timedelta
from decimal import Decimal

from pos_promos.models import Promotion, PromotionType, DiscountType
from pos_promos.services.promotion_engine import Promotion as PromotionRule
from pos_promos.services.promotion_repository import InMemoryPromotionSource, SqlAlchemyPromotionSource


class TestPromotionModel:
    """Tests for Promotion.to_rule()."""

    def test_simple_promotion_to_rule(self, session, make_promotion):
        promotion_id = make_promotion(
            name='10% gaseosas',
            bonus_points=5,
            max_uses=100,
            uses_count=3,
            products=[
                {'product_id': 1, 'min_qty': 2},
                {'product_id': 2},
            ]
        )
        rule = session.get(Promotion, promotion_id).to_rule()

        assert rule.id == promotion_id
        assert rule.kind is PromotionType.SIMPLE
        assert rule.discount_type is DiscountType.PERCENTAGE
        assert rule.discount_value == Decimal('10')
        assert rule.applies_to == frozenset({1, 2})
        assert rule.min_quantity_for(1) == 2
        assert rule.min_quantity_for(2) == 1
        assert rule.max_uses == 100
        assert rule.uses_so_far == 3
        assert rule.bonus_points == 5
        assert rule.name == '10% gaseosas'

    def test_combo_to_rule_ignores_optional_products(self, session, make_promotion):
        promotion_id = make_promotion(
            promotion_type=PromotionType.COMBO,
            discount_type=DiscountType.FIXED_PRICE,
            discount_value=Decimal('0'),
            combo_price=Decimal('10'),
            products=[
                {'product_id': 1, 'exact_qty': 2, 'required': True},
                {'product_id': 2, 'required': True},
                {'product_id': 3, 'exact_qty': 1, 'required': False},
            ]
        )
        rule = session.get(Promotion, promotion_id).to_rule()

        assert rule.kind is PromotionType.COMBO
        assert rule.required_items == {1: 2, 2: 1}
        assert rule.combo_price == Decimal('10')
        assert rule.applies_to == frozenset()


class TestPromotionSources:
    """Tests for the active promotion suppliers."""

    def test_sqlalchemy_source_filters_eligible_promotions(self, session, make_promotion, today):
        active_id = make_promotion(name='Vigente', products=[{'product_id': 1}])
        make_promotion(name='Inactiva', active=False, products=[{'product_id': 1}])
        make_promotion(name='Vencida', valid_to=today - timedelta(days=1), products=[{'product_id': 1}])
        make_promotion(name='Futura', valid_from=today + timedelta(days=1), products=[{'product_id': 1}])
        make_promotion(name='Agotada', max_uses=2, uses_count=2, products=[{'product_id': 1}])
        bounded_id = make_promotion(
            name='Con tope',
            valid_from=today,
            valid_to=today,
            max_uses=2,
            uses_count=1,
            products=[{'product_id': 1}]
        )

        rules = SqlAlchemyPromotionSource(session).active_promotions(today)

        assert [r.id for r in rules] == [active_id, bounded_id]
        assert all(isinstance(r, PromotionRule) for r in rules)

    def test_in_memory_source_returns_snapshot(self, today):
        rules = [
            PromotionRule(id=1, kind='SIMPLE', discount_type='PORCENTAJE', applies_to={'A'}),
            PromotionRule(id=2, kind='SIMPLE', discount_type='PORCENTAJE', applies_to={'B'}, active=False),
        ]
        source = InMemoryPromotionSource(rules)

        assert [r.id for r in source.active_promotions(today)] == [1, 2]
