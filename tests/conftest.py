import pytest
from datetime import date
from decimal import Decimal

from pos_promos import create_app
from pos_promos import database
from pos_promos.models import Promotion, PromotionProduct, PromotionType, DiscountType


@pytest.fixture(scope='session')
def app():
    """Create application instance for testing (in-memory SQLite)."""
    app = create_app('config.TestingConfig')
    return app


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def session(app):
    """Database session; tables are recreated after each test."""
    session = database.get_session()
    yield session
    session.rollback()
    database.get_session().remove()
    database.drop_tables()
    database.create_tables()


@pytest.fixture(scope='function')
def make_promotion(session):
    """
    Factory storing a promotion and returning its id.

    ``products`` is a list of PromotionProduct field dicts.
    """
    def _make(products=(), **fields):
        values = {
            'name': 'Promo test',
            'promotion_type': PromotionType.SIMPLE,
            'discount_type': DiscountType.PERCENTAGE,
            'discount_value': Decimal('10'),
            'active': True,
            'uses_count': 0,
            'bonus_points': 0,
        }
        values.update(fields)
        promotion = Promotion(**values)
        promotion.products = [PromotionProduct(**p) for p in products]
        session.add(promotion)
        session.commit()
        return promotion.id

    return _make


@pytest.fixture(scope='function')
def today():
    return date.today()
