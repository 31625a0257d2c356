"""Models package - exports all SQLAlchemy models."""
from pos_promos.models.promotion import Promotion, PromotionProduct
from pos_promos.services.promotion_engine import PromotionType, DiscountType

__all__ = [
    'Promotion', 'PromotionProduct',
    'PromotionType', 'DiscountType',
]
