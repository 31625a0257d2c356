"""Promotion model (unified SIMPLE / PACK / COMBO promotions)."""
from sqlalchemy import Column, BigInteger, Integer, String, Text, Boolean, Numeric, Date, DateTime, Enum, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from pos_promos.database import Base
from pos_promos.services.promotion_engine import Promotion as PromotionRule, PromotionType, DiscountType

# SQLite only autoincrements INTEGER primary keys
IdType = BigInteger().with_variant(Integer, 'sqlite')


class Promotion(Base):
    """
    Promotion (promoción unificada).

    The applicable products live in PromotionProduct. Product ids are
    opaque: the catalog is owned by another service.
    """

    __tablename__ = 'promotion'

    id = Column(IdType, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    promotion_type = Column(Enum(PromotionType, name='promotion_type'), nullable=False)
    discount_type = Column(Enum(DiscountType, name='discount_type'), nullable=False)
    discount_value = Column(Numeric(10, 2), nullable=False, default=0, server_default='0')
    combo_price = Column(Numeric(10, 2), nullable=True)
    valid_from = Column(Date, nullable=True)
    valid_to = Column(Date, nullable=True)
    max_uses = Column(Integer, nullable=True)  # NULL = unlimited
    uses_count = Column(Integer, nullable=False, default=0, server_default='0')
    active = Column(Boolean, nullable=False, default=True)
    bonus_points = Column(Integer, nullable=False, default=0, server_default='0')
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationships
    products = relationship(
        'PromotionProduct',
        back_populates='promotion',
        cascade='all, delete-orphan',
        order_by='PromotionProduct.id'
    )

    def __repr__(self):
        return f"<Promotion(id={self.id}, name='{self.name}', type={self.promotion_type})>"

    def to_rule(self) -> PromotionRule:
        """Build the immutable rule consumed by the evaluation engine."""
        applies_to = set()
        min_quantities = {}
        required_items = {}
        for line in self.products:
            if self.promotion_type == PromotionType.SIMPLE:
                applies_to.add(line.product_id)
                if line.min_qty:
                    min_quantities[line.product_id] = line.min_qty
            elif line.required:
                required_items[line.product_id] = line.exact_qty or 1

        return PromotionRule(
            id=self.id,
            kind=self.promotion_type,
            discount_type=self.discount_type,
            discount_value=self.discount_value if self.discount_value is not None else 0,
            applies_to=frozenset(applies_to),
            min_quantities=min_quantities,
            required_items=required_items,
            combo_price=self.combo_price,
            valid_from=self.valid_from,
            valid_to=self.valid_to,
            max_uses=self.max_uses,
            uses_so_far=self.uses_count or 0,
            active=bool(self.active),
            bonus_points=self.bonus_points or 0,
            name=self.name or ''
        )


class PromotionProduct(Base):
    """
    Product taking part in a promotion.

    exact_qty: units per instance for PACK/COMBO.
    min_qty: minimum units in the cart for SIMPLE.
    required: PACK/COMBO only consider required products.
    """

    __tablename__ = 'promotion_product'

    id = Column(IdType, primary_key=True, autoincrement=True)
    promotion_id = Column(IdType, ForeignKey('promotion.id', ondelete='CASCADE'), nullable=False, index=True)
    product_id = Column(BigInteger, nullable=False, index=True)
    exact_qty = Column(Integer, nullable=True)
    min_qty = Column(Integer, nullable=True)
    required = Column(Boolean, nullable=False, default=True, server_default='true')

    # Relationships
    promotion = relationship('Promotion', back_populates='products')

    def __repr__(self):
        return f"<PromotionProduct(promotion_id={self.promotion_id}, product_id={self.product_id})>"
