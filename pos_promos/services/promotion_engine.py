"""
Promotion evaluation engine.

Pure functions: given a cart snapshot, the candidate promotions and the
evaluation date, decide which promotions apply and compute the discount
of each one, the bonus points and the payable total.

Nothing here reads a clock, touches the database or mutates its inputs.
Usage counters are only proposed; committing them is the caller's job
(see promotion_service.record_promotion_usage).
"""
import enum
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, FrozenSet, Hashable, List, Mapping, Optional, Sequence, Tuple

from pos_promos.exceptions import InvalidCartError, InvalidPromotionError

logger = logging.getLogger(__name__)

CENT = Decimal('0.01')
HUNDRED = Decimal('100')
ZERO = Decimal('0')
# Largest unit price or line total a cart may carry
MAX_AMOUNT = Decimal('999999999999.99')


class PromotionType(str, enum.Enum):
    """Promotion variant (discriminator of the tagged record)."""
    SIMPLE = 'SIMPLE'
    PACK = 'PACK'
    COMBO = 'COMBO'


class DiscountType(str, enum.Enum):
    """How discount_value is interpreted."""
    PERCENTAGE = 'PORCENTAJE'
    FIXED_AMOUNT = 'MONTO_FIJO'
    FIXED_PRICE = 'PRECIO_FIJO'


def _coerce_enum(enum_cls, value):
    """Accept members, wire values ('PORCENTAJE') or member names ('PERCENTAGE')."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        pass
    try:
        return enum_cls[value]
    except (KeyError, TypeError):
        return None


def _coerce_decimal(value) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


def _is_count(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _as_date(value):
    if isinstance(value, datetime):
        return value.date()
    return value


# =====================================================
# VALUE TYPES
# =====================================================

@dataclass(frozen=True)
class LineItem:
    """One product line of the cart. Prices are coerced to Decimal."""
    product_id: Hashable
    quantity: int
    unit_price: Decimal

    def __post_init__(self):
        price = _coerce_decimal(self.unit_price)
        if price is None:
            raise InvalidCartError(
                f'Precio unitario inválido para el producto {self.product_id}',
                product_id=self.product_id
            )
        object.__setattr__(self, 'unit_price', price)

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class Cart:
    """Snapshot of a ticket. The subtotal is always derived from the items."""
    items: Tuple[LineItem, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'items', tuple(self.items))

    @property
    def subtotal(self) -> Decimal:
        return sum((item.line_total for item in self.items), ZERO)


@dataclass(frozen=True)
class Promotion:
    """
    A promotion rule, tagged by ``kind``.

    SIMPLE uses ``applies_to`` and the minimum quantities, PACK and COMBO
    use ``required_items`` (product -> exact units per instance). COMBO
    prices one instance at ``combo_price``; PACK with FIXED_PRICE prices
    one instance at ``combo_price`` when set, otherwise ``discount_value``.

    A missing ``valid_from``/``valid_to``/``max_uses`` is unbounded.
    """
    id: Hashable
    kind: PromotionType
    discount_type: DiscountType
    discount_value: Decimal = ZERO
    applies_to: FrozenSet[Hashable] = frozenset()
    min_quantity_per_product: int = 1
    min_quantities: Mapping[Hashable, int] = field(default_factory=dict)
    required_items: Mapping[Hashable, int] = field(default_factory=dict)
    combo_price: Optional[Decimal] = None
    valid_from: Optional[date] = None
    valid_to: Optional[date] = None
    max_uses: Optional[int] = None
    uses_so_far: int = 0
    active: bool = True
    bonus_points: int = 0
    name: str = ''

    def __post_init__(self):
        # Invalid values are kept as None so validate_promotion can report them
        object.__setattr__(self, 'kind', _coerce_enum(PromotionType, self.kind))
        object.__setattr__(self, 'discount_type', _coerce_enum(DiscountType, self.discount_type))
        object.__setattr__(self, 'discount_value', _coerce_decimal(self.discount_value))
        if self.combo_price is not None:
            object.__setattr__(self, 'combo_price', _coerce_decimal(self.combo_price))
        object.__setattr__(self, 'applies_to', frozenset(self.applies_to or ()))
        object.__setattr__(self, 'min_quantities', dict(self.min_quantities or {}))
        object.__setattr__(self, 'required_items', dict(self.required_items or {}))
        object.__setattr__(self, 'valid_from', _as_date(self.valid_from))
        object.__setattr__(self, 'valid_to', _as_date(self.valid_to))
        if self.bonus_points is None:
            object.__setattr__(self, 'bonus_points', 0)

    def min_quantity_for(self, product_id) -> int:
        return self.min_quantities.get(product_id, self.min_quantity_per_product)

    @property
    def pack_price(self) -> Optional[Decimal]:
        """Price of one instance for COMBO and fixed-price PACK."""
        if self.kind is PromotionType.COMBO:
            return self.combo_price
        if self.combo_price is not None:
            return self.combo_price
        return self.discount_value

    def is_eligible(self, as_of: date) -> bool:
        """Active, inside the inclusive date window and under the usage cap."""
        as_of = _as_date(as_of)
        if not self.active:
            return False
        if self.valid_from is not None and as_of < self.valid_from:
            return False
        if self.valid_to is not None and as_of > self.valid_to:
            return False
        if self.max_uses is not None and self.uses_so_far >= self.max_uses:
            return False
        return True


@dataclass(frozen=True)
class AppliedPromotion:
    """One promotion that took part in the evaluation."""
    promotion_id: Hashable
    name: str
    kind: PromotionType
    discount_type: DiscountType
    discount_amount: Decimal
    bonus_points: int
    instances: int
    claimed: Mapping[Hashable, int]


@dataclass(frozen=True)
class SkippedPromotion:
    """A promotion left out because its definition is invalid."""
    promotion_id: Hashable
    reason: str


@dataclass(frozen=True)
class UsageProposal:
    """Counter change the caller should commit with a compare-and-swap."""
    promotion_id: Hashable
    expected_uses: int
    proposed_uses: int


@dataclass(frozen=True)
class EvaluationResult:
    subtotal: Decimal
    applicable_promotions: Tuple[AppliedPromotion, ...]
    total_discount: Decimal
    final_total: Decimal
    total_bonus_points: int
    skipped_promotions: Tuple[SkippedPromotion, ...] = ()
    usage_proposals: Tuple[UsageProposal, ...] = ()


# =====================================================
# VALIDATION
# =====================================================

def validate_cart(cart: Cart) -> None:
    """Raise InvalidCartError on bad quantities, prices out of range or repeated products."""
    seen = set()
    for item in cart.items:
        if not _is_count(item.quantity) or item.quantity < 1:
            raise InvalidCartError(
                f'La cantidad del producto {item.product_id} debe ser un entero mayor a 0',
                product_id=item.product_id
            )
        if item.unit_price < 0:
            raise InvalidCartError(
                f'El precio del producto {item.product_id} no puede ser negativo',
                product_id=item.product_id
            )
        if item.unit_price > MAX_AMOUNT or item.line_total > MAX_AMOUNT:
            raise InvalidCartError(
                f'El importe del producto {item.product_id} supera el máximo permitido',
                product_id=item.product_id
            )
        if item.product_id in seen:
            raise InvalidCartError(
                f'El producto {item.product_id} aparece más de una vez en el carrito',
                product_id=item.product_id
            )
        seen.add(item.product_id)


def _check_quantities(promotion: Promotion, quantities: Mapping, label: str) -> None:
    for product_id, qty in quantities.items():
        if not _is_count(qty) or qty < 1:
            raise InvalidPromotionError(
                f'{label} del producto {product_id} debe ser un entero mayor a 0',
                promotion_id=promotion.id
            )


def validate_promotion(promotion: Promotion) -> None:
    """Raise InvalidPromotionError if the definition breaks its variant's rules."""
    pid = promotion.id
    if promotion.kind is None:
        raise InvalidPromotionError('Tipo de promoción desconocido', promotion_id=pid)
    if promotion.discount_type is None:
        raise InvalidPromotionError('Tipo de descuento desconocido', promotion_id=pid)

    value = promotion.discount_value
    if value is None:
        raise InvalidPromotionError('El valor del descuento es inválido', promotion_id=pid)
    if value < 0:
        raise InvalidPromotionError('El descuento no puede ser negativo', promotion_id=pid)
    if promotion.discount_type is DiscountType.PERCENTAGE and value > HUNDRED:
        raise InvalidPromotionError('El porcentaje debe estar entre 0 y 100', promotion_id=pid)

    if not _is_count(promotion.bonus_points) or promotion.bonus_points < 0:
        raise InvalidPromotionError('Los puntos extra deben ser un entero no negativo', promotion_id=pid)
    if not _is_count(promotion.uses_so_far) or promotion.uses_so_far < 0:
        raise InvalidPromotionError('Los usos actuales deben ser un entero no negativo', promotion_id=pid)
    if promotion.max_uses is not None and (not _is_count(promotion.max_uses) or promotion.max_uses < 0):
        raise InvalidPromotionError('El máximo de usos debe ser un entero no negativo', promotion_id=pid)
    for bound in (promotion.valid_from, promotion.valid_to):
        if bound is not None and not isinstance(bound, date):
            raise InvalidPromotionError('Las fechas de vigencia son inválidas', promotion_id=pid)
    if promotion.valid_from and promotion.valid_to and promotion.valid_from > promotion.valid_to:
        raise InvalidPromotionError('La fecha de inicio es posterior a la fecha de fin', promotion_id=pid)

    if promotion.kind is PromotionType.SIMPLE:
        if promotion.discount_type is DiscountType.FIXED_PRICE:
            raise InvalidPromotionError(
                'Una promoción SIMPLE solo admite descuento porcentual o monto fijo',
                promotion_id=pid
            )
        if not promotion.applies_to:
            raise InvalidPromotionError('La promoción no tiene productos aplicables', promotion_id=pid)
        min_qty = promotion.min_quantity_per_product
        if not _is_count(min_qty) or min_qty < 1:
            raise InvalidPromotionError('La cantidad mínima debe ser un entero mayor a 0', promotion_id=pid)
        _check_quantities(promotion, promotion.min_quantities, 'La cantidad mínima')
        return

    if not promotion.required_items:
        raise InvalidPromotionError('La promoción no tiene productos requeridos', promotion_id=pid)
    _check_quantities(promotion, promotion.required_items, 'La cantidad exacta')

    if promotion.kind is PromotionType.COMBO:
        if promotion.discount_type is not DiscountType.FIXED_PRICE:
            raise InvalidPromotionError('Un COMBO requiere descuento de precio fijo', promotion_id=pid)
        if promotion.combo_price is None or promotion.combo_price < 0:
            raise InvalidPromotionError('El precio del combo es inválido', promotion_id=pid)
    elif promotion.discount_type is DiscountType.FIXED_PRICE:
        if promotion.pack_price is None or promotion.pack_price < 0:
            raise InvalidPromotionError('El precio del pack es inválido', promotion_id=pid)


# =====================================================
# PER-VARIANT HANDLERS
# =====================================================
# Each handler receives the unclaimed units and unit prices and returns
# (discount, instances, claims) or None when the promotion does not apply.

def _instance_count(required: Mapping, unclaimed: Mapping) -> int:
    return min(unclaimed.get(product_id, 0) // qty for product_id, qty in required.items())


def _instance_price(required: Mapping, prices: Mapping) -> Decimal:
    return sum((prices[product_id] * qty for product_id, qty in required.items()), ZERO)


def _claims_for(required: Mapping, instances: int) -> Dict[Hashable, int]:
    return {product_id: qty * instances for product_id, qty in required.items()}


def _apply_combo(promotion: Promotion, unclaimed: Mapping, prices: Mapping):
    instances = _instance_count(promotion.required_items, unclaimed)
    if instances == 0:
        return None
    regular = _instance_price(promotion.required_items, prices) * instances
    discount = max(regular - promotion.combo_price * instances, ZERO)
    return discount, instances, _claims_for(promotion.required_items, instances)


def _apply_pack(promotion: Promotion, unclaimed: Mapping, prices: Mapping):
    instances = _instance_count(promotion.required_items, unclaimed)
    if instances == 0:
        return None
    instance_price = _instance_price(promotion.required_items, prices)
    if promotion.discount_type is DiscountType.PERCENTAGE:
        per_instance = instance_price * promotion.discount_value / HUNDRED
    elif promotion.discount_type is DiscountType.FIXED_AMOUNT:
        per_instance = min(promotion.discount_value, instance_price)
    else:
        per_instance = max(instance_price - promotion.pack_price, ZERO)
    return per_instance * instances, instances, _claims_for(promotion.required_items, instances)


def _apply_simple(promotion: Promotion, unclaimed: Mapping, prices: Mapping):
    claims = {}
    for product_id in prices:
        if product_id not in promotion.applies_to:
            continue
        available = unclaimed[product_id]
        if available > 0 and available >= promotion.min_quantity_for(product_id):
            claims[product_id] = available
    if not claims:
        return None

    qualifying = sum((prices[product_id] * qty for product_id, qty in claims.items()), ZERO)
    if promotion.discount_type is DiscountType.PERCENTAGE:
        discount = qualifying * promotion.discount_value / HUNDRED
    else:
        discount = min(promotion.discount_value, qualifying)
    return discount, 1, claims


_HANDLERS = {
    PromotionType.COMBO: _apply_combo,
    PromotionType.PACK: _apply_pack,
    PromotionType.SIMPLE: _apply_simple,
}


# =====================================================
# PUBLIC API
# =====================================================

def evaluate(cart: Cart, promotions: Sequence[Promotion], as_of: date) -> EvaluationResult:
    """
    Evaluate ``promotions`` against ``cart`` on date ``as_of``.

    COMBO and PACK promotions run first, then SIMPLE ones; inside each
    group the input order decides who claims contested units. A unit is
    discounted by at most one promotion. The total discount never exceeds
    the subtotal and only the final total is rounded (half-up, 2 places).

    Raises:
        InvalidCartError: if the cart breaks its invariants.
    """
    validate_cart(cart)
    as_of = _as_date(as_of)

    skipped: List[SkippedPromotion] = []
    bundles: List[Promotion] = []
    simples: List[Promotion] = []
    for promotion in promotions:
        try:
            validate_promotion(promotion)
        except InvalidPromotionError as e:
            logger.warning(f"Promoción {promotion.id} omitida: {e.message}")
            skipped.append(SkippedPromotion(promotion_id=promotion.id, reason=e.message))
            continue
        if not promotion.is_eligible(as_of):
            continue
        if promotion.kind is PromotionType.SIMPLE:
            simples.append(promotion)
        else:
            bundles.append(promotion)

    unclaimed = {item.product_id: item.quantity for item in cart.items}
    prices = {item.product_id: item.unit_price for item in cart.items}

    applied: List[AppliedPromotion] = []
    proposals: List[UsageProposal] = []
    for promotion in bundles + simples:
        outcome = _HANDLERS[promotion.kind](promotion, unclaimed, prices)
        if outcome is None:
            continue
        discount, instances, claims = outcome
        for product_id, units in claims.items():
            unclaimed[product_id] -= units
        applied.append(AppliedPromotion(
            promotion_id=promotion.id,
            name=promotion.name,
            kind=promotion.kind,
            discount_type=promotion.discount_type,
            discount_amount=discount,
            bonus_points=promotion.bonus_points,
            instances=instances,
            claimed=claims
        ))
        proposals.append(UsageProposal(
            promotion_id=promotion.id,
            expected_uses=promotion.uses_so_far,
            proposed_uses=promotion.uses_so_far + 1
        ))

    subtotal = cart.subtotal
    total_discount = min(sum((a.discount_amount for a in applied), ZERO), subtotal)
    final_total = (subtotal - total_discount).quantize(CENT, rounding=ROUND_HALF_UP)

    logger.debug(
        f"Evaluación: subtotal={subtotal} descuento={total_discount} "
        f"aplicadas={[a.promotion_id for a in applied]} omitidas={len(skipped)}"
    )

    return EvaluationResult(
        subtotal=subtotal,
        applicable_promotions=tuple(applied),
        total_discount=total_discount,
        final_total=final_total,
        total_bonus_points=sum(a.bonus_points for a in applied),
        skipped_promotions=tuple(skipped),
        usage_proposals=tuple(proposals)
    )
