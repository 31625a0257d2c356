"""
Promotion service - back-office CRUD, cart evaluation and usage commit.

The engine is pure; this module wires it to the database and owns the
only write the evaluation flow needs: advancing usage counters.
"""
import logging
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import or_
from sqlalchemy.orm import Session

from pos_promos.exceptions import BusinessLogicError, NotFoundError, UsageConflictError
from pos_promos.models import Promotion, PromotionProduct
from pos_promos.services.promotion_engine import (
    Cart, EvaluationResult, UsageProposal, evaluate, validate_promotion
)
from pos_promos.services.promotion_repository import (
    ActivePromotionsSource, SqlAlchemyPromotionSource, query_active_promotions
)

logger = logging.getLogger(__name__)

# Columns that can be set from create/update payloads
EDITABLE_FIELDS = (
    'name', 'description', 'promotion_type', 'discount_type', 'discount_value',
    'combo_price', 'valid_from', 'valid_to', 'max_uses', 'active', 'bonus_points'
)


# =====================================================
# QUERIES
# =====================================================

def list_promotions(session: Session) -> List[Promotion]:
    return session.query(Promotion).order_by(Promotion.id).all()


def list_active_promotions(session: Session, as_of: date) -> List[Promotion]:
    return query_active_promotions(session, as_of).all()


def get_promotion(session: Session, promotion_id: int) -> Promotion:
    promotion = session.query(Promotion).filter(Promotion.id == promotion_id).first()
    if not promotion:
        raise NotFoundError(f'Promoción #{promotion_id} no encontrada')
    return promotion


# =====================================================
# BACK-OFFICE CRUD
# =====================================================

def create_promotion(session: Session, data: Dict[str, Any]) -> Promotion:
    """
    Create a promotion with its products.

    ``data`` holds model field names plus ``products``: a list of dicts
    with product_id, exact_qty, min_qty and required. The definition is
    checked with the same rules the engine applies before it is stored.
    """
    if not data.get('name'):
        raise BusinessLogicError('El nombre de la promoción es obligatorio')

    try:
        promotion = Promotion(**{k: data[k] for k in EDITABLE_FIELDS if k in data})
        promotion.uses_count = 0
        if promotion.active is None:
            promotion.active = True
        _replace_products(promotion, data.get('products') or [])
        validate_promotion(promotion.to_rule())

        session.add(promotion)
        session.commit()
        logger.info(f"Promoción creada: #{promotion.id} '{promotion.name}' ({promotion.promotion_type.value})")
        return promotion

    except BusinessLogicError:
        session.rollback()
        raise
    except Exception as e:
        session.rollback()
        raise Exception(f'Error al crear promoción: {str(e)}')


def update_promotion(session: Session, promotion_id: int, data: Dict[str, Any]) -> Promotion:
    """Partial update; ``products`` (when present) replaces the product list."""
    promotion = get_promotion(session, promotion_id)

    try:
        for key in EDITABLE_FIELDS:
            if key in data:
                setattr(promotion, key, data[key])
        if not promotion.name:
            raise BusinessLogicError('El nombre de la promoción es obligatorio')
        if 'products' in data:
            _replace_products(promotion, data['products'] or [])
        validate_promotion(promotion.to_rule())

        session.commit()
        logger.info(f"Promoción actualizada: #{promotion.id}")
        return promotion

    except BusinessLogicError:
        session.rollback()
        raise
    except Exception as e:
        session.rollback()
        raise Exception(f'Error al actualizar promoción: {str(e)}')


def delete_promotion(session: Session, promotion_id: int) -> None:
    promotion = get_promotion(session, promotion_id)
    try:
        session.delete(promotion)
        session.commit()
        logger.info(f"Promoción eliminada: #{promotion_id}")
    except Exception as e:
        session.rollback()
        raise Exception(f'Error al eliminar promoción: {str(e)}')


def set_promotion_active(session: Session, promotion_id: int, active: bool) -> Promotion:
    """Activate or deactivate a promotion."""
    promotion = get_promotion(session, promotion_id)
    try:
        promotion.active = active
        session.commit()
        logger.info(f"Promoción #{promotion_id} {'activada' if active else 'desactivada'}")
        return promotion
    except Exception as e:
        session.rollback()
        raise Exception(f'Error al cambiar el estado de la promoción: {str(e)}')


def _replace_products(promotion: Promotion, products: Sequence[Dict[str, Any]]) -> None:
    seen = set()
    lines = []
    for item in products:
        product_id = item['product_id']
        if product_id in seen:
            raise BusinessLogicError(f'El producto {product_id} está repetido en la promoción')
        seen.add(product_id)
        lines.append(PromotionProduct(
            product_id=product_id,
            exact_qty=item.get('exact_qty'),
            min_qty=item.get('min_qty'),
            required=item.get('required', True)
        ))
    promotion.products = lines


# =====================================================
# EVALUATION
# =====================================================

def evaluate_cart(
    session: Session,
    cart: Cart,
    as_of: date,
    source: Optional[ActivePromotionsSource] = None
) -> EvaluationResult:
    """Evaluate ``cart`` against the promotions supplied by ``source`` (the database by default)."""
    source = source or SqlAlchemyPromotionSource(session)
    result = evaluate(cart, source.active_promotions(as_of), as_of)

    if result.applicable_promotions:
        logger.info(
            f"Carrito evaluado: {len(result.applicable_promotions)} promociones, "
            f"descuento {result.total_discount}, total {result.final_total}"
        )
    return result


def record_promotion_usage(session: Session, proposals: Sequence[UsageProposal]) -> None:
    """
    Commit the usage counters proposed by an evaluation.

    Each counter is advanced with a conditional UPDATE that only matches
    when the stored count still equals the expected one and the new count
    stays within max_uses. All proposals commit together or not at all.

    Raises:
        NotFoundError: if a promotion no longer exists.
        UsageConflictError: if another sale advanced the counter first.
    """
    try:
        for proposal in proposals:
            if proposal.proposed_uses != proposal.expected_uses + 1:
                raise BusinessLogicError(
                    f'Incremento de usos inválido para la promoción #{proposal.promotion_id}'
                )

            updated = session.query(Promotion).filter(
                Promotion.id == proposal.promotion_id,
                Promotion.uses_count == proposal.expected_uses,
                or_(Promotion.max_uses.is_(None), Promotion.max_uses >= proposal.proposed_uses)
            ).update({Promotion.uses_count: proposal.proposed_uses}, synchronize_session=False)

            if updated == 0:
                exists = session.query(Promotion.id).filter(Promotion.id == proposal.promotion_id).first()
                if not exists:
                    raise NotFoundError(f'Promoción #{proposal.promotion_id} no encontrada')
                raise UsageConflictError(proposal.promotion_id, proposal.expected_uses)

        session.commit()
        session.expire_all()
        logger.info(f"Usos registrados: {[p.promotion_id for p in proposals]}")

    except (BusinessLogicError, NotFoundError):
        session.rollback()
        raise
    except Exception as e:
        session.rollback()
        raise Exception(f'Error al registrar usos de promociones: {str(e)}')
