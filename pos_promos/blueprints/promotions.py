"""Promotions blueprint - JSON API for the POS and the back office."""
from flask import Blueprint, request, jsonify, current_app, Response
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Tuple, Union

from pos_promos.database import get_session
from pos_promos.exceptions import BusinessLogicError, InvalidCartError
from pos_promos.models import Promotion, PromotionType, DiscountType
from pos_promos.services import promotion_service
from pos_promos.services.promotion_engine import CENT, Cart, LineItem, EvaluationResult, UsageProposal
from pos_promos.utils.number_format import parse_money, parse_quantity, parse_optional_int, parse_date
from pos_promos.blueprints.metrics import record_evaluation

promotions_bp = Blueprint('promotions', __name__, url_prefix='/promociones')

# Largest amount the Numeric(10, 2) promotion columns hold
MAX_STORED_AMOUNT = Decimal('99999999.99')


# =====================================================
# REQUEST PARSING
# =====================================================

def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise BusinessLogicError('Se esperaba un cuerpo JSON')
    return data


def _parse_field(parser, value, field_name: str, **kwargs):
    """Run a number_format parser and report failures against the wire field name."""
    try:
        return parser(value, **kwargs)
    except ValueError as e:
        raise BusinessLogicError(f'{field_name}: {e}')


def _parse_bool(value, field_name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ('true', '1', 'si', 'sí'):
        return True
    if isinstance(value, str) and value.strip().lower() in ('false', '0', 'no'):
        return False
    raise BusinessLogicError(f'{field_name}: valor booleano inválido')


def _parse_as_of(value) -> date:
    """Evaluation date: 'fecha' from the request, else today's date."""
    parsed = _parse_field(parse_date, value, 'fecha')
    return parsed or date.today()


def _parse_cart(payload: Dict[str, Any]) -> Cart:
    """Build a Cart from {items: [{productoId, cantidad, precioUnitario}]}."""
    items = payload.get('items')
    if not isinstance(items, list):
        raise InvalidCartError('El carrito debe incluir la lista "items"')

    max_items = current_app.config.get('PROMOTIONS_MAX_CART_ITEMS', 500)
    if len(items) > max_items:
        raise InvalidCartError(f'El carrito supera el máximo de {max_items} productos')

    lines = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise InvalidCartError(f'Item #{index + 1} inválido')
        product_id = item.get('productoId')
        if product_id is None or isinstance(product_id, (bool, dict, list)):
            raise InvalidCartError(f'Item #{index + 1}: productoId es obligatorio')
        if isinstance(product_id, str) and product_id.strip().isdigit():
            # Stored promotion products use numeric ids
            product_id = int(product_id.strip())
        try:
            quantity = parse_quantity(item.get('cantidad'))
            unit_price = parse_money(item.get('precioUnitario'))
        except ValueError as e:
            raise InvalidCartError(f'Producto {product_id}: {e}', product_id=product_id)
        lines.append(LineItem(product_id=product_id, quantity=quantity, unit_price=unit_price))

    return Cart(items=tuple(lines))


def _parse_products(raw) -> List[Dict[str, Any]]:
    if not isinstance(raw, list):
        raise BusinessLogicError('productosAplicables debe ser una lista')

    products = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict) or item.get('productoId') is None:
            raise BusinessLogicError(f'productosAplicables #{index + 1}: productoId es obligatorio')
        products.append({
            'product_id': _parse_field(parse_quantity, item['productoId'], 'productoId'),
            'exact_qty': _parse_field(parse_optional_int, item.get('cantidadExacta'), 'cantidadExacta', minimum=1),
            'min_qty': _parse_field(parse_optional_int, item.get('cantidadMinima'), 'cantidadMinima', minimum=1),
            'required': _parse_bool(item.get('obligatorio', True), 'obligatorio'),
        })
    return products


def _parse_enum(enum_cls, value, field_name: str):
    for member in enum_cls:
        if value == member.value or value == member.name:
            return member
    raise BusinessLogicError(f'{field_name}: valor inválido "{value}"')


def _parse_promotion_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Map the wire names of a create/update body to model fields (only keys present)."""
    data: Dict[str, Any] = {}

    if 'nombre' in payload:
        data['name'] = (payload.get('nombre') or '').strip()
    if 'descripcion' in payload:
        data['description'] = (payload.get('descripcion') or '').strip() or None
    if 'tipoPromocion' in payload:
        data['promotion_type'] = _parse_enum(PromotionType, payload['tipoPromocion'], 'tipoPromocion')
    if 'tipoDescuento' in payload:
        data['discount_type'] = _parse_enum(DiscountType, payload['tipoDescuento'], 'tipoDescuento')
    if 'descuento' in payload:
        data['discount_value'] = _parse_field(parse_money, payload['descuento'], 'descuento', maximum=MAX_STORED_AMOUNT)
    if 'precioCombo' in payload:
        raw = payload['precioCombo']
        data['combo_price'] = None if raw in (None, '') else _parse_field(
            parse_money, raw, 'precioCombo', maximum=MAX_STORED_AMOUNT
        )
    if 'fechaInicio' in payload:
        data['valid_from'] = _parse_field(parse_date, payload['fechaInicio'], 'fechaInicio')
    if 'fechaFin' in payload:
        data['valid_to'] = _parse_field(parse_date, payload['fechaFin'], 'fechaFin')
    if 'maxUsos' in payload:
        data['max_uses'] = _parse_field(parse_optional_int, payload['maxUsos'], 'maxUsos', minimum=0)
    if 'activo' in payload:
        data['active'] = _parse_bool(payload['activo'], 'activo')
    if 'puntosExtra' in payload:
        points = _parse_field(parse_optional_int, payload['puntosExtra'], 'puntosExtra', minimum=0)
        data['bonus_points'] = points or 0
    if 'productosAplicables' in payload:
        data['products'] = _parse_products(payload['productosAplicables'])

    return data


def _parse_usage_proposals(payload: Dict[str, Any]) -> List[UsageProposal]:
    raw = payload.get('usosPropuestos')
    if not isinstance(raw, list) or not raw:
        raise BusinessLogicError('usosPropuestos debe ser una lista no vacía')

    proposals = []
    for item in raw:
        if not isinstance(item, dict):
            raise BusinessLogicError('usosPropuestos contiene un elemento inválido')
        proposals.append(UsageProposal(
            promotion_id=_parse_field(parse_quantity, item.get('promocionId'), 'promocionId'),
            expected_uses=_parse_field(parse_quantity, item.get('usosEsperados'), 'usosEsperados', minimum=0),
            proposed_uses=_parse_field(parse_quantity, item.get('usosPropuestos'), 'usosPropuestos', minimum=1),
        ))
    return proposals


# =====================================================
# SERIALIZATION
# =====================================================

def _money(value: Optional[Decimal]) -> Optional[float]:
    return None if value is None else float(value)


def _money_str(value: Optional[Decimal]) -> Optional[str]:
    if value is None:
        return None
    return str(Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP))


def _serialize_promotion(promotion: Promotion) -> Dict[str, Any]:
    return {
        'id': promotion.id,
        'nombre': promotion.name,
        'descripcion': promotion.description or '',
        'tipoPromocion': promotion.promotion_type.value,
        'tipoDescuento': promotion.discount_type.value,
        'descuento': _money_str(promotion.discount_value),
        'precioCombo': _money_str(promotion.combo_price),
        'fechaInicio': promotion.valid_from.isoformat() if promotion.valid_from else None,
        'fechaFin': promotion.valid_to.isoformat() if promotion.valid_to else None,
        'maxUsos': promotion.max_uses,
        'usosActuales': promotion.uses_count,
        'activo': promotion.active,
        'puntosExtra': promotion.bonus_points,
        'createdAt': promotion.created_at.isoformat() if promotion.created_at else None,
        'updatedAt': promotion.updated_at.isoformat() if promotion.updated_at else None,
        'productos': [
            {
                'id': line.id,
                'promocionId': line.promotion_id,
                'productoId': line.product_id,
                'cantidadExacta': line.exact_qty,
                'cantidadMinima': line.min_qty,
                'obligatorio': line.required,
            }
            for line in promotion.products
        ],
    }


def _serialize_result(result: EvaluationResult) -> Dict[str, Any]:
    return {
        'promocionesAplicables': [
            {
                'promocionId': applied.promotion_id,
                'nombre': applied.name,
                'tipoPromocion': applied.kind.value,
                'tipoDescuento': applied.discount_type.value,
                'descuentoCalculado': _money(applied.discount_amount),
                'puntosExtra': applied.bonus_points,
                'instancias': applied.instances,
            }
            for applied in result.applicable_promotions
        ],
        'subtotal': _money(result.subtotal),
        'descuentoTotal': _money(result.total_discount),
        'montoFinal': _money(result.final_total),
        'puntosExtrasTotal': result.total_bonus_points,
        'promocionesOmitidas': [
            {'promocionId': skipped.promotion_id, 'motivo': skipped.reason}
            for skipped in result.skipped_promotions
        ],
        'usosPropuestos': [
            {
                'promocionId': proposal.promotion_id,
                'usosEsperados': proposal.expected_uses,
                'usosPropuestos': proposal.proposed_uses,
            }
            for proposal in result.usage_proposals
        ],
    }


# =====================================================
# EVALUATION ENDPOINTS
# =====================================================

@promotions_bp.route('/evaluar', methods=['POST'])
def evaluate_promotions() -> Response:
    """Evaluate the active promotions against a cart."""
    payload = _json_body()
    try:
        cart = _parse_cart(payload)
        as_of = _parse_as_of(payload.get('fecha'))
        result = promotion_service.evaluate_cart(get_session(), cart, as_of)
    except InvalidCartError as e:
        record_evaluation(outcome='invalid_cart')
        current_app.logger.warning(f"Carrito rechazado: {e.message}")
        raise

    if payload.get('montoTotal') is not None:
        try:
            declared = parse_money(payload['montoTotal'])
            matches = declared.quantize(CENT) == result.subtotal.quantize(CENT)
        except (ValueError, InvalidOperation):
            matches = False
        if not matches:
            current_app.logger.warning(
                f"montoTotal informado ({payload['montoTotal']}) no coincide con el subtotal calculado ({result.subtotal})"
            )

    record_evaluation(result)
    if current_app.config.get('PROMOTIONS_LOG_EVALUATIONS'):
        current_app.logger.info(
            f"Evaluación {as_of.isoformat()}: subtotal={result.subtotal} "
            f"descuento={result.total_discount} final={result.final_total}"
        )
    return jsonify(_serialize_result(result))


@promotions_bp.route('/usos', methods=['POST'])
def commit_usage() -> Response:
    """Commit the usage counters proposed by an evaluation (after the sale is confirmed)."""
    proposals = _parse_usage_proposals(_json_body())
    promotion_service.record_promotion_usage(get_session(), proposals)
    return jsonify({'status': 'ok', 'promociones': [p.promotion_id for p in proposals]})


# =====================================================
# BACK-OFFICE ENDPOINTS
# =====================================================

@promotions_bp.route('/unificadas', methods=['GET'])
def list_promotions() -> Response:
    promotions = promotion_service.list_promotions(get_session())
    return jsonify([_serialize_promotion(p) for p in promotions])


@promotions_bp.route('/unificadas/activas', methods=['GET'])
def list_active_promotions() -> Response:
    """Promotions eligible on ?fecha= (today by default)."""
    as_of = _parse_as_of(request.args.get('fecha'))
    promotions = promotion_service.list_active_promotions(get_session(), as_of)
    return jsonify([_serialize_promotion(p) for p in promotions])


@promotions_bp.route('/unificadas/<int:promotion_id>', methods=['GET'])
def get_promotion(promotion_id: int) -> Response:
    promotion = promotion_service.get_promotion(get_session(), promotion_id)
    return jsonify(_serialize_promotion(promotion))


@promotions_bp.route('/unificadas', methods=['POST'])
def create_promotion() -> Tuple[Response, int]:
    data = _parse_promotion_payload(_json_body())
    promotion = promotion_service.create_promotion(get_session(), data)
    current_app.logger.info(f"Promoción #{promotion.id} creada desde la API")
    return jsonify(_serialize_promotion(promotion)), 201


@promotions_bp.route('/unificadas/<int:promotion_id>', methods=['PATCH'])
def update_promotion(promotion_id: int) -> Response:
    data = _parse_promotion_payload(_json_body())
    promotion = promotion_service.update_promotion(get_session(), promotion_id, data)
    return jsonify(_serialize_promotion(promotion))


@promotions_bp.route('/unificadas/<int:promotion_id>', methods=['DELETE'])
def delete_promotion(promotion_id: int) -> Union[Response, Tuple[str, int]]:
    promotion_service.delete_promotion(get_session(), promotion_id)
    return '', 204


@promotions_bp.route('/unificadas/<int:promotion_id>/activate', methods=['PATCH'])
def activate_promotion(promotion_id: int) -> Response:
    promotion = promotion_service.set_promotion_active(get_session(), promotion_id, True)
    return jsonify(_serialize_promotion(promotion))


@promotions_bp.route('/unificadas/<int:promotion_id>/deactivate', methods=['PATCH'])
def deactivate_promotion(promotion_id: int) -> Response:
    promotion = promotion_service.set_promotion_active(get_session(), promotion_id, False)
    return jsonify(_serialize_promotion(promotion))
