"""Custom exceptions for the POS promotions application."""

class PosError(Exception):
    """Base exception for all application errors."""
    def __init__(self, message="An internal error occurred", status_code=500, payload=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    def to_dict(self):
        rv = dict(self.payload or ())
        rv['message'] = self.message
        rv['status'] = 'error'
        return rv

class BusinessLogicError(PosError):
    """Exception raised for business logic violations."""
    def __init__(self, message, status_code=400, payload=None):
        super().__init__(message, status_code, payload)

class NotFoundError(PosError):
    """Exception raised when a resource is not found."""
    def __init__(self, message="Resource not found", payload=None):
        super().__init__(message, 404, payload)

class InvalidCartError(BusinessLogicError):
    """Raised when a cart violates its structural invariants."""
    def __init__(self, message, product_id=None):
        payload = {'productoId': product_id} if product_id is not None else None
        super().__init__(message, status_code=400, payload=payload)
        self.product_id = product_id

class InvalidPromotionError(BusinessLogicError):
    """Raised when a promotion definition is inconsistent with its type."""
    def __init__(self, message, promotion_id=None):
        payload = {'promocionId': promotion_id} if promotion_id is not None else None
        super().__init__(message, status_code=400, payload=payload)
        self.promotion_id = promotion_id

class UsageConflictError(BusinessLogicError):
    """Raised when a usage counter changed or hit its cap before the commit."""
    def __init__(self, promotion_id, expected_uses):
        message = (
            f"La promoción #{promotion_id} fue utilizada por otra venta "
            f"(usos esperados: {expected_uses}). Vuelva a evaluar el carrito."
        )
        super().__init__(message, status_code=409, payload={'promocionId': promotion_id})
        self.promotion_id = promotion_id
        self.expected_uses = expected_uses
