"""
Active promotions suppliers.

The evaluation flow depends only on ActivePromotionsSource; the
SQLAlchemy implementation is used by the web app and the in-memory one
by tests and by callers that already hold a promotions snapshot.
"""
import abc
import logging
from datetime import date
from typing import Iterable, List, Sequence

from sqlalchemy import or_
from sqlalchemy.orm import Query, Session, selectinload

from pos_promos.models import Promotion as PromotionModel
from pos_promos.services.promotion_engine import Promotion

logger = logging.getLogger(__name__)


class ActivePromotionsSource(abc.ABC):
    """Supplies the promotions that may apply on a given date."""

    @abc.abstractmethod
    def active_promotions(self, as_of: date) -> Sequence[Promotion]:
        """Return candidate promotions in priority order."""


class InMemoryPromotionSource(ActivePromotionsSource):
    """Fixed snapshot of promotions; eligibility is left to the engine."""

    def __init__(self, promotions: Iterable[Promotion] = ()):
        self._promotions = tuple(promotions)

    def active_promotions(self, as_of: date) -> Sequence[Promotion]:
        return list(self._promotions)


class SqlAlchemyPromotionSource(ActivePromotionsSource):
    """Reads active promotions from the promotion tables, ordered by id."""

    def __init__(self, session: Session):
        self.session = session

    def active_promotions(self, as_of: date) -> Sequence[Promotion]:
        rules: List[Promotion] = [row.to_rule() for row in query_active_promotions(self.session, as_of)]
        logger.debug(f"{len(rules)} promociones activas al {as_of.isoformat()}")
        return rules


def query_active_promotions(session: Session, as_of: date) -> Query:
    """Promotions that are active, in their date window and under their usage cap."""
    return (
        session.query(PromotionModel)
        .options(selectinload(PromotionModel.products))
        .filter(
            PromotionModel.active == True,
            or_(PromotionModel.valid_from.is_(None), PromotionModel.valid_from <= as_of),
            or_(PromotionModel.valid_to.is_(None), PromotionModel.valid_to >= as_of),
            or_(PromotionModel.max_uses.is_(None), PromotionModel.uses_count < PromotionModel.max_uses)
        )
        .order_by(PromotionModel.id)
    )
