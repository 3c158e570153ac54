"""HARVEST — Performance Data Source.

Answers whether performance data has already landed for a window.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from app.core.errors import PersistenceError
from app.core.timezones import window_end
from app.models.report_models import Aggregation
from app.models.stream_models import PerformanceRecord


class PerformanceDataSource(ABC):
    @abstractmethod
    def has_data(
        self, account_id: str, window_start: datetime, aggregation: Aggregation
    ) -> bool:
        ...


class SqlPerformanceDataSource(PerformanceDataSource):
    """Looks for any ``performance`` row inside ``[window_start, window_end)``.

    Hourly windows only count hourly rows. A daily window counts any row in
    its day, so hourly stream facts cover the day they fall in.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def has_data(
        self, account_id: str, window_start: datetime, aggregation: Aggregation
    ) -> bool:
        aggregation = Aggregation(aggregation)
        query = select(PerformanceRecord.id).where(
            PerformanceRecord.account_id == account_id,
            PerformanceRecord.date >= window_start,
            PerformanceRecord.date < window_end(window_start, aggregation),
        )
        if aggregation == Aggregation.HOURLY:
            query = query.where(PerformanceRecord.aggregation == Aggregation.HOURLY.value)
        try:
            with Session(self.engine) as session:
                return session.exec(query.limit(1)).first() is not None
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to query performance data: {e}") from e
