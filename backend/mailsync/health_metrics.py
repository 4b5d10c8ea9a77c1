"""Fire-and-forget health metrics. Recording never raises into the sync path."""
import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from .models import HealthMetric, utcnow

logger = logging.getLogger(__name__)


class HealthMetrics:
    """Writes HealthMetric rows through its own short-lived session."""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        if session_factory is None:
            from .database import SessionLocal
            session_factory = SessionLocal
        self._session_factory = session_factory

    def record(
        self,
        metric_type: str,
        name: str,
        value: float,
        unit: Optional[str] = None,
        dimensions: Optional[dict] = None,
    ) -> bool:
        """Returns False if the metric could not be stored."""
        db = None
        try:
            db = self._session_factory()
            db.add(
                HealthMetric(
                    metric_type=metric_type,
                    metric_name=name,
                    metric_value=float(value),
                    metric_unit=unit,
                    dimensions=dimensions or {},
                    measured_at=utcnow(),
                )
            )
            db.commit()
            return True
        except Exception as e:
            logger.warning(f"Failed to record health metric {metric_type}/{name}: {e}")
            if db is not None:
                try:
                    db.rollback()
                except Exception:
                    pass
            return False
        finally:
            if db is not None:
                db.close()


metrics = HealthMetrics()
