# backend/tutorflow/services/base.py
"""
Base Service Pattern

Provides common functionality for all service classes including:
- Transaction management
- Logging
- Error handling
- Performance monitoring
"""

from contextlib import contextmanager
from datetime import datetime
from functools import wraps
import logging
import time
from typing import Any, Callable, Dict, Optional, TypeVar, cast

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException, ServiceException
from ..core.timezone_utils import ensure_utc, utc_now
from ..monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

SLOW_OPERATION_SECONDS = 1.0


def _record_prometheus(service: str, operation: str, elapsed: float, success: bool, error_type: Optional[str]) -> None:
    try:
        prometheus_metrics.record_service_operation(
            service=service,
            operation=operation,
            duration=elapsed,
            status="success" if success else "error",
            error_type=error_type,
        )
    except ValueError as exc:
        # Label misuse should not fail the business operation.
        logger.debug("Failed to record metrics for %s.%s: %s", service, operation, exc)


class BaseService:
    """
    Base class for all service layer components.

    Provides common patterns for:
    - Database session management
    - Logging
    - Transaction handling
    - Performance monitoring
    - An injectable clock so sweeps and policies are testable
    """

    # Class-level metrics storage
    _class_metrics: Dict[str, Dict[str, Dict[str, float]]] = {}

    def __init__(self, db: Session, clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize base service.

        Args:
            db: Database session
            clock: Returns the current instant; defaults to aware UTC now
        """
        self.db = db
        self._clock = clock or utc_now
        self.logger = logging.getLogger(self.__class__.__name__)

    def now(self) -> datetime:
        return ensure_utc(self._clock())

    @contextmanager
    def transaction(self):
        """
        Context manager for database transactions.

        Usage:
            with self.transaction():
                self.db.add(entity)
                # commit is handled automatically

        Domain exceptions roll back and propagate unchanged; database errors
        roll back and surface as ServiceException.
        """
        try:
            yield self.db
            self.db.commit()
            self.logger.debug("Transaction committed successfully")
        except (SQLAlchemyError, RepositoryException) as e:
            self.logger.error(f"Transaction failed: {str(e)}")
            self.db.rollback()
            raise ServiceException(f"Database operation failed: {str(e)}") from e
        except Exception as e:
            self.logger.info(f"Transaction rolled back: {type(e).__name__}: {str(e)}")
            self.db.rollback()
            raise

    @contextmanager
    def maybe_transaction(self, use_transaction: bool):
        """``transaction()`` when this call owns the unit of work, otherwise a no-op."""
        if use_transaction:
            with self.transaction():
                yield self.db
        else:
            yield self.db

    @staticmethod
    def measure_operation(operation_name: str) -> Callable[[F], F]:
        """
        Decorator to measure operation performance.

        Usage:
            @BaseService.measure_operation("pay_escrow")
            def pay_escrow(self, ...):
                ...
        """

        def decorator(func: F) -> F:
            func._operation_name = operation_name  # type: ignore[attr-defined]
            func._is_measured = True  # type: ignore[attr-defined]

            @wraps(func)
            def wrapper(self, *args, **kwargs):
                start_time = time.time()
                success = False
                error_type = None
                try:
                    result = func(self, *args, **kwargs)
                    success = True
                    return result
                except Exception as e:
                    error_type = type(e).__name__
                    raise
                finally:
                    elapsed = time.time() - start_time
                    if hasattr(self, "_record_metric"):
                        self._record_metric(operation_name, elapsed, success)
                    if elapsed > SLOW_OPERATION_SECONDS and hasattr(self, "logger"):
                        self.logger.warning(
                            f"Slow operation detected: {operation_name} took {elapsed:.2f}s"
                        )
                    _record_prometheus(
                        self.__class__.__name__, operation_name, elapsed, success, error_type
                    )

            return cast(F, wrapper)

        return decorator

    @contextmanager
    def measure_operation_context(self, operation_name: str):
        """
        Context manager to measure operation performance.

        Usage:
            with self.measure_operation_context("expire_sweep_batch"):
                ...
        """
        start_time = time.time()
        success = False
        error_type = None
        try:
            yield
            success = True
        except Exception as e:
            error_type = type(e).__name__
            raise
        finally:
            elapsed = time.time() - start_time
            self._record_metric(operation_name, elapsed, success)
            if elapsed > SLOW_OPERATION_SECONDS:
                self.logger.warning(f"Slow operation detected: {operation_name} took {elapsed:.2f}s")
            _record_prometheus(self.__class__.__name__, operation_name, elapsed, success, error_type)

    def _record_metric(self, operation: str, elapsed: float, success: bool) -> None:
        class_name = self.__class__.__name__
        metrics = BaseService._class_metrics.setdefault(class_name, {})
        metric_data = metrics.setdefault(
            operation,
            {
                "count": 0,
                "total_time": 0.0,
                "success_count": 0,
                "failure_count": 0,
                "min_time": float("inf"),
                "max_time": 0.0,
            },
        )
        metric_data["count"] += 1
        metric_data["total_time"] += elapsed
        metric_data["min_time"] = min(metric_data["min_time"], elapsed)
        metric_data["max_time"] = max(metric_data["max_time"], elapsed)
        if success:
            metric_data["success_count"] += 1
        else:
            metric_data["failure_count"] += 1

    def get_metrics(self) -> Dict[str, Dict[str, float]]:
        """Per-operation timing stats for this service class."""
        metrics = BaseService._class_metrics.get(self.__class__.__name__, {})
        result: Dict[str, Dict[str, float]] = {}
        for operation, data in metrics.items():
            count = data["count"] or 1
            result[operation] = {
                **data,
                "avg_time": data["total_time"] / count,
                "success_rate": data["success_count"] / count,
            }
        return result
