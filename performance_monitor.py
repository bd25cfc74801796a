"""
Performance monitoring utilities
Operation timing used for job durations and registry call logging
"""

import logging
import time
import functools
from typing import Callable

logger = logging.getLogger(__name__)

class OperationTimer:
    """Simple operation timer for performance monitoring"""

    def __init__(self, operation_name: str, log_level: int = logging.DEBUG):
        self.operation_name = operation_name
        self.log_level = log_level
        self.start_time = None
        self.end_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.end_time = time.perf_counter()
        duration = self.duration_ms

        if exc_type is None:
            logger.log(self.log_level, f"⏱️ {self.operation_name}: {duration:.2f}ms")
        else:
            logger.warning(f"⏱️ {self.operation_name}: {duration:.2f}ms (failed)")
        return False

    @property
    def duration_ms(self) -> float:
        """Get duration in milliseconds"""
        if self.start_time is None:
            return 0.0
        end = self.end_time if self.end_time is not None else time.perf_counter()
        return (end - self.start_time) * 1000

def monitor_performance(operation_name: str):
    """
    Decorator to time an async operation

    Args:
        operation_name: Name of the operation being monitored
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            with OperationTimer(f"{operation_name}({func.__name__})"):
                return await func(*args, **kwargs)
        return async_wrapper
    return decorator
