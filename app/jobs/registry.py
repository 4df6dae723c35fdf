"""
Background job registry.

Jobs are plain async functions registered by name with the ``@job``
decorator. The scheduler and the on-demand job endpoints both look them up
here, so a job runs the same way on a timer and from the API.

Usage:
    @job("check_low_stock")
    async def check_low_stock() -> dict:
        async with get_db_session() as session:
            ...
"""
import logging
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Awaitable, Callable, Dict, List

from app.core.errors import NotFoundError

logger = logging.getLogger(__name__)

JobFunc = Callable[[], Awaitable[Dict[str, Any]]]

# Registry of background jobs
_jobs: Dict[str, JobFunc] = {}


def job(name: str):
    """Decorator to register a background job under ``name``."""
    def decorator(func: JobFunc) -> JobFunc:
        @wraps(func)
        async def wrapper() -> Dict[str, Any]:
            start_time = datetime.now(timezone.utc)
            logger.info("Job '%s' started", name)
            result = await func()
            duration = (datetime.now(timezone.utc) - start_time).total_seconds()
            logger.info("Job '%s' finished in %.2fs: %s", name, duration, result)
            return result

        _jobs[name] = wrapper
        return wrapper

    return decorator


def get_job(name: str) -> JobFunc:
    if name not in _jobs:
        raise NotFoundError(f"Unknown job: {name}", error_code="JOB_NOT_FOUND")
    return _jobs[name]


def registered_jobs() -> List[str]:
    return sorted(_jobs)


async def run_job(name: str) -> Dict[str, Any]:
    """Run a registered job on demand; errors propagate to the caller."""
    return await get_job(name)()
