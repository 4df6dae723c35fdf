"""
Background Jobs Module

Handles scheduled tasks for:
- Shopify sync queue processing
- Courier booking retries and tracking updates
- Stuck order, overdue return and low stock alerts
"""

from app.jobs.scheduler import scheduler, start_scheduler, shutdown_scheduler
from app.jobs import sync_jobs, courier_jobs, alert_jobs  # noqa: F401

__all__ = [
    "scheduler",
    "start_scheduler",
    "shutdown_scheduler",
]
