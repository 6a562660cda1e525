"""API routes"""

from jiracdc.api import issues, operations, webhooks

__all__ = ["issues", "operations", "webhooks"]
