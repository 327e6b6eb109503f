"""
Background jobs that run beside live event processing.

- ContextSweeper expires contexts whose `expires_at` has passed
"""
from job_queue.sweeper import ContextSweeper

__all__ = ["ContextSweeper"]
