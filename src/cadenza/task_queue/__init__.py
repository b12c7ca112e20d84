"""
Durable job queues and the worker that drains them
"""

from .queue_manager import JobQueue, DEFAULT_QUEUES
from .worker import Worker, HandlerRegistration

__all__ = ['JobQueue', 'DEFAULT_QUEUES', 'Worker', 'HandlerRegistration']
