"""Shared utilities and helpers."""
from shared.diagnostics import (
    ResourceMonitor,
    log_memory_usage,
    log_thread_status,
)

__all__ = [
    'ResourceMonitor',
    'log_memory_usage',
    'log_thread_status',
]
