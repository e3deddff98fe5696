from .async_utils import close_resources, guarded_call, retry_delay, wait_with_stop
from .logging import JsonFormatter, log_event, sanitize_text, setup_logger

__all__ = [
    "JsonFormatter",
    "close_resources",
    "guarded_call",
    "log_event",
    "retry_delay",
    "sanitize_text",
    "setup_logger",
    "wait_with_stop",
]
