from .async_utils import cancel_task, guarded_call
from .logging import log_event, sanitize_text, sanitize_value
from .retry import RetryPolicy, is_transient_network_error, parse_retry_after_seconds

__all__ = [
    "RetryPolicy",
    "cancel_task",
    "guarded_call",
    "is_transient_network_error",
    "log_event",
    "parse_retry_after_seconds",
    "sanitize_text",
    "sanitize_value",
]
