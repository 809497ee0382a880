from .logging import JsonFormatter, TextFormatter, setup_logger
from .settings import AppSettings

__all__ = [
    "AppSettings",
    "JsonFormatter",
    "TextFormatter",
    "setup_logger",
]
