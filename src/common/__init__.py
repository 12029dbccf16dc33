# src/common/__init__.py
"""
Общие утилиты, константы, исключения и логгер.
"""

from src.common.logger import get_logger, log_info, log_error, log_warning, log_debug, log_audit
from src.common.constants import TypeMsg

__all__ = [
    "get_logger",
    "log_info",
    "log_error",
    "log_warning",
    "log_debug",
    "log_audit",
    "TypeMsg",
]
