"""Configuration subpackage - settings and logging."""
from .settings import Settings, get_settings, reset_settings
from .logging_config import configure_logging, get_logger

__all__ = ['Settings', 'get_settings', 'reset_settings', 'configure_logging', 'get_logger']
