"""
Core configuration, logging and error-reporting setup.
"""

from subject_lookup.core.config import Config, get_config, init_config, set_config
from subject_lookup.core.logging_config import configure_structlog, get_logger, bind_context, clear_context

__all__ = [
    'Config',
    'get_config',
    'init_config',
    'set_config',
    'configure_structlog',
    'get_logger',
    'bind_context',
    'clear_context',
]
