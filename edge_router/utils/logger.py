"""
Logging utilities for the edge router

Configures stdlib logging (dictConfig, optionally from a YAML file) and
structlog on top of it. Modules log with structlog.get_logger(__name__).
"""

import copy
import logging
import logging.config
import os
from typing import Any, Dict, Optional

import structlog
import yaml

# Default logging configuration
DEFAULT_LOGGING_CONFIG = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'plain': {
            'format': '%(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'level': 'INFO',
            'formatter': 'plain',
            'stream': 'ext://sys.stdout'
        }
    },
    'loggers': {
        '': {
            'level': 'INFO',
            'handlers': ['console'],
        },
        'uvicorn': {
            'level': 'INFO',
            'handlers': ['console'],
            'propagate': False
        },
        'httpx': {
            'level': 'WARNING',
            'handlers': ['console'],
            'propagate': False
        },
    }
}

LOG_FORMATS = ('json', 'console')


def load_logging_config(config_path: Optional[str]) -> Dict[str, Any]:
    """
    Load a dictConfig mapping from a YAML file, or return the default

    Args:
        config_path: Path to a YAML logging configuration file

    Returns:
        Logging configuration dict
    """
    if config_path and os.path.exists(config_path):
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f)
        if isinstance(config, dict):
            return config
    return copy.deepcopy(DEFAULT_LOGGING_CONFIG)


def setup_logging(
    config_path: Optional[str] = None,
    log_level: Optional[str] = None,
    log_format: Optional[str] = None
) -> None:
    """
    Setup logging configuration

    Args:
        config_path: Path to logging configuration file
        log_level: Override log level
        log_format: 'json' (default) or 'console'
    """
    config = load_logging_config(config_path)

    # Override log level if specified
    if log_level:
        log_level = log_level.upper()
        for logger_name, logger_config in config.get('loggers', {}).items():
            if logger_name != 'httpx':
                logger_config['level'] = log_level
        for handler_config in config.get('handlers', {}).values():
            handler_config['level'] = log_level

    logging.config.dictConfig(config)

    if log_format == 'console':
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def init_logging():
    """Initialize logging with environment variables"""
    config_path = os.getenv('LOGGING_CONFIG_PATH')
    log_level = os.getenv('LOG_LEVEL', 'INFO')
    log_format = os.getenv('LOG_FORMAT', 'json')

    setup_logging(config_path, log_level, log_format)
