"""
Logging Configuration for Tunnel Warden.

Provides centralized logging configuration with a verbose toggle,
feature-area tagging and text or JSON log formatting.

Usage:
    from warden.logging_config import SECURITY, setup_logging

    # Setup at daemon startup
    setup_logging(verbose=True)

    logger = logging.getLogger(__name__)
    logger.log(SECURITY, "Protected file restored")
"""

import json
import logging
import os
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from pathlib import Path
from typing import Any, Dict, Optional


# =============================================================================
# LOGGING LEVELS AND FEATURES
# =============================================================================

VERBOSE = 15
SECURITY = 55

logging.addLevelName(VERBOSE, 'VERBOSE')
logging.addLevelName(SECURITY, 'SECURITY')


class FeatureArea(Enum):
    """Feature areas for targeted logging."""
    CORE = auto()       # Reconciler, daemon lifecycle
    POLICY = auto()     # Policy loading and reload
    SERVICE = auto()    # Service monitor
    FILES = auto()      # File integrity monitor
    NETWORK = auto()    # Network enforcer
    ALERTS = auto()     # Event bus, dispatcher, sinks
    AUDIT = auto()      # Audit log
    PLATFORM = auto()   # Platform capabilities


_FEATURE_MAP = {
    'policy': FeatureArea.POLICY,
    'service': FeatureArea.SERVICE,
    'file_integrity': FeatureArea.FILES,
    'network': FeatureArea.NETWORK,
    'alerts': FeatureArea.ALERTS,
    'event_bus': FeatureArea.ALERTS,
    'audit': FeatureArea.AUDIT,
    'platform': FeatureArea.PLATFORM,
}


def feature_for(logger_name: str) -> FeatureArea:
    """Map a logger name onto its feature area."""
    name_lower = logger_name.lower()
    for key, feature in _FEATURE_MAP.items():
        if key in name_lower:
            return feature
    return FeatureArea.CORE


@dataclass
class LoggingState:
    """Thread-safe logging configuration state."""
    verbose: bool = False
    log_file: Optional[str] = None
    console_enabled: bool = True
    json_format: bool = False
    initialized: bool = False
    _lock: threading.RLock = field(default_factory=threading.RLock)


_state = LoggingState()


# =============================================================================
# CUSTOM FORMATTER
# =============================================================================

class WardenFormatter(logging.Formatter):
    """Formatter with colour support and optional JSON output."""

    COLORS = {
        'DEBUG': '\033[36m',      # Cyan
        'VERBOSE': '\033[94m',    # Light blue
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33;1m',  # Bold yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[31;1m', # Bold red
        'SECURITY': '\033[35;1m', # Bold magenta
        'RESET': '\033[0m',
    }

    def __init__(self, use_colors: bool = True, json_format: bool = False):
        self.use_colors = use_colors and sys.stdout.isatty()
        self.json_format = json_format
        super().__init__()

    def format(self, record: logging.LogRecord) -> str:
        if self.json_format:
            return self._format_json(record)
        return self._format_text(record)

    def _format_text(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
        level_name = record.levelname

        if self.use_colors:
            color = self.COLORS.get(level_name, '')
            reset = self.COLORS['RESET']
            level_str = f"{color}{level_name:8}{reset}"
        else:
            level_str = f"{level_name:8}"

        feature_str = f"[{feature_for(record.name).name.lower()}]"
        msg = record.getMessage()

        extra_str = ""
        if getattr(record, 'extra_data', None):
            extra_items = [f"{k}={v}" for k, v in record.extra_data.items()]
            extra_str = f" | {', '.join(extra_items)}"

        line = f"{timestamp} {level_str} {feature_str:10} {msg}{extra_str}"
        if record.exc_info:
            line += '\n' + self.formatException(record.exc_info)
        return line

    def _format_json(self, record: logging.LogRecord) -> str:
        data = {
            'timestamp': datetime.now().isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'feature': feature_for(record.name).name.lower(),
        }

        if getattr(record, 'extra_data', None):
            data['extra'] = record.extra_data

        if record.exc_info:
            data['exception'] = self.formatException(record.exc_info)

        return json.dumps(data)


# =============================================================================
# SETUP AND CONFIGURATION
# =============================================================================

def setup_logging(
    verbose: bool = False,
    log_file: Optional[str] = None,
    console: bool = True,
    json_format: bool = False,
) -> None:
    """
    Initialize the logging system.

    Args:
        verbose: Enable verbose logging (VERBOSE level)
        log_file: Optional file path for log output
        console: Enable console output
        json_format: Use JSON format for logs
    """
    with _state._lock:
        _state.verbose = verbose
        _state.log_file = log_file
        _state.console_enabled = console
        _state.json_format = json_format

        base_level = VERBOSE if verbose else logging.INFO

        root = logging.getLogger()
        root.setLevel(base_level)

        for handler in root.handlers[:]:
            root.removeHandler(handler)

        if console:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setLevel(base_level)
            console_handler.setFormatter(WardenFormatter(
                use_colors=True,
                json_format=json_format,
            ))
            root.addHandler(console_handler)

        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(base_level)
            file_handler.setFormatter(WardenFormatter(
                use_colors=False,
                json_format=json_format,
            ))
            root.addHandler(file_handler)

        _state.initialized = True


def get_logging_state() -> Dict[str, Any]:
    """Get current logging configuration state."""
    with _state._lock:
        return {
            'verbose': _state.verbose,
            'log_file': _state.log_file,
            'console_enabled': _state.console_enabled,
            'json_format': _state.json_format,
            'initialized': _state.initialized,
        }


def _env_flag(name: str) -> bool:
    return os.environ.get(name, '').lower() in ('1', 'true', 'yes')


def configure_from_environment(**overrides) -> None:
    """Configure logging from WARDEN_* environment variables.

    Keyword overrides (for example from CLI flags) take precedence when truthy.
    """
    setup_logging(
        verbose=overrides.get('verbose') or _env_flag('WARDEN_VERBOSE'),
        log_file=overrides.get('log_file') or os.environ.get('WARDEN_LOG_FILE'),
        console=not _env_flag('WARDEN_LOG_NO_CONSOLE'),
        json_format=overrides.get('json_format') or _env_flag('WARDEN_LOG_JSON'),
    )


__all__ = [
    'VERBOSE',
    'SECURITY',
    'FeatureArea',
    'feature_for',
    'setup_logging',
    'configure_from_environment',
    'get_logging_state',
    'WardenFormatter',
]
