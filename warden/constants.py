"""
Centralized Constants Module for Tunnel Warden.

All intervals, timeouts, retry ceilings and limits used by the monitors,
the event bus and the alert dispatcher live here so they can be audited in
one place.

Every value can be overridden through a WARDEN_* environment variable.
Overrides are bounds-checked; an out-of-range override falls back to the
default and is logged.

Usage:
    from warden.constants import Timeouts, Retries

    subprocess.run(cmd, timeout=Timeouts.SUBPROCESS_DEFAULT)
"""

import logging
import os
import sys
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

IS_LINUX = sys.platform.startswith('linux')
IS_MACOS = sys.platform == 'darwin'


# =============================================================================
# ENVIRONMENT VARIABLE OVERRIDE UTILITIES
# =============================================================================

T = TypeVar('T')


def _env_override(
    env_var: str,
    default: T,
    converter: Callable[[str], T] = str,
    min_value: Optional[T] = None,
    max_value: Optional[T] = None,
) -> T:
    """Get a configuration value with environment variable override.

    Args:
        env_var: Environment variable name (will be prefixed with WARDEN_)
        default: Default value if env var not set
        converter: Function to convert string to target type
        min_value: Optional minimum allowed value
        max_value: Optional maximum allowed value

    Returns:
        Configured value (from env var if valid, otherwise default)
    """
    full_env_var = f"WARDEN_{env_var}"
    env_value = os.environ.get(full_env_var)

    if env_value is None:
        return default

    try:
        converted = converter(env_value)

        if min_value is not None and converted < min_value:
            logger.warning(
                f"{full_env_var}={env_value} below minimum {min_value}, using default"
            )
            return default
        if max_value is not None and converted > max_value:
            logger.warning(
                f"{full_env_var}={env_value} above maximum {max_value}, using default"
            )
            return default

        logger.info(f"Using {full_env_var}={converted} (override)")
        return converted

    except (ValueError, TypeError) as e:
        logger.warning(f"Invalid value for {full_env_var}: {e}, using default")
        return default


# =============================================================================
# TIMEOUT CONSTANTS
# =============================================================================

@dataclass(frozen=True)
class Timeouts:
    """
    Timeout values in seconds.

    A probe that exceeds its timeout is reported as unknown, never as healthy.
    """
    SUBPROCESS_SHORT: float = 2.0       # chattr, chflags
    SUBPROCESS_DEFAULT: float = 5.0     # systemctl, iptables, pfctl

    SERVICE_PROBE: float = _env_override('SERVICE_PROBE_TIMEOUT', 5.0, float, 0.5, 60.0)
    SERVICE_RESTART: float = _env_override('SERVICE_RESTART_TIMEOUT', 30.0, float, 1.0, 300.0)
    FILE_SCAN: float = _env_override('FILE_SCAN_TIMEOUT', 30.0, float, 1.0, 600.0)
    SINK_CALL: float = _env_override('SINK_TIMEOUT', 10.0, float, 0.5, 120.0)

    THREAD_JOIN_SHORT: float = 2.0
    THREAD_JOIN_DEFAULT: float = 5.0
    SHUTDOWN_GRACE: float = _env_override('SHUTDOWN_GRACE', 10.0, float, 1.0, 120.0)


# =============================================================================
# MONITOR INTERVALS
# =============================================================================

@dataclass(frozen=True)
class Intervals:
    """Default tick intervals in seconds (policy `schedule` overrides these)."""
    SERVICE_CHECK: float = _env_override('SERVICE_INTERVAL', 5.0, float, 0.1, 3600.0)
    FILE_RESCAN: float = _env_override('FILE_RESCAN_INTERVAL', 60.0, float, 0.1, 3600.0)
    NETWORK_CHECK: float = _env_override('NETWORK_INTERVAL', 10.0, float, 0.1, 3600.0)
    DISPATCHER_POLL: float = 1.0
    MIN_TICK: float = 0.05


# =============================================================================
# RETRY CONSTANTS
# =============================================================================

@dataclass(frozen=True)
class Retries:
    """Retry ceilings and backoff parameters."""
    RESTART_CEILING: int = _env_override('RESTART_CEILING', 3, int, 1, 100)
    RESTART_WINDOW: float = _env_override('RESTART_WINDOW', 300.0, float, 1.0, 86400.0)
    RESTART_BACKOFF_BASE: float = 1.0
    RESTART_BACKOFF_MAX: float = 30.0

    PROBE_FAILURE_THRESHOLD: int = _env_override('PROBE_FAILURE_THRESHOLD', 3, int, 1, 100)

    SINK_ATTEMPTS: int = _env_override('SINK_RETRIES', 3, int, 1, 20)
    SINK_BACKOFF_BASE: float = 0.5
    SINK_BACKOFF_MAX: float = 10.0


# =============================================================================
# ALERTING DEFAULTS
# =============================================================================

@dataclass(frozen=True)
class AlertDefaults:
    """Throttle and retention defaults for the alert dispatcher."""
    THROTTLE_WINDOW: float = _env_override('THROTTLE_WINDOW', 300.0, float, 0.0, 86400.0)
    RETENTION: float = _env_override('ALERT_RETENTION', 86400.0, float, 60.0, 30 * 86400.0)
    DEDUPE_PER_ENTITY: bool = True


# =============================================================================
# LIMITS
# =============================================================================

@dataclass(frozen=True)
class Limits:
    """Capacity limits."""
    BUS_CAPACITY: int = _env_override('BUS_CAPACITY', 256, int, 1, 100000)
    TRANSITION_HISTORY: int = 100
    SINK_CALL_WORKERS: int = 4
    HASH_CHUNK_SIZE: int = 65536


# =============================================================================
# PATHS AND NAMES
# =============================================================================

@dataclass(frozen=True)
class Paths:
    """Default filesystem locations."""
    POLICY_FILE: str = _env_override('POLICY', '/etc/warden/policy.yaml')
    AUDIT_LOG: str = _env_override('AUDIT_LOG', '/var/log/warden/audit.log')


@dataclass(frozen=True)
class FirewallNames:
    """Names of the packet-filter objects owned by the daemon."""
    IPTABLES_CHAIN: str = "WARDEN_EGRESS"
    IPTABLES_HOOK_CHAIN: str = "OUTPUT"
    PF_ANCHOR: str = "com.apple/250.WardenEgress"
    PF_CONF: str = "/etc/pf.conf"


SECURE_FILE_MODE = 0o600
SECURE_DIR_MODE = 0o700


__all__ = [
    'IS_LINUX',
    'IS_MACOS',
    'Timeouts',
    'Intervals',
    'Retries',
    'AlertDefaults',
    'Limits',
    'Paths',
    'FirewallNames',
    'SECURE_FILE_MODE',
    'SECURE_DIR_MODE',
]
