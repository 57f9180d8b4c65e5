"""
Platform capabilities for Tunnel Warden.

    from warden.platform import select_platform

    platform = select_platform()          # host platform
    platform = select_platform('macos')   # explicit
"""

import sys
from typing import Optional

from ..constants import IS_LINUX, IS_MACOS
from ..utils.error_handling import WardenError
from .base import PlatformCapabilities, canonical_rule, split_rule
from .linux import LinuxPlatform
from .macos import MacOSPlatform

_PLATFORMS = {
    'linux': LinuxPlatform,
    'macos': MacOSPlatform,
}


def host_platform_name() -> Optional[str]:
    """'linux', 'macos' or None for an unsupported host."""
    if IS_LINUX:
        return 'linux'
    if IS_MACOS:
        return 'macos'
    return None


def select_platform(name: Optional[str] = None) -> PlatformCapabilities:
    """Instantiate the capabilities for `name` (default: the host)."""
    name = name or host_platform_name()
    if name not in _PLATFORMS:
        raise WardenError(f"Unsupported platform: {name or sys.platform}")
    return _PLATFORMS[name]()


__all__ = [
    'PlatformCapabilities',
    'LinuxPlatform',
    'MacOSPlatform',
    'canonical_rule',
    'split_rule',
    'host_platform_name',
    'select_platform',
]
