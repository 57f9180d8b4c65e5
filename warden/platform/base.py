"""
Platform capability interface.

Monitors never shell out directly. Every OS-specific probe and corrective
action goes through a PlatformCapabilities implementation so the monitors
stay identical across Linux and macOS, and tests can swap in a fake.

Probe methods raise ProbeError when live state cannot be observed (tool
missing, timeout, permission denied). Corrective methods raise
RemediationError when the action did not take effect.
"""

import logging
import shlex
import subprocess
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Set, Type

import psutil

from ..constants import Timeouts
from ..policy.models import FirewallRule
from ..utils.error_handling import ProbeError, RemediationError, WardenError

logger = logging.getLogger(__name__)


def canonical_rule(tokens: Sequence[str]) -> str:
    """Join rule tokens into the comparison form used for diffing.

    Tokens containing whitespace are double-quoted, everything else is kept
    bare, so a rule read back from the kernel and a freshly rendered rule
    compare equal regardless of how the tool quoted them.
    """
    parts = []
    for token in tokens:
        if not token or any(c.isspace() for c in token):
            parts.append(f'"{token}"')
        else:
            parts.append(token)
    return ' '.join(parts)


def split_rule(line: str) -> List[str]:
    """Inverse of canonical_rule."""
    return shlex.split(line)


class PlatformCapabilities(ABC):
    """Operations the monitors need from the host."""

    name = "abstract"

    # ---------- service ----------

    @abstractmethod
    def service_is_active(self, identifier: str) -> bool:
        """True if the service is running. Raises ProbeError."""

    @abstractmethod
    def restart_service(self, identifier: str) -> None:
        """Start or restart the service. Raises RemediationError."""

    # ---------- files ----------

    @abstractmethod
    def set_immutable(self, path: str) -> None:
        """Set the filesystem immutability flag. Raises RemediationError."""

    @abstractmethod
    def clear_immutable(self, path: str) -> None:
        """Clear the filesystem immutability flag. Raises RemediationError."""

    # ---------- packet filter ----------

    @abstractmethod
    def render_rules(self, rules: Sequence[FirewallRule]) -> List[str]:
        """Render rules, in order, to the canonical form `read_rules` returns."""

    @abstractmethod
    def read_rules(self) -> List[str]:
        """Live rules of the daemon's chain/anchor, in order. Raises ProbeError."""

    @abstractmethod
    def hook_present(self) -> bool:
        """True if traffic is routed through the daemon's chain/anchor."""

    @abstractmethod
    def apply_rules(self, rendered: Sequence[str]) -> None:
        """Replace the chain/anchor content and ensure the hook. Raises RemediationError."""

    # ---------- bypass inspection ----------

    def list_process_names(self) -> Set[str]:
        """Names of running processes."""
        names = set()
        try:
            for proc in psutil.process_iter(['name']):
                try:
                    name = proc.info.get('name')
                    if name:
                        names.add(name)
                except (psutil.NoSuchProcess, psutil.ZombieProcess):
                    continue
        except psutil.AccessDenied as e:
            raise ProbeError(f"Process listing denied: {e}") from e
        return names

    def list_listening_ports(self) -> Set[int]:
        """Local TCP ports in LISTEN state."""
        try:
            connections = psutil.net_connections(kind='tcp')
        except psutil.AccessDenied as e:
            raise ProbeError(f"Socket listing denied: {e}") from e

        return {
            conn.laddr.port
            for conn in connections
            if conn.status == psutil.CONN_LISTEN and conn.laddr
        }

    # ---------- helpers ----------

    def _run(
        self,
        cmd: List[str],
        timeout: float = Timeouts.SUBPROCESS_DEFAULT,
        error_cls: Type[WardenError] = ProbeError,
        check: bool = True,
        input_text: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        """Run a command, mapping launch failures and timeouts to `error_cls`."""
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                input=input_text,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise error_cls(f"{cmd[0]} timed out after {timeout}s")
        except OSError as e:
            raise error_cls(f"{cmd[0]} could not be run: {e}") from e

        if check and result.returncode != 0:
            error = (result.stderr or result.stdout or '').strip()
            raise error_cls(f"{' '.join(cmd[:3])} failed ({result.returncode}): {error}")
        return result

    def _remediate(self, cmd: List[str], timeout: float = Timeouts.SUBPROCESS_DEFAULT, **kwargs):
        return self._run(cmd, timeout=timeout, error_cls=RemediationError, **kwargs)

    def describe(self) -> str:
        return self.name
