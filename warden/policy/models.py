"""
Policy data model.

A Policy is the desired state the monitors reconcile against. Every type
here is frozen: monitors share one snapshot and never mutate it. A reload
builds a new Policy and swaps the reference.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from ..constants import AlertDefaults, Intervals, Timeouts
from ..event_bus import Severity


class Platform(Enum):
    """Supported host platforms"""
    LINUX = "linux"
    MACOS = "macos"


class RuleAction(Enum):
    """Packet-filter verdicts"""
    ACCEPT = "ACCEPT"
    DROP = "DROP"
    REJECT = "REJECT"


@dataclass(frozen=True)
class ServiceSpec:
    """The protection client service that must be kept running"""
    platform: Platform
    identifier: str
    expected_running: bool = True

    @property
    def entity(self) -> str:
        return f"service:{self.identifier}"


@dataclass(frozen=True)
class ProtectedFile:
    """
    A configuration or binary path that must match its reference copy.

    `expected_hash` is computed from `reference_path` when the policy is
    loaded; it is never taken from the policy document on trust.
    """
    path: str
    reference_path: str
    expected_hash: str
    expected_mode: int
    expected_uid: int
    expected_gid: int
    immutable: bool = True

    @property
    def entity(self) -> str:
        return f"file:{self.path}"


@dataclass(frozen=True)
class FirewallRule:
    """One egress rule, rendered per platform in declaration order"""
    action: RuleAction
    out_interface: Optional[str] = None
    destination: Optional[str] = None
    protocol: Optional[str] = None
    port: Optional[int] = None
    comment: Optional[str] = None


@dataclass(frozen=True)
class BypassSignatures:
    """Known tunnel-bypass tooling: process names and listening ports"""
    processes: Tuple[str, ...] = ()
    ports: Tuple[int, ...] = ()


@dataclass(frozen=True)
class NetworkRuleSet:
    """Ordered egress rules plus the bypass signature list"""
    rules: Tuple[FirewallRule, ...] = ()
    bypass: BypassSignatures = field(default_factory=BypassSignatures)

    ENTITY = "network:ruleset"


@dataclass(frozen=True)
class SinkConfig:
    """Routing entry for one alert sink"""
    type: str
    name: str
    min_severity: Severity = Severity.INFO
    settings: Dict[str, Any] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class AlertRouting:
    """Dedupe, throttle and sink routing configuration"""
    throttle_window: float = AlertDefaults.THROTTLE_WINDOW
    retention: float = AlertDefaults.RETENTION
    dedupe_per_entity: bool = AlertDefaults.DEDUPE_PER_ENTITY
    sinks: Tuple[SinkConfig, ...] = ()


@dataclass(frozen=True)
class Schedule:
    """Monitor cadence"""
    service_interval: float = Intervals.SERVICE_CHECK
    file_rescan_interval: float = Intervals.FILE_RESCAN
    network_interval: float = Intervals.NETWORK_CHECK
    file_scan_timeout: float = Timeouts.FILE_SCAN


@dataclass(frozen=True)
class Policy:
    """Complete desired state, immutable per run"""
    service: ServiceSpec
    protected_files: Tuple[ProtectedFile, ...]
    network: NetworkRuleSet
    alerting: AlertRouting
    schedule: Schedule
    source: str
    loaded_at: str
    version: int = 1

    def summary(self) -> Dict[str, Any]:
        return {
            'source': self.source,
            'loaded_at': self.loaded_at,
            'version': self.version,
            'service': self.service.identifier,
            'platform': self.service.platform.value,
            'protected_files': len(self.protected_files),
            'network_rules': len(self.network.rules),
            'bypass_processes': len(self.network.bypass.processes),
            'bypass_ports': len(self.network.bypass.ports),
            'sinks': [s.name for s in self.alerting.sinks],
        }
