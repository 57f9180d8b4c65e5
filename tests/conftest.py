"""
Pytest configuration and shared fixtures for Tunnel Warden tests.

This module provides common fixtures for testing the warden components:
a fake platform capability, temp directories, policy builders and an
event bus helper.
"""

import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional, Sequence

import pytest
import yaml

# Add the parent directory to the path for imports
import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from warden.audit_log import AuditLog
from warden.enforcement.locks import RemediationLocks
from warden.event_bus import TamperEvent, TamperEventBus
from warden.platform.base import PlatformCapabilities
from warden.platform.linux import LinuxPlatform
from warden.policy.models import FirewallRule
from warden.policy.store import PolicyStore
from warden.utils.error_handling import ProbeError, RemediationError


# ===========================================================================
# Temporary Directory Fixtures
# ===========================================================================

@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory that is cleaned up after the test."""
    tmpdir = tempfile.mkdtemp(prefix="warden_test_")
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


# ===========================================================================
# Fake Platform
# ===========================================================================

class FakePlatform(PlatformCapabilities):
    """
    In-memory host: a service flag, an immutability set and a rule table.

    Rules are rendered exactly as the Linux backend renders them so the
    enforcer's diffing runs against realistic strings.
    """

    name = "fake"

    def __init__(self):
        self._renderer = LinuxPlatform()

        self.service_active = True
        self.restart_succeeds = True
        self.restart_calls: List[str] = []
        self.probe_error: Optional[str] = None

        self.immutable: set = set()
        self.immutable_calls: List[str] = []

        self.live_rules: List[str] = []
        self.hooked = False
        self.apply_calls = 0
        self.read_error: Optional[str] = None
        self.apply_error: Optional[str] = None

        self.processes: set = set()
        self.ports: set = set()

    # service
    def service_is_active(self, identifier: str) -> bool:
        if self.probe_error:
            raise ProbeError(self.probe_error)
        return self.service_active

    def restart_service(self, identifier: str) -> None:
        self.restart_calls.append(identifier)
        self.service_active = self.restart_succeeds

    # files
    def set_immutable(self, path: str) -> None:
        self.immutable_calls.append(f"+{path}")
        self.immutable.add(path)

    def clear_immutable(self, path: str) -> None:
        self.immutable_calls.append(f"-{path}")
        self.immutable.discard(path)

    # rules
    def render_rules(self, rules: Sequence[FirewallRule]) -> List[str]:
        return self._renderer.render_rules(rules)

    def read_rules(self) -> List[str]:
        if self.read_error:
            raise ProbeError(self.read_error)
        return list(self.live_rules)

    def hook_present(self) -> bool:
        return self.hooked

    def apply_rules(self, rendered: Sequence[str]) -> None:
        self.apply_calls += 1
        if self.apply_error:
            raise RemediationError(self.apply_error)
        self.live_rules = list(rendered)
        self.hooked = True

    # bypass
    def list_process_names(self):
        return set(self.processes)

    def list_listening_ports(self):
        return set(self.ports)


@pytest.fixture
def fake_platform() -> FakePlatform:
    """Provide a fresh FakePlatform."""
    return FakePlatform()


# ===========================================================================
# Bus / Audit / Locks Fixtures
# ===========================================================================

@pytest.fixture
def bus() -> TamperEventBus:
    return TamperEventBus(capacity=64)


@pytest.fixture
def locks() -> RemediationLocks:
    return RemediationLocks()


@pytest.fixture
def audit_log(temp_dir: Path) -> AuditLog:
    return AuditLog(str(temp_dir / "audit" / "audit.log"))


def drain_events(bus: TamperEventBus) -> List[TamperEvent]:
    """Everything currently on the bus, in order."""
    events = []
    while True:
        event = bus.consume(timeout=0)
        if event is None:
            return events
        events.append(event)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ===========================================================================
# Policy Builders
# ===========================================================================

REFERENCE_CONTENT = b"<policy><tunnel mode='strict'/></policy>\n"


class PolicyEnv:
    """A temp tree with one protected file, its reference copy and a policy file."""

    def __init__(self, root: Path):
        self.root = root
        self.reference_dir = root / "reference"
        self.live_dir = root / "opt" / "client" / "config"
        self.reference_dir.mkdir(parents=True)
        self.live_dir.mkdir(parents=True)

        self.reference = self.reference_dir / "policy.xml"
        self.protected = self.live_dir / "policy.xml"
        self.reference.write_bytes(REFERENCE_CONTENT)
        os.chmod(self.reference, 0o644)
        self.protected.write_bytes(REFERENCE_CONTENT)
        os.chmod(self.protected, 0o644)

        self.policy_path = root / "policy.yaml"

    def document(self, **overrides) -> Dict[str, Any]:
        doc = {
            'version': 1,
            'service': {'platform': 'linux', 'identifier': 'zscaler'},
            'protected_files': [{
                'path': str(self.protected),
                'reference': str(self.reference),
                'mode': '0644',
                'immutable': True,
            }],
            'network': {
                'rules': [
                    {'action': 'ACCEPT', 'out_interface': 'lo'},
                    {'action': 'ACCEPT', 'out_interface': 'zcctun0'},
                    {'action': 'ACCEPT', 'destination': '165.225.0.0/16', 'protocol': 'tcp', 'port': 443},
                    {'action': 'DROP', 'comment': 'default deny'},
                ],
                'bypass_signatures': {'processes': ['tor'], 'ports': [9050]},
            },
            'alerting': {'throttle_window': 300, 'sinks': [{'type': 'log', 'name': 'local'}]},
            'schedule': {
                'service_interval': 0.05,
                'file_rescan_interval': 0.05,
                'network_interval': 0.05,
            },
        }
        doc.update(overrides)
        return doc

    def write(self, **overrides) -> str:
        with open(self.policy_path, 'w') as f:
            yaml.safe_dump(self.document(**overrides), f)
        return str(self.policy_path)

    def store(self, **overrides) -> PolicyStore:
        store = PolicyStore(self.write(**overrides))
        store.initialize()
        return store


@pytest.fixture
def policy_env(temp_dir: Path) -> PolicyEnv:
    """Provide a PolicyEnv rooted in a temp directory."""
    return PolicyEnv(temp_dir)


@pytest.fixture
def policy(policy_env: PolicyEnv):
    """Provide a loaded default Policy."""
    return policy_env.store().current()


# ===========================================================================
# Pytest Configuration
# ===========================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "security: Security-specific tests")
    config.addinivalue_line("markers", "slow: Slow tests (>1s)")
