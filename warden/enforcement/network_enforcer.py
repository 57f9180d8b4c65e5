"""
Network Enforcer - keeps the egress rule set in place and watches for tunnel bypass.

Every tick the live rules of the daemon's chain (iptables) or anchor (pf)
are read back and diffed against the rendered policy rules. Any drift
(a missing rule, an extra rule, rules out of order, or the hook into the
main ruleset gone) triggers re-application of the complete desired set,
in declaration order, followed by a verification read. When nothing has
drifted nothing is written, so applying twice is the same as applying once.

The bypass scan compares running process names and listening TCP ports
against the policy's signature list. Matches are reported, never killed.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set

from ..event_bus import EventSource, Severity
from ..policy.models import NetworkRuleSet, Policy
from ..utils.error_handling import ErrorCategory, ProbeError, RemediationError, WardenError
from .base import Monitor

logger = logging.getLogger(__name__)

BYPASS_ENTITY = "network:bypass"


@dataclass
class RuleDiff:
    """Difference between the desired and the live rule table"""
    missing: List[str] = field(default_factory=list)
    extra: List[str] = field(default_factory=list)
    order_drift: bool = False
    hook_missing: bool = False

    @property
    def has_drift(self) -> bool:
        return bool(self.missing or self.extra or self.order_drift or self.hook_missing)

    def describe(self) -> str:
        parts = []
        if self.missing:
            parts.append(f"{len(self.missing)} missing")
        if self.extra:
            parts.append(f"{len(self.extra)} unexpected")
        if self.order_drift:
            parts.append("order changed")
        if self.hook_missing:
            parts.append("hook removed")
        return ", ".join(parts) if parts else "no drift"


def diff_rules(desired: Sequence[str], live: Sequence[str], hooked: bool = True) -> RuleDiff:
    """Compare rendered desired rules to the live table, both in order."""
    desired_set = set(desired)
    live_set = set(live)
    diff = RuleDiff(
        missing=[rule for rule in desired if rule not in live_set],
        extra=[rule for rule in live if rule not in desired_set],
        hook_missing=not hooked,
    )
    if not diff.missing and not diff.extra and list(desired) != list(live):
        diff.order_drift = True
    return diff


class NetworkEnforcer(Monitor):
    """Rule-set drift repair plus bypass detection."""

    name = "network"
    source = EventSource.NETWORK
    error_category = ErrorCategory.NETWORK

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._seen_processes: Set[str] = set()
        self._seen_ports: Set[int] = set()
        self._reapplied = 0
        self._last_diff: Optional[RuleDiff] = None

    def interval(self, policy: Policy) -> float:
        return policy.schedule.network_interval

    def start(self, policy: Policy) -> None:
        self.locks.claim(NetworkRuleSet.ENTITY, self.name)

    def shutdown(self) -> None:
        # Rules stay in place after the daemon exits
        self.locks.release(NetworkRuleSet.ENTITY, self.name)

    def on_policy_reload(self, old: Policy, new: Policy) -> None:
        if old.network != new.network:
            self.trigger.set()

    # ---------- rules ----------

    def compare(self, policy: Policy) -> RuleDiff:
        """Diff live state against `policy`. Raises ProbeError."""
        desired = self.platform.render_rules(policy.network.rules)
        live = self.platform.read_rules()
        hooked = self.platform.hook_present()
        return diff_rules(desired, live, hooked)

    def apply(self, policy: Policy) -> RuleDiff:
        """
        Make the live rules match `policy`, writing only if they differ.

        Returns the diff found before applying.

        Raises:
            ProbeError: live rules could not be read
            RemediationError: re-application failed or did not stick
        """
        diff = self.compare(policy)
        self._last_diff = diff
        if not diff.has_drift:
            return diff

        desired = self.platform.render_rules(policy.network.rules)
        try:
            self.platform.apply_rules(desired)
        except WardenError as e:
            raise RemediationError(f"rule application failed: {e}") from e
        self._reapplied += 1

        after = self.compare(policy)
        if after.has_drift:
            raise RemediationError(f"rules still drifted after re-application: {after.describe()}")
        return diff

    def tick(self, policy: Policy) -> None:
        entity = NetworkRuleSet.ENTITY
        with self.locks.lock_for(entity):
            self._enforce_rules(policy, entity)
        if not self.stop_event.is_set():
            self.scan_bypass(policy)

    def _enforce_rules(self, policy: Policy, entity: str) -> None:
        try:
            diff = self.compare(policy)
        except ProbeError as e:
            self.probe_failed(entity, e)
            return
        self.probe_succeeded(entity)

        if not diff.has_drift:
            self._last_diff = diff
            return

        logger.warning(f"Egress rule drift: {diff.describe()}")
        try:
            self.apply(policy)
            remediated = True
            outcome = "rule set re-applied"
        except (ProbeError, RemediationError) as e:
            logger.error(f"Re-applying egress rules failed: {e}")
            remediated = False
            outcome = f"re-application failed: {e}"

        self.emit(
            Severity.CRITICAL,
            'rule_drift',
            entity,
            f"Egress rules drifted ({diff.describe()}); {outcome}",
            remediated=remediated,
        )

    # ---------- bypass ----------

    def scan_bypass(self, policy: Policy) -> None:
        signatures = policy.network.bypass
        if not signatures.processes and not signatures.ports:
            return

        try:
            wanted = {name.lower() for name in signatures.processes}
            processes = {
                name for name in self.platform.list_process_names()
                if name.lower() in wanted
            } if wanted else set()
            ports = self.platform.list_listening_ports() & set(signatures.ports) if signatures.ports else set()
        except ProbeError as e:
            self.probe_failed(BYPASS_ENTITY, e)
            return
        self.probe_succeeded(BYPASS_ENTITY)

        for name in sorted(processes - self._seen_processes):
            self.emit(
                Severity.WARNING,
                'bypass_process',
                f"process:{name}",
                f"Known tunnel-bypass process running: {name}",
            )
        for port in sorted(ports - self._seen_ports):
            self.emit(
                Severity.WARNING,
                'bypass_listener',
                f"port:{port}",
                f"Known tunnel-bypass port listening: {port}",
            )

        # A match that disappears and comes back is reported again
        self._seen_processes = processes
        self._seen_ports = ports

    # ---------- status ----------

    def get_status(self) -> Dict:
        status = self.get_stats()
        status.update({
            'platform': self.platform.describe(),
            'reapplied': self._reapplied,
            'last_diff': self._last_diff.describe() if self._last_diff else None,
            'bypass_processes_seen': sorted(self._seen_processes),
            'bypass_ports_seen': sorted(self._seen_ports),
        })
        return status
