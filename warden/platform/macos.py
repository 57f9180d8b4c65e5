"""
macOS capabilities: launchd, chflags and pf.

Egress rules are loaded into a sub-anchor of "com.apple/*", which the stock
/etc/pf.conf already evaluates, so the hook only requires pf to be enabled
and the main ruleset to still reference the com.apple anchor.
"""

import ipaddress
import logging
from typing import List, Sequence

from ..constants import FirewallNames, Timeouts
from ..policy.models import FirewallRule, RuleAction
from ..utils.error_handling import ProbeError
from .base import PlatformCapabilities

logger = logging.getLogger(__name__)

APPLE_ANCHOR_REF = 'anchor "com.apple/*"'


class MacOSPlatform(PlatformCapabilities):
    """launchctl / chflags / pfctl"""

    name = "macos"

    def __init__(self, anchor: str = FirewallNames.PF_ANCHOR, pf_conf: str = FirewallNames.PF_CONF):
        self.anchor = anchor
        self.pf_conf = pf_conf

    # ---------- service ----------

    def service_is_active(self, identifier: str) -> bool:
        result = self._run(
            ['launchctl', 'print', f'system/{identifier}'],
            timeout=Timeouts.SERVICE_PROBE,
            check=False,
        )
        if result.returncode != 0:
            # launchctl exits 113 for an unknown (unloaded) service
            if result.returncode == 113 or 'Could not find service' in result.stderr:
                return False
            raise ProbeError(f"launchctl print {identifier} failed: {result.stderr.strip()}")

        for line in result.stdout.splitlines():
            line = line.strip()
            if line.startswith('state ='):
                return line.split('=', 1)[1].strip() == 'running'
        return False

    def restart_service(self, identifier: str) -> None:
        self._remediate(
            ['launchctl', 'kickstart', '-k', f'system/{identifier}'],
            timeout=Timeouts.SERVICE_RESTART,
        )

    # ---------- files ----------

    def set_immutable(self, path: str) -> None:
        self._remediate(['chflags', 'schg', path], timeout=Timeouts.SUBPROCESS_SHORT)

    def clear_immutable(self, path: str) -> None:
        self._remediate(['chflags', 'noschg', path], timeout=Timeouts.SUBPROCESS_SHORT)

    # ---------- pf ----------

    def render_rule(self, rule: FirewallRule) -> str:
        """Render one rule the way `pfctl -sr` prints it back."""
        if rule.action == RuleAction.ACCEPT:
            parts = ['pass', 'out', 'quick']
        elif rule.action == RuleAction.REJECT:
            parts = ['block', 'return', 'out', 'quick']
        else:
            parts = ['block', 'drop', 'out', 'quick']

        if rule.out_interface:
            parts += ['on', rule.out_interface]

        network = ipaddress.ip_network(rule.destination) if rule.destination else None
        if network is not None:
            parts.append('inet' if network.version == 4 else 'inet6')
        if rule.protocol:
            parts += ['proto', rule.protocol]

        if network is None and not rule.port:
            parts.append('all')
        else:
            target = 'any'
            if network is not None:
                target = str(network.network_address) if network.num_addresses == 1 else str(network)
            parts += ['from', 'any', 'to', target]
            if rule.port:
                parts += ['port', '=', str(rule.port)]

        if rule.action == RuleAction.ACCEPT:
            if rule.protocol in (None, 'tcp'):
                parts += ['flags', 'S/SA']
            parts += ['keep', 'state']

        if rule.comment:
            parts += ['label', f'"{rule.comment}"']
        return ' '.join(parts)

    def render_rules(self, rules: Sequence[FirewallRule]) -> List[str]:
        return [self.render_rule(rule) for rule in rules]

    def read_rules(self) -> List[str]:
        result = self._run(['pfctl', '-a', self.anchor, '-sr'], check=False)
        if result.returncode != 0:
            raise ProbeError(f"pfctl -a {self.anchor} -sr failed: {result.stderr.strip()}")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def _pf_enabled(self) -> bool:
        result = self._run(['pfctl', '-s', 'info'], check=False)
        return 'Status: Enabled' in result.stdout

    def _main_references_anchor(self) -> bool:
        result = self._run(['pfctl', '-sr'], check=False)
        return any(line.strip().startswith(APPLE_ANCHOR_REF) for line in result.stdout.splitlines())

    def hook_present(self) -> bool:
        return self._pf_enabled() and self._main_references_anchor()

    def apply_rules(self, rendered: Sequence[str]) -> None:
        if not self._main_references_anchor():
            logger.warning(f"Main pf ruleset lost {APPLE_ANCHOR_REF}, reloading {self.pf_conf}")
            self._remediate(['pfctl', '-f', self.pf_conf])

        self._remediate(
            ['pfctl', '-a', self.anchor, '-f', '-'],
            input_text='\n'.join(rendered) + '\n',
        )

        if not self._pf_enabled():
            # pfctl -E exits non-zero when pf was already enabled
            self._remediate(['pfctl', '-E'], check=False)
