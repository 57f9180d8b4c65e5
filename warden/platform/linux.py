"""
Linux capabilities: systemd, chattr and iptables.

The egress rules live in a dedicated chain (WARDEN_EGRESS) jumped to from
the first position of OUTPUT. The chain content is replaced in one
iptables-restore transaction so there is never a moment where the chain is
half written.
"""

import logging
from typing import List, Sequence

from ..constants import FirewallNames, Timeouts
from ..policy.models import FirewallRule, RuleAction
from ..utils.error_handling import ProbeError, RemediationError
from .base import PlatformCapabilities, canonical_rule, split_rule

logger = logging.getLogger(__name__)

# systemctl is-active states that count as up
ACTIVE_STATES = ('active', 'activating', 'reloading')
INACTIVE_STATES = ('inactive', 'failed', 'deactivating', 'maintenance')

REJECT_WITH = 'icmp-port-unreachable'


class LinuxPlatform(PlatformCapabilities):
    """systemctl / chattr / iptables"""

    name = "linux"

    def __init__(
        self,
        chain: str = FirewallNames.IPTABLES_CHAIN,
        hook_chain: str = FirewallNames.IPTABLES_HOOK_CHAIN,
    ):
        self.chain = chain
        self.hook_chain = hook_chain

    # ---------- service ----------

    def service_is_active(self, identifier: str) -> bool:
        result = self._run(
            ['systemctl', 'is-active', identifier],
            timeout=Timeouts.SERVICE_PROBE,
            check=False,
        )
        state = result.stdout.strip()
        if state in ACTIVE_STATES:
            return True
        if state in INACTIVE_STATES:
            return False
        raise ProbeError(
            f"systemctl is-active {identifier} returned {state or 'nothing'}: "
            f"{result.stderr.strip()}"
        )

    def restart_service(self, identifier: str) -> None:
        self._remediate(['systemctl', 'restart', identifier], timeout=Timeouts.SERVICE_RESTART)

    # ---------- files ----------

    def set_immutable(self, path: str) -> None:
        self._remediate(['chattr', '+i', path], timeout=Timeouts.SUBPROCESS_SHORT)

    def clear_immutable(self, path: str) -> None:
        self._remediate(['chattr', '-i', path], timeout=Timeouts.SUBPROCESS_SHORT)

    # ---------- iptables ----------

    def rule_tokens(self, rule: FirewallRule) -> List[str]:
        """Tokens in the order `iptables -S` prints them."""
        tokens = ['-A', self.chain]
        if rule.destination:
            tokens += ['-d', rule.destination]
        if rule.out_interface:
            tokens += ['-o', rule.out_interface]
        if rule.protocol:
            tokens += ['-p', rule.protocol]
            if rule.port:
                tokens += ['-m', rule.protocol, '--dport', str(rule.port)]
        if rule.comment:
            tokens += ['-m', 'comment', '--comment', rule.comment]
        tokens += ['-j', rule.action.value]
        if rule.action == RuleAction.REJECT:
            tokens += ['--reject-with', REJECT_WITH]
        return tokens

    def render_rules(self, rules: Sequence[FirewallRule]) -> List[str]:
        return [canonical_rule(self.rule_tokens(rule)) for rule in rules]

    def read_rules(self) -> List[str]:
        result = self._run(['iptables', '-w', '-S', self.chain], check=False)
        if result.returncode != 0:
            if 'No chain' in result.stderr or 'does not exist' in result.stderr:
                return []
            raise ProbeError(f"iptables -S {self.chain} failed: {result.stderr.strip()}")

        rules = []
        for line in result.stdout.splitlines():
            line = line.strip()
            if line.startswith('-A '):
                rules.append(canonical_rule(split_rule(line)))
        return rules

    def hook_present(self) -> bool:
        """The jump must be the first rule of the hook chain."""
        result = self._run(['iptables', '-w', '-S', self.hook_chain])
        for line in result.stdout.splitlines():
            line = line.strip()
            if line.startswith('-A '):
                return split_rule(line) == ['-A', self.hook_chain, '-j', self.chain]
        return False

    def restore_payload(self, rendered: Sequence[str]) -> str:
        lines = ['*filter', f':{self.chain} - [0:0]']
        lines.extend(rendered)
        lines.append('COMMIT')
        return '\n'.join(lines) + '\n'

    def apply_rules(self, rendered: Sequence[str]) -> None:
        # Declaring the chain in the payload flushes it; --noflush keeps
        # every other chain of the table intact.
        self._remediate(
            ['iptables-restore', '-w', '--noflush'],
            input_text=self.restore_payload(rendered),
        )
        self._ensure_hook()

    def _ensure_hook(self) -> None:
        if self.hook_present():
            return

        # Drop stale jumps that are no longer in first position
        for _ in range(16):
            result = self._run(
                ['iptables', '-w', '-D', self.hook_chain, '-j', self.chain],
                error_cls=RemediationError,
                check=False,
            )
            if result.returncode != 0:
                break

        self._remediate(['iptables', '-w', '-I', self.hook_chain, '1', '-j', self.chain])
        logger.info(f"Hooked {self.chain} into {self.hook_chain}")
