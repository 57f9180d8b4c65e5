"""
Tests for warden/platform - Host capabilities

Tests cover:
- Canonical rule form shared by rendering and read-back
- Linux: systemctl state parsing, iptables rendering, read-back, restore payload and hook
- macOS: launchctl state parsing, pf rendering, anchor load and hook
- Subprocess failures mapped to ProbeError / RemediationError
- psutil-based process and listener inspection
- Platform selection
"""

import os
import subprocess
from unittest.mock import MagicMock, patch

import psutil
import pytest

import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from warden.platform import LinuxPlatform, MacOSPlatform, select_platform
from warden.platform.base import canonical_rule, split_rule
from warden.policy.store import parse_rule
from warden.utils.error_handling import ProbeError, RemediationError, WardenError

RUN = 'warden.platform.base.subprocess.run'


def completed(cmd=None, returncode=0, stdout='', stderr=''):
    return subprocess.CompletedProcess(cmd or [], returncode, stdout=stdout, stderr=stderr)


def rule(**entry):
    return parse_rule(entry, 0)


class FakeRunner:
    """Answers subprocess.run by command prefix and records every call."""

    def __init__(self, answers):
        self.answers = answers
        self.calls = []

    def __call__(self, cmd, **kwargs):
        self.calls.append((cmd, kwargs))
        for prefix, result in self.answers:
            if cmd[:len(prefix)] == prefix:
                return result
        return completed(cmd)

    def commands(self):
        return [cmd for cmd, _ in self.calls]


# ===========================================================================
# Canonical form
# ===========================================================================

class TestCanonicalRule:
    """Tests for canonical_rule / split_rule."""

    @pytest.mark.unit
    def test_bare_tokens(self):
        assert canonical_rule(['-A', 'X', '-j', 'DROP']) == '-A X -j DROP'

    @pytest.mark.unit
    def test_whitespace_tokens_quoted(self):
        line = canonical_rule(['-m', 'comment', '--comment', 'default deny'])
        assert line == '-m comment --comment "default deny"'
        assert split_rule(line) == ['-m', 'comment', '--comment', 'default deny']


# ===========================================================================
# Linux
# ===========================================================================

class TestLinuxService:
    """Tests for systemctl handling."""

    @pytest.mark.unit
    @pytest.mark.parametrize("state,expected", [
        ("active", True),
        ("activating", True),
        ("inactive", False),
        ("failed", False),
    ])
    def test_is_active_states(self, state, expected):
        with patch(RUN, return_value=completed(returncode=0 if expected else 3, stdout=f"{state}\n")):
            assert LinuxPlatform().service_is_active("zscaler") is expected

    @pytest.mark.unit
    def test_unknown_state_is_probe_error(self):
        with patch(RUN, return_value=completed(returncode=4, stdout="unknown\n")):
            with pytest.raises(ProbeError):
                LinuxPlatform().service_is_active("zscaler")

    @pytest.mark.unit
    def test_timeout_is_probe_error(self):
        with patch(RUN, side_effect=subprocess.TimeoutExpired(['systemctl'], 5)):
            with pytest.raises(ProbeError, match="timed out"):
                LinuxPlatform().service_is_active("zscaler")

    @pytest.mark.unit
    def test_missing_tool_is_probe_error(self):
        with patch(RUN, side_effect=FileNotFoundError("systemctl")):
            with pytest.raises(ProbeError):
                LinuxPlatform().service_is_active("zscaler")

    @pytest.mark.unit
    def test_restart_failure_is_remediation_error(self):
        with patch(RUN, return_value=completed(returncode=1, stderr="Unit zscaler.service not found.")):
            with pytest.raises(RemediationError, match="not found"):
                LinuxPlatform().restart_service("zscaler")

    @pytest.mark.unit
    def test_chattr_commands(self):
        runner = FakeRunner([])
        with patch(RUN, side_effect=runner):
            LinuxPlatform().clear_immutable("/opt/client/policy.xml")
            LinuxPlatform().set_immutable("/opt/client/policy.xml")
        assert runner.commands() == [
            ['chattr', '-i', '/opt/client/policy.xml'],
            ['chattr', '+i', '/opt/client/policy.xml'],
        ]


class TestLinuxRules:
    """Tests for iptables rendering and read-back."""

    @pytest.mark.unit
    def test_render(self):
        platform = LinuxPlatform()
        rendered = platform.render_rules([
            rule(action='ACCEPT', out_interface='lo'),
            rule(action='ACCEPT', destination='165.225.0.0/16', port=443),
            rule(action='REJECT', protocol='udp', port=53),
            rule(action='DROP', comment='default deny'),
        ])
        assert rendered == [
            '-A WARDEN_EGRESS -o lo -j ACCEPT',
            '-A WARDEN_EGRESS -d 165.225.0.0/16 -p tcp -m tcp --dport 443 -j ACCEPT',
            '-A WARDEN_EGRESS -p udp -m udp --dport 53 -j REJECT --reject-with icmp-port-unreachable',
            '-A WARDEN_EGRESS -m comment --comment "default deny" -j DROP',
        ]

    @pytest.mark.unit
    def test_read_back_matches_render(self):
        platform = LinuxPlatform()
        output = (
            "-N WARDEN_EGRESS\n"
            "-A WARDEN_EGRESS -o lo -j ACCEPT\n"
            "-A WARDEN_EGRESS -m comment --comment \"default deny\" -j DROP\n"
        )
        with patch(RUN, return_value=completed(stdout=output)):
            live = platform.read_rules()
        assert live == platform.render_rules([
            rule(action='ACCEPT', out_interface='lo'),
            rule(action='DROP', comment='default deny'),
        ])

    @pytest.mark.unit
    def test_missing_chain_reads_empty(self):
        result = completed(returncode=1, stderr="iptables: No chain/target/match by that name.")
        with patch(RUN, return_value=result):
            assert LinuxPlatform().read_rules() == []

    @pytest.mark.unit
    def test_read_failure_is_probe_error(self):
        result = completed(returncode=4, stderr="Permission denied (you must be root)")
        with patch(RUN, return_value=result):
            with pytest.raises(ProbeError):
                LinuxPlatform().read_rules()

    @pytest.mark.unit
    def test_restore_payload(self):
        payload = LinuxPlatform().restore_payload(['-A WARDEN_EGRESS -j DROP'])
        assert payload == "*filter\n:WARDEN_EGRESS - [0:0]\n-A WARDEN_EGRESS -j DROP\nCOMMIT\n"

    @pytest.mark.unit
    @pytest.mark.parametrize("output,expected", [
        ("-P OUTPUT ACCEPT\n-A OUTPUT -j WARDEN_EGRESS\n-A OUTPUT -o lo -j ACCEPT\n", True),
        ("-P OUTPUT ACCEPT\n-A OUTPUT -o lo -j ACCEPT\n-A OUTPUT -j WARDEN_EGRESS\n", False),
        ("-P OUTPUT ACCEPT\n", False),
    ])
    def test_hook_must_be_first(self, output, expected):
        with patch(RUN, return_value=completed(stdout=output)):
            assert LinuxPlatform().hook_present() is expected

    @pytest.mark.unit
    def test_apply_restores_chain_and_hook(self):
        runner = FakeRunner([
            (['iptables', '-w', '-S', 'OUTPUT'], completed(stdout="-P OUTPUT ACCEPT\n")),
            (['iptables', '-w', '-D'], completed(returncode=1, stderr="Bad rule")),
        ])
        with patch(RUN, side_effect=runner):
            LinuxPlatform().apply_rules(['-A WARDEN_EGRESS -j DROP'])

        commands = runner.commands()
        assert commands[0] == ['iptables-restore', '-w', '--noflush']
        assert runner.calls[0][1]['input'].startswith("*filter\n")
        assert commands[-1] == ['iptables', '-w', '-I', 'OUTPUT', '1', '-j', 'WARDEN_EGRESS']

    @pytest.mark.unit
    def test_apply_failure_is_remediation_error(self):
        runner = FakeRunner([
            (['iptables-restore'], completed(returncode=2, stderr="line 3 failed")),
        ])
        with patch(RUN, side_effect=runner):
            with pytest.raises(RemediationError, match="line 3 failed"):
                LinuxPlatform().apply_rules(['-A WARDEN_EGRESS -j DROP'])


# ===========================================================================
# macOS
# ===========================================================================

LAUNCHCTL_RUNNING = """system/com.zscaler.service = {
\tactive count = 1
\tpath = /Library/LaunchDaemons/com.zscaler.service.plist
\tstate = running
}
"""


class TestMacOSService:
    """Tests for launchctl handling."""

    @pytest.mark.unit
    def test_running(self):
        with patch(RUN, return_value=completed(stdout=LAUNCHCTL_RUNNING)):
            assert MacOSPlatform().service_is_active("com.zscaler.service") is True

    @pytest.mark.unit
    def test_not_running(self):
        stdout = LAUNCHCTL_RUNNING.replace("state = running", "state = not running")
        with patch(RUN, return_value=completed(stdout=stdout)):
            assert MacOSPlatform().service_is_active("com.zscaler.service") is False

    @pytest.mark.unit
    def test_not_loaded(self):
        result = completed(returncode=113, stderr="Could not find service \"com.zscaler.service\"")
        with patch(RUN, return_value=result):
            assert MacOSPlatform().service_is_active("com.zscaler.service") is False

    @pytest.mark.unit
    def test_other_failure_is_probe_error(self):
        with patch(RUN, return_value=completed(returncode=1, stderr="Operation not permitted")):
            with pytest.raises(ProbeError):
                MacOSPlatform().service_is_active("com.zscaler.service")

    @pytest.mark.unit
    def test_kickstart(self):
        runner = FakeRunner([])
        with patch(RUN, side_effect=runner):
            MacOSPlatform().restart_service("com.zscaler.service")
        assert runner.commands() == [['launchctl', 'kickstart', '-k', 'system/com.zscaler.service']]


class TestMacOSRules:
    """Tests for pf rendering, anchor load and hook."""

    @pytest.mark.unit
    @pytest.mark.parametrize("entry,expected", [
        ({'action': 'ACCEPT', 'out_interface': 'utun4'},
         'pass out quick on utun4 all flags S/SA keep state'),
        ({'action': 'ACCEPT', 'destination': '10.1.2.3', 'port': 443},
         'pass out quick inet proto tcp from any to 10.1.2.3 port = 443 flags S/SA keep state'),
        ({'action': 'ACCEPT', 'protocol': 'udp', 'port': 53},
         'pass out quick proto udp from any to any port = 53 keep state'),
        ({'action': 'REJECT', 'destination': '2001:db8::/32'},
         'block return out quick inet6 from any to 2001:db8::/32'),
        ({'action': 'DROP', 'comment': 'default deny'},
         'block drop out quick all label "default deny"'),
    ])
    def test_render(self, entry, expected):
        assert MacOSPlatform().render_rule(rule(**entry)) == expected

    @pytest.mark.unit
    def test_read_rules(self):
        output = "pass out quick on utun4 all flags S/SA keep state\nblock drop out quick all\n"
        with patch(RUN, return_value=completed(stdout=output)):
            assert MacOSPlatform().read_rules() == [
                'pass out quick on utun4 all flags S/SA keep state',
                'block drop out quick all',
            ]

    @pytest.mark.unit
    def test_hook_present(self):
        runner = FakeRunner([
            (['pfctl', '-s', 'info'], completed(stdout="Status: Enabled for 3 days\n")),
            (['pfctl', '-sr'], completed(stdout='scrub-anchor "com.apple/*" all\nanchor "com.apple/*" all\n')),
        ])
        with patch(RUN, side_effect=runner):
            assert MacOSPlatform().hook_present() is True

    @pytest.mark.unit
    def test_hook_absent_when_pf_disabled(self):
        runner = FakeRunner([
            (['pfctl', '-s', 'info'], completed(stdout="Status: Disabled\n")),
            (['pfctl', '-sr'], completed(stdout='anchor "com.apple/*" all\n')),
        ])
        with patch(RUN, side_effect=runner):
            assert MacOSPlatform().hook_present() is False

    @pytest.mark.unit
    def test_apply_reloads_main_ruleset_and_enables(self):
        runner = FakeRunner([
            (['pfctl', '-s', 'info'], completed(stdout="Status: Disabled\n")),
            (['pfctl', '-sr'], completed(stdout="")),
        ])
        with patch(RUN, side_effect=runner):
            MacOSPlatform().apply_rules(['block drop out quick all'])

        commands = runner.commands()
        assert ['pfctl', '-f', '/etc/pf.conf'] in commands
        load = commands.index(['pfctl', '-a', 'com.apple/250.WardenEgress', '-f', '-'])
        assert runner.calls[load][1]['input'] == "block drop out quick all\n"
        assert commands[-1] == ['pfctl', '-E']


# ===========================================================================
# psutil inspection and selection
# ===========================================================================

class TestInspection:
    """Tests for the psutil-backed helpers."""

    @pytest.mark.unit
    def test_list_process_names(self):
        procs = [MagicMock(info={'name': 'tor'}), MagicMock(info={'name': None}), MagicMock(info={'name': 'sshd'})]
        with patch('warden.platform.base.psutil.process_iter', return_value=procs):
            assert LinuxPlatform().list_process_names() == {'tor', 'sshd'}

    @pytest.mark.unit
    def test_list_listening_ports(self):
        listening = MagicMock(status=psutil.CONN_LISTEN)
        listening.laddr.port = 9050
        established = MagicMock(status=psutil.CONN_ESTABLISHED)
        established.laddr.port = 51000
        with patch('warden.platform.base.psutil.net_connections', return_value=[listening, established]):
            assert LinuxPlatform().list_listening_ports() == {9050}

    @pytest.mark.unit
    def test_socket_listing_denied(self):
        with patch('warden.platform.base.psutil.net_connections', side_effect=psutil.AccessDenied()):
            with pytest.raises(ProbeError):
                MacOSPlatform().list_listening_ports()


class TestSelectPlatform:
    """Tests for select_platform."""

    @pytest.mark.unit
    def test_explicit(self):
        assert isinstance(select_platform('linux'), LinuxPlatform)
        assert isinstance(select_platform('macos'), MacOSPlatform)

    @pytest.mark.unit
    def test_unsupported(self):
        with pytest.raises(WardenError):
            select_platform('windows')
