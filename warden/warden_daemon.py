"""
Tunnel Warden - keeps a VPN/zero-trust client service, its configuration
and its egress rules in place, and reports every deviation.

Entry point for the `tunnel-warden` console script and run_daemon.py.

Control:
    SIGHUP          reload the policy (a bad policy keeps the old one active)
    SIGTERM/SIGINT  graceful stop

Exit codes:
    0  normal stop
    1  policy could not be loaded at startup
    2  audit log could not be written
"""

import argparse
import json
import logging
import signal
import sys
from typing import List, Optional

from .audit_log import AuditLog
from .constants import Paths
from .logging_config import configure_from_environment
from .platform import host_platform_name, select_platform
from .policy.store import PolicyStore
from .reconciler import EXIT_AUDIT, EXIT_OK, EXIT_POLICY, Reconciler
from .utils.error_handling import AuditLogError, PolicyError, WardenError

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='tunnel-warden',
        description='Tunnel Warden - keep the VPN client running and self-heal tampering',
    )
    parser.add_argument('--policy', type=str, default=Paths.POLICY_FILE,
                        help='Policy document (YAML, or JSON by extension)')
    parser.add_argument('--audit-log', type=str, default=Paths.AUDIT_LOG,
                        help='Hash-chained audit log path')
    parser.add_argument('--log-file', type=str, default=None,
                        help='Also write daemon logs to this file')
    parser.add_argument('--log-json', action='store_true',
                        help='Emit logs as JSON lines')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Enable verbose logging')
    parser.add_argument('--platform', choices=['linux', 'macos'], default=None,
                        help='Override host platform detection')
    parser.add_argument('--no-watch', action='store_true',
                        help='Disable filesystem notifications, rely on periodic rescans')

    action = parser.add_mutually_exclusive_group()
    action.add_argument('--validate-policy', action='store_true',
                        help='Load and validate the policy, then exit')
    action.add_argument('--verify-audit-log', action='store_true',
                        help='Verify the audit log hash chain, then exit')
    action.add_argument('--once', action='store_true',
                        help='Run one reconciliation pass, print a status report, then exit')
    return parser


class WardenDaemon:
    """Wires the policy store, platform, audit log and reconciler together."""

    def __init__(
        self,
        policy_path: str,
        audit_log_path: str,
        platform_name: Optional[str] = None,
        use_observer: bool = True,
    ):
        self.platform_name = platform_name or host_platform_name()
        self.store = PolicyStore(policy_path, expected_platform=self.platform_name)
        self.audit_log_path = audit_log_path
        self.use_observer = use_observer
        self.reconciler: Optional[Reconciler] = None

    def setup(self) -> int:
        """Load policy and open the audit trail. Returns an exit code, 0 to continue."""
        try:
            self.store.initialize()
        except PolicyError as e:
            logger.critical(f"Cannot load policy {self.store.source}: {e}")
            return EXIT_POLICY

        try:
            platform = select_platform(self.platform_name)
        except WardenError as e:
            logger.critical(str(e))
            return EXIT_POLICY

        try:
            audit_log = AuditLog(self.audit_log_path)
        except AuditLogError as e:
            logger.critical(str(e))
            return EXIT_AUDIT

        try:
            self.reconciler = Reconciler(self.store, platform, audit_log, use_observer=self.use_observer)
        except PolicyError as e:
            logger.critical(f"Cannot build alert routing: {e}")
            return EXIT_POLICY
        return EXIT_OK

    def _signal_handler(self, signum, frame):
        if signum == signal.SIGHUP:
            logger.info("Received SIGHUP, policy reload requested")
            self.reconciler.request_reload()
        else:
            logger.info(f"Received signal {signum}, stopping")
            self.reconciler.request_stop()

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)
        if hasattr(signal, 'SIGHUP'):
            signal.signal(signal.SIGHUP, self._signal_handler)

    def run(self) -> int:
        code = self.setup()
        if code != EXIT_OK:
            return code

        self.install_signal_handlers()
        try:
            self.reconciler.start()
        except AuditLogError as e:
            logger.critical(f"Cannot write audit log: {e}")
            self.reconciler.stop()
            return EXIT_AUDIT
        return self.reconciler.run_forever()

    def run_once(self) -> int:
        code = self.setup()
        if code != EXIT_OK:
            return code
        code = self.reconciler.run_once()
        print(json.dumps(self.reconciler.get_status(), indent=2, default=str))
        return code


def validate_policy(policy_path: str, platform_name: Optional[str]) -> int:
    store = PolicyStore(policy_path, expected_platform=platform_name)
    try:
        policy = store.load()
    except PolicyError as e:
        print(f"INVALID: {e}")
        return EXIT_POLICY
    print(json.dumps(policy.summary(), indent=2))
    print("Policy OK")
    return EXIT_OK


def verify_audit_log(path: str) -> int:
    try:
        audit_log = AuditLog(path)
    except AuditLogError as e:
        print(f"Cannot open audit log: {e}")
        return 1
    valid, error = audit_log.verify_chain()
    if valid:
        print(f"Audit log OK ({audit_log.get_record_count()} records)")
        return 0
    print(f"Audit log INVALID: {error}")
    return 1


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)

    configure_from_environment(
        verbose=args.verbose,
        log_file=args.log_file,
        json_format=args.log_json,
    )

    if args.verify_audit_log:
        return verify_audit_log(args.audit_log)
    if args.validate_policy:
        return validate_policy(args.policy, args.platform or host_platform_name())

    daemon = WardenDaemon(
        args.policy,
        args.audit_log,
        platform_name=args.platform,
        use_observer=not args.no_watch,
    )
    if args.once:
        return daemon.run_once()
    return daemon.run()


if __name__ == '__main__':
    sys.exit(main())
