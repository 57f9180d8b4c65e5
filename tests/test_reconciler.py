"""
Tests for warden/reconciler.py - Reconciler

Tests cover:
- One-shot reconciliation end to end
- Start/stop lifecycle records in the audit log
- Policy reload success and failure
- Sink rebuild on reload, and routing kept consistent when sinks are invalid
- Exit code on audit log failure
"""

import os
import threading
import time

import pytest

import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from warden.alerts.sinks import AlertSink
from warden.audit_log import AuditRecordType
from warden.event_bus import Severity
from warden.reconciler import EXIT_AUDIT, EXIT_OK, Reconciler
from warden.utils.error_handling import AuditLogError, PolicyError

from conftest import REFERENCE_CONTENT


class RecordingSink(AlertSink):
    def __init__(self, name="recording"):
        super().__init__(name)
        self.alerts = []

    def send(self, alert):
        self.alerts.append(alert)
        return True


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


@pytest.fixture
def synced_platform(fake_platform, policy):
    """A host whose rules already match the default policy."""
    fake_platform.live_rules = fake_platform.render_rules(policy.network.rules)
    fake_platform.hooked = True
    return fake_platform


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def reconciler(policy_env, synced_platform, audit_log, sink):
    store = policy_env.store()
    r = Reconciler(store, synced_platform, audit_log, sinks=[sink], use_observer=False)
    yield r
    r.stop(grace=2.0)


def tamper_records(audit_log):
    return [r for r in audit_log.read_records() if r.record_type == AuditRecordType.TAMPER_EVENT]


# ===========================================================================
# One-shot
# ===========================================================================

class TestRunOnce:
    """Tests for a single reconciliation pass."""

    @pytest.mark.integration
    def test_replaced_config_file(self, reconciler, policy_env, audit_log, sink):
        """A replaced protected file yields one event, one audit entry and one alert."""
        policy_env.protected.write_bytes(b"<policy><tunnel mode='off'/></policy>\n")

        code = reconciler.run_once(grace=5.0)

        assert code == EXIT_OK
        assert policy_env.protected.read_bytes() == REFERENCE_CONTENT

        records = tamper_records(audit_log)
        assert len(records) == 1
        assert records[0].metadata['category'] == "content_mismatch"
        assert records[0].metadata['severity'] == "critical"
        assert records[0].metadata['remediated'] is True

        assert len(sink.alerts) == 1
        assert sink.alerts[0].severity == Severity.CRITICAL

    @pytest.mark.integration
    def test_clean_host_produces_nothing(self, reconciler, audit_log, sink, synced_platform):
        assert reconciler.run_once(grace=2.0) == EXIT_OK
        assert tamper_records(audit_log) == []
        assert sink.alerts == []
        assert synced_platform.apply_calls == 0
        assert synced_platform.restart_calls == []

    @pytest.mark.integration
    def test_everything_tampered_at_once(self, reconciler, policy_env, audit_log, synced_platform):
        synced_platform.service_active = False
        synced_platform.live_rules = synced_platform.live_rules[1:]
        os.unlink(policy_env.protected)

        reconciler.run_once(grace=5.0)

        categories = sorted(r.metadata['category'] for r in tamper_records(audit_log))
        assert categories == ["file_missing", "rule_drift", "service_restarted", "service_stopped"]

    @pytest.mark.unit
    def test_status_report(self, reconciler):
        reconciler.run_once(grace=2.0)
        status = reconciler.get_status()
        for key in ('policy', 'bus', 'dispatcher', 'service', 'file_integrity', 'network', 'logging'):
            assert key in status
        assert status['service']['state'] == "running"


# ===========================================================================
# Lifecycle
# ===========================================================================

class TestLifecycle:
    """Tests for the threaded daemon lifecycle."""

    @pytest.mark.integration
    def test_start_and_stop_records(self, reconciler, audit_log):
        reconciler.start()
        time.sleep(0.2)
        reconciler.stop(grace=3.0)

        types = [r.record_type for r in audit_log.read_records()]
        assert types[0] == AuditRecordType.DAEMON_START
        assert types[-1] == AuditRecordType.DAEMON_STOP
        assert audit_log.verify_chain() == (True, None)

    @pytest.mark.slow
    @pytest.mark.integration
    def test_running_daemon_restores_file(self, reconciler, policy_env, audit_log):
        reconciler.start()
        policy_env.protected.write_bytes(b"tampered")

        assert wait_for(lambda: policy_env.protected.read_bytes() == REFERENCE_CONTENT)
        assert wait_for(lambda: len(tamper_records(audit_log)) >= 1)

    @pytest.mark.integration
    def test_run_forever_returns_on_stop_request(self, reconciler):
        reconciler.start()
        reconciler.request_stop()
        assert reconciler.run_forever() == EXIT_OK

    @pytest.mark.integration
    def test_audit_failure_exits_with_code_2(self, reconciler, audit_log, policy_env, monkeypatch):
        def refuse(event):
            raise AuditLogError("No space left on device")

        reconciler.start()
        monkeypatch.setattr(audit_log, "record_event", refuse)
        policy_env.protected.write_bytes(b"tampered")

        result = {}
        worker = threading.Thread(target=lambda: result.setdefault('code', reconciler.run_forever()), daemon=True)
        worker.start()
        worker.join(timeout=10.0)

        assert not worker.is_alive()
        assert result['code'] == EXIT_AUDIT
        assert reconciler.exit_code == EXIT_AUDIT


# ===========================================================================
# Reload
# ===========================================================================

class TestReload:
    """Tests for policy reload through the reconciler."""

    @pytest.mark.unit
    def test_successful_reload_is_audited(self, reconciler, policy_env, audit_log):
        policy_env.write(service={'platform': 'linux', 'identifier': 'zsatunnel'})

        assert reconciler.reload()

        assert reconciler.store.current().service.identifier == 'zsatunnel'
        assert audit_log.read_records()[-1].record_type == AuditRecordType.POLICY_RELOAD

    @pytest.mark.unit
    def test_failed_reload_keeps_policy(self, reconciler, policy_env, audit_log):
        before = reconciler.store.current()
        policy_env.policy_path.write_text("version: 1\nservice: [broken\n")

        assert not reconciler.reload()

        assert reconciler.store.current() is before
        assert audit_log.read_records()[-1].record_type == AuditRecordType.POLICY_RELOAD_FAILED

    @pytest.mark.unit
    def test_reload_rebuilds_changed_sinks(self, policy_env, synced_platform, audit_log):
        reconciler = Reconciler(policy_env.store(), synced_platform, audit_log, use_observer=False)
        try:
            assert [s.name for s in reconciler.dispatcher.sinks] == ["local"]

            alerting = {'sinks': [
                {'type': 'log', 'name': 'local'},
                {'type': 'webhook', 'name': 'siem', 'url': 'https://siem.example.com/in'},
            ]}
            policy_env.write(alerting=alerting)
            assert reconciler.reload()

            assert [s.name for s in reconciler.dispatcher.sinks] == ["local", "siem"]
        finally:
            reconciler.stop(grace=1.0)

    @pytest.mark.unit
    def test_invalid_sink_settings_rejected_on_reload(self, reconciler, policy_env, audit_log):
        """Monitors and the dispatcher stay on the same, previous policy."""
        before = reconciler.store.current()
        policy_env.write(alerting={
            'throttle_window': 5,
            'sinks': [{'type': 'webhook', 'name': 'siem', 'url': 'https://siem/in', 'headers': 'nope'}],
        })

        assert not reconciler.reload()

        assert reconciler.store.current() is before
        assert reconciler.dispatcher.routing.throttle_window == 300
        assert audit_log.read_records()[-1].record_type == AuditRecordType.POLICY_RELOAD_FAILED

    @pytest.mark.unit
    def test_routing_applied_when_sinks_cannot_be_built(self, policy_env, synced_platform, audit_log, monkeypatch):
        reconciler = Reconciler(policy_env.store(), synced_platform, audit_log, use_observer=False)
        try:
            def refuse(configs):
                raise PolicyError("sink 'siem' is misconfigured")

            monkeypatch.setattr('warden.reconciler.build_sinks', refuse)
            policy_env.write(alerting={
                'throttle_window': 5,
                'sinks': [{'type': 'webhook', 'name': 'siem', 'url': 'https://siem.example.com/in'}],
            })
            assert reconciler.reload()

            assert reconciler.dispatcher.routing.throttle_window == 5
            assert [s.name for s in reconciler.dispatcher.sinks] == ["local"]
        finally:
            reconciler.stop(grace=1.0)

    @pytest.mark.unit
    def test_reload_wakes_monitors(self, reconciler):
        for monitor in reconciler.monitors:
            monitor.trigger.clear()
        reconciler.reload()
        assert all(m.trigger.is_set() for m in reconciler.monitors)
