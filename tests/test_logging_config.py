"""
Tests for warden/logging_config.py - Logging setup

Tests cover:
- Feature area mapping from logger names
- Text and JSON formatting
- File output and environment configuration
"""

import json
import logging
import os

import pytest

import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from warden.logging_config import (
    SECURITY,
    VERBOSE,
    FeatureArea,
    WardenFormatter,
    configure_from_environment,
    feature_for,
    get_logging_state,
    setup_logging,
)


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        if handler not in handlers:
            handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def make_record(name="warden.enforcement.file_integrity", level=logging.WARNING, msg="restored", extra=None):
    record = logging.LogRecord(name, level, __file__, 1, msg, (), None)
    if extra is not None:
        record.extra_data = extra
    return record


class TestFeatureMapping:
    """Tests for feature_for."""

    @pytest.mark.unit
    @pytest.mark.parametrize("name,feature", [
        ("warden.enforcement.file_integrity", FeatureArea.FILES),
        ("warden.enforcement.service_monitor", FeatureArea.SERVICE),
        ("warden.enforcement.network_enforcer", FeatureArea.NETWORK),
        ("warden.alerts.dispatcher", FeatureArea.ALERTS),
        ("warden.audit_log", FeatureArea.AUDIT),
        ("warden.policy.store", FeatureArea.POLICY),
        ("warden.reconciler", FeatureArea.CORE),
    ])
    def test_mapping(self, name, feature):
        assert feature_for(name) == feature

    @pytest.mark.unit
    def test_custom_levels_named(self):
        assert logging.getLevelName(VERBOSE) == 'VERBOSE'
        assert logging.getLevelName(SECURITY) == 'SECURITY'


class TestFormatter:
    """Tests for WardenFormatter."""

    @pytest.mark.unit
    def test_text_format(self):
        line = WardenFormatter(use_colors=False).format(make_record(extra={'path': '/etc/x'}))
        assert "WARNING" in line
        assert "[files]" in line
        assert line.endswith("restored | path=/etc/x")

    @pytest.mark.unit
    def test_json_format(self):
        line = WardenFormatter(json_format=True).format(make_record(extra={'clean': True}))
        data = json.loads(line)
        assert data['level'] == 'WARNING'
        assert data['feature'] == 'files'
        assert data['extra'] == {'clean': True}


class TestSetup:
    """Tests for setup_logging and configure_from_environment."""

    @pytest.mark.unit
    def test_log_file(self, temp_dir):
        log_file = temp_dir / "logs" / "warden.log"
        setup_logging(log_file=str(log_file), console=False)

        logging.getLogger("warden.test").warning("written to file")
        for handler in logging.getLogger().handlers:
            handler.flush()

        assert "written to file" in log_file.read_text()
        assert get_logging_state()['log_file'] == str(log_file)

    @pytest.mark.unit
    def test_verbose_level(self):
        setup_logging(verbose=True, console=False)
        assert logging.getLogger().level == VERBOSE
        assert get_logging_state()['verbose'] is True

    @pytest.mark.unit
    def test_environment(self, monkeypatch):
        monkeypatch.setenv("WARDEN_LOG_JSON", "1")
        monkeypatch.setenv("WARDEN_LOG_NO_CONSOLE", "true")
        configure_from_environment()

        state = get_logging_state()
        assert state['json_format'] is True
        assert state['console_enabled'] is False
        assert state['initialized'] is True
