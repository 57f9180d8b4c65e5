"""
Alert sinks - external destinations for tamper alerts.

A sink receives an Alert and returns True on delivery. Returning False,
raising SinkError or raising anything else counts as a failed attempt; the
dispatcher owns retries and timeouts, sinks make exactly one attempt per
call.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import requests

from ..constants import Timeouts
from ..event_bus import Severity, TamperEvent
from ..logging_config import SECURITY
from ..policy.models import SinkConfig
from ..utils.error_handling import PolicyError, SinkError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Alert:
    """
    What a sink is asked to deliver.

    A first occurrence carries the triggering event with `occurrences == 1`.
    A summary is sent when a throttle window closes with suppressed repeats;
    it carries the latest event, the total count in the window and the
    window start.
    """
    key: Tuple[str, ...]
    event: TamperEvent
    occurrences: int = 1
    is_summary: bool = False
    window_start: Optional[str] = None

    @property
    def severity(self) -> Severity:
        return self.event.severity

    @property
    def title(self) -> str:
        event = self.event
        if self.is_summary:
            return (
                f"{event.source.value}/{event.category} on {event.entity}: "
                f"{self.occurrences} occurrences since {self.window_start}"
            )
        return f"{event.source.value}/{event.category} on {event.entity}"

    def to_dict(self) -> Dict:
        return {
            'title': self.title,
            'summary': self.is_summary,
            'occurrences': self.occurrences,
            'window_start': self.window_start,
            'event': self.event.to_dict(),
        }


class AlertSink(ABC):
    """Base class for alert destinations"""

    def __init__(self, name: str, min_severity: Severity = Severity.INFO):
        self.name = name
        self.min_severity = min_severity

    def accepts(self, alert: Alert) -> bool:
        return alert.severity.at_least(self.min_severity)

    @abstractmethod
    def send(self, alert: Alert) -> bool:
        """Deliver once. True on success."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, min_severity={self.min_severity.value})"


class LogSink(AlertSink):
    """Writes alerts to the daemon log. Critical alerts use the SECURITY level."""

    _LEVELS = {
        Severity.INFO: logging.INFO,
        Severity.WARNING: logging.WARNING,
        Severity.CRITICAL: SECURITY,
    }

    def __init__(self, name: str = "log", min_severity: Severity = Severity.INFO, logger_name: Optional[str] = None):
        super().__init__(name, min_severity)
        self._logger = logging.getLogger(logger_name or f"{__name__}.{name}")

    def send(self, alert: Alert) -> bool:
        event = alert.event
        remediated = "remediated" if event.remediated else "NOT remediated"
        self._logger.log(
            self._LEVELS[alert.severity],
            f"ALERT {alert.title} [{remediated}] {event.detail}",
        )
        return True


class WebhookSink(AlertSink):
    """POSTs the alert as JSON to an HTTP endpoint."""

    def __init__(
        self,
        name: str,
        url: str,
        min_severity: Severity = Severity.INFO,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = Timeouts.SINK_CALL,
    ):
        super().__init__(name, min_severity)
        self.url = url
        self.headers = dict(headers or {})
        self.timeout = timeout

    def send(self, alert: Alert) -> bool:
        response = requests.post(
            self.url,
            json=alert.to_dict(),
            headers=self.headers,
            timeout=self.timeout,
        )
        if not response.ok:
            raise SinkError(f"{self.name}: HTTP {response.status_code}")
        return True


class SlackSink(AlertSink):
    """Posts a formatted message to a Slack incoming webhook."""

    SEVERITY_EMOJI = {
        Severity.CRITICAL: ':rotating_light:',
        Severity.WARNING: ':warning:',
        Severity.INFO: ':information_source:',
    }

    def __init__(
        self,
        name: str,
        webhook_url: str,
        min_severity: Severity = Severity.WARNING,
        channel: Optional[str] = None,
        timeout: float = Timeouts.SINK_CALL,
    ):
        super().__init__(name, min_severity)
        self.webhook_url = webhook_url
        self.channel = channel
        self.timeout = timeout

    def build_payload(self, alert: Alert) -> Dict:
        event = alert.event
        blocks = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": f"{self.SEVERITY_EMOJI.get(alert.severity, '')} Tamper alert: {event.category}"[:150],
                }
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Entity:*\n{event.entity}"},
                    {"type": "mrkdwn", "text": f"*Severity:*\n{alert.severity.value.upper()}"},
                    {"type": "mrkdwn", "text": f"*Remediated:*\n{'yes' if event.remediated else 'no'}"},
                    {"type": "mrkdwn", "text": f"*Detected:*\n{event.detected_at[:19]}"},
                ]
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Detail:*\n{event.detail[:500]}"}
            },
        ]
        if alert.is_summary:
            blocks.append({
                "type": "context",
                "elements": [{
                    "type": "mrkdwn",
                    "text": f"{alert.occurrences} occurrences since {alert.window_start}",
                }],
            })

        payload = {"text": alert.title, "blocks": blocks}
        if self.channel:
            payload["channel"] = self.channel
        return payload

    def send(self, alert: Alert) -> bool:
        response = requests.post(
            self.webhook_url,
            json=self.build_payload(alert),
            timeout=self.timeout,
        )
        if response.status_code != 200:
            raise SinkError(f"{self.name}: Slack returned HTTP {response.status_code}")
        return True


def build_sink(config: SinkConfig) -> AlertSink:
    """Instantiate one sink. Raises PolicyError for an unusable config."""
    try:
        return _build_sink(config)
    except (KeyError, TypeError, ValueError) as e:
        raise PolicyError(f"Sink {config.name!r} is misconfigured: {e!r}") from e


def _build_sink(config: SinkConfig) -> AlertSink:
    settings = config.settings
    if config.type == 'log':
        return LogSink(config.name, config.min_severity, settings.get('logger'))
    if config.type == 'webhook':
        return WebhookSink(
            config.name,
            settings['url'],
            config.min_severity,
            headers=settings.get('headers'),
            timeout=float(settings.get('timeout', Timeouts.SINK_CALL)),
        )
    if config.type == 'slack':
        return SlackSink(
            config.name,
            settings['webhook_url'],
            config.min_severity,
            channel=settings.get('channel'),
            timeout=float(settings.get('timeout', Timeouts.SINK_CALL)),
        )
    raise PolicyError(f"Unknown sink type: {config.type}")


def build_sinks(configs: Sequence[SinkConfig]) -> List[AlertSink]:
    """Instantiate the sinks of a routing table. A log sink is always present."""
    sinks = [build_sink(config) for config in configs]
    if not any(isinstance(sink, LogSink) for sink in sinks):
        sinks.insert(0, LogSink())
    return sinks
