"""
Alerting: dedupe/throttle dispatch and the external sinks.
"""

from .dispatcher import AlertDispatcher, AlertRecord, SinkWorker
from .sinks import Alert, AlertSink, LogSink, SlackSink, WebhookSink, build_sink, build_sinks

__all__ = [
    'AlertDispatcher',
    'AlertRecord',
    'SinkWorker',
    'Alert',
    'AlertSink',
    'LogSink',
    'WebhookSink',
    'SlackSink',
    'build_sink',
    'build_sinks',
]
