"""
Policy Store - loads, validates and serves the active policy snapshot.

The policy document is YAML (or JSON when the file ends in .json):

    version: 1
    service:
      platform: linux
      identifier: zscaler
      expected_running: true
    protected_files:
      - path: /opt/zscaler/config/policy.xml
        reference: /var/lib/warden/reference/policy.xml
        sha256: 3a7bd3e2...        # optional, must match the reference copy
        mode: "0644"
        owner: root
        group: root
        immutable: true
    network:
      rules:
        - {action: ACCEPT, out_interface: lo}
        - {action: ACCEPT, out_interface: zcctun0}
        - {action: ACCEPT, destination: 165.225.0.0/16, protocol: tcp, port: 443}
        - {action: DROP, comment: default deny}
      bypass_signatures:
        processes: [tor, sshuttle]
        ports: [1080, 9050]
    alerting:
      throttle_window: 300
      sinks:
        - {type: slack, webhook_url: "https://hooks.slack.com/...", min_severity: warning}
    schedule:
      service_interval: 5
      file_rescan_interval: 60
      network_interval: 10

Readers call `current()` and get an immutable snapshot. `reload()` builds a
new Policy and swaps it in only when it validates, so a bad document can
never switch enforcement off.
"""

import grp
import ipaddress
import json
import logging
import os
import pwd
import re
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

from ..event_bus import Severity
from ..utils.error_handling import PolicyError
from ..utils.fileops import hash_file
from .models import (
    AlertRouting,
    BypassSignatures,
    FirewallRule,
    NetworkRuleSet,
    Platform,
    Policy,
    ProtectedFile,
    RuleAction,
    Schedule,
    ServiceSpec,
    SinkConfig,
)

logger = logging.getLogger(__name__)

SINK_TYPES = ('log', 'webhook', 'slack')
PROTOCOLS = ('tcp', 'udp')

_IFACE_RE = re.compile(r'^[A-Za-z0-9_.:+\-]{1,15}$')
_IDENTIFIER_RE = re.compile(r'^[A-Za-z0-9_.@:\-]+$')
_PROCESS_RE = re.compile(r'^[^\x00-\x1f/]{1,64}$')
_HASH_RE = re.compile(r'^[0-9a-fA-F]{64}$')

# iptables rules go to the IPv4 filter table only; pf takes both families
ADDRESS_FAMILIES = {
    Platform.LINUX: (4,),
    Platform.MACOS: (4, 6),
}


# =============================================================================
# DOCUMENT PARSING
# =============================================================================

def _read_document(source: str) -> Dict[str, Any]:
    path = Path(source)
    if not path.is_file():
        raise PolicyError(f"Policy source not found: {source}")

    try:
        with open(path, 'r', encoding='utf-8') as f:
            if path.suffix.lower() == '.json':
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise PolicyError(f"Policy document is malformed: {e}") from e
    except OSError as e:
        raise PolicyError(f"Cannot read policy source {source}: {e}") from e

    if not isinstance(data, dict):
        raise PolicyError("Policy document must be a mapping at the top level")
    return data


def _require_mapping(data: Any, where: str) -> Dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise PolicyError(f"'{where}' must be a mapping")
    return data


def _require_list(data: Any, where: str) -> List[Any]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise PolicyError(f"'{where}' must be a list")
    return data


def _as_bool(value: Any, where: str) -> bool:
    if isinstance(value, bool):
        return value
    raise PolicyError(f"'{where}' must be true or false, got {value!r}")


def _as_positive_float(value: Any, where: str, allow_zero: bool = False) -> float:
    if isinstance(value, bool):
        raise PolicyError(f"'{where}' must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise PolicyError(f"'{where}' must be a number, got {value!r}")
    if number < 0 or (number == 0 and not allow_zero):
        raise PolicyError(f"'{where}' must be positive, got {value!r}")
    return number


def parse_mode(value: Any, where: str = 'mode') -> int:
    """Accept "0644", "644" or "0o644".

    Bare YAML integers are refused: `mode: 644` loads as decimal 644 and
    `mode: 0644` as octal, and the two cannot be told apart afterwards.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        raise PolicyError(f"'{where}' must be a quoted octal string such as \"0644\", got {value!r}")
    if isinstance(value, str):
        text = value.strip().lower()
        if text.startswith('0o'):
            text = text[2:]
        try:
            mode = int(text, 8)
        except ValueError:
            raise PolicyError(f"'{where}' is not an octal file mode: {value!r}")
    else:
        raise PolicyError(f"'{where}' is not a file mode: {value!r}")

    if not 0 <= mode <= 0o7777:
        raise PolicyError(f"'{where}' out of range: {value!r}")
    return mode


def resolve_uid(value: Any, where: str = 'owner') -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        if value.isdigit():
            return int(value)
        try:
            return pwd.getpwnam(value).pw_uid
        except KeyError:
            raise PolicyError(f"'{where}': unknown user {value!r}")
    raise PolicyError(f"'{where}' must be a user name or uid, got {value!r}")


def resolve_gid(value: Any, where: str = 'group') -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        if value.isdigit():
            return int(value)
        try:
            return grp.getgrnam(value).gr_gid
        except KeyError:
            raise PolicyError(f"'{where}': unknown group {value!r}")
    raise PolicyError(f"'{where}' must be a group name or gid, got {value!r}")


def _parse_service(data: Any) -> ServiceSpec:
    section = _require_mapping(data, 'service')
    if not section:
        raise PolicyError("Policy must declare a 'service'")

    try:
        platform = Platform(str(section.get('platform', '')).lower())
    except ValueError:
        raise PolicyError(
            f"'service.platform' must be one of {[p.value for p in Platform]}, "
            f"got {section.get('platform')!r}"
        )

    identifier = section.get('identifier')
    if not isinstance(identifier, str) or not _IDENTIFIER_RE.match(identifier):
        raise PolicyError(f"'service.identifier' is missing or invalid: {identifier!r}")

    expected_running = _as_bool(section.get('expected_running', True), 'service.expected_running')
    return ServiceSpec(platform=platform, identifier=identifier, expected_running=expected_running)


def _parse_protected_file(entry: Any, index: int) -> ProtectedFile:
    where = f"protected_files[{index}]"
    entry = _require_mapping(entry, where)

    path = entry.get('path')
    reference = entry.get('reference')
    if not isinstance(path, str) or not os.path.isabs(path):
        raise PolicyError(f"'{where}.path' must be an absolute path, got {path!r}")
    if not isinstance(reference, str) or not os.path.isabs(reference):
        raise PolicyError(f"'{where}.reference' must be an absolute path, got {reference!r}")
    if os.path.abspath(path) == os.path.abspath(reference):
        raise PolicyError(f"'{where}': reference copy cannot be the protected path itself")

    if not os.path.isfile(reference):
        raise PolicyError(f"'{where}': reference copy missing: {reference}")

    try:
        computed = hash_file(reference)
        ref_stat = os.stat(reference)
    except OSError as e:
        raise PolicyError(f"'{where}': cannot read reference copy {reference}: {e}") from e

    declared = entry.get('sha256')
    if declared is not None:
        if not isinstance(declared, str) or not _HASH_RE.match(declared):
            raise PolicyError(f"'{where}.sha256' is not a SHA-256 hex digest")
        if declared.lower() != computed:
            raise PolicyError(
                f"'{where}': declared sha256 {declared[:12]}... does not match "
                f"reference copy {computed[:12]}..."
            )

    mode = parse_mode(entry['mode'], f"{where}.mode") if 'mode' in entry else ref_stat.st_mode & 0o7777
    uid = resolve_uid(entry['owner'], f"{where}.owner") if 'owner' in entry else ref_stat.st_uid
    gid = resolve_gid(entry['group'], f"{where}.group") if 'group' in entry else ref_stat.st_gid

    return ProtectedFile(
        path=os.path.abspath(path),
        reference_path=os.path.abspath(reference),
        expected_hash=computed,
        expected_mode=mode,
        expected_uid=uid,
        expected_gid=gid,
        immutable=_as_bool(entry.get('immutable', True), f"{where}.immutable"),
    )


def parse_rule(entry: Any, index: int, platform: Optional[Platform] = None) -> FirewallRule:
    """Validate one rule. With `platform` set, the destination must be an
    address family that platform renders."""
    where = f"network.rules[{index}]"
    entry = _require_mapping(entry, where)

    unknown = set(entry) - {'action', 'out_interface', 'destination', 'protocol', 'port', 'comment'}
    if unknown:
        raise PolicyError(f"'{where}': unknown keys {sorted(unknown)}")

    try:
        action = RuleAction(str(entry.get('action', '')).upper())
    except ValueError:
        raise PolicyError(f"'{where}.action' must be ACCEPT, DROP or REJECT, got {entry.get('action')!r}")

    out_interface = entry.get('out_interface')
    if out_interface is not None and (not isinstance(out_interface, str) or not _IFACE_RE.match(out_interface)):
        raise PolicyError(f"'{where}.out_interface' is invalid: {out_interface!r}")

    destination = entry.get('destination')
    if destination is not None:
        try:
            network = ipaddress.ip_network(str(destination), strict=False)
        except ValueError:
            raise PolicyError(f"'{where}.destination' is not an address or CIDR: {destination!r}")
        if platform is not None and network.version not in ADDRESS_FAMILIES[platform]:
            raise PolicyError(
                f"'{where}.destination' is IPv{network.version}, which {platform.value} rules cannot express"
            )
        destination = str(network)

    port = entry.get('port')
    protocol = entry.get('protocol')
    if port is not None:
        if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
            raise PolicyError(f"'{where}.port' must be 1-65535, got {port!r}")
        protocol = protocol or 'tcp'
    if protocol is not None:
        protocol = str(protocol).lower()
        if protocol not in PROTOCOLS:
            raise PolicyError(f"'{where}.protocol' must be tcp or udp, got {protocol!r}")

    comment = entry.get('comment')
    if comment is not None:
        comment = str(comment)
        if len(comment) > 200 or any(c in comment for c in '"\n\r\\'):
            raise PolicyError(f"'{where}.comment' must be a single line without quotes")

    return FirewallRule(
        action=action,
        out_interface=out_interface,
        destination=destination,
        protocol=protocol,
        port=port,
        comment=comment,
    )


def _parse_network(data: Any, platform: Optional[Platform] = None) -> NetworkRuleSet:
    section = _require_mapping(data, 'network')
    rules = tuple(
        parse_rule(entry, i, platform)
        for i, entry in enumerate(_require_list(section.get('rules'), 'network.rules'))
    )
    if len(set(rules)) != len(rules):
        raise PolicyError("'network.rules' contains duplicate rules")

    signatures = _require_mapping(section.get('bypass_signatures'), 'network.bypass_signatures')
    processes = []
    for name in _require_list(signatures.get('processes'), 'network.bypass_signatures.processes'):
        if not isinstance(name, str) or not _PROCESS_RE.match(name):
            raise PolicyError(f"Invalid bypass process name: {name!r}")
        processes.append(name)
    ports = []
    for port in _require_list(signatures.get('ports'), 'network.bypass_signatures.ports'):
        if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
            raise PolicyError(f"Invalid bypass port: {port!r}")
        ports.append(port)

    return NetworkRuleSet(
        rules=rules,
        bypass=BypassSignatures(processes=tuple(processes), ports=tuple(sorted(set(ports)))),
    )


def _parse_sink(entry: Any, index: int) -> SinkConfig:
    where = f"alerting.sinks[{index}]"
    entry = dict(_require_mapping(entry, where))

    sink_type = str(entry.pop('type', '')).lower()
    if sink_type not in SINK_TYPES:
        raise PolicyError(f"'{where}.type' must be one of {list(SINK_TYPES)}, got {sink_type!r}")

    try:
        min_severity = Severity(str(entry.pop('min_severity', 'info')).lower())
    except ValueError:
        raise PolicyError(f"'{where}.min_severity' must be info, warning or critical")

    name = str(entry.pop('name', f"{sink_type}-{index}"))

    if sink_type == 'webhook' and not str(entry.get('url', '')).startswith(('http://', 'https://')):
        raise PolicyError(f"'{where}.url' must be an http(s) URL")
    if sink_type == 'slack' and not str(entry.get('webhook_url', '')).startswith('https://'):
        raise PolicyError(f"'{where}.webhook_url' must be an https URL")

    if 'timeout' in entry:
        entry['timeout'] = _as_positive_float(entry['timeout'], f"{where}.timeout")
    if 'headers' in entry:
        headers = _require_mapping(entry['headers'], f"{where}.headers")
        if not all(isinstance(k, str) and isinstance(v, str) for k, v in headers.items()):
            raise PolicyError(f"'{where}.headers' must map header names to string values")
        entry['headers'] = dict(headers)
    for key in ('channel', 'logger'):
        if key in entry and not isinstance(entry[key], str):
            raise PolicyError(f"'{where}.{key}' must be a string, got {entry[key]!r}")

    return SinkConfig(type=sink_type, name=name, min_severity=min_severity, settings=entry)


def _parse_alerting(data: Any) -> AlertRouting:
    section = _require_mapping(data, 'alerting')
    defaults = AlertRouting()
    sinks = tuple(
        _parse_sink(entry, i)
        for i, entry in enumerate(_require_list(section.get('sinks'), 'alerting.sinks'))
    )
    names = [s.name for s in sinks]
    if len(set(names)) != len(names):
        raise PolicyError("'alerting.sinks' names must be unique")

    return AlertRouting(
        throttle_window=_as_positive_float(
            section.get('throttle_window', defaults.throttle_window), 'alerting.throttle_window', allow_zero=True
        ),
        retention=_as_positive_float(section.get('retention', defaults.retention), 'alerting.retention'),
        dedupe_per_entity=_as_bool(
            section.get('dedupe_per_entity', defaults.dedupe_per_entity), 'alerting.dedupe_per_entity'
        ),
        sinks=sinks,
    )


def _parse_schedule(data: Any) -> Schedule:
    section = _require_mapping(data, 'schedule')
    defaults = Schedule()
    values = {}
    for key in ('service_interval', 'file_rescan_interval', 'network_interval', 'file_scan_timeout'):
        values[key] = _as_positive_float(section.get(key, getattr(defaults, key)), f"schedule.{key}")
    return Schedule(**values)


def load_policy(source: str, expected_platform: Optional[str] = None) -> Policy:
    """
    Parse and verify a policy document.

    Raises:
        PolicyError: malformed document, missing or mismatching reference
            copy, unresolvable owner, or unparsable rule
    """
    data = _read_document(source)

    version = data.get('version', 1)
    if version != 1:
        raise PolicyError(f"Unsupported policy version: {version!r}")

    service = _parse_service(data.get('service'))
    if expected_platform and service.platform.value != expected_platform:
        raise PolicyError(
            f"Policy targets {service.platform.value} but this host is {expected_platform}"
        )

    files = tuple(
        _parse_protected_file(entry, i)
        for i, entry in enumerate(_require_list(data.get('protected_files'), 'protected_files'))
    )
    paths = [f.path for f in files]
    if len(set(paths)) != len(paths):
        raise PolicyError("'protected_files' lists the same path twice")

    return Policy(
        service=service,
        protected_files=files,
        network=_parse_network(data.get('network'), service.platform),
        alerting=_parse_alerting(data.get('alerting')),
        schedule=_parse_schedule(data.get('schedule')),
        source=os.path.abspath(source),
        loaded_at=datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
        version=version,
    )


# =============================================================================
# STORE
# =============================================================================

class PolicyStore:
    """
    Holds the active Policy snapshot.

    `current()` is a single reference read, so readers never observe a
    partially updated policy.
    """

    def __init__(self, source: str, expected_platform: Optional[str] = None):
        self.source = source
        self.expected_platform = expected_platform
        self._policy: Optional[Policy] = None
        self._swap_lock = threading.Lock()
        self._listeners: List[Callable[[Policy, Policy], None]] = []
        self._reload_count = 0

    def load(self, source: Optional[str] = None) -> Policy:
        """Parse and verify a policy without installing it."""
        return load_policy(source or self.source, self.expected_platform)

    def initialize(self) -> Policy:
        """Load and install the initial policy. Raises PolicyError."""
        policy = self.load()
        with self._swap_lock:
            self._policy = policy
        logger.info(f"Policy loaded from {policy.source}: {policy.summary()}")
        return policy

    def current(self) -> Policy:
        policy = self._policy
        if policy is None:
            raise PolicyError("No policy loaded")
        return policy

    @property
    def is_loaded(self) -> bool:
        return self._policy is not None

    def add_reload_listener(self, callback: Callable[[Policy, Policy], None]):
        """Register callback(old_policy, new_policy), run after each successful swap."""
        self._listeners.append(callback)

    def reload(self) -> Tuple[bool, str]:
        """
        Re-load from the same source; swap only if the new policy validates.

        Returns:
            (success, message)
        """
        try:
            new_policy = self.load()
        except PolicyError as e:
            logger.error(f"Policy reload rejected, keeping previous policy: {e}")
            return (False, str(e))

        with self._swap_lock:
            old_policy = self._policy
            self._policy = new_policy
            self._reload_count += 1

        logger.info(f"Policy reloaded from {new_policy.source}: {new_policy.summary()}")

        if old_policy is not None:
            for callback in self._listeners:
                try:
                    callback(old_policy, new_policy)
                except Exception as e:
                    logger.error(f"Error in policy reload listener: {e}")

        return (True, "Policy reloaded")

    def get_status(self) -> Dict:
        policy = self._policy
        return {
            'source': self.source,
            'loaded': policy is not None,
            'reload_count': self._reload_count,
            'policy': policy.summary() if policy else None,
        }
