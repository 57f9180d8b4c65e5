"""
File Integrity Monitor - keeps protected files identical to their reference copies.

Detection is two-layered:
- a watchdog Observer on the parent directory of every protected path wakes
  the monitor as soon as one of them is touched
- a periodic full rescan checks every path regardless, so a dead observer
  or a missed event never stops detection

Remediation runs under the per-path lock and fails closed: if the reference
copy no longer matches the hash recorded when the policy was loaded, the
live file is left alone and a critical unremediated event is raised.
"""

import logging
import os
import stat
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..constants import Timeouts
from ..event_bus import EventSource, Severity
from ..policy.models import Policy, ProtectedFile
from ..utils.error_handling import ErrorCategory, RemediationError
from ..utils.fileops import atomic_copy, chown_if_needed, hash_file
from .base import Monitor

logger = logging.getLogger(__name__)

SCAN_ENTITY = "file:*"


@dataclass
class FileDrift:
    """What differs between a protected path and its policy entry"""
    missing: bool = False
    content: bool = False
    mode: bool = False
    owner: bool = False
    detail: str = ""

    @property
    def content_drift(self) -> bool:
        return self.missing or self.content

    @property
    def any(self) -> bool:
        return self.missing or self.content or self.mode or self.owner


class _ProtectedPathHandler(FileSystemEventHandler):
    """Marks protected paths dirty and wakes the monitor."""

    def __init__(self, monitor: 'FileIntegrityMonitor'):
        super().__init__()
        self._monitor = monitor

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        for path in (event.src_path, getattr(event, 'dest_path', None)):
            if path:
                self._monitor.notify_changed(os.fsdecode(path))


class FileIntegrityMonitor(Monitor):
    """Hash, mode and owner enforcement for protected files."""

    name = "file_integrity"
    source = EventSource.FILE
    error_category = ErrorCategory.FILESYSTEM

    def __init__(self, *args, use_observer: bool = True, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_observer = use_observer

        self._observer: Optional[Observer] = None
        self._observer_lock = threading.Lock()
        self._observer_closed = False
        self._observer_restarts = 0
        self._watched_dirs: Set[str] = set()
        self._protected: Set[str] = set()

        self._dirty: Set[str] = set()
        self._carry_over: List[str] = []
        self._state_lock = threading.Lock()

        self._restored = 0
        self._refused = 0

    def interval(self, policy: Policy) -> float:
        return policy.schedule.file_rescan_interval

    # ---------- lifecycle ----------

    def start(self, policy: Policy) -> None:
        self._adopt(policy)
        if self.use_observer:
            with self._observer_lock:
                self._observer_closed = False
                self._start_observer()

    def shutdown(self) -> None:
        with self._observer_lock:
            self._observer_closed = True
            self._stop_observer()
        for path in list(self._protected):
            self.locks.release(f"file:{path}", self.name)

    def on_policy_reload(self, old: Policy, new: Policy) -> None:
        for pf in old.protected_files:
            self.locks.release(pf.entity, self.name)
        self._adopt(new)
        if self.use_observer:
            with self._observer_lock:
                if not self._observer_closed:
                    self._stop_observer()
                    self._start_observer()
        self.trigger.set()

    def _adopt(self, policy: Policy) -> None:
        for pf in policy.protected_files:
            self.locks.claim(pf.entity, self.name)
        with self._state_lock:
            self._protected = {pf.path for pf in policy.protected_files}
            self._watched_dirs = {os.path.dirname(path) for path in self._protected}
            self._carry_over = [p for p in self._carry_over if p in self._protected]

    # ---------- observer ----------
    # _start_observer and _stop_observer are called with _observer_lock held.

    def notify_changed(self, path: str) -> None:
        """Called from the observer thread for every filesystem event."""
        path = os.path.abspath(path)
        with self._state_lock:
            if path not in self._protected:
                return
            self._dirty.add(path)
        logger.debug(f"Change notification for {path}")
        self.trigger.set()

    def _start_observer(self) -> None:
        with self._state_lock:
            directories = sorted(self._watched_dirs)
        observer = Observer()
        handler = _ProtectedPathHandler(self)
        scheduled = 0
        for directory in directories:
            if not os.path.isdir(directory):
                logger.warning(f"Cannot watch {directory}: not a directory, relying on rescans")
                continue
            try:
                observer.schedule(handler, directory, recursive=False)
                scheduled += 1
            except OSError as e:
                logger.warning(f"Cannot watch {directory}: {e}, relying on rescans")

        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info(f"Watching {scheduled} directories for changes to protected files")

    def _stop_observer(self) -> None:
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            observer.join(timeout=Timeouts.THREAD_JOIN_SHORT)

    def _ensure_observer(self) -> None:
        if not self.use_observer:
            return
        with self._observer_lock:
            if self._observer_closed:
                return
            if self._observer is None or not self._observer.is_alive():
                self._observer_restarts += 1
                logger.warning("Filesystem observer is not running, restarting it")
                self._stop_observer()
                self._start_observer()

    # ---------- tick ----------

    def tick(self, policy: Policy) -> None:
        self._ensure_observer()

        files: Dict[str, ProtectedFile] = {pf.path: pf for pf in policy.protected_files}
        with self._state_lock:
            first = [p for p in self._carry_over if p in files]
            first += [p for p in sorted(self._dirty) if p in files and p not in first]
            self._dirty.clear()
            self._carry_over = []
        order = first + [p for p in files if p not in first]

        deadline = self.clock() + policy.schedule.file_scan_timeout
        for index, path in enumerate(order):
            if self.stop_event.is_set():
                return
            if self.clock() > deadline:
                remaining = order[index:]
                with self._state_lock:
                    self._carry_over = remaining
                self.emit(
                    Severity.WARNING,
                    'scan_timeout',
                    SCAN_ENTITY,
                    f"Scan exceeded {policy.schedule.file_scan_timeout:.0f}s, "
                    f"{len(remaining)} file(s) deferred to the next pass",
                )
                self.trigger.set()
                return
            self.check_file(files[path])

    def inspect(self, pf: ProtectedFile) -> Optional[FileDrift]:
        """Compare one path to its policy entry. None if it cannot be read."""
        try:
            st = os.lstat(pf.path)
        except FileNotFoundError:
            return FileDrift(missing=True, detail=f"{pf.path} is missing")
        except OSError as e:
            self.probe_failed(pf.entity, e)
            return None

        drift = FileDrift()
        notes = []

        if not stat.S_ISREG(st.st_mode):
            drift.content = True
            notes.append("not a regular file")
        else:
            try:
                live_hash = hash_file(pf.path)
            except OSError as e:
                self.probe_failed(pf.entity, e)
                return None
            if live_hash != pf.expected_hash:
                drift.content = True
                notes.append(f"hash {live_hash[:12]} != {pf.expected_hash[:12]}")

        self.probe_succeeded(pf.entity)

        mode = stat.S_IMODE(st.st_mode)
        if mode != pf.expected_mode:
            drift.mode = True
            notes.append(f"mode {mode:04o} != {pf.expected_mode:04o}")
        if st.st_uid != pf.expected_uid or st.st_gid != pf.expected_gid:
            drift.owner = True
            notes.append(
                f"owner {st.st_uid}:{st.st_gid} != {pf.expected_uid}:{pf.expected_gid}"
            )

        drift.detail = f"{pf.path}: " + ", ".join(notes) if notes else ""
        return drift

    def check_file(self, pf: ProtectedFile) -> None:
        """Inspect and, on drift, remediate one protected path."""
        with self.locks.lock_for(pf.entity):
            drift = self.inspect(pf)
            if drift is None or not drift.any:
                return

            if drift.content_drift:
                self._restore_content(pf, drift)
            else:
                self._restore_metadata(pf, drift)

    def _reference_intact(self, pf: ProtectedFile) -> Optional[str]:
        """None if the reference copy still hashes as recorded, else the reason."""
        try:
            ref_hash = hash_file(pf.reference_path)
        except OSError as e:
            return f"reference {pf.reference_path} unreadable: {e}"
        if ref_hash != pf.expected_hash:
            return f"reference {pf.reference_path} hash {ref_hash[:12]} != {pf.expected_hash[:12]}"
        return None

    def _restore_content(self, pf: ProtectedFile, drift: FileDrift) -> None:
        category = 'file_missing' if drift.missing else 'content_mismatch'

        problem = self._reference_intact(pf)
        if problem:
            self._refused += 1
            logger.critical(f"Refusing to restore {pf.path}: {problem}")
            self.emit(
                Severity.CRITICAL,
                'reference_corrupt',
                pf.entity,
                f"{drift.detail}; not restored, {problem}",
                remediated=False,
            )
            return

        if self.stop_event.is_set():
            return

        try:
            self._replace_from_reference(pf)
        except RemediationError as e:
            logger.error(f"Restore of {pf.path} failed: {e}")
            self.emit(
                Severity.CRITICAL,
                category,
                pf.entity,
                f"{drift.detail}; restore failed: {e}",
                remediated=False,
            )
            return

        self._restored += 1
        logger.warning(f"Restored {pf.path} from {pf.reference_path}")
        self.emit(
            Severity.CRITICAL,
            category,
            pf.entity,
            f"{drift.detail}; restored from reference",
            remediated=True,
        )

    def _replace_from_reference(self, pf: ProtectedFile) -> None:
        if pf.immutable and os.path.isfile(pf.path) and not os.path.islink(pf.path):
            self.platform.clear_immutable(pf.path)

        try:
            os.makedirs(os.path.dirname(pf.path), exist_ok=True)
            atomic_copy(
                pf.reference_path,
                pf.path,
                mode=pf.expected_mode,
                uid=pf.expected_uid,
                gid=pf.expected_gid,
                expected_hash=pf.expected_hash,
            )
        except (OSError, ValueError) as e:
            raise RemediationError(f"copy from reference failed: {e}") from e

        self._reassert_immutable(pf)

        try:
            restored_hash = hash_file(pf.path)
        except OSError as e:
            raise RemediationError(f"cannot verify restored file: {e}") from e
        if restored_hash != pf.expected_hash:
            raise RemediationError("restored file does not match the expected hash")

    def _restore_metadata(self, pf: ProtectedFile, drift: FileDrift) -> None:
        try:
            if pf.immutable:
                self.platform.clear_immutable(pf.path)
            try:
                if drift.mode:
                    os.chmod(pf.path, pf.expected_mode)
                if drift.owner:
                    chown_if_needed(pf.path, pf.expected_uid, pf.expected_gid)
            except OSError as e:
                raise RemediationError(f"chmod/chown failed: {e}") from e
            self._reassert_immutable(pf)
            remediated = True
            outcome = "fixed in place"
        except RemediationError as e:
            logger.error(f"Metadata fix of {pf.path} failed: {e}")
            remediated = False
            outcome = f"fix failed: {e}"

        if drift.mode:
            self.emit(Severity.WARNING, 'mode_drift', pf.entity, f"{drift.detail}; {outcome}", remediated)
        if drift.owner:
            self.emit(Severity.WARNING, 'owner_drift', pf.entity, f"{drift.detail}; {outcome}", remediated)

    def _reassert_immutable(self, pf: ProtectedFile) -> None:
        if not pf.immutable:
            return
        try:
            self.platform.set_immutable(pf.path)
        except RemediationError as e:
            # Content and metadata are already correct at this point
            logger.error(f"Could not set immutable flag on {pf.path}: {e}")

    # ---------- status ----------

    @property
    def observer_alive(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def get_status(self) -> Dict:
        status = self.get_stats()
        status.update({
            'protected_files': len(self._protected),
            'watched_dirs': sorted(self._watched_dirs),
            'observer_alive': self.observer_alive,
            'observer_restarts': self._observer_restarts,
            'restored': self._restored,
            'refused_restores': self._refused,
        })
        return status
