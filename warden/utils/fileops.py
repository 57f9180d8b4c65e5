"""
File helpers shared by the policy loader and the file integrity monitor.
"""

import hashlib
import os
import shutil
import tempfile
from typing import Optional

from ..constants import Limits


def hash_file(path: str, algorithm: str = "sha256") -> str:
    """Hex digest of a file's content, read in chunks.

    Raises OSError when the file cannot be read.
    """
    hasher = hashlib.new(algorithm)
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(Limits.HASH_CHUNK_SIZE), b''):
            hasher.update(chunk)
    return hasher.hexdigest()


def atomic_copy(
    source: str,
    target: str,
    mode: int,
    uid: Optional[int] = None,
    gid: Optional[int] = None,
    expected_hash: Optional[str] = None,
) -> None:
    """
    Replace `target` with a copy of `source` without a window where
    `target` is absent.

    The copy is staged in a temp file in the target's directory, verified
    against `expected_hash` (when given), given its final mode and owner,
    fsync'd, and then renamed over the target.

    Raises:
        OSError: on any I/O failure (the target is left untouched)
        ValueError: if the staged copy does not match `expected_hash`
    """
    directory = os.path.dirname(os.path.abspath(target)) or '.'
    fd, tmp_path = tempfile.mkstemp(prefix='.warden-', dir=directory)
    try:
        with os.fdopen(fd, 'wb') as out, open(source, 'rb') as src:
            shutil.copyfileobj(src, out, Limits.HASH_CHUNK_SIZE)
            out.flush()
            os.fsync(out.fileno())

        if expected_hash is not None:
            staged = hash_file(tmp_path)
            if staged != expected_hash:
                raise ValueError(
                    f"staged copy hash {staged[:12]} does not match expected {expected_hash[:12]}"
                )

        os.chmod(tmp_path, mode)
        if uid is not None and gid is not None:
            chown_if_needed(tmp_path, uid, gid)

        os.replace(tmp_path, target)
        _fsync_directory(directory)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def chown_if_needed(path: str, uid: int, gid: int) -> None:
    st = os.stat(path)
    if st.st_uid != uid or st.st_gid != gid:
        os.chown(path, uid, gid)


def _fsync_directory(directory: str) -> None:
    try:
        dir_fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        pass
    finally:
        os.close(dir_fd)
