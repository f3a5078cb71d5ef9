"""Local file and directory synchronisation for the file_sync tool.

Both endpoints must already have cleared the path sandbox. Symbolic links
found while walking the source tree are skipped, since following one could
read outside the sandbox roots.
"""

from __future__ import annotations

import fnmatch
import hashlib
import logging
import os
import shutil
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

HASH_CHUNK_BYTES = 1024 * 1024


class SyncError(Exception):
    """The sync could not be attempted at all."""

    pass


@dataclass
class SyncOptions:
    recursive: bool = False
    overwrite: bool = False
    pattern: str | None = None
    exclude_pattern: str | None = None
    verify: bool = False


@dataclass
class SyncReport:
    """What one sync did, file by file."""

    copied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    verified: int = 0
    failures: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def summary(self) -> str:
        lines = [
            f"Copied: {len(self.copied)}",
            f"Skipped (already present): {len(self.skipped)}",
        ]
        if self.verified:
            lines.append(f"Verified: {self.verified}")
        if self.failures:
            lines.append(f"Failed: {len(self.failures)}")
            lines.extend(f"  {failure}" for failure in self.failures)
        return "\n".join(lines)


def file_digest(path: str) -> str:
    """SHA-256 hex digest of a file's content."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_BYTES), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _selected(name: str, options: SyncOptions) -> bool:
    if options.pattern and not fnmatch.fnmatch(name, options.pattern):
        return False
    if options.exclude_pattern and fnmatch.fnmatch(name, options.exclude_pattern):
        return False
    return True


def _copy_one(src: str, dst: str, options: SyncOptions, report: SyncReport) -> None:
    if os.path.exists(dst) and not options.overwrite:
        report.skipped.append(dst)
        return
    try:
        os.makedirs(os.path.dirname(dst) or ".", exist_ok=True)
        shutil.copy2(src, dst)
    except OSError as e:
        logger.warning(f"Copy failed {src} -> {dst}: {e}")
        report.failures.append(f"{src}: {e.strerror or e}")
        return
    report.copied.append(dst)

    if options.verify:
        if file_digest(src) == file_digest(dst):
            report.verified += 1
        else:
            report.failures.append(f"{dst}: checksum mismatch after copy")


def sync_paths(source: str, destination: str, options: SyncOptions | None = None) -> SyncReport:
    """Copy ``source`` (file or directory) to ``destination``.

    A file copied onto an existing directory lands inside it. A directory
    source copies its files (and, with ``recursive``, its subdirectories)
    into ``destination``. Existing files are left alone unless ``overwrite``.

    Raises:
        SyncError: Source missing, or destination nested inside source.
    """
    options = options or SyncOptions()
    report = SyncReport()

    if os.path.islink(source) or not os.path.exists(source):
        raise SyncError(f"Source does not exist: {source}")

    if os.path.isfile(source):
        target = destination
        if os.path.isdir(destination):
            target = os.path.join(destination, os.path.basename(source))
        _copy_one(source, target, options, report)
        return report

    src_root = os.path.normcase(os.path.abspath(source))
    dst_root = os.path.normcase(os.path.abspath(destination))
    if dst_root == src_root or dst_root.startswith(src_root + os.sep):
        raise SyncError("Destination cannot be inside the source directory")

    for dirpath, dirnames, filenames in os.walk(source, followlinks=False):
        rel = os.path.relpath(dirpath, source)
        target_dir = destination if rel == "." else os.path.join(destination, rel)

        for name in sorted(filenames):
            src = os.path.join(dirpath, name)
            if os.path.islink(src):
                logger.info(f"Skipping symbolic link {src}")
                continue
            if _selected(name, options):
                _copy_one(src, os.path.join(target_dir, name), options, report)

        if not options.recursive:
            break
        dirnames[:] = sorted(d for d in dirnames if not os.path.islink(os.path.join(dirpath, d)))
        if options.exclude_pattern:
            dirnames[:] = [d for d in dirnames if not fnmatch.fnmatch(d, options.exclude_pattern)]

    if not os.path.isdir(destination):
        os.makedirs(destination, exist_ok=True)
    return report
