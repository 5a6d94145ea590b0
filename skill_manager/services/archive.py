"""Safe archive extraction (prevents path traversal / zip-slip).

Extraction is two-phase: every entry is checked before anything is written,
and any failure while writing removes the destination directory. Either the
whole archive lands inside `dest` or nothing from it is left on disk.
"""

from __future__ import annotations

import logging
import re
import shutil
import stat
import tarfile
import zipfile
import zlib
from pathlib import Path, PurePosixPath
from typing import IO

from skill_manager.enums import ArchiveFormat
from skill_manager.errors import SourceError, SourceTooLargeError, UnsafeArchiveError

logger = logging.getLogger(__name__)

_COPY_CHUNK = 64 * 1024
_DRIVE_RE = re.compile(r"^[A-Za-z]:")


def copy_with_limit(src: IO[bytes], dst: IO[bytes], max_bytes: int) -> int:
    """Copy a stream, failing once more than max_bytes have been read."""
    total = 0
    while True:
        chunk = src.read(_COPY_CHUNK)
        if not chunk:
            break
        total += len(chunk)
        if total > max_bytes:
            raise SourceTooLargeError(f"data exceeds limit ({max_bytes} bytes)")
        dst.write(chunk)
    return total


def safe_member_path(name: str) -> PurePosixPath | None:
    """Normalize an archive member name, rejecting anything that could escape.

    Returns None for entries that name the archive root itself (e.g. "./").

    Raises:
        UnsafeArchiveError: absolute paths, drive prefixes or `..` segments.
    """
    normalized = name.replace("\\", "/")
    if normalized.startswith("/") or _DRIVE_RE.match(normalized):
        raise UnsafeArchiveError(f"unsafe archive path (absolute): {name}")

    parts: list[str] = []
    for part in normalized.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            raise UnsafeArchiveError(f"unsafe archive path (traversal): {name}")
        parts.append(part)

    if not parts:
        return None
    return PurePosixPath(*parts)


def _target_for(dest_resolved: Path, rel: PurePosixPath, name: str) -> Path:
    out_path = (dest_resolved / Path(*rel.parts)).resolve()
    try:
        out_path.relative_to(dest_resolved)
    except ValueError as e:
        raise UnsafeArchiveError(f"unsafe archive path (escapes root): {name}") from e
    return out_path


def _is_zip_symlink(info: zipfile.ZipInfo) -> bool:
    mode = info.external_attr >> 16
    return stat.S_ISLNK(mode)


def _plan_zip(zf: zipfile.ZipFile, dest_resolved: Path, max_entries: int, max_bytes: int):
    infos = zf.infolist()
    if len(infos) > max_entries:
        raise SourceTooLargeError(f"archive has too many entries ({len(infos)})")

    plan: list[tuple[zipfile.ZipInfo, Path]] = []
    declared = 0
    for info in infos:
        rel = safe_member_path(info.filename)
        if _is_zip_symlink(info):
            raise UnsafeArchiveError(f"archive contains symlink: {info.filename}")
        if rel is None:
            continue
        out_path = _target_for(dest_resolved, rel, info.filename)
        declared += info.file_size
        if declared > max_bytes:
            raise SourceTooLargeError("extracted data exceeds limit")
        plan.append((info, out_path))
    return plan


def _plan_tar(tf: tarfile.TarFile, dest_resolved: Path, max_entries: int, max_bytes: int):
    plan: list[tuple[tarfile.TarInfo, Path]] = []
    declared = 0
    for count, member in enumerate(tf, start=1):
        if count > max_entries:
            raise SourceTooLargeError(f"archive has too many entries ({count})")

        rel = safe_member_path(member.name)
        if member.issym() or member.islnk():
            raise UnsafeArchiveError(f"archive contains link: {member.name} -> {member.linkname}")
        if member.isdev() or member.isfifo():
            raise UnsafeArchiveError(f"archive contains special file: {member.name}")
        if rel is None:
            continue
        out_path = _target_for(dest_resolved, rel, member.name)
        if member.isreg():
            declared += member.size
            if declared > max_bytes:
                raise SourceTooLargeError("extracted data exceeds limit")
        plan.append((member, out_path))
    return plan


def _extract_zip(archive_path: Path, dest_resolved: Path, max_entries: int, max_bytes: int) -> int:
    try:
        with zipfile.ZipFile(archive_path, "r") as zf:
            plan = _plan_zip(zf, dest_resolved, max_entries, max_bytes)
            written = 0
            extracted = 0
            for info, out_path in plan:
                if info.is_dir():
                    out_path.mkdir(parents=True, exist_ok=True)
                    continue
                out_path.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as src, out_path.open("wb") as dst:
                    written += copy_with_limit(src, dst, max_bytes - written)
                extracted += 1
            return extracted
    except (zipfile.BadZipFile, OSError, RuntimeError, NotImplementedError, zlib.error) as e:
        if isinstance(e, (FileNotFoundError, PermissionError)):
            raise
        raise SourceError(f"invalid zip file: {e}") from e


def _extract_tar(archive_path: Path, dest_resolved: Path, gzipped: bool, max_entries: int, max_bytes: int) -> int:
    mode = "r:gz" if gzipped else "r:"
    try:
        with tarfile.open(archive_path, mode) as tf:
            plan = _plan_tar(tf, dest_resolved, max_entries, max_bytes)
            written = 0
            extracted = 0
            for member, out_path in plan:
                if member.isdir():
                    out_path.mkdir(parents=True, exist_ok=True)
                    continue
                if not member.isreg():
                    continue
                src = tf.extractfile(member)
                if src is None:
                    continue
                out_path.parent.mkdir(parents=True, exist_ok=True)
                with src, out_path.open("wb") as dst:
                    written += copy_with_limit(src, dst, max_bytes - written)
                extracted += 1
            return extracted
    except (tarfile.TarError, EOFError, OSError) as e:
        if isinstance(e, (FileNotFoundError, PermissionError)):
            raise
        raise SourceError(f"invalid tar archive: {e}") from e


def extract_archive(
    archive_path: Path,
    dest: Path,
    archive_format: ArchiveFormat,
    *,
    max_entries: int = 5_000,
    max_bytes: int = 512 * 1024 * 1024,
) -> int:
    """Extract an archive into dest, all-or-nothing.

    Args:
        archive_path: Downloaded archive file.
        dest: Extraction directory (created; removed again on failure).
        archive_format: Format detected from the source URL.
        max_entries: Maximum number of archive members.
        max_bytes: Maximum total uncompressed size.

    Returns:
        Number of regular files extracted.

    Raises:
        UnsafeArchiveError: If any entry would land outside dest or is a link.
        SourceTooLargeError: If entry count or size limits are exceeded.
        SourceError: If the archive is corrupt.
    """
    dest.mkdir(parents=True, exist_ok=True)
    dest_resolved = dest.resolve()

    try:
        if archive_format == ArchiveFormat.ZIP:
            count = _extract_zip(archive_path, dest_resolved, max_entries, max_bytes)
        else:
            count = _extract_tar(archive_path, dest_resolved, archive_format.is_gzipped, max_entries, max_bytes)
    except BaseException:
        shutil.rmtree(dest, ignore_errors=True)
        raise

    logger.debug("Extracted %d file(s) from %s", count, archive_path.name)
    return count
