"""Skill acquisition into an isolated staging area.

Supports:
- Local directories (copied; never modified in place)
- Git repositories (shallow clone of the default branch)
- .zip / .tar / .tar.gz / .tgz archives downloaded over HTTP(S)

Every source is materialized inside a staging directory owned by the current
operation. `SourceResolver.staging()` guarantees the directory is removed on
every exit path, including interruption.
"""

from __future__ import annotations

import logging
import os
import shutil
import socket
import subprocess
import tempfile
import urllib.request
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse

from skill_manager.config import SkillsConfig
from skill_manager.enums import ArchiveFormat
from skill_manager.errors import (
    AmbiguousRootError,
    FetchFailedError,
    ManifestMissingError,
    SourceError,
    SourceNotFoundError,
    SourceTimeoutError,
    SourceTooLargeError,
    UnsupportedSourceError,
)
from skill_manager.models.domain import (
    ArchiveUrlSource,
    GitUrlSource,
    LocalPathSource,
    SkillSource,
)
from skill_manager.observability.redaction import redact_text
from skill_manager.services.archive import copy_with_limit, extract_archive
from skill_manager.services.frontmatter import MANIFEST_FILE_NAME

logger = logging.getLogger(__name__)

# Never copied, hashed or searched for manifests.
SKIPPED_NAMES = frozenset({".git", "target", ".DS_Store"})

KNOWN_GIT_HOSTS = frozenset({"github.com", "gitlab.com", "bitbucket.org", "codeberg.org"})

ALLOWED_CONTENT_TYPES: dict[ArchiveFormat, tuple[str, ...]] = {
    ArchiveFormat.ZIP: ("application/zip", "application/octet-stream", "application/x-zip-compressed"),
    ArchiveFormat.TAR: ("application/x-tar", "application/octet-stream"),
    ArchiveFormat.TAR_GZ: ("application/gzip", "application/x-gzip", "application/x-tar", "application/octet-stream"),
    ArchiveFormat.TGZ: ("application/gzip", "application/x-gzip", "application/x-tar", "application/octet-stream"),
}


@dataclass(frozen=True)
class StagedSkill:
    """A skill tree inside a staging directory owned by one operation."""

    staging_dir: Path
    root: Path
    source: SkillSource


def _looks_like_http_url(source: str) -> bool:
    return source.startswith("http://") or source.startswith("https://")


def _looks_like_git_url(source: str) -> bool:
    if source.startswith(("git@", "ssh://", "git://")) or source.endswith(".git"):
        return True
    if _looks_like_http_url(source):
        host = (urlparse(source).hostname or "").lower()
        return host in KNOWN_GIT_HOSTS
    return False


def parse_source(source: str) -> SkillSource:
    """Classify a user-supplied source string.

    Existing filesystem paths win; then archive URLs (by suffix); then git
    URLs. Any other HTTP(S) URL is rejected before touching the network.

    Raises:
        SourceNotFoundError: Not a path, archive URL or git URL.
        UnsupportedSourceError: HTTP(S) URL with an unrecognized suffix.
    """
    raw = (source or "").strip()
    if not raw:
        raise SourceNotFoundError("source is required")

    path = Path(raw).expanduser()
    if path.exists():
        return LocalPathSource(path=path)

    if _looks_like_http_url(raw):
        archive_format = ArchiveFormat.from_url(raw)
        if archive_format is not None:
            return ArchiveUrlSource(url=raw, format=archive_format)

    if _looks_like_git_url(raw):
        return GitUrlSource(url=raw)

    if _looks_like_http_url(raw):
        raise UnsupportedSourceError(
            f"unsupported archive type for {raw}. Use .zip, .tar, .tar.gz or .tgz"
        )

    raise SourceNotFoundError(f"source not found: {raw}")


def _is_skipped(rel: Path) -> bool:
    return any(part in SKIPPED_NAMES for part in rel.parts)


def tree_size(root: Path) -> int:
    """Total size of regular files under root, not following symlinks."""
    total = 0
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        dirnames[:] = [d for d in dirnames if d not in SKIPPED_NAMES]
        for fname in filenames:
            if fname in SKIPPED_NAMES:
                continue
            p = Path(dirpath) / fname
            if p.is_symlink():
                continue
            try:
                total += p.stat().st_size
            except OSError:
                continue
    return total


def locate_skill_root(tree: Path) -> Path:
    """Find the directory holding SKILL.md inside a populated tree.

    Raises:
        AmbiguousRootError: More than one directory contains SKILL.md.
        ManifestMissingError: No SKILL.md anywhere in the tree.
    """
    if (tree / MANIFEST_FILE_NAME).is_file():
        return tree

    found: set[Path] = set()
    for dirpath, dirnames, filenames in os.walk(tree, followlinks=False):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIPPED_NAMES)
        if MANIFEST_FILE_NAME in filenames and not (Path(dirpath) / MANIFEST_FILE_NAME).is_symlink():
            found.add(Path(dirpath))

    if not found:
        raise ManifestMissingError(f"no {MANIFEST_FILE_NAME} found in source")
    if len(found) > 1:
        names = ", ".join(sorted(p.relative_to(tree).as_posix() for p in found))
        raise AmbiguousRootError(
            f"source contains multiple {MANIFEST_FILE_NAME} files ({names}); select one skill"
        )
    return found.pop()


def resolve_subpath(tree: Path, subpath: str) -> Path:
    """Resolve a user-selected skill inside a multi-skill tree.

    Tries <tree>/<subpath>, <tree>/skills/<subpath> and <tree>/skill/<subpath>.
    """
    rel = PurePosixPath(subpath.replace("\\", "/"))
    if rel.is_absolute() or Path(subpath).is_absolute():
        raise SourceError("skill selector must be a relative path")
    if ".." in rel.parts:
        raise SourceError("skill selector must not contain '..'")

    candidates = [tree / Path(*rel.parts)]
    if rel.parts and rel.parts[0] != "skills":
        candidates.append(tree / "skills" / Path(*rel.parts))
    if rel.parts and rel.parts[0] != "skill":
        candidates.append(tree / "skill" / Path(*rel.parts))

    for candidate in candidates:
        if candidate.is_dir() and (candidate / MANIFEST_FILE_NAME).is_file():
            return candidate

    raise ManifestMissingError(
        f"skill '{subpath}' not found. Expected {MANIFEST_FILE_NAME} in <source>/{subpath}, "
        f"<source>/skills/{subpath}, or <source>/skill/{subpath}"
    )


class SourceResolver:
    """Turn a SkillSource into a staged skill tree."""

    def __init__(self, config: SkillsConfig) -> None:
        """Initialize the resolver.

        Args:
            config: Configuration with staging root, timeouts and size limits.
        """
        self.config = config

    @contextmanager
    def staging(self) -> Iterator[Path]:
        """Create an exclusively-owned staging directory, removed on exit.

        The directory lives under the data dir so that installing is usually
        a same-filesystem rename.
        """
        root = self.config.staging_root
        root.mkdir(parents=True, exist_ok=True)
        staging_dir = Path(tempfile.mkdtemp(prefix="stage-", dir=root))
        try:
            yield staging_dir
        finally:
            shutil.rmtree(staging_dir, ignore_errors=True)
            logger.debug("Removed staging directory %s", staging_dir)

    def resolve(self, source: SkillSource, staging_dir: Path, *, subpath: str | None = None) -> StagedSkill:
        """Populate staging_dir from source and locate the skill root.

        Args:
            source: Parsed source.
            staging_dir: Fresh, empty directory from `staging()`.
            subpath: Optional skill selector for multi-skill sources.

        Returns:
            StagedSkill with the inferred root.

        Raises:
            SourceError: Any acquisition or root-location failure.
        """
        if isinstance(source, LocalPathSource):
            tree = self._copy_local(source, staging_dir)
        elif isinstance(source, GitUrlSource):
            tree = self._clone_git(source, staging_dir)
        elif isinstance(source, ArchiveUrlSource):
            tree = self._download_archive(source, staging_dir)
        else:
            raise UnsupportedSourceError(f"unsupported source: {source!r}")

        root = resolve_subpath(tree, subpath) if subpath else locate_skill_root(tree)
        logger.info("Staged skill from %s at %s", source.describe(), root)
        return StagedSkill(staging_dir=staging_dir, root=root, source=source)

    # ------------------------------------------------------------------
    # Local directories
    # ------------------------------------------------------------------

    def _copy_local(self, source: LocalPathSource, staging_dir: Path) -> Path:
        src = Path(source.path)
        if not src.exists():
            raise SourceNotFoundError(f"source path does not exist: {src}")
        if not src.is_dir():
            raise SourceNotFoundError(f"source path is not a directory: {src}")

        size = tree_size(src)
        if size > self.config.max_local_bytes:
            raise SourceTooLargeError(
                f"source is too large ({size} bytes). Limit is {self.config.max_local_bytes} bytes."
            )

        dest = staging_dir / "source"
        try:
            shutil.copytree(
                src,
                dest,
                symlinks=True,
                ignore=shutil.ignore_patterns(*SKIPPED_NAMES),
            )
        except (OSError, shutil.Error) as e:
            raise SourceError(f"failed to copy {src}: {e}") from e
        return dest

    # ------------------------------------------------------------------
    # Git
    # ------------------------------------------------------------------

    def _clone_git(self, source: GitUrlSource, staging_dir: Path) -> Path:
        dest = staging_dir / "repo"
        timeout = self.config.git_timeout_seconds
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}

        try:
            proc = subprocess.run(
                ["git", "clone", "--depth", "1", "--quiet", "--", source.url, str(dest)],
                capture_output=True,
                text=True,
                timeout=timeout,
                env=env,
            )
        except FileNotFoundError as e:
            raise FetchFailedError("git is not installed or not on PATH") from e
        except subprocess.TimeoutExpired as e:
            raise SourceTimeoutError(f"git clone timed out after {timeout}s: {source.describe()}") from e

        if proc.returncode != 0:
            stderr = redact_text((proc.stderr or "").strip(), max_chars=2000)
            raise FetchFailedError(f"git clone failed for {source.describe()}: {stderr}")

        shutil.rmtree(dest / ".git", ignore_errors=True)

        size = tree_size(dest)
        if size > self.config.max_local_bytes:
            raise SourceTooLargeError(
                f"repository is too large ({size} bytes). Limit is {self.config.max_local_bytes} bytes."
            )
        return dest

    # ------------------------------------------------------------------
    # Archives
    # ------------------------------------------------------------------

    def _download_archive(self, source: ArchiveUrlSource, staging_dir: Path) -> Path:
        archive_path = staging_dir / f"download.{source.format.value}"
        self._download_file(source, archive_path)

        dest = staging_dir / "extracted"
        try:
            extract_archive(
                archive_path,
                dest,
                source.format,
                max_entries=self.config.max_archive_entries,
                max_bytes=self.config.max_extracted_bytes,
            )
        finally:
            archive_path.unlink(missing_ok=True)
        return dest

    def _download_file(self, source: ArchiveUrlSource, dest: Path) -> None:
        timeout = self.config.download_timeout_seconds
        limit = self.config.max_download_bytes
        req = urllib.request.Request(source.url, headers={"User-Agent": "skill-manager"})

        try:
            with urllib.request.urlopen(req, timeout=timeout) as response:
                self._check_content_type(source.format, response.headers.get("Content-Type"))

                length = response.headers.get("Content-Length")
                if length and length.isdigit() and int(length) > limit:
                    raise SourceTooLargeError(
                        f"download too large ({length} bytes). Limit is {limit} bytes."
                    )

                with dest.open("wb") as out:
                    copy_with_limit(response, out, limit)
        except HTTPError as e:
            raise FetchFailedError(f"failed to download {source.describe()}: HTTP {e.code} {e.reason}") from e
        except URLError as e:
            if isinstance(e.reason, (socket.timeout, TimeoutError)):
                raise SourceTimeoutError(f"download timed out after {timeout}s: {source.describe()}") from e
            raise FetchFailedError(f"failed to download {source.describe()}: {e.reason}") from e
        except TimeoutError as e:
            raise SourceTimeoutError(f"download timed out after {timeout}s: {source.describe()}") from e
        except OSError as e:
            raise FetchFailedError(f"failed to download {source.describe()}: {e}") from e

    @staticmethod
    def _check_content_type(archive_format: ArchiveFormat, content_type: str | None) -> None:
        if not content_type:
            return
        ct = content_type.lower()
        if any(ct.startswith(allowed) for allowed in ALLOWED_CONTENT_TYPES[archive_format]):
            return
        raise UnsupportedSourceError(f"unsupported content-type for archive: {content_type}")
