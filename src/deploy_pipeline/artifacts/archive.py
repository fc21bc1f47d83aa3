"""Tarball helpers for source artifacts.

The source stage stores the fetched tree as a gzipped tarball. GitHub
tarballs wrap every entry in a single top-level directory
("<owner>-<repo>-<sha>/"); normalize_tarball strips it so downstream stages
address files by repository-relative paths.

Regular files keep their permission bits and symlinks are carried as
symlinks, so an executable script in the repository is still executable
when the Test stage extracts the tree.
"""

import io
import logging
import os
import posixpath
import tarfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional

logger = logging.getLogger(__name__)

DEFAULT_FILE_MODE = 0o644

# Permission bits kept on extraction: no setuid/setgid/sticky, no group or
# other write.
EXTRACT_MODE_MASK = 0o755


class ArchiveError(Exception):
    """Raised when an archive is malformed or contains unsafe entries."""


@dataclass(frozen=True)
class ArchiveEntry:
    """One regular file or symlink in a source tree.

    Attributes:
        name: Normalized relative path.
        content: File contents; empty for symlinks.
        mode: Permission bits.
        linkname: Symlink target, None for regular files.
    """

    name: str
    content: bytes = b""
    mode: int = DEFAULT_FILE_MODE
    linkname: Optional[str] = None

    @property
    def is_symlink(self) -> bool:
        return self.linkname is not None

    def renamed(self, name: str) -> "ArchiveEntry":
        return ArchiveEntry(name=name, content=self.content, mode=self.mode, linkname=self.linkname)


def _safe_member_name(name: str) -> Optional[str]:
    normalized = posixpath.normpath(name)
    if normalized in ("", "."):
        return None
    if normalized.startswith("/") or normalized == ".." or normalized.startswith("../"):
        raise ArchiveError(f"Unsafe archive entry: {name}")
    return normalized


def _check_link_target(name: str, linkname: str) -> None:
    if posixpath.isabs(linkname):
        raise ArchiveError(f"Unsafe symlink target: {name} -> {linkname}")
    resolved = posixpath.normpath(posixpath.join(posixpath.dirname(name), linkname))
    if resolved == ".." or resolved.startswith("../"):
        raise ArchiveError(f"Unsafe symlink target: {name} -> {linkname}")


def read_entries(data: bytes) -> Dict[str, ArchiveEntry]:
    """Read every regular file and symlink in a gzipped tarball.

    Directories are implied by file paths and are not returned. Hard links,
    devices and fifos are skipped.

    Args:
        data: Gzipped tarball bytes.

    Returns:
        Mapping of normalized member path to entry.

    Raises:
        ArchiveError: If the archive is unreadable or has unsafe paths or
            symlink targets.
    """
    entries: Dict[str, ArchiveEntry] = {}
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
            for member in tar.getmembers():
                if not (member.isfile() or member.issym()):
                    continue
                name = _safe_member_name(member.name)
                if name is None:
                    continue
                if member.issym():
                    _check_link_target(name, member.linkname)
                    entries[name] = ArchiveEntry(
                        name=name, mode=member.mode, linkname=member.linkname
                    )
                    continue
                extracted = tar.extractfile(member)
                if extracted is None:
                    continue
                entries[name] = ArchiveEntry(name=name, content=extracted.read(), mode=member.mode)
    except (tarfile.TarError, OSError, EOFError) as e:
        raise ArchiveError(f"Unreadable archive: {e}") from e
    return entries


def read_members(data: bytes) -> Dict[str, bytes]:
    """Read the contents of every regular file in a gzipped tarball.

    Raises:
        ArchiveError: If the archive is unreadable or has unsafe entries.
    """
    return {
        name: entry.content
        for name, entry in read_entries(data).items()
        if not entry.is_symlink
    }


def pack_entries(entries: Iterable[ArchiveEntry]) -> bytes:
    """Build a gzipped tarball from entries, sorted by path."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for entry in sorted(entries, key=lambda e: e.name):
            info = tarfile.TarInfo(name=entry.name)
            info.mode = entry.mode
            if entry.is_symlink:
                info.type = tarfile.SYMTYPE
                info.linkname = entry.linkname
                tar.addfile(info)
            else:
                info.size = len(entry.content)
                tar.addfile(info, io.BytesIO(entry.content))
    return buffer.getvalue()


def pack_members(members: Dict[str, bytes], modes: Optional[Dict[str, int]] = None) -> bytes:
    """Build a gzipped tarball from a path→contents mapping.

    Args:
        members: File contents by path.
        modes: Permission bits by path; unlisted files get 0644.
    """
    modes = modes or {}
    return pack_entries(
        ArchiveEntry(name=name, content=content, mode=modes.get(name, DEFAULT_FILE_MODE))
        for name, content in members.items()
    )


def normalize_tarball(data: bytes) -> bytes:
    """Strip a single shared top-level directory from a tarball.

    Archives whose entries do not share one top-level directory are
    repacked unchanged. Modes and symlinks survive the repack.
    """
    entries = read_entries(data)
    if not entries:
        raise ArchiveError("Archive contains no files")

    roots = {name.split("/", 1)[0] for name in entries}
    if len(roots) == 1 and all("/" in name for name in entries):
        root = roots.pop() + "/"
        # symlink targets are relative to their own directory, so they
        # stay valid after the shared root is removed
        entries = {
            name[len(root):]: entry.renamed(name[len(root):])
            for name, entry in entries.items()
        }

    return pack_entries(entries.values())


def read_file(data: bytes, path: str) -> bytes:
    """Read one file from a gzipped tarball.

    Raises:
        ArchiveError: If the file is absent.
    """
    wanted = _safe_member_name(path)
    members = read_members(data)
    if wanted not in members:
        raise ArchiveError(f"File not found in archive: {path}")
    return members[wanted]


def _inside(root: Path, path: Path) -> bool:
    return path == root or root in path.parents


def extract_to(data: bytes, destination: Path) -> Path:
    """Extract a gzipped tarball into a directory.

    Regular files are written first with their permission bits (masked by
    EXTRACT_MODE_MASK), then symlinks are created. Every write is checked
    to land under the destination.

    Returns:
        The destination directory.
    """
    destination.mkdir(parents=True, exist_ok=True)
    root = destination.resolve()
    entries = read_entries(data)

    for name, entry in entries.items():
        if entry.is_symlink:
            continue
        target = (root / name).resolve()
        if not _inside(root, target.parent) or target == root:
            raise ArchiveError(f"Archive entry escapes destination: {name}")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(entry.content)
        os.chmod(target, entry.mode & EXTRACT_MODE_MASK)

    for name, entry in entries.items():
        if not entry.is_symlink:
            continue
        link = root / name
        link.parent.mkdir(parents=True, exist_ok=True)
        if not _inside(root, link.parent.resolve()):
            raise ArchiveError(f"Archive entry escapes destination: {name}")
        try:
            os.symlink(entry.linkname, link)
        except OSError as e:
            raise ArchiveError(f"Cannot create symlink {name}: {e}") from e

    logger.debug(
        "Extracted archive",
        extra={"destination": str(root), "entries": len(entries)},
    )
    return root
