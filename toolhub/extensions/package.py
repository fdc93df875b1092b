"""Extension packages on disk: scanning, modification times, staging and swap.

Everything here is blocking filesystem work. The manager runs staging in a thread
and swaps the finished copy in itself.
"""

import logging
import os
import shutil
import tempfile
import uuid
import zipfile
from dataclasses import dataclass
from pathlib import Path

from toolhub.extensions.manifest import find_manifest

logger = logging.getLogger(__name__)

PACKAGE_SUFFIXES = (".dxt", ".zip")


@dataclass(frozen=True)
class ExtensionPackage:
    """A package file (.dxt/.zip) or a package directory."""

    name: str
    path: Path

    @property
    def is_archive(self) -> bool:
        return self.path.is_file()


def is_package(path: Path) -> bool:
    if path.name.startswith("."):
        return False
    if path.is_file():
        return path.suffix.lower() in PACKAGE_SUFFIXES
    return path.is_dir() and find_manifest(path) is not None


def scan_packages(extensions_dir: Path, installed_dir: Path | None = None) -> list[ExtensionPackage]:
    """List packages in extensions_dir, sorted by name. The installed dir is skipped."""
    if not extensions_dir.is_dir():
        return []
    skip = installed_dir.resolve() if installed_dir is not None else None
    found: dict[str, ExtensionPackage] = {}
    for entry in sorted(extensions_dir.iterdir()):
        if skip is not None and entry.resolve() == skip:
            continue
        if not is_package(entry):
            continue
        name = entry.stem if entry.is_file() else entry.name
        if name in found:
            logger.warning(
                "extensions: %s and %s share the name %s, keeping the first",
                found[name].path.name,
                entry.name,
                name,
            )
            continue
        found[name] = ExtensionPackage(name=name, path=entry)
    return list(found.values())


def package_mtime(path: Path) -> float:
    """Modification time of a package; for a directory, the newest file in it."""
    stat = path.stat()
    if not path.is_dir():
        return stat.st_mtime
    newest = stat.st_mtime
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                newest = max(newest, os.stat(os.path.join(root, name)).st_mtime)
            except OSError:
                continue
    return newest


def _extract_zip(archive: Path, dest: Path) -> None:
    base = dest.resolve()
    with zipfile.ZipFile(archive) as zf:
        for member in zf.infolist():
            target = (base / member.filename).resolve()
            if target != base and base not in target.parents:
                raise ValueError(f"unsafe path in archive: {member.filename}")
        zf.extractall(base)

    # Archives built by zipping a folder nest everything one level down.
    if find_manifest(dest) is None:
        children = [p for p in dest.iterdir() if not p.name.startswith(".")]
        if len(children) == 1 and children[0].is_dir() and find_manifest(children[0]):
            inner = children[0]
            for item in inner.iterdir():
                item.rename(dest / item.name)
            inner.rmdir()


def swap_into_place(staged: Path, target: Path) -> Path | None:
    """Rename staged over target. Returns the displaced copy for the caller to delete."""
    backup: Path | None = None
    if target.exists():
        backup = target.with_name(f".{target.name}.old-{uuid.uuid4().hex[:8]}")
        target.rename(backup)
    try:
        staged.rename(target)
    except OSError:
        if backup is not None:
            backup.rename(target)
        raise
    return backup


def stage_package(package: ExtensionPackage, target: Path) -> Path:
    """Unpack into a temp dir next to target and return it. Raises on failure.

    Nothing under target is touched; swapping the staged copy in is up to the caller.
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    staged = Path(tempfile.mkdtemp(prefix=f".{package.name}-", dir=target.parent))
    try:
        if package.is_archive:
            _extract_zip(package.path, staged)
        else:
            shutil.copytree(package.path, staged, dirs_exist_ok=True)
    except BaseException:
        shutil.rmtree(staged, ignore_errors=True)
        raise
    return staged


def copy_package(source: Path, extensions_dir: Path) -> Path:
    """Copy a package file or directory into the extensions dir."""
    extensions_dir.mkdir(parents=True, exist_ok=True)
    dest = extensions_dir / source.name
    if source.is_dir():
        shutil.copytree(source, dest)
    else:
        shutil.copy2(source, dest)
    return dest


def remove_path(path: Path) -> None:
    if path.is_dir():
        shutil.rmtree(path)
    elif path.exists():
        path.unlink()
