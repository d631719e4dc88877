from __future__ import annotations

import logging
import os
import shutil
import stat
from collections.abc import Iterable
from pathlib import Path

from image_builder.logging_utils import log_event
from image_builder.observability import events


def provision_directories(
    paths: Iterable[Path],
    *,
    logger: logging.Logger | None = None,
) -> list[Path]:
    """Create each directory if missing. Returns only the ones created now."""
    active_logger = logger or logging.getLogger("image_builder.fs")
    created: list[Path] = []
    for path in paths:
        existed = path.is_dir()
        path.mkdir(parents=True, exist_ok=True)
        if not existed:
            created.append(path)
        active_logger.info(
            log_event(events.FS_DIRECTORY_PROVISIONED, path=str(path), created=not existed)
        )
    return created


def copy_manifest_files(source_dir: Path, dest_dir: Path, pattern: str) -> list[Path]:
    matches = sorted(path for path in source_dir.glob(pattern) if path.is_file())
    if not matches:
        raise FileNotFoundError(f"no files match {pattern} in {source_dir}")
    dest_dir.mkdir(parents=True, exist_ok=True)
    copied: list[Path] = []
    for source in matches:
        target = dest_dir / source.name
        shutil.copy2(source, target)
        copied.append(target)
    return copied


def overlay_copy_tree(
    source_dir: Path,
    dest_dir: Path,
    *,
    ignore_names: Iterable[str] = (),
    ignore_paths: Iterable[Path] = (),
    logger: logging.Logger | None = None,
) -> int:
    """Copy ``source_dir`` over ``dest_dir``.

    ``ignore_names`` apply to the top level of the source only; ``ignore_paths``
    are absolute paths skipped wherever they appear under the source.
    """
    active_logger = logger or logging.getLogger("image_builder.fs")
    if not source_dir.is_dir():
        raise FileNotFoundError(f"source tree not found: {source_dir}")
    source_dir = source_dir.resolve()

    copied = 0

    def _counting_copy(src: str, dst: str) -> str:
        nonlocal copied
        copied += 1
        return shutil.copy2(src, dst)

    ignored = set(ignore_names)
    ignored_paths = {os.path.abspath(path) for path in ignore_paths}
    source_root = os.path.abspath(source_dir)

    def _ignore(directory: str, names: list[str]) -> list[str]:
        directory = os.path.abspath(directory)
        skipped = [name for name in names if os.path.join(directory, name) in ignored_paths]
        if directory == source_root:
            skipped.extend(name for name in names if name in ignored)
        return skipped

    shutil.copytree(
        source_dir,
        dest_dir,
        symlinks=True,
        ignore=_ignore,
        copy_function=_counting_copy,
        dirs_exist_ok=True,
    )
    active_logger.info(
        log_event(
            events.FS_TREE_COPIED,
            source=str(source_dir),
            destination=str(dest_dir),
            files=copied,
            ignored=sorted(ignored),
        )
    )
    return copied


def iter_tree(root: Path) -> Iterable[Path]:
    yield root
    for dir_path, dir_names, file_names in os.walk(root):
        base = Path(dir_path)
        for name in dir_names:
            yield base / name
        for name in file_names:
            yield base / name


def apply_permissions(
    root: Path,
    *,
    uid: int,
    gid: int,
    mode: int,
    chown: bool = True,
    logger: logging.Logger | None = None,
) -> int:
    """chmod -R then chown -R; symlinks get ownership only."""
    active_logger = logger or logging.getLogger("image_builder.fs")
    count = 0
    for path in iter_tree(root):
        is_link = path.is_symlink()
        if not is_link:
            os.chmod(path, mode)
        if chown:
            os.lchown(path, uid, gid)
        count += 1
    active_logger.info(
        log_event(
            events.FS_PERMISSIONS_APPLIED,
            root=str(root),
            entries=count,
            uid=uid,
            gid=gid,
            mode=format(mode, "o"),
            chown=chown,
        )
    )
    return count


def permission_mismatches(root: Path, *, uid: int, gid: int, mode: int) -> list[str]:
    mismatches: list[str] = []
    for path in iter_tree(root):
        info = path.lstat()
        if info.st_uid != uid or info.st_gid != gid:
            mismatches.append(f"{path}:owner={info.st_uid}:{info.st_gid}")
            continue
        if stat.S_ISLNK(info.st_mode):
            continue
        if stat.S_IMODE(info.st_mode) != mode:
            mismatches.append(f"{path}:mode={format(stat.S_IMODE(info.st_mode), 'o')}")
    return mismatches


def is_empty_dir(path: Path) -> bool:
    return path.is_dir() and not any(path.iterdir())


def remove_tree(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
        return
    if path.exists():
        shutil.rmtree(path)
