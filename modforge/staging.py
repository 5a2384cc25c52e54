"""Temporary staging of build output, destination copies and zip artefacts."""

from __future__ import annotations

import os
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import List, Sequence, Tuple

from .errors import StagingError
from .logging import get_logger

_LOGGER = get_logger("staging")


class StagingArea:
    """A private directory holding the module while it is assembled.

    The directory is emptied before use and always removed on exit, so an aborted
    build never leaks files into the next one.
    """

    def __init__(self, module_name: str, *, base_dir: Path | None = None) -> None:
        self.module_name = module_name
        self.base_dir = base_dir
        self.root: Path | None = None

    @property
    def module_dir(self) -> Path:
        if self.root is None:
            raise StagingError("Staging area is not active", identifier=self.module_name)
        return self.root / self.module_name

    def __enter__(self) -> "StagingArea":
        if self.base_dir is not None:
            root = self.base_dir / f".modforge-staging-{self.module_name}"
            if root.exists():
                shutil.rmtree(root)
            root.mkdir(parents=True)
        else:
            root = Path(tempfile.mkdtemp(prefix=f"modforge-{self.module_name}-"))
        self.root = root
        self.module_dir.mkdir()
        _LOGGER.debug("Staging module in %s", root)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()

    def cleanup(self) -> None:
        if self.root is not None and self.root.exists():
            shutil.rmtree(self.root, ignore_errors=True)
        self.root = None

    def write_text(self, relative_path: str, text: str) -> Path:
        target = self.module_dir / relative_path
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            target.write_text(text, encoding="utf-8-sig", newline="\n")
        except OSError as exc:
            raise StagingError(f"Could not write staged file: {exc}", identifier=relative_path) from exc
        return target

    def copy_file(self, source: Path, relative_path: str) -> Path:
        target = self.module_dir / relative_path
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            shutil.copy2(source, target)
        except OSError as exc:
            raise StagingError(f"Could not stage file: {exc}", identifier=relative_path) from exc
        return target


def destination_path(destination: Path, module_name: str, version: str, *, versioned: bool = False) -> Path:
    target = destination / module_name
    return target / version if versioned else target


def publish_to_destinations(
    staged: Path,
    destinations: Sequence[Path],
    *,
    module_name: str,
    version: str,
    versioned: bool = False,
) -> List[Path]:
    """Copy the staged module into every destination, replacing what was there.

    Every copy is first written to a sibling directory. Existing modules are only
    swapped out once all copies succeeded, and a failed swap restores the ones
    already replaced.
    """
    targets = [destination_path(destination, module_name, version, versioned=versioned) for destination in destinations]
    pending: List[Tuple[Path, Path]] = []
    try:
        for target in targets:
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                incoming = target.parent / f".{target.name}.{uuid.uuid4().hex[:8]}.new"
                pending.append((target, incoming))
                shutil.copytree(staged, incoming)
            except OSError as exc:
                raise StagingError(f"Could not copy module to destination: {exc}", identifier=str(target)) from exc
        backups = _swap_in(pending)
    finally:
        for _, incoming in pending:
            shutil.rmtree(incoming, ignore_errors=True)

    for backup in backups:
        shutil.rmtree(backup, ignore_errors=True)
    for target in targets:
        _LOGGER.info("Published %s %s to %s", module_name, version, target)
    return targets


def _swap_in(pending: Sequence[Tuple[Path, Path]]) -> List[Path]:
    swapped: List[Tuple[Path, Path | None]] = []
    for target, incoming in pending:
        backup: Path | None = None
        try:
            if target.exists():
                backup = incoming.with_name(incoming.name[: -len(".new")] + ".old")
                os.replace(target, backup)
            os.replace(incoming, target)
        except OSError as exc:
            if backup is not None and not target.exists():
                os.replace(backup, target)
            _restore(swapped)
            raise StagingError(f"Could not replace destination: {exc}", identifier=str(target)) from exc
        swapped.append((target, backup))
    return [backup for _, backup in swapped if backup is not None]


def _restore(swapped: Sequence[Tuple[Path, Path | None]]) -> None:
    for target, backup in reversed(swapped):
        shutil.rmtree(target, ignore_errors=True)
        if backup is not None:
            try:
                os.replace(backup, target)
            except OSError as exc:
                _LOGGER.error("Could not restore %s from %s: %s", target, backup, exc)


def create_artefact(
    staged: Path,
    directory: Path,
    *,
    module_name: str,
    version: str,
    include_version: bool = True,
) -> Path:
    """Zip the staged module as ``<Name>.<Version>.zip`` inside ``directory``."""
    stem = f"{module_name}.{version}" if include_version else module_name
    archive = directory / f"{stem}.zip"
    try:
        directory.mkdir(parents=True, exist_ok=True)
        if archive.exists():
            archive.unlink()
        created = shutil.make_archive(str(directory / stem), "zip", root_dir=staged.parent, base_dir=staged.name)
    except OSError as exc:
        raise StagingError(f"Could not create artefact: {exc}", identifier=str(archive)) from exc
    _LOGGER.info("Created artefact %s", created)
    return Path(created)


__all__ = ["StagingArea", "create_artefact", "destination_path", "publish_to_destinations"]
