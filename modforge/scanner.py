"""Project tree walking and file classification."""

from __future__ import annotations

import os
from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

from .config import InformationConfig
from .errors import ClassificationError
from .logging import get_logger
from .models import BuildReport, ClassifiedFile, FileRole

_LOGGER = get_logger("scanner")

_EXCLUDED_DIRS = {
    ".git",
    ".hg",
    ".svn",
    ".vs",
    ".vscode",
    ".idea",
    ".github",
    "node_modules",
    "__pycache__",
    ".pytest_cache",
    ".mypy_cache",
    ".modforge",
}

_EXCLUDED_FILES = {
    ".DS_Store",
    "Thumbs.db",
    "desktop.ini",
}

_SCRIPT_SUFFIXES = (".ps1",)
_ARRAY_INCLUDE_SUFFIXES = (".ps1", ".psd1")


@dataclass
class IgnoreRule:
    """Represents an ignore rule parsed from .gitignore or the exclusion list."""

    pattern: str
    directory_only: bool
    anchored: bool
    negate: bool
    has_slash: bool

    def matches(self, rel_path: str, is_dir: bool) -> bool:
        if not self.pattern:
            return False
        if self.directory_only and not is_dir:
            return False

        if self.anchored or self.has_slash:
            if fnmatchcase(rel_path, self.pattern):
                return True
            if self.directory_only and rel_path.startswith(f"{self.pattern}/"):
                return True
            return False

        for part in rel_path.split("/"):
            if fnmatchcase(part, self.pattern):
                return True
        return False


def build_ignore_rule(pattern: str) -> IgnoreRule | None:
    pattern = pattern.strip().replace("\\", "/")
    if not pattern or pattern.startswith("#"):
        return None

    negate = pattern.startswith("!")
    if negate:
        pattern = pattern[1:]

    directory_only = pattern.endswith("/")
    if directory_only:
        pattern = pattern[:-1]

    anchored = pattern.startswith("/")
    if anchored:
        pattern = pattern[1:]

    return IgnoreRule(
        pattern=pattern,
        directory_only=directory_only,
        anchored=anchored,
        negate=negate,
        has_slash="/" in pattern,
    )


def _parse_gitignore(path: Path) -> List[IgnoreRule]:
    if not path.exists():
        return []
    rules: List[IgnoreRule] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        rule = build_ignore_rule(line)
        if rule is not None:
            rules.append(rule)
    return rules


def _should_ignore(rel_path: str, is_dir: bool, rules: Sequence[IgnoreRule]) -> bool:
    ignored = False
    for rule in rules:
        if rule.matches(rel_path, is_dir):
            ignored = not rule.negate
    return ignored


def _under(rel_path: str, directories: Iterable[str]) -> bool:
    for directory in directories:
        if directory and rel_path.startswith(f"{directory}/"):
            return True
    return False


class SourceClassifier:
    """Walks a PowerShell project and buckets files by role."""

    def __init__(
        self,
        information: InformationConfig | None = None,
        *,
        report: BuildReport | None = None,
        extra_excludes: Sequence[str] = (),
    ) -> None:
        self.information = information or InformationConfig()
        self.report = report if report is not None else BuildReport()
        self._extra_excludes = tuple(extra_excludes)

    def classify(self, root: Path | str) -> List[ClassifiedFile]:
        """Return classified files in depth-first enumeration order."""
        root_path = Path(root).expanduser().resolve()
        if not root_path.exists():
            raise ClassificationError(f"Project path not found: {root}", identifier=str(root))
        if not root_path.is_dir():
            raise ClassificationError(f"Project path is not a directory: {root}", identifier=str(root))

        rules = _parse_gitignore(root_path / ".gitignore")
        for pattern in (*self.information.exclude, *self._extra_excludes):
            rule = build_ignore_rule(pattern)
            if rule is not None:
                rules.append(rule)

        classified: List[ClassifiedFile] = []
        for path, rel_path in self._iter_files(root_path, rules):
            role = self.role_for(rel_path)
            if role is None:
                continue
            classified.append(ClassifiedFile(relative_path=rel_path, role=role, path=path))

        _LOGGER.debug("Classified %d files under %s", len(classified), root_path)
        return classified

    def role_for(self, rel_path: str) -> Optional[FileRole]:
        """Return the role for a root-relative POSIX path, or None when excluded."""
        info = self.information
        name = rel_path.rsplit("/", 1)[-1]
        if "/" not in rel_path:
            lowered = name.lower()
            if any(fnmatchcase(lowered, pattern.lower()) for pattern in info.root_includes):
                return FileRole.ROOT_METADATA
            return None

        suffix = os.path.splitext(name)[1].lower()
        if suffix in _SCRIPT_SUFFIXES and _under(rel_path, info.script_dirs):
            return FileRole.SCRIPT
        if suffix in _ARRAY_INCLUDE_SUFFIXES and _under(rel_path, info.array_include_dirs):
            return FileRole.ARRAY_INCLUDE
        if suffix in _SCRIPT_SUFFIXES and _under(rel_path, info.class_dirs):
            return FileRole.CLASS_SCRIPT
        if _under(rel_path, info.asset_dirs):
            return FileRole.ASSET
        return None

    def _iter_files(
        self, root: Path, rules: Sequence[IgnoreRule]
    ) -> Iterator[Tuple[Path, str]]:
        def _on_error(error: OSError) -> None:
            location = error.filename or str(root)
            self.report.add("classify", "warning", f"Skipping unreadable directory: {error.strerror}", location)

        for dirpath, dirnames, filenames in os.walk(root, onerror=_on_error, followlinks=False):
            current_dir = Path(dirpath)
            rel_dir = current_dir.relative_to(root).as_posix() if current_dir != root else ""

            kept = []
            for name in sorted(dirnames):
                if name in _EXCLUDED_DIRS:
                    continue
                if (current_dir / name).is_symlink():
                    continue
                rel_path = f"{rel_dir}/{name}" if rel_dir else name
                if _should_ignore(rel_path, True, rules):
                    continue
                kept.append(name)
            dirnames[:] = kept

            for filename in sorted(filenames):
                if filename in _EXCLUDED_FILES:
                    continue
                rel_path = f"{rel_dir}/{filename}" if rel_dir else filename
                if _should_ignore(rel_path, False, rules):
                    continue
                yield current_dir / filename, rel_path


__all__ = ["IgnoreRule", "SourceClassifier", "build_ignore_rule"]
