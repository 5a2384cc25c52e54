"""Merging classified sources into a single module script."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from .config import BuildOptions, InformationConfig
from .errors import AssemblyError
from .logging import get_logger
from .models import AssembledArtifact, BuildReport, ClassifiedFile, ExportLists, FileRole
from .powershell.tokenizer import PowerShellSyntaxError, TokenKind, tokenize
from .rendering import render

_LOGGER = get_logger("assembler")

# Other tooling truncates merged modules at this line; do not change the text.
EXPORT_MARKER = "# Export functions and aliases as required"

_SELF_PATH = re.compile(r"(\$PSScriptRoot)([\\/])(?:\.\.[\\/])+", re.IGNORECASE)
_LIBRARY_SUFFIX = ".dll"


@dataclass(frozen=True)
class LibraryBuckets:
    """Library files per runtime target, as module-relative Windows paths."""

    core: Tuple[str, ...] = ()
    default: Tuple[str, ...] = ()
    standard: Tuple[str, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.core or self.default or self.standard)


@dataclass
class AssembledBody:
    """Rewritten class and function segments, before the loader and trailer are added."""

    classes: List[Tuple[str, str]] = field(default_factory=list)
    scripts: List[Tuple[str, str]] = field(default_factory=list)

    def segments(self) -> List[str]:
        return [text for _, text in (*self.classes, *self.scripts)]

    def text(self) -> str:
        return _join(self.segments())


def _join(parts: Iterable[str]) -> str:
    chunks = [part.rstrip("\n") for part in parts if part and part.strip()]
    return "\n".join(chunks) + "\n" if chunks else ""


def _literal_spans(text: str) -> List[Tuple[int, int]]:
    spans: List[Tuple[int, int]] = []
    for token in tokenize(text):
        if token.kind is TokenKind.STRING and not token.expandable:
            spans.append((token.start, token.end))
    return spans


def rewrite_self_paths(text: str) -> str:
    """Collapse ``$PSScriptRoot\\..\\..\\`` style references to ``$PSScriptRoot\\``.

    Occurrences inside single-quoted literals are plain text and stay untouched.
    """
    if not _SELF_PATH.search(text):
        return text
    try:
        spans = _literal_spans(text)
    except PowerShellSyntaxError as exc:
        _LOGGER.debug("Rewriting without literal detection: %s", exc)
        spans = []

    def _replace(match: re.Match[str]) -> str:
        position = match.start()
        for start, end in spans:
            if start <= position < end:
                return match.group(0)
        return match.group(1) + match.group(2)

    return _SELF_PATH.sub(_replace, text)


def convert_to_script(text: str) -> str:
    """Strip the export trailer (and everything after it) from a merged module."""
    index = text.find(EXPORT_MARKER)
    if index == -1:
        return text
    return text[:index].rstrip() + "\n"


def _windows_path(relative_path: str) -> str:
    return relative_path.replace("/", "\\")


class Assembler:
    """Orders classified files and renders the merged or linked module."""

    def __init__(
        self,
        options: BuildOptions | None = None,
        information: InformationConfig | None = None,
        *,
        report: BuildReport | None = None,
    ) -> None:
        self.options = options or BuildOptions()
        self.information = information or InformationConfig()
        self.report = report if report is not None else BuildReport()

    def order(self, files: Sequence[ClassifiedFile]) -> Tuple[List[ClassifiedFile], List[ClassifiedFile]]:
        """Return ``(class_scripts, scripts)``, each sorted independently by the sort policy."""
        classes = [item for item in files if item.role is FileRole.CLASS_SCRIPT]
        scripts = [item for item in files if item.role is FileRole.SCRIPT]
        if self.options.sort == "none":
            return classes, scripts
        reverse = self.options.sort == "descending"

        def _key(item: ClassifiedFile) -> Tuple[str, str]:
            return item.relative_path.casefold(), item.relative_path

        return sorted(classes, key=_key, reverse=reverse), sorted(scripts, key=_key, reverse=reverse)

    def assemble_body(self, files: Sequence[ClassifiedFile]) -> AssembledBody:
        """Read and rewrite every class and function script.

        Raises AssemblyError when any file cannot be read.
        """
        classes, scripts = self.order(files)
        body = AssembledBody()
        for target, group in ((body.classes, classes), (body.scripts, scripts)):
            for item in group:
                target.append((item.relative_path, self._read(item)))
        return body

    def library_buckets(self, files: Sequence[ClassifiedFile]) -> LibraryBuckets:
        info = self.information
        buckets = {"core": [], "default": [], "standard": []}
        for item in files:
            if item.role is not FileRole.ASSET or not item.relative_path.lower().endswith(_LIBRARY_SUFFIX):
                continue
            for bucket, directory in (
                ("core", info.libraries_core),
                ("default", info.libraries_default),
                ("standard", info.libraries_standard),
            ):
                if directory and item.relative_path.startswith(f"{directory}/"):
                    buckets[bucket].append(_windows_path(item.relative_path))
                    break
        return LibraryBuckets(
            core=tuple(buckets["core"]),
            default=tuple(buckets["default"]),
            standard=tuple(buckets["standard"]),
        )

    def render_loader(self, libraries: LibraryBuckets) -> Optional[str]:
        """Render the edition-aware library loading stanza, or None without libraries."""
        if not libraries:
            return None
        return render(
            "library_loader.ps1.j2",
            core=list(libraries.core),
            default=list(libraries.default),
            standard=list(libraries.standard),
            handle_duplicates=self.options.handle_assemblies_with_same_name,
        )

    def render_export_trailer(self, exports: ExportLists) -> str:
        return render(
            "export_trailer.ps1.j2",
            marker=EXPORT_MARKER,
            functions=list(exports.functions),
            aliases=list(exports.aliases),
            cmdlets=list(exports.cmdlets),
        )

    def finalize(
        self,
        body: AssembledBody,
        exports: ExportLists,
        *,
        module_name: str,
        libraries: LibraryBuckets = LibraryBuckets(),
        inlined: Mapping[str, str] | None = None,
    ) -> AssembledArtifact:
        """Combine loader, inlined functions, classes, functions and the export trailer."""
        loader = self.render_loader(libraries)
        library_file = None
        parts: List[str] = []
        if loader is not None:
            if self.options.library_separate_file:
                library_file = f"{module_name}.Libraries.ps1"
                parts.append(f'. "$PSScriptRoot\\{library_file}"\n')
            else:
                parts.append(loader)
        parts.extend((inlined or {}).values())
        parts.extend(body.segments())
        parts.append(self.render_export_trailer(exports))
        script = _join(parts)
        _LOGGER.debug(
            "Assembled %d class and %d function scripts", len(body.classes), len(body.scripts)
        )
        return AssembledArtifact(script=script, loader=loader, exports=exports, library_file=library_file)

    def linked(
        self,
        files: Sequence[ClassifiedFile],
        exports: ExportLists,
        *,
        module_name: str,
        libraries: LibraryBuckets = LibraryBuckets(),
    ) -> AssembledArtifact:
        """Render a module that dot-sources its scripts instead of merging them."""
        classes, scripts = self.order(files)
        linked_files = tuple(item.relative_path for item in (*classes, *scripts))
        loader = self.render_loader(libraries)
        library_file = f"{module_name}.Libraries.ps1" if loader and self.options.library_separate_file else None
        parts: List[str] = []
        if loader is not None:
            parts.append(f'. "$PSScriptRoot\\{library_file}"\n' if library_file else loader)
        if linked_files:
            parts.append(render("linked_module.psm1.j2", files=[_windows_path(path) for path in linked_files]))
        parts.append(self.render_export_trailer(exports))
        return AssembledArtifact(
            script=_join(parts),
            loader=loader,
            exports=exports,
            library_file=library_file,
            linked_files=linked_files,
        )

    def _read(self, item: ClassifiedFile) -> str:
        try:
            text = item.read_text()
        except (OSError, UnicodeDecodeError) as exc:
            raise AssemblyError(f"Could not read source file: {exc}", identifier=item.relative_path) from exc
        text = text.replace("\r\n", "\n")
        if self.options.do_not_fix_relative_paths or item.relative_path in self.options.rewrite_exempt:
            return text
        return rewrite_self_paths(text)


__all__ = [
    "AssembledBody",
    "Assembler",
    "EXPORT_MARKER",
    "LibraryBuckets",
    "convert_to_script",
    "rewrite_self_paths",
]
