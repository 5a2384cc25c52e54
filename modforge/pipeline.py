"""Multi-stage module build pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .analyzers.commands import (
    ChainedCommandLookup,
    CommandLookup,
    PowerShellCommandLookup,
    StaticCommandLookup,
    builtin_lookup,
)
from .analyzers.dependencies import DependencyResolver, evaluate_dependency_policy
from .analyzers.symbols import SymbolExtractor
from .assembler import AssembledBody, Assembler, LibraryBuckets
from .config import BuildConfig, load_config
from .errors import BuildError
from .logging import get_logger, log_build_error
from .manifest import ManifestSynthesizer, validate_exports
from .models import (
    AssembledArtifact,
    BuildReport,
    ClassifiedFile,
    DependencyReport,
    DependencyVerdict,
    ExportLists,
    FileRole,
    ManifestRecord,
    SymbolTable,
)
from .powershell.data import PowerShellSyntaxError, loads
from .scanner import SourceClassifier
from .staging import StagingArea, create_artefact, publish_to_destinations
from .versioning import ModuleVersionStepper

STAGES = (
    "configure",
    "classify",
    "extract",
    "validate_exports",
    "assemble",
    "resolve_dependencies",
    "finalize",
    "manifest",
    "stage",
    "publish",
)

ANALYZE_STAGES = STAGES[: STAGES.index("resolve_dependencies") + 1]

_DEFAULT_ARTEFACT_DIR = "Artefacts"


@dataclass
class BuildState:
    """Values produced while a build runs; never written back into the configuration."""

    version: Optional[str] = None
    previous_manifest: Dict[str, Any] = field(default_factory=dict)
    files: List[ClassifiedFile] = field(default_factory=list)
    symbols: Optional[SymbolTable] = None
    exports: Optional[ExportLists] = None
    body: Optional[AssembledBody] = None
    libraries: LibraryBuckets = field(default_factory=LibraryBuckets)
    dependencies: Optional[DependencyReport] = None
    artifact: Optional[AssembledArtifact] = None
    record: Optional[ManifestRecord] = None
    manifest_text: Optional[str] = None
    destinations: List[Path] = field(default_factory=list)
    artefact_path: Optional[Path] = None


@dataclass
class BuildResult:
    """Outcome of a pipeline run; failures carry the stage and the error."""

    success: bool
    stage: str
    report: BuildReport
    error: Optional[BuildError] = None
    version: Optional[str] = None
    artifact: Optional[AssembledArtifact] = None
    manifest: Optional[ManifestRecord] = None
    manifest_text: Optional[str] = None
    dependencies: Optional[DependencyReport] = None
    destinations: List[Path] = field(default_factory=list)
    artefact_path: Optional[Path] = None

    @property
    def verdicts(self) -> List[DependencyVerdict]:
        return list(self.dependencies.verdicts) if self.dependencies else []

    def failure_message(self) -> str:
        if self.error is None:
            return ""
        message = f"modforge build failed at {self.stage}: {self.error.message}"
        if self.error.identifier:
            message += f" ({self.error.identifier})"
        return message


def build_lookup(config: BuildConfig, *, catalog_path: Path | None = None) -> CommandLookup:
    """Chain the bundled core catalogue, catalogue files, the inline catalogue and the host."""
    lookups: List[CommandLookup] = [builtin_lookup()]
    if catalog_path is not None:
        lookups.append(StaticCommandLookup.from_file(catalog_path))
    if config.build.command_catalog is not None:
        lookups.append(StaticCommandLookup.from_file(config.build.command_catalog))
    if config.catalog:
        lookups.append(StaticCommandLookup.from_mapping(config.catalog))
    if config.build.use_host_lookup:
        lookups.append(PowerShellCommandLookup())
    return ChainedCommandLookup(lookups)


class ModuleBuildPipeline:
    """Runs the build stages in order and converts the first failure into a result."""

    def __init__(
        self,
        config: BuildConfig,
        lookup: CommandLookup | None = None,
        registry: Callable[[str], str | None] | None = None,
        *,
        staging_dir: Path | None = None,
    ) -> None:
        self.config = config
        self.lookup = lookup or build_lookup(config)
        self.stepper = ModuleVersionStepper(registry)
        self.staging_dir = staging_dir
        self.logger = get_logger("pipeline")

    @classmethod
    def from_path(
        cls,
        path: Path | str,
        *,
        config_path: Path | None = None,
        catalog_path: Path | None = None,
        force: bool = False,
        **kwargs: Any,
    ) -> "ModuleBuildPipeline":
        """Load ``.modforge.yml`` from ``path`` (or ``config_path``) and build a pipeline."""
        project = Path(path).expanduser().resolve()
        if not project.exists():
            raise FileNotFoundError(f"Project path not found: {project}")
        config = load_config(config_path or project, root=project)
        if force:
            config = replace(config, module_skip=replace(config.module_skip, force=True))
        if catalog_path is not None and "lookup" not in kwargs:
            kwargs["lookup"] = build_lookup(config, catalog_path=catalog_path)
        return cls(config, **kwargs)

    def run(self, *, dry_run: bool = False) -> BuildResult:
        """Build the module; with ``dry_run`` nothing is written outside the staging area."""
        stages = STAGES[: STAGES.index("manifest") + 1] if dry_run else STAGES
        return self._execute(stages)

    def analyze(self) -> BuildResult:
        """Run the stages up to dependency resolution and return the dependency report."""
        return self._execute(ANALYZE_STAGES)

    def _execute(self, stages: Sequence[str]) -> BuildResult:
        report = BuildReport()
        state = BuildState()
        name = self.config.module.name
        current = stages[0]
        self.logger.info("Building module %s from %s", name, self.config.root)
        try:
            with StagingArea(name, base_dir=self.staging_dir) as staging:
                for current in stages:
                    self.logger.debug("Stage %s", current)
                    getattr(self, f"_stage_{current}")(state, report, staging)
        except BuildError as exc:
            if not exc.stage or exc.stage == "build":
                exc.stage = current
            log_build_error(self.logger, exc)
            return self._result(False, exc.stage, report, state, exc)

        self.logger.info("Module %s %s built (%s)", name, state.version, current)
        return self._result(True, current, report, state)

    @staticmethod
    def _result(
        success: bool,
        stage: str,
        report: BuildReport,
        state: BuildState,
        error: BuildError | None = None,
    ) -> BuildResult:
        return BuildResult(
            success=success,
            stage=stage,
            report=report,
            error=error,
            version=state.version,
            artifact=state.artifact,
            manifest=state.record,
            manifest_text=state.manifest_text,
            dependencies=state.dependencies,
            destinations=list(state.destinations),
            artefact_path=state.artefact_path,
        )

    @property
    def _project_manifest(self) -> Path:
        return self.config.root / f"{self.config.module.name}.psd1"

    def _stage_configure(self, state: BuildState, report: BuildReport, staging: StagingArea) -> None:
        state.previous_manifest = self._read_previous_manifest(report)
        state.version = self.stepper.next_version(
            self.config.module.version,
            self.config.module.name,
            self._project_manifest,
        )

    def _stage_classify(self, state: BuildState, report: BuildReport, staging: StagingArea) -> None:
        classifier = SourceClassifier(self.config.information, report=report)
        state.files = classifier.classify(self.config.root)

    def _stage_extract(self, state: BuildState, report: BuildReport, staging: StagingArea) -> None:
        extractor = SymbolExtractor(duplicate_policy=self.config.build.duplicate_functions, report=report)
        state.symbols = extractor.extract(state.files)

    def _stage_validate_exports(self, state: BuildState, report: BuildReport, staging: StagingArea) -> None:
        assert state.symbols is not None
        validate_exports(state.symbols)
        state.exports = self._synthesizer(report).export_lists(state.symbols)

    def _stage_assemble(self, state: BuildState, report: BuildReport, staging: StagingArea) -> None:
        assembler = self._assembler(report)
        state.body = assembler.assemble_body(state.files)
        state.libraries = assembler.library_buckets(state.files)

    def _stage_resolve_dependencies(self, state: BuildState, report: BuildReport, staging: StagingArea) -> None:
        assert state.body is not None and state.symbols is not None
        resolver = DependencyResolver(self.lookup, command_modules=self.config.command_modules, report=report)
        state.dependencies = resolver.resolve(
            state.body.segments(),
            state.symbols,
            [module.name for module in self.config.required_modules],
            self.config.approved_modules,
            inline_approved=self.config.build.merge and self.config.build.merge_missing,
        )
        for line in state.dependencies.summary_lines():
            report.add("resolve_dependencies", "info", line)
        evaluate_dependency_policy(state.dependencies, self.config.module_skip, report)

    def _stage_finalize(self, state: BuildState, report: BuildReport, staging: StagingArea) -> None:
        assert state.body is not None and state.exports is not None and state.dependencies is not None
        assembler = self._assembler(report)
        name = self.config.module.name
        if self.config.build.merge:
            state.artifact = assembler.finalize(
                state.body,
                state.exports,
                module_name=name,
                libraries=state.libraries,
                inlined=state.dependencies.inlined,
            )
        else:
            state.artifact = assembler.linked(
                state.files,
                state.exports,
                module_name=name,
                libraries=state.libraries,
            )

    def _stage_manifest(self, state: BuildState, report: BuildReport, staging: StagingArea) -> None:
        assert state.exports is not None and state.version is not None and state.artifact is not None
        synthesizer = self._synthesizer(report)
        drop: Tuple[str, ...] = ()
        if self.config.build.merge_missing and state.dependencies and state.dependencies.inlined:
            drop = self.config.approved_modules
        record = synthesizer.build_record(
            version=state.version,
            # The trailer and the manifest share this one value.
            exports=state.artifact.exports,
            required_modules=synthesizer.resolve_required_modules(drop=drop),
            guid=synthesizer.module_guid(state.previous_manifest),
        )
        _, state.manifest_text = synthesizer.write(record, staging.module_dir)
        state.record = record

    def _stage_stage(self, state: BuildState, report: BuildReport, staging: StagingArea) -> None:
        assert state.artifact is not None
        name = self.config.module.name
        artifact = state.artifact
        staging.write_text(f"{name}.psm1", artifact.script)
        if artifact.library_file and artifact.loader:
            staging.write_text(artifact.library_file, artifact.loader)

        generated = {f"{name}.psm1".lower(), f"{name}.psd1".lower()}
        copy_roles = {FileRole.ROOT_METADATA, FileRole.ARRAY_INCLUDE, FileRole.ASSET}
        if not self.config.build.merge:
            copy_roles |= {FileRole.SCRIPT, FileRole.CLASS_SCRIPT}
        for item in state.files:
            if item.role not in copy_roles:
                continue
            if item.role is FileRole.ROOT_METADATA and item.relative_path.lower() in generated:
                continue
            staging.copy_file(item.path, item.relative_path)

    def _stage_publish(self, state: BuildState, report: BuildReport, staging: StagingArea) -> None:
        assert state.version is not None
        name = self.config.module.name
        options = self.config.build
        state.destinations = publish_to_destinations(
            staging.module_dir,
            options.destinations,
            module_name=name,
            version=state.version,
            versioned=options.versioned_destination,
        )
        artefact = self.config.artefact
        if artefact.enabled:
            state.artefact_path = create_artefact(
                staging.module_dir,
                artefact.path or self.config.root / _DEFAULT_ARTEFACT_DIR,
                module_name=name,
                version=state.version,
                include_version=artefact.include_version,
            )
        if not state.destinations and not artefact.enabled:
            report.add("publish", "warning", "No destinations or artefact configured; nothing was published")

    def _assembler(self, report: BuildReport) -> Assembler:
        return Assembler(self.config.build, self.config.information, report=report)

    def _synthesizer(self, report: BuildReport) -> ManifestSynthesizer:
        return ManifestSynthesizer(self.config, self.lookup, report=report)

    def _read_previous_manifest(self, report: BuildReport) -> Dict[str, Any]:
        path = self._project_manifest
        if not path.is_file():
            return {}
        try:
            data = loads(path.read_text(encoding="utf-8-sig"))
        except (OSError, PowerShellSyntaxError) as exc:
            report.add("configure", "warning", f"Could not read existing manifest: {exc}", str(path))
            return {}
        return data if isinstance(data, dict) else {}


__all__ = [
    "ANALYZE_STAGES",
    "BuildResult",
    "BuildState",
    "ModuleBuildPipeline",
    "STAGES",
    "build_lookup",
]
