"""FastAPI application entrypoint for modforge service mode."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable, List, Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..errors import BuildError
from ..pipeline import BuildResult, ModuleBuildPipeline


class BuildRequest(BaseModel):
    path: str
    config: Optional[str] = None
    force: bool = False
    dry_run: bool = False


class AnalyzeRequest(BaseModel):
    path: str
    config: Optional[str] = None


class DiagnosticModel(BaseModel):
    stage: str
    severity: str
    message: str
    identifier: Optional[str] = None


class VerdictModel(BaseModel):
    module: str
    kind: str
    commands: List[str]


class BuildResponse(BaseModel):
    status: str
    module: str
    version: Optional[str] = None
    functions: List[str] = []
    aliases: List[str] = []
    destinations: List[str] = []
    artefact: Optional[str] = None
    diagnostics: List[DiagnosticModel] = []


class AnalyzeResponse(BaseModel):
    status: str
    verdicts: List[VerdictModel] = []
    unresolved: List[str] = []
    applications: List[str] = []
    diagnostics: List[DiagnosticModel] = []


class HealthResponse(BaseModel):
    status: str


PipelineFactory = Callable[..., ModuleBuildPipeline]


def _default_pipeline(path: str, *, config_path: Path | None = None, force: bool = False) -> ModuleBuildPipeline:
    return ModuleBuildPipeline.from_path(path, config_path=config_path, force=force)


def _diagnostics(result: BuildResult) -> List[DiagnosticModel]:
    return [
        DiagnosticModel(
            stage=item.stage,
            severity=item.severity,
            message=item.message,
            identifier=item.identifier,
        )
        for item in result.report.diagnostics
        if item.severity != "info"
    ]


async def _in_executor(func: Callable[[], Any]) -> Any:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:  # pragma: no cover - fallback path when not in async context
        return func()
    return await loop.run_in_executor(None, func)


def create_app(pipeline_factory: PipelineFactory = _default_pipeline) -> FastAPI:
    """Create the FastAPI application exposing modforge operations."""

    app = FastAPI(title="modforge Service", version="0.1.0")

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.post("/build", response_model=BuildResponse)
    async def build_module(payload: BuildRequest) -> BuildResponse:
        def _run_build() -> BuildResult:
            pipeline = pipeline_factory(
                payload.path,
                config_path=Path(payload.config) if payload.config else None,
                force=payload.force,
            )
            return pipeline.run(dry_run=payload.dry_run)

        result = await _in_executor(_run_build)
        if not result.success and result.error is not None:
            raise result.error
        exports = result.artifact.exports if result.artifact else None
        return BuildResponse(
            status="dry-run" if payload.dry_run else "ok",
            module=result.manifest.module_name if result.manifest else "",
            version=result.version,
            functions=list(exports.functions) if exports else [],
            aliases=list(exports.aliases) if exports else [],
            destinations=[str(path) for path in result.destinations],
            artefact=str(result.artefact_path) if result.artefact_path else None,
            diagnostics=_diagnostics(result),
        )

    @app.post("/analyze", response_model=AnalyzeResponse)
    async def analyze_module(payload: AnalyzeRequest) -> AnalyzeResponse:
        def _run_analyze() -> BuildResult:
            pipeline = pipeline_factory(
                payload.path,
                config_path=Path(payload.config) if payload.config else None,
            )
            return pipeline.analyze()

        result = await _in_executor(_run_analyze)
        dependencies = result.dependencies
        if dependencies is None and result.error is not None:
            raise result.error
        return AnalyzeResponse(
            status="ok" if result.success else "failed",
            verdicts=[
                VerdictModel(module=item.module, kind=item.kind.value, commands=list(item.commands))
                for item in (dependencies.verdicts if dependencies else [])
            ],
            unresolved=[item.name for item in dependencies.unresolved] if dependencies else [],
            applications=list(dependencies.applications) if dependencies else [],
            diagnostics=_diagnostics(result),
        )

    @app.exception_handler(FileNotFoundError)
    async def file_not_found_handler(_: Any, exc: FileNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(BuildError)
    async def build_error_handler(_: Any, exc: BuildError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"detail": exc.message, "stage": exc.stage, "identifier": exc.identifier},
        )

    @app.exception_handler(RuntimeError)
    async def runtime_error_handler(_: Any, exc: RuntimeError) -> JSONResponse:  # pragma: no cover - simple mapping
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    return app


def run_service(host: str = "127.0.0.1", port: int = 8000) -> None:  # pragma: no cover - integration path
    try:
        import uvicorn
    except ModuleNotFoundError as exc:
        raise RuntimeError(
            "uvicorn is required to run the service. Install it with `pip install modforge[service]`."
        ) from exc

    app = create_app()
    uvicorn.run(app, host=host, port=port)
