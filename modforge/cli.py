"""CLI entrypoints for modforge commands."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from .assembler import convert_to_script
from .errors import BuildError
from .logging import configure_logging
from .pipeline import BuildResult, ModuleBuildPipeline
from .versioning import ModuleVersionStepper, step_version


def _add_verbose_option(
    parser: argparse.ArgumentParser, *, suppress_default: bool = False
) -> None:
    kwargs: dict[str, object] = {
        "action": "store_true",
        "help": "Increase log verbosity for troubleshooting.",
    }
    if suppress_default:
        kwargs["default"] = argparse.SUPPRESS
    else:
        kwargs["default"] = False
    parser.add_argument(
        "-v",
        "--verbose",
        **kwargs,
    )


def _add_project_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "path",
        nargs="?",
        default=".",
        help="Path to the module project root (defaults to current directory).",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to the build configuration (defaults to <path>/.modforge.yml).",
    )
    parser.add_argument(
        "--catalog",
        type=Path,
        default=None,
        help="YAML command catalogue used to attribute commands to modules.",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="modforge",
        description="Build PowerShell modules from a source tree.",
    )
    _add_verbose_option(parser)
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Also write DEBUG logs to this file.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    build_parser = subparsers.add_parser(
        "build",
        help="Merge the project into a module, write its manifest and publish it.",
    )
    _add_verbose_option(build_parser, suppress_default=True)
    _add_project_options(build_parser)
    build_parser.add_argument(
        "--force",
        action="store_true",
        help="Downgrade unresolved dependency failures to warnings.",
    )
    build_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Assemble and validate without copying the module to its destinations.",
    )

    analyze_parser = subparsers.add_parser(
        "analyze",
        help="Print the dependency report for a project.",
    )
    _add_verbose_option(analyze_parser, suppress_default=True)
    _add_project_options(analyze_parser)

    version_parser = subparsers.add_parser(
        "version",
        help="Compute the next version for a version expression such as 1.2.X.",
    )
    _add_verbose_option(version_parser, suppress_default=True)
    version_parser.add_argument("expected", help="Version expression; X marks the stepped component.")
    version_parser.add_argument("--current", default=None, help="Previously published version.")
    version_parser.add_argument(
        "--manifest",
        type=Path,
        default=None,
        help="Existing module manifest to read the previous version from.",
    )

    script_parser = subparsers.add_parser(
        "to-script",
        help="Strip the export trailer from a merged module to produce a plain script.",
    )
    _add_verbose_option(script_parser, suppress_default=True)
    script_parser.add_argument("input", type=Path, help="Merged module file (.psm1).")
    script_parser.add_argument(
        "output",
        type=Path,
        nargs="?",
        default=None,
        help="Output script path (defaults to the input name with a .ps1 suffix).",
    )

    serve_parser = subparsers.add_parser(
        "serve",
        help="Run the HTTP service exposing build and analyze.",
    )
    _add_verbose_option(serve_parser, suppress_default=True)
    serve_parser.add_argument("--host", default="127.0.0.1", help="Interface to bind.")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to listen on.")

    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint for modforge commands."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    configure_logging(verbose=bool(args.verbose), log_file=args.log_file)

    if args.command in ("build", "analyze"):
        try:
            pipeline = ModuleBuildPipeline.from_path(
                args.path,
                config_path=args.config,
                catalog_path=args.catalog,
                force=bool(getattr(args, "force", False)),
            )
        except FileNotFoundError as exc:
            parser.exit(1, f"{exc}\n")
        except BuildError as exc:
            parser.exit(1, f"modforge {args.command} failed at {exc.stage}: {exc.message}{_suffix(exc)}\n")

        if args.command == "build":
            result = pipeline.run(dry_run=bool(getattr(args, "dry_run", False)))
            _print_build(result, dry_run=bool(getattr(args, "dry_run", False)))
        else:
            result = pipeline.analyze()
            if result.dependencies is not None:
                for line in result.dependencies.summary_lines() or ["No external dependencies found"]:
                    print(line)
        if not result.success:
            parser.exit(1, f"{result.failure_message()}\nRun with --verbose for more details.\n")
    elif args.command == "version":
        try:
            if args.manifest is not None:
                current = args.current or ModuleVersionStepper().current_version("", args.manifest)
            else:
                current = args.current
            print(step_version(args.expected, current))
        except BuildError as exc:
            parser.exit(1, f"modforge version failed: {exc.message}{_suffix(exc)}\n")
    elif args.command == "to-script":
        output = args.output or args.input.with_suffix(".ps1")
        try:
            text = args.input.read_text(encoding="utf-8-sig")
            output.write_text(convert_to_script(text), encoding="utf-8-sig")
        except OSError as exc:
            parser.exit(1, f"modforge to-script failed: {exc}\n")
        print(f"Script written to {_relativize(output)}")
    elif args.command == "serve":
        from .service.app import run_service

        run_service(host=args.host, port=args.port)
    else:  # pragma: no cover - argparse enforces choices
        parser.exit(1, "Unknown command\n")


def _print_build(result: BuildResult, *, dry_run: bool) -> None:
    if not result.success:
        return
    label = " (dry-run)" if dry_run else ""
    print(f"Built {result.manifest.module_name if result.manifest else 'module'} {result.version}{label}")
    for destination in result.destinations:
        print(f"Published to {_relativize(destination)}")
    if result.artefact_path is not None:
        print(f"Artefact written to {_relativize(result.artefact_path)}")
    for diagnostic in result.report.warnings():
        print(f"warning: {diagnostic.message}")


def _suffix(exc: BuildError) -> str:
    return f" ({exc.identifier})" if exc.identifier else ""


def _relativize(path: Path) -> str:
    try:
        return str(path.relative_to(Path.cwd()))
    except ValueError:
        return str(path)


if __name__ == "__main__":
    main(sys.argv[1:])
