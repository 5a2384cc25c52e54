"""Module version expressions and auto-increment stepping."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from .errors import VersionError
from .logging import get_logger
from .powershell.data import PowerShellSyntaxError, get_key, loads

_LOGGER = get_logger("versioning")
_PLACEHOLDER = "x"


def parse_version(text: str | None) -> Tuple[int, ...] | None:
    """Parse a concrete ``major.minor[.build[.revision]]`` version, or return None."""
    if text is None:
        return None
    core = str(text).strip().split("-", 1)[0]
    parts = core.split(".")
    if not 2 <= len(parts) <= 4:
        return None
    try:
        numbers = tuple(int(part) for part in parts)
    except ValueError:
        return None
    if any(number < 0 for number in numbers):
        return None
    return numbers


def parse_version_expression(expression: str) -> List[Optional[int]]:
    """Split a version expression into components; the placeholder becomes None.

    Raises VersionError when the expression is empty, has the wrong number of
    components, carries more than one placeholder or a non-numeric component.
    """
    text = (expression or "").strip()
    if not text:
        raise VersionError("Version expression is empty", identifier=expression)
    parts = text.split(".")
    if not 2 <= len(parts) <= 4:
        raise VersionError(
            "Version expression must have between two and four components",
            identifier=expression,
        )
    components: List[Optional[int]] = []
    for part in parts:
        if part.strip().lower() == _PLACEHOLDER:
            if None in components:
                raise VersionError(
                    "Version expression may contain only one placeholder component",
                    identifier=expression,
                )
            components.append(None)
            continue
        try:
            value = int(part)
        except ValueError as exc:
            raise VersionError(
                f"Version component {part!r} is not a number", identifier=expression
            ) from exc
        if value < 0:
            raise VersionError(
                f"Version component {part!r} is negative", identifier=expression
            )
        components.append(value)
    return components


def format_version(parts: Sequence[int]) -> str:
    return ".".join(str(part) for part in parts)


def _padded(parts: Sequence[int]) -> Tuple[int, ...]:
    return tuple(parts) + (0,) * (4 - len(parts))


def step_version(expected: str, current: str | None = None) -> str:
    """Return the concrete version for ``expected`` given the previously known version.

    Expressions without a placeholder are returned unchanged. Otherwise the
    placeholder component is chosen so the result is strictly greater than
    ``current`` (or the zero version when nothing is known yet).
    """
    components = parse_version_expression(expected)
    if None not in components:
        return expected.strip()

    step_index = components.index(None)
    known = parse_version(current) if current else None
    if current and known is None:
        raise VersionError("Previously known version is not a valid version", identifier=current)

    baseline = _padded(known) if known else (0, 0, 0, 0)
    prefix = tuple(components[:step_index])
    if prefix < baseline[:step_index]:
        raise VersionError(
            f"Version expression {expected} would produce a version lower than {current}",
            identifier=expected,
        )

    step = baseline[step_index] if known else 1

    def _build(value: int) -> List[int]:
        return [value if part is None else part for part in components]

    if _padded(_build(step)) > baseline:
        step = 0
    while _padded(_build(step)) <= baseline:
        step += 1
    return format_version(_build(step))


class ModuleVersionStepper:
    """Computes the next module version from a local manifest and a version registry."""

    def __init__(self, registry: Callable[[str], str | None] | None = None) -> None:
        self._registry = registry

    def current_version(self, module_name: str, manifest_path: Path | None = None) -> str | None:
        """Return the highest previously known version, or None when nothing is known."""
        candidates: List[str] = []
        if manifest_path is not None and manifest_path.is_file():
            local = _read_manifest_version(manifest_path)
            if local:
                candidates.append(local)
        if self._registry is not None:
            try:
                remote = self._registry(module_name)
            except Exception as exc:  # registry lookups are best-effort
                _LOGGER.warning("Version lookup for %s failed: %s", module_name, exc)
                remote = None
            if remote:
                candidates.append(remote)

        parsed = [(parse_version(value), value) for value in candidates]
        valid = [(_padded(version), value) for version, value in parsed if version is not None]
        if not valid:
            return None
        return max(valid)[1]

    def next_version(
        self, expression: str, module_name: str, manifest_path: Path | None = None
    ) -> str:
        components = parse_version_expression(expression)
        if None not in components:
            return expression.strip()
        current = self.current_version(module_name, manifest_path)
        version = step_version(expression, current)
        _LOGGER.info("Computed version %s for %s (previous: %s)", version, module_name, current or "none")
        return version


def _read_manifest_version(path: Path) -> str | None:
    try:
        data = loads(path.read_text(encoding="utf-8-sig"))
    except (OSError, PowerShellSyntaxError) as exc:
        _LOGGER.warning("Could not read version from %s: %s", path, exc)
        return None
    if not isinstance(data, dict):
        return None
    value = get_key(data, "ModuleVersion")
    return str(value) if value is not None else None


__all__ = [
    "ModuleVersionStepper",
    "format_version",
    "parse_version",
    "parse_version_expression",
    "step_version",
]
