"""Tests for modforge.scanner."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from modforge.config import InformationConfig
from modforge.errors import ClassificationError
from modforge.models import BuildReport, FileRole
from modforge.scanner import SourceClassifier, build_ignore_rule
from tests._fixtures.project_builder import ProjectBuilder


def _roles(builder: ProjectBuilder, information: InformationConfig | None = None) -> dict[str, FileRole]:
    return {item.relative_path: item.role for item in builder.classify(information)}


def test_classifies_sample_project(project_builder: ProjectBuilder) -> None:
    project_builder.write_sample()
    project_builder.write({"Sample.psd1": "@{}\n", "LICENSE.txt": "MIT\n", "README.md": "# Sample\n"})

    classified = project_builder.classify()

    assert [item.relative_path for item in classified] == [
        "LICENSE.txt",
        "Sample.psd1",
        "Classes/Widget.ps1",
        "Data/items.json",
        "Private/Format-Item.ps1",
        "Public/Get-Foo.ps1",
    ]
    roles = {item.relative_path: item.role for item in classified}
    assert roles["Sample.psd1"] is FileRole.ROOT_METADATA
    assert roles["LICENSE.txt"] is FileRole.ROOT_METADATA
    assert roles["Classes/Widget.ps1"] is FileRole.CLASS_SCRIPT
    assert roles["Data/items.json"] is FileRole.ASSET
    assert roles["Public/Get-Foo.ps1"] is FileRole.SCRIPT
    assert classified[0].path == project_builder.path().resolve() / "LICENSE.txt"


def test_tooling_directories_are_pruned(project_builder: ProjectBuilder) -> None:
    project_builder.write(
        {
            ".git/Public/Get-Git.ps1": "function Get-Git { }\n",
            "Public/node_modules/x.ps1": "function Get-Node { }\n",
            "Public/Get-Kept.ps1": "function Get-Kept { }\n",
            "Public/Thumbs.db": b"\x00",
        }
    )
    assert list(_roles(project_builder)) == ["Public/Get-Kept.ps1"]


def test_role_precedence_and_case_sensitive_directories(project_builder: ProjectBuilder) -> None:
    project_builder.write(
        {
            "Public/Config/Settings.ps1": "'a'\n",
            "Public/Config/Values.psd1": "@{}\n",
            "public/Get-Lower.ps1": "function Get-Lower { }\n",
            "Classes/Notes.txt": "notes\n",
            "Other/Get-Other.ps1": "function Get-Other { }\n",
        }
    )
    information = InformationConfig(array_include_dirs=("Public/Config",))
    roles = _roles(project_builder, information)
    assert roles == {
        "Public/Config/Settings.ps1": FileRole.SCRIPT,
        "Public/Config/Values.psd1": FileRole.ARRAY_INCLUDE,
    }


def test_gitignore_and_configured_excludes(project_builder: ProjectBuilder) -> None:
    project_builder.write(
        {
            ".gitignore": "Public/Old*.ps1\n!Public/OldKeep.ps1\n",
            "Public/Old1.ps1": "'old'\n",
            "Public/OldKeep.ps1": "'keep'\n",
            "Private/Hidden.ps1": "'hidden'\n",
            "Public/Get-New.ps1": "'new'\n",
        }
    )
    roles = _roles(project_builder, InformationConfig(exclude=("Private/",)))
    assert list(roles) == ["Public/Get-New.ps1", "Public/OldKeep.ps1"]


def test_symlinked_directories_are_not_followed(project_builder: ProjectBuilder) -> None:
    project_builder.write({"Public/Get-Foo.ps1": "function Get-Foo { }\n"})
    root = project_builder.path()
    (root / "Public" / "loop").symlink_to(root, target_is_directory=True)
    assert list(_roles(project_builder)) == ["Public/Get-Foo.ps1"]


def test_missing_or_file_root_raises(tmp_path: Path) -> None:
    with pytest.raises(ClassificationError):
        SourceClassifier().classify(tmp_path / "missing")
    target = tmp_path / "file.ps1"
    target.write_text("'x'\n", encoding="utf-8")
    with pytest.raises(ClassificationError) as excinfo:
        SourceClassifier().classify(target)
    assert excinfo.value.stage == "classify"


def test_build_ignore_rule_parsing() -> None:
    assert build_ignore_rule("# comment") is None
    rule = build_ignore_rule("!/build/")
    assert rule is not None
    assert rule.negate and rule.anchored and rule.directory_only
    assert rule.matches("build", True)
    assert not rule.matches("build", False)
    assert not rule.matches("src/build", True)


def test_unreadable_directory_is_skipped_with_warning(
    project_builder: ProjectBuilder, monkeypatch: pytest.MonkeyPatch
) -> None:
    project_builder.write_sample()
    real_walk = os.walk

    def walk(top, onerror=None, followlinks=False):
        for dirpath, dirnames, filenames in real_walk(top, onerror=onerror, followlinks=followlinks):
            if Path(dirpath).name == "Private":
                onerror(PermissionError(13, "Permission denied", dirpath))
                dirnames[:] = []
                continue
            yield dirpath, dirnames, filenames

    monkeypatch.setattr(os, "walk", walk)
    report = BuildReport()

    classified = SourceClassifier(report=report).classify(project_builder.path())

    paths = [item.relative_path for item in classified]
    assert "Private/Format-Item.ps1" not in paths
    assert "Public/Get-Foo.ps1" in paths
    assert "Classes/Widget.ps1" in paths
    (warning,) = report.warnings()
    assert warning.stage == "classify"
    assert warning.message == "Skipping unreadable directory: Permission denied"
    assert warning.identifier.endswith("Private")
