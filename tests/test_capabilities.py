from __future__ import annotations

from pathlib import Path

import allure

from teamflow.orchestrator.capabilities import (
    DirectoryCapabilityLoader,
    StaticCapabilityLoader,
    load_capabilities,
)

pytestmark = [
    allure.epic("Worker Admission"),
    allure.feature("Capability Loading"),
]


def test_directory_loader_resolves_flat_and_folder_documents(tmp_path: Path) -> None:
    (tmp_path / "api-design.md").write_text("# API design\nUse nouns.", "utf-8")
    (tmp_path / "ui-kit").mkdir()
    (tmp_path / "ui-kit" / "SKILL.md").write_text("# UI kit", "utf-8")
    loader = DirectoryCapabilityLoader(tmp_path, max_chars=8)

    flat = loader.load("api-design")
    folder = loader.load("ui-kit")

    assert flat.is_success is True
    assert flat.text == "# API de"
    assert flat.source == str(tmp_path / "api-design.md")
    assert folder.is_success is True
    assert folder.source.endswith("SKILL.md")


def test_directory_loader_reports_missing_and_empty_documents(tmp_path: Path) -> None:
    (tmp_path / "blank.md").write_text("   \n", "utf-8")
    loader = DirectoryCapabilityLoader(tmp_path)

    missing = loader.load("absent")
    blank = loader.load("blank")

    assert missing.is_success is False
    assert missing.error is not None
    assert "absent.md" in missing.error
    assert blank.is_success is False
    assert blank.error == "capability document is empty"


def test_load_capabilities_splits_loaded_and_failed() -> None:
    loader = StaticCapabilityLoader({"x": "first", "y": "second"})

    loaded, failures = load_capabilities(loader, ("x", "z", "y"))

    assert loaded == {"x": "first", "y": "second"}
    assert [failure.name for failure in failures] == ["z"]
    assert failures[0].error == "capability 'z' is not configured"


def test_static_loader_can_accept_every_name() -> None:
    loaded, failures = load_capabilities(StaticCapabilityLoader(load_all=True), ("any",))

    assert loaded == {"any": ""}
    assert failures == []
