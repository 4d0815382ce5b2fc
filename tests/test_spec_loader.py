from __future__ import annotations

import json
from pathlib import Path

import pytest

from app_build_loop.errors import AmbiguousSpecError
from app_build_loop.spec_loader import SpecificationLoader, load_project_spec

from build_fixtures import TASKS_SPEC


def test_markdown_spec_parses_features_entities_and_surfaces() -> None:
    spec = SpecificationLoader().load(TASKS_SPEC)

    assert spec.name == "Tasks"
    assert spec.names() == ["Create task", "List tasks", "Profile"]
    create = spec.feature("Create task")
    assert create.description == "Lets a signed-in user add a task."
    assert [entity.name for entity in create.writes] == ["task"]
    assert create.writes[0].columns == ["id", "title", "done"]
    assert create.surfaces == ["/tasks/new"]
    assert create.artifact_kinds == ["data_access", "page"]
    assert create.declaration_order == 0
    assert spec.entities["task"].columns == ["id", "title", "done"]


def test_reader_depends_on_first_declared_writer() -> None:
    raw = (
        "# Notes\n"
        "## Feature: Browse\n- reads: note\n- surfaces: /notes\n"
        "## Feature: Write\n- writes: note(body)\n- surfaces: /notes/new\n"
        "## Feature: Import\n- writes: note(body, source)\n- surfaces: /import\n"
    )
    spec = SpecificationLoader().load(raw)
    assert spec.feature("Browse").depends_on == ["Write"]
    assert spec.feature("Write").depends_on == []
    assert spec.entities["note"].columns == ["id", "body", "source"]


def test_explicit_and_inferred_dependencies_are_merged() -> None:
    raw = (
        "# App\n"
        "## Feature: Auth\n- writes: account(email)\n- surfaces: /login\n"
        "## Feature: Posts\n- writes: post(title)\n- surfaces: /posts/new\n"
        "## Feature: Feed\n- reads: post, account\n- depends_on: Auth\n- surfaces: /\n"
    )
    feed = SpecificationLoader().load(raw).feature("Feed")
    assert feed.depends_on == ["Auth", "Posts"]


def test_feature_without_surface_or_entity_is_marked_ambiguous() -> None:
    raw = (
        "# App\n"
        "## Feature: Dashboard\nShows things.\n- surfaces: /dashboard\n"
        "## Feature: Sync\n- writes: job\n"
        "## Feature: Report\n- reads: invoice\n- surfaces: /report\n"
    )
    spec = SpecificationLoader().load(raw)
    assert spec.feature("Dashboard").ambiguity == "no concrete data entity"
    assert spec.feature("Sync").ambiguity == "no user-facing surface"
    assert "invoice" in (spec.feature("Report").ambiguity or "")


def test_entities_section_declares_readable_entities() -> None:
    raw = (
        "# App\n## Architecture\n- orm: drizzle\n- db: sqlite\n"
        "## Entities\n- invoice: number, total\n"
        "## Feature: Report\n- reads: invoice\n- surfaces: /report\n- design: visual-hero, contrast-ratio\n"
    )
    spec = SpecificationLoader().load(raw)
    report = spec.feature("Report")
    assert report.ambiguity is None
    assert report.depends_on == []
    assert report.design_criteria == ["visual-hero", "contrast-ratio"]
    assert spec.architecture == {"orm": "drizzle", "db": "sqlite"}
    assert [entity.name for entity in spec.entities_for(report)] == ["invoice"]


def test_json_spec_is_accepted() -> None:
    raw = json.dumps(
        {
            "name": "Shop",
            "entities": {"product": ["name", "price"]},
            "features": [
                {"name": "Catalog", "reads": ["product"], "surfaces": ["/products"]},
                {
                    "name": "Admin",
                    "writes": [{"name": "product", "columns": ["name", "price", "sku"]}],
                    "surfaces": ["/admin"],
                    "artifact_kinds": ["data_access"],
                },
            ],
        }
    )
    spec = SpecificationLoader().load(raw)
    assert spec.feature("Catalog").depends_on == ["Admin"]
    assert spec.feature("Admin").artifact_kinds == ["data_access"]
    assert spec.entities["product"].columns == ["id", "name", "price", "sku"]


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "# Only a title\nSome prose.\n",
        "# Dup\n## Feature: A\n- writes: a\n- surfaces: /a\n## Feature: A\n- writes: b\n- surfaces: /b\n",
        "# Missing\n## Feature: A\n- writes: a\n- surfaces: /a\n- depends_on: Ghost\n",
        '{"name": "broken", "features": [',
    ],
)
def test_unusable_specs_raise_ambiguous_spec(raw: str) -> None:
    with pytest.raises(AmbiguousSpecError) as exc_info:
        SpecificationLoader().load(raw)
    assert exc_info.value.describe().startswith("AmbiguousSpec: ")


@pytest.mark.parametrize(
    "feature, key",
    [
        ({"name": "A", "writes": "task", "surfaces": ["/a"]}, "writes"),
        ({"name": "A", "writes": ["task"], "reads": "task", "surfaces": ["/a"]}, "reads"),
        ({"name": "A", "writes": ["task"], "surfaces": "/a"}, "surfaces"),
        ({"name": "A", "writes": ["task"], "surfaces": ["/a"], "depends_on": "B"}, "depends_on"),
        ({"name": "A", "writes": ["task"], "surfaces": ["/a"], "artifact_kinds": "page"}, "artifact_kinds"),
        ({"name": "A", "writes": ["task"], "surfaces": ["/a"], "design": "visual-hero"}, "design_criteria"),
        ({"name": "A", "writes": [{"name": "task", "columns": "title"}], "surfaces": ["/a"]}, "columns"),
    ],
)
def test_json_fields_must_be_lists(feature: dict[str, object], key: str) -> None:
    raw = json.dumps({"name": "p", "features": [feature]})
    with pytest.raises(AmbiguousSpecError, match=f"'{key}' must be a list"):
        SpecificationLoader().load(raw)


@pytest.mark.parametrize(
    "payload, key",
    [
        ({"name": "p", "features": {"name": "A"}}, "features"),
        ({"name": "p", "entities": "task", "features": [{"name": "A", "writes": ["task"], "surfaces": ["/a"]}]}, "entities"),
    ],
)
def test_json_document_sections_must_be_lists(payload: dict[str, object], key: str) -> None:
    with pytest.raises(AmbiguousSpecError, match=f"'{key}' must be a list"):
        SpecificationLoader().load(json.dumps(payload))


def test_default_artifact_kinds_are_configurable(tmp_path: Path) -> None:
    spec_file = tmp_path / "SPEC.md"
    spec_file.write_text("# App\n## Feature: A\n- writes: a\n- surfaces: /a\n", encoding="utf-8")
    spec = load_project_spec(spec_file, default_artifact_kinds=("data_access", "page", "component"))
    assert spec.feature("A").artifact_kinds == ["data_access", "page", "component"]
