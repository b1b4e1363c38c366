from pathlib import Path
import textwrap

import pytest

from agentz_mcp.metadata import TaxonomyLoadError, TaxonomyLoader, ToolTaxonomy


def test_default_lookup_is_case_insensitive() -> None:
    taxonomy = ToolTaxonomy()

    assert taxonomy.lookup("Write").operation == "create"
    assert taxonomy.lookup("WRITE_FILE").operation == "create"
    assert taxonomy.bucket("Bash") == "execute"
    assert taxonomy.bucket("grep") == "read"


def test_unknown_tools_fall_into_other() -> None:
    spec = ToolTaxonomy().lookup("mystery_tool")

    assert spec.bucket == "other"
    assert spec.operation is None
    assert ToolTaxonomy().lookup(None).bucket == "other"


def test_loader_merges_overrides(tmp_path: Path) -> None:
    path = tmp_path / "tools.yaml"
    path.write_text(
        textwrap.dedent(
            """
            tools:
              scribble:
                bucket: write
                operation: edit
              Bash:
                bucket: other
            """
        ).strip(),
        encoding="utf-8",
    )

    taxonomy = TaxonomyLoader(path).load()

    assert taxonomy.lookup("scribble").operation == "edit"
    assert taxonomy.bucket("Bash") == "other"
    assert taxonomy.lookup("Read").bucket == "read"
    assert "scribble" in taxonomy.names


def test_loader_handles_missing_file(tmp_path: Path) -> None:
    taxonomy = TaxonomyLoader(tmp_path / "absent.yaml").load()

    assert taxonomy.names == ToolTaxonomy().names


def test_loader_reports_validation_error(tmp_path: Path) -> None:
    path = tmp_path / "tools.yaml"
    path.write_text("tools:\n  broken:\n    bucket: teleport\n", encoding="utf-8")

    with pytest.raises(TaxonomyLoadError):
        TaxonomyLoader(path).load()


def test_loader_rejects_non_mapping(tmp_path: Path) -> None:
    path = tmp_path / "tools.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(TaxonomyLoadError):
        TaxonomyLoader(path).load()


def test_loader_reports_yaml_error(tmp_path: Path) -> None:
    path = tmp_path / "tools.yaml"
    path.write_text("tools: [unclosed\n", encoding="utf-8")

    with pytest.raises(TaxonomyLoadError):
        TaxonomyLoader(path).load()
