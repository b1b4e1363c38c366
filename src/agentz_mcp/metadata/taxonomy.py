"""Static tool taxonomy used to classify tool calls and file edits."""

from __future__ import annotations

from pathlib import Path
from typing import Literal, Mapping

import yaml
from pydantic import BaseModel, Field, ValidationError

ToolBucket = Literal["read", "write", "execute", "other"]
FileOperation = Literal["create", "edit", "delete"]


class TaxonomyLoadError(RuntimeError):
    """Raised when a tool taxonomy file cannot be parsed."""


class ToolSpec(BaseModel):
    """Classification of a single tool name."""

    bucket: ToolBucket = Field(default="other", description="Statistics bucket for the tool.")
    operation: FileOperation | None = Field(
        default=None,
        description="File operation performed when the tool input names a path.",
    )
    patch: bool = Field(
        default=False,
        description="Whether the tool input is a multi-file patch with file headers.",
    )


_READ = ToolSpec(bucket="read")
_EXECUTE = ToolSpec(bucket="execute")
_CREATE = ToolSpec(bucket="write", operation="create")
_EDIT = ToolSpec(bucket="write", operation="edit")
_DELETE = ToolSpec(bucket="write", operation="delete")

DEFAULT_TOOLS: dict[str, ToolSpec] = {
    # claude
    "Read": _READ,
    "Glob": _READ,
    "Grep": _READ,
    "LS": _READ,
    "Write": _CREATE,
    "Edit": _EDIT,
    "MultiEdit": _EDIT,
    "NotebookEdit": _EDIT,
    "Bash": _EXECUTE,
    # codex
    "exec_command": _EXECUTE,
    "shell": _EXECUTE,
    "apply_patch": ToolSpec(bucket="write", patch=True),
    # opencode and generic names
    "read": _READ,
    "read_file": _READ,
    "glob": _READ,
    "grep": _READ,
    "list": _READ,
    "list_files": _READ,
    "write": _CREATE,
    "write_file": _CREATE,
    "create_file": _CREATE,
    "edit": _EDIT,
    "edit_file": _EDIT,
    "patch": ToolSpec(bucket="write", patch=True),
    "delete_file": _DELETE,
    "remove_file": _DELETE,
    "bash": _EXECUTE,
}

_OTHER = ToolSpec()


class ToolTaxonomy:
    """Lookup table from tool name to :class:`ToolSpec`.

    Lookup is exact first, then case-insensitive; unknown tools fall into the
    ``other`` bucket and never produce file edits.
    """

    def __init__(self, tools: Mapping[str, ToolSpec] | None = None) -> None:
        self._tools: dict[str, ToolSpec] = dict(DEFAULT_TOOLS if tools is None else tools)
        self._folded = {name.lower(): spec for name, spec in self._tools.items()}

    def lookup(self, name: str | None) -> ToolSpec:
        if not name:
            return _OTHER
        spec = self._tools.get(name)
        if spec is None:
            spec = self._folded.get(name.lower(), _OTHER)
        return spec

    def bucket(self, name: str | None) -> ToolBucket:
        return self.lookup(name).bucket

    def merged(self, overrides: Mapping[str, ToolSpec]) -> "ToolTaxonomy":
        return ToolTaxonomy({**self._tools, **overrides})

    @property
    def names(self) -> list[str]:
        return sorted(self._tools)


class TaxonomyLoader:
    """Loads tool classification overrides from a YAML file.

    The document has a single ``tools`` mapping of tool name to
    ``{bucket, operation, patch}``. Overrides are merged over the defaults.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = Path(path) if path is not None else None

    def load(self) -> ToolTaxonomy:
        base = ToolTaxonomy()
        if self._path is None or not self._path.exists():
            return base

        try:
            document = yaml.safe_load(self._path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise TaxonomyLoadError(f"Failed to parse YAML in {self._path}: {exc}") from exc

        if document is None:
            return base
        if not isinstance(document, dict) or not isinstance(document.get("tools", {}), dict):
            raise TaxonomyLoadError(f"{self._path} must contain a 'tools' mapping")

        overrides: dict[str, ToolSpec] = {}
        errors: list[str] = []
        for name, raw in (document.get("tools") or {}).items():
            try:
                overrides[str(name)] = ToolSpec.model_validate(raw or {})
            except ValidationError as exc:
                errors.append(f"Tool '{name}' in {self._path}: {exc}")

        if errors:
            raise TaxonomyLoadError("; ".join(errors))

        return base.merged(overrides)


__all__ = [
    "DEFAULT_TOOLS",
    "FileOperation",
    "TaxonomyLoadError",
    "TaxonomyLoader",
    "ToolBucket",
    "ToolSpec",
    "ToolTaxonomy",
]
