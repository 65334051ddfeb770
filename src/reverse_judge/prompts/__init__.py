"""Prompt template registry for the reasoning service.

Loads prompt templates from YAML files in this package directory and provides
keyed access by ``PromptKind``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from reverse_judge.models import PromptKind, PromptTemplate

logger = logging.getLogger(__name__)

_PROMPTS_DIR: Path = Path(__file__).parent


class PromptRegistry:
    """Registry of prompt templates keyed by prompt kind.

    Loads all ``.yaml`` files from the ``prompts/`` package directory on
    construction. Files naming an unknown ``kind`` are skipped with a warning.
    """

    def __init__(self, directory: Path | None = None) -> None:
        """Load all YAML prompt templates from *directory* (this package by default)."""
        self._directory = directory or _PROMPTS_DIR
        self._templates: dict[PromptKind, PromptTemplate] = {}
        self._load_all()

    def _load_all(self) -> None:
        """Scan the prompts directory for YAML files and load each one."""
        for yaml_path in sorted(self._directory.glob("*.yaml")):
            self._load_yaml(yaml_path)

    def _load_yaml(self, path: Path) -> None:
        """Load a single YAML file with ``kind``, ``template`` and ``variables`` keys."""
        with path.open(encoding="utf-8") as fh:
            data: dict[str, Any] = yaml.safe_load(fh)

        try:
            kind = PromptKind(str(data["kind"]))
        except ValueError:
            logger.warning("Skipping unknown prompt kind %r in %s", data["kind"], path.name)
            return
        self._templates[kind] = PromptTemplate(
            kind=kind,
            template=str(data["template"]),
            variables=[str(v) for v in data["variables"]],
        )

    def get(self, kind: PromptKind) -> PromptTemplate:
        """Retrieve the template for *kind*.

        Raises:
            KeyError: If no template is registered for *kind*.
        """
        if kind not in self._templates:
            msg = f"No template registered for prompt kind: {kind!r}"
            raise KeyError(msg)
        return self._templates[kind]

    def __len__(self) -> int:
        """Return the number of registered prompt kinds."""
        return len(self._templates)


# Module-level singleton for reuse across reasoning calls.
_singleton_registry: PromptRegistry | None = None


def get_registry() -> PromptRegistry:
    """Return the singleton PromptRegistry instance, loading it on first call."""
    global _singleton_registry  # noqa: PLW0603
    if _singleton_registry is None:
        _singleton_registry = PromptRegistry()
    return _singleton_registry


def _reset_registry() -> None:
    """Reset the singleton registry (for testing only)."""
    global _singleton_registry  # noqa: PLW0603
    _singleton_registry = None
