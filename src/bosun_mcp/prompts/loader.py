"""Prompt catalog loading utilities."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

import yaml
from pydantic import ValidationError

from .models import PromptTemplate


class PromptLoadError(RuntimeError):
    """Raised when one or more prompt files cannot be parsed."""


class PromptLibrary:
    """Loads public prompt templates from YAML files on disk."""

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        paths = [Path(path) for path in (search_paths or [])]
        self._search_paths: list[Path] = [path for path in paths if path.exists()]

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def load_all(self) -> dict[str, PromptTemplate]:
        """Load prompts from all configured search paths.

        A file may hold one prompt mapping or a list of them. Later search
        paths override earlier ones when names collide.
        """

        if not self._search_paths:
            return {}

        prompts: dict[str, PromptTemplate] = {}
        errors: list[str] = []

        for base in self._search_paths:
            for path in sorted(base.glob("*.yml")) + sorted(base.glob("*.yaml")):
                try:
                    document = yaml.safe_load(path.read_text(encoding="utf-8"))
                except yaml.YAMLError as exc:  # pragma: no cover - library type
                    errors.append(f"Failed to parse YAML in {path}: {exc}")
                    continue

                if document is None:
                    continue

                entries = document if isinstance(document, list) else [document]
                for entry in entries:
                    try:
                        prompt = PromptTemplate.model_validate(entry)
                    except ValidationError as exc:
                        errors.append(f"Prompt validation error in {path}: {exc}")
                        continue
                    prompts[prompt.name] = prompt

        if errors:
            raise PromptLoadError("; ".join(errors))

        return prompts

    def get(self, name: str) -> PromptTemplate | None:
        return self.load_all().get(name)


def load_prompts(search_paths: Iterable[Path] | None = None) -> dict[str, PromptTemplate]:
    """Convenience wrapper for loading prompts from the provided paths."""

    return PromptLibrary(search_paths).load_all()


__all__ = ["PromptLibrary", "PromptLoadError", "PromptTemplate", "load_prompts"]
