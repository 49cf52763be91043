"""Capability loaders used by workers before they pass the verification gate."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LoadedCapability:
    """Result of loading one named capability module."""

    name: str
    text: str
    source: str
    is_success: bool
    error: str | None = None


class CapabilityLoader(Protocol):
    """Resolve capability names to loaded domain knowledge."""

    def load(self, name: str) -> LoadedCapability:
        """Load one capability; failures are reported, not raised."""


class DirectoryCapabilityLoader:
    """Read capability documents from a directory tree.

    A capability ``name`` resolves to ``<root>/<name>.md`` or, for
    capabilities shipped as a folder, ``<root>/<name>/SKILL.md``.
    """

    def __init__(self, root: Path, *, max_chars: int = 200_000) -> None:
        self.root = root
        self._max_chars = max_chars

    def load(self, name: str) -> LoadedCapability:
        for candidate in (self.root / f"{name}.md", self.root / name / "SKILL.md"):
            if not candidate.is_file():
                continue
            try:
                text = candidate.read_text("utf-8")
            except (OSError, UnicodeDecodeError) as error:
                logger.warning("Capability %s unreadable at %s: %s", name, candidate, error)
                return LoadedCapability(
                    name=name,
                    text="",
                    source=str(candidate),
                    is_success=False,
                    error=str(error),
                )
            if not text.strip():
                return LoadedCapability(
                    name=name,
                    text="",
                    source=str(candidate),
                    is_success=False,
                    error="capability document is empty",
                )
            return LoadedCapability(
                name=name,
                text=text[: self._max_chars],
                source=str(candidate),
                is_success=True,
            )
        return LoadedCapability(
            name=name,
            text="",
            source=str(self.root),
            is_success=False,
            error=f"no {name}.md or {name}/SKILL.md under {self.root}",
        )


class StaticCapabilityLoader:
    """Serve capabilities from an in-memory mapping."""

    def __init__(
        self,
        capabilities: Mapping[str, str] | None = None,
        *,
        load_all: bool = False,
    ) -> None:
        self._capabilities = dict(capabilities or {})
        self._load_all = load_all

    def load(self, name: str) -> LoadedCapability:
        if name in self._capabilities:
            return LoadedCapability(
                name=name,
                text=self._capabilities[name],
                source="static",
                is_success=True,
            )
        if self._load_all:
            return LoadedCapability(name=name, text="", source="static", is_success=True)
        return LoadedCapability(
            name=name,
            text="",
            source="static",
            is_success=False,
            error=f"capability {name!r} is not configured",
        )


def load_capabilities(
    loader: CapabilityLoader,
    names: tuple[str, ...],
) -> tuple[dict[str, str], list[LoadedCapability]]:
    """Load every name; return (loaded name -> text, failures)."""

    loaded: dict[str, str] = {}
    failures: list[LoadedCapability] = []
    for name in names:
        result = loader.load(name)
        if result.is_success:
            loaded[name] = result.text
        else:
            failures.append(result)
    return loaded, failures
