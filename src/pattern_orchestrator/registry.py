"""Component registry: declared categories and components, in declared order."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Generic, Iterator, TypeVar

from src.pattern_orchestrator.config import read_config_file
from src.pattern_orchestrator.exceptions import ConfigError
from src.pattern_orchestrator.models import (
    Category,
    Component,
    ComponentDeclaration,
    MonitorType,
)
from src.pattern_orchestrator.protocols import ConfigSource

logger = logging.getLogger(__name__)

T = TypeVar("T", ComponentDeclaration, Component)

# Keys consumed by the registry itself; everything else is a static hint.
_RESERVED_KEYS = {"id", "name", "display_name", "monitor_type"}


class YamlConfigSource:
    """Configuration source backed by ``pattern-config.yaml``.

    Accepts either a plain list of components under each category or a
    mapping with a ``components`` list (plus ``title`` and
    ``version_column_title`` used only for display).
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._raw: dict[str, Any] | None = None

    def _load(self) -> dict[str, Any]:
        if self._raw is None:
            self._raw = read_config_file(self.path)
        return self._raw

    def _categories(self) -> dict[str, Any]:
        categories = self._load().get("categories")
        if not isinstance(categories, dict) or not categories:
            raise ConfigError(f"{self.path}: 'categories' must be a non-empty mapping")
        return categories

    def list_categories(self) -> list[str]:
        return [str(key) for key in self._categories()]

    def list_components(self, category: str) -> list[dict[str, Any]]:
        body = self._categories().get(category)
        if isinstance(body, dict):
            body = body.get("components", [])
        if body is None:
            return []
        if not isinstance(body, list):
            raise ConfigError(f"{self.path}: components of '{category}' must be a list")
        return body


class ComponentDirectory(Generic[T]):
    """Ordered, id-keyed collection of components.

    Iteration follows configuration-declared order, which is also the
    install order inside a category.
    """

    def __init__(self, items: list[T] | None = None) -> None:
        self._items: dict[str, T] = {}
        for item in items or []:
            self._items[item.id] = item

    def __iter__(self) -> Iterator[T]:
        return iter(self._items.values())

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, component_id: object) -> bool:
        return component_id in self._items

    def __getitem__(self, component_id: str) -> T:
        return self._items[component_id]

    def ids(self) -> list[str]:
        return list(self._items)

    def categories(self) -> list[Category]:
        """Categories in first-declared order, without duplicates."""
        seen: list[Category] = []
        for item in self._items.values():
            if item.category not in seen:
                seen.append(item.category)
        return seen

    def by_category(self, category: Category) -> list[T]:
        return [item for item in self._items.values() if item.category == category]


class ComponentRegistry:
    """Materializes component declarations from a :class:`ConfigSource`."""

    def __init__(self, source: ConfigSource) -> None:
        self.source = source

    def load(self) -> ComponentDirectory[ComponentDeclaration]:
        """Load every declared component.

        Raises:
            ConfigError: if the source is missing or structurally invalid.
        """
        try:
            category_keys = self.source.list_categories()
        except ConfigError:
            raise
        except Exception as exc:
            raise ConfigError(f"Failed to read configuration source: {exc}") from exc

        declarations: list[ComponentDeclaration] = []
        seen_ids: set[str] = set()
        seen_categories: set[str] = set()
        for key in category_keys:
            if key in seen_categories:
                continue
            seen_categories.add(key)
            try:
                category = Category.parse(key)
            except ValueError as exc:
                raise ConfigError(str(exc)) from exc

            for hint in self.source.list_components(key):
                decl = self._declaration(category, hint)
                if decl.id in seen_ids:
                    raise ConfigError(f"Duplicate component id: {decl.id}")
                seen_ids.add(decl.id)
                declarations.append(decl)

        logger.info("Loaded %d component definitions", len(declarations))
        return ComponentDirectory(declarations)

    @staticmethod
    def _declaration(category: Category, hint: Any) -> ComponentDeclaration:
        if not isinstance(hint, dict):
            raise ConfigError(f"Component entry under '{category.value}' must be a mapping")
        comp_id = str(hint.get("id") or "").strip()
        if not comp_id:
            raise ConfigError(f"Component under '{category.value}' has no id")
        try:
            monitor_type = MonitorType.parse(hint.get("monitor_type"), category)
        except ValueError as exc:
            raise ConfigError(f"{comp_id}: {exc}") from exc
        display_name = str(hint.get("name") or hint.get("display_name") or comp_id)
        extra = {k: v for k, v in hint.items() if k not in _RESERVED_KEYS}
        return ComponentDeclaration(
            id=comp_id,
            category=category,
            display_name=display_name,
            monitor_type=monitor_type,
            hints=extra,
        )
