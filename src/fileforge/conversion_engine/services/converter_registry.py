from __future__ import annotations

import logging
from importlib.metadata import entry_points
from typing import Any, Dict, List, Mapping, Optional, Protocol, Union

from fileforge.conversion_engine.services.format_catalog import FormatCategory
from fileforge.conversion_engine.services.job_errors import ConverterNotRegisteredError
from fileforge.conversion_engine.services.progress import ProgressSink

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "fileforge.converters"


class Converter(Protocol):
    """Transforms the bytes of one artifact into another format."""

    def convert(
        self,
        data: bytes,
        source_format: str,
        target_format: str,
        options: Mapping[str, Any],
        progress: ProgressSink,
    ) -> bytes:
        ...


def _as_category(category: Union[FormatCategory, str]) -> FormatCategory:
    if isinstance(category, FormatCategory):
        return category
    return FormatCategory(str(category).strip().lower())


class ConverterRegistry:
    """Binds each format category to at most one Converter."""

    def __init__(self, converters: Optional[Mapping[Union[FormatCategory, str], Converter]] = None) -> None:
        self._by_category: Dict[FormatCategory, Converter] = {}
        for category, converter in (converters or {}).items():
            self.register(category, converter)

    def clear(self) -> None:
        self._by_category.clear()

    def register(
        self,
        category: Union[FormatCategory, str],
        converter: Converter,
        *,
        replace: bool = False,
    ) -> None:
        key = _as_category(category)
        if key in self._by_category and not replace:
            raise ValueError(f"Converter for '{key.value}' already registered")
        self._by_category[key] = converter
        logger.info("Registered converter %s for category '%s'", type(converter).__name__, key.value)

    def find(self, category: Union[FormatCategory, str]) -> Optional[Converter]:
        try:
            return self._by_category.get(_as_category(category))
        except ValueError:
            return None

    def get(self, category: Union[FormatCategory, str]) -> Converter:
        converter = self.find(category)
        if converter is None:
            name = category.value if isinstance(category, FormatCategory) else category
            raise ConverterNotRegisteredError(f"No converter registered for category: {name}")
        return converter

    def categories(self) -> List[FormatCategory]:
        return sorted(self._by_category, key=lambda c: c.value)

    def load_entry_points(self, group: str = ENTRY_POINT_GROUP) -> int:
        """
        Register converters advertised by installed distributions.

        Each entry point name is a category; its object is either a Converter
        instance or a zero-argument factory returning one. Broken entry points
        are logged and skipped.
        """
        loaded = 0
        for ep in entry_points(group=group):
            try:
                target = ep.load()
                converter = target() if isinstance(target, type) or not hasattr(target, "convert") else target
                self.register(ep.name, converter, replace=True)
                loaded += 1
            except Exception as exc:
                logger.warning("Failed to load converter entry point '%s': %s", ep.name, exc)
        return loaded
