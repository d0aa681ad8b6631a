"""Structural analyzers and the name-keyed registry that holds them."""
from __future__ import annotations

import importlib
import pkgutil
from abc import ABC, abstractmethod
from types import MappingProxyType
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Type

from ..cluster import ClusterAccessor
from ..findings import Finding
from ..utils import ScanContext


class Analyzer(ABC):
    """A read-only check suite over cluster resources.

    Analyzers are independent of one another and share only the cluster
    accessor. :meth:`analyze` raises :class:`~kube_compliance_audit.errors.AnalyzerError`
    when the analysis as a whole cannot be completed.
    """

    name: str = ""

    def __init__(self, cluster: ClusterAccessor) -> None:
        self.cluster = cluster

    @abstractmethod
    def analyze(self, ctx: Optional[ScanContext], namespaces: Sequence[str]) -> List[Finding]:
        raise NotImplementedError


AnalyzerFactory = Type[Analyzer]


class AnalyzerRegistry:
    """Registry that stores available analyzer classes by name."""

    def __init__(self) -> None:
        self._analyzers: Dict[str, AnalyzerFactory] = {}

    @staticmethod
    def _normalize(name: str) -> str:
        if not name:
            raise ValueError("Analyzer name must be a non-empty string")
        return name.strip().lower()

    def register(self, name: str) -> Callable[[AnalyzerFactory], AnalyzerFactory]:
        """Return a decorator that registers the wrapped class under *name*."""

        normalized = self._normalize(name)

        def decorator(cls: AnalyzerFactory) -> AnalyzerFactory:
            if normalized in self._analyzers and self._analyzers[normalized] is not cls:
                raise ValueError(f"Analyzer '{name}' is already registered")
            cls.name = normalized
            self._analyzers[normalized] = cls
            return cls

        return decorator

    def __contains__(self, name: object) -> bool:
        if not isinstance(name, str):
            return False
        return self._normalize(name) in self._analyzers

    def __getitem__(self, name: str) -> AnalyzerFactory:
        return self._analyzers[self._normalize(name)]

    def keys(self) -> Iterator[str]:
        return iter(self._analyzers)

    def as_mapping(self) -> Mapping[str, AnalyzerFactory]:
        return MappingProxyType(self._analyzers)


ANALYZER_REGISTRY = AnalyzerRegistry()
register_analyzer = ANALYZER_REGISTRY.register


def build_analyzers(cluster: ClusterAccessor, names: Optional[Sequence[str]] = None) -> List[Analyzer]:
    """Instantiate the registered analyzers (all of them, or *names*)."""

    selected = list(names) if names is not None else list(ANALYZER_REGISTRY.keys())
    return [ANALYZER_REGISTRY[name](cluster) for name in selected]


def _import_analyzer_modules() -> None:
    """Import modules that register analyzers via decorators."""

    package_name = __name__
    package_paths = getattr(__spec__, "submodule_search_locations", None)
    if not package_paths:
        return

    for module_info in pkgutil.iter_modules(package_paths):
        module_name = module_info.name
        if module_name.startswith("_"):
            continue
        importlib.import_module(f"{package_name}.{module_name}")


_import_analyzer_modules()

ANALYZERS: Mapping[str, AnalyzerFactory] = ANALYZER_REGISTRY.as_mapping()

__all__ = [
    "ANALYZERS",
    "ANALYZER_REGISTRY",
    "Analyzer",
    "AnalyzerRegistry",
    "build_analyzers",
    "register_analyzer",
]
