"""Shared helpers for cluster listing and run cancellation."""
from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, TypeVar

from .errors import ScanCancelled

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 500


class ScanContext:
    """Cancellation handle passed through a scan run.

    A context is cancelled explicitly with :meth:`cancel` or implicitly once
    its optional deadline (seconds from creation) has elapsed. Long-running
    loops call :meth:`check` between units of work.
    """

    def __init__(self, timeout: Optional[float] = None) -> None:
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._event.set()
            return True
        return False

    def check(self) -> None:
        """Raise :class:`ScanCancelled` if the context has been cancelled."""

        if self.cancelled:
            raise ScanCancelled("scan was cancelled")


def safe_list(list_fn: Callable[..., Any], *, page_size: int = DEFAULT_PAGE_SIZE, **kwargs: Any) -> Iterator[Any]:
    """Iterate through a paginated Kubernetes list call.

    ``list_fn`` is one of the ``list_*`` methods of the generated Kubernetes
    API classes; pages are followed through the ``_continue`` token.
    """

    token: Optional[str] = None
    while True:
        call_kwargs = dict(kwargs, limit=page_size)
        if token:
            call_kwargs["_continue"] = token
        response = list_fn(**call_kwargs)
        for item in response.items or []:
            yield item
        metadata = getattr(response, "metadata", None)
        token = getattr(metadata, "_continue", None) if metadata is not None else None
        if not token:
            return


def object_name(obj: Dict[str, Any]) -> str:
    return (obj.get("metadata") or {}).get("name", "")


def object_namespace(obj: Dict[str, Any]) -> str:
    return (obj.get("metadata") or {}).get("namespace", "") or ""


def resource_ref(kind: str, obj: Dict[str, Any]) -> str:
    """Return ``Kind/namespace/name`` (or ``Kind/name`` for cluster objects)."""

    namespace = object_namespace(obj)
    name = object_name(obj)
    return f"{kind}/{namespace}/{name}" if namespace else f"{kind}/{name}"


def is_system_name(name: str) -> bool:
    return name.startswith("system:")


def contains_wildcard(items: Optional[Iterable[str]]) -> bool:
    return any(item == "*" for item in items or ())


def join_values(items: Optional[Sequence[str]]) -> str:
    return ",".join(items or ())


def ordered_unique(items: Iterable[T]) -> List[T]:
    """Return *items* without duplicates, keeping first-seen order."""

    return list(dict.fromkeys(items))


__all__ = [
    "DEFAULT_PAGE_SIZE",
    "ScanContext",
    "contains_wildcard",
    "is_system_name",
    "join_values",
    "object_name",
    "object_namespace",
    "ordered_unique",
    "resource_ref",
    "safe_list",
]
