# src/kubeprov/setup/context.py

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Dict, Generic, Iterator, Optional, Tuple, Type, TypeVar, Union

from ..errors import MissingContextKeyError

T = TypeVar("T")


@dataclass(frozen=True)
class ContextKey(Generic[T]):
    """
    A named, typed slot in a SetupContext.

    ``type`` may be a class or a tuple of classes; ``None`` disables the
    type check (used for values whose classes would create import cycles).
    """

    name: str
    type: Union[Type[Any], Tuple[Type[Any], ...], None] = None
    description: str = ""

    def __str__(self) -> str:
        return self.name


KeyLike = Union[ContextKey, str]


def _name(key: KeyLike) -> str:
    return key.name if isinstance(key, ContextKey) else key


class SetupContext:
    """
    Shared state for a setup run. Global steps populate it, later steps read
    from it. Writes are serialized; node steps only receive a read-only view.
    """

    def __init__(self, initial: Optional[Dict[KeyLike, Any]] = None):
        self._values: Dict[str, Any] = {}
        self._lock = threading.Lock()
        for key, value in (initial or {}).items():
            self.set(key, value)

    def set(self, key: KeyLike, value: Any) -> None:
        if isinstance(key, ContextKey) and key.type is not None and value is not None:
            if not isinstance(value, key.type):
                raise TypeError(
                    f"context key '{key.name}' expects {key.type}, got {type(value).__name__}"
                )
        with self._lock:
            self._values[_name(key)] = value

    def get(self, key: ContextKey[T]) -> T:
        name = _name(key)
        with self._lock:
            if name in self._values:
                return self._values[name]
            known = ", ".join(sorted(self._values)) or "<none>"
        raise MissingContextKeyError(
            f"setup context has no value for '{name}' (known keys: {known})"
        )

    def get_or(self, key: ContextKey[T], default: Optional[T] = None) -> Optional[T]:
        with self._lock:
            return self._values.get(_name(key), default)

    def remove(self, key: KeyLike) -> None:
        with self._lock:
            self._values.pop(_name(key), None)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, (ContextKey, str)):
            return False
        with self._lock:
            return _name(key) in self._values

    def keys(self) -> Iterator[str]:
        with self._lock:
            return iter(sorted(self._values))

    def read_only(self) -> "ReadOnlyContext":
        return ReadOnlyContext(self)


class ReadOnlyContext:
    """View over a SetupContext without ``set``."""

    def __init__(self, inner: SetupContext):
        self._inner = inner

    def get(self, key: ContextKey[T]) -> T:
        return self._inner.get(key)

    def get_or(self, key: ContextKey[T], default: Optional[T] = None) -> Optional[T]:
        return self._inner.get_or(key, default)

    def __contains__(self, key: object) -> bool:
        return key in self._inner
