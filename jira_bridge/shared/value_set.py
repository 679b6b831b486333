"""Ordered keyed collection used by the instance registry."""

from __future__ import annotations

from typing import Generic, Iterable, Iterator, Protocol, TypeVar


class Keyed(Protocol):
    def get_id(self) -> str: ...


V = TypeVar("V", bound=Keyed)


class ValueSet(Generic[V]):
    """Values keyed by ``get_id()``, listed in first-seen order.

    Overwriting an existing key keeps its original position.
    """

    def __init__(self, initial: Iterable[V] = ()) -> None:
        self._values: dict[str, V] = {}
        for value in initial:
            self.set(value)

    def get(self, key: str) -> V | None:
        return self._values.get(key)

    def set(self, value: V) -> None:
        self._values[value.get_id()] = value

    def delete(self, key: str) -> None:
        self._values.pop(key, None)

    def contains(self, key: str) -> bool:
        return key in self._values

    def ids(self) -> list[str]:
        return list(self._values)

    def values(self) -> list[V]:
        return list(self._values.values())

    def is_empty(self) -> bool:
        return not self._values

    def __len__(self) -> int:
        return len(self._values)

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __iter__(self) -> Iterator[V]:
        return iter(list(self._values.values()))
