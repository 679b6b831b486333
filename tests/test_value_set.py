from __future__ import annotations

from dataclasses import dataclass

from jira_bridge.shared.value_set import ValueSet


@dataclass
class Item:
    key: str
    label: str = ""

    def get_id(self) -> str:
        return self.key


def test_value_set_keeps_first_seen_order_on_overwrite() -> None:
    values = ValueSet([Item("b"), Item("a"), Item("c")])
    values.set(Item("a", label="updated"))

    assert values.ids() == ["b", "a", "c"]
    assert values.get("a") == Item("a", label="updated")
    assert len(values) == 3


def test_value_set_delete_and_contains() -> None:
    values = ValueSet([Item("a"), Item("b")])

    values.delete("a")
    values.delete("missing")

    assert not values.contains("a")
    assert "b" in values
    assert values.get("a") is None
    assert values.ids() == ["b"]


def test_value_set_empty_and_reinsert_goes_to_end() -> None:
    values: ValueSet[Item] = ValueSet()
    assert values.is_empty()

    values.set(Item("a"))
    values.set(Item("b"))
    values.delete("a")
    values.set(Item("a"))

    assert not values.is_empty()
    assert [item.key for item in values] == ["b", "a"]
    assert [item.key for item in values.values()] == ["b", "a"]


def test_value_set_iteration_tolerates_mutation() -> None:
    values = ValueSet([Item("a"), Item("b"), Item("c")])

    for item in values:
        values.delete(item.key)

    assert values.is_empty()
