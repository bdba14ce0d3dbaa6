# Imports:
from dataclasses import dataclass


@dataclass(frozen=True)
class ThingDef:
    """
    Static definition shared by every item of one kind.

    Attributes:
        name: Unique definition name, used as the persisted identifier.
        stack_limit: Largest stack a single cell can hold.
        ever_haulable: Whether workers may ever carry this kind of item.
        always_haulable: Items that are haulable unless toggled off.
        storable: Whether the item counts as a stored item in a cell.
    """
    name: str
    stack_limit: int = 1
    ever_haulable: bool = True
    always_haulable: bool = False
    storable: bool = True


class DefDatabase:
    """
    Name -> ThingDef lookup, used to rebuild identities after a reload.
    """

    def __init__(self, defs=()):
        self._defs: dict[str, ThingDef] = {}
        for d in defs:
            self.add(d)

    def add(self, definition: ThingDef) -> ThingDef:
        self._defs[definition.name] = definition
        return definition

    def get(self, name):
        if name is None:
            return None
        return self._defs[name]

    def __contains__(self, name):
        return name in self._defs

    def __iter__(self):
        return iter(self._defs.values())


@dataclass(frozen=True)
class MixType:
    """
    Canonical identity for things that can stack together.

    Two items stack iff their base definition, material (stuff) and, for
    minified things, the inner definition are all equal.
    """
    definition: ThingDef
    stuff: ThingDef | None = None
    inner: ThingDef | None = None

    @classmethod
    def of(cls, item) -> "MixType":
        return cls(item.definition, item.stuff, item.inner)

    @property
    def stack_limit(self) -> int:
        return self.definition.stack_limit

    def key(self) -> tuple:
        return (
            self.definition.name,
            self.stuff.name if self.stuff else None,
            self.inner.name if self.inner else None,
        )

    @classmethod
    def from_key(cls, key, defs: DefDatabase) -> "MixType":
        name, stuff, inner = (list(key) + [None, None])[:3]
        return cls(defs.get(name), defs.get(stuff), defs.get(inner))

    def label(self) -> str:
        base = (self.inner or self.definition).name
        return f"{self.stuff.name} {base}" if self.stuff else base


def stacks_worth(stack_limit: int, quantity: int) -> int:
    # Number of stacks needed to hold `quantity` units:
    return quantity // stack_limit + (0 if quantity % stack_limit == 0 else 1)


def default_defs() -> DefDatabase:
    """A small stock of definitions for scenarios and tests."""
    return DefDatabase([
        ThingDef("steel", stack_limit = 75),
        ThingDef("wood", stack_limit = 75),
        ThingDef("component", stack_limit = 25),
        ThingDef("meal", stack_limit = 10, always_haulable = True),
        ThingDef("chair", stack_limit = 1),
        ThingDef("minified_thing", stack_limit = 1),
        ThingDef("boulder", stack_limit = 1, ever_haulable = False, storable = False),
    ])
