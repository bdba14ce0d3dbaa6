# Imports:
import logging
from agent import Item
from defs import MixType, stacks_worth
from errors import QuantityOutOfRange

logger = logging.getLogger(__name__)


class InventoryRecord:
    """
    Per-MixType subtotal of a posting.

    Tracks which selected items share one stack identity, how many units were
    selected, how many the player wants moved, and how many have arrived. The
    merge fields are scratch state filled in by the destination search.
    """

    def __init__(self, posting, mix_type: MixType):
        self.posting = posting
        self.mix_type = mix_type
        self.items: list[Item] = []
        self.selected_quantity = 0
        self._player_set_quantity = -1
        self.moved_quantity = 0
        self.merge_capacity = 0
        self.num_merge_stacks_will_use = 0

    @classmethod
    def for_item(cls, initial: Item, posting) -> "InventoryRecord":
        record = cls(posting, initial.mix_type)
        record.items.append(initial)
        record.selected_quantity = initial.stack_count
        return record

    def __repr__(self):
        return f"InventoryRecord({self.label}, moved={self.moved_quantity})"

    @property
    def stack_limit(self) -> int:
        return self.mix_type.stack_limit

    @property
    def quantity_to_move(self) -> int:
        if self._player_set_quantity == -1:
            return self.selected_quantity
        return self._player_set_quantity

    @quantity_to_move.setter
    def quantity_to_move(self, value: int):
        if value < 0 or value > self.selected_quantity:
            raise QuantityOutOfRange(
                f"{value} is outside [0, {self.selected_quantity}] for {self.label}"
            )
        self._player_set_quantity = int(value)

    @property
    def player_changed_quantity(self) -> bool:
        return self._player_set_quantity != -1

    # Merge bookkeeping for the destination search:
    def reset_merge(self):
        self.merge_capacity = 0
        self.num_merge_stacks_will_use = 0

    def add_merge_cell(self, item_quantity: int):
        self.num_merge_stacks_will_use += 1
        self.merge_capacity += self.stack_limit - item_quantity

    @property
    def num_stacks_will_use(self) -> int:
        uncovered = max(0, self.quantity_to_move - self.merge_capacity)
        return stacks_worth(self.stack_limit, uncovered) + self.num_merge_stacks_will_use

    # Membership:
    def can_mix_with(self, thing) -> bool:
        return isinstance(thing, Item) and thing.mix_type == self.mix_type

    def has_item(self, item) -> bool:
        return item in self.items

    def try_add_item(self, item, side_effects = True) -> bool:
        """
        Add a compatible item.

        Args:
            item: The item to add.
            side_effects: False when re-adding a splinter of an item already
            counted, so the selected quantity isn't counted twice.
        """
        if not self.can_mix_with(item):
            return False
        self.items.append(item)
        if side_effects:
            self.selected_quantity += item.stack_count
        return True

    def try_remove_item(self, item, player_cancelled = False) -> bool:
        if item not in self.items:
            return False
        self.items.remove(item)
        if player_cancelled:
            self.selected_quantity -= item.stack_count
            if self._player_set_quantity != -1:
                self._player_set_quantity = min(self._player_set_quantity, self.selected_quantity)
        return True

    # Progress:
    def in_flight_quantity(self) -> int:
        """Units claimed by running deliveries of this record."""
        return sum(
            job.count for job in self.posting.region.active_deliveries()
            if job.record is self
        )

    def remaining_to_haul(self) -> int:
        return max(0, self.quantity_to_move - (self.moved_quantity + self.in_flight_quantity()))

    @property
    def label(self) -> str:
        return f"{self.mix_type.label()} x{self.quantity_to_move}"

    # Persistence:
    def to_state(self) -> dict:
        return {
            "mix_type": list(self.mix_type.key()),
            "items": [i.unique_id for i in self.items],
            "selected_quantity": self.selected_quantity,
            "set_quantity": self._player_set_quantity,
            "merge_capacity": self.merge_capacity,
            "num_merge_stacks_will_use": self.num_merge_stacks_will_use,
            "moved_quantity": self.moved_quantity,
        }

    @classmethod
    def from_state(cls, state: dict, posting, defs, resolve_item) -> "InventoryRecord":
        record = cls(posting, MixType.from_key(state["mix_type"], defs))
        for uid in state.get("items", []):
            item = resolve_item(uid)
            if item is None:
                logger.warning("Dropping unknown item %s from %s", uid, record.mix_type.label())
                continue
            record.items.append(item)
        record.selected_quantity = state.get("selected_quantity", 0)
        record._player_set_quantity = state.get("set_quantity", -1)
        record.merge_capacity = state.get("merge_capacity", 0)
        record.num_merge_stacks_will_use = state.get("num_merge_stacks_will_use", 0)
        record.moved_quantity = state.get("moved_quantity", 0)
        return record
