# Imports:
import heapq
import itertools
import logging
import math
from collections import Counter
from enum import Enum
from agent import Item, Wall, Door
from errors import ConsistencyViolation
from inventory import InventoryRecord

logger = logging.getLogger(__name__)

# Which record takes a merge cell when several could:
#  - "first": first matching record in record order
#  - "most_needed": matching record with the most quantity not yet covered by merges
MERGE_TIE_BREAK = "first"

CARDINALS = ((0, 1), (0, -1), (1, 0), (-1, 0))


class PostingStatus(Enum):
    PLANNING = "planning" # not registered yet
    IN_PROGRESS = "in_progress"
    DESTINATION_BLOCKED = "destination_blocked" # nothing can be dropped right now
    INCOMPLETABLE = "incompletable" # inventory exhausted but the order isn't done
    COMPLETE = "complete"
    OVERKILL_ERROR = "overkill_error" # a record had too much hauled


def cell_center(cell):
    return (cell[0] + 0.5, cell[1] + 0.5)


def cursor_cell(cursor):
    return (math.floor(cursor[0]), math.floor(cursor[1]))


class Posting:
    """
    One relocation order: the selected items, grouped into inventory records
    by MixType, plus the set of cells chosen to receive them.

    `items` always mirrors the union of the records' items; every mutating
    method keeps both in step.
    """

    def __init__(self, posting_id, region, selected = (), merge_tie_break = MERGE_TIE_BREAK):
        """
        Build a posting from an arbitrary selection.

        Anything that isn't an item, or is never haulable, is ignored. A new
        record is created for the first item of each MixType.

        Args:
            posting_id: Identifier issued by the logistics state.
            region: Region the order applies to.
            selected: Selected objects, in selection order.
            merge_tie_break: Merge-cell tie-break policy, see MERGE_TIE_BREAK.
        """
        self.id = posting_id
        self.region = region
        self.merge_tie_break = merge_tie_break
        self.records: list[InventoryRecord] = []
        self.items: list[Item] = []
        self.destinations = None
        self.cursor = None
        self.center = (0.0, 0.0)
        self.visualization_radius = 0.0
        self.registered = False

        for obj in selected:
            if not isinstance(obj, Item) or not obj.definition.ever_haulable or obj in self.items:
                continue
            self.items.append(obj)
            for record in self.records:
                if record.try_add_item(obj):
                    break
            else:
                self.records.append(InventoryRecord.for_item(obj, self))

    def __repr__(self):
        return f"Posting#{self.id}(records={len(self.records)}, items={len(self.items)})"

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------
    def record_with_item(self, item):
        for record in self.records:
            if record.has_item(item):
                return record
        return None

    def try_remove_item(self, item, player_cancelled = False) -> bool:
        """
        Detach an item from the posting and its record.

        A record emptied by player cancellation is dropped with it.

        Returns: False if the item isn't part of this posting.
        Raises: ConsistencyViolation if the item is listed but no record has it.
        """
        if item not in self.items:
            return False
        owner = self.record_with_item(item)
        if owner is None or not owner.try_remove_item(item, player_cancelled):
            raise ConsistencyViolation(f"{self} lists {item} but no record holds it")
        self.items.remove(item)
        if player_cancelled and not owner.items and owner.selected_quantity == 0:
            self.records.remove(owner)
        return True

    def try_add_item_splinter(self, item) -> bool:
        """
        Re-associate a splinter (a split-off runtime copy) with its record.

        The units were already counted when the parent stack was selected, so
        the record's selected quantity is left alone.

        Returns: False if the item is already part of the posting.
        Raises: ConsistencyViolation if no record can hold it.
        """
        if item in self.items:
            return False
        for record in self.records:
            if record.can_mix_with(item):
                self.items.append(item)
                record.try_add_item(item, side_effects = False)
                return True
        raise ConsistencyViolation(f"{self} has no record matching splinter {item}")

    def clean(self):
        """Drop destroyed items, keeping record skeletons so deliveries stay valid."""
        for item in [i for i in self.items if i.destroyed]:
            self.try_remove_item(item)

    def reload_items_from_inventory(self):
        self.items = [item for record in self.records for item in record.items]

    def is_coherent(self) -> bool:
        from_records = Counter(id(i) for record in self.records for i in record.items)
        return from_records == Counter(id(i) for i in self.items)

    def check_coherence(self):
        if not self.is_coherent():
            raise ConsistencyViolation(f"{self} items do not match its records")

    # ------------------------------------------------------------------
    # Destination search
    # ------------------------------------------------------------------
    def stack_requirement(self) -> int:
        return sum(record.num_stacks_will_use for record in self.records)

    def is_possible_item_destination(self, cell) -> bool:
        region = self.region
        if (not region.in_bounds(cell)
                or region.is_fogged(cell)
                or region.in_edge_area(cell)
                or region.terrain_is_impassable(cell)):
            return False
        for thing in region.things_at(cell):
            if isinstance(thing, (Wall, Door)):
                return False
        return True

    def possible_destinations_at_cursor(self, cursor):
        """
        Yield candidate cells nearest-first, expanding from the cursor cell.

        Priority is the straight-line distance from each cell's centre to the
        cursor point, not the number of expansion steps. Cells that fail
        `is_possible_item_destination` are never yielded nor expanded.
        """
        start = cursor_cell(cursor)
        counter = itertools.count()
        expended = set()
        available = []
        queued = set()

        def distance(cell):
            cx, cy = cell_center(cell)
            return math.hypot(cx - cursor[0], cy - cursor[1])

        if self.is_possible_item_destination(start):
            heapq.heappush(available, (distance(start), next(counter), start))
            queued.add(start)
        while available:
            _, _, nearest = heapq.heappop(available)
            queued.discard(nearest)
            expended.add(nearest)
            yield nearest

            for dx, dy in CARDINALS:
                c = (nearest[0] + dx, nearest[1] + dy)
                if c in expended or c in queued:
                    continue
                if self.is_possible_item_destination(c):
                    heapq.heappush(available, (distance(c), next(counter), c))
                    queued.add(c)
                else:
                    expended.add(c)

    def _merge_record_for(self, item):
        matching = [
            record for record in self.records
            if record.can_mix_with(item) and item.stack_count < record.stack_limit
        ]
        if not matching:
            return None
        if self.merge_tie_break == "most_needed":
            return max(matching, key = lambda r: r.quantity_to_move - r.merge_capacity)
        return matching[0]

    def try_make_destinations(self, cursor, lazy = True) -> bool:
        """
        Find the smallest nearest-first set of cells that can take every record.

        Empty valid cells count as one free stack slot each. A cell holding a
        single compatible, not-full stack becomes a merge cell for the first
        matching record, which absorbs `stack_limit - count` units there.
        The search stops as soon as the pool covers the stack requirement.

        Args:
            cursor: Continuous (x, y) point the order is aimed at.
            lazy: Reuse the last result if the cursor hasn't moved.

        Returns: True with `destinations` set, or False with it cleared when
        there isn't enough room reachable from the cursor.
        """
        cursor = (float(cursor[0]), float(cursor[1]))
        if lazy and cursor == self.cursor:
            return self.destinations is not None
        self.cursor = cursor
        for record in self.records:
            record.reset_merge()

        if self.stack_requirement() == 0:
            self._accept_destinations([])
            return True

        claims = self.region.claims
        dests = []
        for cell in self.possible_destinations_at_cursor(cursor):
            items_in_cell = self.region.items_if_valid_item_spot(cell)
            if items_in_cell is None or claims.is_claimed_by_anyone(cell):
                continue

            if not items_in_cell:
                dests.append(cell)
            else:
                item = items_in_cell[0]
                if len(items_in_cell) != 1 or item in self.items:
                    continue
                record = self._merge_record_for(item)
                if record is None:
                    continue
                dests.append(cell)
                record.add_merge_cell(item.stack_count)

            if len(dests) >= self.stack_requirement():
                self._accept_destinations(dests)
                return True

        logger.debug("%s: no room near %s", self, cursor)
        self.destinations = None
        return False

    def _accept_destinations(self, dests):
        self.destinations = list(dests)
        if dests:
            centers = [cell_center(d) for d in dests]
            self.center = (
                sum(c[0] for c in centers) / len(centers),
                sum(c[1] for c in centers) / len(centers),
            )
        else:
            self.center = self.cursor
        self.visualization_radius = math.sqrt(len(dests) / math.pi)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def status(self) -> PostingStatus:
        if not self.registered:
            return PostingStatus.PLANNING
        if any(r.moved_quantity > r.quantity_to_move for r in self.records):
            return PostingStatus.OVERKILL_ERROR
        if all(r.moved_quantity >= r.quantity_to_move for r in self.records):
            return PostingStatus.COMPLETE
        in_flight = any(job.posting is self for job in self.region.active_deliveries())
        if not self.items and not in_flight:
            return PostingStatus.INCOMPLETABLE
        if not self.destinations or all(
            self.region.items_if_valid_item_spot(d) is None for d in self.destinations
        ):
            return PostingStatus.DESTINATION_BLOCKED
        return PostingStatus.IN_PROGRESS

    def details(self) -> str:
        """Multi-line debug dump of the posting's inner state."""
        lines = [
            f"Posting #{self.id}",
            f"total inventory records: {len(self.records)}",
            f"region = {self.region!r}",
            f"Coherent: {self.is_coherent()}",
            "Inventory readout:",
        ]
        for i, record in enumerate(self.records):
            members = " ".join(f"({item!r})" for item in record.items)
            lines.append(f"  (inventory record {i}[{record.mix_type.label()}]) {members}")
        lines.append("destinations:")
        lines.append("  " + " ".join(f"({d[0]}, {d[1]})" for d in self.destinations or []))
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def to_state(self) -> dict:
        return {
            "id": self.id,
            "region": self.region.region_id,
            "records": [record.to_state() for record in self.records],
            "destinations": [list(d) for d in self.destinations] if self.destinations is not None else None,
            "cursor": list(self.cursor) if self.cursor is not None else None,
            "center": list(self.center),
            "visualization_radius": self.visualization_radius,
        }

    @classmethod
    def from_state(cls, state: dict, region, defs, resolve_item, merge_tie_break = MERGE_TIE_BREAK) -> "Posting":
        posting = cls(state["id"], region, merge_tie_break = merge_tie_break)
        posting.records = [
            InventoryRecord.from_state(r, posting, defs, resolve_item)
            for r in state.get("records", [])
        ]
        dests = state.get("destinations")
        posting.destinations = [tuple(d) for d in dests] if dests is not None else None
        cursor = state.get("cursor")
        posting.cursor = tuple(cursor) if cursor is not None else None
        posting.center = tuple(state.get("center", (0.0, 0.0)))
        posting.visualization_radius = state.get("visualization_radius", 0.0)
        posting.registered = True
        posting.reload_items_from_inventory()
        return posting
