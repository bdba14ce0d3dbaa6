# Imports:
import logging
from errors import ConsistencyViolation

logger = logging.getLogger(__name__)


def default_scorer(cell):
    """Uninformative ranking: every free cell scores the same."""
    return 0.0


def proximity_ordering(center, cells):
    return sorted(cells, key = lambda c: abs(center[0] - c[0]) + abs(center[1] - c[1]))


class DestinationView:
    """
    Which of a posting's destination cells one worker can use for one item,
    right now.

    Built fresh for every (item, worker, posting) question. A cell counts
    towards "already has this stack type" if it holds a compatible item or
    another worker's delivery of the same MixType is headed for it. Cells that
    are invalid, unreachable from the item, claimed by someone else, or
    forbidden to the worker are left out. The rest split into partial cells
    (compatible stack with room left) and free cells (empty).
    """

    def __init__(self, item, worker, posting, scorer = default_scorer):
        self.item = item
        self.worker = worker
        self.posting = posting
        self.scorer = scorer
        self.record = posting.record_with_item(item)
        if self.record is None:
            raise ConsistencyViolation(f"{item} has no record in {posting}")
        self.partial_cells: list = []
        self.partial_cell_space: list[int] = []
        self.free_cells: list = []
        self.dests_with_this_stack_type = 0

        region = posting.region
        record = self.record
        item_pos = item.pos if item.spawned else worker.pos

        for cell in posting.destinations or []:
            items_in_cell = region.items_if_valid_item_spot(cell)
            valid_destination = items_in_cell is not None

            # Does this cell already have, or will it have, our stack type?
            same_stack_type = valid_destination and any(record.can_mix_with(i) for i in items_in_cell)
            claimant = region.claims.first_respected_claimant(cell, worker)
            if claimant is not None:
                for job in region.jobs_of(claimant):
                    if ((job.dest == cell or cell in job.dest_queue)
                            and record.can_mix_with(job.item)):
                        same_stack_type = True
                        break
            if same_stack_type:
                self.dests_with_this_stack_type += 1

            # Valid, reachable from the item, unclaimed and allowed:
            if (not valid_destination
                    or claimant is not None
                    or region.is_forbidden(cell, worker)
                    or not region.reachable(item_pos, cell, worker.travel_mode, worker.max_danger)):
                continue

            if not items_in_cell:
                self.free_cells.append(cell)
            elif len(items_in_cell) == 1:
                space = items_in_cell[0].definition.stack_limit - items_in_cell[0].stack_count
                if same_stack_type and space > 0:
                    self.partial_cells.append(cell)
                    self.partial_cell_space.append(space)

    @classmethod
    def for_item(cls, item, worker, posting = None, logistics = None, scorer = None):
        """
        Build a view, looking up the item's posting when not given.

        Raises: ConsistencyViolation if the item belongs to no posting.
        """
        if posting is None:
            posting = logistics.posting_owning(item) if logistics is not None else None
            if posting is None:
                raise ConsistencyViolation(f"{item} is not part of any posting")
        return cls(item, worker, posting, scorer or default_scorer)

    def usable_dests(self) -> list:
        """
        All partial cells, plus the best-scored free cells still needed.

        Free cells are only handed out for stacks the record will need beyond
        the cells that already carry its stack type.
        """
        free_cells_will_use = min(
            len(self.free_cells),
            max(0, self.record.num_stacks_will_use - self.dests_with_this_stack_type),
        )
        ranked = sorted(self.free_cells, key = self.scorer, reverse = True)
        return list(self.partial_cells) + ranked[:free_cells_will_use]

    def cell_capacity(self, cell) -> int:
        if cell in self.partial_cells:
            return self.partial_cell_space[self.partial_cells.index(cell)]
        return self.item.definition.stack_limit

    def request_space_for_amount(self, amount: int, exclude = ()) -> list:
        """
        A spatially tight group of usable cells with room for `amount` units.

        Picks a random usable cell as anchor, orders the rest by Manhattan
        distance to it and takes cells until their capacity covers the amount.

        Args:
            amount: Units that need a place.
            exclude: Cells the caller already holds.

        Returns: The cells used, possibly fewer than needed if space runs out;
        an empty list means "try again later".
        """
        usable = [c for c in self.usable_dests() if c not in exclude]
        if not usable:
            return []
        anchor = self.posting.region.model.random.choice(usable)
        ordered = proximity_ordering(anchor, usable)
        u = 0
        space = 0
        while u < len(ordered) and space < amount:
            space += self.cell_capacity(ordered[u])
            u += 1
        return ordered[:u]

    def free_space_in_cells(self, cells) -> int:
        """
        Units of our item the given cells can still absorb.

        Raises: ValueError for a cell that isn't usable in this view.
        """
        limit = self.item.definition.stack_limit
        region = self.posting.region
        space = 0
        for c in cells:
            if c not in self.partial_cells and c not in self.free_cells:
                raise ValueError(f"Cell {c} is not a usable destination in this view")
            stored = [i for i in region.items_at(c) if i.definition.storable]
            if stored:
                space += limit - stored[0].stack_count
            else:
                space += limit
        return space
