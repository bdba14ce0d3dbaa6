# Imports:
from mesa import Agent
from defs import MixType


class Wall(Agent):
    # Static, impassable obstacle - Doesn't require anything else
    pass


class Door(Agent):
    # Static agent, walkable but never a valid place to leave items
    pass


class Fire(Agent):
    # Static hazard - Cells holding one can't receive items
    pass


class Item(Agent):
    """
    A stack of movable things lying in a region or carried by a worker.

    The haul designation is the host-owned toggle: for ordinary items it marks
    them haulable, for `always_haulable` items it marks them unhaulable.
    """

    def __init__(self, model, definition, stack_count = 1, stuff = None, inner = None):
        super().__init__(model)
        self.definition = definition
        self.stuff = stuff
        self.inner = inner
        self.stack_count = stack_count
        self.forbidden = False
        self.haul_designated = False
        self.destroyed = False
        self.holder = None # Worker carrying this item
        self.region = None

    def __repr__(self):
        return f"Item#{self.unique_id}({self.mix_type.label()} x{self.stack_count})"

    @property
    def mix_type(self) -> MixType:
        return MixType.of(self)

    @property
    def spawned(self) -> bool:
        return self.pos is not None and not self.destroyed

    def can_stack_with(self, other) -> bool:
        return isinstance(other, Item) and other.mix_type == self.mix_type

    def split_off(self, count: int) -> "Item":
        """
        Detach `count` units into a new, unspawned item (a splinter).

        Args: Number of units to split off, strictly less than the stack.

        Returns: The new item. The original keeps the remainder in place.
        """
        if not 0 < count < self.stack_count:
            raise ValueError(f"Cannot split {count} from a stack of {self.stack_count}")
        splinter = Item(self.model, self.definition, count, self.stuff, self.inner)
        splinter.region = self.region
        self.stack_count -= count
        return splinter

    def destroy(self):
        if self.destroyed:
            return
        if self.pos is not None:
            self.region.grid.remove_agent(self)
        if self.holder is not None and self.holder.carried is self:
            self.holder.carried = None
        self.holder = None
        self.destroyed = True
        self.remove()

    # Haulability toggle:
    def has_haulability_toggled(self) -> bool:
        return self.haul_designated

    def is_haulable_set_to_haulable(self) -> bool:
        if not self.definition.ever_haulable:
            return False
        # always_haulable takes priority when both are set:
        return self.definition.always_haulable != self.has_haulability_toggled()

    def is_haulable_set_to_unhaulable(self) -> bool:
        if not self.definition.ever_haulable:
            return False
        return self.definition.always_haulable == self.has_haulability_toggled()

    def toggle_haul_designation(self):
        self.haul_designated = not self.haul_designated


class Worker(Agent):
    """
    Mobile agent that executes delivery jobs.

    Movement happens in `step`, one cell per tick along `path`; the job's state
    machine is advanced separately by the model once every worker has moved.
    A worker is idle when it has no current job.

    Tracks path following, step counting and delivery counts.
    """

    def __init__(self, model, region, carry_limit = 75, allowed_area = None):
        """
        Initialize a new Worker.

        Args:
            model: Reference to the simulation model instance.
            region: Region the worker lives in.
            carry_limit: Most units it can carry of anything at once.
            allowed_area: Optional set of cells it may enter; None means anywhere.
        """
        super().__init__(model)
        self.region = region
        self.path = [] # Planned sequence of (x, y) steps
        self.goal = None
        self.carried = None
        self.carry_limit = carry_limit
        self.allowed_area = allowed_area
        self.job = None
        self.job_queue = []
        self.travel_mode = "by_worker"
        self.max_danger = "deadly"
        self.task_steps = 0 # Steps taken on current job
        self.deliveries = 0 # Total completed deliveries

    @property
    def is_idle(self) -> bool:
        return self.job is None

    @property
    def jobs(self) -> list:
        """Current job followed by queued ones."""
        return ([self.job] if self.job is not None else []) + list(self.job_queue)

    def available_stack_space(self, item) -> int:
        """
        Units of `item` this worker could still pick up.

        Args: The item being considered.

        Returns: 0 when carrying something that can't stack with it.
        """
        limit = min(item.definition.stack_limit, self.carry_limit)
        if self.carried is None:
            return limit
        if not self.carried.can_stack_with(item):
            return 0
        return max(0, limit - self.carried.stack_count)

    def try_start_carry(self, item, count: int) -> int:
        """
        Pick up `count` units of `item`, merging into anything already carried.

        Taking a whole stack moves the item object itself into the carry slot;
        taking part of it splits off a splinter. When merging into a carried
        stack, the picked-up object is destroyed.

        Returns: Number of units actually picked up.
        """
        count = min(count, item.stack_count, self.available_stack_space(item))
        if count <= 0:
            return 0
        if count < item.stack_count:
            taken = item.split_off(count)
        else:
            taken = item
            if item.pos is not None:
                self.region.grid.remove_agent(item)
        if self.carried is None:
            self.carried = taken
            taken.holder = self
        else:
            self.carried.stack_count += taken.stack_count
            taken.stack_count = 0
            taken.destroy()
        return count

    def set_goal(self, goal):
        self.goal = goal
        self.path = self.region.compute_path(self.pos, goal)

    def step(self):
        """
        Perform one movement step or handle collisions and replanning.
        """
        # Skip movement if no path:
        if not self.path:
            return

        # Next desired position:
        next_cell = self.path[0]

        # Check for collision at next cell:
        if self._will_collide(next_cell):
            self.model.collisions += 1
            self._replan()
            return

        # Move agent on the grid and consume the first path step:
        self.region.grid.move_agent(self, next_cell)
        self.path.pop(0)
        self.task_steps += 1

    def _will_collide(self, cell):
        """
        Check if another busy Worker currently occupies the target cell.

        Idle workers stand aside, so a worker may share a cell with one.

        Args: Grid coordinate to test for collision.

        Returns: True if a different busy Worker is present at `cell`, False otherwise.
        """
        return any(
            isinstance(a, Worker) and a is not self and not a.is_idle
            for a in self.region.grid.get_cell_list_contents([cell])
        )

    def _replan(self):
        """
        Recompute the path to the current goal, clearing the cached one.
        """
        if self.goal is None:
            self.path.clear()
            return
        self.region.path_cache.pop((self.pos, self.goal), None)
        new_path = self.region.compute_path(self.pos, self.goal)
        # Fully boxed in - keep the old path and wait for the blocker to move:
        if new_path:
            self.path = new_path
