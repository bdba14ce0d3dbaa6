# Imports:
import logging
from mesa import Model
from mesa.datacollection import DataCollector
from agent import Item, Wall, Worker
from defs import default_defs
from errors import Infeasible
from jobs import BUNDLE_RADIUS, JobState, WorkProposer
from posting import MERGE_TIE_BREAK
from region import Region
from registry import LogisticsState

logger = logging.getLogger(__name__)


class HaulingWorldModel(Model):
    """
    World with one or more regions, workers, and explicit hauling orders.
    """
    def __init__(
        self,
        width = 30,
        height = 30,
        num_workers = 3,
        carry_limit = 75,
        edge_margin = 1,
        bundle_radius = BUNDLE_RADIUS,
        merge_tie_break = MERGE_TIE_BREAK,
        search_radius = None,
        max_steps = 500,
        defs = None,
        seed = None
    ):
        """
        Initialize the hauling world.

        Parameters:
            width: Number of columns in the first region.
            height: Number of rows in the first region.
            num_workers: Number of Worker instances to spawn there.
            carry_limit: Most units a worker can carry at once.
            edge_margin: Width of the border band where items can't be left.
            bundle_radius: Distance within which a worker folds more items of
            the same record into its current delivery.
            merge_tie_break: Which record takes a merge cell ('first', 'most_needed').
            search_radius: Bounding-box radius for pathfinding.
            max_steps: Maximum number of steps before stopping.
            defs: DefDatabase of item definitions.
            seed: Random seed for reproducibility.
        """
        super().__init__(seed = seed)
        self.width = width
        self.height = height
        self.carry_limit = carry_limit
        self.edge_margin = edge_margin
        self.search_radius = search_radius
        self.max_steps = max_steps
        self.defs = defs or default_defs()
        self.regions: dict = {}

        # Hauling core, created at world load:
        self.logistics = LogisticsState(merge_tie_break)
        self.proposer = WorkProposer(self.logistics, bundle_radius)

        # Counters for metrics:
        self.total_delivered_units = 0
        self.incompletable_jobs = 0
        self.last_resort_destructions = 0
        self.collisions = 0
        self.ticks = 0

        # DataCollector reporters:
        self.datacollector = DataCollector(
            model_reporters={
                "delivered_units": lambda m: m.total_delivered_units,
                "ticks": lambda m: m.ticks,
                "active_postings": lambda m: sum(1 for _ in m.logistics.all_postings()),
                "pending_units": lambda m: m.pending_units(),
                "busy_workers": lambda m: sum(1 for w in m.workers if not w.is_idle),
                "incompletable_jobs": lambda m: m.incompletable_jobs,
                "last_resort_destructions": lambda m: m.last_resort_destructions,
                "collisions": lambda m: m.collisions,
            }
        )

        # Initialise the first region and its workers:
        self.region = self.add_region(0, width, height)
        self.spawn_workers(self.region, num_workers)

    @property
    def workers(self) -> list:
        return [w for region in self.regions.values() for w in region.workers]

    # ------------------------------------------------------------------
    # Regions and workers
    # ------------------------------------------------------------------
    def add_region(self, region_id, width, height) -> Region:
        if region_id in self.regions:
            raise ValueError(f"Region {region_id!r} already exists")
        region = Region(self, region_id, width, height, self.edge_margin, self.search_radius)
        self.regions[region_id] = region
        return region

    def remove_region(self, region_id):
        """
        Destroy a region together with everything in it and its orders.
        """
        region = self.regions.pop(region_id)
        for worker in region.workers:
            for job in worker.jobs:
                job.state = JobState.INCOMPLETABLE
            worker.job = None
            worker.job_queue.clear()
        for contents, _ in region.grid.coord_iter():
            for agent in list(contents):
                if isinstance(agent, Item):
                    agent.destroy()
                else:
                    agent.remove()
        for worker in region.workers:
            if worker.carried is not None:
                worker.carried.destroy()
        self.logistics.remove_region(region_id)

    def spawn_workers(self, region, num_workers: int) -> list[Worker]:
        """
        Instantiate and deploy a group of workers on random free cells.

        Args:
            region: Region to place them in.
            num_workers: Number of workers to spawn.

        Returns: The newly created and placed workers.
        """
        workers: list[Worker] = []
        for _ in range(num_workers):
            worker = Worker(self, region, self.carry_limit)
            region.add_worker(worker, self.random_empty_cell(region))
            workers.append(worker)
        return workers

    def random_empty_cell(self, region):
        """
        Choose a random walkable cell with no wall and no worker in it.

        Raises: Infeasible if sampling keeps failing.
        """
        for _ in range(region.width * region.height * 4):
            x = self.random.randrange(region.width)
            y = self.random.randrange(region.height)
            if region.terrain_is_impassable((x, y)):
                continue
            contents = region.grid.get_cell_list_contents([(x, y)])
            if all(not isinstance(a, (Wall, Worker)) for a in contents):
                return x, y
        raise Infeasible(f"No free cell left in {region!r}")

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    def create_posting(self, selected, region = None):
        """
        Build a planning-stage order from a selection.

        Args:
            selected: Selected objects; non-items are ignored.
            region: Region of the order; defaults to the first item's region.
        """
        selected = list(selected)
        if region is None:
            region = next(
                (o.region for o in selected if isinstance(o, Item) and o.region is not None),
                self.region,
            )
        return self.logistics.create_posting(region, selected)

    def issue_order(self, posting, cursor) -> bool:
        """
        Aim a posting at `cursor` and, if room is found, register it.

        Returns: False if there is not enough room around the cursor.
        """
        if not posting.try_make_destinations(cursor, lazy = False):
            logger.info("%s: not enough room at %s", posting, cursor)
            return False
        return self.logistics.register_posting(posting)

    def order(self, selected, cursor):
        """Create and issue an order in one go. Returns the posting or None."""
        posting = self.create_posting(selected)
        return posting if self.issue_order(posting, cursor) else None

    def posting_owning(self, item):
        return self.logistics.posting_owning(item)

    def pending_units(self) -> int:
        return sum(
            max(0, r.quantity_to_move - r.moved_quantity)
            for posting in self.logistics.all_postings()
            for r in posting.records
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def item_by_id(self, unique_id):
        for item in self.agents_by_type.get(Item, []):
            if item.unique_id == unique_id and not item.destroyed:
                return item
        return None

    def to_state(self) -> dict:
        return {"logistics": self.logistics.to_state()}

    def load_state(self, state):
        """
        Replace the hauling state with one saved by `to_state`.

        Running deliveries carry on against the reloaded orders.
        """
        state = state or {}
        self.logistics = LogisticsState.from_state(
            state.get("logistics"),
            self.regions.values(),
            self.defs,
            self.item_by_id,
            self.logistics.merge_tie_break,
        )
        self.proposer.logistics = self.logistics
        for worker in self.workers:
            for job in worker.jobs:
                job.rebind()

    # ------------------------------------------------------------------
    # Simulation loop
    # ------------------------------------------------------------------
    def step(self):
        """
        Advance the simulation by one tick:

        1. Reset per-tick caches and collect garbage
        2. Start queued jobs and offer work to idle workers
        3. Move each worker, catching and logging exceptions
        4. Advance every delivery state machine
        5. Collect tick-level data
        """
        for region in self.regions.values():
            region.tick()
        self.logistics.clean_garbage(self.regions.keys())

        # Assign new work:
        for region in self.regions.values():
            self.start_queued_jobs(region)
            if not self.proposer.should_skip(region):
                self.proposer.assign_idle_workers(region)

        # Advance all workers:
        workers = self.workers
        self.random.shuffle(workers)
        for worker in workers:
            try:
                worker.step()
            except Exception:
                logger.exception("[%s] Worker %s failed to move", self.ticks, worker.unique_id)

        # Run the delivery state machines:
        for worker in workers:
            if worker.job is not None:
                worker.job.advance()

        self.collect_tick_data()

    def start_queued_jobs(self, region):
        for worker in region.workers:
            while worker.is_idle and worker.job_queue:
                job = worker.job_queue.pop(0)
                if not job.start():
                    logger.debug("Dropped queued %r", job)

    def collect_tick_data(self):
        """
        Advance the tick counter, collect data, and stop at `max_steps`.
        """
        self.ticks += 1
        self.datacollector.collect(self)
        if self.max_steps is not None and self.ticks >= self.max_steps:
            self.running = False
