# Imports:
import heapq
import logging
from math import inf
import numpy as np
from scipy import ndimage
from mesa.space import MultiGrid
from agent import Wall, Door, Fire, Item, Worker
from claims import ClaimLedger
from errors import LastResortFailure

logger = logging.getLogger(__name__)

# How far the generic "place nearby" fallback looks for a spot:
DROP_NEAR_RADIUS = 6


class Region:
    """
    One simulated area: a grid, its static terrain layers and claim ledger.

    Provides the services the hauling core consumes from its host: grid
    queries, reachability, movement paths, item placement and introspection of
    what each worker is currently doing.
    """

    def __init__(self, model, region_id, width, height, edge_margin = 1, search_radius = None):
        """
        Args:
            model: Owning simulation model.
            region_id: Identifier, unique within the model.
            width: Number of columns in the grid.
            height: Number of rows in the grid.
            edge_margin: Width of the border band where items can't be left.
            search_radius: Optional bounding-box radius for pathfinding.
        """
        self.model = model
        self.region_id = region_id
        self.width = width
        self.height = height
        self.edge_margin = edge_margin
        self.search_radius = search_radius
        self.grid = MultiGrid(width, height, torus = False)
        self.claims = ClaimLedger()
        self.workers: list[Worker] = []
        self.path_cache: dict[tuple[tuple[int,int],tuple[int,int]], list[tuple[int,int]]] = {}

        # Static layers:
        self.terrain_impassable = np.zeros((width, height), dtype = bool)
        self.fog = np.zeros((width, height), dtype = bool)

        # Connected components per danger tolerance, rebuilt lazily:
        self._components: dict[str, np.ndarray] = {}

        # Pre-compute 4-way neighbours for each cell:
        self.neighbours = {
            (x, y): self.grid.get_neighborhood((x, y), moore = False, include_center = False)
            for x in range(width) for y in range(height)
        }

    def __repr__(self):
        return f"Region({self.region_id}, {self.width}x{self.height})"

    def tick(self):
        """Drop per-tick caches."""
        self.path_cache.clear()
        self._components.clear()

    def invalidate(self):
        self.path_cache.clear()
        self._components.clear()

    # ------------------------------------------------------------------
    # Grid queries
    # ------------------------------------------------------------------
    def in_bounds(self, cell) -> bool:
        return not self.grid.out_of_bounds(cell)

    def is_fogged(self, cell) -> bool:
        return bool(self.fog[cell])

    def in_edge_area(self, cell) -> bool:
        x, y = cell
        m = self.edge_margin
        return x < m or y < m or x >= self.width - m or y >= self.height - m

    def terrain_is_impassable(self, cell) -> bool:
        return bool(self.terrain_impassable[cell])

    def things_at(self, cell) -> list:
        """Everything in the cell except workers."""
        return [a for a in self.grid.get_cell_list_contents([cell]) if not isinstance(a, Worker)]

    def items_at(self, cell) -> list:
        return [a for a in self.grid.get_cell_list_contents([cell]) if isinstance(a, Item)]

    def has_fire(self, cell) -> bool:
        return any(isinstance(a, Fire) for a in self.grid.get_cell_list_contents([cell]))

    def items_if_valid_item_spot(self, cell):
        """
        Inspect a cell as a place to leave items.

        Args: The (x, y) cell.

        Returns: None if items can't be left there at all (out of bounds, fog,
        edge band, impassable terrain, fire, a wall or a door), otherwise the
        list of storable items already in it.
        """
        if (not self.in_bounds(cell)
                or self.is_fogged(cell)
                or self.in_edge_area(cell)
                or self.terrain_is_impassable(cell)
                or self.has_fire(cell)):
            return None
        result = []
        for thing in self.things_at(cell):
            if isinstance(thing, (Wall, Door)):
                return None
            if isinstance(thing, Item) and thing.definition.storable:
                result.append(thing)
        return result

    def is_forbidden(self, cell, worker) -> bool:
        return worker.allowed_area is not None and cell not in worker.allowed_area

    # ------------------------------------------------------------------
    # Movement
    # ------------------------------------------------------------------
    def heuristic(self, a, b):
        """
        Estimate the cost between two grid cells using Manhattan distance.
        """
        return abs(a[0] - b[0]) + abs(a[1] - b[1])

    def is_passable(self, cell, goal):
        """
        Determine if a grid cell can be traversed, treating the goal as always passable.

        A cell is considered passable if it has walkable terrain and contains no
        Wall agents (static obstacles) and no Worker instances (dynamic obstacles).
        """
        if cell == goal:
            return True
        if self.terrain_is_impassable(cell):
            return False
        for obj in self.grid.get_cell_list_contents([cell]):
            if isinstance(obj, (Wall, Worker)):
                return False
        return True

    def allowed_neighbours(self, x, y, goal):
        """
        Valid 4-way neighbours of (x, y), limited to the search_radius box if set.
        """
        if self.search_radius is not None:
            sr = self.search_radius
            x_min = max(min(x, goal[0]) - sr, 0)
            x_max = min(max(x, goal[0]) + sr, self.width - 1)
            y_min = max(min(y, goal[1]) - sr, 0)
            y_max = min(max(y, goal[1]) + sr, self.height - 1)
        else:
            x_min, x_max, y_min, y_max = 0, self.width - 1, 0, self.height - 1

        return [
            (nx, ny) for nx, ny in self.neighbours[(x, y)]
            if x_min <= nx <= x_max and y_min <= ny <= y_max
            and self.is_passable((nx, ny), goal)
        ]

    def compute_path(self, start, goal):
        """
        Compute an A* path from `start` to `goal`.

        Considers static obstacles (walls, impassable terrain) and workers
        standing in the way, with a cap on expansions (`width*height*4`).
        Results are cached per (start, goal) pair until the next tick.

        Args:
            start: Starting grid coordinate.
            goal: Target grid coordinate.

        Returns: Ordered list of coordinates from just after `start` to `goal`.
        Returns [] if `start==goal`, no path found, or expansion limit hit.
        """
        if start is None or goal is None or start == goal:
            return []

        # Return cached path if the pair has been computed before:
        cache_key = (start, goal)
        if cache_key in self.path_cache:
            return list(self.path_cache[cache_key])

        open_set = []
        heapq.heappush(open_set, (self.heuristic(start, goal), start))
        came_from = {}
        g_score = {start: 0}

        # Prevent runaway expansions:
        expansions = 0
        max_expansions = self.width * self.height * 4

        while open_set:
            expansions += 1
            if expansions > max_expansions:
                return []
            _, current = heapq.heappop(open_set)
            if current == goal:
                break
            for nxt in self.allowed_neighbours(current[0], current[1], goal):
                tentative_g = g_score[current] + 1
                if tentative_g < g_score.get(nxt, inf):
                    came_from[nxt] = current
                    g_score[nxt] = tentative_g
                    heapq.heappush(open_set, (tentative_g + self.heuristic(nxt, goal), nxt))
        else:
            # Open set exhausted without reaching goal:
            return []

        # Reconstruct the path by walking backwards from the goal:
        path = []
        node = goal
        while node != start:
            path.append(node)
            node = came_from[node]
        path.reverse()

        self.path_cache[cache_key] = list(path)
        return path

    # ------------------------------------------------------------------
    # Reachability
    # ------------------------------------------------------------------
    def _walkable(self, danger):
        walkable = ~self.terrain_impassable
        for contents, (x, y) in self.grid.coord_iter():
            for obj in contents:
                if isinstance(obj, Wall) or (danger == "none" and isinstance(obj, Fire)):
                    walkable[x, y] = False
        return walkable

    def components(self, danger = "deadly"):
        """
        4-connected walkable components, labelled with scipy.

        Returns: Integer array, 0 for unwalkable cells.
        """
        if danger not in self._components:
            labels, _ = ndimage.label(self._walkable(danger))
            self._components[danger] = labels
        return self._components[danger]

    def reachable(self, start, cell, travel_mode = "by_worker", danger = "deadly") -> bool:
        """
        Whether `cell` can be touched by walking from `start`.

        Uses closest-touch semantics: an unwalkable target counts as reached
        when any of its 4-neighbours is.

        Args:
            start: Position to walk from.
            cell: Target cell.
            travel_mode: "by_worker" respects obstacles, "pass_all" ignores them.
            danger: "deadly" walks through anything, "none" avoids fire.
        """
        if start is None or not self.in_bounds(start) or not self.in_bounds(cell):
            return False
        if travel_mode == "pass_all":
            return True
        labels = self.components(danger)
        own = labels[start]
        if own == 0:
            return False
        if labels[cell] == own:
            return True
        return any(labels[n] == own for n in self.neighbours[cell])

    # ------------------------------------------------------------------
    # World edits
    # ------------------------------------------------------------------
    def add_wall(self, cell):
        self.grid.place_agent(Wall(self.model), cell)
        self.invalidate()

    def add_door(self, cell):
        self.grid.place_agent(Door(self.model), cell)

    def add_fire(self, cell):
        self.grid.place_agent(Fire(self.model), cell)
        self.invalidate()

    def extinguish(self, cell):
        for obj in self.grid.get_cell_list_contents([cell]):
            if isinstance(obj, Fire):
                self.grid.remove_agent(obj)
                obj.remove()
        self.invalidate()

    def add_worker(self, worker, cell):
        self.grid.place_agent(worker, cell)
        self.workers.append(worker)

    def spawn_item(self, definition, count, cell, stuff = None, inner = None) -> Item:
        item = Item(self.model, definition, count, stuff, inner)
        self.place_item(item, cell)
        return item

    def place_item(self, item, cell):
        item.region = self
        item.holder = None
        self.grid.place_agent(item, cell)

    # ------------------------------------------------------------------
    # Dropping carried items
    # ------------------------------------------------------------------
    def try_drop_carried(self, worker, cell):
        """
        Put the worker's carried stack directly into `cell`.

        Merges into a single compatible stack already there, up to the stack
        limit. Anything that doesn't fit stays in the worker's hands.

        Returns: (done, placed) where `done` is True when nothing is left
        carried and `placed` is the stack now holding the units (or None).
        """
        carried = worker.carried
        if carried is None:
            return False, None
        present = self.items_if_valid_item_spot(cell)
        if present is None:
            return False, None
        limit = carried.definition.stack_limit

        if not present:
            if carried.stack_count <= limit:
                worker.carried = None
                self.place_item(carried, cell)
                return True, carried
            placed = carried.split_off(limit)
            self.place_item(placed, cell)
            return False, placed

        if len(present) == 1 and present[0].can_stack_with(carried):
            floor = present[0]
            moved = min(limit - floor.stack_count, carried.stack_count)
            if moved <= 0:
                return False, None
            floor.stack_count += moved
            carried.stack_count -= moved
            if carried.stack_count == 0:
                carried.destroy()
                return True, floor
            return False, floor
        return False, None

    def find_place_near(self, center, item, radius = DROP_NEAR_RADIUS):
        """
        Nearest cell around `center` that can take at least part of `item`.

        Returns: A cell, or None when nothing within `radius` will do.
        """
        if center is None:
            return None
        cx, cy = center
        candidates = [
            (abs(dx) + abs(dy), (cx + dx, cy + dy))
            for dx in range(-radius, radius + 1)
            for dy in range(-radius, radius + 1)
            if abs(dx) + abs(dy) <= radius
        ]
        candidates.sort()
        for _, cell in candidates:
            present = self.items_if_valid_item_spot(cell)
            if present is None or self.claims.is_claimed_by_anyone(cell):
                continue
            if not present:
                return cell
            if (len(present) == 1 and present[0].can_stack_with(item)
                    and present[0].stack_count < item.definition.stack_limit):
                return cell
        return None

    def drop_near(self, worker):
        """
        Generic "place nearby": spread the carried stack over nearby spots.

        Raises: LastResortFailure if it ran out of spots with units still in hand.
        """
        while worker.carried is not None:
            cell = self.find_place_near(worker.pos, worker.carried)
            if cell is None:
                raise LastResortFailure(
                    f"could not find anywhere to put {worker.carried!r} near {worker.pos}"
                )
            self.try_drop_carried(worker, cell)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def active_deliveries(self) -> list:
        """Current jobs of this region's workers that are still running."""
        return [
            w.job for w in self.workers
            if w.job is not None and w.job.is_active
        ]

    def jobs_of(self, worker) -> list:
        return worker.jobs
