# Imports:
import logging
from enum import Enum
import numpy as np
from numba import njit
from scipy.optimize import linear_sum_assignment
from destinations import DestinationView
from errors import ConsistencyViolation, Contention, LastResortFailure

logger = logging.getLogger(__name__)

# A worker holding a fresh pickup looks for more of the same record strictly
# closer than this (Manhattan distance):
BUNDLE_RADIUS = 7

# Cost given to worker/item pairs that can't reach each other:
UNREACHABLE = 1e9


@njit
def make_cost_matrix(worker_pos, item_pos, deliveries, beta):
    """
    Build the (n_workers × n_items) assignment cost matrix.

    Cost is the Manhattan distance from worker to item plus a load-balancing
    term that nudges work towards workers with fewer deliveries.
    """
    n_workers = worker_pos.shape[0]
    n_items = item_pos.shape[0]
    cost_mat = np.empty((n_workers, n_items), np.float64)
    for i in range(n_workers):
        for j in range(n_items):
            d = abs(worker_pos[i, 0] - item_pos[j, 0]) + abs(worker_pos[i, 1] - item_pos[j, 1])
            cost_mat[i, j] = d + beta * deliveries[i]
    return cost_mat


class JobState(Enum):
    INIT = "init"
    GOTO_ITEM = "goto_item"
    PICK_UP = "pick_up"
    CARRY_TO_DESTINATION = "carry_to_destination"
    PLACE_AT_DESTINATION = "place_at_destination"
    DONE = "done"
    INCOMPLETABLE = "incompletable"


ENDED = (JobState.DONE, JobState.INCOMPLETABLE)


class WorkProposer:
    """
    Offers idle workers an item of an active order, with a quantity and a
    group of destination cells that can take it.
    """

    def __init__(self, logistics, bundle_radius = BUNDLE_RADIUS, beta = 0.5):
        self.logistics = logistics
        self.bundle_radius = bundle_radius
        self.beta = beta # Weight for the load-balancing term

    def potential_work_things(self, region) -> list:
        return list(self.logistics.registry_for(region).haulables)

    def should_skip(self, region) -> bool:
        return not self.potential_work_things(region)

    def can_get_thing(self, worker, item, forced = False) -> bool:
        """
        Whether `worker` may go and pick `item` up at all.
        """
        region = worker.region
        if not item.spawned or (item.forbidden and not forced):
            return False
        if not region.reachable(worker.pos, item.pos, worker.travel_mode, worker.max_danger):
            return False
        if not region.claims.can_claim(worker, item):
            return False
        if region.has_fire(item.pos):
            logger.debug("%s is burning", item)
            return False
        return True

    def amount_worker_wants_to_pick_up(self, worker, item, posting) -> int:
        record = posting.record_with_item(item)
        if record is None:
            return 0
        return min(record.remaining_to_haul(), worker.available_stack_space(item), item.stack_count)

    def job_on_thing(self, worker, item, forced = False):
        """
        Plan a delivery of `item` by `worker`.

        Returns: An unstarted DeliveryJob, or None if the item can't be fetched
        or there is no room for it right now.
        """
        if not self.can_get_thing(worker, item, forced):
            return None
        posting = self.logistics.posting_owning(item)
        if posting is None:
            return None

        # Plan count and destinations:
        space_request = self.amount_worker_wants_to_pick_up(worker, item, posting)
        view = DestinationView(item, worker, posting)
        dests = view.request_space_for_amount(space_request)
        dest_space_available = view.free_space_in_cells(dests)
        count = min(space_request, dest_space_available)
        if count < 1:
            logger.debug("No room right now for %s in %s", item, posting)
            return None

        return DeliveryJob(
            worker, item, dests[0], dests[1:], count, posting.id,
            dest_space_available, self,
        )

    def assign_idle_workers(self, region) -> list:
        """
        Match idle workers to order items and start their deliveries.

        1. Gathers idle workers and unclaimed, spawned order items.
        2. Builds a cost matrix with the JIT helper, marking unreachable pairs.
        3. Solves the assignment problem via `linear_sum_assignment`.
        4. For each pair, plans a job and starts it if every claim succeeds.

        Returns: The jobs started.
        """
        idle = [w for w in region.workers if w.is_idle and w.pos is not None]
        if not idle:
            return []
        things = [
            i for i in self.potential_work_things(region)
            if i.spawned and not region.claims.is_claimed_by_anyone(i)
        ]
        if not things:
            return []

        worker_pos = np.array([w.pos for w in idle], dtype = np.int64)
        item_pos = np.array([i.pos for i in things], dtype = np.int64)
        deliveries = np.array([w.deliveries for w in idle], dtype = np.float64)
        cost_mat = make_cost_matrix(worker_pos, item_pos, deliveries, self.beta)
        for i, w in enumerate(idle):
            for j, t in enumerate(things):
                if not region.reachable(w.pos, t.pos, w.travel_mode, w.max_danger):
                    cost_mat[i, j] = UNREACHABLE

        rows, cols = linear_sum_assignment(cost_mat)
        started = []
        for i, j in zip(rows, cols):
            if cost_mat[i, j] >= UNREACHABLE:
                continue
            try:
                job = self.job_on_thing(idle[i], things[j])
            except ConsistencyViolation as e:
                logger.error("Skipping %r: %s", things[j], e)
                continue
            if job is not None and job.start():
                started.append(job)
        return started


class DeliveryJob:
    """
    One worker's delivery of items from an order to its destination cells.

    States run INIT -> GOTO_ITEM -> PICK_UP -> CARRY_TO_DESTINATION ->
    PLACE_AT_DESTINATION -> DONE, looping back to CARRY_TO_DESTINATION while a
    partial drop leaves units in hand and cells are still queued. Any state can
    end in INCOMPLETABLE. The host calls `advance()` once per tick.

    `count` is the number of units this job still has claimed against its
    record; it is what the record sees as in flight.
    """

    def __init__(self, worker, item, dest, dest_queue, count, posting_id,
                 dest_space_available, proposer, bundle = True):
        self.worker = worker
        self.item = item
        self.dest = dest
        self.dest_queue = list(dest_queue)
        self.count = count
        self.posting_id = posting_id
        self.dest_space_available = dest_space_available
        self.proposer = proposer
        self.bundle = bundle
        self.state = JobState.INIT
        self.end_reason = None
        self.toggled_haulability = False
        self._bound = False
        self._posting = None
        self._record = None

    def __repr__(self):
        return (f"DeliveryJob(worker={self.worker.unique_id}, {self.item!r} -> {self.dest}, "
                f"count={self.count}, {self.state.value})")

    # ------------------------------------------------------------------
    # Lazy binding
    # ------------------------------------------------------------------
    def _bind(self):
        self._bound = True
        registry = self.proposer.logistics.registries.get(self.region.region_id)
        self._posting = registry.postings.get(self.posting_id) if registry else None
        self._record = self._posting.record_with_item(self.item) if self._posting else None

    def rebind(self):
        """Look the posting and record up again on next use, e.g. after a reload."""
        self._bound = False

    @property
    def posting(self):
        if not self._bound:
            self._bind()
        return self._posting

    @property
    def record(self):
        if not self._bound:
            self._bind()
        return self._record

    @property
    def region(self):
        return self.worker.region

    @property
    def is_active(self) -> bool:
        return self.state not in ENDED

    def targets(self) -> list:
        return [self.item, self.dest] + self.dest_queue

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def try_make_pre_claims(self):
        """
        Raises: Contention, with nothing claimed, if any target is taken.
        """
        if not self.region.claims.claim_all(self.worker, self.targets(), self):
            raise Contention(f"targets of {self!r} are already claimed")

    def start(self) -> bool:
        """
        Claim every target and make this the worker's current job.

        Returns: False, with nothing claimed, if any target is taken.
        """
        try:
            self.try_make_pre_claims()
        except Contention as e:
            logger.debug("%s", e)
            return False
        # Bind before the job becomes visible as in flight:
        self._bind()
        self.worker.job = self
        self.worker.task_steps = 0
        return True

    def cancel(self):
        self.end(JobState.INCOMPLETABLE, "cancelled")

    def end(self, state, reason = None):
        """
        Finish the job, releasing every claim.

        An incompletable job that still has something in hand gives the item
        its haul toggle back and puts it down nearby.
        """
        if not self.is_active:
            return
        worker = self.worker
        region = self.region
        self.state = state
        self.end_reason = reason
        region.claims.release_all(self)

        if state is JobState.INCOMPLETABLE and worker.carried is not None:
            self._put_down_nearby()

        if worker.job is self:
            worker.job = None
            worker.goal = None
            worker.path.clear()
        elif self in worker.job_queue:
            worker.job_queue.remove(self)

        if state is JobState.INCOMPLETABLE:
            worker.model.incompletable_jobs += 1
            logger.debug("%r ended incompletable: %s", self, reason)

    def _put_down_nearby(self) -> bool:
        """
        Give the carried stack its haul toggle back and drop it near the
        worker, destroying it as a last resort.

        Returns: False if the stack had to be destroyed.
        """
        if self.toggled_haulability:
            self.worker.carried.toggle_haul_designation()
            self.toggled_haulability = False
        try:
            self.region.drop_near(self.worker)
            return True
        except LastResortFailure as e:
            self._destroy_carried(e)
            return False

    def _destroy_carried(self, cause):
        leftover = self.worker.carried
        logger.error(
            "Incomplete delivery for worker %s: %s. Destroying. This should never happen!",
            self.worker.unique_id, cause,
        )
        if self.posting is not None:
            self.posting.try_remove_item(leftover)
        leftover.destroy()
        self.worker.model.last_resort_destructions += 1

    # ------------------------------------------------------------------
    # Fail conditions
    # ------------------------------------------------------------------
    def failure_reason(self):
        """
        Checked before every action.

        Returns: A short reason if the job can't go on, else None.
        """
        if self.posting is None or self.record is None:
            return "order withdrawn"
        region = self.region
        claims = region.claims
        worker = self.worker
        if self.state in (JobState.INIT, JobState.GOTO_ITEM, JobState.PICK_UP):
            item = self.item
            if item is None or item.destroyed:
                return "target destroyed"
            if not item.spawned:
                return "target gone"
            if item.forbidden:
                return "target forbidden"
            if item not in self.posting.items:
                return "haulability revoked"
            if not claims.holds(worker, item, self):
                return "claim on item lost"
        if region.has_fire(self.dest):
            return "destination burning"
        if not claims.holds(worker, self.dest, self):
            return "claim on destination lost"
        if self.state is JobState.GOTO_ITEM:
            items_in_cell = region.items_if_valid_item_spot(self.dest)
            if items_in_cell is None:
                return "destination invalid"
            if len(items_in_cell) > 1 or (items_in_cell and not items_in_cell[0].can_stack_with(self.item)):
                return "destination occupied"
        return None

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------
    def advance(self):
        """Run the current state's action, if its completion condition holds."""
        if not self.is_active:
            return
        reason = self.failure_reason()
        if reason is not None:
            self.end(JobState.INCOMPLETABLE, reason)
            return
        handler = {
            JobState.INIT: self._init,
            JobState.GOTO_ITEM: self._goto_item,
            JobState.PICK_UP: self._pick_up,
            JobState.CARRY_TO_DESTINATION: self._carry_to_destination,
            JobState.PLACE_AT_DESTINATION: self._place_at_destination,
        }[self.state]
        try:
            handler()
        except ConsistencyViolation as e:
            logger.error("%r aborted: %s", self, e)
            self.end(JobState.INCOMPLETABLE, "consistency violation")

    def _travel(self, goal) -> bool:
        """
        Keep the worker heading for `goal`.

        Returns: True on arrival. Ends the job when the goal can't be reached.
        """
        worker = self.worker
        if worker.pos == goal:
            return True
        if worker.goal != goal or not worker.path:
            worker.set_goal(goal)
            if not worker.path:
                self.end(JobState.INCOMPLETABLE, f"{goal} unreachable")
        return False

    def _init(self):
        self.state = JobState.GOTO_ITEM
        self._goto_item()

    def _goto_item(self):
        if self._travel(self.item.pos):
            self.state = JobState.PICK_UP
            self._pick_up()

    def _pick_up(self):
        worker = self.worker
        posting = self.posting
        claims = self.region.claims
        target = self.item
        carried = worker.carried
        target_initial = target.stack_count
        count_to_pick_up = min(
            self.count - (carried.stack_count if carried else 0),
            worker.available_stack_space(target),
            target_initial,
        )
        if count_to_pick_up <= 0:
            raise ConsistencyViolation(f"pickup count {count_to_pick_up} for {self!r}")

        picked = worker.try_start_carry(target, count_to_pick_up)
        if picked < target_initial:
            claims.release(worker, target, self)
        if target.destroyed:
            # Absorbed into the stack already in hand:
            posting.try_remove_item(target)
        carried = worker.carried
        self.item = carried

        # Keep ordinary hauling away from the carried stack, and register it
        # with its record if it is a splinter:
        if carried.is_haulable_set_to_haulable():
            carried.toggle_haul_designation()
            self.toggled_haulability = True
        posting.try_add_item_splinter(carried)

        self.state = JobState.CARRY_TO_DESTINATION
        if self.bundle and self._try_bundle():
            return
        worker.set_goal(self.dest)

    def _try_bundle(self) -> bool:
        """
        Fold the nearest reachable item of the same record into this job.

        Returns: True if the job was extended and heads for the new item.
        """
        worker = self.worker
        proposer = self.proposer
        posting = self.posting
        prospect = None
        best_dist = None
        for item in self.record.items:
            if not item.spawned or not proposer.can_get_thing(worker, item):
                continue
            dist = abs(item.pos[0] - worker.pos[0]) + abs(item.pos[1] - worker.pos[1])
            if dist < proposer.bundle_radius and (best_dist is None or dist < best_dist):
                prospect = item
                best_dist = dist
        if prospect is None:
            return False

        space_request = proposer.amount_worker_wants_to_pick_up(worker, prospect, posting)
        if space_request == 0:
            return False
        # Units already in hand take up part of the cells we hold:
        spare = max(0, self.dest_space_available - self.count)
        view = DestinationView(prospect, worker, posting)
        dests = view.request_space_for_amount(
            max(0, space_request - spare), exclude = [self.dest] + self.dest_queue,
        )
        new_dest_space = view.free_space_in_cells(dests)
        count = min(space_request, spare + new_dest_space)
        if count < 1:
            return False

        # Commit to it:
        if not self.region.claims.claim_all(worker, [prospect] + dests, self):
            logger.debug("%r lost the race for %r", self, prospect)
            return False
        self.item = prospect
        self.dest_queue.extend(dests)
        self.count += count
        self.dest_space_available += new_dest_space
        self.state = JobState.GOTO_ITEM
        worker.set_goal(prospect.pos)
        logger.debug("%r bundled %r", self, prospect)
        return True

    def _carry_to_destination(self):
        if self._travel(self.dest):
            self.state = JobState.PLACE_AT_DESTINATION
            self._place_at_destination()

    def _place_at_destination(self):
        worker = self.worker
        region = self.region
        record = self.record
        carried = worker.carried
        if carried is None:
            logger.error("Worker %s tried to place but is not carrying anything", worker.unique_id)
            self.end(JobState.INCOMPLETABLE, "nothing carried")
            return

        carry_before = carried.stack_count
        done, _ = region.try_drop_carried(worker, self.dest)
        region.claims.release(worker, self.dest, self)

        if done:
            self.count = 0
            record.moved_quantity += carry_before
            self.posting.try_remove_item(carried)
            worker.deliveries += 1
            worker.model.total_delivered_units += carry_before
            self.end(JobState.DONE)
            return

        placed_count = carry_before - worker.carried.stack_count
        self.count -= placed_count
        record.moved_quantity += placed_count
        worker.model.total_delivered_units += placed_count

        if self.dest_queue:
            # Put the remainder in the next queued cell:
            self.dest = self.dest_queue.pop(0)
            self.state = JobState.CARRY_TO_DESTINATION
            worker.set_goal(self.dest)
            return

        # Can't continue the job normally:
        self.count = 0
        if self._put_down_nearby():
            self.end(JobState.INCOMPLETABLE, "placed nearby")
        else:
            self.end(JobState.INCOMPLETABLE, "carried stack destroyed")
