# Imports:
import logging
from agent import Item
from errors import ConsistencyViolation, guarded
from posting import MERGE_TIE_BREAK, Posting

logger = logging.getLogger(__name__)


class PostingRegistry:
    """
    Directory of the active postings of one region.
    """

    def __init__(self, region):
        self.region = region
        self.postings: dict[int, Posting] = {}

    def __len__(self):
        return len(self.postings)

    @property
    def haulables(self):
        """Every item of every posting in this region."""
        for posting in self.postings.values():
            yield from posting.items

    def posting_with_item(self, item):
        for posting in self.postings.values():
            if item in posting.items:
                return posting
        return None

    def register_posting(self, posting: Posting):
        """
        Add a posting, taking its items away from any other posting.

        Each item is unforbidden and, if it was set to haulable, its haul
        toggle is flipped so ordinary hauling leaves it alone.

        Raises: ConsistencyViolation on an id collision.
        """
        if posting.id in self.postings:
            raise ConsistencyViolation(f"Posting ID {posting.id} already exists in {self.region!r}")
        for item in posting.items:
            item.forbidden = False
            if item.is_haulable_set_to_haulable():
                item.toggle_haul_designation()
            for other in self.postings.values():
                other.try_remove_item(item)
        self.postings[posting.id] = posting
        posting.registered = True
        logger.info("Registered %s in %r", posting, self.region)

    def withdraw_posting(self, posting_id):
        posting = self.postings.pop(posting_id, None)
        if posting is not None:
            posting.registered = False
            logger.info("Withdrew %s", posting)
        return posting

    def clean_garbage(self):
        for posting in self.postings.values():
            posting.clean()


class LogisticsState:
    """
    Top-level hauling state for a whole world.

    Created at world load and passed to everything that needs it. Holds one
    PostingRegistry per live region, created on first use and dropped with the
    region, and issues posting ids that never repeat.
    """

    def __init__(self, merge_tie_break = MERGE_TIE_BREAK):
        self.merge_tie_break = merge_tie_break
        self.registries: dict = {}
        self.next_posting_id = 0

    def registry_for(self, region) -> PostingRegistry:
        registry = self.registries.get(region.region_id)
        if registry is None:
            registry = self.registries[region.region_id] = PostingRegistry(region)
        return registry

    def all_postings(self):
        for registry in self.registries.values():
            yield from registry.postings.values()

    def new_posting_id(self) -> int:
        posting_id = self.next_posting_id
        self.next_posting_id += 1
        return posting_id

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    def create_posting(self, region, selected) -> Posting:
        """Build an unregistered posting from a selection."""
        return Posting(self.new_posting_id(), region, selected, self.merge_tie_break)

    @guarded(default = False)
    def register_posting(self, posting: Posting) -> bool:
        posting.check_coherence()
        self.registry_for(posting.region).register_posting(posting)
        return True

    def posting_owning(self, item):
        if not isinstance(item, Item) or item.region is None:
            return None
        registry = self.registries.get(item.region.region_id)
        if registry is None:
            return None
        return registry.posting_with_item(item)

    @guarded(default = False)
    def cancel_item(self, item) -> bool:
        """
        Player cancel: take one item out of its order.

        Deliveries currently aimed at the item are ended as incompletable.

        Returns: False if the item wasn't part of any order.
        """
        posting = self.posting_owning(item)
        if posting is None:
            return False
        posting.try_remove_item(item, player_cancelled = True)
        for worker in list(posting.region.workers):
            for job in worker.jobs:
                if job.item is item:
                    job.cancel()
        return True

    @guarded(default = None)
    def withdraw_posting(self, posting: Posting):
        registry = self.registries.get(posting.region.region_id)
        if registry is None:
            return None
        for worker in list(posting.region.workers):
            for job in worker.jobs:
                if job.posting_id == posting.id:
                    job.cancel()
        return registry.withdraw_posting(posting.id)

    def select_all_in_posting(self, item) -> list:
        """Every spawned item of the order `item` belongs to."""
        posting = self.posting_owning(item)
        if posting is None:
            return []
        return [i for i in posting.items if i.spawned or i.holder is not None]

    # ------------------------------------------------------------------
    # Host capability interface
    # ------------------------------------------------------------------
    def is_in_active_order(self, item) -> bool:
        return self.posting_owning(item) is not None

    def should_be_haulable(self, item, will_toggle = False) -> bool:
        """
        Whether ordinary (non-order) hauling should consider this item.

        Args:
            item: The item.
            will_toggle: Answer as if its haul toggle were about to flip.
        """
        if item.forbidden or self.is_in_active_order(item):
            return False
        if will_toggle:
            return item.is_haulable_set_to_unhaulable()
        return item.is_haulable_set_to_haulable()

    # ------------------------------------------------------------------
    # Garbage collection
    # ------------------------------------------------------------------
    def remove_region(self, region_id):
        registry = self.registries.pop(region_id, None)
        if registry is not None:
            logger.info("Dropped %d postings with region %s", len(registry), region_id)

    @guarded(default = None)
    def clean_garbage(self, live_region_ids):
        """
        Forget regions that no longer exist and prune destroyed items.

        Args: Ids of the regions still present in the world.
        """
        live = set(live_region_ids)
        for region_id in [k for k in self.registries if k not in live]:
            self.remove_region(region_id)
        for registry in self.registries.values():
            registry.clean_garbage()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def to_state(self) -> dict:
        return {
            "next_posting_id": self.next_posting_id,
            "registries": {
                str(region_id): [p.to_state() for p in registry.postings.values()]
                for region_id, registry in self.registries.items()
            },
        }

    @classmethod
    def from_state(cls, state, regions, defs, resolve_item, merge_tie_break = MERGE_TIE_BREAK) -> "LogisticsState":
        """
        Rebuild the logistics state after a reload.

        Missing pieces default to empty; postings of regions that no longer
        exist are dropped.

        Args:
            state: Output of `to_state`, or None.
            regions: Live regions.
            defs: DefDatabase for MixType identities.
            resolve_item: Callable mapping an item id to the live item or None.
        """
        logistics = cls(merge_tie_break)
        state = state or {}
        by_id = {str(r.region_id): r for r in regions}
        max_id = -1
        for region_key, postings in (state.get("registries") or {}).items():
            region = by_id.get(str(region_key))
            if region is None:
                logger.warning("Skipping postings of missing region %s", region_key)
                continue
            registry = logistics.registry_for(region)
            for posting_state in postings:
                posting = Posting.from_state(posting_state, region, defs, resolve_item, merge_tie_break)
                registry.postings[posting.id] = posting
                max_id = max(max_id, posting.id)
        logistics.next_posting_id = max(state.get("next_posting_id", 0), max_id + 1)
        return logistics
