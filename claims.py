# Imports:
import logging

logger = logging.getLogger(__name__)


class ClaimLedger:
    """
    Cooperative claim ledger for cells and items within one region.

    A target (an Item or an (x, y) cell) can be held by one worker for one job
    at a time. Claims are advisory: workers check them before acting instead of
    taking locks, which is sufficient because the simulation steps agents one
    at a time.
    """

    def __init__(self):
        # target -> (worker, job):
        self._claims: dict = {}

    def __len__(self):
        return len(self._claims)

    def __contains__(self, target):
        return target in self._claims

    def claimant(self, target):
        """Return the worker holding `target`, or None."""
        entry = self._claims.get(target)
        return entry[0] if entry else None

    def first_respected_claimant(self, target, worker):
        """
        Return the claimant of `target` that `worker` must respect.

        A worker never has to respect its own claim.
        """
        holder = self.claimant(target)
        if holder is None or holder is worker:
            return None
        return holder

    def can_claim(self, worker, target) -> bool:
        holder = self.claimant(target)
        return holder is None or holder is worker

    def is_claimed_by_anyone(self, target) -> bool:
        return target in self._claims

    def holds(self, worker, target, job) -> bool:
        return self._claims.get(target) == (worker, job)

    def claim(self, worker, target, job) -> bool:
        """
        Claim `target` for (`worker`, `job`).

        Returns: True if the claim is now held, False if someone else has it.
        """
        if not self.can_claim(worker, target):
            logger.debug("Claim on %s refused for worker %s", target, worker.unique_id)
            return False
        self._claims[target] = (worker, job)
        return True

    def claim_all(self, worker, targets, job) -> bool:
        """
        Claim every target, or none of them.

        Claims that the worker already held for this job before the call are
        left in place on failure; everything newly taken is rolled back.
        """
        taken = []
        for target in targets:
            if self.holds(worker, target, job):
                continue
            if not self.claim(worker, target, job):
                for t in taken:
                    self._claims.pop(t, None)
                return False
            taken.append(target)
        return True

    def release(self, worker, target, job=None) -> bool:
        entry = self._claims.get(target)
        if entry is None or entry[0] is not worker:
            return False
        if job is not None and entry[1] is not job:
            return False
        del self._claims[target]
        return True

    def release_all(self, job) -> int:
        """Release every claim held for `job`. Returns the number released."""
        targets = [t for t, (_, j) in self._claims.items() if j is job]
        for t in targets:
            del self._claims[t]
        return len(targets)
