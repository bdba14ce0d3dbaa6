import json
import numpy as np
from agent import Worker
from claims import ClaimLedger
from jobs import DeliveryJob, JobState, make_cost_matrix
from model import HaulingWorldModel
from posting import PostingStatus


def _world(counts_and_cells, cursor = (8.5, 5.5), worker_cell = (2, 5), **kwargs):
    """One worker at `worker_cell`, steel stacks ordered to `cursor`."""
    params = dict(width = 12, height = 12, num_workers = 0, seed = 5)
    params.update(kwargs)
    model = HaulingWorldModel(**params)
    region = model.region
    steel = model.defs.get("steel")
    items = [region.spawn_item(steel, count, cell) for count, cell in counts_and_cells]
    posting = model.order(items, cursor)
    assert posting is not None, "Order must find room"
    worker = Worker(model, region, model.carry_limit)
    region.add_worker(worker, worker_cell)
    return model, region, items, posting, worker


def _run_until(model, condition, max_ticks = 60):
    for _ in range(max_ticks):
        if condition():
            return True
        model.step()
    return condition()


# Testing Framework for jobs.py:
def test_single_delivery_completes():
    # 1. One stack of 30 right next to the worker
    model, region, (item,), posting, worker = _world([(30, (3, 5))])
    record = posting.records[0]

    # 2. Run until the order reports completion
    assert _run_until(model, lambda: posting.status() is PostingStatus.COMPLETE)
    assert record.moved_quantity == 30
    assert item.pos == (8, 5) and item.stack_count == 30
    assert item not in posting.items, "Delivered stacks leave the order"
    assert worker.is_idle and worker.carried is None
    assert len(region.claims) == 0, "No claims outlive their job"
    assert model.total_delivered_units == 30
    assert model.pending_units() == 0
    print("✔ Single delivery tests passed")


def test_cancel_mid_carry_restores_state():
    model, region, (item,), posting, worker = _world([(30, (3, 5))])
    record = posting.records[0]
    item.haul_designated = True # host marks it for ordinary hauling

    # 1. Pick up happens on the second tick
    model.step()
    model.step()
    job = worker.job
    assert job is not None and job.state is JobState.CARRY_TO_DESTINATION
    assert worker.carried is item
    assert not item.has_haulability_toggled(), "Carried stacks are kept away from ordinary hauling"
    assert record.in_flight_quantity() == 30
    assert record.remaining_to_haul() == 0

    # 2. Cancel while carrying
    job.cancel()
    assert job.state is JobState.INCOMPLETABLE
    assert record.in_flight_quantity() == 0
    assert record.moved_quantity == 0
    assert item.has_haulability_toggled(), "Prior toggle state is restored"
    assert worker.carried is None and item.spawned
    assert item in posting.items
    assert len(region.claims) == 0
    assert model.incompletable_jobs == 1
    print("✔ Cancel mid-carry tests passed")


def test_nearby_item_is_bundled():
    model, region, (first, second), posting, worker = _world([(30, (3, 5)), (30, (3, 7))])
    record = posting.records[0]

    # 1. First tick starts a job on the nearer stack
    model.step()
    job = worker.job
    assert job is not None and job.item is first

    # 2. After the pickup the same job heads for the second stack
    model.step()
    assert worker.job is job
    assert job.item is second
    assert job.state is JobState.GOTO_ITEM
    assert job.count == 60
    assert region.claims.holds(worker, second, job)

    # 3. One trip delivers both
    assert _run_until(model, lambda: posting.status() is PostingStatus.COMPLETE)
    assert worker.deliveries == 1
    assert record.moved_quantity == 60
    assert [i.stack_count for i in region.items_at(posting.destinations[0])] == [60]
    assert second.destroyed
    print("✔ Bundling tests passed")


def test_bundling_respects_radius():
    model, region, (first, second), posting, worker = _world(
        [(30, (3, 5)), (30, (3, 7))], bundle_radius = 2,
    )
    model.step()
    model.step()
    assert worker.job.item is first, "Distance 2 is not strictly inside a radius of 2"
    assert worker.job.state is JobState.CARRY_TO_DESTINATION
    print("✔ Bundling radius tests passed")


def test_partial_pickup_registers_splinter():
    model, region, (item,), posting, worker = _world([(60, (3, 5))], carry_limit = 25)
    model.step()
    model.step()
    carried = worker.carried
    assert carried is not item and carried.stack_count == 25
    assert item.stack_count == 35 and item.spawned
    record = posting.records[0]
    assert record.has_item(carried) and record.has_item(item)
    assert record.selected_quantity == 60
    assert not region.claims.is_claimed_by_anyone(item), "The remainder is free for others"
    assert posting.is_coherent()

    assert _run_until(model, lambda: posting.status() is PostingStatus.COMPLETE, max_ticks = 120)
    assert record.moved_quantity == 60
    print("✔ Partial pickup tests passed")


def test_last_resort_destroys_carried_stack():
    model, region, (item,), posting, worker = _world([(30, (3, 5))])
    model.step()
    model.step()
    job = worker.job
    assert worker.carried is item

    # Nowhere left to put anything
    region.fog[:, :] = True
    job.cancel()
    assert worker.carried is None
    assert item.destroyed
    assert model.last_resort_destructions == 1
    assert item not in posting.items and posting.is_coherent()
    assert posting.status() is PostingStatus.INCOMPLETABLE
    print("✔ Last-resort tests passed")


def test_bundling_counts_units_already_in_hand():
    # 1. The cursor cell already holds 45 steel, so only 30 more fit there
    model = HaulingWorldModel(width = 12, height = 12, num_workers = 0, seed = 5)
    region = model.region
    steel = model.defs.get("steel")
    region.spawn_item(steel, 45, (8, 5))
    first = region.spawn_item(steel, 30, (3, 5))
    second = region.spawn_item(steel, 20, (3, 7))
    posting = model.order([first, second], (8.5, 5.5))
    assert posting is not None and (8, 5) in posting.destinations
    record = posting.records[0]
    worker = Worker(model, region, model.carry_limit)
    region.add_worker(worker, (2, 5))

    # 2. A job that fills the partial cell exactly
    job = DeliveryJob(worker, first, (8, 5), [], 30, posting.id, 30, model.proposer)
    assert job.start()
    model.step()
    model.step()

    # 3. The bundled stack needs a cell of its own
    assert job.item is second and job.count == 50
    assert job.dest_queue and (8, 5) not in job.dest_queue

    assert _run_until(model, lambda: posting.status() is PostingStatus.COMPLETE)
    assert job.state is JobState.DONE and job.end_reason is None
    assert record.moved_quantity == 50
    assert model.incompletable_jobs == 0
    assert [i.stack_count for i in region.items_at((8, 5))] == [75]
    print("✔ Bundling capacity tests passed")


def test_reload_mid_carry_keeps_delivery():
    model, region, (item,), posting, worker = _world([(30, (3, 5))])
    model.step()
    model.step()
    assert worker.carried is item

    # 1. Reload while the stack is in hand
    model.load_state(json.loads(json.dumps(model.to_state())))
    restored = model.posting_owning(item)
    assert restored is not None and restored is not posting
    record = restored.records[0]
    assert record.in_flight_quantity() == 30, "The running delivery follows the reloaded order"
    assert record.remaining_to_haul() == 0

    # 2. The stack is delivered once, against the reloaded record
    assert _run_until(model, lambda: restored.status() is PostingStatus.COMPLETE)
    for _ in range(10):
        model.step()
    assert record.moved_quantity == 30
    assert posting.records[0].moved_quantity == 0
    assert model.total_delivered_units == 30
    assert worker.deliveries == 1
    print("✔ Reload mid-carry tests passed")


def test_forbidden_target_ends_job():
    model, region, (item,), posting, worker = _world([(30, (3, 7))])
    model.step()
    job = worker.job
    assert job.state is JobState.GOTO_ITEM
    item.forbidden = True
    model.step()
    assert job.state is JobState.INCOMPLETABLE
    assert job.end_reason == "target forbidden"
    assert len(region.claims) == 0
    print("✔ Fail condition tests passed")


def test_claim_all_is_all_or_nothing():
    model = HaulingWorldModel(width = 8, height = 8, num_workers = 2, seed = 1)
    w1, w2 = model.workers
    ledger = ClaimLedger()
    job_1, job_2 = object(), object()
    assert ledger.claim(w2, (5, 5), job_2)
    assert not ledger.claim_all(w1, [(1, 1), (2, 2), (5, 5)], job_1)
    assert not ledger.is_claimed_by_anyone((1, 1))
    assert not ledger.is_claimed_by_anyone((2, 2))
    assert ledger.claimant((5, 5)) is w2

    # Claims already held for the job survive a failed extension
    assert ledger.claim_all(w1, [(1, 1)], job_1)
    assert not ledger.claim_all(w1, [(1, 1), (5, 5)], job_1)
    assert ledger.holds(w1, (1, 1), job_1)
    assert ledger.release_all(job_1) == 1
    print("✔ Claim ledger tests passed")


def test_contended_job_does_not_start():
    model, region, (item,), posting, worker = _world([(30, (3, 5))])
    rival = Worker(model, region)
    region.add_worker(rival, (9, 9))
    region.claims.claim(rival, posting.destinations[0], "rival")

    job = DeliveryJob(worker, item, posting.destinations[0], [], 30, posting.id, 75, model.proposer)
    assert not job.start()
    assert worker.job is None
    assert not region.claims.is_claimed_by_anyone(item)
    print("✔ Contention tests passed")


def test_cost_matrix():
    worker_pos = np.array([[0, 0], [5, 5]], dtype = np.int64)
    item_pos = np.array([[1, 0], [5, 3]], dtype = np.int64)
    deliveries = np.array([0.0, 4.0])
    cost = make_cost_matrix(worker_pos, item_pos, deliveries, 0.5)
    assert cost.shape == (2, 2)
    assert cost[0, 0] == 1.0
    assert cost[1, 1] == 2.0 + 2.0
    print("✔ Cost matrix tests passed")


if __name__ == "__main__":
    test_single_delivery_completes()
    test_cancel_mid_carry_restores_state()
    test_nearby_item_is_bundled()
    test_bundling_respects_radius()
    test_partial_pickup_registers_splinter()
    test_bundling_counts_units_already_in_hand()
    test_reload_mid_carry_keeps_delivery()
    test_last_resort_destroys_carried_stack()
    test_forbidden_target_ends_job()
    test_claim_all_is_all_or_nothing()
    test_contended_job_does_not_start()
    test_cost_matrix()
