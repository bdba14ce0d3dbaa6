import pytest
from agent import Worker
from destinations import DestinationView
from errors import ConsistencyViolation
from model import HaulingWorldModel


def _setup(counts, cursor = (7.5, 7.5), merge_stack = None):
    model = HaulingWorldModel(width = 14, height = 14, num_workers = 0, seed = 11)
    region = model.region
    steel = model.defs.get("steel")
    items = [region.spawn_item(steel, c, (2, 2 + i)) for i, c in enumerate(counts)]
    if merge_stack is not None:
        region.spawn_item(steel, merge_stack, (int(cursor[0]), int(cursor[1])))
    posting = model.order(items, cursor)
    worker = Worker(model, region)
    region.add_worker(worker, (1, 1))
    return model, region, items, posting, worker


# Testing Framework for destinations.py:
def test_request_space_covers_amount():
    # 1. Three stacks worth of steel need three free cells
    _, _, items, posting, worker = _setup([75, 75, 50])
    view = DestinationView(items[0], worker, posting)
    assert len(view.free_cells) == 3
    assert len(view.usable_dests()) == 3

    # 2. 100 units need two cells, all within the usable set
    cells = view.request_space_for_amount(100)
    assert len(cells) == 2
    assert set(cells) <= set(view.usable_dests())
    assert view.free_space_in_cells(cells) >= 100
    print("✔ Request coverage tests passed")


def test_request_more_than_capacity_returns_everything():
    _, _, items, posting, worker = _setup([75, 75, 50])
    view = DestinationView(items[0], worker, posting)
    cells = view.request_space_for_amount(10_000)
    assert sorted(cells) == sorted(view.usable_dests())
    assert view.free_space_in_cells(cells) == 225
    print("✔ Oversized request tests passed")


def test_partial_cell_capacity():
    _, _, items, posting, worker = _setup([75, 5], merge_stack = 10)
    view = DestinationView(items[0], worker, posting)
    assert view.partial_cells == [(7, 7)]
    assert view.cell_capacity((7, 7)) == 65
    assert view.dests_with_this_stack_type == 1
    # Merge cell covers 65 of 80; one free cell is handed out for the rest
    assert len(view.usable_dests()) == 2
    assert view.free_space_in_cells([(7, 7)]) == 65
    print("✔ Partial cell tests passed")


def test_claimed_cells_are_not_usable():
    model, region, items, posting, worker = _setup([75, 75])
    other = Worker(model, region)
    region.add_worker(other, (1, 2))
    taken = posting.destinations[0]
    region.claims.claim(other, taken, "elsewhere")

    view = DestinationView(items[0], worker, posting)
    assert taken not in view.usable_dests()
    assert view.usable_dests() == [posting.destinations[1]]
    print("✔ Claimed cell tests passed")


def test_forbidden_and_unreachable_cells_are_dropped():
    model, region, items, posting, worker = _setup([75, 75])
    first, second = posting.destinations
    worker.allowed_area = {first}
    view = DestinationView(items[0], worker, posting)
    assert view.usable_dests() == [first]

    # Wall the source item in
    worker.allowed_area = None
    x, y = items[0].pos
    for cell in ((x + 1, y), (x, y + 1), (x, y - 1), (x - 1, y)):
        if not any(i.pos == cell for i in items):
            region.add_wall(cell)
    region.terrain_impassable[x, y + 1] = True
    region.invalidate()
    view = DestinationView(items[0], worker, posting)
    assert view.usable_dests() == []
    assert view.request_space_for_amount(10) == [], "No room means try again later"
    print("✔ Forbidden and unreachable tests passed")


def test_unknown_cell_and_missing_posting():
    model, region, items, posting, worker = _setup([30])
    view = DestinationView(items[0], worker, posting)
    with pytest.raises(ValueError):
        view.free_space_in_cells([(0, 0)])

    stray = region.spawn_item(model.defs.get("wood"), 5, (3, 9))
    with pytest.raises(ConsistencyViolation):
        DestinationView.for_item(stray, worker, logistics = model.logistics)
    assert DestinationView.for_item(items[0], worker, logistics = model.logistics).posting is posting
    print("✔ Lookup failure tests passed")


if __name__ == "__main__":
    test_request_space_covers_amount()
    test_request_more_than_capacity_returns_everything()
    test_partial_cell_capacity()
    test_claimed_cells_are_not_usable()
    test_forbidden_and_unreachable_cells_are_dropped()
    test_unknown_cell_and_missing_posting()
