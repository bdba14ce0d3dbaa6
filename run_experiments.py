import itertools
import logging
import multiprocessing
import pandas as pd
from tqdm import tqdm  # progress bar
from model import HaulingWorldModel

logger = logging.getLogger(__name__)

SCENARIO_DEFS = ("steel", "wood", "component")


def build_scenario(params: dict) -> HaulingWorldModel:
    """
    Scatter item stacks over the left third of a fresh world and order all
    of them to the right third.
    """
    model = HaulingWorldModel(
        width = params.get("width", 30),
        height = params.get("height", 20),
        num_workers = params.get("num_workers", 3),
        carry_limit = params.get("carry_limit", 75),
        bundle_radius = params.get("bundle_radius", 7),
        merge_tie_break = params.get("merge_tie_break", "first"),
        max_steps = params.get("max_steps", 500),
        seed = params.get("iteration", 0),
    )
    region = model.region
    rng = model.random
    stacks = []
    for _ in range(params.get("num_stacks", 12)):
        definition = model.defs.get(rng.choice(SCENARIO_DEFS))
        x = rng.randrange(1, max(2, region.width // 3))
        y = rng.randrange(1, region.height - 1)
        if region.items_at((x, y)):
            continue
        count = rng.randint(1, definition.stack_limit)
        stacks.append(region.spawn_item(definition, count, (x, y)))
    cursor = (region.width * 5 / 6, region.height / 2)
    model.order(stacks, cursor)
    return model


# --- Simulation runner for a single configuration ---
def single_run(params: dict) -> dict:
    """
    Run one scenario headlessly until every order is delivered or time runs out.
    Returns a dict of model metrics combined with the input params.
    """
    model = build_scenario(params)
    while model.running and model.pending_units() > 0:
        model.step()

    result = {
        "ticks": model.ticks,
        "delivered_units": model.total_delivered_units,
        "pending_units": model.pending_units(),
        "incompletable_jobs": model.incompletable_jobs,
        "last_resort_destructions": model.last_resort_destructions,
        "collisions": model.collisions,
    }
    # Merge in input parameters for traceability
    result.update(params)
    return result


# --- Batch runner to group multiple runs in one worker ---
def run_batch(params_batch: list[dict]) -> list[dict]:
    results = []
    for params in params_batch:
        try:
            results.append(single_run(params))
        except Exception as e:
            logger.exception("Run failed for %s", params)
            results.append({**params, "error": str(e)})
    return results


# --- Utility to split list into N roughly equal chunks ---
def chunk_list(lst: list, n_chunks: int) -> list[list]:
    chunk_size = (len(lst) + n_chunks - 1) // n_chunks
    return [lst[i:i + chunk_size] for i in range(0, len(lst), chunk_size)]


# --- Main entry point ---
if __name__ == "__main__":
    logging.basicConfig(level = logging.WARNING)

    # Define parameter grid
    variable_params = {
        "num_workers":     [1, 3, 6],
        "bundle_radius":   [0, 4, 7, 12],
        "carry_limit":     [25, 75],
        "merge_tie_break": ["first", "most_needed"],
    }
    perms = [dict(zip(variable_params.keys(), vals))
             for vals in itertools.product(*variable_params.values())]

    # Expand with iterations
    iterations = 10
    all_params = []
    for perm in perms:
        for it in range(iterations):
            p = perm.copy()
            p["iteration"] = it
            all_params.append(p)

    # Parallel execution setup
    n_workers = min(len(all_params), multiprocessing.cpu_count())
    batches = chunk_list(all_params, n_workers)
    print(f"Running {len(all_params)} runs across {len(batches)} batches on {n_workers} workers")

    # Execute and collect
    results = []
    with multiprocessing.Pool(processes = n_workers) as pool:
        for batch in tqdm(pool.imap(run_batch, batches), total = len(batches), desc = "Batches"):
            results.extend(batch)

    # Save to CSV
    df = pd.DataFrame(results)
    df.to_csv("batch_results.csv", index = False)
    print(f"Batch completed: {len(df)} rows written to batch_results.csv.")

    # Mean time to clear the orders per configuration, fastest first
    done = df[df["pending_units"] == 0]
    summary = (done.groupby(list(variable_params))["ticks"]
               .agg(["mean", "count"])
               .sort_values("mean"))
    print(summary.head(10).to_string())
