"""
Parallel processing for CRS candidate evaluation.

Candidate scoring is a pure map over the candidate catalog: each chunk of
candidates is scored independently in a worker process and the results
are concatenated once every worker has finished.
"""

from concurrent.futures import ProcessPoolExecutor, as_completed

import numpy as np

from gridder import config
from gridder.logging_config import get_pipeline_logger

log = get_pipeline_logger(__name__)


def partition(items, n_chunks):
    """Split items into at most ``n_chunks`` disjoint, order-preserving chunks."""
    items = list(items)
    if not items:
        return []
    n_chunks = max(1, min(int(n_chunks), len(items)))
    bounds = np.array_split(np.arange(len(items)), n_chunks)
    return [[items[i] for i in idx] for idx in bounds if len(idx)]


def parallel_map_chunks(fn, items, max_workers=None, on_error=None, chunks_per_worker=4):
    """Apply ``fn`` to disjoint chunks of ``items`` across a process pool.

    Args:
        fn: Picklable callable taking a list of items and returning a list
            of results.
        items: Work items (CRS candidates).
        max_workers: Number of parallel workers (default: CPU count - 1,
            or GRIDDER_MAX_WORKERS).
        on_error: Callable ``(chunk, exc) -> list`` converting a failed
            chunk into results. Without it, a failed chunk re-raises.
        chunks_per_worker: Chunks queued per worker, so a slow chunk does
            not leave the other workers idle.

    Returns:
        List of results, concatenated only after all chunks complete.
    """
    if max_workers is None:
        max_workers = config.default_max_workers()

    items = list(items)
    if not items:
        return []

    if max_workers == 1:
        chunks = [items]
    else:
        chunks = partition(items, max_workers * chunks_per_worker)

    log.info("Evaluating %d items in %d chunks, %d workers",
             len(items), len(chunks), max_workers)

    all_results = []

    if max_workers == 1 or len(chunks) == 1:
        for chunk in chunks:
            all_results.extend(_run_chunk(fn, chunk, on_error))
        return all_results

    with ProcessPoolExecutor(max_workers=max_workers) as executor:
        futures = {executor.submit(fn, chunk): i for i, chunk in enumerate(chunks)}
        collected = {}
        for future in as_completed(futures):
            i = futures[future]
            try:
                collected[i] = future.result()
                log.debug("Completed chunk %d (%d items)", i, len(chunks[i]))
            except Exception as e:
                log.error("Chunk %d failed: %s", i, e)
                if on_error is None:
                    raise
                collected[i] = on_error(chunks[i], e)

    for i in range(len(chunks)):
        all_results.extend(collected[i])
    return all_results


def _run_chunk(fn, chunk, on_error):
    try:
        return fn(chunk)
    except Exception as e:
        log.error("Chunk failed: %s", e)
        if on_error is None:
            raise
        return on_error(chunk, e)
