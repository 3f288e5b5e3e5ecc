"""
Fan-out of independent per-k (or per-line) work over a fixed worker pool.

Work is split into contiguous index chunks with `np.array_split`; every worker
reads the caller's arrays as a read-only snapshot and returns a fresh block.
Blocks are written into a new output buffer only after the pool has joined,
so no worker ever sees a partially updated array.
"""
from __future__ import annotations

from multiprocessing.pool import ThreadPool
from typing import Callable, List, Sequence, TypeVar

import numpy as np

T = TypeVar("T")
R = TypeVar("R")


def split_indices(n_items: int, n_workers: int) -> List[np.ndarray]:
    """Contiguous, non-empty index chunks covering range(n_items)."""
    n_chunks = max(1, min(int(n_workers), int(n_items)))
    return [idx for idx in np.array_split(np.arange(n_items), n_chunks) if idx.size]


def map_kpoints(
    func: Callable[[np.ndarray], np.ndarray],
    n_kpts: int,
    n_workers: int = 1,
) -> np.ndarray:
    """
    Evaluate `func` on chunks of k-indices and assemble the results.

    Parameters
    ----------
    func : callable taking an index array `ks` and returning an array whose
           first axis has length `len(ks)`
    n_kpts : number of k-points
    n_workers : pool size; 1 runs inline without a pool

    Returns
    -------
    out : array with first axis n_kpts, out[ks] = func(ks)
    """
    chunks = split_indices(n_kpts, n_workers)
    if len(chunks) == 1:
        blocks = [func(chunks[0])]
    else:
        with ThreadPool(processes=len(chunks)) as pool:
            blocks = pool.map(func, chunks)

    first = np.asarray(blocks[0])
    out = np.empty((n_kpts,) + first.shape[1:], dtype=first.dtype)
    for idx, block in zip(chunks, blocks):
        out[idx] = block
    return out


def map_tasks(func: Callable[[T], R], tasks: Sequence[T], n_workers: int = 1) -> List[R]:
    """Order-preserving map of independent tasks (e.g. mesh lines)."""
    tasks = list(tasks)
    if n_workers <= 1 or len(tasks) <= 1:
        return [func(t) for t in tasks]
    with ThreadPool(processes=min(int(n_workers), len(tasks))) as pool:
        return pool.map(func, tasks)
