# pylint: disable=C0103, C0116, C0114, W0511
from __future__ import annotations

import logging

import numpy as np

from joblib import Parallel, delayed
from sklearn.metrics.pairwise import euclidean_distances

logger = logging.getLogger("scanchor")


NN_METHODS = ("exact", "approx")


def _sort_candidates(
    candidates: np.ndarray, distances: np.ndarray, k: int
) -> tuple[np.ndarray, np.ndarray]:
    # ties on distance go to the lowest cell index
    order = np.lexsort((candidates, distances), axis=1)[:, :k]
    return (
        np.take_along_axis(candidates, order, axis=1),
        np.take_along_axis(distances, order, axis=1),
    )


def _exact_block(
    data: np.ndarray, query: np.ndarray, k: int, offset: int | None
) -> tuple[np.ndarray, np.ndarray]:
    # [Nb, N] distances of the block to every data point
    D = euclidean_distances(query, data)
    if offset is not None:
        rows = np.arange(query.shape[0])
        D[rows, rows + offset] = -np.inf

    idx = np.argsort(D, axis=1, kind="stable")

    if offset is not None:
        idx = idx[:, 1 : k + 1]
    else:
        idx = idx[:, :k]

    return idx, np.take_along_axis(D, idx, axis=1)


def _exact_knn(
    data: np.ndarray,
    query: np.ndarray,
    k: int,
    exclude_self: bool,
    block_size: int,
    n_jobs: int | None,
) -> tuple[np.ndarray, np.ndarray]:
    starts = range(0, query.shape[0], block_size)
    blocks = Parallel(n_jobs=n_jobs)(
        delayed(_exact_block)(
            data,
            query[start : start + block_size],
            k,
            start if exclude_self else None,
        )
        for start in starts
    )
    if not blocks:
        return np.zeros((0, k), dtype=int), np.zeros((0, k))

    idx = np.concatenate([block[0] for block in blocks], axis=0)
    dist = np.concatenate([block[1] for block in blocks], axis=0)
    return idx, dist


def _approx_knn(
    data: np.ndarray,
    query: np.ndarray,
    k: int,
    exclude_self: bool,
    random_state: int,
    n_jobs: int | None,
) -> tuple[np.ndarray, np.ndarray]:
    import pynndescent

    n_search = min(k + 1 if exclude_self else k, data.shape[0])
    index = pynndescent.NNDescent(
        data,
        metric="euclidean",
        n_neighbors=max(n_search, 2),
        random_state=random_state,
        n_jobs=n_jobs if n_jobs is not None else 1,
    )
    candidates, _ = index.query(query, k=n_search)
    candidates = candidates.astype(int)

    # distances are recomputed exactly, only the search is approximate
    # [Nq, k] = sqrt(sum(([Nq, 1, d] - [Nq, k, d]) ** 2))
    distances = np.linalg.norm(query[:, np.newaxis, :] - data[candidates], axis=2)

    if exclude_self:
        is_self = candidates == np.arange(query.shape[0])[:, np.newaxis]
        # self is pushed past every other candidate, then dropped
        distances = np.where(is_self, np.inf, distances)
        candidates, distances = _sort_candidates(candidates, distances, n_search)
        return candidates[:, :k], distances[:, :k]

    return _sort_candidates(candidates, distances, k)


def knn(
    data: np.ndarray,
    query: np.ndarray | None = None,
    k: int = 30,
    method: str = "exact",
    block_size: int = 2048,
    random_state: int = 0,
    n_jobs: int | None = 1,
) -> tuple[np.ndarray, np.ndarray]:
    """
    k nearest neighbors by euclidean distance.

    If ``query`` is None, neighbors of ``data`` within itself are searched
    and every point is excluded from its own neighbors.
    Ties on distance are broken by the lowest index in ``data``.

    Args:
        data (np.ndarray): [N, d] points to search in
        query (np.ndarray | None): [Nq, d] points to search for. Defaults to None.
        k (int): number of neighbors. Defaults to 30.
        method (str): "exact" (blockwise distance matrices) or "approx" (pynndescent). Defaults to "exact".
        block_size (int): number of query points per block for exact search. Defaults to 2048.
        random_state (int): seed of the approximate index. Defaults to 0.
        n_jobs (int | None): joblib workers over query blocks / pynndescent threads. Defaults to 1.

    Returns:
        tuple[np.ndarray, np.ndarray]: [Nq, k] neighbor indices and distances
    """
    if method not in NN_METHODS:
        raise ValueError(f"`method` should be one of {NN_METHODS}, got '{method}'")

    exclude_self = query is None
    if exclude_self:
        query = data

    available = data.shape[0] - 1 if exclude_self else data.shape[0]
    assert (
        0 < k <= available
    ), f"Can't search {k} neighbors among {available} candidate points"

    if method == "exact":
        return _exact_knn(data, query, k, exclude_self, block_size, n_jobs)
    return _approx_knn(data, query, k, exclude_self, random_state, n_jobs)


def find_neighbors(
    emb1: np.ndarray,
    emb2: np.ndarray,
    k: int,
    method: str = "exact",
    random_state: int = 0,
    n_jobs: int | None = 1,
) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Find all four kinds of neighbors for two jointly embedded datasets.

    Returns:
        within-1, 1 -> 2, 2 -> 1 and within-2 neighbor indices, each [n_cells, k]
    """
    n1, n2 = emb1.shape[0], emb2.shape[0]
    k_within1 = min(k, n1 - 1)
    k_within2 = min(k, n2 - 1)

    kwargs = dict(method=method, random_state=random_state, n_jobs=n_jobs)
    G11 = knn(emb1, k=k_within1, **kwargs)[0] if k_within1 > 0 else np.zeros((n1, 0), int)
    G12 = knn(emb2, emb1, k=min(k, n2), **kwargs)[0]
    G21 = knn(emb1, emb2, k=min(k, n1), **kwargs)[0]
    G22 = knn(emb2, k=k_within2, **kwargs)[0] if k_within2 > 0 else np.zeros((n2, 0), int)
    return G11, G12, G21, G22
