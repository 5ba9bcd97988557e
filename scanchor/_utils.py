# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging

import numpy as np
import pandas as pd
import scanpy as sc

from joblib import Parallel, delayed
from scipy import linalg
from scipy.sparse import csr_matrix, identity
from sklearn.preprocessing import StandardScaler, normalize
from sklearn.utils.extmath import randomized_svd, svd_flip

from ._errors import IncompatibleFeatures, NoAnchorsFound
from ._neighbors import knn
from ._types import Dataset, MergeStep, ReferenceModel

logger = logging.getLogger("scanchor")


REDUCTIONS = ("cca", "project")
SCORE_METHODS = ("consistency", "snn")
SIMILARITIES = ("ratio", "count")


def _intersect_features(dataset1: Dataset, dataset2: Dataset) -> pd.Index:
    features = dataset1.features[dataset1.features.isin(dataset2.features)]
    if len(features) == 0:
        raise IncompatibleFeatures((dataset1.name, dataset2.name))
    return features


def _scale_matrix(
    X: np.ndarray,
    means: np.ndarray | None = None,
    stds: np.ndarray | None = None,
    max_value: float | None = 10.0,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    if means is None:
        means = X.mean(axis=0)
    if stds is None:
        stds = X.std(axis=0, ddof=1) if X.shape[0] > 1 else np.zeros(X.shape[1])

    nonzero = stds != 0
    t = np.zeros_like(X, dtype=np.float64)
    t[:, nonzero] = (X[:, nonzero] - means[np.newaxis, nonzero]) / stds[
        np.newaxis, nonzero
    ]

    if max_value is not None:
        t = np.clip(t, -max_value, max_value)

    return t, means, stds


def _pca(X: np.ndarray, n_comps: int, random_state: int = 0) -> np.ndarray:
    assert n_comps < min(X.shape), (
        f"Can't compute {n_comps} components of a {X.shape[0]} x {X.shape[1]} matrix"
    )
    _, components, _, _ = sc.pp.pca(
        np.asarray(X, dtype=np.float64),
        n_comps=n_comps,
        zero_center=True,
        svd_solver="arpack",
        random_state=random_state,
        return_info=True,
        dtype="float64",
    )
    # [G, d] = [d, G].T
    return np.asarray(components, dtype=np.float64).T


def _run_cca(
    X1: np.ndarray, X2: np.ndarray, n_components: int, random_state: int = 0
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    # [N1, N2] = [N1, G] x [N2, G].T
    M = X1 @ X2.T

    if min(M.shape) <= 2 * (n_components + 10):
        U, d, Vt = linalg.svd(M, full_matrices=False)
        U, Vt = svd_flip(U, Vt)
        U, d, Vt = U[:, :n_components], d[:n_components], Vt[:n_components]
    else:
        U, d, Vt = randomized_svd(M, n_components=n_components, random_state=random_state)

    # [N1, d], [N2, d]
    return U, Vt.T, d


def _align(
    X1: np.ndarray,
    X2: np.ndarray,
    dims: int,
    reduction: str = "cca",
    scale: bool = True,
    max_value: float | None = 10.0,
    l2_norm: bool = True,
    random_state: int = 0,
) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Embed two feature matrices over the same features into a common space.

    Returns:
        [N1, d] and [N2, d] embeddings, [G, d] feature loadings,
        and per-dataset standardized data [N1, G], [N2, G]
    """
    if reduction not in REDUCTIONS:
        raise ValueError(f"`reduction` should be one of {REDUCTIONS}, got '{reduction}'")

    std1 = StandardScaler().fit_transform(X1)
    std2 = StandardScaler().fit_transform(X2)

    if reduction == "cca":
        U, V, _ = _run_cca(
            std1 if scale else X1, std2 if scale else X2, dims, random_state=random_state
        )
        # [G, d] = [N1 + N2, G].T x [N1 + N2, d]
        loadings = np.concatenate([std1, std2]).T @ np.concatenate([U, V])
    else:
        # both datasets in the coordinates of dataset 1
        scaled1, means, stds = _scale_matrix(X1, max_value=max_value)
        scaled2, _, _ = _scale_matrix(X2, means, stds, max_value=max_value)
        loadings = _pca(scaled1, dims, random_state=random_state)
        U = scaled1 @ loadings
        V = scaled2 @ loadings

    if l2_norm:
        U = normalize(U, axis=1)
        V = normalize(V, axis=1)

    return U, V, loadings, std1, std2


def _adjust_for_missing_features(
    query: Dataset, features: pd.Index, features_present: np.ndarray
) -> np.ndarray:
    """
    Sets zero values to missing features.

    Args:
        query (Dataset): query dataset
        features (pd.Index): which features to be left
        features_present (np.ndarray): which of `features` are indeed present in the query

    Returns:
        np.ndarray: [N, len(features)] values of all the `features`
        with values of missing features set to zero
    """
    logger.warning(
        "%i out of %i "
        "features from the reference are missing in the query dataset '%s', "
        "their values in the query will be set to zero",
        (~features_present).sum(),
        features.shape[0],
        query.name,
    )
    t = np.zeros((query.n_cells, features.shape[0]))
    t[:, features_present] = query.subset_features(features[features_present])

    return t


def _scale_to_reference(
    reference: ReferenceModel,
    query: Dataset,
    max_value: float | None = 10.0,
) -> np.ndarray:
    features = reference.features
    features_present = np.asarray(features.isin(query.features))

    if not features_present.any():
        raise IncompatibleFeatures((reference.name, query.name))

    if not features_present.all():
        t = _adjust_for_missing_features(query, features, features_present)
    else:
        t = query.subset_features(features)

    # zero-std reference features are not informative, missing ones stay zero
    use = features_present & (reference.stds != 0)
    t[:, use] -= reference.means[np.newaxis, use]
    t[:, use] /= reference.stds[np.newaxis, use]
    t[:, ~use] = 0

    if max_value is not None:
        t = np.clip(t, -max_value, max_value)

    return t


def _project_onto_reference(
    reference: ReferenceModel,
    query: Dataset,
    max_value: float | None = 10.0,
) -> np.ndarray:
    t = _scale_to_reference(reference, query, max_value=max_value)

    # map query to reference's PCA coords
    # [cells, n_comps] = [cells, features] x [features, n_comps]
    return t @ reference.loadings


def _find_mnn(G12: np.ndarray, G21: np.ndarray, k_anchor: int) -> np.ndarray:
    """[n_anchors, 2] pairs (i, j) that are within each other's k_anchor neighbors."""
    n1, n2 = G12.shape[0], G21.shape[0]
    k12 = min(k_anchor, G12.shape[1])
    k21 = min(k_anchor, G21.shape[1])

    # [N1, N2]
    A12 = csr_matrix(
        (np.ones(n1 * k12), (np.repeat(np.arange(n1), k12), G12[:, :k12].ravel())),
        shape=(n1, n2),
    )
    # [N1, N2] = [N2, N1].T
    A21 = csr_matrix(
        (np.ones(n2 * k21), (G21[:, :k21].ravel(), np.repeat(np.arange(n2), k21))),
        shape=(n1, n2),
    )
    mutual = A12.multiply(A21).tocoo()

    anchors = np.stack([mutual.row, mutual.col], axis=1).astype(np.int64)
    order = np.lexsort((anchors[:, 1], anchors[:, 0]))
    return anchors[order]


def _top_dim_features(loadings: np.ndarray, max_features: int) -> np.ndarray:
    """
    Balanced selection of the most positive and most negative features
    of each dimension, taken rank by rank until `max_features` are chosen.
    """
    n_features, n_dims = loadings.shape
    if max_features >= n_features:
        return np.arange(n_features)

    order_pos = np.argsort(-loadings, axis=0, kind="stable")
    order_neg = np.argsort(loadings, axis=0, kind="stable")

    selected: list[int] = []
    seen: set[int] = set()
    for rank in range(n_features):
        for dim in range(n_dims):
            for idx in (order_pos[rank, dim], order_neg[rank, dim]):
                if idx not in seen:
                    seen.add(idx)
                    selected.append(int(idx))
                    if len(selected) == max_features:
                        return np.sort(selected)
    return np.sort(selected)


def _filter_anchors(
    anchors: np.ndarray,
    data1: np.ndarray,
    data2: np.ndarray,
    k_filter: int,
    nn_method: str = "exact",
    random_state: int = 0,
    n_jobs: int | None = 1,
) -> np.ndarray:
    """
    Keep an anchor (a, b) only if a is among the k_filter nearest
    cells of dataset 1 to b in the (feature-subset) original space.
    """
    if anchors.shape[0] == 0:
        return anchors

    data1 = normalize(data1, axis=1)
    data2 = normalize(data2, axis=1)

    G, _ = knn(
        data1, data2, k=k_filter, method=nn_method, random_state=random_state, n_jobs=n_jobs
    )
    keep = (G[anchors[:, 1]] == anchors[:, 0][:, np.newaxis]).any(axis=1)

    logger.info(
        "Anchors kept by the high dimensional neighbors filter: %i / %i",
        keep.sum(),
        anchors.shape[0],
    )
    return anchors[keep]


def _neighbor_matrix(G: np.ndarray, n_columns: int, add_self: bool = False) -> csr_matrix:
    n, k = G.shape
    M = csr_matrix(
        (np.ones(n * k), (np.repeat(np.arange(n), k), G.ravel())), shape=(n, n_columns)
    )
    if add_self:
        M = M + identity(n, format="csr")
    M.data[:] = 1
    return M


def _score_consistency(
    anchors: np.ndarray, G11: np.ndarray, G22: np.ndarray, k_score: int
) -> np.ndarray:
    """
    For each anchor (a, b): the fraction of a's k_score within-dataset
    neighbors that are anchored to some cell of b's neighborhood (b included).
    """
    n1, n2 = G11.shape[0], G22.shape[0]
    k1 = min(k_score, G11.shape[1])
    if anchors.shape[0] == 0 or k1 == 0:
        return np.zeros(anchors.shape[0])

    # [N1, N2] anchor adjacency
    A = csr_matrix(
        (np.ones(anchors.shape[0]), (anchors[:, 0], anchors[:, 1])), shape=(n1, n2)
    )
    A.data[:] = 1
    # [N2, N2]
    NB = _neighbor_matrix(G22[:, :k_score], n2, add_self=True)
    # [N1, N2] = [N1, N2] x [N2, N2].T: a' anchored to some cell of b's neighborhood
    M = A @ NB.T
    M.data[:] = 1
    # [N1, N1]
    NA = _neighbor_matrix(G11[:, :k1], n1)
    # [N1, N2] = [N1, N1] x [N1, N2]
    S = NA @ M

    counts = np.asarray(S[anchors[:, 0], anchors[:, 1]]).ravel()
    return np.clip(counts / k1, 0.0, 1.0)


def _min_max(x: np.ndarray, q_left: float = 1, q_right: float = 90) -> np.ndarray:
    """Normalize to q_left, q_right quantiles to 0, 1, and cap extreme values."""
    x = np.asarray(x, dtype=np.float64)
    if x.size == 0:
        return x
    tmin, tmax = np.percentile(x, [q_left, q_right])
    if tmax <= tmin:
        return np.clip(x / tmax, 0.0, 1.0) if tmax > 0 else np.zeros_like(x)
    return np.clip((x - tmin) / (tmax - tmin), 0.0, 1.0)


def _score_snn(
    anchors: np.ndarray,
    G11: np.ndarray,
    G12: np.ndarray,
    G21: np.ndarray,
    G22: np.ndarray,
    k_score: int,
) -> np.ndarray:
    """Shared neighbors of a and b in the joint neighbor graph, rescaled to [0, 1]."""
    if anchors.shape[0] == 0:
        return np.zeros(0)

    n1, n2 = G11.shape[0], G22.shape[0]
    n = n1 + n2
    # joint neighborhoods, dataset 2 cells are offset by n1
    nn1 = np.hstack([np.arange(n1)[:, np.newaxis], G11[:, :k_score], G12[:, :k_score] + n1])
    nn2 = np.hstack([G21[:, :k_score], np.arange(n2)[:, np.newaxis] + n1, G22[:, :k_score] + n1])

    N1 = _neighbor_matrix(nn1, n)
    N2 = _neighbor_matrix(nn2, n)

    shared = np.asarray(
        N1[anchors[:, 0]].multiply(N2[anchors[:, 1]]).sum(axis=1)
    ).ravel()
    return _min_max(shared)


def _apply_score_policy(
    anchors: pd.DataFrame,
    min_score: float = 0.0,
    max_anchors_per_cell: int | None = None,
) -> pd.DataFrame:
    """
    Anchors of one pair of datasets: per-cell cap first (top scores of every cell,
    on both sides), then the score floor, so that lowering ``min_score``
    never drops an anchor kept at a higher floor.
    """
    if max_anchors_per_cell is not None and not anchors.empty:
        keep = np.ones(anchors.shape[0], dtype=bool)
        for side in ("cell1", "cell2"):
            rank = (
                anchors.sort_values("score", ascending=False, kind="stable")
                .groupby(side, sort=False)
                .cumcount()
                .reindex(anchors.index)
            )
            keep &= (rank < max_anchors_per_cell).to_numpy()
        anchors = anchors[keep]

    return anchors[anchors["score"] >= min_score].reset_index(drop=True)


def _plan_merges(
    counts: np.ndarray,
    n_cells: list[int],
    names: list[str],
    similarity: str = "ratio",
    reference: list[int] | None = None,
) -> list[MergeStep]:
    """
    Greedy agglomeration: repeatedly pool the two groups with the highest
    similarity, where a pooled group inherits the union of its anchors.
    """
    if similarity not in SIMILARITIES:
        raise ValueError(
            f"`similarity` should be one of {SIMILARITIES}, got '{similarity}'"
        )
    reference = set(reference or [])

    groups: list[tuple[int, ...]] = [(i,) for i in range(len(n_cells))]
    steps: list[MergeStep] = []

    def group_cells(group):
        return sum(n_cells[i] for i in group)

    while len(groups) > 1:
        best = None
        for gi, g in enumerate(groups):
            for gj in range(gi + 1, len(groups)):
                h = groups[gj]
                n_anchors = int(counts[np.ix_(g, h)].sum())
                if similarity == "ratio":
                    sim = n_anchors / min(group_cells(g), group_cells(h))
                else:
                    sim = float(n_anchors)
                if best is None or sim > best[0]:
                    best = (sim, gi, gj, n_anchors)

        sim, gi, gj, n_anchors = best
        if n_anchors == 0:
            raise NoAnchorsFound(
                [([names[i] for i in group], group_cells(group)) for group in groups]
            )

        g, h = groups[gi], groups[gj]
        g_is_reference = bool(reference & set(g))
        h_is_reference = bool(reference & set(h))
        if g_is_reference != h_is_reference:
            ref, qry = (g, h) if g_is_reference else (h, g)
        elif group_cells(h) > group_cells(g):
            ref, qry = h, g
        else:
            ref, qry = g, h

        steps.append(MergeStep(reference=ref, query=qry, n_anchors=n_anchors, similarity=sim))
        logger.info(
            "Merge %i: [%s] <- [%s] (%i anchors)",
            len(steps),
            ", ".join(names[i] for i in ref),
            ", ".join(names[i] for i in qry),
            n_anchors,
        )

        groups[gi] = tuple(sorted(g + h))
        del groups[gj]

    return steps


def _find_weights(
    weight_space: np.ndarray,
    anchor_cells: np.ndarray,
    scores: np.ndarray,
    k_weight: int,
    sd_weight: float = 1.0,
    nn_method: str = "exact",
    random_state: int = 0,
    n_jobs: int | None = 1,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Weights of the k_weight nearest anchors of every cell.

    Args:
        weight_space (np.ndarray): [N, d] coordinates of the cells to be corrected
        anchor_cells (np.ndarray): [n_anchors] rows of `weight_space` that are anchor endpoints
        scores (np.ndarray): [n_anchors] anchor scores

    Returns:
        [N, k] anchor indices, [N, k] weights summing to 1 per row
        (0 for degenerate cells) and the [N] degenerate cells mask
    """
    n_cells = weight_space.shape[0]
    n_anchors = anchor_cells.shape[0]

    if n_anchors == 0:
        return (
            np.zeros((n_cells, 0), dtype=int),
            np.zeros((n_cells, 0)),
            np.ones(n_cells, dtype=bool),
        )

    k = min(k_weight, n_anchors)
    if k < k_weight:
        logger.warning(
            "Only %i anchors available, using k_weight=%i instead of %i",
            n_anchors,
            k,
            k_weight,
        )

    G, D = knn(
        weight_space[anchor_cells],
        weight_space,
        k=k,
        method=nn_method,
        random_state=random_state,
        n_jobs=n_jobs,
    )

    if k == 1:
        dist_weights = np.ones_like(D)
    else:
        # [N, 1] distance to the k-th anchor
        last = D[:, -1:]
        with np.errstate(divide="ignore", invalid="ignore"):
            dist_weights = 1 - D / last
        # all anchors at zero distance
        dist_weights[last[:, 0] == 0] = 1.0

    W = dist_weights * scores[G]
    W = 1 - np.exp(-W * sd_weight**2 / 4)

    totals = W.sum(axis=1)
    degenerate = totals <= 0
    W[~degenerate] /= totals[~degenerate, np.newaxis]
    W[degenerate] = 0

    return G, W, degenerate


def _correct_block(values: np.ndarray, bias: np.ndarray, G: np.ndarray, W: np.ndarray):
    # [Nb, d] = [Nb, d] + sum_k([Nb, k] * [Nb, k, d])
    return values + np.einsum("nk,nkd->nd", W, bias[G])


def _apply_correction(
    values: np.ndarray,
    bias: np.ndarray,
    G: np.ndarray,
    W: np.ndarray,
    chunk_size: int = 50000,
    n_jobs: int | None = 1,
) -> np.ndarray:
    """Add to every cell the weighted average of its nearest anchors' correction vectors."""
    if values.shape[0] == 0 or G.shape[1] == 0:
        return values.copy()

    starts = range(0, values.shape[0], chunk_size)
    chunks = Parallel(n_jobs=n_jobs)(
        delayed(_correct_block)(
            values[start : start + chunk_size],
            bias,
            G[start : start + chunk_size],
            W[start : start + chunk_size],
        )
        for start in starts
    )
    return np.concatenate(chunks, axis=0)


def _weighted_vote(G: np.ndarray, W: np.ndarray, anchor_values: np.ndarray) -> np.ndarray:
    # [N, C] = sum_k([N, k] * [N, k, C])
    if G.shape[1] == 0:
        return np.zeros((G.shape[0], anchor_values.shape[1]))
    return np.einsum("nk,nkc->nc", W, anchor_values[G])
