# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import itertools
import logging
import warnings

from typing import Sequence

import numpy as np
import pandas as pd

from anndata import AnnData
from joblib import Parallel, delayed
from sklearn.preprocessing import normalize

from ._errors import (
    DegenerateNeighborhood,
    IncompatibleFeatures,
    InsufficientCells,
    NoAnchorsFound,
    NoReferenceModel,
)
from ._neighbors import NN_METHODS, find_neighbors
from ._types import AnchorSet, Dataset, MergeOrder, ProjectedCoordinates, ReferenceModel
from ._utils import (
    REDUCTIONS,
    SCORE_METHODS,
    _align,
    _apply_correction,
    _apply_score_policy,
    _filter_anchors,
    _find_mnn,
    _find_weights,
    _intersect_features,
    _pca,
    _plan_merges,
    _project_onto_reference,
    _scale_to_reference,
    _score_consistency,
    _score_snn,
    _top_dim_features,
    _weighted_vote,
)


logger = logging.getLogger("scanchor")


def _check_cells(dataset_names, n_cells, requested: int | None, parameter: str):
    if requested is None:
        return
    # the smaller dataset is reported
    smallest = int(np.argmin(n_cells))
    if requested > n_cells[smallest]:
        raise InsufficientCells(
            dataset_names[smallest], n_cells[smallest], requested, parameter
        )


def _score(anchors, G11, G12, G21, G22, k_score, score_method):
    if score_method == "consistency":
        return _score_consistency(anchors, G11, G22, k_score)
    return _score_snn(anchors, G11, G12, G21, G22, k_score)


def _scored_anchors(
    emb1: np.ndarray,
    emb2: np.ndarray,
    k_anchor: int,
    k_score: int,
    filter_data: tuple[np.ndarray, np.ndarray] | None,
    k_filter: int | None,
    score_method: str,
    min_score: float,
    max_anchors_per_cell: int | None,
    nn_method: str,
    random_state: int,
    n_jobs: int | None,
) -> pd.DataFrame:
    """Mutual neighbors of two embeddings, filtered and scored."""
    G11, G12, G21, G22 = find_neighbors(
        emb1,
        emb2,
        k=max(k_anchor, k_score),
        method=nn_method,
        random_state=random_state,
        n_jobs=n_jobs,
    )
    anchors = _find_mnn(G12, G21, k_anchor)
    logger.info("Found %i mutual nearest neighbors", anchors.shape[0])

    if k_filter is not None and filter_data is not None:
        anchors = _filter_anchors(
            anchors,
            filter_data[0],
            filter_data[1],
            k_filter,
            nn_method=nn_method,
            random_state=random_state,
            n_jobs=n_jobs,
        )

    scores = _score(anchors, G11, G12, G21, G22, k_score, score_method)
    anchor_df = pd.DataFrame(
        {"cell1": anchors[:, 0], "cell2": anchors[:, 1], "score": scores}
    )
    return _apply_score_policy(
        anchor_df, min_score=min_score, max_anchors_per_cell=max_anchors_per_cell
    )


def _pairwise_anchors(
    dataset1: Dataset,
    dataset2: Dataset,
    i: int,
    j: int,
    dims: int,
    k_anchor: int,
    k_score: int,
    k_filter: int | None,
    max_features: int,
    reduction: str,
    score_method: str,
    min_score: float,
    max_anchors_per_cell: int | None,
    scale: bool,
    max_value: float | None,
    l2_norm: bool,
    nn_method: str,
    random_state: int,
    n_jobs: int | None,
) -> pd.DataFrame:
    logger.info(
        "Finding anchors between '%s' (%i cells) and '%s' (%i cells)",
        dataset1.name,
        dataset1.n_cells,
        dataset2.name,
        dataset2.n_cells,
    )
    features = _intersect_features(dataset1, dataset2)
    X1 = dataset1.subset_features(features)
    X2 = dataset2.subset_features(features)

    emb1, emb2, loadings, std1, std2 = _align(
        X1,
        X2,
        dims,
        reduction=reduction,
        scale=scale,
        max_value=max_value,
        l2_norm=l2_norm,
        random_state=random_state,
    )

    top = _top_dim_features(loadings, max_features)
    anchor_df = _scored_anchors(
        emb1,
        emb2,
        k_anchor=k_anchor,
        k_score=k_score,
        filter_data=(std1[:, top], std2[:, top]),
        k_filter=k_filter,
        score_method=score_method,
        min_score=min_score,
        max_anchors_per_cell=max_anchors_per_cell,
        nn_method=nn_method,
        random_state=random_state,
        n_jobs=n_jobs,
    )
    anchor_df.insert(0, "dataset2", j)
    anchor_df.insert(0, "dataset1", i)

    logger.info(
        "Identified %i anchors between '%s' and '%s'",
        anchor_df.shape[0],
        dataset1.name,
        dataset2.name,
    )
    return anchor_df


def _anchor_pairs(
    n_datasets: int,
    reference: Sequence[int] | None,
    pairs: Sequence[tuple[int, int]] | None,
) -> list[tuple[int, int]]:
    if pairs is not None:
        result = sorted({(min(i, j), max(i, j)) for i, j in pairs})
        for i, j in result:
            assert i != j, "a dataset can't be paired with itself"
            assert 0 <= i and j < n_datasets, f"pair ({i}, {j}) is out of range"
        return result

    result = list(itertools.combinations(range(n_datasets), 2))
    if reference is not None:
        reference = set(reference)
        result = [(i, j) for i, j in result if i in reference or j in reference]
    return result


def find_anchors(
    datasets: Sequence[Dataset],
    k_filter: int | None = 200,
    dims: int = 30,
    k_anchor: int = 5,
    k_score: int = 30,
    max_features: int = 200,
    reduction: str = "cca",
    score_method: str = "consistency",
    min_score: float = 0.0,
    max_anchors_per_cell: int | None = None,
    reference: Sequence[int] | None = None,
    pairs: Sequence[tuple[int, int]] | None = None,
    similarity: str = "ratio",
    scale: bool = True,
    max_value: float | None = 10.0,
    l2_norm: bool = True,
    nn_method: str = "exact",
    random_state: int = 0,
    n_jobs: int | None = 1,
) -> tuple[AnchorSet, MergeOrder]:
    """
    Find integration anchors between every pair of datasets
    and the order in which the datasets are to be merged.

    For every pair, both datasets are embedded into a common space (``reduction``),
    mutual nearest neighbors in that space become anchors, anchors that are not
    neighbors in the original feature space are filtered out and the rest are scored.
    The merge order pools the most similar groups of datasets first.

    Args:
        datasets (Sequence[Dataset]): datasets to integrate, with overlapping features
        k_filter (int | None, optional): neighbors used to filter anchors in the feature space,
            None disables filtering. Must not exceed the smallest dataset. Defaults to 200.
        dims (int, optional): dimensionality of the common space. Defaults to 30.
        k_anchor (int, optional): neighbors used to pick mutual nearest neighbors. Defaults to 5.
        k_score (int, optional): neighbors used to score anchors. Defaults to 30.
        max_features (int, optional): number of top-loading features used to filter anchors. Defaults to 200.
        reduction (str, optional): "cca" (canonical correlation) or "project"
            (second dataset projected onto the PCA of the first). Defaults to "cca".
        score_method (str, optional): "consistency" (neighborhood-consistency fraction)
            or "snn" (rescaled shared neighbors). Defaults to "consistency".
        min_score (float, optional): anchors with a lower score are dropped. Defaults to 0.
        max_anchors_per_cell (int | None, optional): keep at most this many best anchors per cell. Defaults to None.
        reference (Sequence[int] | None, optional): if given, only pairs that involve these
            datasets are aligned, and they stay fixed while merging. Defaults to None.
        pairs (Sequence[tuple[int, int]] | None, optional): explicit pairs to align. Defaults to None.
        similarity (str, optional): how groups are compared while planning merges:
            "ratio" (anchors per cell of the smaller group) or "count". Defaults to "ratio".
        scale (bool, optional): if to standardize features within each dataset before CCA. Defaults to True.
        max_value (float | None, optional): clipping value for "project" scaling. Defaults to 10.
        l2_norm (bool, optional): if to L2-normalize embeddings before neighbor search. Defaults to True.
        nn_method (str, optional): "exact" or "approx" (pynndescent) neighbor search. Defaults to "exact".
        random_state (int, optional): random seed. Defaults to 0.
        n_jobs (int | None, optional): joblib workers over dataset pairs. Defaults to 1.

    Returns:
        tuple[AnchorSet, MergeOrder]: anchors of all pairs and the merge order
    """
    datasets = list(datasets)
    if reduction not in REDUCTIONS:
        raise ValueError(f"`reduction` should be one of {REDUCTIONS}, got '{reduction}'")
    if score_method not in SCORE_METHODS:
        raise ValueError(
            f"`score_method` should be one of {SCORE_METHODS}, got '{score_method}'"
        )
    if nn_method not in NN_METHODS:
        raise ValueError(f"`nn_method` should be one of {NN_METHODS}, got '{nn_method}'")

    names = [dataset.name for dataset in datasets]
    n_cells = [dataset.n_cells for dataset in datasets]
    if len(set(names)) < len(names):
        warnings.warn("Dataset names are not unique, messages may be ambiguous")

    params = {
        "k_filter": k_filter,
        "dims": dims,
        "k_anchor": k_anchor,
        "k_score": k_score,
        "max_features": max_features,
        "reduction": reduction,
        "score_method": score_method,
        "min_score": min_score,
        "max_anchors_per_cell": max_anchors_per_cell,
        "reference": None if reference is None else list(reference),
        "similarity": similarity,
        "scale": scale,
        "max_value": max_value,
        "l2_norm": l2_norm,
        "nn_method": nn_method,
        "random_state": random_state,
    }

    if len(datasets) < 2:
        logger.info("Less than two datasets given, no anchors to find")
        params["pairs"] = []
        return (
            AnchorSet(pd.DataFrame(), names, n_cells, params=params),
            MergeOrder([], len(datasets)),
        )

    pair_list = _anchor_pairs(len(datasets), reference, pairs)
    params["pairs"] = [list(pair) for pair in pair_list]

    # fail before any work is done
    for i, j in pair_list:
        pair_names = [names[i], names[j]]
        pair_cells = [n_cells[i], n_cells[j]]
        _intersect_features(datasets[i], datasets[j])
        _check_cells(pair_names, pair_cells, dims, "dims")
        _check_cells(pair_names, pair_cells, k_filter, "k_filter")
        _check_cells(pair_names, pair_cells, k_anchor, "k_anchor")
        if reduction == "project" and dims >= n_cells[i]:
            # PCA of the first dataset of the pair
            raise InsufficientCells(names[i], n_cells[i], dims + 1, "dims")
        if k_score >= min(pair_cells):
            logger.warning(
                "k_score=%i is not less than the number of cells in '%s' or '%s', "
                "smaller neighborhoods will be used for scoring",
                k_score,
                *pair_names,
            )

    inner_jobs = n_jobs if len(pair_list) == 1 else 1
    pair_anchors = Parallel(n_jobs=n_jobs)(
        delayed(_pairwise_anchors)(
            datasets[i],
            datasets[j],
            i,
            j,
            dims=dims,
            k_anchor=k_anchor,
            k_score=k_score,
            k_filter=k_filter,
            max_features=max_features,
            reduction=reduction,
            score_method=score_method,
            min_score=min_score,
            max_anchors_per_cell=max_anchors_per_cell,
            scale=scale,
            max_value=max_value,
            l2_norm=l2_norm,
            nn_method=nn_method,
            random_state=random_state,
            n_jobs=inner_jobs,
        )
        for i, j in pair_list
    )

    anchors = AnchorSet(
        pd.concat(pair_anchors, ignore_index=True), names, n_cells, params=params
    )

    steps = _plan_merges(
        anchors.count_matrix().to_numpy(),
        n_cells,
        names,
        similarity=similarity,
        reference=reference,
    )
    return anchors, MergeOrder(steps, len(datasets))


def _shared_features(datasets: Sequence[Dataset]) -> pd.Index:
    features = datasets[0].features
    for dataset in datasets[1:]:
        features = features[features.isin(dataset.features)]
    if len(features) == 0:
        raise IncompatibleFeatures(tuple(dataset.name for dataset in datasets))
    return features


def _integration_values(
    datasets: Sequence[Dataset], use_rep: str
) -> tuple[list[np.ndarray], pd.Index]:
    if use_rep == "X":
        features = _shared_features(datasets)
        return [dataset.subset_features(features) for dataset in datasets], features

    if use_rep == "embedding":
        for dataset in datasets:
            assert (
                dataset.embedding is not None
            ), f"Dataset '{dataset.name}' has no embedding to integrate"
        dims = {dataset.embedding.shape[1] for dataset in datasets}
        assert len(dims) == 1, "All embeddings should have the same dimensionality"
        n_dims = dims.pop()
        return [dataset.embedding.copy() for dataset in datasets], pd.Index(
            [f"embedding_{i + 1}" for i in range(n_dims)]
        )

    raise ValueError("`use_rep` argument should be `X` or `embedding`.")


def _group_anchors(
    anchors: AnchorSet,
    reference: Sequence[int],
    query: Sequence[int],
    ref_offsets: dict[int, int],
    qry_offsets: dict[int, int],
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    ref_cells, qry_cells, scores = [], [], []
    for i in reference:
        for j in query:
            pair = anchors.pair(i, j)
            ref_cells.append(pair["cell1"].to_numpy() + ref_offsets[i])
            qry_cells.append(pair["cell2"].to_numpy() + qry_offsets[j])
            scores.append(pair["score"].to_numpy())
    return (
        np.concatenate(ref_cells).astype(int),
        np.concatenate(qry_cells).astype(int),
        np.concatenate(scores).astype(np.float64),
    )


def _offsets(group: Sequence[int], values: list[np.ndarray]) -> dict[int, int]:
    offsets, start = {}, 0
    for i in group:
        offsets[i] = start
        start += values[i].shape[0]
    return offsets


def _integrated_obs(datasets: Sequence[Dataset]) -> pd.DataFrame:
    frames = []
    for dataset in datasets:
        obs = dataset.obs.copy()
        obs["dataset"] = dataset.name
        frames.append(obs)
    obs = pd.concat(frames, axis=0)
    obs["dataset"] = pd.Categorical(
        obs["dataset"], categories=list(dict.fromkeys(d.name for d in datasets))
    )

    if not obs.index.is_unique:
        obs.index = [
            f"{cell}-{dataset}" for cell, dataset in zip(obs.index, obs["dataset"])
        ]
    obs.index = obs.index.astype(str)
    return obs


def integrate(
    datasets: Sequence[Dataset],
    anchors: AnchorSet | None = None,
    order: MergeOrder | None = None,
    use_rep: str = "X",
    k_weight: int = 100,
    sd_weight: float = 1.0,
    n_pcs_weight: int = 30,
    nn_method: str = "exact",
    chunk_size: int = 50000,
    random_state: int = 0,
    n_jobs: int | None = 1,
) -> AnnData:
    """
    Integrate datasets by merging them pairwise in the given order.

    At every merge the query group is moved into the frame of the fixed reference group:
    each anchor gives a correction vector (reference value minus query value), and every
    query cell is shifted by the weighted average of the correction vectors of its
    ``k_weight`` nearest anchors. Weights combine the anchor score and the distance
    to the anchor. Cells without usable anchors keep their values and are flagged.

    Args:
        datasets (Sequence[Dataset]): datasets, in the same order as for ``find_anchors``
        anchors (AnchorSet | None, optional): output of ``find_anchors``. Defaults to None.
        order (MergeOrder | None, optional): merge order, computed from ``anchors`` if None. Defaults to None.
        use_rep (str, optional): "X" to correct the shared features matrix,
            "embedding" to correct ``Dataset.embedding``. Defaults to "X".
        k_weight (int, optional): number of nearest anchors used for every cell. Defaults to 100.
        sd_weight (float, optional): bandwidth of the anchor weights. Defaults to 1.
        n_pcs_weight (int, optional): dimensions of the space where nearest anchors are searched. Defaults to 30.
        nn_method (str, optional): "exact" or "approx" neighbor search. Defaults to "exact".
        chunk_size (int, optional): cells corrected at once. Defaults to 50000.
        random_state (int, optional): random seed. Defaults to 0.
        n_jobs (int | None, optional): joblib workers over chunks of cells. Defaults to 1.

    Returns:
        AnnData: corrected matrix of all the cells, datasets stacked in the input order,
        with ``obs["dataset"]``, ``obs["degenerate"]`` and ``uns["integration"]``
        (the merge order is stored as ``MergeOrder.to_dict()``)
    """
    datasets = list(datasets)
    assert datasets, "At least one dataset is needed"
    names = [dataset.name for dataset in datasets]

    values, var_names = _integration_values(datasets, use_rep)
    degenerate = [np.zeros(dataset.n_cells, dtype=bool) for dataset in datasets]

    if len(datasets) > 1:
        assert anchors is not None, "Anchors are needed to integrate several datasets"
        assert anchors.n_cells == [d.n_cells for d in datasets], (
            "Anchors were found for other datasets "
            f"(cells {anchors.n_cells} vs {[d.n_cells for d in datasets]})"
        )
        if order is None:
            order = MergeOrder(
                _plan_merges(
                    anchors.count_matrix().to_numpy(),
                    anchors.n_cells,
                    names,
                    similarity=anchors.params.get("similarity", "ratio"),
                    reference=anchors.params.get("reference"),
                ),
                len(datasets),
            )
        assert order.n_datasets == len(datasets), "Merge order is for other datasets"
    else:
        order = MergeOrder([], len(datasets))

    n_degenerate = 0
    for step in order:
        ref_offsets = _offsets(step.reference, values)
        qry_offsets = _offsets(step.query, values)
        ref_values = np.concatenate([values[i] for i in step.reference])
        qry_values = np.concatenate([values[i] for i in step.query])

        ref_cells, qry_cells, scores = _group_anchors(
            anchors, step.reference, step.query, ref_offsets, qry_offsets
        )
        if ref_cells.shape[0] == 0:
            raise NoAnchorsFound(
                [
                    ([names[i] for i in group], sum(datasets[i].n_cells for i in group))
                    for group in (step.reference, step.query)
                ]
            )
        logger.info(
            "Merging [%s] into [%s] using %i anchors",
            ", ".join(names[i] for i in step.query),
            ", ".join(names[i] for i in step.reference),
            ref_cells.shape[0],
        )

        if use_rep == "X":
            n_pcs = min(n_pcs_weight, min(qry_values.shape) - 1)
            if n_pcs > 0:
                weight_space = qry_values @ _pca(qry_values, n_pcs, random_state=random_state)
            else:
                weight_space = qry_values
        else:
            weight_space = qry_values[:, :n_pcs_weight]

        G, W, step_degenerate = _find_weights(
            weight_space,
            qry_cells,
            scores,
            k_weight,
            sd_weight=sd_weight,
            nn_method=nn_method,
            random_state=random_state,
            n_jobs=n_jobs,
        )

        # [n_anchors, d] correction vectors
        bias = ref_values[ref_cells] - qry_values[qry_cells]
        corrected = _apply_correction(
            qry_values, bias, G, W, chunk_size=chunk_size, n_jobs=n_jobs
        )
        n_degenerate += int(step_degenerate.sum())

        for i in step.query:
            start = qry_offsets[i]
            stop = start + values[i].shape[0]
            values[i] = corrected[start:stop]
            degenerate[i] = degenerate[i] | step_degenerate[start:stop]

    if n_degenerate:
        warnings.warn(
            f"{n_degenerate} cells had no usable anchors and were left uncorrected",
            DegenerateNeighborhood,
        )

    obs = _integrated_obs(datasets)
    obs["degenerate"] = np.concatenate(degenerate)

    adata = AnnData(
        X=np.concatenate(values, axis=0),
        obs=obs,
        var=pd.DataFrame(index=var_names),
    )
    adata.uns["integration"] = {
        "datasets": names,
        "merge_order": order.to_dict(),
        "use_rep": use_rep,
        "k_weight": k_weight,
        "sd_weight": sd_weight,
        "n_pcs_weight": n_pcs_weight,
    }
    return adata


def find_transfer_anchors(
    reference: ReferenceModel,
    query: Dataset,
    k_anchor: int = 5,
    k_score: int = 30,
    k_filter: int | None = 200,
    dims: int | None = None,
    max_features: int = 200,
    score_method: str = "consistency",
    min_score: float = 0.0,
    max_anchors_per_cell: int | None = None,
    max_value: float | None = None,
    l2_norm: bool = True,
    nn_method: str = "exact",
    random_state: int = 0,
    n_jobs: int | None = 1,
) -> AnchorSet:
    """
    Find anchors between a fixed reference and a query projected onto the reference PCA.
    The reference is not modified.

    Args:
        reference (ReferenceModel): reference built with ``scanchor.pp.build_reference``
        query (Dataset): query dataset
        k_anchor (int, optional): neighbors used to pick mutual nearest neighbors. Defaults to 5.
        k_score (int, optional): neighbors used to score anchors. Defaults to 30.
        k_filter (int | None, optional): neighbors used to filter anchors in the feature space,
            None disables filtering. Must not exceed the smaller dataset. Defaults to 200.
        dims (int | None, optional): number of reference components to use. Defaults to all.
        max_features (int, optional): number of top-loading features used to filter anchors. Defaults to 200.
        score_method (str, optional): "consistency" or "snn". Defaults to "consistency".
        min_score (float, optional): anchors with a lower score are dropped. Defaults to 0.
        max_anchors_per_cell (int | None, optional): keep at most this many best anchors per cell. Defaults to None.
        max_value (float | None, optional): clipping value of the scaled query,
            the reference one if None. Defaults to None.
        l2_norm (bool, optional): if to L2-normalize embeddings before neighbor search. Defaults to True.
        nn_method (str, optional): "exact" or "approx" neighbor search. Defaults to "exact".
        random_state (int, optional): random seed. Defaults to 0.
        n_jobs (int | None, optional): joblib workers for the neighbor search. Defaults to 1.

    Returns:
        AnchorSet: anchors with the reference as dataset 0 and the query as dataset 1,
        keeping the projected query coordinates for weighting
    """
    if score_method not in SCORE_METHODS:
        raise ValueError(
            f"`score_method` should be one of {SCORE_METHODS}, got '{score_method}'"
        )
    if dims is None:
        dims = reference.n_comps
    assert (
        0 < dims <= reference.n_comps
    ), f"`dims` should be between 1 and {reference.n_comps}"
    if max_value is None:
        max_value = reference.params.get("max_value", 10.0)

    names = [reference.name, query.name]
    n_cells = [reference.n_cells, query.n_cells]
    _check_cells(names, n_cells, dims, "dims")
    _check_cells(names, n_cells, k_filter, "k_filter")
    _check_cells(names, n_cells, k_anchor, "k_anchor")

    logger.info(
        "Finding transfer anchors between reference '%s' (%i cells) and query '%s' (%i cells)",
        reference.name,
        reference.n_cells,
        query.name,
        query.n_cells,
    )

    # [Nq, G]
    scaled_query = _scale_to_reference(reference, query, max_value=max_value)
    # [Nq, d]
    query_embedding = scaled_query @ reference.loadings

    emb_ref = reference.embedding[:, :dims]
    emb_qry = query_embedding[:, :dims]
    if l2_norm:
        emb_ref = normalize(emb_ref, axis=1)
        emb_qry = normalize(emb_qry, axis=1)

    filter_data = None
    if k_filter is not None:
        if reference.data is None:
            logger.info(
                "Reference '%s' keeps no data, transfer anchors are not filtered",
                reference.name,
            )
        else:
            top = _top_dim_features(reference.loadings[:, :dims], max_features)
            filter_data = (reference.data[:, top], scaled_query[:, top])

    anchor_df = _scored_anchors(
        emb_ref,
        emb_qry,
        k_anchor=k_anchor,
        k_score=k_score,
        filter_data=filter_data,
        k_filter=k_filter,
        score_method=score_method,
        min_score=min_score,
        max_anchors_per_cell=max_anchors_per_cell,
        nn_method=nn_method,
        random_state=random_state,
        n_jobs=n_jobs,
    )
    anchor_df.insert(0, "dataset2", 1)
    anchor_df.insert(0, "dataset1", 0)
    logger.info("Identified %i transfer anchors", anchor_df.shape[0])

    return AnchorSet(
        anchor_df,
        names,
        n_cells,
        params={
            "k_anchor": k_anchor,
            "k_score": k_score,
            "k_filter": k_filter,
            "dims": dims,
            "max_features": max_features,
            "score_method": score_method,
            "min_score": min_score,
            "max_anchors_per_cell": max_anchors_per_cell,
            "max_value": max_value,
            "l2_norm": l2_norm,
            "nn_method": nn_method,
            "random_state": random_state,
        },
        query_embedding=query_embedding,
        query_cell_names=query.cell_names,
    )


def _transfer_weights(
    anchors: AnchorSet,
    weight_space: np.ndarray,
    k_weight: int,
    sd_weight: float,
    nn_method: str,
    random_state: int,
    n_jobs: int | None,
):
    pair = anchors.pair(0, 1)
    ref_cells = pair["cell1"].to_numpy().astype(int)
    qry_cells = pair["cell2"].to_numpy().astype(int)

    G, W, degenerate = _find_weights(
        weight_space,
        qry_cells,
        pair["score"].to_numpy(),
        k_weight,
        sd_weight=sd_weight,
        nn_method=nn_method,
        random_state=random_state,
        n_jobs=n_jobs,
    )
    if degenerate.any():
        warnings.warn(
            f"{degenerate.sum()} query cells had no usable anchors",
            DegenerateNeighborhood,
        )
    return ref_cells, qry_cells, G, W, degenerate


def _transfer_one(
    labels: pd.Series,
    ref_cells: np.ndarray,
    G: np.ndarray,
    W: np.ndarray,
    degenerate: np.ndarray,
    index: pd.Index,
    unknown_label: str,
) -> pd.DataFrame:
    if labels.isna().any():
        raise ValueError(f"Reference labels '{labels.name}' contain missing values")

    # integer codes meant as classes should be passed as a categorical
    continuous = (
        pd.api.types.is_numeric_dtype(labels)
        and not pd.api.types.is_bool_dtype(labels)
        and not isinstance(labels.dtype, pd.CategoricalDtype)
    )
    if continuous:
        # [n_anchors, 1]
        anchor_values = labels.to_numpy(dtype=np.float64)[ref_cells][:, np.newaxis]
        predicted = _weighted_vote(G, W, anchor_values)[:, 0]
        predicted[degenerate] = np.nan
        return pd.DataFrame(
            {"predicted_value": predicted, "degenerate": degenerate}, index=index
        )

    categorical = pd.Categorical(labels)
    categories = categorical.categories
    # [Nr, C]
    one_hot = np.eye(len(categories))[categorical.codes]

    # [Nq, C]
    scores = _weighted_vote(G, W, one_hot[ref_cells])
    scores[degenerate] = 1.0 / len(categories)

    predicted = np.asarray(categories[scores.argmax(axis=1)], dtype=object)
    predicted[degenerate] = unknown_label

    result = pd.DataFrame(
        {
            "predicted_id": predicted,
            "prediction_score_max": scores.max(axis=1),
        },
        index=index,
    )
    score_columns = pd.DataFrame(
        scores, index=index, columns=[f"prediction_score_{c}" for c in categories]
    )
    result = pd.concat([result, score_columns], axis=1)
    result["degenerate"] = degenerate
    return result


def transfer_labels(
    anchors: AnchorSet,
    reference_labels: pd.Series | pd.DataFrame | Sequence,
    k_weight: int = 50,
    sd_weight: float = 1.0,
    unknown_label: str = "unknown",
    nn_method: str = "exact",
    random_state: int = 0,
    n_jobs: int | None = 1,
) -> pd.DataFrame | dict[str, pd.DataFrame]:
    """
    Transfer reference labels to the query cells by weighted vote over their nearest anchors.

    Numeric labels (integer or float, not categorical or boolean) give a weighted mean;
    any other labels (strings, categoricals, booleans) give a per-class score vector
    (summing to 1 for every query cell) and the top label. Integer class codes should be
    passed as a categorical. Query cells without usable anchors get ``unknown_label``
    and uniform scores (or NaN for numeric labels).

    Args:
        anchors (AnchorSet): output of ``find_transfer_anchors``
        reference_labels (pd.Series | pd.DataFrame | Sequence): one label per reference cell,
            a DataFrame transfers every column
        k_weight (int, optional): number of nearest anchors used for every query cell. Defaults to 50.
        sd_weight (float, optional): bandwidth of the anchor weights. Defaults to 1.
        unknown_label (str, optional): label of cells without usable anchors. Defaults to "unknown".
        nn_method (str, optional): "exact" or "approx" neighbor search. Defaults to "exact".
        random_state (int, optional): random seed. Defaults to 0.
        n_jobs (int | None, optional): joblib workers for the neighbor search. Defaults to 1.

    Returns:
        pd.DataFrame | dict[str, pd.DataFrame]: predictions indexed by query cells,
        a dict of them keyed by column if ``reference_labels`` is a DataFrame
    """
    assert anchors.query_embedding is not None, (
        "Anchors carry no query coordinates, "
        "use anchors from scanchor.tl.find_transfer_anchors"
    )

    ref_cells, _, G, W, degenerate = _transfer_weights(
        anchors,
        anchors.query_embedding,
        k_weight,
        sd_weight,
        nn_method,
        random_state,
        n_jobs,
    )
    index = (
        anchors.query_cell_names
        if anchors.query_cell_names is not None
        else pd.RangeIndex(anchors.n_cells[1])
    )

    if isinstance(reference_labels, pd.DataFrame):
        frame = reference_labels.reset_index(drop=True)
    else:
        frame = pd.DataFrame(
            {"label": pd.Series(reference_labels).reset_index(drop=True)}
        )
    assert (
        len(frame) == anchors.n_cells[0]
    ), f"{len(frame)} labels given for {anchors.n_cells[0]} reference cells"

    result = {
        column: _transfer_one(
            frame[column].reset_index(drop=True),
            ref_cells,
            G,
            W,
            degenerate,
            index,
            unknown_label,
        )
        for column in frame.columns
    }
    if isinstance(reference_labels, pd.DataFrame):
        return result
    return result["label"]


def map_query(
    anchors: AnchorSet,
    reference: ReferenceModel,
    query: Dataset,
    labels: str | Sequence[str] | None = None,
    k_weight: int = 50,
    sd_weight: float = 1.0,
    project_umap: bool | None = None,
    unknown_label: str = "unknown",
    nn_method: str = "exact",
    chunk_size: int = 50000,
    random_state: int = 0,
    n_jobs: int | None = 1,
) -> tuple[ProjectedCoordinates, dict[str, pd.DataFrame]]:
    """
    Map a query onto the reference: correct its projected PCA coordinates
    with the transfer anchors (only the query moves), optionally map them through
    the reference UMAP model, and transfer reference labels.

    Args:
        anchors (AnchorSet): output of ``find_transfer_anchors`` for this reference and query
        reference (ReferenceModel): the reference, not modified
        query (Dataset): the query dataset, not modified
        labels (str | Sequence[str] | None, optional): reference annotation columns to transfer.
            Defaults to all the columns of ``reference.obs``.
        k_weight (int, optional): number of nearest anchors used for every query cell. Defaults to 50.
        sd_weight (float, optional): bandwidth of the anchor weights. Defaults to 1.
        project_umap (bool | None, optional): if to map the corrected coordinates through the
            reference nonlinear model. None maps them if the model is present. Defaults to None.
        unknown_label (str, optional): label of cells without usable anchors. Defaults to "unknown".
        nn_method (str, optional): "exact" or "approx" neighbor search. Defaults to "exact".
        chunk_size (int, optional): cells corrected at once. Defaults to 50000.
        random_state (int, optional): random seed. Defaults to 0.
        n_jobs (int | None, optional): joblib workers. Defaults to 1.

    Returns:
        tuple[ProjectedCoordinates, dict[str, pd.DataFrame]]: query coordinates
        and predictions keyed by label column
    """
    if project_umap and not reference.has_umap:
        raise NoReferenceModel(
            f"Reference '{reference.name}' has no fitted nonlinear model, "
            "run scanchor.pp.fit_umap on it first"
        )
    assert anchors.n_cells == [reference.n_cells, query.n_cells], (
        "Anchors were found for another reference or query "
        f"(cells {anchors.n_cells} vs {[reference.n_cells, query.n_cells]})"
    )

    if labels is None:
        labels = list(reference.obs.columns)
    elif isinstance(labels, str):
        labels = [labels]
    missing = [label for label in labels if label not in reference.obs.columns]
    if missing:
        raise ValueError(f"Labels {missing} not found in reference '{reference.name}'")

    max_value = anchors.params.get("max_value", reference.params.get("max_value", 10.0))
    # [Nq, d]
    projected = _project_onto_reference(reference, query, max_value=max_value)

    ref_cells, qry_cells, G, W, degenerate = _transfer_weights(
        anchors, projected, k_weight, sd_weight, nn_method, random_state, n_jobs
    )

    # [n_anchors, d] correction vectors, the reference side is fixed
    bias = reference.embedding[ref_cells] - projected[qry_cells]
    corrected = _apply_correction(
        projected, bias, G, W, chunk_size=chunk_size, n_jobs=n_jobs
    )

    umap = None
    if project_umap or (project_umap is None and reference.has_umap):
        umap = np.asarray(reference.umap_model.transform(corrected), dtype=np.float64)

    coords = ProjectedCoordinates(
        cell_names=query.cell_names,
        projected=projected,
        corrected=corrected,
        umap=umap,
        degenerate=degenerate,
    )

    predictions = {
        label: _transfer_one(
            reference.obs[label].reset_index(drop=True),
            ref_cells,
            G,
            W,
            degenerate,
            query.cell_names,
            unknown_label,
        )
        for label in labels
    }
    return coords, predictions


def map_embedding(
    adata_query: AnnData,
    reference: ReferenceModel,
    labels: str | Sequence[str] | None = None,
    query_name: str = "query",
    k_weight: int = 50,
    project_umap: bool | None = None,
    transferred_primary_basis: str = "X_pca_reference",
    transferred_adjusted_basis: str = "X_pca_corrected",
    umap_basis: str = "X_umap",
    inplace: bool = True,
    **anchor_kwargs,
) -> AnnData | None:
    """
    Runs the whole mapping of adata_query onto the reference.

    Adds query coordinates in the reference PCA space
    to ``adata_query.obsm[transferred_primary_basis]``,
    anchor-corrected coordinates to ``adata_query.obsm[transferred_adjusted_basis]``,
    reference UMAP coordinates to ``adata_query.obsm[umap_basis]`` (if mapped)
    and transferred labels to ``adata_query.obs[f"{label}_predicted"]``
    (with ``f"{label}_prediction_score"`` for categorical labels).
    The expression matrix of adata_query is never changed.

    Args:
        adata_query (AnnData): query adata object
        reference (ReferenceModel): reference to map onto
        labels (str | Sequence[str] | None, optional): reference columns to transfer. Defaults to all.
        query_name (str, optional): name of the query in logs and anchors. Defaults to "query".
        k_weight (int, optional): number of nearest anchors used for every query cell. Defaults to 50.
        project_umap (bool | None, optional): see ``map_query``. Defaults to None.
        transferred_primary_basis (str, optional): slot for projected coordinates. Defaults to "X_pca_reference".
        transferred_adjusted_basis (str, optional): slot for corrected coordinates. Defaults to "X_pca_corrected".
        umap_basis (str, optional): slot for UMAP coordinates. Defaults to "X_umap".
        inplace (bool, optional): if to write directly to adata_query or return an adjusted copy. Defaults to True.
        anchor_kwargs: will be forwarded to ``find_transfer_anchors``.

    Returns:
        if inplace is False returns a copy of adata_query with additional slots,
        otherwise adds to adata_query.
    """
    query = Dataset.from_anndata(adata_query, name=query_name, obs_keys=[])

    anchors = find_transfer_anchors(reference, query, **anchor_kwargs)
    coords, predictions = map_query(
        anchors,
        reference,
        query,
        labels=labels,
        k_weight=k_weight,
        project_umap=project_umap,
        nn_method=anchor_kwargs.get("nn_method", "exact"),
        random_state=anchor_kwargs.get("random_state", 0),
    )

    adata = adata_query if inplace else adata_query.copy()

    adata.obsm[transferred_primary_basis] = coords.projected
    adata.obsm[transferred_adjusted_basis] = coords.corrected
    if coords.umap is not None:
        adata.obsm[umap_basis] = coords.umap

    for label, prediction in predictions.items():
        if "predicted_id" in prediction:
            adata.obs[f"{label}_predicted"] = prediction["predicted_id"].to_numpy()
            adata.obs[f"{label}_prediction_score"] = prediction[
                "prediction_score_max"
            ].to_numpy()
        else:
            adata.obs[f"{label}_predicted"] = prediction["predicted_value"].to_numpy()
    adata.obs["mapping_degenerate"] = coords.degenerate

    adata.uns["scanchor"] = {
        "reference": reference.name,
        "n_anchors": len(anchors),
        "params": anchors.params,
    }

    if not inplace:
        return adata
    return None
