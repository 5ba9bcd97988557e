# pylint: disable=C0103, W0511, C0114
from __future__ import annotations

import logging

from dataclasses import replace
from typing import Sequence

import numpy as np

from anndata import AnnData

from ._errors import InsufficientCells
from ._types import Dataset, ReferenceModel
from ._utils import _pca, _scale_matrix


logger = logging.getLogger("scanchor")


def reduce(
    features: np.ndarray,
    n_comps: int,
    random_state: int = 0,
    name: str = "dataset",
) -> tuple[np.ndarray, np.ndarray]:
    """
    Dimensionality reducer: PCA of a [cells, features] matrix with scanpy (arpack solver).
    Deterministic for a fixed random_state.

    Args:
        features (np.ndarray): [N, G] matrix, usually scaled
        n_comps (int): number of components
        random_state (int, optional): random seed. Defaults to 0.
        name (str, optional): dataset name used in error messages. Defaults to "dataset".

    Returns:
        tuple[np.ndarray, np.ndarray]: [N, n_comps] embedding and [G, n_comps] loadings
    """
    features = np.asarray(features, dtype=np.float64)
    if n_comps >= features.shape[0]:
        raise InsufficientCells(name, features.shape[0], n_comps + 1, "n_comps")
    assert (
        n_comps < features.shape[1]
    ), f"Can't compute {n_comps} components from {features.shape[1]} features"

    loadings = _pca(features, n_comps, random_state=random_state)
    # [N, n_comps] = [N, G] x [G, n_comps]
    return features @ loadings, loadings


def scale(
    X: np.ndarray, max_value: float | None = 10.0
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Scale every feature to zero mean and unit variance, saving the means and stds.
    Features with zero std are set to zero.

    Args:
        X (np.ndarray): [N, G] matrix
        max_value (float | None, optional): values are clipped to [-max_value, max_value]. Defaults to 10.

    Returns:
        scaled [N, G] matrix, [G] means and [G] stds
    """
    return _scale_matrix(np.asarray(X, dtype=np.float64), max_value=max_value)


def build_reference(
    data: Dataset | AnnData,
    n_comps: int = 30,
    labels: Sequence[str] | None = None,
    name: str | None = None,
    max_value: float | None = 10.0,
    store_data: bool = True,
    umap: bool = False,
    random_state: int = 0,
    **umap_kwargs,
) -> ReferenceModel:
    """
    Build a reference model: feature scaling, PCA and (optionally) a UMAP model,
    saving all that is necessary to project query datasets onto it later.

    Args:
        data (Dataset | AnnData): reference cells, e.g. the output of ``scanchor.tl.integrate``
        n_comps (int, optional): number of principal components. Defaults to 30.
        labels (Sequence[str] | None, optional): which annotation columns to keep
            for label transfer. Defaults to all of them.
        name (str | None, optional): reference name. Defaults to the dataset name.
        max_value (float | None, optional): scaled values are clipped at this value. Defaults to 10.
        store_data (bool, optional): if to keep the scaled reference data,
            needed to filter transfer anchors. Defaults to True.
        umap (bool, optional): if to fit a UMAP model on the reference embedding. Defaults to False.
        random_state (int, optional): random seed for PCA and UMAP. Defaults to 0.
        umap_kwargs: will be forwarded to ``umap.UMAP``.

    Returns:
        ReferenceModel: the reference model
    """
    if isinstance(data, AnnData):
        data = Dataset.from_anndata(data, name=name)
    if name is None:
        name = data.name

    scaled, means, stds = scale(data.X, max_value=max_value)
    embedding, loadings = reduce(scaled, n_comps, random_state=random_state, name=name)

    obs = data.obs if labels is None else data.obs[list(labels)]

    reference = ReferenceModel(
        name=name,
        features=data.features,
        means=means,
        stds=stds,
        loadings=loadings,
        embedding=embedding,
        cell_names=data.cell_names,
        obs=obs.copy(),
        data=scaled if store_data else None,
        params={
            "n_comps": n_comps,
            "max_value": max_value,
            "random_state": random_state,
        },
    )
    logger.info(
        "Reference '%s' built: %i cells, %i features, %i components",
        name,
        reference.n_cells,
        len(reference.features),
        n_comps,
    )

    if umap:
        reference = fit_umap(reference, random_state=random_state, **umap_kwargs)

    return reference


def fit_umap(
    reference: ReferenceModel,
    method: str = "umap",
    random_state: int = 0,
    **kwargs,
) -> ReferenceModel:
    """
    Fit a nonlinear visualization model on the reference embedding.
    Query cells are later mapped through this model without refitting.

    Args:
        reference (ReferenceModel): reference model, not modified
        method (str, optional): "umap" (umap-learn) or "tsne" (openTSNE). Defaults to "umap".
        random_state (int, optional): random seed. Defaults to 0.
        kwargs: will be forwarded to ``umap.UMAP`` or ``openTSNE.TSNE`` init function.

    Returns:
        ReferenceModel: a copy of the reference carrying the fitted model
    """
    if method == "umap":
        from umap import UMAP

        model = UMAP(random_state=random_state, **kwargs)
        umap_embedding = model.fit_transform(reference.embedding)

    elif method == "tsne":
        try:
            from openTSNE import TSNE
        except ImportError as exc:
            raise ImportError(
                "\nPlease install openTSNE:\n\n\tpip install openTSNE"
            ) from exc

        model = TSNE(random_state=random_state, **kwargs).fit(reference.embedding)
        umap_embedding = np.array(model)

    else:
        raise ValueError("`method` argument should be `umap` or `tsne`.")

    logger.info("Fitted %s model on reference '%s'", method, reference.name)

    params = dict(reference.params)
    params["nonlinear_model"] = {"method": method, "random_state": random_state, **kwargs}

    return replace(
        reference,
        umap_model=model,
        umap_embedding=np.asarray(umap_embedding, dtype=np.float64),
        params=params,
    )
