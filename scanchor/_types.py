# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import json
import logging
import pickle

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Iterator, Sequence

import numpy as np
import pandas as pd

from anndata import AnnData
from scipy.sparse import issparse

logger = logging.getLogger("scanchor")


ANCHOR_COLUMNS = ["dataset1", "dataset2", "cell1", "cell2", "score"]


def _dense(X) -> np.ndarray:
    X = X.toarray() if issparse(X) else X
    return np.asarray(X, dtype=np.float64)


@dataclass
class Dataset:
    """
    A collection of cells sharing one feature matrix.

    Args:
        X (np.ndarray): [N, G] feature matrix (cells x features)
        features (Sequence[str]): feature names, length G
        name (str): stable dataset label (e.g. technology or donor)
        cell_names (Sequence[str] | None): cell identifiers, default "<name>_<i>"
        embedding (np.ndarray | None): optional [N, d] precomputed embedding
        obs (pd.DataFrame | None): optional per-cell annotations
    """

    X: np.ndarray
    features: pd.Index
    name: str = "dataset"
    cell_names: pd.Index | None = None
    embedding: np.ndarray | None = None
    obs: pd.DataFrame | None = None

    def __post_init__(self):
        self.X = _dense(self.X)
        assert self.X.ndim == 2, "`X` should be a [cells, features] matrix"

        self.features = pd.Index(self.features).astype(str)
        assert (
            len(self.features) == self.X.shape[1]
        ), f"{len(self.features)} feature names given for {self.X.shape[1]} features"
        assert self.features.is_unique, f"Feature names of '{self.name}' are not unique"

        if self.cell_names is None:
            self.cell_names = pd.Index([f"{self.name}_{i}" for i in range(self.n_cells)])
        self.cell_names = pd.Index(self.cell_names).astype(str)
        assert len(self.cell_names) == self.n_cells, "one cell name per row is expected"

        if self.embedding is not None:
            self.embedding = _dense(self.embedding)
            assert (
                self.embedding.shape[0] == self.n_cells
            ), "`embedding` should have one row per cell"

        if self.obs is None:
            self.obs = pd.DataFrame(index=self.cell_names)
        else:
            self.obs = pd.DataFrame(self.obs).copy()
            assert len(self.obs) == self.n_cells, "`obs` should have one row per cell"
            self.obs.index = self.cell_names

    @property
    def n_cells(self) -> int:
        return self.X.shape[0]

    @property
    def n_features(self) -> int:
        return self.X.shape[1]

    def subset_features(self, features: pd.Index) -> np.ndarray:
        """[N, len(features)] matrix of the given features, which must all be present."""
        return self.X[:, self.features.get_indexer(features)]

    @classmethod
    def from_anndata(
        cls,
        adata: AnnData,
        name: str | None = None,
        layer: str | None = None,
        use_rep: str | None = None,
        obs_keys: Sequence[str] | None = None,
    ) -> "Dataset":
        """
        Build a Dataset from an AnnData object.

        Args:
            adata (AnnData): source object, not modified
            name (str | None): dataset name. Defaults to ``adata.uns["name"]`` or "dataset".
            layer (str | None): ``adata.layers[layer]`` is used instead of ``adata.X``. Defaults to None.
            use_rep (str | None): ``adata.obsm[use_rep]`` is used as the embedding. Defaults to None.
            obs_keys (Sequence[str] | None): which ``adata.obs`` columns to keep. Defaults to all.
        """
        if name is None:
            name = str(adata.uns.get("name", "dataset"))
        X = adata.X if layer is None else adata.layers[layer]
        obs = adata.obs if obs_keys is None else adata.obs[list(obs_keys)]
        return cls(
            X=X,
            features=adata.var_names,
            name=name,
            cell_names=adata.obs_names,
            embedding=None if use_rep is None else adata.obsm[use_rep],
            obs=obs,
        )

    def to_anndata(self) -> AnnData:
        adata = AnnData(
            X=self.X.copy(),
            obs=self.obs.copy(),
            var=pd.DataFrame(index=self.features),
        )
        if self.embedding is not None:
            adata.obsm["X_embedding"] = self.embedding.copy()
        adata.uns["name"] = self.name
        return adata


@dataclass
class AnchorSet:
    """
    Scored anchors between datasets.

    ``anchors`` holds one row per anchor with columns
    ``dataset1, dataset2, cell1, cell2, score``: dataset indices into
    ``dataset_names`` and cell indices into the rows of those datasets.
    For transfer anchors dataset 0 is the reference and dataset 1 the query,
    and ``query_embedding`` keeps the query coordinates used for weighting.
    """

    anchors: pd.DataFrame
    dataset_names: list[str]
    n_cells: list[int]
    params: dict = field(default_factory=dict)
    query_embedding: np.ndarray | None = None
    query_cell_names: pd.Index | None = None

    def __post_init__(self):
        anchors = pd.DataFrame(self.anchors)
        if anchors.empty:
            anchors = pd.DataFrame(columns=ANCHOR_COLUMNS)
        missing = set(ANCHOR_COLUMNS) - set(anchors.columns)
        assert not missing, f"anchors table is missing columns {sorted(missing)}"

        anchors = anchors[ANCHOR_COLUMNS].astype(
            {
                "dataset1": np.int64,
                "dataset2": np.int64,
                "cell1": np.int64,
                "cell2": np.int64,
                "score": np.float64,
            }
        )
        self.anchors = _collapse_duplicates(anchors)
        self.dataset_names = [str(name) for name in self.dataset_names]
        self.n_cells = [int(n) for n in self.n_cells]
        if self.query_cell_names is not None:
            self.query_cell_names = pd.Index(self.query_cell_names).astype(str)

    def __len__(self) -> int:
        return self.anchors.shape[0]

    @property
    def n_datasets(self) -> int:
        return len(self.dataset_names)

    def pair(self, i: int, j: int) -> pd.DataFrame:
        """Anchors between datasets ``i`` and ``j``, oriented so that ``cell1`` is in ``i``."""
        df = self.anchors
        forward = df[(df["dataset1"] == i) & (df["dataset2"] == j)]
        backward = df[(df["dataset1"] == j) & (df["dataset2"] == i)].rename(
            columns={
                "dataset1": "dataset2",
                "dataset2": "dataset1",
                "cell1": "cell2",
                "cell2": "cell1",
            }
        )
        return pd.concat([forward, backward[ANCHOR_COLUMNS]], ignore_index=True)

    def count_matrix(self) -> pd.DataFrame:
        """[n_datasets, n_datasets] symmetric matrix of anchor counts."""
        counts = np.zeros((self.n_datasets, self.n_datasets), dtype=np.int64)
        pairs = self.anchors.groupby(["dataset1", "dataset2"]).size()
        for (i, j), n in pairs.items():
            counts[i, j] += n
            if i != j:
                counts[j, i] += n
        return pd.DataFrame(counts, index=self.dataset_names, columns=self.dataset_names)

    def filter(self, min_score: float) -> "AnchorSet":
        """Anchors with ``score >= min_score``."""
        return replace(
            self,
            anchors=self.anchors[self.anchors["score"] >= min_score].reset_index(drop=True),
        )

    def write(self, path: str | Path) -> None:
        """Write to a directory: anchors.csv, meta.json and (if any) embeddings.npz."""
        path = Path(path)
        path.mkdir(parents=True, exist_ok=True)

        self.anchors.to_csv(path / "anchors.csv", index=False)
        meta = {
            "dataset_names": self.dataset_names,
            "n_cells": self.n_cells,
            # h5ad cannot store None
            "params": {
                key: value
                for key, value in _jsonable(self.params).items()
                if value is not None
            },
            "query_cell_names": None
            if self.query_cell_names is None
            else list(self.query_cell_names),
        }
        with open(path / "meta.json", "w", encoding="utf-8") as meta_file:
            json.dump(meta, meta_file, indent=2)
        if self.query_embedding is not None:
            np.savez(path / "embeddings.npz", query_embedding=self.query_embedding)

        logger.info("Anchor set is saved in %s", path)

    @classmethod
    def read(cls, path: str | Path) -> "AnchorSet":
        path = Path(path)
        anchors = pd.read_csv(path / "anchors.csv")
        with open(path / "meta.json", encoding="utf-8") as meta_file:
            meta = json.load(meta_file)

        query_embedding = None
        if (path / "embeddings.npz").exists():
            with np.load(path / "embeddings.npz") as npz:
                query_embedding = npz["query_embedding"]

        return cls(
            anchors=anchors,
            dataset_names=meta["dataset_names"],
            n_cells=meta["n_cells"],
            params=meta["params"],
            query_embedding=query_embedding,
            query_cell_names=meta["query_cell_names"],
        )


def _collapse_duplicates(anchors: pd.DataFrame) -> pd.DataFrame:
    # the same pair found in different neighborhoods keeps its best score
    if not anchors.duplicated(subset=ANCHOR_COLUMNS[:4]).any():
        return anchors.sort_values(ANCHOR_COLUMNS[:4]).reset_index(drop=True)
    return (
        anchors.groupby(ANCHOR_COLUMNS[:4], as_index=False, sort=True)["score"]
        .max()
        .reset_index(drop=True)
    )


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.generic):
        return value.item()
    return value


@dataclass(frozen=True)
class MergeStep:
    """Pool ``query`` into the fixed ``reference`` group (tuples of dataset indices)."""

    reference: tuple[int, ...]
    query: tuple[int, ...]
    n_anchors: int = 0
    similarity: float = 0.0

    @property
    def datasets(self) -> tuple[int, ...]:
        return tuple(sorted(self.reference + self.query))


@dataclass
class MergeOrder:
    """Ordered merges over ``n_datasets`` leaves."""

    steps: list[MergeStep]
    n_datasets: int

    def __post_init__(self):
        self.steps = [
            step
            if isinstance(step, MergeStep)
            else MergeStep(tuple(step[0]), tuple(step[1]))
            for step in self.steps
        ]
        self.validate()

    def __iter__(self) -> Iterator[MergeStep]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def validate(self) -> None:
        """
        Every dataset is a leaf exactly once and every merge pools two
        groups formed earlier, so that ``n_datasets - 1`` merges leave one group.
        """
        if self.n_datasets == 0:
            assert not self.steps, "no merges are possible without datasets"
            return

        assert len(self.steps) == self.n_datasets - 1, (
            f"{self.n_datasets} datasets need {self.n_datasets - 1} merges, "
            f"got {len(self.steps)}"
        )
        groups = {(i,) for i in range(self.n_datasets)}
        for step in self.steps:
            reference = tuple(sorted(step.reference))
            query = tuple(sorted(step.query))
            assert reference in groups, f"{step.reference} is not a current group"
            assert query in groups, f"{step.query} is not a current group"
            assert not set(reference) & set(query), "merged groups must be disjoint"
            groups -= {reference, query}
            groups.add(tuple(sorted(reference + query)))

    def to_list(self) -> list[list[list[int]]]:
        return [[list(step.reference), list(step.query)] for step in self.steps]

    def to_dict(self) -> dict[str, dict[str, np.ndarray]]:
        """
        Merges keyed by their position, as stored in ``AnnData.uns``
        (ragged nested lists can't be written to h5ad).
        """
        return {
            str(i): {
                "reference": np.array(step.reference, dtype=np.int64),
                "query": np.array(step.query, dtype=np.int64),
                "n_anchors": step.n_anchors,
                "similarity": step.similarity,
            }
            for i, step in enumerate(self.steps)
        }

    @classmethod
    def from_dict(cls, steps: dict, n_datasets: int) -> "MergeOrder":
        return cls(
            [
                MergeStep(
                    reference=tuple(int(i) for i in steps[key]["reference"]),
                    query=tuple(int(i) for i in steps[key]["query"]),
                    n_anchors=int(steps[key].get("n_anchors", 0)),
                    similarity=float(steps[key].get("similarity", 0.0)),
                )
                for key in sorted(steps, key=int)
            ],
            n_datasets,
        )


@dataclass
class ReferenceModel:
    """
    A reference embedding that queries can be projected onto without recomputation.

    Args:
        name (str): reference name
        features (pd.Index): [G] features used by the loadings
        means (np.ndarray): [G] feature means used for scaling
        stds (np.ndarray): [G] feature standard deviations used for scaling
        loadings (np.ndarray): [G, d] feature loadings
        embedding (np.ndarray): [N, d] reference cells coordinates
        cell_names (pd.Index): [N] reference cell names
        obs (pd.DataFrame): per-cell annotations (labels to transfer)
        data (np.ndarray | None): [N, G] scaled reference data, used to filter anchors
        umap_model (Any): fitted nonlinear model (umap-learn ``UMAP`` or openTSNE embedding)
        umap_embedding (np.ndarray | None): [N, 2] reference coordinates of that model
        params (dict): parameters used to build the reference
    """

    name: str
    features: pd.Index
    means: np.ndarray
    stds: np.ndarray
    loadings: np.ndarray
    embedding: np.ndarray
    cell_names: pd.Index
    obs: pd.DataFrame = None
    data: np.ndarray | None = None
    umap_model: Any = None
    umap_embedding: np.ndarray | None = None
    params: dict = field(default_factory=dict)

    def __post_init__(self):
        self.features = pd.Index(self.features).astype(str)
        self.cell_names = pd.Index(self.cell_names).astype(str)
        self.means = np.asarray(self.means, dtype=np.float64)
        self.stds = np.asarray(self.stds, dtype=np.float64)
        self.loadings = np.asarray(self.loadings, dtype=np.float64)
        self.embedding = np.asarray(self.embedding, dtype=np.float64)

        n_features = len(self.features)
        assert self.means.shape == (n_features,), "one mean per feature is expected"
        assert self.stds.shape == (n_features,), "one std per feature is expected"
        assert self.loadings.shape[0] == n_features, "`loadings` should be [features, d]"
        assert (
            self.embedding.shape == (len(self.cell_names), self.loadings.shape[1])
        ), "`embedding` should be [cells, d] with the same d as `loadings`"
        if self.obs is None:
            self.obs = pd.DataFrame(index=self.cell_names)
        if self.data is not None:
            assert self.data.shape == (len(self.cell_names), n_features)

    @property
    def n_cells(self) -> int:
        return self.embedding.shape[0]

    @property
    def n_comps(self) -> int:
        return self.loadings.shape[1]

    @property
    def has_umap(self) -> bool:
        return self.umap_model is not None

    def save(self, path: str | Path) -> None:
        """Pickle the model (including the nonlinear model, if any) to ``path``."""
        with open(path, "wb") as model_file:
            pickle.dump(self, model_file, protocol=pickle.HIGHEST_PROTOCOL)
        logger.info("Reference model is saved in %s", path)

    @classmethod
    def load(cls, path: str | Path) -> "ReferenceModel":
        with open(path, "rb") as model_file:
            model = pickle.load(model_file)
        if not isinstance(model, cls):
            raise TypeError(f"{path} does not contain a {cls.__name__}")
        return model

    def to_anndata(self) -> AnnData:
        """
        Store the reference in AnnData slots: means and stds in ``.var``,
        loadings in ``.varm["PCs"]``, embedding in ``.obsm["X_pca"]``,
        scaled data (if kept) in ``.X`` and params in ``.uns["reference"]``.
        The nonlinear model itself is not stored, only its embedding.
        """
        X = (
            self.data.copy()
            if self.data is not None
            else np.zeros((self.n_cells, len(self.features)))
        )
        adata = AnnData(
            X=X,
            obs=self.obs.copy(),
            var=pd.DataFrame({"mean": self.means, "std": self.stds}, index=self.features),
        )
        adata.varm["PCs"] = self.loadings.copy()
        adata.obsm["X_pca"] = self.embedding.copy()
        if self.umap_embedding is not None:
            adata.obsm["X_umap"] = self.umap_embedding.copy()
        adata.uns["reference"] = {
            "name": self.name,
            "has_data": self.data is not None,
            # h5ad can't store None
            "params": {
                key: value
                for key, value in _jsonable(self.params).items()
                if value is not None
            },
        }
        return adata

    @classmethod
    def from_anndata(cls, adata: AnnData) -> "ReferenceModel":
        assert (
            "reference" in adata.uns
        ), "Reference parameters not found in adata.uns['reference']"
        uns = adata.uns["reference"]
        return cls(
            name=str(uns["name"]),
            features=adata.var_names,
            means=np.array(adata.var["mean"]),
            stds=np.array(adata.var["std"]),
            loadings=np.array(adata.varm["PCs"]),
            embedding=np.array(adata.obsm["X_pca"]),
            cell_names=adata.obs_names,
            obs=adata.obs.copy(),
            data=_dense(adata.X) if bool(uns.get("has_data", False)) else None,
            umap_embedding=np.array(adata.obsm["X_umap"]) if "X_umap" in adata.obsm else None,
            params=dict(uns.get("params", {})),
        )


@dataclass
class ProjectedCoordinates:
    """
    Query cells in the reference coordinate system.

    ``projected`` are the query coordinates in the reference PCA space before
    correction, ``corrected`` after anchor correction and ``umap`` (if
    requested) their image through the reference nonlinear model.
    """

    cell_names: pd.Index
    projected: np.ndarray
    corrected: np.ndarray
    umap: np.ndarray | None = None
    degenerate: np.ndarray | None = None

    def to_frame(self) -> pd.DataFrame:
        frames = [
            pd.DataFrame(
                self.corrected,
                index=self.cell_names,
                columns=[f"corrected_{i + 1}" for i in range(self.corrected.shape[1])],
            )
        ]
        if self.umap is not None:
            frames.append(
                pd.DataFrame(
                    self.umap,
                    index=self.cell_names,
                    columns=[f"umap_{i + 1}" for i in range(self.umap.shape[1])],
                )
            )
        return pd.concat(frames, axis=1)
