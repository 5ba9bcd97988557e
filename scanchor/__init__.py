"""
Anchor-based integration algorithm:

1. Anchor finding (for every pair of datasets):
    - intersection of the features of both datasets
    - standardization of every feature within each dataset
    - joint embedding of the two datasets (by default, d=30):
        canonical correlation analysis (SVD of X1 @ X2.T)
        or projection of the second dataset onto the PCA of the first one,
        followed by L2 normalization of the cell embeddings
    - mutual nearest neighbors (k_anchor=5) across the datasets become anchors
    - anchors which are not neighbors in the space of the top-loading features
        (k_filter=200) are filtered out
    - anchors are scored by the consistency of the neighborhoods
        of their two cells (k_score=30), score is in [0, 1]

2. Merge order
    - greedy agglomeration: two groups of datasets with the most anchors
        relatively to the size of the smaller group are merged first,
        the larger group stays fixed

3. Integration (for every merge)
    - correction vector of every anchor: value of the reference cell
        minus value of the query cell
    - for every query cell, weights of its k_weight=100 nearest anchors:
        distance-based weight times the anchor score, Gaussian-like kernel
        with the sd_weight bandwidth, normalized to sum 1
    - weighted sum of the correction vectors is added to the cell

4. Reference mapping
    - reference: scaling of the features (saving μ and σ for each feature),
        PCA (saving the loadings), optional UMAP model
    - query is scaled by the reference μ and σ and projected onto the reference PCA
    - transfer anchors between the reference and the projected query, as in 1.
    - correction of the query coordinates only, as in 3.
    - optional projection of the corrected coordinates through the reference UMAP model

5. Label transfer
    Weighted vote of the reference labels of the nearest anchors,
    per-label scores sum to 1 for every query cell
"""

from . import preprocessing as pp
from . import tools as tl
from . import datasets

from ._errors import (
    DegenerateNeighborhood,
    IncompatibleFeatures,
    InsufficientCells,
    NoAnchorsFound,
    NoReferenceModel,
    ScanchorError,
)
from ._types import (
    AnchorSet,
    Dataset,
    MergeOrder,
    MergeStep,
    ProjectedCoordinates,
    ReferenceModel,
)
