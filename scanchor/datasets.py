from __future__ import annotations

from typing import Sequence

import numpy as np
import pandas as pd

from ._types import Dataset


def simulated_batches(
    n_cells: Sequence[int] = (100, 80),
    n_features: int = 50,
    n_groups: int = 3,
    group_scale: float = 6.0,
    batch_scale: float = 2.0,
    noise: float = 1.0,
    random_state: int = 0,
) -> list[Dataset]:
    """
    Datasets of cells from the same groups, measured with a batch effect.

    Every group has a center shared by all the datasets, every dataset adds
    its own offset to all of its cells, and cells get gaussian noise.
    Groups are assigned round-robin so that each dataset has all of them.

    Args:
        n_cells (Sequence[int], optional): number of cells of every dataset. Defaults to (100, 80).
        n_features (int, optional): number of features. Defaults to 50.
        n_groups (int, optional): number of planted groups. Defaults to 3.
        group_scale (float, optional): spread of the group centers. Defaults to 6.
        batch_scale (float, optional): spread of the batch offsets. Defaults to 2.
        noise (float, optional): std of the per-cell noise. Defaults to 1.
        random_state (int, optional): random seed. Defaults to 0.

    Returns:
        list[Dataset]: datasets named "batch_<i>" with planted labels in ``obs["group"]``
    """
    rng = np.random.default_rng(random_state)
    features = [f"feature_{g}" for g in range(n_features)]
    # [n_groups, G]
    centers = rng.normal(scale=group_scale, size=(n_groups, n_features))

    datasets = []
    for i, n in enumerate(n_cells):
        # [G]
        offset = rng.normal(scale=batch_scale, size=n_features)
        groups = np.arange(n) % n_groups
        X = centers[groups] + offset + rng.normal(scale=noise, size=(n, n_features))

        name = f"batch_{i}"
        datasets.append(
            Dataset(
                X=X,
                features=features,
                name=name,
                obs=pd.DataFrame(
                    {"group": pd.Categorical([f"group_{g}" for g in groups])},
                    index=[f"{name}_{c}" for c in range(n)],
                ),
            )
        )
    return datasets
