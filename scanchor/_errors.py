# pylint: disable=C0103, C0114, W0511
from __future__ import annotations


class ScanchorError(Exception):
    """Base class for errors raised by scanchor."""


class IncompatibleFeatures(ScanchorError, ValueError):
    """
    Two inputs share no features after intersection.

    Args:
        names (tuple[str, ...]): names of the offending datasets
    """

    def __init__(self, names: tuple[str, ...], message: str | None = None):
        self.names = tuple(names)
        if message is None:
            listed = ", ".join(f"'{name}'" for name in self.names)
            message = f"Datasets {listed} do not share any features"
        super().__init__(message)


class InsufficientCells(ScanchorError, ValueError):
    """
    A dataset has fewer cells than the requested number of dimensions or neighbors.

    Args:
        name (str): dataset name
        n_cells (int): number of cells in the dataset
        requested (int): requested size
        parameter (str): which parameter asked for it (e.g. ``k_filter``)
    """

    def __init__(self, name: str, n_cells: int, requested: int, parameter: str):
        self.name = name
        self.n_cells = n_cells
        self.requested = requested
        self.parameter = parameter
        super().__init__(
            f"Dataset '{name}' has {n_cells} cells, "
            f"but `{parameter}`={requested} requires at least {requested}"
        )


class NoAnchorsFound(ScanchorError, RuntimeError):
    """
    Two groups of datasets that have to be merged share no anchors.

    Args:
        groups (list[tuple[list[str], int]]): dataset names and total cell count
            of each disconnected group
    """

    def __init__(self, groups):
        self.groups = list(groups)
        described = "; ".join(
            f"[{', '.join(names)}] ({n_cells} cells)" for names, n_cells in self.groups
        )
        super().__init__(
            f"No anchors found between dataset groups: {described}. "
            "The dataset graph is disconnected"
        )


class NoReferenceModel(ScanchorError, RuntimeError):
    """Nonlinear projection was requested but the reference carries no fitted model."""


class DegenerateNeighborhood(UserWarning):
    """Some cells have no usable anchors and keep identity correction / unknown labels."""
