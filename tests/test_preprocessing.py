import numpy as np
import pytest

import scanchor as sa


class TestPreprocessing:
    datasets = sa.datasets.simulated_batches(n_cells=(60, 40), n_features=20, random_state=3)

    @staticmethod
    def assert_equals(f, s, threshold=1e-7):
        assert (abs(f - s) < threshold).all()

    def test_scale(self):
        X = self.datasets[0].X.copy()
        X[:, 0] = 1.0
        scaled, means, stds = sa.pp.scale(X, max_value=None)

        self.assert_equals(scaled[:, 1:].mean(0), 0)
        self.assert_equals(scaled[:, 1:].std(0, ddof=1), 1)
        # constant features are masked
        assert (scaled[:, 0] == 0).all()
        assert stds[0] == 0
        self.assert_equals(means, X.mean(0))

        clipped, _, _ = sa.pp.scale(X, max_value=0.5)
        assert np.abs(clipped).max() <= 0.5

    def test_reduce(self):
        scaled, _, _ = sa.pp.scale(self.datasets[0].X)
        embedding, loadings = sa.pp.reduce(scaled, 5)

        assert embedding.shape == (60, 5)
        assert loadings.shape == (20, 5)
        self.assert_equals(loadings.T @ loadings, np.eye(5), threshold=1e-6)

        # deterministic for a fixed seed
        embedding2, _ = sa.pp.reduce(scaled, 5)
        self.assert_equals(embedding, embedding2)

    def test_reduce_insufficient_cells(self):
        with pytest.raises(sa.InsufficientCells) as exc_info:
            sa.pp.reduce(np.ones((5, 20)), 5, name="tiny")

        assert exc_info.value.name == "tiny"
        assert exc_info.value.n_cells == 5

    def test_build_reference(self):
        reference = sa.pp.build_reference(self.datasets[0], n_comps=5)

        assert reference.name == "batch_0"
        assert reference.n_cells == 60
        assert reference.n_comps == 5
        assert reference.obs.columns.tolist() == ["group"]
        assert reference.data.shape == (60, 20)
        assert not reference.has_umap
        assert reference.params["n_comps"] == 5

        # the reference projects onto itself
        self.assert_equals(reference.data @ reference.loadings, reference.embedding)

    def test_build_reference_from_anndata(self):
        adata = self.datasets[1].to_anndata()
        reference = sa.pp.build_reference(
            adata, n_comps=5, name="from_adata", store_data=False
        )

        assert reference.name == "from_adata"
        assert reference.data is None
        assert reference.cell_names.equals(adata.obs_names)

    def test_fit_umap(self):
        reference = sa.pp.build_reference(self.datasets[0], n_comps=5)
        fitted = sa.pp.fit_umap(reference, n_neighbors=10)

        assert not reference.has_umap
        assert fitted.has_umap
        assert fitted.umap_embedding.shape == (60, 2)
        assert fitted.params["nonlinear_model"]["n_neighbors"] == 10

    def test_fit_umap_method(self):
        reference = sa.pp.build_reference(self.datasets[0], n_comps=5)

        with pytest.raises(ValueError):
            sa.pp.fit_umap(reference, method="pca")
