import numpy as np
import pandas as pd
import pytest

import scanchor as sa


class TestDataset:
    def test_defaults(self):
        dataset = sa.Dataset(X=np.zeros((3, 2)), features=["a", "b"], name="d")

        assert dataset.cell_names.tolist() == ["d_0", "d_1", "d_2"]
        assert dataset.obs.shape == (3, 0)
        assert dataset.subset_features(pd.Index(["b"])).shape == (3, 1)

    def test_shape_checks(self):
        with pytest.raises(AssertionError):
            sa.Dataset(X=np.zeros((3, 2)), features=["a"])
        with pytest.raises(AssertionError):
            sa.Dataset(X=np.zeros((3, 2)), features=["a", "a"])

    def test_anndata_round_trip(self):
        dataset = sa.datasets.simulated_batches(n_cells=(30,), n_features=10)[0]
        restored = sa.Dataset.from_anndata(dataset.to_anndata())

        assert restored.name == dataset.name
        np.testing.assert_array_equal(restored.X, dataset.X)
        assert restored.features.equals(dataset.features)
        assert restored.obs["group"].tolist() == dataset.obs["group"].tolist()


class TestAnchorSet:
    anchors = pd.DataFrame(
        {
            "dataset1": [0, 0, 0, 1],
            "dataset2": [1, 1, 1, 2],
            "cell1": [0, 0, 3, 2],
            "cell2": [1, 1, 4, 0],
            "score": [0.2, 0.7, 0.5, 1.0],
        }
    )

    def anchor_set(self, **kwargs):
        return sa.AnchorSet(self.anchors, ["a", "b", "c"], [5, 6, 7], **kwargs)

    def test_duplicates_keep_max_score(self):
        anchors = self.anchor_set()

        assert len(anchors) == 3
        assert anchors.anchors["score"].tolist() == [0.7, 0.5, 1.0]

    def test_pair(self):
        pair = self.anchor_set().pair(2, 1)

        assert pair[["cell1", "cell2"]].values.tolist() == [[0, 2]]
        assert pair["dataset1"].tolist() == [2]

    def test_count_matrix(self):
        counts = self.anchor_set().count_matrix()

        assert counts.loc["a", "b"] == counts.loc["b", "a"] == 2
        assert counts.loc["a", "c"] == 0

    def test_filter(self):
        assert len(self.anchor_set().filter(0.6)) == 2

    def test_write_read(self, tmp_path):
        anchors = self.anchor_set(
            params={"k_anchor": 5, "k_filter": None, "reference": [0]},
            query_embedding=np.arange(10.0).reshape(5, 2),
            query_cell_names=[f"q{i}" for i in range(5)],
        )
        anchors.write(tmp_path / "anchors")
        restored = sa.AnchorSet.read(tmp_path / "anchors")

        pd.testing.assert_frame_equal(restored.anchors, anchors.anchors)
        assert restored.dataset_names == anchors.dataset_names
        assert restored.n_cells == anchors.n_cells
        assert restored.params == anchors.params
        np.testing.assert_array_equal(restored.query_embedding, anchors.query_embedding)
        assert restored.query_cell_names.equals(anchors.query_cell_names)


class TestReferenceModel:
    dataset = sa.datasets.simulated_batches(n_cells=(40,), n_features=12)[0]

    def test_save_load(self, tmp_path):
        reference = sa.pp.build_reference(self.dataset, n_comps=4)
        reference.save(tmp_path / "reference.pkl")
        restored = sa.ReferenceModel.load(tmp_path / "reference.pkl")

        np.testing.assert_array_equal(restored.loadings, reference.loadings)
        np.testing.assert_array_equal(restored.embedding, reference.embedding)
        assert restored.params == reference.params

    def test_anndata_round_trip(self):
        reference = sa.pp.build_reference(self.dataset, n_comps=4)
        adata = reference.to_anndata()

        assert adata.varm["PCs"].shape == (12, 4)
        assert adata.uns["reference"]["has_data"]

        restored = sa.ReferenceModel.from_anndata(adata)
        np.testing.assert_array_equal(restored.means, reference.means)
        np.testing.assert_array_equal(restored.stds, reference.stds)
        np.testing.assert_array_equal(restored.data, reference.data)
        assert restored.name == reference.name
        assert not restored.has_umap

    def test_h5ad_round_trip(self, tmp_path):
        import anndata

        reference = sa.pp.build_reference(self.dataset, n_comps=4, max_value=None)
        reference.to_anndata().write_h5ad(tmp_path / "reference.h5ad")
        restored = sa.ReferenceModel.from_anndata(
            anndata.read_h5ad(tmp_path / "reference.h5ad")
        )

        np.testing.assert_allclose(restored.loadings, reference.loadings)
        np.testing.assert_allclose(restored.embedding, reference.embedding)
        np.testing.assert_allclose(restored.data, reference.data)
        assert restored.cell_names.equals(reference.cell_names)
        assert restored.name == reference.name
        assert restored.params["n_comps"] == 4
        assert "max_value" not in restored.params

    def test_load_wrong_object(self, tmp_path):
        import pickle

        with open(tmp_path / "other.pkl", "wb") as f:
            pickle.dump({"not": "a reference"}, f)

        with pytest.raises(TypeError):
            sa.ReferenceModel.load(tmp_path / "other.pkl")


class TestMergeOrder:
    def test_to_list(self):
        order = sa.MergeOrder([[(0,), (1,)], [(0, 1), (2,)]], 3)

        assert order.to_list() == [[[0], [1]], [[0, 1], [2]]]
        assert [step.datasets for step in order] == [(0, 1), (0, 1, 2)]

    def test_dict_round_trip(self):
        order = sa.MergeOrder([[(0,), (1,)], [(0, 1), (2,)], [(3,), (0, 1, 2)]], 4)
        steps = order.to_dict()

        assert list(steps) == ["0", "1", "2"]
        assert steps["2"]["query"].tolist() == [0, 1, 2]

        restored = sa.MergeOrder.from_dict(steps, 4)
        assert restored.to_list() == order.to_list()
