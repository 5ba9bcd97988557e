import numpy as np
import pandas as pd
import pytest

import scanchor as sa
from scanchor._neighbors import find_neighbors, knn
from scanchor._utils import (
    _apply_score_policy,
    _find_mnn,
    _plan_merges,
    _score_consistency,
    _top_dim_features,
)


class TestNeighbors:
    @staticmethod
    def exact_knn(data, query, k):
        D = np.linalg.norm(query[:, np.newaxis, :] - data[np.newaxis], axis=2)
        return np.argsort(D, axis=1, kind="stable")[:, :k]

    def test_ties_go_to_lowest_index(self):
        data = np.array([[1.0], [-1.0], [1.0], [0.0]])
        idx, dist = knn(data, np.array([[0.0]]), k=3)

        assert idx.tolist() == [[3, 0, 1]]
        assert dist.tolist() == [[0.0, 1.0, 1.0]]

    def test_self_is_excluded(self):
        data = np.array([[0.0], [0.0], [5.0]])
        idx, _ = knn(data, k=1)

        assert idx[:, 0].tolist() == [1, 0, 0]

    def test_blocks_match_single_pass(self):
        rng = np.random.default_rng(0)
        data = rng.normal(size=(50, 4))
        query = rng.normal(size=(37, 4))

        idx_blocks, _ = knn(data, query, k=5, block_size=8)
        assert (idx_blocks == self.exact_knn(data, query, 5)).all()

    def test_too_many_neighbors(self):
        with pytest.raises(AssertionError):
            knn(np.zeros((3, 2)), k=3)

    def test_unknown_method(self):
        with pytest.raises(ValueError):
            knn(np.zeros((3, 2)), k=1, method="annoy")

    def test_approx_backend(self):
        rng = np.random.default_rng(1)
        data = rng.normal(size=(200, 5))
        query = rng.normal(size=(60, 5))

        idx, dist = knn(data, query, k=10, method="approx")
        exact = self.exact_knn(data, query, 10)

        # distances of the returned neighbors are exact and sorted
        true_dist = np.linalg.norm(query[:, np.newaxis, :] - data[idx], axis=2)
        np.testing.assert_allclose(dist, true_dist)
        assert (np.diff(dist, axis=1) >= 0).all()

        overlap = np.mean([len(set(a) & set(b)) / 10 for a, b in zip(idx, exact)])
        assert overlap > 0.9

    def test_approx_excludes_self(self):
        rng = np.random.default_rng(2)
        data = rng.normal(size=(100, 3))

        idx, _ = knn(data, k=5, method="approx")
        assert not (idx == np.arange(100)[:, np.newaxis]).any()


class TestMutualNeighbors:
    def test_mutuality(self):
        rng = np.random.default_rng(0)
        emb1 = rng.normal(size=(40, 3))
        emb2 = rng.normal(size=(30, 3))
        k = 4

        _, G12, G21, _ = find_neighbors(emb1, emb2, k=k)
        anchors = _find_mnn(G12, G21, k)

        assert anchors.shape[0] > 0
        for a, b in anchors:
            assert b in G12[a, :k]
            assert a in G21[b, :k]

        # every mutual pair is found
        expected = {
            (a, b) for a in range(40) for b in G12[a, :k] if a in G21[b, :k]
        }
        assert set(map(tuple, anchors.tolist())) == expected

    def test_identical_datasets(self):
        emb = np.arange(10, dtype=float)[:, np.newaxis]
        _, G12, G21, _ = find_neighbors(emb, emb, k=1)
        anchors = _find_mnn(G12, G21, 1)

        assert anchors.tolist() == [[i, i] for i in range(10)]


class TestScoring:
    def test_consistency_bounds(self):
        rng = np.random.default_rng(3)
        emb1 = rng.normal(size=(50, 3))
        emb2 = emb1[:40] + rng.normal(scale=0.05, size=(40, 3))

        G11, G12, G21, G22 = find_neighbors(emb1, emb2, k=10)
        anchors = _find_mnn(G12, G21, 5)
        scores = _score_consistency(anchors, G11, G22, 10)

        assert scores.shape == (anchors.shape[0],)
        assert ((scores >= 0) & (scores <= 1)).all()
        # matched neighborhoods agree
        assert scores.mean() > 0.4

    def test_no_anchors(self):
        G = np.zeros((5, 2), dtype=int)
        assert _score_consistency(np.zeros((0, 2), dtype=int), G, G, 2).shape == (0,)

    def test_floor_is_monotonic(self):
        rng = np.random.default_rng(4)
        anchors = pd.DataFrame(
            {
                "cell1": rng.integers(0, 10, 60),
                "cell2": rng.integers(0, 10, 60),
                "score": rng.uniform(size=60),
            }
        ).drop_duplicates(["cell1", "cell2"])

        kept = {}
        for floor in (0.0, 0.3, 0.6):
            df = _apply_score_policy(anchors, min_score=floor, max_anchors_per_cell=3)
            kept[floor] = set(zip(df["cell1"], df["cell2"]))
            assert (df["score"] >= floor).all()
            assert df["cell1"].value_counts().max() <= 3
            assert df["cell2"].value_counts().max() <= 3

        assert kept[0.6] <= kept[0.3] <= kept[0.0]

    def test_top_dim_features(self):
        loadings = np.array([[3.0, 0.0], [-2.0, 0.1], [0.0, 5.0], [0.5, -4.0], [0.1, 0.2]])

        assert _top_dim_features(loadings, 10).tolist() == [0, 1, 2, 3, 4]
        assert _top_dim_features(loadings, 4).tolist() == [0, 1, 2, 3]


class TestFindAnchors:
    datasets = sa.datasets.simulated_batches(n_cells=(100, 80, 90), random_state=0)
    kwargs = dict(k_filter=50, dims=2, k_anchor=5, k_score=30)

    def test_scores_and_mutuality(self):
        anchors, order = sa.tl.find_anchors(self.datasets[:2], **self.kwargs)

        assert len(anchors) > 0
        assert anchors.anchors["score"].between(0, 1).all()
        assert not anchors.anchors.duplicated(["dataset1", "dataset2", "cell1", "cell2"]).any()
        assert anchors.params["k_filter"] == 50
        assert len(order) == 1

        # anchors connect cells of the same planted group
        pair = anchors.pair(0, 1)
        groups1 = self.datasets[0].obs["group"].to_numpy()[pair["cell1"]]
        groups2 = self.datasets[1].obs["group"].to_numpy()[pair["cell2"]]
        assert (groups1 == groups2).mean() > 0.95

    def test_floor_is_monotonic(self):
        low, _ = sa.tl.find_anchors(self.datasets[:2], min_score=0.0, **self.kwargs)
        high, _ = sa.tl.find_anchors(self.datasets[:2], min_score=0.3, **self.kwargs)

        def cells(anchors):
            return set(zip(anchors.anchors["cell1"], anchors.anchors["cell2"]))

        assert cells(high) <= cells(low)
        assert (high.anchors["score"] >= 0.3).all()

    def test_merge_order(self):
        anchors, order = sa.tl.find_anchors(self.datasets, **self.kwargs)

        assert len(order) == len(self.datasets) - 1
        order.validate()
        leaves = sorted(order.steps[-1].datasets)
        assert leaves == [0, 1, 2]

        counts = anchors.count_matrix()
        assert (counts.to_numpy() == counts.to_numpy().T).all()
        assert counts.index.tolist() == ["batch_0", "batch_1", "batch_2"]

    def test_reference_stays_fixed(self):
        _, order = sa.tl.find_anchors(self.datasets, reference=[1], **self.kwargs)

        for step in order:
            assert 1 not in step.query

    def test_single_dataset(self):
        anchors, order = sa.tl.find_anchors(self.datasets[:1], **self.kwargs)

        assert len(anchors) == 0
        assert len(order) == 0

    def test_disconnected_datasets(self):
        with pytest.raises(sa.NoAnchorsFound) as exc_info:
            sa.tl.find_anchors(self.datasets, pairs=[(0, 1)], **self.kwargs)

        groups = exc_info.value.groups
        assert (["batch_2"], 90) in groups
        assert (["batch_0", "batch_1"], 180) in groups

    def test_k_filter_boundary(self):
        sa.tl.find_anchors(self.datasets[:2], k_filter=80, dims=2)

        with pytest.raises(sa.InsufficientCells) as exc_info:
            sa.tl.find_anchors(self.datasets[:2], k_filter=81, dims=2)

        assert exc_info.value.name == "batch_1"
        assert exc_info.value.n_cells == 80
        assert exc_info.value.parameter == "k_filter"

    def test_dims_boundary(self):
        with pytest.raises(sa.InsufficientCells):
            sa.tl.find_anchors(self.datasets[:2], k_filter=None, dims=81)

    def test_incompatible_features(self):
        other = sa.Dataset(
            X=np.ones((20, 3)), features=["a", "b", "c"], name="other"
        )
        with pytest.raises(sa.IncompatibleFeatures) as exc_info:
            sa.tl.find_anchors([self.datasets[0], other], **self.kwargs)

        assert exc_info.value.names == ("batch_0", "other")

    def test_parallel_pairs(self):
        serial, serial_order = sa.tl.find_anchors(self.datasets, n_jobs=1, **self.kwargs)
        parallel, parallel_order = sa.tl.find_anchors(self.datasets, n_jobs=2, **self.kwargs)

        pd.testing.assert_frame_equal(parallel.anchors, serial.anchors)
        assert parallel_order.to_list() == serial_order.to_list()

    def test_approx_neighbors(self):
        exact, _ = sa.tl.find_anchors(self.datasets[:2], **self.kwargs)
        approx, _ = sa.tl.find_anchors(self.datasets[:2], nn_method="approx", **self.kwargs)

        assert approx.anchors["score"].between(0, 1).all()
        pairs = ["dataset1", "dataset2", "cell1", "cell2"]
        shared = exact.anchors[pairs].merge(approx.anchors[pairs])
        assert len(shared) >= 0.9 * len(exact)
        assert len(shared) >= 0.9 * len(approx)

    def test_project_reduction(self):
        anchors, _ = sa.tl.find_anchors(
            self.datasets[:2], reduction="project", **self.kwargs
        )
        assert len(anchors) > 0
        assert anchors.params["reduction"] == "project"

    def test_snn_score(self):
        anchors, _ = sa.tl.find_anchors(
            self.datasets[:2], score_method="snn", **self.kwargs
        )
        assert anchors.anchors["score"].between(0, 1).all()


class TestPlanMerges:
    def test_ratio_and_ties(self):
        counts = np.array([[0, 10, 0], [10, 0, 10], [0, 10, 0]])
        steps = _plan_merges(counts, [100, 100, 100], ["a", "b", "c"])

        # equal similarity: the lowest group ids go first
        assert (steps[0].reference, steps[0].query) == ((0,), (1,))
        assert (steps[1].reference, steps[1].query) == ((0, 1), (2,))
        assert steps[1].n_anchors == 10

    def test_larger_group_is_fixed(self):
        counts = np.array([[0, 5], [5, 0]])
        steps = _plan_merges(counts, [10, 50], ["small", "large"])

        assert steps[0].reference == (1,)

    def test_count_similarity(self):
        counts = np.array([[0, 30, 0], [30, 0, 20], [0, 20, 0]])
        ratio = _plan_merges(counts, [1000, 1000, 10], ["a", "b", "c"])
        count = _plan_merges(counts, [1000, 1000, 10], ["a", "b", "c"], similarity="count")

        assert ratio[0].datasets == (1, 2)
        assert count[0].datasets == (0, 1)

    def test_disconnected(self):
        counts = np.zeros((2, 2), dtype=int)
        with pytest.raises(sa.NoAnchorsFound):
            _plan_merges(counts, [10, 10], ["a", "b"])

    def test_invalid_order(self):
        with pytest.raises(AssertionError):
            sa.MergeOrder([[(0,), (0,)]], 2)
        with pytest.raises(AssertionError):
            sa.MergeOrder([[(0,), (1,)]], 3)
