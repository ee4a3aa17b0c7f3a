from __future__ import annotations

import numpy as np
import pytest
from sklearn.exceptions import NotFittedError

from tie_neighbors import KernelWeightedKNN, UniformVoteKNN, optimal_weights


X_LINE = np.array([[0.0], [1.0], [3.0]])
Y_LINE = np.array(["A", "B", "B"])


class TestUniformVote:
    def test_split_vote_is_flagged_as_tie(self) -> None:
        model = UniformVoteKNN(n_neighbors=2, random_state=0).fit(X_LINE, Y_LINE)
        vote = model.vote([[0.4]])

        assert vote.tied.tolist() == [True]
        assert vote.vote_share.tolist() == [0.5]
        assert vote.labels[0] in {"A", "B"}
        assert sorted(vote.neighbors[0].tolist()) == [0, 1]

    def test_tied_vote_is_a_coin_flip(self) -> None:
        calls = {
            UniformVoteKNN(n_neighbors=2, random_state=seed).fit(X_LINE, Y_LINE).predict([[0.4]])[0]
            for seed in range(50)
        }
        assert calls == {"A", "B"}

    def test_same_seed_reproduces_tie_breaks(self) -> None:
        queries = np.full((20, 1), 0.4)
        first = UniformVoteKNN(n_neighbors=2, random_state=7).fit(X_LINE, Y_LINE).predict(queries)
        second = UniformVoteKNN(n_neighbors=2, random_state=7).fit(X_LINE, Y_LINE).predict(queries)
        assert np.array_equal(first, second)

    def test_clear_majority_is_not_tied(self) -> None:
        model = UniformVoteKNN(n_neighbors=2, random_state=0).fit(X_LINE, Y_LINE)
        vote = model.vote([[2.5]])

        assert vote.labels.tolist() == ["B"]
        assert vote.tied.tolist() == [False]
        assert vote.vote_share.tolist() == [1.0]

    def test_use_all_includes_points_tied_with_kth_distance(self) -> None:
        X = np.array([[0.0], [2.0], [-2.0], [5.0]])
        y = np.array(["A", "B", "B", "A"])

        vote = UniformVoteKNN(n_neighbors=2, use_all=True, random_state=0).fit(X, y).vote([[0.0]])
        assert len(vote.neighbors[0]) == 3
        assert vote.labels.tolist() == ["B"]
        assert vote.tied.tolist() == [False]
        assert vote.vote_share[0] == pytest.approx(2 / 3)

        vote = UniformVoteKNN(n_neighbors=2, use_all=False, random_state=0).fit(X, y).vote([[0.0]])
        assert vote.neighbors[0].tolist() == [0, 1]
        assert vote.tied.tolist() == [True]

    def test_predict_proba_rows_sum_to_one(self) -> None:
        model = UniformVoteKNN(n_neighbors=2, random_state=0).fit(X_LINE, Y_LINE)
        proba = model.predict_proba([[0.4], [2.5], [-1.0]])
        assert proba.shape == (3, 2)
        assert np.allclose(proba.sum(axis=1), 1.0)

    @pytest.mark.parametrize("k", [0, -1, 2.0, True])
    def test_invalid_k_raises(self, k) -> None:
        with pytest.raises(ValueError, match="n_neighbors must be a positive integer"):
            UniformVoteKNN(n_neighbors=k).fit(X_LINE, Y_LINE)

    def test_k_larger_than_training_set_raises(self) -> None:
        with pytest.raises(ValueError, match="exceeds"):
            UniformVoteKNN(n_neighbors=4).fit(X_LINE, Y_LINE)

    def test_predict_before_fit_raises(self) -> None:
        with pytest.raises(NotFittedError):
            UniformVoteKNN().predict([[0.0]])


class TestKernelWeighted:
    def test_optimal_weights_for_two_neighbors_in_two_dimensions(self) -> None:
        assert np.allclose(optimal_weights(2, 2), [0.75, 0.25])

    @pytest.mark.parametrize("k,d", [(1, 1), (2, 2), (5, 3), (10, 6)])
    def test_optimal_weights_sum_to_one(self, k: int, d: int) -> None:
        weights = optimal_weights(k, d)
        assert weights.sum() == pytest.approx(1.0)
        assert np.all(np.diff(weights) < 0)

    def test_optimal_kernel_breaks_split_vote_toward_nearest(self) -> None:
        model = KernelWeightedKNN(n_neighbors=2).fit(X_LINE, Y_LINE)
        proba = model.predict_proba([[0.4]])

        assert model.predict([[0.4]]).tolist() == ["A"]
        # one feature, so d=1 and the weights are [0.6875, 0.3125]
        assert proba[0, 0] == pytest.approx(0.6875)

    def test_triangular_kernel_uses_scaled_distances(self) -> None:
        model = KernelWeightedKNN(n_neighbors=2, kernel="triangular").fit(X_LINE, Y_LINE)
        w_a, w_b = 1 - 0.4 / 2.6, 1 - 0.6 / 2.6

        proba = model.predict_proba([[0.4]])
        assert proba[0, 0] == pytest.approx(w_a / (w_a + w_b))

    def test_rectangular_tie_goes_to_first_class(self) -> None:
        model = KernelWeightedKNN(n_neighbors=2, kernel="rectangular").fit(X_LINE, Y_LINE)
        proba = model.predict_proba([[0.4]])

        assert np.allclose(proba, [[0.5, 0.5]])
        assert model.predict([[0.4]]).tolist() == ["A"]

    def test_predictions_are_deterministic(self) -> None:
        rng = np.random.default_rng(3)
        X = rng.random((40, 2))
        y = np.where(rng.random(40) < 0.5, "Abnormal", "Normal")
        queries = rng.random((15, 2))

        first = KernelWeightedKNN(n_neighbors=2).fit(X, y).predict(queries)
        second = KernelWeightedKNN(n_neighbors=2).fit(X, y).predict(queries)
        assert np.array_equal(first, second)

    @pytest.mark.parametrize(
        "kernel",
        ["rectangular", "triangular", "epanechnikov", "biweight", "triweight",
         "cos", "inv", "gaussian", "rank", "optimal"],
    )
    def test_every_kernel_yields_probabilities(self, kernel: str) -> None:
        rng = np.random.default_rng(11)
        X = rng.random((30, 2))
        y = np.where(X[:, 0] > 0.5, "Abnormal", "Normal")

        proba = KernelWeightedKNN(n_neighbors=3, kernel=kernel).fit(X, y).predict_proba(rng.random((10, 2)))
        assert proba.shape == (10, 2)
        assert np.all(proba >= 0)
        assert np.allclose(proba.sum(axis=1), 1.0)

    def test_kneighbors_returns_k_voters(self) -> None:
        model = KernelWeightedKNN(n_neighbors=2).fit(X_LINE, Y_LINE)
        distances, indices = model.kneighbors([[0.4]])

        assert indices.tolist() == [[0, 1]]
        assert np.allclose(distances, [[0.4, 0.6]])

    def test_unknown_kernel_raises(self) -> None:
        with pytest.raises(ValueError, match="Unknown kernel"):
            KernelWeightedKNN(kernel="parabolic").fit(X_LINE, Y_LINE)

    def test_needs_one_more_sample_than_k(self) -> None:
        with pytest.raises(ValueError, match="needs at least"):
            KernelWeightedKNN(n_neighbors=3).fit(X_LINE, Y_LINE)
