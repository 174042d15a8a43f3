"""Tests for parameter expressions and sampling strategies."""

import numpy as np
import pytest

from mlstudio.exceptions import SweepConfigurationError
from mlstudio.tuning.parameter_expressions import (
    choice,
    lognormal,
    loguniform,
    normal,
    qnormal,
    quniform,
    randint,
    uniform,
)
from mlstudio.tuning.sampling import (
    BayesianParameterSampling,
    GridParameterSampling,
    RandomParameterSampling,
)


def drain(sampler, limit=100):
    """Collect suggestions until the sampler is exhausted."""
    suggestions = []
    for _ in range(limit):
        suggestion = sampler.suggest()
        if suggestion is None:
            break
        suggestions.append(suggestion)
    return suggestions


class TestParameterExpressions:
    """Test construction and sampling of expressions."""

    def test_choice_accepts_varargs_or_list(self):
        assert choice(1, 2, 3) == choice([1, 2, 3])
        assert choice(range(3)).options() == [0, 1, 2]

    def test_choice_needs_options(self):
        with pytest.raises(SweepConfigurationError):
            choice()

    def test_randint(self):
        expression = randint(4)

        assert expression.is_discrete
        assert expression.options() == [0, 1, 2, 3]
        with pytest.raises(SweepConfigurationError):
            randint(0)

    @pytest.mark.parametrize("factory", [
        lambda: uniform(1, 1),
        lambda: quniform(5, 1, 1),
        lambda: quniform(0, 1, 0),
        lambda: loguniform(2, 1),
        lambda: normal(0, 0),
        lambda: qnormal(0, 1, -1),
        lambda: lognormal(0, -1),
    ])
    def test_invalid_arguments(self, factory):
        with pytest.raises(SweepConfigurationError):
            factory()

    def test_continuous_expression_has_no_options(self):
        with pytest.raises(SweepConfigurationError):
            uniform(0, 1).options()

    def test_samples_stay_in_range(self):
        rng = np.random.default_rng(0)

        for _ in range(50):
            assert 0.5 <= uniform(0.5, 1.5).sample(rng) <= 1.5
            assert 0 <= randint(3).sample(rng) < 3
            assert np.exp(-2) <= loguniform(-2, 0).sample(rng) <= 1.0
            assert lognormal(0, 1).sample(rng) > 0

    def test_quniform_is_quantized(self):
        rng = np.random.default_rng(1)

        for _ in range(20):
            value = quniform(0, 10, 2.5).sample(rng)
            assert value in {0.0, 2.5, 5.0, 7.5, 10.0}

    def test_to_dict(self):
        assert quniform(0, 1, 0.1).to_dict() == {"kind": "quniform", "args": [0, 1, 0.1]}


class TestSamplingValidation:
    """Test parameter space validation."""

    def test_empty_space(self):
        with pytest.raises(SweepConfigurationError):
            RandomParameterSampling({})

    def test_values_must_be_expressions(self):
        with pytest.raises(SweepConfigurationError):
            RandomParameterSampling({"--lr": 0.1})

    def test_grid_supports_choice_only(self):
        with pytest.raises(SweepConfigurationError):
            GridParameterSampling({"--lr": uniform(0, 1)})

    def test_bayesian_rejects_unsupported_kinds(self):
        with pytest.raises(SweepConfigurationError):
            BayesianParameterSampling({"--lr": loguniform(-5, 0)})


class TestGridSampling:
    """Test exhaustive enumeration."""

    def test_enumerates_product_in_order(self):
        sampling = GridParameterSampling({"a": choice(1, 2), "b": choice("x", "y", "z")})

        suggestions = drain(sampling.sampler(maximize=True))

        assert sampling.space_size == 6
        assert [params for _, params in suggestions] == [
            {"a": 1, "b": "x"}, {"a": 1, "b": "y"}, {"a": 1, "b": "z"},
            {"a": 2, "b": "x"}, {"a": 2, "b": "y"}, {"a": 2, "b": "z"},
        ]

    def test_observe_is_ignored(self):
        sampler = GridParameterSampling({"a": choice(1)}).sampler(maximize=False)
        token, _ = sampler.suggest()

        sampler.observe(token, 0.5)

        assert sampler.suggest() is None


class TestRandomSampling:
    """Test random draws."""

    def test_discrete_space_is_exhausted_without_repeats(self):
        sampling = RandomParameterSampling({"a": choice(1, 2, 3), "b": randint(2)}, seed=7)

        suggestions = drain(sampling.sampler(maximize=True))

        assigned = [tuple(sorted(params.items())) for _, params in suggestions]
        assert len(assigned) == 6
        assert len(set(assigned)) == 6

    def test_seed_makes_draws_reproducible(self):
        space = {"lr": uniform(0.01, 0.1), "depth": choice(2, 4, 8)}

        first = drain(RandomParameterSampling(space, seed=3).sampler(True), limit=5)
        second = drain(RandomParameterSampling(space, seed=3).sampler(True), limit=5)

        assert [p for _, p in first] == [p for _, p in second]

    def test_to_dict_includes_seed(self):
        data = RandomParameterSampling({"a": choice(1)}, seed=11).to_dict()

        assert data["sampling"] == "random"
        assert data["seed"] == 11
        assert data["parameter_space"] == {"a": {"kind": "choice", "args": [1]}}


class TestBayesianSampling:
    """Test the TPE-backed sampler."""

    def test_suggestions_follow_the_space(self):
        sampling = BayesianParameterSampling(
            {"lr": uniform(0.01, 0.1), "batch": choice(16, 32), "alpha": quniform(0, 1, 0.25)},
            seed=0,
        )
        sampler = sampling.sampler(maximize=True)

        for _ in range(5):
            trial, params = sampler.suggest()
            assert 0.01 <= params["lr"] <= 0.1
            assert params["batch"] in (16, 32)
            assert params["alpha"] in (0.0, 0.25, 0.5, 0.75, 1.0)
            sampler.observe(trial, params["lr"])

    def test_failed_trials_are_reported(self):
        sampler = BayesianParameterSampling({"lr": uniform(0, 1)}, seed=0).sampler(maximize=False)
        trial, _ = sampler.suggest()

        sampler.observe(trial, None)

        assert sampler.suggest() is not None
