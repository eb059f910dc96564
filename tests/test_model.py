"""Tests for the RBM engine: sampling, derivatives, updates and metrics."""
import math

import pytest
import torch

from rbmkit.common import RandomSource
from rbmkit.rbm import RBM


def make_model(columns=(6, 3), seed=0, **kwargs) -> RBM:
    model = RBM(columns, seed=seed, **kwargs)
    model.randomize()
    return model


def set_parameters(model: RBM, weights, bias_h, bias_v):
    with torch.no_grad():
        model.weights.copy_(torch.as_tensor(weights, dtype=model.dtype))
        model.bias_h.copy_(torch.as_tensor(bias_h, dtype=model.dtype))
        model.bias_v.copy_(torch.as_tensor(bias_v, dtype=model.dtype))


class TestConstruction:
    def test_geometry(self):
        model = RBM([5, 2])
        assert model.weights_geometry == (2, 5)
        assert model.biases_geometry == ((2,), (5,))
        assert model.visible_units.shape == (5,)
        assert model.hidden_units.shape == (2,)
        assert model.hidden_p.shape == (2,)
        assert model.visible_p.shape == (5,)
        assert model.derivative_weights.shape == (2, 5)
        assert model.cross_entropy.shape == (5,)
        assert model.n_errors == 0

    def test_too_few_columns_raise(self):
        with pytest.raises(ValueError, match="at least two columns"):
            RBM([4])

    def test_non_positive_columns_raise(self):
        with pytest.raises(ValueError, match="positive"):
            RBM([4, 0])

    def test_seed_and_source_are_exclusive(self):
        with pytest.raises(ValueError, match="either"):
            RBM([4, 2], seed=1, random_source=RandomSource(1))

    def test_extra_columns_are_kept_but_unused(self):
        model = RBM([4, 3, 2])
        assert model.columns == (4, 3, 2)
        assert model.weights.shape == (3, 4)

    def test_training_rate_is_configurable(self):
        assert RBM([2, 2]).training_rate == 0.1
        assert RBM([2, 2], training_rate=0.05).training_rate == 0.05

    def test_parameters_not_trained_by_autograd(self):
        assert all(not param.requires_grad for param in RBM([3, 2]).parameters())


class TestRandomize:
    @pytest.mark.parametrize("columns", [(4, 2), (10, 7), (1, 1)])
    def test_weights_bounded_biases_zero(self, columns):
        model = make_model(columns)
        assert model.weights.shape == (columns[1], columns[0])
        assert model.weights.abs().max() <= 0.03
        assert model.bias_h.eq(0).all()
        assert model.bias_v.eq(0).all()

    def test_randomize_again_discards_weights(self):
        model = make_model()
        first = model.weights.clone()
        model.randomize()
        assert not torch.equal(first, model.weights)

    def test_sampling_requires_initialized_parameters(self):
        model = RBM([3, 2], seed=0)
        model.set_visible([1, 0, 1])
        with pytest.raises(RuntimeError, match="randomize"):
            model.sample_hidden()


class TestLayers:
    def test_set_visible_snapshots_input(self):
        model = make_model()
        model.set_visible([1, 0, 1, 0, 1, 1])
        assert model.visible_units.tolist() == [1., 0., 1., 0., 1., 1.]
        assert torch.equal(model.inputs, model.visible_units)
        assert model.inputs is not model.visible_units

    def test_set_visible_wrong_length_raises(self):
        with pytest.raises(ValueError, match="6 units"):
            make_model().set_visible([1, 0])

    def test_set_hidden_samples_visible(self):
        model = make_model()
        model.set_hidden([1, 0, 1])
        assert model.hidden_units.tolist() == [1., 0., 1.]
        assert set(model.visible_units.tolist()) <= {0., 1.}
        assert ((model.visible_p > 0) & (model.visible_p < 1)).all()

    def test_set_hidden_wrong_length_raises(self):
        with pytest.raises(ValueError, match="3 units"):
            make_model().set_hidden([1, 0, 1, 1])

    def test_probabilities_and_units_are_valid(self):
        model = make_model((8, 5))
        model.set_visible([1, 1, 0, 0, 1, 0, 1, 0])
        for _ in range(5):
            model.sample_hidden()
            model.sample_visible()
            assert ((model.hidden_p >= 0) & (model.hidden_p <= 1)).all()
            assert ((model.visible_p >= 0) & (model.visible_p <= 1)).all()
            assert set(model.hidden_units.tolist()) <= {0., 1.}
            assert set(model.visible_units.tolist()) <= {0., 1.}

    def test_sample_hidden_closed_form(self):
        """2 visible units, 1 hidden unit, known parameters: p(h|v) is a single sigmoid."""
        model = make_model((2, 1))
        set_parameters(model, [[0.5, -0.25]], [0.1], [0., 0.])
        model.set_visible([1., 1.])
        model.sample_hidden()
        expected = 1 / (1 + math.exp(-(0.5 - 0.25 + 0.1)))
        assert model.hidden_p.item() == pytest.approx(expected, abs=1e-12)

    def test_sample_visible_closed_form(self):
        model = make_model((2, 1))
        set_parameters(model, [[0.5, -0.25]], [0.], [0.2, -0.3])
        model.set_hidden([1.])
        expected = [1 / (1 + math.exp(-0.7)), 1 / (1 + math.exp(0.55))]
        assert model.visible_p.tolist() == pytest.approx(expected, abs=1e-12)

    def test_sample_visible_keeps_input_snapshot(self):
        model = make_model()
        values = [1., 0., 1., 0., 1., 1.]
        model.set_visible(values)
        for _ in range(10):
            model.sample_hidden()
            model.sample_visible()
        assert model.inputs.tolist() == values


class TestGibbsSampling:
    def test_requires_input(self):
        with pytest.raises(RuntimeError, match="set_visible"):
            make_model().gibbs_sampling(1)

    @pytest.mark.parametrize("n_steps", [0, -1])
    def test_fewer_than_one_step_raises(self, n_steps):
        model = make_model()
        model.set_visible([0] * 6)
        with pytest.raises(ValueError, match="at least 1"):
            model.gibbs_sampling(n_steps)
        with pytest.raises(ValueError, match="at least 1"):
            model.run(n_steps)

    def test_single_step_reconstructs(self):
        model = make_model()
        model.set_visible([1, 0, 1, 0, 1, 0])
        chain = model.gibbs_sampling(1)
        assert model.has_reconstruction
        assert torch.equal(chain.negative_visible_p, model.visible_p)
        assert torch.allclose(chain.negative_hidden_p, model.to_hidden_p(chain.negative_visible))

    def test_chain_state_is_a_snapshot(self):
        model = make_model()
        model.set_visible([1, 0, 1, 0, 1, 0])
        chain = model.gibbs_sampling(2)
        assert model.last_chain is chain
        assert torch.equal(chain.negative_visible, model.visible_units)
        assert torch.equal(chain.negative_hidden_p, model.hidden_p)
        before = chain.negative_visible.clone()
        model.gibbs_sampling(3)
        assert torch.equal(chain.negative_visible, before)

    def test_negative_hidden_p_belongs_to_negative_visible(self):
        model = make_model()
        model.set_visible([1, 1, 1, 0, 0, 0])
        chain = model.gibbs_sampling(3)
        assert torch.allclose(chain.negative_hidden_p, model.to_hidden_p(chain.negative_visible))


class TestTrainingStep:
    def test_single_step_matches_replayed_random_draws(self):
        """Replays the seeded random source by hand: init weights, then the uniform draws of h, v and h again."""
        seed = 123
        inputs = torch.tensor([1., 0., 1., 0.], dtype=torch.float64)
        model = RBM([4, 2], seed=seed)
        model.randomize()
        model.set_visible(inputs)
        chain = model.run(1)

        replay = RandomSource(seed)
        weights = replay.bounded_gaussian((2, 4))
        bias_h = torch.zeros(2, dtype=torch.float64)
        bias_v = torch.zeros(4, dtype=torch.float64)
        positive_hidden_p = torch.sigmoid(weights @ inputs + bias_h)
        hidden = (positive_hidden_p >= replay.uniform((2,))).double()
        visible_p = torch.sigmoid(weights.T @ hidden + bias_v)
        visible = (visible_p >= replay.uniform((4,))).double()
        negative_hidden_p = torch.sigmoid(weights @ visible + bias_h)

        assert torch.allclose(chain.positive_hidden_p, positive_hidden_p)
        assert torch.equal(chain.negative_visible, visible)
        assert torch.allclose(chain.negative_hidden_p, negative_hidden_p)

        derivative_weights = torch.outer(positive_hidden_p, inputs) - torch.outer(negative_hidden_p, visible)
        assert torch.allclose(model.weights, weights + 0.1 * derivative_weights)
        assert torch.allclose(model.bias_h, bias_h + 0.1 * (positive_hidden_p - negative_hidden_p))
        assert torch.allclose(model.bias_v, bias_v + 0.1 * (inputs - visible))

    def test_update_uses_training_rate_times_derivative(self):
        model = make_model((4, 2), training_rate=0.5)
        model.set_visible([1, 0, 1, 0])
        chain = model.gibbs_sampling(2)
        model.compute_derivatives(chain)
        weights, bias_h, bias_v = model.weights.clone(), model.bias_h.clone(), model.bias_v.clone()
        model.update_parameters()
        assert torch.allclose(model.weights, weights + 0.5 * model.derivative_weights)
        assert torch.allclose(model.bias_h, bias_h + 0.5 * model.derivative_hidden_bias)
        assert torch.allclose(model.bias_v, bias_v + 0.5 * model.derivative_visible_bias)

    def test_derivatives_from_chain(self):
        model = make_model((4, 2))
        model.set_visible([0, 1, 1, 0])
        chain = model.gibbs_sampling(1)
        model.compute_derivatives()
        assert torch.allclose(model.derivative_hidden_bias, chain.positive_hidden_p - chain.negative_hidden_p)
        assert torch.equal(model.derivative_visible_bias, chain.inputs - chain.negative_visible)
        assert model.derivative_weights.shape == (2, 4)

    def test_derivatives_require_chain(self):
        with pytest.raises(RuntimeError, match="gibbs_sampling"):
            make_model().compute_derivatives()

    def test_determinism(self):
        """Same seed and inputs give bit-identical trajectories."""
        examples = [[1, 0, 1, 0, 1, 0], [0, 1, 0, 1, 0, 1], [1, 1, 1, 0, 0, 0]]
        trajectories = []
        for _ in range(2):
            model = make_model(seed=99)
            states = []
            for epoch in range(3):
                for example in examples:
                    model.set_visible(example)
                    model.run(2)
                    states.append((model.hidden_p.clone(), model.visible_units.clone(), model.visible_p.clone()))
            trajectories.append((states, model.weights.clone()))

        (states_a, weights_a), (states_b, weights_b) = trajectories
        assert torch.equal(weights_a, weights_b)
        for state_a, state_b in zip(states_a, states_b):
            for tensor_a, tensor_b in zip(state_a, state_b):
                assert torch.equal(tensor_a, tensor_b)

    def test_training_reduces_cross_entropy(self):
        model = make_model((6, 4), seed=5, training_rate=0.1)
        examples = [[1, 1, 1, 0, 0, 0], [0, 0, 0, 1, 1, 1]]

        def evaluate():
            for example in examples:
                model.reconstruct(example)
                model.accumulate_cross_entropy()
            return model.mean_cross_entropy(len(examples))

        before = evaluate()
        for _ in range(300):
            for example in examples:
                model.set_visible(example)
                model.run(1)
        assert evaluate() < before


class TestMetrics:
    def test_accumulate_requires_reconstruction(self):
        model = make_model()
        model.set_visible([1, 0, 1, 0, 1, 0])
        with pytest.raises(RuntimeError, match="reconstruction"):
            model.accumulate_cross_entropy()

    def test_new_input_invalidates_reconstruction(self):
        model = make_model()
        model.reconstruct([1, 1, 1, 0, 0, 0])
        model.accumulate_cross_entropy()
        model.set_visible([0, 0, 0, 1, 1, 1])
        with pytest.raises(RuntimeError, match="reconstruction"):
            model.accumulate_cross_entropy()

    def test_mean_cross_entropy_value_and_reset(self):
        model = make_model()
        inputs = torch.tensor([1., 0., 1., 0., 1., 0.], dtype=torch.float64)
        probabilities = model.reconstruct(inputs)
        model.accumulate_cross_entropy()
        expected = -(inputs * torch.log(probabilities) + (1 - inputs) * torch.log(1 - probabilities)).sum().item()

        assert model.mean_cross_entropy(1) == pytest.approx(expected)
        assert model.mean_cross_entropy(1) == 0

    def test_mean_cross_entropy_averages(self):
        model = make_model()
        for _ in range(4):
            model.reconstruct([1, 1, 0, 0, 1, 1])
            model.accumulate_cross_entropy()
        total = -model.cross_entropy.sum().item()
        assert model.mean_cross_entropy(4) == pytest.approx(total / 4)

    def test_mean_cross_entropy_rejects_non_positive(self):
        with pytest.raises(ValueError, match="positive"):
            make_model().mean_cross_entropy(0)

    def test_degenerate_probabilities_are_clamped(self):
        model = make_model((2, 1))
        set_parameters(model, [[0., 0.]], [0.], [1000., -1000.])
        model.reconstruct([0., 1.])
        model.accumulate_cross_entropy()
        assert math.isfinite(model.mean_cross_entropy(1))

    def test_degenerate_probabilities_without_clamping(self):
        model = make_model((2, 1), cross_entropy_eps=0.)
        set_parameters(model, [[0., 0.]], [0.], [1000., -1000.])
        model.reconstruct([0., 1.])
        model.accumulate_cross_entropy()
        assert model.mean_cross_entropy(1) == math.inf

    def test_error_rate_counts_mismatches(self):
        model = make_model((3, 2))
        set_parameters(model, torch.zeros(2, 3), [0., 0.], [-50., -50., -50.])
        rates = []
        for _ in range(3):
            model.reconstruct([1., 1., 1.])
            rates.append(model.error_rate(10))
        assert rates == pytest.approx([0.1, 0.2, 0.3])
        assert model.n_errors == 3

    def test_error_rate_ignores_matches(self):
        model = make_model((3, 2))
        set_parameters(model, torch.zeros(2, 3), [0., 0.], [50., 50., 50.])
        model.n_errors = 2
        model.reconstruct([1., 1., 1.])
        assert not model.reconstruction_mismatch()
        assert model.error_rate(4) == 0.5

    def test_error_rate_is_monotone(self):
        model = make_model()
        rates = []
        for _ in range(20):
            model.reconstruct([1, 0, 1, 0, 1, 0])
            rates.append(model.error_rate(20))
        assert rates == sorted(rates)

    def test_reset_errors(self):
        model = make_model()
        model.n_errors = 5
        model.reset_errors()
        assert model.n_errors == 0


class TestReconstructAndReport:
    def test_reconstruct_returns_probabilities(self):
        model = make_model()
        probabilities = model.reconstruct([1, 0, 1, 0, 1, 0])
        assert probabilities.shape == (6,)
        assert torch.equal(probabilities, model.visible_p)
        assert probabilities is not model.visible_p

    def test_verbose_reports(self, capsys):
        model = make_model(verbose=True)
        capsys.readouterr()
        model.reconstruct([1, 0, 1, 0, 1, 0])
        output = capsys.readouterr().out
        assert "input:" in output
        assert "visible units:" in output
        assert "P(v|h):" in output

    def test_quiet_by_default(self, capsys):
        model = make_model()
        model.reconstruct([1, 0, 1, 0, 1, 0])
        model.set_hidden([1, 0, 0])
        assert capsys.readouterr().out == ""


def test_energy_closed_form():
    model = make_model((2, 1))
    set_parameters(model, [[0.5, -0.25]], [0.1], [0.2, -0.3])
    visible = torch.tensor([1., 1.])
    hidden = torch.tensor([1.])
    expected = -(0.2 - 0.3 + 0.1 + 0.5 - 0.25)
    assert model.energy(visible, hidden).item() == pytest.approx(expected)
