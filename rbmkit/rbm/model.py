from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import torch
from torch import nn

from .persistence import ParameterFormatError, read_parameters, write_parameters
from ..common import RandomSource, binary_cross_entropy_terms, gemm, outer, sigmoid
from ..types import HiddenFloat, ScalarFloat, VisibleFloat, WeightsFloat


@dataclass(frozen=True)
class ChainState:
    """Everything the gradient needs from one run of the Gibbs chain.

    inputs and positive_hidden_p belong to the positive phase (the data), the rest to the negative phase (the state
    of the chain after sampling). All tensors are copies, so later sampling does not change them.
    """
    inputs: VisibleFloat
    positive_hidden_p: HiddenFloat
    negative_visible: VisibleFloat
    negative_hidden_p: HiddenFloat
    negative_visible_p: VisibleFloat


class RBM(nn.Module):
    def __init__(self,
                 columns: Sequence[int],
                 training_rate: float = 0.1,
                 random_source: RandomSource | None = None,
                 seed: int | None = None,
                 dtype: torch.dtype = torch.float64,
                 cross_entropy_eps: float = 1e-7,
                 verbose: bool = False):
        """Binary RBM trained online (one example at a time) with contrastive divergence.

        The engine is stateful: it holds the current visible/hidden units and their probabilities, and the training
        step works on whatever example was passed to set_visible last. Call randomize() (or load parameters) before
        sampling anything.

        Parameters:
            columns: Layer sizes, starting with the visible layer. The first two entries define the visible and
                     hidden layer. Further entries are kept (and stored with the parameters), but not used.
            training_rate: Step size for parameter updates.
            random_source: Provider for all random draws (weight initialization and unit sampling).
            seed: Convenience alternative to random_source; creates a seeded RandomSource. Pass at most one of the two.
            dtype: Floating point type used for all parameters and states.
            cross_entropy_eps: Reconstruction probabilities are clamped to [eps, 1-eps] before taking logs for the
                               cross-entropy. Pass 0 to disable clamping; a probability of exactly 0 or 1 then leads
                               to infinite/nan values.
            verbose: If True, print intermediate states (reconstructions etc.).
        """
        super().__init__()
        columns = tuple(int(column) for column in columns)
        if len(columns) < 2:
            raise ValueError(f"Need at least two columns (visible, hidden), got {columns}")
        if any(column <= 0 for column in columns):
            raise ValueError(f"All column sizes must be positive, got {columns}")
        if random_source is not None and seed is not None:
            raise ValueError("Pass either random_source or seed, not both.")

        self.columns = columns
        self.n_visible, self.n_hidden = columns[0], columns[1]
        self.training_rate = training_rate
        self.random_source = random_source if random_source is not None else RandomSource(seed)
        self.dtype = dtype
        self.cross_entropy_eps = cross_entropy_eps
        self.verbose = verbose

        self.weights_geometry = (self.n_hidden, self.n_visible)
        self.biases_geometry = ((self.n_hidden,), (self.n_visible,))

        self.weights = nn.Parameter(torch.zeros(self.weights_geometry, dtype=dtype), requires_grad=False)
        self.bias_h = nn.Parameter(torch.zeros(self.n_hidden, dtype=dtype), requires_grad=False)
        self.bias_v = nn.Parameter(torch.zeros(self.n_visible, dtype=dtype), requires_grad=False)
        self.initialized = False

        self.reset_state()
        self.cross_entropy = torch.zeros(self.n_visible, dtype=dtype)
        self.n_errors = 0

    def reset_state(self):
        """Zero all units, probabilities and derivatives, and forget the input snapshot."""
        self.visible_units = torch.zeros(self.n_visible, dtype=self.dtype)
        self.hidden_units = torch.zeros(self.n_hidden, dtype=self.dtype)
        self.hidden_p = torch.zeros(self.n_hidden, dtype=self.dtype)  # P(h=1|v)
        self.visible_p = torch.zeros(self.n_visible, dtype=self.dtype)  # P(v=1|h)

        self.derivative_weights = torch.zeros(self.weights_geometry, dtype=self.dtype)
        self.derivative_hidden_bias = torch.zeros(self.n_hidden, dtype=self.dtype)
        self.derivative_visible_bias = torch.zeros(self.n_visible, dtype=self.dtype)

        self.inputs = None
        self.last_chain = None
        self.has_reconstruction = False

    @property
    def biases(self) -> tuple[HiddenFloat, VisibleFloat]:
        """Biases in storage order: hidden first, then visible."""
        return self.bias_h, self.bias_v

    @torch.no_grad()
    def randomize(self):
        """Set biases to zero and draw weights from a bounded Gaussian (std 0.01, cut off at +-0.03).

        Calling this again throws away anything learned so far.
        """
        self.bias_h.zero_()
        self.bias_v.zero_()
        self.weights.copy_(self.random_source.bounded_gaussian(self.weights_geometry, dtype=self.dtype))
        self.initialized = True
        self.reset_state()
        if self.verbose:
            print(f"biases: {[bias.tolist() for bias in self.biases]}")
            print(f"weights: {self.weights.tolist()}")

    def _as_vector(self,
                   values: Sequence[float] | torch.Tensor,
                   size: int,
                   name: str) -> torch.Tensor:
        vector = torch.as_tensor(values, dtype=self.dtype).detach().reshape(-1).clone()
        if vector.shape[0] != size:
            raise ValueError(f"{name} layer has {size} units, but {vector.shape[0]} values were given")
        return vector

    def _check_initialized(self):
        if not self.initialized:
            raise RuntimeError("Parameters are not initialized. Call randomize() or load parameters first.")

    def set_visible(self,
                    values: Sequence[float] | torch.Tensor):
        """Clamp the visible layer to an example and remember it as the reference input.

        Values are not checked to be binary.
        """
        self.visible_units = self._as_vector(values, self.n_visible, "Visible")
        self.inputs = self.visible_units.clone()
        self.has_reconstruction = False

    def set_hidden(self,
                   values: Sequence[float] | torch.Tensor):
        """Clamp the hidden layer and immediately sample the visible layer from it."""
        self.hidden_units = self._as_vector(values, self.n_hidden, "Hidden")
        self.sample_visible()
        if self.verbose:
            print(f"hidden units: {self.hidden_units.tolist()}")
            print(f"visible units: {self.visible_units.tolist()}")
            print(f"P(v|h): {self.visible_p.tolist()}")

    def to_hidden_p(self,
                    visible: VisibleFloat) -> HiddenFloat:
        """Get conditional probabilities p(h|v)."""
        return sigmoid(gemm(self.weights, visible, self.bias_h))

    def to_visible_p(self,
                     hidden: HiddenFloat) -> VisibleFloat:
        """Get conditional probabilities p(v|h)."""
        return sigmoid(gemm(self.weights, hidden, self.bias_v, transpose_a=True))

    @torch.no_grad()
    def sample_hidden(self):
        """Upward pass: compute p(h|v) for the current visible units and sample binary hidden units from it."""
        self._check_initialized()
        self.hidden_p = self.to_hidden_p(self.visible_units)
        self.hidden_units = self.random_source.bernoulli(self.hidden_p)

    @torch.no_grad()
    def sample_visible(self):
        """Downward pass: compute p(v|h) for the current hidden units and sample binary visible units from it.

        This overwrites visible_units, but never the input snapshot.
        """
        self._check_initialized()
        self.visible_p = self.to_visible_p(self.hidden_units)
        self.visible_units = self.random_source.bernoulli(self.visible_p)
        self.has_reconstruction = True

    def gibbs_sampling(self,
                       n_steps: int) -> ChainState:
        """Run CD-k Gibbs sampling, starting from the current visible units.

        We first sample h from p(h|v) and keep p(h|v) as the positive phase. Then, n_steps times, we sample v from
        p(v|h) followed by h from p(h|v). After this, hidden_p belongs to the final visible units, which together form
        the negative phase.

        Parameters:
            n_steps: Number of full down-up steps, at least 1 (otherwise there is no reconstruction).
        """
        if n_steps < 1:
            raise ValueError(f"n_steps must be at least 1, got {n_steps}")
        if self.inputs is None:
            raise RuntimeError("No input to sample from. Call set_visible() first.")

        self.sample_hidden()
        positive_hidden_p = self.hidden_p.clone()
        for _ in range(n_steps):
            self.sample_visible()
            self.sample_hidden()

        self.last_chain = ChainState(inputs=self.inputs.clone(),
                                     positive_hidden_p=positive_hidden_p,
                                     negative_visible=self.visible_units.clone(),
                                     negative_hidden_p=self.hidden_p.clone(),
                                     negative_visible_p=self.visible_p.clone())
        return self.last_chain

    def _chain_or_last(self,
                       chain: ChainState | None) -> ChainState:
        if chain is None:
            chain = self.last_chain
        if chain is None:
            raise RuntimeError("No sampled chain available. Call gibbs_sampling() first.")
        return chain

    def bias_derivative(self,
                        chain: ChainState | None = None):
        chain = self._chain_or_last(chain)
        self.derivative_visible_bias = chain.inputs - chain.negative_visible
        self.derivative_hidden_bias = chain.positive_hidden_p - chain.negative_hidden_p

    def weights_derivative(self,
                           chain: ChainState | None = None):
        chain = self._chain_or_last(chain)
        self.derivative_weights = (outer(chain.positive_hidden_p, chain.inputs)
                                   - outer(chain.negative_hidden_p, chain.negative_visible))

    def compute_derivatives(self,
                            chain: ChainState | None = None):
        """CD approximation of the log-likelihood gradient for a single example.

        Parameters:
            chain: Result of gibbs_sampling. Defaults to the most recent one.
        """
        chain = self._chain_or_last(chain)
        self.bias_derivative(chain)
        self.weights_derivative(chain)

    @torch.no_grad()
    def update_biases(self):
        self.bias_h.add_(self.derivative_hidden_bias, alpha=self.training_rate)
        self.bias_v.add_(self.derivative_visible_bias, alpha=self.training_rate)

    @torch.no_grad()
    def update_weights(self):
        self.weights.add_(self.derivative_weights, alpha=self.training_rate)

    def update_parameters(self):
        """Gradient ascent step with the derivatives from the last compute_derivatives call."""
        self.update_biases()
        self.update_weights()

    def run(self,
            n_steps: int) -> ChainState:
        """One full training step on the current example: sample, compute derivatives, update."""
        chain = self.gibbs_sampling(n_steps)
        self.compute_derivatives(chain)
        self.update_parameters()
        return chain

    def accumulate_cross_entropy(self):
        """Add sum_i [x_i log p_i + (1 - x_i) log(1 - p_i)] for the last reconstruction to the running total.

        x is the input snapshot and p = p(v|h) from the most recent downward pass.
        """
        if self.inputs is None or not self.has_reconstruction:
            raise RuntimeError("No reconstruction available. Run a training step or reconstruct() first.")
        self.cross_entropy += binary_cross_entropy_terms(self.inputs, self.visible_p, self.cross_entropy_eps)

    def mean_cross_entropy(self,
                           n_examples: int) -> float:
        """Average cross-entropy over n_examples accumulated examples. Resets the running total!"""
        if n_examples <= 0:
            raise ValueError(f"n_examples must be positive, got {n_examples}")
        mean = -self.cross_entropy.sum().item() / n_examples
        self.cross_entropy = torch.zeros(self.n_visible, dtype=self.dtype)
        return mean

    def reconstruction_mismatch(self) -> bool:
        """True if the current visible units differ from the input snapshot in any position."""
        if self.inputs is None:
            raise RuntimeError("No input to compare to. Call set_visible() first.")
        return bool((self.visible_units != self.inputs).any())

    def error_rate(self,
                   n_examples: int) -> float:
        """Count the current reconstruction as an error if it differs from the input, then return errors / n_examples.

        The counter is never reset implicitly, so call this exactly once per evaluated reconstruction, and use
        reset_errors() to start over (e.g. per epoch).
        """
        if n_examples <= 0:
            raise ValueError(f"n_examples must be positive, got {n_examples}")
        if self.reconstruction_mismatch():
            self.n_errors += 1
        return self.n_errors / n_examples

    def reset_errors(self):
        self.n_errors = 0

    def reconstruct(self,
                    values: Sequence[float] | torch.Tensor) -> VisibleFloat:
        """Single up-down pass for an example. Returns p(v|h) for the sampled hidden units."""
        self.set_visible(values)
        self.sample_hidden()
        self.sample_visible()
        self.report()
        return self.visible_p.clone()

    def report(self):
        if self.verbose:
            print(f"input: {self.inputs.tolist() if self.inputs is not None else None}")
            print(f"visible units: {self.visible_units.tolist()}")
            print(f"P(v|h): {self.visible_p.tolist()}")

    def energy(self,
               visible: VisibleFloat,
               hidden: HiddenFloat) -> ScalarFloat:
        """Energy E(v, h) = -(v.b_v + h.b_h + h.W.v) of a joint configuration."""
        visible = visible.to(self.dtype)
        hidden = hidden.to(self.dtype)
        return -(visible @ self.bias_v + hidden @ self.bias_h + hidden @ gemm(self.weights, visible))

    def save_parameters(self,
                        path: str):
        """Store columns, biases and weights as text. See rbmkit.rbm.persistence for the format."""
        write_parameters(path, self.columns, self.biases, self.weights)

    @torch.no_grad()
    def load_parameters(self,
                        path: str):
        """Replace the parameters with stored ones. The stored columns must match this engine's columns.

        All other state (units, derivatives, accumulators) is reset.
        """
        stored = read_parameters(path, dtype=self.dtype)
        if stored.columns != self.columns:
            raise ParameterFormatError(f"Stored columns {stored.columns} do not match engine columns {self.columns}")
        self._assign(stored.biases, stored.weights)

    @torch.no_grad()
    def _assign(self,
                biases: tuple[HiddenFloat, VisibleFloat],
                weights: WeightsFloat):
        self.bias_h.copy_(biases[0])
        self.bias_v.copy_(biases[1])
        self.weights.copy_(weights)
        self.initialized = True
        self.reset_state()
        self.cross_entropy = torch.zeros(self.n_visible, dtype=self.dtype)
        self.n_errors = 0
        if self.verbose:
            print(f"biases: {[bias.tolist() for bias in self.biases]}")
            print(f"weights: {self.weights.tolist()}")

    @classmethod
    def load(cls,
             path: str,
             **kwargs) -> RBM:
        """Create a new engine from a parameter file, using the columns stored in it.

        Parameters:
            path: File written by save_parameters.
            kwargs: Passed on to the constructor (training_rate, seed, ...).
        """
        stored = read_parameters(path, dtype=kwargs.get("dtype", torch.float64))
        model = cls(stored.columns, **kwargs)
        model._assign(stored.biases, stored.weights)
        return model
