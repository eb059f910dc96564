import torch

from ..types import VectorFloat


class RandomSource:
    def __init__(self,
                 seed: int | None = None):
        """Single source of randomness for everything stochastic in an RBM.

        Both the weight initialization and the Bernoulli sampling of units draw from the same torch.Generator, so
        fixing the seed makes an entire training run reproducible.

        Parameters:
            seed: If given, the generator is seeded with it. Otherwise, a non-deterministic seed is used.
        """
        self.generator = torch.Generator()
        if seed is None:
            self.generator.seed()
        else:
            self.generator.manual_seed(seed)
        self.seed = seed

    def manual_seed(self,
                    seed: int):
        """Reset the generator to a fixed seed."""
        self.generator.manual_seed(seed)
        self.seed = seed

    def bounded_gaussian(self,
                         shape: tuple[int, ...],
                         mean: float = 0.0,
                         std: float = 0.01,
                         low: float = -0.03,
                         high: float = 0.03,
                         dtype: torch.dtype = torch.float64) -> torch.Tensor:
        """Draw i.i.d. samples from a normal distribution truncated to [low, high]."""
        if not low < high:
            raise ValueError(f"Invalid bounds [{low}, {high}] for bounded gaussian")
        samples = torch.empty(shape, dtype=dtype)
        return torch.nn.init.trunc_normal_(samples, mean=mean, std=std, a=low, b=high, generator=self.generator)

    def uniform(self,
                shape: tuple[int, ...],
                dtype: torch.dtype = torch.float64) -> torch.Tensor:
        """Uniform samples from [0, 1)."""
        return torch.rand(shape, generator=self.generator, dtype=dtype)

    def bernoulli(self,
                  probabilities: VectorFloat) -> VectorFloat:
        """Binary samples: 1.0 where the probability is >= an independent uniform draw, else 0.0."""
        draws = self.uniform(tuple(probabilities.shape), dtype=probabilities.dtype)
        return (probabilities >= draws).to(probabilities.dtype)
