from typing import Any

import torch
from torchvision.transforms.v2 import Transform

from ..types import ImageFloat, VectorFloat


def binarize(inputs: torch.Tensor,
             threshold: float = 0.5) -> torch.Tensor:
    """Everything above threshold becomes 1., everything else 0."""
    return torch.where(inputs > threshold, 1., 0.).to(inputs.dtype if inputs.is_floating_point() else torch.float32)


class Binarize(Transform):
    def __init__(self,
                 threshold: float = 0.5):
        """Turn inputs into binary numbers according to threshold.

        Parameters:
            threshold: Everything above this value will become 1; everything else 0.
        """
        super().__init__()
        self.threshold = threshold

    def transform(self,
                  inputs: ImageFloat,
                  _params: Any) -> ImageFloat:
        return binarize(inputs, self.threshold)


class Flatten(Transform):
    """RBMs work on vectors, so images are flattened. Works on single examples, not batches!"""
    def transform(self,
                  inputs: ImageFloat,
                  _params: Any) -> VectorFloat:
        return inputs.reshape(-1)
