"""This module uses jaxtyping to add various more specific tensor types."""
from typing import TypeAlias

from jaxtyping import Float
from torch import Tensor


VisibleFloat: TypeAlias = Float[Tensor, "visible"]
HiddenFloat: TypeAlias = Float[Tensor, "hidden"]
WeightsFloat: TypeAlias = Float[Tensor, "hidden visible"]

VectorFloat: TypeAlias = Float[Tensor, "n"]
MatrixFloat: TypeAlias = Float[Tensor, "rows cols"]
OuterFloat: TypeAlias = Float[Tensor, "n m"]

TabularBatchFloat: TypeAlias = Float[Tensor, "batch c"]
ImageFloat: TypeAlias = Float[Tensor, "c h w"]
ImageBatchFloat: TypeAlias = Float[Tensor, "batch c h w"]
LabelBatch: TypeAlias = Tensor

ScalarFloat: TypeAlias = Float[Tensor, ""]
