import torch

from ..types import MatrixFloat, OuterFloat, VectorFloat


def sigmoid(x: torch.Tensor | float) -> torch.Tensor | float:
    """Logistic function 1 / (1 + exp(-x)).

    Tensors are handled elementwise and returned as tensors of the same dtype. Plain numbers give a plain float back.
    """
    if isinstance(x, torch.Tensor):
        return torch.sigmoid(x)
    return torch.sigmoid(torch.tensor(float(x), dtype=torch.float64)).item()


def gemm(a: MatrixFloat,
         b: MatrixFloat | VectorFloat,
         bias: MatrixFloat | VectorFloat | None = None,
         alpha: float = 1.0,
         beta: float = 1.0,
         transpose_a: bool = False) -> MatrixFloat | VectorFloat:
    """Fused multiply-add: alpha * (a @ b) + beta * bias.

    This is the only matrix primitive the RBM needs. Shapes are checked up front so that a mismatch fails with a
    readable message instead of somewhere deep inside torch.

    Parameters:
        a: 2D matrix.
        b: Either a 1D vector (matrix-vector product) or a 2D matrix.
        bias: Added to the product after scaling with beta. Must have the shape of the product. If None, only the
              scaled product is returned and beta is ignored.
        alpha, beta: Scaling factors for product and bias, respectively.
        transpose_a: If True, use a.T instead of a.
    """
    if a.dim() != 2:
        raise ValueError(f"gemm expects a 2D matrix as first argument, got shape {tuple(a.shape)}")
    if b.dim() not in (1, 2):
        raise ValueError(f"gemm expects a 1D or 2D second argument, got shape {tuple(b.shape)}")
    if transpose_a:
        a = a.T
    if a.shape[1] != b.shape[0]:
        raise ValueError(f"Dimension mismatch in gemm: {tuple(a.shape)} @ {tuple(b.shape)}")

    out_shape = (a.shape[0],) if b.dim() == 1 else (a.shape[0], b.shape[1])
    if bias is None:
        bias = torch.zeros(out_shape, dtype=a.dtype, device=a.device)
        beta = 0.
    elif tuple(bias.shape) != out_shape:
        raise ValueError(f"Bias of shape {tuple(bias.shape)} does not match gemm output shape {out_shape}")

    if b.dim() == 1:
        return torch.addmv(bias, a, b, beta=beta, alpha=alpha)
    return torch.addmm(bias, a, b, beta=beta, alpha=alpha)


def outer(column: VectorFloat,
          row: VectorFloat) -> OuterFloat:
    """Outer product column @ row.T, computed as a matrix product of an (n x 1) and a (1 x m) matrix."""
    return gemm(column.unsqueeze(1), row.unsqueeze(0))


def binary_cross_entropy_terms(targets: VectorFloat,
                               probabilities: VectorFloat,
                               eps: float = 0.) -> VectorFloat:
    """Elementwise t*log(p) + (1-t)*log(1-p), i.e. the *negative* binary cross-entropy per unit.

    Parameters:
        targets: True values, usually binary.
        probabilities: Predicted probabilities for the value 1.
        eps: If > 0, probabilities are clamped to [eps, 1-eps] so that the logarithms stay finite. With eps=0, a
             probability of exactly 0 or 1 produces -inf (or nan) terms.
    """
    if targets.shape != probabilities.shape:
        raise ValueError(f"Shape mismatch: targets {tuple(targets.shape)} vs probabilities "
                         f"{tuple(probabilities.shape)}")
    if eps > 0:
        probabilities = probabilities.clamp(eps, 1 - eps)
    return targets * torch.log(probabilities) + (1 - targets) * torch.log(1 - probabilities)
