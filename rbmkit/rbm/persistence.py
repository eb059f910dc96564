"""Text storage for RBM parameters.

Parameters are stored as a small JSON document. Each array is given as its shape plus its values in row-major
order, rendered as comma-separated floats. Floats are written with repr(), which round-trips exactly.
"""
from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass

import torch


FORMAT_VERSION = 1
FIELDS = {"format_version", "columns", "biases", "weights"}


class ParameterFormatError(ValueError):
    """Raised when a stored parameter file does not follow the expected format."""


@dataclass(frozen=True)
class StoredParameters:
    columns: tuple[int, ...]
    biases: tuple[torch.Tensor, ...]  # hidden, then visible
    weights: torch.Tensor


def format_values(tensor: torch.Tensor) -> str:
    """Render a tensor as comma-separated floats in row-major order."""
    return ",".join(repr(value) for value in tensor.detach().cpu().reshape(-1).tolist())


def parse_values(text: str,
                 shape: Sequence[int],
                 dtype: torch.dtype = torch.float64,
                 name: str = "array") -> torch.Tensor:
    """Parse comma-separated floats into a tensor of the given shape.

    Every token has to be a valid float, and the number of tokens has to match the shape exactly.
    """
    if not isinstance(text, str):
        raise ParameterFormatError(f"Values of {name} must be a string, got {type(text).__name__}")
    tokens = text.split(",") if text.strip() else []
    try:
        values = [float(token) for token in tokens]
    except ValueError as error:
        raise ParameterFormatError(f"Non-numeric value in {name}: {error}") from error

    expected = 1
    for size in shape:
        expected *= size
    if len(values) != expected:
        raise ParameterFormatError(f"{name} declares shape {tuple(shape)} ({expected} values), "
                                   f"but {len(values)} values are stored")
    return torch.tensor(values, dtype=dtype).reshape(tuple(shape))


def is_integer(value) -> bool:
    """JSON integers only; booleans are rejected even though bool is a subclass of int."""
    return isinstance(value, int) and not isinstance(value, bool)


def encode_array(tensor: torch.Tensor) -> dict:
    return {"shape": list(tensor.shape), "values": format_values(tensor)}


def decode_array(entry: dict,
                 expected_shape: tuple[int, ...],
                 dtype: torch.dtype,
                 name: str) -> torch.Tensor:
    if not isinstance(entry, dict) or set(entry) != {"shape", "values"}:
        raise ParameterFormatError(f"{name} must be an object with exactly the fields 'shape' and 'values'")
    shape = entry["shape"]
    if not isinstance(shape, list) or not all(is_integer(size) for size in shape):
        raise ParameterFormatError(f"Shape of {name} must be a list of integers, got {shape!r}")
    if tuple(shape) != expected_shape:
        raise ParameterFormatError(f"{name} has shape {tuple(shape)}, but the stored columns require "
                                   f"{expected_shape}")
    return parse_values(entry["values"], shape, dtype=dtype, name=name)


def write_parameters(path: str,
                     columns: Sequence[int],
                     biases: Sequence[torch.Tensor],
                     weights: torch.Tensor):
    """Store columns, biases (hidden first, then visible) and the weight matrix to path."""
    document = {"format_version": FORMAT_VERSION,
                "columns": [int(column) for column in columns],
                "biases": [encode_array(bias) for bias in biases],
                "weights": encode_array(weights)}
    with open(path, "w") as file:
        file.write(json.dumps(document, indent=2))
        file.write("\n")


def read_parameters(path: str,
                    dtype: torch.dtype = torch.float64) -> StoredParameters:
    """Load and validate a parameter file written by write_parameters.

    Raises:
        FileNotFoundError: If path does not exist.
        ParameterFormatError: If the file content is not a valid parameter document.
    """
    with open(path) as file:
        try:
            document = json.load(file)
        except json.JSONDecodeError as error:
            raise ParameterFormatError(f"{path} is not valid JSON: {error}") from error

    if not isinstance(document, dict):
        raise ParameterFormatError(f"{path} must contain a JSON object")
    if set(document) != FIELDS:
        missing = sorted(FIELDS - set(document))
        extra = sorted(set(document) - FIELDS)
        raise ParameterFormatError(f"Invalid fields in {path}: missing {missing}, unexpected {extra}")
    if not is_integer(document["format_version"]) or document["format_version"] != FORMAT_VERSION:
        raise ParameterFormatError(f"Unsupported format_version {document['format_version']!r}, "
                                   f"expected {FORMAT_VERSION}")

    columns = document["columns"]
    if (not isinstance(columns, list) or len(columns) < 2
            or not all(is_integer(column) and column > 0 for column in columns)):
        raise ParameterFormatError(f"columns must be a list of at least two positive integers, got {columns!r}")
    n_visible, n_hidden = columns[0], columns[1]

    biases = document["biases"]
    if not isinstance(biases, list) or len(biases) != 2:
        raise ParameterFormatError("biases must be a list of exactly two vectors (hidden, visible)")
    bias_h = decode_array(biases[0], (n_hidden,), dtype, "hidden bias")
    bias_v = decode_array(biases[1], (n_visible,), dtype, "visible bias")
    weights = decode_array(document["weights"], (n_hidden, n_visible), dtype, "weights")

    return StoredParameters(columns=tuple(columns), biases=(bias_h, bias_v), weights=weights)
