"""This module provides datasets/loaders of binary vectors, as well as transforms."""
from .datasets import get_datasets_and_loaders, tensor_loaders, IMAGE_SHAPES
from .transforms import Binarize, Flatten, binarize
