"""This module contains functionalities that the RBM (and anything trained like it) builds on.

This concerns the numeric primitives (sigmoid, fused multiply-add, outer products), the single seedable source of
randomness, and the "Trainer" base class with training functionalities such as early stopping or checkpointing.
"""
from .fun import binary_cross_entropy_terms, gemm, outer, sigmoid
from .randomness import RandomSource
from .training import Checkpointer, EarlyStopping, ParameterTracker, TrainerBase
from .utils import plot_learning_curves
