"""This module contains functionalities for binary Restricted Boltzmann Machines.

This is a rather "old-school" model, but it can still be instructive. The RBM here is trained online, i.e. on one
example at a time, using contrastive divergence (CD-k). Learned parameters can be stored to and restored from a plain
text format.
"""
from .model import RBM, ChainState
from .persistence import ParameterFormatError, StoredParameters, read_parameters, write_parameters
from .trainer import RBMTrainer
