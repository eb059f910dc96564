"""This module contains functionalities for building, training and running binary Restricted Boltzmann Machines.

The core is a single RBM engine (rbmkit.rbm.RBM) that is trained online with contrastive divergence: for each example,
a short Gibbs chain gives the negative phase, and weights and biases are updated right away. The engine tracks
reconstruction cross-entropy and error rate, and its parameters can be stored in a plain text format.

Around that, there is a small training loop with early stopping and checkpointing, loaders for binary data, and some
plotting helpers.
"""
