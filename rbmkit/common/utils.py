from collections.abc import Iterable

import numpy as np
from matplotlib import pyplot as plt


def plot_learning_curves(metrics: dict[str, np.ndarray],
                         keys: Iterable[str] = ("cross_entropy", "error_rate")):
    """Basic plots for metrics of interest.

    Parameters:
        metrics: Dictionary as returned by a Trainer object's train_model function.
        keys: Plots are made for each metric named in here. Each plot gets one line for training and one for validation.
    """
    for key in keys:
        if "train_" + key not in metrics:
            raise KeyError(f"No metric named {key}. Available: {sorted(metrics)}")
        plt.figure(figsize=(12, 3))
        plt.plot(metrics["train_" + key], label="train")
        plt.plot(metrics["val_" + key], label="validation")
        plt.legend()
        plt.title(key)
        plt.xlabel("Epoch")
        plt.show()
