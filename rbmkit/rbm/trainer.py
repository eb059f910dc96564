import torch

from .model import RBM
from ..common import TrainerBase
from ..visualization import vectors_to_images, weights_to_images
from ..types import VectorFloat


class RBMTrainer(TrainerBase[RBM]):
    def __init__(self,
                 model: RBM,
                 n_steps: int = 1,
                 reset_errors_every_epoch: bool = True,
                 plot_image_shape: tuple[int, ...] | None = None,
                 **kwargs):
        """Trainer for binary RBMs with CD-k, one example per update.

        Tracked metrics are the mean reconstruction cross-entropy and the error rate, i.e. the fraction of examples
        whose sampled reconstruction is not identical to the input.

        Parameters:
            model: The RBM to train. Its parameters must already be initialized (randomize() or loaded).
            n_steps: The k in CD-k: how many Gibbs steps to run per training step. Must be at least 1.
            reset_errors_every_epoch: If True, the model's error counter starts from zero in each epoch, so the error
                                      rate is a per-epoch value. Otherwise, errors are counted over the whole run and
                                      divided by the number of examples seen so far.
            plot_image_shape: If given, visible vectors can be viewed as images of this shape ((h, w) or (c, h, w)),
                              and plot_examples shows reconstructions and weight filters. Plotting is off otherwise.
            kwargs: Passed on to TrainerBase.
        """
        super().__init__(model, **kwargs)
        if n_steps < 1:
            raise ValueError(f"n_steps must be at least 1, got {n_steps}")
        self.n_steps = n_steps
        self.reset_errors_every_epoch = reset_errors_every_epoch
        self.plot_image_shape = plot_image_shape

        self.n_seen_total = 0
        self.last_error_rate = 0.
        self.n_val_mismatches = 0

    def start_epoch(self,
                    epoch_ind: int):
        if self.reset_errors_every_epoch:
            self.model.reset_errors()
            self.n_seen_total = 0
        self.last_error_rate = 0.

    def train_step(self,
                   example: VectorFloat,
                   n_seen: int):
        """CD-k update on one example, plus bookkeeping for the cross-entropy and error rate of its reconstruction."""
        self.n_seen_total += 1
        self.model.set_visible(example)
        self.model.run(self.n_steps)
        self.model.accumulate_cross_entropy()
        self.last_error_rate = self.model.error_rate(self.n_seen_total)

    def summarize_epoch(self,
                        n_examples: int) -> dict[str, float]:
        return {"cross_entropy": self.model.mean_cross_entropy(n_examples),
                "error_rate": self.last_error_rate}

    def start_evaluation(self):
        self.n_val_mismatches = 0

    def eval_step(self,
                  example: VectorFloat):
        """Single up-down reconstruction. Mismatches are counted here, not in the model's training error counter."""
        self.model.reconstruct(example)
        self.model.accumulate_cross_entropy()
        self.n_val_mismatches += int(self.model.reconstruction_mismatch())

    def summarize_evaluation(self,
                             n_examples: int) -> tuple[float, dict[str, float]]:
        cross_entropy = self.model.mean_cross_entropy(n_examples)
        return cross_entropy, {"cross_entropy": cross_entropy, "error_rate": self.n_val_mismatches / n_examples}

    def plot_examples(self,
                      epoch_ind: int | None = None):
        """Plot some validation inputs next to their reconstruction probabilities, as well as the weight filters."""
        if self.plot_image_shape is None:
            return
        n_examples = self.plot_n_rows**2 // 2
        inputs = []
        for example in self.iterate_examples(self.validation_loader, "Plotting"):
            inputs.append(example)
            if len(inputs) == n_examples:
                break

        with torch.no_grad():
            reconstructions = [self.model.reconstruct(example) for example in inputs]
            pairs = torch.stack([vector.to(self.model.dtype) for pair in zip(inputs, reconstructions)
                                 for vector in pair])
            filters = weights_to_images(self.model.weights[:self.plot_n_rows**2], self.plot_image_shape)

        self.plot_grid(vectors_to_images(pairs, self.plot_image_shape), epoch_ind,
                       title="Inputs and reconstructions")
        self.plot_grid(filters, epoch_ind, title="Weight filters")
