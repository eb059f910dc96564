from __future__ import annotations

import os
from collections import defaultdict
from collections.abc import Iterable, Iterator
from time import perf_counter
from typing import Generic, TypeVar

import numpy as np
import torch
from torch import nn
from torch.utils.data import DataLoader
from torch.utils.tensorboard import SummaryWriter
from tqdm.auto import tqdm

from ..types import ImageBatchFloat, LabelBatch, TabularBatchFloat, VectorFloat
from ..visualization import plot_image_grid


Model = TypeVar("Model", bound=nn.Module)


class TrainerBase(Generic[Model]):
    def __init__(self,
                 model: Model,
                 training_loader: DataLoader[tuple[TabularBatchFloat, LabelBatch]],
                 validation_loader: DataLoader[tuple[TabularBatchFloat, LabelBatch]],
                 n_epochs: int,
                 plot_every_n_epochs: int | None = None,
                 plot_figsize: tuple[int, int] = (12, 12),
                 plot_n_rows: int = 8,
                 early_stopper: EarlyStopping | None = None,
                 checkpointer: Checkpointer | None = None,
                 verbose: bool = True,
                 use_tqdm: bool = False,
                 tensorboard_logdir: str | None = None,
                 tensorboard_figures: bool = False,
                 suppress_plots: bool = False):
        """Base class for training models online, i.e. one example at a time.

        Loaders yield (inputs, labels) batches like any torch DataLoader, but every row of a batch is handed to the
        model separately. Labels are ignored. Any Trainer for a specific kind of model should inherit from this and
        implement train_step, eval_step and the two summarize functions.

        Parameters:
            model: The model to train.
            training_loader, validation_loader: Dataloaders for training/validation sets.
            n_epochs: Number of full iterations over the training loader.
            plot_every_n_epochs: Every so often, it makes sense to e.g. plot some reconstructions from the model. This
                                 allows us to judge training progress visually. The Trainer class should implement the
                                 plot_examples method. Pass None to disable plotting.
            plot_figsize: Figure size for regular plots.
            plot_n_rows: Usually, we will plot n x n images each time we plot something.
            early_stopper: Optional early stopping object, fed with the full validation loss. Pass None to disable early
                           stopping.
            checkpointer: If given, checkpoints will be stored at the desired frequency (determined by the checkpoint
                          object). In addition, we will save a checkpoint with _final suffix at the end of training.
            verbose: If True, report on training progress throughout.
            use_tqdm: If True, and verbose is also True, supply per-epoch progress bars.
            tensorboard_logdir: If given, will log training/validation metrics to the specified directory for
                                visualization with TensorBoard. Pass None to disable logging.
            tensorboard_figures: If True, save figures generated in plot_examples to tensorboard logs. Does nothing if
                                 tensorboard_logdir is not given.
            suppress_plots: If True, and tensorboard_figures is True, figures will *only* be stored in tensorboard, and
                            not plotted to output (e.g. in a notebook). No effect if tensorboard_figures is False.
        """
        if n_epochs < 1:
            raise ValueError(f"n_epochs must be at least 1, got {n_epochs}")
        self.model = model
        self.training_loader = training_loader
        self.validation_loader = validation_loader
        self.n_epochs = n_epochs

        self.plot_every_n_epochs = plot_every_n_epochs
        self.plot_figsize = plot_figsize
        self.plot_n_rows = plot_n_rows

        self.early_stopper = early_stopper
        self.checkpointer = checkpointer
        self.verbose = verbose
        self.use_tqdm = use_tqdm

        if tensorboard_logdir is not None:
            self.writer = SummaryWriter(tensorboard_logdir)
        else:
            self.writer = None
        self.tensorboard_figures = tensorboard_figures
        self.suppress_plots = suppress_plots

    def train_model(self) -> dict[str, np.ndarray]:
        """The main training & evaluation loop + housekeeping.

        Returns:
            Dictionary with training and evaluation metrics per epoch. This maps each train/val metric name to a numpy
            array of per-epoch results. Training metrics are collected while the model changes over the epoch, so they
            are a bit pessimistic compared to the validation metrics computed at the end of the epoch.
        """
        if self.verbose:
            print(f"Running {self.n_epochs} epochs on {len(self.training_loader.dataset)} examples each.")

        full_metrics = defaultdict(list)
        for epoch_ind in tqdm(iterable=range(self.n_epochs), desc="Overall progress", leave=True,
                              disable=not self.use_tqdm or not self.verbose):
            if self.plot_every_n_epochs is not None and not epoch_ind % self.plot_every_n_epochs:
                self.plot_examples(epoch_ind)
            epoch_train_metrics = self.train_epoch(epoch_ind)
            should_stop = self.finish_epoch(full_metrics, epoch_train_metrics, epoch_ind)
            if should_stop:
                if self.verbose:
                    print("Early stopping...")
                break

        if self.checkpointer is not None:
            self.checkpointer.save_final()
        if self.writer is not None:
            self.writer.close()
        return {key: np.array(values) for key, values in full_metrics.items()}

    def iterate_examples(self,
                         loader: DataLoader[tuple[TabularBatchFloat, LabelBatch]],
                         description: str) -> Iterator[VectorFloat]:
        """Yield the rows of all batches in loader, flattened to vectors."""
        # manual progressbar required due to multiprocessing in dataloaders
        with tqdm(total=len(loader), desc=description, leave=False,
                  disable=not self.use_tqdm or not self.verbose) as progressbar:
            for data_batch in loader:
                inputs = data_batch[0] if isinstance(data_batch, (tuple, list)) else data_batch
                for example in inputs.reshape(inputs.shape[0], -1):
                    yield example
                progressbar.update(1)

    def train_epoch(self,
                    epoch_ind: int) -> dict[str, float]:
        """One epoch training loop. Iterates over the training dataloader once, one example at a time.

        Returns:
            Dictionary mapping metric names to their value for this epoch.
        """
        if self.verbose:
            print(f"Starting epoch {epoch_ind + 1}...", end=" ")
        start_time = perf_counter()

        self.model.train()
        self.start_epoch(epoch_ind)
        n_examples = 0
        for example in self.iterate_examples(self.training_loader, "Training"):
            n_examples += 1
            self.train_step(example, n_examples)
        if not n_examples:
            raise ValueError("Training loader did not provide any examples.")
        epoch_metrics = self.summarize_epoch(n_examples)

        time_taken = perf_counter() - start_time
        if self.verbose:
            print(f"\tTime taken: {time_taken:.4g} seconds")
        return epoch_metrics

    def finish_epoch(self,
                     full_run_metrics: dict[str, list[float]],
                     epoch_train_metrics: dict[str, float],
                     epoch_ind: int) -> bool:
        """Bunch of housekeeping after each epoch training loop.

        This function:
            - Evaluates on the validation set.
            - Checks for early stopping.
            - Collects train and validation metrics in one place.
            - Optionally writes Tensorboard summaries.
            - Optionally stores a checkpoint.

        Parameters:
            full_run_metrics: Should be the dictionary created at the start of train_model. This is modified in-place
                              inside this function.
            epoch_train_metrics: As returned from the last train_epoch call.
            epoch_ind: The index of the epoch.

        Returns:
            Boolean flag from early stopping.
        """
        val_loss_full, val_metrics = self.evaluate()
        if self.early_stopper is not None:
            should_stop = self.early_stopper.update(val_loss_full)
        else:
            should_stop = False

        for key in epoch_train_metrics:
            train_metric = epoch_train_metrics[key]
            val_metric = val_metrics[key]
            full_run_metrics["train_" + key].append(train_metric)
            full_run_metrics["val_" + key].append(val_metric)
            if self.writer is not None:
                self.writer.add_scalars(key, {"training": train_metric, "validation": val_metric}, epoch_ind)

        if self.verbose:
            print("\tMetrics:")
            for key in full_run_metrics:
                print(f"\t\t{key}: {full_run_metrics[key][-1]:.6g}")
            print()
        if self.writer is not None:
            self.writer.flush()
        if self.checkpointer is not None:
            self.checkpointer.maybe_checkpoint(epoch_ind)
        return should_stop

    def evaluate(self) -> tuple[float, dict[str, float]]:
        """One evaluation loop over the validation loader.

        Returns:
            - The full evaluation loss (e.g. for early stopping).
            - Dictionary with separate metrics.
        """
        self.model.eval()
        self.start_evaluation()
        n_examples = 0
        for example in self.iterate_examples(self.validation_loader, "Validation"):
            n_examples += 1
            self.eval_step(example)
        if not n_examples:
            raise ValueError("Validation loader did not provide any examples.")
        return self.summarize_evaluation(n_examples)

    def start_epoch(self,
                    epoch_ind: int):
        """Called before the first training step of each epoch."""
        pass

    def start_evaluation(self):
        """Called before the first evaluation step."""
        pass

    def train_step(self,
                   example: VectorFloat,
                   n_seen: int):
        """Train on a single example. Not implemented as it is model-dependent.

        Parameters:
            example: One flat data vector.
            n_seen: How many examples (including this one) have been seen in the current epoch.
        """
        raise NotImplementedError

    def eval_step(self,
                  example: VectorFloat):
        """Evaluate a single example without training on it."""
        raise NotImplementedError

    def summarize_epoch(self,
                        n_examples: int) -> dict[str, float]:
        """Turn whatever train_step collected into per-epoch metrics."""
        raise NotImplementedError

    def summarize_evaluation(self,
                             n_examples: int) -> tuple[float, dict[str, float]]:
        """Turn whatever eval_step collected into the full validation loss plus a dictionary of metrics.

        The dictionary needs to have the same keys as the one returned by summarize_epoch.
        """
        raise NotImplementedError

    def plot_examples(self,
                      epoch_ind: int | None = None):
        """This function is called every couple epochs. You can really do whatever you want in here.

        But it is intended to visually show model progress, e.g. through plotting some reconstructions.
        """
        pass

    def plot_grid(self,
                  images: ImageBatchFloat,
                  epoch_ind: int | None = None,
                  title: str = "Reconstructions",
                  n_cols: int | None = None,
                  subtitles: Iterable[str] | None = None):
        """Standard function to display a batch of images, optionally logging them to Tensorboard."""
        plot_image_grid(images, figure_size=self.plot_figsize, title=title,
                        n_rows=int(np.ceil(len(images) / (n_cols or self.plot_n_rows))),
                        n_cols=n_cols or self.plot_n_rows, subtitles=subtitles, writer=self.writer,
                        epoch_ind=epoch_ind, tensorboard_figures=self.tensorboard_figures,
                        suppress_plots=self.suppress_plots)


class ParameterTracker:
    def __init__(self,
                 model: nn.Module):
        """Base class for parameter trackers/storages like early stopping.

        All floating point parameters are tracked, whether they require gradients or not, since RBM parameters are
        updated by hand.

        Parameters:
            model: Model to track.
        """
        self.model = model
        self.tracked_parameters = [param.detach().clone() for param in self.get_parameters()]
        self.backup = None

    def get_parameters(self) -> Iterable[torch.Tensor]:
        """Return all desired parameters."""
        return iter(param for param in self.model.parameters() if torch.is_floating_point(param))

    @torch.no_grad()
    def apply_parameters(self):
        """Overwrite model parameters with tracked parameters while also creating a backup."""
        self.make_backup()
        for tracked_param, model_param in zip(self.tracked_parameters, self.get_parameters()):
            model_param[:] = tracked_param

    def make_backup(self):
        """Make a backup of original model parameters."""
        if self.backup is None:
            self.backup = [param.detach().clone() for param in self.get_parameters()]
        else:
            print("backup has been created already! This backup has been SKIPPED.")

    @torch.no_grad()
    def apply_backup(self):
        """Restore backed up model parameters."""
        if self.backup is None:
            raise RuntimeError("No backup to restore.")
        for backup_param, model_param in zip(self.backup, self.get_parameters()):
            model_param[:] = backup_param


class EarlyStopping(ParameterTracker):
    def __init__(self,
                 model: nn.Module,
                 patience: int | None,
                 direction: str = "min",
                 min_delta: float = 0.0001,
                 verbose: bool = False,
                 restore_best: bool = False):
        """Stop training if target metric does not improve.

        The model parameters with best performance are tracked and can be restored at the end.

        Parameters:
            model: Model to track.
            patience: How many iterations without improvement to tolerate. For example, patience=2 means that two
                      iterations *in a row* without improvement are okay; stopping would be triggered after the third
                      iteration in a row without improvement. None turns early stopping into a noop.
            direction: Whether the metric of interest is minimized (e.g. cross-entropy) or maximized.
            min_delta: An improvement is only counted as such if it is better by at least this amount.
            verbose: If True, report on how things are going.
            restore_best: If True, when the stop signal is triggered, the best parameters are restored to the model.
                          Otherwise, you have to do this manually later via apply_parameters().
        """
        super().__init__(model)
        if direction not in ["min", "max"]:
            raise ValueError(f"direction should be 'min' or 'max', you passed {direction}")
        self.best_value = np.inf if direction == "min" else -np.inf
        self.direction = direction
        self.min_delta = min_delta

        self.patience = patience
        self.disappointment = 0
        self.verbose = verbose
        if verbose and patience is None:
            print("EarlyStopping with patience None -- noop and will never stop")
        self.restore_best = restore_best

    def update(self,
               value: float) -> bool:
        """Run one 'iteration' of early stopping.

        This updates the patience counter, and if stopping is triggered, sends a signal to stop training. This
        function does *not* actually stop the training process; this needs to be handled in the training function
        based on the bool this function returns. *Optionally* restores the best tracked model parameters.

        Parameters:
            value: New value to compare to best so far.
        """
        if self.patience is None:
            return False

        if ((self.direction == "min" and value < self.best_value - self.min_delta)
                or (self.direction == "max" and value > self.best_value + self.min_delta)):
            self.best_value = value
            self.update_best()
            self.disappointment = 0
            if self.verbose:
                print("New best value found; no longer disappointed")
            return False

        self.disappointment += 1
        if self.verbose:
            print(f"EarlyStopping disappointment increased to {self.disappointment}")
        if self.disappointment > self.patience:
            if self.verbose:
                print("EarlyStopping has become too disappointed; now would be a good time to cancel training")
            if self.restore_best:
                if self.verbose:
                    print("Restoring best parameters")
                self.apply_parameters()
            return True
        return False

    @torch.no_grad()
    def update_best(self):
        """Update saved state with new best."""
        for best_param, model_param in zip(self.tracked_parameters, self.get_parameters()):
            best_param[:] = model_param


class Checkpointer:
    def __init__(self,
                 model: nn.Module,
                 directory: str,
                 checkpoint_name: str,
                 frequency: int):
        """Regularly saves model parameters during training.

        The model needs a save_parameters(path) method; checkpoints use whatever format that writes.

        Parameters:
            model: Model to store checkpoints for.
            directory: Path to store checkpoints to. Will be created if non-existent.
            checkpoint_name: Base name for each checkpoint file. Epoch indices will be appended.
            frequency: Will create a checkpoint every this many epochs.
        """
        if frequency < 1:
            raise ValueError(f"frequency must be at least 1, got {frequency}")
        self.model = model
        self.directory = directory
        self.checkpoint_name = checkpoint_name
        self.frequency = frequency
        if not os.path.exists(directory):
            os.makedirs(directory)

    def path_for(self,
                 suffix: str) -> str:
        return os.path.join(self.directory, f"{self.checkpoint_name}_{suffix}.json")

    def maybe_checkpoint(self,
                         epoch_ind: int):
        """Create a new checkpoint if the trigger has been met.

        Parameters:
            epoch_ind: Index of the epoch that just finished.
        """
        if not epoch_ind % self.frequency:
            self.model.save_parameters(self.path_for(f"{epoch_ind:04}"))

    def save_final(self):
        self.model.save_parameters(self.path_for("final"))
