from collections.abc import Iterable

import numpy as np
import torch
from matplotlib import pyplot as plt
from torch.utils.tensorboard import SummaryWriter

from ..types import ImageBatchFloat, TabularBatchFloat, WeightsFloat


def plot_image_grid(images: ImageBatchFloat,
                    figure_size: tuple[int, int],
                    title: str,
                    n_rows: int,
                    n_cols: int | None = None,
                    subtitles: Iterable[str] | None = None,
                    colormap="Greys",
                    writer: SummaryWriter | None = None,
                    epoch_ind: int | None = None,
                    tensorboard_figures: bool = False,
                    suppress_plots: bool = False):
    """Make a grid from images.

    Parameters:
        images: Batch of images we want to plot, values in [0, 1]. Should have at most n_rows*n_cols entries.
        figure_size: The size of the figure.
        title: Will be used as figure title as well as for naming Tensorboard summaries.
        n_rows: Will plot this many rows, and n_rows**2 many examples in total if n_cols is not given.
        n_cols: Will plot this many columns of examples. Defaults to n_rows.
        subtitles: If given, should be an iterable of strings of the same length as images. Each string will be used as
                   title for the respective image's subplot.
        colormap: Which colormap to use to display images. Only used for single-channel images.
        writer, epoch_ind, tensorboard_figures, suppress_plots: Please see rbmkit.common.TrainerBase. Everything below
                                                                writer is only used if that is not None.
    """
    if n_cols is None:
        n_cols = n_rows
    if len(images) > n_rows * n_cols:
        raise ValueError(f"Got {len(images)} images for a grid of {n_rows}x{n_cols}")
    with torch.inference_mode():
        images = np.clip(images.detach().cpu().numpy(), 0, 1)
    subtitles = list(subtitles) if subtitles is not None else None

    plt.figure(figsize=figure_size)
    for ind, img in enumerate(images):
        plt.subplot(n_rows, n_cols, ind + 1)
        img = img.transpose(1, 2, 0)
        if img.shape[-1] == 1:  # grayscale
            img = img[..., 0]
        plt.imshow(img, vmin=0, vmax=1, cmap=colormap)
        plt.axis("off")
        if subtitles is not None:
            plt.title(subtitles[ind], fontsize=8)
    plt.suptitle(title)

    if writer is not None and tensorboard_figures and epoch_ind is not None:
        writer.add_figure(title, plt.gcf(), epoch_ind, close=suppress_plots)
    plt.show()


def vectors_to_images(vectors: TabularBatchFloat,
                      image_shape: tuple[int, ...]) -> ImageBatchFloat:
    """Reshape a batch of flat vectors to (batch x c x h x w) images. (h, w) shapes get a channel axis added."""
    if len(image_shape) == 2:
        image_shape = (1, *image_shape)
    if int(np.prod(image_shape)) != vectors.shape[1]:
        raise ValueError(f"Cannot reshape vectors of size {vectors.shape[1]} to images of shape {image_shape}")
    return vectors.reshape(vectors.shape[0], *image_shape)


def weights_to_images(weights: WeightsFloat,
                      image_shape: tuple[int, ...]) -> ImageBatchFloat:
    """Turn each hidden unit's incoming weights into an image ("filter"), rescaled to [0, 1] per unit.

    Parameters:
        weights: hidden x visible weight matrix.
        image_shape: Shape of a visible vector when seen as an image, either (h, w) or (c, h, w).
    """
    minimum = weights.min(dim=1, keepdim=True).values
    maximum = weights.max(dim=1, keepdim=True).values
    scaled = (weights - minimum) / (maximum - minimum).clamp_min(1e-12)
    return vectors_to_images(scaled, image_shape)
