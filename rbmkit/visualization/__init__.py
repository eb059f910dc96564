"""In this module you can find various helpers for visualization, e.g. for reconstructions or weight filters."""
from .image import plot_image_grid, vectors_to_images, weights_to_images
