import torch
from torch.utils.data import DataLoader, TensorDataset
from torchvision import datasets
from torchvision.transforms.v2 import Compose, ToDtype, ToImage

from .transforms import Binarize, Flatten, binarize
from ..types import TabularBatchFloat


IMAGE_SHAPES = {"mnist": (28, 28), "fashion": (28, 28)}


def get_datasets_and_loaders(dataset: str,
                             root: str = "data",
                             batch_size: int = 1,
                             threshold: float = 0.5,
                             num_workers: int = 0,
                             seed: int | None = None,
                             verbose: bool = True) \
                                -> tuple[datasets.VisionDataset,
                                         datasets.VisionDataset,
                                         DataLoader[tuple[TabularBatchFloat, torch.Tensor]],
                                         DataLoader[tuple[TabularBatchFloat, torch.Tensor]]]:
    """Standard preparation of binary datasets (train/validation) and data loaders.

    Images are scaled to [0, 1], binarized and flattened to vectors, so each example fits the visible layer of an RBM
    with IMAGE_SHAPES[dataset] many units (product of the shape).

    Parameters:
        dataset: Name of the dataset. Currently allowed are mnist and fashion.
                 mnist: You know; MNIST. Handwritten digits 0-9.
                 fashion: FashionMNIST, structure like MNIST, but data is fashion items like shirts, shoes, bags...
        root: Base path where datasets should be stored/looked for.
        batch_size: The RBM trains online anyway, so this only determines how many examples are loaded at once.
        threshold: Binarization threshold; pixels above it become 1.
        num_workers: Used by DataLoader.
        seed: If given, the shuffling of the training data is reproducible.
        verbose: If True, print some info about the dataset elements (shape and dtype).
    """
    if dataset == "mnist":
        constructor = datasets.MNIST
    elif dataset == "fashion":
        constructor = datasets.FashionMNIST
    else:
        raise ValueError(f"Invalid dataset {dataset}. Allowed are {list(IMAGE_SHAPES)}.")

    # torch keeps telling me to use this instead of ToTensor...
    transforms = Compose([ToImage(), ToDtype(torch.float32, scale=True), Binarize(threshold), Flatten()])
    train_data = constructor(root=root, train=True, transform=transforms, download=True)
    test_data = constructor(root=root, train=False, transform=transforms, download=True)

    generator = torch.Generator().manual_seed(seed) if seed is not None else None
    train_dataloader = DataLoader(train_data, batch_size=batch_size, shuffle=True, num_workers=num_workers,
                                  generator=generator)
    test_dataloader = DataLoader(test_data, batch_size=batch_size, num_workers=num_workers)
    if verbose:
        vectors, y = next(iter(train_dataloader))
        print(f"Shape/dtype of batch X [N, D]: {vectors.shape}, {vectors.dtype}")
        print(f"Shape/dtype of batch y: {y.shape}, {y.dtype}")
    return train_data, test_data, train_dataloader, test_dataloader


def tensor_loaders(training_data: TabularBatchFloat,
                   validation_data: TabularBatchFloat,
                   batch_size: int = 1,
                   threshold: float | None = None,
                   shuffle: bool = True,
                   seed: int | None = None) -> tuple[DataLoader, DataLoader]:
    """Wrap in-memory (n_examples x n_visible) tensors into loaders that yield (inputs, dummy labels).

    Parameters:
        training_data, validation_data: 2D tensors, one example per row.
        batch_size: How many rows each batch has.
        threshold: If given, data is binarized with this threshold first.
        shuffle: Whether to shuffle the training data each epoch.
        seed: If given, the shuffling of the training data is reproducible.
    """
    loaders = []
    for data in (training_data, validation_data):
        if data.dim() != 2:
            raise ValueError(f"Expected 2D data (examples x units), got shape {tuple(data.shape)}")
        data = data.float() if threshold is None else binarize(data.float(), threshold)
        loaders.append(TensorDataset(data, torch.zeros(data.shape[0], dtype=torch.long)))

    generator = torch.Generator().manual_seed(seed) if seed is not None else None
    return (DataLoader(loaders[0], batch_size=batch_size, shuffle=shuffle, generator=generator),
            DataLoader(loaders[1], batch_size=batch_size))
