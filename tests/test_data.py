"""Tests for binary data helpers."""
import pytest
import torch

from rbmkit.data import Binarize, Flatten, binarize, get_datasets_and_loaders, tensor_loaders


def test_binarize_threshold():
    result = binarize(torch.tensor([0.1, 0.5, 0.51, 0.9]))
    assert result.tolist() == [0., 0., 1., 1.]
    assert binarize(torch.tensor([0.3, 0.7]), threshold=0.2).tolist() == [1., 1.]


def test_binarize_transform():
    image = torch.tensor([[[0.2, 0.8], [0.6, 0.4]]])
    assert Binarize()(image).tolist() == [[[0., 1.], [1., 0.]]]


def test_flatten_transform():
    image = torch.arange(12, dtype=torch.float32).reshape(3, 2, 2)
    flat = Flatten()(image)
    assert flat.shape == (12,)
    assert flat.tolist() == list(range(12))


class TestTensorLoaders:
    def test_yields_inputs_and_dummy_labels(self):
        training_loader, validation_loader = tensor_loaders(torch.rand(10, 4), torch.rand(3, 4), batch_size=4,
                                                            threshold=0.5)
        inputs, labels = next(iter(training_loader))
        assert inputs.shape == (4, 4)
        assert labels.shape == (4,)
        assert set(inputs.unique().tolist()) <= {0., 1.}
        assert sum(batch[0].shape[0] for batch in validation_loader) == 3

    def test_seeded_shuffle_is_reproducible(self):
        data = torch.arange(20, dtype=torch.float32).reshape(10, 2)
        first = [batch[0] for batch in tensor_loaders(data, data, batch_size=3, seed=4)[0]]
        second = [batch[0] for batch in tensor_loaders(data, data, batch_size=3, seed=4)[0]]
        assert all(torch.equal(a, b) for a, b in zip(first, second))

    def test_rejects_non_tabular_data(self):
        with pytest.raises(ValueError, match="2D"):
            tensor_loaders(torch.rand(2, 2, 2), torch.rand(2, 4))


def test_unknown_dataset_raises():
    with pytest.raises(ValueError, match="Invalid dataset"):
        get_datasets_and_loaders("cifar10", verbose=False)
