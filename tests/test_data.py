import numpy as np
import pytest

from neuro.data import BatchIterator, Scaling, TabularDataSet
from neuro.errors import ConfigurationError
from neuro.tensor import Dim, Tensor
from tests.utils import tdata


def _xy(n=10, features=3):
    x = np.arange(n * features, dtype=np.float32).reshape(n, features)
    y = np.stack([2 * x[:, 0], x[:, 1] - 1], axis=1)
    return x, y


def test_batch_iterator_last_batch_is_smaller():
    x, y = _xy(10)
    batches = BatchIterator(Tensor.from_samples(x), Tensor.from_samples(y), 4)

    sizes = [(bx.shape[3], by.shape[3]) for bx, by in batches]

    assert sizes == [(4, 4), (4, 4), (2, 2)]
    assert len(batches) == 3


def test_batch_iterator_keeps_order_and_restarts():
    x, y = _xy(5)
    batches = BatchIterator(Tensor.from_samples(x), Tensor.from_samples(y), 2)

    first = np.concatenate([bx.to_samples() for bx, _ in batches])
    second = np.concatenate([bx.to_samples() for bx, _ in batches])

    assert np.array_equal(first, x)
    assert np.array_equal(second, x)


def test_batch_iterator_large_batch_yields_everything():
    x, y = _xy(6)
    batches = list(BatchIterator(Tensor.from_samples(x), Tensor.from_samples(y), 100))

    assert len(batches) == 1
    assert batches[0][0].shape == (3, 1, 1, 6)


def test_batch_iterator_validates_inputs():
    x, y = _xy(6)
    with pytest.raises(ConfigurationError):
        BatchIterator(Tensor.from_samples(x), Tensor.from_samples(y[:5]), 2)
    with pytest.raises(ConfigurationError):
        BatchIterator(Tensor.from_samples(x), Tensor.from_samples(y), 0)
    with pytest.raises(ConfigurationError):
        BatchIterator(Tensor.from_samples(x[:0]), Tensor.from_samples(y[:0]), 2)


def test_from_arrays_splits_and_keeps_pairs():
    x, y = _xy(10)
    ds = TabularDataSet.from_arrays(x, y, valid_frac=0.2, seed=1)

    assert ds.input_shape == Dim(3, 1, 1)
    assert ds.output_shape == Dim(2, 1, 1)
    assert ds.num_train_samples == 8
    assert ds.num_valid_samples == 2

    for xs, ys in ((ds.x_train, ds.y_train), (ds.x_valid, ds.y_valid)):
        xs, ys = xs.to_samples(), ys.to_samples()
        assert np.array_equal(ys[:, 0], 2 * xs[:, 0])
        assert np.array_equal(ys[:, 1], xs[:, 1] - 1)

    all_rows = np.concatenate([ds.x_train.to_samples(), ds.x_valid.to_samples()])
    assert sorted(all_rows[:, 0].tolist()) == x[:, 0].tolist()


def test_from_arrays_shuffle_is_seeded():
    x, y = _xy(20)
    a = TabularDataSet.from_arrays(x, y, seed=3)
    b = TabularDataSet.from_arrays(x, y, seed=3)
    unshuffled = TabularDataSet.from_arrays(x, y, shuffle=False)

    assert np.array_equal(tdata(a.x_train), tdata(b.x_train))
    assert np.array_equal(unshuffled.x_train.to_samples(), x)
    assert unshuffled.x_valid is None
    assert unshuffled.num_valid_samples == 0


def test_from_arrays_images():
    x = np.zeros((4, 5, 6, 2), dtype=np.float32)
    y = np.eye(4, dtype=np.float32)
    ds = TabularDataSet.from_arrays(x, y, x_test=x, y_test=y)

    assert ds.input_shape == Dim(5, 6, 2)
    assert ds.x_train.shape == (5, 6, 2, 4)
    assert ds.x_test.shape == (5, 6, 2, 4)


@pytest.mark.parametrize("kwargs", [dict(valid_frac=1.0), dict(valid_frac=-0.1)])
def test_from_arrays_rejects_bad_fraction(kwargs):
    x, y = _xy(4)
    with pytest.raises(ConfigurationError):
        TabularDataSet.from_arrays(x, y, **kwargs)


def test_from_arrays_rejects_mismatched_counts():
    x, y = _xy(4)
    with pytest.raises(ConfigurationError):
        TabularDataSet.from_arrays(x, y[:3])


def test_normalize_input_uses_training_range():
    x, y = _xy(10)
    ds = TabularDataSet.from_arrays(x, y, valid_frac=0.3, seed=0)
    ds.normalize_input()

    train = ds.x_train.to_samples()
    assert np.allclose(train.min(axis=0), 0.0)
    assert np.allclose(train.max(axis=0), 1.0)
    assert ds.x_train_stats[0] is Scaling.NORMALIZED


def test_standardize_output():
    x, y = _xy(10)
    ds = TabularDataSet.from_arrays(x, y)
    ds.standardize_output()

    out = ds.y_train.to_samples()
    assert np.allclose(out.mean(axis=0), 0.0, atol=1e-5)
    assert np.allclose(out.std(axis=0), 1.0, atol=1e-5)
    assert ds.y_train_stats[0] is Scaling.STANDARDIZED
