import math

import numpy as np
import pytest

from neuro.activations import Activation
from neuro.errors import ConfigurationError, ProgrammerError
from neuro.initializers import Initializer
from neuro.regularizers import L1, L2, Regularizer
from neuro.tensor import Dim, Tensor, get_backend
from tests.utils import assert_close, tdata


def test_tensor_on_device(device):
    t = Tensor([[1, 2], [3, 4]], device=device)

    assert t.device == device
    assert t.dtype == np.float32
    assert t.backend is get_backend(device)
    assert np.array_equal(t.numpy(), np.array([[1, 2], [3, 4]], dtype=np.float32))


def test_tensor_to_moves_between_devices(device):
    t = Tensor([[1, 2], [3, 4]])

    assert t.to(device) is t
    assert t.device == device
    assert t.backend is get_backend(device)
    assert t.to("cpu").device == "cpu"
    assert np.array_equal(t.data, np.array([[1, 2], [3, 4]], dtype=np.float32))


def test_tensor_rejects_more_than_four_axes():
    with pytest.raises(ValueError):
        Tensor(np.zeros((1, 1, 1, 1, 2)))


def test_dim_pads_with_ones():
    assert Dim.of((3,)) == Dim(3, 1, 1, 1)
    assert Dim.of((4, 5, 6, 7)).sample() == Dim(4, 5, 6)
    assert Dim(4, 5, 6).num_features == 120
    assert str(Dim(4, 5, 6, 2)) == "(4, 5, 6)"


def test_from_samples_round_trip(rng):
    flat = rng.normal(size=(5, 3)).astype(np.float32)
    images = rng.normal(size=(5, 4, 3, 2)).astype(np.float32)

    t = Tensor.from_samples(flat)
    assert t.shape == (3, 1, 1, 5)
    assert np.array_equal(t.to_samples(), flat)

    t = Tensor.from_samples(images)
    assert t.shape == (4, 3, 2, 5)
    assert np.array_equal(t.to_samples(), images)
    assert np.array_equal(tdata(t)[..., 2], images[2])

    t = Tensor.from_samples(flat.reshape(5, 3), sample_shape=(3, 1, 1))
    assert t.shape == (3, 1, 1, 5)


def test_batch_and_take(rng):
    t = Tensor(rng.normal(size=(2, 1, 1, 6)))

    assert_close(t.batch(1, 4), tdata(t)[..., 1:4])
    assert_close(t.take(np.array([5, 0])), tdata(t)[..., [5, 0]])


def test_shuffle_samples_keeps_pairs(rng):
    x = Tensor.from_samples(np.arange(8, dtype=np.float32))
    y = Tensor.from_samples(10 * np.arange(8, dtype=np.float32))

    xs, ys = Tensor.shuffle_samples(x, y, rng)

    assert np.array_equal(tdata(ys), 10 * tdata(xs))
    assert sorted(tdata(xs).ravel().tolist()) == list(range(8))
    with pytest.raises(ValueError):
        Tensor.shuffle_samples(x, Tensor.zeros(1, 1, 1, 3))


@pytest.mark.parametrize("init,std", [
    (Initializer.glorot_normal(), math.sqrt(2 / (200 + 300))),
    (Initializer.he_normal(), math.sqrt(2 / 200)),
    (Initializer.lecun_normal(), math.sqrt(1 / 200)),
    (Initializer.normal(), 0.01),
])
def test_normal_initializer_scale(rng, init, std):
    w = tdata(init.new_tensor((300, 200), fan_in=200, fan_out=300, rng=rng))

    assert w.shape == (300, 200)
    assert abs(w.mean()) < 0.05 * std * 10
    assert w.std() == pytest.approx(std, rel=0.05)


@pytest.mark.parametrize("init,limit", [
    (Initializer.glorot_uniform(), math.sqrt(6 / (200 + 300))),
    (Initializer.he_uniform(), math.sqrt(6 / 200)),
    (Initializer.lecun_uniform(), math.sqrt(3 / 200)),
    (Initializer.uniform(), 0.01),
    (Initializer.uniform_bounded(-0.2, 0.2), 0.2),
])
def test_uniform_initializer_limit(rng, init, limit):
    w = tdata(init.new_tensor((300, 200), fan_in=200, fan_out=300, rng=rng))

    assert np.all(np.abs(w) <= limit + 1e-7)
    assert np.abs(w).max() == pytest.approx(limit, rel=0.01)


def test_constant_initializers():
    assert np.all(tdata(Initializer.constant(0.25).new_tensor((2, 3), 3, 2)) == 0.25)
    assert np.all(tdata(Initializer.ones().new_tensor((2, 3), 3, 2)) == 1.0)
    assert not np.any(tdata(Initializer.zeros().new_tensor((2, 3), 3, 2)))


def test_initializer_records():
    init = Initializer.normal_scaled(1.0, 0.5)
    assert Initializer.from_record(*init.to_record()) == init

    with pytest.raises(ConfigurationError):
        Initializer("orthogonal")
    with pytest.raises(ConfigurationError):
        Initializer.uniform_bounded(1.0, -1.0)
    with pytest.raises(ProgrammerError):
        Initializer.from_record("orthogonal", [])
    with pytest.raises(ProgrammerError):
        Initializer.from_record("constant", [])


def test_softmax_columns_sum_to_one(rng):
    z = rng.normal(size=(4, 6)).astype(np.float32) * 50
    a = Activation.SOFTMAX.apply(z, np)

    assert_close(a.sum(axis=0), np.ones(6, dtype=np.float32), atol=1e-6)


@pytest.mark.parametrize("activation", [Activation.SIGMOID, Activation.TANH, Activation.RELU, Activation.LEAKY_RELU])
def test_activation_derivative_matches_finite_difference(rng, activation):
    z = rng.normal(size=(50,)).astype(np.float64)
    z = z[np.abs(z) > 1e-2]
    h = 1e-6

    numeric = (activation.apply(z + h, np) - activation.apply(z - h, np)) / (2 * h)
    analytic = activation.derivative(z, activation.apply(z, np), np)

    assert_close(analytic, numeric, atol=1e-6)


def test_activation_from_tag():
    assert Activation.from_tag("relu") is Activation.RELU
    with pytest.raises(ProgrammerError):
        Activation.from_tag("swish")


def test_regularizers(rng):
    w = rng.normal(size=(3, 4))

    assert L1(0.1).penalty(w, np) == pytest.approx(0.1 * np.abs(w).sum())
    assert_close(L1(0.1).grad(w, np), 0.1 * np.sign(w))
    assert L2(0.1).penalty(w, np) == pytest.approx(0.05 * (w ** 2).sum())
    assert_close(L2(0.1).grad(w, np), 0.1 * w)
    assert isinstance(Regularizer.from_record("l1", 0.5), L1)
    with pytest.raises(ConfigurationError):
        L2(-1.0)
    with pytest.raises(ProgrammerError):
        Regularizer.from_record("elastic", 0.5)
