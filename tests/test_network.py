import logging

import numpy as np
import pytest

from neuro.activations import Activation
from neuro.data import TabularDataSet
from neuro.errors import ConfigurationError
from neuro.layers import BatchNorm, Conv2D, Dense, Dropout, Flatten, MaxPool2D, Padding
from neuro.losses import MeanSquaredError, SoftmaxCrossEntropy
from neuro.models import EpochReport, Network
from neuro.optim import SGD, Adam
from neuro.regularizers import L2
from neuro.tensor import Tensor
from tests.utils import assert_close, tdata


def _toy_regression():
    x = np.array([[0, 0], [0, 1], [1, 0], [1, 1]], dtype=np.float32)
    y = x[:, :1] + 2 * x[:, 1:] + 1
    return TabularDataSet.from_arrays(x, y, shuffle=False)


def _blobs(n=40, seed=0):
    rng = np.random.default_rng(seed)
    labels = rng.integers(0, 2, size=n)
    x = rng.normal(size=(n, 2)).astype(np.float32) + 3 * labels[:, None]
    return x, np.eye(2, dtype=np.float32)[labels]


def test_end_to_end_dense_sgd_lowers_loss():
    ds = _toy_regression()
    net = Network((2, 1, 1), MeanSquaredError(), SGD(lr=0.1), seed=0).add(Dense(1))
    initial, _ = net.evaluate(ds.x_train, ds.y_train)

    history = net.fit(ds, epochs=50, batch_size=4, verbose=False)

    assert len(history["train_loss"]) == 50
    assert history["train_loss"][-1] < history["train_loss"][0]
    assert history["train_loss"][-1] < initial
    assert history["valid_loss"] == [None] * 50


def test_fit_reports_validation_metric():
    x, y = _blobs()
    ds = TabularDataSet.from_arrays(x, y, valid_frac=0.25, seed=0)
    net = Network((2, 1, 1), SoftmaxCrossEntropy(), Adam(lr=0.05), seed=0)
    net.add(Dense(8, Activation.RELU)).add(Dense(2, Activation.SOFTMAX))
    reports = []

    history = net.fit(ds, epochs=5, batch_size=8, metric="accuracy", verbose=False, reporter=reports.append)

    assert [r.epoch for r in reports] == [1, 2, 3, 4, 5]
    assert all(isinstance(r, EpochReport) for r in reports)
    assert all(0.0 <= m <= 1.0 for m in history["valid_metric"])
    assert history["valid_loss"] == [r.valid_loss for r in reports]
    assert history["train_loss"] == [r.train_loss for r in reports]


def test_fit_logs_one_line_per_epoch(caplog):
    ds = _toy_regression()
    net = Network((2, 1, 1), MeanSquaredError(), SGD(lr=0.1), seed=0).add(Dense(1))

    with caplog.at_level(logging.INFO, logger="neuro.models"):
        net.fit(ds, epochs=3, batch_size=2)
    lines = [r.getMessage() for r in caplog.records if r.name == "neuro.models"]

    assert len(lines) == 3
    assert lines[0].startswith("Epoch 1/3 - train loss: ")

    caplog.clear()
    with caplog.at_level(logging.INFO, logger="neuro.models"):
        net.fit(ds, epochs=2, batch_size=2, verbose=False)
    assert not [r for r in caplog.records if r.name == "neuro.models"]


def test_train_loss_includes_penalty():
    ds = _toy_regression()
    net = Network((2, 1, 1), MeanSquaredError(), SGD(lr=1e-9), regularizer=L2(10.0), seed=0)
    net.add(Dense(3)).add(Dense(1))
    data_loss, _ = net.evaluate(ds.x_train, ds.y_train)
    penalty = net.penalty()

    history = net.fit(ds, epochs=1, batch_size=4, verbose=False)

    assert penalty > 0
    assert history["train_loss"][0] == pytest.approx(data_loss + penalty, rel=1e-4)


def test_add_rejects_incompatible_layer():
    net = Network((5, 5, 1), MeanSquaredError(), SGD())
    with pytest.raises(ConfigurationError):
        net.add(Dense(3))
    assert net.layers == []

    net.add(Conv2D(2, 3))
    with pytest.raises(ConfigurationError):
        net.add(Conv2D(2, 4))
    assert len(net.layers) == 1


def test_add_rejects_same_layer_twice():
    net = Network((2, 1, 1), MeanSquaredError(), SGD())
    layer = Dense(2)
    net.add(layer)

    with pytest.raises(ConfigurationError):
        net.add(layer)
    assert len(net.layers) == 1
    assert len(net.state) == 2


def test_add_registers_one_slot_per_parameter(rng):
    net = Network((4, 1, 1), MeanSquaredError(), SGD(momentum=0.5), seed=0)
    net.add(Dense(3)).add(BatchNorm()).add(Dropout(0.5)).add(Dense(2))

    assert len(net.state) == 6

    x = Tensor(rng.normal(size=(4, 1, 1, 5)))
    y = Tensor(rng.normal(size=(2, 1, 1, 5)))
    net.train_batch(x, y)

    assert net.state.step == 1
    assert all(slot is not None for slot in net.state.slots)
    params = [p for layer in net.layers for p in layer.parameters()]
    for param, slot in zip(params, net.state.slots):
        assert slot["velocity"].shape == param.shape


def test_fit_validates_network_and_data():
    ds = _toy_regression()
    with pytest.raises(ConfigurationError):
        Network((2, 1, 1), MeanSquaredError(), SGD()).fit(ds, epochs=1, batch_size=2)
    with pytest.raises(ConfigurationError):
        Network((3, 1, 1), MeanSquaredError(), SGD()).add(Dense(1)).fit(ds, epochs=1, batch_size=2)
    with pytest.raises(ConfigurationError):
        Network((2, 1, 1), MeanSquaredError(), SGD()).add(Dense(2)).fit(ds, epochs=1, batch_size=2)
    with pytest.raises(ConfigurationError):
        Network((2, 1, 1), MeanSquaredError(), SGD()).add(Dense(1)).fit(ds, epochs=0, batch_size=2)
    with pytest.raises(ConfigurationError):
        Network((2, 1, 1), MeanSquaredError(), SGD()).add(Dense(1)).fit(ds, epochs=1, batch_size=2, metric="f1")


def test_fit_on_empty_training_set_raises():
    ds = TabularDataSet(Tensor.from_samples(np.zeros((0, 2))), Tensor.from_samples(np.zeros((0, 1))))
    net = Network((2, 1, 1), MeanSquaredError(), SGD()).add(Dense(1))

    with pytest.raises(ConfigurationError):
        net.fit(ds, epochs=1, batch_size=2)


def test_evaluate_rejects_unknown_metric(rng):
    net = Network((2, 1, 1), MeanSquaredError(), SGD()).add(Dense(1))
    x = Tensor(rng.normal(size=(2, 1, 1, 3)))
    y = Tensor(rng.normal(size=(1, 1, 1, 3)))

    with pytest.raises(ConfigurationError):
        net.evaluate(x, y, metric="f1")


def test_convolutional_network(rng, device):
    x = rng.normal(size=(8, 6, 6, 1)).astype(np.float32)
    y = np.eye(3, dtype=np.float32)[rng.integers(0, 3, size=8)]
    ds = TabularDataSet.from_arrays(x, y, valid_frac=0.25, seed=0, device=device)

    net = Network((6, 6, 1), SoftmaxCrossEntropy(), Adam(), device=device, seed=0)
    net.add(Conv2D(4, 3, padding=Padding.SAME, activation=Activation.RELU))
    net.add(BatchNorm())
    net.add(MaxPool2D(2))
    net.add(Flatten())
    net.add(Dropout(0.25, seed=0))
    net.add(Dense(3, Activation.SOFTMAX))

    history = net.fit(ds, epochs=2, batch_size=4, metric="accuracy", verbose=False)
    out = net.predict(ds.x_train)

    assert len(history["valid_metric"]) == 2
    assert out.shape == (3, 1, 1, 6)
    assert_close(tdata(out).sum(axis=0), np.ones((1, 1, 6), dtype=np.float32), atol=1e-5)


def test_predict_in_batches_matches_single_pass(rng):
    net = Network((3, 1, 1), MeanSquaredError(), SGD(), seed=0)
    net.add(Dense(5, Activation.TANH)).add(Dense(2))
    x = Tensor(rng.normal(size=(3, 1, 1, 7)))

    assert_close(net.predict(x, batch_size=3), net.predict(x))


def test_summary_lists_layers():
    net = Network((2, 1, 1), MeanSquaredError(), SGD(), seed=0).add(Dense(4)).add(Dense(1))
    text = net.summary()

    assert "Dense(units=4" in text
    assert "Total params: 17" in text
    assert repr(net) == text
