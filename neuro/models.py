import logging
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple, Union

import numpy as np

from neuro.data import BatchIterator, DataSet
from neuro.errors import ConfigurationError
from neuro.layers import Layer
from neuro.losses import Loss
from neuro.metrics import Metrics
from neuro.optim import Optimizer, OptimizerState
from neuro.regularizers import Regularizer
from neuro.tensor import Dim, Tensor, backend_device, get_backend

logger = logging.getLogger(__name__)


class EpochReport(NamedTuple):
    """Per-epoch progress handed to the ``reporter`` of :meth:`Network.fit`."""
    epoch: int
    train_loss: float
    metric: Optional[float] = None
    valid_loss: Optional[float] = None

    def __str__(self):
        msg = f"train loss: {self.train_loss:.4f}"
        if self.valid_loss is not None:
            msg += f" - valid loss: {self.valid_loss:.4f}"
        return msg


class Network:
    """
    Sequential neural network.

    Layers are appended with :meth:`add`, which resolves their shapes against
    the output of the previous layer right away, so that incompatible layers
    are rejected before any training starts.

    Parameters
    ----------
    input_shape : Dim or tuple of int
        Shape of a single input sample, ``(height, width, channels)``; flat
        inputs are ``(features, 1, 1)``.
    loss : Loss
        Loss minimized by :meth:`fit`.
    optimizer : Optimizer
        Update rule applied to every trainable tensor.
    regularizer : Regularizer, optional
        Weight penalty shared by all Dense and Conv2D layers.
    device : {'cpu', 'cuda'}, default='cpu'
        Device holding the parameters and running the computations.
    seed : int, optional
        Seed of the generator used to initialize parameters.

    Examples
    --------
    >>> net = Network((2, 1, 1), MeanSquaredError(), SGD(lr=0.1))
    >>> net.add(Dense(1))
    >>> history = net.fit(dataset, epochs=10, batch_size=4)
    """
    def __init__(
        self,
        input_shape: Union[Dim, Tuple[int, ...]],
        loss: Loss,
        optimizer: Optimizer,
        regularizer: Optional[Regularizer] = None,
        device: str = "cpu",
        seed: Optional[int] = None,
    ) -> None:
        try:
            self.input_shape = Dim.of(tuple(input_shape)).sample()
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid input shape {input_shape!r}: {e}") from e
        if min(self.input_shape) < 1:
            raise ConfigurationError(f"Input shape must have positive axes, got {self.input_shape}")
        if not isinstance(loss, Loss):
            raise ConfigurationError(f"Expected a Loss, got {type(loss).__name__}")
        if not isinstance(optimizer, Optimizer):
            raise ConfigurationError(f"Expected an Optimizer, got {type(optimizer).__name__}")

        self.backend = get_backend(device)
        self.device = backend_device(self.backend)
        self.loss = loss
        self.optimizer = optimizer
        self.regularizer = regularizer
        self.layers: List[Layer] = []
        self.state = OptimizerState()
        self._slots: List[List[int]] = []
        self._rng = np.random.default_rng(seed)

    def __repr__(self):
        return self.summary()

    @property
    def output_shape(self) -> Dim:
        """Shape of a single output sample (the input shape while the network is empty)."""
        return self.layers[-1].output_shape if self.layers else self.input_shape

    def add(self, layer: Layer) -> "Network":
        """
        Append a layer and allocate its parameters.

        Returns
        -------
        Network
            ``self``, to allow chaining.

        Raises
        ------
        ConfigurationError
            If ``layer`` is not a :class:`Layer` or cannot accept the output
            of the previous layer, or is already part of the network.
        """
        if not isinstance(layer, Layer):
            raise ConfigurationError(f"Expected a Layer, got {type(layer).__name__}")
        if any(layer is l for l in self.layers):
            raise ConfigurationError(f"{layer.name} layer is already part of the network")
        layer.regularizer = self.regularizer
        layer.init_params(self.output_shape, device=self.device, rng=self._rng)
        self._register(layer)
        return self

    def _append(self, layer: Layer) -> None:
        """Append a layer whose parameters are already allocated (checkpoint loading)."""
        if layer.input_shape != self.output_shape:
            raise ConfigurationError(
                f"{layer.name} layer expects inputs of shape {layer.input_shape}, "
                f"previous output is {self.output_shape}"
            )
        layer.regularizer = self.regularizer
        self._register(layer)

    def _register(self, layer: Layer) -> None:
        slots = [self.state.register() for _ in layer.parameters()]
        self.layers.append(layer)
        self._slots.append(slots)
        logger.debug("Added %r: %s -> %s, optimizer slots %s",
                     layer, layer.input_shape, layer.output_shape, slots)

    def num_parameters(self) -> int:
        return sum(layer.num_parameters() for layer in self.layers)

    def penalty(self) -> float:
        """Regularization term summed over all layers."""
        return sum(layer.penalty() for layer in self.layers)

    def summary(self) -> str:
        """Return a table of the layers with their output shapes and parameter counts."""
        lines = [
            f"Network(input_shape={self.input_shape}, loss={self.loss!r}, optimizer={self.optimizer!r}"
            + (f", regularizer={self.regularizer!r}" if self.regularizer is not None else "") + ")",
            f"{'Layer':<48}{'Output shape':<20}{'Params':>10}",
            "-" * 78,
        ]
        for layer in self.layers:
            lines.append(f"{layer!r:<48}{str(layer.output_shape):<20}{layer.num_parameters():>10}")
        lines.append("-" * 78)
        lines.append(f"Total params: {self.num_parameters()}")
        return "\n".join(lines)

    def _on_device(self, t: Tensor) -> Tensor:
        if t.backend is self.backend:
            return t
        return Tensor(t.data).to(self.device)

    def _check_samples(self, x: Tensor, y: Optional[Tensor] = None) -> None:
        if x.dims.sample() != self.input_shape:
            raise ConfigurationError(
                f"Network expects samples of shape {self.input_shape}, got {x.dims.sample()}"
            )
        if y is not None and y.dims.sample() != self.output_shape:
            raise ConfigurationError(
                f"Network produces samples of shape {self.output_shape}, targets are {y.dims.sample()}"
            )

    def forward(self, x: Tensor) -> Tensor:
        """Run the inference forward pass on a single batch."""
        out = self._on_device(x)
        for layer in self.layers:
            out = layer.forward(out)
        return out

    def train_batch(self, x: Tensor, y: Tensor) -> float:
        """
        Run forward, backward and one optimizer update on a mini-batch.

        Returns
        -------
        float
            Loss of the mini-batch, before the update.
        """
        out = self._on_device(x)
        y = self._on_device(y)
        for layer in self.layers:
            out = layer.forward_train(out)
        loss_value = self.loss.forward(out, y)

        grad = self.loss.backward(out, y)
        for layer in reversed(self.layers):
            grad = layer.backward(grad)

        self.state.step += 1
        for layer, slots in zip(self.layers, self._slots):
            for param, slot in zip(layer.parameters(), slots):
                param.data, self.state.slots[slot] = self.optimizer.update(
                    param.data, param.grad, self.state.slots[slot], self.state.step,
                )
        return loss_value

    def predict(self, x: Tensor, batch_size: Optional[int] = None) -> Tensor:
        """
        Predict the outputs of ``x``, samples along the last axis.

        Parameters
        ----------
        x : Tensor
            Inputs ``(height, width, channels, batch)``.
        batch_size : int, optional
            Number of samples per forward pass; all at once by default.
        """
        if not self.layers:
            raise ConfigurationError("Network has no layers")
        self._check_samples(x)
        batch_size = batch_size or max(1, x.shape[3])
        outputs = [
            self.forward(x.batch(start, start + batch_size)).data
            for start in range(0, x.shape[3], batch_size)
        ]
        return Tensor(self.backend.concatenate(outputs, axis=3))

    def evaluate(
        self,
        x: Tensor,
        y: Tensor,
        metric: Optional[Union[Metrics, str]] = None,
        batch_size: Optional[int] = None,
    ) -> Tuple[float, Optional[float]]:
        """
        Compute the loss, and optionally a metric, of the predictions for ``x``.

        The loss does not include the regularization penalty.

        Returns
        -------
        (loss, metric_value)
            ``metric_value`` is None when no metric is requested.
        """
        self._check_samples(x, y)
        y_pred = self.predict(x, batch_size)
        y = self._on_device(y)
        value = Metrics.from_name(metric).eval(y_pred, y) if metric is not None else None
        return self.loss.forward(y_pred, y), value

    def fit(
        self,
        dataset: DataSet,
        epochs: int,
        batch_size: int,
        metric: Optional[Union[Metrics, str]] = None,
        verbose: bool = True,
        reporter: Optional[Callable[[EpochReport], Any]] = None,
    ) -> Dict[str, List[Optional[float]]]:
        """
        Train the network on ``dataset``.

        Mini-batches are taken in order from the training split; every
        mini-batch is fully propagated and applied before the next one starts.
        After each epoch the validation split, if any, is evaluated.

        Parameters
        ----------
        dataset : DataSet
            Training data, with an optional validation split.
        epochs : int
            Number of passes over the training split.
        batch_size : int
            Number of samples per mini-batch; the last one may be smaller.
        metric : Metrics or str, optional
            Metric computed on the validation split.
        verbose : bool, default=True
            Log one INFO line per epoch.
        reporter : callable, optional
            Called with an :class:`EpochReport` after each epoch.

        Returns
        -------
        dict
            Per-epoch lists under ``"train_loss"``, ``"valid_loss"`` and
            ``"valid_metric"`` (``None`` entries without validation split or
            metric).

        Raises
        ------
        ConfigurationError
            If the network has no layers, the data set does not match the
            network shapes, or ``epochs``/``batch_size`` are not positive.
        """
        if not self.layers:
            raise ConfigurationError("Cannot fit a network without layers")
        if int(epochs) < 1:
            raise ConfigurationError(f"Number of epochs must be positive, got {epochs}")
        if metric is not None:
            metric = Metrics.from_name(metric)
        self._check_samples(dataset.x_train, dataset.y_train)
        has_valid = dataset.x_valid is not None and dataset.num_valid_samples > 0

        history = {"train_loss": [], "valid_loss": [], "valid_metric": []}
        batches = BatchIterator(dataset.x_train, dataset.y_train, batch_size)
        for epoch in range(1, int(epochs) + 1):
            total_loss = 0.0
            for x, y in batches:
                total_loss += self.train_batch(x, y) * x.shape[3]
            train_loss = total_loss / batches.num_samples + self.penalty()

            valid_loss = valid_metric = None
            if has_valid:
                valid_loss, valid_metric = self.evaluate(dataset.x_valid, dataset.y_valid, metric, batch_size)

            history["train_loss"].append(train_loss)
            history["valid_loss"].append(valid_loss)
            history["valid_metric"].append(valid_metric)

            report = EpochReport(epoch, train_loss, valid_metric, valid_loss)
            if reporter is not None:
                reporter(report)
            if verbose:
                msg = f"Epoch {epoch}/{epochs} - {report}"
                if valid_metric is not None:
                    msg += f" - {metric.value}: {valid_metric:.4f}"
                logger.info(msg)

        return history

    def save(self, path: str) -> None:
        """Write the network to an HDF5 checkpoint, see :func:`neuro.checkpoint.save_checkpoint`."""
        from neuro.checkpoint import save_checkpoint
        save_checkpoint(path, self)

    @staticmethod
    def load(path: str, device: str = "cpu") -> "Network":
        """Rebuild a network saved with :meth:`save`."""
        from neuro.checkpoint import load_checkpoint
        network, _ = load_checkpoint(path, device=device)
        return network
