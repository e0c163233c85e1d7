from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Type, Union

import h5py
import numpy as np

from neuro import io
from neuro.activations import Activation
from neuro.errors import ConfigurationError, ProgrammerError, RuntimeShapeError
from neuro.initializers import Initializer
from neuro.regularizers import Regularizer
from neuro.tensor import Dim, Tensor, get_backend

_LAYERS: Dict[str, Type["Layer"]] = {}

def _register(cls: Type["Layer"]) -> Type["Layer"]:
    _LAYERS[cls.name] = cls
    return cls

def _pair(value: Union[int, Tuple[int, int]]) -> Tuple[int, int]:
    pair = (value, value) if isinstance(value, int) else tuple(value)
    if len(pair) != 2 or any(int(v) < 1 for v in pair):
        raise ConfigurationError(f"Expected one or two positive integers, got {value!r}")
    return int(pair[0]), int(pair[1])


class Layer:
    """
    Base class for all layers of a :class:`neuro.models.Network`.

    A layer is built in two steps: the constructor stores its configuration,
    then :meth:`init_params` resolves shapes and allocates parameters once the
    shape of its input is known. Shapes are :class:`~neuro.tensor.Dim` values
    with a batch size of 1 and stay ``None`` until :meth:`init_params` ran.

    Contract
    --------
    - :meth:`forward` is stateless and used for inference.
    - :meth:`forward_train` computes the same output (up to training-only
      behaviour such as dropout) and caches what :meth:`backward` needs. The
      cache holds exactly one in-flight batch.
    - :meth:`backward` maps the gradient of the loss w.r.t. the output to the
      gradient w.r.t. the input and stores parameter gradients in
      ``param.grad`` for every tensor of :meth:`parameters`. It is only valid
      after a :meth:`forward_train` call with a matching batch.
    - :meth:`save` / :meth:`Layer.from_group` persist the configuration and
      parameters; cached state is never persisted.
    """
    name = "Layer"

    def __init__(self) -> None:
        self.input_shape: Optional[Dim] = None
        self.output_shape: Optional[Dim] = None
        self.backend: Any = np
        self.regularizer: Optional[Regularizer] = None

    def __repr__(self):
        return f"{self.__class__.__name__}()"

    def init_params(
        self,
        input_shape: Dim,
        device: str = "cpu",
        rng: Optional[np.random.Generator] = None,
    ) -> Dim:
        """
        Resolve the output shape and allocate parameters.

        Parameters
        ----------
        input_shape : Dim
            Shape of a single input sample.
        device : str, default='cpu'
            Device on which parameters live and operations run.
        rng : numpy.random.Generator, optional
            Source of randomness for parameter initialization.

        Returns
        -------
        Dim
            Shape of a single output sample.

        Raises
        ------
        ConfigurationError
            If the layer cannot accept ``input_shape``.
        """
        self.backend = get_backend(device)
        self.input_shape = Dim.of(input_shape).sample()
        self.output_shape = self._build(self.input_shape, rng)
        return self.output_shape

    def _build(self, input_shape: Dim, rng: Optional[np.random.Generator]) -> Dim:
        return input_shape

    def forward(self, x: Tensor) -> Tensor:
        raise NotImplementedError

    def forward_train(self, x: Tensor) -> Tensor:
        return self.forward(x)

    def backward(self, grad: Tensor) -> Tensor:
        raise NotImplementedError

    def parameters(self) -> List[Tensor]:
        """Trainable tensors, in a fixed order."""
        return []

    def num_parameters(self) -> int:
        return sum(p.size for p in self.parameters())

    def penalty(self) -> float:
        """Regularization term contributed to the loss (0 without regularizer)."""
        return 0.0

    def _check_input(self, x: Tensor) -> int:
        """Validate the input shape and return the batch size."""
        if self.input_shape is None:
            raise ProgrammerError(f"{self.name} layer used before init_params")
        if x.data.ndim != 4 or x.dims.sample() != self.input_shape:
            raise RuntimeShapeError(
                f"{self.name} layer expects samples of shape {self.input_shape}, got {tuple(x.shape)}"
            )
        return x.shape[3]

    def _check_grad(self, grad: Tensor, cache: Any, batch_size: int) -> None:
        if cache is None:
            raise ProgrammerError(f"{self.name}.backward called before forward_train")
        expected = self.output_shape.with_batch(batch_size)
        if tuple(grad.shape) != tuple(expected):
            raise RuntimeShapeError(
                f"{self.name} layer expects a gradient of shape {tuple(expected)}, got {tuple(grad.shape)}"
            )

    def save(self, group: h5py.Group) -> None:
        """Write the layer type, shapes, configuration and parameters to ``group``."""
        io.write_string(group, "layer_type", self.name)
        io.write_array(group, "input_shape", self.input_shape, dtype=np.int64)
        io.write_array(group, "output_shape", self.output_shape, dtype=np.int64)
        self._save(group)

    def _save(self, group: h5py.Group) -> None:
        pass

    @staticmethod
    def from_group(group: h5py.Group, device: str = "cpu") -> "Layer":
        """
        Rebuild a layer from a group written by :meth:`save`.

        Raises
        ------
        ProgrammerError
            If the stored layer type is unknown.
        """
        layer_type = io.read_string(group, "layer_type")
        cls = _LAYERS.get(layer_type)
        if cls is None:
            raise ProgrammerError(f"Unknown layer type: {layer_type!r}")
        layer = cls._from_group(group)
        layer.backend = get_backend(device)
        layer.input_shape = Dim(*(int(v) for v in io.read_array(group, "input_shape")))
        layer.output_shape = Dim(*(int(v) for v in io.read_array(group, "output_shape")))
        layer._load_params(group, device)
        return layer

    @classmethod
    def _from_group(cls, group: h5py.Group) -> "Layer":
        return cls()

    def _load_params(self, group: h5py.Group, device: str) -> None:
        pass


class _WeightedLayer(Layer):
    """Shared initialization, regularization and persistence of Dense and Conv2D."""

    def __init__(
        self,
        activation: Activation,
        weights_initializer: Initializer,
        biases_initializer: Initializer,
    ) -> None:
        super().__init__()
        self.activation = Activation(activation)
        self.weights_initializer = weights_initializer
        self.biases_initializer = biases_initializer
        self.weights: Optional[Tensor] = None
        self.biases: Optional[Tensor] = None

    def parameters(self) -> List[Tensor]:
        return [] if self.weights is None else [self.weights, self.biases]

    def penalty(self) -> float:
        if self.regularizer is None or self.weights is None:
            return 0.0
        return self.regularizer.penalty(self.weights.data, self.backend)

    def _init_weights(
        self,
        weights_shape: Tuple[int, ...],
        biases_shape: Tuple[int, ...],
        fan_in: int,
        fan_out: int,
        rng: Optional[np.random.Generator],
    ) -> None:
        device = "cuda" if self.backend is not np else "cpu"
        self.weights = self.weights_initializer.new_tensor(weights_shape, fan_in, fan_out, rng=rng, device=device)
        self.biases = self.biases_initializer.new_tensor(biases_shape, fan_in, fan_out, rng=rng, device=device)
        self.weights.zero_grad()
        self.biases.zero_grad()

    def _weights_grad(self, dw: Any) -> Any:
        if self.regularizer is not None:
            dw = dw + self.regularizer.grad(self.weights.data, self.backend)
        return dw

    def _save(self, group: h5py.Group) -> None:
        io.write_string(group, "activation", self.activation.value)
        for prefix, init in (("weights", self.weights_initializer), ("biases", self.biases_initializer)):
            kind, values = init.to_record()
            io.write_string(group, f"{prefix}_initializer", kind)
            io.write_array(group, f"{prefix}_initializer_values", values, dtype=np.float64)
        io.write_tensor(group, "weights", self.weights)
        io.write_tensor(group, "biases", self.biases)

    @staticmethod
    def _read_initializers(group: h5py.Group) -> Tuple[Initializer, Initializer]:
        return tuple(
            Initializer.from_record(
                io.read_string(group, f"{prefix}_initializer"),
                [float(v) for v in io.read_array(group, f"{prefix}_initializer_values")],
            )
            for prefix in ("weights", "biases")
        )

    def _load_params(self, group: h5py.Group, device: str) -> None:
        self.weights = io.read_tensor(group, "weights", device=device)
        self.biases = io.read_tensor(group, "biases", device=device)
        self.weights.zero_grad()
        self.biases.zero_grad()


@_register
class Dense(_WeightedLayer):
    """
    Fully-connected layer.

    Computes ``y = activation(W @ x + b)`` with ``W`` of shape ``[units, fan_in]``
    and ``b`` of shape ``[units, 1]``. Inputs are flat samples of shape
    ``(fan_in, 1, 1, batch)``; use :class:`Flatten` after convolutional layers.

    Parameters
    ----------
    units : int
        Number of output units.
    activation : Activation, default=Activation.LINEAR
        Activation applied to the linear output.
    weights_initializer : Initializer, default=HeUniform
    biases_initializer : Initializer, default=Zeros

    Notes
    -----
    Backward pass, with ``n`` the batch size::

        dZ = dA * activation'(Z)
        dW = (dZ @ x.T) / n + regularizer'(W)
        db = mean(dZ, over batch)
        dX = W.T @ dZ
    """
    name = "Dense"

    def __init__(
        self,
        units: int,
        activation: Activation = Activation.LINEAR,
        weights_initializer: Optional[Initializer] = None,
        biases_initializer: Optional[Initializer] = None,
    ) -> None:
        super().__init__(
            activation,
            weights_initializer or Initializer.he_uniform(),
            biases_initializer or Initializer.zeros(),
        )
        if int(units) < 1:
            raise ConfigurationError(f"Dense layer needs at least one unit, got {units}")
        self.units = int(units)
        self._cache = None

    def __repr__(self):
        return f"{self.__class__.__name__}(units={self.units}, activation={self.activation.value})"

    def _build(self, input_shape, rng):
        if input_shape.width != 1 or input_shape.channels != 1:
            raise ConfigurationError(
                f"Dense layer expects flat inputs (features, 1, 1), got {input_shape}; add a Flatten layer first"
            )
        fan_in = input_shape.height
        self._init_weights((self.units, fan_in), (self.units, 1), fan_in, self.units, rng)
        return Dim(self.units, 1, 1)

    def _linear(self, x: Tensor) -> Tuple[Any, Any, int]:
        n = self._check_input(x)
        x2 = x.data.reshape(self.input_shape.height, n)
        return x2, self.backend.matmul(self.weights.data, x2) + self.biases.data, n

    def forward(self, x: Tensor) -> Tensor:
        _, z, n = self._linear(x)
        a = self.activation.apply(z, self.backend)
        return Tensor(a.reshape(self.units, 1, 1, n))

    def forward_train(self, x: Tensor) -> Tensor:
        x2, z, n = self._linear(x)
        a = self.activation.apply(z, self.backend)
        self._cache = (x2.copy(), z, a)
        return Tensor(a.reshape(self.units, 1, 1, n))

    def backward(self, grad: Tensor) -> Tensor:
        batch_size = self._cache[0].shape[1] if self._cache is not None else 0
        self._check_grad(grad, self._cache, batch_size)
        xp = self.backend
        x2, z, a = self._cache

        dz = grad.data.reshape(self.units, batch_size) * self.activation.derivative(z, a, xp)
        self.weights.grad = self._weights_grad(xp.matmul(dz, x2.T) / batch_size)
        self.biases.grad = xp.mean(dz, axis=1, keepdims=True)
        dx = xp.matmul(self.weights.data.T, dz)
        return Tensor(dx.reshape(self.input_shape.with_batch(batch_size)))

    def _save(self, group):
        io.write_scalar(group, "units", self.units, dtype=np.int64)
        super()._save(group)

    @classmethod
    def _from_group(cls, group):
        weights_init, biases_init = cls._read_initializers(group)
        return cls(
            io.read_scalar(group, "units", int),
            Activation.from_tag(io.read_string(group, "activation")),
            weights_init,
            biases_init,
        )


class Padding(Enum):
    """
    Padding applied to the inputs of a :class:`Conv2D` layer.

    - ``SAME``: zero-pad so that ``out = ceil(in / stride)``.
    - ``VALID``: no padding, ``out = floor((in - kernel) / stride) + 1``.
    """
    SAME = "same"
    VALID = "valid"


def conv_output_size(size: int, kernel: int, stride: int, padding: Padding) -> Tuple[int, int, int]:
    """
    Return ``(out, pad_leading, pad_trailing)`` along one spatial axis.

    For ``SAME`` padding, ``pad = max(0, (out - 1) * stride + kernel - size)``
    and the odd pixel, if any, goes to the trailing side. Callers swap the two
    pads for the width axis, where the odd pixel goes to the leading side.
    """
    if padding is Padding.SAME:
        out = -(-size // stride)
        pad = max(0, (out - 1) * stride + kernel - size)
        return out, pad // 2, pad - pad // 2
    if size < kernel:
        raise ConfigurationError(f"Kernel of size {kernel} does not fit an input of size {size}")
    return (size - kernel) // stride + 1, 0, 0


def im2col(
    x_pad: Any,
    kh: int, kw: int,
    sh: int, sw: int,
    h_out: int, w_out: int,
    xp: Any,
) -> Any:
    """
    Rearrange receptive fields of a padded image batch into columns.

    Parameters
    ----------
    x_pad : ndarray
        Padded input of shape ``(H, W, C, N)``.
    kh, kw : int
        Kernel height and width.
    sh, sw : int
        Strides.
    h_out, w_out : int
        Output spatial size.
    xp : module
        Backend executing the operation.

    Returns
    -------
    ndarray
        Matrix of shape ``(kh*kw*C, h_out*w_out*N)``. Rows are ordered
        ``(ky, kx, c)``; columns are ordered ``(i, j, n)``.
    """
    c, n = x_pad.shape[2], x_pad.shape[3]
    cols = xp.empty((kh, kw, c, h_out, w_out, n), dtype=x_pad.dtype)
    for ky in range(kh):
        y1 = ky + sh * h_out
        for kx in range(kw):
            x1 = kx + sw * w_out
            cols[ky, kx] = x_pad[ky:y1:sh, kx:x1:sw].transpose(2, 0, 1, 3)
    return cols.reshape(kh * kw * c, h_out * w_out * n)


def col2img(
    cols: Any,
    padded_shape: Tuple[int, int, int, int],
    kh: int, kw: int,
    sh: int, sw: int,
    h_out: int, w_out: int,
    xp: Any,
) -> Any:
    """
    Inverse of :func:`im2col`: fold columns back into a padded image batch.

    Values of overlapping receptive fields are summed, which makes this the
    adjoint of :func:`im2col` and therefore the input gradient of a
    convolution when applied to ``W.T @ dZ``.
    """
    c, n = padded_shape[2], padded_shape[3]
    cols = cols.reshape(kh, kw, c, h_out, w_out, n)
    img = xp.zeros(padded_shape, dtype=cols.dtype)
    for ky in range(kh):
        y1 = ky + sh * h_out
        for kx in range(kw):
            x1 = kx + sw * w_out
            img[ky:y1:sh, kx:x1:sw] += cols[ky, kx].transpose(1, 2, 0, 3)
    return img


@_register
class Conv2D(_WeightedLayer):
    """
    2D convolution layer on ``(H, W, C, N)`` inputs, computed with im2col.

    Parameters
    ----------
    num_filters : int
        Number of output channels.
    kernel_size : int or tuple[int, int]
        Kernel height and width.
    stride : int or tuple[int, int], default=1
        Stride along height and width.
    padding : Padding, default=Padding.VALID
        ``SAME`` pads the bottom side with the odd row and the left side with
        the odd column when the total padding is odd.
    activation : Activation, default=Activation.LINEAR
    weights_initializer : Initializer, default=HeNormal
    biases_initializer : Initializer, default=Zeros

    Notes
    -----
    Weights have shape ``[num_filters, kh*kw*C]`` with the columns ordered
    ``(ky, kx, c)``. ``fan_in = kh*kw*C`` and ``fan_out = kh*kw*num_filters``.

    Backward pass::

        dW = dZ_cols @ cols.T + regularizer'(W)
        db = sum(dZ, over batch and positions)
        dX = col2img(W.T @ dZ_cols), padding removed

    Unlike :class:`Dense`, the parameter gradients are sums over the batch;
    the loss seed already carries the ``1 / batch_size`` factor.
    """
    name = "Conv2D"

    def __init__(
        self,
        num_filters: int,
        kernel_size: Union[int, Tuple[int, int]],
        stride: Union[int, Tuple[int, int]] = 1,
        padding: Padding = Padding.VALID,
        activation: Activation = Activation.LINEAR,
        weights_initializer: Optional[Initializer] = None,
        biases_initializer: Optional[Initializer] = None,
    ) -> None:
        super().__init__(
            activation,
            weights_initializer or Initializer.he_normal(),
            biases_initializer or Initializer.zeros(),
        )
        if int(num_filters) < 1:
            raise ConfigurationError(f"Conv2D layer needs at least one filter, got {num_filters}")
        self.num_filters = int(num_filters)
        self.kernel_size = _pair(kernel_size)
        self.stride = _pair(stride)
        self.padding = Padding(padding)
        self.pads: Optional[Tuple[int, int, int, int]] = None
        self._cache = None

    def __repr__(self):
        return (f"{self.__class__.__name__}({self.num_filters}, kernel_size={self.kernel_size}, "
                f"stride={self.stride}, padding={self.padding.value}, activation={self.activation.value})")

    def _build(self, input_shape, rng):
        kh, kw = self.kernel_size
        sh, sw = self.stride
        h_out, top, bottom = conv_output_size(input_shape.height, kh, sh, self.padding)
        w_out, right, left = conv_output_size(input_shape.width, kw, sw, self.padding)
        self.pads = (top, bottom, left, right)

        c = input_shape.channels
        self._init_weights(
            (self.num_filters, kh * kw * c), (self.num_filters, 1),
            kh * kw * c, kh * kw * self.num_filters, rng,
        )
        return Dim(h_out, w_out, self.num_filters)

    def _pad(self, x: Any) -> Any:
        top, bottom, left, right = self.pads
        if top == bottom == left == right == 0:
            return x
        return self.backend.pad(x, ((top, bottom), (left, right), (0, 0), (0, 0)), mode="constant")

    def _linear(self, x: Tensor) -> Tuple[Any, Any, Tuple[int, ...]]:
        n = self._check_input(x)
        x_pad = self._pad(x.data)
        kh, kw = self.kernel_size
        sh, sw = self.stride
        h_out, w_out = self.output_shape.height, self.output_shape.width
        cols = im2col(x_pad, kh, kw, sh, sw, h_out, w_out, self.backend)
        z = self.backend.matmul(self.weights.data, cols) + self.biases.data
        return cols, self._to_image(z, n), x_pad.shape

    def _to_image(self, z: Any, n: int) -> Any:
        h_out, w_out = self.output_shape.height, self.output_shape.width
        return z.reshape(self.num_filters, h_out, w_out, n).transpose(1, 2, 0, 3)

    def forward(self, x: Tensor) -> Tensor:
        _, z, _ = self._linear(x)
        return Tensor(self.activation.apply(z, self.backend, axis=2))

    def forward_train(self, x: Tensor) -> Tensor:
        cols, z, padded_shape = self._linear(x)
        a = self.activation.apply(z, self.backend, axis=2)
        self._cache = (cols, padded_shape, z, a)
        return Tensor(a)

    def backward(self, grad: Tensor) -> Tensor:
        batch_size = self._cache[1][3] if self._cache is not None else 0
        self._check_grad(grad, self._cache, batch_size)
        xp = self.backend
        cols, padded_shape, z, a = self._cache
        kh, kw = self.kernel_size
        sh, sw = self.stride
        h_out, w_out = self.output_shape.height, self.output_shape.width

        dz = grad.data * self.activation.derivative(z, a, xp)
        dz_cols = dz.transpose(2, 0, 1, 3).reshape(self.num_filters, -1)
        self.weights.grad = self._weights_grad(xp.matmul(dz_cols, cols.T))
        self.biases.grad = xp.sum(dz_cols, axis=1, keepdims=True)

        dcols = xp.matmul(self.weights.data.T, dz_cols)
        dx_pad = col2img(dcols, padded_shape, kh, kw, sh, sw, h_out, w_out, xp)
        top, _, left, _ = self.pads
        h, w = self.input_shape.height, self.input_shape.width
        return Tensor(xp.ascontiguousarray(dx_pad[top:top + h, left:left + w]))

    def _save(self, group):
        io.write_scalar(group, "num_filters", self.num_filters, dtype=np.int64)
        io.write_array(group, "kernel_size", self.kernel_size, dtype=np.int64)
        io.write_array(group, "stride", self.stride, dtype=np.int64)
        io.write_string(group, "padding", self.padding.value)
        io.write_array(group, "padding_size", self.pads, dtype=np.int64)
        super()._save(group)

    @classmethod
    def _from_group(cls, group):
        weights_init, biases_init = cls._read_initializers(group)
        try:
            padding = Padding(io.read_string(group, "padding"))
        except ValueError as e:
            raise ProgrammerError(str(e)) from e
        layer = cls(
            io.read_scalar(group, "num_filters", int),
            tuple(int(v) for v in io.read_array(group, "kernel_size")),
            tuple(int(v) for v in io.read_array(group, "stride")),
            padding,
            Activation.from_tag(io.read_string(group, "activation")),
            weights_init,
            biases_init,
        )
        layer.pads = tuple(int(v) for v in io.read_array(group, "padding_size"))
        return layer


@_register
class MaxPool2D(Layer):
    """
    2D max pooling without padding.

    Parameters
    ----------
    pool_size : int or tuple[int, int]
        Height and width of the pooling window.
    stride : int or tuple[int, int], optional
        Defaults to ``pool_size`` (non-overlapping windows).

    Notes
    -----
    ``forward_train`` records the row and column of the winning element inside
    each window (the first maximum on ties). ``backward`` routes each upstream
    gradient entirely to that element; gradients of overlapping windows add up.
    """
    name = "MaxPool2D"

    def __init__(
        self,
        pool_size: Union[int, Tuple[int, int]],
        stride: Optional[Union[int, Tuple[int, int]]] = None,
    ) -> None:
        super().__init__()
        self.pool_size = _pair(pool_size)
        self.stride = self.pool_size if stride is None else _pair(stride)
        self._cache = None

    def __repr__(self):
        return f"{self.__class__.__name__}(pool_size={self.pool_size}, stride={self.stride})"

    def _build(self, input_shape, rng):
        (ph, pw), (sh, sw) = self.pool_size, self.stride
        h_out, _, _ = conv_output_size(input_shape.height, ph, sh, Padding.VALID)
        w_out, _, _ = conv_output_size(input_shape.width, pw, sw, Padding.VALID)
        return Dim(h_out, w_out, input_shape.channels)

    def _windows(self, x: Tensor) -> Any:
        """Stack the window elements: ``(ph*pw, h_out, w_out, C, N)``."""
        self._check_input(x)
        (ph, pw), (sh, sw) = self.pool_size, self.stride
        h_out, w_out = self.output_shape.height, self.output_shape.width
        return self.backend.stack([
            x.data[py:py + sh * h_out:sh, px:px + sw * w_out:sw]
            for py in range(ph)
            for px in range(pw)
        ])

    def forward(self, x: Tensor) -> Tensor:
        return Tensor(self.backend.max(self._windows(x), axis=0))

    def forward_train(self, x: Tensor) -> Tensor:
        windows = self._windows(x)
        winner = self.backend.argmax(windows, axis=0)
        pw = self.pool_size[1]
        self._cache = (winner // pw, winner % pw)
        return Tensor(self.backend.take_along_axis(windows, winner[None], axis=0)[0])

    def backward(self, grad: Tensor) -> Tensor:
        batch_size = self._cache[0].shape[3] if self._cache is not None else 0
        self._check_grad(grad, self._cache, batch_size)
        xp = self.backend
        rows, cols = self._cache
        (ph, pw), (sh, sw) = self.pool_size, self.stride
        h_out, w_out = self.output_shape.height, self.output_shape.width

        dx = xp.zeros(self.input_shape.with_batch(batch_size), dtype=grad.data.dtype)
        for py in range(ph):
            for px in range(pw):
                routed = xp.where((rows == py) & (cols == px), grad.data, 0)
                dx[py:py + sh * h_out:sh, px:px + sw * w_out:sw] += routed
        return Tensor(dx)

    def _save(self, group):
        io.write_array(group, "pool_size", self.pool_size, dtype=np.int64)
        io.write_array(group, "stride", self.stride, dtype=np.int64)

    @classmethod
    def _from_group(cls, group):
        return cls(
            tuple(int(v) for v in io.read_array(group, "pool_size")),
            tuple(int(v) for v in io.read_array(group, "stride")),
        )


@_register
class Flatten(Layer):
    """Reshape ``(h, w, c, batch)`` to ``(h*w*c, 1, 1, batch)``."""
    name = "Flatten"

    def __init__(self) -> None:
        super().__init__()
        self._batch_size = None

    def _build(self, input_shape, rng):
        return Dim(input_shape.num_features, 1, 1)

    def forward(self, x: Tensor) -> Tensor:
        n = self._check_input(x)
        return Tensor(x.data.reshape(self.output_shape.with_batch(n)))

    def forward_train(self, x: Tensor) -> Tensor:
        self._batch_size = x.shape[3]
        return self.forward(x)

    def backward(self, grad: Tensor) -> Tensor:
        n = self._batch_size or 0
        self._check_grad(grad, self._batch_size, n)
        return Tensor(grad.data.reshape(self.input_shape.with_batch(n)))


@_register
class Dropout(Layer):
    """
    Inverted dropout.

    During training each element is kept with probability
    ``keep = 1 - drop_rate`` and survivors are scaled by ``1 / keep``, so that
    inference is the identity. The mask is drawn from a generator owned by the
    layer; pass ``seed`` (or ``rng``) for reproducible masks.

    Parameters
    ----------
    drop_rate : float
        Probability of zeroing an element, in ``[0, 1]``.
    seed : int, optional
        Seed of the layer's generator.
    rng : numpy.random.Generator, optional
        Generator to use instead of creating one from ``seed``.

    Raises
    ------
    ConfigurationError
        If ``drop_rate`` is outside ``[0, 1]``.
    """
    name = "Dropout"

    def __init__(
        self,
        drop_rate: float,
        seed: Optional[int] = None,
        rng: Optional[np.random.Generator] = None,
    ) -> None:
        super().__init__()
        if not 0.0 <= drop_rate <= 1.0:
            raise ConfigurationError(f"Dropout rate must be in [0, 1], got {drop_rate}")
        self.drop_rate = float(drop_rate)
        self.seed = seed
        self.rng = rng if rng is not None else np.random.default_rng(seed)
        self._mask = None

    def __repr__(self):
        return f"{self.__class__.__name__}(drop_rate={self.drop_rate})"

    def forward(self, x: Tensor) -> Tensor:
        self._check_input(x)
        return x

    def forward_train(self, x: Tensor) -> Tensor:
        self._check_input(x)
        keep = 1.0 - self.drop_rate
        if keep > 0:
            mask = (self.rng.random(x.shape) < keep).astype(np.float32) / np.float32(keep)
        else:
            mask = np.zeros(x.shape, dtype=np.float32)
        self._mask = self.backend.asarray(mask)
        return Tensor(x.data * self._mask)

    def backward(self, grad: Tensor) -> Tensor:
        batch_size = self._mask.shape[3] if self._mask is not None else 0
        self._check_grad(grad, self._mask, batch_size)
        return Tensor(grad.data * self._mask)

    def _save(self, group):
        io.write_scalar(group, "drop_rate", self.drop_rate)
        io.write_scalar(group, "seed", -1 if self.seed is None else self.seed, dtype=np.int64)

    @classmethod
    def _from_group(cls, group):
        seed = io.read_scalar(group, "seed", int)
        return cls(io.read_scalar(group, "drop_rate"), seed=None if seed < 0 else seed)


@_register
class BatchNorm(Layer):
    """
    Batch normalization.

    Normalizes each channel (the channel axis of image inputs, or each
    feature of flat inputs) with the statistics of the current batch during
    training, then applies a learnable scale ``gamma`` and shift ``beta``.
    Exponential moving averages of the batch statistics are kept for
    inference::

        running = momentum * running + (1 - momentum) * batch_statistic

    Parameters
    ----------
    momentum : float, default=0.99
        Decay of the moving averages, in ``[0, 1)``.
    eps : float, default=1e-5
        Added to the variance for numerical stability.

    Notes
    -----
    The running variance is updated with the unbiased batch variance.
    Gradients of ``gamma`` and ``beta`` are averaged over the batch, like the
    weight gradients of :class:`Dense`.
    """
    name = "BatchNorm"

    def __init__(self, momentum: float = 0.99, eps: float = 1e-5) -> None:
        super().__init__()
        if not 0.0 <= momentum < 1.0:
            raise ConfigurationError(f"Momentum must be in [0, 1), got {momentum}")
        if eps <= 0:
            raise ConfigurationError(f"Epsilon must be positive, got {eps}")
        self.momentum = float(momentum)
        self.eps = float(eps)
        self.gamma: Optional[Tensor] = None
        self.beta: Optional[Tensor] = None
        self.running_mean: Optional[Tensor] = None
        self.running_var: Optional[Tensor] = None
        self._cache = None

    def __repr__(self):
        return f"{self.__class__.__name__}(momentum={self.momentum}, eps={self.eps})"

    def _channel_axis(self) -> int:
        shape = self.input_shape
        return 0 if shape.width == 1 and shape.channels == 1 else 2

    def _reduce_axes(self) -> Tuple[int, ...]:
        return tuple(i for i in range(4) if i != self._channel_axis())

    def _broadcast(self, v: Any) -> Any:
        shape = [1, 1, 1, 1]
        shape[self._channel_axis()] = -1
        return v.reshape(shape)

    def _build(self, input_shape, rng):
        num_channels = input_shape[self._channel_axis()]
        device = "cuda" if self.backend is not np else "cpu"
        self.gamma = Tensor.ones(num_channels, device=device)
        self.beta = Tensor.zeros(num_channels, device=device)
        self.running_mean = Tensor.zeros(num_channels, device=device)
        self.running_var = Tensor.ones(num_channels, device=device)
        self.gamma.zero_grad()
        self.beta.zero_grad()
        return input_shape

    def parameters(self) -> List[Tensor]:
        return [] if self.gamma is None else [self.gamma, self.beta]

    def forward(self, x: Tensor) -> Tensor:
        self._check_input(x)
        mean = self._broadcast(self.running_mean.data)
        var = self._broadcast(self.running_var.data)
        x_hat = (x.data - mean) / self.backend.sqrt(var + self.eps)
        return Tensor(self._broadcast(self.gamma.data) * x_hat + self._broadcast(self.beta.data))

    def forward_train(self, x: Tensor) -> Tensor:
        self._check_input(x)
        xp = self.backend
        axes = self._reduce_axes()
        m = x.size // self.gamma.size

        mean = xp.mean(x.data, axis=axes, keepdims=True)
        var = xp.var(x.data, axis=axes, keepdims=True)
        inv_std = 1 / xp.sqrt(var + self.eps)
        x_hat = (x.data - mean) * inv_std

        unbiased = var * (m / (m - 1)) if m > 1 else var
        self.running_mean.data = self.momentum * self.running_mean.data + (1 - self.momentum) * mean.reshape(-1)
        self.running_var.data = self.momentum * self.running_var.data + (1 - self.momentum) * unbiased.reshape(-1)

        self._cache = (x_hat, inv_std, x.shape[3])
        return Tensor(self._broadcast(self.gamma.data) * x_hat + self._broadcast(self.beta.data))

    def backward(self, grad: Tensor) -> Tensor:
        batch_size = self._cache[2] if self._cache is not None else 0
        self._check_grad(grad, self._cache, batch_size)
        xp = self.backend
        x_hat, inv_std, _ = self._cache
        axes = self._reduce_axes()
        m = x_hat.size // self.gamma.size
        dy = grad.data

        self.gamma.grad = xp.sum(dy * x_hat, axis=axes) / batch_size
        self.beta.grad = xp.sum(dy, axis=axes) / batch_size

        dx_hat = dy * self._broadcast(self.gamma.data)
        dx = (inv_std / m) * (
            m * dx_hat
            - xp.sum(dx_hat, axis=axes, keepdims=True)
            - x_hat * xp.sum(dx_hat * x_hat, axis=axes, keepdims=True)
        )
        return Tensor(dx)

    def _save(self, group):
        io.write_scalar(group, "momentum", self.momentum)
        io.write_scalar(group, "eps", self.eps)
        io.write_tensor(group, "gamma", self.gamma)
        io.write_tensor(group, "beta", self.beta)
        io.write_tensor(group, "running_mean", self.running_mean)
        io.write_tensor(group, "running_var", self.running_var)

    @classmethod
    def _from_group(cls, group):
        return cls(io.read_scalar(group, "momentum"), io.read_scalar(group, "eps"))

    def _load_params(self, group, device):
        self.gamma = io.read_tensor(group, "gamma", device=device)
        self.beta = io.read_tensor(group, "beta", device=device)
        self.running_mean = io.read_tensor(group, "running_mean", device=device)
        self.running_var = io.read_tensor(group, "running_var", device=device)
        self.gamma.zero_grad()
        self.beta.zero_grad()
