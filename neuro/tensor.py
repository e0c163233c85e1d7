from typing import Any, Literal, NamedTuple, Optional, Tuple, Union

import numpy as np
try:
    import cupy as cp
    _HAS_CUPY = True
except Exception:
    cp = None
    _HAS_CUPY = False

def _is_cupy_array(x: Any) -> bool:
    """
    Return whether ``x`` is a CuPy ndarray.

    This is safe when CuPy is not installed: it short-circuits on ``_HAS_CUPY``.
    """
    return _HAS_CUPY and hasattr(cp, "ndarray") and isinstance(x, cp.ndarray)

_DeviceStr = Literal["cpu", "cuda"]
def _normalize_device(device: Optional[Union[str, _DeviceStr]]) -> Optional[_DeviceStr]:
    """
    Normalize a device specifier to 'cpu', 'cuda', or None.

    Parameters
    ----------
    device : {None, 'cpu', 'cuda', str}
        Device specifier. If a string starts with 'cuda' (e.g. 'cuda', 'cuda:0'),
        it is normalized to 'cuda'. 'cpu' is preserved. None is returned as None.

    Raises
    ------
    ValueError
        If ``device`` is a string that is neither 'cpu' nor startswith 'cuda'.

    Examples
    --------
    >>> _normalize_device('cuda:1')
    'cuda'
    >>> _normalize_device('gpu')
    Traceback (most recent call last):
        ...
    ValueError: Unknown device spec: 'gpu'
    """
    if device is None:
        return None
    if isinstance(device, str):
        dev = device.lower()
        if dev.startswith("cuda"):
            return "cuda"
        if dev == "cpu":
            return "cpu"
    raise ValueError(f"Unknown device spec: {device!r}")

def get_backend(device: Optional[str] = "cpu") -> Any:
    """
    Return the array module that executes operations for ``device``.

    The returned module (``numpy`` or ``cupy``) is the execution context handed
    to layers and tensors. Every numeric operation of the engine is issued
    through it, one at a time, in program order.

    Raises
    ------
    RuntimeError
        If CUDA is requested but CuPy is not installed/available.
    """
    if _normalize_device(device) == "cuda":
        if not _HAS_CUPY:
            raise RuntimeError("CUDA requested but CuPy is not installed/available.")
        return cp
    return np

def backend_device(backend: Any) -> _DeviceStr:
    """Return the device string matching an array module."""
    return "cuda" if _HAS_CUPY and backend is cp else "cpu"

def to_numpy(x: Any) -> np.ndarray:
    """Copy a backend array (NumPy or CuPy) to host memory."""
    if _is_cupy_array(x):
        return cp.asnumpy(x)
    return np.asarray(x)


class Dim(NamedTuple):
    """
    Shape of a tensor as ``(height, width, channels, batch)``.

    Flat feature vectors use ``(features, 1, 1, batch)``. Layer shapes report
    a batch size of 1.
    """
    height: int
    width: int
    channels: int
    batch: int = 1

    @classmethod
    def of(cls, shape: Tuple[int, ...]) -> "Dim":
        """Build a ``Dim`` from any shape of at most 4 axes, padding with ones."""
        if len(shape) > 4:
            raise ValueError(f"Tensors have at most 4 axes, got shape {tuple(shape)}")
        return cls(*(tuple(int(s) for s in shape) + (1,) * (4 - len(shape))))

    def sample(self) -> "Dim":
        """Return the same shape with the batch axis set to 1."""
        return self._replace(batch=1)

    def with_batch(self, batch: int) -> "Dim":
        return self._replace(batch=int(batch))

    @property
    def num_features(self) -> int:
        """Number of values in a single sample."""
        return self.height * self.width * self.channels

    def __str__(self):
        return f"({self.height}, {self.width}, {self.channels})"


class Tensor:
    """
    A 4-axis array laid out as ``(height, width, channels, batch)``.

    This class wraps a NumPy or CuPy array (selected per instance) without any
    graph tracking. Layers read ``.data`` and issue operations through
    ``.backend``; parameter tensors additionally carry ``.grad``, which the
    owning layer fills during its backward pass.

    Notes
    -----
    - Backend is chosen per tensor: CPU uses NumPy, CUDA uses CuPy.
    - DType is normalized to ``float32`` on construction.
    - Activations always use 4 axes; parameters keep their natural rank
      (e.g. ``[units, fan_in]`` for dense weights).
    """
    def __init__(
        self,
        data: Any,
        device: Optional[str] = None,
    ) -> None:
        """
        Construct a tensor from array-like data, selecting NumPy or CuPy as backend.

        Parameters
        ----------
        data : Any
            Array-like input (e.g., Python list/tuple, ``numpy.ndarray``,
            or ``cupy.ndarray``). If ``device`` is not provided, the backend
            is inferred from ``data``: CuPy if it is a CuPy array (and CuPy is
            available), otherwise NumPy. The data is converted to ``float32``.
        device : {'cpu', 'cuda', 'cuda:0', ...} or None, optional
            Desired device. If None, the device is inferred from ``data``.

        Raises
        ------
        RuntimeError
            If ``device`` requests CUDA but CuPy is not installed/available.
        ValueError
            If ``data`` has more than 4 axes.
        """
        dev = _normalize_device(device)

        if dev is not None:
            backend = get_backend(dev)
            data = backend.asarray(data, dtype=backend.float32)
        elif _is_cupy_array(data):
            backend = cp
            data = data.astype(cp.float32, copy=False)
        else:
            backend = np
            data = np.asarray(data, dtype=np.float32)

        if data.ndim > 4:
            raise ValueError(f"Tensors have at most 4 axes, got shape {data.shape}")

        self.backend = backend
        self.data = data
        self.grad = None

    @property
    def shape(self) -> Tuple[int, ...]:
        """tuple of int: The tensor's shape."""
        return self.data.shape

    @property
    def dims(self) -> Dim:
        """Dim: The tensor's shape as ``(height, width, channels, batch)``."""
        return Dim.of(self.data.shape)

    @property
    def dtype(self) -> Union[np.dtype, str]:
        return self.data.dtype

    @property
    def size(self) -> int:
        """int: Total number of elements in the tensor."""
        return self.data.size

    @property
    def device(self) -> _DeviceStr:
        return backend_device(self.backend)

    def __repr__(self):
        return f"Tensor(shape={self.shape}, device='{self.device}')"

    def numpy(self) -> np.ndarray:
        """Return the data as a host ``numpy.ndarray``."""
        return to_numpy(self.data)

    def zero_grad(self) -> None:
        """Reset the gradient buffer to zeros."""
        self.grad = self.backend.zeros_like(self.data)

    def batch(self, start: int, stop: int) -> "Tensor":
        """Return samples ``start:stop`` along the batch axis."""
        return Tensor(self.data[:, :, :, start:stop])

    def take(self, indices: Any) -> "Tensor":
        """Return the samples at ``indices`` along the batch axis."""
        return Tensor(self.backend.take(self.data, indices, axis=3))

    def to(self, device: str) -> "Tensor":
        """
        Move the tensor data (and gradient) to ``device``.

        Returns
        -------
        Tensor
            ``self``, to allow chaining.
        """
        backend = get_backend(device)
        if backend is self.backend:
            return self
        if backend is np:
            self.data = cp.asnumpy(self.data)
            self.grad = None if self.grad is None else cp.asnumpy(self.grad)
        else:
            self.data = cp.asarray(self.data)
            self.grad = None if self.grad is None else cp.asarray(self.grad)
        self.backend = backend
        return self

    @staticmethod
    def from_samples(
        x: Any,
        sample_shape: Optional[Tuple[int, ...]] = None,
        device: Optional[str] = None,
    ) -> "Tensor":
        """
        Build a tensor from a sample-major array (samples along axis 0).

        Parameters
        ----------
        x : array-like
            Array of shape ``(N, ...)``. A 2-D array ``(N, F)`` becomes
            ``(F, 1, 1, N)``; a 4-D array ``(N, H, W, C)`` becomes ``(H, W, C, N)``.
        sample_shape : tuple of int, optional
            Reshape each sample to this shape before moving the sample axis last.
        """
        backend = get_backend(device) if device is not None else (cp if _is_cupy_array(x) else np)
        x = backend.asarray(x, dtype=backend.float32)
        if x.ndim == 1:
            x = x.reshape(-1, 1)
        n = x.shape[0]
        if sample_shape is not None:
            x = x.reshape((n,) + tuple(sample_shape))
        if x.ndim > 4:
            raise ValueError(f"Samples have at most 3 axes, got shape {x.shape[1:]}")
        x = x.reshape(x.shape + (1,) * (4 - x.ndim))
        return Tensor(backend.moveaxis(x, 0, -1).copy())

    def to_samples(self) -> np.ndarray:
        """Inverse of :meth:`from_samples`: return a host array with samples on axis 0."""
        data = np.moveaxis(self.numpy(), -1, 0)
        h, w, c = data.shape[1:]
        if w == 1 and c == 1:
            return data.reshape(data.shape[0], h)
        return data

    @staticmethod
    def zeros(*shape: int, device: Optional[str] = None) -> "Tensor":
        backend = get_backend(device)
        return Tensor(backend.zeros(shape, dtype=backend.float32))

    @staticmethod
    def ones(*shape: int, device: Optional[str] = None) -> "Tensor":
        backend = get_backend(device)
        return Tensor(backend.ones(shape, dtype=backend.float32))

    @staticmethod
    def full(shape: Tuple[int, ...], value: float, device: Optional[str] = None) -> "Tensor":
        backend = get_backend(device)
        return Tensor(backend.full(shape, value, dtype=backend.float32))

    @staticmethod
    def normal(
        shape: Tuple[int, ...],
        mean: float = 0.0,
        std: float = 1.0,
        rng: Optional[np.random.Generator] = None,
        device: Optional[str] = None,
    ) -> "Tensor":
        """
        Sample a tensor from ``N(mean, std**2)``.

        Values are drawn on the host from ``rng`` so that results are
        reproducible regardless of the device, then moved to ``device``.
        """
        rng = np.random.default_rng() if rng is None else rng
        return Tensor(rng.normal(mean, std, size=shape), device=device or "cpu")

    @staticmethod
    def uniform(
        shape: Tuple[int, ...],
        low: float = -1.0,
        high: float = 1.0,
        rng: Optional[np.random.Generator] = None,
        device: Optional[str] = None,
    ) -> "Tensor":
        """Sample a tensor from ``U(low, high)`` (host RNG, see :meth:`normal`)."""
        rng = np.random.default_rng() if rng is None else rng
        return Tensor(rng.uniform(low, high, size=shape), device=device or "cpu")

    @staticmethod
    def shuffle_samples(
        x: "Tensor",
        y: "Tensor",
        rng: Optional[np.random.Generator] = None,
    ) -> Tuple["Tensor", "Tensor"]:
        """
        Apply the same random permutation to the samples of ``x`` and ``y``.

        Raises
        ------
        ValueError
            If the two tensors have a different number of samples.
        """
        n = x.shape[3]
        if y.shape[3] != n:
            raise ValueError(f"Sample counts differ: {n} vs {y.shape[3]}")
        rng = np.random.default_rng() if rng is None else rng
        perm = x.backend.asarray(rng.permutation(n))
        return x.take(perm), y.take(perm)
