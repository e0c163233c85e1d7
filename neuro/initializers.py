"""Parameter initialization policies."""
import math
from typing import Optional, Sequence, Tuple

import numpy as np

from neuro.errors import ConfigurationError, ProgrammerError
from neuro.tensor import Tensor

# tag -> number of values the policy carries
_KINDS = {
    "constant": 1,
    "glorot_normal": 0,
    "glorot_uniform": 0,
    "he_normal": 0,
    "he_uniform": 0,
    "lecun_normal": 0,
    "lecun_uniform": 0,
    "normal": 0,
    "normal_scaled": 2,
    "ones": 0,
    "uniform": 0,
    "uniform_bounded": 2,
    "zeros": 0,
}


class Initializer:
    """
    Generates the initial values of a parameter tensor.

    An initializer is identified by a tag and an optional list of values,
    which is also how it is written to a checkpoint.

    Parameters
    ----------
    kind : str
        One of ``constant``, ``glorot_normal``, ``glorot_uniform``,
        ``he_normal``, ``he_uniform``, ``lecun_normal``, ``lecun_uniform``,
        ``normal``, ``normal_scaled``, ``ones``, ``uniform``,
        ``uniform_bounded``, ``zeros``.
    *values : float
        ``constant`` takes the value, ``normal_scaled`` takes ``(mean, std)``
        and ``uniform_bounded`` takes ``(low, high)``.

    Notes
    -----
    Scale rules (``fan_in``/``fan_out`` are supplied by the layer):

    - Glorot: normal std ``sqrt(2/(fan_in+fan_out))``, uniform limit ``sqrt(6/(fan_in+fan_out))``
    - He: normal std ``sqrt(2/fan_in)``, uniform limit ``sqrt(6/fan_in)``
    - Lecun: normal std ``sqrt(1/fan_in)``, uniform limit ``sqrt(3/fan_in)``
    - ``normal`` is ``N(0, 0.01)`` and ``uniform`` is ``U(-0.01, 0.01)``
    """
    def __init__(self, kind: str, *values: float) -> None:
        if kind not in _KINDS:
            raise ConfigurationError(f"Unknown initializer: {kind!r}")
        if len(values) != _KINDS[kind]:
            raise ConfigurationError(f"Initializer {kind!r} takes {_KINDS[kind]} values, got {len(values)}")
        if kind == "normal_scaled" and values[1] < 0:
            raise ConfigurationError("Standard deviation must be non-negative")
        if kind == "uniform_bounded" and values[0] > values[1]:
            raise ConfigurationError(f"Lower bound {values[0]} is larger than upper bound {values[1]}")
        self.kind = kind
        self.values = tuple(float(v) for v in values)

    def __repr__(self):
        args = ", ".join(repr(v) for v in self.values)
        return f"{self.__class__.__name__}({self.kind}{', ' + args if args else ''})"

    def __eq__(self, other):
        return isinstance(other, Initializer) and (self.kind, self.values) == (other.kind, other.values)

    @classmethod
    def constant(cls, value: float) -> "Initializer":
        return cls("constant", value)

    @classmethod
    def glorot_normal(cls) -> "Initializer":
        return cls("glorot_normal")

    @classmethod
    def glorot_uniform(cls) -> "Initializer":
        return cls("glorot_uniform")

    @classmethod
    def he_normal(cls) -> "Initializer":
        return cls("he_normal")

    @classmethod
    def he_uniform(cls) -> "Initializer":
        return cls("he_uniform")

    @classmethod
    def lecun_normal(cls) -> "Initializer":
        return cls("lecun_normal")

    @classmethod
    def lecun_uniform(cls) -> "Initializer":
        return cls("lecun_uniform")

    @classmethod
    def normal(cls) -> "Initializer":
        return cls("normal")

    @classmethod
    def normal_scaled(cls, mean: float, std: float) -> "Initializer":
        return cls("normal_scaled", mean, std)

    @classmethod
    def ones(cls) -> "Initializer":
        return cls("ones")

    @classmethod
    def uniform(cls) -> "Initializer":
        return cls("uniform")

    @classmethod
    def uniform_bounded(cls, low: float, high: float) -> "Initializer":
        return cls("uniform_bounded", low, high)

    @classmethod
    def zeros(cls) -> "Initializer":
        return cls("zeros")

    def new_tensor(
        self,
        shape: Tuple[int, ...],
        fan_in: int,
        fan_out: int,
        rng: Optional[np.random.Generator] = None,
        device: Optional[str] = "cpu",
    ) -> Tensor:
        """
        Create a tensor of ``shape`` filled according to this policy.

        Parameters
        ----------
        shape : tuple of int
            Shape of the parameter.
        fan_in, fan_out : int
            Number of input and output units of the layer.
        rng : numpy.random.Generator, optional
            Source of randomness. A fresh unseeded generator is used if None.
        device : str, default='cpu'
            Device of the returned tensor.
        """
        kind = self.kind
        if kind == "constant":
            return Tensor.full(shape, self.values[0], device=device)
        if kind == "ones":
            return Tensor.ones(*shape, device=device)
        if kind == "zeros":
            return Tensor.zeros(*shape, device=device)
        if kind == "normal":
            return Tensor.normal(shape, 0.0, 0.01, rng=rng, device=device)
        if kind == "normal_scaled":
            return Tensor.normal(shape, self.values[0], self.values[1], rng=rng, device=device)
        if kind == "uniform":
            return Tensor.uniform(shape, -0.01, 0.01, rng=rng, device=device)
        if kind == "uniform_bounded":
            return Tensor.uniform(shape, self.values[0], self.values[1], rng=rng, device=device)

        family, distribution = kind.split("_")
        if family == "glorot":
            fan = (fan_in + fan_out) / 2
        elif family == "he":
            fan = fan_in / 2
        else:
            fan = fan_in
        if distribution == "normal":
            return Tensor.normal(shape, 0.0, math.sqrt(1.0 / fan), rng=rng, device=device)
        limit = math.sqrt(3.0 / fan)
        return Tensor.uniform(shape, -limit, limit, rng=rng, device=device)

    def to_record(self) -> Tuple[str, Sequence[float]]:
        """Return the ``(tag, values)`` pair stored in checkpoints."""
        return self.kind, self.values

    @classmethod
    def from_record(cls, kind: str, values: Sequence[float]) -> "Initializer":
        """
        Rebuild an initializer from a checkpoint record.

        Raises
        ------
        ProgrammerError
            If the tag or the number of values is not recognised.
        """
        try:
            return cls(kind, *values)
        except ConfigurationError as e:
            raise ProgrammerError(f"Invalid initializer record {kind!r}: {e}") from e
