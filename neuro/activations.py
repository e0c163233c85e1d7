"""Element-wise activation functions applied by Dense and Conv2D layers."""
from enum import Enum
from typing import Any

from neuro.errors import ProgrammerError


class Activation(Enum):
    """
    Activation applied to the linear output ``Z`` of a layer.

    ``apply`` maps ``Z`` to ``A``; ``derivative`` returns ``dA/dZ`` given both
    ``Z`` and ``A`` so that each function can use whichever is cheaper.

    Notes
    -----
    The derivative of ``SOFTMAX`` is reported as ones: the softmax layer is
    expected to feed a fused loss (see :class:`neuro.losses.SoftmaxCrossEntropy`)
    whose seed gradient is already taken with respect to ``Z``.
    """
    LINEAR = "linear"
    RELU = "relu"
    LEAKY_RELU = "leaky_relu"
    SIGMOID = "sigmoid"
    TANH = "tanh"
    SOFTMAX = "softmax"

    def apply(self, z: Any, xp: Any, axis: int = 0) -> Any:
        """
        Parameters
        ----------
        z : ndarray
            Linear output of the layer.
        xp : module
            Backend (``numpy`` or ``cupy``) that executes the operation.
        axis : int, default=0
            Class axis used by ``SOFTMAX``.
        """
        if self is Activation.LINEAR:
            return z
        if self is Activation.RELU:
            return xp.maximum(z, 0)
        if self is Activation.LEAKY_RELU:
            return xp.where(z > 0, z, LEAKY_SLOPE * z)
        if self is Activation.SIGMOID:
            return 1 / (1 + xp.exp(-xp.clip(z, -500, 500)))
        if self is Activation.TANH:
            return xp.tanh(z)
        # Subtract max for numerical stability
        e = xp.exp(z - xp.max(z, axis=axis, keepdims=True))
        return e / xp.sum(e, axis=axis, keepdims=True)

    def derivative(self, z: Any, a: Any, xp: Any) -> Any:
        if self is Activation.RELU:
            return (z > 0).astype(z.dtype)
        if self is Activation.LEAKY_RELU:
            return xp.where(z > 0, 1, LEAKY_SLOPE).astype(z.dtype)
        if self is Activation.SIGMOID:
            return a * (1 - a)
        if self is Activation.TANH:
            return 1 - a ** 2
        return xp.ones_like(z)

    @classmethod
    def from_tag(cls, tag: str) -> "Activation":
        try:
            return cls(tag)
        except ValueError:
            raise ProgrammerError(f"Unknown activation: {tag!r}") from None


LEAKY_SLOPE = 0.01
