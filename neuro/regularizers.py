"""Weight penalties added to the loss of layers with weights."""
from typing import Any

from neuro.errors import ConfigurationError, ProgrammerError


class Regularizer:
    """
    Base class for weight regularizers.

    A regularizer contributes ``penalty(w)`` to the training loss and
    ``grad(w)`` to the weight gradient of every Dense and Conv2D layer of the
    network it is attached to. Biases are never regularized.
    """
    tag = ""

    def __init__(self, lambd: float) -> None:
        if lambd < 0:
            raise ConfigurationError(f"Regularization factor must be non-negative, got {lambd}")
        self.lambd = float(lambd)

    def __repr__(self):
        return f"{self.__class__.__name__}({self.lambd})"

    def penalty(self, w: Any, xp: Any) -> float:
        raise NotImplementedError

    def grad(self, w: Any, xp: Any) -> Any:
        raise NotImplementedError

    @staticmethod
    def from_record(tag: str, lambd: float) -> "Regularizer":
        for cls in (L1, L2):
            if cls.tag == tag:
                return cls(lambd)
        raise ProgrammerError(f"Unknown regularizer: {tag!r}")


class L1(Regularizer):
    """``lambda * sum(|w|)``"""
    tag = "l1"

    def penalty(self, w, xp):
        return self.lambd * float(xp.sum(xp.abs(w)))

    def grad(self, w, xp):
        return self.lambd * xp.sign(w)


class L2(Regularizer):
    """``lambda / 2 * sum(w**2)``"""
    tag = "l2"

    def penalty(self, w, xp):
        return 0.5 * self.lambd * float(xp.sum(w * w))

    def grad(self, w, xp):
        return self.lambd * w
