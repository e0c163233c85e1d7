"""Metrics used to assess a network on a validation or test set."""
from enum import Enum

from neuro.errors import ConfigurationError, RuntimeShapeError
from neuro.tensor import Tensor


class Metrics(Enum):
    """
    Metrics reported by :meth:`neuro.models.Network.fit`.

    Only the accuracy is currently implemented.
    """
    ACCURACY = "accuracy"

    @classmethod
    def from_name(cls, name) -> "Metrics":
        try:
            return cls(name)
        except ValueError:
            raise ConfigurationError(f"Unknown metric: {name!r}") from None

    def eval(self, y_pred: Tensor, y_true: Tensor) -> float:
        return accuracy(y_pred, y_true)


def accuracy(y_pred: Tensor, y_true: Tensor) -> float:
    """
    Fraction of samples whose predicted class matches the target class.

    With a single output, predictions and targets are thresholded at 0.5.
    Otherwise the class is the arg-max over the output axis (one-hot targets).

    Returns
    -------
    float
        Accuracy in ``[0, 1]``.
    """
    if tuple(y_pred.shape) != tuple(y_true.shape):
        raise RuntimeShapeError(
            f"Prediction shape {tuple(y_pred.shape)} does not match target shape {tuple(y_true.shape)}"
        )
    xp = y_pred.backend
    n = y_pred.shape[-1]
    num_classes = y_pred.shape[0]
    pred = y_pred.data.reshape(num_classes, n)
    true = y_true.data.reshape(num_classes, n)

    if num_classes == 1:
        predicted_class = pred[0] >= 0.5
        true_class = true[0] >= 0.5
    else:
        predicted_class = xp.argmax(pred, axis=0)
        true_class = xp.argmax(true, axis=0)

    return float(xp.sum(predicted_class == true_class)) / max(1, n)
