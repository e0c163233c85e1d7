from neuro.errors import ProgrammerError, RuntimeShapeError
from neuro.tensor import Tensor

EPSILON = 1e-7


class Loss:
    """
    Base class for loss functions.

    ``forward(y_pred, y_true)`` returns the scalar loss averaged over the
    batch and ``backward(y_pred, y_true)`` returns the seed gradient fed to the
    last layer. Both tensors are laid out as ``(outputs, 1, 1, batch)``.
    """
    tag = ""

    def __repr__(self):
        return f"{self.__class__.__name__}()"

    def __call__(self, y_pred: Tensor, y_true: Tensor) -> float:
        return self.forward(y_pred, y_true)

    def forward(self, y_pred: Tensor, y_true: Tensor) -> float:
        raise NotImplementedError

    def backward(self, y_pred: Tensor, y_true: Tensor) -> Tensor:
        raise NotImplementedError

    @staticmethod
    def _batch_size(y_pred: Tensor, y_true: Tensor) -> int:
        if tuple(y_pred.shape) != tuple(y_true.shape):
            raise RuntimeShapeError(
                f"Prediction shape {tuple(y_pred.shape)} does not match target shape {tuple(y_true.shape)}"
            )
        return y_pred.shape[-1]

    @staticmethod
    def from_tag(tag: str) -> "Loss":
        for cls in (SoftmaxCrossEntropy, BinaryCrossEntropy, MeanSquaredError):
            if cls.tag == tag:
                return cls()
        raise ProgrammerError(f"Unknown loss: {tag!r}")


class SoftmaxCrossEntropy(Loss):
    """
    Cross-entropy of softmax probabilities against one-hot targets.

    ``forward(p, t) = -mean_batch(sum_classes(t * log(p + eps)))``

    ``backward(p, t) = (p - t) / batch_size``

    Notes
    -----
    ``backward`` is the gradient w.r.t. the *logits* of a Softmax activation
    fused immediately upstream (the last Dense layer must use
    ``Activation.SOFTMAX``), not w.r.t. ``p``. The loss is not valid on raw,
    unnormalized scores.
    """
    tag = "softmax_cross_entropy"

    def forward(self, y_pred: Tensor, y_true: Tensor) -> float:
        n = self._batch_size(y_pred, y_true)
        xp = y_pred.backend
        return float(-xp.sum(y_true.data * xp.log(y_pred.data + EPSILON)) / n)

    def backward(self, y_pred: Tensor, y_true: Tensor) -> Tensor:
        n = self._batch_size(y_pred, y_true)
        return Tensor((y_pred.data - y_true.data) / n)


class BinaryCrossEntropy(Loss):
    """
    Binary cross-entropy of sigmoid probabilities against 0/1 targets.

    Like :class:`SoftmaxCrossEntropy`, ``backward`` returns ``(p - t) / batch_size``,
    the gradient w.r.t. the logits of a Sigmoid activation fused upstream.
    """
    tag = "binary_cross_entropy"

    def forward(self, y_pred: Tensor, y_true: Tensor) -> float:
        n = self._batch_size(y_pred, y_true)
        xp = y_pred.backend
        p = xp.clip(y_pred.data, EPSILON, 1 - EPSILON)
        t = y_true.data
        return float(-xp.sum(t * xp.log(p) + (1 - t) * xp.log(1 - p)) / n)

    def backward(self, y_pred: Tensor, y_true: Tensor) -> Tensor:
        n = self._batch_size(y_pred, y_true)
        return Tensor((y_pred.data - y_true.data) / n)


class MeanSquaredError(Loss):
    """
    ``forward(p, t) = mean_batch(0.5 * sum_outputs((p - t)**2))``, ``backward(p, t) = (p - t) / batch_size``
    """
    tag = "mean_squared_error"

    def forward(self, y_pred: Tensor, y_true: Tensor) -> float:
        n = self._batch_size(y_pred, y_true)
        xp = y_pred.backend
        diff = y_pred.data - y_true.data
        return float(0.5 * xp.sum(diff * diff) / n)

    def backward(self, y_pred: Tensor, y_true: Tensor) -> Tensor:
        n = self._batch_size(y_pred, y_true)
        return Tensor((y_pred.data - y_true.data) / n)
