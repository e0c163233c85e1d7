class NeuroError(Exception):
    """Base class for all errors raised by the training engine."""


class ConfigurationError(NeuroError, ValueError):
    """
    Invalid construction parameters or an invalid network layout.

    Raised before training starts: out-of-range hyperparameters, a layer whose
    expected input shape does not match the previous layer's output shape, or
    input/target tensors with different sample counts.
    """


class RuntimeShapeError(NeuroError, RuntimeError):
    """A layer received a tensor whose shape differs from the one it was built for."""


class PersistenceError(NeuroError, OSError):
    """
    Reading or writing a checkpoint failed.

    A failed save leaves the destination in a partial state; callers must retry
    from scratch.
    """


class ProgrammerError(NeuroError, RuntimeError):
    """
    Misuse of the API that cannot be recovered from.

    Examples are calling ``backward`` before ``forward_train`` or loading a
    checkpoint that names an unknown layer, loss, optimizer or initializer.
    """
