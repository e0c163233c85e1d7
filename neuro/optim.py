from typing import Any, Dict, List, Optional, Tuple

from neuro.errors import ConfigurationError, ProgrammerError

State = Dict[str, Any]


class Optimizer:
    """
    Base class for all optimizers.

    An optimizer is a pure update rule: :meth:`update` maps a parameter value,
    its gradient and the accumulators of that parameter to a new value and new
    accumulators. It holds no reference to the network; the per-parameter
    state lives in an :class:`OptimizerState` arena owned by the network.

    Notes
    -----
    - Values, gradients and accumulators are backend arrays (NumPy or CuPy);
      the backend is inferred from the value.
    - ``step`` is the number of mini-batch updates performed so far, counting
      the current one. It is shared by all parameters updated for the same
      mini-batch.
    """
    tag = ""

    def __repr__(self):
        args = ", ".join(f"{k}={v}" for k, v in self.hyperparams().items())
        return f"{self.__class__.__name__}({args})"

    def init_state(self, value: Any) -> State:
        """Return fresh accumulators for a parameter shaped like ``value``."""
        raise NotImplementedError

    def update(self, value: Any, gradient: Any, state: Optional[State], step: int) -> Tuple[Any, State]:
        """
        Compute one update.

        Parameters
        ----------
        value : ndarray
            Current parameter value.
        gradient : ndarray
            Gradient of the loss w.r.t. ``value``.
        state : dict or None
            Accumulators returned by the previous call for this parameter, or
            None on the first call.
        step : int
            Shared mini-batch counter, starting at 1.

        Returns
        -------
        (new_value, new_state)
            Neither ``value`` nor ``state`` is modified.
        """
        raise NotImplementedError

    def hyperparams(self) -> Dict[str, float]:
        """Return optimizer hyperparameters for serialization."""
        raise NotImplementedError

    @staticmethod
    def from_hyperparams(tag: str, hyperparams: Dict[str, float]) -> "Optimizer":
        """
        Rebuild an optimizer from its tag and :meth:`hyperparams`.

        Raises
        ------
        ProgrammerError
            If the tag is unknown.
        """
        for cls in (SGD, RMSProp, Adam, AdaDelta):
            if cls.tag == tag:
                return cls(**hyperparams)
        raise ProgrammerError(f"Unknown optimizer: {tag!r}")

    @staticmethod
    def _check_rate(name: str, value: float) -> float:
        if not 0.0 <= value < 1.0:
            raise ConfigurationError(f"{name} must be in [0, 1), got {value}")
        return float(value)

    @staticmethod
    def _check_positive(name: str, value: float) -> float:
        if value <= 0:
            raise ConfigurationError(f"{name} must be positive, got {value}")
        return float(value)


class SGD(Optimizer):
    """
    Stochastic gradient descent with momentum.

    ``v <- momentum * v - lr * g``; ``value <- value + v``

    Parameters
    ----------
    lr : float, default=0.01
        Learning rate.
    momentum : float, default=0.0
        Momentum factor in ``[0, 1)``.
    """
    tag = "sgd"

    def __init__(self, lr: float = 0.01, momentum: float = 0.0) -> None:
        self.lr = self._check_positive("Learning rate", lr)
        self.momentum = self._check_rate("Momentum", momentum)

    def init_state(self, value):
        return {"velocity": value * 0}

    def update(self, value, gradient, state, step):
        state = state if state is not None else self.init_state(value)
        velocity = self.momentum * state["velocity"] - self.lr * gradient
        return value + velocity, {"velocity": velocity}

    def hyperparams(self):
        return {"lr": self.lr, "momentum": self.momentum}


class RMSProp(Optimizer):
    """
    RMSProp.

    ``c <- decay * c + (1 - decay) * g**2``; ``value <- value - lr * g / sqrt(c + eps)``

    Parameters
    ----------
    lr : float, default=0.001
        Learning rate.
    decay : float, default=0.9
        Decay rate of the squared-gradient cache.
    eps : float, default=1e-8
        Added inside the square root.
    """
    tag = "rmsprop"

    def __init__(self, lr: float = 0.001, decay: float = 0.9, eps: float = 1e-8) -> None:
        self.lr = self._check_positive("Learning rate", lr)
        self.decay = self._check_rate("Decay", decay)
        self.eps = self._check_positive("Epsilon", eps)

    def init_state(self, value):
        return {"cache": value * 0}

    def update(self, value, gradient, state, step):
        state = state if state is not None else self.init_state(value)
        cache = self.decay * state["cache"] + (1 - self.decay) * gradient ** 2
        return value - self.lr * gradient / (cache + self.eps) ** 0.5, {"cache": cache}

    def hyperparams(self):
        return {"lr": self.lr, "decay": self.decay, "eps": self.eps}


class Adam(Optimizer):
    """
    Adam.

    Parameters
    ----------
    lr : float, default=0.001
        Learning rate.
    beta1 : float, default=0.9
        Decay rate of the first moment estimate.
    beta2 : float, default=0.999
        Decay rate of the second moment estimate.
    eps : float, default=1e-8
        Term added to the denominator for numerical stability.

    Notes
    -----
    The bias corrections use the shared mini-batch counter ``step``, so every
    parameter sees the same ``t`` within one mini-batch.
    """
    tag = "adam"

    def __init__(self, lr: float = 0.001, beta1: float = 0.9, beta2: float = 0.999, eps: float = 1e-8) -> None:
        self.lr = self._check_positive("Learning rate", lr)
        self.beta1 = self._check_rate("beta1", beta1)
        self.beta2 = self._check_rate("beta2", beta2)
        self.eps = self._check_positive("Epsilon", eps)

    def init_state(self, value):
        return {"m": value * 0, "v": value * 0}

    def update(self, value, gradient, state, step):
        state = state if state is not None else self.init_state(value)
        m = self.beta1 * state["m"] + (1 - self.beta1) * gradient          # first moment (m_t)
        v = self.beta2 * state["v"] + (1 - self.beta2) * gradient ** 2     # second moment (v_t)
        bias_correction1 = 1 - self.beta1 ** step
        bias_correction2 = 1 - self.beta2 ** step

        denom = (v / bias_correction2) ** 0.5 + self.eps
        return value - self.lr * (m / bias_correction1) / denom, {"m": m, "v": v}

    def hyperparams(self):
        return {"lr": self.lr, "beta1": self.beta1, "beta2": self.beta2, "eps": self.eps}


class AdaDelta(Optimizer):
    """
    AdaDelta (Zeiler, 2012). No learning rate.

    ``E[g²] <- rho * E[g²] + (1 - rho) * g**2``

    ``delta = -sqrt(E[Δ²] + eps) / sqrt(E[g²] + eps) * g``; ``value <- value + delta``

    ``E[Δ²] <- rho * E[Δ²] + (1 - rho) * delta**2``

    Parameters
    ----------
    rho : float, default=0.95
        Decay rate of the running averages.
    eps : float, default=1e-6
        Added inside the square roots.
    """
    tag = "adadelta"

    def __init__(self, rho: float = 0.95, eps: float = 1e-6) -> None:
        self.rho = self._check_rate("rho", rho)
        self.eps = self._check_positive("Epsilon", eps)

    def init_state(self, value):
        return {"sq_grad": value * 0, "sq_update": value * 0}

    def update(self, value, gradient, state, step):
        state = state if state is not None else self.init_state(value)
        sq_grad = self.rho * state["sq_grad"] + (1 - self.rho) * gradient ** 2
        delta = -((state["sq_update"] + self.eps) ** 0.5) / (sq_grad + self.eps) ** 0.5 * gradient
        sq_update = self.rho * state["sq_update"] + (1 - self.rho) * delta ** 2
        return value + delta, {"sq_grad": sq_grad, "sq_update": sq_update}

    def hyperparams(self):
        return {"rho": self.rho, "eps": self.eps}


class OptimizerState:
    """
    Arena of per-parameter optimizer accumulators.

    Each trainable tensor of a network gets a slot id from :meth:`register`
    exactly once, when its layer is added. Slots start empty (``None``) and
    are filled by the first update. ``step`` counts mini-batch updates and is
    shared by all slots.
    """
    def __init__(self) -> None:
        self.slots: List[Optional[State]] = []
        self.step = 0

    def __len__(self):
        return len(self.slots)

    def register(self) -> int:
        """Allocate a new slot and return its id."""
        self.slots.append(None)
        return len(self.slots) - 1

    def state_dict(self) -> Dict[str, Any]:
        """
        Return the arena as a Python dictionary.

        Returns
        -------
        dict
            ``"step"``: the shared counter; ``"slots"``: per-slot accumulators
            (copies) aligned with slot ids, ``None`` for slots never updated.
        """
        return {
            "step": self.step,
            "slots": [
                None if s is None else {k: v.copy() for k, v in s.items()}
                for s in self.slots
            ],
        }

    def load_state_dict(self, state_dict: Dict[str, Any]) -> None:
        """
        Load accumulators produced by :meth:`state_dict`.

        Raises
        ------
        ProgrammerError
            If the number of slots differs from the registered slots.
        """
        slots = state_dict["slots"]
        if len(slots) != len(self.slots):
            raise ProgrammerError(f"Expected {len(self.slots)} optimizer slots, got {len(slots)}")
        self.step = int(state_dict["step"])
        self.slots = [None if s is None else {k: v.copy() for k, v in s.items()} for s in slots]
