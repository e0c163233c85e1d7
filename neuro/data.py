from enum import Enum
from typing import Any, Optional, Tuple

import numpy as np

from neuro.errors import ConfigurationError
from neuro.tensor import Dim, Tensor


class Scaling(Enum):
    """How a split was rescaled: ``NORMALIZED`` to [0, 1] or ``STANDARDIZED`` to zero mean, unit variance."""
    NORMALIZED = "normalized"
    STANDARDIZED = "standardized"


class DataSet:
    """
    Base class for data sets consumed by :meth:`neuro.models.Network.fit`.

    A data set exposes training tensors and, optionally, validation and test
    tensors. All tensors hold samples along the last (batch) axis; the engine
    only reads them and batches along that axis.
    """

    @property
    def input_shape(self) -> Dim:
        """Shape of a single input sample."""
        raise NotImplementedError

    @property
    def output_shape(self) -> Dim:
        """Shape of a single target sample."""
        raise NotImplementedError

    @property
    def num_train_samples(self) -> int:
        return self.x_train.shape[3]

    @property
    def num_valid_samples(self) -> int:
        return 0 if self.x_valid is None else self.x_valid.shape[3]

    x_train: Tensor
    y_train: Tensor
    x_valid: Optional[Tensor] = None
    y_valid: Optional[Tensor] = None
    x_test: Optional[Tensor] = None
    y_test: Optional[Tensor] = None
    x_train_stats: Optional[Tuple[Scaling, Tensor, Tensor]] = None
    y_train_stats: Optional[Tuple[Scaling, Tensor, Tensor]] = None


def _check_pair(x: Optional[Tensor], y: Optional[Tensor], split: str) -> None:
    if (x is None) != (y is None):
        raise ConfigurationError(f"The {split} set needs both inputs and targets")
    if x is not None and x.shape[3] != y.shape[3]:
        raise ConfigurationError(
            f"The {split} inputs have {x.shape[3]} samples but the targets have {y.shape[3]}"
        )


class TabularDataSet(DataSet):
    """
    In-memory data set of flat or image samples.

    Parameters
    ----------
    x_train, y_train : Tensor
        Training inputs and targets, samples along the last axis.
    x_valid, y_valid : Tensor, optional
        Validation split.
    x_test, y_test : Tensor, optional
        Test split.

    Raises
    ------
    ConfigurationError
        If inputs and targets of a split have different sample counts, or
        if the splits disagree on the sample shape.
    """
    def __init__(
        self,
        x_train: Tensor,
        y_train: Tensor,
        x_valid: Optional[Tensor] = None,
        y_valid: Optional[Tensor] = None,
        x_test: Optional[Tensor] = None,
        y_test: Optional[Tensor] = None,
    ) -> None:
        _check_pair(x_train, y_train, "training")
        _check_pair(x_valid, y_valid, "validation")
        _check_pair(x_test, y_test, "test")
        for x, y, split in ((x_valid, y_valid, "validation"), (x_test, y_test, "test")):
            if x is not None and (x.dims.sample() != x_train.dims.sample() or y.dims.sample() != y_train.dims.sample()):
                raise ConfigurationError(f"The {split} samples do not have the shape of the training samples")
        self.x_train = x_train
        self.y_train = y_train
        self.x_valid = x_valid
        self.y_valid = y_valid
        self.x_test = x_test
        self.y_test = y_test
        self.x_train_stats = None
        self.y_train_stats = None

    @classmethod
    def from_arrays(
        cls,
        x: Any,
        y: Any,
        valid_frac: float = 0.0,
        shuffle: bool = True,
        seed: Optional[int] = None,
        x_test: Any = None,
        y_test: Any = None,
        device: Optional[str] = None,
    ) -> "TabularDataSet":
        """
        Build a data set from sample-major arrays (samples along axis 0).

        The samples are shuffled once, here, before being split into a
        training and a validation set; batches are not reshuffled between
        epochs.

        Parameters
        ----------
        x, y : array-like
            Inputs ``(N, F)`` or ``(N, H, W, C)`` and targets ``(N, K)``.
        valid_frac : float, default=0.0
            Fraction of the samples held out for validation, in ``[0, 1)``.
        shuffle : bool, default=True
            Shuffle the samples before splitting.
        seed : int, optional
            Seed of the shuffle.
        x_test, y_test : array-like, optional
            Test split, never shuffled.
        device : str, optional
            Device of the tensors.
        """
        if not 0.0 <= valid_frac < 1.0:
            raise ConfigurationError(f"Validation fraction must be in [0, 1), got {valid_frac}")
        x = Tensor.from_samples(x, device=device)
        y = Tensor.from_samples(y, device=device)
        _check_pair(x, y, "input")

        if shuffle:
            x, y = Tensor.shuffle_samples(x, y, np.random.default_rng(seed))

        num_samples = x.shape[3]
        num_valid = int(np.floor(valid_frac * num_samples))
        num_train = num_samples - num_valid
        if num_train < 1:
            raise ConfigurationError("The training set is empty")

        x_valid = y_valid = None
        if num_valid > 0:
            x_valid, y_valid = x.batch(num_train, num_samples), y.batch(num_train, num_samples)

        if x_test is not None:
            x_test = Tensor.from_samples(x_test, device=device)
        if y_test is not None:
            y_test = Tensor.from_samples(y_test, device=device)

        return cls(x.batch(0, num_train), y.batch(0, num_train), x_valid, y_valid, x_test, y_test)

    def __repr__(self):
        return (f"{self.__class__.__name__}(input_shape={self.input_shape}, output_shape={self.output_shape}, "
                f"train={self.num_train_samples}, valid={self.num_valid_samples}, "
                f"test={0 if self.x_test is None else self.x_test.shape[3]})")

    @property
    def input_shape(self) -> Dim:
        return self.x_train.dims.sample()

    @property
    def output_shape(self) -> Dim:
        return self.y_train.dims.sample()

    def normalize_input(self) -> None:
        """Rescale the inputs of all splits to [0, 1] using the training minimum and maximum."""
        self.x_train_stats = self._rescale("x", Scaling.NORMALIZED)

    def standardize_input(self) -> None:
        """Rescale the inputs of all splits using the training mean and standard deviation."""
        self.x_train_stats = self._rescale("x", Scaling.STANDARDIZED)

    def normalize_output(self) -> None:
        self.y_train_stats = self._rescale("y", Scaling.NORMALIZED)

    def standardize_output(self) -> None:
        self.y_train_stats = self._rescale("y", Scaling.STANDARDIZED)

    def _rescale(self, prefix: str, scaling: Scaling) -> Tuple[Scaling, Tensor, Tensor]:
        train = getattr(self, f"{prefix}_train")
        xp = train.backend
        if scaling is Scaling.NORMALIZED:
            low = xp.min(train.data, axis=3, keepdims=True)
            scale = xp.max(train.data, axis=3, keepdims=True) - low
        else:
            low = xp.mean(train.data, axis=3, keepdims=True)
            scale = xp.std(train.data, axis=3, keepdims=True)
        # constant features are left unscaled
        scale = xp.where(scale > 0, scale, 1)

        for split in ("train", "valid", "test"):
            t = getattr(self, f"{prefix}_{split}")
            if t is not None:
                setattr(self, f"{prefix}_{split}", Tensor((t.data - low) / scale))
        return scaling, Tensor(low), Tensor(scale)


class BatchIterator:
    """
    Iterate over mini-batches of a pair of tensors along the batch axis.

    Batches are taken in order; the last one holds the remaining samples and
    may be smaller than ``batch_size``. A ``batch_size`` at least as large as
    the number of samples yields a single batch.

    Parameters
    ----------
    x, y : Tensor
        Inputs and targets with the same number of samples.
    batch_size : int
        Number of samples per batch.

    Raises
    ------
    ConfigurationError
        If the sample counts differ, there are no samples, or ``batch_size`` is not positive.
    """
    def __init__(self, x: Tensor, y: Tensor, batch_size: int) -> None:
        _check_pair(x, y, "batched")
        if int(batch_size) < 1:
            raise ConfigurationError(f"Batch size must be positive, got {batch_size}")
        self.x = x
        self.y = y
        self.num_samples = x.shape[3]
        if self.num_samples == 0:
            raise ConfigurationError("The batched set has no samples")
        self.batch_size = min(int(batch_size), self.num_samples)
        self.num_batches = -(-self.num_samples // self.batch_size)
        self.idx = 0

    def __len__(self) -> int:
        return self.num_batches

    def __iter__(self) -> "BatchIterator":
        self.idx = 0
        return self

    def __next__(self) -> Tuple[Tensor, Tensor]:
        """
        Return the next ``(x, y)`` mini-batch.

        Raises
        ------
        StopIteration
            When all samples have been returned.
        """
        if self.idx >= self.num_samples:
            raise StopIteration
        stop = min(self.idx + self.batch_size, self.num_samples)
        batch = self.x.batch(self.idx, stop), self.y.batch(self.idx, stop)
        self.idx = stop
        return batch
