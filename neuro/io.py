"""
Hierarchical record store used by checkpoints.

Thin helpers over :mod:`h5py`. Groups are created with creation-order
tracking so that :func:`child_groups` returns them in the order they were
written, which is how a layer sequence is rebuilt on load. Every failure of
the underlying store surfaces as :class:`neuro.errors.PersistenceError`.
"""
import contextlib
import logging
from typing import Any, Iterator, List, Optional

import h5py
import numpy as np

from neuro.errors import PersistenceError
from neuro.tensor import Tensor, to_numpy

logger = logging.getLogger(__name__)


@contextlib.contextmanager
def _store_errors(what: str) -> Iterator[None]:
    try:
        yield
    except (OSError, KeyError, ValueError, TypeError) as e:
        if isinstance(e, PersistenceError):
            raise
        raise PersistenceError(f"{what}: {e}") from e


@contextlib.contextmanager
def open_file(path: str, mode: str = "r") -> Iterator[h5py.File]:
    """
    Open an HDF5 file, yielding its root group.

    Parameters
    ----------
    path : str
        File path.
    mode : {'r', 'w'}
        ``'w'`` truncates any existing file.
    """
    logger.debug("Opening %s (mode=%s)", path, mode)
    with _store_errors(f"Could not open {path!r}"):
        f = h5py.File(path, mode, track_order=True) if mode == "w" else h5py.File(path, mode)
    try:
        yield f
    finally:
        f.close()


def create_group(parent: h5py.Group, name: str) -> h5py.Group:
    with _store_errors(f"Could not create group {name!r}"):
        return parent.create_group(name, track_order=True)


def open_group(parent: h5py.Group, name: str) -> h5py.Group:
    with _store_errors(f"Missing group {name!r}"):
        group = parent[name]
    if not isinstance(group, h5py.Group):
        raise PersistenceError(f"{name!r} is not a group")
    return group


def child_groups(group: h5py.Group) -> List[h5py.Group]:
    """Return the child groups of ``group`` in creation order."""
    with _store_errors("Could not list groups"):
        return [group[name] for name in group.keys() if isinstance(group[name], h5py.Group)]


def record_names(group: h5py.Group) -> List[str]:
    """Return the names of the datasets (not groups) of ``group``."""
    with _store_errors("Could not list records"):
        return [name for name in group.keys() if isinstance(group[name], h5py.Dataset)]


def has_record(group: h5py.Group, name: str) -> bool:
    return name in group


def write_scalar(group: h5py.Group, name: str, value: Any, dtype: Any = np.float64) -> None:
    with _store_errors(f"Could not write {name!r}"):
        group.create_dataset(name, data=np.asarray(value, dtype=dtype))


def read_scalar(group: h5py.Group, name: str, dtype: type = float) -> Any:
    with _store_errors(f"Could not read {name!r}"):
        return dtype(group[name][()])


def write_string(group: h5py.Group, name: str, value: str) -> None:
    with _store_errors(f"Could not write {name!r}"):
        group.create_dataset(name, data=value, dtype=h5py.string_dtype())


def read_string(group: h5py.Group, name: str) -> str:
    with _store_errors(f"Could not read {name!r}"):
        value = group[name][()]
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


def write_array(group: h5py.Group, name: str, value: Any, dtype: Any = np.float32) -> None:
    """Write an array (NumPy or CuPy) or a sequence of numbers."""
    with _store_errors(f"Could not write {name!r}"):
        group.create_dataset(name, data=np.asarray(to_numpy(value), dtype=dtype))


def read_array(group: h5py.Group, name: str) -> np.ndarray:
    with _store_errors(f"Could not read {name!r}"):
        return np.asarray(group[name][()])


def write_tensor(group: h5py.Group, name: str, tensor: Tensor) -> None:
    write_array(group, name, tensor.data)


def read_tensor(group: h5py.Group, name: str, device: Optional[str] = "cpu") -> Tensor:
    return Tensor(read_array(group, name), device=device)
