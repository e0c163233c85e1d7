import logging
from typing import Optional, Tuple

import numpy as np

from neuro import io
from neuro.errors import ConfigurationError, PersistenceError
from neuro.layers import Layer
from neuro.losses import Loss
from neuro.models import Network
from neuro.optim import Optimizer
from neuro.regularizers import Regularizer
from neuro.tensor import Dim, get_backend

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


def save_checkpoint(path: str, network: Network, epoch: Optional[int] = None) -> None:
    """
    Save a network to an HDF5 file.

    The file holds everything needed to resume training: the input shape,
    the loss, the optimizer with its hyperparameters and per-slot
    accumulators, the regularizer and every layer (configuration, shapes and
    parameters) in its own ``layers/layer_<index>`` group.

    Parameters
    ----------
    path : str
        Destination file; an existing file is overwritten.
    network : Network
        Network to save.
    epoch : int or None, default=None
        Optional training epoch to store in the checkpoint.

    Raises
    ------
    PersistenceError
        If the file cannot be written. A partially written file is left in
        place.

    Notes
    -----
    Cached forward state is not saved: a reloaded network needs a
    ``forward_train`` pass before ``backward``.
    """
    logger.debug("Saving %d layers to %s", len(network.layers), path)
    with io.open_file(path, "w") as root:
        io.write_scalar(root, "format_version", FORMAT_VERSION, dtype=np.int64)
        io.write_array(root, "input_shape", network.input_shape, dtype=np.int64)
        io.write_string(root, "loss", network.loss.tag)
        if epoch is not None:
            io.write_scalar(root, "epoch", epoch, dtype=np.int64)

        if network.regularizer is not None:
            group = io.create_group(root, "regularizer")
            io.write_string(group, "type", network.regularizer.tag)
            io.write_scalar(group, "lambda", network.regularizer.lambd)

        optimizer = io.create_group(root, "optimizer")
        io.write_string(optimizer, "type", network.optimizer.tag)
        hyperparams = io.create_group(optimizer, "hyperparams")
        for name, value in network.optimizer.hyperparams().items():
            io.write_scalar(hyperparams, name, value)
        _save_state(optimizer, network.state.state_dict())

        layers = io.create_group(root, "layers")
        for i, layer in enumerate(network.layers):
            layer.save(io.create_group(layers, f"layer_{i:03d}"))


def _save_state(group, state_dict) -> None:
    io.write_scalar(group, "step", state_dict["step"], dtype=np.int64)
    slots = io.create_group(group, "slots")
    for i, slot in enumerate(state_dict["slots"]):
        slot_group = io.create_group(slots, f"slot_{i:04d}")
        # slots never updated are stored as empty groups
        for name, value in (slot or {}).items():
            io.write_array(slot_group, name, value)


def _load_state(group, device: str):
    xp = get_backend(device)
    slots = []
    for slot_group in io.child_groups(io.open_group(group, "slots")):
        names = io.record_names(slot_group)
        slots.append({name: xp.asarray(io.read_array(slot_group, name)) for name in names} or None)
    return {"step": io.read_scalar(group, "step", int), "slots": slots}


def load_checkpoint(path: str, device: str = "cpu") -> Tuple[Network, Optional[int]]:
    """
    Load a network written by :func:`save_checkpoint`.

    Parameters
    ----------
    path : str
        Path to the checkpoint file.
    device : {'cpu', 'cuda'}, default='cpu'
        Device of the rebuilt network.

    Returns
    -------
    (Network, int or None)
        The network, with its optimizer state restored, and the stored epoch
        if present.

    Raises
    ------
    PersistenceError
        If the file cannot be read, is not a checkpoint of this format, or
        stores layers whose shapes do not chain.
    ProgrammerError
        If the file refers to an unknown layer, loss, optimizer, initializer
        or regularizer.
    """
    logger.debug("Loading checkpoint %s", path)
    with io.open_file(path, "r") as root:
        version = io.read_scalar(root, "format_version", int)
        if version != FORMAT_VERSION:
            raise PersistenceError(f"Unsupported checkpoint format version {version} in {path!r}")

        input_shape = Dim(*(int(v) for v in io.read_array(root, "input_shape")))
        loss = Loss.from_tag(io.read_string(root, "loss"))
        epoch = io.read_scalar(root, "epoch", int) if io.has_record(root, "epoch") else None

        regularizer = None
        if io.has_record(root, "regularizer"):
            group = io.open_group(root, "regularizer")
            regularizer = Regularizer.from_record(io.read_string(group, "type"), io.read_scalar(group, "lambda"))

        group = io.open_group(root, "optimizer")
        hyperparams = io.open_group(group, "hyperparams")
        optimizer = Optimizer.from_hyperparams(
            io.read_string(group, "type"),
            {name: io.read_scalar(hyperparams, name) for name in io.record_names(hyperparams)},
        )

        network = Network(input_shape, loss, optimizer, regularizer, device=device)
        for layer_group in io.child_groups(io.open_group(root, "layers")):
            layer = Layer.from_group(layer_group, device=device)
            try:
                network._append(layer)
            except ConfigurationError as e:
                raise PersistenceError(f"Inconsistent layer shapes in {path!r}: {e}") from e
        network.state.load_state_dict(_load_state(group, device))

    logger.debug("Loaded %d layers from %s", len(network.layers), path)
    return network, epoch
