import numpy as np
import torch

from neuro.tensor import Tensor

ATOL = 1e-6
RTOL = 1e-5

def _is_cupy(x):
    return x.__class__.__module__.startswith("cupy")

def to_numpy(x):
    if isinstance(x, Tensor):
        x = x.data
    if _is_cupy(x):
        import cupy as cp
        return cp.asnumpy(x)
    return np.asarray(x)

def tdata(t: Tensor):
    return to_numpy(t.data)

def make_tensor(x_np: np.ndarray, device: str = "cpu") -> Tensor:
    return Tensor(np.asarray(x_np, dtype=np.float32), device=device)

def make_torch(x_np: np.ndarray, requires_grad: bool = True) -> torch.Tensor:
    return torch.tensor(np.asarray(x_np, dtype=np.float32), requires_grad=requires_grad)

def to_nchw(x_np: np.ndarray) -> np.ndarray:
    """(H, W, C, N) -> (N, C, H, W)"""
    return np.ascontiguousarray(np.transpose(x_np, (3, 2, 0, 1)))

def from_nchw(x_np: np.ndarray) -> np.ndarray:
    """(N, C, H, W) -> (H, W, C, N)"""
    return np.ascontiguousarray(np.transpose(x_np, (2, 3, 1, 0)))

def assert_close(a, b, atol=ATOL, rtol=RTOL):
    a = to_numpy(a)
    b = to_numpy(b)
    assert a.shape == b.shape, f"shape {a.shape} != {b.shape}"
    assert np.allclose(a, b, atol=atol, rtol=rtol), f"max|diff|={np.max(np.abs(a-b))}"
