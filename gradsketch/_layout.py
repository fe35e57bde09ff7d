"""Uniform matrix views of the supported gradient estimate layouts.

A gradient estimate is either a single tensor, whose leading dimension is the one
being sketched, or a list of tensors (blocks), in which case the number of blocks is
the sketched dimension. Projections act on a matrix view of shape
``[leading, columns]`` which this module creates, and writes back if the layout does
not allow an in-place view.
"""

from __future__ import annotations

from typing import Callable, List, Optional, Sequence, Tuple, Union

from einops import rearrange
from numpy import ndarray
from torch import Size, Tensor, as_tensor, device, dtype, from_numpy, stack, zeros

from gradsketch._checks import (
    _check_same_device,
    _check_same_dtype,
    _check_same_shape,
)

Estimate = Union[Tensor, List[Tensor]]
EstimateShape = Union[int, Tuple[int, ...], List[Tuple[int, ...]]]


def _to_tensor(x: Union[Tensor, ndarray]) -> Tensor:
    """Wrap a NumPy array into a tensor sharing its memory.

    Args:
        x: Tensor or array.

    Returns:
        The tensor, or a tensor sharing memory with the array.
    """
    return from_numpy(x) if isinstance(x, ndarray) else x


def as_estimate(
    h: Union[Tensor, ndarray, Sequence[Union[Tensor, ndarray]]], copy: bool = False
) -> Estimate:
    """Convert a tensor, array, or sequence of them into a gradient estimate.

    Args:
        h: The estimate's values. NumPy arrays are wrapped with ``from_numpy`` and
            therefore share memory with the caller.
        copy: Whether to clone the values (exclusive ownership) instead of sharing
            the caller's storage. Default: ``False``.

    Returns:
        A floating point tensor, or a non-empty list of floating point tensors with
        the same dtype and device.

    Raises:
        TypeError: If the input is neither a tensor, an array, nor a sequence of them.
        ValueError: If the estimate is a scalar, not floating point, an empty list,
            or blocks have different dtypes or devices.
    """
    if isinstance(h, (Tensor, ndarray)):
        h = _to_tensor(h)
        if h.ndim == 0:
            raise ValueError("Gradient estimate must have at least one dimension.")
        blocks = [h]
    elif isinstance(h, (list, tuple)):
        if not h:
            raise ValueError("Block gradient estimate must contain at least one block.")
        if not all(isinstance(b, (Tensor, ndarray)) for b in h):
            raise TypeError("Blocks must be tensors or arrays.")
        h = [_to_tensor(b) for b in h]
        blocks = h
    else:
        raise TypeError(f"Unsupported gradient estimate type {type(h)}.")

    for b in blocks:
        if not b.is_floating_point():
            raise ValueError(f"Estimate must be floating point. Got {b.dtype}.")
        _check_same_dtype(blocks[0], b)
        _check_same_device(blocks[0], b)

    return clone_estimate(h) if copy else h


def zeros_estimate(
    shape: EstimateShape, dtype: dtype, device: Optional[device] = None
) -> Estimate:
    """Allocate a zero gradient estimate.

    Args:
        shape: An integer (vector length), a tuple (tensor shape), or a list of
            tuples (one shape per block).
        dtype: Element type.
        device: Device to allocate on. Default: ``None`` (current default device).

    Returns:
        The zero-initialized estimate.

    Raises:
        ValueError: If the list of block shapes is empty.
    """
    if isinstance(shape, list):
        if not shape:
            raise ValueError("Block gradient estimate must contain at least one block.")
        return [zeros(s, dtype=dtype, device=device) for s in shape]
    if isinstance(shape, int):
        shape = (shape,)
    return zeros(shape, dtype=dtype, device=device)


def blocks(h: Estimate) -> List[Tensor]:
    """Return the tensors an estimate consists of."""
    return h if isinstance(h, list) else [h]


def clone_estimate(h: Estimate) -> Estimate:
    """Create a copy of an estimate that does not share memory."""
    return [b.clone() for b in h] if isinstance(h, list) else h.clone()


def zeros_like_estimate(h: Estimate) -> Estimate:
    """Create a zero estimate with the same layout, dtype, and device."""
    if isinstance(h, list):
        return [b.new_zeros(b.shape) for b in h]
    return h.new_zeros(h.shape)


def estimate_shape(h: Estimate) -> Union[Size, List[Size]]:
    """Return the shape of an estimate (list of shapes for block estimates)."""
    return [b.shape for b in h] if isinstance(h, list) else h.shape


def leading_dim(h: Estimate) -> int:
    """Return the estimate's sketched dimension."""
    return len(h) if isinstance(h, list) else h.shape[0]


def num_columns(h: Estimate) -> int:
    """Return the number of independent columns in the estimate's matrix view."""
    if isinstance(h, list):
        return h[0].numel()
    return h[0].numel() if h.ndim > 1 else 1


def check_same_layout(h: Estimate, other: Estimate, name: str):
    """Check that two estimates have the same layout, dtype, and device.

    Args:
        h: The reference estimate.
        other: The estimate to compare.
        name: Name of ``other`` in the error message.

    Raises:
        ValueError: If the layouts do not match.
    """
    if isinstance(h, list) != isinstance(other, list) or len(blocks(h)) != len(
        blocks(other)
    ):
        raise ValueError(
            f"{name} has shape {estimate_shape(other)},"
            f" h has shape {estimate_shape(h)}."
        )
    for b, o in zip(blocks(h), blocks(other)):
        try:
            _check_same_shape(b, o)
            _check_same_dtype(b, o)
            _check_same_device(b, o)
        except ValueError as error:
            raise ValueError(f"{name} does not match h. {error}") from error


def check_blocks_projectable(h: Estimate):
    """Check that an estimate can be flattened into a matrix.

    Args:
        h: The estimate.

    Raises:
        ValueError: If the estimate consists of blocks with different shapes.
    """
    if isinstance(h, list) and len({b.shape for b in h}) != 1:
        raise ValueError(
            "Blocks must share one shape to be projected jointly."
            f" Got shapes {estimate_shape(h)}."
        )


def as_matrix(h: Estimate) -> Tuple[Tensor, Optional[Callable[[], None]]]:
    """Flatten an estimate into a ``[leading, columns]`` matrix.

    Args:
        h: The estimate. Blocks must have identical shapes.

    Returns:
        The matrix and a function that writes the matrix back into ``h``. The latter
        is ``None`` if the matrix is a view of ``h``, i.e. in-place modifications of
        the matrix already modify ``h``.
    """
    if isinstance(h, list):
        H = rearrange(stack(h), "k ... -> k (...)")

        def writeback():
            for b, row in zip(h, H):
                b.copy_(row.view(b.shape))

        return H, writeback

    if h.ndim == 1:
        return h.unsqueeze(1), None
    if h.ndim == 2:
        return h, None
    if h.is_contiguous():
        return h.view(h.shape[0], -1), None

    H = h.reshape(h.shape[0], -1)
    return H, lambda: h.copy_(H.view(h.shape))


def as_observation_matrix(
    observation: Union[Tensor, ndarray, float, Sequence], h: Estimate, num_rows: int
) -> Tensor:
    """Convert observations of one or several directions into a matrix.

    Args:
        observation: Observed values. For vector estimates, a scalar or a vector
            with one entry per direction. For matrix estimates, a matrix with one row
            per direction. For block estimates, a block-shaped tensor per direction
            (or a tensor stacking them along the leading axis).
        h: The estimate the observations refer to.
        num_rows: Number of directions.

    Returns:
        Matrix of shape ``[num_rows, columns]`` on ``h``'s dtype and device.

    Raises:
        ValueError: If the observation's size is inconsistent with ``h``.
    """
    ref = blocks(h)[0]
    if isinstance(observation, (list, tuple)) and any(
        isinstance(o, (Tensor, ndarray)) for o in observation
    ):
        observation = stack(
            [as_tensor(o, dtype=ref.dtype, device=ref.device) for o in observation]
        )
    else:
        observation = as_tensor(observation, dtype=ref.dtype, device=ref.device)

    cols = num_columns(h)
    if num_rows > 1 and (observation.ndim == 0 or observation.shape[0] != num_rows):
        raise ValueError(
            f"Observation has shape {tuple(observation.shape)}, expected leading"
            f" dimension {num_rows} (one entry per direction)."
        )
    if observation.numel() != num_rows * cols:
        raise ValueError(
            f"Observation has shape {tuple(observation.shape)}, h has shape"
            f" {estimate_shape(h)}: expected {cols} value(s) per direction."
        )
    return observation.reshape(num_rows, cols)
