"""Helpers to verify shapes, dtypes, devices, and preconditioners."""

from __future__ import annotations

from inspect import currentframe
from typing import Any
from warnings import warn

from torch import Tensor


def _check_same_shape(old: Tensor, new: Tensor):
    """Check that two tensors have the same shape.

    Args:
        old: The original tensor.
        new: The new tensor.

    Raises:
        ValueError: If shapes don't match.
    """
    if old.shape != new.shape:
        raise ValueError(f"Shape mismatch: expected {old.shape}, got {new.shape}.")


def _check_same_device(old: Tensor, new: Tensor):
    """Check that two tensors live on the same device.

    Args:
        old: The original tensor.
        new: The new tensor.

    Raises:
        ValueError: If devices don't match.
    """
    if old.device != new.device:
        raise ValueError(f"Device mismatch: expected {old.device}, got {new.device}.")


def _check_same_dtype(old: Tensor, new: Tensor):
    """Check that two tensors have the same dtype.

    Args:
        old: The original tensor.
        new: The new tensor.

    Raises:
        ValueError: If dtypes don't match.
    """
    if old.dtype != new.dtype:
        raise ValueError(f"Dtype mismatch: expected {old.dtype}, got {new.dtype}.")


def _check_preconditioner_shape(Binv: Any, dim: int):
    """Check that a preconditioner is a square matrix acting on the sketched space.

    Args:
        Binv: The preconditioner. Must have a ``.shape`` attribute.
        dim: Leading dimension of the gradient estimate.

    Raises:
        ValueError: If the preconditioner's shape is not ``(dim, dim)``.
    """
    if tuple(Binv.shape) != (dim, dim):
        raise ValueError(
            f"Binv has dimensions {tuple(Binv.shape)}, sketch has leading dimension"
            f" {dim}."
        )


def _external_stacklevel() -> int:
    """Return the ``stacklevel`` of the first caller outside ``gradsketch``.

    Returns:
        Stack level relative to the function calling ``_external_stacklevel``.
    """
    frame, level = currentframe().f_back, 1
    while frame is not None:
        if frame.f_globals.get("__name__", "").split(".")[0] != "gradsketch":
            break
        frame, level = frame.f_back, level + 1
    return level


def _warn_if_asymmetric(Binv: Any):
    """Warn if a dense preconditioner is not symmetric.

    Only explicit tensors are inspected, linear operators are trusted.

    Args:
        Binv: The preconditioner.
    """
    if isinstance(Binv, Tensor) and not Binv.allclose(Binv.T):
        warn(
            "Binv is not symmetric. Projections assume a symmetric positive definite"
            " preconditioner.",
            UserWarning,
            stacklevel=_external_stacklevel(),
        )
