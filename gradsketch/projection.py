"""Projection of gradient estimates onto sketched observations.

All functions update a caller-owned gradient estimate in place such that it satisfies
a new linear observation ``sketch' @ h = observation`` while moving as little as
possible, measured in the norm induced by a preconditioner ``Binv``.
"""

from __future__ import annotations

from numbers import Integral
from typing import Any, Optional, Sequence, Union

from numpy import ndarray
from scipy.sparse.linalg import LinearOperator
from torch import Generator, Tensor, as_tensor, einsum, eye, from_numpy, randperm
from torch.linalg import pinv
from tqdm import tqdm

from gradsketch._checks import _check_preconditioner_shape, _warn_if_asymmetric
from gradsketch._layout import (
    Estimate,
    as_estimate,
    as_matrix,
    as_observation_matrix,
    blocks,
    check_blocks_projectable,
    estimate_shape,
    leading_dim,
)

DEFAULT_NUM_PASSES = 5

Sketch = Union[Tensor, ndarray, Sequence[float], int]


def _is_coordinate(sketch: Any) -> bool:
    """Return whether a sketch is a coordinate index."""
    return isinstance(sketch, Integral) and not isinstance(sketch, bool)


def _as_sketch(sketch: Sketch, h: Estimate) -> Tensor:
    """Convert a sketch vector or matrix to ``h``'s dtype and device.

    Args:
        sketch: Direction vector or matrix whose columns are directions.
        h: The gradient estimate.

    Returns:
        The sketch as tensor.

    Raises:
        ValueError: If the sketch is neither a vector nor a matrix.
    """
    ref = blocks(h)[0]
    sketch = as_tensor(sketch, dtype=ref.dtype, device=ref.device)
    if sketch.ndim not in {1, 2}:
        raise ValueError(
            f"Sketch must be a vector or matrix. Got shape {tuple(sketch.shape)}."
        )
    return sketch


def _as_preconditioner(Binv: Any, h: Estimate) -> Any:
    """Normalize a preconditioner, mapping the identity to ``None``.

    Args:
        Binv: ``None``, a matrix (tensor or array), or a linear operator.
        h: The gradient estimate.

    Returns:
        ``None`` for the identity, otherwise the preconditioner.
    """
    if Binv is None:
        return None
    if isinstance(Binv, ndarray):
        Binv = from_numpy(Binv)
    if isinstance(Binv, Tensor):
        ref = blocks(h)[0]
        Binv = Binv.to(dtype=ref.dtype, device=ref.device)
        if Binv.ndim == 2 and Binv.shape[0] == Binv.shape[1]:
            identity = eye(Binv.shape[0], dtype=Binv.dtype, device=Binv.device)
            if Binv.equal(identity):
                return None
    return Binv


def _apply_preconditioner(Binv: Any, s: Tensor) -> Tensor:
    """Multiply a direction by the preconditioner.

    Args:
        Binv: Normalized preconditioner (``None`` means identity).
        s: Direction vector.

    Returns:
        ``Binv @ s`` on the direction's dtype and device.
    """
    if Binv is None:
        return s
    if isinstance(Binv, LinearOperator):
        Binv_s = Binv @ s.cpu().numpy()
    else:
        Binv_s = Binv @ s
    return as_tensor(Binv_s, dtype=s.dtype, device=s.device)


def check_projection(
    h: Estimate,
    observation: Any,
    sketch: Sketch,
    Binv: Any = None,
    num_passes: Optional[int] = None,
):
    """Run all checks of a projection without modifying the gradient estimate.

    Args:
        h: The gradient estimate.
        observation: The observed value(s) ``sketch' @ gradient``.
        sketch: Direction vector, matrix of directions, or coordinate index.
        Binv: Preconditioner. ``None`` means identity. Default: ``None``.
        num_passes: If specified, check for the approximate projection of
            ``projecta_`` with that many passes instead of the exact projection.
            Default: ``None``.

    Raises:
        ValueError: If the number of passes is not positive, a direction is zero, or
            the shapes of ``h``, ``observation``, ``sketch``, and ``Binv`` are
            inconsistent.
        IndexError: If a coordinate index is out of range.
        NotImplementedError: If a non-identity preconditioner is combined with the
            exact projection onto multiple directions.
    """
    h = as_estimate(h)

    if num_passes is not None and num_passes < 1:
        raise ValueError(f"num_passes must be positive. Got {num_passes}.")

    if _is_coordinate(sketch):
        _check_coordinate(h, observation, sketch)
        return

    sketch = _as_sketch(sketch, h)
    check_blocks_projectable(h)
    dim = leading_dim(h)

    if sketch.shape[0] != dim:
        raise ValueError(
            f"Sketch has dimensions {tuple(sketch.shape)}, h has shape"
            f" {estimate_shape(h)} with leading dimension {dim}."
        )

    num_directions = 1 if sketch.ndim == 1 else sketch.shape[1]
    as_observation_matrix(observation, h, num_directions)

    Binv = _as_preconditioner(Binv, h)
    if Binv is not None:
        _check_preconditioner_shape(Binv, dim)

    exact_multiple = sketch.ndim == 2 and num_passes is None
    if exact_multiple and Binv is not None:
        raise NotImplementedError(
            "Projection onto multiple directions only supports the identity as Binv."
            " Use projecta_ for preconditioned projections."
        )

    if not exact_multiple and not sketch.reshape(dim, -1).any(0).all():
        raise ValueError("Sketch directions must be non-zero.")


def _check_coordinate(h: Estimate, observation: Any, i: int):
    """Check a coordinate sketch.

    Args:
        h: The gradient estimate.
        observation: The new value of ``h[i]``.
        i: Coordinate index.

    Raises:
        IndexError: If ``i`` is out of range.
        ValueError: If the observation does not fit into ``h[i]``.
    """
    dim = leading_dim(h)
    if not -dim <= i < dim:
        raise IndexError(f"Coordinate {i} is out of range for dimension {dim}.")

    target = h[i]
    numel = as_tensor(observation).numel()
    if numel not in {1, target.numel()}:
        raise ValueError(
            f"Observation has {numel} entries, coordinate {i} of h has shape"
            f" {tuple(target.shape)}."
        )


def _project_coordinate(h: Estimate, observation: Any, i: int):
    """Overwrite coordinate (or block) ``i`` of ``h`` with the observation."""
    target = h[i]
    value = as_tensor(observation, dtype=target.dtype, device=target.device)
    # a single value fills the whole block
    value = value.reshape(target.shape if value.numel() == target.numel() else ())
    target.copy_(value)


def _project_direction(H: Tensor, observation: Tensor, s: Tensor, Binv: Any):
    """Project each column of a matrix onto the hyperplane of one direction.

    Args:
        H: Matrix view of the gradient estimate. Has shape ``[D, K]``. Modified in
            place.
        observation: Observed value for every column. Has shape ``[K]``.
        s: Direction. Has shape ``[D]``.
        Binv: Normalized preconditioner.

    Raises:
        ValueError: If ``s' Binv s`` vanishes.
    """
    Binv_s = _apply_preconditioner(Binv, s)
    s_Binv_s = s @ Binv_s
    if s_Binv_s == 0:
        raise ValueError("Direction has zero norm in the inner product of Binv.")

    residual = s @ H - observation
    H.sub_(einsum("i,j->ij", Binv_s / s_Binv_s, residual))


def _project_directions(H: Tensor, observation: Tensor, S: Tensor):
    """Jointly project each column of a matrix onto several directions.

    Uses the pseudo-inverse ``(S' S)^+ = S^+ (S^+)'`` from one SVD of ``S`` instead
    of inverting ``S' S``, which may be singular when directions are linearly
    dependent or outnumber the leading dimension. Supported on all devices.

    Args:
        H: Matrix view of the gradient estimate. Has shape ``[D, K]``. Modified in
            place.
        observation: Observed values. Has shape ``[M, K]``.
        S: Directions. Has shape ``[D, M]``.
    """
    residual = S.T @ H - observation
    S_pinv = pinv(S)
    coefficients = S_pinv @ (S_pinv.T @ residual)
    H.sub_(S @ coefficients)


def project_(
    h: Estimate, observation: Any, sketch: Sketch, Binv: Any = None
) -> Estimate:
    r"""Project a gradient estimate onto the observations of a sketch (in-place).

    Finds the point closest to ``h`` in the norm :math:`\Vert x \Vert_{\mathbf{B}} =
    \sqrt{x^\top \mathbf{B} x}` that satisfies the sketched observation. For a
    single direction :math:`\mathbf{s}` this is the rank-one correction

    .. math::
        \mathbf{h} \leftarrow \mathbf{h} - \frac{\mathbf{B}^{-1}\mathbf{s}}
        {\mathbf{s}^\top \mathbf{B}^{-1} \mathbf{s}}
        (\mathbf{s}^\top \mathbf{h} - \mathbf{s}^\top \nabla)\,,

    applied to each column of a matrix estimate and to each entry of a block
    estimate. For a matrix :math:`\mathbf{S}` of directions the joint correction is
    :math:`\mathbf{S} \mathbf{S}^+ (\mathbf{S}^\top)^+ (\mathbf{S}^\top \mathbf{h} -
    \mathbf{S}^\top \nabla)`, evaluated with the pseudo-inverse of
    :math:`\mathbf{S}`. A coordinate index ``i`` overwrites ``h[i]``.

    Args:
        h: The gradient estimate. A tensor (or array) whose leading dimension is
            sketched, or a list of equally-shaped blocks (the block index is
            sketched). Arrays are updated through a tensor sharing their memory.
        observation: The observed value(s) ``sketch' @ gradient``. A scalar, one
            value per column (or a block-shaped tensor) for a direction vector, one
            row per direction (or a list of block-shaped tensors) for a matrix of
            directions, or the new value of ``h[i]`` for a coordinate sketch.
        sketch: Direction vector, matrix whose columns are directions, or integer
            coordinate index.
        Binv: Symmetric positive definite preconditioner defining the inner product.
            A matrix or linear operator of shape ``[D, D]``. ``None`` means identity.
            Only supported for a single direction. Default: ``None``.

    Returns:
        The updated estimate ``h``.

    Raises:
        NotImplementedError: If a non-identity preconditioner is used with multiple
            directions.

    Example:
        >>> from torch import tensor, zeros
        >>> h = zeros(2)
        >>> _ = project_(h, 3.0, tensor([1.0, 1.0]))
        >>> h
        tensor([1.5000, 1.5000])
    """
    check_projection(h, observation, sketch, Binv=Binv)
    estimate = as_estimate(h)

    if _is_coordinate(sketch):
        _project_coordinate(estimate, observation, sketch)
        return h

    sketch = _as_sketch(sketch, estimate)
    Binv = _as_preconditioner(Binv, estimate)
    _warn_if_asymmetric(Binv)

    H, writeback = as_matrix(estimate)
    if sketch.ndim == 1:
        observation = as_observation_matrix(observation, estimate, 1)[0]
        _project_direction(H, observation, sketch, Binv)
    else:
        observation = as_observation_matrix(observation, estimate, sketch.shape[1])
        _project_directions(H, observation, sketch)

    if writeback is not None:
        writeback()
    return h


def projecta_(
    h: Estimate,
    observation: Any,
    sketch: Sketch,
    Binv: Any = None,
    num_passes: int = DEFAULT_NUM_PASSES,
    generator: Optional[Generator] = None,
    progressbar: bool = False,
) -> Estimate:
    """Approximately project a gradient estimate onto several directions (in-place).

    Uses randomized Kaczmarz relaxation: Each pass visits the columns of the sketch
    in random order and projects onto one direction at a time. Equivalent to
    ``project_`` if the directions are orthogonal, and converges to it as the number
    of passes grows. Vector and coordinate sketches are projected exactly.

    Args:
        h: The gradient estimate. See ``project_``.
        observation: The observed values, one per direction. See ``project_``.
        sketch: Matrix whose columns are directions. Direction vectors and coordinate
            indices are forwarded to ``project_``.
        Binv: Symmetric positive definite preconditioner. ``None`` means identity.
            Default: ``None``.
        num_passes: Number of passes over the directions. Must be positive.
            Default: ``5``.
        generator: Random number generator used to draw the orders in which
            directions are visited. Default: ``None`` (global generator).
        progressbar: Show a progress bar over the passes. Default: ``False``.

    Returns:
        The updated estimate ``h``.
    """
    check_projection(h, observation, sketch, Binv=Binv, num_passes=num_passes)
    estimate = as_estimate(h)

    if _is_coordinate(sketch) or _as_sketch(sketch, estimate).ndim == 1:
        return project_(h, observation, sketch, Binv=Binv)

    S = _as_sketch(sketch, estimate)
    Binv = _as_preconditioner(Binv, estimate)
    _warn_if_asymmetric(Binv)

    num_directions = S.shape[1]
    H, writeback = as_matrix(estimate)
    observation = as_observation_matrix(observation, estimate, num_directions)

    passes = range(num_passes)
    if progressbar:
        passes = tqdm(passes, desc="Kaczmarz passes")

    for _ in passes:
        for i in randperm(num_directions, generator=generator).tolist():
            _project_direction(H, observation[i], S[:, i], Binv)

    if writeback is not None:
        writeback()
    return h
