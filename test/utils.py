"""Utility functions to test ``gradsketch``."""

from typing import List, Optional, Tuple, Union

from numpy import ndarray
from scipy.linalg import pinv
from torch import (
    Generator,
    Tensor,
    as_tensor,
    cuda,
    device,
    eye,
    float64,
    from_numpy,
    randn,
    stack,
)
from torch.linalg import qr

from gradsketch._layout import Estimate, EstimateShape, zeros_estimate


def get_available_devices() -> List[device]:
    """Return CPU and, if present, GPU device.

    Returns:
        devices: Available devices for ``torch``.
    """
    devices = [device("cpu")]

    if cuda.is_available():
        devices.append(device("cuda"))

    return devices


def rand_estimate(
    shape: EstimateShape, generator: Generator, dtype=float64
) -> Estimate:
    """Draw a gradient estimate with i.i.d. standard normal entries.

    Args:
        shape: Shape of the estimate. See ``BiasSEGA.zeros``.
        generator: Random number generator.
        dtype: Element type. Default: ``torch.float64``.

    Returns:
        The random estimate.
    """
    h = zeros_estimate(shape, dtype)
    if isinstance(h, list):
        return [randn(b.shape, generator=generator, dtype=dtype) for b in h]
    return randn(h.shape, generator=generator, dtype=dtype)


def rand_sketch(
    dim: int, num_directions: Optional[int], generator: Generator, dtype=float64
) -> Tensor:
    """Draw a Gaussian sketch.

    Args:
        dim: Leading dimension of the gradient estimate.
        num_directions: Number of directions. ``None`` draws a single vector.
        generator: Random number generator.
        dtype: Element type. Default: ``torch.float64``.

    Returns:
        Direction vector of shape ``[dim]`` or matrix of shape
        ``[dim, num_directions]``.
    """
    shape = (dim,) if num_directions is None else (dim, num_directions)
    return randn(shape, generator=generator, dtype=dtype)


def rand_orthonormal(dim: int, generator: Generator, dtype=float64) -> Tensor:
    """Draw a random orthonormal basis.

    Args:
        dim: Dimension of the space.
        generator: Random number generator.
        dtype: Element type. Default: ``torch.float64``.

    Returns:
        Orthonormal matrix of shape ``[dim, dim]``.
    """
    Q, _ = qr(randn(dim, dim, generator=generator, dtype=dtype))
    return Q


def rand_spd(dim: int, generator: Generator, dtype=float64) -> Tensor:
    """Draw a random symmetric positive definite matrix.

    Args:
        dim: Dimension of the matrix.
        generator: Random number generator.
        dtype: Element type. Default: ``torch.float64``.

    Returns:
        The matrix, well-conditioned by adding the identity.
    """
    A = randn(dim, dim, generator=generator, dtype=dtype)
    return A @ A.T / dim + eye(dim, dtype=dtype)


def quadratic(dim: int, generator: Generator, dtype=float64) -> Tuple[Tensor, Tensor]:
    """Draw a random quadratic ``f(x) = x' Q x / 2 + c' x``.

    Args:
        dim: Dimension of the domain.
        generator: Random number generator.
        dtype: Element type. Default: ``torch.float64``.

    Returns:
        The symmetric matrix ``Q`` and vector ``c``. The gradient is ``Q x + c``.
    """
    Q = randn(dim, dim, generator=generator, dtype=dtype)
    c = randn(dim, generator=generator, dtype=dtype)
    return (Q + Q.T) / 2, c


def to_matrix(h: Union[Estimate, ndarray]) -> Tensor:
    """Copy an estimate into its ``[leading, columns]`` matrix.

    Args:
        h: The estimate.

    Returns:
        The matrix.
    """
    if isinstance(h, ndarray):
        h = from_numpy(h)
    if isinstance(h, list):
        h = stack(h)
    H = h.reshape(h.shape[0], -1) if h.ndim > 1 else h.unsqueeze(1)
    return H.clone()


def sketch_observation(gradient: Estimate, sketch: Tensor) -> Union[Tensor, List]:
    """Compute the observation ``sketch' @ gradient`` in the gradient's format.

    Args:
        gradient: The true gradient.
        sketch: Direction vector or matrix of directions.

    Returns:
        The observation. For block gradients, a block-shaped tensor (single
        direction) or a list of them (one per direction).
    """
    observation = sketch.T @ to_matrix(gradient)

    if isinstance(gradient, list):
        block_shape = gradient[0].shape
        if sketch.ndim == 1:
            return observation.reshape(block_shape)
        return [row.reshape(block_shape) for row in observation]

    if gradient.ndim == 1:
        return observation.squeeze(-1)
    if sketch.ndim == 1:
        return observation.reshape(gradient.shape[1:])
    return observation.reshape(sketch.shape[1], *gradient.shape[1:])


def reference_projection(
    H: Tensor, observation: Tensor, S: Tensor, Binv: Optional[Tensor] = None
) -> Tensor:
    """Compute the weighted projection of a matrix with SciPy.

    Returns ``H - Binv S (S' Binv S)^+ (S' H - observation)``, the point closest to
    ``H`` in the norm induced by ``Binv^{-1}`` that satisfies ``S' X = observation``.

    Args:
        H: Matrix view of the estimate. Has shape ``[D, K]``.
        observation: Observations. Has shape ``[M, K]``.
        S: Directions. Has shape ``[D, M]``.
        Binv: Preconditioner. ``None`` means identity.

    Returns:
        The projected matrix.
    """
    H, obs, S = H.numpy(), observation.numpy(), S.numpy()
    Binv_S = S if Binv is None else Binv.numpy() @ S
    return as_tensor(H - Binv_S @ pinv(S.T @ Binv_S) @ (S.T @ H - obs))
