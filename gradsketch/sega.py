"""SEGA gradient estimators built on top of sketched projections.

For details on SEGA, see

- Hanzely, F., Mishchenko, K., & Richtarik, P. (2018). SEGA: Variance reduction via
  gradient sketching. Advances in Neural Information Processing Systems (NeurIPS).
"""

from __future__ import annotations

from typing import Any, List, Optional, Union

from numpy import ndarray
from torch import Generator, Size, Tensor, device, dtype, float64, lerp

from gradsketch._layout import (
    Estimate,
    EstimateShape,
    as_estimate,
    blocks,
    check_same_layout,
    clone_estimate,
    estimate_shape,
    zeros_estimate,
    zeros_like_estimate,
)
from gradsketch.projection import (
    DEFAULT_NUM_PASSES,
    Sketch,
    check_projection,
    project_,
    projecta_,
)


def _copy_estimate(src: Estimate, out: Optional[Any]) -> Any:
    """Copy an estimate into a fresh buffer, or into ``out`` if specified.

    Args:
        src: The estimate to copy.
        out: Destination with the same layout as ``src``, or ``None``.

    Returns:
        A fresh copy of ``src`` if ``out`` is ``None``, otherwise ``out``.
    """
    if out is None:
        return clone_estimate(src)

    dest = as_estimate(out)
    check_same_layout(src, dest, "out")
    for d, s in zip(blocks(dest), blocks(src)):
        d.copy_(s)
    return out


class _SketchedEstimator:
    """Query interface shared by all estimators.

    Sub-classes must store their biased estimate in ``self._h``.
    """

    _h: Estimate

    @property
    def h(self) -> Estimate:
        """The (biased) gradient estimate the projections act on."""
        return self._h

    @property
    def shape(self) -> Union[Size, List[Size]]:
        """Shape of the estimate. A list of shapes for block estimates."""
        return estimate_shape(self._h)

    def size(self, dim: Optional[int] = None) -> Union[Size, List[Size], int]:
        """Return the shape of the estimate, or its size along one dimension.

        Args:
            dim: Dimension to query. Default: ``None`` (full shape).

        Returns:
            The shape, or the size along ``dim``. For block estimates, dimension
            ``0`` is the number of blocks.

        Raises:
            ValueError: If a dimension other than ``0`` is queried for a block
                estimate.
        """
        if dim is None:
            return self.shape
        if isinstance(self._h, list):
            if dim != 0:
                raise ValueError(f"Block estimates only have dimension 0. Got {dim}.")
            return len(self._h)
        return self._h.shape[dim]

    @property
    def dtype(self) -> dtype:
        """Element type of the estimate."""
        return blocks(self._h)[0].dtype

    @property
    def device(self) -> device:
        """Device the estimate lives on."""
        return blocks(self._h)[0].device

    def __repr__(self) -> str:
        return f"{type(self).__name__}(shape={self.shape}, dtype={self.dtype})"


class BiasSEGA(_SketchedEstimator):
    """Biased SEGA gradient estimator.

    Stores an estimate ``h`` of the gradient and projects it onto every new sketched
    observation. The projected estimate is biased because it only incorporates
    information along the sketched directions.

    Example:
        >>> from torch import tensor
        >>> sega = BiasSEGA.zeros(2)
        >>> sega = sega.project(1.0, tensor([1.0, 0.0])).project(1.0, 1)
        >>> sega.gradient()
        tensor([1., 1.], dtype=torch.float64)
    """

    def __init__(
        self,
        h: Union[Tensor, ndarray, List[Union[Tensor, ndarray]]],
        copy: bool = False,
    ):
        """Wrap an existing gradient estimate.

        Args:
            h: Initial estimate. A tensor (or array) whose leading dimension is the
                one being sketched, or a list of blocks.
            copy: Whether the estimator takes exclusive ownership of a copy of ``h``.
                If ``False``, it shares storage with ``h`` and in-place updates are
                visible to the caller. Default: ``False``.
        """
        self._h = as_estimate(h, copy=copy)

    @classmethod
    def zeros(
        cls,
        shape: EstimateShape,
        dtype: dtype = float64,
        device: Optional[device] = None,
    ) -> BiasSEGA:
        """Create an estimator with a zero-initialized estimate.

        Args:
            shape: An integer (vector length), a tuple (tensor shape), or a list of
                tuples (one shape per block).
            dtype: Element type. Default: ``torch.float64``.
            device: Device of the estimate. Default: ``None`` (default device).

        Returns:
            The estimator.
        """
        return cls(zeros_estimate(shape, dtype, device))

    def project(
        self, observation: Any, sketch: Sketch, Binv: Any = None
    ) -> BiasSEGA:
        """Project the estimate onto a sketched observation.

        Args:
            observation: Observed value(s) ``sketch' @ gradient``.
            sketch: Direction vector, matrix of directions, or coordinate index.
            Binv: Preconditioner. ``None`` means identity. Default: ``None``.

        Returns:
            The estimator.
        """
        project_(self._h, observation, sketch, Binv=Binv)
        return self

    def projecta(
        self,
        observation: Any,
        sketch: Sketch,
        Binv: Any = None,
        num_passes: int = DEFAULT_NUM_PASSES,
        generator: Optional[Generator] = None,
        progressbar: bool = False,
    ) -> BiasSEGA:
        """Approximately project the estimate onto several sketched observations.

        See ``gradsketch.projecta_`` for the arguments.

        Returns:
            The estimator.
        """
        projecta_(
            self._h,
            observation,
            sketch,
            Binv=Binv,
            num_passes=num_passes,
            generator=generator,
            progressbar=progressbar,
        )
        return self

    def gradient(self, out: Optional[Any] = None) -> Any:
        """Return the current gradient estimate.

        Args:
            out: Destination with the same layout as the estimate. Default: ``None``.

        Returns:
            A fresh copy of the estimate, or ``out`` holding the estimate.
        """
        return _copy_estimate(self._h, out)


class _DebiasedEstimator(_SketchedEstimator):
    """Biased estimate ``h`` plus the buffers ``hp`` and ``g`` used to de-bias it."""

    def __init__(
        self,
        h: Union[Tensor, ndarray, List[Union[Tensor, ndarray]]],
        hp: Optional[Union[Tensor, ndarray, List[Union[Tensor, ndarray]]]] = None,
        g: Optional[Union[Tensor, ndarray, List[Union[Tensor, ndarray]]]] = None,
        copy: bool = False,
    ):
        """Wrap existing buffers.

        Args:
            h: Initial biased estimate. See ``BiasSEGA``.
            hp: Buffer for the previous estimate. Must have the same layout as
                ``h``. Default: ``None`` (copy of ``h``).
            g: Buffer for the unbiased estimate. Must have the same layout as ``h``.
                Default: ``None`` (zeros).
            copy: Whether to take exclusive ownership of copies of the supplied
                buffers instead of sharing their storage. Default: ``False``.

        Raises:
            ValueError: If the buffers' layouts differ.
        """
        self._biased = BiasSEGA(h, copy=copy)
        self._h = self._biased.h

        if hp is None:
            self._hp = clone_estimate(self._h)
        else:
            self._hp = as_estimate(hp, copy=copy)
            check_same_layout(self._h, self._hp, "hp")

        if g is None:
            self._g = zeros_like_estimate(self._h)
        else:
            self._g = as_estimate(g, copy=copy)
            check_same_layout(self._h, self._g, "g")

    @property
    def hp(self) -> Estimate:
        """The previous estimate ``g`` extrapolates from."""
        return self._hp

    @property
    def biased(self) -> BiasSEGA:
        """The wrapped biased estimator."""
        return self._biased

    def _snapshot(self):
        """Copy the current estimate into ``hp``."""
        for hp, h in zip(blocks(self._hp), blocks(self._h)):
            hp.copy_(h)

    def _lerp(self, theta: float):
        """Store ``theta h + (1 - theta) hp`` in ``g``."""
        for g, hp, h in zip(blocks(self._g), blocks(self._hp), blocks(self._h)):
            lerp(hp, h, theta, out=g)


class SEGA(_DebiasedEstimator):
    r"""Unbiased SEGA gradient estimator.

    Wraps a ``BiasSEGA`` estimate :math:`\mathbf{h}` and remembers its value
    :math:`\mathbf{h}_p` before the latest projection. The gradient estimate

    .. math::
        \mathbf{g} = \theta \mathbf{h} + (1 - \theta) \mathbf{h}_p

    removes the bias of the projection if :math:`\theta` is the inverse of the
    probability with which a sketch observes a direction, e.g. :math:`\theta = D` for
    uniformly drawn coordinates of a :math:`D`-dimensional gradient. Values
    :math:`\theta > 1` extrapolate from :math:`\mathbf{h}_p` beyond :math:`\mathbf{h}`.
    """

    def __init__(
        self,
        theta: float,
        h: Union[Tensor, ndarray, List[Union[Tensor, ndarray]]],
        hp: Optional[Union[Tensor, ndarray, List[Union[Tensor, ndarray]]]] = None,
        g: Optional[Union[Tensor, ndarray, List[Union[Tensor, ndarray]]]] = None,
        copy: bool = False,
    ):
        """Wrap existing buffers.

        Args:
            theta: Positive bias-correction coefficient.
            h: Initial biased estimate. See ``BiasSEGA``.
            hp: Buffer for the estimate before the latest projection. Must have the
                same layout as ``h``. Default: ``None`` (copy of ``h``).
            g: Buffer for the unbiased estimate. Must have the same layout as ``h``.
                Default: ``None`` (zeros).
            copy: Whether to take exclusive ownership of copies of the supplied
                buffers instead of sharing their storage. Default: ``False``.

        Raises:
            ValueError: If ``theta`` is not positive or the buffers' layouts
                differ.
        """
        if not theta > 0:
            raise ValueError(f"theta must be positive. Got {theta}.")
        self._theta = float(theta)
        super().__init__(h, hp=hp, g=g, copy=copy)

    @classmethod
    def zeros(
        cls,
        theta: float,
        shape: EstimateShape,
        dtype: dtype = float64,
        device: Optional[device] = None,
    ) -> SEGA:
        """Create an estimator with zero-initialized buffers.

        Args:
            theta: Positive bias-correction coefficient.
            shape: Shape of the estimate. See ``BiasSEGA.zeros``.
            dtype: Element type. Default: ``torch.float64``.
            device: Device of the estimate. Default: ``None`` (default device).

        Returns:
            The estimator.
        """
        return cls(theta, zeros_estimate(shape, dtype, device))

    @property
    def theta(self) -> float:
        """Bias-correction coefficient."""
        return self._theta

    def project(self, observation: Any, sketch: Sketch, Binv: Any = None) -> SEGA:
        """Project the estimate onto a sketched observation.

        See ``BiasSEGA.project`` for the arguments.

        Returns:
            The estimator.
        """
        check_projection(self._h, observation, sketch, Binv=Binv)
        self._snapshot()
        self._biased.project(observation, sketch, Binv=Binv)
        return self

    def projecta(
        self,
        observation: Any,
        sketch: Sketch,
        Binv: Any = None,
        num_passes: int = DEFAULT_NUM_PASSES,
        generator: Optional[Generator] = None,
        progressbar: bool = False,
    ) -> SEGA:
        """Approximately project the estimate onto several sketched observations.

        See ``gradsketch.projecta_`` for the arguments.

        Returns:
            The estimator.
        """
        check_projection(
            self._h, observation, sketch, Binv=Binv, num_passes=num_passes
        )
        self._snapshot()
        self._biased.projecta(
            observation,
            sketch,
            Binv=Binv,
            num_passes=num_passes,
            generator=generator,
            progressbar=progressbar,
        )
        return self

    def gradient(self, out: Optional[Any] = None) -> Any:
        """Return the unbiased gradient estimate.

        Does not modify the estimator's state, hence can be called any number of
        times between projections.

        Args:
            out: Destination with the same layout as the estimate. Default: ``None``.

        Returns:
            A fresh copy of the unbiased estimate, or ``out`` holding it.
        """
        self._lerp(self._theta)
        return _copy_estimate(self._g, out)


class AccumulatingSEGA(_DebiasedEstimator):
    r"""SEGA estimator with an accumulated bias-correction coefficient.

    Every projection adds a weight to a running coefficient :math:`\tau`. The
    unbiased estimate is only formed by an explicit call to ``unbias``, which uses
    :math:`\theta = 1 / \tau` to extrapolate from the estimate at the previous
    ``unbias`` call, then resets :math:`\tau`.

    Note:
        ``gradient`` returns the estimate formed by the latest ``unbias`` call (zeros
        before the first call). Calling ``unbias`` is required after projecting.
    """

    def __init__(
        self,
        h: Union[Tensor, ndarray, List[Union[Tensor, ndarray]]],
        hp: Optional[Union[Tensor, ndarray, List[Union[Tensor, ndarray]]]] = None,
        g: Optional[Union[Tensor, ndarray, List[Union[Tensor, ndarray]]]] = None,
        copy: bool = False,
    ):
        """Wrap existing buffers.

        Args:
            h: Initial biased estimate. See ``BiasSEGA``.
            hp: Buffer for the estimate at the latest ``unbias`` call. Must have the
                same layout as ``h``. Default: ``None`` (copy of ``h``).
            g: Buffer for the unbiased estimate. Must have the same layout as ``h``.
                Default: ``None`` (zeros).
            copy: Whether to take exclusive ownership of copies of the supplied
                buffers instead of sharing their storage. Default: ``False``.

        Raises:
            ValueError: If the buffers' layouts differ.
        """
        self._tau = 0.0
        super().__init__(h, hp=hp, g=g, copy=copy)

    @classmethod
    def zeros(
        cls,
        shape: EstimateShape,
        dtype: dtype = float64,
        device: Optional[device] = None,
    ) -> AccumulatingSEGA:
        """Create an estimator with zero-initialized buffers.

        Args:
            shape: Shape of the estimate. See ``BiasSEGA.zeros``.
            dtype: Element type. Default: ``torch.float64``.
            device: Device of the estimate. Default: ``None`` (default device).

        Returns:
            The estimator.
        """
        return cls(zeros_estimate(shape, dtype, device))

    @property
    def tau(self) -> float:
        """Accumulated coefficient since the latest ``unbias`` call."""
        return self._tau

    def project(
        self, weight: float, observation: Any, sketch: Sketch, Binv: Any = None
    ) -> AccumulatingSEGA:
        """Project the estimate and accumulate the bias-correction coefficient.

        Args:
            weight: Amount added to the running coefficient.
            observation: Observed value(s) ``sketch' @ gradient``.
            sketch: Direction vector, matrix of directions, or coordinate index.
            Binv: Preconditioner. ``None`` means identity. Default: ``None``.

        Returns:
            The estimator.
        """
        self._biased.project(observation, sketch, Binv=Binv)
        self._tau += weight
        return self

    def projecta(
        self,
        weight: float,
        observation: Any,
        sketch: Sketch,
        Binv: Any = None,
        num_passes: int = DEFAULT_NUM_PASSES,
        generator: Optional[Generator] = None,
        progressbar: bool = False,
    ) -> AccumulatingSEGA:
        """Approximate version of ``project``. See ``gradsketch.projecta_``.

        Returns:
            The estimator.
        """
        self._biased.projecta(
            observation,
            sketch,
            Binv=Binv,
            num_passes=num_passes,
            generator=generator,
            progressbar=progressbar,
        )
        self._tau += weight
        return self

    def unbias(self) -> Estimate:
        """Form the unbiased estimate and reset the running coefficient.

        Returns:
            A copy of the unbiased estimate.

        Raises:
            ValueError: If the accumulated coefficient is not positive.
        """
        if self._tau <= 0:
            raise ValueError(f"tau must be positive. Got {self._tau}.")

        self._lerp(1 / self._tau)
        self._snapshot()
        self._tau = 0.0

        return clone_estimate(self._g)

    def gradient(self, out: Optional[Any] = None) -> Any:
        """Return the unbiased estimate formed by the latest ``unbias`` call.

        Args:
            out: Destination with the same layout as the estimate. Default: ``None``.

        Returns:
            A fresh copy of the estimate, or ``out`` holding it.
        """
        return _copy_estimate(self._g, out)
