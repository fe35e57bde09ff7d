"""General utility functions."""

from typing import List, Union

from numpy import ndarray
from torch import Tensor

from gradsketch._layout import as_estimate, blocks, estimate_shape


def allclose_report(
    estimate1: Union[Tensor, ndarray, List[Union[Tensor, ndarray]]],
    estimate2: Union[Tensor, ndarray, List[Union[Tensor, ndarray]]],
    rtol: float = 1e-5,
    atol: float = 1e-8,
) -> bool:
    """Same as ``allclose`` for gradient estimates, but prints entries that differ.

    Args:
        estimate1: First estimate (tensor, array, or list of blocks) for comparison.
        estimate2: Second estimate for comparison.
        rtol: Relative tolerance. Default is ``1e-5``.
        atol: Absolute tolerance. Default is ``1e-8``.

    Returns:
        ``True`` if the estimates have the same layout and are close, ``False``
        otherwise.
    """
    estimate1, estimate2 = as_estimate(estimate1), as_estimate(estimate2)
    blocks1, blocks2 = blocks(estimate1), blocks(estimate2)

    shape1, shape2 = estimate_shape(estimate1), estimate_shape(estimate2)
    if shape1 != shape2:
        print(f"Shapes differ: {shape1} vs. {shape2}.")
        return False

    close = True
    for block_idx, (b1, b2) in enumerate(zip(blocks1, blocks2)):
        b2 = b2.to(b1.dtype)
        if b1.allclose(b2, rtol=rtol, atol=atol):
            continue
        close = False

        nonclose_idx = b1.isclose(b2, rtol=rtol, atol=atol).logical_not_()
        prefix = f"block {block_idx}, " if len(blocks1) > 1 else ""
        for idx, t1, t2 in zip(
            nonclose_idx.argwhere(), b1[nonclose_idx], b2[nonclose_idx]
        ):
            print(f"{prefix}at index {idx.tolist()}: {t1:.5e} ≠ {t2:.5e}")

        amax1, amax2 = b1.abs().max().item(), b2.abs().max().item()
        print(f"{prefix}Abs max: {amax1:.5e} vs. {amax2:.5e}.")
        num_nonclose = nonclose_idx.sum().item()
        print(f"{prefix}Non-close entries: {num_nonclose} / {b1.numel()}.")

    if not close:
        print(f"rtol = {rtol}, atol = {atol}.")

    return close
