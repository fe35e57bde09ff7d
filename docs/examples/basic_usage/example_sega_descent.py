r"""Descent with sketched gradients
===============================

This example compares gradient descent to descent with sketched gradient
estimates. We minimize a quadratic on the unit sphere, but pretend we can only
observe the directional derivative :math:`\mathbf{s}^\top \nabla f(\mathbf{x})`
along one random direction :math:`\mathbf{s}` per step.

:class:`gradsketch.BiasSEGA` keeps a running estimate consistent with all
observations. :class:`gradsketch.SEGA` additionally removes the estimate's bias,
and :class:`gradsketch.AccumulatingSEGA` does the same with an explicit
finalization step.

As always, imports go first.
"""

from matplotlib import pyplot as plt
from torch import Generator, float64, manual_seed, randn, zeros

from gradsketch import SEGA, AccumulatingSEGA, BiasSEGA

# make deterministic
manual_seed(0)
generator = Generator().manual_seed(123)

# %%
#
# Setup
# -----
#
# The objective is :math:`f(\mathbf{x}) = \frac{1}{2} \mathbf{x}^\top \mathbf{Q}
# \mathbf{x} + \mathbf{c}^\top \mathbf{x}` with a random symmetric matrix
# :math:`\mathbf{Q}`. After every step, the iterate is normalized to unit length.

D = 10
step_size = 1 / (2 * D)
num_iterations = 30

Q = randn(D, D, generator=generator, dtype=float64)
Q = (Q + Q.T) / 2
c = randn(D, generator=generator, dtype=float64)


def f(x):
    return x @ Q @ x / 2 + c @ x


def grad_f(x):
    return Q @ x + c


def step(x, direction):
    x = x - step_size * direction
    return x / x.norm()


# %%
#
# Estimators
# ----------
#
# Gaussian directions are uniformly distributed on the sphere after normalization.
# A single projection therefore observes any direction with probability
# :math:`1 / D`, and the bias-correction coefficient is :math:`\theta = D`.

biased = BiasSEGA.zeros(D)
sega = SEGA.zeros(D, D)
accumulating = AccumulatingSEGA.zeros(D)

# %%
#
# Optimization
# ------------
#
# All methods start at the same point. The sketched methods share the directions.

x_gd, x_biased, x_sega, x_accumulating = (zeros(D, dtype=float64) for _ in range(4))
losses = {"GD": [], "BiasSEGA": [], "SEGA": [], "AccumulatingSEGA": []}

for _ in range(num_iterations):
    s = randn(D, generator=generator, dtype=float64)

    x_gd = step(x_gd, grad_f(x_gd))

    biased.project(s @ grad_f(x_biased), s)
    x_biased = step(x_biased, biased.gradient())

    sega.project(s @ grad_f(x_sega), s)
    x_sega = step(x_sega, sega.gradient())

    accumulating.project(1 / D, s @ grad_f(x_accumulating), s)
    accumulating.unbias()
    x_accumulating = step(x_accumulating, accumulating.gradient())

    for name, x in zip(losses, [x_gd, x_biased, x_sega, x_accumulating]):
        losses[name].append(f(x).item())

print("GD \t BiasSEGA \t SEGA \t AccumulatingSEGA")
for values in zip(*losses.values()):
    print(" \t ".join(f"{v:.5f}" for v in values))

# %%
#
# Since :class:`gradsketch.SEGA` and :class:`gradsketch.AccumulatingSEGA` use the
# same coefficient :math:`\theta = 1 / \tau = D`, their iterates coincide.

assert max(
    abs(a - b) for a, b in zip(losses["SEGA"], losses["AccumulatingSEGA"])
) < 1e-10

# %%
#
# Visualization
# -------------
#
# Let's compare the objective along the iterations. Gradient descent sees the full
# gradient and serves as reference.

fig, ax = plt.subplots()
ax.set_xlabel("Iteration")
ax.set_ylabel("Objective")
for name, values in losses.items():
    ax.plot(values, label=name, linestyle="--" if name == "SEGA" else "-")
ax.legend()
plt.show()
