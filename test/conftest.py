"""Contains pytest fixtures that are visible by other files."""

from test.cases import LAYOUT_CASES, LAYOUT_IDS, SEED_IDS, SEEDS
from typing import Dict

from pytest import fixture
from torch import Generator, manual_seed


@fixture(params=SEEDS, ids=SEED_IDS)
def generator(request) -> Generator:
    """Seeded random number generator.

    Also seeds the global generator, which is used when no generator is passed.

    Yields:
        A generator seeded with the test case's seed.
    """
    seed = request.param
    manual_seed(seed)
    yield Generator().manual_seed(seed)


@fixture(params=LAYOUT_CASES, ids=LAYOUT_IDS)
def layout_case(request) -> Dict:
    """Gradient estimate layout.

    Yields:
        Dictionary with the layout's ``name`` and ``shape``.
    """
    yield request.param
