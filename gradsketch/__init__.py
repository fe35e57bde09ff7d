"""``gradsketch`` library API."""

from gradsketch.projection import check_projection, project_, projecta_
from gradsketch.sega import SEGA, AccumulatingSEGA, BiasSEGA

__all__ = [
    # projections
    "project_",
    "projecta_",
    "check_projection",
    # estimators
    "BiasSEGA",
    "SEGA",
    "AccumulatingSEGA",
]
