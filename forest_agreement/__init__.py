"""Forest Agreement Layer.

Harmonizes independent global land-cover and forest products into binary
forest masks on a common grid, sums them into a per-pixel agreement score,
removes patches below the minimum mapping unit, and reports forest extent
per dataset and per analysis polygon.
"""

__version__ = "0.1.0"
