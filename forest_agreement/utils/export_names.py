"""Deterministic output names for exported rasters and tables.

Raster exports are named after the configured description (path targets)
or asset id (catalog targets)::

    {description}_Cluster_{n}     geodata mode, n is 1-based
    {description}_tile_{i}        ROI mode, i is 0-based

Every component is sanitised: only ``A-Z``, ``a-z``, ``0-9``, ``_`` and
``-`` are kept, spaces become underscores, and an empty result falls back
to ``"unknown"``. The same input always produces the same name.
"""

from __future__ import annotations

import re

TARGET_PATH = "path"
TARGET_CATALOG = "catalog"

_NAME_RE = re.compile(r"[^A-Za-z0-9_-]+")


def sanitise_name(value: str) -> str:
    """Convert a string to a file- and asset-safe name.

    - Spaces and ``/`` become underscores
    - Strips all characters except letters, digits, ``_`` and ``-``
    - Collapses consecutive underscores
    - Falls back to ``"unknown"`` if the result is empty
    """
    name = value.strip().replace(" ", "_").replace("/", "_")
    name = _NAME_RE.sub("", name)
    name = re.sub(r"_{2,}", "_", name).strip("_")
    return name if name else "unknown"


def _prefix(target_kind: str, description: str, asset_id: str) -> str:
    if target_kind == TARGET_CATALOG:
        # Catalog ids keep their path separators.
        return "/".join(sanitise_name(part) for part in asset_id.split("/"))
    return sanitise_name(description)


def cluster_export_name(
    number: int, *, description: str, target_kind: str = TARGET_PATH, asset_id: str = ""
) -> str:
    """Name of a cluster export; *number* is 1-based."""
    return f"{_prefix(target_kind, description, asset_id)}_Cluster_{number}"


def tile_export_name(
    index: int, *, description: str, target_kind: str = TARGET_PATH, asset_id: str = ""
) -> str:
    """Name of a tile export; *index* is 0-based."""
    return f"{_prefix(target_kind, description, asset_id)}_tile_{index}"
