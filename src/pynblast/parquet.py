"""Point clouds from node-level Parquet tables.

Reads neuron samples stored one node per row, in the layout written by
SWC-to-Parquet converters (``file_id``, ``node_id``, ``type``, ``x``,
``y``, ``z``, ...), and groups them into one (N, 3) array per neuron,
ready for :func:`pynblast.dotprops.build_dotprops`.
"""

from __future__ import annotations

import logging
from collections.abc import Hashable, Iterable
from pathlib import Path
from typing import TYPE_CHECKING, Literal

import numpy as np
import pandas as pd
import pyarrow as pa
import pyarrow.compute as pc
import pyarrow.parquet as pq

from .dotprops import DEFAULT_K, build_dotprops

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from .dotprops import DotProp

logger = logging.getLogger(__name__)

COORD_COLUMNS = ("x", "y", "z")

# Column types the reader needs; other columns are ignored. The id column
# keeps its own type and may be renamed through ``id_column``.
POINTS_SCHEMA = pa.schema(
    [
        pa.field("file_id", pa.string()),  # Neuron identifier
        pa.field("type", pa.int32()),  # Node type (1=soma, 2=axon, etc.)
        pa.field("x", pa.float64()),  # X coordinate (microns)
        pa.field("y", pa.float64()),  # Y coordinate (microns)
        pa.field("z", pa.float64()),  # Z coordinate (microns)
    ]
)


def _points_schema(
    schema: pa.Schema,
    id_column: str,
    type_column: str | None,
) -> pa.Schema:
    """Target schema for the selected columns of a point table.

    Raises
    ------
    ValueError
        If a required column is missing.
    """
    required = [id_column, *COORD_COLUMNS]
    if type_column is not None:
        required.append(type_column)
    missing = [name for name in required if name not in schema.names]
    if missing:
        raise ValueError(
            f"Point table is missing required columns {missing}; "
            f"found {schema.names}"
        )

    fields = [schema.field(id_column)]
    fields += [POINTS_SCHEMA.field(name) for name in COORD_COLUMNS]
    if type_column is not None:
        fields.append(POINTS_SCHEMA.field("type").with_name(type_column))
    return pa.schema(fields)


def read_point_clouds(
    source: Path | str | pa.Table,
    id_column: str = "file_id",
    node_types: Iterable[int] | None = None,
    type_column: str = "type",
) -> dict[Hashable, NDArray[np.float64]]:
    """Group node coordinates by neuron.

    Parameters
    ----------
    source : Path, str or pa.Table
        A Parquet file or an in-memory Arrow table.
    id_column : str, default="file_id"
        Column identifying the neuron each node belongs to.
    node_types : iterable of int, optional
        Keep only nodes of these types (e.g. ``[2, 3]`` for axon and
        dendrite). All nodes are kept if None.
    type_column : str, default="type"
        Column holding node types, used with ``node_types``.

    Returns
    -------
    dict
        Neuron id to (N, 3) float64 coordinates, neurons in order of first
        appearance and nodes in row order.

    Raises
    ------
    ValueError
        If a required column is missing or cannot be cast to the types of
        :data:`POINTS_SCHEMA`.
    """
    if isinstance(source, pa.Table):
        source_schema = source.schema
    else:
        source = Path(source)
        source_schema = pq.read_schema(source)

    target = _points_schema(
        source_schema, id_column, type_column if node_types is not None else None
    )

    if isinstance(source, pa.Table):
        table = source.select(target.names)
    else:
        table = pq.read_table(source, columns=target.names)

    try:
        table = table.cast(target)
    except (pa.ArrowInvalid, pa.ArrowNotImplementedError) as e:
        raise ValueError(f"Point table columns do not match {target}: {e}") from e

    if node_types is not None:
        wanted = pa.array(sorted(set(node_types)), type=POINTS_SCHEMA.field("type").type)
        table = table.filter(pc.is_in(table.column(type_column), value_set=wanted))

    if table.num_rows == 0:
        logger.warning("No nodes found in point table")
        return {}

    coords = np.column_stack(
        [table.column(c).to_numpy().astype(np.float64) for c in COORD_COLUMNS]
    )
    codes, uniques = pd.factorize(
        pd.Series(table.column(id_column).to_pylist()), sort=False
    )

    # Stable sort keeps each neuron's nodes in row order
    order = np.argsort(codes, kind="stable")
    splits = np.cumsum(np.bincount(codes, minlength=len(uniques)))[:-1]
    groups = np.split(coords[order], splits)

    clouds = {neuron_id: group for neuron_id, group in zip(uniques, groups)}
    logger.info(f"Read {table.num_rows} nodes for {len(clouds)} neurons")
    return clouds


def dotprops_from_parquet(
    source: Path | str | pa.Table,
    k: int = DEFAULT_K,
    id_column: str = "file_id",
    node_types: Iterable[int] | None = None,
    n_workers: int = 1,
    on_error: Literal["raise", "skip"] = "raise",
) -> dict[Hashable, DotProp]:
    """Read point clouds and build one DotProp per neuron.

    See :func:`read_point_clouds` and
    :func:`pynblast.dotprops.build_dotprops` for the parameters.
    """
    clouds = read_point_clouds(source, id_column=id_column, node_types=node_types)
    return build_dotprops(clouds, k=k, n_workers=n_workers, on_error=on_error)
