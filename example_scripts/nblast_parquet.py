#!/usr/bin/env python
"""nblast_parquet.py - Score and cluster neurons stored in a node Parquet file.

The Parquet file holds one row per node with file_id, type, x, y, z columns.
The score table CSV has distance bins as rows and |dot| bins as columns, e.g.
the FlyCircuit smat exported from R.
"""

import logging
from pathlib import Path

from pynblast import ScoreTable, batch_score, dotprops_from_parquet
from pynblast.analysis import cluster_scores

INPUT_FILE = Path("neurons.parquet")
SCORE_TABLE = Path("smat_fcwb.csv")

logging.basicConfig(level=logging.INFO)

print("Building dotprops...")
# Axon and dendrite nodes only
dotprops = dotprops_from_parquet(
    INPUT_FILE,
    k=5,
    node_types=[2, 3],
    n_workers=4,
    on_error="skip",
)
print(f"Built {len(dotprops)} dotprops")

table = ScoreTable.from_csv(SCORE_TABLE)
print(f"Score table: {table.shape[0]} distance x {table.shape[1]} dot bins")


def report(message, done, total):
    print(f"\r{message}: {done}/{total}", end="", flush=True)


matrix = batch_score(
    dotprops,
    table,
    normalize=True,
    scores="mean",
    progress_callback=report,
)
print()

print("\nTop 5 matches per neuron:")
scores = matrix.to_frame()
for neuron_id in list(scores.index)[:5]:
    top = scores.loc[neuron_id].drop(neuron_id).nlargest(5)
    matches = ", ".join(f"{tid} ({s:.2f})" for tid, s in top.items())
    print(f"  {neuron_id}: {matches}")

result = cluster_scores(matrix, method="average", n_clusters=5)
print("\nCluster sizes:")
for label in sorted(set(result.labels)):
    print(f"  Cluster {label}: {int((result.labels == label).sum())} neurons")
