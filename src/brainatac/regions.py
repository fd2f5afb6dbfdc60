"""Genomic interval helpers.

All intervals are 0-based and half-open (``[start, end)``), matching the BED
convention used by 10x peak names and fragment files.
"""

from __future__ import annotations

import re
from typing import Sequence, Tuple

import numpy as np
import pandas as pd
import pyranges as pr

REGION_SEP = (":", "-")
REGION_COLUMNS = ["chrom", "start", "end"]


def parse_region(text: str, sep: Sequence[str] = REGION_SEP) -> Tuple[str, int, int]:
    """Split a region string such as ``"chr1:3094484-3095479"`` into its parts.

    Thousands separators inside the coordinates are ignored, so
    ``"chr3:128,446,488-128,499,744"`` is accepted.
    """
    pattern = rf"^(.+){re.escape(sep[0])}([\d,]+){re.escape(sep[1])}([\d,]+)$"
    match = re.match(pattern, str(text).strip())
    if match is None:
        raise ValueError(f"Malformed region '{text}' (expected chrom{sep[0]}start{sep[1]}end)")

    chrom = match.group(1)
    start = int(match.group(2).replace(",", ""))
    end = int(match.group(3).replace(",", ""))
    if end <= start:
        raise ValueError(f"Region '{text}' has end <= start")
    return chrom, start, end


def format_region(chrom: str, start: int, end: int, sep: Sequence[str] = REGION_SEP) -> str:
    return f"{chrom}{sep[0]}{int(start)}{sep[1]}{int(end)}"


def regions_frame(names: Sequence[str], sep: Sequence[str] = REGION_SEP) -> pd.DataFrame:
    """Parse region names into a ``chrom/start/end`` frame indexed by the names."""
    parsed = [parse_region(n, sep=sep) for n in names]
    frame = pd.DataFrame(parsed, columns=REGION_COLUMNS, index=pd.Index(names, dtype=str))
    frame["start"] = frame["start"].astype(np.int64)
    frame["end"] = frame["end"].astype(np.int64)
    return frame


def to_ranges(frame: pd.DataFrame, index_column: str) -> pr.PyRanges:
    """Wrap a ``chrom/start/end`` frame as PyRanges, keeping each row's position."""
    return pr.PyRanges(
        pd.DataFrame(
            {
                "Chromosome": frame["chrom"].to_numpy(),
                "Start": frame["start"].to_numpy(dtype=np.int64),
                "End": frame["end"].to_numpy(dtype=np.int64),
                index_column: np.arange(len(frame), dtype=np.int64),
            }
        )
    )


def points_in_intervals(
    chroms: np.ndarray,
    positions: np.ndarray,
    intervals: pd.DataFrame,
) -> Tuple[np.ndarray, np.ndarray]:
    """Find every (point, interval) pair with ``start <= position < end``.

    Parameters
    ----------
    chroms, positions : np.ndarray
        Chromosome and coordinate of each point.
    intervals : pd.DataFrame
        Frame with ``chrom``, ``start`` and ``end`` columns. Intervals may overlap.

    Returns
    -------
    (np.ndarray, np.ndarray)
        Point indices and positional interval indices of all hits.
    """
    empty = np.empty(0, dtype=np.int64)
    positions = np.asarray(positions, dtype=np.int64)
    if positions.size == 0 or len(intervals) == 0:
        return empty, empty

    # Each point is a 1 bp range
    points = pd.DataFrame(
        {"chrom": np.asarray(chroms), "start": positions, "end": positions + 1}
    )
    hits = to_ranges(points, "Point").join(
        to_ranges(intervals, "Interval"), apply_strand_suffix=False
    )
    if hits.empty:
        return empty, empty

    hits = hits.as_df()
    return hits["Point"].to_numpy(dtype=np.int64), hits["Interval"].to_numpy(dtype=np.int64)


def nearest_intervals(
    query: pd.DataFrame, subject: pd.DataFrame, chunk_size: int = 10_000
) -> Tuple[np.ndarray, np.ndarray]:
    """For each query interval, the positional index of the closest subject interval.

    The gap distance is 0 for overlapping or book-ended intervals. Queries on a
    chromosome without subjects get index -1 and distance -1. When several
    equally close subjects are reported, the one listed first wins.
    """
    n = len(query)
    best = np.full(n, -1, dtype=np.int64)
    distance = np.full(n, -1, dtype=np.int64)
    if n == 0 or len(subject) == 0:
        return best, distance

    subject_ranges = to_ranges(subject, "Subject")
    for offset in range(0, n, chunk_size):
        block = query.iloc[offset : offset + chunk_size]
        nearest = to_ranges(block, "Query").nearest(
            subject_ranges, suffix="_subject", apply_strand_suffix=False
        )
        if nearest.empty:
            continue

        hits = nearest.as_df()
        gap = np.maximum(
            0,
            np.maximum(
                hits["Start_subject"].to_numpy() - hits["End"].to_numpy(),
                hits["Start"].to_numpy() - hits["End_subject"].to_numpy(),
            ),
        )
        hits = (
            hits.assign(gap=gap)
            .sort_values(["Query", "gap", "Subject"])
            .drop_duplicates("Query")
        )
        rows = offset + hits["Query"].to_numpy(dtype=np.int64)
        best[rows] = hits["Subject"].to_numpy(dtype=np.int64)
        distance[rows] = hits["gap"].to_numpy(dtype=np.int64)

    return best, distance


def read_bed(file_path) -> pd.DataFrame:
    """First three columns of a (gzipped) BED file as a ``chrom/start/end`` frame."""
    bed = pd.read_csv(
        file_path,
        sep="\t",
        header=None,
        usecols=[0, 1, 2],
        names=REGION_COLUMNS,
        comment="#",
        dtype={"chrom": str, "start": np.int64, "end": np.int64},
    )
    return bed[~bed["chrom"].str.startswith(("track", "browser"))].reset_index(drop=True)
