"""
Tests for genomic interval helpers (parsing, point overlap, nearest interval).
"""

import numpy as np
import pandas as pd
import pytest

from brainatac.regions import (
    format_region,
    nearest_intervals,
    parse_region,
    points_in_intervals,
    read_bed,
    regions_frame,
)


class TestParseRegion:
    def test_basic(self):
        assert parse_region("chr1:3094484-3095479") == ("chr1", 3094484, 3095479)

    def test_thousands_separators(self):
        assert parse_region("chr3:128,446,488-128,499,744") == ("chr3", 128446488, 128499744)

    def test_custom_separators(self):
        assert parse_region("chr2-100-200", sep=("-", "-")) == ("chr2", 100, 200)

    @pytest.mark.parametrize("text", ["chr1", "chr1:100", "chr1:abc-200", "chr1:500-100"])
    def test_malformed(self, text):
        with pytest.raises(ValueError):
            parse_region(text)

    def test_format_round_trip(self):
        name = format_region("chrX", 10, 20)
        assert name == "chrX:10-20"
        assert parse_region(name) == ("chrX", 10, 20)

    def test_regions_frame(self):
        frame = regions_frame(["chr1:10-20", "chr2:5-50"])

        assert list(frame.columns) == ["chrom", "start", "end"]
        assert list(frame.index) == ["chr1:10-20", "chr2:5-50"]
        assert frame["start"].dtype == np.int64
        assert frame.loc["chr2:5-50", "end"] == 50


class TestPointsInIntervals:
    def test_half_open(self):
        """Start is inside an interval, end is not."""
        intervals = pd.DataFrame({"chrom": ["chr1"], "start": [100], "end": [200]})
        points, hits = points_in_intervals(
            np.array(["chr1"] * 4), np.array([99, 100, 199, 200]), intervals
        )

        assert sorted(points.tolist()) == [1, 2]
        assert set(hits.tolist()) == {0}

    def test_overlapping_intervals_and_chromosomes(self):
        intervals = pd.DataFrame(
            {"chrom": ["chr1", "chr1", "chr2"], "start": [0, 50, 0], "end": [100, 150, 100]}
        )
        chroms = np.array(["chr1", "chr2", "chr3"])
        positions = np.array([75, 75, 75])

        points, hits = points_in_intervals(chroms, positions, intervals)
        pairs = sorted(zip(points.tolist(), hits.tolist()))

        # chr1 point hits both overlapping intervals, chr3 point hits nothing
        assert pairs == [(0, 0), (0, 1), (1, 2)]

    def test_no_hits(self):
        intervals = pd.DataFrame({"chrom": ["chr1"], "start": [0], "end": [10]})
        points, hits = points_in_intervals(np.array(["chr2"]), np.array([5]), intervals)
        assert points.size == 0 and hits.size == 0


class TestNearestIntervals:
    def test_distances(self):
        subject = pd.DataFrame(
            {"chrom": ["chr1", "chr1"], "start": [1000, 5000], "end": [2000, 6000]}
        )
        query = pd.DataFrame(
            {
                "chrom": ["chr1", "chr1", "chr1", "chr9"],
                "start": [1500, 2100, 4800, 0],
                "end": [1600, 2200, 4900, 10],
            }
        )

        best, distance = nearest_intervals(query, subject)

        assert best.tolist() == [0, 0, 1, -1]
        # Overlap is 0; gaps are measured between the closest edges
        assert distance.tolist() == [0, 100, 100, -1]

    def test_chunking_matches(self):
        rng = np.random.default_rng(0)
        starts = np.sort(rng.integers(0, 1_000_000, 50))
        subject = pd.DataFrame({"chrom": "chr1", "start": starts, "end": starts + 500})
        q_starts = rng.integers(0, 1_000_000, 200)
        query = pd.DataFrame({"chrom": "chr1", "start": q_starts, "end": q_starts + 10})

        full = nearest_intervals(query, subject, chunk_size=1024)
        chunked = nearest_intervals(query, subject, chunk_size=7)

        np.testing.assert_array_equal(full[1], chunked[1])
        # The chosen subject is at the reported gap
        best = subject.iloc[chunked[0]]
        gap = np.maximum(
            0,
            np.maximum(
                best["start"].to_numpy() - query["end"].to_numpy(),
                query["start"].to_numpy() - best["end"].to_numpy(),
            ),
        )
        np.testing.assert_array_equal(gap, chunked[1])


def test_read_bed(tmp_path):
    path = tmp_path / "regions.bed"
    path.write_text("# comment\nchr1\t10\t20\tname\nchr2\t30\t40\tother\n")

    bed = read_bed(path)

    assert list(bed.columns) == ["chrom", "start", "end"]
    assert bed["chrom"].tolist() == ["chr1", "chr2"]
    assert bed["end"].tolist() == [20, 40]
