"""
Tests for migration-register and establishment-census harmonization.
"""

import numpy as np
import pandas as pd
import pytest

from kormig.crosswalk.establishment import (
    build_ksic_tables,
    harmonize_industries,
    match_establishment_regions,
    split_by_year,
)
from kormig.crosswalk.migration import (
    build_migration_flows,
    exclude_regions,
    harmonize_migration,
    origin_outflows,
)
from kormig.crosswalk.region import RegionResolver
from tests.fixtures.synthetic_tables import make_region_tables


@pytest.fixture
def migration_resolver():
    kosis, stat_changes, _ = make_region_tables()
    return RegionResolver(kosis, stat_changes)


def write_household_year(path, rows):
    """rows: (dest_code, orig_code, count)"""
    lines = []
    for dest, orig, count in rows:
        row = [""] * 17
        row[0], row[1] = dest[:2], dest[2:]
        row[6], row[7] = orig[:2], orig[2:]
        row[14] = str(count)
        lines.append(",".join(row))
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


class TestMigrationHarmonization:
    """Test register -> bilateral flows."""

    def test_intra_district_moves_dropped(self, migration_resolver):
        records = pd.DataFrame({
            "iso_d_raw": ["41113", "41119", "11010"],
            "iso_o_raw": ["41110", "11010", "bad"],
            "year": [2005] * 3,
            "migration": [5, 2, 1],
        })
        result, n_unresolved, n_same = harmonize_migration(records, migration_resolver)

        # 41113 and 41110 both resolve to 31010
        assert n_same == 1
        assert n_unresolved == 1
        assert result[["iso_d", "iso_o"]].values.tolist() == [["31010", "11010"]]
        assert "iso_d_raw" not in result.columns

    def test_build_flows_aggregates_and_skips_missing_years(self, tmp_path, migration_resolver):
        write_household_year(tmp_path / "migration2005.csv", [
            ("41113", "11010", 2),
            ("41119", "11010", 3),
            ("11010", "42110", 1),
        ])
        write_household_year(tmp_path / "migration2016.csv", [("11010", "42110", 4)])

        flows, stats = build_migration_flows(tmp_path, migration_resolver, [2005, 2006, 2016])

        assert stats.missing_years == [2006]
        assert stats.records == 4
        indexed = flows.set_index(["year", "iso_d", "iso_o"])["migration"]
        assert indexed[(2005, "31010", "11010")] == 5
        assert indexed[(2005, "11010", "32010")] == 1
        assert indexed[(2016, "11010", "32010")] == 4
        assert list(flows.columns) == ["year", "iso_d", "iso_o", "migration"]

    def test_no_register_files(self, tmp_path, migration_resolver):
        with pytest.raises(ValueError):
            build_migration_flows(tmp_path, migration_resolver, [2005])

    def test_exclude_regions(self):
        flows = pd.DataFrame({
            "year": [2005, 2005, 2005],
            "iso_d": ["37430", "11010", "21010"],
            "iso_o": ["11010", "37430", "11010"],
            "migration": [1, 2, 3],
        })
        result = exclude_regions(flows, ["37430"])
        assert result["migration"].tolist() == [3]

    def test_origin_outflows(self):
        flows = pd.DataFrame({
            "year": [1996, 1996, 2000, 2005],
            "iso_d": ["11010", "21010", "11010", "11010"],
            "iso_o": ["31010", "31010", "31010", "31010"],
            "migration": [1, 2, 4, 8],
        })
        result = origin_outflows(flows, [1996, 2000]).set_index("year")["migration"]
        assert result[1996] == 3
        assert result[2000] == 4
        assert 2005 not in result.index


class TestEstablishmentHarmonization:
    """Test census region matching and KSIC harmonization."""

    @pytest.fixture
    def ksic_tables(self):
        ksic8_9_raw = pd.DataFrame({"ksic8": ["a", None], "ksic9": ["A", "B"]})
        ksic9_10_raw = pd.DataFrame({"ksic9": ["A", "B"], "ksic10": ["X", "Y"]})
        return build_ksic_tables(ksic8_9_raw, ksic9_10_raw)

    def test_region_matching_truncates_every_code(self):
        _, stat_changes, _ = make_region_tables()
        resolver = RegionResolver(None, stat_changes, normalize="all")
        raw = pd.DataFrame({
            "sido": ["11", "31", "35", "xx"],
            "sigungu": ["015", "011", "010", "010"],
            "ksic8": ["D151"] * 4,
            "emp_all": [1.0, 2.0, 3.0, 4.0],
        })
        matched, n_dropped = match_establishment_regions(raw, resolver)

        assert n_dropped == 1
        assert matched["iso"].tolist() == ["11010", "31010", "35020"]
        assert "sido" not in matched.columns

    def test_ksic_tables_equal_split(self, ksic_tables):
        ksic8_9, ksic9_10 = ksic_tables
        assert np.allclose(ksic8_9["weight"], 0.5)
        assert np.allclose(ksic9_10["weight"], 1.0)

    def test_harmonize_industries(self, ksic_tables):
        ksic8_9, ksic9_10 = ksic_tables
        frames = {
            1999: pd.DataFrame({
                "iso": ["31010"], "year": [1999], "ksic8": ["a"],
                "emp_all": [100.0], "emp_female": [40.0], "emp_male": [60.0],
            }),
            2010: pd.DataFrame({
                "iso": ["31010"], "year": [2010], "ksic9": ["A"],
                "emp_all": [30.0], "emp_female": [10.0], "emp_male": [20.0],
            }),
        }
        est = harmonize_industries(frames, ksic8_9, ksic9_10)

        assert frames == {}
        assert list(est.columns) == ["iso", "year", "ksic10", "emp_all", "emp_female", "emp_male"]

        early = est[est["year"] == 1999].set_index("ksic10")
        assert early.loc["X", "emp_all"] == pytest.approx(50.0)
        assert early.loc["Y", "emp_all"] == pytest.approx(50.0)
        assert early["emp_female"].isna().all()

        late = est[est["year"] == 2010].set_index("ksic10")
        assert late.loc["X", "emp_female"] == pytest.approx(10.0)

    def test_split_by_year_restores_revision_column(self):
        stacked = pd.DataFrame({
            "iso": ["31010", "31010"],
            "year": [1999, 2019],
            "industry_code": ["a", "X"],
            "revision": ["ksic8", "ksic10"],
            "emp_all": [1.0, 2.0],
        })
        frames = split_by_year(stacked)
        assert set(frames) == {1999, 2019}
        assert frames[1999]["ksic8"].item() == "a"
        assert frames[2019]["ksic10"].item() == "X"
        assert "revision" not in frames[1999].columns
