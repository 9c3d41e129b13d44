"""
Tests for commuting-zone controls and population weights.
"""

import numpy as np
import pandas as pd
import pytest

from kormig.crosswalk.region import CommutingZoneMapper, RegionResolver
from kormig.model.controls import (
    CONTROL_COLUMNS,
    build_controls,
    college_share,
    foreign_born_share,
    load_covariate_tables,
    manufacturing_share,
    pre_period_migration_change,
    region_population,
)
from tests.fixtures.synthetic_tables import make_abc_cz_table, make_region_tables


@pytest.fixture
def mapper():
    return CommutingZoneMapper(make_abc_cz_table())


@pytest.fixture
def college():
    return pd.DataFrame({
        "iso": ["31010", "31010", "31020", "31020", "32020", "32020", "31011"],
        "age": ["00 합계"] * 7,
        "college_educated": ["00 계", "대학", "00 계", "대학", "00 계", "대학", "00 계"],
        "pop": ["600", "100", "400", "100", "500", "50", "999"],
    })


class TestManufacturingShare:

    def test_share_of_divisions_10_to_34(self, mapper):
        est = pd.DataFrame({
            "iso": ["31010", "31010", "31020", "32010", "32010"],
            "year": [2000, 2000, 2000, 2000, 2010],
            "ksic10": ["10110", "46100", "58110", "20110", "46100"],
            "emp_all": [30.0, 50.0, 20.0, 50.0, 500.0],
        })
        result = manufacturing_share(est, mapper).set_index("cz_id")["manu_share"]
        assert result[1] == pytest.approx(0.3)
        assert result[2] == pytest.approx(1.0)


class TestCensusShares:

    def test_college_share(self, mapper, college):
        result = college_share(college, mapper, {"32020": "32010"}).set_index("cz_id")

        # CZ 1: (100 + 100) / (600 + 400); 31011 is not a district row
        assert result.loc[1, "college_educated_share"] == pytest.approx(0.2)
        assert result.loc[1, "population"] == 1000
        assert result.loc[2, "college_educated_share"] == pytest.approx(0.1)

    def test_foreign_born_share(self, mapper, college):
        population = college_share(college, mapper, {"32020": "32010"})
        foreign = pd.DataFrame({"iso": ["31010", "31020", "32020"], "foreign_born_pop": ["30", "20", "5"]})
        result = foreign_born_share(foreign, population, mapper, {"32020": "32010"})
        result = result.set_index("cz_id")["foreign_born_share"]

        assert result[1] == pytest.approx(0.05)
        assert result[2] == pytest.approx(0.01)

    def test_load_covariate_tables(self, tmp_path):
        (tmp_path / "college_educated2000.csv").write_text(
            "title\nheader\n31010,00 합계,00 계,600\n", encoding="utf-8"
        )
        (tmp_path / "foreign_born2000.csv").write_text(
            "title\nheader\n31010,30\n", encoding="utf-8"
        )
        college, foreign = load_covariate_tables(tmp_path)
        assert list(college.columns) == ["iso", "age", "college_educated", "pop"]
        assert college["pop"].item() == "600"
        assert foreign["foreign_born_pop"].item() == "30"


class TestRegionPopulation:

    def test_province_recode_and_strict_matching(self):
        kosis, stat_changes, _ = make_region_tables()
        resolver = RegionResolver(kosis, stat_changes, normalize="none", strict_kosis=True)
        pop = pd.DataFrame({
            "label": ["A (41110)", "B (51110)", "C (23010)", "total"],
            "pop": [100, 200, 300, 600],
        })
        result = region_population(pop, resolver, {"51": "42"}).set_index("iso")["pop"]

        # 41110 -> 31011 -> 31010; 51110 -> 42110 -> 32010; 23010 is not in KOSIS
        assert result.to_dict() == {"31010": 100, "32010": 200}


class TestPrePeriodMigration:

    def test_log_change(self, mapper):
        outflows = pd.DataFrame({
            "year": [1996, 1996, 2000, 2000, 1996],
            "iso_o": ["31010", "31020", "31010", "31020", "32010"],
            "migration": [100, 50, 200, 100, 10],
        })
        district, by_cz = pre_period_migration_change(outflows, mapper)

        district = district.set_index("iso_o")
        assert district.loc["31010", "migration_change"] == pytest.approx(np.log(2))
        assert "32010" not in district.index
        assert (district["year"] == 2000).all()

        by_cz = by_cz.set_index("cz_id")["pre_migration_change"]
        assert by_cz[1] == pytest.approx(np.log(2))
        assert pd.isna(by_cz[2])


def test_build_controls_keeps_missing_covariates():
    manu = pd.DataFrame({"cz_id": [2, 1], "manu_share": [0.5, 0.3]})
    college = pd.DataFrame({"cz_id": [1], "college_educated_share": [0.2], "population": [1000.0]})
    foreign = pd.DataFrame({"cz_id": [1, 2], "foreign_born_share": [0.05, 0.01]})
    pre = pd.DataFrame({"cz_id": [1, 2], "pre_migration_change": [0.1, -0.1]})

    controls = build_controls(manu, college, foreign, pre)

    assert list(controls.columns) == ["cz_id"] + CONTROL_COLUMNS
    assert controls["cz_id"].tolist() == [1, 2]
    assert pd.isna(controls.loc[1, "college_educated_share"])
    assert controls.loc[0, "manu_share"] == 0.3
