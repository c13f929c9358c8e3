import numpy as np
import pandas as pd
import pytest

from optstrata import Unit, UnitCatalog


def make_frame():
    return pd.DataFrame({
        "id":      ["a", "b", "c", "d", "e"],
        "treated": [1, 0, 1, 0, 0],
        "age":     [30.0, 41.0, 35.0, 52.0, 28.0],
        "smoker":  [True, False, False, True, False],
        "region":  ["N", "S", "N", "S", "N"],
    })


class TestUnitCatalogValidation:

    def test_missing_id_column_raises(self):
        with pytest.raises(ValueError, match="Id"):
            UnitCatalog.from_frame(make_frame(), id="unit", treatment="treated")

    def test_missing_treatment_column_raises(self):
        with pytest.raises(ValueError, match="Treatment"):
            UnitCatalog.from_frame(make_frame(), id="id", treatment="z")

    def test_missing_covariate_raises(self):
        with pytest.raises(ValueError, match="income"):
            UnitCatalog.from_frame(make_frame(), id="id", treatment="treated", covariates=["income"])

    def test_duplicate_ids_raise_and_name_them(self):
        df = make_frame()
        df.loc[4, "id"] = "a"
        with pytest.raises(ValueError, match="'a'"):
            UnitCatalog.from_frame(df, id="id", treatment="treated")

    def test_non_binary_treatment_raises(self):
        df = make_frame()
        df["treated"] = [0, 1, 2, 0, 1]
        with pytest.raises(ValueError, match="binary"):
            UnitCatalog.from_frame(df, id="id", treatment="treated")

    def test_missing_covariate_value_raises(self):
        df = make_frame()
        df.loc[2, "age"] = np.nan
        with pytest.raises(ValueError, match="age"):
            UnitCatalog.from_frame(df, id="id", treatment="treated")


class TestUnitCatalogContents:

    @classmethod
    def setup_class(cls):
        cls.df = make_frame()
        cls.catalog = UnitCatalog.from_frame(cls.df, id="id", treatment="treated")

    def test_ids_in_load_order(self):
        assert self.catalog.ids == ["a", "b", "c", "d", "e"]

    def test_treated_and_control_ids(self):
        assert self.catalog.treated_ids == ["a", "c"]
        assert self.catalog.control_ids == ["b", "d", "e"]

    def test_schema_inferred(self):
        assert self.catalog.schema == {
            "age": "numeric", "smoker": "numeric", "region": "categorical",
        }

    def test_categorical_override(self):
        catalog = UnitCatalog.from_frame(
            self.df, id="id", treatment="treated", categorical=["smoker"],
        )
        assert catalog.schema["smoker"] == "categorical"

    def test_unit_record(self):
        unit = self.catalog.unit("c")
        assert isinstance(unit, Unit)
        assert unit.treated is True
        assert unit.covariates == (35.0, False, "N")

    def test_unknown_unit_raises(self):
        with pytest.raises(KeyError):
            self.catalog.unit("zz")

    def test_iteration_yields_every_unit(self):
        assert [u.id for u in self.catalog] == self.catalog.ids

    def test_len_and_contains(self):
        assert len(self.catalog) == 5
        assert "b" in self.catalog
        assert "zz" not in self.catalog

    def test_subset_keeps_schema(self):
        sub = self.catalog.subset(["a", "b"])
        assert sub.ids == ["a", "b"]
        assert sub.schema == self.catalog.schema

    def test_values_restricted_to_ids(self):
        assert self.catalog.values("age", ["d", "a"]).tolist() == [52.0, 30.0]


class TestUnitCatalogImmutability:

    def test_source_frame_changes_do_not_leak_in(self):
        df = make_frame()
        catalog = UnitCatalog.from_frame(df, id="id", treatment="treated")
        df.loc[0, "age"] = -1.0
        assert catalog.values("age")["a"] == 30.0

    def test_frame_returns_copy(self):
        catalog = UnitCatalog.from_frame(make_frame(), id="id", treatment="treated")
        frame = catalog.frame()
        frame.loc["a", "age"] = -1.0
        assert catalog.values("age")["a"] == 30.0

    def test_is_treated_returns_copy(self):
        catalog = UnitCatalog.from_frame(make_frame(), id="id", treatment="treated")
        z = catalog.is_treated()
        z[:] = False
        assert catalog.treated_ids == ["a", "c"]
