import pandas as pd
import pytest

import nhatrang_reef_analysis as nra


def test_validate_survey_normalises_columns_and_categories():
    raw = pd.DataFrame({
        "year": [2015, 2015, 2015, 2015],
        "SITE ": ["Hon Mun"] * 4,
        " Transect": [1, 1, 1, 1],
        "quadrat": [1, 1, 1, 1],
        "Code": ["Hard coral", "live coral", "hc", "Zoanthid"],
        "count": [10, 5, 3, 2],
    })
    survey = nra.validate_survey(raw)

    assert list(survey.columns) == nra.SURVEY_COLUMNS
    assert survey["Category"].tolist() == ["HC", "HC", "HC", "OT"]
    assert survey["Transect"].iloc[0] == "1"
    assert survey["Points"].dtype.kind == "i"


def test_validate_survey_reports_missing_columns(raw_survey):
    with pytest.raises(ValueError, match="Quadrat"):
        nra.validate_survey(raw_survey.drop(columns=["Quadrat"]))


def test_validate_survey_rejects_negative_points(raw_survey):
    raw_survey.loc[0, "Points"] = -1
    with pytest.raises(ValueError, match="negative"):
        nra.validate_survey(raw_survey)


def test_validate_survey_rejects_fractional_points(raw_survey):
    raw_survey["Points"] = raw_survey["Points"].astype(float)
    raw_survey.loc[0, "Points"] = 2.5
    with pytest.raises(ValueError, match="whole numbers"):
        nra.validate_survey(raw_survey)


def test_validate_survey_drops_incomplete_rows(raw_survey):
    raw_survey.loc[0, "Points"] = None
    raw_survey.loc[1, "Site"] = None
    survey = nra.validate_survey(raw_survey)
    assert len(survey) == len(raw_survey) - 2


def test_validate_survey_rejects_empty_data(raw_survey):
    raw_survey["Points"] = None
    with pytest.raises(ValueError, match="no usable records"):
        nra.validate_survey(raw_survey)


def test_complete_panel_fills_every_category(panel):
    # 5 surveyed site-years x 2 transects x 2 quadrats
    assert len(panel) == 20 * len(nra.CATEGORY_ORDER)
    per_quadrat = panel.groupby(nra.UNIT_COLUMNS).size()
    assert (per_quadrat == len(nra.CATEGORY_ORDER)).all()

    soft_coral = panel[panel["Category"] == "SC"]
    assert (soft_coral["Points"] == 0).all()


def test_complete_panel_cover_sums_to_100(panel):
    totals = panel.groupby(nra.UNIT_COLUMNS)["Cover"].sum()
    assert totals.round(6).eq(100).all()
    assert (panel["Total"] == 50).all()


def test_complete_panel_does_not_invent_unsurveyed_quadrats(panel):
    missing = panel[(panel["Site"] == "Hon Tam") & (panel["Year"] == 2017)]
    assert missing.empty


def test_complete_panel_sums_duplicate_records(raw_survey):
    extra = pd.DataFrame([(2015, "Hon Mun", "T1", "Q1", "HC", 2)], columns=nra.SURVEY_COLUMNS)
    survey = nra.validate_survey(pd.concat([raw_survey, extra], ignore_index=True))
    panel = nra.complete_panel(survey)

    quadrat = panel[(panel["Year"] == 2015) & (panel["Site"] == "Hon Mun")
                    & (panel["Transect"] == "T1") & (panel["Quadrat"] == "Q1")]
    hard_coral = quadrat[quadrat["Category"] == "HC"].iloc[0]
    assert hard_coral["Points"] == 32
    assert hard_coral["Total"] == 52


def test_complete_panel_drops_quadrats_without_points(raw_survey):
    empty = pd.DataFrame([(2015, "Hon Mun", "T1", "Q3", "HC", 0)], columns=nra.SURVEY_COLUMNS)
    survey = nra.validate_survey(pd.concat([raw_survey, empty], ignore_index=True))
    panel = nra.complete_panel(survey)

    assert not (panel["Quadrat"] == "Q3").any()
    assert panel["Cover"].notna().all()


def test_transect_cover_aggregates_quadrats(panel):
    transects = nra.transect_cover(panel)
    assert len(transects) == 10

    row = transects[(transects["Site"] == "Hon Mun") & (transects["Year"] == 2015)
                    & (transects["Transect"] == "T1")].iloc[0]
    assert row["Count"] == 60
    assert row["Total"] == 100
    assert row["Quadrats"] == 2
    assert row["Cover"] == pytest.approx(60.0)


def test_transect_cover_other_category(panel):
    rubble = nra.transect_cover(panel, "RB")
    assert rubble["Cover"].eq(10).all()


def test_transect_cover_rejects_unknown_category(panel):
    with pytest.raises(ValueError, match="Unknown category"):
        nra.transect_cover(panel, "XX")


def test_declare_factors(transects):
    assert transects["Year"].cat.ordered
    assert list(transects["Year"].cat.categories) == [2015, 2017, 2019]
    assert set(transects["SiteTransect"].cat.categories) == {
        "Hon Mun_T1", "Hon Mun_T2", "Hon Tam_T1", "Hon Tam_T2",
    }


def test_declare_factors_is_idempotent(transects):
    again = nra.declare_factors(transects)
    assert list(again["Year"].cat.categories) == [2015, 2017, 2019]
    assert again["SiteTransect"].equals(transects["SiteTransect"])


def test_declare_factors_keeps_run_together_names_apart():
    df = pd.DataFrame({
        "Year": [2015, 2015],
        "Site": ["A_1", "A"],
        "Transect": ["2", "1_2"],
    })
    factors = nra.declare_factors(df)

    assert len(factors["SiteTransect"].cat.categories) == 2
    assert factors["SiteTransect"].cat.codes.nunique() == 2
