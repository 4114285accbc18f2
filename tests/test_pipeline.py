import os

import pandas as pd

import nhatrang_reef_analysis as nra


def test_load_data_missing_file(tmp_path):
    assert nra.load_data(str(tmp_path / "missing.csv")) is None


def test_load_data_without_sites(tmp_path, raw_survey):
    survey_file = tmp_path / "survey.csv"
    raw_survey.to_csv(survey_file, index=False)

    data = nra.load_data(str(survey_file), str(tmp_path / "no_sites.csv"))
    assert list(data) == ["survey"]
    assert len(data["survey"]) == len(raw_survey)


def test_generate_report(tmp_path, make_idata, panel, transects):
    yearly, trend = nra.summarise_yearly_cover(transects)
    idata = make_idata([0.40, 0.30, 0.35], draws=1000, noise=0.01)
    results = {
        "panel": panel,
        "transects": transects,
        "yearly": yearly,
        "trend": trend,
        "site_summary": nra.summarise_sites(transects),
        "diagnostics": nra.check_convergence(idata),
        "year_cover": nra.year_cover_table(idata),
        "contrasts": nra.year_contrasts(idata),
        "figures": [str(tmp_path / "cover_by_year.png")],
    }
    report_file = nra.generate_report(results, output_dir=str(tmp_path))

    with open(report_file) as f:
        report = f.read()

    assert "# Nha Trang Bay Coral Reef Survey Analysis" in report
    assert "- Quadrats: 20" in report
    assert "| Hon Mun | 50.00 | 2015 | 2019 | -20.00 |" in report
    assert "## Model Diagnostics" in report
    assert "| 2015 | 2017 | -10.00 |" in report
    assert "`cover_by_year.png`" in report


def test_main_without_model(tmp_path, raw_survey, sites, boundaries):
    survey_file = tmp_path / "survey.csv"
    sites_file = tmp_path / "sites.csv"
    boundary_file = tmp_path / "zones.geojson"
    output_dir = tmp_path / "results"
    raw_survey.to_csv(survey_file, index=False)
    sites.to_csv(sites_file, index=False)
    boundaries.to_file(boundary_file, driver="GeoJSON")

    status = nra.main([
        "--survey-file", str(survey_file),
        "--sites-file", str(sites_file),
        "--boundary-file", str(boundary_file),
        "--output-dir", str(output_dir),
        "--skip-model",
    ])

    assert status == 0
    for name in ["NhaTrang_Coral_Report.md", "quadrat_panel.csv", "transect_cover.csv",
                 "site_summary.csv", "cover_by_year.png", "site_trajectories.png",
                 "benthic_composition.png", "site_map.png"]:
        assert os.path.exists(output_dir / name), name

    panel = pd.read_csv(output_dir / "quadrat_panel.csv")
    assert len(panel) == 20 * len(nra.CATEGORY_ORDER)


def test_main_reports_missing_survey(tmp_path):
    status = nra.main([
        "--survey-file", str(tmp_path / "missing.csv"),
        "--output-dir", str(tmp_path / "results"),
        "--skip-model",
    ])
    assert status == 1


def test_main_reports_invalid_survey(tmp_path, raw_survey):
    survey_file = tmp_path / "survey.csv"
    raw_survey.drop(columns=["Points"]).to_csv(survey_file, index=False)

    status = nra.main([
        "--survey-file", str(survey_file),
        "--sites-file", str(tmp_path / "no_sites.csv"),
        "--output-dir", str(tmp_path / "results"),
        "--skip-model",
    ])
    assert status == 1


def test_load_data_empty_file(tmp_path):
    survey_file = tmp_path / "survey.csv"
    survey_file.write_text("")
    assert nra.load_data(str(survey_file)) is None


def test_load_boundaries_missing_file(tmp_path):
    assert nra.load_boundaries(str(tmp_path / "nope.geojson")) is None


def test_main_unreadable_boundaries_still_draws_map(tmp_path, raw_survey, sites):
    survey_file = tmp_path / "survey.csv"
    sites_file = tmp_path / "sites.csv"
    output_dir = tmp_path / "results"
    raw_survey.to_csv(survey_file, index=False)
    sites.to_csv(sites_file, index=False)

    status = nra.main([
        "--survey-file", str(survey_file),
        "--sites-file", str(sites_file),
        "--boundary-file", str(tmp_path / "nope.geojson"),
        "--output-dir", str(output_dir),
        "--skip-model",
    ])

    assert status == 0
    assert os.path.exists(output_dir / "site_map.png")
    assert os.path.exists(output_dir / "NhaTrang_Coral_Report.md")
