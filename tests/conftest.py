import matplotlib

matplotlib.use("Agg")

import arviz as az
import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
from shapely.geometry import box

import nhatrang_reef_analysis as nra

# Hard coral points per quadrat (out of 50); Hon Tam was not surveyed in 2017
HC_POINTS = {
    ("Hon Mun", 2015): 30,
    ("Hon Mun", 2017): 25,
    ("Hon Mun", 2019): 20,
    ("Hon Tam", 2015): 15,
    ("Hon Tam", 2019): 10,
}


@pytest.fixture
def raw_survey():
    rows = []
    for (site, year), hc in HC_POINTS.items():
        for transect in ["T1", "T2"]:
            for quadrat in ["Q1", "Q2"]:
                rows.append((year, site, transect, quadrat, "HC", hc))
                rows.append((year, site, transect, quadrat, "SD", 50 - hc - 5))
                rows.append((year, site, transect, quadrat, "RB", 5))
    return pd.DataFrame(rows, columns=nra.SURVEY_COLUMNS)


@pytest.fixture
def survey(raw_survey):
    return nra.validate_survey(raw_survey)


@pytest.fixture
def panel(survey):
    return nra.complete_panel(survey)


@pytest.fixture
def transects(panel):
    return nra.declare_factors(nra.transect_cover(panel))


@pytest.fixture
def sites():
    return pd.DataFrame({
        "Site": ["Hon Mun", "Hon Tam", "Hon Mot"],
        "Latitude": [12.17, 12.18, 12.16],
        "Longitude": [109.30, 109.25, 109.28],
    })


@pytest.fixture
def boundaries():
    return gpd.GeoDataFrame(
        {"name": ["Core zone", "Buffer zone", "Outer zone"]},
        geometry=[
            box(109.27, 12.10, 109.35, 12.25),
            box(109.20, 12.10, 109.27, 12.25),
            box(109.35, 12.10, 109.40, 12.25),
        ],
        crs="EPSG:4326",
    )


@pytest.fixture
def make_idata():
    """Build posterior draws of year_cover without running the sampler"""

    def _make(covers, years=(2015, 2017, 2019), chains=4, draws=500, noise=0.0, n_divergent=0, seed=0):
        rng = np.random.default_rng(seed)
        year_cover = np.broadcast_to(np.asarray(covers, dtype=float), (chains, draws, len(years))).copy()
        if noise:
            year_cover += rng.normal(0, noise, size=year_cover.shape)

        diverging = np.zeros((chains, draws), dtype=bool)
        diverging.flat[:n_divergent] = True

        return az.from_dict(
            posterior={
                "intercept": rng.normal(0, 1, size=(chains, draws)),
                "year_cover": year_cover,
            },
            sample_stats={
                "diverging": diverging,
                "energy": rng.normal(0, 1, size=(chains, draws)),
            },
            coords={"year": list(years)},
            dims={"year_cover": ["year"]},
        )

    return _make
