#!/usr/bin/env python3
# Nha Trang Coral Reef Survey Analysis Script
# Analyzes photo-quadrat benthic survey data from Nha Trang Bay, Vietnam

import os
import argparse
from datetime import datetime
from itertools import combinations

import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
import numpy as np
from scipy import stats
from sklearn.linear_model import LinearRegression
import arviz as az
import pymc as pm
from pymc.exceptions import SamplingError
import geopandas as gpd

# Set file paths
DATA_DIR = "data"
SURVEY_FILE = os.path.join(DATA_DIR, "nhatrang_photoquadrats.csv")
SITES_FILE = os.path.join(DATA_DIR, "nhatrang_sites.csv")
BOUNDARY_FILE = None
BOUNDARY_NAME_COL = "name"

# Output directory for results (created by main)
OUTPUT_DIR = "results"

# Sampler settings
DRAWS = 2000
TUNE = 1000
CHAINS = 4
TARGET_ACCEPT = 0.95
RANDOM_SEED = 42
HDI_PROB = 0.95

# Thresholds used to flag a fit that should not be trusted
CONVERGENCE = {
    'r_hat': 1.01,
    'ess_bulk': 400,
    'ess_tail': 400,
    'bfmi': 0.3,
}

# Reef Check substrate codes, in plotting order
CATEGORY_CODES = {
    'HC': 'Hard coral',
    'SC': 'Soft coral',
    'RKC': 'Recently killed coral',
    'NIA': 'Nutrient indicator algae',
    'SP': 'Sponge',
    'RC': 'Rock',
    'RB': 'Rubble',
    'SD': 'Sand',
    'SI': 'Silt',
    'OT': 'Other',
}
CATEGORY_ORDER = list(CATEGORY_CODES)

CATEGORY_ALIASES = {
    'hard coral': 'HC',
    'live coral': 'HC',
    'scleractinia': 'HC',
    'soft coral': 'SC',
    'octocoral': 'SC',
    'recently killed coral': 'RKC',
    'dead coral': 'RKC',
    'nutrient indicator algae': 'NIA',
    'macroalgae': 'NIA',
    'fleshy algae': 'NIA',
    'algae': 'NIA',
    'sponge': 'SP',
    'porifera': 'SP',
    'rock': 'RC',
    'rubble': 'RB',
    'sand': 'SD',
    'silt': 'SI',
    'mud': 'SI',
    'other': 'OT',
}

COLUMN_ALIASES = {
    'year': 'Year',
    'survey_year': 'Year',
    'site': 'Site',
    'site_name': 'Site',
    'transect': 'Transect',
    'quadrat': 'Quadrat',
    'category': 'Category',
    'code': 'Category',
    'substrate': 'Category',
    'points': 'Points',
    'count': 'Points',
    'latitude': 'Latitude',
    'lat': 'Latitude',
    'longitude': 'Longitude',
    'lon': 'Longitude',
    'long': 'Longitude',
    'zone': 'Zone',
}

SURVEY_COLUMNS = ['Year', 'Site', 'Transect', 'Quadrat', 'Category', 'Points']
SITE_COLUMNS = ['Site', 'Latitude', 'Longitude']
UNIT_COLUMNS = ['Year', 'Site', 'Transect', 'Quadrat']
TRANSECT_COLUMNS = ['Year', 'Site', 'Transect']

# Variables reported by the convergence checks
MODEL_VARS = ['intercept', 'beta_year', 'sigma_site', 'sigma_transect', 'sigma_obs', 'year_cover']


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Nha Trang coral reef photo-quadrat analysis")
    parser.add_argument("--survey-file", default=SURVEY_FILE)
    parser.add_argument("--sites-file", default=SITES_FILE)
    parser.add_argument("--boundary-file", default=BOUNDARY_FILE, help="Polygon layer for the choropleth map")
    parser.add_argument("--boundary-name-col", default=BOUNDARY_NAME_COL)
    parser.add_argument("--output-dir", default=OUTPUT_DIR)
    parser.add_argument("--category", default="HC", choices=CATEGORY_ORDER, help="Benthic category to model")
    parser.add_argument("--draws", type=int, default=DRAWS)
    parser.add_argument("--tune", type=int, default=TUNE)
    parser.add_argument("--chains", type=int, default=CHAINS)
    parser.add_argument("--target-accept", type=float, default=TARGET_ACCEPT)
    parser.add_argument("--seed", type=int, default=RANDOM_SEED)
    parser.add_argument("--olre", action="store_true", help="Add an observation-level random effect")
    parser.add_argument("--skip-model", action="store_true", help="Only run the exploratory analysis and map")
    return parser.parse_args(argv)


def _normalise_columns(df):
    """Rename known column spellings onto the canonical names"""
    renamed = {}
    for col in df.columns:
        key = str(col).strip()
        renamed[col] = COLUMN_ALIASES.get(key.lower(), key)
    return df.rename(columns=renamed)


# Function to load the survey and site tables with error handling
def load_data(survey_file=SURVEY_FILE, sites_file=SITES_FILE):
    """Load the photo-quadrat survey and site metadata as a dictionary of dataframes"""
    data = {}

    try:
        print("Loading photo-quadrat survey data...")
        data['survey'] = pd.read_csv(survey_file)

        if sites_file and os.path.exists(sites_file):
            print("Loading site metadata...")
            data['sites'] = pd.read_csv(sites_file)
        else:
            print("Site metadata not found, the site map will be skipped")

        print(f"Successfully loaded {len(data)} datasets.")
        return data

    except FileNotFoundError as e:
        print(f"Error: Could not find file - {e}")
        return None
    except pd.errors.ParserError as e:
        print(f"Error: Could not parse CSV file - {e}")
        return None
    except pd.errors.EmptyDataError as e:
        print(f"Error: CSV file is empty - {e}")
        return None
    except Exception as e:
        print(f"Unexpected error loading data: {e}")
        return None


def load_boundaries(boundary_file):
    """Read the boundary polygon layer, or None if it cannot be read"""
    try:
        print("Loading boundary layer...")
        return gpd.read_file(boundary_file)
    except (OSError, RuntimeError) as e:
        print(f"Error: Could not read boundary layer - {e}")
        return None


def normalise_category(label):
    """Map a category label onto its Reef Check code, or None if unknown"""
    key = str(label).strip()
    if key.upper() in CATEGORY_CODES:
        return key.upper()
    return CATEGORY_ALIASES.get(key.lower())


def validate_survey(df):
    """Check and clean raw survey records.

    Column names are matched case-insensitively, rows with missing keys or
    points are dropped, and category labels are mapped to Reef Check codes.
    Unknown categories are folded into 'OT'.
    """
    df = _normalise_columns(df)
    missing = [col for col in SURVEY_COLUMNS if col not in df.columns]
    if missing:
        raise ValueError(f"Survey data is missing required columns: {missing}")

    df = df[SURVEY_COLUMNS].copy()
    df['Year'] = pd.to_numeric(df['Year'], errors='coerce')
    df['Points'] = pd.to_numeric(df['Points'], errors='coerce')

    n_rows = len(df)
    df = df.dropna(subset=SURVEY_COLUMNS)
    for col in ['Site', 'Transect', 'Quadrat', 'Category']:
        df[col] = df[col].astype(str).str.strip()
    df = df[(df[['Site', 'Transect', 'Quadrat', 'Category']] != '').all(axis=1)]
    if len(df) < n_rows:
        print(f"Warning: Dropped {n_rows - len(df)} survey rows with missing values")
    if df.empty:
        raise ValueError("Survey data has no usable records")

    if (df['Points'] < 0).any():
        raise ValueError("Survey data contains negative point counts")
    if not np.allclose(df['Points'], df['Points'].round()):
        raise ValueError("Point counts must be whole numbers")
    if not np.allclose(df['Year'], df['Year'].round()):
        raise ValueError("Survey years must be whole numbers")

    df['Year'] = df['Year'].round().astype(int)
    df['Points'] = df['Points'].round().astype(int)

    codes = df['Category'].map(normalise_category)
    unknown = sorted(df.loc[codes.isna(), 'Category'].unique())
    if unknown:
        print(f"Warning: Unknown categories treated as 'OT': {unknown}")
    df['Category'] = codes.fillna('OT')

    return df.reset_index(drop=True)


def validate_sites(df):
    """Check site metadata and coerce coordinates to numbers"""
    df = _normalise_columns(df)
    missing = [col for col in SITE_COLUMNS if col not in df.columns]
    if missing:
        raise ValueError(f"Site metadata is missing required columns: {missing}")

    df = df.copy()
    df['Site'] = df['Site'].astype(str).str.strip()
    df['Latitude'] = pd.to_numeric(df['Latitude'], errors='coerce')
    df['Longitude'] = pd.to_numeric(df['Longitude'], errors='coerce')

    bad = df['Latitude'].isna() | df['Longitude'].isna()
    if bad.any():
        print(f"Warning: Dropping sites without coordinates: {df.loc[bad, 'Site'].tolist()}")
        df = df[~bad]

    return df.drop_duplicates(subset='Site').reset_index(drop=True)


# Function to expand the survey records into a complete zero-filled panel
def complete_panel(survey):
    """Expand survey records to every benthic category for each surveyed quadrat.

    Categories that were not recorded in a quadrat get zero points. Only
    quadrats present in the survey are expanded, so unsurveyed site/year
    combinations never appear. Duplicate records are summed.
    """
    print("Building zero-filled survey panel...")

    wide = survey.pivot_table(
        index=UNIT_COLUMNS,
        columns='Category',
        values='Points',
        aggfunc='sum',
        fill_value=0
    )
    wide = wide.reindex(columns=CATEGORY_ORDER, fill_value=0)
    wide.columns.name = 'Category'

    totals = wide.sum(axis=1)
    empty = totals == 0
    if empty.any():
        print(f"Warning: Dropping {int(empty.sum())} quadrats with no scored points")
        wide = wide[~empty]

    panel = wide.reset_index().melt(id_vars=UNIT_COLUMNS, var_name='Category', value_name='Points')
    panel['Points'] = panel['Points'].astype(int)
    panel['Total'] = panel.groupby(UNIT_COLUMNS)['Points'].transform('sum')
    panel['Cover'] = 100 * panel['Points'] / panel['Total']
    panel['Category'] = pd.Categorical(panel['Category'], categories=CATEGORY_ORDER)

    panel = panel.sort_values(UNIT_COLUMNS + ['Category']).reset_index(drop=True)
    n_quadrats = len(wide)
    print(f"Panel has {len(panel)} rows ({n_quadrats} quadrats x {len(CATEGORY_ORDER)} categories)")
    return panel


def transect_cover(panel, category='HC'):
    """Aggregate quadrat points to transect-level counts for one category"""
    if category not in CATEGORY_ORDER:
        raise ValueError(f"Unknown category '{category}', expected one of {CATEGORY_ORDER}")

    selected = panel[panel['Category'] == category]
    transects = selected.groupby(TRANSECT_COLUMNS, observed=True).agg(
        Count=('Points', 'sum'),
        Total=('Total', 'sum'),
        Quadrats=('Quadrat', 'nunique')
    ).reset_index()
    transects['Cover'] = 100 * transects['Count'] / transects['Total']
    return transects


def declare_factors(df):
    """Declare Year, Site and the nested SiteTransect as categorical factors.

    Year is ordered over the observed years and its first level is the
    reference level of the model.
    """
    df = df.copy()
    years = sorted(df['Year'].dropna().unique().tolist())
    df['Year'] = pd.Categorical(df['Year'].tolist(), categories=years, ordered=True)
    df['Site'] = pd.Categorical(df['Site'].astype(str))
    if 'Transect' in df.columns:
        pairs = pd.DataFrame({'Site': df['Site'].astype(str), 'Transect': df['Transect'].astype(str)})
        codes = pairs.groupby(['Site', 'Transect'], sort=True).ngroup().to_numpy()
        levels = pairs.drop_duplicates().sort_values(['Site', 'Transect'])
        labels = (levels['Site'] + '_' + levels['Transect']).tolist()
        if len(set(labels)) < len(labels):
            # Joined names run together, so number the levels
            labels = [f"{label}[{i}]" for i, label in enumerate(labels)]
        df['SiteTransect'] = pd.Categorical.from_codes(codes, categories=labels)
    return df


# Function to summarise yearly transect cover
def summarise_yearly_cover(transects):
    """Yearly mean cover with 95% CI and a linear trend across years"""
    print("Analyzing temporal trends in hard coral cover...")

    yearly = transects.groupby('Year', observed=True)['Cover'].agg(['mean', 'std', 'count']).reset_index()
    yearly['Year'] = yearly['Year'].astype(int)
    yearly['ci'] = 1.96 * yearly['std'] / np.sqrt(yearly['count'])

    trend = {'slope': np.nan, 'r': np.nan, 'p_value': np.nan}
    if len(yearly) < 3:
        print("Warning: Fewer than three survey years, skipping trend test")
        return yearly, trend

    X = yearly['Year'].values.reshape(-1, 1)
    y = yearly['mean'].values
    model = LinearRegression().fit(X, y)
    stat, p_value = stats.pearsonr(yearly['Year'], yearly['mean'])
    trend = {'slope': float(model.coef_[0]), 'r': float(stat), 'p_value': float(p_value)}

    trend_direction = "increasing" if stat > 0 else "decreasing"
    significance = "significant" if p_value < 0.05 else "not significant"
    print(f"Trend analysis: Hard coral cover shows a {trend_direction} trend over time (r={stat:.3f}, p={p_value:.3f}), which is {significance}")
    print(f"Average annual change: {model.coef_[0]:.4f}% per year")

    return yearly, trend


def summarise_sites(transects):
    """Per-site mean cover and change between the first and last surveyed year"""
    site_year = transects.groupby(['Site', 'Year'], observed=True)['Cover'].mean().reset_index()
    site_year['Site'] = site_year['Site'].astype(str)
    site_year['Year'] = site_year['Year'].astype(int)
    site_year = site_year.sort_values(['Site', 'Year'])

    summary = site_year.groupby('Site').agg(
        MeanCover=('Cover', 'mean'),
        FirstYear=('Year', 'first'),
        LastYear=('Year', 'last'),
        FirstCover=('Cover', 'first'),
        LastCover=('Cover', 'last'),
        Surveys=('Year', 'count')
    ).reset_index()
    summary['Change'] = summary['LastCover'] - summary['FirstCover']
    return summary.sort_values('MeanCover', ascending=False).reset_index(drop=True)


def plot_cover_by_year(transects, yearly=None, trend=None, output_dir=OUTPUT_DIR):
    """Box plot of transect hard coral cover per year with the yearly mean and trend"""
    if yearly is None:
        yearly, trend = summarise_yearly_cover(transects)

    data = transects.copy()
    data['Year'] = data['Year'].astype(int)
    order = sorted(data['Year'].unique())
    positions = np.arange(len(order))

    fig, ax = plt.subplots(figsize=(12, 8))
    sns.boxplot(x='Year', y='Cover', data=data, order=order, color='lightblue', ax=ax)
    sns.stripplot(x='Year', y='Cover', data=data, order=order, color='black', alpha=0.5, size=4, ax=ax)

    means = yearly.set_index('Year').reindex(order)
    ax.errorbar(positions, means['mean'], yerr=means['ci'], color='red', marker='o',
                linestyle='-', capsize=4, label='Mean Cover with 95% CI')

    if trend is not None and not np.isnan(trend['slope']):
        # Trend fitted on calendar years, drawn on the categorical axis
        years = np.array(order)
        fitted = means['mean'].mean() + trend['slope'] * (years - years.mean())
        ax.plot(positions, fitted, 'r--', label=f"Trend (Slope: {trend['slope']:.4f})")

    ax.set_title('Hard Coral Cover per Transect by Survey Year')
    ax.set_xlabel('Year')
    ax.set_ylabel('Percent Cover (%)')
    ax.legend()
    ax.grid(True, alpha=0.3)

    plt.tight_layout()
    path = os.path.join(output_dir, 'cover_by_year.png')
    plt.savefig(path, dpi=300)
    plt.close(fig)
    return path


def plot_site_trajectories(transects, output_dir=OUTPUT_DIR):
    """Line plot of mean site cover across survey years"""
    site_yearly = transects.groupby(['Year', 'Site'], observed=True)['Cover'].mean().reset_index()
    site_yearly['Year'] = site_yearly['Year'].astype(int)
    site_yearly['Site'] = site_yearly['Site'].astype(str)

    fig, ax = plt.subplots(figsize=(12, 8))
    sns.lineplot(x='Year', y='Cover', hue='Site', data=site_yearly, marker='o', ax=ax)
    ax.set_title('Hard Coral Cover Trajectories by Site')
    ax.set_xlabel('Year')
    ax.set_ylabel('Mean Percent Cover (%)')
    ax.grid(True, alpha=0.3)
    ax.legend(title='Site', bbox_to_anchor=(1.02, 1), loc='upper left')

    plt.tight_layout()
    path = os.path.join(output_dir, 'site_trajectories.png')
    plt.savefig(path, dpi=300)
    plt.close(fig)
    return path


def plot_benthic_composition(panel, output_dir=OUTPUT_DIR):
    """Stacked bar of mean benthic composition per survey year"""
    composition = panel.groupby(['Year', 'Category'], observed=False)['Cover'].mean().unstack(fill_value=0)
    composition = composition.reindex(columns=CATEGORY_ORDER).fillna(0)
    composition.columns = [CATEGORY_CODES[code] for code in composition.columns]

    fig, ax = plt.subplots(figsize=(12, 8))
    composition.plot(kind='bar', stacked=True, colormap='tab10', ax=ax, width=0.8)
    ax.set_title('Mean Benthic Composition by Survey Year')
    ax.set_xlabel('Year')
    ax.set_ylabel('Mean Percent Cover (%)')
    ax.set_ylim(0, 100)
    ax.tick_params(axis='x', rotation=0)
    ax.legend(title='Category', bbox_to_anchor=(1.02, 1), loc='upper left')

    plt.tight_layout()
    path = os.path.join(output_dir, 'benthic_composition.png')
    plt.savefig(path, dpi=300)
    plt.close(fig)
    return path


# Function to specify the hierarchical binomial model
def build_model(transects, observation_effect=False):
    """Binomial GLMM of category points over survey years.

    logit(p) = intercept + year effect + site effect + transect-within-site
    effect, with the first year as the reference level. Random effects use a
    non-centred parameterisation. `year_cover` is the cover expected on an
    average transect at an average site in each year.
    """
    data = declare_factors(transects)
    years = list(data['Year'].cat.categories)
    if len(years) < 2:
        raise ValueError("At least two survey years are needed to model change over time")

    coords = {
        'year': years,
        'year_change': years[1:],
        'site': list(data['Site'].cat.categories),
        'transect': list(data['SiteTransect'].cat.categories),
        'obs': np.arange(len(data)),
    }
    year_idx = data['Year'].cat.codes.to_numpy().astype(int)
    site_idx = data['Site'].cat.codes.to_numpy().astype(int)
    transect_idx = data['SiteTransect'].cat.codes.to_numpy().astype(int)

    with pm.Model(coords=coords) as model:
        total = pm.Data('total', data['Total'].to_numpy(), dims='obs')

        intercept = pm.Normal('intercept', mu=0.0, sigma=1.5)
        beta_year = pm.Normal('beta_year', mu=0.0, sigma=1.0, dims='year_change')
        year_effect = pm.Deterministic(
            'year_effect', pm.math.concatenate([np.zeros(1), beta_year]), dims='year'
        )

        sigma_site = pm.HalfNormal('sigma_site', sigma=1.0)
        site_offset = pm.Normal('site_offset', mu=0.0, sigma=1.0, dims='site')
        site_effect = pm.Deterministic('site_effect', sigma_site * site_offset, dims='site')

        sigma_transect = pm.HalfNormal('sigma_transect', sigma=1.0)
        transect_offset = pm.Normal('transect_offset', mu=0.0, sigma=1.0, dims='transect')
        transect_effect = pm.Deterministic(
            'transect_effect', sigma_transect * transect_offset, dims='transect'
        )

        eta = intercept + year_effect[year_idx] + site_effect[site_idx] + transect_effect[transect_idx]

        if observation_effect:
            sigma_obs = pm.HalfNormal('sigma_obs', sigma=1.0)
            obs_offset = pm.Normal('obs_offset', mu=0.0, sigma=1.0, dims='obs')
            eta = eta + sigma_obs * obs_offset

        p = pm.math.invlogit(eta)
        pm.Binomial('y', n=total, p=p, observed=data['Count'].to_numpy(), dims='obs')

        pm.Deterministic('year_cover', pm.math.invlogit(intercept + year_effect), dims='year')

    return model


def fit_model(model, draws=DRAWS, tune=TUNE, chains=CHAINS, target_accept=TARGET_ACCEPT,
              random_seed=RANDOM_SEED, cores=None, progressbar=True):
    """Sample the posterior with NUTS and return an InferenceData"""
    print(f"Sampling {chains} chains x {draws} draws ({tune} tuning steps)...")
    with model:
        idata = pm.sample(
            draws=draws,
            tune=tune,
            chains=chains,
            cores=cores,
            target_accept=target_accept,
            random_seed=random_seed,
            progressbar=progressbar,
            return_inferencedata=True,
            idata_kwargs={'log_likelihood': True},
        )
    return idata


def save_trace(idata, output_dir=OUTPUT_DIR):
    path = os.path.join(output_dir, 'posterior_trace.nc')
    idata.to_netcdf(path)
    print(f"Posterior draws saved to {path}")
    return path


def _model_var_names(idata, var_names=None):
    if 'posterior' not in idata.groups():
        raise ValueError("InferenceData has no posterior group")
    candidates = var_names if var_names is not None else MODEL_VARS
    present = [name for name in candidates if name in idata.posterior.data_vars]
    if not present:
        raise ValueError(f"None of {candidates} found in the posterior")
    return present


# Function to check sampler convergence
def check_convergence(idata, var_names=None):
    """Summarise R-hat, ESS, divergences and BFMI, and flag a suspect fit.

    Failing a criterion prints a warning and sets `converged` to False; it
    never raises, so the rest of the analysis can still be inspected.
    """
    print("Checking sampler convergence...")
    var_names = _model_var_names(idata, var_names)
    summary = az.summary(idata, var_names=var_names, hdi_prob=HDI_PROB)

    max_rhat = float(summary['r_hat'].max())
    min_ess_bulk = float(summary['ess_bulk'].min())
    min_ess_tail = float(summary['ess_tail'].min())

    divergences = 0
    bfmi = None
    if 'sample_stats' in idata.groups():
        if 'diverging' in idata.sample_stats:
            divergences = int(idata.sample_stats['diverging'].sum())
        if 'energy' in idata.sample_stats:
            bfmi = az.bfmi(idata)

    converged = True
    if np.isnan(max_rhat):
        print("Warning: R-hat unavailable (needs more than one chain)")
    elif max_rhat > CONVERGENCE['r_hat']:
        print(f"Warning: Max R-hat {max_rhat:.3f} exceeds {CONVERGENCE['r_hat']}")
        converged = False
    if np.isnan(min_ess_bulk) or min_ess_bulk < CONVERGENCE['ess_bulk']:
        print(f"Warning: Min bulk ESS {min_ess_bulk:.0f} is below {CONVERGENCE['ess_bulk']}")
        converged = False
    if np.isnan(min_ess_tail) or min_ess_tail < CONVERGENCE['ess_tail']:
        print(f"Warning: Min tail ESS {min_ess_tail:.0f} is below {CONVERGENCE['ess_tail']}")
        converged = False
    if divergences > 0:
        print(f"Warning: {divergences} divergent transitions, consider raising target_accept")
        converged = False
    if bfmi is not None and np.min(bfmi) < CONVERGENCE['bfmi']:
        print(f"Warning: Low BFMI ({np.min(bfmi):.2f}), the posterior may be poorly explored")
        converged = False

    if converged:
        print("All convergence checks passed")

    return {
        'summary': summary,
        'max_rhat': max_rhat,
        'min_ess_bulk': min_ess_bulk,
        'min_ess_tail': min_ess_tail,
        'divergences': divergences,
        'bfmi': None if bfmi is None else [float(b) for b in bfmi],
        'converged': converged,
    }


def predictive_coverage(idata, var_name='y', prob=HDI_PROB):
    """Share of observed counts inside their central predictive interval.

    Also returns a posterior predictive p-value for the variance of the
    cover proportions; values near 0 point to overdispersion.
    """
    for group in ['posterior_predictive', 'observed_data']:
        if group not in idata.groups():
            raise ValueError(f"InferenceData has no {group} group")

    predicted = idata.posterior_predictive[var_name]
    sample_dims = ['chain', 'draw']
    draws = predicted.stack(sample=sample_dims).transpose('sample', ...).values
    observed = idata.observed_data[var_name].values

    tail = (1 - prob) / 2
    lower = np.quantile(draws, tail, axis=0)
    upper = np.quantile(draws, 1 - tail, axis=0)
    coverage = float(np.mean((observed >= lower) & (observed <= upper)))

    p_value = np.nan
    if 'constant_data' in idata.groups() and 'total' in idata.constant_data:
        total = idata.constant_data['total'].values
        observed_var = np.var(observed / total)
        replicated_var = np.var(draws / total, axis=1)
        p_value = float(np.mean(replicated_var >= observed_var))

    return {'coverage': coverage, 'prob': prob, 'dispersion_p_value': p_value}


def posterior_predictive_check(model, idata, prob=HDI_PROB, random_seed=RANDOM_SEED):
    """Draw from the posterior predictive and score it against the observed counts"""
    print("Running posterior predictive check...")
    with model:
        pm.sample_posterior_predictive(
            idata, extend_inferencedata=True, random_seed=random_seed, progressbar=False
        )

    result = predictive_coverage(idata, prob=prob)
    print(f"{result['coverage'] * 100:.1f}% of transects fall inside their {prob:.0%} predictive interval")
    if result['dispersion_p_value'] < 0.05:
        print("Warning: Observed cover is more variable than the model predicts (overdispersion)")
    return result


def plot_diagnostics(idata, output_dir=OUTPUT_DIR, var_names=None):
    """Trace, rank, energy and posterior predictive plots"""
    var_names = _model_var_names(idata, var_names)
    # Per-level year covers are plotted in the contrast figures
    scalar_vars = [name for name in var_names if name != 'year_cover'] or var_names
    saved = []

    print("\t[DIAGNOSTIC 1/4] Plotting trace...")
    az.plot_trace(idata, var_names=scalar_vars)
    plt.tight_layout()
    saved.append(os.path.join(output_dir, 'trace.png'))
    plt.savefig(saved[-1], dpi=150)
    plt.close('all')

    print("\t[DIAGNOSTIC 2/4] Plotting rank...")
    az.plot_rank(idata, var_names=scalar_vars)
    saved.append(os.path.join(output_dir, 'rank.png'))
    plt.savefig(saved[-1], dpi=150)
    plt.close('all')

    if 'sample_stats' in idata.groups() and 'energy' in idata.sample_stats:
        print("\t[DIAGNOSTIC 3/4] Plotting energy...")
        az.plot_energy(idata)
        saved.append(os.path.join(output_dir, 'energy.png'))
        plt.savefig(saved[-1], dpi=150)
        plt.close('all')

    if 'posterior_predictive' in idata.groups():
        print("\t[DIAGNOSTIC 4/4] Plotting posterior predictive check...")
        az.plot_ppc(idata, num_pp_samples=100)
        saved.append(os.path.join(output_dir, 'ppc.png'))
        plt.savefig(saved[-1], dpi=150)
        plt.close('all')

    print(f"Diagnostic plots saved to {output_dir}")
    return saved


def _year_cover_samples(idata):
    if 'posterior' not in idata.groups() or 'year_cover' not in idata.posterior:
        raise ValueError("Posterior has no 'year_cover' variable")
    cover = idata.posterior['year_cover']
    samples = cover.stack(sample=['chain', 'draw']).transpose('sample', 'year')
    return list(samples['year'].values), samples.values


def year_cover_table(idata, hdi_prob=HDI_PROB):
    """Posterior mean and HDI of cover (%) for each survey year"""
    years, samples = _year_cover_samples(idata)
    rows = []
    for i, year in enumerate(years):
        draws = samples[:, i] * 100
        low, high = az.hdi(draws, hdi_prob=hdi_prob)
        rows.append({'Year': year, 'mean': draws.mean(), 'hdi_low': low, 'hdi_high': high})
    return pd.DataFrame(rows)


# Function to compute posterior contrasts between survey years
def year_contrasts(idata, pairs=None, hdi_prob=HDI_PROB):
    """Posterior contrasts in cover between pairs of survey years.

    Differences are in percentage points for an average transect at an
    average site. Default pairs are every earlier-to-later pair of years.
    """
    years, samples = _year_cover_samples(idata)
    if pairs is None:
        pairs = list(combinations(years, 2))

    rows = []
    for from_year, to_year in pairs:
        if from_year not in years or to_year not in years:
            raise ValueError(f"Contrast {from_year} -> {to_year} uses a year not in the model: {years}")
        before = samples[:, years.index(from_year)]
        after = samples[:, years.index(to_year)]

        diff = (after - before) * 100
        odds_ratio = (after / (1 - after)) / (before / (1 - before))
        diff_low, diff_high = az.hdi(diff, hdi_prob=hdi_prob)
        or_low, or_high = az.hdi(odds_ratio, hdi_prob=hdi_prob)

        rows.append({
            'FromYear': from_year,
            'ToYear': to_year,
            'diff_mean': diff.mean(),
            'diff_hdi_low': diff_low,
            'diff_hdi_high': diff_high,
            'odds_ratio': np.median(odds_ratio),
            'or_hdi_low': or_low,
            'or_hdi_high': or_high,
            'prob_increase': float(np.mean(diff > 0)),
        })

    return pd.DataFrame(rows)


def plot_year_contrasts(contrasts, output_dir=OUTPUT_DIR):
    """Forest plot of cover differences between years"""
    labels = [f"{row.FromYear} → {row.ToYear}" for row in contrasts.itertuples()]
    y_pos = np.arange(len(contrasts))

    # Blue if the HDI is above zero, red if below, grey otherwise
    colors = []
    for _, row in contrasts.iterrows():
        if row['diff_hdi_low'] > 0:
            colors.append('blue')
        elif row['diff_hdi_high'] < 0:
            colors.append('red')
        else:
            colors.append('gray')

    fig, ax = plt.subplots(figsize=(10, max(3, 0.6 * len(contrasts) + 1)))
    ax.hlines(y_pos, contrasts['diff_hdi_low'], contrasts['diff_hdi_high'], color='black', linewidth=1)
    ax.scatter(contrasts['diff_mean'], y_pos, c=colors, s=80, zorder=5, edgecolor='black')
    ax.axvline(x=0, color='gray', linestyle='--', linewidth=1)

    ax.set_yticks(y_pos)
    ax.set_yticklabels(labels)
    ax.invert_yaxis()
    ax.set_xlabel('Change in hard coral cover (percentage points)')
    ax.set_title(f'Posterior Contrasts Between Survey Years ({HDI_PROB:.0%} HDI)')
    ax.grid(which='major', axis='x', linestyle='--', linewidth=0.5)

    plt.tight_layout()
    path = os.path.join(output_dir, 'year_contrasts.png')
    plt.savefig(path, dpi=300)
    plt.close(fig)
    return path


def sites_geodataframe(sites, site_summary):
    """Site points in EPSG:4326 carrying their mean observed cover"""
    merged = sites.merge(site_summary[['Site', 'MeanCover', 'Change']], on='Site', how='left')
    unsurveyed = merged['MeanCover'].isna()
    if unsurveyed.any():
        print(f"Warning: Sites without survey data: {merged.loc[unsurveyed, 'Site'].tolist()}")

    return gpd.GeoDataFrame(
        merged,
        geometry=gpd.points_from_xy(merged['Longitude'], merged['Latitude']),
        crs="EPSG:4326"
    )


def zone_cover(site_points, boundaries, name_col=BOUNDARY_NAME_COL):
    """Mean site cover within each boundary polygon"""
    if name_col not in boundaries.columns:
        raise ValueError(f"Boundary layer has no '{name_col}' column")

    if boundaries.crs is None:
        print("Warning: Boundary layer has no CRS, assuming EPSG:4326")
        boundaries = boundaries.set_crs("EPSG:4326")
    boundaries = boundaries.to_crs(site_points.crs)

    joined = gpd.sjoin(
        site_points.drop(columns=[name_col], errors='ignore'),
        boundaries[[name_col, 'geometry']],
        how='left',
        predicate='within'
    )
    outside = joined[name_col].isna()
    if outside.any():
        print(f"Warning: Sites outside every boundary polygon: {joined.loc[outside, 'Site'].tolist()}")

    zone_means = joined.groupby(name_col).agg(
        MeanCover=('MeanCover', 'mean'),
        Sites=('Site', 'nunique')
    ).reset_index()

    zones = boundaries[[name_col, 'geometry']].merge(zone_means, on=name_col, how='left')
    zones['Sites'] = zones['Sites'].fillna(0).astype(int)
    return zones


# Function to render the site map
def render_site_map(site_points, boundaries=None, name_col=BOUNDARY_NAME_COL, output_dir=OUTPUT_DIR):
    """Choropleth of zone cover with survey sites coloured by mean cover"""
    print("Rendering site map...")

    observed = site_points['MeanCover'].dropna()
    vmin = 0
    vmax = max(1.0, float(observed.max())) if not observed.empty else 1.0
    zones = None

    fig, ax = plt.subplots(figsize=(10, 10))

    if boundaries is not None:
        zones = zone_cover(site_points, boundaries, name_col)
        if zones['MeanCover'].notna().any():
            zones.plot(
                ax=ax,
                column='MeanCover',
                cmap='YlGn',
                vmin=vmin,
                vmax=vmax,
                edgecolor='grey',
                linewidth=0.5,
                alpha=0.7,
                legend=True,
                legend_kwds={'label': 'Mean hard coral cover (%)', 'shrink': 0.6},
                missing_kwds={'color': 'lightgrey', 'edgecolor': 'grey'}
            )
        else:
            zones.plot(ax=ax, color='lightgrey', edgecolor='grey', linewidth=0.5)

    surveyed = site_points[site_points['MeanCover'].notna()]
    unsurveyed = site_points[site_points['MeanCover'].isna()]
    if not surveyed.empty:
        surveyed.plot(
            ax=ax,
            column='MeanCover',
            cmap='YlGn',
            vmin=vmin,
            vmax=vmax,
            markersize=80,
            edgecolor='black',
            legend=boundaries is None,
            legend_kwds={'label': 'Mean hard coral cover (%)', 'shrink': 0.6}
        )
    if not unsurveyed.empty:
        unsurveyed.plot(ax=ax, color='white', edgecolor='black', markersize=40)

    for _, row in site_points.iterrows():
        ax.annotate(row['Site'], xy=(row.geometry.x, row.geometry.y),
                    xytext=(4, 4), textcoords='offset points', fontsize=8)

    ax.set_title('Nha Trang Bay Survey Sites')
    ax.set_xlabel('Longitude')
    ax.set_ylabel('Latitude')

    plt.tight_layout()
    path = os.path.join(output_dir, 'site_map.png')
    plt.savefig(path, dpi=300)
    plt.close(fig)

    print(f"Site map saved to {path}")
    return path, zones


# Function to generate a Markdown report
def generate_report(results, output_dir=OUTPUT_DIR):
    """Write the analysis summary as a Markdown report"""
    print("Generating report...")

    report_file = os.path.join(output_dir, "NhaTrang_Coral_Report.md")
    panel = results.get('panel')
    transects = results.get('transects')

    with open(report_file, 'w') as f:
        f.write("# Nha Trang Bay Coral Reef Survey Analysis\n\n")
        f.write(f"*Report generated on {datetime.now().strftime('%Y-%m-%d')}*\n\n")

        f.write("## Survey Data\n\n")
        if panel is not None:
            n_quadrats = panel[UNIT_COLUMNS].drop_duplicates().shape[0]
            f.write(f"- Quadrats: {n_quadrats}\n")
            f.write(f"- Sites: {panel['Site'].nunique()}\n")
            f.write(f"- Survey years: {', '.join(str(y) for y in sorted(panel['Year'].unique()))}\n")
        if transects is not None:
            f.write(f"- Transect surveys: {len(transects)}\n")
            f.write(f"- Mean transect hard coral cover: {transects['Cover'].mean():.2f}%\n")

        yearly = results.get('yearly')
        if yearly is not None:
            f.write("\n## Observed Cover by Year\n\n")
            f.write("| Year | Mean Cover (%) | SD | Transects | 95% CI |\n")
            f.write("|------|----------------|----|-----------|--------|\n")
            for _, row in yearly.iterrows():
                f.write(f"| {int(row['Year'])} | {row['mean']:.2f} | {row['std']:.2f} | {int(row['count'])} | ±{row['ci']:.2f} |\n")

            trend = results.get('trend')
            if trend is not None and not np.isnan(trend['slope']):
                direction = "increasing" if trend['r'] > 0 else "decreasing"
                f.write(f"\nThe yearly means show a {direction} trend of {trend['slope']:.3f}% per year ")
                f.write(f"(r={trend['r']:.3f}, p={trend['p_value']:.3f}).\n")

        site_summary = results.get('site_summary')
        if site_summary is not None:
            f.write("\n## Sites\n\n")
            f.write("| Site | Mean Cover (%) | First Year | Last Year | Change (pp) |\n")
            f.write("|------|----------------|------------|-----------|-------------|\n")
            for _, row in site_summary.iterrows():
                f.write(f"| {row['Site']} | {row['MeanCover']:.2f} | {row['FirstYear']} | {row['LastYear']} | {row['Change']:+.2f} |\n")

        diagnostics = results.get('diagnostics')
        if diagnostics is not None:
            f.write("\n## Model Diagnostics\n\n")
            f.write(f"- Max R-hat: {diagnostics['max_rhat']:.3f}\n")
            f.write(f"- Min bulk ESS: {diagnostics['min_ess_bulk']:.0f}\n")
            f.write(f"- Min tail ESS: {diagnostics['min_ess_tail']:.0f}\n")
            f.write(f"- Divergent transitions: {diagnostics['divergences']}\n")
            if diagnostics['bfmi'] is not None:
                f.write(f"- BFMI per chain: {', '.join(f'{b:.2f}' for b in diagnostics['bfmi'])}\n")
            if diagnostics['converged']:
                f.write("\nAll convergence checks passed.\n")
            else:
                f.write("\n**Warning:** some convergence checks failed; treat the estimates below with caution.\n")

        ppc = results.get('ppc')
        if ppc is not None:
            f.write(f"\n{ppc['coverage'] * 100:.1f}% of observed transects fall inside their ")
            f.write(f"{ppc['prob']:.0%} posterior predictive interval")
            if not np.isnan(ppc['dispersion_p_value']):
                f.write(f" (dispersion p-value {ppc['dispersion_p_value']:.2f})")
            f.write(".\n")

        year_cover = results.get('year_cover')
        if year_cover is not None:
            f.write("\n## Modelled Cover by Year\n\n")
            f.write(f"| Year | Posterior Mean (%) | {HDI_PROB:.0%} HDI |\n")
            f.write("|------|--------------------|---------|\n")
            for _, row in year_cover.iterrows():
                f.write(f"| {int(row['Year'])} | {row['mean']:.2f} | {row['hdi_low']:.2f} to {row['hdi_high']:.2f} |\n")

        contrasts = results.get('contrasts')
        if contrasts is not None:
            f.write("\n## Contrasts Between Years\n\n")
            f.write("| From | To | Difference (pp) | HDI | Odds Ratio | P(increase) |\n")
            f.write("|------|----|-----------------|-----|------------|-------------|\n")
            for _, row in contrasts.iterrows():
                f.write(f"| {int(row['FromYear'])} | {int(row['ToYear'])} | {row['diff_mean']:+.2f} | ")
                f.write(f"{row['diff_hdi_low']:+.2f} to {row['diff_hdi_high']:+.2f} | ")
                f.write(f"{row['odds_ratio']:.2f} | {row['prob_increase']:.2f} |\n")

        figures = results.get('figures', [])
        if figures:
            f.write("\n## Figures\n\n")
            for path in figures:
                f.write(f"- `{os.path.basename(path)}`\n")

        f.write("\n## Methodology\n\n")
        f.write("Photo-quadrat point counts were expanded to every benthic category per surveyed quadrat,\n")
        f.write("with unrecorded categories set to zero, and summed to transect level. Hard coral points were\n")
        f.write("modelled as binomial out of the total points scored, with survey year as a fixed effect and\n")
        f.write("random intercepts for site and for transect within site, fitted by NUTS in PyMC.\n")

    print(f"Report saved to {report_file}")
    return report_file


# Main function to run the analysis
def main(argv=None):
    """Main function to orchestrate the Nha Trang survey analysis"""
    args = parse_args(argv)
    output_dir = args.output_dir
    os.makedirs(output_dir, exist_ok=True)

    print("\n=========================================")
    print("Nha Trang Coral Reef Analysis Tool")
    print("=========================================\n")
    print(f"Survey file: {args.survey_file}")
    print(f"Output directory: {output_dir}")
    print("Starting analysis at:", datetime.now().strftime("%Y-%m-%d %H:%M:%S"))

    data = load_data(args.survey_file, args.sites_file)
    if not data:
        print("Error: Failed to load data. Exiting.")
        return 1

    try:
        survey = validate_survey(data['survey'])
        sites = validate_sites(data['sites']) if 'sites' in data else None
        panel = complete_panel(survey)
        transects = declare_factors(transect_cover(panel, args.category))
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    panel.to_csv(os.path.join(output_dir, 'quadrat_panel.csv'), index=False)
    transects.to_csv(os.path.join(output_dir, 'transect_cover.csv'), index=False)

    results = {'panel': panel, 'transects': transects, 'figures': []}

    print("\n=== Exploratory Analysis ===")
    yearly, trend = summarise_yearly_cover(transects)
    site_summary = summarise_sites(transects)
    results.update({'yearly': yearly, 'trend': trend, 'site_summary': site_summary})
    results['figures'].append(plot_cover_by_year(transects, yearly, trend, output_dir))
    results['figures'].append(plot_site_trajectories(transects, output_dir))
    results['figures'].append(plot_benthic_composition(panel, output_dir))
    site_summary.to_csv(os.path.join(output_dir, 'site_summary.csv'), index=False)

    if not args.skip_model:
        print("\n=== Bayesian Model ===")
        try:
            model = build_model(transects, observation_effect=args.olre)
            idata = fit_model(model, args.draws, args.tune, args.chains, args.target_accept, args.seed)
        except ValueError as e:
            print(f"Error: {e}")
            return 1
        except SamplingError as e:
            print(f"Error: Sampling failed - {e}")
            return 1
        save_trace(idata, output_dir)

        print("\n=== Diagnostics ===")
        results['diagnostics'] = check_convergence(idata)
        results['diagnostics']['summary'].to_csv(os.path.join(output_dir, 'posterior_summary.csv'))
        results['ppc'] = posterior_predictive_check(model, idata, random_seed=args.seed)
        results['figures'].extend(plot_diagnostics(idata, output_dir))

        print("\n=== Posterior Contrasts ===")
        results['year_cover'] = year_cover_table(idata)
        contrasts = year_contrasts(idata)
        results['contrasts'] = contrasts
        contrasts.to_csv(os.path.join(output_dir, 'year_contrasts.csv'), index=False)
        results['figures'].append(plot_year_contrasts(contrasts, output_dir))
        for _, row in contrasts.iterrows():
            print(f"  {int(row['FromYear'])} -> {int(row['ToYear'])}: {row['diff_mean']:+.1f} pp "
                  f"({HDI_PROB:.0%} HDI {row['diff_hdi_low']:+.1f} to {row['diff_hdi_high']:+.1f}), "
                  f"P(increase) = {row['prob_increase']:.2f}")

    if sites is not None:
        print("\n=== Site Map ===")
        boundaries = None
        if args.boundary_file:
            boundaries = load_boundaries(args.boundary_file)
            if boundaries is None:
                print("Warning: Drawing the site map without boundaries")
        site_points = sites_geodataframe(sites, site_summary)
        try:
            map_file, _ = render_site_map(site_points, boundaries, args.boundary_name_col, output_dir)
        except ValueError as e:
            print(f"Error: {e}")
            return 1
        results['figures'].append(map_file)

    generate_report(results, output_dir)

    print("\n=========================================")
    print("ANALYSIS SUMMARY")
    print("=========================================")
    print(f"Sites analyzed: {site_summary['Site'].nunique()}")
    print(f"Average transect hard coral cover: {transects['Cover'].mean():.2f}%")
    if 'diagnostics' in results and not results['diagnostics']['converged']:
        print("Warning: The model did not pass every convergence check, see the report")

    print("\nAnalysis complete. Results saved to:", os.path.abspath(output_dir))
    print("Finished at:", datetime.now().strftime("%Y-%m-%d %H:%M:%S"))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
