"""
Data constants and default configuration for the NDVI drought monitoring pipeline.

This module holds the static configuration shared by every component: column
names of the harmonized observation table and of the persisted summary tables,
default modeling parameters (used whenever a component runs without a
ProcessingConfig), drought category labels and monitoring region definitions.
"""

# 🗂️ Harmonized observation table columns
GROUP_COL = 'group'
DATE_COL = 'date'
DOY_COL = 'doy'
YEAR_COL = 'year'
MISSION_COL = 'mission'
RAW_VALUE_COL = 'ndvi'
HARMONIZED_VALUE_COL = 'ndvi_harmonized'
X_COL = 'x'
Y_COL = 'y'

REQUIRED_OBSERVATION_COLUMNS = [GROUP_COL, DATE_COL]
RESPONSE_COLUMN_PREFERENCE = [HARMONIZED_VALUE_COL, RAW_VALUE_COL]

# Derived covariates
WINDOW_OFFSET_COL = 'window_offset'
NORM_COL = 'norm'

# 📊 Summary / anomaly table columns
SUMMARY_COLUMNS = ['mean', 'lower', 'upper']
DERIVATIVE_COLUMNS = ['mean', 'lower', 'upper', 'significant']
ANOMALY_COLUMNS = ['anomaly_mean', 'anomaly_lower', 'anomaly_upper']

# 📅 Calendar
DAYS_IN_YEAR = 365
DOY_RANGE = range(1, DAYS_IN_YEAR + 1)

# Unit outcome labels
UNIT_FITTED = 'fitted'
UNIT_SKIPPED = 'skipped'
UNIT_FAILED = 'failed'

# Skip reasons reported by the fit adapter and the loop
SKIP_INSUFFICIENT_DATA = 'insufficient_data'
SKIP_MISSING_COLUMNS = 'missing_columns'
SKIP_ILL_CONDITIONED = 'ill_conditioned'
SKIP_DEGENERATE_FIT = 'degenerate_fit'
SKIP_MISSING_NORM = 'missing_norm'
SKIP_ALREADY_PROCESSED = 'already_processed'

# =============================================================================
# DEFAULT MODELING PARAMETERS
# =============================================================================

DEFAULT_MEMORY_THRESHOLDS = {
    'critical': 1.0,           # GB available - aggressive cleanup
    'low': 2.0,                # GB available - moderate cleanup
    'moderate': 4.0,           # GB available - light cleanup
    'pool_budget_fraction': 0.7,   # Share of available memory the worker pool may claim
    'unit_overhead_factor': 3.0,   # Multiplier on the analytic per-unit footprint
}

DEFAULT_WINDOW_SETTINGS = {
    'doy_half_width': 7,       # ±W days around the target DOY for norms
    'trailing_days': 16,       # L days ending at the target date for year fits
    'edge_padding_days': 31,   # Previous December / next January for season fits
    'change_windows': [3, 7, 14, 30],
}

DEFAULT_GAM_SETTINGS = {
    'seasonal_basis_dimension': 12,    # cyclic DOY smooth over the whole year
    'year_basis_dimension': 18,        # open DOY smooth for padded single years
    'window_basis_dimension': 6,       # smooth over the ±W norm window
    'trailing_basis_dimension': 5,     # smooth over the trailing year window
    'spatial_basis_dimension': 10,     # per axis of the x,y tensor smooth
    'cyclic_bounds': (1, DAYS_IN_YEAR),
    'penalty_order': 2,
    'log_lambda_bounds': (-6.0, 6.0),
    'max_iterations': 60,
    'derivative_eps': 1e-7,
    'min_residual_df': 1.0,            # smallest n - edf a fitted unit may keep
}

DEFAULT_COVERAGE_SETTINGS = {
    'min_pixel_fraction': 0.33,        # spatial fits: distinct pixels / all pixels
    'spatial_min_observations': 50,
    'baseline_min_observations': 40,   # temporal norm windows
    'year_min_observations': 15,       # temporal trailing windows
    'season_min_observations': 15,     # padded single-year season fits
    'min_distinct_values': 4,
}

DEFAULT_POSTERIOR_SETTINGS = {
    'n_draws': 100,
    'lower_quantile': 0.025,
    'upper_quantile': 0.975,
    'random_seed': None,
    'persist_draws': True,
    'eigen_tolerance': 1e-8,
}

DEFAULT_PARALLEL_SETTINGS = {
    'worker_pool_size': 3,
    'min_workers': 1,
    'max_workers': 10,
    'unit_timeout_seconds': 600,
    'max_in_flight_factor': 2,
}

DEFAULT_IO_SETTINGS = {
    'export_format': 'parquet',
    'draw_dtype': 'float32',
    'compress_draws': True,
}

DEFAULT_DROUGHT_SETTINGS = {
    'method': 'percentile_based',
    'z_critical': 1.959964,
}

# File format extensions mapping
FILE_FORMAT_EXTENSIONS = {
    'csv': '.csv',
    'parquet': '.parquet',
    'feather': '.feather',
    'pickle': '.pkl',
}

DRAW_FILE_EXTENSION = '.npz'

# =============================================================================
# DROUGHT CATEGORIES
# =============================================================================

D4 = 'D4 - Exceptional Drought'
D3 = 'D3 - Extreme Drought'
D2 = 'D2 - Severe Drought'
D1 = 'D1 - Moderate Drought'
D0_NORMAL = 'D0 - Normal'
D0_DRY_NOT_SIGNIFICANT = 'D0 - Abnormally Dry (not significant)'
NORMAL = 'Normal'
W1 = 'W1 - Above Normal'
W2 = 'W2 - Abundant Vegetation'
W3 = 'W3 - Extreme Wetness'
W4 = 'W4 - Exceptional Wetness'

# Percentile-based: (probability, category), dry side checked low -> high,
# wet side checked high -> low
PERCENTILE_DRY_THRESHOLDS = [(0.02, D4), (0.05, D3), (0.10, D2), (0.25, D1)]
PERCENTILE_WET_THRESHOLDS = [(0.98, W4), (0.95, W3), (0.90, W2), (0.75, W1)]

# Significance-based: |z| thresholds
SIGNIFICANCE_DRY_THRESHOLDS = [(-3.0, D4), (-2.0, D3), (-1.5, D2), (-1.0, D1)]
SIGNIFICANCE_WET_THRESHOLDS = [(3.0, W4), (2.0, W3), (1.5, W2), (1.0, W1)]

# Hybrid: percentiles gated on significance
HYBRID_DRY_THRESHOLDS = [(0.05, D3), (0.10, D2), (0.25, D1)]
HYBRID_WET_THRESHOLDS = [(0.95, W3), (0.90, W2), (0.75, W1)]

CLASSIFICATION_METHODS = ['percentile_based', 'significance_based', 'hybrid']

# =============================================================================
# GROWING SEASON
# =============================================================================

GROWING_SEASON_LOWER_FRACTION = 0.15   # of the norm's amplitude above its minimum
GROWING_SEASON_UPPER_FRACTION = 0.95   # of the norm's peak

# =============================================================================
# MONITORING REGIONS
# =============================================================================

BASELINE_YEARS = list(range(2013, 2025))

REGION_CONFIGS = {
    'midwest': {
        'name': 'Midwest DEWS',
        'bbox_latlon': {'xmin': -104.5, 'ymin': 37.0, 'xmax': -82.0, 'ymax': 47.5},
        'states': ['ND', 'SD', 'NE', 'KS', 'MN', 'IA', 'MO', 'WI', 'IL', 'IN', 'MI', 'OH'],
        'target_crs': 'EPSG:5070',
        'resolution': 4000,
        'expected_pixels': 15000,
        'baseline_years': BASELINE_YEARS,
    },
    'conus': {
        'name': 'CONUS',
        'bbox_latlon': {'xmin': -125.0, 'ymin': 24.0, 'xmax': -66.0, 'ymax': 50.0},
        'states': None,
        'target_crs': 'EPSG:5070',
        'resolution': 4000,
        'expected_pixels': 500000,
        'baseline_years': BASELINE_YEARS,
    },
    'great_plains': {
        'name': 'Great Plains',
        'bbox_latlon': {'xmin': -106.0, 'ymin': 33.0, 'xmax': -94.0, 'ymax': 49.0},
        'states': ['MT', 'ND', 'SD', 'WY', 'NE', 'KS', 'OK', 'TX'],
        'target_crs': 'EPSG:5070',
        'resolution': 4000,
        'expected_pixels': 50000,
        'baseline_years': BASELINE_YEARS,
    },
    'western': {
        'name': 'Western US',
        'bbox_latlon': {'xmin': -125.0, 'ymin': 31.0, 'xmax': -102.0, 'ymax': 49.0},
        'states': ['WA', 'OR', 'CA', 'ID', 'NV', 'UT', 'AZ', 'MT', 'WY', 'CO', 'NM'],
        'target_crs': 'EPSG:5070',
        'resolution': 4000,
        'expected_pixels': 150000,
        'baseline_years': BASELINE_YEARS,
    },
}


def get_region_config(region_name='midwest'):
    """Return a copy of a monitoring region definition"""
    if region_name not in REGION_CONFIGS:
        raise ValueError(f"Unknown region: {region_name}. Available regions: {', '.join(REGION_CONFIGS)}")
    config = dict(REGION_CONFIGS[region_name])
    config['region_id'] = region_name
    return config
