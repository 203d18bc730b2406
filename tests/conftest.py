import numpy as np
import pandas as pd
import pytest

from ndvi_processing.ProcessingConfig import ProcessingConfig
from ndvi_processing.data_constants import HARMONIZED_VALUE_COL
from ndvi_processing.logging_utils import LogLevel, set_log_level

DROUGHT_YEAR = 2020
DROUGHT_DOYS = (150, 250)
DROUGHT_SIZE = 0.15


def seasonal_curve(doy):
    """Synthetic NDVI norm peaking around doy 171"""
    return 0.5 + 0.3 * np.sin(2 * np.pi * (np.asarray(doy, dtype=float) - 80) / 365)


def make_observations(groups=('g1', 'g2'), years=(2018, 2019, 2020), noise=0.01, seed=7):
    """Daily observations with a summer browning in DROUGHT_YEAR"""
    rng = np.random.default_rng(seed)
    dates = pd.date_range(f'{years[0]}-01-01', f'{years[-1]}-12-31', freq='D')
    frames = []
    for offset, group in enumerate(groups):
        doy = dates.dayofyear.to_numpy()
        value = seasonal_curve(doy) + 0.02 * offset
        dry = (dates.year.to_numpy() == DROUGHT_YEAR) & (doy >= DROUGHT_DOYS[0]) & (doy <= DROUGHT_DOYS[1])
        value = value - DROUGHT_SIZE * dry
        frames.append(pd.DataFrame({
            'group': group,
            'date': dates,
            'mission': 'landsat8',
            HARMONIZED_VALUE_COL: value + rng.normal(0, noise, len(dates)),
        }))
    return pd.concat(frames, ignore_index=True)


def make_pixel_observations(n_side=5, years=(2019, 2020), every_days=5, noise=0.01, seed=11):
    """Pixel grid observed every few days; NDVI rises with x"""
    rng = np.random.default_rng(seed)
    dates = pd.date_range(f'{years[0]}-01-01', f'{years[-1]}-12-31', freq=f'{every_days}D')
    frames = []
    for ix in range(n_side):
        for iy in range(n_side):
            doy = dates.dayofyear.to_numpy()
            value = seasonal_curve(doy) + 0.05 * ix / n_side
            frames.append(pd.DataFrame({
                'group': f'px_{ix}_{iy}',
                'x': float(ix) * 4000.0,
                'y': float(iy) * 4000.0,
                'date': dates,
                'doy': doy,
                'year': dates.year.to_numpy(),
                HARMONIZED_VALUE_COL: value + rng.normal(0, noise, len(dates)),
            }))
    return pd.concat(frames, ignore_index=True)


@pytest.fixture(scope='session', autouse=True)
def quiet_logging():
    set_log_level(LogLevel.SILENT)
    yield


@pytest.fixture(autouse=True)
def default_config():
    """Fresh configuration per test: inline execution, seeded draws"""
    ProcessingConfig.reset_defaults()
    ProcessingConfig.apply_overrides({'worker_pool_size': 1, 'random_seed': 1234, 'n_posterior_draws': 200})
    yield ProcessingConfig
    ProcessingConfig.reset_defaults()


@pytest.fixture
def raw_observations():
    return make_observations()


@pytest.fixture
def observations(raw_observations):
    frame = raw_observations.copy()
    frame['doy'] = frame['date'].dt.dayofyear
    frame['year'] = frame['date'].dt.year
    return frame


@pytest.fixture
def pixel_observations():
    return make_pixel_observations()


@pytest.fixture
def curve_frame():
    """One noisy seasonal curve over a single year"""
    rng = np.random.default_rng(3)
    doy = np.arange(1, 366, 2, dtype=float)
    return pd.DataFrame({
        'doy': doy,
        'value': seasonal_curve(doy) + rng.normal(0, 0.02, len(doy)),
    })
