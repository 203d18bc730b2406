import os

import pandas as pd
import pytest

from NDVIPipeline import build_parser, config_overrides_from, main, parse_int_list
from ndvi_processing.Orchestrator import NDVIDroughtOrchestrator
from ndvi_processing.ProcessingConfig import ProcessingConfig


@pytest.fixture
def small_run(tmp_path):
    return NDVIDroughtOrchestrator(
        output_dir=str(tmp_path / 'out'),
        export_format='csv',
        doys=[150, 200],
        classify_method='percentile_based',
        config_overrides={'n_posterior_draws': 100},
    )


def test_complete_run_writes_anomalies_and_events(small_run, raw_observations, tmp_path):
    assert small_run.orchestrate_complete_processing(raw_observations)

    out = tmp_path / 'out'
    for name in ('baseline_summary', 'year_summary', 'anomalies', 'derivative_anomalies',
                 'growing_season', 'drought_classification'):
        assert (out / f'{name}.csv').exists(), name

    anomalies = pd.read_csv(out / 'anomalies.csv')
    assert len(anomalies) == 2 * 3 * 2
    drought = anomalies[(anomalies['group'] == 'g1') & (anomalies['year'] == 2020) & (anomalies['doy'] == 200)]
    assert drought['anomaly_mean'].iloc[0] < -0.05

    assert small_run.stats['groups'] == 2
    assert small_run.stats['years_processed'] == 3
    assert small_run.stats['year_predictions_units']['fitted'] == 12


def test_valid_unit_mask_restricts_outputs(small_run, raw_observations, tmp_path):
    assert small_run.orchestrate_complete_processing(raw_observations, valid_units={'g1'})
    anomalies = pd.read_csv(tmp_path / 'out' / 'anomalies.csv')
    assert set(anomalies['group']) == {'g1'}


def test_region_baseline_years_fall_back_to_all_years(raw_observations, tmp_path):
    orchestrator = NDVIDroughtOrchestrator(output_dir=str(tmp_path), export_format='csv',
                                           region='great_plains', doys=[150])
    prepared = orchestrator.data_loader.prepare_observations(raw_observations)
    subset = orchestrator.baseline_observations(prepared)
    baseline_years = set(orchestrator.region['baseline_years'])
    expected = baseline_years & set(prepared['year']) or set(prepared['year'])
    assert set(subset['year']) == expected


def test_empty_input_fails(small_run, raw_observations):
    assert not small_run.orchestrate_complete_processing(raw_observations.iloc[0:0])


def test_change_window_string_override(tmp_path):
    NDVIDroughtOrchestrator(output_dir=str(tmp_path), config_overrides={'change_windows': '3, 7'})
    assert ProcessingConfig.get_window_setting('change_windows') == [3, 7]


@pytest.mark.parametrize('kwargs', [
    {'fit_style': 'monthly'},
    {'mode': 'regional'},
    {'fit_style': 'seasonal', 'mode': 'spatial'},
    {'classify_method': 'kmeans'},
])
def test_invalid_settings_are_rejected(tmp_path, kwargs):
    with pytest.raises(ValueError):
        NDVIDroughtOrchestrator(output_dir=str(tmp_path), **kwargs)


# =============================================================================
# COMMAND LINE
# =============================================================================

def test_int_lists_accept_ranges():
    assert parse_int_list('2019,2021-2023') == [2019, 2021, 2022, 2023]
    assert parse_int_list('200') == [200]


def test_cli_runs_a_seasonal_pipeline(raw_observations, tmp_path):
    source = tmp_path / 'observations.csv'
    raw_observations.to_csv(source, index=False)
    output_dir = tmp_path / 'cli'

    success = main([
        '--input', str(source),
        '--output-dir', str(output_dir),
        '--fit-style', 'seasonal',
        '--export-format', 'csv',
        '--n-draws', '50',
        '--no-change-derivatives',
        '--classify', 'hybrid',
        '--log-level', 'SILENT',
    ])

    assert success is True
    assert os.path.exists(output_dir / 'anomalies.csv')
    anomalies = pd.read_csv(output_dir / 'anomalies.csv')
    assert set(anomalies['doy']) == set(range(1, 366))


def test_cli_reports_missing_input(tmp_path):
    assert main(['--input', str(tmp_path / 'absent.csv'), '--output-dir', str(tmp_path),
                 '--log-level', 'SILENT']) is False


def test_basis_dimension_flags_reach_the_windowed_smooths():
    args = build_parser().parse_args(['--input', 'x.csv', '--basis-dimension-k', '9', '--trailing-basis-dimension', '6'])
    overrides = config_overrides_from(args)
    assert overrides == {'basis_dimension_k': 9, 'trailing_basis_dimension': 6}

    ProcessingConfig.apply_overrides(overrides)
    assert ProcessingConfig.get_gam_setting('window_basis_dimension') == 9
    assert ProcessingConfig.get_gam_setting('seasonal_basis_dimension') == 9
    assert ProcessingConfig.get_gam_setting('trailing_basis_dimension') == 6
