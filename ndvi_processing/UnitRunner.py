"""
Execution of independent fit units.

A fit unit is one (group, DOY), (group, year, DOY) or (year, DOY) model: fit,
simulate, reduce, persist. Units share nothing, so they are dispatched to a
process pool as plain task dicts and come back as UnitResult objects keyed by
their unit key. The caller assembles tables from the key -> result mapping.
"""

import itertools
import os
import pickle
import time
from concurrent.futures import FIRST_COMPLETED, ProcessPoolExecutor, wait

import numpy as np
import pandas as pd

from .FileManager import FileManager
from .GamFitter import GamFitter
from .PosteriorSimulator import DERIVATIVE, RESPONSE, IllConditionedCovariance, draw_coefficients, simulate
from .SummaryReducer import attach_keys, reduce
from .data_constants import (
    DEFAULT_GAM_SETTINGS,
    DEFAULT_IO_SETTINGS,
    DEFAULT_PARALLEL_SETTINGS,
    DEFAULT_POSTERIOR_SETTINGS,
    SKIP_ALREADY_PROCESSED,
    SKIP_ILL_CONDITIONED,
    SUMMARY_COLUMNS,
    UNIT_FAILED,
    UNIT_FITTED,
    UNIT_SKIPPED,
)
from .error_utils import ErrorHandler
from .logging_utils import logger

KEY_FIELDS = ('stage', 'group', 'year', 'doy')


class UnitResult:
    """Outcome of one fit unit"""

    def __init__(self, key, status, reason='', detail='', summary=None, derivatives=None, stats=None,
                 resumed=False):
        self.key = key
        self.status = status
        self.reason = reason
        self.detail = detail
        self.summary = summary
        self.derivatives = derivatives
        self.stats = stats or {}
        self.resumed = resumed

    @property
    def fitted(self):
        return self.status == UNIT_FITTED

    def record(self):
        """Flat row for the model-statistics table"""
        row = dict(zip(KEY_FIELDS, self.key))
        row.update({'status': self.status, 'reason': self.reason, 'detail': self.detail, 'resumed': self.resumed})
        row.update(self.stats)
        return row

    def __repr__(self):
        return f"UnitResult(key={self.key!r}, status={self.status!r}, reason={self.reason!r})"


class LoopOutput:
    """Tables assembled from a key -> UnitResult mapping"""

    def __init__(self, results, summary, derivatives, model_stats):
        self.results = results
        self.summary = summary
        self.derivatives = derivatives
        self.model_stats = model_stats

    def count(self, status):
        return sum(1 for result in self.results.values() if result.status == status)

    @property
    def counts(self):
        counts = {status: self.count(status) for status in (UNIT_FITTED, UNIT_SKIPPED, UNIT_FAILED)}
        counts['total'] = len(self.results)
        return counts

    def skip_reasons(self):
        reasons = {}
        for result in self.results.values():
            if result.status != UNIT_FITTED:
                reasons[result.reason] = reasons.get(result.reason, 0) + 1
        return reasons


def unit_label(key):
    stage, group, year, doy = key
    parts = [stage]
    if group is not None:
        parts.append(f"group={group}")
    if year is not None:
        parts.append(f"year={year}")
    if doy is not None:
        parts.append(f"doy={doy}")
    return ' '.join(parts)


def build_unit_settings(config=None):
    """Picklable snapshot of the settings a worker needs"""
    if config:
        posterior = config.get_posterior_setting
        gam = config.get_gam_setting
        io = config.get_io_setting
    else:
        posterior = DEFAULT_POSTERIOR_SETTINGS.get
        gam = DEFAULT_GAM_SETTINGS.get
        io = DEFAULT_IO_SETTINGS.get
    return {
        'n_draws': posterior('n_draws'),
        'lower_quantile': posterior('lower_quantile'),
        'upper_quantile': posterior('upper_quantile'),
        'eigen_tolerance': posterior('eigen_tolerance'),
        'persist_draws': posterior('persist_draws'),
        'derivative_eps': gam('derivative_eps'),
        'max_iterations': gam('max_iterations'),
        'log_lambda_bounds': tuple(gam('log_lambda_bounds')),
        'min_residual_df': gam('min_residual_df'),
        'export_format': io('export_format'),
        'draw_dtype': io('draw_dtype'),
        'compress_draws': io('compress_draws'),
    }


def unit_files(persist, kind, extension):
    """(summary path, draw path) of one unit output"""
    summary_path = FileManager.unit_summary_path(
        persist['output_dir'], persist['stage'], kind, persist['period'], persist['group'], persist['doy'], extension)
    draw_path = FileManager.unit_draw_path(
        persist['output_dir'], persist['stage'], kind, persist['period'], persist['group'], persist['doy'])
    return summary_path, draw_path


def _persist(persist, kind, summary, draws, keys, settings, extension):
    summary_path, draw_path = unit_files(persist, kind, extension)
    if settings['persist_draws']:
        FileManager.write_draw_matrix(draw_path, draws, keys, settings['draw_dtype'], settings['compress_draws'])
    FileManager.write_table(summary, summary_path, settings['export_format'])


def process_fit_unit(task, settings):
    """
    Fit, simulate, reduce and persist one unit.

    Args:
        task (dict): key, data, grid, keys, spec, gate, response_column,
            derivative_term (None for no derivative), derivative_companions
            (optional covariate -> rate moving with the derivative term), seed
            (entropy list or None), persist (path parts or None)
        settings (dict): build_unit_settings() snapshot

    Returns:
        UnitResult
    """
    key = task['key']
    fitter = GamFitter(settings['max_iterations'], settings['log_lambda_bounds'], settings['min_residual_df'])
    model = fitter.fit(task['data'], task['response_column'], task['spec'], task['gate'])
    if not model:
        return UnitResult(key, UNIT_SKIPPED, model.reason, model.detail, stats={'n_obs': model.n_obs})

    seed = task.get('seed')
    rng = np.random.default_rng(np.random.SeedSequence(seed)) if seed is not None else np.random.default_rng()
    grid, keys = task['grid'], task['keys']
    derivative_term = task.get('derivative_term')

    try:
        coefficient_draws = draw_coefficients(model, settings['n_draws'], rng, settings['eigen_tolerance'])
        response_draws = simulate(model, grid, mode=RESPONSE, coefficient_draws=coefficient_draws)
        summary = attach_keys(
            reduce(response_draws, RESPONSE, settings['lower_quantile'], settings['upper_quantile']), keys)

        derivatives = None
        derivative_draws = None
        if derivative_term:
            derivative_draws = simulate(model, grid, mode=DERIVATIVE, coefficient_draws=coefficient_draws,
                                        eps=settings['derivative_eps'], term=derivative_term,
                                        companions=task.get('derivative_companions'))
            derivatives = attach_keys(
                reduce(derivative_draws, DERIVATIVE, settings['lower_quantile'], settings['upper_quantile']), keys)
    except IllConditionedCovariance as e:
        return UnitResult(key, UNIT_SKIPPED, SKIP_ILL_CONDITIONED, str(e), stats=model.stats())
    except (np.linalg.LinAlgError, ValueError) as e:
        return UnitResult(key, UNIT_FAILED, 'simulation_error', str(e), stats=model.stats())

    persist = task.get('persist')
    if persist:
        extension = FileManager.extension_for(settings['export_format'])
        try:
            _persist(persist, RESPONSE, summary, response_draws, keys, settings, extension)
            if derivatives is not None:
                _persist(persist, DERIVATIVE, derivatives, derivative_draws, keys, settings, extension)
        except (OSError, ValueError) as e:
            return UnitResult(key, UNIT_FAILED, 'io_error', str(e), stats=model.stats())

    return UnitResult(key, UNIT_FITTED, summary=summary, derivatives=derivatives, stats=model.stats())


def _read_unit_table(path, n_rows):
    """A persisted unit table, or None when it is missing, unreadable or incomplete"""
    if not os.path.exists(path):
        return None
    try:
        table = FileManager.read_table(path)
    except (OSError, ValueError, EOFError, pickle.UnpicklingError) as e:
        logger.warning(f"Unreadable unit file {path} ({type(e).__name__}); refitting")
        return None
    if len(table) != n_rows or not set(SUMMARY_COLUMNS) <= set(table.columns):
        logger.warning(f"Incomplete unit file {path}; refitting")
        return None
    return table


def load_persisted_unit(task, settings):
    """UnitResult rebuilt from a unit's summary files, or None when they must be refitted"""
    persist = task.get('persist')
    if not persist:
        return None
    extension = FileManager.extension_for(settings['export_format'])
    n_rows = len(task['keys'])
    summary_path, _ = unit_files(persist, RESPONSE, extension)
    summary = _read_unit_table(summary_path, n_rows)
    if summary is None:
        return None

    derivatives = None
    if task.get('derivative_term'):
        derivative_path, _ = unit_files(persist, DERIVATIVE, extension)
        derivatives = _read_unit_table(derivative_path, n_rows)
        if derivatives is None:
            return None

    return UnitResult(task['key'], UNIT_FITTED, SKIP_ALREADY_PROCESSED, summary=summary, derivatives=derivatives,
                      resumed=True)


def unit_seed(base_seed, stage_id, group_index, year, doy):
    """Entropy for one unit's SeedSequence; None leaves the unit unseeded"""
    if base_seed is None:
        return None
    return [int(base_seed), int(stage_id), int(group_index), int(year or 0), int(doy or 0)]


def collect(results):
    """Concatenate fitted units into summary, derivative and model-statistics tables"""
    ordered = [results[key] for key in sorted(results, key=_sort_key)]
    summaries = [r.summary for r in ordered if r.fitted and r.summary is not None]
    derivatives = [r.derivatives for r in ordered if r.fitted and r.derivatives is not None]
    summary = pd.concat(summaries, ignore_index=True) if summaries else pd.DataFrame()
    derivative_table = pd.concat(derivatives, ignore_index=True) if derivatives else pd.DataFrame()
    model_stats = pd.DataFrame([r.record() for r in ordered])
    return LoopOutput(results, summary, derivative_table, model_stats)


def _sort_key(key):
    return tuple('' if part is None else str(part).zfill(12) for part in key)


class FitUnitRunner:
    """Runs fit units inline or on a bounded process pool"""

    def __init__(self, config=None, memory_manager=None, force_reprocess=False, stats=None,
                 unit_function=process_fit_unit):
        self.config = config
        self.unit_function = unit_function
        self.memory_manager = memory_manager
        self.force_reprocess = force_reprocess
        self.stats = stats if stats is not None else {}
        self.settings = build_unit_settings(config)
        self._abandoned = []

        if config:
            self.requested_workers = config.get_parallel_setting('worker_pool_size')
            self.unit_timeout = config.get_parallel_setting('unit_timeout_seconds')
            self.in_flight_factor = config.get_parallel_setting('max_in_flight_factor')
        else:
            self.requested_workers = DEFAULT_PARALLEL_SETTINGS['worker_pool_size']
            self.unit_timeout = DEFAULT_PARALLEL_SETTINGS['unit_timeout_seconds']
            self.in_flight_factor = DEFAULT_PARALLEL_SETTINGS['max_in_flight_factor']

    def pool_size_for(self, task):
        """Worker count for units shaped like `task`"""
        if self.memory_manager is None:
            return max(1, int(self.requested_workers))
        spec = task['spec']
        n_coefficients = len(spec.linear) + spec.basis_dimension ** len(spec.terms)
        unit_memory = self.memory_manager.estimate_unit_memory_gb(
            self.settings['n_draws'], len(task['grid']), n_coefficients, len(task['data']))
        return self.memory_manager.determine_pool_size(self.requested_workers, unit_memory)

    def run(self, tasks, total=None, stage_name='Fit units'):
        """
        Execute tasks and return an explicit mapping unit key -> UnitResult.

        Args:
            tasks: Iterable of task dicts (consumed lazily)
            total (int): Number of tasks, for progress reporting
            stage_name (str): Label for logging
        """
        results = {}
        tasks = iter(tasks)
        first = next(tasks, None)
        if first is None:
            return results
        tasks = itertools.chain([first], tasks)

        pool_size = self.pool_size_for(first)
        self.stats['worker_pool_size'] = pool_size
        logger.processing_start(f"{stage_name} on {pool_size} worker(s)", total)

        pending = self._resume(tasks, results)
        if pool_size <= 1:
            self._run_inline(pending, results, total)
        else:
            self._run_pool(pending, results, total, pool_size)
        return results

    def _resume(self, tasks, results):
        for task in tasks:
            if not self.force_reprocess:
                previous = load_persisted_unit(task, self.settings)
                if previous is not None:
                    results[task['key']] = previous
                    continue
            yield task

    def _record(self, key, result, results, total):
        results[key] = result
        if result.status == UNIT_SKIPPED:
            logger.skip_unit(unit_label(key), f"{result.reason} ({result.detail})" if result.detail else result.reason)
        logger.processing_unit(unit_label(key), len(results), total or len(results), result.status)

    def _run_inline(self, tasks, results, total):
        for task in tasks:
            key = task['key']
            try:
                result = self.unit_function(task, self.settings)
            except Exception as e:
                ErrorHandler.handle_fit_error(unit_label(key), e)
                result = UnitResult(key, UNIT_FAILED, 'error', str(e))
            self._record(key, result, results, total)

    def _run_pool(self, tasks, results, total, pool_size):
        max_in_flight = max(pool_size, int(pool_size * self.in_flight_factor))
        # future -> [key, start time]; insertion order is submission order
        in_flight = {}
        self._abandoned = []
        timed_out = False

        executor = ProcessPoolExecutor(max_workers=pool_size)
        try:
            for task in tasks:
                while len(in_flight) >= max_in_flight:
                    timed_out = self._drain(in_flight, results, total, pool_size) or timed_out
                future = executor.submit(self.unit_function, task, self.settings)
                in_flight[future] = [task['key'], None]
            while in_flight:
                timed_out = self._drain(in_flight, results, total, pool_size) or timed_out
        finally:
            # hung workers cannot be joined
            executor.shutdown(wait=not timed_out, cancel_futures=True)

    def _mark_started(self, in_flight, pool_size, now):
        # the pool runs units in submission order, so the oldest units hold the workers
        # that timed-out units have not given back
        busy = sum(1 for future in self._abandoned if not future.done())
        for entry in itertools.islice(in_flight.values(), max(1, pool_size - busy)):
            if entry[1] is None:
                entry[1] = now

    def _drain(self, in_flight, results, total, pool_size):
        """Wait for at least one unit; fail units that have run longer than the per-unit timeout"""
        self._mark_started(in_flight, pool_size, time.monotonic())
        deadlines = [started + self.unit_timeout for _, started in in_flight.values() if started is not None]
        timeout = max(0.0, min(deadlines) - time.monotonic()) if deadlines else self.unit_timeout

        done, _ = wait(list(in_flight), timeout=timeout, return_when=FIRST_COMPLETED)
        for future in done:
            key, _ = in_flight.pop(future)
            try:
                result = future.result()
            except Exception as e:
                ErrorHandler.handle_fit_error(unit_label(key), e)
                result = UnitResult(key, UNIT_FAILED, 'error', str(e))
            self._record(key, result, results, total)

        timed_out = False
        now = time.monotonic()
        for future, (key, started) in list(in_flight.items()):
            if started is None or now - started <= self.unit_timeout:
                continue
            if not future.cancel():
                self._abandoned.append(future)
            del in_flight[future]
            timed_out = True
            ErrorHandler.handle_fit_error(unit_label(key), TimeoutError(f"ran longer than {self.unit_timeout}s"))
            self._record(key, UnitResult(key, UNIT_FAILED, 'timeout', f"ran longer than {self.unit_timeout}s"),
                         results, total)
        self._mark_started(in_flight, pool_size, now)
        return timed_out


def finish_stage(stage_name, results, stats=None):
    """Collect a stage's results, log its unit counts and record them in stats"""
    output = collect(results)
    counts = output.counts
    logger.loop_summary(stage_name, counts['total'], counts['fitted'], counts['skipped'], counts['failed'])
    reasons = output.skip_reasons()
    if reasons:
        logger.info(f"Skip reasons: {', '.join(f'{reason}={n}' for reason, n in sorted(reasons.items()))}")
    if stats is not None:
        stats[f"{stage_name.lower().replace(' ', '_')}_units"] = counts
    return output
