"""
Configuration management for all modeling parameters.

Components receive the ProcessingConfig class itself (config=ProcessingConfig)
and read settings through the get_* accessors; with no config they fall back
to the same defaults from data_constants.
"""

import copy

from .data_constants import (
    DEFAULT_COVERAGE_SETTINGS,
    DEFAULT_DROUGHT_SETTINGS,
    DEFAULT_GAM_SETTINGS,
    DEFAULT_IO_SETTINGS,
    DEFAULT_MEMORY_THRESHOLDS,
    DEFAULT_PARALLEL_SETTINGS,
    DEFAULT_POSTERIOR_SETTINGS,
    DEFAULT_WINDOW_SETTINGS,
)

_SECTION_DEFAULTS = {
    'MEMORY_THRESHOLDS': DEFAULT_MEMORY_THRESHOLDS,
    'WINDOW_SETTINGS': DEFAULT_WINDOW_SETTINGS,
    'GAM_SETTINGS': DEFAULT_GAM_SETTINGS,
    'COVERAGE_SETTINGS': DEFAULT_COVERAGE_SETTINGS,
    'POSTERIOR_SETTINGS': DEFAULT_POSTERIOR_SETTINGS,
    'PARALLEL_SETTINGS': DEFAULT_PARALLEL_SETTINGS,
    'IO_SETTINGS': DEFAULT_IO_SETTINGS,
    'DROUGHT_SETTINGS': DEFAULT_DROUGHT_SETTINGS,
}

# Named configuration parameters of the fit loop -> (section, key)
CONFIG_ALIASES = {
    'window_width_doy': [('WINDOW_SETTINGS', 'doy_half_width')],
    'window_width_trailing_days': [('WINDOW_SETTINGS', 'trailing_days')],
    # every DOY basis; the specific *_basis_dimension settings refine it
    'basis_dimension_k': [
        ('GAM_SETTINGS', 'seasonal_basis_dimension'),
        ('GAM_SETTINGS', 'year_basis_dimension'),
        ('GAM_SETTINGS', 'window_basis_dimension'),
        ('GAM_SETTINGS', 'trailing_basis_dimension'),
    ],
    'n_posterior_draws': [('POSTERIOR_SETTINGS', 'n_draws')],
    'worker_pool_size': [('PARALLEL_SETTINGS', 'worker_pool_size')],
}


class ProcessingConfig:
    """Configuration class for modeling parameters - replaces hardcoded values"""

    MEMORY_THRESHOLDS = copy.deepcopy(DEFAULT_MEMORY_THRESHOLDS)
    WINDOW_SETTINGS = copy.deepcopy(DEFAULT_WINDOW_SETTINGS)
    GAM_SETTINGS = copy.deepcopy(DEFAULT_GAM_SETTINGS)
    COVERAGE_SETTINGS = copy.deepcopy(DEFAULT_COVERAGE_SETTINGS)
    POSTERIOR_SETTINGS = copy.deepcopy(DEFAULT_POSTERIOR_SETTINGS)
    PARALLEL_SETTINGS = copy.deepcopy(DEFAULT_PARALLEL_SETTINGS)
    IO_SETTINGS = copy.deepcopy(DEFAULT_IO_SETTINGS)
    DROUGHT_SETTINGS = copy.deepcopy(DEFAULT_DROUGHT_SETTINGS)

    @classmethod
    def get_memory_threshold(cls, threshold_name):
        """Get memory threshold by name"""
        return cls.MEMORY_THRESHOLDS.get(threshold_name, 4.0)

    @classmethod
    def get_window_setting(cls, setting_name):
        """Get window setting by name"""
        return cls.WINDOW_SETTINGS.get(setting_name, DEFAULT_WINDOW_SETTINGS.get(setting_name))

    @classmethod
    def get_gam_setting(cls, setting_name):
        """Get GAM setting by name"""
        return cls.GAM_SETTINGS.get(setting_name, DEFAULT_GAM_SETTINGS.get(setting_name))

    @classmethod
    def get_coverage_setting(cls, setting_name):
        """Get coverage gate setting by name"""
        return cls.COVERAGE_SETTINGS.get(setting_name, DEFAULT_COVERAGE_SETTINGS.get(setting_name))

    @classmethod
    def get_posterior_setting(cls, setting_name):
        """Get posterior simulation setting by name"""
        return cls.POSTERIOR_SETTINGS.get(setting_name, DEFAULT_POSTERIOR_SETTINGS.get(setting_name))

    @classmethod
    def get_parallel_setting(cls, setting_name):
        """Get worker pool setting by name"""
        return cls.PARALLEL_SETTINGS.get(setting_name, DEFAULT_PARALLEL_SETTINGS.get(setting_name))

    @classmethod
    def get_io_setting(cls, setting_name):
        """Get I/O setting by name"""
        return cls.IO_SETTINGS.get(setting_name, DEFAULT_IO_SETTINGS.get(setting_name))

    @classmethod
    def get_drought_setting(cls, setting_name):
        """Get drought classification setting by name"""
        return cls.DROUGHT_SETTINGS.get(setting_name, DEFAULT_DROUGHT_SETTINGS.get(setting_name))

    @classmethod
    def apply_overrides(cls, overrides):
        """
        Apply overrides by alias (window_width_doy, min_coverage_fraction_or_count, ...)
        or by any setting name found in one of the sections. Aliases are applied
        first, so a specific setting wins over an alias that also covers it.

        Returns:
            list: Names of overrides that matched nothing
        """
        unknown = []
        ordered = sorted(overrides.items(), key=lambda item: item[0] not in CONFIG_ALIASES)
        for name, value in ordered:
            if value is None:
                continue
            if name == 'min_coverage_fraction_or_count':
                cls._apply_coverage_override(value)
            elif name in CONFIG_ALIASES:
                for section, key in CONFIG_ALIASES[name]:
                    getattr(cls, section)[key] = value
            else:
                matched = False
                for section in _SECTION_DEFAULTS:
                    settings = getattr(cls, section)
                    if name in settings:
                        settings[name] = value
                        matched = True
                if not matched:
                    unknown.append(name)
        return unknown

    @classmethod
    def _apply_coverage_override(cls, value):
        # fractions gate spatial fits, counts gate temporal fits
        if 0 < value < 1:
            cls.COVERAGE_SETTINGS['min_pixel_fraction'] = float(value)
        else:
            for key in ('baseline_min_observations', 'year_min_observations', 'season_min_observations'):
                cls.COVERAGE_SETTINGS[key] = int(value)

    @classmethod
    def reset_defaults(cls):
        """Restore every section to the data_constants defaults"""
        for section, defaults in _SECTION_DEFAULTS.items():
            setattr(cls, section, copy.deepcopy(defaults))

    @classmethod
    def as_dict(cls):
        return {section.lower(): dict(getattr(cls, section)) for section in _SECTION_DEFAULTS}
