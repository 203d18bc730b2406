import os

import pandas as pd

from .data_constants import (
    DATE_COL,
    DOY_COL,
    GROUP_COL,
    REQUIRED_OBSERVATION_COLUMNS,
    RESPONSE_COLUMN_PREFERENCE,
    X_COL,
    Y_COL,
    YEAR_COL,
)
from .error_utils import ErrorHandler
from .logging_utils import logger


class DataLoader:
    """Handles observation loading, validation and preprocessing"""

    def __init__(self, config=None, memory_manager=None, file_manager=None):
        """
        Initialize DataLoader

        Args:
            config: ProcessingConfig class for accessing settings
            memory_manager: MemoryManager instance for chunked CSV loading
            file_manager: FileManager instance for file operations
        """
        self.config = config
        self.memory_manager = memory_manager
        self.file_manager = file_manager
        self.response_column = None

        logger.init_component("DataLoader", f"chunked CSV loading {'enabled' if memory_manager else 'disabled'}")

    # =============================================================================
    # DATE UTILITIES
    # =============================================================================

    @staticmethod
    def convert_date_column(df, column_name=DATE_COL):
        """Convert a column to datetime format in place"""
        if column_name in df.columns and not pd.api.types.is_datetime64_any_dtype(df[column_name]):
            df[column_name] = pd.to_datetime(df[column_name], errors='coerce')
        return df

    @staticmethod
    def add_calendar_columns(df):
        """Derive doy/year from the date column where they are absent"""
        if DOY_COL in df.columns and YEAR_COL in df.columns:
            return df
        DataLoader.convert_date_column(df)
        if DOY_COL not in df.columns:
            df[DOY_COL] = df[DATE_COL].dt.dayofyear
        if YEAR_COL not in df.columns:
            df[YEAR_COL] = df[DATE_COL].dt.year
        return df

    @staticmethod
    def get_date_range(df):
        """Get the time range (start, end, days) of an observation table"""
        if DATE_COL not in df.columns or df.empty:
            return {'start': None, 'end': None, 'days': 0}
        DataLoader.convert_date_column(df)
        start_time = df[DATE_COL].min()
        end_time = df[DATE_COL].max()
        days = (end_time - start_time).days if pd.notna(start_time) and pd.notna(end_time) else 0
        return {'start': start_time, 'end': end_time, 'days': days}

    # =============================================================================
    # LOADING
    # =============================================================================

    def load_table(self, file_path):
        """Load an observation table from csv, parquet, feather or pickle"""
        file_path = str(file_path)
        if self.file_manager:
            exists, actual_path = self.file_manager.check_file_exists(file_path)
            if not exists:
                return ErrorHandler.handle_file_not_found("observation", file_path)
            file_path = actual_path
        elif not os.path.exists(file_path):
            return ErrorHandler.handle_file_not_found("observation", file_path)

        if file_path.endswith('.csv') or file_path.endswith('.csv.gz'):
            if self.memory_manager:
                return self.memory_manager.load_data_in_chunks(file_path)
            try:
                return pd.read_csv(file_path)
            except (OSError, ValueError) as e:
                return ErrorHandler.handle_data_loading_error("CSV", file_path, e)

        try:
            if file_path.endswith('.parquet'):
                return pd.read_parquet(file_path)
            if file_path.endswith('.feather'):
                return pd.read_feather(file_path)
            if file_path.endswith('.pkl'):
                return pd.read_pickle(file_path)
        except (OSError, ValueError, ImportError) as e:
            return ErrorHandler.handle_data_loading_error("observation", file_path, e)

        return ErrorHandler.handle_data_loading_error(
            "observation", file_path, ValueError("unsupported file extension"))

    def load_observations(self, file_path, valid_units=None):
        """
        Load and prepare the harmonized observation table.

        Returns:
            pd.DataFrame or None: Observations with doy/year and a non-missing
            response column, restricted to valid units when given
        """
        logger.phase_start("Loading Observations")
        data = self.load_table(file_path)
        if data is None:
            return None

        data = self.prepare_observations(data, valid_units)
        if data is None:
            return None

        date_range = self.get_date_range(data)
        logger.phase_complete("Loading Observations",
                              f"{len(data):,} rows, {data[GROUP_COL].nunique()} groups, "
                              f"{date_range['start']} to {date_range['end']}")
        return data

    def prepare_observations(self, data, valid_units=None):
        """Validate columns, derive calendar fields, select the response and apply the unit mask"""
        missing = [column for column in REQUIRED_OBSERVATION_COLUMNS if column not in data.columns]
        has_calendar = DOY_COL in data.columns and YEAR_COL in data.columns
        if missing and not (missing == [DATE_COL] and has_calendar):
            ErrorHandler.handle_validation_error("Observation table", f"missing columns {missing}")
            return None

        response_column = self.select_response_column(data)
        if response_column is None:
            ErrorHandler.handle_validation_error(
                "Observation table", f"no response column (expected one of {RESPONSE_COLUMN_PREFERENCE})")
            return None
        self.response_column = response_column

        data = self.add_calendar_columns(data.copy())

        original_rows = len(data)
        data = data.dropna(subset=[response_column, DOY_COL, YEAR_COL])
        data[DOY_COL] = data[DOY_COL].astype(int)
        data[YEAR_COL] = data[YEAR_COL].astype(int)
        dropped = original_rows - len(data)
        if dropped:
            logger.data_issue("Rows without a response or date dropped", dropped)

        if valid_units is not None:
            data = self.apply_valid_units(data, valid_units)

        if self.memory_manager:
            self.memory_manager.check_memory_usage()
        return data.reset_index(drop=True)

    @staticmethod
    def select_response_column(data):
        """Prefer the harmonized response, else the raw one"""
        for column in RESPONSE_COLUMN_PREFERENCE:
            if column in data.columns and data[column].notna().any():
                return column
        return None

    def load_valid_units(self, file_path):
        """Load a valid-unit mask: a table with a group column, or one key per line"""
        file_path = str(file_path)
        if self.file_manager and not self.file_manager.validate_file_exists(file_path, "valid-unit mask"):
            return None
        if not os.path.exists(file_path):
            return ErrorHandler.handle_file_not_found("valid-unit mask", file_path)

        try:
            if file_path.endswith('.txt'):
                with open(file_path) as f:
                    units = [line.strip() for line in f if line.strip()]
            else:
                table = self.load_table(file_path)
                if table is None:
                    return None
                column = GROUP_COL if GROUP_COL in table.columns else table.columns[0]
                units = table[column].dropna().tolist()
        except OSError as e:
            return ErrorHandler.handle_data_loading_error("valid-unit mask", file_path, e)

        logger.info(f"Valid-unit mask: {len(units):,} units")
        return set(units)

    @staticmethod
    def apply_valid_units(data, valid_units):
        """Restrict observations to the valid-unit mask; keys are compared as strings"""
        valid = {str(unit) for unit in valid_units}
        mask = data[GROUP_COL].astype(str).isin(valid)
        removed = int((~mask).sum())
        if removed:
            logger.data_issue("Observations outside the valid-unit mask removed", removed)
        return data.loc[mask]

    @staticmethod
    def build_pixel_table(data):
        """One row per pixel: group and its x,y coordinates"""
        missing = [column for column in (X_COL, Y_COL) if column not in data.columns]
        if missing:
            ErrorHandler.handle_validation_error("Pixel table", f"missing coordinate columns {missing}")
            return None
        return (data[[GROUP_COL, X_COL, Y_COL]]
                .drop_duplicates(subset=[GROUP_COL])
                .sort_values(GROUP_COL)
                .reset_index(drop=True))
