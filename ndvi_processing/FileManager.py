import hashlib
import os
import re

import numpy as np
import pandas as pd

from .data_constants import DRAW_FILE_EXTENSION, FILE_FORMAT_EXTENSIONS
from .error_utils import ErrorHandler
from .logging_utils import logger

KEY_PREFIX = 'key_'
_HASHED_NAME = re.compile(r'.*_[0-9a-f]{8}')


class FileManager:
    """
    Handles all file I/O: format validation, summary tables and per-unit
    persistence of posterior draw matrices.

    Per-unit outputs are laid out as
        <output_dir>/<stage>/<kind>/<period>/<group>/doy_###.<ext>
    where stage is 'baseline' or 'year', kind is 'response' or 'derivative'
    and period is 'norm' for baselines or the calendar year.
    """

    def __init__(self, export_format='parquet', output_dir='ndvi_output', compress_output=True,
                 config=None, stats=None):
        """
        Initialize FileManager

        Args:
            export_format: Export format ('csv', 'parquet', 'feather', 'pickle')
            output_dir: Base output directory
            compress_output: Whether to compress tables and draw files
            config: ProcessingConfig class for accessing I/O settings
            stats: Statistics dictionary to track I/O operations
        """
        self.export_format = export_format.lower()
        self.base_output_dir = str(output_dir)
        self.compress_output = compress_output
        self.config = config
        self.stats = stats if stats is not None else {}
        self.stats.setdefault('io_operations', 0)
        self.stats.setdefault('bytes_written', 0)

        self.validate_export_format()

        self.output_dir = self.get_format_specific_output_dir()
        os.makedirs(self.output_dir, exist_ok=True)

        logger.init_component("FileManager", f"{self.export_format.upper()} format, output: {self.output_dir}")

    def validate_export_format(self):
        """Validate the export format and check for required dependencies"""
        valid_formats = list(FILE_FORMAT_EXTENSIONS)

        if self.export_format not in valid_formats:
            raise ValueError(f"Invalid export format: {self.export_format}. Valid formats: {valid_formats}")

        if self.export_format in ('parquet', 'feather'):
            try:
                import pyarrow  # noqa: F401
            except ImportError:
                raise ImportError(f"pyarrow is required for {self.export_format} export. Install with: pip install pyarrow")

    def get_output_file_extension(self):
        """Get the appropriate file extension for the export format"""
        return FileManager.extension_for(self.export_format)

    @staticmethod
    def extension_for(export_format):
        return FILE_FORMAT_EXTENSIONS.get(export_format, '.csv')

    def get_format_specific_output_dir(self):
        """Default output directory carries the format name; custom directories are used as-is"""
        if self.base_output_dir == 'ndvi_output':
            return f'ndvi_output_{self.export_format}'
        return self.base_output_dir

    # =============================================================================
    # SUMMARY TABLES
    # =============================================================================

    def table_path(self, name):
        return os.path.join(self.output_dir, f'{name}{self.get_output_file_extension()}')

    def save_dataframe_formatted(self, df, output_file, table_name):
        """Save DataFrame in the configured format, falling back to CSV if the format fails"""
        try:
            FileManager.write_table(df, output_file, self.export_format, self.compress_output)

            self.stats['io_operations'] += 1
            self.stats['bytes_written'] += self.get_file_size_bytes(output_file)

            size_mb = self.get_file_size_mb(output_file)
            logger.file_saved(table_name, size_mb, self.export_format)
            return output_file

        except (OSError, ValueError, ImportError) as e:
            logger.error(f"Error saving {table_name} in {self.export_format} format: {str(e)}")
            if self.export_format != 'csv':
                logger.warning("Falling back to CSV format...")
                csv_file = os.path.splitext(output_file)[0] + FILE_FORMAT_EXTENSIONS['csv']
                FileManager.write_table(df, csv_file, 'csv', False)
                self.stats['io_operations'] += 1
                return csv_file
            return None

    def save_table(self, df, name):
        """Save a named summary table under the output directory"""
        return self.save_dataframe_formatted(df, self.table_path(name), name)

    def load_dataframe(self, file_path):
        """Load a table, inferring its format from the file extension"""
        exists, actual_path = self.check_file_exists(file_path)
        if not exists:
            return ErrorHandler.handle_file_not_found("table", file_path)
        try:
            df = FileManager.read_table(actual_path)
        except (OSError, ValueError, ImportError) as e:
            return ErrorHandler.handle_data_loading_error("table", actual_path, e)
        logger.file_loaded(os.path.basename(actual_path), len(df), len(df.columns))
        return df

    @staticmethod
    def write_table(df, path, export_format, compress=False):
        """Write a table without logging; safe to call from worker processes"""
        if export_format == 'csv':
            writer = lambda target: df.to_csv(target, index=False)
        elif export_format == 'parquet':
            writer = lambda target: df.to_parquet(target, index=False, compression='snappy' if compress else None)
        elif export_format == 'feather':
            writer = lambda target: df.reset_index(drop=True).to_feather(target)
        elif export_format == 'pickle':
            writer = lambda target: df.to_pickle(target)
        else:
            raise ValueError(f"Unsupported export format: {export_format}")
        return FileManager.replace_atomically(path, writer)

    @staticmethod
    def replace_atomically(path, writer):
        """
        Call writer(temporary_path) on a hidden sibling of `path`, then rename it
        into place, so a killed worker never leaves a truncated file behind.
        The sibling keeps the extension, so format inference is unchanged.
        """
        directory = os.path.dirname(path) or '.'
        os.makedirs(directory, exist_ok=True)
        temporary = os.path.join(directory, f'.{os.getpid()}.{os.path.basename(path)}')
        try:
            writer(temporary)
            os.replace(temporary, path)
        except Exception:
            if os.path.exists(temporary):
                os.remove(temporary)
            raise
        return path

    @staticmethod
    def read_table(path):
        """Read a table written by write_table"""
        if path.endswith('.csv') or path.endswith('.csv.gz'):
            return pd.read_csv(path)
        if path.endswith('.parquet'):
            return pd.read_parquet(path)
        if path.endswith('.feather'):
            return pd.read_feather(path)
        if path.endswith('.pkl'):
            return pd.read_pickle(path)
        raise ValueError(f"Cannot infer table format from {path}")

    # =============================================================================
    # PER-UNIT PERSISTENCE
    # =============================================================================

    @staticmethod
    def unit_directory(output_dir, stage, kind, period, group=None):
        parts = [output_dir, stage, kind, str(period)]
        if group is not None:
            parts.append(FileManager.safe_name(group))
        return os.path.join(*parts)

    @staticmethod
    def unit_file_name(doy=None):
        return f'doy_{int(doy):03d}' if doy is not None else 'season'

    @staticmethod
    def unit_summary_path(output_dir, stage, kind, period, group, doy, extension):
        directory = FileManager.unit_directory(output_dir, stage, kind, period, group)
        return os.path.join(directory, FileManager.unit_file_name(doy) + extension)

    @staticmethod
    def unit_draw_path(output_dir, stage, kind, period, group, doy):
        directory = FileManager.unit_directory(output_dir, stage, kind, period, group)
        return os.path.join(directory, FileManager.unit_file_name(doy) + DRAW_FILE_EXTENSION)

    @staticmethod
    def safe_name(value):
        """
        Directory name for a group. Names that had to be rewritten get a short
        hash of the original appended, so 'a/b' and 'a_b' never share a directory.
        """
        text = str(value)
        cleaned = ''.join(c if c.isalnum() or c in '-_.' else '_' for c in text)
        if cleaned == text and not text.startswith('.') and not _HASHED_NAME.fullmatch(text):
            return cleaned
        return f"{cleaned}_{hashlib.sha1(text.encode('utf-8')).hexdigest()[:8]}"

    @staticmethod
    def write_draw_matrix(path, draws, keys: pd.DataFrame, dtype='float32', compress=True):
        """
        Persist a (n_draws, n_grid) draw matrix with the key columns of its grid.

        Key columns are stored as plain arrays named key_<column>; strings are
        stored as unicode arrays so files load without pickle.
        """
        if draws.shape[1] != len(keys):
            raise ValueError(f"Draw matrix has {draws.shape[1]} columns for {len(keys)} grid keys")
        arrays = {'draws': np.asarray(draws, dtype=dtype)}
        for column in keys.columns:
            values = keys[column].to_numpy()
            if values.dtype == object:
                values = values.astype(str)
            arrays[KEY_PREFIX + column] = values
        saver = np.savez_compressed if compress else np.savez
        return FileManager.replace_atomically(path, lambda target: saver(target, **arrays))

    @staticmethod
    def read_draw_matrix(path):
        """Load a draw matrix and its grid keys; returns (draws, keys DataFrame)"""
        with np.load(path, allow_pickle=False) as archive:
            draws = archive['draws'].astype(float)
            keys = pd.DataFrame({
                name[len(KEY_PREFIX):]: archive[name]
                for name in archive.files if name.startswith(KEY_PREFIX)
            })
        return draws, keys

    # =============================================================================
    # FILE CHECKS
    # =============================================================================

    def check_file_exists(self, file_path, check_compressed=True):
        """
        Check if a file exists, optionally checking for compressed versions.

        Returns:
            tuple: (exists, actual_path) - actual_path includes .gz if compressed version found
        """
        file_path = str(file_path)
        if os.path.exists(file_path):
            return True, file_path

        if check_compressed and os.path.exists(file_path + '.gz'):
            return True, file_path + '.gz'

        return False, file_path

    def validate_file_exists(self, file_path, file_type="file"):
        """Validate that a file exists and is non-empty"""
        exists, actual_path = self.check_file_exists(file_path)
        if not exists:
            logger.error(f"{file_type.capitalize()} not found: {file_path}", indent=2)
            return False
        if self.get_file_size_bytes(actual_path) == 0:
            logger.warning(f"{file_type.capitalize()} is empty: {file_path}", indent=2)
            return False
        return True

    def get_file_size_mb(self, file_path):
        return self.get_file_size_bytes(file_path) / (1024 * 1024)

    def get_file_size_bytes(self, file_path):
        exists, actual_path = self.check_file_exists(file_path)
        if not exists:
            return 0
        try:
            return os.path.getsize(actual_path)
        except OSError:
            return 0

    def get_file_stats(self):
        """Get current file I/O statistics"""
        return {
            'io_operations': self.stats.get('io_operations', 0),
            'bytes_written': self.stats.get('bytes_written', 0),
            'mb_written': self.stats.get('bytes_written', 0) / (1024 * 1024),
            'export_format': self.export_format,
            'compression_enabled': self.compress_output,
            'output_directory': self.output_dir,
        }
