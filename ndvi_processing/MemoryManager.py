import gc
import os

import pandas as pd
import psutil

from .error_utils import ErrorHandler
from .logging_utils import logger


class MemoryManager:
    """Handles system-wide memory monitoring, cleanup, and worker pool sizing"""

    def __init__(self, max_memory_gb=12, config=None, stats=None, file_manager=None):
        """
        Initialize MemoryManager

        Args:
            max_memory_gb: Maximum memory usage threshold in GB
            config: ProcessingConfig class for accessing thresholds
            stats: Statistics dictionary to track memory cleanups
            file_manager: FileManager instance for file operations
        """
        self.max_memory_gb = max_memory_gb
        self.config = config
        self.stats = stats if stats is not None else {'memory_cleanups': 0}
        self.stats.setdefault('memory_cleanups', 0)
        self.file_manager = file_manager

        # Get system information
        self.system_memory_gb = psutil.virtual_memory().total / (1024**3)
        self.initial_available_gb = psutil.virtual_memory().available / (1024**3)

        logger.init_component("MemoryManager", f"{self.system_memory_gb:.1f}GB total, {self.initial_available_gb:.1f}GB available")

    def check_memory_usage(self):
        """Check current memory usage and force cleanup if needed"""
        memory = psutil.virtual_memory()
        memory_gb = memory.used / (1024**3)
        available_gb = memory.available / (1024**3)

        if memory_gb > self.max_memory_gb:
            self.force_memory_cleanup()
            self.stats['memory_cleanups'] += 1

        if available_gb < self._threshold('low', 2.0):
            self.force_memory_cleanup()
            self.stats['memory_cleanups'] += 1

        logger.memory_info("Memory in use", memory_gb)
        return memory_gb

    def force_memory_cleanup(self):
        """Targeted memory cleanup based on actual memory pressure"""
        current_memory_gb = psutil.virtual_memory().available / (1024**3)

        if current_memory_gb < self._threshold('critical', 1.0):
            for _ in range(3):
                gc.collect()
        elif current_memory_gb < self._threshold('moderate', 4.0):
            gc.collect()
        # Plenty of memory: skip cleanup to avoid stalling the loop

    def _threshold(self, name, fallback):
        if self.config:
            return self.config.get_memory_threshold(name)
        return fallback

    def load_data_in_chunks(self, file_path, chunk_size=None):
        """Load a CSV observation table in chunks with memory monitoring"""
        try:
            if self.file_manager:
                exists, actual_file_path = self.file_manager.check_file_exists(file_path)
                if not exists:
                    return ErrorHandler.handle_file_not_found("observation", file_path)
                file_size_mb = self.file_manager.get_file_size_mb(actual_file_path)
            else:
                if not os.path.exists(file_path):
                    return ErrorHandler.handle_file_not_found("observation", file_path)
                actual_file_path = file_path
                file_size_mb = os.path.getsize(file_path) / (1024 * 1024)

            if chunk_size is None:
                chunk_size = self.get_optimal_chunk_size_for_file(file_size_mb)

            chunks = []
            total_rows = 0
            for i, chunk in enumerate(pd.read_csv(actual_file_path, chunksize=chunk_size)):
                chunks.append(chunk)
                total_rows += len(chunk)

                # Check memory every few chunks
                if i % 3 == 0:
                    self.check_memory_usage()

                # Don't hold too many chunks at once
                if len(chunks) > 30:
                    chunks = [pd.concat(chunks, ignore_index=True)]
                    self.force_memory_cleanup()

            df = pd.concat(chunks, ignore_index=True) if chunks else pd.DataFrame()
            del chunks
            self.force_memory_cleanup()
            logger.performance_info("Chunked load", f"{total_rows:,} rows in chunks of {chunk_size:,}")
            return df

        except (OSError, ValueError, pd.errors.ParserError) as e:
            return ErrorHandler.handle_data_loading_error("CSV", file_path, e)

    def get_optimal_chunk_size_for_file(self, file_size_mb):
        """Helper method to determine chunk size based on file size and free memory"""
        available_memory_gb = psutil.virtual_memory().available / (1024**3)

        if file_size_mb > 1000 or available_memory_gb < self._threshold('low', 2.0):
            return 50000
        elif file_size_mb > 200:
            return 100000
        else:
            return 250000

    # =============================================================================
    # WORKER POOL SIZING
    # =============================================================================

    def estimate_unit_memory_gb(self, n_draws, n_grid, n_coefficients, n_observations):
        """
        Rough peak footprint of one fit unit in GB.

        Counts the design matrix, the coefficient covariance and its root, the
        coefficient draws, the evaluation bases (response and two shifted
        derivative bases) and the two draw matrices, scaled by an overhead
        factor for pandas copies and interpreter state.
        """
        doubles = (
            n_observations * n_coefficients
            + 2 * n_coefficients * n_coefficients
            + n_draws * n_coefficients
            + 3 * n_grid * n_coefficients
            + 2 * n_draws * n_grid
        )
        overhead = self._threshold('unit_overhead_factor', 3.0)
        return doubles * 8 * overhead / (1024**3)

    def determine_pool_size(self, requested_workers, unit_memory_gb):
        """
        Reduce the requested worker count until the pool fits in memory.

        Args:
            requested_workers (int): Configured worker pool size
            unit_memory_gb (float): Estimated peak footprint of one unit

        Returns:
            int: Worker count, at least the configured minimum
        """
        if 'adaptive_decisions' not in self.stats:
            self.stats['adaptive_decisions'] = []

        if self.config:
            min_workers = self.config.get_parallel_setting('min_workers')
            max_workers = self.config.get_parallel_setting('max_workers')
            budget_fraction = self.config.get_memory_threshold('pool_budget_fraction')
        else:
            min_workers, max_workers, budget_fraction = 1, 10, 0.7

        cpu_count = psutil.cpu_count(logical=True) or 1
        workers = max(min_workers, min(int(requested_workers), max_workers, cpu_count))

        available_gb = psutil.virtual_memory().available / (1024**3)
        budget_gb = available_gb * budget_fraction
        if unit_memory_gb > 0:
            affordable = int(budget_gb // unit_memory_gb)
            if affordable < workers:
                reason = (f"{available_gb:.1f}GB available, {unit_memory_gb * 1024:.0f}MB per unit "
                          f"- {requested_workers} requested")
                workers = max(min_workers, affordable)
                self.stats['adaptive_decisions'].append(f"pool_size={workers} ({reason})")
                logger.adaptive_decision(f"Worker pool reduced to {workers}", reason)
                return workers

        self.stats['adaptive_decisions'].append(
            f"pool_size={workers} (memory sufficient: {available_gb:.1f}GB available)")
        return workers

    def get_memory_status(self):
        """Get current memory status information"""
        memory = psutil.virtual_memory()
        return {
            'total_gb': memory.total / (1024**3),
            'available_gb': memory.available / (1024**3),
            'used_gb': memory.used / (1024**3),
            'percent_used': memory.percent,
            'cleanups_performed': self.stats.get('memory_cleanups', 0),
        }
