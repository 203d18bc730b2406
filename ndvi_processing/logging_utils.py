"""
Console reporting for the NDVI drought monitoring pipeline.

All components print through the module-level `logger`. Stage headers and
errors always appear; per-unit lines (one per fitted or skipped DOY window)
only appear at VERBOSE, since a full run fits hundreds of thousands of units.
"""

from enum import Enum
from typing import Optional


class LogLevel(Enum):
    """Verbosity of console output"""
    SILENT = 0      # critical errors and stage headers only
    MINIMAL = 1     # component setup, stage summaries
    STANDARD = 2    # warnings, data issues, informational lines
    VERBOSE = 3     # one line per fit unit, saved tables, pool decisions
    DEBUG = 4       # memory readings, loaded tables, chunked reads


class NDVILogger:
    """
    Level-filtered, emoji-prefixed console logger.

    Stages (Fitting Baseline Norms, Fitting Year Predictions, ...) are opened
    with phase_start and closed with phase_complete; a stage that is already
    open is not announced twice.
    """

    def __init__(self, level: LogLevel = LogLevel.MINIMAL):
        self.level = level
        self.open_stage = None

    def set_level(self, level: LogLevel):
        self.level = level

    def _enabled(self, level: LogLevel) -> bool:
        return self.level.value >= level.value

    def _emit(self, level: Optional[LogLevel], emoji: str, message: str, indent: int = 0):
        # level None: always printed
        if level is None or self._enabled(level):
            print(f"{'  ' * indent}{emoji} {message}")

    # =============================================================================
    # STAGES
    # =============================================================================

    def phase_start(self, phase_name: str):
        """Open a pipeline stage"""
        if self.open_stage == phase_name:
            return
        self.open_stage = phase_name
        self._emit(None, "🔧", f"{phase_name}...")

    def phase_complete(self, phase_name: str, details: Optional[str] = None):
        """Close the open stage; ignored for a stage that was never opened"""
        if self.open_stage != phase_name:
            return
        self.open_stage = None
        suffix = f" - {details}" if details else ""
        self._emit(None, "✅", f"{phase_name} complete{suffix}")

    def loop_summary(self, stage: str, total: int, fitted: int, skipped: int, failed: int):
        """Unit counts of one fit stage"""
        if not self._enabled(LogLevel.MINIMAL):
            return
        print(f"\n📈 {stage}: {total} units")
        for label, count in (("fitted", fitted), ("skipped", skipped), ("failed", failed)):
            print(f"  • {label}: {count}")

    def summary(self, title: str, stats: dict):
        if not self._enabled(LogLevel.MINIMAL):
            return
        print(f"\n📊 {title}:")
        for name, value in stats.items():
            print(f"  • {name}: {value}")

    # =============================================================================
    # SETUP
    # =============================================================================

    def init_component(self, component: str, details: str = ""):
        self._emit(LogLevel.MINIMAL, "📋", f"{component} ready" + (f" ({details})" if details else ""))

    def init_system(self, memory_total: float, memory_available: float, cpu_count: int = None):
        cpus = f", {cpu_count} CPUs" if cpu_count else ""
        self._emit(LogLevel.MINIMAL, "💻",
                   f"Machine: {memory_available:.1f} of {memory_total:.1f}GB memory free{cpus}")

    # =============================================================================
    # FIT UNITS
    # =============================================================================

    def processing_start(self, operation: str, count: int = None):
        units = f" ({count:,} units)" if count else ""
        self._emit(LogLevel.STANDARD, "🚀", f"{operation}{units}")

    def processing_unit(self, unit: str, current: int, total: int, details: str = ""):
        """One line per finished fit unit"""
        status = f": {details}" if details else ""
        self._emit(LogLevel.VERBOSE, f"[{current}/{total}]", f"{unit}{status}", indent=1)

    def skip_unit(self, unit: str, reason: str, indent: int = 1):
        self._emit(LogLevel.VERBOSE, "⏭️", f"{unit} skipped: {reason}", indent)

    def processing_complete(self, operation: str, success_count: int, total_count: int = None):
        done = f"{success_count}/{total_count}" if total_count else f"{success_count}"
        self._emit(LogLevel.MINIMAL, "🎉", f"{operation}: {done} done")

    # =============================================================================
    # TABLES
    # =============================================================================

    def file_saved(self, filename: str, size_mb: float, format_type: str):
        self._emit(LogLevel.VERBOSE, "💾", f"{filename} written ({format_type.upper()}, {size_mb:.1f}MB)", 1)

    def file_loaded(self, filename: str, rows: int, columns: int):
        self._emit(LogLevel.DEBUG, "📂", f"{filename} read ({rows:,} rows x {columns} columns)", 1)

    # =============================================================================
    # RESOURCES
    # =============================================================================

    def memory_info(self, operation: str, memory_gb: float, indent: int = 1):
        self._emit(LogLevel.DEBUG, "🧠", f"{operation}: {memory_gb:.2f}GB", indent)

    def performance_info(self, operation: str, details: str, indent: int = 1):
        self._emit(LogLevel.DEBUG, "⚡", f"{operation}: {details}", indent)

    def adaptive_decision(self, decision: str, reason: str, indent: int = 1):
        self._emit(LogLevel.VERBOSE, "🎯", f"{decision}; {reason}", indent)

    # =============================================================================
    # MESSAGES
    # =============================================================================

    def info(self, message: str, indent: int = 1):
        self._emit(LogLevel.STANDARD, "ℹ️", message, indent)

    def warning(self, message: str, indent: int = 1):
        self._emit(LogLevel.STANDARD, "⚠️", message, indent)

    def data_issue(self, issue: str, count: int = None, indent: int = 1):
        """Rows dropped or units lost to data problems"""
        self._emit(LogLevel.STANDARD, "⚠️", f"{issue}: {count:,}" if count else issue, indent)

    def error(self, message: str, indent: int = 1):
        self._emit(None, "❌", message, indent)

    def critical_error(self, message: str):
        self._emit(None, "💥", f"CRITICAL: {message}")


logger = NDVILogger(LogLevel.MINIMAL)


def set_log_level(level: LogLevel):
    logger.set_level(level)


class LogPhase:
    """`with LogPhase("Detecting Significant Events"):` opens and closes a stage"""

    def __init__(self, phase_name: str, completion_details: str = None):
        self.phase_name = phase_name
        self.completion_details = completion_details

    def __enter__(self):
        logger.phase_start(self.phase_name)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            logger.error(f"{self.phase_name} stopped: {exc_val}")
            logger.open_stage = None
            return False
        logger.phase_complete(self.phase_name, self.completion_details)
        return False
