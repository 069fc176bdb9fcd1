"""
Error Handling and Logging Infrastructure for ERA5 Forcing Preprocessing

This module provides standardized logging and error handling for the forcing
pipeline. It includes run progress tracking, error context management and the
exception taxonomy used by every derivation, aggregation and resampling stage.
"""

import logging
import sys
import json
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional, List
from contextlib import contextmanager


LOGGER_NAME = 'era5_forcing'


def setup_forcing_logging(log_level: str = "INFO",
                          log_file: Optional[str] = None,
                          console_output: bool = True) -> logging.Logger:
    """
    Setup standardized logging for forcing preprocessing.

    Args:
        log_level: Logging level ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')
        log_file: Optional path to log file
        console_output: Whether to output logs to console

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level.upper()))

    # Clear any existing handlers
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(getattr(logging, log_level.upper()))
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(logging.DEBUG)  # File logs capture everything
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def get_component_logger(component: str) -> logging.Logger:
    """Child logger of the pipeline logger for one class or module."""
    return logging.getLogger(f"{LOGGER_NAME}.{component}")


class ProcessingLogger:
    """
    Specialized logger for tracking forcing-processing progress.

    Records the start and end of a run, every file produced, and every
    error or warning together with its context, keeping simple counters
    for the end-of-run summary.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        """
        Initialize processing logger.

        Args:
            logger: Logger instance to use. If None, creates default logger.
        """
        self.logger = logger or setup_forcing_logging()
        self.processing_start_time = None
        self.current_workflow = None
        self.processing_stats = {
            'files_processed': 0,
            'units_failed': 0,
            'errors_encountered': 0,
            'warnings_issued': 0
        }

    def log_processing_start(self, workflow_type: str, parameters: Dict[str, Any]) -> None:
        """
        Log start of processing workflow.

        Args:
            workflow_type: Type of workflow being started
            parameters: Processing parameters dictionary
        """
        self.processing_start_time = datetime.now()
        self.current_workflow = workflow_type

        self.logger.info("=" * 60)
        self.logger.info(f"Starting ERA5 forcing {workflow_type} processing")
        self.logger.info(f"Start time: {self.processing_start_time.isoformat()}")
        self.logger.info("Processing parameters:")

        for param_name, param_value in parameters.items():
            self.logger.info(f"  {param_name}: {param_value}")

        self.logger.info("=" * 60)

    def log_file_processing(self, input_files: List[str], output_file: str, processing_time: float) -> None:
        """
        Log successful production of one output file.

        Args:
            input_files: Paths of the files the output was derived from
            output_file: Path to output file
            processing_time: Processing time in seconds
        """
        self.processing_stats['files_processed'] += 1

        self.logger.info(f"Processed file: {Path(output_file).name}")
        for input_file in input_files:
            self.logger.debug(f"  Input: {input_file}")
        self.logger.info(f"  Processing time: {processing_time:.2f} seconds")

    def log_unit_failure(self, variable_id: str, year: int, error: Exception) -> None:
        """Log a failed (variable, year) unit without stopping the batch."""
        self.processing_stats['units_failed'] += 1
        self.log_processing_error(
            error_type=type(error).__name__,
            error_details=str(error),
            context={'variable': variable_id, 'year': year}
        )

    def log_processing_error(self, error_type: str, error_details: str, context: Optional[Dict] = None) -> None:
        """
        Log processing errors with context.

        Args:
            error_type: Type/category of error
            error_details: Detailed error description
            context: Optional context dictionary with additional information
        """
        self.processing_stats['errors_encountered'] += 1

        self.logger.error(f"Processing error ({error_type}): {error_details}")

        if context:
            self.logger.error("Error context:")
            for key, value in context.items():
                self.logger.error(f"  {key}: {value}")

    def log_processing_warning(self, warning_message: str, context: Optional[Dict] = None) -> None:
        """
        Log processing warnings with context.

        Args:
            warning_message: Warning message
            context: Optional context dictionary
        """
        self.processing_stats['warnings_issued'] += 1

        self.logger.warning(f"Processing warning: {warning_message}")

        if context:
            self.logger.warning("Warning context:")
            for key, value in context.items():
                self.logger.warning(f"  {key}: {value}")

    def log_processing_complete(self, summary_stats: Optional[Dict] = None) -> None:
        """
        Log completion of processing with summary statistics.

        Args:
            summary_stats: Optional additional statistics dictionary
        """
        if self.processing_start_time:
            processing_duration = datetime.now() - self.processing_start_time
            self.logger.info("=" * 60)
            self.logger.info(f"ERA5 forcing {self.current_workflow} processing completed")
            self.logger.info(f"Total processing time: {processing_duration}")
        else:
            self.logger.info("Processing completed")

        self.logger.info("Processing statistics:")
        for stat_name, stat_value in self.processing_stats.items():
            self.logger.info(f"  {stat_name}: {stat_value}")

        if summary_stats:
            self.logger.info("Additional statistics:")
            for stat_name, stat_value in summary_stats.items():
                self.logger.info(f"  {stat_name}: {stat_value}")

        self.logger.info("=" * 60)

    def get_processing_summary(self) -> Dict[str, Any]:
        """
        Get summary of current processing session.

        Returns:
            Dictionary with processing summary information
        """
        summary = {
            'workflow_type': self.current_workflow,
            'start_time': self.processing_start_time.isoformat() if self.processing_start_time else None,
            'current_time': datetime.now().isoformat(),
            'processing_stats': self.processing_stats.copy()
        }

        if self.processing_start_time:
            duration = datetime.now() - self.processing_start_time
            summary['elapsed_time'] = str(duration)

        return summary


class ForcingError(Exception):
    """Base exception class for forcing preprocessing errors"""

    def __init__(self, message: str, context: Optional[Dict] = None):
        """
        Initialize forcing error.

        Args:
            message: Error message
            context: Optional context dictionary with additional information
        """
        super().__init__(message)
        self.context = context or {}
        self.timestamp = datetime.now()

    def get_full_error_info(self) -> Dict[str, Any]:
        """Get complete error information including context"""
        return {
            'error_type': self.__class__.__name__,
            'message': str(self),
            'timestamp': self.timestamp.isoformat(),
            'context': self.context
        }


class ConfigurationError(ForcingError):
    """Error in configuration or setup"""
    pass


class DataProcessingError(ForcingError):
    """Error in data processing"""
    pass


class NetCDFError(ForcingError):
    """Error in NetCDF file operations"""
    pass


class AxisMismatchError(DataProcessingError):
    """Input fields are not co-registered on identical time/lat/lon axes"""
    pass


class NumericDomainError(DataProcessingError):
    """Psychrometric inputs fall outside the physically valid range"""
    pass


class IncompleteDayError(DataProcessingError):
    """One or more calendar days lack the full set of hourly samples"""

    def __init__(self, message: str, days: Optional[List[str]] = None, context: Optional[Dict] = None):
        super().__init__(message, context)
        self.days = list(days or [])


class UnsupportedVariableError(ConfigurationError):
    """No variable policy exists for the requested variable"""
    pass


class RegridError(DataProcessingError):
    """Source and target grids are incompatible"""
    pass


class StaleWeightsError(RegridError):
    """Cached remap weights were generated for a different grid pair"""
    pass


class PairingError(DataProcessingError):
    """Missing or mismatched companion series for range derivation"""
    pass


@contextmanager
def error_context(operation_name: str, **context_info):
    """
    Context manager mapping failures inside an operation onto the forcing
    error hierarchy.

    Forcing errors keep their type and gain the operation context; any
    other exception is re-raised as NetCDFError (I/O and lookup failures),
    ConfigurationError (config operations) or DataProcessingError.

    Args:
        operation_name: Name of operation being performed
        **context_info: Additional context information

    Example:
        with error_context("processing daily tas", year=2022):
            aggregator.aggregate(field)
    """
    start_time = datetime.now()

    try:
        yield
    except Exception as e:
        error_context_dict = {
            'operation': operation_name,
            'duration': str(datetime.now() - start_time),
            **context_info
        }

        # Re-raise as forcing error if not already one
        if not isinstance(e, ForcingError):
            if "netcdf" in operation_name.lower() or isinstance(e, (OSError, KeyError)):
                raise NetCDFError(str(e), error_context_dict) from e
            elif "config" in operation_name.lower():
                raise ConfigurationError(str(e), error_context_dict) from e
            else:
                raise DataProcessingError(str(e), error_context_dict) from e
        else:
            e.context.update(error_context_dict)
            raise


def create_processing_session_log(output_dir: str, workflow_type: str) -> str:
    """
    Create a new processing session log file path.

    Args:
        output_dir: Directory for log files
        workflow_type: Type of workflow being logged

    Returns:
        Path to created log file
    """
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_filename = f"era5_forcing_{workflow_type}_{timestamp}.log"
    log_path = Path(output_dir) / "logs" / log_filename

    log_path.parent.mkdir(parents=True, exist_ok=True)

    return str(log_path)


def save_processing_session_summary(summary: Dict[str, Any], output_path: str) -> None:
    """
    Save processing session summary to JSON file.

    Args:
        summary: Processing summary dictionary
        output_path: Path for output summary file
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with open(output_path, 'w') as f:
        json.dump(summary, f, indent=2, default=str)

    logging.getLogger(LOGGER_NAME).info(f"Processing summary saved: {output_path}")
