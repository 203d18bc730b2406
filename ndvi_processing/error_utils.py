"""
Error handling utilities for standardized error reporting.

Expected outcomes such as a unit failing its coverage gate are not errors and
never pass through here; these helpers cover genuine failures (I/O, bad input
tables, numerical breakdowns) and always log before returning a sentinel.
"""

from .logging_utils import logger


class ErrorHandler:
    """Standardized error handling utilities: log, then return a sentinel"""

    @staticmethod
    def handle_file_not_found(file_type, file_path, indent=2):
        """
        Handle file not found errors with consistent formatting.

        Args:
            file_type (str): Type of file (e.g., 'observation', 'valid-unit mask')
            file_path (str): Path to the file that was not found
            indent (int): Indentation level (default: 2)

        Returns:
            None: Always returns None for file not found errors
        """
        logger.error(f"{file_type.capitalize()} file not found: {file_path}", indent=indent)
        return None

    @staticmethod
    def handle_processing_error(operation, error, unit=None, indent=2, return_value=False):
        """
        Handle processing errors with consistent formatting.

        Args:
            operation (str): Description of the operation that failed
            error (Exception): The exception that occurred
            unit (str, optional): Fit unit identifier if relevant
            indent (int): Indentation level (default: 2)
            return_value: Value to return (default: False)

        Returns:
            The specified return_value
        """
        unit_info = f" for {unit}" if unit else ""
        logger.error(f"{operation} failed{unit_info}: {str(error)}", indent=indent)
        return return_value

    @staticmethod
    def handle_validation_error(validation_type, reason, unit=None, indent=2):
        """
        Handle validation errors with consistent formatting.

        Args:
            validation_type (str): Type of validation that failed
            reason (str): Reason for validation failure
            unit (str, optional): Fit unit or table identifier if relevant
            indent (int): Indentation level (default: 2)

        Returns:
            dict: Error result dictionary with consistent structure
        """
        unit_info = f" for {unit}" if unit else ""
        logger.error(f"{validation_type} validation failed{unit_info}: {reason}", indent=indent)
        return {'valid': False, 'reason': reason, 'error': True}

    @staticmethod
    def handle_data_loading_error(data_type, file_path, error, indent=2):
        """
        Handle data loading errors with consistent formatting.

        Returns:
            None: Always returns None for data loading errors
        """
        logger.error(f"Error loading {data_type} data from {file_path}: {str(error)}", indent=indent)
        return None

    @staticmethod
    def handle_io_error(operation, file_path, error, indent=2):
        """
        Handle I/O errors with consistent formatting.

        Args:
            operation (str): Description of the I/O operation that failed
            file_path (str): Path to the file involved in the operation
            error (Exception): The exception that occurred
            indent (int): Indentation level (default: 2)

        Returns:
            False: Always returns False for I/O errors
        """
        logger.error(f"{operation} failed for {file_path}: {str(error)}", indent=indent)
        return False

    @staticmethod
    def handle_fit_error(unit, error, indent=2, return_value=None):
        """
        Handle numerical failures inside a model fit or posterior simulation.

        The unit is abandoned without affecting any other unit.

        Args:
            unit (str): Fit unit identifier, e.g. 'group=crop doy=123'
            error (Exception): The exception that occurred
            indent (int): Indentation level (default: 2)
            return_value: Value to return (default: None)

        Returns:
            The specified return_value
        """
        logger.warning(f"Model fit abandoned for {unit}: {str(error)}", indent=indent)
        return return_value
