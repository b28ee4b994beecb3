"""Custom exception classes for the agile battery manager.

Collaborator failures are raised as these types at the I/O boundary so the
plan manager can tell transient data problems apart from configuration errors.
"""


class AgileManagerException(Exception):
    """Base exception for all agile manager components."""
    pass


class PriceDataUnavailableError(AgileManagerException):
    """Raised when tariff prices cannot be retrieved for the requested window."""

    def __init__(self, product=None, message=None):
        if message is None:
            if product:
                message = f"No price data available for {product}"
            else:
                message = "Price data is not available"
        super().__init__(message)
        self.product = product


class ForecastUnavailableError(AgileManagerException):
    """Raised when the solar forecast provider returns no usable data."""
    pass


class InverterCommunicationError(AgileManagerException):
    """Raised when a read or write against the inverter API fails."""

    def __init__(self, operation=None, message=None):
        if message is None:
            if operation:
                message = f"Inverter call failed: {operation}"
            else:
                message = "Inverter communication error"
        super().__init__(message)
        self.operation = operation


class SystemConfigurationError(AgileManagerException):
    """Raised when there are configuration or system setup issues."""

    def __init__(self, component=None, message=None):
        if message is None:
            if component:
                message = f"Configuration error in {component}"
            else:
                message = "System configuration error"
        super().__init__(message)
        self.component = component


class ConfigValidationError(AgileManagerException):
    """Raised when a config save is rejected. Nothing is persisted."""

    def __init__(self, field=None, message=None):
        if message is None:
            message = f"Invalid value for {field}" if field else "Invalid configuration"
        super().__init__(message)
        self.field = field
