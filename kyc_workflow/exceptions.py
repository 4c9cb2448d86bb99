"""
KYC workflow exceptions
"""


class KYCWorkflowException(Exception):
    """Base exception for KYC workflow operations"""

    def __init__(self, message: str, error_code: str = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class InfrastructureError(KYCWorkflowException):
    """Raised when an external dependency cannot be reached.

    This is the only failure a verification check lets escape; the
    orchestrator turns it into a non-recoverable workflow error.
    """

    def __init__(self, message: str, service: str = None, **kwargs):
        kwargs.setdefault("error_code", "INFRASTRUCTURE_ERROR")
        super().__init__(message, **kwargs)
        self.service = service


class ProviderResponseError(KYCWorkflowException):
    """Raised when a provider answered but the answer is unusable"""

    def __init__(self, message: str, raw_output: str = None, **kwargs):
        kwargs.setdefault("error_code", "PROVIDER_RESPONSE_ERROR")
        super().__init__(message, **kwargs)
        self.raw_output = raw_output


class UnsupportedFileError(KYCWorkflowException):
    """Raised when an uploaded file cannot be converted to an image"""

    def __init__(self, message: str, extension: str = None, **kwargs):
        kwargs.setdefault("error_code", "UNSUPPORTED_FILE")
        super().__init__(message, **kwargs)
        self.extension = extension


# Failures that must propagate out of a verification check untouched
INFRASTRUCTURE_ERRORS = (InfrastructureError, ConnectionError)
