# Exceptions raised by the Kiosk Sync Agent

from typing import Any, Optional


class KioskAgentError(Exception):
    """Base class for agent errors"""


class ApiError(KioskAgentError):
    """Backend request failed.

    status_code is None when no response was received at all
    (connection refused, DNS failure, timeout).
    """

    def __init__(self, message: str, status_code: Optional[int] = None,
                 response_body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body

    @property
    def is_network_error(self) -> bool:
        return self.status_code is None


class OfflineError(KioskAgentError):
    """Manual sync requested while the backend is unreachable"""


class FiscalConfigurationError(KioskAgentError):
    """Fiscal printer config is inactive or incomplete"""
