# Fiscal Printer Service - direct HTTP integration with fiscal printers
# Supports Caspos, Datecs, Omnitech, NBA, OneClick, AzSmart

import logging
import time
from typing import Any, Dict, Optional

import requests

from .errors import FiscalConfigurationError
from .fiscal_providers import ProviderSpec, get_provider_spec, missing_fields
from .models import FiscalConfig, FiscalProvider, Sale


logger = logging.getLogger(__name__)

OFFLINE_MESSAGE = 'Fiscal printer offline or unreachable'
NOT_INITIALIZED_MESSAGE = 'Fiscal printer not initialized. Call initialize() first.'


class FiscalPrinterService:
    """Translates kiosk sales into provider requests and normalizes replies.

    initialize() must succeed before anything is sent to the device.
    Print results are dicts shaped as
    {success, fiscal_number?, fiscal_document_id?, error?, response_data?}.
    """

    PRINT_TIMEOUT = 3  # seconds
    CHECK_TIMEOUT = 5

    def __init__(self):
        self.config: Optional[FiscalConfig] = None
        self.provider: Optional[FiscalProvider] = None
        self.spec: Optional[ProviderSpec] = None
        self.session = requests.Session()
        self.session.headers.update({'Accept': 'application/json'})

    def initialize(self, config: FiscalConfig):
        """Validate and adopt a fiscal config. Raises FiscalConfigurationError."""
        if isinstance(config, dict):
            config = FiscalConfig.from_dict(config)

        if not config.is_active:
            raise FiscalConfigurationError('Fiscal printer is not active')

        if not config.provider:
            raise FiscalConfigurationError('Fiscal printer provider not configured')

        if not config.ip_address or not config.port:
            raise FiscalConfigurationError('Fiscal printer IP address or port not configured')

        try:
            provider, spec = get_provider_spec(config.provider)
        except ValueError:
            raise FiscalConfigurationError(f"Unsupported fiscal printer provider: {config.provider}")

        missing = missing_fields(config, spec)
        if missing:
            raise FiscalConfigurationError(
                f"Fiscal printer provider {config.provider} is not properly configured "
                f"(missing {', '.join(missing)})"
            )

        self.config = config
        self.provider = provider
        self.spec = spec
        logger.info(f"Fiscal printer initialized: {spec.display_name} at {config.ip_address}:{config.port}")

    def reset(self):
        self.config = None
        self.provider = None
        self.spec = None

    def is_initialized(self) -> bool:
        return self.config is not None

    def get_config(self) -> Optional[FiscalConfig]:
        return self.config

    def get_provider_name(self) -> str:
        if not self.spec:
            return 'Unknown'
        return self.spec.display_name

    # Printing

    def format_sale_request(self, sale: Sale) -> Dict[str, Any]:
        if not self.spec:
            raise FiscalConfigurationError(NOT_INITIALIZED_MESSAGE)
        return self.spec.formatter(sale, self.config)

    def parse_response(self, data: Any) -> Dict[str, Any]:
        if not self.spec:
            return {'success': False, 'error': NOT_INITIALIZED_MESSAGE}
        if not isinstance(data, dict):
            return {'success': False, 'error': 'Unexpected fiscal printer response', 'response_data': data}
        return self.spec.parser(data)

    def print_sale_receipt(self, sale: Sale) -> Dict[str, Any]:
        """Send a sale to the fiscal printer. Never raises."""
        if not self.is_initialized():
            return {'success': False, 'error': NOT_INITIALIZED_MESSAGE}

        try:
            logger.info(f"Printing fiscal receipt via {self.get_provider_name()} (total {sale.total:.2f})")
            body = self.format_sale_request(sale)

            started = time.monotonic()
            response = self.session.post(
                self._endpoint('print'),
                json=body,
                headers=self._headers(),
                auth=self._auth(),
                timeout=self.PRINT_TIMEOUT
            )
            elapsed_ms = int((time.monotonic() - started) * 1000)
            logger.info(f"Fiscal printer responded {response.status_code} in {elapsed_ms}ms")

            response.raise_for_status()
            result = self.parse_response(response.json())
            if not result['success']:
                logger.warning(f"Fiscal printer rejected sale: {result.get('error')}")
            return result

        except Exception as e:
            logger.error(f"Fiscal printer error: {e}")
            return {'success': False, 'error': self.describe_error(e)}

    @staticmethod
    def describe_error(error: Exception) -> str:
        """Human readable message for a failed device call"""
        if isinstance(error, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
            return OFFLINE_MESSAGE
        if isinstance(error, requests.exceptions.HTTPError) and error.response is not None:
            return f"HTTP {error.response.status_code}"
        return str(error) or error.__class__.__name__

    # Diagnostics

    def test_connection(self) -> Dict[str, Any]:
        """Lightweight reachability check, independent of printing"""
        if not self.is_initialized():
            return {'success': False, 'provider': 'unknown', 'error': 'Fiscal printer not initialized'}

        started = time.monotonic()
        try:
            response = self.session.get(
                self._endpoint('test'),
                headers=self._headers(),
                auth=self._auth(),
                timeout=self.CHECK_TIMEOUT
            )
            response.raise_for_status()
        except Exception as e:
            logger.error(f"Fiscal printer connection test failed: {e}")
            return {
                'success': False,
                'provider': self.provider.value,
                'response_time_ms': int((time.monotonic() - started) * 1000),
                'error': self.describe_error(e),
            }

        return {
            'success': True,
            'provider': self.provider.value,
            'response_time_ms': int((time.monotonic() - started) * 1000),
        }

    def get_shift_status(self) -> Dict[str, Any]:
        """Shift state for providers that expose it. Fails open so sales continue."""
        if not self.is_initialized():
            return {'is_open': False}

        try:
            response = self.session.get(
                self._endpoint('shift-status'),
                headers=self._headers(),
                auth=self._auth(),
                timeout=self.CHECK_TIMEOUT
            )
            response.raise_for_status()
            data = response.json()
        except Exception as e:
            logger.error(f"Failed to get shift status: {e}")
            return {'is_open': True}

        return {
            'is_open': data.get('shift_open', True),
            'opened_at': data.get('opened_at'),
            'duration_hours': data.get('duration_hours'),
            'is_expired': data.get('is_expired', False),
        }

    # Helpers

    def _endpoint(self, action: str) -> str:
        base = f"http://{self.config.ip_address}:{self.config.port}"
        if not self.spec.uses_action_paths:
            return base
        return f"{base}/api/{action}"

    def _headers(self) -> Dict[str, str]:
        return {'Content-Type': self.spec.content_type}

    def _auth(self):
        if self.spec.basic_auth and self.config.operator_code and self.config.operator_password:
            return (self.config.operator_code, self.config.operator_password)
        return None
