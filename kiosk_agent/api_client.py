# API Client - REST client for the Kiosk Sync Agent
# Bearer auth, exponential backoff with jitter, typed backend calls

import logging
import random
import time
from typing import Any, Dict, List, Optional

import requests
from requests.auth import AuthBase

from .errors import ApiError
from .models import Delta, QueuedSale, Sale


logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 429}
MAX_RETRY_DELAY_MS = 30000
JITTER_MS = 1000


class BearerAuth(AuthBase):
    """Attaches the client's current token to every outgoing request"""

    def __init__(self, client: "ApiClient"):
        self.client = client

    def __call__(self, request):
        request.headers['Authorization'] = f'Bearer {self.client.token}'
        return request


class ApiClient:
    """REST API client for the kiosk backend"""

    HEARTBEAT_TIMEOUT = 5  # seconds

    def __init__(self, base_url: str, token: str = '', timeout: int = 30,
                 retry_attempts: int = 3, retry_delay_ms: int = 1000,
                 api_prefix: str = '/api/kiosk'):
        self.base_url = base_url.rstrip('/')
        prefix = (api_prefix or '').rstrip('/')
        self.api_prefix = prefix if not prefix or prefix.startswith('/') else '/' + prefix
        self.token = token
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.retry_delay_ms = retry_delay_ms

        self.session = requests.Session()
        self.session.auth = BearerAuth(self)
        self.session.headers.update({
            'Content-Type': 'application/json',
            'Accept': 'application/json',
            'User-Agent': 'Kiosk-Sync-Agent/1.0'
        })
        self.session.hooks['response'].append(self._log_response)

    def set_token(self, token: str):
        """Replace the bearer token; takes effect on the next request"""
        self.token = token

    def _url(self, path: str) -> str:
        if not path.startswith('/'):
            path = '/' + path
        return f"{self.base_url}{self.api_prefix}{path}"

    @staticmethod
    def _log_response(response, *args, **kwargs):
        logger.debug(f"[API] {response.request.method} {response.url} - {response.status_code}")

    @staticmethod
    def should_retry(status_code: Optional[int]) -> bool:
        """None means no response was received."""
        if status_code is None:
            return True
        if status_code in RETRYABLE_STATUS_CODES:
            return True
        return 500 <= status_code < 600

    def calculate_retry_delay(self, attempt: int) -> float:
        """Delay in milliseconds before retry number `attempt` (1-based)"""
        exponential = self.retry_delay_ms * (2 ** (attempt - 1))
        jitter = random.uniform(0, JITTER_MS)
        return min(exponential + jitter, MAX_RETRY_DELAY_MS)

    def request(self, method: str, path: str, body: Any = None,
                params: Optional[Dict] = None, timeout: Optional[float] = None,
                retry: bool = True) -> Any:
        """Send a request, retrying recoverable failures. Returns decoded JSON."""
        url = self._url(path)
        method = method.upper()
        attempt = 0

        while True:
            logger.debug(f"[API] {method} {url}")
            try:
                response = self.session.request(
                    method, url,
                    json=body,
                    params=params,
                    timeout=timeout or self.timeout
                )
            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
                error = ApiError(str(e) or e.__class__.__name__)
                cause = e
            else:
                if response.status_code < 400:
                    return self._decode(response)
                error = ApiError(
                    f"HTTP {response.status_code}",
                    status_code=response.status_code,
                    response_body=response.text
                )
                cause = None

            if retry and attempt < self.retry_attempts and self.should_retry(error.status_code):
                attempt += 1
                delay = self.calculate_retry_delay(attempt)
                logger.warning(
                    f"[API] Retrying {method} {path} (attempt {attempt}/{self.retry_attempts}) "
                    f"after {delay:.0f}ms - {error}"
                )
                time.sleep(delay / 1000.0)
                continue

            if attempt:
                logger.error(f"[API] {method} {path} failed after {attempt} retries: {error}")
            else:
                logger.error(f"[API] {method} {path} failed: {error}")
            raise error from cause

    @staticmethod
    def _decode(response) -> Any:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {'raw': response.text}

    # Generic verbs

    def get(self, path: str, params: Optional[Dict] = None, **kwargs) -> Any:
        return self.request('GET', path, params=params, **kwargs)

    def post(self, path: str, body: Any = None, **kwargs) -> Any:
        return self.request('POST', path, body=body, **kwargs)

    def put(self, path: str, body: Any = None, **kwargs) -> Any:
        return self.request('PUT', path, body=body, **kwargs)

    def delete(self, path: str, **kwargs) -> Any:
        return self.request('DELETE', path, **kwargs)

    # Backend calls

    def register(self, device_name: str, version: str, platform: str = 'windows') -> Dict:
        """Register this kiosk with the backend"""
        return self.post('/register', {
            'device_name': device_name,
            'version': version,
            'platform': platform,
        })

    def heartbeat(self) -> bool:
        """Check if backend is reachable. Never raises."""
        try:
            self.request('GET', '/heartbeat', timeout=self.HEARTBEAT_TIMEOUT, retry=False)
            return True
        except Exception as e:
            logger.debug(f"Heartbeat failed: {e}")
            return False

    def get_products_delta(self, since: Optional[str] = None) -> Delta:
        params = {'since': since} if since else {}
        return Delta.from_response(self.get('/sync/products/delta', params=params), 'products')

    def get_customers_delta(self, since: Optional[str] = None) -> Delta:
        params = {'since': since} if since else {}
        return Delta.from_response(self.get('/sync/customers/delta', params=params), 'customers')

    def get_users(self) -> Dict:
        return self.get('/sync/users')

    def get_fiscal_config(self) -> Dict:
        return self.get('/fiscal-config')

    def upload_sales(self, sales: List[QueuedSale]) -> Dict:
        """Batch upload. Response: {success, results: [...], failed: [...]}"""
        return self.post('/sales/upload', {'sales': [s.to_upload_payload() for s in sales]})

    def create_sale(self, sale: Sale) -> Dict:
        return self.post('/sale', sale.to_dict())

    def get_sale_status(self, local_id: int) -> Dict:
        return self.get(f'/sales/status/{local_id}')

    def search_products(self, query: str) -> Dict:
        return self.get('/products/search', params={'q': query})

    def search_customers(self, query: str) -> Dict:
        return self.get('/customers/search', params={'q': query})

    def disconnect(self) -> Dict:
        return self.post('/disconnect')

    def get_status(self) -> Dict:
        """Get client status"""
        return {
            'base_url': self.base_url,
            'api_prefix': self.api_prefix,
            'retry_attempts': self.retry_attempts,
        }


# Stub implementation for running without a backend
class StubApiClient:
    """Stub client for running the agent without a server"""

    def __init__(self, *args, **kwargs):
        self.token = kwargs.get('token', '')
        self.uploaded = 0

    def set_token(self, token: str):
        self.token = token

    def heartbeat(self) -> bool:
        return True

    def register(self, device_name: str, version: str, platform: str = 'windows') -> Dict:
        return {'success': True, 'token': self.token or 'stub-token'}

    def get_products_delta(self, since: Optional[str] = None) -> Delta:
        return Delta(sync_timestamp=since)

    def get_customers_delta(self, since: Optional[str] = None) -> Delta:
        return Delta(sync_timestamp=since)

    def get_users(self) -> Dict:
        return {'success': True, 'users': []}

    def get_fiscal_config(self) -> Dict:
        return {'success': False, 'config': None}

    def upload_sales(self, sales: List[QueuedSale]) -> Dict:
        results = []
        for sale in sales:
            self.uploaded += 1
            logger.info(f"[STUB] Uploaded sale {sale.local_id}")
            results.append({'local_id': sale.local_id, 'server_sale_id': self.uploaded})
        return {'success': True, 'results': results, 'failed': []}

    def disconnect(self) -> Dict:
        return {'success': True}

    def get_status(self) -> Dict:
        return {'base_url': None, 'stub': True}
