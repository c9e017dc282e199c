"""
Nextcloud user provisioning API client.

This module talks to the Nextcloud OCS v1 user provisioning API
(``/ocs/v1.php/cloud/users``) over ``http.client`` and exposes the narrow set of
operations the provisioning run needs: list users, look up a user's email,
create a user and set a user's display name.
"""

import ssl
import base64
import logging
from dataclasses import dataclass
from typing import Dict, List, Any, Optional, Tuple
from urllib.parse import quote, urlencode
from http.client import HTTPSConnection, HTTPException, HTTPResponse, RemoteDisconnected
import xml.etree.ElementTree as ET

from nc_provision.config import ConfigError
from nc_provision.retry import (
    RateLimitedError, MaxRetriesExceeded, retry_call, is_rate_limited, create_retry_callback
)

logger = logging.getLogger(__name__)

# Raised when the server has dropped an idle keep-alive socket
STALE_CONNECTION_ERRORS = (RemoteDisconnected, BrokenPipeError, ConnectionResetError)


class DirectoryServiceError(Exception):
    """Base exception for Nextcloud API errors."""
    pass


class DirectoryConnectionError(DirectoryServiceError):
    """Raised when the server cannot be reached or rejects the credentials."""
    pass


class DirectoryProtocolError(DirectoryServiceError):
    """Raised when the server response cannot be parsed or reports a failure."""
    pass


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a mutating API call."""
    ok: bool
    message: str = ''


@dataclass
class OcsResponse:
    """Parsed OCS response envelope."""
    http_status: int
    status: Optional[str] = None
    status_code: Optional[int] = None
    message: str = ''
    root: Optional[ET.Element] = None

    @property
    def parsed(self) -> bool:
        return self.root is not None and bool(self.status)

    @property
    def ok(self) -> bool:
        return self.status == 'ok'


def normalize_url(url: str) -> str:
    """
    Strip trailing slashes and any scheme from a Nextcloud URL.

    Args:
        url: URL as configured, e.g. ``https://cloud.example.com/``

    Returns:
        Host with optional path prefix, e.g. ``cloud.example.com/nextcloud``

    Raises:
        ConfigError: If nothing is left after formatting
    """
    formatted = (url or '').strip().rstrip('/')
    for prefix in ('https://', 'http://'):
        if formatted.lower().startswith(prefix):
            formatted = formatted[len(prefix):]
    formatted = formatted.rstrip('/')
    if not formatted:
        raise ConfigError("URL is empty after formatting")
    return formatted


class DirectoryServiceClient:
    """
    Client for the Nextcloud user provisioning API.

    Requests are sent one at a time over a single HTTPS connection. Mutating
    calls are retried while the server reports rate limiting and never raise on
    business-level failures.
    """

    API_PATH = '/ocs/v1.php/cloud/users'

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize Nextcloud API client.

        Args:
            config: Provisioning configuration dictionary (NC_* keys)
        """
        self.config = config
        self.base_url = normalize_url(config['NC_URL'])
        self.host, _, path = self.base_url.partition('/')
        self.base_path = f"/{path}" if path else ''
        self.username = config['NC_USER']
        self.password = config['NC_PASS']

        self.retry_count = int(config.get('NC_RETRY_COUNT', 3))
        self.retry_interval = float(config.get('NC_RETRY_INTERVAL', 5))
        self.verify_ssl = config.get('NC_VERIFY_SSL', True)
        self.timeout = float(config.get('NC_TIMEOUT', 30))
        self.rate_limit_status_codes = config.get('NC_RATE_LIMIT_STATUS_CODES', [429])
        self.rate_limit_patterns = config.get('NC_RATE_LIMIT_PATTERNS', ['too many requests', 'rate limit'])

        self.connection = None
        self.ssl_context = None
        self.auth_headers = {}

        self._setup_ssl_context()
        self._setup_authentication()

    @property
    def url(self) -> str:
        return f"https://{self.base_url}"

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.host}")
            return

        self.ssl_context = ssl.create_default_context()

        ca_file = self.config.get('NC_CA_FILE')
        if ca_file:
            try:
                self.ssl_context.load_verify_locations(cafile=ca_file)
                logger.info(f"Loaded CA certificates: {ca_file}")
            except (OSError, ssl.SSLError) as e:
                raise ConfigError(f"Failed to load CA file {ca_file}: {e}")

    def _setup_authentication(self):
        """Set up Basic authentication and OCS headers."""
        credentials = base64.b64encode(f"{self.username}:{self.password}".encode()).decode()
        self.auth_headers['Authorization'] = f"Basic {credentials}"
        self.auth_headers['OCS-APIRequest'] = 'true'

    def _get_connection(self) -> HTTPSConnection:
        """Get or create HTTPS connection."""
        if self.connection:
            return self.connection

        self.connection = HTTPSConnection(
            self.host,
            context=self.ssl_context,
            timeout=self.timeout
        )
        return self.connection

    def _request(self, method: str, path: str = '',
                 fields: Optional[Dict[str, str]] = None) -> OcsResponse:
        """
        Make HTTP request to the provisioning API.

        Args:
            method: HTTP method (GET, POST, PUT)
            path: Path below the users endpoint, already URL encoded
            fields: Form fields for the request body

        Returns:
            Parsed OCS response

        Raises:
            DirectoryConnectionError: If the server is unreachable or rejects the credentials
        """
        full_path = f"{self.base_path}{self.API_PATH}{path}"

        request_headers = dict(self.auth_headers)
        request_body = None
        if fields is not None:
            request_body = urlencode(fields)
            request_headers['Content-Type'] = 'application/x-www-form-urlencoded'

        reused = self.connection is not None
        try:
            try:
                response, response_data = self._send(method, full_path, request_body, request_headers)
            except STALE_CONNECTION_ERRORS as e:
                if not reused:
                    raise
                logger.debug(f"Connection to {self.host} was closed by the server, reconnecting: {e}")
                self.close()
                response, response_data = self._send(method, full_path, request_body, request_headers)
        except (HTTPException, OSError) as e:
            self.close()
            raise DirectoryConnectionError(
                f"Failed to connect to Nextcloud server {self.host}. Please check URL and credentials: {e}"
            )

        logger.debug(f"Response status: {response.status} {response.reason}")

        if response.status == 401:
            raise DirectoryConnectionError(
                f"Authentication rejected by {self.host} for user {self.username}"
            )

        return self._parse_response(response.status, response.reason, response_data)

    def _send(self, method: str, full_path: str, body: Optional[str],
              headers: Dict[str, str]) -> Tuple[HTTPResponse, bytes]:
        conn = self._get_connection()

        logger.debug(f"Making {method} request to {self.host}{full_path}")
        conn.request(method, full_path, body, headers)

        response = conn.getresponse()
        return response, response.read()

    def _parse_response(self, http_status: int, reason: str, data: bytes) -> OcsResponse:
        """Parse an OCS XML envelope, keeping HTTP details when the body is not XML."""
        result = OcsResponse(http_status=http_status, message=f"HTTP {http_status} {reason}".strip())
        if not data:
            return result

        try:
            root = ET.fromstring(data)
        except ET.ParseError as e:
            logger.debug(f"Unparseable response body from {self.host}: {e}")
            return result

        result.root = root
        result.status = (root.findtext('./meta/status') or '').strip() or None
        status_code = (root.findtext('./meta/statuscode') or '').strip()
        if status_code.isdigit():
            result.status_code = int(status_code)
        result.message = (root.findtext('./meta/message') or '').strip()
        return result

    def _is_rate_limited(self, response: OcsResponse) -> bool:
        if response.ok:
            return False
        return is_rate_limited(
            response.http_status,
            response.status_code,
            response.message,
            status_codes=self.rate_limit_status_codes,
            patterns=self.rate_limit_patterns
        )

    def _mutate(self, operation: str, method: str, path: str,
                fields: Dict[str, str]) -> OperationResult:
        """Send a mutating request, retrying while rate limited."""
        def attempt() -> OcsResponse:
            response = self._request(method, path, fields)
            if self._is_rate_limited(response):
                # Each retry starts on a new connection
                self.close()
                raise RateLimitedError(response.message or 'Too many requests', response.http_status)
            return response

        try:
            response = retry_call(
                attempt,
                max_attempts=self.retry_count + 1,  # +1 for initial attempt
                delay=self.retry_interval,
                backoff=1.0,
                exceptions=(RateLimitedError,),
                on_retry=create_retry_callback(operation.capitalize())
            )
        except MaxRetriesExceeded as e:
            logger.warning(f"{operation.capitalize()} gave up after {e.attempts} attempts")
            return OperationResult(False, f"Rate limited after {e.attempts} attempts: {e.last_exception}")

        if response.ok:
            return OperationResult(True, response.message)
        return OperationResult(False, response.message or 'Unknown error')

    def list_user_ids(self) -> List[str]:
        """
        Get all user ids known to the server.

        Returns:
            User ids in server order

        Raises:
            DirectoryConnectionError: If the server is unreachable or rejects the credentials
            DirectoryProtocolError: If the response cannot be parsed or is not ok
        """
        response = self._request('GET')

        if not response.parsed:
            raise DirectoryProtocolError("Invalid response from server or unable to parse XML")
        if not response.ok:
            raise DirectoryProtocolError(f"API request failed: {response.message or 'Unknown error'}")

        user_ids = []
        for element in response.root.findall('./data/users/element'):
            userid = (element.text or '').strip()
            if userid:
                user_ids.append(userid)

        logger.info(f"Retrieved {len(user_ids)} users from {self.host}")
        return user_ids

    def get_user_email(self, userid: str) -> Optional[str]:
        """
        Look up the email address stored for a user.

        Args:
            userid: User id on the server

        Returns:
            Email address, or None when the server has none or the lookup fails to parse
        """
        response = self._request('GET', f"/{quote(userid, safe='')}")

        if not response.parsed or not response.ok:
            logger.debug(f"Email lookup for {userid} failed: {response.message or 'Unknown error'}")
            return None

        email = (response.root.findtext('./data/email') or '').strip()
        return email or None

    def create_user(self, userid: str, email: str, group: str) -> OperationResult:
        """
        Create a user with an email address and initial group.

        Returns:
            OperationResult with the server message on failure
        """
        fields = {
            'userid': userid,
            'email': email,
            'groups[]': group,
        }
        return self._mutate('create user', 'POST', '', fields)

    def set_display_name(self, userid: str, display_name: str) -> OperationResult:
        """Set the display name attribute of an existing user."""
        fields = {
            'key': 'displayname',
            'value': display_name,
        }
        return self._mutate('set display name', 'PUT', f"/{quote(userid, safe='')}", fields)

    def close(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection for {self.host}: {e}")
            finally:
                self.connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
