#!/usr/bin/env python3
"""
Test suite for the Nextcloud provisioning API client.

This test suite validates the client against mocked HTTPS connections:
- URL normalization and request paths
- Authentication and OCS headers
- XML response parsing
- Error mapping (connection, protocol, business failures)
- Retries while rate limited
"""

import os
import sys
import base64
import unittest
from urllib.parse import parse_qs
from unittest.mock import Mock, patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from nc_provision.config import ConfigError
from nc_provision.directory_client import (
    DirectoryServiceClient, DirectoryConnectionError, DirectoryProtocolError, normalize_url
)


def ocs_xml(status='ok', statuscode=100, message='OK', data=''):
    return (
        '<?xml version="1.0"?>\n'
        f'<ocs><meta><status>{status}</status><statuscode>{statuscode}</statuscode>'
        f'<message>{message}</message></meta><data>{data}</data></ocs>'
    ).encode('utf-8')


def http_response(body=b'', status=200, reason='OK'):
    response = Mock()
    response.status = status
    response.reason = reason
    response.read.return_value = body
    return response


class TestNormalizeUrl(unittest.TestCase):
    """Test cases for URL normalization."""

    def test_strips_scheme_and_trailing_slash(self):
        self.assertEqual(normalize_url('https://cloud.example.com/'), 'cloud.example.com')
        self.assertEqual(normalize_url('http://cloud.example.com'), 'cloud.example.com')
        self.assertEqual(normalize_url('cloud.example.com'), 'cloud.example.com')

    def test_keeps_path_prefix(self):
        self.assertEqual(normalize_url('https://example.com/nextcloud//'), 'example.com/nextcloud')

    def test_empty_url(self):
        with self.assertRaises(ConfigError):
            normalize_url('https://')
        with self.assertRaises(ConfigError):
            normalize_url('')


class TestDirectoryServiceClient(unittest.TestCase):
    """Test cases for DirectoryServiceClient class."""

    def setUp(self):
        self.config = {
            'NC_URL': 'https://cloud.example.com/',
            'NC_USER': 'admin',
            'NC_PASS': 'p@ss:word',
            'NC_RETRY_COUNT': 2,
            'NC_RETRY_INTERVAL': 7,
            'NC_VERIFY_SSL': True,
        }
        patcher = patch('nc_provision.directory_client.HTTPSConnection')
        self.mock_https = patcher.start()
        self.addCleanup(patcher.stop)
        self.conn = Mock()
        self.mock_https.return_value = self.conn

        sleep_patcher = patch('nc_provision.retry.time.sleep')
        self.mock_sleep = sleep_patcher.start()
        self.addCleanup(sleep_patcher.stop)

        self.client = DirectoryServiceClient(self.config)

    def respond(self, *responses):
        self.conn.getresponse.side_effect = list(responses)

    def sent(self, index=0):
        """Return (method, path, body, headers) of the index-th request."""
        return self.conn.request.call_args_list[index][0]

    def test_initialization(self):
        self.assertEqual(self.client.host, 'cloud.example.com')
        self.assertEqual(self.client.base_path, '')
        self.assertEqual(self.client.url, 'https://cloud.example.com')
        self.assertEqual(self.client.retry_count, 2)

    def test_list_user_ids(self):
        self.respond(http_response(ocs_xml(
            data='<users><element>admin</element><element>John Doe</element></users>'
        )))

        user_ids = self.client.list_user_ids()

        self.assertEqual(user_ids, ['admin', 'John Doe'])
        method, path, body, headers = self.sent()
        self.assertEqual(method, 'GET')
        self.assertEqual(path, '/ocs/v1.php/cloud/users')
        self.assertIsNone(body)
        self.assertEqual(headers['OCS-APIRequest'], 'true')
        expected = base64.b64encode(b'admin:p@ss:word').decode()
        self.assertEqual(headers['Authorization'], f'Basic {expected}')
        self.mock_https.assert_called_once()
        self.assertEqual(self.mock_https.call_args[0][0], 'cloud.example.com')

    def test_list_user_ids_with_path_prefix(self):
        self.config['NC_URL'] = 'example.com/nextcloud/'
        client = DirectoryServiceClient(self.config)
        self.respond(http_response(ocs_xml(data='<users/>')))

        self.assertEqual(client.list_user_ids(), [])
        self.assertEqual(self.sent()[1], '/nextcloud/ocs/v1.php/cloud/users')

    def test_list_user_ids_failure_status(self):
        self.respond(http_response(ocs_xml(status='failure', statuscode=997, message='Not allowed')))

        with self.assertRaises(DirectoryProtocolError) as context:
            self.client.list_user_ids()
        self.assertIn('Not allowed', str(context.exception))

    def test_list_user_ids_failure_without_message(self):
        self.respond(http_response(ocs_xml(status='failure', statuscode=999, message='')))

        with self.assertRaises(DirectoryProtocolError) as context:
            self.client.list_user_ids()
        self.assertIn('Unknown error', str(context.exception))

    def test_list_user_ids_unparseable(self):
        self.respond(http_response(b'<html><body>Maintenance'))

        with self.assertRaises(DirectoryProtocolError):
            self.client.list_user_ids()

    def test_list_user_ids_empty_body(self):
        self.respond(http_response(b''))

        with self.assertRaises(DirectoryProtocolError):
            self.client.list_user_ids()

    def test_authentication_rejected(self):
        self.respond(http_response(b'', status=401, reason='Unauthorized'))

        with self.assertRaises(DirectoryConnectionError) as context:
            self.client.list_user_ids()
        self.assertIn('admin', str(context.exception))
        self.assertNotIn('p@ss:word', str(context.exception))

    def test_connection_failure(self):
        self.conn.request.side_effect = ConnectionRefusedError('Connection refused')

        with self.assertRaises(DirectoryConnectionError):
            self.client.list_user_ids()
        self.conn.close.assert_called_once()
        self.assertIsNone(self.client.connection)

    def test_get_user_email(self):
        self.respond(http_response(ocs_xml(data='<id>John Doe</id><email>john@x.com</email>')))

        email = self.client.get_user_email('John Doe')

        self.assertEqual(email, 'john@x.com')
        self.assertEqual(self.sent()[1], '/ocs/v1.php/cloud/users/John%20Doe')

    def test_get_user_email_encodes_slashes(self):
        self.respond(http_response(ocs_xml(data='<email/>')))

        self.client.get_user_email('a/b@x.com')

        self.assertEqual(self.sent()[1], '/ocs/v1.php/cloud/users/a%2Fb%40x.com')

    def test_get_user_email_absent(self):
        self.respond(
            http_response(ocs_xml(data='<id>admin</id><email></email>')),
            http_response(ocs_xml(data='<id>admin</id>')),
            http_response(ocs_xml(status='failure', statuscode=998, message='User does not exist')),
            http_response(b'not xml'),
        )

        for _ in range(4):
            self.assertIsNone(self.client.get_user_email('admin'))

    def test_get_user_email_connection_failure_propagates(self):
        self.conn.getresponse.side_effect = OSError('Network is unreachable')

        with self.assertRaises(DirectoryConnectionError):
            self.client.get_user_email('admin')

    def test_create_user(self):
        self.respond(http_response(ocs_xml()))

        result = self.client.create_user('John Doe', 'john@x.com', 'Default Group')

        self.assertTrue(result.ok)
        method, path, body, headers = self.sent()
        self.assertEqual(method, 'POST')
        self.assertEqual(path, '/ocs/v1.php/cloud/users')
        self.assertEqual(headers['Content-Type'], 'application/x-www-form-urlencoded')
        self.assertEqual(parse_qs(body), {
            'userid': ['John Doe'],
            'email': ['john@x.com'],
            'groups[]': ['Default Group'],
        })

    def test_create_user_business_failure(self):
        self.respond(http_response(ocs_xml(status='failure', statuscode=102, message='User already exists')))

        result = self.client.create_user('John Doe', 'john@x.com', 'Staff')

        self.assertFalse(result.ok)
        self.assertEqual(result.message, 'User already exists')
        self.mock_sleep.assert_not_called()

    def test_create_user_failure_without_message(self):
        self.respond(http_response(ocs_xml(status='failure', statuscode=101, message='')))

        result = self.client.create_user('John Doe', 'john@x.com', 'Staff')

        self.assertEqual(result.message, 'Unknown error')

    def test_create_user_retries_when_rate_limited(self):
        self.respond(
            http_response(b'', status=429, reason='Too Many Requests'),
            http_response(ocs_xml()),
        )

        result = self.client.create_user('John Doe', 'john@x.com', 'Staff')

        self.assertTrue(result.ok)
        self.assertEqual(self.conn.request.call_count, 2)
        self.mock_sleep.assert_called_once_with(7.0)

    def test_create_user_gives_up_after_retries(self):
        self.respond(*[http_response(b'', status=429, reason='Too Many Requests') for _ in range(3)])

        result = self.client.create_user('John Doe', 'john@x.com', 'Staff')

        self.assertFalse(result.ok)
        self.assertIn('Rate limited after 3 attempts', result.message)
        self.assertEqual(self.conn.request.call_count, 3)
        self.assertEqual(self.mock_sleep.call_count, 2)

    def test_rate_limit_retry_uses_new_connection(self):
        first, second = Mock(), Mock()
        # The server drops the first socket while the client waits
        first.request.side_effect = [None, BrokenPipeError(32, 'Broken pipe')]
        first.getresponse.return_value = http_response(b'', status=429, reason='Too Many Requests')
        second.getresponse.return_value = http_response(ocs_xml())
        self.mock_https.side_effect = [first, second]

        result = self.client.create_user('John Doe', 'john@x.com', 'Staff')

        self.assertTrue(result.ok)
        self.mock_sleep.assert_called_once_with(7.0)
        self.assertEqual(first.request.call_count, 1)
        first.close.assert_called_once()
        self.assertEqual(second.request.call_args[0][0], 'POST')

    def test_stale_keep_alive_connection_is_replaced(self):
        first, second = Mock(), Mock()
        first.getresponse.return_value = http_response(ocs_xml(data='<users/>'))
        second.getresponse.return_value = http_response(ocs_xml())
        self.mock_https.side_effect = [first, second]

        self.client.list_user_ids()
        first.request.side_effect = BrokenPipeError(32, 'Broken pipe')
        result = self.client.create_user('John Doe', 'john@x.com', 'Staff')

        self.assertTrue(result.ok)
        first.close.assert_called_once()
        self.assertEqual(second.request.call_args[0][0], 'POST')
        self.assertIs(self.client.connection, second)

    def test_stale_error_on_new_connection_is_not_retried(self):
        self.conn.request.side_effect = ConnectionResetError(104, 'Connection reset by peer')

        with self.assertRaises(DirectoryConnectionError):
            self.client.list_user_ids()
        self.mock_https.assert_called_once()

    def test_rate_limit_detected_from_ocs_status_code(self):
        self.respond(
            http_response(ocs_xml(status='failure', statuscode=429, message='Slow down')),
            http_response(ocs_xml()),
        )

        result = self.client.create_user('John Doe', 'john@x.com', 'Staff')

        self.assertTrue(result.ok)
        self.assertEqual(self.mock_sleep.call_count, 1)

    def test_rate_limit_detected_from_message(self):
        self.config['NC_RATE_LIMIT_PATTERNS'] = ['slow down']
        client = DirectoryServiceClient(self.config)
        self.respond(
            http_response(ocs_xml(status='failure', statuscode=996, message='Please slow down')),
            http_response(ocs_xml()),
        )

        result = client.create_user('John Doe', 'john@x.com', 'Staff')

        self.assertTrue(result.ok)

    def test_no_retries_configured(self):
        self.config['NC_RETRY_COUNT'] = 0
        client = DirectoryServiceClient(self.config)
        self.respond(http_response(b'', status=429, reason='Too Many Requests'))

        result = client.create_user('John Doe', 'john@x.com', 'Staff')

        self.assertFalse(result.ok)
        self.mock_sleep.assert_not_called()

    def test_set_display_name(self):
        self.respond(http_response(ocs_xml()))

        result = self.client.set_display_name('E1@x.com', 'John Doe')

        self.assertTrue(result.ok)
        method, path, body, _ = self.sent()
        self.assertEqual(method, 'PUT')
        self.assertEqual(path, '/ocs/v1.php/cloud/users/E1%40x.com')
        self.assertEqual(parse_qs(body), {'key': ['displayname'], 'value': ['John Doe']})

    def test_connection_is_reused_and_closed(self):
        self.respond(http_response(ocs_xml(data='<users/>')), http_response(ocs_xml(data='<email/>')))

        with self.client as client:
            client.list_user_ids()
            client.get_user_email('admin')

        self.mock_https.assert_called_once()
        self.conn.close.assert_called_once()
        self.assertIsNone(self.client.connection)

    @patch('nc_provision.directory_client.ssl._create_unverified_context')
    def test_ssl_verification_disabled(self, mock_unverified):
        self.config['NC_VERIFY_SSL'] = False

        client = DirectoryServiceClient(self.config)

        mock_unverified.assert_called_once()
        self.assertIs(client.ssl_context, mock_unverified.return_value)


if __name__ == '__main__':
    unittest.main()
