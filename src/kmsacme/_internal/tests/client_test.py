"""Tests for kmsacme.client."""
import datetime
import sys
import unittest
from unittest import mock

import josepy as jose
import pytest
import requests

from kmsacme import challenges
from kmsacme import errors
from kmsacme import messages
from kmsacme._internal.tests import test_util
from kmsacme.client import ClientNetwork
from kmsacme.client import ClientV2
from kmsacme.token_store import MemoryTokenStore

DIRECTORY = messages.Directory.from_json({
    'newNonce': test_util.CA + '/new-nonce',
    'newAccount': test_util.CA + '/new-acct',
    'newOrder': test_util.CA + '/new-order',
})


def _flow_client(**kwargs):
    store = MemoryTokenStore()
    ca = test_util.FakeCA(store=store, **kwargs)
    net = ClientNetwork(test_util.account_key())
    net.session = ca
    return ClientV2(net, store), ca, store


class ClientV2Test(unittest.TestCase):
    """Tests for kmsacme.client.ClientV2 against an in-process CA."""

    def setUp(self):
        self.client, self.ca, self.store = _flow_client()
        self.csr = test_util.make_csr_der('example.com')

    def _account(self):
        directory = self.client.fetch_directory(test_util.DIRECTORY_URL)
        account = self.client.new_account(directory, 'ops@example.com', directory.nonce)
        return directory, account

    def _order(self):
        directory, account = self._account()
        order = self.client.new_order(account, directory, 'example.com', self.csr,
                                      account.nonce)
        return account, order

    def _authzr(self):
        account, order = self._order()
        return account, order, self.client.fetch_authorization(order, account, order.nonce)

    def test_fetch_directory(self):
        directory = self.client.fetch_directory(test_util.DIRECTORY_URL)
        assert directory.body['newOrder'] == test_util.CA + '/new-order'
        assert directory.body.meta.terms_of_service == test_util.CA + '/tos'
        assert directory.uri == test_util.DIRECTORY_URL
        assert directory.nonce == 'n0'
        assert [req[0] for req in self.ca.requests] == ['GET', 'HEAD']

    def test_new_account(self):
        _, account = self._account()
        assert account.uri == test_util.ACCOUNT_URL
        assert account.nonce == 'n1'
        assert account.body.contact == ('mailto:ops@example.com',)
        _, url, jws = self.ca.requests[-1]
        assert url == test_util.CA + '/new-acct'
        assert jws['payload'] == {
            'contact': ['mailto:ops@example.com'], 'termsOfServiceAgreed': True}
        assert jws['protected']['jwk'] == self.client.key.public_jwk().to_partial_json()

    def test_new_account_without_email(self):
        directory = self.client.fetch_directory(test_util.DIRECTORY_URL)
        self.client.new_account(directory, None, directory.nonce)
        assert self.ca.requests[-1][2]['payload'] == {'termsOfServiceAgreed': True}

    def test_new_account_without_location(self):
        net = mock.MagicMock()
        net.post.return_value = test_util.response(
            201, {'status': 'valid'}, headers={'Replay-Nonce': 'n1'})
        client = ClientV2(net, self.store)
        directory = messages.DirectoryResource(
            body=DIRECTORY, uri=test_util.DIRECTORY_URL, nonce='n0')
        with pytest.raises(errors.ProtocolError):
            client.new_account(directory, None, 'n0')

    def test_new_order(self):
        _, order = self._order()
        assert order.uri == test_util.CA + '/order/7'
        assert order.nonce == 'n2'
        assert order.csr == self.csr
        assert order.body.authorizations == (test_util.CA + '/authz/7',)
        assert self.ca.requests[-1][2]['payload'] == {
            'identifiers': [{'type': 'dns', 'value': 'example.com'}]}

    def test_fetch_authorization(self):
        _, _, authzr = self._authzr()
        assert authzr.uri == test_util.CA + '/authz/7'
        assert authzr.nonce == 'n3'
        assert authzr.body.identifier.value == 'example.com'
        assert authzr.body.status == messages.STATUS_PENDING
        assert self.ca.requests[-1][2]['payload'] is None

    def test_fetch_authorization_unsupported(self):
        self.client, self.ca, self.store = _flow_client(
            challenge_types=('dns-01', 'tls-alpn-01'))
        with pytest.raises(errors.UnsupportedChallenge) as excinfo:
            self._authzr()
        assert excinfo.value.identifier == 'example.com'
        assert excinfo.value.offered == ('dns-01', 'tls-alpn-01')

    def test_fetch_authorization_without_authorizations(self):
        order = messages.OrderResource(body=messages.Order(), nonce='n', csr=self.csr)
        with pytest.raises(errors.ProtocolError):
            self.client.fetch_authorization(order, mock.MagicMock(), 'n')

    def test_http01_challenge_picks_http01(self):
        self.client, self.ca, self.store = _flow_client(
            challenge_types=('dns-01', 'http-01'))
        _, _, authzr = self._authzr()
        challb = self.client.http01_challenge(authzr)
        assert isinstance(challb.chall, challenges.HTTP01)
        assert challb.url == test_util.CA + '/chall/7/http-01'

    def test_publish_http01(self):
        _, _, authzr = self._authzr()
        challb = self.client.http01_challenge(authzr)
        validation = self.client.publish_http01(challb)
        thumbprint = jose.b64encode(self.client.key.thumbprint()).decode()
        assert validation == 'tok-7.' + thumbprint
        assert self.store.get('tok-7') == validation

    def test_publish_http01_unsafe_token(self):
        challb = messages.ChallengeBody(
            chall=challenges.HTTP01(token='../../etc/passwd'), url='https://ca/chall/1')
        with pytest.raises(errors.ProtocolError):
            self.client.publish_http01(challb)
        assert len(self.store) == 0

    def test_complete_http_challenge(self):
        account, _, authzr = self._authzr()
        nonce = self.client.complete_http_challenge(authzr, account)
        assert nonce == 'n4'
        assert self.ca.published['tok-7'] == self.store.get('tok-7')
        assert self.ca.requests[-1][2]['payload'] == {}

    def test_answer_challenge_without_url(self):
        challb = messages.ChallengeBody(chall=challenges.HTTP01(token='tok'))
        with pytest.raises(errors.ProtocolError):
            self.client.answer_challenge(challb, mock.MagicMock(), 'n')

    def test_poll_authorization_valid(self):
        account, _, authzr = self._authzr()
        nonce = self.client.complete_http_challenge(authzr, account)
        deadline = datetime.datetime.now() + datetime.timedelta(seconds=90)
        authzr = self.client.poll_authorization(authzr, account, nonce, deadline)
        assert authzr.body.status == messages.STATUS_VALID
        assert authzr.nonce == 'n5'

    def test_poll_authorization_invalid(self):
        self.client, self.ca, self.store = _flow_client(failing_domains=['example.com'])
        account, _, authzr = self._authzr()
        nonce = self.client.complete_http_challenge(authzr, account)
        deadline = datetime.datetime.now() + datetime.timedelta(seconds=90)
        with pytest.raises(errors.ValidationError) as excinfo:
            self.client.poll_authorization(authzr, account, nonce, deadline)
        assert 'unauthorized' in str(excinfo.value)

    def test_poll_authorization_timeout(self):
        account, _, authzr = self._authzr()
        deadline = datetime.datetime.now() - datetime.timedelta(seconds=1)
        with pytest.raises(errors.TimeoutError):
            self.client.poll_authorization(authzr, account, authzr.nonce, deadline)

    def test_poll_authorization_pending_then_valid(self):
        authz = {'identifier': {'type': 'dns', 'value': 'example.com'}, 'challenges': []}
        pending = test_util.response(200, dict(authz, status='pending'),
                                     headers={'Replay-Nonce': 'p1', 'Retry-After': '2'})
        valid = test_util.response(200, dict(authz, status='valid'),
                                   headers={'Replay-Nonce': 'p2'})
        authzr = messages.AuthorizationResource(
            body=messages.Authorization(), uri=test_util.CA + '/authz/1', nonce='p0')
        account = mock.MagicMock(uri=test_util.ACCOUNT_URL)
        deadline = datetime.datetime.now() + datetime.timedelta(seconds=90)
        with mock.patch.object(self.client, '_post_as_get',
                               side_effect=[pending, valid]) as mock_get:
            with mock.patch('time.sleep') as mock_sleep:
                authzr = self.client.poll_authorization(authzr, account, 'p0', deadline)
        assert authzr.nonce == 'p2'
        assert [call[0][2] for call in mock_get.call_args_list] == ['p0', 'p1']
        assert mock_sleep.call_count == 1
        assert 0 < mock_sleep.call_args[0][0] <= 2

    def test_finalize_poll_and_download(self):
        account, order, authzr = self._authzr()
        nonce = self.client.complete_http_challenge(authzr, account)
        deadline = datetime.datetime.now() + datetime.timedelta(seconds=90)
        authzr = self.client.poll_authorization(authzr, account, nonce, deadline)
        finalized = self.client.finalize_order(order, account, authzr.nonce)
        assert finalized.body.status == messages.STATUS_PROCESSING
        assert finalized.uri == test_util.CA + '/order/7'
        assert self.ca.finalized[7] == {'csr': jose.b64encode(self.csr).decode()}

        finalized = self.client.poll_order(finalized, account, deadline)
        assert finalized.body.status == messages.STATUS_VALID
        assert finalized.body.certificate == test_util.CA + '/cert/7'

        assert self.client.download_certificate(finalized, account) == test_util.CERT_PEM

    def test_finalize_without_url(self):
        order = messages.OrderResource(body=messages.Order(), nonce='n', csr=self.csr)
        with pytest.raises(errors.ProtocolError):
            self.client.finalize_order(order, mock.MagicMock(), 'n')

    def _finalized(self, **kwargs):
        return messages.FinalizedOrderResource(
            body=messages.Order(**kwargs), uri=test_util.CA + '/order/1', nonce='n')

    def test_poll_order_already_valid(self):
        finalized = self._finalized(status=messages.STATUS_VALID,
                                    certificate=test_util.CA + '/cert/1')
        deadline = datetime.datetime.now() + datetime.timedelta(seconds=90)
        assert self.client.poll_order(finalized, mock.MagicMock(), deadline) is finalized

    def test_poll_order_invalid(self):
        error = messages.Error(typ=messages.ERROR_PREFIX + 'badCSR', detail='key too small')
        finalized = self._finalized(status=messages.STATUS_INVALID, error=error)
        deadline = datetime.datetime.now() + datetime.timedelta(seconds=90)
        with pytest.raises(errors.IssuanceError) as excinfo:
            self.client.poll_order(finalized, mock.MagicMock(), deadline)
        assert excinfo.value.error == error

    def test_poll_order_invalid_without_error(self):
        finalized = self._finalized(status=messages.STATUS_INVALID)
        deadline = datetime.datetime.now() + datetime.timedelta(seconds=90)
        with pytest.raises(errors.Error) as excinfo:
            self.client.poll_order(finalized, mock.MagicMock(), deadline)
        assert not isinstance(excinfo.value, errors.IssuanceError)

    def test_poll_order_timeout(self):
        finalized = self._finalized(status=messages.STATUS_PROCESSING)
        deadline = datetime.datetime.now() - datetime.timedelta(seconds=1)
        with pytest.raises(errors.TimeoutError):
            self.client.poll_order(finalized, mock.MagicMock(), deadline)

    def test_poll_order_without_uri(self):
        finalized = messages.FinalizedOrderResource(
            body=messages.Order(status=messages.STATUS_PROCESSING), nonce='n')
        deadline = datetime.datetime.now() + datetime.timedelta(seconds=90)
        with pytest.raises(errors.ProtocolError):
            self.client.poll_order(finalized, mock.MagicMock(), deadline)

    def test_download_without_certificate_url(self):
        with pytest.raises(errors.ProtocolError):
            self.client.download_certificate(self._finalized(), mock.MagicMock())

    def test_decode_error(self):
        with pytest.raises(errors.DecodeError):
            self.client._decode(  # pylint: disable=protected-access
                messages.Directory, test_util.response(200, {'newNonce': 'x'}))
        with pytest.raises(errors.DecodeError):
            self.client._decode(  # pylint: disable=protected-access
                messages.Order, test_util.response(200, text='<html>'))


class RetryAfterTest(unittest.TestCase):
    """Tests for kmsacme.client.ClientV2.retry_after."""

    def setUp(self):
        self.response = mock.MagicMock(headers={})

    def test_retry_after_date(self):
        self.response.headers['Retry-After'] = 'Fri, 31 Dec 1999 23:59:59 GMT'
        assert datetime.datetime(1999, 12, 31, 23, 59, 59) == \
            ClientV2.retry_after(response=self.response, default=10)

    @mock.patch('kmsacme.client.datetime')
    def test_retry_after_invalid(self, dt_mock):
        dt_mock.datetime.now.return_value = datetime.datetime(2015, 3, 27)
        dt_mock.timedelta = datetime.timedelta

        self.response.headers['Retry-After'] = 'foooo'
        assert datetime.datetime(2015, 3, 27, 0, 0, 10) == \
            ClientV2.retry_after(response=self.response, default=10)

    @mock.patch('kmsacme.client.datetime')
    def test_retry_after_overflow(self, dt_mock):
        dt_mock.datetime.now.return_value = datetime.datetime(2015, 3, 27)
        dt_mock.timedelta = datetime.timedelta
        dt_mock.datetime.side_effect = datetime.datetime

        self.response.headers['Retry-After'] = "Tue, 116 Feb 2016 11:50:00 MST"
        assert datetime.datetime(2015, 3, 27, 0, 0, 10) == \
            ClientV2.retry_after(response=self.response, default=10)

    @mock.patch('kmsacme.client.datetime')
    def test_retry_after_seconds(self, dt_mock):
        dt_mock.datetime.now.return_value = datetime.datetime(2015, 3, 27)
        dt_mock.timedelta = datetime.timedelta

        self.response.headers['Retry-After'] = '50'
        assert datetime.datetime(2015, 3, 27, 0, 0, 50) == \
            ClientV2.retry_after(response=self.response, default=10)

    @mock.patch('kmsacme.client.datetime')
    def test_retry_after_missing(self, dt_mock):
        dt_mock.datetime.now.return_value = datetime.datetime(2015, 3, 27)
        dt_mock.timedelta = datetime.timedelta

        assert datetime.datetime(2015, 3, 27, 0, 0, 10) == \
            ClientV2.retry_after(response=self.response, default=10)


class ClientNetworkTest(unittest.TestCase):
    """Tests for kmsacme.client.ClientNetwork."""

    def setUp(self):
        self.net = ClientNetwork(test_util.account_key(), verify_ssl=False,
                                 user_agent='kmsacme-test')
        self.session = mock.MagicMock()
        self.net.session = self.session

    def test_check_response_problem_document(self):
        response = test_util.response(400, {
            'type': 'urn:ietf:params:acme:error:malformed', 'detail': 'nope'},
            headers={'Content-Type': 'application/problem+json'})
        with pytest.raises(messages.Error) as excinfo:
            self.net._check_response(response)  # pylint: disable=protected-access
        assert excinfo.value.code == 'malformed'
        assert excinfo.value.detail == 'nope'

    def test_check_response_problem_wrong_content_type(self):
        response = test_util.response(403, {
            'type': 'urn:ietf:params:acme:error:unauthorized'})
        with pytest.raises(messages.Error):
            self.net._check_response(response)  # pylint: disable=protected-access

    def test_check_response_not_ok_not_json(self):
        response = test_util.response(502, text='<html>Bad Gateway</html>',
                                      url='https://ca/new-order')
        with pytest.raises(errors.ClientError) as excinfo:
            self.net._check_response(response)  # pylint: disable=protected-access
        assert str(excinfo.value) == 'HTTP 502 from https://ca/new-order'

    def test_check_response_ok_json_expected(self):
        response = test_util.response(200, text='not json')
        with pytest.raises(errors.DecodeError):
            self.net._check_response(  # pylint: disable=protected-access
                response, content_type=ClientNetwork.JSON_CONTENT_TYPE)

    def test_check_response_ok_wrong_content_type(self):
        for content_type in ('text/plain', 'application/json; charset=utf-8'):
            response = test_util.response(200, {'a': 1},
                                          headers={'Content-Type': content_type})
            assert self.net._check_response(  # pylint: disable=protected-access
                response, content_type=ClientNetwork.JSON_CONTENT_TYPE) is response

    def test_check_response_ok_no_json(self):
        response = test_util.response(200, text=test_util.CERT_PEM)
        assert self.net._check_response(response) is response  # pylint: disable=protected-access

    def test_send_request(self):
        self.session.request.return_value = test_util.response(200, {'a': 1})
        response = self.net._send_request(  # pylint: disable=protected-access
            'GET', 'https://ca/directory')
        assert response.json() == {'a': 1}
        self.session.request.assert_called_once_with(
            'GET', 'https://ca/directory', headers={'User-Agent': 'kmsacme-test'},
            verify=False, timeout=45)

    def test_send_request_keeps_timeout(self):
        self.session.request.return_value = test_util.response(200, {'a': 1})
        self.net._send_request(  # pylint: disable=protected-access
            'GET', 'https://ca/directory', timeout=5)
        assert self.session.request.call_args[1]['timeout'] == 5

    def test_send_request_connection_error(self):
        self.session.request.side_effect = requests.exceptions.ConnectionError(
            "HTTPSConnectionPool(host='acme.example', port=443): Max retries exceeded "
            "with url: /directory (Caused by NewConnectionError('<obj>: Failed to "
            "establish a new connection: [Errno 111] Connection refused'))")
        with pytest.raises(errors.NetworkError) as excinfo:
            self.net._send_request(  # pylint: disable=protected-access
                'GET', 'https://acme.example/directory')
        assert str(excinfo.value) == 'Requesting acme.example/directory: Connection refused'

    def test_send_request_timeout(self):
        self.session.request.side_effect = requests.exceptions.Timeout('read timed out')
        with pytest.raises(errors.NetworkError) as excinfo:
            self.net._send_request(  # pylint: disable=protected-access
                'GET', 'https://ca/directory')
        assert 'read timed out' in str(excinfo.value)

    def test_replay_nonce(self):
        response = test_util.response(200, headers={'Replay-Nonce': 'abc'})
        assert self.net.replay_nonce(response) == 'abc'

    def test_replay_nonce_missing(self):
        for headers in ({}, {'Replay-Nonce': ''}):
            with pytest.raises(errors.MissingNonce):
                self.net.replay_nonce(test_util.response(200, headers=headers))

    def test_new_nonce(self):
        self.session.request.return_value = test_util.response(
            200, headers={'Replay-Nonce': 'fresh'}, method='HEAD')
        assert self.net.new_nonce('https://ca/new-nonce') == 'fresh'
        assert self.session.request.call_args[0] == ('HEAD', 'https://ca/new-nonce')

    def test_new_nonce_server_error(self):
        self.session.request.return_value = test_util.response(
            503, {'type': 'urn:ietf:params:acme:error:serverInternal'}, method='HEAD')
        with pytest.raises(messages.Error):
            self.net.new_nonce('https://ca/new-nonce')

    def test_post(self):
        self.session.request.return_value = test_util.response(
            200, {'ok': True}, headers={'Replay-Nonce': 'n2'})
        response = self.net.post('https://ca/x', {'a': 1}, 'n1',
                                 kid=test_util.ACCOUNT_URL, accept='text/plain')
        assert self.net.replay_nonce(response) == 'n2'
        args, kwargs = self.session.request.call_args
        assert args == ('POST', 'https://ca/x')
        assert kwargs['headers'] == {
            'Content-Type': 'application/jose+json',
            'Accept': 'text/plain',
            'User-Agent': 'kmsacme-test',
        }
        jws = test_util.decode_jws(kwargs['data'])
        assert jws['payload'] == {'a': 1}
        assert jws['protected']['nonce'] == 'n1'
        assert jws['protected']['url'] == 'https://ca/x'
        assert jws['protected']['kid'] == test_util.ACCOUNT_URL

    def test_post_bad_nonce_not_retried(self):
        self.session.request.return_value = test_util.response(
            400, {'type': 'urn:ietf:params:acme:error:badNonce', 'detail': 'stale nonce'})
        with pytest.raises(errors.ProtocolError) as excinfo:
            self.net.post('https://ca/x', {'a': 1}, 'stale', kid=test_util.ACCOUNT_URL)
        assert isinstance(excinfo.value, errors.BadNonce)
        assert excinfo.value.typ == 'urn:ietf:params:acme:error:badNonce'
        assert excinfo.value.detail == 'stale nonce'
        assert self.session.request.call_count == 1

    def test_check_response_other_problem_is_not_bad_nonce(self):
        resp = test_util.response(
            400, {'type': 'urn:ietf:params:acme:error:malformed', 'detail': 'oops'})
        with pytest.raises(messages.Error) as excinfo:
            self.net._check_response(resp)  # pylint: disable=protected-access
        assert not isinstance(excinfo.value, errors.ProtocolError)
        assert excinfo.value.code == 'malformed'

    def test_del(self):
        self.net.__del__()
        self.session.close.assert_called_once_with()

    def test_del_error(self):
        self.session.close.side_effect = AttributeError
        self.net.__del__()


if __name__ == '__main__':
    sys.exit(pytest.main(sys.argv[1:] + [__file__]))  # pragma: no cover
