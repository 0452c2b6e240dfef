"""ACME client API."""
import base64
import datetime
from email.utils import parsedate_tz
import logging
import re
import time
from typing import Any
from typing import Optional
from typing import Type
from typing import TypeVar
from typing import Union

import josepy as jose
import requests
from requests.adapters import HTTPAdapter

from kmsacme import challenges
from kmsacme import errors
from kmsacme import jws
from kmsacme import kms
from kmsacme import messages
from kmsacme import token_store

logger = logging.getLogger(__name__)

DEFAULT_NETWORK_TIMEOUT = 45

PEM_CHAIN_CONTENT_TYPE = 'application/pem-certificate-chain'

GenericJSON = TypeVar('GenericJSON', bound=jose.JSONDeSerializable)


class ClientV2:
    """ACME client for a v2 API.

    The client holds no per-flow state. Every signed operation takes the
    replay nonce to use and returns a resource carrying the nonce of its
    own response, so several flows may share one client.

    :ivar .ClientNetwork net: Client network.
    :ivar .ChallengeTokenStore token_store: Where http-01 validations
        are published.
    """

    def __init__(self, net: 'ClientNetwork',
                 token_store: token_store.ChallengeTokenStore) -> None:
        """Initialize.

        :param .ClientNetwork net: Client network.
        :param .ChallengeTokenStore token_store: Challenge token store.
        """
        self.net = net
        self.token_store = token_store

    @property
    def key(self) -> kms.AccountKey:
        """Account key requests are signed with."""
        return self.net.key

    def fetch_directory(self, url: str) -> messages.DirectoryResource:
        """Retrieve the directory and a first replay nonce.

        :param str url: Directory URL.

        :raises .NetworkError: if the server cannot be reached.
        :raises .MissingNonce: if ``newNonce`` did not return a nonce.
        :raises .DecodeError: if the directory is malformed.

        """
        directory = self._decode(messages.Directory, self.net.get(url))
        nonce = self.net.new_nonce(directory['newNonce'])
        return messages.DirectoryResource(body=directory, uri=url, nonce=nonce)

    def new_account(self, directory: messages.DirectoryResource, email: Optional[str],
                    nonce: str) -> messages.AccountResource:
        """Register, or look up, the account for the account key.

        The request is signed with the account JWK embedded. A server
        that already knows the key answers 200 instead of 201, both
        are accepted.

        :param .DirectoryResource directory:
        :param str email: Contact email, ``None`` for no contact.
        :param str nonce: Replay nonce to consume.

        :raises .ProtocolError: if the account URL is missing.

        """
        new_reg = messages.NewRegistration.from_data(
            email=email, terms_of_service_agreed=True)
        response = self.net.post(directory.body['newAccount'], new_reg, nonce)
        nonce = self.net.replay_nonce(response)
        location = response.headers.get('Location')
        if not location:
            raise errors.ProtocolError('Account response did not include a Location header')
        body = self._decode(messages.Registration, response)
        logger.debug('Account URL: %s', location)
        return messages.AccountResource(body=body, uri=location, nonce=nonce)

    def new_order(self, account: messages.AccountResource,
                  directory: messages.DirectoryResource, domain: str, csr: bytes,
                  nonce: str) -> messages.OrderResource:
        """Request a new Order for a single domain.

        :param .AccountResource account:
        :param .DirectoryResource directory:
        :param str domain: DNS identifier to order.
        :param bytes csr: DER encoded CSR, kept on the returned order and
            only sent when the order is finalized.
        :param str nonce: Replay nonce to consume.

        :returns: The newly created order.
        :rtype: OrderResource
        """
        order = messages.NewOrder(identifiers=(
            messages.Identifier(typ=messages.IDENTIFIER_FQDN, value=domain),))
        response = self.net.post(directory.body['newOrder'], order, nonce, kid=account.uri)
        nonce = self.net.replay_nonce(response)
        body = self._decode(messages.Order, response)
        return messages.OrderResource(
            body=body,
            uri=response.headers.get('Location'),
            nonce=nonce,
            csr=csr)

    def fetch_authorization(self, order: messages.OrderResource,
                            account: messages.AccountResource,
                            nonce: str) -> messages.AuthorizationResource:
        """Fetch the first authorization of ``order``.

        :raises .ProtocolError: if the order lists no authorization.
        :raises .UnsupportedChallenge: if no http-01 challenge is offered.

        """
        if not order.body.authorizations:
            raise errors.ProtocolError('Order does not list any authorization')
        url = order.body.authorizations[0]
        authzr = self._authzr_from_response(self._post_as_get(url, account, nonce), uri=url)
        self.http01_challenge(authzr)
        return authzr

    @classmethod
    def http01_challenge(cls, authzr: messages.AuthorizationResource) -> messages.ChallengeBody:
        """Select the http-01 challenge of ``authzr``.

        :raises .UnsupportedChallenge: if there is none.

        """
        for challb in authzr.body.challenges or ():
            if isinstance(challb.chall, challenges.HTTP01):
                return challb
        identifier = authzr.body.identifier
        raise errors.UnsupportedChallenge(
            identifier.value if identifier is not None else authzr.uri,
            tuple(str(challb.typ) for challb in authzr.body.challenges or ()))

    def publish_http01(self, challb: messages.ChallengeBody) -> str:
        """Publish the key authorization for ``challb`` in the token store.

        :returns: The published key authorization.
        :raises .ProtocolError: if the token is not a safe path segment.

        """
        if not challb.chall.good_token:
            raise errors.ProtocolError(f'Refusing to publish unsafe token {challb.token!r}')
        validation = challb.chall.validation(self.key.public_jwk())
        self.token_store.put(challb.token, validation)
        logger.debug('Published validation for token %s', challb.token)
        return validation

    def answer_challenge(self, challb: messages.ChallengeBody,
                         account: messages.AccountResource, nonce: str) -> str:
        """Tell the CA to start validating ``challb``.

        :returns: Replay nonce from the response.
        :rtype: str

        :raises .MissingNonce:

        """
        if not challb.url:
            raise errors.ProtocolError('Challenge does not have a URL')
        response = self.net.post(
            challb.url, challb.chall.response(self.key.public_jwk()), nonce, kid=account.uri)
        return self.net.replay_nonce(response)

    def complete_http_challenge(self, authzr: messages.AuthorizationResource,
                                account: messages.AccountResource) -> str:
        """Publish and answer the http-01 challenge of ``authzr``.

        Uses the nonce that came with ``authzr``.

        :returns: Replay nonce from the challenge response.

        """
        challb = self.http01_challenge(authzr)
        self.publish_http01(challb)
        return self.answer_challenge(challb, account, authzr.nonce)

    def poll_authorization(self, authzr: messages.AuthorizationResource,
                           account: messages.AccountResource, nonce: str,
                           deadline: datetime.datetime) -> messages.AuthorizationResource:
        """Poll Authorization Resource until it is no longer pending.

        :param str nonce: Replay nonce for the first poll.
        :param datetime.datetime deadline: when to stop polling and timeout

        :returns: The valid authorization, carrying the latest nonce.

        :raises .ValidationError: if the authorization failed.
        :raises .TimeoutError: if ``deadline`` passes first.

        """
        while datetime.datetime.now() < deadline:
            response = self._post_as_get(authzr.uri, account, nonce)
            authzr = self._authzr_from_response(response, uri=authzr.uri)
            nonce = authzr.nonce
            status = authzr.body.status
            logger.debug('Authorization %s is %s', authzr.uri, status)
            if status == messages.STATUS_VALID:
                return authzr
            if status in messages.FAILED_STATUSES:
                raise errors.ValidationError([authzr])
            when = min(self.retry_after(response, default=1), deadline)
            time.sleep(max((when - datetime.datetime.now()).total_seconds(), 0))
        raise errors.TimeoutError()

    def finalize_order(self, order: messages.OrderResource,
                       account: messages.AccountResource,
                       nonce: str) -> messages.FinalizedOrderResource:
        """Send the order's CSR to its finalize URL.

        :param messages.OrderResource order: order to finalize
        :param str nonce: Replay nonce to consume.

        :returns: finalized order, possibly still processing
        :rtype: messages.FinalizedOrderResource

        """
        if not order.body.finalize:
            raise errors.ProtocolError('Order does not have a finalize URL')
        response = self.net.post(order.body.finalize,
                                 messages.CertificateRequest(csr=order.csr),
                                 nonce, kid=account.uri)
        nonce = self.net.replay_nonce(response)
        return messages.FinalizedOrderResource(
            body=self._decode(messages.Order, response),
            uri=response.headers.get('Location', order.uri),
            nonce=nonce)

    def poll_order(self, finalized: messages.FinalizedOrderResource,
                   account: messages.AccountResource,
                   deadline: datetime.datetime) -> messages.FinalizedOrderResource:
        """
        Poll an order that has been finalized until it becomes valid
        and lists its certificate URL.

        :returns: finalized order (with certificate URL)
        :rtype: messages.FinalizedOrderResource

        :raises .IssuanceError: if the order became invalid.
        :raises .TimeoutError: if ``deadline`` passes first.
        """
        while True:
            body = finalized.body
            if body.status == messages.STATUS_VALID and body.certificate is not None:
                return finalized
            if body.status in messages.FAILED_STATUSES:
                if body.error is not None:
                    raise errors.IssuanceError(body.error)
                raise errors.Error(
                    "The certificate order failed. No further information was provided "
                    "by the server.")
            if datetime.datetime.now() >= deadline:
                raise errors.TimeoutError()
            if not finalized.uri:
                raise errors.ProtocolError('Cannot poll an order without a URL')
            time.sleep(1)
            response = self._post_as_get(finalized.uri, account, finalized.nonce)
            finalized = messages.FinalizedOrderResource(
                body=self._decode(messages.Order, response),
                uri=finalized.uri,
                nonce=self.net.replay_nonce(response))

    def download_certificate(self, finalized: messages.FinalizedOrderResource,
                             account: messages.AccountResource) -> str:
        """Download the certificate chain of a valid order.

        :returns: Response body verbatim, normally a PEM chain.
        :rtype: str

        :raises .ProtocolError: if the order has no certificate URL.

        """
        url = finalized.body.certificate
        if not url:
            raise errors.ProtocolError('Order does not have a certificate URL')
        response = self._post_as_get(url, account, finalized.nonce,
                                     accept=PEM_CHAIN_CONTENT_TYPE)
        return response.text

    def _post_as_get(self, url: str, account: messages.AccountResource, nonce: str,
                     **kwargs: Any) -> requests.Response:
        """
        Send POST-as-GET request (empty payload) to ``url``.

        :param str url: URL to request
        :param .AccountResource account: signing account, used as ``kid``
        :param str nonce: Replay nonce to consume.
        :param kwargs: passed to `.ClientNetwork.post`

        :rtype: `requests.Response`
        """
        return self.net.post(url, None, nonce, kid=account.uri, **kwargs)

    def _authzr_from_response(self, response: requests.Response,
                              uri: Optional[str] = None) -> messages.AuthorizationResource:
        return messages.AuthorizationResource(
            body=self._decode(messages.Authorization, response),
            uri=response.headers.get('Location', uri),
            nonce=self.net.replay_nonce(response))

    @classmethod
    def _decode(cls, json_cls: Type[GenericJSON], response: requests.Response) -> GenericJSON:
        """Decode the JSON body of ``response`` as ``json_cls``.

        :raises .DecodeError: if the body is not JSON or has the wrong shape.

        """
        try:
            return json_cls.from_json(response.json())
        except errors.DecodeError:
            raise
        except (ValueError, TypeError, jose.DeserializationError) as error:
            raise errors.DecodeError(
                f'Unable to decode {json_cls.__name__} from server response: {error}')

    @classmethod
    def retry_after(cls, response: requests.Response, default: int) -> datetime.datetime:
        """Compute next `poll` time based on response ``Retry-After`` header.

        Handles integers and various datestring formats per
        https://www.w3.org/Protocols/rfc2616/rfc2616-sec14.html#sec14.37

        :param requests.Response response: Response from `poll`.
        :param int default: Default value (in seconds), used when
            ``Retry-After`` header is not present or invalid.

        :returns: Time point when next `poll` should be performed.
        :rtype: `datetime.datetime`

        """
        retry_after = response.headers.get('Retry-After', str(default))
        try:
            seconds = int(retry_after)
        except ValueError:
            # The RFC 2822 parser handles all of RFC 2616's cases in modern
            # environments (primarily HTTP 1.1+ but also py27+)
            when = parsedate_tz(retry_after)
            if when is not None:
                try:
                    tz_secs = datetime.timedelta(seconds=when[-1] if when[-1] is not None else 0)
                    return datetime.datetime(*when[:6]) - tz_secs
                except (ValueError, OverflowError):
                    pass
            seconds = default

        return datetime.datetime.now() + datetime.timedelta(seconds=seconds)


class ClientNetwork:
    """Wrapper around requests that signs POSTs for authentication.

    Also adds user agent, and handles Content-Type. Unlike a nonce pool,
    nothing is remembered between requests: the caller passes the nonce
    for each POST and reads the next one with `replay_nonce`.
    """
    JSON_CONTENT_TYPE = 'application/json'
    JOSE_CONTENT_TYPE = 'application/jose+json'
    JSON_ERROR_CONTENT_TYPE = 'application/problem+json'
    REPLAY_NONCE_HEADER = 'Replay-Nonce'

    """Initialize.

    :param .AccountKey key: Account key, held by a KMS.
    :param bool verify_ssl: Whether to verify certificates on SSL connections.
    :param str user_agent: String to send as User-Agent header.
    :param int timeout: Timeout for requests.
    """
    def __init__(self, key: kms.AccountKey, verify_ssl: bool = True,
                 user_agent: str = 'kmsacme', timeout: int = DEFAULT_NETWORK_TIMEOUT) -> None:
        self.key = key
        self.verify_ssl = verify_ssl
        self.user_agent = user_agent
        self.session = requests.Session()
        self._default_timeout = timeout
        adapter = HTTPAdapter()

        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def __del__(self) -> None:
        # Try to close the session, but don't show exceptions to the
        # user if the call to close() fails.
        try:
            self.session.close()
        except Exception:  # pylint: disable=broad-except
            pass

    @classmethod
    def _check_response(cls, response: requests.Response,
                        content_type: Optional[str] = None) -> requests.Response:
        """Check response content and its type.

        .. note::
           Checking is not strict: wrong server response ``Content-Type``
           HTTP header is ignored if response is an expected JSON object
           (c.f. Boulder #56).

        :param str content_type: Expected Content-Type response header.
            If JSON is expected and not present in server response, this
            function will raise an error. Otherwise, wrong Content-Type
            is ignored, but logged.

        :raises .messages.Error: If server response body
            carries HTTP Problem (https://datatracker.ietf.org/doc/html/rfc7807).
        :raises .BadNonce: If that problem is ``badNonce``.
        :raises .ClientError: In case of other networking errors.

        """
        response_ct = response.headers.get('Content-Type')
        # Strip parameters from the media-type (rfc2616#section-3.7)
        if response_ct:
            response_ct = response_ct.split(';')[0].strip()
        try:
            jobj = response.json()
        except ValueError:
            jobj = None

        if not response.ok:
            if jobj is not None:
                if response_ct != cls.JSON_ERROR_CONTENT_TYPE:
                    logger.debug(
                        'Ignoring wrong Content-Type (%r) for JSON Error',
                        response_ct)
                try:
                    problem = messages.Error.from_json(jobj)
                except jose.DeserializationError as error:
                    # Couldn't deserialize JSON object
                    raise errors.ClientError(
                        f'HTTP {response.status_code} with unexpected error body: {error}')
                if problem.code == 'badNonce':
                    raise errors.BadNonce(problem)
                raise problem
            else:
                # response is not JSON object
                raise errors.ClientError(f'HTTP {response.status_code} from {response.url}')
        else:
            if jobj is not None and response_ct != cls.JSON_CONTENT_TYPE:
                logger.debug(
                    'Ignoring wrong Content-Type (%r) for JSON decodable '
                    'response', response_ct)

            if content_type == cls.JSON_CONTENT_TYPE and jobj is None:
                raise errors.DecodeError(f'Unexpected response Content-Type: {response_ct}')

        return response

    def _send_request(self, method: str, url: str, *args: Any, **kwargs: Any) -> requests.Response:
        """Send HTTP request.

        Makes sure that `verify_ssl` is respected. Logs request and
        response (with headers). For allowed parameters please see
        `requests.request`.

        :param str method: method for the new `requests.Request` object
        :param str url: URL for the new `requests.Request` object

        :raises .NetworkError: in case of any transport problems

        :returns: HTTP Response
        :rtype: `requests.Response`


        """
        if method == "POST":
            logger.debug('Sending POST request to %s:\n%s',
                          url, kwargs['data'])
        else:
            logger.debug('Sending %s request to %s.', method, url)
        kwargs['verify'] = self.verify_ssl
        kwargs.setdefault('headers', {})
        kwargs['headers'].setdefault('User-Agent', self.user_agent)
        kwargs.setdefault('timeout', self._default_timeout)
        try:
            response = self.session.request(method, url, *args, **kwargs)
        except requests.exceptions.RequestException as e:
            # pylint: disable=pointless-string-statement
            """Requests response parsing

            The requests library emits exceptions with a lot of extra text.
            We parse them with a regexp to raise a more readable exceptions.

            Example:
            HTTPSConnectionPool(host='acme-v02.api.letsencrypt.org',
            port=443): Max retries exceeded with url: /directory
            (Caused by NewConnectionError('
            <requests.packages.urllib3.connection.VerifiedHTTPSConnection
            object at 0x108356c50>: Failed to establish a new connection:
            [Errno 65] No route to host',))"""

            # pylint: disable=line-too-long
            err_regex = r".*host='(\S*)'.*Max retries exceeded with url\: (\/\w*).*(\[Errno \d+\])([A-Za-z ]*)"
            m = re.match(err_regex, str(e))
            if m is None:
                raise errors.NetworkError(f'Requesting {url}: {e}') from e
            host, path, _err_no, err_msg = m.groups()
            raise errors.NetworkError(f"Requesting {host}{path}:{err_msg}") from e

        # If an Accept header was sent in the request, the response may not be
        # UTF-8 encoded. In this case, we don't set response.encoding and log
        # the base64 response instead of raw bytes to keep binary data out of the logs.
        debug_content: Union[bytes, str]
        if "Accept" in kwargs["headers"]:
            debug_content = base64.b64encode(response.content)
        else:
            # We set response.encoding so response.text knows the response is
            # UTF-8 encoded instead of trying to guess the encoding that was
            # used which is error prone. This setting affects all future
            # accesses of .text made on the returned response object as well.
            response.encoding = "utf-8"
            debug_content = response.text
        logger.debug('Received response:\nHTTP %d\n%s\n\n%s',
                     response.status_code,
                     "\n".join("{0}: {1}".format(k, v)
                                for k, v in response.headers.items()),
                     debug_content)
        return response

    def replay_nonce(self, response: requests.Response) -> str:
        """Return the replay nonce carried by ``response``.

        :raises .MissingNonce: if the header is absent or empty.

        """
        nonce = response.headers.get(self.REPLAY_NONCE_HEADER)
        if not nonce:
            raise errors.MissingNonce(response)
        logger.debug('Received nonce: %s', nonce)
        return nonce

    def new_nonce(self, url: str) -> str:
        """Request a fresh nonce from the ``newNonce`` endpoint at ``url``."""
        logger.debug('Requesting fresh nonce')
        return self.replay_nonce(self._check_response(self.head(url), content_type=None))

    def head(self, *args: Any, **kwargs: Any) -> requests.Response:
        """Send HEAD request without checking the response.

        Note, that `_check_response` is not called, as it is expected
        that status code other than successfully 2xx will be returned, or
        messages.Error will be raised by the server.

        """
        return self._send_request('HEAD', *args, **kwargs)

    def get(self, url: str, content_type: str = JSON_CONTENT_TYPE,
            **kwargs: Any) -> requests.Response:
        """Send GET request and check response."""
        return self._check_response(
            self._send_request('GET', url, **kwargs), content_type=content_type)

    def post(self, url: str, obj: Optional[Any], nonce: str, kid: Optional[str] = None,
             content_type: str = JOSE_CONTENT_TYPE, accept: Optional[str] = None,
             **kwargs: Any) -> requests.Response:
        """POST object wrapped in `.JWS` and check response.

        :param obj: Payload, ``None`` for POST-as-GET.
        :param str nonce: Replay nonce, used exactly once.
        :param str kid: Account URL, ``None`` to embed the JWK instead.
        :param str accept: Optional ``Accept`` header.

        A ``badNonce`` error from the server is raised as `.BadNonce`,
        a `.ProtocolError`; nothing is retried.

        """
        data = jws.JWS.sign(obj, self.key, nonce=nonce, url=url, kid=kid).json_dumps(indent=2)
        headers = {'Content-Type': content_type}
        if accept is not None:
            headers['Accept'] = accept
        response = self._send_request('POST', url, data=data, headers=headers, **kwargs)
        return self._check_response(response, content_type=content_type)
