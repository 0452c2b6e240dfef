"""kmsacme errors."""
import typing
from typing import Any
from typing import List
from typing import Mapping

from josepy import errors as jose_errors

# We import kmsacme.messages only during type check to avoid circular dependencies. Type
# references to kmsacme.messages.* must be quoted to be lazily initialized.
if typing.TYPE_CHECKING:
    from kmsacme import messages  # pragma: no cover


class Error(Exception):
    """Generic kmsacme error."""


class ConfigurationError(Error):
    """Configuration sanity error."""


class StandaloneBindError(Error):
    """The http-01 responder could not bind its port."""

    def __init__(self, socket_error: OSError, port: int) -> None:
        super().__init__(
            f"Problem binding to port {port}: {socket_error}")
        self.socket_error = socket_error
        self.port = port


class ClientError(Error):
    """Error talking to the ACME server."""


class NetworkError(ClientError):
    """Transport level failure (connection, TLS, timeout)."""


class ProtocolError(ClientError):
    """The server response violates the protocol, e.g. a required header is missing."""


class DecodeError(ClientError, jose_errors.DeserializationError):
    """Server response does not have the expected JSON shape."""


class NonceError(ProtocolError):
    """Server response nonce error."""


class BadNonce(NonceError):
    """The server rejected the replay nonce of a signed request.

    :ivar messages.Error error: ``badNonce`` problem sent by the server.

    """
    def __init__(self, error: 'messages.Error', *args: Any) -> None:
        super().__init__(*args)
        self.error = error

    @property
    def typ(self) -> str:
        """Problem type, as sent by the server."""
        return self.error.typ

    @property
    def detail(self) -> typing.Optional[str]:
        """Problem detail, as sent by the server."""
        return self.error.detail

    def __str__(self) -> str:
        return f'Invalid nonce: {self.error}'


class MissingNonce(NonceError):
    """Missing nonce error.

    According to the specification an "ACME server MUST include an
    Replay-Nonce header field in each successful response to a POST it
    provides to a client (...)".

    :ivar headers: Mapping of HTTP headers

    """
    def __init__(self, response: Any, *args: Any) -> None:
        super().__init__(*args)
        self.method = getattr(response.request, 'method', None)
        self.headers: Mapping = dict(response.headers)

    def __str__(self) -> str:
        return ('Server response to {0} did not include a replay '
                'nonce, headers: {1} (This may be a service outage)'.format(
                    self.method, self.headers))


class UnsupportedChallenge(Error):
    """The server did not offer an http-01 challenge.

    :ivar str identifier: Identifier the authorization was for.
    :ivar tuple offered: Challenge types the server did offer.

    """
    def __init__(self, identifier: str, offered: typing.Tuple[str, ...]) -> None:
        self.identifier = identifier
        self.offered = offered
        super().__init__()

    def __str__(self) -> str:
        return 'No http-01 challenge offered for {0} (offered: {1})'.format(
            self.identifier, ', '.join(self.offered) or 'none')


class SigningError(Error):
    """KMS signing or public key retrieval failed."""


class TimeoutError(Error):  # pylint: disable=redefined-builtin
    """Error for when polling an authorization or an order times out."""


class ValidationError(Error):
    """Error for authorization failures. Contains a list of authorization
    resources, each of which is invalid and should have an error field.
    """
    def __init__(self, failed_authzrs: List['messages.AuthorizationResource']) -> None:
        self.failed_authzrs = failed_authzrs
        super().__init__()

    def __str__(self) -> str:
        msg = []
        for authzr in self.failed_authzrs:
            identifier = authzr.body.identifier
            name = identifier.value if identifier is not None else authzr.uri
            msg.append(f'Authorization for {name} failed.')
            for challenge in authzr.body.challenges or ():
                if challenge.error:
                    msg.append(f'Challenge {challenge.typ} failed with error {challenge.error}.')
        return '\n'.join(msg)


class IssuanceError(Error):
    """Error sent by the server after requesting issuance of a certificate."""

    def __init__(self, error: 'messages.Error') -> None:
        """Initialize.

        :param messages.Error error: The error provided by the server.
        """
        self.error = error
        super().__init__()

    def __str__(self) -> str:
        return str(self.error)
