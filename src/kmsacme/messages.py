"""ACME protocol messages."""
from collections.abc import Hashable
import datetime
import logging
from typing import Any
from typing import Dict
from typing import List
from collections.abc import Mapping
from typing import Optional
from typing import Tuple
from typing import Type
from typing import TypeVar

import josepy as jose

from kmsacme import challenges
from kmsacme import errors
from kmsacme import fields
from kmsacme import util

logger = logging.getLogger(__name__)

ERROR_PREFIX = "urn:ietf:params:acme:error:"

ERROR_CODES = {
    'accountDoesNotExist': 'The request specified an account that does not exist',
    'alreadyRevoked': 'The request specified a certificate to be revoked that has' \
    ' already been revoked',
    'badCSR': 'The CSR is unacceptable (e.g., due to a short key)',
    'badNonce': 'The client sent an unacceptable anti-replay nonce',
    'badPublicKey': 'The JWS was signed by a public key the server does not support',
    'badRevocationReason': 'The revocation reason provided is not allowed by the server',
    'badSignatureAlgorithm': 'The JWS was signed with an algorithm the server does not support',
    'caa': 'Certification Authority Authorization (CAA) records forbid the CA from issuing' \
    ' a certificate',
    'compound': 'Specific error conditions are indicated in the "subproblems" array',
    'connection': ('The server could not connect to the client to verify the'
                   ' domain'),
    'dns': 'There was a problem with a DNS query during identifier validation',
    'dnssec': 'The server could not validate a DNSSEC signed domain',
    'incorrectResponse': 'Response received didn\'t match the challenge\'s requirements',
    'invalidContact': 'The provided contact URI was invalid',
    'malformed': 'The request message was malformed',
    'rejectedIdentifier': 'The server will not issue certificates for the identifier',
    'orderNotReady': 'The request attempted to finalize an order that is not ready to be finalized',
    'rateLimited': 'There were too many requests of a given type',
    'serverInternal': 'The server experienced an internal error',
    'tls': 'The server experienced a TLS error during domain verification',
    'unauthorized': 'The client lacks sufficient authorization',
    'unsupportedContact': 'A contact URL for an account used an unsupported protocol scheme',
    'unknownHost': 'The server could not resolve a domain name',
    'unsupportedIdentifier': 'An identifier is of an unsupported type',
    'externalAccountRequired': 'The server requires external account binding',
}

ERROR_TYPE_DESCRIPTIONS = {**{
    ERROR_PREFIX + name: desc for name, desc in ERROR_CODES.items()
}}


class _Constant(jose.JSONDeSerializable, Hashable):
    """ACME constant."""
    __slots__ = ('name',)
    POSSIBLE_NAMES: Dict[str, '_Constant'] = NotImplemented

    def __init__(self, name: str) -> None:
        super().__init__()
        self.POSSIBLE_NAMES[name] = self  # pylint: disable=unsupported-assignment-operation
        self.name = name

    def to_partial_json(self) -> str:
        return self.name

    @classmethod
    def from_json(cls, jobj: str) -> '_Constant':
        if jobj not in cls.POSSIBLE_NAMES:  # pylint: disable=unsupported-membership-test
            raise jose.DeserializationError(f'{cls.__name__} not recognized')
        return cls.POSSIBLE_NAMES[jobj]

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}({self.name})'

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, type(self)) and other.name == self.name

    def __hash__(self) -> int:
        return hash((self.__class__, self.name))


class IdentifierType(_Constant):
    """ACME identifier type."""
    POSSIBLE_NAMES: Dict[str, _Constant] = {}


IDENTIFIER_FQDN = IdentifierType('dns')  # IdentifierDNS in Boulder


class Identifier(jose.JSONObjectWithFields):
    """ACME identifier.

    :ivar IdentifierType typ:
    :ivar str value:

    """
    typ: IdentifierType = jose.field('type', decoder=IdentifierType.from_json)
    value: str = jose.field('value')


class Error(jose.JSONObjectWithFields, errors.Error):
    """ACME error.

    https://datatracker.ietf.org/doc/html/rfc7807

    Raised for every non-2xx response that carries a problem document,
    so callers get the CA's machine readable ``typ`` and ``detail``
    rather than just an HTTP status.

    Note: Although Error inherits from JSONObjectWithFields, which is immutable,
    we add mutability for Error to comply with the Python exception API.

    :ivar str typ:
    :ivar str title:
    :ivar str detail:
    :ivar Identifier identifier:
    :ivar tuple subproblems: An array of ACME Errors which may be present when the CA
            returns multiple errors related to the same request, `tuple` of `Error`.

    """
    typ: str = jose.field('type', omitempty=True, default='about:blank')
    title: str = jose.field('title', omitempty=True)
    detail: str = jose.field('detail', omitempty=True)
    identifier: Optional['Identifier'] = jose.field(
        'identifier', decoder=Identifier.from_json, omitempty=True)
    subproblems: Optional[Tuple['Error', ...]] = jose.field('subproblems', omitempty=True)

    # Mypy does not understand the josepy magic happening here, and falsely claims
    # that subproblems is redefined. Let's ignore the type check here.
    @subproblems.decoder  # type: ignore
    def subproblems(value: List[Dict[str, Any]]) -> Tuple['Error', ...]:  # pylint: disable=no-self-argument,missing-function-docstring
        return tuple(Error.from_json(subproblem) for subproblem in value)

    @property
    def description(self) -> Optional[str]:
        """Hardcoded error description based on its type.

        :returns: Description if standard ACME error or ``None``.
        :rtype: str

        """
        return ERROR_TYPE_DESCRIPTIONS.get(self.typ)

    @property
    def code(self) -> Optional[str]:
        """ACME error code.

        Basically self.typ without the ERROR_PREFIX.

        :returns: error code if standard ACME code or ``None``.
        :rtype: str

        """
        code = str(self.typ).rsplit(':', maxsplit=1)[-1]
        if code in ERROR_CODES:
            return code
        return None

    # Hack to allow mutability on Errors
    def __setattr__(self, name: str, value: Any) -> None:
        return object.__setattr__(self, name, value)

    def __str__(self) -> str:
        result = b' :: '.join(
            part.encode('ascii', 'backslashreplace') for part in
            (self.typ, self.description, self.detail, self.title)
            if part is not None).decode()
        if self.identifier:
            result = f'Problem for {self.identifier.value}: ' + result # pylint: disable=no-member
        if self.subproblems and len(self.subproblems) > 0:
            for subproblem in self.subproblems:
                result += f'\n{subproblem}'
        return result


class Status(_Constant):
    """ACME "status" field.

    The set of statuses is closed: anything the server sends that is
    not one of the constants below decodes to `STATUS_UNKNOWN`.
    Servers do not always send a JSON string, so the raw value goes
    through `.util.decode_status` first.

    """
    POSSIBLE_NAMES: Dict[str, _Constant] = {}

    @classmethod
    def from_json(cls, jobj: Any) -> 'Status':
        name = util.decode_status(jobj)
        if name not in cls.POSSIBLE_NAMES:  # pylint: disable=unsupported-membership-test
            logger.debug('Unrecognized status %r, treating it as unknown', name)
            return STATUS_UNKNOWN
        return cls.POSSIBLE_NAMES[name]  # type: ignore[return-value]


STATUS_UNKNOWN = Status('unknown')
STATUS_PENDING = Status('pending')
STATUS_PROCESSING = Status('processing')
STATUS_VALID = Status('valid')
STATUS_INVALID = Status('invalid')
STATUS_REVOKED = Status('revoked')
STATUS_READY = Status('ready')
STATUS_DEACTIVATED = Status('deactivated')
STATUS_EXPIRED = Status('expired')

FAILED_STATUSES = frozenset((STATUS_INVALID, STATUS_REVOKED, STATUS_DEACTIVATED, STATUS_EXPIRED))
"""Terminal statuses that can never become valid again."""


class Directory(jose.JSONDeSerializable):
    """Directory.

    Directory resources must be accessed by the exact field name in RFC8555 (section 9.7.5).
    """
    REQUIRED = ('newNonce', 'newAccount', 'newOrder')

    class Meta(jose.JSONObjectWithFields):
        """Directory Meta."""
        terms_of_service: str = jose.field('termsOfService', omitempty=True)
        website: str = jose.field('website', omitempty=True)
        caa_identities: List[str] = jose.field('caaIdentities', omitempty=True)
        external_account_required: bool = jose.field('externalAccountRequired', omitempty=True)

    def __init__(self, jobj: Mapping[str, Any]) -> None:
        self._jobj = jobj

    def __getattr__(self, name: str) -> Any:
        try:
            return self[name]
        except KeyError as error:
            raise AttributeError(str(error))

    def __getitem__(self, name: str) -> Any:
        try:
            return self._jobj[name]
        except KeyError:
            raise KeyError(f'Directory field "{name}" not found')

    def to_partial_json(self) -> Dict[str, Any]:
        return dict(self._jobj)

    @classmethod
    def from_json(cls, jobj: Any) -> 'Directory':
        if not isinstance(jobj, Mapping):
            raise jose.DeserializationError(f'Directory must be a JSON object, got {jobj!r}')
        missing = [name for name in cls.REQUIRED if name not in jobj]
        if missing:
            raise jose.DeserializationError(
                'Directory is missing required fields: {0}'.format(', '.join(missing)))
        jobj = dict(jobj)
        jobj['meta'] = cls.Meta.from_json(jobj.pop('meta', {}))
        return cls(jobj)


class Resource(jose.JSONObjectWithFields):
    """ACME Resource.

    Every resource remembers the replay nonce that arrived with the
    response it was decoded from. That nonce is good for exactly one
    further signed request.

    :ivar kmsacme.messages.ResourceBody body: Resource body.
    :ivar str nonce: Replay nonce from the response.

    """
    body: "ResourceBody" = jose.field('body')
    nonce: str = jose.field('nonce')


class ResourceWithURI(Resource):
    """ACME Resource with URI.

    :ivar str uri: Location of the resource.

    """
    uri: str = jose.field('uri')


class ResourceBody(jose.JSONObjectWithFields):
    """ACME Resource Body."""


class DirectoryResource(ResourceWithURI):
    """Directory Resource.

    :ivar kmsacme.messages.Directory body:
    :ivar str nonce: First nonce of the flow, from ``newNonce``.

    """
    body: Directory = jose.field('body', decoder=Directory.from_json)


GenericRegistration = TypeVar('GenericRegistration', bound='Registration')


class Registration(ResourceBody):
    """Registration (account) Resource Body.

    :ivar tuple contact: Contact information following ACME spec,
        `tuple` of `str`.
    :ivar kmsacme.messages.Status status:
    :ivar bool terms_of_service_agreed:
    :ivar str orders: URL of the account's orders list.

    """
    contact: Tuple[str, ...] = jose.field('contact', omitempty=True, default=())
    status: Status = jose.field('status', omitempty=True, decoder=Status.from_json)
    terms_of_service_agreed: bool = jose.field('termsOfServiceAgreed', omitempty=True)
    orders: str = jose.field('orders', omitempty=True)

    email_prefix = 'mailto:'

    @classmethod
    def from_data(cls: Type[GenericRegistration], email: Optional[str] = None,
                  **kwargs: Any) -> GenericRegistration:
        """Create registration resource from contact details."""
        details = list(kwargs.pop('contact', ()))
        if email is not None:
            details.extend([cls.email_prefix + mail for mail in email.split(',')])
        if details:
            kwargs['contact'] = tuple(details)
        return cls(**kwargs)


class NewRegistration(Registration):
    """New registration."""


class AccountResource(ResourceWithURI):
    """Account Resource.

    :ivar kmsacme.messages.Registration body:
    :ivar str uri: Account URL from the ``Location`` header. Used as
        ``kid`` in every subsequent signed request.

    """
    body: Registration = jose.field('body', decoder=Registration.from_json)


class ChallengeBody(ResourceBody):
    """Challenge Resource Body.

    :ivar kmsacme.challenges.Challenge: Wrapped challenge.
        Conveniently, all challenge fields are proxied, i.e. you can
        call ``challb.x`` to get ``challb.chall.x`` contents.
    :ivar str url:
    :ivar kmsacme.messages.Status status:
    :ivar datetime.datetime validated:
    :ivar messages.Error error:

    """
    __slots__ = ('chall',)
    url: str = jose.field('url', omitempty=True, default=None)
    status: Status = jose.field('status', decoder=Status.from_json,
                        omitempty=True, default=STATUS_PENDING)
    validated: datetime.datetime = fields.rfc3339('validated', omitempty=True)
    error: Error = jose.field('error', decoder=Error.from_json,
                       omitempty=True, default=None)

    def to_partial_json(self) -> Dict[str, Any]:
        jobj = super().to_partial_json()
        jobj.update(self.chall.to_partial_json())
        return jobj

    @classmethod
    def fields_from_json(cls, jobj: Mapping[str, Any]) -> Dict[str, Any]:
        jobj_fields = super().fields_from_json(jobj)
        jobj_fields['chall'] = challenges.Challenge.from_json(jobj)
        return jobj_fields

    def __getattr__(self, name: str) -> Any:
        return getattr(self.chall, name)


class Authorization(ResourceBody):
    """Authorization Resource Body.

    :ivar kmsacme.messages.Identifier identifier:
    :ivar list challenges: `list` of `.ChallengeBody`
    :ivar kmsacme.messages.Status status:
    :ivar datetime.datetime expires:
    :ivar bool wildcard:

    """
    identifier: Identifier = jose.field('identifier', decoder=Identifier.from_json, omitempty=True)
    challenges: List[ChallengeBody] = jose.field('challenges', omitempty=True)
    status: Status = jose.field('status', omitempty=True, decoder=Status.from_json)
    expires: datetime.datetime = fields.rfc3339('expires', omitempty=True)
    wildcard: bool = jose.field('wildcard', omitempty=True)

    # Mypy does not understand the josepy magic happening here, and falsely claims
    # that challenge is redefined. Let's ignore the type check here.
    @challenges.decoder  # type: ignore
    def challenges(value: List[Dict[str, Any]]) -> Tuple[ChallengeBody, ...]:  # pylint: disable=no-self-argument,missing-function-docstring
        return tuple(ChallengeBody.from_json(chall) for chall in value)


class AuthorizationResource(ResourceWithURI):
    """Authorization Resource.

    :ivar kmsacme.messages.Authorization body:

    """
    body: Authorization = jose.field('body', decoder=Authorization.from_json)


class CertificateRequest(jose.JSONObjectWithFields):
    """ACME finalize request.

    :ivar bytes csr: DER encoded certificate signing request.

    """
    csr: bytes = jose.field('csr', decoder=jose.decode_b64jose, encoder=jose.encode_b64jose)


class Order(ResourceBody):
    """Order Resource Body.

    :ivar identifiers: List of identifiers for the certificate.
    :vartype identifiers: `list` of `.Identifier`
    :ivar kmsacme.messages.Status status:
    :ivar authorizations: URLs of authorizations.
    :vartype authorizations: `list` of `str`
    :ivar str certificate: URL to download certificate as a fullchain PEM.
    :ivar str finalize: URL to POST to to request issuance once all
        authorizations have "valid" status.
    :ivar datetime.datetime expires: When the order expires.
    :ivar ~.Error error: Any error that occurred during finalization, if applicable.
    """
    identifiers: List[Identifier] = jose.field('identifiers', omitempty=True)
    status: Status = jose.field('status', decoder=Status.from_json, omitempty=True)
    authorizations: List[str] = jose.field('authorizations', omitempty=True)
    certificate: str = jose.field('certificate', omitempty=True)
    finalize: str = jose.field('finalize', omitempty=True)
    expires: datetime.datetime = fields.rfc3339('expires', omitempty=True)
    error: Error = jose.field('error', omitempty=True, decoder=Error.from_json)

    # Mypy does not understand the josepy magic happening here, and falsely claims
    # that identifiers is redefined. Let's ignore the type check here.
    @identifiers.decoder  # type: ignore
    def identifiers(value: List[Dict[str, Any]]) -> Tuple[Identifier, ...]:  # pylint: disable=no-self-argument,missing-function-docstring
        return tuple(Identifier.from_json(identifier) for identifier in value)

    @authorizations.decoder  # type: ignore
    def authorizations(value: List[str]) -> Tuple[str, ...]:  # pylint: disable=no-self-argument,missing-function-docstring
        return tuple(value)


class NewOrder(Order):
    """New order."""


class OrderResource(Resource):
    """Order Resource.

    :ivar kmsacme.messages.Order body:
    :ivar str uri: Order URL, if the server sent a ``Location`` header.
    :ivar bytes csr: DER encoded CSR this Order will be finalized with.
        Kept locally, it is only sent at finalization.
    """
    body: Order = jose.field('body', decoder=Order.from_json)
    uri: Optional[str] = jose.field('uri', omitempty=True)
    csr: bytes = jose.field('csr', decoder=jose.decode_b64jose, encoder=jose.encode_b64jose)


class FinalizedOrderResource(Resource):
    """Finalized Order Resource.

    :ivar kmsacme.messages.Order body: Order body; ``body.certificate``
        is the download URL once ``body.status`` is valid.
    :ivar str uri: Order URL used to poll while the CA is processing.
    """
    body: Order = jose.field('body', decoder=Order.from_json)
    uri: Optional[str] = jose.field('uri', omitempty=True)
