"""ACME-specific JWS.

ACME requests are flattened JWS objects with a protected header that
carries ``nonce``, ``url`` and either ``kid`` or ``jwk``. The private
key is not available to this process, so instead of josepy's
``JWS.sign`` (which needs the key material) the signing input is built
here and handed to a `.kms.AccountKey`.
"""
import json
import logging
from typing import Any
from typing import Optional

import josepy as jose

from kmsacme import errors
from kmsacme import kms
from kmsacme import util

logger = logging.getLogger(__name__)


class Header(jose.Header):
    """ACME-specific JOSE Header. Implements nonce, kid, and url.
    """
    nonce: Optional[str] = jose.field('nonce', omitempty=True)
    kid: Optional[str] = jose.field('kid', omitempty=True)  # type: ignore[assignment]
    url: Optional[str] = jose.field('url', omitempty=True)


def _dumps(payload: Any) -> str:
    if isinstance(payload, jose.JSONDeSerializable):
        return payload.json_dumps(indent=2)
    return json.dumps(payload, indent=2)


class JWS(jose.JSONObjectWithFields):
    """Flattened JWS request body.

    :ivar str protected: base64url encoded protected header.
    :ivar str payload: base64url encoded payload, empty string for
        POST-as-GET requests.
    :ivar str signature: base64url encoded RS256 signature.

    """
    protected: str = jose.field('protected')
    payload: str = jose.field('payload')
    signature: str = jose.field('signature')

    @property
    def signing_input(self) -> bytes:
        """Bytes the signature is computed over."""
        return f'{self.protected}.{self.payload}'.encode('ascii')

    @property
    def header(self) -> Header:
        """Decoded protected header."""
        return Header.json_loads(jose.b64decode(self.protected))

    @classmethod
    def sign(cls, payload: Any, key: kms.AccountKey, nonce: str, url: str,
             kid: Optional[str] = None) -> 'JWS':
        """Build and sign a request body.

        :param payload: ``None`` for an empty payload (POST-as-GET),
            otherwise a josepy object or anything `json.dumps` accepts.
        :param .AccountKey key: Account key used for signing.
        :param str nonce: Replay nonce, consumed by this request.
        :param str url: Request URL.
        :param str kid: Account URL. Per ACME spec, jwk and kid are
            mutually exclusive, so the account's jwk is only embedded
            when ``kid`` is not provided (new account requests).

        :raises .SigningError: if serialization or signing fails.

        """
        try:
            header = Header(alg=key.alg, nonce=nonce, url=url, kid=kid,
                            jwk=key.public_jwk() if kid is None else None)
            protected = util.b64encode(header.json_dumps().encode('utf-8'))
            if payload is None:
                payload64 = ''
            else:
                payload_json = _dumps(payload)
                logger.debug('JWS payload:\n%s', payload_json)
                payload64 = util.b64encode(payload_json.encode('utf-8'))
        except (TypeError, ValueError, jose.SerializationError) as error:
            raise errors.SigningError(f'Unable to serialize request to {url}: {error}')

        signing_input = f'{protected}.{payload64}'.encode('ascii')
        signature = key.sign(signing_input)
        return cls(protected=protected, payload=payload64,
                   signature=util.b64encode(signature))
