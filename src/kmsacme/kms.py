"""Key Management Service adapters.

The ACME account key never leaves the KMS. This module defines the
small surface the rest of the package needs from a KMS (public key
retrieval and signing), two implementations of it, and `AccountKey`,
which binds a KMS to one key id and is what the JWS code signs with.

"""
import abc
import collections
import hashlib
import logging
from typing import Any
from typing import Dict
from typing import Optional

from azure.core.exceptions import AzureError
from azure.identity import DefaultAzureCredential
from azure.keyvault.keys import KeyClient
from azure.keyvault.keys import KeyType
from azure.keyvault.keys.crypto import CryptographyClient
from azure.keyvault.keys.crypto import SignatureAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric import utils as asym_utils
import josepy as jose

from kmsacme import errors

logger = logging.getLogger(__name__)

RS256 = 'RS256'

PublicKey = collections.namedtuple('PublicKey', 'modulus exponent')
"""RSA public key as exported by a KMS, big-endian ``modulus`` and ``exponent`` bytes."""


def _int_to_bytes(value: int) -> bytes:
    return value.to_bytes((value.bit_length() + 7) // 8 or 1, 'big')


class KeyManagementService(metaclass=abc.ABCMeta):
    """Holds private keys and signs with them without revealing them."""

    expects_digest = True
    """Whether `sign` takes a SHA-256 digest (True) or the raw message (False)."""

    @abc.abstractmethod
    def get_public_key(self, key_id: str) -> PublicKey:
        """Return the public half of ``key_id``.

        :raises .SigningError: if the key cannot be retrieved.

        """

    @abc.abstractmethod
    def sign(self, key_id: str, algorithm: str, message: bytes) -> bytes:
        """Sign ``message`` with ``key_id``.

        :param str algorithm: JWA name, only ``RS256`` is used.
        :param bytes message: SHA-256 digest or raw bytes, see
            `expects_digest`.

        :returns: Raw signature bytes.
        :raises .SigningError: if signing fails.

        """


class LocalKeyService(KeyManagementService):
    """In-process KMS backed by `cryptography` RSA keys.

    Useful for tests and for hosts that keep the account key on disk.

    :param dict keys: Mapping of key id to `rsa.RSAPrivateKey`.
    :param bool expects_digest: Emulate a KMS whose sign operation takes
        a precomputed digest.

    """

    def __init__(self, keys: Optional[Dict[str, rsa.RSAPrivateKey]] = None,
                 expects_digest: bool = False) -> None:
        self._keys: Dict[str, rsa.RSAPrivateKey] = dict(keys or {})
        self.expects_digest = expects_digest

    @classmethod
    def from_pem(cls, key_id: str, key_pem: bytes,
                 expects_digest: bool = False) -> 'LocalKeyService':
        """Load a single PEM encoded RSA private key under ``key_id``."""
        key = serialization.load_pem_private_key(key_pem, password=None)
        if not isinstance(key, rsa.RSAPrivateKey):
            raise errors.SigningError(f'Account key {key_id} is not an RSA key')
        return cls({key_id: key}, expects_digest=expects_digest)

    def _key(self, key_id: str) -> rsa.RSAPrivateKey:
        try:
            return self._keys[key_id]
        except KeyError:
            raise errors.SigningError(f'Unknown key {key_id!r}')

    def get_public_key(self, key_id: str) -> PublicKey:
        numbers = self._key(key_id).public_key().public_numbers()
        return PublicKey(modulus=_int_to_bytes(numbers.n), exponent=_int_to_bytes(numbers.e))

    def sign(self, key_id: str, algorithm: str, message: bytes) -> bytes:
        if algorithm != RS256:
            raise errors.SigningError(f'Unsupported signing algorithm {algorithm}')
        key = self._key(key_id)
        if self.expects_digest:
            return key.sign(message, padding.PKCS1v15(), asym_utils.Prehashed(hashes.SHA256()))
        return key.sign(message, padding.PKCS1v15(), hashes.SHA256())


class KeyVaultService(KeyManagementService):
    """Azure Key Vault keys, through the Azure SDK.

    Key Vault's sign operation takes the digest of the message, so
    ``expects_digest`` is always True here. Credentials come from
    `azure.identity.DefaultAzureCredential` (environment, managed
    identity, Azure CLI login, ...), which refreshes its tokens itself.

    :param str vault_url: e.g. ``https://myvault.vault.azure.net``
    :param credential: Azure credential, `DefaultAzureCredential` if
        not given.
    :param key_client: `KeyClient` to use instead of building one.

    """
    expects_digest = True

    ALGORITHMS = {
        RS256: SignatureAlgorithm.rs256,
    }

    def __init__(self, vault_url: str, credential: Optional[Any] = None,
                 key_client: Optional[KeyClient] = None) -> None:
        self.vault_url = vault_url.rstrip('/')
        if key_client is None:
            key_client = KeyClient(vault_url=self.vault_url,
                                   credential=credential or DefaultAzureCredential())
        self.key_client = key_client
        self._crypto_clients: Dict[str, CryptographyClient] = {}

    def _crypto_client(self, key_id: str) -> CryptographyClient:
        if key_id not in self._crypto_clients:
            self._crypto_clients[key_id] = self.key_client.get_cryptography_client(key_id)
        return self._crypto_clients[key_id]

    def get_public_key(self, key_id: str) -> PublicKey:
        logger.debug('Fetching key %s from Key Vault %s', key_id, self.vault_url)
        try:
            key = self.key_client.get_key(key_id)
        except AzureError as error:
            raise errors.SigningError(f'Key Vault get_key {key_id} failed: {error}')
        if key.key_type not in (KeyType.rsa, KeyType.rsa_hsm):
            raise errors.SigningError(f'Key Vault key {key_id} is not an RSA key')
        if not key.key.n or not key.key.e:
            raise errors.SigningError(f'Key Vault key {key_id} has no public numbers')
        return PublicKey(modulus=bytes(key.key.n), exponent=bytes(key.key.e))

    def sign(self, key_id: str, algorithm: str, message: bytes) -> bytes:
        try:
            sig_alg = self.ALGORITHMS[algorithm]
        except KeyError:
            raise errors.SigningError(f'Unsupported signing algorithm {algorithm}')
        try:
            result = self._crypto_client(key_id).sign(sig_alg, message)
        except AzureError as error:
            raise errors.SigningError(f'Key Vault sign with {key_id} failed: {error}')
        return result.signature


class AccountKey:
    """ACME account key held by a KMS.

    :ivar KeyManagementService kms:
    :ivar str key_id:

    """
    alg = jose.RS256

    def __init__(self, kms: KeyManagementService, key_id: str) -> None:
        self.kms = kms
        self.key_id = key_id
        self._jwk: Optional[jose.JWKRSA] = None

    def public_jwk(self) -> jose.JWKRSA:
        """Public account key as a JWK, fetched from the KMS once.

        :raises .SigningError: if the KMS cannot provide the key.

        """
        if self._jwk is None:
            try:
                public_key = self.kms.get_public_key(self.key_id)
                numbers = rsa.RSAPublicNumbers(
                    e=int.from_bytes(public_key.exponent, 'big'),
                    n=int.from_bytes(public_key.modulus, 'big'))
                self._jwk = jose.JWKRSA(key=numbers.public_key())
            except errors.SigningError:
                raise
            except Exception as error:  # pylint: disable=broad-except
                raise errors.SigningError(
                    f'Unable to retrieve public key {self.key_id}: {error}') from error
            logger.debug('Retrieved public key %s from KMS', self.key_id)
        return self._jwk

    def thumbprint(self) -> bytes:
        """SHA-256 thumbprint of the canonical JWK (RFC 7638)."""
        return self.public_jwk().thumbprint(hash_function=hashes.SHA256)

    def sign(self, signing_input: bytes) -> bytes:
        """Produce the RS256 signature of a JWS signing input.

        :raises .SigningError:

        """
        if self.kms.expects_digest:
            message = hashlib.sha256(signing_input).digest()
        else:
            message = signing_input
        try:
            return self.kms.sign(self.key_id, self.alg.name, message)
        except errors.SigningError:
            raise
        except Exception as error:  # pylint: disable=broad-except
            raise errors.SigningError(f'KMS failed to sign with {self.key_id}: {error}') from error
