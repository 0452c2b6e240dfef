"""Issuance of a single certificate.

`IssuanceFlow` drives one domain from the directory to the downloaded
certificate chain. Everything a flow needs is passed in through a
`Context`, built once per process and shared by flows; the replay
nonce lives only in the resources the flow passes from one step to
the next.

"""
import datetime
import enum
import logging
from typing import Optional

from kmsacme import client as acme_client
from kmsacme import errors
from kmsacme import kms
from kmsacme import token_store

logger = logging.getLogger(__name__)


class State(enum.Enum):
    """Progress of an `IssuanceFlow`."""
    START = 'start'
    DIRECTORY_FETCHED = 'directory fetched'
    ACCOUNT_READY = 'account ready'
    ORDER_CREATED = 'order created'
    AUTHORIZATION_FETCHED = 'authorization fetched'
    CHALLENGE_PUBLISHED = 'challenge published'
    CHALLENGE_ACCEPTED = 'challenge accepted'
    FINALIZED = 'finalized'
    CERTIFICATE_DOWNLOADED = 'certificate downloaded'
    FAILED = 'failed'

    @property
    def terminal(self) -> bool:
        """No further transition is possible."""
        return self in (State.CERTIFICATE_DOWNLOADED, State.FAILED)


class Context:
    """What every issuance flow shares.

    :ivar .ClientV2 client: ACME client, including the signing key and
        the challenge token store.
    :ivar str server: Directory URL.
    :ivar str email: Account contact, may be ``None``.
    :ivar int poll_timeout: Seconds to wait for validation and issuance.

    """

    def __init__(self, client: acme_client.ClientV2, server: str,
                 email: Optional[str] = None, poll_timeout: int = 90) -> None:
        self.client = client
        self.server = server
        self.email = email
        self.poll_timeout = poll_timeout

    @property
    def token_store(self) -> token_store.ChallengeTokenStore:
        """Store the http-01 validations are published in."""
        return self.client.token_store

    @classmethod
    def from_config(cls, config) -> 'Context':
        """Build the context described by a `.NamespaceConfig`.

        :raises .ConfigurationError: if the account key cannot be loaded.

        """
        key = kms.AccountKey(make_kms(config), config.key_id)
        net = acme_client.ClientNetwork(
            key, verify_ssl=not config.no_verify_ssl,
            user_agent=config.user_agent, timeout=config.network_timeout)
        return cls(acme_client.ClientV2(net, make_token_store(config)),
                   server=config.server, email=config.email,
                   poll_timeout=config.poll_timeout)


def make_kms(config) -> kms.KeyManagementService:
    """KMS selected by ``--kms``."""
    if config.kms == 'keyvault':
        return kms.KeyVaultService(config.vault_url)
    try:
        with open(config.account_key, 'rb') as key_file:
            return kms.LocalKeyService.from_pem(config.key_id, key_file.read())
    except (OSError, ValueError, TypeError, errors.SigningError) as error:
        raise errors.ConfigurationError(
            f'Unable to load account key {config.account_key}: {error}')


def make_token_store(config) -> token_store.ChallengeTokenStore:
    """File store in ``--challenge-dir`` if given, in-memory otherwise."""
    if config.challenge_dir:
        return token_store.FileTokenStore(config.challenge_dir)
    return token_store.MemoryTokenStore()


class IssuanceFlow:
    """Obtain one certificate.

    A flow object runs once. A failed flow ends in `State.FAILED`; to try
    again, create a new flow, which starts over from the directory.

    :ivar .Context context:
    :ivar .State state: Current state.

    """

    def __init__(self, context: Context) -> None:
        self.context = context
        self.state = State.START
        self.domain: Optional[str] = None
        self._token: Optional[str] = None

    def _advance(self, state: State) -> None:
        logger.info('%s: %s -> %s', self.domain, self.state.value, state.value)
        self.state = state

    def run(self, domain: str, csr: bytes) -> str:
        """Issue a certificate for ``domain``.

        :param str domain: DNS name to order.
        :param bytes csr: DER encoded CSR for ``domain``.

        :returns: Certificate chain exactly as sent by the CA.
        :rtype: str

        :raises .Error: whatever stopped the flow, after moving to
            `State.FAILED`.

        """
        if self.state is not State.START:
            raise errors.Error(f'Issuance flow already used ({self.state.value})')
        self.domain = domain
        try:
            return self._run(domain, csr)
        except Exception as error:
            logger.info('%s: failed in state %s: %s', domain, self.state.value, error)
            self._advance(State.FAILED)
            raise
        finally:
            if self._token is not None:
                self.context.token_store.delete(self._token)
                self._token = None

    def _run(self, domain: str, csr: bytes) -> str:
        client = self.context.client

        directory = client.fetch_directory(self.context.server)
        self._advance(State.DIRECTORY_FETCHED)

        account = client.new_account(directory, self.context.email, directory.nonce)
        self._advance(State.ACCOUNT_READY)

        order = client.new_order(account, directory, domain, csr, account.nonce)
        self._advance(State.ORDER_CREATED)

        authzr = client.fetch_authorization(order, account, order.nonce)
        self._advance(State.AUTHORIZATION_FETCHED)

        challb = client.http01_challenge(authzr)
        client.publish_http01(challb)
        self._token = challb.token
        self._advance(State.CHALLENGE_PUBLISHED)

        nonce = client.answer_challenge(challb, account, authzr.nonce)
        self._advance(State.CHALLENGE_ACCEPTED)

        deadline = datetime.datetime.now() + datetime.timedelta(
            seconds=self.context.poll_timeout)
        authzr = client.poll_authorization(authzr, account, nonce, deadline)
        finalized = client.finalize_order(order, account, authzr.nonce)
        finalized = client.poll_order(finalized, account, deadline)
        self._advance(State.FINALIZED)

        chain = client.download_certificate(finalized, account)
        self._advance(State.CERTIFICATE_DOWNLOADED)
        return chain


def issue(context: Context, domain: str, csr: bytes) -> str:
    """Run a fresh `IssuanceFlow` for ``domain``."""
    return IssuanceFlow(context).run(domain, csr)

