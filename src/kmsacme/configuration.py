"""kmsacme user-supplied configuration."""
import copy
import os
from typing import Optional
from urllib import parse

from kmsacme import constants
from kmsacme import errors


class NamespaceConfig:
    """Configuration wrapper around :class:`argparse.Namespace`.

    Attributes not defined here are delegated to the wrapped namespace,
    so every command line option is available as ``config.<dest>``.
    ``logs_dir`` and ``challenge_dir`` are made absolute.

    :ivar namespace: Namespace typically produced by
        :meth:`argparse.ArgumentParser.parse_args`.
    :type namespace: :class:`argparse.Namespace`

    """

    def __init__(self, namespace):
        object.__setattr__(self, 'namespace', namespace)

        for name in ('logs_dir', 'challenge_dir'):
            if getattr(self.namespace, name, None):
                setattr(self.namespace, name, os.path.abspath(getattr(self.namespace, name)))

        # Check command line parameters sanity, and error out in case of problem.
        check_config_sanity(self)

    # Delegate any attribute not explicitly defined to the underlying namespace object.

    def __getattr__(self, name):
        return getattr(self.namespace, name)

    def __setattr__(self, name, value):
        setattr(self.namespace, name, value)

    @property
    def server(self) -> str:
        return self.namespace.server

    @property
    def email(self) -> Optional[str]:
        return self.namespace.email

    @property
    def key_id(self) -> str:
        return self.namespace.key_id

    @property
    def kms(self) -> str:
        return self.namespace.kms

    @property
    def poll_timeout(self) -> int:
        return self.namespace.poll_timeout

    @property
    def network_timeout(self) -> int:
        return self.namespace.network_timeout

    @property
    def no_verify_ssl(self) -> bool:
        return self.namespace.no_verify_ssl

    @property
    def challenge_dir(self) -> Optional[str]:
        return self.namespace.challenge_dir

    @property
    def server_host(self):
        """Host name of ``server``, used in log messages."""
        return parse.urlparse(self.namespace.server).netloc

    # Magic methods

    def __deepcopy__(self, _memo):
        new_ns = copy.deepcopy(self.namespace)
        return type(self)(new_ns)


def check_config_sanity(config):
    """Validate command line options and display error message if
    requirements are not met.

    :param config: NamespaceConfig instance holding user configuration
    :type config: :class:`kmsacme.configuration.NamespaceConfig`

    :raises .ConfigurationError:

    """
    parsed = parse.urlparse(config.server or '')
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise errors.ConfigurationError(
            "--server must be an http(s) URL, got {0!r}".format(config.server))

    if config.kms not in constants.KMS_TYPES:
        raise errors.ConfigurationError(
            "Unknown KMS {0!r}, expected one of: {1}".format(
                config.kms, ', '.join(constants.KMS_TYPES)))

    # serve only reads the token store and needs no account key
    if getattr(config.namespace, 'verb', None) != 'serve':
        if not config.key_id:
            raise errors.ConfigurationError("--key-id is required")
        if config.kms == 'local' and not config.namespace.account_key:
            raise errors.ConfigurationError("--account-key is required with --kms local")
        if config.kms == 'keyvault' and not config.namespace.vault_url:
            raise errors.ConfigurationError("--vault-url is required with --kms keyvault")

    for name in ('poll_timeout', 'network_timeout'):
        if getattr(config, name) <= 0:
            raise errors.ConfigurationError(
                "--{0} must be positive".format(name.replace('_', '-')))

    if config.namespace.renew_before_days < 0:
        raise errors.ConfigurationError("--renew-before-days must not be negative")

    _check_verb_arguments(config)


def _check_verb_arguments(config):
    verb = getattr(config.namespace, 'verb', None)
    targets = getattr(config.namespace, 'targets', None) or []
    if verb == 'issue':
        if len(targets) != 1:
            raise errors.ConfigurationError("issue takes exactly one domain")
        if not (config.namespace.csr and config.namespace.out):
            raise errors.ConfigurationError("issue requires --csr and --out")
    elif verb == 'renew':
        if not targets:
            raise errors.ConfigurationError("renew requires at least one certificate")
    elif verb == 'serve':
        if targets:
            raise errors.ConfigurationError("serve does not take any arguments")
        # an in-memory store would be empty in this process
        if not config.namespace.challenge_dir:
            raise errors.ConfigurationError("serve requires --challenge-dir")
    if not 0 <= config.namespace.http01_port <= 65535:
        raise errors.ConfigurationError(
            "Invalid --http-01-port {0}".format(config.namespace.http01_port))
