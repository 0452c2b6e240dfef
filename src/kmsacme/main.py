"""kmsacme main entry point."""
import contextlib
import logging
import os
import sys
import tempfile
import traceback
from typing import Iterator
from typing import List
from typing import Optional
from typing import Union

from kmsacme import cli
from kmsacme import constants
from kmsacme import crypto_util
from kmsacme import errors
from kmsacme import issuance
from kmsacme import log
from kmsacme import renewal
from kmsacme import standalone
from kmsacme import token_store

logger = logging.getLogger(__name__)


def _write_atomically(path: str, data: str) -> None:
    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix='.kmsacme-')
    try:
        with os.fdopen(fd, 'w') as tmp_file:
            tmp_file.write(data)
        os.replace(tmp_path, path)
    except BaseException:
        os.unlink(tmp_path)
        raise


def load_target(cert_path: str) -> renewal.RenewalTarget:
    """Load ``NAME.pem`` and the ``NAME.csr`` kept next to it.

    :raises .Error: if either file is missing or unreadable.

    """
    if not cert_path.endswith(constants.CERT_SUFFIX):
        raise errors.Error(f'{cert_path} does not end with {constants.CERT_SUFFIX}')
    csr_path = cert_path[:-len(constants.CERT_SUFFIX)] + constants.CSR_SUFFIX
    try:
        with open(csr_path, 'rb') as csr_file:
            csr = crypto_util.csr_to_der(csr_file.read())
        domains = crypto_util.get_names_from_csr(csr)
        cert_pem: Optional[bytes] = None
        if os.path.exists(cert_path):
            with open(cert_path, 'rb') as cert_file:
                cert_pem = cert_file.read()
    except (OSError, ValueError) as error:
        raise errors.Error(f'Unable to load {cert_path}: {error}')
    if not domains:
        raise errors.Error(f'{csr_path} does not name any domain')
    return renewal.RenewalTarget(name=cert_path, domain=domains[0], csr=csr, cert_pem=cert_pem)


@contextlib.contextmanager
def http01_responder(config, store: token_store.ChallengeTokenStore) -> Iterator[None]:
    """Serve ``store`` on ``--http-01-port`` for the duration of a run.

    Only needed when validations are kept in memory. With
    ``--challenge-dir`` they are files, served by ``kmsacme serve`` or
    any web server, so nothing is started.

    :raises .StandaloneBindError: if the port cannot be bound.

    """
    if config.challenge_dir:
        yield
        return
    try:
        server = standalone.HTTP01Server((config.http01_address, config.http01_port), store)
    except OSError as error:
        raise errors.StandaloneBindError(error, config.http01_port)
    server.start()
    try:
        yield
    finally:
        logger.debug("Stopping http-01 responder on port %d...", server.port)
        server.stop()


def issue(config) -> Optional[str]:
    """Obtain a certificate for a single domain and write it to ``--out``."""
    domain = config.targets[0]
    try:
        with open(config.csr, 'rb') as csr_file:
            csr = crypto_util.csr_to_der(csr_file.read())
    except (OSError, ValueError) as error:
        raise errors.Error(f'Unable to load CSR {config.csr}: {error}')
    context = issuance.Context.from_config(config)
    with http01_responder(config, context.token_store):
        chain = issuance.issue(context, domain, csr)
    _write_atomically(config.out, chain)
    print(f'Certificate for {domain} saved at {config.out}')
    return None


def renew(config) -> Optional[str]:
    """Renew the certificates named on the command line that are due."""
    context = issuance.Context.from_config(config)
    targets = []
    load_failures = []
    for cert_path in config.targets:
        try:
            targets.append(load_target(cert_path))
        except errors.Error as error:
            logger.error('%s. Skipping.', error)
            load_failures.append(cert_path)

    with http01_responder(config, context.token_store):
        report = renewal.renew_all(context, targets,
                                   renew_before_days=config.renew_before_days,
                                   force=config.force_renewal)
    for cert_path, chain in report.successes.items():
        _write_atomically(cert_path, chain)
    print(report.describe())

    failed = len(report.failures) + len(load_failures)
    if failed:
        return f'{failed} renew failure(s), {len(report.successes)} success(es)'
    return None


def serve(config) -> Optional[str]:
    """Run the http-01 responder until interrupted."""
    store = issuance.make_token_store(config)
    try:
        server = standalone.HTTP01Server((config.http01_address, config.http01_port), store)
    except OSError as error:
        raise errors.StandaloneBindError(error, config.http01_port)
    print(f'Serving http-01 validations on port {server.port}')
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info('Exiting due to user request.')
    finally:
        server.server_close()
    return None


VERBS = {
    "issue": issue,
    "renew": renew,
    "serve": serve,
}


def main(cli_args: Optional[List[str]] = None) -> Optional[Union[str, int]]:
    """Run kmsacme.

    :param cli_args: command line to kmsacme, defaults to ``sys.argv[1:]``
    :type cli_args: `list` of `str`

    :returns: value for `sys.exit` about the exit status of kmsacme
    :rtype: `str` or `int` or `None`

    """
    if cli_args is None:
        cli_args = sys.argv[1:]

    try:
        config = cli.prepare_and_parse_args(cli_args)
        log.setup_logging(config)
    except errors.Error as error:
        return f'Error: {error}'

    try:
        return VERBS[config.verb](config)
    except errors.Error as error:
        logger.debug('Exiting abnormally:\n%s', traceback.format_exc())
        logger.error(str(error))
        return 1


if __name__ == "__main__":
    sys.exit(main())  # pragma: no cover
