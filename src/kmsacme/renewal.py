"""Functionality for renewing a batch of certificates"""
import datetime
import logging
import traceback
from typing import Callable
from typing import Dict
from typing import Iterable
from typing import List
from typing import NamedTuple
from typing import Optional

from kmsacme import crypto_util
from kmsacme import issuance

logger = logging.getLogger(__name__)

DEFAULT_RENEW_BEFORE_DAYS = 30


class RenewalTarget(NamedTuple):
    """A certificate to keep renewed.

    :ivar str name: Label used in reports, e.g. the certificate path.
    :ivar str domain: Domain to order.
    :ivar bytes csr: DER encoded CSR.
    :ivar bytes cert_pem: Current certificate, ``None`` if there is none yet.
    """
    name: str
    domain: str
    csr: bytes
    cert_pem: Optional[bytes] = None


class RenewalReport:
    """Outcome of `renew_all`.

    :ivar dict successes: name to newly issued certificate chain.
    :ivar dict failures: name to the exception that stopped its flow.
    :ivar list skipped: names of certificates not yet due.
    """

    def __init__(self) -> None:
        self.successes: Dict[str, str] = {}
        self.failures: Dict[str, Exception] = {}
        self.skipped: List[str] = []

    @property
    def attempted(self) -> List[str]:
        """Names of all targets a renewal was attempted for."""
        return list(self.successes) + list(self.failures)

    def describe(self) -> str:
        """Human readable summary, one line per certificate."""
        lines = []
        lines.extend(f'{name} (success)' for name in self.successes)
        lines.extend(f'{name} (failure: {error})' for name, error in self.failures.items())
        lines.extend(f'{name} (skipped)' for name in self.skipped)
        if not lines:
            return 'No renewals were attempted.'
        return "  " + "\n  ".join(lines)


def should_renew(cert_pem: Optional[bytes],
                 renew_before_days: int = DEFAULT_RENEW_BEFORE_DAYS,
                 now: Optional[datetime.datetime] = None) -> bool:
    """Return true if the certificate is missing or expires within the window.

    :param bytes cert_pem: PEM certificate (or chain), or ``None``.
    :param int renew_before_days: Size of the renewal window.
    :param datetime.datetime now: aware "current" time, for tests.

    """
    if cert_pem is None:
        return True
    remaining = crypto_util.time_until_expiry(cert_pem, now)
    return remaining <= datetime.timedelta(days=renew_before_days)


def renew_all(context: issuance.Context, targets: Iterable[RenewalTarget],
              renew_before_days: int = DEFAULT_RENEW_BEFORE_DAYS,
              force: bool = False,
              issue: Callable[[issuance.Context, str, bytes], str] = issuance.issue
              ) -> RenewalReport:
    """Renew every due certificate in ``targets``, one after another.

    A failing certificate is logged and recorded in the report; the
    remaining targets are still processed.

    :param .Context context: Shared by all flows.
    :param bool force: Renew even certificates that are not due.
    :param issue: Runs one issuance, `.issuance.issue` unless overridden.

    :rtype: RenewalReport

    """
    report = RenewalReport()
    for target in targets:
        try:
            if not force and not should_renew(target.cert_pem, renew_before_days):
                logger.info("Certificate %s not yet due for renewal", target.name)
                report.skipped.append(target.name)
                continue
            logger.info("Renewing certificate %s for %s", target.name, target.domain)
            report.successes[target.name] = issue(context, target.domain, target.csr)
        except Exception as e:  # pylint: disable=broad-except
            logger.error("Failed to renew certificate %s with error: %s", target.name, e)
            logger.debug("Traceback was:\n%s", traceback.format_exc())
            report.failures[target.name] = e
    return report
