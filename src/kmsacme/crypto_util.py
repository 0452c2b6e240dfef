"""Crypto utilities."""
import enum
from datetime import datetime, timezone
import logging
import typing
from typing import List
from typing import Optional
from typing import Set
from typing import Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import dsa, rsa, ec, ed25519, ed448
from cryptography.hazmat.primitives.serialization import Encoding

logger = logging.getLogger(__name__)


class Format(enum.IntEnum):
    """File format to be used when parsing or serializing X.509 structures."""
    DER = 2
    PEM = 1

    def to_cryptography_encoding(self) -> Encoding:
        """Converts the Format to the corresponding cryptography `Encoding`.
        """
        if self == Format.DER:
            return Encoding.DER
        else:
            return Encoding.PEM


# Due to a mypy bug, we can't use Union[] types in isinstance expressions
# without causing false mypy errors, so the type collection is a tuple.
CertificateIssuerPrivateKeyTypesTpl = (
    dsa.DSAPrivateKey,
    rsa.RSAPrivateKey,
    ec.EllipticCurvePrivateKey,
    ed25519.Ed25519PrivateKey,
    ed448.Ed448PrivateKey,
)


def make_csr(
    private_key_pem: bytes,
    domains: Union[Set[str], List[str]],
    fmt: Format = Format.PEM,
) -> bytes:
    """Generate a CSR containing domains as subjectAltNames.

    :param buffer private_key_pem: Private key, in PEM PKCS#8 format.
    :param list domains: List of DNS names to include in subjectAltNames of CSR.
    :param Format fmt: Encoding of the returned CSR.

    :returns: buffer encoded Certificate Signing Request.

    """
    private_key = serialization.load_pem_private_key(private_key_pem, password=None)
    if not isinstance(private_key, CertificateIssuerPrivateKeyTypesTpl):
        raise ValueError(f"Invalid private key type: {type(private_key)}")
    if not domains:
        raise ValueError("At least one domain is required")

    builder = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([]))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]),
            critical=False,
        )
    )

    csr = builder.sign(private_key, hashes.SHA256())
    return csr.public_bytes(fmt.to_cryptography_encoding())


def load_csr(csr: bytes) -> x509.CertificateSigningRequest:
    """Load a CSR given in either PEM or DER form.

    :raises ValueError: if ``csr`` cannot be parsed.

    """
    if csr.lstrip().startswith(b'-----BEGIN'):
        return x509.load_pem_x509_csr(csr)
    return x509.load_der_x509_csr(csr)


def csr_to_der(csr: bytes) -> bytes:
    """Return the DER encoding of a PEM or DER CSR.

    ACME finalization sends the DER form, base64url encoded.

    """
    return load_csr(csr).public_bytes(Encoding.DER)


def get_names_from_subject_and_extensions(
    subject: x509.Name, exts: x509.Extensions
) -> List[str]:
    """Gets all DNS SAN names as well as the first Common Name from subject.

    :param subject: Name of the x509 object, which may include Common Name
    :type subject: `cryptography.x509.Name`
    :param exts: Extensions of the x509 object, which may include SANs
    :type exts: `cryptography.x509.Extensions`

    :returns: List of DNS Subject Alternative Names and first Common Name
    :rtype: `list` of `str`
    """
    # We know these are always `str` because `bytes` is only possible for
    # other OIDs.
    cns = [
        typing.cast(str, c.value)
        for c in subject.get_attributes_for_oid(x509.NameOID.COMMON_NAME)
    ]
    try:
        san_ext = exts.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        dns_names = []
    else:
        dns_names = san_ext.value.get_values_for_type(x509.DNSName)

    if not cns:
        return dns_names
    else:
        # We only include the first CN, if there are multiple.
        return [cns[0]] + [d for d in dns_names if d != cns[0]]


def get_names_from_csr(csr: bytes) -> List[str]:
    """Get the DNS names a PEM or DER CSR asks for."""
    req = load_csr(csr)
    return get_names_from_subject_and_extensions(req.subject, req.extensions)


def load_certificate(cert_pem: bytes) -> x509.Certificate:
    """Load the first certificate of a PEM chain."""
    return x509.load_pem_x509_certificate(cert_pem)


def notAfter(cert_pem: bytes) -> datetime:  # pylint: disable=invalid-name
    """When does the certificate expire?

    :param bytes cert_pem: PEM encoded certificate or chain, the first
        certificate is the one looked at.

    :returns: timezone aware expiry time
    :rtype: :class:`datetime.datetime`

    """
    return load_certificate(cert_pem).not_valid_after_utc


# Helper function that can be mocked in unit tests
def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def time_until_expiry(cert_pem: bytes, now: Optional[datetime] = None):
    """Time left before the certificate expires, negative once expired."""
    return notAfter(cert_pem) - (now or _now())
