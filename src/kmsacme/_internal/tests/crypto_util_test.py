"""Tests for kmsacme.crypto_util."""
import datetime
import sys
import unittest
from unittest import mock

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.serialization import Encoding
import pytest

from kmsacme._internal.tests import test_util


class MakeCSRTest(unittest.TestCase):
    """Test for kmsacme.crypto_util.make_csr."""

    def test_make_csr(self):
        from kmsacme.crypto_util import make_csr
        csr_pem = make_csr(test_util.key_pem(), ['a.example', 'b.example'])
        assert b'--BEGIN CERTIFICATE REQUEST--' in csr_pem
        csr = x509.load_pem_x509_csr(csr_pem)
        assert csr.is_signature_valid
        assert isinstance(csr.signature_hash_algorithm, hashes.SHA256)
        san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        assert san.value.get_values_for_type(x509.DNSName) == ['a.example', 'b.example']

    def test_make_csr_der(self):
        from kmsacme.crypto_util import Format
        from kmsacme.crypto_util import make_csr
        csr_der = make_csr(test_util.key_pem(), ['a.example'], fmt=Format.DER)
        assert x509.load_der_x509_csr(csr_der).subject == x509.Name([])

    def test_make_csr_without_domains(self):
        from kmsacme.crypto_util import make_csr
        with pytest.raises(ValueError):
            make_csr(test_util.key_pem(), [])


class LoadCSRTest(unittest.TestCase):
    """Tests for CSR loading helpers."""

    def setUp(self):
        self.der = test_util.make_csr_der('example.com')
        self.pem = x509.load_der_x509_csr(self.der).public_bytes(Encoding.PEM)

    def test_csr_to_der(self):
        from kmsacme.crypto_util import csr_to_der
        assert csr_to_der(self.pem) == self.der
        assert csr_to_der(self.der) == self.der

    def test_garbage(self):
        from kmsacme.crypto_util import csr_to_der
        with pytest.raises(ValueError):
            csr_to_der(b'garbage')
        with pytest.raises(ValueError):
            csr_to_der(b'-----BEGIN CERTIFICATE REQUEST-----\nAAAA\n')

    def test_get_names_from_csr(self):
        from kmsacme.crypto_util import get_names_from_csr
        assert get_names_from_csr(self.der) == ['example.com']
        assert get_names_from_csr(self.pem) == ['example.com']


class GetNamesFromSubjectAndExtensionsTest(unittest.TestCase):
    """Tests for kmsacme.crypto_util.get_names_from_subject_and_extensions."""

    def test_cn_first_and_deduplicated(self):
        from kmsacme.crypto_util import get_names_from_subject_and_extensions
        cert = x509.load_pem_x509_certificate(test_util.make_cert(
            'example.com', datetime.datetime(2030, 1, 1, tzinfo=datetime.timezone.utc)))
        assert get_names_from_subject_and_extensions(cert.subject, cert.extensions) == \
            ['example.com']

    def test_no_san(self):
        from kmsacme.crypto_util import get_names_from_subject_and_extensions
        subject = x509.Name([x509.NameAttribute(x509.NameOID.COMMON_NAME, 'cn.example')])
        assert get_names_from_subject_and_extensions(subject, x509.Extensions([])) == \
            ['cn.example']


class NotAfterTest(unittest.TestCase):
    """Tests for kmsacme.crypto_util.notAfter and time_until_expiry."""

    def setUp(self):
        self.not_after = datetime.datetime(2030, 1, 1, tzinfo=datetime.timezone.utc)
        self.cert_pem = test_util.make_cert('example.com', self.not_after)

    def test_not_after(self):
        from kmsacme.crypto_util import notAfter
        assert notAfter(self.cert_pem) == self.not_after

    def test_chain_uses_first_certificate(self):
        from kmsacme.crypto_util import notAfter
        other = test_util.make_cert(
            'example.com', datetime.datetime(2031, 1, 1, tzinfo=datetime.timezone.utc))
        assert notAfter(self.cert_pem + other) == self.not_after

    def test_time_until_expiry(self):
        from kmsacme.crypto_util import time_until_expiry
        now = self.not_after - datetime.timedelta(days=3)
        assert time_until_expiry(self.cert_pem, now) == datetime.timedelta(days=3)

    def test_time_until_expiry_now(self):
        from kmsacme.crypto_util import time_until_expiry
        now = self.not_after + datetime.timedelta(days=1)
        with mock.patch('kmsacme.crypto_util._now', return_value=now):
            assert time_until_expiry(self.cert_pem) == datetime.timedelta(days=-1)


if __name__ == '__main__':
    sys.exit(pytest.main(sys.argv[1:] + [__file__]))  # pragma: no cover
