"""Crypto utilities: keys, CSRs and downloaded certificates."""
from datetime import datetime, timedelta, timezone
import ipaddress
import logging
import typing
from typing import List
from typing import Optional
from typing import Sequence
from typing import Union

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa, types
from cryptography.hazmat.primitives.serialization import Encoding
import josepy as jose

from acmeflow import errors

logger = logging.getLogger(__name__)

PrivateKey = Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey]
KeyLike = Union[PrivateKey, jose.JWK, bytes, str]


def create_rsa_key(bits: int = 2048) -> rsa.RSAPrivateKey:
    """Generate an RSA private key with public exponent 65537."""
    return rsa.generate_private_key(public_exponent=65537, key_size=bits)


def create_p256_key() -> ec.EllipticCurvePrivateKey:
    """Generate a NIST P-256 private key."""
    return ec.generate_private_key(ec.SECP256R1())


def create_p384_key() -> ec.EllipticCurvePrivateKey:
    """Generate a NIST P-384 private key."""
    return ec.generate_private_key(ec.SECP384R1())


def load_private_key_pem(pem: Union[bytes, str]) -> PrivateKey:
    """Load an unencrypted RSA or EC private key in PEM format.

    :raises .CryptoError: if the data is not such a key.

    """
    if isinstance(pem, str):
        pem = pem.encode('ascii')
    try:
        key = serialization.load_pem_private_key(pem, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as error:
        raise errors.CryptoError('Could not load private key: {0}'.format(error))
    if not isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        raise errors.CryptoError(f"Invalid private key type: {type(key)}")
    return key


def private_key_to_pem(key: KeyLike) -> bytes:
    """Serialize a private key as unencrypted PKCS#8 PEM."""
    return _private_key(key).private_bytes(
        encoding=Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption())


def _private_key(key: KeyLike) -> PrivateKey:
    if isinstance(key, (bytes, str)):
        return load_private_key_pem(key)
    if isinstance(key, jose.JWK):
        key = key.key
    if not isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        raise errors.CryptoError(f"Invalid private key type: {type(key)}")
    return key


def jwk_from_key(key: KeyLike) -> jose.JWK:
    """Wrap a private key (object, PEM or `jose.JWK`) as a `jose.JWK`.

    :raises .CryptoError: for key types other than RSA and EC.

    """
    if isinstance(key, (jose.JWKRSA, jose.JWKEC)):
        return key
    private_key = _private_key(key)
    if isinstance(private_key, rsa.RSAPrivateKey):
        return jose.JWKRSA(key=private_key)
    return jose.JWKEC(key=private_key)


def make_csr(
    private_key: KeyLike,
    domains: Optional[Sequence[str]] = None,
    must_staple: bool = False,
    ipaddrs: Optional[List[Union[ipaddress.IPv4Address, ipaddress.IPv6Address]]] = None,
    encoding: Encoding = Encoding.PEM,
) -> bytes:
    """Generate a CSR containing domains or IPs as subjectAltNames.

    :param private_key: Private key, as a key object, `jose.JWK` or in
        PEM PKCS#8 format.
    :param list domains: List of DNS names to include in subjectAltNames of CSR.
    :param bool must_staple: Whether to include the TLS Feature extension (aka
        OCSP Must Staple: https://tools.ietf.org/html/rfc7633).
    :param list ipaddrs: List of IPaddress(type ipaddress.IPv4Address or ipaddress.IPv6Address)
        names to include in subjectAltNames of CSR.
    :param encoding: ``Encoding.PEM`` or ``Encoding.DER``.

    :returns: Encoded Certificate Signing Request.

    """
    key = _private_key(private_key)
    if domains is None:
        domains = []
    if ipaddrs is None:
        ipaddrs = []
    if len(domains) + len(ipaddrs) == 0:
        raise ValueError(
            "At least one of domains or ipaddrs parameter need to be not empty"
        )

    builder = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([]))
        .add_extension(
            x509.SubjectAlternativeName(
                [x509.DNSName(d) for d in domains]
                + [x509.IPAddress(i) for i in ipaddrs]
            ),
            critical=False,
        )
    )
    if must_staple:
        builder = builder.add_extension(
            # "status_request" is the feature commonly known as OCSP
            # Must-Staple
            x509.TLSFeature([x509.TLSFeatureType.status_request]),
            critical=False,
        )

    csr = builder.sign(key, hashes.SHA256())
    return csr.public_bytes(encoding)


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
    # Only the first CN is included if there are several.
    return [cns[0]] + [d for d in dns_names if d != cns[0]]


# Helper function that can be mocked in unit tests
def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def make_self_signed_cert(private_key: types.CertificateIssuerPrivateKeyTypes,
                          domains: List[str],
                          not_before: Optional[datetime] = None,
                          validity: Optional[timedelta] = None,
                          extensions: Optional[List[x509.Extension]] = None,
                          ) -> x509.Certificate:
    """Generate new self-signed certificate.

    Used for the tls-alpn-01 validation certificate: pass the
    challenge's ``acmeIdentifier`` extension in ``extensions``.

    :param private_key: Key to sign with; its public half is certified.
    :type domains: `list` of `str`
    :param not_before: A datetime after which the cert is valid.
    :type not_before: `datetime.datetime`
    :param validity: Duration for which the cert will be valid. Defaults to 1
        week
    :type validity: `datetime.timedelta`
    :param extensions: List of additional extensions to include in the cert.
    :type extensions: `list` of `x509.Extension[x509.ExtensionType]`

    The first domain is set as the subject CN; all of them are put into
    the ``subjectAltName`` extension.
    """
    if not domains:
        raise ValueError("Must provide one or more hostnames for the cert.")

    builder = x509.CertificateBuilder()
    builder = builder.serial_number(x509.random_serial_number())

    if extensions is not None:
        for ext in extensions:
            builder = builder.add_extension(ext.value, ext.critical)

    name = x509.Name([x509.NameAttribute(x509.NameOID.COMMON_NAME, domains[0])])
    builder = builder.subject_name(name)
    builder = builder.issuer_name(name)
    builder = builder.add_extension(
        x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]),
        critical=False
    )

    if not_before is None:
        not_before = _now()
    if validity is None:
        validity = timedelta(seconds=7 * 24 * 60 * 60)
    builder = builder.not_valid_before(not_before)
    builder = builder.not_valid_after(not_before + validity)

    builder = builder.public_key(private_key.public_key())
    return builder.sign(private_key, hashes.SHA256())


class Certificate:
    """An issued certificate chain, with the key it was requested for.

    :ivar bytes private_key_pem: PEM of the certificate's private key, or
        ``None`` when the CSR was supplied by the caller.
    :ivar str fullchain_pem: Leaf certificate followed by its issuers.
    :ivar list alternative_fullchains_pem: Other chains offered by the
        authority, `list` of `str`.

    """

    def __init__(self, fullchain_pem: str, private_key_pem: Optional[bytes] = None,
                 alternative_fullchains_pem: Optional[List[str]] = None) -> None:
        self.fullchain_pem = fullchain_pem
        self.private_key_pem = private_key_pem
        self.alternative_fullchains_pem = list(alternative_fullchains_pem or [])

    def certificates(self) -> List[x509.Certificate]:
        """Parse the chain, leaf first.

        :raises .CryptoError: if the chain is not valid PEM.

        """
        try:
            return x509.load_pem_x509_certificates(self.fullchain_pem.encode('ascii'))
        except ValueError as error:
            raise errors.CryptoError('Could not parse certificate chain: {0}'.format(error))

    @property
    def certificate_pem(self) -> str:
        """PEM of the leaf certificate only."""
        return self.certificates()[0].public_bytes(Encoding.PEM).decode('ascii')

    @property
    def certificate_der(self) -> bytes:
        """DER of the leaf certificate, e.g. for revocation."""
        return self.certificates()[0].public_bytes(Encoding.DER)

    def names(self) -> List[str]:
        """DNS names the leaf certificate is valid for."""
        leaf = self.certificates()[0]
        return get_names_from_subject_and_extensions(leaf.subject, leaf.extensions)

    def valid_days_left(self, now: Optional[datetime] = None) -> int:
        """Whole days until the leaf certificate expires (negative once expired)."""
        if now is None:
            now = _now()
        return (self.certificates()[0].not_valid_after_utc - now).days

    def __eq__(self, other: object) -> bool:
        return (isinstance(other, Certificate)
                and other.fullchain_pem == self.fullchain_pem
                and other.private_key_pem == self.private_key_pem)

    def __hash__(self) -> int:
        return hash((self.fullchain_pem, self.private_key_pem))

    def __repr__(self) -> str:
        # Must not parse the chain.
        return '{0}(certificates={1}, private_key={2})'.format(
            self.__class__.__name__, self.fullchain_pem.count('-----BEGIN CERTIFICATE-----'),
            self.private_key_pem is not None)
