"""Test utilities.

.. warning:: This module is not part of the public API.

Keys are generated once per test session instead of being loaded from
vectors, since nothing here depends on their exact value except the
RFC 7638 example key.

"""
import functools

from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric import rsa
import josepy as jose

from acmeflow import messages

# RFC 7638 section 3.1 example key; its thumbprint is THUMBPRINT_RFC7638.
RFC7638_JWK = {
    'kty': 'RSA',
    'e': 'AQAB',
    'n': '0vx7agoebGcQSuuPiLJXZptN9nndrQmbXEps2aiAFbWhM78LhWx4cbbfAAtVT86zwu1'
         'RK7aPFFxuhDR1L6tSoc_BJECPebWKRXjBZCiFV4n3oknjhMstn64tZ_2W-5JsGY4Hc5n9y'
         'BXArwl93lqt7_RN5w6Cf0h4QyQ5v-65YGjQR0_FDW2QvzqY368QQMicAtaSqzs8KJZgnY'
         'b9c7d0zgdAZHzu6qMQvRL5hajrn1n91CbOpbISD08qNLyrdkt-bFTWhAI4vMQFh6WeZu0'
         'fM4lFd2NcRwr3XPksINHaQ-G_xBniIqbw0Ls1jF44-csFCur-kEgU8awapJzKnqDKgw',
}
THUMBPRINT_RFC7638 = 'NzbLsXh8uDCcd-6MNwXF4W_7noWXFZAfHkxZsRGC9Xs'


def load_rfc7638_jwk() -> jose.JWK:
    """Public RSA key from RFC 7638."""
    return jose.JWK.from_json(RFC7638_JWK)


@functools.lru_cache(maxsize=None)
def rsa_private_key() -> rsa.RSAPrivateKey:
    """Session-wide 2048 bit RSA key."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@functools.lru_cache(maxsize=None)
def ec_private_key(curve_name: str = 'secp256r1') -> ec.EllipticCurvePrivateKey:
    """Session-wide EC key on the named curve."""
    curves = {
        'secp256r1': ec.SECP256R1,
        'secp384r1': ec.SECP384R1,
        'secp521r1': ec.SECP521R1,
    }
    return ec.generate_private_key(curves[curve_name]())


def rsa_jwk() -> jose.JWKRSA:
    return jose.JWKRSA(key=rsa_private_key())


def ec_jwk(curve_name: str = 'secp256r1') -> jose.JWKEC:
    return jose.JWKEC(key=ec_private_key(curve_name))


def nonce(value: bytes = b'nonce') -> str:
    """A syntactically valid replay nonce."""
    return jose.b64encode(value).decode()


def problem(code: str, **kwargs) -> messages.Error:
    """Problem document carrying the ACME error ``code``."""
    return messages.Error(typ=messages.ERROR_PREFIX + code, **kwargs)
