"""ACME-specific JWS.

The JWS implementation in josepy only implements the base JOSE standard. In
order to support the header fields defined in ACME (``nonce``, ``url`` and
``kid``), this module defines ACME-specific classes that layer on top of
josepy, plus the `Identity` every signed request is made with.
"""
import json
import logging
from typing import Any
from typing import Dict
from typing import Optional

import josepy as jose

from acmeflow import errors

logger = logging.getLogger(__name__)

_EC_CURVE_ALGS = {
    'secp256r1': jose.ES256,
    'secp384r1': jose.ES384,
    'secp521r1': jose.ES512,
}

_HMAC_ALGS = {
    'HS256': jose.HS256,
    'HS384': jose.HS384,
    'HS512': jose.HS512,
}


class Header(jose.Header):
    """ACME-specific JOSE Header. Implements nonce, kid, and url.

    The nonce is kept exactly as the server sent it; it is only checked
    to be valid base64url.
    """
    nonce: Optional[str] = jose.field('nonce', omitempty=True)
    kid: Optional[str] = jose.field('kid', omitempty=True)  # type: ignore[assignment]
    url: Optional[str] = jose.field('url', omitempty=True)

    # Mypy does not understand the josepy magic happening here, and falsely claims
    # that nonce is redefined. Let's ignore the type check here.
    @nonce.decoder  # type: ignore[no-redef,attr-defined,union-attr]
    def nonce(value: str) -> str:  # type: ignore[misc]  # pylint: disable=no-self-argument,missing-function-docstring
        if not value:
            raise jose.DeserializationError('Empty nonce')
        try:
            jose.decode_b64jose(value)
        except jose.DeserializationError as error:
            raise jose.DeserializationError('Invalid nonce: {0}'.format(error))
        return value


class Signature(jose.Signature):
    """ACME-specific Signature. Uses ACME-specific Header for customer fields."""
    __slots__ = jose.Signature._orig_slots  # type: ignore[attr-defined]  # pylint: disable=protected-access,no-member

    header_cls = Header
    header: Header = jose.field(
        'header', omitempty=True, default=header_cls(),
        decoder=header_cls.from_json)


class JWS(jose.JWS):
    """ACME-specific JWS. Includes nonce, url, and kid in protected header."""
    signature_cls = Signature
    __slots__ = jose.JWS._orig_slots  # type: ignore[attr-defined]  # pylint: disable=protected-access

    @classmethod
    # type: ignore[override]  # pylint: disable=arguments-differ
    def sign(cls, payload: bytes, key: jose.JWK, alg: jose.JWASignature, nonce: Optional[str],
             url: Optional[str] = None, kid: Optional[str] = None) -> jose.JWS:
        # Per RFC 8555, jwk and kid are mutually exclusive, so only include a
        # jwk field if kid is not provided.
        include_jwk = kid is None
        return super().sign(payload, key=key, alg=alg,
                            protect=frozenset(['nonce', 'url', 'kid', 'jwk', 'alg']),
                            nonce=nonce, url=url, kid=kid,
                            include_jwk=include_jwk)


def signature_alg(key: jose.JWK) -> jose.JWASignature:
    """Pick the JWS algorithm matching an account key.

    :param jose.JWK key: RSA or EC (P-256, P-384, P-521) key.

    :raises .CryptoError: for any other key type.

    """
    if isinstance(key, jose.JWKRSA):
        return jose.RS256
    if isinstance(key, jose.JWKEC):
        curve = key.key.curve.name
        try:
            return _EC_CURVE_ALGS[curve]
        except KeyError:
            raise errors.CryptoError('Unsupported EC curve: {0}'.format(curve))
    raise errors.CryptoError('Unsupported account key type: {0}'.format(type(key).__name__))


class Identity:
    """Key material a request is signed with.

    Before registration there is no ``kid`` and the public key travels
    in the protected header. Once the authority has assigned an account
    URL it must be used instead.

    :ivar jose.JWK key: Private account key.
    :ivar str kid: Account URL, or ``None`` before registration.
    :ivar jose.JWASignature alg: Signing algorithm.

    """
    __slots__ = ('key', 'kid', 'alg')

    def __init__(self, key: jose.JWK, kid: Optional[str] = None,
                 alg: Optional[jose.JWASignature] = None) -> None:
        self.key = key
        self.kid = kid
        self.alg = alg if alg is not None else signature_alg(key)

    def with_kid(self, kid: str) -> 'Identity':
        """Same key and algorithm, bound to an account URL."""
        return Identity(self.key, kid=kid, alg=self.alg)

    def thumbprint(self) -> str:
        """base64url SHA-256 JWK thumbprint (RFC 7638) of the public key."""
        return jose.b64encode(self.key.public_key().thumbprint()).decode()

    def sign(self, payload: bytes, nonce: Optional[str], url: str) -> JWS:
        """Wrap ``payload`` in a flattened `JWS` bound to ``nonce`` and ``url``.

        :raises .CryptoError: if the signing primitive fails.

        """
        try:
            return JWS.sign(payload, key=self.key, alg=self.alg,
                            nonce=nonce, url=url, kid=self.kid)
        except (jose.Error, ValueError, TypeError) as error:
            raise errors.CryptoError('Signing request to {0} failed: {1}'.format(url, error))

    def __repr__(self) -> str:
        return '{0}(alg={1}, kid={2!r})'.format(
            self.__class__.__name__, self.alg.name, self.kid)


class ExternalAccountBinding:
    """ACME External Account Binding"""

    @classmethod
    def from_data(cls, account_public_key: jose.JWK, kid: str, hmac_key: str,
                  url: str, hmac_alg: str = "HS256") -> Dict[str, Any]:
        """Create the ``externalAccountBinding`` member of a new-account request.

        :param jose.JWK account_public_key: Public key of the account being bound.
        :param str kid: Key identifier issued by the CA.
        :param str hmac_key: base64url MAC key issued by the CA.
        :param str url: The directory's ``newAccount`` URL.
        :param str hmac_alg: One of HS256, HS384, HS512.

        """
        key_json = json.dumps(account_public_key.to_partial_json()).encode()
        decoded_hmac_key = jose.b64.b64decode(hmac_key)

        alg = _HMAC_ALGS.get(hmac_alg)
        if alg is None:
            supported = ", ".join(_HMAC_ALGS.keys())
            raise ValueError(f"Invalid value for hmac_alg: {hmac_alg}. "
                             f"Expected one of: {supported}.")

        eab = JWS.sign(key_json, jose.JWKOct(key=decoded_hmac_key), alg, None, url, kid)
        logger.debug('Created external account binding for kid %s', kid)
        return eab.to_partial_json()
