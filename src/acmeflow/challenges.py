"""ACME Identifier Validation Challenges.

Each challenge type is a variant registered on `Challenge`; its derived
values are pure functions of the challenge token and the account key, so
new variants can be added without touching the order state machine.
"""
import abc
import hashlib
import logging
import re
from typing import Any
from typing import cast
from typing import Dict
from typing import Mapping
from typing import Type
from typing import TypeVar
from typing import Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes
import josepy as jose

logger = logging.getLogger(__name__)

GenericChallenge = TypeVar('GenericChallenge', bound='Challenge')

_TOKEN_RE = re.compile(r'^[A-Za-z0-9_-]+$')


class Challenge(jose.TypedJSONObjectWithFields):
    # _fields_to_partial_json
    """ACME challenge."""
    TYPES: Dict[str, Type['Challenge']] = {}

    @classmethod
    def from_json(cls: Type[GenericChallenge],
                  jobj: Mapping[str, Any]) -> Union[GenericChallenge, 'UnrecognizedChallenge']:
        try:
            return cast(GenericChallenge, super().from_json(jobj))
        except jose.UnrecognizedTypeError as error:
            logger.debug(error)
            return UnrecognizedChallenge.from_json(jobj)


class ChallengeResponse(jose.JSONObjectWithFields):
    """Body POSTed to a challenge URL to request validation.

    RFC 8555 section 7.5.1 requires it to be the empty JSON object.
    """


class UnrecognizedChallenge(Challenge):
    """Unrecognized challenge.

    Authorities may offer challenge types this module does not know
    about. They are kept verbatim so that the rest of the authorization
    is still usable.

    :ivar jobj: Original JSON decoded object.

    """
    jobj: Dict[str, Any]

    def __init__(self, jobj: Mapping[str, Any]) -> None:
        super().__init__()
        object.__setattr__(self, "jobj", jobj)

    def to_partial_json(self) -> Dict[str, Any]:
        return dict(self.jobj)  # pylint: disable=no-member

    @classmethod
    def from_json(cls, jobj: Mapping[str, Any]) -> 'UnrecognizedChallenge':
        return cls(jobj)


class _TokenChallenge(Challenge):
    """Challenge with token.

    :ivar str token: base64url token exactly as issued by the server.

    """
    token: str = jose.field("token")

    # Mypy does not understand the josepy magic happening here, and falsely claims
    # that token is redefined. Let's ignore the type check here.
    @token.decoder  # type: ignore
    def token(value: str) -> str:  # type: ignore[misc]  # pylint: disable=no-self-argument,missing-function-docstring
        if not isinstance(value, str) or not _TOKEN_RE.match(value):
            raise jose.DeserializationError(
                'Challenge token is not base64url: {0!r}'.format(value))
        return value


class KeyAuthorizationChallenge(_TokenChallenge, metaclass=abc.ABCMeta):
    """Challenge based on Key Authorization.

    :param str typ: type of the challenge
    """
    typ: str = NotImplemented
    thumbprint_hash_function = hashes.SHA256

    def key_authorization(self, account_key: jose.JWK) -> str:
        """Generate Key Authorization.

        ``token || '.' || base64url(Thumbprint(accountKey))``, see
        RFC 8555 section 8.1.

        :param JWK account_key:
        :rtype str:

        """
        return self.token + "." + jose.b64encode(
            account_key.thumbprint(
                hash_function=self.thumbprint_hash_function)).decode()

    @abc.abstractmethod
    def validation(self, account_key: jose.JWK, **kwargs: Any) -> Any:
        """Generate validation for the challenge.

        Subclasses must implement this method, but they are likely to
        return completely different data structures, depending on what's
        necessary to complete the challenge. Interpretation of that
        return value must be known to the caller.

        :param JWK account_key:
        :returns: Challenge-specific validation.

        """
        raise NotImplementedError()  # pragma: no cover


@Challenge.register
class HTTP01(KeyAuthorizationChallenge):
    """ACME http-01 challenge."""
    typ = "http-01"

    URI_ROOT_PATH = ".well-known/acme-challenge"
    """URI root path for the server provisioned resource."""

    @property
    def path(self) -> str:
        """Path (starting with '/') for provisioned resource.

        :rtype: str

        """
        return '/' + self.URI_ROOT_PATH + '/' + self.token

    def uri(self, domain: str) -> str:
        """Create an URI to the provisioned resource.

        :param str domain: Domain name being verified.
        :rtype: str

        """
        return "http://" + domain + self.path

    def validation(self, account_key: jose.JWK, **unused_kwargs: Any) -> str:
        """Body the provisioned resource must be served with.

        :param JWK account_key:
        :rtype: str

        """
        return self.key_authorization(account_key)


@Challenge.register
class DNS01(KeyAuthorizationChallenge):
    """ACME dns-01 challenge."""
    typ = "dns-01"

    LABEL = "_acme-challenge"
    """Label clients prepend to the domain name being validated."""

    def validation(self, account_key: jose.JWK, **unused_kwargs: Any) -> str:
        """Value of the TXT record.

        :param JWK account_key:
        :rtype: str

        """
        return jose.b64encode(hashlib.sha256(self.key_authorization(
            account_key).encode("utf-8")).digest()).decode()

    def validation_domain_name(self, name: str) -> str:
        """Domain name for TXT validation record.

        Wildcard identifiers are validated on their base domain.

        :param str name: Domain name being validated.
        :rtype: str

        """
        if name.startswith('*.'):
            name = name[2:]
        return f"{self.LABEL}.{name}"


@Challenge.register
class TLSALPN01(KeyAuthorizationChallenge):
    """ACME tls-alpn-01 challenge (RFC 8737)."""
    typ = "tls-alpn-01"

    ID_PE_ACME_IDENTIFIER_V1 = "1.3.6.1.5.5.7.1.31"
    ACME_TLS_1_PROTOCOL = b"acme-tls/1"

    def validation(self, account_key: jose.JWK, **unused_kwargs: Any) -> bytes:
        """SHA-256 digest of the key authorization.

        :param JWK account_key:
        :rtype: bytes

        """
        return hashlib.sha256(self.key_authorization(account_key).encode('utf-8')).digest()

    def acme_identifier_extension(self, account_key: jose.JWK) -> x509.Extension:
        """Critical ``acmeIdentifier`` extension for the validation certificate.

        The extension value is the DER encoding of an ASN.1 OCTET STRING
        holding the digest returned by `validation`.

        """
        digest = self.validation(account_key)
        oid = x509.ObjectIdentifier(self.ID_PE_ACME_IDENTIFIER_V1)
        der_value = b'\x04' + bytes([len(digest)]) + digest
        return x509.Extension(oid, critical=True,
                              value=x509.UnrecognizedExtension(oid, der_value))
