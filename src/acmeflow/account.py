"""ACME accounts (RFC 8555 section 7.3)."""
import enum
import http.client as http_client
import ipaddress
import logging
import typing
from typing import Any
from typing import NamedTuple
from typing import Optional
from typing import Sequence
from typing import Union

from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding
import josepy as jose
import requests

from acmeflow import client
from acmeflow import crypto_util
from acmeflow import errors
from acmeflow import jws
from acmeflow import messages
from acmeflow import order

if typing.TYPE_CHECKING:
    from acmeflow.directory import Directory  # pragma: no cover

logger = logging.getLogger(__name__)


class RevocationReason(enum.IntEnum):
    """CRLReason codes accepted by ``revokeCert`` (RFC 5280 section 5.3.1)."""
    UNSPECIFIED = 0
    KEY_COMPROMISE = 1
    CA_COMPROMISE = 2
    AFFILIATION_CHANGED = 3
    SUPERSEDED = 4
    CESSATION_OF_OPERATION = 5
    CERTIFICATE_HOLD = 6
    REMOVE_FROM_CRL = 8
    PRIVILEGE_WITHDRAWN = 9
    AA_COMPROMISE = 10


class ExternalAccountCredentials(NamedTuple):
    """Key identifier and MAC key handed out by a CA requiring EAB.

    :ivar str kid: Key identifier.
    :ivar str hmac_key: base64url encoded MAC key.
    :ivar str hmac_alg: HS256, HS384 or HS512.

    """
    kid: str
    hmac_key: str
    hmac_alg: str = 'HS256'


def _identifier(name: str) -> messages.Identifier:
    try:
        ipaddress.ip_address(name)
    except ValueError:
        return messages.Identifier(typ=messages.IDENTIFIER_FQDN, value=name)
    return messages.Identifier(typ=messages.IDENTIFIER_IP, value=name)


class Account:
    """An ACME account: the identity key and the URL the authority bound it to.

    Every signed request made on behalf of the account goes through
    `post` or `post_as_get`, which sign with the account URL as ``kid``.

    :ivar .Directory directory:
    :ivar .Identity identity: Key, algorithm and account URL.
    :ivar .RegistrationResource regr: Last known account resource.

    """

    def __init__(self, directory: 'Directory', identity: jws.Identity,
                 regr: messages.RegistrationResource) -> None:
        self.directory = directory
        self.identity = identity
        self.regr = regr

    @classmethod
    def register(cls, directory: 'Directory', key: Any, contacts: Sequence[str] = (),
                 terms_of_service_agreed: bool = True,
                 eab: Optional[ExternalAccountCredentials] = None) -> 'Account':
        """Register a new account, or find the one already bound to ``key``.

        :param .Directory directory:
        :param key: Account private key (key object, `jose.JWK` or PEM).
        :param contacts: Contact URLs, e.g. ``['mailto:admin@example.com']``.
        :param bool terms_of_service_agreed:
        :param .ExternalAccountCredentials eab: Required by some CAs, see
            `.Directory.external_account_required`.

        :raises .messages.Error: if the authority refuses, e.g. with
            ``externalAccountRequired`` or ``invalidContact``.

        """
        jwk = crypto_util.jwk_from_key(key)
        binding = None
        if eab is not None:
            binding = jws.ExternalAccountBinding.from_data(
                jwk.public_key(), eab.kid, eab.hmac_key, directory['newAccount'],
                hmac_alg=eab.hmac_alg)
        body = messages.NewRegistration(
            contact=tuple(contacts),
            terms_of_service_agreed=terms_of_service_agreed,
            external_account_binding=binding)
        return cls._new_account(directory, jws.Identity(jwk), body)

    @classmethod
    def load(cls, directory: 'Directory', key: Any, contacts: Sequence[str] = (),
             only_return_existing: bool = False) -> 'Account':
        """Load the account bound to ``key``.

        The registration request is sent again and the authority answers
        with the existing account URL. With ``only_return_existing`` an
        unknown key fails with ``accountDoesNotExist`` instead of
        registering.

        """
        jwk = crypto_util.jwk_from_key(key)
        if only_return_existing:
            body = messages.NewRegistration(only_return_existing=True)
        else:
            body = messages.NewRegistration(
                contact=tuple(contacts), terms_of_service_agreed=True)
        return cls._new_account(directory, jws.Identity(jwk), body)

    @classmethod
    def _new_account(cls, directory: 'Directory', identity: jws.Identity,
                     body: messages.NewRegistration) -> 'Account':
        net = directory.net
        try:
            response = net.post(directory['newAccount'], body, identity)
        except errors.ConflictError as error:
            # Some servers answer 409 with the existing account's URL.
            logger.debug('Account already exists at %s', error.location)
            bound = identity.with_kid(error.location)
            response = net.post_as_get(error.location, bound)
            return cls(directory, bound, cls._regr_from_response(
                directory, response, uri=error.location))
        if response.status_code == http_client.OK:
            logger.debug('Key is already registered')
        regr = cls._regr_from_response(directory, response)
        logger.info('Using ACME account %s', regr.uri)
        return cls(directory, identity.with_kid(regr.uri), regr)

    @classmethod
    def _regr_from_response(cls, directory: 'Directory', response: requests.Response,
                            uri: Optional[str] = None) -> messages.RegistrationResource:
        terms_of_service = directory.terms_of_service
        if 'terms-of-service' in response.links:
            terms_of_service = response.links['terms-of-service']['url']

        return messages.RegistrationResource(
            body=messages.Registration.from_json(response.json()),
            uri=client.location(response, uri),
            terms_of_service=terms_of_service)

    @property
    def net(self) -> client.ClientNetwork:
        return self.directory.net

    @property
    def kid(self) -> str:
        """Account URL, sent as ``kid`` on every signed request."""
        return self.regr.uri

    @property
    def key(self) -> jose.JWK:
        return self.identity.key

    @property
    def contacts(self) -> typing.Tuple[str, ...]:
        return tuple(self.regr.body.contact)

    @property
    def status(self) -> Optional[messages.Status]:
        return self.regr.body.status

    def post(self, url: str, obj: Optional[jose.JSONDeSerializable],
             **kwargs: Any) -> requests.Response:
        """Signed POST on behalf of this account."""
        return self.net.post(url, obj, self.identity, **kwargs)

    def post_as_get(self, url: str, **kwargs: Any) -> requests.Response:
        """Signed POST-as-GET on behalf of this account."""
        return self.net.post_as_get(url, self.identity, **kwargs)

    def _send_recv_regr(self, body: Optional[messages.Registration]) -> 'Account':
        response = self.post(self.kid, body)
        self.regr = self._regr_from_response(self.directory, response, uri=self.kid)
        return self

    def refresh(self) -> 'Account':
        """Fetch the account resource again."""
        return self._send_recv_regr(None)

    def update_contacts(self, contacts: Sequence[str]) -> 'Account':
        """Replace the account's contact URLs. An empty list clears them."""
        return self._send_recv_regr(messages.UpdateRegistration(contact=tuple(contacts)))

    def deactivate(self) -> 'Account':
        """Deactivate the account. The authority will refuse further requests."""
        self._send_recv_regr(messages.UpdateRegistration(status=messages.STATUS_DEACTIVATED))
        logger.info('Deactivated ACME account %s', self.kid)
        return self

    def new_order(self, primary_name: str, alt_names: Sequence[str] = (),
                  not_before: Any = None, not_after: Any = None) -> order.NewOrder:
        """Request a certificate for ``primary_name`` and ``alt_names``.

        Names that parse as IP addresses are requested as ``ip``
        identifiers, everything else as ``dns``.

        :param not_before: Optional requested start of validity, aware `datetime`.
        :param not_after: Optional requested end of validity, aware `datetime`.

        :rtype: `.NewOrder`

        """
        names = [primary_name] + [name for name in alt_names if name != primary_name]
        body = messages.NewOrder(identifiers=tuple(_identifier(name) for name in names),
                                 not_before=not_before, not_after=not_after)
        response = self.post(self.directory['newOrder'], body)
        orderr = messages.OrderResource(
            body=messages.Order.from_json(response.json()),
            uri=client.location(response))
        logger.debug('Created order %s for %s', orderr.uri, ', '.join(names))
        return order.NewOrder(self, orderr)

    def change_key(self, new_key: Any) -> 'Account':
        """Roll the account over to ``new_key`` (RFC 8555 section 7.3.5).

        :returns: A new `Account` signing with ``new_key``. This object
            keeps the old key and must not be used afterwards.

        """
        url = self.directory['keyChange']
        new_identity = jws.Identity(crypto_util.jwk_from_key(new_key))
        payload = messages.KeyChange(account=self.kid, old_key=self.key.public_key())
        inner = new_identity.sign(payload.json_dumps().encode(), nonce=None, url=url)
        self.post(url, inner)
        logger.info('Rolled over key of ACME account %s', self.kid)
        return Account(self.directory, new_identity.with_kid(self.kid), self.regr)

    def revoke_certificate(self, cert: Union[crypto_util.Certificate, x509.Certificate, bytes],
                           reason: int = RevocationReason.UNSPECIFIED) -> None:
        """Revoke a certificate issued to this account.

        :param cert: `.Certificate`, cryptography certificate or DER bytes.
        :param int reason: `RevocationReason` code.

        :raises .ClientError: If revocation is unsuccessful.

        """
        if isinstance(cert, crypto_util.Certificate):
            der = cert.certificate_der
        elif isinstance(cert, x509.Certificate):
            der = cert.public_bytes(Encoding.DER)
        else:
            der = cert
        response = self.post(self.directory['revokeCert'],
                             messages.Revocation(certificate=der, reason=int(reason)))
        if response.status_code != http_client.OK:
            raise errors.ClientError(
                'Successful revocation must return HTTP OK status')

    def private_key_pem(self) -> bytes:
        """The account key as PKCS#8 PEM, for the caller to persist."""
        return crypto_util.private_key_to_pem(self.key)

    def __repr__(self) -> str:
        return '{0}({1!r})'.format(self.__class__.__name__, self.regr.uri)
