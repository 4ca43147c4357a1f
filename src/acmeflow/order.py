"""Order, authorization and challenge state machine (RFC 8555 section 7.4).

An order moves ``pending -> ready -> processing -> valid`` (or ends
``invalid``). The authority drives every transition except finalization,
so the objects here only ever learn their status from server responses.
Each phase is a separate class, `NewOrder` -> `CsrOrder` -> `CertOrder`,
so an operation is only reachable once the order can legally perform it.
"""
import datetime
import ipaddress
import logging
import time
import typing
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding
import requests

from acmeflow import challenges
from acmeflow import client
from acmeflow import crypto_util
from acmeflow import errors
from acmeflow import messages

if typing.TYPE_CHECKING:
    from acmeflow.account import Account  # pragma: no cover

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_TIMEOUT = datetime.timedelta(seconds=90)

# Higher ranks come later. Statuses with the highest rank are terminal.
ORDER_PROGRESS: Dict[messages.Status, int] = {
    messages.STATUS_PENDING: 0,
    messages.STATUS_READY: 1,
    messages.STATUS_PROCESSING: 2,
    messages.STATUS_VALID: 3,
    messages.STATUS_INVALID: 3,
}
AUTHORIZATION_PROGRESS: Dict[messages.Status, int] = {
    messages.STATUS_PENDING: 0,
    messages.STATUS_VALID: 1,
    messages.STATUS_INVALID: 2,
    messages.STATUS_DEACTIVATED: 2,
    messages.STATUS_EXPIRED: 2,
    messages.STATUS_REVOKED: 2,
}
CHALLENGE_PROGRESS: Dict[messages.Status, int] = {
    messages.STATUS_PENDING: 0,
    messages.STATUS_PROCESSING: 1,
    messages.STATUS_VALID: 2,
    messages.STATUS_INVALID: 2,
}


def check_progress(what: str, old: Optional[messages.Status],
                   new: Optional[messages.Status],
                   progress: Dict[messages.Status, int]) -> None:
    """Refuse a status update that moves backwards or leaves a terminal state.

    :raises .UnexpectedUpdate:

    """
    if old is None or new is None or old == new:
        return
    if old not in progress or new not in progress:
        return
    terminal = max(progress.values())
    if progress[old] == terminal or progress[new] < progress[old]:
        raise errors.UnexpectedUpdate(
            '{0} status went from {1} to {2}'.format(what, old.name, new.name))


# Helper function that can be mocked in unit tests
def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _deadline(deadline: Optional[datetime.datetime]) -> datetime.datetime:
    if deadline is None:
        return _now() + DEFAULT_TIMEOUT
    return deadline


def _wait(response: requests.Response, poll_interval: float,
          deadline: datetime.datetime, what: str) -> None:
    if _now() >= deadline:
        raise errors.TimeoutError('Timed out waiting for {0}'.format(what))
    delay = client.ClientNetwork.seconds_until_retry(response, poll_interval)
    logger.debug('Waiting %.1f seconds for %s', delay, what)
    time.sleep(delay)


class Challenge:
    """One way of proving control of an authorization's identifier.

    :ivar .messages.ChallengeBody body: Last known challenge resource.
    :ivar datetime.datetime retry_after: When the authority asked to be
        polled again, from the last response's ``Retry-After``.

    """

    def __init__(self, account: 'Account', body: messages.ChallengeBody) -> None:
        self.account = account
        self.body = body
        self.retry_after: Optional[datetime.datetime] = None

    @property
    def chall(self) -> challenges.Challenge:
        return self.body.chall

    @property
    def typ(self) -> Optional[str]:
        if isinstance(self.chall, challenges.UnrecognizedChallenge):
            return self.chall.jobj.get('type')
        return self.chall.typ

    @property
    def token(self) -> str:
        return self.body.token

    @property
    def uri(self) -> str:
        return self.body.uri

    @property
    def status(self) -> messages.Status:
        return self.body.status

    @property
    def error(self) -> Optional[messages.Error]:
        return self.body.error

    def _key_authorization_chall(self) -> challenges.KeyAuthorizationChallenge:
        if not isinstance(self.chall, challenges.KeyAuthorizationChallenge):
            raise errors.StateError(
                'Challenge {0} has no key authorization'.format(self.typ))
        return self.chall

    def key_authorization(self) -> str:
        """``token.thumbprint`` for the account key."""
        return self._key_authorization_chall().key_authorization(self.account.key)

    def http_token(self) -> str:
        """File name to serve under ``/.well-known/acme-challenge/``."""
        return self.token

    def http_proof(self) -> str:
        """Body to serve at the http-01 URL."""
        return challenges.HTTP01(token=self.token).validation(self.account.key)

    def dns_proof(self) -> str:
        """Value of the ``_acme-challenge`` TXT record."""
        return challenges.DNS01(token=self.token).validation(self.account.key)

    def tls_alpn_proof(self) -> bytes:
        """SHA-256 digest to embed in the ``acmeIdentifier`` extension."""
        return challenges.TLSALPN01(token=self.token).validation(self.account.key)

    def _update(self, response: requests.Response) -> 'Challenge':
        body = messages.ChallengeBody.from_json(response.json())
        if body.uri is not None and self.uri is not None and body.uri != self.uri:
            raise errors.UnexpectedUpdate(body.uri)
        check_progress('Challenge', self.status, body.status, CHALLENGE_PROGRESS)
        self.body = body
        self.retry_after = client.ClientNetwork.retry_after(response, default=0)
        return self

    def poll(self) -> 'Challenge':
        """Fetch the challenge once. Pacing is left to the caller."""
        return self._update(self.account.post_as_get(self.uri))

    def validate(self, poll_interval: float = DEFAULT_POLL_INTERVAL,
                 deadline: Optional[datetime.datetime] = None) -> 'Challenge':
        """Ask the authority to check the proof, then wait for its verdict.

        The proof must already be in place. Between polls this waits
        ``poll_interval`` seconds or as long as ``Retry-After`` says,
        whichever is longer.

        :param float poll_interval: Seconds between polls.
        :param datetime.datetime deadline: Aware datetime after which to
            give up. Defaults to 90 seconds from now.

        :raises .ChallengeFailure: if the challenge became ``invalid``.
        :raises .TimeoutError: if it is still undecided at ``deadline``.

        """
        deadline = _deadline(deadline)
        if self.status not in (messages.STATUS_VALID, messages.STATUS_INVALID):
            response = self.account.post(self.uri, challenges.ChallengeResponse())
            self._update(response)
            while self.status in (messages.STATUS_PENDING, messages.STATUS_PROCESSING):
                _wait(response, poll_interval, deadline, 'challenge {0}'.format(self.uri))
                response = self.account.post_as_get(self.uri)
                self._update(response)

        if self.status == messages.STATUS_INVALID:
            raise errors.ChallengeFailure(self.body)
        logger.debug('Challenge %s is %s', self.uri, self.status.name)
        return self

    def __repr__(self) -> str:
        return '{0}({1}, {2})'.format(self.__class__.__name__, self.typ, self.status.name)


class Authorization:
    """Authority's record of what must be proven for one identifier.

    :ivar .messages.AuthorizationResource authzr: Last known resource.
    :ivar datetime.datetime retry_after:

    """

    def __init__(self, account: 'Account', authzr: messages.AuthorizationResource) -> None:
        self.account = account
        self.authzr = authzr
        self.retry_after: Optional[datetime.datetime] = None
        self._challenges = self._wrap_challenges()

    def _wrap_challenges(self) -> List[Challenge]:
        return [Challenge(self.account, challb) for challb in self.body.challenges or ()]

    @classmethod
    def fetch(cls, account: 'Account', uri: str) -> 'Authorization':
        response = account.post_as_get(uri)
        authz = cls(account, messages.AuthorizationResource(
            body=messages.Authorization.from_json(response.json()),
            uri=uri))
        authz.retry_after = client.ClientNetwork.retry_after(response, default=0)
        return authz

    @property
    def body(self) -> messages.Authorization:
        return self.authzr.body

    @property
    def uri(self) -> str:
        return self.authzr.uri

    @property
    def identifier(self) -> messages.Identifier:
        return self.body.identifier

    @property
    def domain_name(self) -> str:
        return self.identifier.value

    @property
    def status(self) -> messages.Status:
        return self.body.status

    @property
    def wildcard(self) -> bool:
        return bool(self.body.wildcard)

    @property
    def expires(self) -> Optional[datetime.datetime]:
        return self.body.expires

    @property
    def need_challenge(self) -> bool:
        """Whether a challenge still has to be completed."""
        return self.status == messages.STATUS_PENDING

    @property
    def challenges(self) -> List[Challenge]:
        return list(self._challenges)

    def challenge(self, typ: str) -> Optional[Challenge]:
        """The offered challenge of type ``typ``, or ``None``."""
        for chall in self._challenges:
            if chall.typ == typ:
                return chall
        return None

    def http_challenge(self) -> Optional[Challenge]:
        return self.challenge(challenges.HTTP01.typ)

    def dns_challenge(self) -> Optional[Challenge]:
        return self.challenge(challenges.DNS01.typ)

    def tls_alpn_challenge(self) -> Optional[Challenge]:
        return self.challenge(challenges.TLSALPN01.typ)

    def _update(self, response: requests.Response) -> 'Authorization':
        body = messages.Authorization.from_json(response.json())
        if body.identifier != self.identifier:
            raise errors.UnexpectedUpdate(body.identifier)
        check_progress('Authorization', self.status, body.status, AUTHORIZATION_PROGRESS)
        self.authzr = self.authzr.update(body=body)
        self.retry_after = client.ClientNetwork.retry_after(response, default=0)
        self._challenges = self._wrap_challenges()
        return self

    def refresh(self) -> 'Authorization':
        """Fetch the authorization again."""
        return self._update(self.account.post_as_get(self.uri))

    def deactivate(self) -> 'Authorization':
        """Give up on this authorization (RFC 8555 section 7.5.2)."""
        body = messages.UpdateAuthorization(status=messages.STATUS_DEACTIVATED)
        return self._update(self.account.post(self.uri, body))

    def __repr__(self) -> str:
        return '{0}({1}, {2})'.format(
            self.__class__.__name__, self.domain_name, self.status.name)


class Order:
    """Common part of the three order phases.

    :ivar .messages.OrderResource orderr: Last known order resource.

    """

    def __init__(self, account: 'Account', orderr: messages.OrderResource) -> None:
        self.account = account
        self.orderr = orderr

    @property
    def body(self) -> messages.Order:
        return self.orderr.body

    @property
    def uri(self) -> str:
        return self.orderr.uri

    @property
    def status(self) -> messages.Status:
        return self.body.status

    @property
    def identifiers(self) -> List[messages.Identifier]:
        return list(self.body.identifiers or ())

    @property
    def domains(self) -> List[str]:
        """Identifier values, in the order they were requested."""
        return [identifier.value for identifier in self.identifiers]

    @property
    def expires(self) -> Optional[datetime.datetime]:
        return self.body.expires

    @property
    def error(self) -> Optional[messages.Error]:
        return self.body.error

    def _update(self, response: requests.Response) -> None:
        body = messages.Order.from_json(response.json())
        check_progress('Order', self.status, body.status, ORDER_PROGRESS)
        self.orderr = self.orderr.update(body=body)

    def refresh(self) -> 'Order':
        """Fetch the order again."""
        self._update(self.account.post_as_get(self.uri))
        return self

    def _issuance_error(self) -> errors.IssuanceError:
        if self.error is not None:
            return errors.IssuanceError(self.error)
        return errors.IssuanceError(messages.Error(
            detail='The order became invalid. No further information was '
                   'provided by the server.'))

    def __repr__(self) -> str:
        return '{0}({1!r}, {2})'.format(
            self.__class__.__name__, self.uri, self.status.name)


class NewOrder(Order):
    """An order whose authorizations are still being completed."""

    def authorizations(self) -> List[Authorization]:
        """Fetch every authorization of the order."""
        return [Authorization.fetch(self.account, uri)
                for uri in self.body.authorizations or ()]

    def confirm_validations(self) -> Optional['CsrOrder']:
        """Check whether the authority considers the order authorized.

        :returns: `CsrOrder` once the order is ``ready``, ``None`` while it
            is still ``pending``.

        :raises .ValidationError: if authorizations became ``invalid``.
        :raises .IssuanceError: if the order is ``invalid`` for another reason.
        :raises .StateError: if the order is already past finalization.

        """
        self.refresh()
        if self.status == messages.STATUS_PENDING:
            return None
        if self.status == messages.STATUS_READY:
            return CsrOrder(self.account, self.orderr)
        if self.status == messages.STATUS_INVALID:
            failed = [authz.authzr for authz in self.authorizations()
                      if authz.status == messages.STATUS_INVALID]
            if failed:
                raise errors.ValidationError(failed)
            raise self._issuance_error()
        raise errors.StateError(
            'Order {0} is already {1}'.format(self.uri, self.status.name))


class CsrOrder(Order):
    """A ``ready`` order waiting for the certificate signing request.

    Once `finalize` has been sent the same object tracks issuance, so a
    caller whose `finalize` call timed out can keep calling
    `confirm_issuance`.

    :ivar bytes private_key_pem: Key passed to `finalize_pkey`, handed on
        to the `CertOrder`.

    """

    def __init__(self, account: 'Account', orderr: messages.OrderResource,
                 private_key_pem: Optional[bytes] = None) -> None:
        super().__init__(account, orderr)
        self.private_key_pem = private_key_pem

    def finalize(self, csr_der: bytes, poll_interval: float = DEFAULT_POLL_INTERVAL,
                 deadline: Optional[datetime.datetime] = None,
                 private_key_pem: Optional[bytes] = None) -> 'CertOrder':
        """Submit the CSR and wait for the certificate to be issued.

        :param bytes csr_der: DER encoded CSR. PEM is accepted too.
        :param float poll_interval: Seconds between polls.
        :param datetime.datetime deadline: Aware datetime after which to
            give up. Defaults to 90 seconds from now.

        :raises .StateError: if the order is not ``ready``. Nothing is sent.
        :raises .IssuanceError: if the order became ``invalid``.
        :raises .TimeoutError: if the order is still ``processing`` at
            ``deadline``; `confirm_issuance` picks up from there.

        """
        if self.status != messages.STATUS_READY:
            raise errors.StateError(
                'Order {0} is {1}, not ready'.format(self.uri, self.status.name))
        if csr_der.lstrip().startswith(b'-----BEGIN'):
            csr_der = x509.load_pem_x509_csr(csr_der).public_bytes(Encoding.DER)
        deadline = _deadline(deadline)
        if private_key_pem is not None:
            self.private_key_pem = private_key_pem

        response = self.account.post(self.body.finalize,
                                     messages.CertificateRequest(csr=csr_der))
        self._update(response)
        cert_order = self._issued()
        while cert_order is None:
            _wait(response, poll_interval, deadline, 'order {0}'.format(self.uri))
            response = self.account.post_as_get(self.uri)
            self._update(response)
            cert_order = self._issued()
        return cert_order

    def confirm_issuance(self) -> Optional['CertOrder']:
        """Fetch the order once and check whether the certificate is issued.

        :returns: `CertOrder` once the order is ``valid``, ``None`` while
            it is ``ready`` or ``processing``.

        :raises .IssuanceError: if the order became ``invalid``.

        """
        self.refresh()
        return self._issued()

    def _issued(self) -> Optional['CertOrder']:
        if self.status == messages.STATUS_INVALID:
            raise self._issuance_error()
        if self.status != messages.STATUS_VALID:
            return None
        logger.debug('Order %s is %s', self.uri, self.status.name)
        return CertOrder(self.account, self.orderr, private_key_pem=self.private_key_pem)

    def finalize_pkey(self, private_key: Any, poll_interval: float = DEFAULT_POLL_INTERVAL,
                      deadline: Optional[datetime.datetime] = None) -> 'CertOrder':
        """Build a CSR for the order's identifiers with ``private_key`` and finalize.

        The key ends up in the downloaded `.Certificate`.

        """
        dns_names = [identifier.value for identifier in self.identifiers
                     if identifier.typ == messages.IDENTIFIER_FQDN]
        ipaddrs = [ipaddress.ip_address(identifier.value) for identifier in self.identifiers
                   if identifier.typ == messages.IDENTIFIER_IP]
        csr_der = crypto_util.make_csr(private_key, dns_names, ipaddrs=ipaddrs,
                                       encoding=Encoding.DER)
        return self.finalize(csr_der, poll_interval, deadline,
                             private_key_pem=crypto_util.private_key_to_pem(private_key))


class CertOrder(Order):
    """A ``valid`` order with a certificate ready to download."""

    def __init__(self, account: 'Account', orderr: messages.OrderResource,
                 private_key_pem: Optional[bytes] = None) -> None:
        super().__init__(account, orderr)
        self.private_key_pem = private_key_pem

    def _fetch_chain(self, url: str) -> requests.Response:
        return self.account.post_as_get(
            url, headers={'Accept': client.ClientNetwork.PEM_CHAIN_CONTENT_TYPE})

    def download_certificate(self, fetch_alternative_chains: bool = False
                             ) -> crypto_util.Certificate:
        """Download the certificate chain.

        May be called any number of times.

        :param bool fetch_alternative_chains: Also fetch the chains the
            authority offers with ``Link: rel="alternate"``.

        :raises .StateError: if the order has no certificate.

        """
        if self.status != messages.STATUS_VALID or self.body.certificate is None:
            raise errors.StateError(
                'Order {0} has no certificate to download'.format(self.uri))
        response = self._fetch_chain(self.body.certificate)
        alternatives = []
        if fetch_alternative_chains:
            alternatives = [self._fetch_chain(url).content.decode('ascii')
                            for url in client.ClientNetwork.links(response, 'alternate')]
        return crypto_util.Certificate(
            response.content.decode('ascii'),
            private_key_pem=self.private_key_pem,
            alternative_fullchains_pem=alternatives)
