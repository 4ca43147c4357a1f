"""In-process ACME server used by the tests.

.. warning:: This module is not part of the public API.

`FakeAcmeServer.request` has the signature of `requests.Session.request`
and returns real `requests.Response` objects, so a `ClientNetwork` whose
session is patched with it exercises the whole transport. The server
verifies every JWS, hands out single-use nonces and drives orders
through ``pending -> ready -> processing -> valid``.

"""
import datetime
import itertools
import json
import secrets
from typing import Any
from typing import Dict
from typing import List
from typing import Mapping
from typing import Optional
from typing import Set
from typing import Tuple
import urllib.parse

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding
import josepy as jose
import requests
from requests.structures import CaseInsensitiveDict

from acmeflow import client
from acmeflow import crypto_util
from acmeflow import jws
from acmeflow import messages

BASE = 'https://acme.test'
DIRECTORY_URL = BASE + '/directory'
TERMS_OF_SERVICE = BASE + '/terms'
CHALLENGE_TYPES = ('http-01', 'dns-01', 'tls-alpn-01')


class Problem(Exception):
    """Raised by handlers to answer with an RFC 7807 document."""

    def __init__(self, code: str, detail: str, status: int = 400) -> None:
        super().__init__(detail)
        self.code = code
        self.detail = detail
        self.status = status


class SignedRequest:
    """A verified JWS request."""

    def __init__(self, url: str, header: jws.Header, payload: bytes,
                 kid: Optional[str]) -> None:
        self.url = url
        self.header = header
        self.payload = payload
        self.kid = kid

    @property
    def is_post_as_get(self) -> bool:
        return self.payload == b''

    def json(self) -> Dict[str, Any]:
        if self.is_post_as_get:
            raise Problem('malformed', 'Expected a JSON payload')
        return json.loads(self.payload.decode())


class FakeAcmeServer:
    """Minimal but strict ACME authority.

    :param dict tokens: Challenge token to use per identifier value;
        random otherwise.
    :param set invalid_identifiers: Identifiers whose challenges fail.
    :param int processing_polls: How many polls a challenge or a
        finalized order stays ``processing``.
    :param str retry_after: ``Retry-After`` value on processing responses.
    :param eab: ``(kid, hmac_key)`` when external account binding is
        required.

    """

    def __init__(self, tokens: Optional[Mapping[str, str]] = None,
                 invalid_identifiers: Optional[Set[str]] = None,
                 processing_polls: int = 1, retry_after: Optional[str] = None,
                 eab: Optional[Tuple[str, str]] = None) -> None:
        self.tokens = dict(tokens or {})
        self.invalid_identifiers = set(invalid_identifiers or ())
        self.processing_polls = processing_polls
        self.retry_after = retry_after
        self.eab = eab

        self.issued_nonces: Set[str] = set()
        self.used_nonces: List[str] = []
        self.requests: List[Tuple[str, str]] = []
        self.signed_requests: List[SignedRequest] = []
        self.reject_nonces = 0

        self.accounts: Dict[str, Dict[str, Any]] = {}
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.authzs: Dict[str, Dict[str, Any]] = {}
        self.challenges: Dict[str, Dict[str, Any]] = {}
        self.certs: Dict[str, Dict[str, Any]] = {}
        self._ids = itertools.count(1)

        self.ca_key = ec.generate_private_key(ec.SECP256R1())
        self.ca_cert = crypto_util.make_self_signed_cert(
            self.ca_key, ['root.acme.test'], validity=datetime.timedelta(days=365))
        self.alt_ca_cert = crypto_util.make_self_signed_cert(
            self.ca_key, ['alt-root.acme.test'], validity=datetime.timedelta(days=365))

    # Wiring

    def client_network(self, **kwargs: Any) -> client.ClientNetwork:
        """`ClientNetwork` whose HTTP session talks to this server."""
        net = client.ClientNetwork(**kwargs)
        net.session.request = self.request  # type: ignore[method-assign]
        return net

    def directory(self) -> Dict[str, Any]:
        meta: Dict[str, Any] = {
            'termsOfService': TERMS_OF_SERVICE,
            'website': BASE,
            'caaIdentities': ['acme.test'],
        }
        if self.eab is not None:
            meta['externalAccountRequired'] = True
        return {
            'newNonce': BASE + '/new-nonce',
            'newAccount': BASE + '/new-account',
            'newOrder': BASE + '/new-order',
            'revokeCert': BASE + '/revoke-cert',
            'keyChange': BASE + '/key-change',
            'meta': meta,
        }

    # HTTP plumbing

    def _new_id(self) -> str:
        return str(next(self._ids))

    def _nonce(self) -> str:
        nonce = secrets.token_urlsafe(16)
        self.issued_nonces.add(nonce)
        return nonce

    def _response(self, url: str, status: int = 200, body: Any = None,
                  content: Optional[bytes] = None, content_type: str = 'application/json',
                  headers: Optional[Mapping[str, str]] = None) -> requests.Response:
        response = requests.Response()
        response.status_code = status
        response.reason = 'OK' if status < 400 else 'Error'
        response.url = url
        response.encoding = 'utf-8'
        response_headers = CaseInsensitiveDict(headers or {})
        response_headers['Replay-Nonce'] = self._nonce()
        if body is not None:
            content = json.dumps(body).encode()
        if content is not None:
            response_headers['Content-Type'] = content_type
        response._content = content if content is not None else b''  # pylint: disable=protected-access
        response.headers = response_headers
        return response

    def _problem(self, url: str, problem: Problem) -> requests.Response:
        body = {
            'type': messages.ERROR_PREFIX + problem.code,
            'detail': problem.detail,
            'status': problem.status,
        }
        return self._response(url, problem.status, body=body,
                               content_type='application/problem+json')

    def request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        """Stand-in for `requests.Session.request`."""
        self.requests.append((method, url))
        path = urllib.parse.urlsplit(url).path
        if method == 'HEAD':
            return self._response(url)
        if method == 'GET':
            if url == DIRECTORY_URL:
                return self._response(url, body=self.directory())
            return self._problem(url, Problem('malformed', 'Use POST-as-GET', 405))
        try:
            signed = self._verify(url, kwargs.get('data'))
            return self._dispatch(path, signed, kwargs.get('headers') or {})
        except Problem as problem:
            return self._problem(url, problem)

    def _verify(self, url: str, data: Optional[str]) -> SignedRequest:
        if data is None:
            raise Problem('malformed', 'Missing JWS body')
        try:
            request = jws.JWS.json_loads(data)
        except (jose.DeserializationError, ValueError) as error:
            raise Problem('malformed', 'Invalid JWS: {0}'.format(error))
        header = request.signature.combined
        if header.url != url:
            raise Problem('unauthorized', 'JWS url {0} does not match {1}'.format(
                header.url, url), 401)
        if header.nonce is None or header.nonce not in self.issued_nonces:
            raise Problem('badNonce', 'Unknown nonce {0!r}'.format(header.nonce))
        self.issued_nonces.discard(header.nonce)
        self.used_nonces.append(header.nonce)
        if self.reject_nonces > 0:
            self.reject_nonces -= 1
            raise Problem('badNonce', 'Nonce rejected')
        if (header.kid is None) == (header.jwk is None):
            raise Problem('malformed', 'Exactly one of jwk and kid is required')
        if header.kid is not None:
            account = self.accounts.get(header.kid)
            if account is None:
                raise Problem('accountDoesNotExist', 'No account at {0}'.format(
                    header.kid))
            if account['status'] != 'valid':
                raise Problem('unauthorized', 'Account is {0}'.format(account['status']), 403)
            key = account['key']
        else:
            key = header.jwk
        if not request.verify(key):
            raise Problem('malformed', 'JWS signature is invalid')
        signed = SignedRequest(url, header, request.payload, header.kid)
        self.signed_requests.append(signed)
        return signed

    def _dispatch(self, path: str, signed: SignedRequest,
                  headers: Mapping[str, str]) -> requests.Response:
        url = signed.url
        if path == '/new-account':
            return self._new_account(signed)
        if path == '/key-change':
            return self._key_change(signed)
        if path == '/revoke-cert':
            return self._revoke(signed)
        if signed.kid is None:
            raise Problem('malformed', 'Request must be signed with kid')
        if path == '/new-order':
            return self._new_order(signed)
        if url in self.accounts:
            return self._account(signed)
        if url in self.orders:
            return self._response(url, body=self._poll_order(url))
        if url in self.authzs:
            return self._authz(signed)
        if url in self.challenges:
            return self._challenge(signed)
        for order_url, order in self.orders.items():
            if url == order['finalize']:
                return self._finalize(order_url, signed)
        if url in self.certs:
            return self._certificate(url, headers)
        if url.endswith('/alt') and url[:-len('/alt')] in self.certs:
            return self._certificate(url[:-len('/alt')], headers, alternate=True)
        raise Problem('malformed', 'No resource at {0}'.format(url), 404)

    # Accounts

    def _account_body(self, kid: str) -> Dict[str, Any]:
        account = self.accounts[kid]
        return {
            'status': account['status'],
            'contact': list(account['contact']),
            'orders': kid + '/orders',
        }

    def _find_account(self, key: jose.JWK) -> Optional[str]:
        thumbprint = key.thumbprint()
        for kid, account in self.accounts.items():
            if account['key'].thumbprint() == thumbprint:
                return kid
        return None

    def _check_eab(self, signed: SignedRequest, eab: Optional[Dict[str, Any]]) -> None:
        if self.eab is None:
            return
        if eab is None:
            raise Problem('externalAccountRequired', 'External account binding required')
        eab_kid, hmac_key = self.eab
        binding = jws.JWS.from_json(eab)
        combined = binding.signature.combined
        if combined.kid != eab_kid or combined.url != signed.url:
            raise Problem('unauthorized', 'Bad external account binding', 401)
        if not binding.verify(jose.JWKOct(key=jose.b64decode(hmac_key))):
            raise Problem('unauthorized', 'Bad external account binding MAC', 401)
        if json.loads(binding.payload.decode()) != signed.header.jwk.to_partial_json():
            raise Problem('malformed', 'Binding is for another key')

    def _new_account(self, signed: SignedRequest) -> requests.Response:
        if signed.header.jwk is None:
            raise Problem('malformed', 'newAccount must be signed with jwk')
        body = signed.json()
        kid = self._find_account(signed.header.jwk)
        if kid is not None:
            return self._response(signed.url, 200, body=self._account_body(kid),
                                  headers={'Location': kid})
        if body.get('onlyReturnExisting'):
            raise Problem('accountDoesNotExist', 'No account for this key')
        self._check_eab(signed, body.get('externalAccountBinding'))
        contact = body.get('contact', [])
        for uri in contact:
            if not uri.startswith('mailto:'):
                raise Problem('unsupportedContact', 'Unsupported contact {0}'.format(uri))
        kid = BASE + '/acct/' + self._new_id()
        self.accounts[kid] = {'key': signed.header.jwk, 'status': 'valid',
                              'contact': tuple(contact)}
        return self._response(
            signed.url, 201, body=self._account_body(kid),
            headers={'Location': kid,
                     'Link': '<{0}>;rel="terms-of-service"'.format(TERMS_OF_SERVICE)})

    def _account(self, signed: SignedRequest) -> requests.Response:
        account = self.accounts[signed.url]
        if signed.kid != signed.url:
            raise Problem('unauthorized', 'Not your account', 403)
        if not signed.is_post_as_get:
            update = signed.json()
            if 'contact' in update:
                account['contact'] = tuple(update['contact'])
            if update.get('status') == 'deactivated':
                account['status'] = 'deactivated'
        return self._response(signed.url, body=self._account_body(signed.url))

    def _key_change(self, signed: SignedRequest) -> requests.Response:
        if signed.kid is None:
            raise Problem('malformed', 'keyChange must be signed with kid')
        inner = jws.JWS.from_json(signed.json())
        header = inner.signature.combined
        if header.jwk is None or header.kid is not None or header.url != signed.url:
            raise Problem('malformed', 'Bad inner key change JWS')
        if not inner.verify(header.jwk):
            raise Problem('malformed', 'Inner JWS signature is invalid')
        change = messages.KeyChange.json_loads(inner.payload)
        account = self.accounts[signed.kid]
        if (change.account != signed.kid or
                change.old_key.thumbprint() != account['key'].thumbprint()):
            raise Problem('malformed', 'Key change does not match the account')
        if self._find_account(header.jwk) is not None:
            raise Problem('malformed', 'New key is already in use', 409)
        account['key'] = header.jwk
        return self._response(signed.url, body=self._account_body(signed.kid))

    # Orders

    def _new_order(self, signed: SignedRequest) -> requests.Response:
        body = signed.json()
        identifiers = body.get('identifiers') or []
        if not identifiers:
            raise Problem('malformed', 'Order has no identifiers')
        authz_urls = []
        for identifier in identifiers:
            if identifier['type'] not in ('dns', 'ip'):
                raise Problem('unsupportedIdentifier', identifier['type'])
            authz_urls.append(self._new_authz(identifier))
        order_url = BASE + '/order/' + self._new_id()
        order: Dict[str, Any] = {
            'status': 'pending',
            'identifiers': identifiers,
            'authorizations': authz_urls,
            'finalize': order_url + '/finalize',
            'expires': '2030-01-01T00:00:00Z',
            'account': signed.kid,
            'polls_left': self.processing_polls,
        }
        for name in ('notBefore', 'notAfter'):
            if name in body:
                order[name] = body[name]
        self.orders[order_url] = order
        return self._response(signed.url, 201, body=self._order_body(order_url),
                              headers={'Location': order_url})

    def _order_body(self, order_url: str) -> Dict[str, Any]:
        order = self.orders[order_url]
        body = {key: order[key] for key in (
            'status', 'identifiers', 'authorizations', 'finalize', 'expires',
            'notBefore', 'notAfter', 'error') if key in order}
        if order['status'] == 'valid':
            body['certificate'] = order['certificate']
        return body

    def _update_order(self, order_url: str) -> None:
        order = self.orders[order_url]
        if order['status'] != 'pending':
            return
        statuses = [self.authzs[url]['status'] for url in order['authorizations']]
        if any(status == 'invalid' for status in statuses):
            order['status'] = 'invalid'
        elif all(status == 'valid' for status in statuses):
            order['status'] = 'ready'

    def _poll_order(self, order_url: str) -> Dict[str, Any]:
        order = self.orders[order_url]
        self._update_order(order_url)
        if order['status'] == 'processing':
            order['polls_left'] -= 1
            if order['polls_left'] <= 0:
                order['status'] = 'valid'
        return self._order_body(order_url)

    def _processing_headers(self) -> Dict[str, str]:
        if self.retry_after is None:
            return {}
        return {'Retry-After': self.retry_after}

    def _finalize(self, order_url: str, signed: SignedRequest) -> requests.Response:
        order = self.orders[order_url]
        self._update_order(order_url)
        if order['status'] != 'ready':
            raise Problem('orderNotReady', 'Order is {0}'.format(order['status']), 403)
        csr_der = jose.decode_b64jose(signed.json()['csr'])
        csr = x509.load_der_x509_csr(csr_der)
        if not csr.is_signature_valid:
            raise Problem('badCSR', 'CSR signature is invalid')
        try:
            san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        except x509.ExtensionNotFound:
            raise Problem('badCSR', 'CSR has no subjectAltName')
        names = sorted(san.get_values_for_type(x509.DNSName) +
                       [str(ip) for ip in san.get_values_for_type(x509.IPAddress)])
        wanted = sorted(identifier['value'] for identifier in order['identifiers'])
        if names != wanted:
            raise Problem('badCSR', 'CSR names {0} do not match order {1}'.format(
                names, wanted))
        cert_url = BASE + '/cert/' + self._new_id()
        leaf = self._issue(csr, order['identifiers'])
        self.certs[cert_url] = {'leaf': leaf, 'revoked': False, 'account': order['account']}
        order['status'] = 'processing'
        order['certificate'] = cert_url
        if self.processing_polls == 0:
            order['status'] = 'valid'
        body = self._order_body(order_url)
        return self._response(signed.url, body=body, headers=self._processing_headers())

    def _issue(self, csr: x509.CertificateSigningRequest,
               identifiers: List[Dict[str, str]]) -> x509.Certificate:
        now = datetime.datetime.now(datetime.timezone.utc)
        builder = (
            x509.CertificateBuilder()
            .serial_number(x509.random_serial_number())
            .subject_name(x509.Name([x509.NameAttribute(
                x509.NameOID.COMMON_NAME, identifiers[0]['value'])]))
            .issuer_name(self.ca_cert.subject)
            .public_key(csr.public_key())
            .not_valid_before(now)
            .not_valid_after(now + datetime.timedelta(days=90))
            .add_extension(csr.extensions.get_extension_for_class(
                x509.SubjectAlternativeName).value, critical=False)
        )
        return builder.sign(self.ca_key, hashes.SHA256())

    def _certificate(self, url: str, headers: Mapping[str, str],
                     alternate: bool = False) -> requests.Response:
        if headers.get('Accept') != 'application/pem-certificate-chain':
            raise Problem('malformed', 'Unsupported Accept header', 406)
        leaf = self.certs[url]['leaf']
        root = self.alt_ca_cert if alternate else self.ca_cert
        chain = leaf.public_bytes(Encoding.PEM) + root.public_bytes(Encoding.PEM)
        return self._response(
            url + ('/alt' if alternate else ''), content=chain,
            content_type='application/pem-certificate-chain',
            headers={'Link': '<{0}/alt>;rel="alternate"'.format(url)})

    def _revoke(self, signed: SignedRequest) -> requests.Response:
        body = signed.json()
        der = jose.decode_b64jose(body['certificate'])
        for cert in self.certs.values():
            if cert['leaf'].public_bytes(Encoding.DER) == der:
                if cert['revoked']:
                    raise Problem('alreadyRevoked', 'Certificate is already revoked')
                if signed.kid is not None and signed.kid != cert['account']:
                    raise Problem('unauthorized', 'Not your certificate', 403)
                cert['revoked'] = True
                cert['reason'] = body.get('reason', 0)
                return self._response(signed.url, content=b'')
        raise Problem('malformed', 'Unknown certificate', 404)

    # Authorizations and challenges

    def _new_authz(self, identifier: Dict[str, str]) -> str:
        authz_url = BASE + '/authz/' + self._new_id()
        token = self.tokens.get(identifier['value'], secrets.token_urlsafe(32))
        chall_urls = []
        for typ in CHALLENGE_TYPES:
            chall_url = BASE + '/chall/' + self._new_id()
            self.challenges[chall_url] = {
                'type': typ, 'url': chall_url, 'token': token, 'status': 'pending',
                'authz': authz_url, 'polls_left': self.processing_polls,
            }
            chall_urls.append(chall_url)
        authz: Dict[str, Any] = {
            'identifier': identifier,
            'status': 'pending',
            'expires': '2030-01-01T00:00:00Z',
            'challenges': chall_urls,
        }
        if identifier['value'].startswith('*.'):
            authz['identifier'] = dict(identifier, value=identifier['value'][2:])
            authz['wildcard'] = True
        self.authzs[authz_url] = authz
        return authz_url

    def _challenge_body(self, chall_url: str) -> Dict[str, Any]:
        chall = self.challenges[chall_url]
        body = {key: chall[key] for key in ('type', 'url', 'token', 'status')}
        if 'error' in chall:
            body['error'] = chall['error']
        if 'validated' in chall:
            body['validated'] = chall['validated']
        return body

    def _authz_body(self, authz_url: str) -> Dict[str, Any]:
        authz = self.authzs[authz_url]
        body = {key: value for key, value in authz.items() if key != 'challenges'}
        body['challenges'] = [self._challenge_body(url) for url in authz['challenges']]
        return body

    def _authz(self, signed: SignedRequest) -> requests.Response:
        authz = self.authzs[signed.url]
        if not signed.is_post_as_get:
            if signed.json().get('status') != 'deactivated':
                raise Problem('malformed', 'Only deactivation is supported')
            authz['status'] = 'deactivated'
        return self._response(signed.url, body=self._authz_body(signed.url))

    def _decide(self, chall_url: str) -> None:
        chall = self.challenges[chall_url]
        authz = self.authzs[chall['authz']]
        value = authz['identifier']['value']
        if authz.get('wildcard'):
            value = '*.' + value
        if value in self.invalid_identifiers:
            chall['status'] = 'invalid'
            chall['error'] = {
                'type': messages.ERROR_PREFIX + 'incorrectResponse',
                'detail': 'Wrong key authorization for {0}'.format(value),
                'status': 403,
            }
            authz['status'] = 'invalid'
        else:
            chall['status'] = 'valid'
            chall['validated'] = '2024-01-01T00:00:00Z'
            authz['status'] = 'valid'

    def _challenge(self, signed: SignedRequest) -> requests.Response:
        chall = self.challenges[signed.url]
        headers = {'Link': '<{0}>;rel="up"'.format(chall['authz'])}
        if not signed.is_post_as_get:
            if signed.json() != {}:
                raise Problem('malformed', 'Challenge response must be {}')
            if chall['status'] == 'pending':
                chall['status'] = 'processing'
                if chall['polls_left'] == 0:
                    self._decide(signed.url)
        elif chall['status'] == 'processing':
            if chall['polls_left'] > 0:
                chall['polls_left'] -= 1
            if chall['polls_left'] == 0:
                self._decide(signed.url)
        if chall['status'] == 'processing':
            headers.update(self._processing_headers())
        return self._response(signed.url, body=self._challenge_body(signed.url),
                              headers=headers)
