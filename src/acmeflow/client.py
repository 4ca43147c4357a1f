"""ACME transport: signed requests over HTTPS."""
import base64
import datetime
from email.utils import parsedate_to_datetime
import logging
import re
from typing import Any
from typing import List
from typing import Mapping
from typing import Optional
from typing import Union

import josepy as jose
import requests
from requests.adapters import HTTPAdapter
from requests.utils import parse_header_links

from acmeflow import errors
from acmeflow import jws
from acmeflow import messages
from acmeflow.nonce import NonceStore

logger = logging.getLogger(__name__)

DEFAULT_NETWORK_TIMEOUT = 45

# Matches the verbose text of urllib3's MaxRetryError.
_CONNECTION_ERROR_RE = re.compile(
    r".*host='(\S*)'.*Max retries exceeded with url\: (\/\S*).*(\[Errno -?\d+\])([A-Za-z ]*)")


def _describe_request_error(error: requests.exceptions.RequestException) -> str:
    """Shorten a requests exception to something readable.

    The requests library emits exceptions with a lot of extra text, e.g.:

        HTTPSConnectionPool(host='acme-v02.api.letsencrypt.org',
        port=443): Max retries exceeded with url: /directory
        (Caused by NewConnectionError('
        <urllib3.connection.HTTPSConnection object at 0x108356c50>:
        Failed to establish a new connection: [Errno 65] No route to host'))

    """
    m = _CONNECTION_ERROR_RE.match(str(error))
    if m is None:
        return '{0}: {1}'.format(type(error).__name__, error)
    _host, _path, err_no, err_msg = m.groups()
    return '{0}{1}'.format(err_no, err_msg)


class ClientNetwork:
    """Wrapper around requests that signs POSTs for authentication.

    Also adds user agent, handles Content-Type and keeps the supply of
    replay nonces topped up from server responses.

    :param bool verify_ssl: Whether to verify certificates on SSL connections.
    :param str user_agent: String to send as User-Agent header.
    :param int timeout: Timeout for requests.
    :param .NonceStore nonces: Nonce supply. A new, empty store is
        created when not given.

    :ivar str new_nonce_url: The directory's ``newNonce`` endpoint. Set
        by `.Directory.resolve`. Until then nonces are obtained with a
        ``HEAD`` of the URL being posted to.

    """
    JSON_CONTENT_TYPE = 'application/json'
    JOSE_CONTENT_TYPE = 'application/jose+json'
    JSON_ERROR_CONTENT_TYPE = 'application/problem+json'
    PEM_CHAIN_CONTENT_TYPE = 'application/pem-certificate-chain'
    REPLAY_NONCE_HEADER = 'Replay-Nonce'

    def __init__(self, verify_ssl: bool = True, user_agent: str = 'acmeflow-python',
                 timeout: int = DEFAULT_NETWORK_TIMEOUT,
                 nonces: Optional[NonceStore] = None) -> None:
        self.verify_ssl = verify_ssl
        self.user_agent = user_agent
        self.nonces = nonces if nonces is not None else NonceStore()
        self.new_nonce_url: Optional[str] = None
        self.session = requests.Session()
        self._default_timeout = timeout
        adapter = HTTPAdapter()

        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def __del__(self) -> None:
        # Try to close the session, but don't show exceptions to the
        # user if the call to close() fails.
        try:
            self.session.close()
        except Exception:  # pylint: disable=broad-except
            pass

    def _wrap_in_jws(self, obj: Optional[jose.JSONDeSerializable], identity: jws.Identity,
                     nonce: str, url: str) -> str:
        """Wrap `JSONDeSerializable` object in JWS.

        ``None`` produces the empty payload of a POST-as-GET request. An
        object with no fields still serializes to ``{}``.

        :rtype: str

        """
        jobj = obj.json_dumps(indent=2).encode() if obj is not None else b''
        logger.debug('JWS payload:\n%s', jobj)
        return identity.sign(jobj, nonce=nonce, url=url).json_dumps(indent=2)

    @classmethod
    def _check_response(cls, response: requests.Response,
                        content_type: Optional[str] = None) -> requests.Response:
        """Check response content and its type.

        .. note::
           Checking is not strict: wrong server response ``Content-Type``
           HTTP header is ignored if response is an expected JSON object.

        :param str content_type: Expected Content-Type response header.
            If JSON is expected and not present in server response, this
            function will raise an error. Otherwise, wrong Content-Type
            is ignored, but logged.

        :raises .messages.Error: If server response body
            carries HTTP Problem (https://datatracker.ietf.org/doc/html/rfc7807).
        :raises .ConflictError: On ``409 Conflict``.
        :raises .ClientError: In case of other networking errors.

        """
        response_ct = response.headers.get('Content-Type')
        # Strip parameters from the media-type (rfc2616#section-3.7)
        if response_ct:
            response_ct = response_ct.split(';')[0].strip()
        try:
            jobj = response.json()
        except ValueError:
            jobj = None

        if response.status_code == 409:
            raise errors.ConflictError(response.headers.get('Location', 'UNKNOWN-LOCATION'))

        if not response.ok:
            if isinstance(jobj, dict):
                if response_ct != cls.JSON_ERROR_CONTENT_TYPE:
                    logger.warning(
                        'Ignoring wrong Content-Type (%r) for JSON Error',
                        response_ct)
                try:
                    error = messages.Error.from_json(jobj)
                except jose.DeserializationError as decode_error:
                    # Couldn't deserialize JSON object
                    raise errors.ClientError(
                        'HTTP {0} with undecodable problem document: {1}'.format(
                            response.status_code, decode_error))
                if error.status is None:
                    error.status = response.status_code
                raise error
            # response is not JSON object
            message = 'HTTP {0} from {1}: {2!r}'.format(
                response.status_code, response.url, response.content[:200])
            if response.status_code >= 500:
                raise errors.ServerError(message)
            raise errors.ClientError(message)

        if jobj is not None and response_ct != cls.JSON_CONTENT_TYPE:
            logger.debug(
                'Ignoring wrong Content-Type (%r) for JSON decodable '
                'response', response_ct)

        if content_type == cls.JSON_CONTENT_TYPE and jobj is None:
            raise errors.ClientError(f'Unexpected response Content-Type: {response_ct}')

        return response

    def _send_request(self, method: str, url: str, *args: Any, **kwargs: Any) -> requests.Response:
        """Send HTTP request.

        Makes sure that `verify_ssl` is respected. Logs request and
        response (with headers). For allowed parameters please see
        `requests.request`.

        :param str method: method for the new `requests.Request` object
        :param str url: URL for the new `requests.Request` object

        :raises .TransportError: in case of connection problems

        :returns: HTTP Response
        :rtype: `requests.Response`

        """
        if method == "POST":
            logger.debug('Sending POST request to %s:\n%s',
                          url, kwargs['data'])
        else:
            logger.debug('Sending %s request to %s.', method, url)
        kwargs['verify'] = self.verify_ssl
        kwargs.setdefault('headers', {})
        kwargs['headers'].setdefault('User-Agent', self.user_agent)
        kwargs.setdefault('timeout', self._default_timeout)
        try:
            response = self.session.request(method, url, *args, **kwargs)
        except requests.exceptions.RequestException as error:
            logger.debug('%s request to %s failed: %s', method, url, error)
            raise errors.TransportError(url, _describe_request_error(error))

        # If an Accept header was sent in the request, the response may not be
        # UTF-8 encoded. In this case, we don't set response.encoding and log
        # the base64 response instead of raw bytes to keep binary data out of the logs.
        debug_content: Union[bytes, str]
        if "Accept" in kwargs["headers"]:
            debug_content = base64.b64encode(response.content)
        else:
            # We set response.encoding so response.text knows the response is
            # UTF-8 encoded instead of trying to guess the encoding that was
            # used which is error prone.
            response.encoding = "utf-8"
            debug_content = response.text
        logger.debug('Received response:\nHTTP %d\n%s\n\n%s',
                     response.status_code,
                     "\n".join("{0}: {1}".format(k, v)
                                for k, v in response.headers.items()),
                     debug_content)
        return response

    def head(self, *args: Any, **kwargs: Any) -> requests.Response:
        """Send HEAD request without checking the response.

        Note, that `_check_response` is not called, as it is expected
        that status code other than successfully 2xx will be returned, or
        messages.Error will be raised by the server.

        """
        return self._send_request('HEAD', *args, **kwargs)

    def get(self, url: str, content_type: str = JSON_CONTENT_TYPE,
            **kwargs: Any) -> requests.Response:
        """Send GET request and check response."""
        return self._check_response(
            self._send_request('GET', url, **kwargs), content_type=content_type)

    def _decode_nonce(self, response: requests.Response) -> Optional[str]:
        if self.REPLAY_NONCE_HEADER not in response.headers:
            return None
        nonce = response.headers[self.REPLAY_NONCE_HEADER]
        try:
            return jws.Header._fields['nonce'].decode(nonce)  # pylint: disable=protected-access
        except jose.DeserializationError as error:
            raise errors.BadNonce(nonce, error)

    def _add_nonce(self, response: requests.Response) -> None:
        nonce = self._decode_nonce(response)
        if nonce is not None:
            self.nonces.put(nonce)
        elif response.ok:
            raise errors.MissingNonce(response.headers)

    def _fetch_nonce(self, url: str) -> str:
        if self.new_nonce_url is None:
            response = self.head(url)
        else:
            # request a new nonce from the acme newNonce endpoint
            response = self._check_response(self.head(self.new_nonce_url), content_type=None)
        nonce = self._decode_nonce(response)
        if nonce is None:
            raise errors.MissingNonce(response.headers)
        return nonce

    def post(self, url: str, obj: Optional[jose.JSONDeSerializable],
             identity: jws.Identity, **kwargs: Any) -> requests.Response:
        """POST object wrapped in `.JWS` and check response.

        If the server responded with a badNonce error, the request will
        be retried once.

        :param str url: Target URL; also the ``url`` protected header.
        :param obj: Payload, or ``None`` for POST-as-GET.
        :param .Identity identity: Key (and account URL) to sign with.

        """
        try:
            return self._post_once(url, obj, identity, **kwargs)
        except messages.Error as error:
            if error.code == 'badNonce':
                logger.debug('Retrying request after error:\n%s', error)
                return self._post_once(url, obj, identity, **kwargs)
            raise

    def post_as_get(self, url: str, identity: jws.Identity, **kwargs: Any) -> requests.Response:
        """Fetch a resource with an authenticated, empty-payload POST."""
        return self.post(url, None, identity, **kwargs)

    def _post_once(self, url: str, obj: Optional[jose.JSONDeSerializable],
                   identity: jws.Identity, content_type: str = JOSE_CONTENT_TYPE,
                   **kwargs: Any) -> requests.Response:
        nonce = self.nonces.borrow(lambda: self._fetch_nonce(url))
        data = self._wrap_in_jws(obj, identity, nonce, url)
        headers = dict(kwargs.pop('headers', {}))
        headers.setdefault('Content-Type', content_type)
        response = self._send_request('POST', url, data=data, headers=headers, **kwargs)
        # Problem responses carry a nonce too; keep it for the retry.
        self._add_nonce(response)
        return self._check_response(response, content_type=content_type)

    @classmethod
    def retry_after(cls, response: requests.Response, default: int) -> datetime.datetime:
        """Compute next `poll` time based on response ``Retry-After`` header.

        Handles integers and HTTP dates per
        https://www.rfc-editor.org/rfc/rfc9110#field.retry-after

        :param requests.Response response: Response from `poll`.
        :param int default: Default value (in seconds), used when
            ``Retry-After`` header is not present or invalid.

        :returns: Time point (timezone aware, UTC) when next `poll`
            should be performed.
        :rtype: `datetime.datetime`

        """
        now = datetime.datetime.now(datetime.timezone.utc)
        retry_after = response.headers.get('Retry-After', str(default))
        try:
            seconds = int(retry_after)
        except ValueError:
            try:
                when = parsedate_to_datetime(retry_after)
            except (TypeError, ValueError, IndexError):
                seconds = default
            else:
                if when.tzinfo is None:
                    when = when.replace(tzinfo=datetime.timezone.utc)
                return when
        return now + datetime.timedelta(seconds=max(seconds, 0))

    @classmethod
    def seconds_until_retry(cls, response: requests.Response, poll_interval: float) -> float:
        """Seconds to wait before polling again.

        The larger of ``poll_interval`` and the server's ``Retry-After``.

        """
        when = cls.retry_after(response, default=0)
        delay = (when - datetime.datetime.now(datetime.timezone.utc)).total_seconds()
        return max(float(poll_interval), delay)

    @staticmethod
    def links(response: requests.Response, relation_type: str) -> List[str]:
        """
        Retrieves all Link URIs of relation_type from the response.
        :param requests.Response response: The requests HTTP response.
        :param str relation_type: The relation type to filter by.
        """
        # Can't use response.links directly because it drops multiple links
        # of the same relation type, which is possible in RFC8555 responses.
        if 'Link' not in response.headers:
            return []
        links = parse_header_links(response.headers['Link'])
        return [l['url'] for l in links
                if 'rel' in l and 'url' in l and l['rel'] == relation_type]


def location(response: requests.Response, default: Optional[str] = None) -> str:
    """``Location`` header of ``response``.

    :raises .ClientError: if the header is absent and no default is given.

    """
    headers: Mapping[str, str] = response.headers
    uri = headers.get('Location', default)
    if uri is None:
        raise errors.ClientError('Location header missing from response to {0}'.format(
            response.url))
    return uri
