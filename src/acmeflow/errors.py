"""ACME client errors."""
import typing
from typing import Any
from typing import List
from typing import Mapping
from typing import Optional

# messages imports this module, so type references to acmeflow.messages.* are
# quoted and only resolved during type checking.
if typing.TYPE_CHECKING:
    from acmeflow import messages  # pragma: no cover


class Error(Exception):
    """Generic ACME client error.

    :ivar bool retryable: Whether repeating the same request later may
        succeed.

    """
    retryable = False


class TransportError(Error):
    """The HTTP exchange itself failed (DNS, TLS, connection, timeout).

    Nothing is known about whether the authority processed the request,
    so these are always safe for the caller to retry with backoff.

    :ivar str url: URL that was being requested.

    """
    retryable = True

    def __init__(self, url: str, message: str) -> None:
        self.url = url
        self.message = message
        super().__init__(url, message)

    def __str__(self) -> str:
        return 'Requesting {0}: {1}'.format(self.url, self.message)


class ClientError(Error):
    """The server responded with something the client cannot use."""


class ServerError(ClientError):
    """The server failed with a 5xx status and no problem document.

    Typically a proxy or load balancer answering in front of the
    authority.

    """
    retryable = True


class UnexpectedUpdate(ClientError):
    """Unexpected update error."""


class NonceError(ClientError):
    """Server response nonce error."""


class BadNonce(NonceError):
    """Bad nonce error."""
    def __init__(self, nonce: str, error: Exception, *args: Any) -> None:
        super().__init__(*args)
        self.nonce = nonce
        self.error = error

    def __str__(self) -> str:
        return 'Invalid nonce ({0!r}): {1}'.format(self.nonce, self.error)


class MissingNonce(NonceError):
    """Missing nonce error.

    RFC 8555 section 6.5: an "ACME server MUST include an
    Replay-Nonce header field in each successful response to a POST it
    provides to a client (...)".

    :ivar headers: Mapping of HTTP headers

    """
    def __init__(self, headers: Mapping, *args: Any) -> None:
        super().__init__(*args)
        self.headers = dict(headers)

    def __str__(self) -> str:
        return ('Server response did not include a replay '
                'nonce, headers: {0} (This may be a service outage)'.format(
                    self.headers))


class ConflictError(ClientError):
    """Error for when the server returns a 409 (Conflict) HTTP status.

    :ivar str location: The ``Location`` header of the conflicting resource.

    """
    def __init__(self, location: str) -> None:
        self.location = location
        super().__init__(location)


class StateError(Error):
    """An operation was invoked from a state where it is not legal.

    For example finalizing an order that is not ``ready`` or downloading
    a certificate before the order is ``valid``. These indicate a bug in
    the calling code and are never retried.

    """


class ChallengeFailure(Error):
    """A challenge was marked ``invalid`` by the authority.

    :ivar challb: The final `.ChallengeBody` as seen from the server.
    :ivar error: The `.messages.Error` the server attached, if any.

    """
    def __init__(self, challb: 'messages.ChallengeBody') -> None:
        self.challb = challb
        self.error: Optional['messages.Error'] = challb.error
        super().__init__()

    def __str__(self) -> str:
        reason = str(self.error) if self.error is not None else 'no reason given'
        return 'Challenge {0} failed: {1}'.format(self.challb.typ, reason)


class ValidationError(Error):
    """Error for authorization failures. Contains a list of authorization
    resources, each of which is invalid and should have an error field.
    """
    def __init__(self, failed_authzrs: List['messages.AuthorizationResource']) -> None:
        self.failed_authzrs = failed_authzrs
        super().__init__()

    def __str__(self) -> str:
        lines = []
        for authzr in self.failed_authzrs:
            reasons = [str(challb.error) for challb in authzr.body.challenges
                       if challb.error is not None]
            lines.append('{0}: {1}'.format(
                authzr.body.identifier.value,
                '; '.join(reasons) if reasons else 'no reason given'))
        return 'Authorization failed for ' + ', '.join(lines)


class TimeoutError(Error):  # pylint: disable=redefined-builtin
    """Error for when polling an authorization or an order times out."""


class IssuanceError(Error):
    """Error sent by the server after requesting issuance of a certificate."""

    def __init__(self, error: 'messages.Error') -> None:
        """Initialize.

        :param messages.Error error: The error provided by the server.
        """
        self.error = error
        super().__init__()

    def __str__(self) -> str:
        return str(self.error)


class CryptoError(Error):
    """Key loading or signing failed. Not retryable."""
