"""ACME directory bootstrap (RFC 8555 section 7.1.1)."""
import logging
from typing import Any
from typing import List
from typing import Optional
from typing import Sequence

from acmeflow import account
from acmeflow import client
from acmeflow import crypto_util
from acmeflow import messages

logger = logging.getLogger(__name__)

LETSENCRYPT = 'https://acme-v02.api.letsencrypt.org/directory'
"""Let's Encrypt production directory."""

LETSENCRYPT_STAGING = 'https://acme-staging-v02.api.letsencrypt.org/directory'
"""Let's Encrypt staging directory. Certificates from it are not trusted."""


class Directory:
    """Endpoint set of one ACME provider.

    Obtained once with `resolve` and never refreshed. Every URL used
    afterwards (nonces, accounts, orders, revocation) comes from here.

    :ivar str url: Directory URL.
    :ivar .ClientNetwork net: Transport shared by all accounts created
        from this directory.

    """

    def __init__(self, url: str, resource: messages.Directory,
                 net: client.ClientNetwork) -> None:
        self.url = url
        self.resource = resource
        self.net = net

    @classmethod
    def resolve(cls, url: str, net: Optional[client.ClientNetwork] = None) -> 'Directory':
        """Fetch the directory document with a plain ``GET``.

        :param str url: Directory URL, e.g. `LETSENCRYPT_STAGING`.
        :param .ClientNetwork net: Transport to use; a default one is
            created when not given. Its ``newNonce`` URL is configured
            from the directory.

        :raises .TransportError: if the directory cannot be reached.
        :raises .ClientError: if the response is not a directory.

        """
        if net is None:
            net = client.ClientNetwork()
        resource = messages.Directory.from_json(net.get(url).json())
        if 'newNonce' in resource:
            net.new_nonce_url = resource['newNonce']
        logger.debug('Resolved ACME directory %s', url)
        return cls(url, resource, net)

    def __getitem__(self, name: str) -> str:
        """Endpoint URL by its RFC 8555 field name, e.g. ``'newOrder'``.

        :raises KeyError: naming the missing field.

        """
        return self.resource[name]

    def __contains__(self, name: str) -> bool:
        return name in self.resource

    @property
    def meta(self) -> messages.Directory.Meta:
        """The directory's ``meta`` object (possibly empty)."""
        return self.resource.meta

    @property
    def terms_of_service(self) -> Optional[str]:
        """URL of the provider's terms of service, if published."""
        return self.meta.terms_of_service

    @property
    def website(self) -> Optional[str]:
        return self.meta.website

    @property
    def caa_identities(self) -> List[str]:
        return list(self.meta.caa_identities or [])

    @property
    def external_account_required(self) -> bool:
        """Checks if ACME server requires External Account Binding authentication."""
        return bool(self.meta.external_account_required)

    def register_account(self, contacts: Sequence[str] = (), key: Any = None,
                         terms_of_service_agreed: bool = True,
                         eab: Optional[account.ExternalAccountCredentials] = None
                         ) -> account.Account:
        """Register an account, creating a P-256 key if none is given.

        See `.Account.register`.

        """
        if key is None:
            key = crypto_util.create_p256_key()
        return account.Account.register(
            self, key, contacts, terms_of_service_agreed=terms_of_service_agreed, eab=eab)

    def load_account(self, key: Any, contacts: Sequence[str] = (),
                     only_return_existing: bool = False) -> account.Account:
        """Load the account bound to ``key``. See `.Account.load`."""
        return account.Account.load(
            self, key, contacts, only_return_existing=only_return_existing)

    def __repr__(self) -> str:
        return '{0}({1!r})'.format(self.__class__.__name__, self.url)
