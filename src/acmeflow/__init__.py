"""Client for ordering certificates from an ACME v2 provider.

This package implements the client side of the `ACME protocol`_: it resolves
a provider directory, registers or loads an account, and walks an order from
creation through domain validation to an issued certificate.

.. _`ACME protocol`: https://datatracker.ietf.org/doc/html/rfc8555

A typical session::

    directory = Directory.resolve(LETSENCRYPT_STAGING)
    account = directory.register_account(['mailto:admin@example.com'])
    order = account.new_order('example.com')
    while (csr_order := order.confirm_validations()) is None:
        for authz in order.authorizations():
            chall = authz.http_challenge()
            publish(chall.http_token(), chall.http_proof())
            chall.validate(poll_interval=5)
    cert_order = csr_order.finalize_pkey(create_p384_key(), poll_interval=5)
    certificate = cert_order.download_certificate()

"""
from acmeflow.account import Account
from acmeflow.account import ExternalAccountCredentials
from acmeflow.account import RevocationReason
from acmeflow.crypto_util import Certificate
from acmeflow.crypto_util import create_p256_key
from acmeflow.crypto_util import create_p384_key
from acmeflow.crypto_util import create_rsa_key
from acmeflow.directory import Directory
from acmeflow.directory import LETSENCRYPT
from acmeflow.directory import LETSENCRYPT_STAGING
from acmeflow.errors import Error

__all__ = [
    'Account',
    'Certificate',
    'Directory',
    'Error',
    'ExternalAccountCredentials',
    'LETSENCRYPT',
    'LETSENCRYPT_STAGING',
    'RevocationReason',
    'create_p256_key',
    'create_p384_key',
    'create_rsa_key',
]
