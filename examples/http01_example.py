"""Example of ordering a certificate with an HTTP-01 challenge.

Brief:

This is a complete usage example of the acmeflow API against the Let's
Encrypt staging environment.

Limitations of this example:
    - Works for only one domain name
    - Performs only the HTTP-01 challenge
    - Keeps keys and certificates in memory

Workflow:
    (Account creation)
    - Create account key
    - Register account and accept TOS
    (Certificate actions)
    - Select HTTP-01 within offered challenges by the CA server
    - Serve the challenge response with a standalone web server
    - Create domain private key and finalize the order
    - Download certificate
    - Revoke certificate
    (Account update actions)
    - Change contact information
    - Deactivate account
"""
from contextlib import contextmanager
import http.server
import logging
import threading

import acmeflow
from acmeflow import errors

logger = logging.getLogger(__name__)

# Domain name for the certificate.
DOMAIN = 'client.example.com'

# Real CA servers always connect to port 80.
PORT = 80


@contextmanager
def challenge_server(resources):
    """Serve ``resources`` (path -> body) until the context exits."""

    class Handler(http.server.BaseHTTPRequestHandler):
        # pylint: disable=missing-function-docstring
        def do_GET(self):
            body = resources.get(self.path)
            if body is None:
                self.send_error(404)
                return
            self.send_response(200)
            self.send_header('Content-Type', 'text/plain')
            self.end_headers()
            self.wfile.write(body.encode())

    server = http.server.HTTPServer(('', PORT), Handler)
    thread = threading.Thread(target=server.serve_forever)
    thread.start()
    try:
        yield server
    finally:
        server.shutdown()
        server.server_close()
        thread.join()


def obtain_certificate(account, domain):
    """Walk one order through validation to an issued certificate."""
    order = account.new_order(domain)
    resources = {}
    for authz in order.authorizations():
        if not authz.need_challenge:
            continue
        chall = authz.http_challenge()
        if chall is None:
            raise errors.Error('HTTP-01 not offered for {0}'.format(authz.domain_name))
        resources['/.well-known/acme-challenge/' + chall.http_token()] = chall.http_proof()

    with challenge_server(resources):
        for authz in order.authorizations():
            if authz.need_challenge:
                authz.http_challenge().validate(poll_interval=3)
        csr_order = order.confirm_validations()

    if csr_order is None:
        raise errors.Error('Order {0} is still pending'.format(order.uri))
    cert_order = csr_order.finalize_pkey(acmeflow.create_p256_key(), poll_interval=3)
    return cert_order.download_certificate()


def example_http():
    """This example executes the whole process of fulfilling a HTTP-01
    challenge for one specific domain.

    The workflow consists of:
    (Account creation)
    - Create account key
    - Register account and accept TOS
    (Certificate actions)
    - Select HTTP-01 within offered challenges by the CA server
    - Set up http challenge resource
    - Set up standalone web server
    - Create domain private key and CSR
    - Issue certificate
    - Revoke certificate
    (Account update actions)
    - Change contact information
    - Deactivate Account

    """
    directory = acmeflow.Directory.resolve(acmeflow.LETSENCRYPT_STAGING)
    account = directory.register_account(['mailto:fake@example.com'])
    logger.info('Registered %r', account)

    certificate = obtain_certificate(account, DOMAIN)
    print(certificate.fullchain_pem)
    print('Valid for {0} more days'.format(certificate.valid_days_left()))

    account.revoke_certificate(certificate, acmeflow.RevocationReason.SUPERSEDED)

    account.update_contacts(['mailto:other@example.com'])
    account.deactivate()


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    example_http()
