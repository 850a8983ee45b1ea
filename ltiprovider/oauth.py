#! /usr/bin/env python
"""OAuth 1.0a signing and verification for LTI messages

Inbound launches are verified with oauthlib's
:class:`SignatureOnlyEndpoint`, the same class is used with a request
validator bound to a single consumer.  Outbound extension service
requests are signed with oauthlib's :class:`Client`, either as a signed
form or, for XML payloads, with an oauth_body_hash parameter carried in
the Authorization header."""

import base64
import hashlib
import logging

from oauthlib import oauth1 as oauth

from . import errors
from . import model


logger = logging.getLogger('ltiprovider.oauth')

#: The content type of a form submission
FORM_CONTENT_TYPE = 'application/x-www-form-urlencoded'

#: The OAuth parameters that must be present in a launch
REQUIRED_OAUTH_PARAMETERS = (
    'oauth_consumer_key',
    'oauth_nonce',
    'oauth_signature',
    'oauth_signature_method',
    'oauth_timestamp')

#: Reported when the signature can't be verified
SIGNATURE_FAILED = ("OAuth signature check failed - perhaps an incorrect "
                    "secret or timestamp.")

#: Reported when a nonce is replayed
INVALID_NONCE = "Invalid nonce."


class SignatureVerifier(oauth.RequestValidator):

    """Verifies launches from a single tool consumer

    consumer
        The :class:`~ltiprovider.model.ToolConsumer` that the launch
        claims to come from, its secret is used to check the signature
        and its store is used to record nonces.

    Implements the RequestValidator object required by the oauthlib
    package. Internally creates an instance of SignatureOnlyEndpoint"""

    def __init__(self, consumer):
        super(SignatureVerifier, self).__init__()
        self.consumer = consumer
        #: the reason for a nonce failure, if any
        self.nonce_error = None
        self.endpoint = oauth.SignatureOnlyEndpoint(self)

    enforce_ssl = False

    dummy_client = u'dummy'

    dummy_secret = u'dummy'

    @property
    def allowed_signature_methods(self):
        return (oauth.SIGNATURE_HMAC_SHA1, )

    def check_client_key(self, key):
        # any non-empty string is OK as a client key
        return len(key) > 0

    def check_nonce(self, nonce):
        # any non-empty string is OK as a nonce
        return len(nonce) > 0

    def validate_client_key(self, client_key, request):
        return client_key == self.consumer.key

    def validate_timestamp_and_nonce(self, client_key, timestamp, nonce,
                                     request, request_token=None,
                                     access_token=None):
        if client_key != self.consumer.key:
            return False
        if model.ConsumerNonce(self.consumer, nonce).save():
            return True
        logger.warning("Nonce rejected for %s: %s", client_key, nonce)
        self.nonce_error = INVALID_NONCE
        return False

    def get_client_secret(self, client_key, request):
        if client_key == self.consumer.key:
            return self.consumer.secret
        return self.dummy_secret

    def verify(self, request):
        """Verifies a launch request

        request
            A :class:`~ltiprovider.provider.LaunchRequest` instance.

        Returns None if the request is correctly signed, otherwise
        raises :class:`~ltiprovider.errors.SignatureInvalid`."""
        for name in REQUIRED_OAUTH_PARAMETERS:
            if not request.get(name):
                raise errors.SignatureInvalid(
                    "Missing OAuth parameter: %s" % name)
        self.nonce_error = None
        result, orequest = self.endpoint.validate_request(
            request.url, request.method, request.body, request.headers)
        if not result:
            raise errors.SignatureInvalid(
                self.nonce_error or SIGNATURE_FAILED)


def body_hash(body):
    """Returns the oauth_body_hash of body

    body
        A binary string or a character string (which is encoded with
        UTF-8).

    The result is the base64 encoded SHA1 digest of the body as a
    character string."""
    if not isinstance(body, bytes):
        body = body.encode('utf-8')
    return base64.b64encode(hashlib.sha1(body).digest()).decode('ascii')


def sign_parameters(url, parameters, key, secret):
    """Signs a form submission

    url
        The URL the form will be posted to.  Any query parameters are
        included in the signature but are *not* copied to the result.

    parameters
        A list of (name, value) tuples or a dictionary.

    key, secret
        The consumer's key and secret

    Returns the URL-encoded form body with the OAuth parameters
    (including the signature) added."""
    client = oauth.Client(key, client_secret=secret,
                          signature_method=oauth.SIGNATURE_HMAC_SHA1,
                          signature_type=oauth.SIGNATURE_TYPE_BODY)
    uri, headers, body = client.sign(
        url, http_method='POST', body=parameters,
        headers={'Content-Type': FORM_CONTENT_TYPE})
    return body


def sign_body(url, body, key, secret, content_type='application/xml'):
    """Signs a request with a non-form body

    url
        The URL the body will be posted to.

    body
        The body as a character string.

    key, secret
        The consumer's key and secret

    content_type
        The content type of the body, must not be form-encoded.

    Returns a dictionary of request headers.  The Authorization header
    contains the OAuth parameters including oauth_body_hash (see
    :func:`body_hash`), the signature covers the hash rather than the
    body itself."""
    client = oauth.Client(key, client_secret=secret,
                          signature_method=oauth.SIGNATURE_HMAC_SHA1,
                          signature_type=oauth.SIGNATURE_TYPE_AUTH_HEADER)
    uri, headers, body = client.sign(
        url, http_method='POST', body=body,
        headers={'Content-Type': content_type})
    return headers
