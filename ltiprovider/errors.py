#! /usr/bin/env python
"""Exceptions and result types used throughout the package

The launch pipeline and the extension service client raise the
exceptions defined here internally.  Their public entry points catch
them and return an explicit result object instead: the class of the
exception carried in the result is the error kind and its message is the
detailed (debug) reason."""


class LTIError(Exception):

    """Base class for all LTI errors"""
    pass


class LTIProtocolError(LTIError):

    """Indicates a protocol violation

    Raised if the message type or protocol version in a launch request
    do not match the expected values or if a required parameter is
    missing."""
    pass


class InvalidLaunch(LTIProtocolError):

    """Missing or unsupported launch parameters"""
    pass


class InvalidParameters(LTIProtocolError):

    """One or more caller-registered parameter constraints failed

    names
        The list of parameter names that failed, in the order the
        constraints were registered."""

    def __init__(self, names):
        self.names = list(names)
        LTIProtocolError.__init__(
            self, "Invalid parameter(s): %s." % ", ".join(self.names))


class LTIAuthenticationError(LTIError):

    """Indicates an authentication error (on launch)"""
    pass


class UnknownConsumer(LTIAuthenticationError):
    pass


class ConsumerDisabled(LTIAuthenticationError):
    pass


class ConsumerNotYetAvailable(LTIAuthenticationError):
    pass


class ConsumerExpired(LTIAuthenticationError):
    pass


class UntrustedConsumer(LTIAuthenticationError):

    """A protected consumer sent a missing or mismatched GUID"""
    pass


class SignatureInvalid(LTIAuthenticationError):

    """The OAuth signature, timestamp or nonce was rejected"""
    pass


class SharingError(LTIError):

    """Base class for errors resolving a sharing arrangement"""
    pass


class SharingRefused(SharingError):
    pass


class SharingUnrequested(SharingError):

    """An arrangement is in place but the launch did not ask for it"""
    pass


class SharingPending(SharingError):
    pass


class SharingSelfReference(SharingError):
    pass


class SharingUnresolvable(SharingError):
    pass


class ServiceError(LTIError):

    """Base class for extension service errors"""
    pass


class ServiceUnavailable(ServiceError):

    """The service URL is missing or the consumer could not be reached"""
    pass


class ServiceRejected(ServiceError):

    """The consumer responded but did not report success"""
    pass


class UnsupportedValueType(ServiceError):

    """An outcome value could not be coerced to a supported type"""
    pass


class ServiceResult(object):

    """The result of an extension service call

    ok
        True if the call succeeded

    value
        The value returned by the call, for example the text of a
        result read from the consumer or the list of users returned by a
        memberships call.  None for calls that return nothing.

    error
        The :class:`ServiceError` instance that caused the failure or
        None."""

    def __init__(self, ok, value=None, error=None):
        self.ok = ok
        self.value = value
        self.error = error

    def __bool__(self):
        return self.ok

    def __repr__(self):
        return "ServiceResult(%r, %r, %r)" % (self.ok, self.value, self.error)
