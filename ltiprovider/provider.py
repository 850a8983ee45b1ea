#! /usr/bin/env python
"""The launch side of an LTI tool provider

A launch arrives as a :class:`LaunchRequest`, is authenticated and
synchronised with the entity store by :meth:`ToolProvider.authenticate`
and is then handed to the application's callback.  Finally
:meth:`ToolProvider.dispatch` turns the outcome into a
:class:`Response`."""

import collections
import http.client
import logging
import time
import urllib.parse
import wsgiref.util

from . import errors
from . import model
from . import oauth


logger = logging.getLogger('ltiprovider.provider')

#: The message shown to users when a launch fails
CONNECTION_ERROR_MESSAGE = (
    "Sorry, there was an error connecting you to the application.")


def is_url(value):
    return value.startswith('http://') or value.startswith('https://')


class LaunchRequest(object):

    """An inbound launch request

    method
        The HTTP method, e.g., 'POST'

    url
        The URL the request was sent to, exactly as the consumer used it
        to calculate the signature.

    parameters
        The form parameters as a list of (name, value) tuples or a
        dictionary.

    headers
        An optional dictionary of additional HTTP headers

    Instances are read only.  The parameters are exposed through the
    :attr:`parameters` mapping (and the shortcut methods :meth:`get`
    and ``in``), a parameter that is given more than once has its values
    joined with a comma."""

    def __init__(self, method, url, parameters, headers=None):
        self._method = method.upper()
        self._url = url
        if isinstance(parameters, dict):
            parameters = parameters.items()
        self._pairs = tuple((str(n), str(v)) for n, v in parameters)
        values = collections.OrderedDict()
        for name, value in self._pairs:
            if name in values:
                values[name] = values[name] + ',' + value
            else:
                values[name] = value
        self._parameters = values
        self._headers = {'Content-Type': oauth.FORM_CONTENT_TYPE}
        if headers:
            self._headers.update(headers)

    @classmethod
    def from_body(cls, method, url, body, headers=None):
        """Creates a request from a form-encoded body

        body
            A character string or UTF-8 encoded binary string"""
        if isinstance(body, bytes):
            body = body.decode('utf-8')
        return cls(method, url,
                   urllib.parse.parse_qsl(body, keep_blank_values=True),
                   headers)

    @classmethod
    def from_environ(cls, environ, url=None):
        """Creates a request from a WSGI environment

        url
            The URL of the request, defaults to the URL reconstructed
            from environ.  Applications behind proxies should pass the
            canonical URL instead.

        The body is read only if it is form-encoded."""
        if url is None:
            url = wsgiref.util.request_uri(environ, include_query=True)
        ctype = environ.get('CONTENT_TYPE', '')
        body = b''
        if ctype.split(';')[0].strip().lower() == oauth.FORM_CONTENT_TYPE:
            length = environ.get('CONTENT_LENGTH')
            if length:
                body = environ['wsgi.input'].read(int(length))
        return cls.from_body(environ.get('REQUEST_METHOD', 'GET'), url, body)

    @property
    def method(self):
        return self._method

    @property
    def url(self):
        return self._url

    @property
    def parameters(self):
        return self._parameters.copy()

    @property
    def headers(self):
        return dict(self._headers)

    @property
    def body(self):
        """The parameters encoded as a form"""
        return urllib.parse.urlencode(self._pairs)

    def get(self, name, default=None):
        return self._parameters.get(name, default)

    def __contains__(self, name):
        return name in self._parameters

    def __getitem__(self, name):
        return self._parameters[name]

    def __repr__(self):
        return "LaunchRequest(%r, %r, ...)" % (self._method, self._url)


class LaunchContext(object):

    """The result of authenticating a launch

    Passed to the application's callbacks.  Callbacks read the
    consumer, resource_link and user attributes and may set
    :attr:`redirect_url` or add to :attr:`output`."""

    def __init__(self, provider, request):
        self.provider = provider
        #: the :class:`LaunchRequest`
        self.request = request
        #: True if the launch is valid
        self.ok = True
        #: the :class:`~ltiprovider.errors.LTIError` that caused failure
        self.error = None
        self.consumer = None
        #: the link the application should use, after sharing this is
        #: the primary resource link
        self.resource_link = None
        self.user = None
        #: True if the consumer requested debug information
        self.debug_mode = (
            request.get('custom_debug', '').strip().lower() == 'true')
        #: the launch_presentation_return_url, if given
        self.return_url = (
            request.get('launch_presentation_return_url', '').strip() or None)
        self.redirect_url = None
        self.output = ''
        #: the generic message shown when the launch fails
        self.message = provider.message

    @property
    def reason(self):
        """The detailed reason for failure"""
        if self.error is None:
            return None
        return str(self.error)

    @property
    def context(self):
        return self.resource_link

    def fail(self, error):
        self.ok = False
        self.error = error

    def set_callback_result(self, result):
        """Interprets the value returned by a callback

        A string starting with http:// or https:// becomes the redirect
        URL, any other string is added to the output and a boolean sets
        the launch status.  Other values are ignored."""
        if isinstance(result, bool):
            self.ok = result
        elif isinstance(result, str):
            if is_url(result):
                self.redirect_url = result
            else:
                self.output += result


class Response(object):

    """An HTTP response generated for a launch

    status
        The integer status code

    headers
        A list of (name, value) tuples

    body
        A binary string"""

    def __init__(self, status=200, headers=None, body=b''):
        self.status = status
        self.headers = headers or []
        self.body = body

    @classmethod
    def redirect(cls, location):
        return cls(302, [('Location', location),
                         ('Content-Length', '0')])

    @classmethod
    def text(cls, data, status=200, mtype='text/plain'):
        body = data.encode('utf-8')
        return cls(status, [
            ('Content-Type', '%s; charset=utf-8' % mtype),
            ('Content-Length', str(len(body)))], body)

    @property
    def status_line(self):
        return "%i %s" % (self.status,
                          http.client.responses.get(self.status, 'Unknown'))

    @property
    def location(self):
        for name, value in self.headers:
            if name.lower() == 'location':
                return value
        return None

    def __repr__(self):
        return "Response(%r, %r, %r)" % (self.status, self.headers, self.body)


class ToolProvider(object):

    """An LTI tool provider

    store
        The :class:`~ltiprovider.store.EntityStore` that persists
        consumers, links, users, nonces and share keys.

    callback
        A function called with the :class:`LaunchContext` of each valid
        launch.  It may return a string (output or a redirect URL), a
        boolean or None.

    error_callback
        A function called with the :class:`LaunchContext` of a failed
        launch.  Return True to suppress the default error handling.

    allow_sharing
        True if resource links may be shared using share keys

    default_email
        An email address, or a domain starting with '@', used for users
        who launch without one (if the consumer doesn't set its own).

    id_scope
        The user id scope given to consumers created automatically

    auto_provision
        If True, an unknown consumer key creates a new, disabled
        consumer record instead of simply failing.

    message
        The message shown to users when a launch fails"""

    def __init__(self, store, callback=None, error_callback=None,
                 allow_sharing=False, default_email='',
                 id_scope=model.ID_SCOPE_ID_ONLY, auto_provision=False,
                 message=CONNECTION_ERROR_MESSAGE):
        self.store = store
        self.callback = callback
        self.error_callback = error_callback
        self.allow_sharing = allow_sharing
        self.default_email = default_email
        self.id_scope = id_scope
        self.auto_provision = auto_provision
        self.message = message
        self.constraints = collections.OrderedDict()

    def set_parameter_constraint(self, name, required=True,
                                 max_length=None):
        """Adds a constraint on a launch parameter

        name
            The name of the parameter

        required
            True if the parameter must be present and not blank

        max_length
            The maximum length of the (trimmed) value, or None"""
        name = name.strip()
        if name:
            self.constraints[name] = (required, max_length)

    def get_consumers(self):
        return self.store.list_consumers()

    def execute(self, request):
        """Handles a launch

        request
            A :class:`LaunchRequest`

        Authenticates the launch, calls the callback (if the launch is
        valid) and returns the :class:`Response`."""
        context = self.authenticate(request)
        if context.ok and self.callback is not None:
            context.set_callback_result(self.callback(context))
        return self.dispatch(context)

    def authenticate(self, request):
        """Authenticates a launch

        request
            A :class:`LaunchRequest`

        Returns a :class:`LaunchContext`.  Nothing is raised, if the
        launch fails the context's ok attribute is False and its error
        attribute is set."""
        context = LaunchContext(self, request)
        consumer_changed = False
        try:
            self.check_launch_parameters(request)
            context.consumer = self.resolve_consumer(request)
            self.check_availability(context.consumer, request)
            oauth.SignatureVerifier(context.consumer).verify(request)
            consumer_changed = self.record_access(context.consumer)
            self.check_constraints(request)
            if self.update_consumer(context.consumer, request):
                consumer_changed = True
            self.sync_resource_link(context)
            self.sync_user(context)
            if self.resolve_sharing(context):
                context.resource_link.save()
        except errors.LTIError as err:
            context.fail(err)
        if consumer_changed:
            context.consumer.save()
        if context.ok:
            logger.info("Launch from %s: %s", context.consumer.key,
                        context.resource_link.id)
        else:
            logger.warning("Launch from %s failed: %s",
                           request.get('oauth_consumer_key'), context.reason)
        return context

    def check_launch_parameters(self, request):
        if not request.get('oauth_consumer_key'):
            raise errors.InvalidLaunch("Missing consumer key.")
        if request.get('lti_message_type') != model.LTI_MESSAGE_TYPE:
            raise errors.InvalidLaunch(
                "Invalid or missing lti_message_type parameter.")
        if request.get('lti_version') != model.LTI_VERSION:
            raise errors.InvalidLaunch(
                "Invalid or missing lti_version parameter.")
        if not request.get('resource_link_id', '').strip():
            raise errors.InvalidLaunch("Missing resource link ID.")

    def resolve_consumer(self, request):
        consumer = model.ToolConsumer(request['oauth_consumer_key'],
                                      self.store)
        if consumer.load():
            return consumer
        if not self.auto_provision:
            raise errors.UnknownConsumer("Invalid consumer key.")
        consumer.id_scope = self.id_scope
        consumer.save()
        logger.warning("New tool consumer %s created but not enabled",
                       consumer.key)
        return consumer

    def check_availability(self, consumer, request):
        now = time.time()
        if not consumer.is_available(now):
            if not consumer.enabled:
                raise errors.ConsumerDisabled(
                    "Tool consumer has not been enabled by the tool "
                    "provider.")
            if consumer.enable_from is not None and \
                    consumer.enable_from > now:
                raise errors.ConsumerNotYetAvailable(
                    "Tool consumer access is not yet available.")
            raise errors.ConsumerExpired("Tool consumer access has expired.")
        if consumer.protected:
            guid = request.get('tool_consumer_instance_guid', '').strip()
            if consumer.consumer_guid:
                if guid != consumer.consumer_guid:
                    raise errors.UntrustedConsumer(
                        "Request is from an invalid tool consumer.")
            elif not guid:
                raise errors.UntrustedConsumer(
                    "A tool consumer GUID must be included in the launch "
                    "request.")

    def record_access(self, consumer):
        """Records the time of access

        Returns True if the consumer needs saving, i.e., this is the
        first access on a new (UTC) day."""
        now = time.time()
        last_access = consumer.last_access
        consumer.last_access = now
        return (last_access is None or
                time.gmtime(last_access)[:3] != time.gmtime(now)[:3])

    def check_constraints(self, request):
        invalid = []
        for name, (required, max_length) in self.constraints.items():
            value = request.get(name, '').strip()
            ok = bool(value) or not required
            if ok and max_length and len(value) > max_length:
                ok = False
            if not ok:
                invalid.append(name)
        if invalid:
            raise errors.InvalidParameters(invalid)

    def update_consumer(self, consumer, request):
        """Updates the consumer with information from the launch

        Returns True if the consumer was changed."""
        old_values = (consumer.lti_version, consumer.consumer_name,
                      consumer.consumer_version, consumer.consumer_guid,
                      consumer.css_path)
        consumer.lti_version = request['lti_version']
        if 'tool_consumer_instance_name' in request:
            consumer.consumer_name = request['tool_consumer_instance_name']
        if 'tool_consumer_info_product_family_code' in request:
            version = request['tool_consumer_info_product_family_code']
            if 'tool_consumer_info_version' in request:
                version = version + '-' + request['tool_consumer_info_version']
            consumer.consumer_version = version
        elif 'ext_lms' in request:
            consumer.consumer_version = request['ext_lms']
        guid = request.get('tool_consumer_instance_guid', '').strip()
        if guid and not consumer.consumer_guid:
            consumer.consumer_guid = guid
        consumer.css_path = (
            request.get('launch_presentation_css_url') or
            request.get('ext_launch_presentation_css_url') or None)
        return old_values != (
            consumer.lti_version, consumer.consumer_name,
            consumer.consumer_version, consumer.consumer_guid,
            consumer.css_path)

    def sync_resource_link(self, context):
        request = context.request
        link = context.consumer.get_resource_link(
            request['resource_link_id'].strip())
        link.context_id = request.get('context_id', '').strip() or None
        title = request.get('context_title', '').strip()
        link_title = request.get('resource_link_title', '').strip()
        if link_title:
            if title:
                title = title + ': '
            title = title + link_title
        if not title:
            title = "Course %s" % link.id
        link.title = title
        for name in model.LTI_SETTINGS_NAMES:
            link.set_setting(name, request.get(name))
        for name in list(link.settings):
            if name.startswith('custom_'):
                link.set_setting(name)
        for name, value in request.parameters.items():
            if name.startswith('custom_'):
                link.set_setting(name, value)
        context.resource_link = link

    def sync_user(self, context):
        request = context.request
        user_id = request.get('user_id', '').strip()
        user = model.User(context.resource_link, user_id)
        if user_id:
            user.load()
        sourcedid = request.get('lis_result_sourcedid', '').strip()
        if not sourcedid and user.result_sourcedid:
            # deleting resets the user
            user.delete()
        user.set_names(request.get('lis_person_name_given'),
                       request.get('lis_person_name_family'),
                       request.get('lis_person_name_full'))
        user.set_email(request.get('lis_person_contact_email_primary'),
                       context.consumer.default_email or self.default_email)
        user.roles = model.parse_roles(request.get('roles'))
        if sourcedid and sourcedid != user.result_sourcedid:
            user.result_sourcedid = sourcedid
            user.save()
        context.user = user

    def resolve_sharing(self, context):
        """Resolves any sharing arrangement

        If the launch's resource link is sharing another link, the
        context's resource_link is replaced with the primary link.

        Returns True if the caller must still save the (original)
        resource link."""
        link = context.resource_link
        share_key_id = context.request.get('custom_share_key', '').strip()
        save_link = True
        if share_key_id:
            if not self.allow_sharing:
                raise errors.SharingRefused(
                    "Your sharing request has been refused because sharing "
                    "is not being permitted.")
            share_key = model.ShareKey(link, share_key_id)
            if share_key.load():
                if (share_key.primary_consumer_key == link.consumer.key and
                        share_key.primary_resource_link_id == link.id):
                    raise errors.SharingSelfReference(
                        "It is not possible to share your resource link "
                        "with yourself.")
                link.primary_consumer_key = share_key.primary_consumer_key
                link.primary_resource_link_id = \
                    share_key.primary_resource_link_id
                link.share_approved = share_key.auto_approve
                if not link.save():
                    raise errors.SharingUnresolvable(
                        "An error occurred initialising your share "
                        "arrangement.")
                save_link = False
                share_key.delete()
                logger.info("Share key %s used by %r", share_key_id, link)
            if link.primary_consumer_key is None:
                raise errors.SharingUnresolvable(
                    "You have requested to share a resource link but none "
                    "is available.")
            if not link.share_approved:
                raise errors.SharingPending(
                    "Your share request is waiting to be approved.")
        elif link.primary_consumer_key is not None:
            raise errors.SharingUnrequested(
                "You have not requested to share a resource link but an "
                "arrangement is currently in place.")
        if link.primary_consumer_key is None:
            return True
        consumer = model.ToolConsumer(link.primary_consumer_key, self.store)
        primary = model.ResourceLink(consumer, link.primary_resource_link_id)
        if not (consumer.load() and primary.load()):
            raise errors.SharingUnresolvable(
                "Unable to load resource link being shared.")
        if save_link:
            link.save()
        context.resource_link = primary
        return False

    def dispatch(self, context):
        """Returns the :class:`Response` for a launch

        context
            The :class:`LaunchContext` returned by :meth:`authenticate`
            and (optionally) updated by the callback."""
        if not context.ok:
            if self.error_callback is not None and \
                    self.error_callback(context):
                return self.success_response(context)
            return self.error_response(context)
        return self.success_response(context)

    def success_response(self, context):
        if context.redirect_url:
            return Response.redirect(context.redirect_url)
        elif context.output:
            return Response.text(context.output, mtype='text/html')
        else:
            return Response()

    def error_response(self, context):
        reason = context.reason
        debug = context.debug_mode and reason
        if context.return_url:
            if debug:
                query = [('lti_errormsg', 'Debug error: %s' % reason),
                         ('lti_errorlog', reason)]
            else:
                query = [('lti_errormsg', context.message)]
            url = context.return_url
            url = url + ('&' if '?' in url else '?') + \
                urllib.parse.urlencode(query)
            return Response.redirect(url)
        message = reason if debug else context.message
        if is_url(message):
            return Response.redirect(message)
        if isinstance(context.error, errors.LTIAuthenticationError):
            status = 403
        else:
            status = 400
        return Response.text("Error: %s" % message, status)
