#! /usr/bin/env python
"""A WSGI application that hosts an LTI tool provider

The application accepts launches at /launch and serves configuration
descriptors for each consumer at /config/<consumer key>.  Applications
derive from :class:`ToolProviderApp` and override :meth:`launch_callback`
to do something useful with a launch."""

import base64
import binascii
import hmac
import html
import json
import logging
import optparse
import os.path
import urllib.parse

from wsgiref.simple_server import make_server

from . import cartridge
from . import model
from . import provider
from . import services
from . import sqlds
from . import store


logger = logging.getLogger('ltiprovider.wsgi')

#: The entity store classes that can be named in the settings file
STORE_CLASSES = {
    'memory': store.MemoryEntityStore,
    'sqlite': sqlds.SQLiteEntityStore}


def new_store(settings):
    """Creates an entity store from application settings

    settings
        The ToolProviderApp settings dictionary.  The 'store' setting
        names an entry in :data:`STORE_CLASSES`, the 'database' setting
        is passed to the SQLite store as its file path."""
    name = settings.get('store', 'memory')
    try:
        store_class = STORE_CLASSES[name]
    except KeyError:
        raise ValueError("Unknown entity store: %s" % name)
    if store_class is sqlds.SQLiteEntityStore:
        return store_class(settings.get('database', ':memory:'))
    return store_class()


class ToolProviderApp(object):

    """Represents an LTI tool provider application

    The settings file is a JSON dictionary keyed on class names.  The
    key 'WSGIApp' holds the server settings:

    level (None)
        If specified, used to set the root logging level.

    port (8080)
        The port number used by :meth:`run_server`

    canonical_root ("http://localhost" or "http://localhost:<port>")
        The scheme, host and port used to build the launch URL when
        checking signatures (the Host header is ignored).

    The key 'ToolProviderApp' holds the provider settings:

    store ('memory')
        'memory' or 'sqlite'

    database (':memory:')
        The path of the SQLite database

    allow_sharing (False), default_email (''), id_scope (0),
    auto_provision (False), message
        Passed to :class:`~ltiprovider.provider.ToolProvider`

    timeout (30)
        The timeout used for extension service requests, in seconds

    key, secret, name (None)
        If key is given, a consumer with this key is created (enabled)
        on startup unless it exists already.

    tool ({})
        A dictionary with 'title', 'description', 'icon' and 'vendor'
        entries used to build configuration descriptors.

    admin_token (None)
        The password that must be given, with HTTP basic authentication
        and any user name, to download a configuration descriptor.  The
        descriptors contain the consumer secrets so they cannot be
        downloaded at all when no token is set."""

    #: the path to the settings file
    settings_file = None

    #: the class settings loaded by :meth:`setup`
    settings = None

    @classmethod
    def main(cls):
        """Runs the application

        Options are parsed from the command line and used to
        :meth:`setup` the class before an instance is created and
        launched with :meth:`run_server`."""
        parser = optparse.OptionParser()
        cls.add_options(parser)
        (options, args) = parser.parse_args()
        cls.setup(options=options, args=args)
        app = cls()
        app.run_server()

    @classmethod
    def add_options(cls, parser):
        """Defines command line options

        parser
            An optparse.OptionParser instance

        -v          Sets the logging level to WARNING, INFO or DEBUG
        -p, --port  Overrides the 'port' setting
        --settings  Sets the path to the :attr:`settings_file`
        --create_consumer   Creates a consumer from the key and secret
                            settings (the default when a key is set)"""
        parser.add_option(
            "-v", action="count", dest="logging",
            default=None, help="increase verbosity of output up to 3x")
        parser.add_option(
            "-p", "--port", action="store", dest="port",
            default=None, help="port on which to listen")
        parser.add_option(
            "--settings", dest="settings", action="store", default=None,
            help="Path to the settings file")
        parser.add_option(
            "--create_consumer", dest="create_consumer",
            action="store_true", default=None,
            help="Create the consumer named in the settings file")

    @classmethod
    def setup(cls, options=None, args=None, **kwargs):
        """Perform one-time class setup

        options
            An optional optparse.Values instance

        args
            An optional list of positional arguments, ignored.

        Loads the settings file (if there is one), fills in the default
        settings and configures the root logger."""
        if options and options.settings:
            cls.settings_file = os.path.abspath(options.settings)
        cls.settings = {}
        if cls.settings_file and os.path.isfile(cls.settings_file):
            with open(cls.settings_file, 'rb') as f:
                cls.settings = json.loads(f.read().decode('utf-8'))
        settings = cls.settings.setdefault('WSGIApp', {})
        if options and options.logging is not None:
            settings['level'] = (
                logging.ERROR, logging.WARNING, logging.INFO,
                logging.DEBUG)[min(options.logging, 3)]
        level = settings.setdefault('level', None)
        if level is not None:
            logging.basicConfig(level=settings['level'])
        if options and options.port is not None:
            settings['port'] = int(options.port)
        else:
            settings.setdefault('port', 8080)
        settings.setdefault(
            'canonical_root', "http://localhost%s" %
            ("" if settings['port'] == 80 else (":%i" % settings['port'])))
        settings = cls.settings.setdefault('ToolProviderApp', {})
        settings.setdefault('store', 'memory')
        settings.setdefault('database', ':memory:')
        settings.setdefault('allow_sharing', False)
        settings.setdefault('default_email', '')
        settings.setdefault('id_scope', model.ID_SCOPE_ID_ONLY)
        settings.setdefault('auto_provision', False)
        settings.setdefault('message', provider.CONNECTION_ERROR_MESSAGE)
        settings.setdefault('timeout', services.DEFAULT_TIMEOUT)
        settings.setdefault('key', None)
        settings.setdefault('secret', None)
        settings.setdefault('name', None)
        if options and options.create_consumer is not None:
            settings['create_consumer'] = options.create_consumer
        else:
            settings.setdefault('create_consumer', True)
        tool = settings.setdefault('tool', {})
        tool.setdefault('title', 'LTI Tool')
        tool.setdefault('description', '')
        tool.setdefault('icon', None)
        tool.setdefault('vendor', {})
        settings.setdefault('admin_token', None)
        logger.debug("Settings loaded for %s", cls.__name__)

    def __init__(self, entity_store=None):
        settings = self.settings['ToolProviderApp']
        if entity_store is None:
            entity_store = new_store(settings)
        #: the :class:`~ltiprovider.store.EntityStore`
        self.store = entity_store
        #: the :class:`~ltiprovider.provider.ToolProvider`
        self.provider = provider.ToolProvider(
            entity_store, callback=self.launch_callback,
            allow_sharing=settings['allow_sharing'],
            default_email=settings['default_email'],
            id_scope=settings['id_scope'],
            auto_provision=settings['auto_provision'],
            message=settings['message'])
        #: a :class:`~ltiprovider.services.ServiceClient` for calling the
        #: consumers' extension services
        self.services = services.ServiceClient(
            timeout=settings['timeout'],
            default_email=settings['default_email'])
        #: the credential needed to download configuration descriptors
        self.admin_token = settings['admin_token']
        self.canonical_root = self.settings['WSGIApp']['canonical_root']
        tool = settings['tool']
        self.tool = cartridge.ToolConfiguration(
            tool['title'], tool['description'],
            self.canonical_root + '/launch', icon_url=tool['icon'],
            vendor=tool['vendor'])
        if settings['key'] and settings['create_consumer']:
            self.create_consumer(settings['key'], settings['secret'],
                                 settings['name'])

    def create_consumer(self, key, secret=None, name=None):
        """Creates and enables a consumer (if it doesn't exist)

        Returns the :class:`~ltiprovider.model.ToolConsumer`."""
        consumer = model.ToolConsumer(key, self.store)
        if not consumer.load():
            if secret:
                consumer.secret = secret
            consumer.name = name
            consumer.enabled = True
            consumer.save()
            logger.info("Created consumer %s", key)
        return consumer

    def __call__(self, environ, start_response):
        path = environ.get('PATH_INFO', '/')
        method = environ.get('REQUEST_METHOD', 'GET').upper()
        if path == '/launch':
            if method != 'POST':
                return self.error_page(start_response, 405)
            return self.launch(environ, start_response)
        elif path.startswith('/config/'):
            if method not in ('GET', 'HEAD'):
                return self.error_page(start_response, 405)
            if self.admin_token is None:
                return self.error_page(start_response, 403)
            if not self.check_admin(environ):
                return self.error_page(start_response, 401)
            return self.config_page(
                start_response, urllib.parse.unquote(path[8:]))
        return self.error_page(start_response, 404)

    def check_admin(self, environ):
        """Returns True if the request carries the admin token

        The token is the password of an HTTP basic Authorization
        header, the user name is ignored."""
        credentials = environ.get('HTTP_AUTHORIZATION', '').split(None, 1)
        if len(credentials) != 2 or credentials[0].lower() != 'basic':
            return False
        try:
            credentials = base64.b64decode(
                credentials[1].encode('ascii'), validate=True).decode('utf-8')
        except (binascii.Error, UnicodeError):
            return False
        password = credentials.partition(':')[2]
        if hmac.compare_digest(password.encode('utf-8'),
                               self.admin_token.encode('utf-8')):
            return True
        logger.warning("Bad credentials for %s", environ.get('PATH_INFO'))
        return False

    def get_url(self, environ):
        """Returns the URL of the request

        Built from the canonical root rather than the Host header."""
        url = self.canonical_root + urllib.parse.quote(
            environ.get('SCRIPT_NAME', '') + environ.get('PATH_INFO', ''))
        if environ.get('QUERY_STRING'):
            url = url + '?' + environ['QUERY_STRING']
        return url

    def launch(self, environ, start_response):
        request = provider.LaunchRequest.from_environ(
            environ, self.get_url(environ))
        response = self.provider.execute(request)
        start_response(response.status_line, response.headers)
        return [response.body]

    def launch_callback(self, context):
        """Called with the LaunchContext of each valid launch

        The default implementation returns a simple welcome page, derived
        classes should override this method."""
        return """<html>
<head><title>%(title)s</title></head>
<body><p>Welcome %(user)s</p><p>You launched %(title)s</p></body>
</html>""" % {'title': html.escape(context.resource_link.title or ''),
              'user': html.escape(context.user.fullname or '')}

    def config_page(self, start_response, key):
        consumer = model.ToolConsumer(key, self.store)
        if not key or not consumer.load():
            return self.error_page(start_response, 404)
        data = self.tool.to_xml(consumer)
        start_response("200 OK", [
            ("Cache-Control", "public"),
            ("Content-Type", cartridge.DESCRIPTOR_CONTENT_TYPE),
            ("Content-Disposition", "attachment; filename=%s" %
             self.tool.file_name(consumer)),
            ("Content-Length", str(len(data)))])
        return [data]

    def error_page(self, start_response, code=500, msg=None):
        response = provider.Response(code)
        if msg is None:
            msg = response.status_line
        response = provider.Response.text(msg, code)
        if code == 401:
            response.headers.append(
                ('WWW-Authenticate', 'Basic realm="%s"' % self.tool.title))
        start_response(response.status_line, response.headers)
        return [response.body]

    def run_server(self):
        port = self.settings['WSGIApp']['port']
        server = make_server('', port, self)
        logger.info("Starting %s server on port %s", self.__class__.__name__,
                    port)
        server.serve_forever()


if __name__ == '__main__':
    ToolProviderApp.main()
