#! /usr/bin/env python

import base64
import io
import json
import logging
import optparse
import os.path
import shutil
import tempfile
import unittest

from lxml import etree

from ltiprovider import cartridge
from ltiprovider import model
from ltiprovider import oauth
from ltiprovider import provider
from ltiprovider import sqlds
from ltiprovider import store
from ltiprovider import wsgi

from test_oauth import sign_launch


def suite():
    loader = unittest.defaultTestLoader
    return unittest.TestSuite((
        loader.loadTestsFromTestCase(AppTests),
        loader.loadTestsFromTestCase(LaunchAppTests),
        ))


class MockRequest(object):

    def __init__(self, method='GET', path='/', query='', host='localhost',
                 port=80, secure=False, ip='127.0.0.1', body=b'',
                 body_type=None):
        self.input = io.BytesIO(body)
        self.output = io.BytesIO()
        self.errors = io.BytesIO()
        self.environ = {
            'REQUEST_METHOD': method,
            'SCRIPT_NAME': '',
            'PATH_INFO': path,
            'QUERY_STRING': query,
            'SERVER_NAME': host,
            'SERVER_PORT': str(port),
            'SERVER_PROTOCOL': 'HTTP/1.1',
            'REMOTE_ADDR': ip,
            'wsgi.version': (1, 0),
            'wsgi.url_scheme': 'https' if secure else 'http',
            'wsgi.input': self.input,
            'wsgi.errors': self.errors,
            'wsgi.multithread': True,
            'wsgi.multiprocess': False,
            'wsgi.run_once': False}
        if body is not None:
            self.environ['CONTENT_LENGTH'] = str(len(body))
        if body_type is not None:
            self.environ['CONTENT_TYPE'] = body_type
        self.status = None
        self.headers = None

    def call_app(self, app):
        for data in app(self.environ, self.start_response):
            if isinstance(data, bytes):
                self.output.write(data)
            else:
                raise ValueError("Value output by app: %s", str(data))

    def start_response(self, status, response_headers, exc_info=None):
        if not isinstance(status, str):
            raise ValueError("Value for status line: %s" % repr(status))
        self.status = status
        self.headers = {}
        for h, v in response_headers:
            if not isinstance(v, str):
                raise ValueError("Value for header: %s" % h)
            hv = self.headers.setdefault(h.lower(), [])
            hv.append(v)
        return self.output.write


class MockLogging(object):

    CRITICAL = 50
    ERROR = 40
    WARNING = 30
    INFO = 20
    DEBUG = 10
    NOTSET = 0

    def __init__(self):
        self.level = self.NOTSET

    def basicConfig(self, **kwargs):        # noqa
        if 'level' in kwargs:
            self.level = kwargs['level']


class AppTests(unittest.TestCase):

    def setUp(self):        # noqa
        # mock the logging module in wsgi to prevent our tests actually
        # overriding the logging level
        self.save_logging = wsgi.logging
        wsgi.logging = MockLogging()
        self.d = tempfile.mkdtemp('.d', 'ltiprovider-')

    def tearDown(self):     # noqa
        wsgi.logging = self.save_logging
        shutil.rmtree(self.d, True)

    def write_settings(self, settings):
        path = os.path.join(self.d, 'settings.json')
        with open(path, 'wb') as f:
            f.write(json.dumps(settings).encode('utf-8'))
        return path

    def test_defaults(self):
        class DefaultApp(wsgi.ToolProviderApp):
            pass
        self.assertTrue(DefaultApp.settings_file is None)
        self.assertTrue(DefaultApp.settings is None)
        DefaultApp.setup()
        settings = DefaultApp.settings['WSGIApp']
        self.assertTrue(settings['level'] is None)
        self.assertTrue(settings['port'] == 8080)
        self.assertTrue(settings['canonical_root'] == "http://localhost:8080")
        settings = DefaultApp.settings['ToolProviderApp']
        self.assertTrue(settings['store'] == 'memory')
        self.assertTrue(settings['allow_sharing'] is False)
        self.assertTrue(settings['id_scope'] == model.ID_SCOPE_ID_ONLY)
        self.assertTrue(settings['message'] ==
                        provider.CONNECTION_ERROR_MESSAGE)
        self.assertTrue(settings['key'] is None)
        self.assertTrue(settings['create_consumer'] is True)
        self.assertTrue(settings['tool']['title'] == 'LTI Tool')
        self.assertTrue(settings['admin_token'] is None)
        app = DefaultApp()
        self.assertTrue(isinstance(app.store, store.MemoryEntityStore))
        self.assertTrue(app.provider.store is app.store)
        self.assertTrue(app.tool.launch_url == "http://localhost:8080/launch")
        self.assertTrue(app.services.timeout == 30)
        self.assertTrue(app.services.default_email == '')
        self.assertTrue(app.store.list_consumers() == [])

    def test_options(self):
        path = self.write_settings({
            'WSGIApp': {'canonical_root': "https://lti.example.com"},
            'ToolProviderApp': {
                'store': 'sqlite',
                'database': os.path.join(self.d, 'lti.db'),
                'allow_sharing': True,
                'key': '12345',
                'secret': 'secret',
                'name': 'Test LMS',
            'admin_token': 'letmein',
                'tool': {'title': 'Quiz'}}})

        class OptionsApp(wsgi.ToolProviderApp):
            pass
        p = optparse.OptionParser()
        OptionsApp.add_options(p)
        options, args = p.parse_args(['-vv', '-p', '8081', '--settings', path])
        self.assertTrue(options.logging == 2)
        OptionsApp.setup(options=options, args=args)
        self.assertTrue(OptionsApp.settings_file == os.path.abspath(path))
        self.assertTrue(wsgi.logging.level == MockLogging.INFO)
        settings = OptionsApp.settings['WSGIApp']
        self.assertTrue(settings['port'] == 8081)
        self.assertTrue(settings['canonical_root'] ==
                        "https://lti.example.com")
        settings = OptionsApp.settings['ToolProviderApp']
        self.assertTrue(settings['store'] == 'sqlite')
        self.assertTrue(settings['tool']['title'] == 'Quiz')
        self.assertTrue(settings['tool']['description'] == '')
        app = OptionsApp()
        try:
            self.assertTrue(isinstance(app.store, sqlds.SQLiteEntityStore))
            self.assertTrue(app.provider.allow_sharing is True)
            self.assertTrue(app.tool.launch_url ==
                            "https://lti.example.com/launch")
            consumer = model.ToolConsumer('12345', app.store)
            self.assertTrue(consumer.load())
            self.assertTrue(consumer.enabled)
            self.assertTrue(consumer.secret == 'secret')
            self.assertTrue(consumer.name == 'Test LMS')
        finally:
            app.store.close()

    def test_no_create(self):
        path = self.write_settings({
            'ToolProviderApp': {'key': '12345', 'secret': 'secret'}})

        class NoCreateApp(wsgi.ToolProviderApp):
            pass
        p = optparse.OptionParser()
        NoCreateApp.add_options(p)
        options, args = p.parse_args(['--settings', path])
        NoCreateApp.setup(options=options, args=args)
        NoCreateApp.settings['ToolProviderApp']['create_consumer'] = False
        app = NoCreateApp()
        self.assertTrue(app.store.list_consumers() == [])

    def test_new_store(self):
        self.assertTrue(isinstance(wsgi.new_store({}),
                                   store.MemoryEntityStore))
        s = wsgi.new_store({'store': 'sqlite',
                            'database': os.path.join(self.d, 'test.db')})
        try:
            self.assertTrue(isinstance(s, sqlds.SQLiteEntityStore))
            self.assertTrue(os.path.isfile(os.path.join(self.d, 'test.db')))
        finally:
            s.close()
        try:
            wsgi.new_store({'store': 'mysql'})
            self.fail("Unknown store")
        except ValueError:
            pass


class LaunchApp(wsgi.ToolProviderApp):
    pass


LAUNCH_SETTINGS = {
        'WSGIApp': {'canonical_root': "http://www.example.com"},
        'ToolProviderApp': {
            'key': '12345',
            'secret': 'secret',
            'name': 'Test LMS',
            'tool': {'title': 'Quiz', 'description': 'A simple quiz'}}}


class LaunchAppTests(unittest.TestCase):

    def setUp(self):        # noqa
        self.save_logging = wsgi.logging
        wsgi.logging = MockLogging()
        self.d = tempfile.mkdtemp('.d', 'ltiprovider-')
        LaunchApp.settings_file = os.path.join(self.d, 'settings.json')
        with open(LaunchApp.settings_file, 'wb') as f:
            f.write(json.dumps(LAUNCH_SETTINGS).encode('utf-8'))
        LaunchApp.setup()
        self.app = LaunchApp()

    def tearDown(self):     # noqa
        wsgi.logging = self.save_logging
        shutil.rmtree(self.d, True)

    def launch_request(self, secret="secret", **kwargs):
        parameters = {
            'lti_message_type': 'basic-lti-launch-request',
            'lti_version': 'LTI-1p0',
            'resource_link_id': 'rlink',
            'resource_link_title': 'Unit <1>',
            'user_id': '42',
            'lis_person_name_full': 'Ada Lovelace'}
        parameters.update(kwargs)
        launch = sign_launch("http://www.example.com/launch", parameters,
                             "12345", secret)
        return MockRequest('POST', '/launch', body=launch.body.encode('ascii'),
                           body_type=oauth.FORM_CONTENT_TYPE)

    def config_request(self, key, token='letmein', method='GET'):
        request = MockRequest(method, '/config/' + key)
        if token is not None:
            request.environ['HTTP_AUTHORIZATION'] = "Basic " + \
                base64.b64encode(
                    ("admin:" + token).encode('utf-8')).decode('ascii')
        return request

    def test_create_consumer(self):
        consumer = self.app.create_consumer('12345', 'other', 'Renamed')
        # existing consumers are not changed
        self.assertTrue(consumer.secret == 'secret')
        self.assertTrue(consumer.name == 'Test LMS')
        consumer = self.app.create_consumer('54321')
        self.assertTrue(consumer.enabled)
        self.assertTrue(len(consumer.secret) == 32)
        self.assertTrue([c.key for c in self.app.provider.get_consumers()] ==
                        ['54321', '12345'])

    def test_launch(self):
        request = self.launch_request()
        request.call_app(self.app)
        self.assertTrue(request.status == "200 OK", request.status)
        self.assertTrue(request.headers['content-type'] ==
                        ['text/html; charset=utf-8'])
        output = request.output.getvalue()
        self.assertTrue(b"Welcome Ada Lovelace" in output)
        self.assertTrue(b"Unit &lt;1&gt;" in output)
        link = model.ResourceLink(
            model.ToolConsumer('12345', self.app.store), 'rlink')
        self.assertTrue(link.load())

    def test_launch_failed(self):
        request = self.launch_request(secret="wrong")
        request.call_app(self.app)
        self.assertTrue(request.status == "403 Forbidden", request.status)
        self.assertTrue(request.output.getvalue() == b"Error: " +
                        provider.CONNECTION_ERROR_MESSAGE.encode('ascii'))
        request = self.launch_request(
            launch_presentation_return_url="http://lms.example.com/return",
            lti_version="LTI-2p0")
        request.call_app(self.app)
        self.assertTrue(request.status == "302 Found")
        self.assertTrue(request.headers['location'][0].startswith(
            "http://lms.example.com/return?lti_errormsg="))

    def test_launch_method(self):
        request = MockRequest('GET', '/launch')
        request.call_app(self.app)
        self.assertTrue(request.status == "405 Method Not Allowed")

    def test_config(self):
        request = self.config_request('12345')
        request.call_app(self.app)
        self.assertTrue(request.status == "200 OK")
        self.assertTrue(request.headers['content-type'] ==
                        [cartridge.DESCRIPTOR_CONTENT_TYPE])
        self.assertTrue(request.headers['content-disposition'] ==
                        ["attachment; filename=TestLMS.xml"])
        data = request.output.getvalue()
        self.assertTrue(request.headers['content-length'] == [str(len(data))])
        root = etree.fromstring(data)
        ns = "{%s}" % cartridge.IMSBASICLTI_NAMESPACE
        self.assertTrue(root.findtext(ns + "title") == "Quiz")
        self.assertTrue(root.findtext(ns + "launch_url") ==
                        "http://www.example.com/launch")
        self.assertTrue(root.xpath(
            "//cm:property[@name='secret']/text()",
            namespaces={"cm": cartridge.IMSLTICM_NAMESPACE}) == ["secret"])
        request = self.config_request('54321')
        request.call_app(self.app)
        self.assertTrue(request.status == "404 Not Found")
        request = self.config_request('12345', method='POST')
        request.call_app(self.app)
        self.assertTrue(request.status == "405 Method Not Allowed")

    def test_config_credentials(self):
        for token in (None, 'wrong', ''):
            request = self.config_request('12345', token)
            request.call_app(self.app)
            self.assertTrue(request.status == "401 Unauthorized", token)
            self.assertTrue(request.headers['www-authenticate'] ==
                            ['Basic realm="Quiz"'])
            self.assertFalse(b"secret" in request.output.getvalue())
        request = self.config_request('12345')
        request.environ['HTTP_AUTHORIZATION'] = "Basic !!!"
        request.call_app(self.app)
        self.assertTrue(request.status == "401 Unauthorized")
        # no token, no descriptors
        self.app.admin_token = None
        request = self.config_request('12345')
        request.call_app(self.app)
        self.assertTrue(request.status == "403 Forbidden")
        self.assertFalse(b"secret" in request.output.getvalue())

    def test_not_found(self):
        for path in ('/', '/launch/', '/config'):
            request = MockRequest('GET', path)
            request.call_app(self.app)
            self.assertTrue(request.status == "404 Not Found", path)
            self.assertTrue(request.output.getvalue() == b"404 Not Found")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    unittest.main()
