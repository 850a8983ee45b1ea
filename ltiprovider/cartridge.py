#! /usr/bin/env python
"""Tool configuration descriptors

A descriptor is a basic_lti_link document, as used in IMS Common
Cartridges, which a consumer's administrator can import to configure a
link to the tool.  The descriptors generated here are specific to a
single consumer: they carry the consumer's key and secret in an
extensions block."""

import re

from lxml import etree
from lxml.builder import ElementMaker


#: The namespace of the basic_lti_link element
IMSBASICLTI_NAMESPACE = "http://www.imsglobal.org/xsd/imsbasiclti_v1p0"
#: The namespace of the common message properties
IMSLTICM_NAMESPACE = "http://www.imsglobal.org/xsd/imslticm_v1p0"
#: The namespace of the common profile (vendor) elements
IMSLTICP_NAMESPACE = "http://www.imsglobal.org/xsd/imslticp_v1p0"
XSI_NAMESPACE = "http://www.w3.org/2001/XMLSchema-instance"

SCHEMA_LOCATION = " ".join((
    IMSBASICLTI_NAMESPACE,
    "http://www.imsglobal.org/xsd/lti/ltiv1p0/imsbasiclti_v1p0.xsd",
    IMSLTICM_NAMESPACE,
    "http://www.imsglobal.org/xsd/lti/ltiv1p0/imslticm_v1p0.xsd",
    IMSLTICP_NAMESPACE,
    "http://www.imsglobal.org/xsd/lti/ltiv1p0/imslticp_v1p0.xsd"))

NSMAP = {None: IMSBASICLTI_NAMESPACE,
         'lticm': IMSLTICM_NAMESPACE,
         'lticp': IMSLTICP_NAMESPACE,
         'xsi': XSI_NAMESPACE}

BLTI = ElementMaker(namespace=IMSBASICLTI_NAMESPACE, nsmap=NSMAP)
LTICM = ElementMaker(namespace=IMSLTICM_NAMESPACE, nsmap=NSMAP)
LTICP = ElementMaker(namespace=IMSLTICP_NAMESPACE, nsmap=NSMAP)

#: The content type used when downloading a descriptor
DESCRIPTOR_CONTENT_TYPE = 'application/octet-stream'

_unsafe_chars = re.compile(r'[^_a-zA-Z0-9-]')


class ToolConfiguration(object):

    """Describes a tool

    title, description
        Strings describing the tool

    launch_url
        The URL that consumers should launch

    icon_url
        Optional URL of an icon for the tool

    vendor
        An optional dictionary with keys 'code', 'name', 'description',
        'url' and 'email' describing the tool's vendor.

    secure_launch_url, secure_icon_url
        Optional https variants of the launch and icon URLs

    custom
        An optional dictionary of custom parameters for the link"""

    def __init__(self, title, description, launch_url, icon_url=None,
                 vendor=None, secure_launch_url=None, secure_icon_url=None,
                 custom=None):
        self.title = title
        self.description = description
        self.launch_url = launch_url
        self.icon_url = icon_url
        self.vendor = vendor or {}
        self.secure_launch_url = secure_launch_url
        self.secure_icon_url = secure_icon_url
        self.custom = custom or {}

    def get_element(self, consumer):
        """Returns the basic_lti_link element for a consumer

        consumer
            The :class:`~ltiprovider.model.ToolConsumer` the descriptor
            is for."""
        link = BLTI.basic_lti_link(
            BLTI.title(self.title),
            BLTI.description(self.description),
            BLTI.launch_url(self.launch_url),
            BLTI.secure_launch_url(self.secure_launch_url or ''),
            BLTI.icon(self.icon_url or ''),
            BLTI.secure_icon(self.secure_icon_url or ''),
            BLTI.custom(*[LTICM.property(self.custom[name], name=name)
                          for name in sorted(self.custom)]),
            BLTI.extensions(
                LTICM.property(consumer.key, name='guid'),
                LTICM.property(consumer.secret, name='secret'),
                platform='learn'))
        link.set('{%s}schemaLocation' % XSI_NAMESPACE, SCHEMA_LOCATION)
        if self.vendor:
            vendor = BLTI.vendor()
            for name in ('code', 'name', 'description', 'url'):
                if self.vendor.get(name):
                    vendor.append(LTICP(name, self.vendor[name]))
            if self.vendor.get('email'):
                vendor.append(LTICP.contact(LTICP.email(self.vendor['email'])))
            link.append(vendor)
        return link

    def to_xml(self, consumer):
        """Returns the descriptor as a UTF-8 encoded binary string"""
        return etree.tostring(self.get_element(consumer), xml_declaration=True,
                              encoding='UTF-8', pretty_print=True)

    def file_name(self, consumer):
        """Returns a file name for a consumer's descriptor

        The name of the consumer with all characters other than letters,
        digits, hyphen and underscore removed, the consumer key is used
        if that leaves nothing."""
        name = _unsafe_chars.sub('', consumer.name or '')
        if not name:
            name = _unsafe_chars.sub('', consumer.key) or 'tool'
        return name + '.xml'
