#! /usr/bin/env python
"""Client for the services offered by tool consumers

Consumers advertise the Outcomes, Memberships and Setting extension
services in the launch parameters, the URLs end up in the settings of
the :class:`~ltiprovider.model.ResourceLink`.  The extension services
use signed form posts, the LTI 1.1 Outcomes service uses an XML
envelope signed with a body hash.  Outcomes use LTI 1.1 in preference
to the extension service where possible."""

import logging
import math
import uuid

import requests

from lxml import etree
from lxml.builder import ElementMaker

from . import errors
from . import model
from . import oauth


logger = logging.getLogger('ltiprovider.services')

#: Read a value from the consumer
EXT_READ = 1
#: Write a value to the consumer
EXT_WRITE = 2
#: Delete a value held by the consumer
EXT_DELETE = 3

TYPE_DECIMAL = 'decimal'
TYPE_PERCENTAGE = 'percentage'
TYPE_RATIO = 'ratio'
TYPE_LETTER_AF = 'letteraf'
TYPE_LETTER_AF_PLUS = 'letterafplus'
TYPE_PASS_FAIL = 'passfail'
TYPE_TEXT = 'freetext'

#: The namespace of the LTI 1.1 outcomes messages
POX_NAMESPACE = "http://www.imsglobal.org/services/ltiv1p1/xsd/imsoms_v1p0"

#: The default timeout for service requests, in seconds
DEFAULT_TIMEOUT = 30

POX = ElementMaker(namespace=POX_NAMESPACE, nsmap={None: POX_NAMESPACE})

_parser = etree.XMLParser(resolve_entities=False, no_network=True)


def parse_response(data):
    """Parses a service response

    data
        The response body as a binary string

    Returns the root element with all namespaces removed so that
    responses can be navigated with simple paths.  Raises
    :class:`~ltiprovider.errors.ServiceRejected` if the data is not
    well-formed XML."""
    try:
        root = etree.fromstring(data, parser=_parser)
    except etree.XMLSyntaxError as err:
        raise errors.ServiceRejected("Badly formed response: %s" % str(err))
    for element in root.iter():
        if isinstance(element.tag, str):
            element.tag = etree.QName(element).localname
    etree.cleanup_namespaces(root)
    return root


def _number(value):
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def format_value(value):
    if value is None:
        return ''
    return str(value)


def supported_types(link):
    """Returns the list of outcome types supported by a consumer"""
    types = link.get_setting('ext_ims_lis_resultvalue_sourcedids',
                             TYPE_DECIMAL)
    return types.replace(' ', '').lower().split(',')


def check_value_type(link, outcome, types=None):
    """Checks, and if necessary converts, the type of an outcome

    link
        The :class:`~ltiprovider.model.ResourceLink` the outcome will be
        sent to.

    outcome
        The :class:`~ltiprovider.model.Outcome`, its value and type are
        updated if a conversion is made.

    types
        The list of acceptable types, defaults to the list advertised
        by the consumer (see :func:`supported_types`).

    Returns True if the outcome has (or now has) an acceptable type.
    An outcome with no value is always acceptable."""
    if not types:
        types = supported_types(link)
    otype = outcome.type
    value = format_value(outcome.value)
    if otype in types or not value:
        return True
    if otype == TYPE_PERCENTAGE:
        if value.endswith('%'):
            value = value[:-1]
        n = _number(value)
        if n is not None and 0 <= n <= 100:
            outcome.value = n / 100
            outcome.type = TYPE_DECIMAL
            return True
    elif otype == TYPE_RATIO:
        parts = value.split('/', 1)
        if len(parts) == 2:
            num, den = _number(parts[0]), _number(parts[1])
            if num is not None and den is not None and num >= 0 and den > 0:
                outcome.value = num / den
                outcome.type = TYPE_DECIMAL
                return True
    elif otype == TYPE_LETTER_AF:
        if TYPE_LETTER_AF_PLUS in types:
            outcome.type = TYPE_LETTER_AF_PLUS
            return True
        elif TYPE_TEXT in types:
            outcome.type = TYPE_TEXT
            return True
    elif otype == TYPE_LETTER_AF_PLUS:
        if TYPE_LETTER_AF in types and len(value) == 1:
            outcome.type = TYPE_LETTER_AF
            return True
        elif TYPE_TEXT in types:
            outcome.type = TYPE_TEXT
            return True
    elif otype == TYPE_TEXT:
        n = _number(value)
        if n is not None and 0 <= n <= 1:
            outcome.type = TYPE_DECIMAL
            return True
        elif value.endswith('%'):
            n = _number(value[:-1])
            if n is not None and 0 <= n <= 100:
                if TYPE_PERCENTAGE in types:
                    outcome.type = TYPE_PERCENTAGE
                else:
                    outcome.value = n / 100
                    outcome.type = TYPE_DECIMAL
                return True
    return False


class ServiceClient(object):

    """Calls the extension services of tool consumers

    session
        A :class:`requests.Session` used to make the requests, defaults
        to a new session.

    timeout
        The timeout, in seconds, applied to each request

    default_email
        The email address (or '@domain') given to members without one
        when the consumer does not set its own default, as used by
        :class:`~ltiprovider.provider.ToolProvider` for launches.

    Each public method makes at most one attempt to contact the
    consumer (the group-aware memberships request may be followed by a
    plain one) and returns a
    :class:`~ltiprovider.errors.ServiceResult`."""

    def __init__(self, session=None, timeout=DEFAULT_TIMEOUT,
                 default_email=''):
        if session is None:
            session = requests.Session()
        self.session = session
        self.timeout = timeout
        self.default_email = default_email

    def post(self, link, url, body, headers):
        """Posts a request and parses the response

        The request body and response text are recorded in the link's
        ext_request and ext_response attributes."""
        link.ext_request = body
        link.ext_response = None
        logger.info("POST %s", url)
        logger.debug("%s", body)
        try:
            response = self.session.post(
                url, data=body.encode('utf-8'), headers=headers,
                timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as err:
            logger.warning("Service request to %s failed: %s", url, str(err))
            raise errors.ServiceUnavailable(str(err))
        link.ext_response = response.text
        logger.debug("%s", response.text)
        return parse_response(response.content)

    def do_service(self, link, message_type, url, parameters):
        """Sends an extension service request

        link
            The :class:`~ltiprovider.model.ResourceLink`

        message_type
            The lti_message_type of the request

        url
            The service URL

        parameters
            A list of (name, value) tuples

        Returns the (namespace-free) root of the response."""
        if not url:
            raise errors.ServiceUnavailable(
                "Service not available: %s" % message_type)
        parameters = list(parameters) + [
            ('lti_version', model.LTI_VERSION),
            ('lti_message_type', message_type)]
        consumer = link.consumer
        body = oauth.sign_parameters(url, parameters, consumer.key,
                                     consumer.secret)
        root = self.post(link, url, body,
                         {'Content-Type': oauth.FORM_CONTENT_TYPE})
        code = root.findtext('statusinfo/codemajor')
        if code != 'Success':
            raise errors.ServiceRejected(
                "%s failed with status %s: %s" % (
                    message_type, code,
                    root.findtext('statusinfo/description')))
        return root

    def do_pox_service(self, link, operation, url, record):
        """Sends an LTI 1.1 outcomes request

        operation
            The name of the operation, e.g., 'replaceResult'

        record
            The resultRecord element

        Returns the (namespace-free) root of the response."""
        envelope = POX.imsx_POXEnvelopeRequest(
            POX.imsx_POXHeader(
                POX.imsx_POXRequestHeaderInfo(
                    POX.imsx_version('V1.0'),
                    POX.imsx_messageIdentifier(uuid.uuid4().hex))),
            POX.imsx_POXBody(POX(operation + 'Request', record)))
        body = etree.tostring(envelope, xml_declaration=True,
                              encoding='UTF-8').decode('utf-8')
        consumer = link.consumer
        headers = oauth.sign_body(url, body, consumer.key, consumer.secret)
        root = self.post(link, url, body, headers)
        code = root.findtext('imsx_POXHeader/imsx_POXResponseHeaderInfo/'
                             'imsx_statusInfo/imsx_codeMajor')
        if code != 'success':
            raise errors.ServiceRejected(
                "%s failed with status %s: %s" % (
                    operation, code, root.findtext(
                        'imsx_POXHeader/imsx_POXResponseHeaderInfo/'
                        'imsx_statusInfo/imsx_description')))
        return root

    def _result(self, method, *args):
        try:
            return errors.ServiceResult(True, method(*args))
        except errors.ServiceError as err:
            return errors.ServiceResult(False, error=err)

    def do_outcomes_service(self, link, action, outcome):
        """Reads, writes or deletes an outcome

        link
            The :class:`~ltiprovider.model.ResourceLink` the outcome
            belongs to.

        action
            One of :data:`EXT_READ`, :data:`EXT_WRITE` or
            :data:`EXT_DELETE`

        outcome
            An :class:`~ltiprovider.model.Outcome`

        The value of a successful read is the text of the result (the
        outcome's value is updated too)."""
        return self._result(self.outcomes, link, action, outcome)

    def outcomes(self, link, action, outcome):
        url11 = link.get_setting('lis_outcome_service_url')
        url_ext = link.get_setting('ext_ims_lis_basic_outcome_url')
        if not (url11 or url_ext):
            raise errors.ServiceUnavailable("No outcomes service available.")
        operation = None
        if action == EXT_READ:
            if url11 and outcome.type == TYPE_DECIMAL:
                operation = 'readResult'
            elif url_ext:
                operation = 'basic-lis-readresult'
        elif action == EXT_WRITE:
            if url11 and check_value_type(link, outcome, [TYPE_DECIMAL]):
                operation = 'replaceResult'
            elif check_value_type(link, outcome):
                operation = 'basic-lis-updateresult'
            else:
                raise errors.UnsupportedValueType(
                    "Unable to send %r as a supported outcome type" %
                    format_value(outcome.value))
        elif action == EXT_DELETE:
            if url11 and outcome.type == TYPE_DECIMAL:
                operation = 'deleteResult'
            elif url_ext:
                operation = 'basic-lis-deleteresult'
        else:
            raise ValueError("Unknown outcomes action: %r" % action)
        if operation is None:
            raise errors.ServiceUnavailable(
                "No outcomes service available for type %s" % outcome.type)
        value = format_value(outcome.value)
        if not operation.startswith('basic-'):
            guid = POX.sourcedGUID(POX.sourcedId(outcome.sourcedid or ''))
            if action == EXT_WRITE:
                record = POX.resultRecord(guid, POX.result(POX.resultScore(
                    POX.language(outcome.language or ''),
                    POX.textString(value))))
            else:
                record = POX.resultRecord(guid)
            root = self.do_pox_service(link, operation, url11, record)
            if action == EXT_READ:
                value = root.findtext('imsx_POXBody/readResultResponse/'
                                      'result/resultScore/textString')
                if value is None:
                    raise errors.ServiceRejected("No result returned.")
                outcome.value = value
                return value
            return None
        parameters = [('sourcedid', outcome.sourcedid or ''),
                      ('result_resultscore_textstring', value)]
        for name, ovalue in (('result_resultscore_language', outcome.language),
                             ('result_statusofresult', outcome.status),
                             ('result_date', outcome.date),
                             ('result_resultvaluesourcedid', outcome.type),
                             ('result_datasource', outcome.data_source)):
            if ovalue:
                parameters.append((name, ovalue))
        root = self.do_service(link, operation, url_ext, parameters)
        if action == EXT_READ:
            value = root.findtext('result/resultscore/textstring')
            if value is None:
                raise errors.ServiceRejected("No result returned.")
            outcome.value = value
            return value
        return None

    def do_memberships_service(self, link, with_groups=False):
        """Synchronises the membership of a resource link

        link
            The :class:`~ltiprovider.model.ResourceLink`

        with_groups
            True to request group information too; if the consumer
            refuses, the plain membership request is used instead.

        The value of a successful result is the list of
        :class:`~ltiprovider.model.User` instances reported.  Members
        with result sourced ids are saved, previously saved users who
        are no longer members (or no longer have a result sourced id)
        are deleted."""
        return self._result(self.memberships, link, with_groups)

    def memberships(self, link, with_groups=False):
        old_users = link.get_user_result_sourcedids(
            local_only=True, id_scope=model.ID_SCOPE_RESOURCE)
        url = link.get_setting('ext_ims_lis_memberships_url')
        parameters = [('id', link.get_setting('ext_ims_lis_memberships_id'))]
        root = None
        if with_groups:
            try:
                root = self.do_service(
                    link, 'basic-lis-readmembershipsforcontextwithgroups',
                    url, parameters)
            except errors.ServiceError as err:
                logger.info("Group memberships not available: %s", str(err))
        got_groups = root is not None
        if root is None:
            root = self.do_service(
                link, 'basic-lis-readmembershipsforcontext', url, parameters)
        group_sets = {}
        groups = {}
        users = []
        for member in root.iterfind('memberships/member'):
            user = model.User(link, (member.findtext('user_id') or '').strip())
            user.set_names(member.findtext('person_name_given'),
                           member.findtext('person_name_family'),
                           member.findtext('person_name_full'))
            user.set_email(member.findtext('person_contact_email_primary'),
                           link.consumer.default_email or
                           self.default_email)
            user.roles = model.parse_roles(member.findtext('roles'))
            for group in member.iterfind('groups/group'):
                group_id = group.findtext('id')
                group_set = group.find('set')
                if group_set is not None:
                    set_id = group_set.findtext('id')
                    record = group_sets.setdefault(set_id, {
                        'title': group_set.findtext('title'), 'groups': [],
                        'num_members': 0, 'num_staff': 0, 'num_learners': 0})
                    record['num_members'] += 1
                    if user.is_staff():
                        record['num_staff'] += 1
                    if user.is_learner():
                        record['num_learners'] += 1
                    if group_id not in record['groups']:
                        record['groups'].append(group_id)
                    groups[group_id] = {'title': group.findtext('title'),
                                        'set': set_id}
                else:
                    groups[group_id] = {'title': group.findtext('title')}
                user.groups.append(group_id)
            user.result_sourcedid = (
                member.findtext('lis_result_sourcedid') or '').strip() or None
            users.append(user)
        # the whole roster has been read, now update the store
        for user in users:
            old_user = old_users.pop(user.get_id(model.ID_SCOPE_RESOURCE),
                                     None)
            if user.result_sourcedid:
                if old_user is not None:
                    user.created = old_user.created
                user.save()
            elif old_user is not None:
                old_user.delete()
        for old_user in old_users.values():
            logger.info("Removing %r: no longer a member", old_user)
            old_user.delete()
        if got_groups:
            link.group_sets = group_sets
            link.groups = groups
            link.save()
        return users

    def do_setting_service(self, link, action, value=None):
        """Reads, writes or deletes the tool setting

        link
            The :class:`~ltiprovider.model.ResourceLink`

        action
            One of :data:`EXT_READ`, :data:`EXT_WRITE` or
            :data:`EXT_DELETE`

        value
            The new value of the setting (writes only)

        The value of a successful read is the setting.  A successful
        write (or delete) also updates (or removes) the link's
        ext_ims_lti_tool_setting setting and saves the link."""
        return self._result(self.setting, link, action, value)

    def setting(self, link, action, value=None):
        message_types = {
            EXT_READ: 'basic-lti-loadsetting',
            EXT_WRITE: 'basic-lti-savesetting',
            EXT_DELETE: 'basic-lti-deletesetting'}
        if action not in message_types:
            raise ValueError("Unknown setting action: %r" % action)
        if value is None:
            value = ''
        parameters = [('id', link.get_setting('ext_ims_lti_tool_setting_id')),
                      ('setting', value)]
        root = self.do_service(
            link, message_types[action],
            link.get_setting('ext_ims_lti_tool_setting_url'), parameters)
        if action == EXT_READ:
            result = root.findtext('setting/value')
            if result is None:
                raise errors.ServiceRejected("No setting returned.")
            return result
        elif action == EXT_WRITE:
            link.set_setting('ext_ims_lti_tool_setting', value)
        else:
            link.set_setting('ext_ims_lti_tool_setting')
        link.save_settings()
        return None
