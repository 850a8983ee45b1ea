#! /usr/bin/env python
"""The entities managed by an LTI tool provider

The classes in this module are plain objects that hold the state of a
tool consumer, the resource links launched from it, the users who
launched them and the various single-use tokens involved.  Persistence
is delegated to an :class:`~ltiprovider.store.EntityStore` which is
passed to each :class:`ToolConsumer` on construction and reached from
the other objects through their owning consumer."""

import logging
import random
import string
import time


logger = logging.getLogger('ltiprovider.model')

#: The version of LTI we support
LTI_VERSION = "LTI-1p0"

#: The message type we support
LTI_MESSAGE_TYPE = "basic-lti-launch-request"

#: The prefix added to short role names
ROLE_PREFIX = "urn:lti:role:ims/lis/"

#: A mapping from the common LTI role handles to their full URNs
ROLE_HANDLES = dict(
    (h, ROLE_PREFIX + h) for h in (
        'Learner', 'Instructor', 'ContentDeveloper', 'Member', 'Manager',
        'Mentor', 'Administrator', 'TeachingAssistant'))

#: Roles that identify a member of staff
STAFF_ROLES = ('Instructor', 'ContentDeveloper', 'TeachingAssistant')

#: User ids are returned unchanged
ID_SCOPE_ID_ONLY = 0
#: User ids are prefixed with the consumer key
ID_SCOPE_GLOBAL = 1
#: User ids are prefixed with the consumer key and context id
ID_SCOPE_CONTEXT = 2
#: User ids are prefixed with the consumer key and resource link id
ID_SCOPE_RESOURCE = 3
#: The separator used when building scoped user ids
ID_SCOPE_SEPARATOR = ':'

#: The names of the LTI settings refreshed from every launch
LTI_SETTINGS_NAMES = (
    'ext_resource_link_content',
    'ext_resource_link_content_signature',
    'lis_result_sourcedid',
    'lis_outcome_service_url',
    'ext_ims_lis_basic_outcome_url',
    'ext_ims_lis_resultvalue_sourcedids',
    'ext_ims_lis_memberships_id',
    'ext_ims_lis_memberships_url',
    'ext_ims_lti_tool_setting',
    'ext_ims_lti_tool_setting_id',
    'ext_ims_lti_tool_setting_url')

#: The life of a nonce, in minutes
MAX_NONCE_AGE = 30

_key_chars = string.ascii_letters + string.digits
_random = random.SystemRandom()


def random_string(length=8):
    """Returns a random string of letters and digits

    length
        The number of characters required."""
    return ''.join(_random.choice(_key_chars) for i in range(length))


def parse_roles(roles):
    """Parses a comma-separated list of roles

    roles
        The value of a roles parameter, may be None.

    Returns a list of fully qualified roles.  Each entry is trimmed and
    any role that does not start with 'urn:' is treated as a short name
    and expanded with :data:`ROLE_PREFIX`."""
    result = []
    if not roles:
        return result
    for role in roles.split(','):
        role = role.strip()
        if not role:
            continue
        if not role.startswith('urn:'):
            role = ROLE_PREFIX + role
        result.append(role)
    return result


class ToolConsumer(object):

    """An LTI tool consumer

    key
        The consumer key or None to generate a new random key.

    store
        The :class:`~ltiprovider.store.EntityStore` that persists this
        consumer.

    The attributes are all set to defaults on construction, use
    :meth:`load` to read any existing record from the store.  A newly
    created consumer is given a random secret and starts disabled."""

    def __init__(self, key=None, store=None):
        if key is None:
            key = random_string(32)
        #: the consumer key
        self.key = key
        #: the store used to persist this consumer
        self.store = store
        self.initialise()

    def initialise(self):
        """Resets all attributes other than key and store"""
        #: a display name for the consumer, set by the administrator
        self.name = None
        #: the shared secret
        self.secret = random_string(32)
        #: the LTI version reported in the last launch
        self.lti_version = None
        #: the product name reported by the consumer
        self.consumer_name = None
        #: the product family and version reported by the consumer
        self.consumer_version = None
        #: the GUID pinned by a protected consumer
        self.consumer_guid = None
        #: an optional style sheet URL
        self.css_path = None
        #: True if launches must carry a GUID matching consumer_guid
        self.protected = False
        #: True if this consumer may launch the tool
        self.enabled = False
        #: launches are not permitted before this time
        self.enable_from = None
        #: launches are not permitted from this time onwards
        self.enable_until = None
        #: the time of the last successful launch
        self.last_access = None
        #: the default scope used for user ids
        self.id_scope = ID_SCOPE_ID_ONLY
        #: a default email address (or domain, starting with @)
        self.default_email = ''
        self.created = None
        self.updated = None

    def __repr__(self):
        return "ToolConsumer(%r)" % self.key

    def load(self):
        """Loads the consumer from the store

        Returns True if an existing record was found.  If not, the
        consumer's attributes are reset to their defaults."""
        self.initialise()
        return self.store.load_consumer(self)

    def save(self):
        return self.store.save_consumer(self)

    def delete(self):
        return self.store.delete_consumer(self)

    def is_available(self, now=None):
        """True if this consumer may currently launch the tool

        now
            The time to test against, defaults to the current time."""
        if not self.enabled:
            return False
        if now is None:
            now = time.time()
        if self.enable_from is not None and self.enable_from > now:
            return False
        if self.enable_until is not None and self.enable_until <= now:
            return False
        return True

    def get_resource_link(self, link_id):
        """Returns a :class:`ResourceLink` loaded from the store

        If no link has been saved with this id, the new link is returned
        unsaved."""
        link = ResourceLink(self, link_id)
        link.load()
        return link


class ResourceLink(object):

    """A resource link launched from a tool consumer

    consumer
        The owning :class:`ToolConsumer`

    link_id
        The consumer's resource_link_id for this link

    Older versions of LTI referred to resource links as contexts, the
    primary pointer is also available as :attr:`primary_context_id` for
    backwards compatibility."""

    def __init__(self, consumer, link_id):
        self.consumer = consumer
        self.id = link_id
        self.initialise()

    def initialise(self):
        """Resets all attributes other than consumer and id"""
        #: the context_id reported in the launch
        self.context_id = None
        #: the tool provider's own id for the resource (not used
        #: by this package, available to applications)
        self.resource_id = None
        self.title = None
        #: a dictionary of settings
        self.settings = {}
        #: a dictionary of group set records keyed on group set id
        self.group_sets = None
        #: a dictionary of group records keyed on group id
        self.groups = None
        #: the key of the consumer of the primary link being shared
        self.primary_consumer_key = None
        #: the id of the primary resource link being shared
        self.primary_resource_link_id = None
        #: None, True or False
        self.share_approved = None
        self.created = None
        self.updated = None
        #: the body of the last extension service request
        self.ext_request = None
        #: the body of the last extension service response
        self.ext_response = None
        self.settings_changed = False

    def __repr__(self):
        return "ResourceLink(%r, %r)" % (self.consumer.key, self.id)

    @property
    def primary_context_id(self):
        return self.primary_resource_link_id

    @primary_context_id.setter
    def primary_context_id(self, value):
        self.primary_resource_link_id = value

    @property
    def store(self):
        return self.consumer.store

    def load(self):
        self.initialise()
        return self.store.load_resource_link(self)

    def save(self):
        result = self.store.save_resource_link(self)
        if result:
            self.settings_changed = False
        return result

    def delete(self):
        return self.store.delete_resource_link(self)

    def get_setting(self, name, default=''):
        return self.settings.get(name, default)

    def set_setting(self, name, value=None):
        """Sets (or clears) a setting

        name
            The name of the setting

        value
            The new value, an empty value (or None) removes the
            setting."""
        old_value = self.settings.get(name)
        if value:
            if value != old_value:
                self.settings[name] = value
                self.settings_changed = True
        elif name in self.settings:
            del self.settings[name]
            self.settings_changed = True

    def get_settings(self):
        return self.settings

    def save_settings(self):
        """Saves the link but only if the settings have changed"""
        if self.settings_changed:
            return self.save()
        return True

    def has_outcomes_service(self):
        return bool(self.get_setting('ext_ims_lis_basic_outcome_url') or
                    self.get_setting('lis_outcome_service_url'))

    def has_memberships_service(self):
        return bool(self.get_setting('ext_ims_lis_memberships_url'))

    def has_setting_service(self):
        return bool(self.get_setting('ext_ims_lti_tool_setting_url'))

    def get_user_result_sourcedids(self, local_only=False, id_scope=None):
        """Returns the users with result sourced ids

        local_only
            Only include users of this link (and not of links sharing
            it).

        id_scope
            The scope used for the keys of the returned dictionary.

        Returns a dictionary mapping scoped user id on to
        :class:`User`."""
        return self.store.get_user_result_sourcedids(
            self, local_only=local_only, id_scope=id_scope)

    def get_shares(self):
        """Returns a list of :class:`ResourceLinkShare` instances"""
        return self.store.get_shares(self)


class User(object):

    """A user of a resource link

    resource_link
        The :class:`ResourceLink` the user launched.

    user_id
        The consumer's user_id for this user"""

    def __init__(self, resource_link, user_id):
        self.resource_link = resource_link
        self.id = user_id
        self.initialise()

    def initialise(self):
        self.firstname = ''
        self.lastname = ''
        self.fullname = ''
        self.email = ''
        #: a list of fully qualified role URNs
        self.roles = []
        #: a list of group ids
        self.groups = []
        self.result_sourcedid = None
        self.created = None
        self.updated = None

    def __repr__(self):
        return "User(%r, %r)" % (self.resource_link, self.id)

    @property
    def store(self):
        return self.resource_link.consumer.store

    def get_context(self):
        return self.resource_link

    def load(self):
        self.initialise()
        return self.store.load_user(self)

    def save(self):
        """Saves the user

        Users are only persisted while they have a result sourced id,
        saving a user without one does nothing and returns True."""
        if self.result_sourcedid:
            return self.store.save_user(self)
        return True

    def delete(self):
        return self.store.delete_user(self)

    def get_id(self, id_scope=None):
        """Returns a user id, qualified according to id_scope

        id_scope
            One of the ID_SCOPE constants, defaults to the scope set on
            the consumer.

        A context or resource scope omits the context or resource link
        segment if this user's link doesn't have one."""
        if id_scope is None:
            id_scope = self.resource_link.consumer.id_scope
        if id_scope == ID_SCOPE_ID_ONLY or not self.id:
            return self.id
        parts = [self.resource_link.consumer.key]
        if id_scope == ID_SCOPE_CONTEXT:
            if self.resource_link.context_id:
                parts.append(self.resource_link.context_id)
        elif id_scope == ID_SCOPE_RESOURCE:
            if self.resource_link.id:
                parts.append(self.resource_link.id)
        parts.append(self.id)
        return ID_SCOPE_SEPARATOR.join(parts)

    def set_names(self, firstname=None, lastname=None, fullname=None):
        """Sets the user's names

        The full name is split on the first run of white space; any
        explicit first or last name overrides the corresponding part.
        Missing first names default to "User" and missing last names
        default to the user id.  Without a full name one is made by
        joining the first and last names."""
        names = ['', '']
        self.fullname = ''
        if fullname:
            self.fullname = fullname.strip()
            split = self.fullname.split(None, 1)
            names[:len(split)] = split
        if firstname:
            names[0] = firstname.strip()
        if lastname:
            names[1] = lastname.strip()
        self.firstname = names[0] or 'User'
        self.lastname = names[1] or self.id
        if not self.fullname:
            self.fullname = "%s %s" % (self.firstname, self.lastname)

    def set_email(self, email=None, default_email=None):
        """Sets the user's email address

        email
            The email address from the launch

        default_email
            Used when email is empty; if it starts with '@' it is treated
            as a domain and appended to the user id."""
        if email:
            self.email = email
        elif default_email:
            self.email = default_email
            if self.email.startswith('@'):
                self.email = self.id + self.email
        else:
            self.email = ''

    def has_role(self, role):
        """True if the user has role

        role
            A fully qualified role or a short name such as 'Learner'"""
        if not role.startswith('urn:'):
            role = ROLE_PREFIX + role
        return role in self.roles

    def is_admin(self):
        return (self.has_role('Administrator') or
                self.has_role('urn:lti:sysrole:ims/lis/SysAdmin') or
                self.has_role('urn:lti:sysrole:ims/lis/Administrator') or
                self.has_role('urn:lti:instrole:ims/lis/Administrator'))

    def is_staff(self):
        for role in STAFF_ROLES:
            if self.has_role(role):
                return True
        return False

    def is_learner(self):
        return self.has_role('Learner')


class ConsumerNonce(object):

    """A nonce used by a consumer

    consumer
        The :class:`ToolConsumer` that used the nonce

    value
        The nonce string

    The nonce expires :data:`MAX_NONCE_AGE` minutes after creation."""

    def __init__(self, consumer, value):
        self.consumer = consumer
        self.value = value
        self.expires = time.time() + MAX_NONCE_AGE * 60

    def load(self):
        return self.consumer.store.load_nonce(self)

    def save(self):
        """Inserts this nonce

        Returns False if an unexpired nonce with the same value has
        already been saved for this consumer."""
        return self.consumer.store.save_nonce(self)


class ShareKey(object):

    """A key used to share a resource link

    resource_link
        The primary :class:`ResourceLink` being shared

    share_key_id
        The key value, None when creating a new share key."""

    #: the maximum life of a share key, in hours
    MAX_SHARE_KEY_LIFE = 168
    #: the default life of a share key, in hours
    DEFAULT_SHARE_KEY_LIFE = 24
    #: the minimum length of a share key value
    MIN_SHARE_KEY_LENGTH = 5
    #: the maximum length of a share key value
    MAX_SHARE_KEY_LENGTH = 32

    def __init__(self, resource_link, share_key_id=None):
        self.resource_link = resource_link
        self.id = share_key_id
        self.initialise()
        if share_key_id is None:
            self.primary_consumer_key = resource_link.consumer.key
            self.primary_resource_link_id = resource_link.id

    def initialise(self):
        self.primary_consumer_key = None
        self.primary_resource_link_id = None
        self.length = None
        self.life = None
        self.auto_approve = False
        self.expires = None

    @property
    def store(self):
        return self.resource_link.consumer.store

    def load(self):
        """Loads a share key

        Expired keys are deleted by the store and cannot be loaded."""
        self.initialise()
        return self.store.load_share_key(self)

    def save(self):
        """Saves the share key

        The life is clamped to the permitted range and the expiry time
        is reset from it.  A new key also has a random value generated
        with the (clamped) length requested."""
        if self.life is None:
            self.life = self.DEFAULT_SHARE_KEY_LIFE
        self.life = max(0, min(self.life, self.MAX_SHARE_KEY_LIFE))
        self.expires = time.time() + self.life * 3600
        if self.id is None:
            if self.length is None:
                self.length = self.MAX_SHARE_KEY_LENGTH
            self.length = max(self.MIN_SHARE_KEY_LENGTH,
                              min(self.length, self.MAX_SHARE_KEY_LENGTH))
            self.id = random_string(self.length)
        return self.store.save_share_key(self)

    def delete(self):
        return self.store.delete_share_key(self)


class ResourceLinkShare(object):

    """A summary of a resource link sharing another link"""

    def __init__(self, consumer_key, resource_link_id, title=None,
                 approved=None):
        self.consumer_key = consumer_key
        self.resource_link_id = resource_link_id
        self.title = title
        self.approved = approved

    def __repr__(self):
        return "ResourceLinkShare(%r, %r, %r, %r)" % (
            self.consumer_key, self.resource_link_id, self.title,
            self.approved)


class Outcome(object):

    """A single outcome (grade) exchanged with a consumer

    sourcedid
        The result sourced id of the user

    value
        The value of the outcome, None for reads and deletes"""

    def __init__(self, sourcedid=None, value=None):
        self.sourcedid = sourcedid
        self.value = value
        self.language = 'en-US'
        self.status = None
        self.date = time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime())
        self.type = 'decimal'
        self.data_source = None
