#! /usr/bin/env python
"""Persistence for the tool provider's entities

:class:`EntityStore` defines the interface used by the rest of the
package, every operation reports success or failure with a boolean (the
object passed in is updated in place on a successful load).  Two
implementations are provided: :class:`MemoryEntityStore` here and
:class:`~ltiprovider.sqlds.SQLiteEntityStore`."""

import copy
import logging
import threading
import time

from . import model


logger = logging.getLogger('ltiprovider.store')

#: The persistent attributes of a ToolConsumer
CONSUMER_FIELDS = (
    'name', 'secret', 'lti_version', 'consumer_name', 'consumer_version',
    'consumer_guid', 'css_path', 'protected', 'enabled', 'enable_from',
    'enable_until', 'last_access', 'id_scope', 'default_email', 'created',
    'updated')

#: The persistent attributes of a ResourceLink
LINK_FIELDS = (
    'context_id', 'resource_id', 'title', 'settings', 'group_sets',
    'groups', 'primary_consumer_key', 'primary_resource_link_id',
    'share_approved', 'created', 'updated')

#: The persistent attributes of a User
USER_FIELDS = (
    'firstname', 'lastname', 'fullname', 'email', 'roles', 'groups',
    'result_sourcedid', 'created', 'updated')

#: The persistent attributes of a ShareKey
SHARE_KEY_FIELDS = (
    'primary_consumer_key', 'primary_resource_link_id', 'length', 'life',
    'auto_approve', 'expires')


def get_record(obj, fields):
    """Returns a dictionary copy of the named attributes of obj"""
    return dict((f, copy.deepcopy(getattr(obj, f))) for f in fields)


def set_record(obj, record):
    """Sets attributes of obj from a dictionary (copying values)"""
    for name, value in record.items():
        setattr(obj, name, copy.deepcopy(value))


def stamp(obj, now=None):
    """Sets the created (if unset) and updated times of obj"""
    if now is None:
        now = time.time()
    if obj.created is None:
        obj.created = now
    obj.updated = now


class EntityStore(object):

    """Abstract class representing storage for LTI entities

    Derived classes must implement all of the methods.  Methods that
    take an entity use its key attributes to find the stored record:
    the consumer key, the (consumer key, resource link id) pair, the
    (consumer key, resource link id, user id) triple and so on."""

    def load_consumer(self, consumer):
        """Loads a consumer

        consumer
            A :class:`~ltiprovider.model.ToolConsumer` instance, the
            key is used to locate the record.

        Returns True if the consumer was found, False otherwise."""
        raise NotImplementedError

    def save_consumer(self, consumer):
        raise NotImplementedError

    def delete_consumer(self, consumer):
        """Deletes a consumer

        Also deletes all resource links, users, nonces and share keys
        belonging to the consumer."""
        raise NotImplementedError

    def list_consumers(self):
        """Returns a list of all consumers, sorted by name"""
        raise NotImplementedError

    def load_resource_link(self, link):
        raise NotImplementedError

    def save_resource_link(self, link):
        raise NotImplementedError

    def delete_resource_link(self, link):
        """Deletes a resource link

        Also deletes its users and share keys and removes the sharing
        pointer from any link that was sharing it."""
        raise NotImplementedError

    def get_user_result_sourcedids(self, link, local_only=False,
                                   id_scope=None):
        """Returns the users of link that have result sourced ids

        link
            A :class:`~ltiprovider.model.ResourceLink`

        local_only
            If False, also includes the users of approved links that
            share link.

        id_scope
            The scope to use for the returned user ids

        Returns a dictionary of :class:`~ltiprovider.model.User`
        instances keyed on their scoped id."""
        raise NotImplementedError

    def get_shares(self, link):
        """Returns a list of ResourceLinkShare instances

        One is returned for each link pointing at link as its primary,
        sorted by consumer key."""
        raise NotImplementedError

    def load_nonce(self, nonce):
        """True if an unexpired nonce with the same value exists"""
        raise NotImplementedError

    def save_nonce(self, nonce):
        """Inserts a nonce

        This operation must be atomic, if an unexpired nonce with the
        same value exists for the same consumer then False is returned
        and nothing is stored.  Expired nonces may be purged."""
        raise NotImplementedError

    def load_share_key(self, share_key):
        """Loads a share key

        Expired share keys are deleted and False is returned."""
        raise NotImplementedError

    def save_share_key(self, share_key):
        raise NotImplementedError

    def delete_share_key(self, share_key):
        raise NotImplementedError

    def load_user(self, user):
        raise NotImplementedError

    def save_user(self, user):
        raise NotImplementedError

    def delete_user(self, user):
        raise NotImplementedError


class MemoryEntityStore(EntityStore):

    """An entity store that keeps copies of records in memory

    Suitable for testing and for single process deployments that do not
    need to survive a restart.  All methods hold a re-entrant lock so
    instances can be shared between threads."""

    def __init__(self):
        self.lock = threading.RLock()
        self.consumers = {}
        self.links = {}
        self.users = {}
        self.nonces = {}
        self.share_keys = {}

    def load_consumer(self, consumer):
        with self.lock:
            record = self.consumers.get(consumer.key)
            if record is None:
                return False
            set_record(consumer, record)
            return True

    def save_consumer(self, consumer):
        with self.lock:
            stamp(consumer)
            self.consumers[consumer.key] = get_record(
                consumer, CONSUMER_FIELDS)
            return True

    def delete_consumer(self, consumer):
        with self.lock:
            key = consumer.key
            for lkey in [k for k in self.links if k[0] == key]:
                self.delete_resource_link(
                    model.ResourceLink(consumer, lkey[1]))
            for nkey in [k for k in self.nonces if k[0] == key]:
                del self.nonces[nkey]
            for skey, record in list(self.share_keys.items()):
                if record['primary_consumer_key'] == key:
                    del self.share_keys[skey]
            self.consumers.pop(key, None)
            consumer.initialise()
            return True

    def list_consumers(self):
        with self.lock:
            result = []
            for key in self.consumers:
                consumer = model.ToolConsumer(key, self)
                self.load_consumer(consumer)
                result.append(consumer)
        result.sort(key=lambda c: (c.name or '', c.key))
        return result

    def load_resource_link(self, link):
        with self.lock:
            record = self.links.get((link.consumer.key, link.id))
            if record is None:
                return False
            set_record(link, record)
            return True

    def save_resource_link(self, link):
        with self.lock:
            stamp(link)
            self.links[(link.consumer.key, link.id)] = get_record(
                link, LINK_FIELDS)
            return True

    def delete_resource_link(self, link):
        with self.lock:
            lkey = (link.consumer.key, link.id)
            for ukey in [k for k in self.users if k[:2] == lkey]:
                del self.users[ukey]
            for skey, record in list(self.share_keys.items()):
                if (record['primary_consumer_key'],
                        record['primary_resource_link_id']) == lkey:
                    del self.share_keys[skey]
            for record in self.links.values():
                if (record['primary_consumer_key'],
                        record['primary_resource_link_id']) == lkey:
                    record['primary_consumer_key'] = None
                    record['primary_resource_link_id'] = None
                    record['share_approved'] = None
            self.links.pop(lkey, None)
            link.initialise()
            return True

    def _link_users(self, link, id_scope, result):
        lkey = (link.consumer.key, link.id)
        for ukey, record in self.users.items():
            if ukey[:2] == lkey and record['result_sourcedid']:
                user = model.User(link, ukey[2])
                set_record(user, record)
                result[user.get_id(id_scope)] = user

    def get_user_result_sourcedids(self, link, local_only=False,
                                   id_scope=None):
        result = {}
        with self.lock:
            self._link_users(link, id_scope, result)
            if not local_only:
                lkey = (link.consumer.key, link.id)
                for skey, record in self.links.items():
                    if (record['primary_consumer_key'],
                            record['primary_resource_link_id']) == lkey \
                            and record['share_approved']:
                        consumer = model.ToolConsumer(skey[0], self)
                        self.load_consumer(consumer)
                        share = model.ResourceLink(consumer, skey[1])
                        set_record(share, record)
                        self._link_users(share, id_scope, result)
        return result

    def get_shares(self, link):
        result = []
        with self.lock:
            lkey = (link.consumer.key, link.id)
            for skey, record in self.links.items():
                if (record['primary_consumer_key'],
                        record['primary_resource_link_id']) == lkey:
                    result.append(model.ResourceLinkShare(
                        skey[0], skey[1], record['title'],
                        record['share_approved']))
        result.sort(key=lambda s: (s.consumer_key, s.resource_link_id))
        return result

    def load_nonce(self, nonce):
        with self.lock:
            expires = self.nonces.get((nonce.consumer.key, nonce.value))
            return expires is not None and expires > time.time()

    def save_nonce(self, nonce):
        with self.lock:
            now = time.time()
            ckey = nonce.consumer.key
            for nkey in [k for k, expires in self.nonces.items()
                         if k[0] == ckey and expires <= now]:
                del self.nonces[nkey]
            nkey = (ckey, nonce.value)
            if nkey in self.nonces:
                return False
            self.nonces[nkey] = nonce.expires
            return True

    def load_share_key(self, share_key):
        with self.lock:
            record = self.share_keys.get(share_key.id)
            if record is None:
                return False
            if record['expires'] is not None and \
                    record['expires'] <= time.time():
                logger.debug("Expired share key: %s", share_key.id)
                del self.share_keys[share_key.id]
                return False
            set_record(share_key, record)
            return True

    def save_share_key(self, share_key):
        with self.lock:
            self.share_keys[share_key.id] = get_record(
                share_key, SHARE_KEY_FIELDS)
            return True

    def delete_share_key(self, share_key):
        with self.lock:
            self.share_keys.pop(share_key.id, None)
            return True

    def _user_key(self, user):
        return (user.resource_link.consumer.key, user.resource_link.id,
                user.id)

    def load_user(self, user):
        with self.lock:
            record = self.users.get(self._user_key(user))
            if record is None:
                return False
            set_record(user, record)
            return True

    def save_user(self, user):
        with self.lock:
            stamp(user)
            self.users[self._user_key(user)] = get_record(user, USER_FIELDS)
            return True

    def delete_user(self, user):
        with self.lock:
            self.users.pop(self._user_key(user), None)
            user.initialise()
            return True
