#! /usr/bin/env python
"""An entity store backed by a SQLite database"""

import json
import logging
import sqlite3
import threading
import time

from . import model
from . import store


logger = logging.getLogger('ltiprovider.sqlds')

#: Fields stored as JSON text
JSON_FIELDS = frozenset(('settings', 'group_sets', 'groups', 'roles'))

#: Fields stored as integers but loaded as booleans (or None)
BOOL_FIELDS = frozenset(
    ('protected', 'enabled', 'share_approved', 'auto_approve'))

#: The column types of all fields not listed above
COLUMN_TYPES = {
    'id_scope': 'INTEGER',
    'length': 'INTEGER',
    'life': 'INTEGER',
    'enable_from': 'REAL',
    'enable_until': 'REAL',
    'last_access': 'REAL',
    'created': 'REAL',
    'updated': 'REAL',
    'expires': 'REAL'}

CONSUMER_TABLE = 'lti_consumer'
CONSUMER_KEYS = ('consumer_key', )

LINK_TABLE = 'lti_context'
LINK_KEYS = ('consumer_key', 'resource_link_id')

USER_TABLE = 'lti_user'
USER_KEYS = ('consumer_key', 'resource_link_id', 'user_id')

NONCE_TABLE = 'lti_nonce'
NONCE_KEYS = ('consumer_key', 'value')

SHARE_KEY_TABLE = 'lti_share_key'
SHARE_KEY_KEYS = ('share_key_id', )

TABLES = (
    (CONSUMER_TABLE, CONSUMER_KEYS, store.CONSUMER_FIELDS),
    (LINK_TABLE, LINK_KEYS, store.LINK_FIELDS),
    (USER_TABLE, USER_KEYS, store.USER_FIELDS),
    (NONCE_TABLE, NONCE_KEYS, ('expires', )),
    (SHARE_KEY_TABLE, SHARE_KEY_KEYS, store.SHARE_KEY_FIELDS))


def quote(name):
    return '"%s"' % name


def to_column(name, value):
    if value is None:
        return None
    if name in JSON_FIELDS:
        return json.dumps(value)
    if name in BOOL_FIELDS:
        return 1 if value else 0
    return value


def from_column(name, value):
    if value is None:
        return None
    if name in JSON_FIELDS:
        return json.loads(value)
    if name in BOOL_FIELDS:
        return bool(value)
    return value


class SQLiteEntityStore(store.EntityStore):

    """An entity store using a SQLite database

    file_path
        The path to the database file, or ':memory:' (the default) for a
        private in-memory database.

    The tables are created if they do not exist.  A single connection
    is shared by all threads and protected by a lock; it is opened with
    check_same_thread set to False for that reason.  Each operation is
    carried out in its own transaction."""

    def __init__(self, file_path=':memory:'):
        self.file_path = file_path
        self.lock = threading.RLock()
        self.connection = sqlite3.connect(
            str(file_path), check_same_thread=False)
        self.create_tables()

    def close(self):
        with self.lock:
            if self.connection is not None:
                self.connection.close()
                self.connection = None

    def create_tables(self):
        with self.lock, self.connection:
            for table, keys, fields in TABLES:
                columns = ["%s TEXT NOT NULL" % quote(k) for k in keys]
                for f in fields:
                    columns.append("%s %s" % (
                        quote(f), COLUMN_TYPES.get(
                            f, 'INTEGER' if f in BOOL_FIELDS else 'TEXT')))
                columns.append("PRIMARY KEY (%s)" %
                               ", ".join(quote(k) for k in keys))
                query = "CREATE TABLE IF NOT EXISTS %s (%s)" % (
                    table, ", ".join(columns))
                logger.debug("%s;", query)
                self.connection.execute(query)

    def _where(self, keys):
        return " AND ".join("%s=?" % quote(k) for k in keys)

    def _execute(self, query, params=()):
        logger.debug("%s; %s", query, params)
        return self.connection.execute(query, params)

    def _fetch(self, query, params=()):
        """Returns all rows of a query, or None if the query failed"""
        try:
            with self.lock:
                return self._execute(query, params).fetchall()
        except sqlite3.Error:
            logger.exception("Query failed: %s", query)
            return None

    def _select(self, table, keys, key_values, fields):
        query = "SELECT %s FROM %s WHERE %s" % (
            ", ".join(quote(f) for f in fields), table, self._where(keys))
        rows = self._fetch(query, key_values)
        if not rows:
            return None
        row = rows[0]
        return dict((f, from_column(f, v)) for f, v in zip(fields, row))

    def _replace(self, table, keys, key_values, obj, fields):
        values = list(key_values)
        values += [to_column(f, getattr(obj, f)) for f in fields]
        query = "INSERT OR REPLACE INTO %s (%s) VALUES (%s)" % (
            table, ", ".join(quote(c) for c in keys + fields),
            ", ".join("?" * len(values)))
        try:
            with self.lock, self.connection:
                self._execute(query, values)
            return True
        except sqlite3.Error:
            logger.exception("Failed to save %s record %s", table, key_values)
            return False

    def _delete(self, queries):
        try:
            with self.lock, self.connection:
                for query, params in queries:
                    self._execute(query, params)
            return True
        except sqlite3.Error:
            logger.exception("Failed to delete: %s", queries[-1][1])
            return False

    def load_consumer(self, consumer):
        record = self._select(CONSUMER_TABLE, CONSUMER_KEYS, (consumer.key, ),
                              store.CONSUMER_FIELDS)
        if record is None:
            return False
        store.set_record(consumer, record)
        return True

    def save_consumer(self, consumer):
        store.stamp(consumer)
        return self._replace(CONSUMER_TABLE, CONSUMER_KEYS, (consumer.key, ),
                             consumer, store.CONSUMER_FIELDS)

    def delete_consumer(self, consumer):
        key = (consumer.key, )
        queries = []
        links = self._fetch(
            "SELECT resource_link_id FROM %s WHERE consumer_key=?" %
            LINK_TABLE, key)
        if links is None:
            return False
        for row in links:
            queries += self._delete_link_queries((consumer.key, row[0]))
        queries += [
            ("DELETE FROM %s WHERE consumer_key=?" % NONCE_TABLE, key),
            ("DELETE FROM %s WHERE primary_consumer_key=?" % SHARE_KEY_TABLE,
             key),
            ("DELETE FROM %s WHERE consumer_key=?" % CONSUMER_TABLE, key)]
        result = self._delete(queries)
        if result:
            consumer.initialise()
        return result

    def list_consumers(self):
        rows = self._fetch("SELECT consumer_key FROM %s" % CONSUMER_TABLE)
        result = []
        for row in rows or ():
            consumer = model.ToolConsumer(row[0], self)
            if self.load_consumer(consumer):
                result.append(consumer)
        result.sort(key=lambda c: (c.name or '', c.key))
        return result

    def load_resource_link(self, link):
        record = self._select(LINK_TABLE, LINK_KEYS,
                              (link.consumer.key, link.id), store.LINK_FIELDS)
        if record is None:
            return False
        store.set_record(link, record)
        return True

    def save_resource_link(self, link):
        store.stamp(link)
        return self._replace(LINK_TABLE, LINK_KEYS,
                             (link.consumer.key, link.id), link,
                             store.LINK_FIELDS)

    def _delete_link_queries(self, key):
        return [
            ("DELETE FROM %s WHERE consumer_key=? AND resource_link_id=?" %
             USER_TABLE, key),
            ("DELETE FROM %s WHERE primary_consumer_key=? AND "
             "primary_resource_link_id=?" % SHARE_KEY_TABLE, key),
            ("UPDATE %s SET primary_consumer_key=NULL, "
             "primary_resource_link_id=NULL, share_approved=NULL "
             "WHERE primary_consumer_key=? AND primary_resource_link_id=?" %
             LINK_TABLE, key),
            ("DELETE FROM %s WHERE consumer_key=? AND resource_link_id=?" %
             LINK_TABLE, key)]

    def delete_resource_link(self, link):
        result = self._delete(
            self._delete_link_queries((link.consumer.key, link.id)))
        if result:
            link.initialise()
        return result

    def _link_users(self, link, id_scope, result):
        fields = ('user_id', ) + store.USER_FIELDS
        query = ("SELECT %s FROM %s WHERE consumer_key=? AND "
                 "resource_link_id=? AND result_sourcedid IS NOT NULL" %
                 (", ".join(quote(f) for f in fields), USER_TABLE))
        rows = self._fetch(query, (link.consumer.key, link.id))
        for row in rows or ():
            user = model.User(link, row[0])
            store.set_record(user, dict(
                (f, from_column(f, v)) for f, v in zip(fields[1:], row[1:])))
            result[user.get_id(id_scope)] = user

    def get_user_result_sourcedids(self, link, local_only=False,
                                   id_scope=None):
        result = {}
        self._link_users(link, id_scope, result)
        if not local_only:
            rows = self._fetch(
                "SELECT consumer_key, resource_link_id FROM %s WHERE "
                "primary_consumer_key=? AND primary_resource_link_id=? "
                "AND share_approved=1" % LINK_TABLE,
                (link.consumer.key, link.id))
            for consumer_key, link_id in rows or ():
                consumer = model.ToolConsumer(consumer_key, self)
                self.load_consumer(consumer)
                share = model.ResourceLink(consumer, link_id)
                self.load_resource_link(share)
                self._link_users(share, id_scope, result)
        return result

    def get_shares(self, link):
        rows = self._fetch(
            "SELECT consumer_key, resource_link_id, title, share_approved "
            "FROM %s WHERE primary_consumer_key=? AND "
            "primary_resource_link_id=? "
            "ORDER BY consumer_key, resource_link_id" % LINK_TABLE,
            (link.consumer.key, link.id))
        return [model.ResourceLinkShare(
            row[0], row[1], row[2], from_column('share_approved', row[3]))
            for row in rows or ()]

    def load_nonce(self, nonce):
        record = self._select(NONCE_TABLE, NONCE_KEYS,
                              (nonce.consumer.key, nonce.value), ('expires', ))
        return record is not None and record['expires'] > time.time()

    def save_nonce(self, nonce):
        try:
            with self.lock, self.connection:
                self._execute(
                    "DELETE FROM %s WHERE consumer_key=? AND expires<=?" %
                    NONCE_TABLE, (nonce.consumer.key, time.time()))
                self._execute(
                    "INSERT INTO %s (consumer_key, value, expires) "
                    "VALUES (?, ?, ?)" % NONCE_TABLE,
                    (nonce.consumer.key, nonce.value, nonce.expires))
            return True
        except sqlite3.IntegrityError:
            logger.debug("Duplicate nonce: %s", nonce.value)
            return False
        except sqlite3.Error:
            logger.exception("Failed to save nonce %s", nonce.value)
            return False

    def load_share_key(self, share_key):
        record = self._select(SHARE_KEY_TABLE, SHARE_KEY_KEYS,
                              (share_key.id, ), store.SHARE_KEY_FIELDS)
        if record is None:
            return False
        if record['expires'] is not None and record['expires'] <= time.time():
            logger.debug("Expired share key: %s", share_key.id)
            self.delete_share_key(share_key)
            return False
        store.set_record(share_key, record)
        return True

    def save_share_key(self, share_key):
        return self._replace(SHARE_KEY_TABLE, SHARE_KEY_KEYS,
                             (share_key.id, ), share_key,
                             store.SHARE_KEY_FIELDS)

    def delete_share_key(self, share_key):
        return self._delete(
            [("DELETE FROM %s WHERE share_key_id=?" % SHARE_KEY_TABLE,
              (share_key.id, ))])

    def _user_key(self, user):
        return (user.resource_link.consumer.key, user.resource_link.id,
                user.id)

    def load_user(self, user):
        record = self._select(USER_TABLE, USER_KEYS, self._user_key(user),
                              store.USER_FIELDS)
        if record is None:
            return False
        store.set_record(user, record)
        return True

    def save_user(self, user):
        store.stamp(user)
        return self._replace(USER_TABLE, USER_KEYS, self._user_key(user),
                             user, store.USER_FIELDS)

    def delete_user(self, user):
        result = self._delete(
            [("DELETE FROM %s WHERE consumer_key=? AND resource_link_id=? "
              "AND user_id=?" % USER_TABLE, self._user_key(user))])
        if result:
            user.initialise()
        return result
