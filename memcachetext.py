#!/usr/bin/env python3

# Copyright 2013 Sean Reifschneider, tummy.com, ltd.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

__author__ = 'Sean Reifschneider <jafo@tummy.com>'
__version__ = '0.1.0'
__copyright__ = 'Copyright (C) 2013 Sean Reifschneider, tummy.com, ltd.'
__license__ = 'Apache'

'''
.. module:: memcachetext
    :platform: Unix, Windows
    :synopsis: Client for the memcached text protocol.

    .. moduleauthor:: Sean Reifschneider <jafo@tummy.com>

A small client for the memcached text protocol, talking to a single
server over one persistent connection.

The protocol handling is split from the connection handling: the
encoder and parsers in this module work on `bytes` only, and the
:py:class:`~memcachetext.Memcache` class hands the encoded commands to a
connection object which has a `send(command, payload=None)` method
returning the raw reply.  :py:class:`~memcachetext.ServerConnection`
is the socket implementation of that connection.

Example:

    >>> from memcachetext import Memcache                      # noqa
    >>> mc = Memcache('memcached://localhost:11211/')
    >>> mc.set('foo', b'bar')
    >>> mc.get('foo')
    b'bar'

Bugs/patches/code: https://github.com/linsomniac/python-memcached2
'''

import logging
import re
import socket

log = logging.getLogger(__name__)

DEFAULT_PORT = 11211
DEFAULT_FLAGS = 123456
MAX_KEY_LENGTH = 250

STORAGE_COMMANDS = ('set', 'add', 'replace', 'append', 'prepend', 'cas')

_CRLF = b'\r\n'
_END = b'END\r\n'
_BODY_TRAILER = b'\r\nEND\r\n'
_VALUE_PREFIX = b'VALUE '
_STAT_PREFIX = b'STAT '


def _from_bytes(data):
    '''INTERNAL: Convert bytes to a regular string.'''
    if isinstance(data, str):
        return data
    return str(data, 'utf-8')


def _to_bytes(data):
    '''INTERNAL: Convert something to bytes type.'''
    if isinstance(data, bytes):
        return data
    if isinstance(data, (bytearray, memoryview)):
        return bytes(data)
    return str(data).encode('utf-8')


def _key_from_bytes(key):
    '''INTERNAL: Convert a key to str.  Bytes that are not UTF-8 are kept
    as surrogate escapes, so the key converts back to the same bytes.'''
    if isinstance(key, str):
        return key
    return str(key, 'utf-8', 'surrogateescape')


def _check_key(key):
    '''INTERNAL: Validate a key and return it as bytes.

    :raises: :py:exc:`~memcachetext.MissingArgument`,
        :py:exc:`~memcachetext.InvalidKey`
    '''
    if key is None:
        raise MissingArgument('key is required')
    if isinstance(key, str):
        key = key.encode('utf-8', 'surrogateescape')
    key = _to_bytes(key)
    if not key:
        raise InvalidKey('Key is empty')
    if len(key) > MAX_KEY_LENGTH:
        raise InvalidKey('Key is too long: {0!r}'.format(key[:40]))
    for byte in key:
        if byte <= 32 or byte == 127:
            raise InvalidKey(
                    'Key contains whitespace or control characters: {0!r}'
                    .format(key))
    return key


class MemcachedException(Exception):
    '''Base exception that all other exceptions inherit from.
    This is never raised directly.'''


class MissingArgument(MemcachedException):
    '''A required argument was not given.  Raised before anything is sent
    to the server.  Subclass of :class:`MemcachedException`.'''


class InvalidKey(MemcachedException):
    '''The key cannot be sent on the text protocol: it is empty, longer
    than 250 bytes, or contains whitespace or control characters.
    Subclass of :class:`MemcachedException`.'''


class UnknownProtocol(MemcachedException):
    '''An unknown protocol was specified in the memcached URI.
    Subclass of :class:`MemcachedException`.'''


class InvalidURI(MemcachedException):
    '''An error was encountered in parsing the server URI.
    Subclass of :class:`MemcachedException`.'''


class TransportError(MemcachedException):
    '''Base class for errors moving bytes to or from the server.
    Subclass of :class:`MemcachedException`.'''


class ServerDisconnect(TransportError):
    '''The connection to the server closed.
    Subclass of :class:`TransportError`.'''


class ProtocolError(MemcachedException):
    '''Base class for replies from the server that are not a success.
    Never raised directly.  Subclass of :class:`MemcachedException`.

    The text sent by the server, if any, is available as `detail`.
    '''
    def __init__(self, detail=None):
        if detail is None:
            super(ProtocolError, self).__init__()
        else:
            super(ProtocolError, self).__init__(detail)
        self.detail = detail


class GenericError(ProtocolError):
    '''The server replied "ERROR", normally a command it does not know.
    Subclass of :class:`ProtocolError`.'''


class ClientError(ProtocolError):
    '''The server replied "CLIENT_ERROR", the request was malformed.
    The message from the server is in `detail`.
    Subclass of :class:`ProtocolError`.'''


class NonNumeric(ClientError):
    '''The item you are trying to incr/decr is not numeric.
    Subclass of :class:`ClientError`.'''


class ServerError(ProtocolError):
    '''The server replied "SERVER_ERROR", for example when it is out of
    memory.  The message from the server is in `detail`.
    Subclass of :class:`ProtocolError`.'''


class StoreException(ProtocolError):
    '''Base class for storage related exceptions.  Never raised directly.
    Subclass of :class:`ProtocolError`.'''


class NotStored(StoreException):
    '''Item was not stored, but not due to an error.  Normally means the
    condition for an "add" or "replace" was not met.  Subclass of
    :class:`StoreException`.'''


class Exists(StoreException):
    '''Item you are trying to store with a "cas" command has been modified
    since you last fetched it (result=EXISTS).  Subclass of
    :class:`StoreException`.'''


class NotFound(StoreException):
    '''Item you are trying to store with a "cas" command, or touch, does
    not exist.  Subclass of :class:`StoreException`.'''


class MalformedResponse(ProtocolError):
    '''The reply from the server did not have any of the expected shapes.
    The complete reply is available as `response`.
    Subclass of :class:`ProtocolError`.
    '''
    def __init__(self, response, reason=None):
        response = _to_bytes(response)
        message = 'Unknown response: {0!r}'.format(response[:80])
        if reason:
            message = '{0}: {1!r}'.format(reason, response[:80])
        super(MalformedResponse, self).__init__(message)
        self.response = response
        self.reason = reason


class StorageCommand:
    '''One of the storage commands, ready to be encoded.

    Required fields are checked here so that a bad command never reaches
    the server.

    >>> StorageCommand('set', 'k', b'v').encode()               # noqa
    (b'set k 123456 0 1\\r\\n', b'v\\r\\n')
    '''

    def __init__(
            self, name, key, value, flags=DEFAULT_FLAGS, exptime=0,
            cas_unique=None):
        '''
        :param name: One of "set", "add", "replace", "append", "prepend"
            or "cas".
        :type name: str
        :param key: Key used to store value in memcache server.
        :type key: str or bytes
        :param value: Value stored in memcache server for this key.  A str
            is stored UTF-8 encoded.
        :type value: bytes or str
        :param flags: Opaque number stored along with the value.
        :type flags: int (32 bits)
        :param exptime: If non-zero, it specifies the expiration time, in
            seconds, for this value.
        :type exptime: int
        :param cas_unique: The CAS token from a "gets", required for "cas"
            and ignored by the other commands.
        :type cas_unique: int (64 bits)
        :raises: :py:exc:`~memcachetext.MissingArgument`,
            :py:exc:`~memcachetext.InvalidKey`, :py:exc:`ValueError`
        '''
        if name not in STORAGE_COMMANDS:
            raise ValueError('Unknown storage command: {0!r}'.format(name))
        self.name = name
        self.key = _check_key(key)
        if value is None:
            raise MissingArgument('value is required')
        self.value = _to_bytes(value)
        if not 0 <= int(flags) <= 0xffffffff:
            raise ValueError('flags must fit in 32 bits: {0!r}'.format(flags))
        self.flags = int(flags)
        self.exptime = int(exptime)
        if name == 'cas':
            if cas_unique is None:
                raise MissingArgument('cas_unique is required for cas')
            if not 0 <= int(cas_unique) <= 0xffffffffffffffff:
                raise ValueError(
                        'cas_unique must fit in 64 bits: {0!r}'
                        .format(cas_unique))
            cas_unique = int(cas_unique)
        self.cas_unique = cas_unique

    def encode(self):
        '''See :py:func:`~memcachetext.encode_storage_command`.'''
        return encode_storage_command(self)

    def __repr__(self):
        return '<StorageCommand {0} {1!r} ({2} bytes)>'.format(
                self.name, self.key, len(self.value))


class FetchResponseEntry:
    '''A key and its value, as returned by "get" or "gets".

    `value` is the raw bytes stored on the server.  `flags` is what was
    stored with the value, and `cas_unique` is the CAS token if the server
    sent one (None otherwise).
    '''
    __slots__ = ('key', 'value', 'flags', 'cas_unique')

    def __init__(self, key, value, flags=0, cas_unique=None):
        self.key = key
        self.value = value
        self.flags = flags
        self.cas_unique = cas_unique

    def __eq__(self, other):
        if not isinstance(other, FetchResponseEntry):
            return NotImplemented
        return (
                (self.key, self.value, self.flags, self.cas_unique)
                == (other.key, other.value, other.flags, other.cas_unique))

    __hash__ = None

    def __repr__(self):
        return '<FetchResponseEntry {0!r}={1!r}>'.format(self.key, self.value)


def classify_error(data):
    '''Recognize the error replies that any command may receive.

    This must be checked before any command-specific parsing, an error
    line never looks like a success reply.

    :param data: Raw reply from the server.
    :type data: bytes
    :returns: :py:class:`~memcachetext.ProtocolError` instance, or None if
        `data` is not an error reply.
    '''
    data = _to_bytes(data)
    if data == b'ERROR\r\n':
        return GenericError('ERROR')
    for prefix, error_class in (
            (b'CLIENT_ERROR ', ClientError),
            (b'SERVER_ERROR ', ServerError)):
        if (
                data.startswith(prefix) and data.endswith(_CRLF)
                and len(data) > len(prefix) + len(_CRLF)):
            detail = data[len(prefix):-len(_CRLF)]
            return error_class(_from_bytes(detail).strip())
    return None


def encode_storage_command(command):
    '''Build the wire form of a storage command.

    The length sent is the length in bytes of the value, which may contain
    any bytes at all, including CR+NL.

    :param command: The command to encode.
    :type command: :py:class:`~memcachetext.StorageCommand`
    :returns: tuple -- `(command_line, payload_line)`, both bytes
        terminated with CR+NL.
    '''
    fields = [
            _to_bytes(command.name), command.key,
            _to_bytes(command.flags), _to_bytes(command.exptime),
            _to_bytes(len(command.value))]
    if command.name == 'cas':
        fields.append(_to_bytes(command.cas_unique))
    return b' '.join(fields) + _CRLF, command.value + _CRLF


_STORAGE_RESULTS = {
        b'STORED\r\n': None,
        b'NOT_STORED\r\n': NotStored,
        b'EXISTS\r\n': Exists,
        b'NOT_FOUND\r\n': NotFound,
        }


def classify_storage_result(data):
    '''Interpret the reply to a storage command.

    Only meaningful once :py:func:`~memcachetext.classify_error` has found
    no error, otherwise error replies come back as
    :py:class:`~memcachetext.MalformedResponse`.

    :param data: Raw reply from the server.
    :type data: bytes
    :returns: None if the data was stored, otherwise an instance of
        :py:class:`~memcachetext.NotStored`,
        :py:class:`~memcachetext.Exists`,
        :py:class:`~memcachetext.NotFound` or
        :py:class:`~memcachetext.MalformedResponse`.
    '''
    data = _to_bytes(data)
    if data not in _STORAGE_RESULTS:
        return MalformedResponse(data)
    error_class = _STORAGE_RESULTS[data]
    if error_class is None:
        return None
    return error_class(_from_bytes(data.rstrip()))


def parse_fetch_response(data):
    '''Parse the reply to a "get" or "gets" command.

    The reply is zero or more "VALUE <key> <flags> <bytes>[ <cas>]" lines,
    each followed by exactly <bytes> bytes of data and CR+NL, and then
    "END".  Values are sliced out by their declared length, never by
    looking for CR+NL, because the data itself may contain CR+NL.

    :param data: Raw reply from the server.
    :type data: bytes
    :returns: list of :py:class:`~memcachetext.FetchResponseEntry`, in the
        order the server sent them.  Keys the server does not have are
        simply missing.
    :raises: :py:exc:`~memcachetext.MalformedResponse`
    '''
    data = _to_bytes(data)
    if len(data) < len(_END) or not data.endswith(_END):
        raise MalformedResponse(data, 'Missing END')
    if data == _END:
        return []
    if not data.endswith(_BODY_TRAILER):
        raise MalformedResponse(data, 'Missing END')

    body = data[:-len(_BODY_TRAILER)]
    entries = []
    position = 0
    while position < len(body):
        if not body.startswith(_VALUE_PREFIX, position):
            raise MalformedResponse(data, 'Expected VALUE')
        line_end = body.find(_CRLF, position)
        if line_end < 0:
            raise MalformedResponse(data, 'Unterminated VALUE line')

        fields = body[position:line_end].split(b' ')
        if len(fields) not in (4, 5):
            raise MalformedResponse(data, 'Bad VALUE line')
        if not all(x.isdigit() for x in fields[2:]):
            raise MalformedResponse(data, 'Bad VALUE line')
        key = _key_from_bytes(fields[1])
        flags = int(fields[2])
        length = int(fields[3])
        cas_unique = None
        if len(fields) == 5:
            cas_unique = int(fields[4])

        value_start = line_end + len(_CRLF)
        value_end = value_start + length
        if value_end > len(body):
            raise MalformedResponse(data, 'Short value')
        entries.append(FetchResponseEntry(
                key, body[value_start:value_end], flags, cas_unique))

        #  the separator before the next VALUE is skipped unexamined
        if value_end == len(body):
            position = value_end
        elif value_end + len(_CRLF) > len(body):
            raise MalformedResponse(data, 'Short value')
        else:
            position = value_end + len(_CRLF)

    return entries


def _stat_value(name, value):
    '''INTERNAL: Convert a stats value into int or float where it is one.'''
    if name.startswith('rusage_'):
        try:
            return float(value)
        except ValueError:
            return value
    if value.isdigit():
        return int(value)
    return value


class Memcache:
    '''
    A connection to a memcache server.

    This is a low-level memcache interface.  Errors from the server are
    raised as exceptions, and connection problems are raised as they come
    from the connection, allowing a program full control over handling of
    those problems.  Nothing is retried.

    Example:

    >>> from memcachetext import *                               # noqa
    >>> mc = Memcache('memcached://localhost/')
    >>> mc.set('foo', b'bar')
    >>> mc.get('foo')
    b'bar'
    >>> mc.get('missing') is None
    True

    .. note::

        There is one connection and one request in flight at a time.
        An instance is not safe to share between threads without a lock
        around every call; use one instance per thread instead.
    '''

    def __init__(self, server, timeout=None):
        '''
        :param server: Server URI of the form "memcached://hostname[:port]/",
            or a connection object with a `send(command, payload=None)`
            method that returns the raw reply as bytes.
        :type server: str or connection object
        :param timeout: (None) Socket timeout in seconds, used only when
            `server` is a URI.
        :type timeout: float
        '''
        if isinstance(server, str):
            server = ServerConnection(server, timeout=timeout)
        self.connection = server

    def _send_command(self, command, payload=None):
        '''INTERNAL: Send a command and return the reply, raising if the
        reply is one of the generic errors.

        :param command: The memcache-protocol command line, terminated with
            CR+NL.
        :type command: bytes
        :param payload: The data line of a storage command, or None.
        :type payload: bytes
        :returns: bytes -- The reply from the server.
        :raises: :py:exc:`~memcachetext.GenericError`,
            :py:exc:`~memcachetext.ClientError`,
            :py:exc:`~memcachetext.ServerError`
        '''
        log.debug('Sending %r', command[:80])
        data = self.connection.send(command, payload)
        error = classify_error(data)
        if error is not None:
            raise error
        return data

    def store(self, command):
        '''Send a storage command to the server.

        :param command: The command to send.
        :type command: :py:class:`~memcachetext.StorageCommand`
        :raises: :py:exc:`~memcachetext.NotStored`,
            :py:exc:`~memcachetext.Exists`,
            :py:exc:`~memcachetext.NotFound`,
            :py:exc:`~memcachetext.MalformedResponse`,
            :py:exc:`~memcachetext.ProtocolError`
        '''
        command_line, payload = encode_storage_command(command)
        data = self._send_command(command_line, payload)
        error = classify_storage_result(data)
        if error is not None:
            raise error

    def set(self, key, value, flags=DEFAULT_FLAGS, exptime=0):
        '''Set a key to the value in the memcache server.

        :param key: Key used to store value in memcache server.
        :type key: str or bytes
        :param value: Value stored in memcache server for this key.
        :type value: bytes or str
        :param flags: If specified, the same value will be provided on
                :func:`gets`.
        :type flags: int (32 bits)
        :param exptime: If non-zero, it specifies the expiration time, in
            seconds, for this value.
        :type exptime: int
        :raises: :py:exc:`~memcachetext.MissingArgument`,
            :py:exc:`~memcachetext.NotStored`
        '''
        self.store(StorageCommand('set', key, value, flags, exptime))

    def add(self, key, value, flags=DEFAULT_FLAGS, exptime=0):
        '''Store, but only if the server doesn't already hold data for it.

        See :py:func:`~memcachetext.Memcache.set` for the arguments.

        :raises: :py:exc:`~memcachetext.NotStored`
        '''
        self.store(StorageCommand('add', key, value, flags, exptime))

    def replace(self, key, value, flags=DEFAULT_FLAGS, exptime=0):
        '''Store data, but only if the server already holds data for it.

        See :py:func:`~memcachetext.Memcache.set` for the arguments.

        :raises: :py:exc:`~memcachetext.NotStored`
        '''
        self.store(StorageCommand('replace', key, value, flags, exptime))

    def append(self, key, value, flags=DEFAULT_FLAGS, exptime=0):
        '''Store data after existing data associated with this key.

        The server ignores `flags` and `exptime` for this command.

        :raises: :py:exc:`~memcachetext.NotStored`
        '''
        self.store(StorageCommand('append', key, value, flags, exptime))

    def prepend(self, key, value, flags=DEFAULT_FLAGS, exptime=0):
        '''Store data before existing data associated with this key.

        The server ignores `flags` and `exptime` for this command.

        :raises: :py:exc:`~memcachetext.NotStored`
        '''
        self.store(StorageCommand('prepend', key, value, flags, exptime))

    def cas(self, key, value, cas_unique, flags=DEFAULT_FLAGS, exptime=0):
        '''Store data only if nobody else has updated it since it was read.

        :param cas_unique: The `cas_unique` of the entry returned by
            :py:func:`~memcachetext.Memcache.gets`.
        :type cas_unique: int (64 bits)
        :raises: :py:exc:`~memcachetext.Exists` if the item was modified,
            :py:exc:`~memcachetext.NotFound` if it no longer exists.
        '''
        self.store(StorageCommand(
                'cas', key, value, flags, exptime, cas_unique))

    def _fetch(self, command, keys):
        '''INTERNAL: Run a "get" or "gets" for the keys and parse the reply.
        '''
        if not keys:
            raise MissingArgument('At least one key is required')
        keys = [_check_key(x) for x in keys]
        command_line = command + b' ' + b' '.join(keys) + _CRLF
        return parse_fetch_response(self._send_command(command_line))

    def get(self, key):
        '''Retrieve the specified key from the memcache server.

        :param key: The key to lookup in the memcache server.
        :type key: str or bytes
        :returns: bytes -- The value, or None if the server has no value
            for this key.  A stored empty value is returned as b''.
        :raises: :py:exc:`~memcachetext.MalformedResponse`,
            :py:exc:`~memcachetext.ProtocolError`
        '''
        wanted = _key_from_bytes(_check_key(key))
        for entry in self._fetch(b'get', [key]):
            if entry.key == wanted:
                return entry.value
        return None

    def gets(self, *keys):
        '''Retrieve the specified keys, along with their CAS tokens.

        :param keys: The keys to lookup in the memcache server.
        :type keys: str or bytes
        :returns: list of :py:class:`~memcachetext.FetchResponseEntry`, in
            whatever order the server sent them.  Keys that are not found
            have no entry.
        :raises: :py:exc:`~memcachetext.MissingArgument`,
            :py:exc:`~memcachetext.MalformedResponse`,
            :py:exc:`~memcachetext.ProtocolError`
        '''
        return self._fetch(b'gets', keys)

    def delete(self, key):
        '''Delete the key if it exists.

        :param key: Key to remove from the memcache server.
        :type key: str or bytes
        :returns: Boolean indicating if key was deleted.
        :raises: :py:exc:`~memcachetext.MalformedResponse`
        '''
        command = b'delete ' + _check_key(key) + _CRLF
        data = self._send_command(command)

        if data == b'DELETED\r\n':
            return True
        if data == b'NOT_FOUND\r\n':
            return False
        raise MalformedResponse(data)

    def touch(self, key, exptime):
        '''Update the expiration time on an item.

        :param key: Key of the item to update.
        :type key: str or bytes
        :param exptime: If non-zero, it specifies the expiration time, in
            seconds, for this value.  Note that setting exptime=0 causes the
            item to not expire based on time.
        :type exptime: int
        :raises: :py:exc:`~memcachetext.NotFound`,
            :py:exc:`~memcachetext.MalformedResponse`
        '''
        command = b' '.join(
                [b'touch', _check_key(key), _to_bytes(int(exptime))]) + _CRLF
        data = self._send_command(command)

        if data == b'TOUCHED\r\n':
            return
        if data == b'NOT_FOUND\r\n':
            raise NotFound('NOT_FOUND')
        raise MalformedResponse(data)

    def incr(self, key, value=1):
        '''Increment the value for the key, treated as a 64-bit unsigned value.

        :param key: Key of the item to increment.
        :type key: str or bytes
        :param value: A numeric value (default=1) to add to the existing value.
        :type value: int (64 bit)
        :returns: int -- (64 bits) The new value after the increment.
        :raises: :py:exc:`~memcachetext.NotFound`,
            :py:exc:`~memcachetext.NonNumeric`,
            :py:exc:`~memcachetext.MalformedResponse`
        '''
        return self._incrdecr_command(b'incr', key, value)

    def decr(self, key, value=1):
        '''Decrement the value for the key, treated as a 64-bit unsigned value.

        The server does not decrement below 0.

        :returns: int -- (64 bits) The new value after the decrement.
        :raises: :py:exc:`~memcachetext.NotFound`,
            :py:exc:`~memcachetext.NonNumeric`,
            :py:exc:`~memcachetext.MalformedResponse`
        '''
        return self._incrdecr_command(b'decr', key, value)

    def _incrdecr_command(self, command, key, value):
        '''INTERNAL: Increment/decrement command back-end.'''
        command_line = b' '.join(
                [command, _check_key(key), _to_bytes(int(value))]) + _CRLF
        try:
            data = self._send_command(command_line)
        except ClientError as e:
            if 'non-numeric' in (e.detail or ''):
                raise NonNumeric(e.detail)
            raise

        #  <NEW_VALUE>\r\n
        if data.endswith(_CRLF) and data[:-2].isdigit():
            return int(data[:-2])
        if data == b'NOT_FOUND\r\n':
            raise NotFound('NOT_FOUND')
        raise MalformedResponse(data)

    def flush_all(self, delay=None):
        '''Invalidate all items in the memcache server.

        :param delay: If given, the items are invalidated after this many
            seconds instead of immediately.
        :type delay: int
        :raises: :py:exc:`~memcachetext.MalformedResponse`
        '''
        command = b'flush_all\r\n'
        if delay is not None:
            command = b'flush_all ' + _to_bytes(int(delay)) + _CRLF
        data = self._send_command(command)

        if data != b'OK\r\n':
            raise MalformedResponse(data)

    def stats(self, group=None):
        '''Get statistics about the memcache server.

        :param group: If given, the statistics group to query, for example
            "items", "slabs" or "settings".
        :type group: str
        :returns: dict -- Statistic names mapped to values.  Values that are
            integers are converted to int, "rusage" values to float, and the
            rest are left as str.
        :raises: :py:exc:`~memcachetext.MalformedResponse`
        '''
        command = b'stats\r\n'
        if group:
            command = b'stats ' + _to_bytes(group) + _CRLF
        data = self._send_command(command)

        body = data[:-len(_END)]
        if not data.endswith(_END) or (body and not body.endswith(_CRLF)):
            raise MalformedResponse(data, 'Missing END')
        stats = {}
        for line in body.split(_CRLF)[:-1]:
            try:
                fields = _from_bytes(line).split(' ', 2)
            except UnicodeDecodeError:
                raise MalformedResponse(data, 'Unknown stats data')
            if len(fields) != 3 or fields[0] != 'STAT':
                raise MalformedResponse(data, 'Unknown stats data')
            stats[fields[1]] = _stat_value(fields[1], fields[2])
        return stats

    def close(self):
        '''Close the connection to the server.
        '''
        self.connection.close()


class ServerConnection:
    '''Low-level communication with the memcached server.

    This implements the connection used by :py:class:`~memcachetext.Memcache`:
    :py:func:`~memcachetext.ServerConnection.send` writes a command and
    reads back one complete reply.  It knows just enough about replies to
    tell where they end, the reply itself is interpreted by the caller.

    The socket is connected on first use.  If the connection is lost,
    :py:exc:`~memcachetext.ServerDisconnect` is raised and the next
    command connects again.

    Note that this class buffers data read from the server, so you should
    **never** read data directly from the underlying socket, as it may
    confuse other software which uses this interface.
    '''

    def __init__(self, uri, timeout=None):
        '''
        :param uri: The URI of the backend server.
        :type uri: str
        :param timeout: (None) Timeout in seconds for connecting and for
            each socket operation.  None blocks forever.
        :type timeout: float
        '''

        self.uri = uri
        self.timeout = timeout
        self.parsed_uri = self.parse_uri()
        self.backend = None
        self.buffer_readsize = 10000
        self.reset()

    def reset(self):
        '''Reset the connection.

        Flushes buffered data and closes the backend connection.
        '''

        self.buffer = b''
        if self.backend:
            log.debug('Closing connection to %s', self.uri)
            self.backend.close()
        self.backend = None

    close = reset

    def consume_from_buffer(self, length):
        '''Retrieve the specified number of bytes from the buffer.

        :param length: Number of bytes of data to consume from buffer.
        :type length: int
        :returns: bytes -- Data from buffer.
        '''

        data = self.buffer[:length]
        self.buffer = self.buffer[length:]
        return data

    def parse_uri(self):
        '''Parse a server connection URI.

        Parses the `uri` attribute of this object.

        Currently, the only supported URI format is of the form:

            * memcached://<hostname>[:port]/ -- A TCP socket connection to \
                    the host, optionally on the specified port.  If \
                    `port` is not specified, port 11211 is used.

        :returns: dict -- A dictionary with the key `protocol` and other
            protocol-specific keys.  For `memcached` protocol the keys
            include `host`, and `port`.
        :raises: :py:exc:`~memcachetext.InvalidURI`
        '''

        m = re.match(
                r'memcached://(?P<host>[^:/]+)(:(?P<port>[0-9]+))?/?$',
                self.uri)
        if m:
            group = m.groupdict()
            port = group.get('port')
            if not port:
                port = DEFAULT_PORT
            port = int(port)
            return {'protocol': 'memcached', 'host': group.get('host'),
                    'port': port}

        raise InvalidURI('Invalid URI: {0}'.format(self.uri))

    def connect(self):
        '''Connect to memcached server.

        If already connected, this function returns immediately.  Otherwise,
        the connection is reset and a connection is made to the backend.

        :raises: :py:exc:`~memcachetext.UnknownProtocol`,
            :py:exc:`~memcachetext.ServerDisconnect`
        '''

        if self.backend:
            return

        self.reset()
        if self.parsed_uri['protocol'] == 'memcached':
            address = (self.parsed_uri['host'], self.parsed_uri['port'])
            log.debug('Connecting to %s:%d', *address)
            try:
                self.backend = socket.create_connection(address, self.timeout)
            except socket.timeout:
                raise ServerDisconnect('Timeout connecting to {0}'.format(
                        self.uri))
            except OSError as e:
                raise ServerDisconnect('Unable to connect to {0}: {1}'.format(
                        self.uri, e))
            return

        raise UnknownProtocol(
                'Unknown connection protocol: {0}'
                .format(self.parsed_uri['protocol']))

    def send(self, command, payload=None):
        '''Send a command to the server and return its reply.

        :param command: Command line sent to the server, terminated with
            CR+NL.
        :type command: bytes
        :param payload: The data line for storage commands, including its
            CR+NL terminator.
        :type payload: bytes
        :returns: bytes -- One complete reply from the server.
        :raises: :py:exc:`~memcachetext.ServerDisconnect`
        '''
        self.connect()
        data = command
        if payload is not None:
            data += payload
        self.send_command(data)
        return self.read_response()

    def send_command(self, command):
        '''Write raw data to the memcached server.

        :param command: Data that is sent to the server.
        :type command: bytes

        :raises: :py:exc:`~memcachetext.ServerDisconnect`
        '''

        try:
            self.backend.sendall(command)
        except ConnectionResetError:
            self.reset()
            raise ServerDisconnect('ConnectionResetError')
        except BrokenPipeError:
            self.reset()
            raise ServerDisconnect('BrokenPipeError')
        except socket.timeout:
            self.reset()
            raise ServerDisconnect('Timeout in send_command()')

    def read_response(self):
        '''Read one complete reply from the server.

        A reply is a single line, unless it begins with "VALUE" or "STAT",
        in which case lines (and the data blocks following "VALUE" lines)
        are read up to and including "END".

        :returns: bytes -- The reply.
        :raises: :py:exc:`~memcachetext.ServerDisconnect`
        '''
        line = self.read_until()
        chunks = [line]
        while line.startswith((_VALUE_PREFIX, _STAT_PREFIX)):
            if line.startswith(_VALUE_PREFIX):
                fields = line.split()
                if len(fields) < 4 or not fields[3].isdigit():
                    #  no way to know where this reply ends
                    log.warning('Unframeable reply from %s: %r', self.uri, line)
                    self.reset()
                    return b''.join(chunks)
                chunks.append(self.read_length(int(fields[3]) + len(_CRLF)))
            line = self.read_until()
            chunks.append(line)
        return b''.join(chunks)

    def read_until(self, search=_CRLF):
        '''Read data from the server until "search" is found.

        Data is read in blocks, any remaining data beyond `search` is held
        in a buffer to be consumed in the future.

        :param search: Read data from the server until `search` is found.
                This defaults to CR+NL, so it acts like readline().
        :type search: bytes

        :returns: bytes -- Data read, up to and including `search`.
        :raises: :py:exc:`~memcachetext.ServerDisconnect`
        '''
        start = 0
        search_len = len(search)

        while True:
            if self.buffer:
                pos = self.buffer.find(search, start)
                if pos >= 0:
                    return self.consume_from_buffer(pos + search_len)
                else:
                    start = max(0, len(self.buffer) - search_len)

            self.read_from_socket()

    def read_from_socket(self):
        '''Read data from the socket, storing into buffer.

        A single read operation from the socket, storing data into the buffer.

        :raises: :py:exc:`~memcachetext.ServerDisconnect`
        '''
        try:
            data = self.backend.recv(self.buffer_readsize)
        except ConnectionResetError:
            self.reset()
            raise ServerDisconnect('ConnectionResetError')
        except BrokenPipeError:
            self.reset()
            raise ServerDisconnect('BrokenPipeError')
        except socket.timeout:
            self.reset()
            raise ServerDisconnect('Timeout in read_from_socket()')
        if not data:
            self.reset()
            raise ServerDisconnect('Zero-length read in read_from_socket()')
        self.buffer += data

    def read_length(self, length):
        '''Read the specified number of bytes.

        :param length: Number of bytes of data to read.
        :type length: int

        :returns: bytes -- Data read from socket.
        :raises: :py:exc:`~memcachetext.ServerDisconnect`
        '''
        while len(self.buffer) < length:
            self.read_from_socket()

        return self.consume_from_buffer(length)

    def fileno(self):
        '''Return the socket file descriptor.

        :returns: int -- File descriptor of the associated socket.
        '''
        if not self.backend:
            return None
        return self.backend.fileno()

    def __repr__(self):
        return '<ServerConnection to {0}>'.format(self.uri)
