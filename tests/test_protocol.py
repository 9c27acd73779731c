#!/usr/bin/env python
#
#  Test the encoder and reply parsers of the Python memcachetext module.
#
#===============
#  This is based on a skeleton test file, more information at:
#
#     https://github.com/linsomniac/python-unittest-skeleton
#
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

import unittest

import mctestsupp                    # noqa
import memcachetext
from memcachetext import FetchResponseEntry, StorageCommand


class test_ClassifyError(unittest.TestCase):
    def test_GenericError(self):
        error = memcachetext.classify_error(b'ERROR\r\n')
        self.assertIsInstance(error, memcachetext.GenericError)
        self.assertIsInstance(error, memcachetext.ProtocolError)

    def test_ClientError(self):
        error = memcachetext.classify_error(
                b'CLIENT_ERROR bad command line format\r\n')
        self.assertIsInstance(error, memcachetext.ClientError)
        self.assertEqual(error.detail, 'bad command line format')
        self.assertEqual(str(error), 'bad command line format')

    def test_ServerError(self):
        error = memcachetext.classify_error(b'SERVER_ERROR out of memory\r\n')
        self.assertIsInstance(error, memcachetext.ServerError)
        self.assertEqual(error.detail, 'out of memory')

    def test_NotAnError(self):
        for data in [
                b'STORED\r\n', b'END\r\n', b'ERROR', b'ERRORS\r\n',
                b'CLIENT_ERROR \r\n', b'SERVER_ERROR no terminator',
                b'VALUE a 0 5\r\nERROR\r\nEND\r\n']:
            self.assertIsNone(memcachetext.classify_error(data), data)


class test_EncodeStorageCommand(unittest.TestCase):
    def test_SetDefaults(self):
        command_line, payload = memcachetext.encode_storage_command(
                StorageCommand('set', 'k', 'v'))
        self.assertEqual(command_line, b'set k 123456 0 1\r\n')
        self.assertEqual(payload, b'v\r\n')

    def test_AllOptions(self):
        command = StorageCommand(
                'add', b'key', b'value', flags=7, exptime=-1)
        self.assertEqual(
                command.encode(), (b'add key 7 -1 5\r\n', b'value\r\n'))

    def test_LengthIsByteLength(self):
        for value in [
                b'', b'\r\n', b'a\r\nb', b'\x00\x00\x00', b'END\r\n',
                'café', b'\xff' * 1000]:
            command_line, payload = StorageCommand(
                    'set', 'k', value).encode()
            raw = memcachetext._to_bytes(value)
            length = int(command_line.split()[-1])
            self.assertEqual(length, len(raw))
            self.assertEqual(payload, raw + b'\r\n')

    def test_CasUnique(self):
        command = StorageCommand('cas', 'k', b'v', cas_unique=3137)
        self.assertEqual(
                command.encode()[0], b'cas k 123456 0 1 3137\r\n')

        command = StorageCommand('set', 'k', b'v', cas_unique=3137)
        self.assertEqual(command.encode()[0], b'set k 123456 0 1\r\n')

    def test_MissingArguments(self):
        with self.assertRaises(memcachetext.MissingArgument):
            StorageCommand('set', None, b'v')
        with self.assertRaises(memcachetext.MissingArgument):
            StorageCommand('set', 'k', None)
        with self.assertRaises(memcachetext.MissingArgument):
            StorageCommand('cas', 'k', b'v')

    def test_BadArguments(self):
        with self.assertRaises(ValueError):
            StorageCommand('get', 'k', b'v')
        with self.assertRaises(ValueError):
            StorageCommand('set', 'k', b'v', flags=-1)
        with self.assertRaises(ValueError):
            StorageCommand('set', 'k', b'v', flags=2 ** 32)
        with self.assertRaises(ValueError):
            StorageCommand('cas', 'k', b'v', cas_unique=2 ** 64)
        for key in ['', 'a b', 'a\r\nb', 'a\x00', 'x' * 251]:
            with self.assertRaises(memcachetext.InvalidKey):
                StorageCommand('set', key, b'v')


class test_ClassifyStorageResult(unittest.TestCase):
    def test_Stored(self):
        self.assertIsNone(memcachetext.classify_storage_result(b'STORED\r\n'))

    def test_Failures(self):
        for data, error_class in [
                (b'NOT_STORED\r\n', memcachetext.NotStored),
                (b'EXISTS\r\n', memcachetext.Exists),
                (b'NOT_FOUND\r\n', memcachetext.NotFound)]:
            error = memcachetext.classify_storage_result(data)
            self.assertIsInstance(error, error_class)
            self.assertIsInstance(error, memcachetext.StoreException)

    def test_Unknown(self):
        for data in [b'STORED', b'stored\r\n', b'NOT FOUND\r\n', b'']:
            error = memcachetext.classify_storage_result(data)
            self.assertIsInstance(error, memcachetext.MalformedResponse)
            self.assertEqual(error.response, data)

        error = memcachetext.classify_storage_result(
                b'CLIENT_ERROR bad data chunk\r\n')
        self.assertIsInstance(error, memcachetext.MalformedResponse)


class test_ParseFetchResponse(unittest.TestCase):
    def test_Empty(self):
        self.assertEqual(memcachetext.parse_fetch_response(b'END\r\n'), [])

    def test_TwoValues(self):
        entries = memcachetext.parse_fetch_response(
                b'VALUE a 0 3\r\nfoo\r\nVALUE b 0 0\r\n\r\nEND\r\n')
        self.assertEqual(
                [(x.key, x.value) for x in entries],
                [('a', b'foo'), ('b', b'')])
        self.assertEqual(entries[0], FetchResponseEntry('a', b'foo', 0))

    def test_EmbeddedDelimiters(self):
        value = b'line1\r\nVALUE x 0 1\r\nEND\r\n\r\n'
        data = (
                b'VALUE a 5 ' + str(len(value)).encode() + b'\r\n'
                + value + b'\r\nEND\r\n')
        entries = memcachetext.parse_fetch_response(data)
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].key, 'a')
        self.assertEqual(entries[0].value, value)
        self.assertEqual(entries[0].flags, 5)

    def test_ServerOrderIsKept(self):
        values = [('c', b'3'), ('a', b'\x00\r\n'), ('b', b'')]
        data = b''.join(
                b'VALUE ' + k.encode() + b' 0 '
                + str(len(v)).encode() + b'\r\n' + v + b'\r\n'
                for k, v in values) + b'END\r\n'
        entries = memcachetext.parse_fetch_response(data)
        self.assertEqual([(x.key, x.value) for x in entries], values)

    def test_CasToken(self):
        entries = memcachetext.parse_fetch_response(
                b'VALUE foo 0 7 3137\r\ntesting\r\nEND\r\n')
        self.assertEqual(entries[0].value, b'testing')
        self.assertEqual(entries[0].cas_unique, 3137)

    def test_NonUtf8Key(self):
        entries = memcachetext.parse_fetch_response(
                b'VALUE \xff\xfe 0 1\r\nv\r\nEND\r\n')
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].key.encode('utf-8', 'surrogateescape'),
                         b'\xff\xfe')
        self.assertEqual(entries[0].value, b'v')

    def test_Malformed(self):
        for data in [
                b'',
                b'END',
                b'VALUE a 0 3\r\nfoo\r\n',
                b'VALUE a 0 3\r\nfoo\r\nEND\r\nEXTRA',
                b'XEND\r\n',
                b'STORED\r\n\r\nEND\r\n',
                b'VALUE a 0\r\nfoo\r\nEND\r\n',
                b'VALUE a 0 3 4 5\r\nfoo\r\nEND\r\n',
                b'VALUE a 0 3 extra\r\nfoo\r\nEND\r\n',
                b'VALUE a 0 x\r\nfoo\r\nEND\r\n',
                b'VALUE a 0 -3\r\nfoo\r\nEND\r\n',
                b'VALUE a 0 9\r\nfoo\r\nEND\r\n',
                b'VALUE  a 0 3\r\nfoo\r\nEND\r\n',
                b'VALUE a 0 3 \r\nfoo\r\nEND\r\n',
                b'VALUE a 0 1\r\nxy\r\nEND\r\n',
                b'VALUE a 0 1\r\nxy\r\nVALUE b 0 1\r\nz\r\nEND\r\n']:
            with self.assertRaises(memcachetext.MalformedResponse) as cm:
                memcachetext.parse_fetch_response(data)
            self.assertEqual(cm.exception.response, data)


if __name__ == '__main__':
    unittest.main()
