# Copyright 2026 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

from __future__ import annotations

import os
import shutil
import tempfile

from hamcrest import (
    assert_that,
    contains_exactly,
    empty,
    equal_to,
    has_entries,
    has_item,
    has_length,
    is_,
    is_not,
)
from twisted.internet import defer, reactor
from twisted.internet.error import DNSLookupError
from twisted.trial import unittest

from wazo_tftp.tftp.client import TFTPClient
from wazo_tftp.tftp.exceptions import (
    LocalTimeoutError,
    RemoteError,
    StorageError,
    TFTPError,
)
from wazo_tftp.tftp.options import OptionNegotiator
from wazo_tftp.tftp.packet import (
    ERR_FEXIST,
    ERR_FNF,
    OP_ACK,
    OP_DATA,
    OP_OACK,
    OP_RRQ,
    Packet,
    parse_dgram,
)
from wazo_tftp.tftp.proto import TFTPProtocol
from wazo_tftp.tftp.service import TFTPFileService
from wazo_tftp.tftp.tests.utils import FakeReactor, Network

SERVER_HOST = '10.0.0.1'
CLIENT_HOST = '10.0.0.2'


def _drop_first(count, predicate):
    """Return a drop function losing the first count datagrams matching."""
    dropped = []

    def drop(dgram, src, dst):
        if len(dropped) < count and predicate(parse_dgram(dgram)):
            dropped.append(dgram)
            return True
        return False

    return drop


def _is_data(blk_no):
    return lambda pkt: pkt['opcode'] == OP_DATA and pkt['blkno'] == blk_no


def _is_ack(blk_no):
    return lambda pkt: pkt['opcode'] == OP_ACK and pkt['blkno'] == blk_no


class TestTransfer(unittest.TestCase):
    def setUp(self) -> None:
        self.server_dir = tempfile.mkdtemp()
        self.client_dir = tempfile.mkdtemp()
        self.network = Network()
        self.server = TFTPProtocol(
            TFTPFileService(self.server_dir, 'new'),
            OptionNegotiator(),
            reactor=self.network.reactor(SERVER_HOST),
        )
        self.network.bind(SERVER_HOST, 69, self.server)

    def tearDown(self) -> None:
        shutil.rmtree(self.server_dir)
        shutil.rmtree(self.client_dir)

    def _client(self, **kwargs) -> TFTPClient:
        return TFTPClient(
            SERVER_HOST, reactor=self.network.reactor(CLIENT_HOST), **kwargs
        )

    def _server_file(self, name: str, content: bytes | None = None) -> str:
        path = os.path.join(self.server_dir, name)
        if content is not None:
            with open(path, 'wb') as f:
                f.write(content)
        return path

    def _client_file(self, name: str, content: bytes | None = None) -> str:
        path = os.path.join(self.client_dir, name)
        if content is not None:
            with open(path, 'wb') as f:
                f.write(content)
        return path

    def _read(self, path: str) -> bytes:
        with open(path, 'rb') as f:
            return f.read()

    def _sent_packets(self) -> list[Packet]:
        return [parse_dgram(dgram) for _, _, dgram in self.network.sent]

    def _data_packets(self) -> list[Packet]:
        return [pkt for pkt in self._sent_packets() if pkt['opcode'] == OP_DATA]

    def _download(self, client, content: bytes) -> str:
        self._server_file('file.bin', content)
        local = self._client_file('file.bin')
        d = client.download('file.bin', local)
        self.network.run()
        assert_that(self.successResultOf(d), equal_to(len(content)))
        return local

    def test_download_1000_bytes(self) -> None:
        content = os.urandom(1000)

        local = self._download(self._client(), content)

        assert_that(self._read(local), equal_to(content))
        assert_that(
            self._sent_packets(),
            contains_exactly(
                has_entries(opcode=OP_RRQ, filename=b'file.bin', options={}),
                has_entries(opcode=OP_DATA, blkno=1, data=content[:512]),
                has_entries(opcode=OP_ACK, blkno=1),
                has_entries(opcode=OP_DATA, blkno=2, data=content[512:]),
                has_entries(opcode=OP_ACK, blkno=2),
            ),
        )
        assert_that(self.server.sessions, empty())

    def test_download_with_options(self) -> None:
        for blksize, windowsize, size in [
            (512, 1, 0),
            (512, 1, 1024),
            (8, 4, 32),
            (8, 4, 36),
            (1024, 4, 10000),
            (1428, 16, 1428 * 16),
            (64, 3, 1000),
        ]:
            self.network.sent.clear()
            content = os.urandom(size)

            local = self._download(
                self._client(blksize=blksize, windowsize=windowsize), content
            )

            assert_that(self._read(local), equal_to(content), (blksize, windowsize))
            assert_that(
                len(self._data_packets()),
                equal_to(size // blksize + 1),
                (blksize, windowsize, size),
            )
            os.remove(self._server_file('file.bin'))
            os.remove(local)

    def test_default_options_are_not_requested(self) -> None:
        self._download(self._client(blksize=512, windowsize=1), b'abc')

        assert_that(self._sent_packets()[0], has_entries(opcode=OP_RRQ, options={}))
        assert_that(
            [pkt['opcode'] for pkt in self._sent_packets()], is_not(has_item(OP_OACK))
        )

    def test_large_blksize_is_clamped_by_server(self) -> None:
        content = os.urandom(70000)

        local = self._download(self._client(blksize=99999), content)

        assert_that(self._read(local), equal_to(content))
        oack = [pkt for pkt in self._sent_packets() if pkt['opcode'] == OP_OACK]
        assert_that(oack, contains_exactly(has_entries(options={b'blksize': b'65464'})))

    def test_upload(self) -> None:
        content = os.urandom(5000)
        local = self._client_file('up.bin', content)

        d = self._client(blksize=1000, windowsize=2).upload(local, 'up.bin')
        self.network.run()

        assert_that(self.successResultOf(d), equal_to(5000))
        assert_that(self._read(self._server_file('up.bin')), equal_to(content))
        assert_that(self.server.sessions, empty())

    def test_upload_existing_file(self) -> None:
        self._server_file('up.bin', b'old')
        local = self._client_file('up.bin', b'new')

        d = self._client().upload(local, 'up.bin')
        self.network.run()

        failure = self.failureResultOf(d, RemoteError)
        assert_that(failure.value.errcode, equal_to(ERR_FEXIST))
        assert_that(self._read(self._server_file('up.bin')), equal_to(b'old'))

    def test_download_missing_file(self) -> None:
        local = self._client_file('missing.bin')

        d = self._client().download('missing.bin', local)
        self.network.run()

        failure = self.failureResultOf(d, RemoteError)
        assert_that(failure.value.errcode, equal_to(ERR_FNF))
        assert_that(os.path.exists(local), is_(False))

    def test_lost_data_is_retransmitted(self) -> None:
        self.network.drop = _drop_first(3, _is_data(2))
        content = os.urandom(2000)

        local = self._download(self._client(), content)

        assert_that(self._read(local), equal_to(content))

    def test_lost_data_in_window_is_retransmitted(self) -> None:
        self.network.drop = _drop_first(1, _is_data(3))
        content = os.urandom(8 * 10)

        local = self._download(self._client(blksize=8, windowsize=4), content)

        assert_that(self._read(local), equal_to(content))

    def test_lost_ack_is_retransmitted(self) -> None:
        self.network.drop = _drop_first(2, _is_ack(1))
        content = os.urandom(3000)

        local = self._download(self._client(), content)

        assert_that(self._read(local), equal_to(content))

    def test_download_result_waits_for_last_block_retransmissions(self) -> None:
        self._server_file('file.bin', b'abc')
        local = self._client_file('file.bin')

        d = self._client(timeout=2).download('file.bin', local)
        self.network.pump()

        assert_that(self.server.sessions, empty())
        assert_that(d.called, is_(False))

        self.network.clock.advance(4)

        assert_that(self.successResultOf(d), equal_to(3))

    def test_upload_with_lost_final_ack_to_exiting_server(self) -> None:
        server = TFTPProtocol(
            TFTPFileService(self.server_dir, 'new'),
            reactor=self.network.reactor(SERVER_HOST),
            on_transfer_end=lambda addr: self.network.unbind_host(SERVER_HOST),
        )
        self.network.bind(SERVER_HOST, 69, server)
        self.network.drop = _drop_first(1, _is_ack(2))
        content = os.urandom(1000)
        local = self._client_file('up.bin', content)

        d = self._client().upload(local, 'up.bin')
        self.network.run()

        assert_that(self.successResultOf(d), equal_to(1000))
        assert_that(self._read(self._server_file('up.bin')), equal_to(content))
        assert_that(
            [pkt for pkt in self._data_packets() if pkt['blkno'] == 2], has_length(2)
        )

    def test_lost_final_ack(self) -> None:
        self.network.drop = _drop_first(1, _is_ack(2))
        content = os.urandom(1000)

        local = self._download(self._client(timeout=8), content)

        assert_that(self._read(local), equal_to(content))
        assert_that(
            [pkt for pkt in self._data_packets() if pkt['blkno'] == 2], has_length(2)
        )
        assert_that(self.server.sessions, empty())
        assert_that(self.network.clock.getDelayedCalls(), empty())

    def test_too_many_losses(self) -> None:
        self.network.drop = _drop_first(4, _is_data(1))
        self._server_file('file.bin', b'abc')
        local = self._client_file('file.bin')

        d = self._client().download('file.bin', local)
        self.network.run()

        self.failureResultOf(d, TFTPError)
        assert_that(os.path.exists(local), is_(False))
        assert_that(self.server.sessions, empty())

    def test_upload_to_unreachable_server(self) -> None:
        local = self._client_file('up.bin', b'abc')
        client = TFTPClient(
            '10.0.0.99', reactor=self.network.reactor(CLIENT_HOST), max_retries=2
        )

        d = client.upload(local, 'up.bin')
        self.network.run()

        self.failureResultOf(d, LocalTimeoutError)


class TestLoopbackTransfer(unittest.TestCase):
    def setUp(self) -> None:
        self.server_dir = tempfile.mkdtemp()
        self.client_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.server_dir)
        self.addCleanup(shutil.rmtree, self.client_dir)
        server = TFTPProtocol(TFTPFileService(self.server_dir, 'new'))
        self.port = reactor.listenUDP(0, server, interface='127.0.0.1')
        self.addCleanup(self.port.stopListening)

    def test_download_with_blocks_larger_than_default_datagram_size(self) -> None:
        content = os.urandom(20000)
        with open(os.path.join(self.server_dir, 'big.bin'), 'wb') as f:
            f.write(content)
        local = os.path.join(self.client_dir, 'big.bin')
        client = TFTPClient(
            '127.0.0.1', port=self.port.getHost().port, blksize=16384, timeout=0.2
        )

        def check(result: int) -> None:
            assert_that(result, equal_to(20000))
            with open(local, 'rb') as f:
                assert_that(f.read(), equal_to(content))

        d = client.download('big.bin', local)
        d.addCallback(check)
        return d


class TestTFTPClient(unittest.TestCase):
    def setUp(self) -> None:
        self.reactor = FakeReactor()
        self.tmp_dir = tempfile.mkdtemp()

    def tearDown(self) -> None:
        shutil.rmtree(self.tmp_dir)

    def test_download_to_unwritable_location(self) -> None:
        client = TFTPClient('10.0.0.1', reactor=self.reactor)

        d = client.download('foo', os.path.join(self.tmp_dir, 'nodir', 'foo'))

        self.failureResultOf(d, StorageError)
        assert_that(self.reactor.listened, empty())

    def test_upload_missing_local_file(self) -> None:
        client = TFTPClient('10.0.0.1', reactor=self.reactor)

        d = client.upload(os.path.join(self.tmp_dir, 'missing'), 'foo')

        failure = self.failureResultOf(d, StorageError)
        assert_that(failure.value.errcode, equal_to(ERR_FNF))

    def test_unknown_host(self) -> None:
        self.reactor.resolve = lambda name: defer.fail(DNSLookupError(name))
        client = TFTPClient('nowhere.invalid', reactor=self.reactor)
        local = os.path.join(self.tmp_dir, 'foo')

        d = client.download('foo', local)

        self.failureResultOf(d, TFTPError)
        assert_that(os.path.exists(local), is_(False))

    def test_request_sent_to_server_port(self) -> None:
        client = TFTPClient('10.0.0.1', port=6969, blksize=1024, reactor=self.reactor)

        client.download('foo', os.path.join(self.tmp_dir, 'foo'))

        _, transport = self.reactor.listened[0]
        assert_that(transport.written[0][1], equal_to(('10.0.0.1', 6969)))
        assert_that(
            transport.packets(),
            contains_exactly(
                has_entries(opcode=OP_RRQ, options={b'blksize': b'1024'})
            ),
        )
