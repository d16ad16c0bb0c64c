# Copyright 2010-2026 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

"""TFTP service definition module."""
from __future__ import annotations

import os
from abc import ABCMeta
from collections import Counter
from collections.abc import Callable
from typing import TYPE_CHECKING, BinaryIO, TypedDict

from wazo_tftp import security
from wazo_tftp.tftp.exceptions import StorageError
from wazo_tftp.tftp.packet import (
    ERR_ACCESS,
    ERR_FEXIST,
    ERR_UNDEF,
    RequestPacket,
)

if TYPE_CHECKING:
    from wazo_tftp.tftp.proto import _Response

WRITE_MODE_DISABLED = 'disabled'
WRITE_MODE_NEW = 'new'
WRITE_MODE_OVERWRITE = 'overwrite'
WRITE_MODES = (WRITE_MODE_DISABLED, WRITE_MODE_NEW, WRITE_MODE_OVERWRITE)


class TFTPRequest(TypedDict):
    address: tuple[str, int]
    packet: RequestPacket


class AbstractTFTPService(metaclass=ABCMeta):
    """Decide whether a TFTP request is served, and with which file.

    Both methods receive the request (the client address and the request
    packet) and a response object. The service answers by calling exactly
    one of the response methods, now or later:
      accept(fobj) -- serve the request with a binary file object, read
        from for an RRQ and written to for a WRQ; the transfer closes it
      reject(errcode, errmsg) -- send an ERROR packet to the client
      ignore() -- drop the request silently, like never answering

    """

    def handle_read_request(self, request: TFTPRequest, response: _Response) -> None:
        """Handle a TFTP read request (RRQ)."""

    def handle_write_request(self, request: TFTPRequest, response: _Response) -> None:
        """Handle a TFTP write request (WRQ)."""


class _FileLocks:
    """Shared locks for readers, exclusive locks for writers."""

    def __init__(self) -> None:
        self._readers: Counter[str] = Counter()
        self._writers: set[str] = set()

    def acquire_read(self, path: str) -> bool:
        if path in self._writers:
            return False
        self._readers[path] += 1
        return True

    def release_read(self, path: str) -> None:
        self._readers[path] -= 1
        if self._readers[path] <= 0:
            del self._readers[path]

    def acquire_write(self, path: str) -> bool:
        if path in self._writers or self._readers[path]:
            return False
        self._writers.add(path)
        return True

    def release_write(self, path: str) -> None:
        self._writers.discard(path)

    def is_locked(self, path: str) -> bool:
        return path in self._writers or bool(self._readers[path])


class _LockedFile:
    """Wrap a file object so that its lock is released when it's closed."""

    def __init__(self, fobj: BinaryIO, release: Callable[[], None]) -> None:
        self._fobj = fobj
        self._release: Callable[[], None] | None = release

    def __getattr__(self, name):
        return getattr(self._fobj, name)

    def close(self) -> None:
        if self._release is None:
            return
        release, self._release = self._release, None
        try:
            self._fobj.close()
        finally:
            release()


class TFTPFileService(AbstractTFTPService):
    """Serve the files of a root directory.

    Requested filenames are relative to the root directory, a leading
    separator being ignored. A filename resolving outside of the root
    directory, like 'bar/../../foo.txt', is refused.

    Write requests follow the write mode:
      disabled -- every write request is refused
      new -- only files that don't exist yet can be written
      overwrite -- any file can be written

    """

    def __init__(self, path: str, write_mode: str = WRITE_MODE_NEW) -> None:
        if write_mode not in WRITE_MODES:
            raise ValueError(f'invalid write mode {write_mode!r}')
        self._path = os.path.abspath(path)
        self._write_mode = write_mode
        self._locks = _FileLocks()

    def _resolve(self, request: TFTPRequest) -> str | None:
        filename = os.fsdecode(request['packet']['filename'])
        path = os.path.normpath(os.path.join(self._path, filename.lstrip(os.sep)))
        if os.path.commonpath([self._path, path]) != self._path:
            security.log_path_traversal(request['address'], filename)
            return None
        return path

    def handle_read_request(self, request: TFTPRequest, response: _Response) -> None:
        path = self._resolve(request)
        if path is None:
            response.reject(ERR_ACCESS, b'Invalid filename')
            return
        if not self._locks.acquire_read(path):
            response.reject(ERR_UNDEF, b'File is locked')
            return
        try:
            fobj = open(path, 'rb')
        except OSError as e:
            self._locks.release_read(path)
            error = StorageError.from_os_error(e)
            response.reject(error.errcode, error.errmsg)
        else:
            response.accept(_LockedFile(fobj, lambda: self._locks.release_read(path)))

    def handle_write_request(self, request: TFTPRequest, response: _Response) -> None:
        if self._write_mode == WRITE_MODE_DISABLED:
            response.reject(ERR_ACCESS, b'Write requests are disabled')
            return
        path = self._resolve(request)
        if path is None:
            response.reject(ERR_ACCESS, b'Invalid filename')
            return
        if not self._locks.acquire_write(path):
            response.reject(ERR_UNDEF, b'File is locked')
            return
        file_mode = 'xb' if self._write_mode == WRITE_MODE_NEW else 'wb'
        try:
            fobj = open(path, file_mode)
        except FileExistsError:
            self._locks.release_write(path)
            response.reject(ERR_FEXIST, b'File already exists')
        except OSError as e:
            self._locks.release_write(path)
            error = StorageError.from_os_error(e)
            response.reject(error.errcode, error.errmsg)
        else:
            response.accept(_LockedFile(fobj, lambda: self._locks.release_write(path)))


class TFTPHookService(AbstractTFTPService):
    """Base class for non-terminal service.

    Services that only want to inspect the request should derive from this
    class and override the _pre_handle method.

    """

    def __init__(self, service: AbstractTFTPService) -> None:
        self._service = service

    def _pre_handle(self, request: TFTPRequest) -> None:
        """This MAY be overridden in derived classes."""
        pass

    def handle_read_request(self, request: TFTPRequest, response: _Response) -> None:
        self._pre_handle(request)
        self._service.handle_read_request(request, response)

    def handle_write_request(self, request: TFTPRequest, response: _Response) -> None:
        self._pre_handle(request)
        self._service.handle_write_request(request, response)


class TFTPLogService(TFTPHookService):
    """A small hook service that permits logging of the requests."""

    def __init__(
        self, logger: Callable[[str], None], service: AbstractTFTPService
    ) -> None:
        """
        logger -- a callable object taking a string as argument

        """
        super().__init__(service)
        self._logger = logger

    def _pre_handle(self, request: TFTPRequest) -> None:
        packet = request['packet']
        msg = (
            f"TFTP request from {request['address']!r} - "
            f"filename '{packet['filename']!r}' - mode '{packet['mode']!r}'"
        )
        if packet['options']:
            msg += f" - options '{packet['options']!r}'"
        self._logger(msg)
