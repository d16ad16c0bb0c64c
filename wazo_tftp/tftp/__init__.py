# Copyright 2010-2026 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

"""A TFTP client and server implementation with twisted.

Things to note:
- read requests (RRQ) and write requests (WRQ) are supported.
- netascii mode is not supported -- only octet mode (and its old alias,
  binary) is.
- mail mode is, of course, not supported, since it's deprecated.
- support the option extension (RFC2347) with the blksize (RFC2348) and
  windowsize (RFC7440) options. Other options are ignored.
- use zero-based wraparound when transferring files taking more than
  65535 blocks to transfer.
- it's not using an adaptive timeout.

"""
