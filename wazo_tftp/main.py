# Copyright 2010-2026 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any, Callable

from twisted.application import app, internet
from twisted.application.service import (
    Application,
    IServiceMaker,
    MultiService,
    Service,
)
from twisted.internet import reactor
from twisted.internet.defer import Deferred
from twisted.logger import STDLibLogObserver, globalLogBeginner
from twisted.python import usage
from zope.interface import implementer

import wazo_tftp.config
from wazo_tftp import security
from wazo_tftp.config import ConfigError, Options
from wazo_tftp.tftp.options import OptionNegotiator
from wazo_tftp.tftp.proto import TFTPProtocol
from wazo_tftp.tftp.service import TFTPFileService, TFTPLogService

if TYPE_CHECKING:
    from wazo_tftp.config import TFTPConfigDict
    from wazo_tftp.tftp.connection import Address


logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s [%(process)d] (%(levelname)s) (%(name)s): %(message)s'


# redirect the twisted logs to standard logging
def twistd_logs() -> Callable[[dict[str, Any]], None]:
    return STDLibLogObserver()


def setup_logging(
    log_file: str, debug: bool = False, stderr: bool = False
) -> None:
    root_logger = logging.getLogger()
    if stderr:
        handler: logging.Handler = logging.StreamHandler()
    else:
        handler = logging.FileHandler(log_file)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if debug else logging.INFO)


class TFTPService(Service):
    def __init__(self, config: TFTPConfigDict) -> None:
        self._config = config
        general = config['general']
        transfer = config['transfer']
        tftp_service = TFTPLogService(
            logger.info,
            TFTPFileService(general['root_dir'], general['write_mode']),
        )
        negotiator = OptionNegotiator(
            transfer['max_blksize'], transfer['max_windowsize']
        )
        on_transfer_end = None
        if general['exit_with_client']:
            on_transfer_end = self._exit_with_client
        self._tftp_protocol = TFTPProtocol(
            tftp_service,
            negotiator,
            transfer['timeout'],
            transfer['max_retries'],
            on_transfer_end=on_transfer_end,
        )

    def _exit_with_client(self, addr: Address) -> None:
        logger.info('Transfer with %s ended, exiting', addr)
        reactor.callLater(0, reactor.stop)

    def privilegedStartService(self) -> None:
        interface = self._config['general']['listen_address']
        port = self._config['general']['port']
        logger.info('Binding TFTP service to %s:%s', interface, port)
        self._udp_server = internet.UDPServer(
            port, self._tftp_protocol, interface=interface
        )
        self._udp_server.privilegedStartService()
        Service.privilegedStartService(self)

    def stopService(self) -> Deferred:
        Service.stopService(self)
        return self._udp_server.stopService()


@implementer(IServiceMaker)
class TFTPServiceMaker:
    tapname = 'wazo-tftpd'
    description = 'A TFTP server.'
    options = wazo_tftp.config.Options

    def _configure_logging(self, options: Options, config: TFTPConfigDict) -> None:
        setup_logging(
            config['general']['log_file'],
            debug=config['general']['verbose'],
            stderr=options['stderr'],
        )
        security.setup_logging(config['general']['security_log_file'])

    def _read_config(self, options: Options) -> TFTPConfigDict:
        return wazo_tftp.config.get_config(options)

    def makeService(self, options: Options) -> MultiService:
        config = self._read_config(options)
        self._configure_logging(options, config)
        logger.info('Serving files from %s', config['general']['root_dir'])

        top_service = MultiService()

        tftp_service = TFTPService(config)
        tftp_service.setServiceParent(top_service)

        return top_service


def main(argv: list[str] | None = None) -> None:
    options = Options()
    try:
        options.parseOptions(argv)
    except usage.UsageError as e:
        print(f'{options}\n{sys.argv[0]}: {e}', file=sys.stderr)
        sys.exit(2)

    try:
        top_service = TFTPServiceMaker().makeService(options)
    except ConfigError as e:
        print(f'{sys.argv[0]}: {e}', file=sys.stderr)
        sys.exit(1)

    globalLogBeginner.beginLoggingTo([twistd_logs()], redirectStandardIO=False)
    application = Application('wazo-tftpd')
    top_service.setServiceParent(application)
    app.startApplication(application, False)
    reactor.run()
