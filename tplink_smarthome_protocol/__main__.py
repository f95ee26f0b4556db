#!/usr/bin/env python3

# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

from __future__ import annotations

import sys
import argparse
import json
import asyncio
import logging

from tplink_smarthome_protocol.internal_types import *

from tplink_smarthome_protocol import (
    __version__ as pkg_version,
    TplinkClient,
    ClientConfig,
    ConfigContext,
  )

class CmdExitError(RuntimeError):
    exit_code: int

    def __init__(self, exit_code: int, msg: Optional[str]=None):
        if msg is None:
            msg = f"Command exited with return code {exit_code}"
        super().__init__(msg)
        self.exit_code = exit_code

class ArgparseExitError(CmdExitError):
    pass

class NoExitArgumentParser(argparse.ArgumentParser):
    def exit(self, status=0, message=None):  # type: ignore[no-untyped-def]
        if message:
            self._print_message(message, sys.stderr)
        raise ArgparseExitError(status, message)

class CommandHandler:
    _argv: Optional[Sequence[str]]
    _parser: argparse.ArgumentParser
    _args: argparse.Namespace
    _provide_traceback: bool = True

    def __init__(self, argv: Optional[Sequence[str]]=None):
        self._argv = argv

    def get_config(self) -> ClientConfig:
        """Loads the --config file (if any) and applies command-line overrides."""
        config_file: Optional[str] = self._args.config_file
        if config_file is None:
            config = ClientConfig()
        else:
            config = ConfigContext().load_file(config_file, required_type=ClientConfig)
        overrides: Dict[str, Any] = {}
        timeout: Optional[float] = getattr(self._args, 'timeout', None)
        if not timeout is None:
            overrides['timeout'] = timeout
        retries: Optional[int] = getattr(self._args, 'retries', None)
        if not retries is None:
            overrides['max_retries'] = retries
        transport: Optional[str] = getattr(self._args, 'transport', None)
        if not transport is None:
            overrides['transport_kind'] = transport
        port: Optional[int] = getattr(self._args, 'port', None)
        if not port is None:
            overrides['port'] = port
        return config.with_overrides(**overrides) if len(overrides) > 0 else config

    def print_json(self, data: Any) -> None:
        print(json.dumps(data, indent=2, sort_keys=True))
        sys.stdout.flush()

    async def cmd_bare(self) -> int:
        print("A command is required", file=sys.stderr)
        return 1

    async def cmd_search(self) -> int:
        config = self.get_config()
        targets: Optional[List[str]] = self._args.targets
        if not targets is None and len(targets) == 0:
            targets = None
        broadcast_addresses: Optional[List[str]] = self._args.broadcast_addresses
        if not broadcast_addresses is None and len(broadcast_addresses) == 0:
            broadcast_addresses = None
        discovery_options: Dict[str, Any] = {}
        if not broadcast_addresses is None:
            discovery_options['broadcast_addresses'] = broadcast_addresses
        device_types: Optional[List[str]] = self._args.device_types
        if not device_types is None and len(device_types) > 0:
            discovery_options['device_types'] = device_types
        async with TplinkClient(config) as client:
            descriptors = await client.discover(
                targets=targets,
                response_wait_time=self._args.wait_time,
                **discovery_options
              )
            for descriptor in descriptors:
                self.print_json(descriptor.to_jsonable())
        return 0

    async def cmd_send(self) -> int:
        config = self.get_config()
        command_text: str = self._args.command
        async with TplinkClient(config) as client:
            if self._args.validate:
                result = await client.send_command(self._args.host, command_text)
            else:
                result = await client.send(self._args.host, command_text)
            self.print_json(result)
        return 0

    async def cmd_sysinfo(self) -> int:
        config = self.get_config()
        async with TplinkClient(config) as client:
            self.print_json(await client.get_sys_info(self._args.host))
        return 0

    async def cmd_identify(self) -> int:
        config = self.get_config()
        async with TplinkClient(config) as client:
            device = await client.get_device(self._args.host)
            self.print_json({
                "host": device.endpoint.host,
                "port": device.endpoint.port,
                "variant": device.variant_tag,
                "alias": device.alias,
                "model": device.model,
                "mac": device.mac,
              })
        return 0

    async def cmd_version(self) -> int:
        print(pkg_version)
        return 0

    def _add_command_options(self, parser: argparse.ArgumentParser) -> None:
        parser.add_argument('host',
                            help='''The hostname or IP address of the device''')
        parser.add_argument('--timeout', type=float, default=None,
                            help='''The per-attempt deadline, in seconds. Default: from config, or 10''')
        parser.add_argument('--retries', type=int, default=None,
                            help='''The number of times to retry after a timeout or connection failure. Default: from config, or 0''')
        parser.add_argument('-t', '--transport', choices=['tcp', 'udp'], default=None,
                            help='''The transport used to reach the device. Default: from config, or tcp''')
        parser.add_argument('-p', '--port', type=int, default=None,
                            help='''The device port. Default: from config, or 9999''')

    async def arun(self) -> int:
        """Run the tplink-smarthome command-line tool with provided arguments

        Returns:
            int: The exit code that would be returned if this were run as a standalone command.
        """
        parser = NoExitArgumentParser(description="Discover and control TP-Link smart home devices.")

        # ======================= Main command

        self._parser = parser
        parser.add_argument('--traceback', "--tb", action='store_true', default=False,
                            help='Display detailed exception information')
        parser.add_argument('--log-level', dest='log_level', default='warning',
                            choices=['debug', 'info', 'warning', 'error', 'critical'],
                            help='''The logging level to use. Default: warning''')
        parser.add_argument('-c', '--config', dest='config_file', default=None,
                            help='''A JSON configuration file. Default: built-in defaults''')
        parser.set_defaults(func=self.cmd_bare)

        subparsers = parser.add_subparsers(
                            title='Commands',
                            description='Valid commands',
                            help='Additional help available with "<command-name> -h"')

        # ======================= search

        parser_search = subparsers.add_parser('search', description="Search for devices on the local network")
        parser_search.add_argument('--wait-time', type=float, default=None,
                            help='''The amount of time to wait for responses, in seconds. Default: from config, or 3''')
        parser_search.add_argument('-b', '--broadcast', dest="broadcast_addresses", action='append', default=[],
                            help='''A broadcast address to probe. May be repeated. Default: every local subnet''')
        parser_search.add_argument('-T', '--target', dest="targets", action='append', default=[],
                            help='''A host (or host:port) to probe directly instead of broadcasting. May be repeated.''')
        parser_search.add_argument('-d', '--device-type', dest="device_types", action='append', default=[],
                            choices=['plug', 'bulb', 'camera', 'unknown'],
                            help='''Only report devices of this type. May be repeated.''')
        parser_search.set_defaults(func=self.cmd_search)

        # ======================= send

        parser_send = subparsers.add_parser('send', description="Send a JSON command to a device and print the response")
        self._add_command_options(parser_send)
        parser_send.add_argument('command',
                            help='''The JSON command, e.g. '{"system":{"get_sysinfo":{}}}' ''')
        parser_send.add_argument('--validate', action='store_true', default=False,
                            help='''Check err_code in the response and print only the method result''')
        parser_send.set_defaults(func=self.cmd_send)

        # ======================= sysinfo

        parser_sysinfo = subparsers.add_parser('sysinfo', description="Print a device's sysinfo")
        self._add_command_options(parser_sysinfo)
        parser_sysinfo.set_defaults(func=self.cmd_sysinfo)

        # ======================= identify

        parser_identify = subparsers.add_parser('identify', description="Classify a device")
        self._add_command_options(parser_identify)
        parser_identify.set_defaults(func=self.cmd_identify)

        # ======================= version

        parser_version = subparsers.add_parser('version',
                                description='''Display version information.''')
        parser_version.set_defaults(func=self.cmd_version)

        # =========================================================

        try:
            args = parser.parse_args(self._argv)
        except ArgparseExitError as ex:
            return ex.exit_code
        traceback: bool = args.traceback
        self._provide_traceback = traceback

        try:
            logging.basicConfig(
                level=logging.getLevelName(args.log_level.upper()),
            )
            self._args = args
            func: Callable[[], Awaitable[int]] = args.func
            logging.debug(f"Running command {func.__name__}, tb = {traceback}")
            rc = await func()
            logging.debug(f"Command {func.__name__} returned {rc}")
        except Exception as ex:
            if isinstance(ex, CmdExitError):
                rc = ex.exit_code
            else:
                rc = 1
            if rc != 0:
                if traceback:
                    raise
            print(f"tplink-smarthome: error: {ex}", file=sys.stderr)
        except BaseException as ex:
            print(f"tplink-smarthome: Unhandled exception: {ex}", file=sys.stderr)
            raise

        return rc

    def run(self) -> int:
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            rc = loop.run_until_complete(self.arun())
        finally:
            loop.close()
        return rc

def run(argv: Optional[Sequence[str]]=None) -> int:
    try:
        rc = CommandHandler(argv).run()
    except CmdExitError as ex:
        rc = ex.exit_code
    return rc

async def arun(argv: Optional[Sequence[str]]=None) -> int:
    try:
        rc = await CommandHandler(argv).arun()
    except CmdExitError as ex:
        rc = ex.exit_code
    return rc

# allow running with "python3 -m", or as a standalone script
if __name__ == "__main__":
    sys.exit(run())
