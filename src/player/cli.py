"""
Command line entry point for MPV Remote.

    mpv-remote start [-f]      Run the player daemon
    mpv-remote kill            Kill the running daemon
    mpv-remote open URL        Open a file or stream (--paused to start paused)
    mpv-remote stop|pause|resume
    mpv-remote command ARGS    Run a raw mpv command in the daemon
    mpv-remote send LINE       Send a text command line, e.g. 'open "a b.mp4" --paused'
    mpv-remote status          Print the daemon status as JSON
"""

import argparse
import json
import sys
from typing import List, Optional

from src.common.config import Config
from src.common.logger import configure_logging
from . import __version__
from .commands import Command, CommandKind, CommandParseError
from .daemon import KillResult, PlayerDaemon, read_status, request_kill, send_command


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='mpv-remote',
        description='Remotely controllable MPV player daemon',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s start                 Run the player daemon
  %(prog)s start -f              Replace a running daemon
  %(prog)s open ~/video.mp4      Play a local file
  %(prog)s open URL --paused     Open a stream without starting playback
  %(prog)s command seek 30       Seek 30 seconds forward
  %(prog)s send 'open "~/My Videos/a.mp4"'
                                 Send a quoted command line
  %(prog)s kill                  Kill the running daemon
        """
    )
    parser.add_argument('--version', action='version', version=f'mpv-remote {__version__}')
    parser.add_argument('--config', help="Path to a YAML config file")

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    start_parser = subparsers.add_parser('start', help='Run the MPV Remote player service')
    start_parser.add_argument(
        '-f', '--force',
        action='store_true',
        help='Kill a running instance before starting'
    )

    subparsers.add_parser('kill', help='Kill the running process')

    open_parser = subparsers.add_parser('open', help='Open a media file or stream')
    open_parser.add_argument('url', help='File path or stream url ($VARS are expanded)')
    open_parser.add_argument('--paused', action='store_true', help='Start paused')

    subparsers.add_parser('stop', help='Stop the current media')
    subparsers.add_parser('pause', help='Pause the current media')
    subparsers.add_parser('resume', help='Resume the current media')

    command_parser = subparsers.add_parser('command', help='Send a raw mpv command line')
    command_parser.add_argument('args', nargs=argparse.REMAINDER, help='mpv command and arguments')

    send_parser = subparsers.add_parser('send', help='Send a text command line')
    send_parser.add_argument(
        'line',
        nargs=argparse.REMAINDER,
        help='open "URL" [--paused] | stop | pause | resume | kill | command ARGS'
    )

    subparsers.add_parser('status', help='Print the daemon status')

    return parser


def cmd_start(config: Config, force: bool) -> int:
    configure_logging(config.get('logging.level', 'INFO'), config.get('logging.file'))
    if read_status(config).running:
        if not force:
            print("Another MPV remote player process is already running")
            return 1
        print("Force start attempting to kill blocking processes")
    return PlayerDaemon(config).start(force=force)


def cmd_kill(config: Config) -> int:
    result = request_kill(config)
    if result == KillResult.NOT_RUNNING:
        print("No active process to kill")
        return 1
    if result == KillResult.TIMED_OUT:
        print("Please open the task manager and kill the process")
        return 1
    return 0


def cmd_send(config: Config, line: str) -> int:
    """Parse a text command line and deliver it like the matching subcommand."""
    try:
        command = Command.parse(line)
    except CommandParseError as e:
        print(e)
        return 1
    if command.kind == CommandKind.KILL:
        return cmd_kill(config)
    return send_command(config, command, wait_reply=command.kind == CommandKind.ENGINE)


def cmd_status(config: Config) -> int:
    print(json.dumps(read_status(config).to_dict(), indent=2))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        config = Config(args.config)
    except FileNotFoundError as e:
        print(e, file=sys.stderr)
        return 1

    if args.command == 'start':
        return cmd_start(config, args.force)

    configure_logging(config.get('logging.level', 'INFO'))

    if args.command == 'kill':
        return cmd_kill(config)
    if args.command == 'status':
        return cmd_status(config)
    if args.command == 'open':
        return send_command(config, Command.open(args.url, start_paused=args.paused))
    if args.command == 'stop':
        return send_command(config, Command.stop())
    if args.command == 'pause':
        return send_command(config, Command.pause())
    if args.command == 'resume':
        return send_command(config, Command.resume())
    if args.command == 'send':
        return cmd_send(config, ' '.join(args.line))
    if args.command == 'command':
        if not args.args:
            print("No input command line")
            return 1
        return send_command(config, Command.engine(args.args), wait_reply=True)

    parser.print_help()
    return 1


if __name__ == '__main__':
    sys.exit(main())
