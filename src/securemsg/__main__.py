"""
SecureMsg - Interactive command-line client.

Created by orpheus497
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path

from rich.console import Console
from rich.prompt import Prompt
from rich.table import Table

from . import __version__
from .client import MessagingClient
from .config import Config
from .constants import APP_NAME, CONFIG_FILENAME
from .errors import MessagingError, RelayUnavailable
from .logging_setup import setup_logging
from .relay_client import RelayClient

console = Console()

HELP_TEXT = """\
Commands:
  send <user> <message>   Encrypt and send a message
  receive                 Fetch and decrypt queued messages
  users                   List registered users
  help                    Show this help
  exit                    Quit"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='SecureMsg - end-to-end encrypted messaging over a relay',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  securemsg --user alice                 # Connect to the relay on 127.0.0.1:3000
  securemsg --user bob --port 3001       # Use a relay on a custom port
  securemsg-relay --memory               # Run a throwaway relay

Created by orpheus497
        """
    )
    parser.add_argument('--version', action='version', version=f'{APP_NAME} {__version__}')
    parser.add_argument('--user', type=str, required=True, help='Local user id')
    parser.add_argument('--data-dir', type=str, default=None, help='Directory for encrypted keys and sessions')
    parser.add_argument('--host', type=str, default=None, help='Relay host')
    parser.add_argument('--port', type=int, default=None, help='Relay port')
    parser.add_argument('--config', type=str, default=None, help='Path to config.toml')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    return parser


def render_users(users) -> Table:
    table = Table(title="Registered users")
    table.add_column("User", style="cyan")
    for user in users:
        table.add_row(user)
    return table


async def handle_command(client: MessagingClient, line: str) -> bool:
    """Run one interactive command. Returns False when the user asks to exit."""
    parts = line.strip().split(' ', 2)
    command = parts[0].lower() if parts and parts[0] else ''

    if command in ('exit', 'quit'):
        return False
    if command == '':
        return True
    if command == 'help':
        console.print(HELP_TEXT)
    elif command == 'users':
        users = await client.list_users()
        if users:
            console.print(render_users(users))
        else:
            console.print("[dim]No other users registered[/dim]")
    elif command == 'send':
        if len(parts) < 3 or not parts[2]:
            console.print("[yellow]Usage: send <user> <message>[/yellow]")
            return True
        package = await client.send_message(parts[1], parts[2])
        console.print(f"[green]Sent to {parts[1]}[/green] (message #{package.counter})")
    elif command == 'receive':
        messages = await client.receive_messages()
        if not messages:
            console.print("[dim]No new messages[/dim]")
        for message in messages:
            console.print(f"[bold cyan]{message.sender}[/bold cyan]: {message.content}")
    else:
        console.print(f"[yellow]Unknown command: {command}[/yellow] (type 'help')")
    return True


async def async_main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    if args.config:
        config = Config(Path(args.config))
    elif args.data_dir:
        config = Config(Path(args.data_dir).expanduser() / CONFIG_FILENAME)
    else:
        config = Config()

    data_dir = Path(args.data_dir or config.get('client', 'data_dir')).expanduser().resolve()
    data_dir.mkdir(parents=True, exist_ok=True)
    setup_logging(config, data_dir, debug=args.debug)

    password = os.environ.get('SECUREMSG_PASSWORD') or Prompt.ask(
        f"Password for {args.user}", password=True, console=console
    )

    relay = RelayClient(
        host=args.host or config.get('relay', 'host'),
        port=args.port if args.port is not None else config.get('relay', 'port'),
        timeout=config.get('relay', 'timeout'),
        retry_attempts=config.get('relay', 'retry_attempts'),
        retry_delay=config.get('relay', 'retry_delay'),
    )
    client = MessagingClient(args.user, relay, data_dir=data_dir, password=password, config=config)

    try:
        with console.status("Loading keys and registering with relay..."):
            await client.initialize()
    except MessagingError as e:
        console.print(f"[red]Startup failed [{e.code.value}]: {e.message}[/red]")
        return 1

    console.print(f"[bold]{APP_NAME} {__version__}[/bold] - logged in as [cyan]{args.user}[/cyan]")
    console.print(HELP_TEXT)

    loop = asyncio.get_running_loop()
    while True:
        try:
            line = await loop.run_in_executor(None, console.input, "[bold]> [/bold]")
        except EOFError:
            break
        try:
            if not await handle_command(client, line):
                break
        except RelayUnavailable as e:
            console.print(f"[red]Relay unavailable: {e.message}[/red]")
        except MessagingError as e:
            console.print(f"[red]{type(e).__name__} [{e.code.value}]: {e.message}[/red]")
        except ValueError as e:
            console.print(f"[red]{e}[/red]")

    client.save()
    return 0


def main():
    """Main entry point for the SecureMsg client."""
    try:
        sys.exit(asyncio.run(async_main()))
    except KeyboardInterrupt:
        pass


if __name__ == '__main__':
    main()
