"""xolod CLI for running and inspecting the server.

Provides commands to start the daemon, write a default config, and query a
running server's state.
"""

import json
import sys

import click
import httpx

from xolo_library.config.loader import create_default_config
from xolo_library.config.loader import get_config_path
from xolo_library.config.loader import load_config

from .__main__ import main as run_daemon

ADMIN_HEADER = "X-Xolo-Admin"


def server_url() -> str:
    """Base URL of the local server, from the loaded config."""
    config = load_config()
    host = "localhost" if config.host in ("0.0.0.0", "::") else config.host
    return f"http://{host}:{config.port}"


@click.group()
def cli():
    """xolod - Title and version lifecycle server."""
    pass


@cli.command()
def serve():
    """Run the server in the foreground."""
    run_daemon()


@cli.command("init-config")
def init_config():
    """Write the default config file if there isn't one."""
    config_path = get_config_path()
    if config_path.exists():
        click.echo(f"Config already exists: {config_path}")
        return
    create_default_config()
    click.echo(f"Created {config_path}")


@cli.command()
@click.option("--extended", is_flag=True, help="Include locks, threads and streams")
@click.option("--admin", default="cli", help="Admin name sent with the request")
@click.option("--url", default=None, help="Server URL (default: from config)")
def state(extended: bool, admin: str, url: str | None):
    """Show a running server's state."""
    base = url or server_url()
    try:
        response = httpx.get(
            f"{base}/maint/state",
            params={"extended": extended},
            headers={ADMIN_HEADER: admin},
            timeout=10.0,
        )
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        click.echo(f"Error: server answered {e.response.status_code}: {e.response.text}", err=True)
        sys.exit(1)
    except httpx.HTTPError as e:
        click.echo(f"Error: could not reach {base}: {e}", err=True)
        sys.exit(1)

    click.echo(json.dumps(response.json(), indent=2))


@cli.command()
@click.option("--url", default=None, help="Server URL (default: from config)")
def ping(url: str | None):
    """Check that the server answers."""
    base = url or server_url()
    try:
        response = httpx.get(f"{base}/ping", timeout=5.0)
    except httpx.HTTPError as e:
        click.echo(f"Server not responding: {e}", err=True)
        sys.exit(1)
    click.echo(response.text)


def main():
    """Entry point for xolod CLI."""
    try:
        cli()
    except KeyboardInterrupt:
        click.echo("\nInterrupted")
        sys.exit(0)


if __name__ == "__main__":
    main()
