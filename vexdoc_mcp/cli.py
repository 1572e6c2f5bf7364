"""vexdoc-mcp command line entry point.

Runs the MCP server on stdio (the default) or HTTP::

    vexdoc-mcp
    vexdoc-mcp --transport http --port 3000
    vexdoc-mcp --backend vexctl

Settings come from ``VEXDOC_*`` environment variables first, then from
flags. Logs always go to stderr; stdout is reserved for protocol frames.
"""

import asyncio
import logging
import sys
from dataclasses import replace
from typing import Optional

import click

from . import __version__
from .server import BACKENDS, ServerConfig, create_server
from .transport import HTTPTransport, StdioTransport, Transport
from .vex import VexctlClient


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _build_transport(transport: str, config: ServerConfig) -> Transport:
    if transport == "http":
        return HTTPTransport(config.http_host, config.http_port, config.http_path)
    return StdioTransport()


@click.command()
@click.version_option(version=__version__, prog_name="vexdoc-mcp")
@click.option(
    "--transport",
    type=click.Choice(["stdio", "http"]),
    default="stdio",
    show_default=True,
    help="Transport to serve on.",
)
@click.option("--host", default=None, help="HTTP bind address.")
@click.option("--port", type=int, default=None, help="HTTP port.")
@click.option(
    "--backend",
    type=click.Choice(list(BACKENDS)),
    default=None,
    help="VEX backend: in-process or the vexctl binary.",
)
@click.option(
    "--tool-timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Per-call tool timeout in seconds.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
)
def main(
    transport: str,
    host: Optional[str],
    port: Optional[int],
    backend: Optional[str],
    tool_timeout: Optional[float],
    log_level: str,
) -> None:
    """Serve OpenVEX tools over the Model Context Protocol."""
    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT, stream=sys.stderr)

    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        raise click.UsageError(str(e))

    overrides = {
        "http_host": host,
        "http_port": port,
        "backend": backend,
        "tool_timeout": tool_timeout,
    }
    config = replace(config, **{k: v for k, v in overrides.items() if v is not None})

    if config.backend == "vexctl":
        if not VexctlClient(config.vexctl_path).available():
            click.echo(f"Error: vexctl not found or not runnable: {config.vexctl_path}", err=True)
            sys.exit(1)

    server = create_server(config)
    logger.debug("Configuration: %s", config.to_dict())

    try:
        asyncio.run(server.run(_build_transport(transport, config)))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
