"""
AIPLabels CLI entry point.

Usage:
    aiplabels serve [--host HOST] [--port PORT] [--reload]
    aiplabels web [--host HOST] [--port PORT] [--reload]
    aiplabels config show
    aiplabels labels scope RESOURCE
"""

import json
from typing import Optional

import click


@click.group()
@click.version_option(package_name="aiplabels")
def cli():
    """AIPLabels - sensitivity labels for files in Azure storage"""
    pass


@cli.command()
@click.option("--host", default=None, help="Host to bind to (default: server.host)")
@click.option("--port", default=None, type=int, help="Port to bind to (default: server.port)")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
def serve(host: Optional[str], port: Optional[int], reload: bool):
    """Start the API service."""
    import uvicorn

    from aiplabels.server.config import get_settings

    settings = get_settings()
    # The SDK state directory is process-wide; run a single worker
    uvicorn.run(
        "aiplabels.server.app:create_app",
        factory=True,
        host=host or settings.server.host,
        port=port or settings.server.port,
        workers=1,
        reload=reload,
    )


@cli.command()
@click.option("--host", default=None, help="Host to bind to (default: server.host)")
@click.option("--port", default=None, type=int, help="Port to bind to (default: server.web_port)")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
def web(host: Optional[str], port: Optional[int], reload: bool):
    """Start the browser-facing web client."""
    import uvicorn

    from aiplabels.server.config import get_settings

    settings = get_settings()
    uvicorn.run(
        "aiplabels.web.app:create_web_app",
        factory=True,
        host=host or settings.server.host,
        port=port or settings.server.web_port,
        reload=reload,
    )


@cli.group()
def config():
    """Configuration management."""
    pass


@config.command("show")
def config_show():
    """Display current configuration (secrets masked)."""
    from aiplabels.server.config import get_settings, redacted

    click.echo(json.dumps(redacted(get_settings()), indent=2, default=str))


@cli.group()
def labels():
    """Label helpers."""
    pass


@labels.command("scope")
@click.argument("resource")
def labels_scope(resource: str):
    """Print the .default scope requested for RESOURCE."""
    from aiplabels.auth.obo import to_scope

    click.echo(to_scope(resource))


def main():
    cli()


if __name__ == "__main__":
    main()
