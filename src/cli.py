"""Click CLI for running and inspecting the gateway."""

from __future__ import annotations

import json
import logging
import os

import click
import httpx
import uvicorn

from src.config import ConfigError, GatewaySettings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
def cli() -> None:
    """Multi-session messaging gateway."""


@cli.command()
@click.option("--host", default=None, help="Bind address (overrides HOST).")
@click.option("--port", default=None, type=int, help="Listen port (overrides PORT).")
@click.option("--log-level", default=None, help="Log level (overrides LOG_LEVEL).")
def serve(host: str | None, port: int | None, log_level: str | None) -> None:
    """Run the gateway HTTP server."""
    try:
        settings = GatewaySettings.from_env()
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    level = (log_level or settings.log_level).upper()
    logging.basicConfig(level=level, format=LOG_FORMAT)
    uvicorn.run(
        "src.gateway.app:create_app_from_env",
        factory=True,
        host=host or settings.host,
        port=port or settings.port,
        log_level=level.lower(),
    )


@cli.command()
@click.option("--url", default="http://localhost:3000", show_default=True, help="Gateway base URL.")
@click.option("--api-key", default=lambda: os.environ.get("API_KEY", ""), help="API key (defaults to API_KEY).")
@click.option("--session-id", default=None, help="Only show this session.")
def status(url: str, api_key: str, session_id: str | None) -> None:
    """Print the status of a running gateway's sessions."""
    params = {"sessionId": session_id} if session_id else None
    try:
        resp = httpx.get(
            f"{url.rstrip('/')}/status",
            params=params,
            headers={"x-api-key": api_key},
            timeout=10.0,
        )
    except httpx.HTTPError as exc:
        raise click.ClickException(f"Gateway unreachable: {exc}") from exc

    try:
        body = resp.json()
    except json.JSONDecodeError:
        body = {"error": resp.text}
    click.echo(json.dumps(body, indent=2))
    if resp.status_code >= 400:
        raise SystemExit(1)


if __name__ == "__main__":
    cli()
