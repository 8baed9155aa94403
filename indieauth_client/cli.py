"""CLI entry point for the IndieAuth client."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import NoReturn

import click
import httpx

from . import __version__
from .auth import (
    EndpointNotFoundError,
    IndieAuthFlow,
    IndieAuthFlowError,
    begin_authorization,
    discover_endpoints,
    get_header_links,
)
from .config import ConfigError, Settings, load_settings
from .output import OutputHandler

# Logger for CLI
logger = logging.getLogger("indieauth")

NOT_FOUND_HELP = (
    "Unable to find IndieAuth server. The profile URL must announce an "
    "indieauth-metadata or authorization_endpoint link."
)
NETWORK_HELP = "Check that the URL is correct and the server is reachable."


@click.group()
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.option("--env-file", "env_path", type=click.Path(exists=True), help="Path to .env file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, json_mode: bool, env_path: str | None, verbose: bool) -> None:
    """IndieAuth client - discover endpoints and sign in with your domain."""
    ctx.ensure_object(dict)
    ctx.obj["json_mode"] = json_mode
    ctx.obj["env_path"] = Path(env_path) if env_path else None
    ctx.obj["output"] = OutputHandler(json_mode)

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)


def get_settings(ctx: click.Context) -> Settings | NoReturn:
    """Get settings from context, handling errors."""
    output: OutputHandler = ctx.obj["output"]
    try:
        return load_settings(ctx.obj["env_path"])
    except ConfigError as e:
        output.error(e, error_type="ConfigError", help_text="Fix the value in your environment or .env file.")
        raise SystemExit(1)  # Never reached due to sys.exit in output.error


@main.command()
@click.argument("url")
@click.pass_context
def discover(ctx: click.Context, url: str) -> None:
    """Discover the IndieAuth endpoints of a profile URL."""
    output: OutputHandler = ctx.obj["output"]
    settings = get_settings(ctx)

    try:
        metadata = asyncio.run(discover_endpoints(url, settings.user_agent))
    except httpx.HTTPError as e:
        output.error(e, error_type="NetworkError", help_text=NETWORK_HELP)
        return
    except ValueError as e:
        output.error(e, error_type="MetadataError", help_text="The metadata document is not valid JSON.")
        return

    if metadata is None:
        output.error(EndpointNotFoundError(f"No IndieAuth server found for {url}"), help_text=NOT_FOUND_HELP)
        return

    data = metadata.to_dict()
    if ctx.obj["json_mode"]:
        output.success(data)
    else:
        click.secho(f"\nIndieAuth endpoints for {url}:\n", bold=True)
        for name, value in data.items():
            click.secho(f"  {name}: ", fg="cyan", nl=False)
            click.echo(", ".join(value) if isinstance(value, list) else str(value))


@main.command()
@click.argument("url")
@click.pass_context
def links(ctx: click.Context, url: str) -> None:
    """Show the Link header relations of a URL."""
    output: OutputHandler = ctx.obj["output"]
    settings = get_settings(ctx)

    try:
        found = asyncio.run(get_header_links(url, settings.user_agent))
    except httpx.HTTPError as e:
        output.error(e, error_type="NetworkError", help_text=NETWORK_HELP)
        return

    if ctx.obj["json_mode"]:
        output.success(found or {})
    elif not found:
        click.echo(f"No Link header relations found for {url}")
    else:
        for rel, uri in found.items():
            click.secho(f"  {rel}: ", fg="cyan", nl=False)
            click.echo(uri)


@main.command("login-url")
@click.argument("url")
@click.option("--client-id", required=True, help="Client ID (your application's URL)")
@click.option("--redirect-url", required=True, help="Redirect URL registered for the client")
@click.option("--scope", default=None, help="Space-separated scopes to request")
@click.pass_context
def login_url(ctx: click.Context, url: str, client_id: str, redirect_url: str, scope: str | None) -> None:
    """Build a login URL and sealed flow state for a profile URL.

    The sealed state is signed with INDIEAUTH_SECRET_KEY and is what a web
    application would keep in a cookie until the callback arrives.
    """
    output: OutputHandler = ctx.obj["output"]
    settings = get_settings(ctx)

    try:
        request = asyncio.run(
            begin_authorization(
                url,
                client_id,
                redirect_url,
                settings.signing_key(),
                scope=scope or settings.scope,
                user_agent=settings.user_agent,
            )
        )
    except EndpointNotFoundError as e:
        output.error(e, help_text=NOT_FOUND_HELP)
        return
    except httpx.HTTPError as e:
        output.error(e, error_type="NetworkError", help_text=NETWORK_HELP)
        return

    data = {
        "login_url": request.login_url,
        "sealed_state": request.sealed_state,
        "state": request.flow_state.state,
    }
    if ctx.obj["json_mode"]:
        output.success(data)
    else:
        click.secho("Login URL:", bold=True)
        click.echo(request.login_url)
        click.secho("\nSealed flow state:", bold=True)
        click.echo(request.sealed_state)
        if settings.secret_key is None:
            click.secho(
                "\nNote: no INDIEAUTH_SECRET_KEY set, the state was signed with a throwaway key.",
                fg="yellow",
            )


@main.command()
@click.argument("url")
@click.option("--client-id", default=None, help="Client ID (defaults to the local callback server URL)")
@click.option("--scope", default=None, help="Space-separated scopes to request")
@click.option("--timeout", "-t", type=float, default=None, help="Seconds to wait for the browser redirect")
@click.option("--no-browser", is_flag=True, help="Print the login URL instead of opening a browser")
@click.pass_context
def login(
    ctx: click.Context,
    url: str,
    client_id: str | None,
    scope: str | None,
    timeout: float | None,
    no_browser: bool,
) -> None:
    """Sign in with a profile URL and print the redeemed token set."""
    output: OutputHandler = ctx.obj["output"]
    settings = get_settings(ctx)

    flow = IndieAuthFlow(
        url,
        settings.signing_key(),
        client_id=client_id,
        scope=scope or settings.scope,
        user_agent=settings.user_agent,
        callback_timeout=timeout or settings.callback_timeout,
        open_browser=not no_browser,
        on_status=output.status,
    )

    try:
        token_set = asyncio.run(flow.run())
    except IndieAuthFlowError as e:
        help_text = "The request failed. Please try again."
        if isinstance(e.__cause__, EndpointNotFoundError):
            help_text = NOT_FOUND_HELP
        output.error(e, help_text=help_text)
        return
    except httpx.HTTPError as e:
        output.error(e, error_type="NetworkError", help_text=NETWORK_HELP)
        return

    data = token_set.to_dict()
    if ctx.obj["json_mode"]:
        output.success(data)
    else:
        click.secho(f"\nSigned in as {token_set.me}", fg="green", bold=True)
        for name, value in data.items():
            if name == "me":
                continue
            click.secho(f"  {name}: ", fg="cyan", nl=False)
            click.echo(value)
