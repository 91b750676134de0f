"""CLI entry point for labcli."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import IO
from urllib.parse import urlparse

import click
import httpx

from . import __version__
from .config import ConfigError, HostConfig, load_env
from .instance import default_hostname, validate_hostname
from .oauth import (
    AuthenticationFailedError,
    ConfigurationError,
    OAuthFlowError,
    OAuthManager,
    TokenParseError,
)
from .oauth.callback import DEFAULT_TIMEOUT
from .oauth.store import KEY_IS_OAUTH2, KEY_TOKEN
from .output import OutputHandler

# Logger for CLI
logger = logging.getLogger("labcli")

# Failures of a refresh; the operator has to log in again
REFRESH_ERRORS = (OAuthFlowError, TokenParseError, httpx.HTTPError)

# CI job token, answered to git as gitlab-ci-token
KEY_JOB_TOKEN = "job_token"
JOB_TOKEN_ENV = "JOB_TOKEN"


@click.group()
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.option(
    "--config-dir", "config_dir", type=click.Path(file_okay=False), help="Directory holding config.json"
)
@click.option("--env-file", "env_path", type=click.Path(exists=True), help="Path to .env file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, json_mode: bool, config_dir: str | None, env_path: str | None, verbose: bool) -> None:
    """labcli - command line access to GitLab instances."""
    ctx.ensure_object(dict)
    ctx.obj["json_mode"] = json_mode
    ctx.obj["config_dir"] = Path(config_dir) if config_dir else None
    ctx.obj["output"] = OutputHandler(json_mode)

    # Configure logging based on verbosity
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)

    load_env(Path(env_path) if env_path else None)


def get_host_config(ctx: click.Context) -> HostConfig:
    """Get the host config for this invocation (created once per context)."""
    if "host_config" not in ctx.obj:
        ctx.obj["host_config"] = HostConfig(ctx.obj.get("config_dir"))
    return ctx.obj["host_config"]


def get_oauth_manager(ctx: click.Context) -> OAuthManager:
    return OAuthManager(get_host_config(ctx))


def resolve_hostname(ctx: click.Context, hostname: str | None) -> str:
    """Validate --hostname, falling back to the default host."""
    output: OutputHandler = ctx.obj["output"]
    if hostname is None:
        return default_hostname()
    try:
        return validate_hostname(hostname)
    except ValueError as e:
        output.error(e, error_type="InvalidHostname")
        raise SystemExit(1)  # Never reached due to sys.exit in output.error


def _relogin_help(hostname: str) -> str:
    return f"Run 'labcli auth login --hostname {hostname}' to log in again."


# ============================================================================
# Auth Commands
# ============================================================================


@main.group()
@click.pass_context
def auth(ctx: click.Context) -> None:
    """Manage authentication with GitLab instances."""
    pass


@auth.command("login")
@click.option("--hostname", "-h", help="Host to log in to (default: gitlab.com or $LABCLI_HOST)")
@click.option(
    "--timeout",
    "-t",
    default=DEFAULT_TIMEOUT,
    show_default=True,
    type=click.IntRange(min=1),
    help="Seconds to wait for the browser to complete the login",
)
@click.pass_context
def auth_login(ctx: click.Context, hostname: str | None, timeout: int) -> None:
    """Log in with the OAuth2 authorization code flow in your browser."""
    output: OutputHandler = ctx.obj["output"]
    hostname = resolve_hostname(ctx, hostname)
    manager = get_oauth_manager(ctx)

    try:
        asyncio.run(manager.authenticate(hostname, callback_timeout=timeout, on_status=output.status))
    except ConfigurationError as e:
        output.error(e, error_type="ConfigurationError")
        return
    except AuthenticationFailedError as e:
        output.error(e, error_type="AuthenticationFailed", help_text="Run 'labcli auth login' to try again.")
        return
    except ConfigError as e:
        output.error(e, error_type="ConfigError")
        return

    if ctx.obj["json_mode"]:
        output.success({"hostname": hostname, "authenticated": True})
    else:
        click.secho(f"✓ Logged in to {hostname}", fg="green")


@auth.command("logout")
@click.option("--hostname", "-h", help="Host to log out from (default: gitlab.com or $LABCLI_HOST)")
@click.pass_context
def auth_logout(ctx: click.Context, hostname: str | None) -> None:
    """Remove the stored OAuth2 credentials of a host."""
    output: OutputHandler = ctx.obj["output"]
    hostname = resolve_hostname(ctx, hostname)
    manager = get_oauth_manager(ctx)

    try:
        deleted = manager.logout(hostname)
    except ConfigError as e:
        output.error(e, error_type="ConfigError")
        return

    if ctx.obj["json_mode"]:
        output.success({"hostname": hostname, "logged_out": deleted})
    elif deleted:
        click.secho(f"✓ Logged out of {hostname}", fg="green")
    else:
        click.echo(f"No OAuth2 credentials stored for {hostname}")


@auth.command("status")
@click.option("--hostname", "-h", help="Only show this host")
@click.pass_context
def auth_status(ctx: click.Context, hostname: str | None) -> None:
    """Show the authentication state of configured hosts."""
    output: OutputHandler = ctx.obj["output"]
    config = get_host_config(ctx)
    manager = get_oauth_manager(ctx)

    try:
        hostnames = [resolve_hostname(ctx, hostname)] if hostname else config.hosts() or [default_hostname()]
        statuses = [manager.get_auth_status(h) for h in hostnames]
    except ConfigError as e:
        output.error(e, error_type="ConfigError")
        return

    if ctx.obj["json_mode"]:
        output.success({"hosts": [s.to_dict() for s in statuses]})
        return

    for status in statuses:
        click.secho(status.hostname, bold=True)
        if not status.oauth2:
            click.echo("  Not logged in with OAuth2")
        elif status.error:
            click.secho(f"  ✗ {status.error}", fg="red")
        elif not status.authenticated:
            click.echo("  OAuth2 host without a stored token")
        elif status.expired:
            click.secho("  ⚠ Token expired", fg="yellow")
            if status.has_refresh_token:
                click.echo("    It will be refreshed on next use")
        else:
            click.secho("  ✓ Logged in", fg="green")
            click.echo(f"    Expires in: {status.expires_in_human}")

    if statuses and any(s.authenticated for s in statuses) and not config.cipher.using_keyring:
        output.warning("OS keyring unavailable; secrets are encrypted with a machine-derived key.")


@auth.command("refresh")
@click.option("--hostname", "-h", help="Host to refresh (default: gitlab.com or $LABCLI_HOST)")
@click.pass_context
def auth_refresh(ctx: click.Context, hostname: str | None) -> None:
    """Refresh the stored access token if it has expired."""
    output: OutputHandler = ctx.obj["output"]
    hostname = resolve_hostname(ctx, hostname)
    manager = get_oauth_manager(ctx)

    try:
        refreshed = asyncio.run(manager.refresh_if_needed(hostname))
    except ConfigError as e:
        output.error(e, error_type="ConfigError")
        return
    except REFRESH_ERRORS as e:
        output.error(e, error_type="RefreshFailed", help_text=_relogin_help(hostname))
        return

    if ctx.obj["json_mode"]:
        output.success({"hostname": hostname, "refreshed": refreshed})
    elif refreshed:
        click.secho(f"✓ Token refreshed for {hostname}", fg="green")
    else:
        click.echo(f"Nothing to refresh for {hostname}")


@auth.command("token")
@click.option("--hostname", "-h", help="Host whose token to print (default: gitlab.com or $LABCLI_HOST)")
@click.pass_context
def auth_token(ctx: click.Context, hostname: str | None) -> None:
    """Print a valid access token, refreshing it first if needed."""
    output: OutputHandler = ctx.obj["output"]
    hostname = resolve_hostname(ctx, hostname)
    manager = get_oauth_manager(ctx)

    try:
        access_token = asyncio.run(manager.get_access_token(hostname))
    except ConfigError as e:
        output.error(e, error_type="ConfigError")
        return
    except REFRESH_ERRORS as e:
        output.error(e, error_type="RefreshFailed", help_text=_relogin_help(hostname))
        return

    if access_token is None:
        output.error(
            ValueError(f"Not logged in to {hostname} with OAuth2"),
            error_type="NotAuthenticated",
            help_text=f"Run 'labcli auth login --hostname {hostname}' first.",
        )
        return

    if ctx.obj["json_mode"]:
        output.success({"hostname": hostname, "token": access_token})
    else:
        click.echo(access_token)


def _read_credential_request(stream: IO[str]) -> dict[str, str]:
    """Parse git's key=value credential description, up to the first blank line."""
    params: dict[str, str] = {}
    for raw_line in stream:
        line = raw_line.rstrip("\r\n")
        if not line:
            break
        key, sep, value = line.partition("=")
        if not sep:
            continue
        if key == "url":
            parsed = urlparse(value)
            params["protocol"] = parsed.scheme
            params["host"] = parsed.netloc.rpartition("@")[2]
            params["path"] = parsed.path
            params["username"] = parsed.username or ""
        else:
            params[key] = value
    return params


@auth.command("git-credential", hidden=True)
@click.argument("operation")
@click.pass_context
def auth_git_credential(ctx: click.Context, operation: str) -> None:
    """Git credential helper. Only the 'get' operation is supported."""
    output: OutputHandler = ctx.obj["output"]

    # store/erase are ignored; git carries on with other helpers
    if operation != "get":
        ctx.exit(1)

    request = _read_credential_request(click.get_text_stream("stdin"))
    if request.get("protocol") not in ("http", "https"):
        ctx.exit(1)

    hostname = request.get("host", "")
    config = get_host_config(ctx)
    manager = get_oauth_manager(ctx)

    try:
        job_token = os.environ.get(JOB_TOKEN_ENV) or config.get(hostname, KEY_JOB_TOKEN)
        if config.get(hostname, KEY_IS_OAUTH2) == "true":
            token = asyncio.run(manager.get_token(hostname))
            if token is None:
                ctx.exit(1)
            response = {"username": "oauth2", "password": token.access_token}
            if token.expiry_date is not None:
                response["password_expiry_utc"] = str(int(token.expiry_date.timestamp()))
            if token.refresh_token:
                response["oauth_refresh_token"] = token.refresh_token
        elif job_token:
            response = {"username": "gitlab-ci-token", "password": job_token}
        else:
            personal_token = config.get(hostname, KEY_TOKEN)
            if not personal_token:
                ctx.exit(1)
            response = {"username": config.get(hostname, "user"), "password": personal_token}
    except ConfigError as e:
        output.error(e, error_type="ConfigError")
        return
    except REFRESH_ERRORS as e:
        output.error(
            OAuthFlowError(f"failed to refresh token for {hostname!r}: {e}"),
            error_type="RefreshFailed",
            help_text=_relogin_help(hostname),
        )
        return

    requested_user = request.get("username", "")
    if requested_user and requested_user != response["username"]:
        output.error(
            ValueError(
                f"the username requested by git does not match the one configured for {hostname}, "
                f"want {response['username']!r} but got {requested_user!r}"
            ),
            error_type="UsernameMismatch",
        )
        return

    # capability[] must precede any value depending on it
    click.echo("capability[]=authtype")
    for key, value in response.items():
        click.echo(f"{key}={value}")


# ============================================================================
# Config Commands
# ============================================================================


@main.group("config")
@click.pass_context
def config_group(ctx: click.Context) -> None:
    """Read and write per-host configuration."""
    pass


@config_group.command("get")
@click.argument("key")
@click.option("--host", "hostname", help="Host the key belongs to (default: gitlab.com or $LABCLI_HOST)")
@click.pass_context
def config_get(ctx: click.Context, key: str, hostname: str | None) -> None:
    """Print the value of KEY for a host."""
    output: OutputHandler = ctx.obj["output"]
    hostname = resolve_hostname(ctx, hostname)

    try:
        value = get_host_config(ctx).get(hostname, key)
    except ConfigError as e:
        output.error(e, error_type="ConfigError")
        return

    if ctx.obj["json_mode"]:
        output.success({"hostname": hostname, "key": key, "value": value})
    else:
        click.echo(value)


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.option("--host", "hostname", help="Host the key belongs to (default: gitlab.com or $LABCLI_HOST)")
@click.pass_context
def config_set(ctx: click.Context, key: str, value: str, hostname: str | None) -> None:
    """Set KEY to VALUE for a host."""
    output: OutputHandler = ctx.obj["output"]
    hostname = resolve_hostname(ctx, hostname)
    config = get_host_config(ctx)

    try:
        config.set(hostname, key, value)
        config.write()
    except ConfigError as e:
        output.error(e, error_type="ConfigError")
        return

    if ctx.obj["json_mode"]:
        output.success({"hostname": hostname, "key": key})
    else:
        click.secho(f"✓ Set {key} for {hostname}", fg="green")


if __name__ == "__main__":
    main()
