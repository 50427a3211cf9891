"""Command line entry point for localproxy."""

import asyncio
import json
import logging
import sys

import click
from pydantic import ValidationError

from .errors import LocalProxyError
from .proxy.models import Route
from .runtime import ProxyRuntime
from .shared.config import get_config
from .shared.logging import configure_logging
from .shared.python_logger_config import setup_python_logging

logger = logging.getLogger(__name__)


async def serve(route: Route) -> None:
    """Start one route and keep serving until the lifecycle coordinator exits."""
    runtime = ProxyRuntime(config=get_config())
    await runtime.start_proxy(route)
    await asyncio.Event().wait()


def _parse_env(ctx, param, value):
    if not value:
        return {}
    try:
        env = json.loads(value)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}")
    if not isinstance(env, dict):
        raise click.BadParameter("must be a JSON object")
    return {str(k): str(v) for k, v in env.items()}


@click.group()
@click.option('--log-level', envvar='LOG_LEVEL', default='INFO', help='TRACE, DEBUG, INFO, WARNING or ERROR')
@click.option('--log-format', envvar='LOG_FORMAT', default='console', type=click.Choice(['console', 'json']),
              help='Format of request access events')
def cli(log_level, log_format):
    """Expose local dev servers under custom hostnames."""
    setup_python_logging(log_level)
    configure_logging(log_format)


@cli.command('start')
@click.option('--from', 'from_', required=True, help='Upstream dev server, host:port or URL')
@click.option('--to', 'to', required=True, help='Public hostname, e.g. myapp.test')
@click.option('--https', is_flag=True, help='Serve over TLS with a locally generated certificate')
@click.option('--clean-urls', is_flag=True, help='Serve /about from /about.html or /about/index.html')
@click.option('--change-origin', is_flag=True, help='Send the upstream host as the Host header')
@click.option('--hosts-cleanup', is_flag=True, help='Remove hosts file entries on shutdown')
@click.option('--certs-cleanup', is_flag=True, help='Delete generated certificates on shutdown')
@click.option('--start-command', help='Dev server command to run before proxying')
@click.option('--start-cwd', type=click.Path(file_okay=False), help='Working directory for --start-command')
@click.option('--start-env', callback=_parse_env, help='Extra environment for --start-command as a JSON object')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug output')
def start(from_, to, https, clean_urls, change_origin, hosts_cleanup, certs_cleanup,
          start_command, start_cwd, start_env, verbose):
    """Proxy TO to the dev server at FROM until interrupted."""
    data = {
        'from': from_,
        'to': to,
        'https': https,
        'clean_urls': clean_urls,
        'change_origin': change_origin,
        'cleanup': {'hosts': hosts_cleanup, 'certs': certs_cleanup},
        'verbose': verbose,
    }
    if start_command:
        data['start'] = {'command': start_command, 'cwd': start_cwd, 'env': start_env}

    try:
        route = Route.model_validate(data)
    except ValidationError as e:
        raise click.UsageError(str(e))

    try:
        asyncio.run(serve(route))
    except KeyboardInterrupt:
        logger.info("Shutting down localproxy (interrupted)")
        sys.exit(0)
    except (LocalProxyError, ValueError) as e:
        logger.error(f"Failed to start localproxy: {e}")
        click.echo(f"ERROR: Failed to start localproxy: {e}", err=True)
        sys.exit(1)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
