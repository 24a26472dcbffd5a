"""
Command Line Interface for devorch.
"""
import json
import logging
import os
import signal
import threading
from contextlib import contextmanager

import click
import yaml

from ..BUILDERS.image_builder import DockerImageBuilder
from ..MANAGERS.container_runtime import DockerRuntime
from ..MANAGERS.lifecycle_manager import LifecycleManager
from ..MODELS.orchestrator_config import OrchestratorConfig, Strategy
from ..PARSERS.compose_parser import ComposeParser
from ..errors import DevorchError
from .report import render_plan, render_report, render_status

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]

# Exit code for usage and configuration errors; run failures exit with 1
EXIT_USAGE = 2


def configure_logging(level: str) -> None:
    logging.basicConfig(format=LOG_FORMAT)
    logging.getLogger("devorch").setLevel(level.upper())


@contextmanager
def interruptible():
    """
    Yields a cancellation event set by SIGINT or SIGTERM. The running batch
    finishes; later batches are skipped.
    """
    cancel = threading.Event()
    if threading.current_thread() is not threading.main_thread():
        yield cancel
        return

    def handler(signum, frame):
        logger.warning("Received %s, finishing the current batch", signal.Signals(signum).name)
        cancel.set()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield cancel
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def run_options(f):
    """Options shared by the commands that run an operation."""
    options = [
        click.option('--strategy', '-s', type=click.Choice([s.value for s in Strategy]),
                     default=None, help='Batching strategy (default from configuration)'),
        click.option('--max-concurrency', '-j', type=click.IntRange(min=1), default=None,
                     help='Override the resource-based concurrency limit'),
        click.option('--continue-on-error/--fail-fast', default=None,
                     help='Keep going after an essential service fails'),
        click.option('--json', 'as_json', is_flag=True, help='Print the run report as JSON'),
        click.argument('services', nargs=-1),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def _manager(ctx) -> LifecycleManager:
    manager = ctx.obj.get('manager')
    if manager is None:
        click.echo(f"Error: {ctx.obj.get('error')}", err=True)
        ctx.exit(EXIT_USAGE)
    return manager


def _run(ctx, operation, services, as_json, **kwargs):
    manager = _manager(ctx)
    try:
        with interruptible() as cancel:
            report = getattr(manager, operation)(list(services) or None, cancel=cancel, **kwargs)
    except DevorchError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_USAGE)
        return

    if as_json:
        click.echo(report.model_dump_json(indent=2))
    else:
        click.echo(render_report(report), nl=False)
    ctx.exit(report.exit_code)


@click.group()
@click.option('--file', '-f', 'files', multiple=True, default=['docker-compose.yml'],
              help='Compose file path; repeat to merge several files')
@click.option('--env-file', default='.env', show_default=True,
              help='File with variables for interpolation and DEVORCH_* settings')
@click.option('--project-name', '-p', default=None, help='Compose project name')
@click.option('--log-level', type=click.Choice(LOG_LEVELS, case_sensitive=False),
              default='INFO', envvar='DEVORCH_LOG_LEVEL', show_default=True)
@click.pass_context
def cli(ctx, files, env_file, project_name, log_level):
    """
    devorch - dependency-aware orchestration for Docker Compose projects.

    Builds, starts, stops and cleans services in dependency order, running
    independent services concurrently within limits derived from the
    machine's cores and memory.
    """
    ctx.ensure_object(dict)
    configure_logging(log_level)
    files = list(files)
    ctx.obj['files'] = files

    missing = [path for path in files if not os.path.exists(path)]
    if missing:
        ctx.obj['error'] = f"{missing[0]} not found."
        return

    try:
        defaults = OrchestratorConfig.from_env(env_file=env_file)
        project = ComposeParser(env_file=env_file, health_defaults=defaults).parse_files(files)
        config = OrchestratorConfig.from_env(env_file=env_file, base=project.config())
    except (DevorchError, ValueError, yaml.YAMLError) as e:
        ctx.obj['error'] = str(e)
        return

    base_dir = os.path.dirname(os.path.abspath(files[0]))
    ctx.obj['manager'] = LifecycleManager(
        project.catalog,
        DockerImageBuilder(base_dir),
        DockerRuntime(compose_files=files, project_name=project_name),
        config,
    )


@cli.command()
@run_options
@click.option('--no-cache', is_flag=True, help='Do not use the build cache')
@click.option('--pull', is_flag=True, help='Always pull newer base images')
@click.pass_context
def build(ctx, strategy, max_concurrency, continue_on_error, as_json, services, no_cache, pull):
    """Build images for services and their dependencies."""
    _run(ctx, 'build', services, as_json, strategy=strategy, max_concurrency=max_concurrency,
         continue_on_error=continue_on_error, no_cache=no_cache, pull=pull)


@cli.command()
@run_options
@click.pass_context
def start(ctx, strategy, max_concurrency, continue_on_error, as_json, services):
    """Start services and their dependencies, waiting for health checks."""
    _run(ctx, 'start', services, as_json, strategy=strategy, max_concurrency=max_concurrency,
         continue_on_error=continue_on_error)


@cli.command()
@run_options
@click.option('--force', is_flag=True, help='Kill instead of stopping gracefully')
@click.pass_context
def stop(ctx, strategy, max_concurrency, continue_on_error, as_json, services, force):
    """Stop services, dependents before their dependencies."""
    _run(ctx, 'stop', services, as_json, strategy=strategy, max_concurrency=max_concurrency,
         continue_on_error=continue_on_error, force=force)


@cli.command()
@run_options
@click.pass_context
def restart(ctx, strategy, max_concurrency, continue_on_error, as_json, services):
    """Stop, then start services again."""
    _run(ctx, 'restart', services, as_json, strategy=strategy, max_concurrency=max_concurrency,
         continue_on_error=continue_on_error)


@cli.command()
@run_options
@click.pass_context
def clean(ctx, strategy, max_concurrency, continue_on_error, as_json, services):
    """Remove containers and built images."""
    _run(ctx, 'clean', services, as_json, strategy=strategy, max_concurrency=max_concurrency,
         continue_on_error=continue_on_error)


@cli.command()
@click.option('--probe/--no-probe', default=True, help='Run health checks before reporting')
@click.option('--json', 'as_json', is_flag=True, help='Print status as JSON')
@click.pass_context
def status(ctx, probe, as_json):
    """List service state and health."""
    statuses = _manager(ctx).status(probe=probe)
    if as_json:
        click.echo(json.dumps(
            {name: {"state": s.state.value, "health": s.health.value} for name, s in statuses.items()},
            indent=2,
        ))
    else:
        click.echo(render_status(statuses), nl=False)


@cli.command()
@click.argument('operation', type=click.Choice(['build', 'start', 'stop', 'clean']))
@click.argument('services', nargs=-1)
@click.option('--strategy', '-s', type=click.Choice([s.value for s in Strategy]), default=None)
@click.option('--max-concurrency', '-j', type=click.IntRange(min=1), default=None)
@click.option('--json', 'as_json', is_flag=True, help='Print batches as JSON')
@click.pass_context
def plan(ctx, operation, services, strategy, max_concurrency, as_json):
    """Show the batches an operation would run, without running it."""
    manager = _manager(ctx)
    kind = 'cleanup' if operation == 'clean' else operation
    try:
        batches = manager.plan(kind, list(services) or None, strategy=strategy, max_concurrency=max_concurrency)
    except DevorchError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)
        return

    if as_json:
        click.echo(json.dumps(batches, indent=2))
    else:
        click.echo(render_plan(batches), nl=False)


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
