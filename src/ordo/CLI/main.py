# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Command Line Interface for Ordo.
"""
import logging
import os
import signal
from contextlib import contextmanager

import click
import yaml

from ..errors import OrchestratorError
from ..MANAGERS.service_orchestrator import RunReport, ServiceOrchestrator
from ..MODELS.orchestrator_options import OrchestratorOptions, StartPolicy
from ..PARSERS.spec_loader import SpecLoader
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..RUNTIME import RUNTIMES, create_runtime


@click.group()
@click.option('--file', '-f', default='docker-compose.yml', show_default=True, help='Stack file path')
@click.option('--project-name', '-p', default=None, help='Project name (defaults to the name in the file, then its directory)')
@click.option('--runtime', type=click.Choice(RUNTIMES), default='docker', show_default=True, help='Container runtime backend')
@click.option('--state-dir', default='.ordo', show_default=True, help='Directory for locks, logs and process-runtime data')
@click.option('--verbose', '-v', is_flag=True, help='Log progress to stderr')
@click.pass_context
def cli(ctx, file, project_name, runtime, state_dir, verbose):
    """
    Ordo - dependency-ordered container orchestration.

    Starts services level by level, waiting for each to be ready before
    starting the services that depend on it. Every option can also be set
    through an ORDO_* environment variable, e.g. ORDO_RUNTIME=process.
    """
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj['file'] = file
    ctx.obj['project_name'] = project_name
    ctx.obj['runtime'] = runtime
    ctx.obj['state_dir'] = state_dir


def _load(ctx):
    loader = SpecLoader(project_name=ctx.obj['project_name'])
    return loader.load(ctx.obj['file'])


def _orchestrator(ctx, **settings) -> ServiceOrchestrator:
    """
    Loads the stack and binds it to the selected runtime. The state directory
    resolves against the stack file's directory.
    """
    project = _load(ctx)
    base_dir = os.path.dirname(os.path.abspath(ctx.obj['file']))
    state_dir = os.path.join(base_dir, ctx.obj['state_dir'])
    options = OrchestratorOptions(state_dir=state_dir, **settings)
    runtime = create_runtime(ctx.obj['runtime'], project.name, state_dir=state_dir, base_dir=base_dir)
    return ServiceOrchestrator(project, runtime, options)


@contextmanager
def _errors(ctx):
    """
    Reports orchestrator errors and exits with their exit code.
    """
    try:
        yield
    except OrchestratorError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(e.exit_code)


@contextmanager
def _interrupt_cancels(orchestrator: ServiceOrchestrator):
    """
    Turns Ctrl+C into a cancellation of the run instead of a KeyboardInterrupt.
    """
    def handler(signum, frame):
        orchestrator.cancel("interrupted by user")

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _echo_report(report: RunReport):
    click.echo(f"{'SERVICE':15} {'STATUS':10} {'RESTARTS':8} DETAIL")
    click.echo("-" * 60)
    for name, state in report.states:
        if name in report.not_started:
            detail = f"not started: {report.not_started[name]}"
        elif name in report.errors:
            detail = str(report.errors[name])
        else:
            detail = state.error or state.last_check
        if state.degraded:
            detail = f"[degraded] {detail}"
        click.echo(f"{name:15} {state.status.value:10} {state.restart_count:<8} {detail}")
    if report.fatal is not None:
        click.echo(f"Error: {report.fatal}", err=True)


@cli.command()
@click.option('--detach', '-d', is_flag=True, help='Return once services are ready instead of monitoring them')
@click.option('--policy', type=click.Choice([p.value for p in StartPolicy]), default=StartPolicy.STRICT.value,
              show_default=True, help='Whether dependents of a failed service still start')
@click.option('--deadline', type=click.FloatRange(min=0, min_open=True), default=None, help='Cancel the run after this many seconds')
@click.option('--max-workers', type=click.IntRange(min=1), default=None, help='Maximum services started concurrently')
@click.argument('services', nargs=-1)
@click.pass_context
def up(ctx, detach, policy, deadline, max_workers, services):
    """Start services in dependency order."""
    with _errors(ctx):
        orchestrator = _orchestrator(
            ctx,
            start_policy=policy,
            deadline=deadline,
            max_workers=max_workers,
        )
        try:
            with _interrupt_cancels(orchestrator):
                report = orchestrator.up(services)
                _echo_report(report)

                if report.ok and not detach:
                    click.echo("Running... Press Ctrl+C to stop.")
                    orchestrator.watch()
                    click.echo("Stopping services...")
                    _echo_report(orchestrator.down())
        finally:
            orchestrator.close()
    ctx.exit(report.exit_code)


@cli.command()
@click.option('--volumes', '-v', is_flag=True, help='Also remove named volumes')
@click.pass_context
def down(ctx, volumes):
    """Stop services in reverse dependency order and remove networks."""
    with _errors(ctx):
        orchestrator = _orchestrator(ctx)
        try:
            orchestrator.observe()
            report = orchestrator.down(remove_volumes=volumes)
        finally:
            orchestrator.close()
        _echo_report(report)
    ctx.exit(report.exit_code)


@cli.command()
@click.pass_context
def ps(ctx):
    """List service status."""
    with _errors(ctx):
        orchestrator = _orchestrator(ctx)
        try:
            _echo_report(RunReport(states=orchestrator.observe()))
        finally:
            orchestrator.close()


@cli.command()
@click.pass_context
def config(ctx):
    """Validate the stack file and print it fully resolved."""
    with _errors(ctx):
        project = _load(ctx)
        click.echo(yaml.safe_dump(project.model_dump(mode='json'), sort_keys=False))


@cli.command()
@click.pass_context
def order(ctx):
    """Print the start levels."""
    with _errors(ctx):
        project = _load(ctx)
        levels = DependencyResolver().resolve_levels(project.services)
        for index, level in enumerate(levels, start=1):
            click.echo(f"{index}: {', '.join(level)}")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={}, auto_envvar_prefix='ORDO')


if __name__ == '__main__':
    main()
