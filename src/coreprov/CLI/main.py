"""
Command Line Interface for coreprov.
"""
import logging
import os
import shutil
import sys
from contextlib import contextmanager

import click

from ..BUILDERS.layer_stack import image_stack_from_path
from ..BUILDERS.library_cache import library_cache
from ..BUILDERS.library_resolver import LibraryResolver
from ..BUILDERS.stack_builder import StackBuilder
from ..errors import CoreprovError
from ..MANAGERS.setup import Setup
from ..PARSERS.config_parser import ConfigParser, default_config, default_config_path
from ..REGISTRY.arch import detect_arch, detect_machine_id, parse_arch
from ..RUNTIME.docker_client import DockerRuntime

logger = logging.getLogger(__name__)


@click.group()
@click.option('--config', '-c', 'config_path', default=default_config_path,
              help='Config file path (defaults to $COREPROV_CONFIG or config.yaml)')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.pass_context
def cli(ctx, config_path, verbose):
    """
    coreprov - container environment provisioner.

    Builds images, creates containers and sets up host users whose login
    shell enters those containers.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path
    ctx.obj.setdefault('runtime_factory', DockerRuntime)


@cli.command()
@click.option('--create-users', is_flag=True, help='Create host users that do not exist')
@click.pass_context
def setup(ctx, create_users):
    """Build images, create containers and set up users."""
    config_path = ctx.obj['config_path']
    if not os.path.exists(config_path):
        raise click.ClickException(f"Config {config_path} not found.")

    try:
        config = ConfigParser().parse(config_path)
        runtime = ctx.obj['runtime_factory']()
    except CoreprovError as e:
        raise click.ClickException(str(e))

    try:
        error = Setup(config, runtime, create_users=create_users,
                      output=sys.stdout).execute()
    finally:
        runtime.close()
    if error is not None:
        raise click.ClickException(str(error))
    click.echo("Setup complete.")


@cli.command()
@click.pass_context
def defconfig(ctx):
    """Write the default config."""
    config_path = ctx.obj['config_path']
    if os.path.exists(config_path):
        raise click.ClickException(f"Path {config_path} already exists, not overwriting.")
    ConfigParser().write(default_config(), config_path)
    click.echo(f"Wrote default config to {config_path}")


@cli.command()
def sysinfo():
    """Print detected system information."""
    machine = detect_machine_id()
    click.echo(f"Machine: {machine}")
    click.echo(f"CPUs: {os.cpu_count()}")
    arch, ok = parse_arch(machine)
    if ok:
        click.echo(f"Detected arch: {arch.value}")
    else:
        click.echo(f"Unknown arch, defaulting to {arch.value}")
    override = os.environ.get("COREPROV_ARCH")
    if override:
        click.echo(f"Target arch (COREPROV_ARCH): {detect_arch(override).value}")


@cli.group()
def scratchbuild():
    """Rebuild an image's whole FROM chain on arch-specific base images."""


@contextmanager
def _resolver(cache_dir, cleanup):
    """
    Yields a library resolver, from cache_dir if given, else from the shared cache.
    """
    if not cache_dir:
        with library_cache().library() as resolver:
            yield resolver
        return

    os.makedirs(cache_dir, exist_ok=True)
    try:
        yield LibraryResolver.build(cache_dir)
    finally:
        if cleanup:
            logger.debug("Cleaning up %s", cache_dir)
            shutil.rmtree(cache_dir, ignore_errors=True)


def _check_build_path(path):
    if not os.path.isdir(path):
        raise click.ClickException(f"Build path {path} is not a directory.")


@scratchbuild.command('stack')
@click.argument('path', default='.')
@click.option('--tag', '-t', default='scratchbuild/target:latest', help='Tag of the target image')
@click.option('--dockerfile', '-f', default='Dockerfile',
              help='Dockerfile, relative to the build path unless absolute')
@click.option('--arch', '-m', default=None, help='Target architecture (defaults to the host)')
@click.option('--resolve/--no-resolve', default=True,
              help='Resolve library images to their Dockerfiles')
@click.option('--show-dockerfiles', is_flag=True, help='Print the Dockerfile of every layer')
def scratchbuild_stack(path, tag, dockerfile, arch, resolve, show_dockerfiles):
    """Print the resolved image stack of a Dockerfile."""
    _check_build_path(path)
    target = detect_arch(arch)
    try:
        if resolve:
            with library_cache().library() as resolver:
                stack = image_stack_from_path(path, dockerfile, tag, resolver, target)
        else:
            stack = image_stack_from_path(path, dockerfile, tag, None, target)
        stack.rebase_on_arch(target)
    except (CoreprovError, OSError) as e:
        raise click.ClickException(str(e))

    click.echo(stack.describe())
    if show_dockerfiles:
        click.echo(stack.to_dockerfile())


@scratchbuild.command('build')
@click.argument('path')
@click.option('--tag', '-t', required=True, help='Tag the final image will be labeled with')
@click.option('--dockerfile', '-f', default='Dockerfile',
              help='Dockerfile, relative to the build path unless absolute')
@click.option('--arch', '-m', default=None, help='Target architecture (defaults to the host)')
@click.option('--cachedir', default=None,
              help='Directory for downloaded source repositories (defaults to a shared temporary one)')
@click.option('--cleanup/--no-cleanup', default=True, help='Remove --cachedir when done')
@click.pass_context
def scratchbuild_build(ctx, path, tag, dockerfile, arch, cachedir, cleanup):
    """Build the image in PATH, rebuilding its base images for the target arch."""
    _check_build_path(path)
    target = detect_arch(arch)
    try:
        runtime = ctx.obj['runtime_factory']()
    except CoreprovError as e:
        raise click.ClickException(str(e))

    try:
        with _resolver(cachedir, cleanup) as resolver:
            stack = image_stack_from_path(path, dockerfile, tag, resolver, target)
            stack.rebase_on_arch(target)
            click.echo(f"Image stack: {stack}")
            StackBuilder(stack, runtime, sys.stdout).build()
    except (CoreprovError, OSError) as e:
        raise click.ClickException(str(e))
    finally:
        runtime.close()
    click.echo(f"Built {tag}")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
