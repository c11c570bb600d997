"""CLI main entry point

Usage:
    exthost resolve --config extensions.yaml --source ./packages
    exthost install --config extensions.yaml --source https://registry.example.com
    exthost cache show
    exthost cache clear
"""

import asyncio
import logging
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from extension_host import __version__
from extension_host.core.config import get_config
from extension_host.core.extensions.cache import cache_file_path, delete_cache, read_cache
from extension_host.core.extensions.exceptions import ExtensionError
from extension_host.core.extensions.host import HostContext, HostEnvironment
from extension_host.core.extensions.models import ExtensionsConfiguration
from extension_host.core.extensions.registry.sources import create_source
from extension_host.core.extensions.set_loader import ExtensionSetLoader

console = Console()
logger = logging.getLogger(__name__)


def _environment(root: str) -> HostEnvironment:
    return HostEnvironment(Path(root).expanduser().resolve())


def _loader(root: str, tag: str) -> ExtensionSetLoader:
    return ExtensionSetLoader(
        _environment(root),
        host_context=HostContext.from_environment(entry_point_tag=tag),
    )


def _common_options(f):
    f = click.option("--tag", default=None, help="Only packages with this tag expose an entry point")(f)
    f = click.option("--no-cache", is_flag=True, help="Ignore the dependency cache")(f)
    f = click.option("--source", "sources", multiple=True, help="Package folder or registry URL (repeatable)")(f)
    f = click.option("--root", default=".", show_default=True, type=click.Path(file_okay=False), help="Host root directory")(f)
    f = click.option("--config", "config_file", required=True, type=click.Path(exists=True, dir_okay=False),
                     help="Extension configuration file (YAML or JSON)")(f)
    return f


@click.group()
@click.version_option(version=__version__, prog_name="exthost")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, verbose):
    """Resolve, install and inspect host extensions"""
    level = logging.DEBUG if verbose else getattr(logging, get_config().log_level)
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")
    ctx.ensure_object(dict)


@cli.command()
@_common_options
@click.pass_context
def resolve(ctx, config_file, root, sources, no_cache, tag):
    """Resolve the configured extensions without installing them"""
    try:
        configuration = ExtensionsConfiguration.from_file(Path(config_file))
        loader = _loader(root, tag)
        package_set = asyncio.run(loader.resolve_extensions(
            [create_source(s) for s in sources],
            configuration.extensions,
            configuration.local_extensions,
            no_cache=no_cache,
        ))
    except ExtensionError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        ctx.exit(1)

    if not package_set.is_valid:
        console.print(f"[red]Resolution failed:[/red] {escape(str(package_set.error))}")
        ctx.exit(1)

    table = Table(title="Resolved Packages")
    table.add_column("Package", style="cyan")
    for package_id in package_set.package_ids:
        table.add_row(package_id)
    console.print(table)


@cli.command()
@_common_options
@click.pass_context
def install(ctx, config_file, root, sources, no_cache, tag):
    """Resolve and install the configured extensions"""
    try:
        configuration = ExtensionsConfiguration.from_file(Path(config_file))
        loader = _loader(root, tag)
        installed = asyncio.run(loader.install(
            configuration,
            [create_source(s) for s in sources],
            no_cache=no_cache,
        ))
    except ExtensionError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        ctx.exit(1)

    table = Table(title=f"Installed Packages ({len(installed)})")
    table.add_column("Package", style="cyan")
    table.add_column("Version", style="green")
    table.add_column("Kind")
    table.add_column("Entry Point")
    table.add_column("Folder", style="dim")

    for package in installed.packages:
        table.add_row(
            package.id,
            package.version,
            package.dependency_kind.value,
            package.entry_point or "-",
            str(package.install_folder),
        )
    console.print(table)


@cli.group()
def cache():
    """Inspect the dependency cache"""
    pass


@cache.command("show")
@click.option("--root", default=".", show_default=True, type=click.Path(file_okay=False), help="Host root directory")
@click.pass_context
def cache_show(ctx, root):
    """Show the cached dependency graph"""
    path = cache_file_path(_environment(root).extensions_directory)
    cached = read_cache(path)
    if cached is None:
        console.print(f"No usable dependency cache at {path}")
        return

    table = Table(title=f"Dependency Cache ({cached.runtime})")
    table.add_column("Package", style="cyan")
    table.add_column("Version", style="green")
    table.add_column("Kind")
    table.add_column("Dependencies")

    for package in cached.packages:
        deps = ", ".join(f"{k} {v}" for k, v in package.dependencies.items())
        table.add_row(package.id, package.version, package.type.value, deps or "-")
    console.print(table)


@cache.command("clear")
@click.option("--root", default=".", show_default=True, type=click.Path(file_okay=False), help="Host root directory")
def cache_clear(root):
    """Delete the dependency cache so the next run resolves afresh"""
    path = cache_file_path(_environment(root).extensions_directory)
    if delete_cache(path):
        console.print(f"Removed {path}")
    else:
        console.print(f"No dependency cache at {path}")


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
