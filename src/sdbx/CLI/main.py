"""
Command Line Interface for SDBX.
"""
import logging
import os

import click

from .. import __version__
from ..CONVERTERS.project_generator import ProjectGenerator
from ..MANAGERS.lock_manager import LockManager
from ..MODELS.errors import SdbxError, ServiceNotFoundError
from ..MODELS.lock_file import LOCK_FILE_NAME
from ..MODELS.project_config import CONFIG_FILE_NAME, load_config
from ..MODELS.source_config import SOURCE_TYPE_GIT, SOURCE_TYPE_LOCAL, SourceDef, default_source_config
from ..PARSERS.definition_parser import DefinitionParser
from ..PARSERS.definition_validator import has_errors
from ..REGISTRY.service_registry import ServiceRegistry
from ..REGISTRY.source_cache import SourceCache
from ..RUNNERS.dependency_resolver import DependencyResolver

DEFAULT_SOURCES_FILE = os.path.join(os.path.expanduser("~"), ".config", "sdbx", "sources.yaml")


def _source_config(ctx):
    path = ctx.obj['sources']
    if os.path.exists(path):
        return DefinitionParser().load_source_config(path)
    return default_source_config()


def _registry(ctx) -> ServiceRegistry:
    if 'registry' not in ctx.obj:
        ctx.obj['registry'] = ServiceRegistry.from_config(_source_config(ctx))
    return ctx.obj['registry']


def _config(ctx):
    return load_config(ctx.obj['config'], ctx.obj['env_file'])


class SdbxGroup(click.Group):
    """Reports library errors as CLI errors instead of tracebacks."""

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except SdbxError as e:
            raise click.ClickException(str(e))


@click.group(cls=SdbxGroup)
@click.version_option(__version__, prog_name="sdbx")
@click.option('--config', '-c', default=CONFIG_FILE_NAME, help='Project configuration file')
@click.option('--sources', default=DEFAULT_SOURCES_FILE, help='Source configuration file')
@click.option('--env-file', default=None, help='Dotenv file with SDBX_* overrides')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.pass_context
def cli(ctx, config, sources, env_file, verbose):
    """
    SDBX - service registry and deployment generator.

    Resolves service definitions from prioritized sources and generates
    a compose deployment from them.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj['config'] = config
    ctx.obj['sources'] = sources
    ctx.obj['env_file'] = env_file


@cli.command()
@click.option('--out', '-o', default='.', help='Output directory')
@click.pass_context
def generate(ctx, out):
    """Generate compose.yaml and integration configs"""
    generator = ProjectGenerator(_config(ctx), DependencyResolver(_registry(ctx)), out)
    for path in generator.generate():
        click.echo(f"wrote {path}")


@cli.command()
@click.pass_context
def resolve(ctx):
    """Show the enabled services in install order"""
    graph = DependencyResolver(_registry(ctx)).resolve(_config(ctx))
    for index, name in enumerate(graph.order, 1):
        service = graph.services[name]
        deps = ", ".join(service.dependencies) or "-"
        click.echo(f"{index:3} {name:20} {service.source:12} deps: {deps}")
    for error in graph.errors:
        click.echo(f"excluded: {error}", err=True)


# Services

@cli.group()
def services():
    """Browse service definitions"""


@services.command('list')
@click.option('--category', default='', help='Only services in this category')
@click.pass_context
def services_list(ctx, category):
    """List available services"""
    infos = _registry(ctx).search_services(category=category)
    click.echo(f"{'NAME':20} {'VERSION':10} {'CATEGORY':14} {'SOURCE':12}")
    for info in infos:
        click.echo(f"{info.name:20} {info.version:10} {info.category:14} {info.source:12}")


@services.command('search')
@click.argument('query')
@click.option('--category', default='', help='Only services in this category')
@click.pass_context
def services_search(ctx, query, category):
    """Search services by name, description or category"""
    infos = _registry(ctx).search_services(query, category)
    if not infos:
        click.echo(f"No services match '{query}'.")
        return
    for info in infos:
        click.echo(f"{info.name:20} {info.description}")


@services.command('info')
@click.argument('name')
@click.pass_context
def services_info(ctx, name):
    """Show the winning definition of a service"""
    definition, source = _registry(ctx).get_service(name)
    click.echo(f"Name:        {definition.name}")
    click.echo(f"Version:     {definition.version}")
    click.echo(f"Category:    {definition.metadata.category}")
    click.echo(f"Source:      {source}")
    click.echo(f"Image:       {definition.spec.image.repository}:{definition.spec.image.tag}")
    click.echo(f"Description: {definition.metadata.description}")
    deps = definition.spec.dependencies
    if deps.required:
        click.echo(f"Requires:    {', '.join(deps.required)}")
    if deps.optional:
        click.echo(f"Optional:    {', '.join(deps.optional)}")


@services.command('validate')
@click.argument('names', nargs=-1)
@click.pass_context
def services_validate(ctx, names):
    """Validate service definitions"""
    registry = _registry(ctx)
    failed = False
    for name in names or registry.list_service_names():
        try:
            definition, source = registry.get_service(name)
        except ServiceNotFoundError as e:
            click.echo(f"{name}: {e}")
            failed = True
            continue
        issues = registry.validate(definition, source)
        if not issues:
            click.echo(f"{name}: ok")
        for issue in issues:
            click.echo(f"{name}: {issue}")
        failed = failed or has_errors(issues)
    if failed:
        ctx.exit(1)


# Sources

@cli.group()
def source():
    """Manage definition sources"""


@source.command('list')
@click.pass_context
def source_list(ctx):
    """List configured sources by priority"""
    click.echo(f"{'NAME':14} {'TYPE':9} {'PRIORITY':>8}  {'ENABLED':7} LOCATION")
    for src in _registry(ctx).sources:
        enabled = "yes" if src.is_enabled() else "no"
        click.echo(f"{src.name:14} {src.source_type:9} {src.priority:>8}  {enabled:7} {src.url}")


@source.command('add')
@click.argument('name')
@click.argument('location')
@click.option('--type', '-t', 'source_type', type=click.Choice([SOURCE_TYPE_GIT, SOURCE_TYPE_LOCAL]),
              default=SOURCE_TYPE_GIT)
@click.option('--branch', default='main', help='Git branch')
@click.option('--path', 'sub_path', default='', help='Services directory inside the repository')
@click.option('--priority', default=50, type=int)
@click.pass_context
def source_add(ctx, name, location, source_type, branch, sub_path, priority):
    """Add a git or local source"""
    config = _source_config(ctx)
    if config.get_source(name) is not None:
        raise click.ClickException(f"source {name} already exists")
    if source_type == SOURCE_TYPE_GIT:
        definition = SourceDef(name=name, type=source_type, url=location, branch=branch, path=sub_path,
                               priority=priority)
    else:
        definition = SourceDef(name=name, type=source_type, path=location, priority=priority)
    config.sources.append(definition)
    DefinitionParser().save_source_config(config, ctx.obj['sources'])
    click.echo(f"Added source {name}.")


@source.command('remove')
@click.argument('name')
@click.pass_context
def source_remove(ctx, name):
    """Remove a source"""
    config = _source_config(ctx)
    removed = config.get_source(name)
    if removed is None:
        raise click.ClickException(f"source {name} is not configured")
    config.sources = [s for s in config.sources if s.name != name]
    DefinitionParser().save_source_config(config, ctx.obj['sources'])
    if removed.type == SOURCE_TYPE_GIT:
        SourceCache(config.cache_dir, config.cache_ttl).clear(name)
    click.echo(f"Removed source {name}.")


@source.command('update')
@click.argument('names', nargs=-1)
@click.pass_context
def source_update(ctx, names):
    """Refresh git sources"""
    results = _registry(ctx).update(names=names or None)
    failed = False
    for name in sorted(results):
        error = results[name]
        click.echo(f"{name}: {error or 'updated'}")
        failed = failed or error is not None
    if failed:
        ctx.exit(1)


# Lock files

@cli.group()
@click.option('--lock', 'lock_path', default=LOCK_FILE_NAME, help='Lock file path')
@click.pass_context
def lock(ctx, lock_path):
    """Pin source revisions and service versions"""
    ctx.obj['lock'] = lock_path
    ctx.obj['lock_manager'] = LockManager(_registry(ctx))


@lock.command('generate')
@click.pass_context
def lock_generate(ctx):
    """Write a fresh lock file"""
    manager = ctx.obj['lock_manager']
    lock_file = manager.generate_lock_file(_config(ctx))
    manager.save_lock_file(lock_file, ctx.obj['lock'])
    click.echo(f"Locked {len(lock_file.services)} services from {len(lock_file.sources)} sources.")


@lock.command('diff')
@click.pass_context
def lock_diff(ctx):
    """Show what a fresh lock would change"""
    manager = ctx.obj['lock_manager']
    diffs = manager.diff(_config(ctx), manager.load_lock_file(ctx.obj['lock']))
    if not diffs:
        click.echo("Lock file is up to date.")
    for diff in diffs:
        click.echo(str(diff))


@lock.command('update')
@click.argument('names', nargs=-1)
@click.pass_context
def lock_update(ctx, names):
    """Re-pin the named services (all when none are given)"""
    manager = ctx.obj['lock_manager']
    config = _config(ctx)
    path = ctx.obj['lock']
    if not names or not os.path.exists(path):
        manager.save_lock_file(manager.generate_lock_file(config), path)
        click.echo(f"Updated {path}.")
        return
    result = manager.update_lock_file(config, manager.load_lock_file(path), names)
    manager.save_lock_file(result.lock_file, path)
    for name, reason in sorted(result.failures.items()):
        click.echo(f"{name}: kept previous pin ({reason})", err=True)
    click.echo(f"Updated {path}.")


@lock.command('verify')
@click.pass_context
def lock_verify(ctx):
    """Check the lock file against the current configuration and sources"""
    manager = ctx.obj['lock_manager']
    results = manager.verify(_config(ctx), manager.load_lock_file(ctx.obj['lock']))
    if not results:
        click.echo("Lock file verified.")
        return
    for result in results:
        line = f"{result.type} {result.name}: {result.message}".replace(" :", ":")
        if result.expected or result.actual:
            line += f" ({result.expected} -> {result.actual})"
        click.echo(line)
    ctx.exit(1)


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
