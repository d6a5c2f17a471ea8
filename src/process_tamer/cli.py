"""CLI commands for process-tamer."""

from pathlib import Path

import click


@click.group(invoke_without_command=True)
@click.option("-i", "--install", is_flag=True, help="Install as a system service and exit")
@click.option("-u", "--uninstall", is_flag=True, help="Stop and remove the system service")
@click.option(
    "--standalone",
    is_flag=True,
    help="Run without a service manager, reading the config from the working directory",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Use this configuration file instead of the default location",
)
@click.version_option(package_name="process-tamer")
@click.pass_context
def main(
    ctx,
    install: bool,
    uninstall: bool,
    standalone: bool,
    config_path: Path | None,
) -> None:
    """Keep configured processes at a low CPU priority.

    With no options, polls the process table forever, resetting the priority
    of every process named in the configuration file.
    """
    from process_tamer import logging as tlog
    from process_tamer.config import ConfigStore, RunMode

    tlog.quiet()

    mode = RunMode.STANDALONE if standalone else RunMode.SERVICE
    ctx.ensure_object(dict)
    ctx.obj["store"] = ConfigStore(mode, config_path)

    # If a subcommand was invoked, let it handle things
    if ctx.invoked_subcommand is not None:
        return

    if install and uninstall:
        raise click.UsageError("-i and -u are mutually exclusive")

    store = ctx.obj["store"]
    _require_config(store)

    if install:
        _install(store)
    elif uninstall:
        _uninstall()
    else:
        _run(store)


def _require_config(store) -> None:
    """Load the configuration or exit with a failure status."""
    from process_tamer.config import ConfigLoadError

    try:
        store.require_loaded()
    except ConfigLoadError as e:
        click.echo(f"{e}.", err=True)
        raise SystemExit(1)


def _install(store) -> None:
    from process_tamer.service import ServiceError, get_service_manager, service_command

    config = store.config
    try:
        manager = get_service_manager()
        path = manager.install(
            service_command(store.path), config.display_name, config.description
        )
    except (ServiceError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        click.echo("Operation was not completed successfully.")
        raise SystemExit(1)

    click.echo(f"Created {path}")
    click.echo("Operation completed successfully.")


def _uninstall() -> None:
    from process_tamer.service import ServiceError, get_service_manager

    try:
        get_service_manager().uninstall()
    except (ServiceError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        click.echo("Operation was not completed successfully.")
        raise SystemExit(1)

    click.echo("Operation completed successfully.")


def _run(store) -> None:
    import asyncio

    from process_tamer import logging as tlog
    from process_tamer.config import ConfigLoadError, resolve_log_path
    from process_tamer.daemon import run_daemon
    from process_tamer.service import ServiceRegistrationError

    tlog.configure(store.config, resolve_log_path(store.mode))

    try:
        asyncio.run(run_daemon(store))
    except (ConfigLoadError, ServiceRegistrationError) as e:
        click.echo(f"{e}.", err=True)
        raise SystemExit(1)


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
@click.pass_context
def config_show(ctx) -> None:
    """Display the configuration the tamer would use."""
    from process_tamer.checksum import file_checksum
    from process_tamer.processes import Priority

    store = ctx.obj["store"]
    path = store.path
    count = store.reload_if_changed()

    click.echo(f"Config file: {path}")
    click.echo(f"Exists: {path.exists()}")
    if not store.loaded:
        click.echo("No configuration loaded.")
        return

    crc = file_checksum(path)
    if crc is not None:
        click.echo(f"Checksum: {crc:08x}")

    cfg = store.config
    click.echo()
    click.echo("[Service]")
    click.echo(f"  DisplayName = {cfg.display_name}")
    click.echo(f"  Description = {cfg.description}")
    click.echo(f"  Interval = {cfg.interval_ms}")
    click.echo()
    click.echo(f"[Processes] ({count} entries)")
    for entry in cfg.entries:
        try:
            label = Priority(entry.priority).name.lower()
        except ValueError:
            label = "unknown"
        click.echo(f"  {entry.name} -> {entry.priority} ({label})")


@config.command("init")
@click.option("--force", is_flag=True, help="Overwrite an existing file")
@click.pass_context
def config_init(ctx, force: bool) -> None:
    """Write a default configuration file."""
    from process_tamer.config import TamerConfig

    path = ctx.obj["store"].path
    if path.exists() and not force:
        click.echo(f"Error: {path} already exists (use --force to overwrite)", err=True)
        raise SystemExit(1)

    TamerConfig().save(path)
    click.echo(f"Created default config at {path}")


if __name__ == "__main__":
    main()
