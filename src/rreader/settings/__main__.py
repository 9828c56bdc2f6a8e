"""
Inspect and generate RReader settings.

Usage:
    python -m rreader.settings show --format yaml
    python -m rreader.settings generate ./config.yaml
"""
import logging
from pathlib import Path

import rich_click as click
from pydantic_yaml import to_yaml_str

from .settings import DEFAULT_CONFIG_PATH, Settings, _settings_file_location, settings_var

logger = logging.getLogger(__name__)


@click.group(invoke_without_command=True)
@click.option("--debug", is_flag=True, help="Enable debug mode.")
@click.pass_context
def cli(ctx: click.Context, debug: bool):
    """
    Manage RReader settings.
    """
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        ctx.exit()

    settings = Settings(DEBUG=True) if debug else Settings()
    logger.setLevel(logging.DEBUG if settings.DEBUG else settings.LOGGING_LEVEL)
    settings_var.set(settings)


@cli.command()
@click.option("--format", "output_format", type=click.Choice(["json", "yaml"]), default="json", show_default=True)
def show(output_format: str):
    """
    Show the currently effective settings.
    """
    settings = settings_var.get()
    match output_format:
        case "yaml":
            click.echo(to_yaml_str(settings))
        case _:
            click.echo(settings.model_dump_json(indent=2))


@cli.command()
def paths():
    """
    List the settings files that are read, highest precedence first.
    """
    for path in reversed(_settings_file_location):
        marker = "*" if path.exists() else " "
        click.echo(f"{marker} {path}")


@cli.command()
@click.argument("filename", type=click.Path(path_type=Path, dir_okay=False, writable=True), default=DEFAULT_CONFIG_PATH)
@click.option("--force", is_flag=True, help="Overwrite an existing file.")
def generate(filename: Path, force: bool):
    """
    Write the effective settings to <FILENAME>.

    By default the file is created in the user config directory, or at $RREADER_CONFIG_FILE when set.
    """
    if filename.exists() and not force:
        raise click.ClickException(f"{filename} exists, use --force to overwrite it")

    filename.parent.mkdir(parents=True, exist_ok=True)
    filename.write_text(to_yaml_str(settings_var.get()), encoding="utf-8")
    click.echo(f"Settings file generated at {filename}")


if __name__ == "__main__":
    cli()
