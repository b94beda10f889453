from pathlib import Path

import typer

from common.settings import DEFAULT_CONFIG_PATH

from .main import main as _main

app = typer.Typer(help="Kafka to partitioned-file log sink")


@app.command()
def run(
    config: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="YAML configuration file"),
):
    """Consume log records from Kafka until SIGINT/SIGTERM."""
    raise typer.Exit(code=_main(config))


if __name__ == "__main__":
    app()
