"""CLI entrypoint for flow-worker."""

import logging

import rich_click as click

from flow_worker import __version__
from flow_worker.controllers import WorkerCliController, WorkerRunCommand

click.rich_click.USE_MARKDOWN = True
WORKER_CONTROLLER = WorkerCliController()

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="flow-worker")
def flow_worker() -> None:
    """Task worker for a workflow orchestration server."""


@flow_worker.command("run")
@click.argument("targets", nargs=-1, required=True)
@click.option(
    "--server-url",
    default=None,
    help="Orchestration server API URL. Overrides FLOW_WORKER_SERVER_URL.",
)
@click.option(
    "--worker-id",
    default=None,
    help="Worker identity reported to the server. Overrides FLOW_WORKER_ID.",
)
@click.option(
    "--max-concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Upper bound on tasks executing at once across all workers.",
)
@click.option(
    "--duration",
    type=click.FloatRange(min=0),
    default=None,
    help="Stop after this many seconds instead of running until interrupted.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging level.",
)
def run(  # noqa: PLR0913
    targets: tuple[str, ...],
    server_url: str | None,
    worker_id: str | None,
    max_concurrency: int | None,
    duration: float | None,
    log_level: str,
) -> None:
    """Poll the server and execute tasks for workers defined in `module:attribute` TARGETS.

    Each target names a worker, a typed worker, or a list of them.
    """

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)
    try:
        lines = WORKER_CONTROLLER.run(
            WorkerRunCommand(
                targets=targets,
                server_url=server_url,
                worker_id=worker_id,
                max_concurrency=max_concurrency,
                duration=duration,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    flow_worker()
