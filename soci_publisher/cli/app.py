"""Main Typer application.

Entry point: ``soci-publisher`` (configured via pyproject.toml scripts)::

    soci-publisher REPOSITORY_NAME IMAGE_DIGEST AWS_REGION AWS_ACCOUNT

Exit status is 0 when the index was published or the image was skipped, and
1 on usage errors, invalid arguments and pipeline failures.
"""

from __future__ import annotations

from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console

from soci_publisher.logging_setup import configure_logging
from soci_publisher.models.pipeline import PipelineOutcome
from soci_publisher.models.request import InvocationRequest

USAGE = "Usage: soci-publisher REPOSITORY_NAME IMAGE_DIGEST AWS_REGION AWS_ACCOUNT"

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    name="soci-publisher",
    help="Build a SOCI index for an ECR image and push it to the same repository.",
    rich_markup_mode="rich",
    add_completion=False,
)


@app.command(context_settings={"allow_extra_args": True})
def publish(
    repository: Optional[str] = typer.Argument(None, help="ECR repository name."),
    digest: Optional[str] = typer.Argument(None, help="Image manifest digest."),
    region: Optional[str] = typer.Argument(None, help="AWS region of the registry."),
    account: Optional[str] = typer.Argument(None, help="AWS account id owning the registry."),
) -> None:
    """Build and publish the SOCI index of one image."""
    if not (repository and digest and region and account):
        typer.echo(USAGE)
        raise typer.Exit(code=1)

    try:
        request = InvocationRequest(
            repository=repository, digest=digest, region=region, account=account
        )
    except ValidationError as exc:
        for error in exc.errors():
            err_console.print(f"[red]Invalid argument:[/red] {error['msg']}")
        raise typer.Exit(code=1)

    from soci_publisher.config import config
    from soci_publisher.core.orchestrator import Orchestrator

    configure_logging(config.log_level)

    result = Orchestrator.from_config(config).run(request)

    if result.outcome is PipelineOutcome.FAILED:
        err_console.print(f"[bold red]{result.message}:[/bold red] {result.error}")
        raise typer.Exit(code=1)
    if result.outcome is PipelineOutcome.SKIPPED:
        console.print(f"[yellow]{result.message}[/yellow]")
        return
    console.print(f"[bold green]{result.message}[/bold green] {result.index_digest}")


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
