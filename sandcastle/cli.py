from pathlib import Path

import click

_ALEMBIC_INI = Path(__file__).parent / "orchestrator" / "alembic.ini"


@click.group()
def main() -> None:
    """Sandcastle - sandbox lifecycle and build orchestration service."""


@main.command()
@click.option("--host", default=None, help="Bind host (default: SANDCASTLE_HOST).")
@click.option("--port", default=None, type=int, help="Bind port (default: SANDCASTLE_PORT).")
@click.option("--reload", is_flag=True, default=False, help="Restart on code changes.")
def serve(host: str | None, port: int | None, reload: bool) -> None:
    """Run the orchestrator API."""
    import uvicorn

    from sandcastle.orchestrator.settings import get_settings

    settings = get_settings()
    uvicorn.run(
        "sandcastle.orchestrator.app:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_level="warning",
        # Builds drain for graceful_shutdown_timeout, then PTYs, the
        # provider client and the engine are closed.
        timeout_graceful_shutdown=settings.graceful_shutdown_timeout + 30,
    )


# ---------------------------------------------------------------------------
# Database management
# ---------------------------------------------------------------------------


def _alembic(action: str, *args, **kwargs) -> None:
    """Run an alembic command against the packaged migration scripts."""
    from alembic import command
    from alembic.config import Config

    from sandcastle.orchestrator.settings import get_settings

    if not get_settings().database_url:
        msg = "SANDCASTLE_DATABASE_URL is not set"
        raise click.ClickException(msg)
    getattr(command, action)(Config(str(_ALEMBIC_INI)), *args, **kwargs)


@main.group()
def db() -> None:
    """Workspace and build database migrations."""


@db.command()
@click.option("--revision", default="head", help="Target revision.")
def upgrade(revision: str) -> None:
    """Apply migrations up to REVISION."""
    _alembic("upgrade", revision)
    click.echo(f"Database at {revision}.")


@db.command()
@click.option("--revision", default="-1", help="Target revision (default: one step back).")
def downgrade(revision: str) -> None:
    """Revert migrations down to REVISION."""
    _alembic("downgrade", revision)
    click.echo(f"Database at {revision}.")


@db.command()
@click.argument("message")
def migrate(message: str) -> None:
    """Autogenerate a revision from the table definitions."""
    _alembic("revision", message=message, autogenerate=True)
    click.echo(f"Revision created: {message}")


@db.command()
def current() -> None:
    """Print the applied revision."""
    _alembic("current", verbose=True)


@db.command()
def history() -> None:
    """Print the revision history."""
    _alembic("history", verbose=True)


if __name__ == "__main__":
    main()
