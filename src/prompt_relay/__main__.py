"""Allow `python -m prompt_relay` to invoke the CLI entry-point safely under pytest."""

from typer.main import get_command

from .cli import app


def main() -> None:
    """Show CLI help; run subcommands through the ``prompt-relay`` script."""
    cmd = get_command(app)
    try:
        cmd.main(args=["--help"], prog_name="prompt-relay")
    except SystemExit:
        return


if __name__ == "__main__":  # pragma: no cover - manual execution path
    main()
