"""Allow `python -m offline_capture` to invoke the CLI."""

from .cli import app


def main() -> None:
    app(prog_name="offline-capture")


if __name__ == "__main__":  # pragma: no cover - manual execution path
    main()
