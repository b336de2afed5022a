"""Entry point for the ``postindex`` script and ``python -m postindex``."""

from __future__ import annotations

from typing import Sequence

from postindex.cli import create_app

PROG_NAME = "postindex"


def main(argv: Sequence[str] | None = None) -> None:
    """Run the CLI on ``argv``, defaulting to ``sys.argv[1:]``.

    Exits through :class:`SystemExit` with the command's exit code.
    """

    args = None if argv is None else list(argv)
    create_app()(args=args, prog_name=PROG_NAME)


if __name__ == "__main__":  # pragma: no cover
    main()


__all__ = ["PROG_NAME", "main"]
