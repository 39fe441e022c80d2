"""Module entrypoint for `python -m orthowarp`."""

from __future__ import annotations

from orthowarp.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
