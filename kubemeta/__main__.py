"""Entry point for `python -m kubemeta`.

Usage:
    python -m kubemeta
    uv run python -m kubemeta
"""

from __future__ import annotations

import asyncio

from kubemeta.app import main


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
