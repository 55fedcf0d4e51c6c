"""Entry point for ``python -m spendbot``."""

import asyncio

from spendbot.bot import run_bot


def main() -> None:
    """Launch the SpendBot webhook server."""
    asyncio.run(run_bot())


if __name__ == "__main__":
    main()
