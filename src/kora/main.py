"""Kora entry point."""

import asyncio
import logging
import os
import sys

from dotenv import find_dotenv, load_dotenv

from .cli import run_cli, run_smoke


def main() -> None:
    """Main entry point."""
    load_dotenv(find_dotenv(usecwd=True))

    logging.basicConfig(
        level=os.getenv("KORA_LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if len(sys.argv) > 1:
        command = sys.argv[1]

        if command == "smoke":
            passed = asyncio.run(run_smoke())
            sys.exit(0 if passed else 1)

    asyncio.run(run_cli())


if __name__ == "__main__":
    main()
