# main.py
import asyncio

from cli.main import run_pair
from util.config import get_config
from util.log import configure_logging


async def main():
    configure_logging()
    # One participant per process; run this twice against the same relay dir.
    await run_pair(get_config())


if __name__ == "__main__":
    asyncio.run(main())
