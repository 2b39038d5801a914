"""Entry point: python -m replyfleet"""

import asyncio
import multiprocessing

from replyfleet.main import run


def main() -> None:
    multiprocessing.freeze_support()
    asyncio.run(run())


if __name__ == "__main__":
    main()
