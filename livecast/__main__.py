"""``python -m livecast`` and the ``livecast`` console script."""

import sys

from loguru import logger

from livecast.cli import app
from livecast.cli.utils import console
from livecast.core.errors import LivecastError


def main() -> None:
    # commands narrow this further with --verbose
    logger.remove()
    logger.add(sys.stderr, level="WARNING")
    try:
        app(prog_name="livecast")
    except KeyboardInterrupt:
        console.print("\n[warning]⏹ Stopped by user[/warning]")
        sys.exit(0)
    except LivecastError as e:
        console.print(f"[error]✗ {e}[/error]")
        sys.exit(1)
    except Exception as e:
        logger.opt(exception=e).debug("Unhandled error")
        console.print(f"[error]Unexpected error: {e}[/error]")
        sys.exit(1)


if __name__ == "__main__":
    main()
