import logging

from rich.console import Console
from rich.logging import RichHandler

LOGGER = logging.getLogger("Miner")

# Chatty libraries: the miner polls Twitch every few seconds
NOISY_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "aiohttp": logging.WARNING,
    "aiohttp.access": logging.WARNING,
    "asyncpg": logging.WARNING,
    "asyncio": logging.ERROR,
}


def setup_logging(log_level: str = "INFO", width: int = 120) -> None:
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = RichHandler(
        console=Console(force_terminal=True, width=width),
        show_path=False,
        markup=False,
        rich_tracebacks=True,
        tracebacks_width=width,
    )
    handler.setFormatter(logging.Formatter("[%(name)s] %(message)s", datefmt="[%Y-%m-%d %H:%M:%S]"))
    logging.basicConfig(level=level, handlers=[handler], force=True)

    for name, floor in NOISY_LOGGERS.items():
        # Request lines from httpx are useful when debugging GQL calls
        if level == logging.DEBUG and name.startswith("http"):
            floor = logging.INFO
        logging.getLogger(name).setLevel(floor)

    LOGGER.info(f"Logging configured (level={logging.getLevelName(level)})")
