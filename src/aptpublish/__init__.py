"""aptpublish: signed multi-architecture APT repository publisher."""

import logging

import typer
from rich.logging import RichHandler

logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    datefmt="[%X]",
    handlers=[
        RichHandler(
            rich_tracebacks=True,
            tracebacks_suppress=[typer],
        )
    ],
)
logging.getLogger("filelock").setLevel(logging.WARNING)
