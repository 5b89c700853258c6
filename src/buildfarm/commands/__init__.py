"""CLI command implementations for the buildfarm client.

This package contains the implementation of each CLI command,
separated from the CLI framework setup in cli.py.
"""

from .init import init
from .resend import resend
from .run import run
from .status import status

__all__ = [
    "init",
    "resend",
    "run",
    "status",
]
