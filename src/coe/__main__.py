"""Allow ``python -m coe``."""

from .cli.app import main

main()
