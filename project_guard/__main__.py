"""Allow ``python -m project_guard``."""

from .cli import main

main()
