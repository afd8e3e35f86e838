"""Allow ``python -m tangle``."""

from tangle.cli import main

main()
