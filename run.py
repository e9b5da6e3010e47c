"""Run the buildwatch supervisor."""

import sys

from buildwatch.__main__ import main

if __name__ == "__main__":
    sys.exit(main())
