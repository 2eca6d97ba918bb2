"""Entry point for running trmnl_emulator as a module.

Usage:
    python -m trmnl_emulator
"""

import sys

from trmnl_emulator.main import main

if __name__ == "__main__":
    sys.exit(main())
