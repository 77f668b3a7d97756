#!/usr/bin/env python3
"""
Entry point for the foundry-storage CLI tool.
"""

import sys

from foundry_storage.cli.cli import main

if __name__ == "__main__":
    sys.exit(main())
