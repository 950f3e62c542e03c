#!/usr/bin/env python3
"""
espflasher - Main entry point.
This is a wrapper script that calls the main function from the espflasher package.
"""

import sys
from espflasher.cli import main

if __name__ == "__main__":
    sys.exit(main())
