#!/usr/bin/env python3
"""
Simple test to verify that the package structure and imports work correctly.
"""

import sys
import os

# Add the parent directory to the path so we can import the package
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))


def test_imports():
    """Test that all modules can be imported correctly."""
    # Import the main package
    import espflasher

    # Import individual modules
    from espflasher import config
    from espflasher import exceptions
    from espflasher import slip
    from espflasher import transport
    from espflasher import engine
    from espflasher import chips
    from espflasher import chip_helper
    from espflasher import programmer
    from espflasher import stub
    from espflasher import session
    from espflasher import monitor
    from espflasher import manifest
    from espflasher import cli

    # Import specific classes
    from espflasher import SessionController
    from espflasher import Programmer
    from espflasher import EspFlasherException

    assert issubclass(espflasher.VerifyError, EspFlasherException)
    assert espflasher.__version__


if __name__ == "__main__":
    test_imports()
    print("All imports successful!")
