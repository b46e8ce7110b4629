#!/usr/bin/env python3
"""
Main entry point for the shelly CLI.

This delegates to the UI layer in shelly.ui.cli to keep the console script
mapping stable.
"""

from shelly.ui.cli import run as shelly


if __name__ == "__main__":
    shelly()
