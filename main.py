#!/usr/bin/env python3
"""
Main entry point for automation-hub.

    python main.py run
    python main.py check
    python main.py validate-config
    python main.py extract --processor cloudflare message.txt

See --help for available options.
"""

from automation_hub.cli import cli


if __name__ == "__main__":
    cli()
