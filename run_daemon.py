#!/usr/bin/env python3
"""
Tunnel Warden Entry Point

Runs the daemon from a source checkout without installing it:

    sudo ./run_daemon.py --policy examples/policy.yaml --once
"""

import os
import sys


def setup_path():
    """Put the checkout root on sys.path."""
    base_path = os.path.dirname(os.path.abspath(__file__))
    if base_path not in sys.path:
        sys.path.insert(0, base_path)


def main():
    """Main entry point."""
    setup_path()

    from warden.warden_daemon import main as warden_main
    sys.exit(warden_main())


if __name__ == '__main__':
    main()
