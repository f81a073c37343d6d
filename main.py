#!/usr/bin/env python3
"""
ROM set rebuilder
Rebuilds ROM sets from loose files, archives and depots using DAT files.

Usage:
    python main.py --dat <file> <inputs...> --output <folder>
    python main.py --dat <file> --depot <depot roots...> --output <folder>

For CLI help: python main.py --help
"""

import sys
import os

# Add package to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from romrebuild.cli import run_cli


def main():
    """Main entry point"""
    sys.exit(run_cli())


if __name__ == '__main__':
    main()
