#!/usr/bin/env python3
"""
Entry point for the registry stages cleaner.

Usage:
  python main.py cleanup --stages-storage :local --images-repo registry.example.com/myproject [--dry-run]
"""

import sys

from stages_cleaner.cli import main

if __name__ == "__main__":
    sys.exit(main())
