#!/usr/bin/env python3

"""Compatibility wrapper.

The project is packaged under `src/node_sync`. This wrapper allows running
`./node-sync.py` from a fresh checkout without installing the package.

It puts `src` on sys.path before importing the package.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from node_sync.cli import main  # noqa: E402


if __name__ == "__main__":
    main()
