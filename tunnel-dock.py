#!/usr/bin/env python3

"""Compatibility wrapper.

The project is packaged under `src/tunneldock`. This wrapper allows running
`./tunnel-dock.py` from a fresh checkout without installing it.

Note: This file intentionally tweaks sys.path before importing the package.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from tunneldock.cli import main  # noqa: E402


if __name__ == "__main__":
    main()
