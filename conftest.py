"""Pytest configuration.

Ensures that ``src/`` (for the ``screencap`` package) and the repository root
(for ``scripts``) are importable when tests run from a plain checkout, without
an editable install.
"""

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent
for path in (ROOT / "src", ROOT):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))
