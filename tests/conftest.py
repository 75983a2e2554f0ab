"""Pytest configuration and test helpers."""

from __future__ import annotations

import sys
from pathlib import Path


# ``app`` and ``swipematch`` live at the project root; make them importable
# when the tests run from a plain checkout.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
