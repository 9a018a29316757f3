"""Pytest configuration shared by the NeedleDrop test suite."""

from __future__ import annotations

import sys
from pathlib import Path


# Tests import ``app`` directly from the checkout, so the project root must be
# importable without an editable install.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
