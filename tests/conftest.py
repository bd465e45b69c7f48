"""Shared pytest configuration for the Meridian test suite.

Ensures the project root is on sys.path so test files can import
source modules (api, dispatcher, registry, etc.) directly, and keeps
the log file out of the repo.
"""

import os
import sys
import tempfile
from pathlib import Path

# Add project root to sys.path so `import dispatcher`, `from api import app`, etc. work
PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

os.environ.setdefault("MERIDIAN_LOG_FILE", os.path.join(tempfile.gettempdir(), "meridian-test.log"))
os.environ.setdefault("MERIDIAN_ENV", "test")
os.environ.setdefault("MERIDIAN_DB_BACKEND", "sqlite")
