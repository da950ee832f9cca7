"""Packaged static data (module catalog)."""

from pathlib import Path

DATA_DIR = Path(__file__).parent
CATALOG_FILE = DATA_DIR / "catalog.yml"
