from __future__ import annotations
import os

DEFINITION_PATH = os.environ.get("FLOWCI_DEFINITION", ".github/workflows/ci.yml")
CACHE_DIR = os.environ.get("FLOWCI_CACHE_DIR", ".flowci/cache")
WORK_DIR = os.environ.get("FLOWCI_WORK_DIR", ".flowci/work")
MAX_WORKERS = int(os.environ["FLOWCI_MAX_WORKERS"]) if os.environ.get("FLOWCI_MAX_WORKERS") else None
CACHE_KEEP = int(os.environ.get("FLOWCI_CACHE_KEEP", "3"))
