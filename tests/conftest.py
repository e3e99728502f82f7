import sys
from pathlib import Path

# Project root on sys.path so tests import the top-level package directly
ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)
