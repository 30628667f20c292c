import os
import sys
from pathlib import Path

os.environ.setdefault("OPPORTUNITY_ENV", "test")

for _name in list(os.environ):
    if _name.startswith("OPPORTUNITY_") and _name not in {"OPPORTUNITY_ENV", "OPPORTUNITY_DATA_DIR"}:
        os.environ.pop(_name)

# Ensure the project root is on sys.path for module imports
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
