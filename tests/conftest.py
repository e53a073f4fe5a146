import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
LAMBDA_DIR = ROOT / "lambda"

for path in (ROOT, LAMBDA_DIR):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))
