import sys
from pathlib import Path

SRC = Path(__file__).resolve().parents[1] / "src"

# Run against the working tree without an editable install.
if SRC.exists() and str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
