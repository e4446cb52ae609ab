import os
import sys
from pathlib import Path

os.environ.setdefault("PAYROLL_LEDGER_BACKEND", "local")
os.environ.setdefault("PAYROLL_SECRET_BACKEND", "static")
os.environ.setdefault("PAYROLL_GATEWAY_DRY_RUN", "true")

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))
