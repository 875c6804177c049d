import os
import sys
from pathlib import Path

os.environ.setdefault("ETH_RPC_URL", "http://localhost:8545")
os.environ.setdefault("PAYMENT_DRY_RUN", "true")
os.environ.setdefault("STORE_PATH", "/tmp/settlement-test/settlement.json")
os.environ.setdefault("AUDIT_LOG_PATH", "/tmp/settlement-test/audit/wallet.log")

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))
