#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[bridge] ws={os.environ.get('BRIDGE_WS_URL', '(argv)')} | "
    f"data_dir={os.environ.get('BRIDGE_DATA_DIR', str(ROOT / 'data'))} | "
    f"drain={os.environ.get('BRIDGE_DRAIN_INTERVAL', '2.0')}s | "
    f"persist={os.environ.get('BRIDGE_PERSIST', '1')}",
    file=sys.stderr,
)

from webview_bridge.main import main  # noqa: E402

if __name__ == "__main__":
    main()
