#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[layrr] project={os.environ.get('LAYRR_PROJECT_DIR', os.getcwd())} | "
    f"agent={os.environ.get('LAYRR_AGENT_CMD', 'claude --print --continue')} | "
    f"port={os.environ.get('LAYRR_BRIDGE_PORT', '8766')} | "
    f"branch={os.environ.get('LAYRR_TIMELINE_BRANCH', 'layrr-timeline')}",
    file=sys.stderr,
)

from layrr.bridge.main import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main(["serve", *sys.argv[1:]]))
