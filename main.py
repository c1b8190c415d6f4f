#!/usr/bin/env python3
"""
Development launcher for block-recorder.

- Forces dev mode (verbose logging) unless DEV is already set
- Runs the control server in the foreground
- Ctrl-C exits cleanly
"""

import os
import sys

from blockrec.server import cli_main


def main() -> int:
    os.environ.setdefault("DEV", "1")
    print("[dev] Starting block-recorder (Ctrl-C to stop) ...")
    return cli_main(sys.argv[1:])


if __name__ == "__main__":
    sys.exit(main())
